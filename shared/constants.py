# shared/constants.py
from pathlib import Path

# =========================
# GENERAL CONFIGS
# =========================
TIMEZONE = "Asia/Ho_Chi_Minh"


# =========================
# GRID SYNC CONFIG
# =========================

# Debounce window before queued field edits are flushed
SYNC_SAVE_DELAY = 0.8  # seconds

# Debounce window before edited temp rows are bulk-created
SYNC_TEMP_ROW_DELAY = 0.3  # seconds

# Delay before the follow-up save of a promoted row with typed data
SYNC_FOLLOW_UP_DELAY = 0.3  # seconds

# Settle delay before a full reload triggered by a broadcast
SYNC_RELOAD_DELAY = 0.5  # seconds

# Temp rows older than this are phantoms on initial load
SYNC_PHANTOM_GRACE = 30.0  # seconds

# Failed bulk-creates are retried this many times
SYNC_MAX_CREATE_RETRIES = 3

# Field edits whose save failed are retried after n x this delay, up to the cap
SYNC_SAVE_RETRY_DELAY = 2.0  # seconds
SYNC_MAX_SAVE_RETRIES = 3

# HTTP polling fallback interval
SYNC_POLL_INTERVAL = 2.0  # seconds

# WebSocket reconnect policy
SYNC_WS_RECONNECT_DELAY = 1.0  # seconds
SYNC_WS_RECONNECT_FACTOR = 1.5
SYNC_WS_RECONNECT_MAX_DELAY = 5.0  # seconds
SYNC_WS_MAX_RECONNECTS = 10

# Persistence API request timeout
SYNC_HTTP_TIMEOUT = 15.0  # seconds

# Rows per bulk-create request for large pastes
SYNC_BULK_CHUNK_SIZE = 200


# =========================
# BROADCAST CONFIG
# =========================

# Events retained per owner for the polling fallback
BROADCAST_HISTORY_SIZE = 500


# =====================
# LOGGING CONFIG
# =====================

# Global switch
LOGGING_ENABLED = True

# Logging level
# DEBUG | INFO | WARNING | ERROR | CRITICAL
LOG_LEVEL = "INFO"

# Directory for all logs (anchored to repo root)
LOG_DIR = str(Path(__file__).resolve().parents[1] / "logs")

# Per-run file rotation (within a single run)
LOG_MAX_BYTES = 10 * 1024 * 1024  # 10 MB per file
LOG_BACKUP_COUNT = 5  # Rotated files per run

# Retention policy
LOG_RETENTION_DAYS = 7  # Delete logs older than N days
