# shared/utils.py

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from zoneinfo import ZoneInfo
import time

from dotenv import load_dotenv

from shared.tenant import get_env, get_timezone

LOCAL_ETC_DIR = Path(__file__).resolve().parents[1] / "etc"

# ======================================================
# RESPONSE META
# ======================================================


def format_hms(seconds: float) -> str:
    total_ms = int(seconds * 1000)
    s, ms = divmod(total_ms, 1000)
    m, s = divmod(s, 60)
    h, m = divmod(m, 60)
    return f"{h:02}:{m:02}:{s:02}.{ms:03}"


def with_meta(*, data: dict | list, start_time: float, client_id: str) -> dict:
    duration = time.perf_counter() - start_time
    tz = ZoneInfo(get_timezone())

    return {
        "meta": {
            "timestamp": datetime.now(tz).isoformat(),
            "duration_ms": int(duration * 1000),
            "duration_hms": format_hms(duration),
            "client_id": client_id,
        },
        "data": data,
    }


# ======================================================
# ENV HELPERS
# ======================================================


def load_env() -> None:
    for path in (Path("/etc/.env"), LOCAL_ETC_DIR / ".env"):
        if path.is_file():
            load_dotenv(path)
            return


def env_float(key: str, default: float) -> float:
    raw = get_env(key)
    if raw is None or str(raw).strip() == "":
        return default
    try:
        return float(str(raw).strip())
    except ValueError:
        return default


def env_int(key: str, default: int) -> int:
    raw = get_env(key)
    if raw is None or str(raw).strip() == "":
        return default
    try:
        return int(str(raw).strip())
    except ValueError:
        return default


def env_bool(key: str, default: bool) -> bool:
    raw = get_env(key)
    if raw is None or str(raw).strip() == "":
        return default
    return str(raw).strip().lower() in {"1", "true", "yes", "on"}
