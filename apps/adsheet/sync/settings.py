from __future__ import annotations

from dataclasses import dataclass

from shared.constants import (
    SYNC_FOLLOW_UP_DELAY,
    SYNC_MAX_CREATE_RETRIES,
    SYNC_MAX_SAVE_RETRIES,
    SYNC_PHANTOM_GRACE,
    SYNC_POLL_INTERVAL,
    SYNC_RELOAD_DELAY,
    SYNC_SAVE_DELAY,
    SYNC_SAVE_RETRY_DELAY,
    SYNC_TEMP_ROW_DELAY,
)
from shared.utils import env_float, env_int


@dataclass(frozen=True)
class SyncSettings:
    save_delay: float = SYNC_SAVE_DELAY
    temp_row_delay: float = SYNC_TEMP_ROW_DELAY
    follow_up_delay: float = SYNC_FOLLOW_UP_DELAY
    reload_delay: float = SYNC_RELOAD_DELAY
    phantom_grace: float = SYNC_PHANTOM_GRACE
    max_create_retries: int = SYNC_MAX_CREATE_RETRIES
    poll_interval: float = SYNC_POLL_INTERVAL
    save_retry_delay: float = SYNC_SAVE_RETRY_DELAY
    max_save_retries: int = SYNC_MAX_SAVE_RETRIES

    @classmethod
    def from_env(cls) -> "SyncSettings":
        return cls(
            save_delay=env_float("SYNC_SAVE_DELAY", SYNC_SAVE_DELAY),
            temp_row_delay=env_float("SYNC_TEMP_ROW_DELAY", SYNC_TEMP_ROW_DELAY),
            follow_up_delay=env_float("SYNC_FOLLOW_UP_DELAY", SYNC_FOLLOW_UP_DELAY),
            reload_delay=env_float("SYNC_RELOAD_DELAY", SYNC_RELOAD_DELAY),
            phantom_grace=env_float("SYNC_PHANTOM_GRACE", SYNC_PHANTOM_GRACE),
            max_create_retries=env_int("SYNC_MAX_CREATE_RETRIES", SYNC_MAX_CREATE_RETRIES),
            poll_interval=env_float("SYNC_POLL_INTERVAL", SYNC_POLL_INTERVAL),
            save_retry_delay=env_float("SYNC_SAVE_RETRY_DELAY", SYNC_SAVE_RETRY_DELAY),
            max_save_retries=env_int("SYNC_MAX_SAVE_RETRIES", SYNC_MAX_SAVE_RETRIES),
        )
