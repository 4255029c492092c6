from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable


class NoticeLevel(str, Enum):
    SUCCESS = "success"
    INFO = "info"
    ERROR = "error"


SAVE_FAILED = "Lưu thất bại"
CREATE_FAILED = "Tạo dòng thất bại"
CREATE_SUCCEEDED = "Tạo dòng thành công"
RELOAD_FAILED = "Không thể tải lại dữ liệu"


@dataclass(frozen=True)
class Notice:
    level: NoticeLevel
    title: str
    message: str = ""
    retryable: bool = False
    created_at: float = field(default_factory=time.time)


Notifier = Callable[[Notice], None]
