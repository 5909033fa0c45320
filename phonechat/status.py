"""User-visible status line shared by the chat and phone auth controllers."""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

# Non-error messages disappear after this many seconds
AUTO_HIDE_SECONDS = 8.0


class StatusKind(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"
    CONNECTED = "connected"


@dataclass(frozen=True)
class Status:
    text: str
    kind: StatusKind = StatusKind.INFO

    @property
    def auto_hide_after(self) -> Optional[float]:
        if self.kind is StatusKind.ERROR:
            return None
        return AUTO_HIDE_SECONDS
