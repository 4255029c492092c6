from __future__ import annotations

import uuid
from typing import Any

from apps.adsheet.core.events import BroadcastEvent, EventType


def new_session_id() -> str:
    return f"session_{uuid.uuid4().hex[:9]}"


class SessionScope:
    """
    Identity of one mounted grid.

    Echo suppression keys on the session, not the user: two tabs of the same
    user are two sessions and still see each other's updates.
    """

    # Processed for every session, the originator included.
    ALWAYS_APPLIED = frozenset({EventType.BATCH_UPDATE})

    def __init__(self, session_id: str | None = None) -> None:
        self.session_id = session_id or new_session_id()

    def stamp(self, payload: dict[str, Any]) -> dict[str, Any]:
        return {**payload, "session_id": self.session_id}

    def is_self_echo(self, event: BroadcastEvent) -> bool:
        return event.session_id is not None and event.session_id == self.session_id

    def should_apply(self, event: BroadcastEvent) -> bool:
        if event.type in self.ALWAYS_APPLIED:
            return True
        return not self.is_self_echo(event)
