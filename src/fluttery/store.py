from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal

from fluttery.errors import SessionNotFoundError

SessionStatus = Literal["initializing", "ready", "error", "terminated"]


def utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True, slots=True)
class Session:
    id: str
    workspace: Path
    port: int
    preview_address: str
    owner_id: str | None = None
    status: SessionStatus = "initializing"
    created_at: datetime = field(default_factory=utcnow)
    last_active: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "preview_address": self.preview_address,
            "status": self.status,
            "port": self.port,
            "created_at": self.created_at.replace(microsecond=0).isoformat(),
            "last_active": self.last_active.replace(microsecond=0).isoformat(),
        }


class SessionStore:
    """In-memory session registry.

    Records are immutable; every mutation swaps the whole record so readers
    never observe a half-applied update. Per-session serialization is the
    caller's job.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}

    def create(self, session: Session) -> Session:
        if session.id in self._sessions:
            raise ValueError(f"Session already exists: {session.id}")
        self._sessions[session.id] = session
        return session

    def find(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def get(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def list(self) -> list[Session]:
        return list(self._sessions.values())

    def count(self) -> int:
        return len(self._sessions)

    def update(self, session_id: str, **changes: Any) -> Session:
        updated = replace(self.get(session_id), **changes)
        self._sessions[session_id] = updated
        return updated

    def touch(self, session_id: str, at: datetime | None = None) -> Session:
        return self.update(session_id, last_active=at or utcnow())

    def delete(self, session_id: str) -> Session | None:
        return self._sessions.pop(session_id, None)

    async def for_each_idle_since(
        self,
        threshold: datetime,
        fn: Callable[[Session], Awaitable[None]],
    ) -> int:
        visited = 0
        for session_id in list(self._sessions):
            # Sessions may be removed while fn is awaited; skip them.
            session = self._sessions.get(session_id)
            if session is None or session.last_active >= threshold:
                continue
            await fn(session)
            visited += 1
        return visited
