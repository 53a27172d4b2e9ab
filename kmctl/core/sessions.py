"""In-memory store for multi-step setup sessions.

A store instance is created by the caller and passed to whatever drives the
setup flow; sessions are looked up by an opaque id and expire after a period
of inactivity.
"""

from __future__ import annotations

import secrets
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from kmctl.core.errors import SetupSessionError
from kmctl.core.model import MachineRecord

DEFAULT_SESSION_TTL_S = 30 * 60


@dataclass
class SetupSession:
    id: str
    created_at: float
    touched_at: float
    step: str = "machines"
    machines: list[MachineRecord] = field(default_factory=list)


class SessionStore:
    def __init__(
        self,
        *,
        ttl_s: float = DEFAULT_SESSION_TTL_S,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._sessions: dict[str, SetupSession] = {}
        self._ttl_s = ttl_s
        self._clock = clock

    def __len__(self) -> int:
        return len(self._sessions)

    def start(self) -> SetupSession:
        self.purge_expired()
        now = self._clock()
        session = SetupSession(id=secrets.token_urlsafe(16), created_at=now, touched_at=now)
        self._sessions[session.id] = session
        return session

    def get(self, session_id: str) -> SetupSession | None:
        session = self._sessions.get(session_id)
        if session is None:
            return None
        now = self._clock()
        if now - session.touched_at > self._ttl_s:
            del self._sessions[session_id]
            return None
        session.touched_at = now
        return session

    def require(self, session_id: str) -> SetupSession:
        session = self.get(session_id)
        if session is None:
            raise SetupSessionError(f"Setup session '{session_id}' not found or expired")
        return session

    def add_machine(self, session_id: str, machine: MachineRecord) -> SetupSession:
        session = self.require(session_id)
        if session.step != "machines":
            raise SetupSessionError(
                f"Setup session '{session_id}' is at step '{session.step}'; machines can no longer be added"
            )
        wanted = machine.name.lower()
        session.machines = [m for m in session.machines if m.name.lower() != wanted]
        session.machines.append(machine)
        return session

    def advance(self, session_id: str, step: str) -> SetupSession:
        session = self.require(session_id)
        session.step = step
        return session

    def finish(self, session_id: str) -> tuple[MachineRecord, ...]:
        session = self.require(session_id)
        del self._sessions[session_id]
        return tuple(session.machines)

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [sid for sid, s in self._sessions.items() if now - s.touched_at > self._ttl_s]
        for sid in expired:
            del self._sessions[sid]
        return len(expired)
