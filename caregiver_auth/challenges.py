"""Short-lived ceremony state keyed by an opaque session identifier.

Each session holds at most one outstanding challenge. Issuing a new ceremony
replaces whatever the session held before, and finishing a ceremony consumes
the entry atomically so the same challenge can never be verified twice.
Entries carry an explicit expiry and are treated as absent once it passes.
"""
from __future__ import annotations

import abc
import json
import logging
import threading
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional

from .storage import Database, convert_bytes_for_json

__all__ = [
    "CeremonyKind",
    "CeremonyState",
    "ChallengeSession",
    "ChallengeStore",
    "DatabaseChallengeStore",
    "MemoryChallengeStore",
    "create_challenge_store",
]

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


class CeremonyKind(str, Enum):
    REGISTRATION = "registration"
    AUTHENTICATION = "authentication"


class CeremonyState(str, Enum):
    IDLE = "idle"
    OPTIONS_ISSUED = "options-issued"
    RESPONSE_RECEIVED = "response-received"
    VERIFIED = "verified"
    REJECTED = "rejected"


@dataclass(frozen=True)
class ChallengeSession:
    challenge: str
    kind: CeremonyKind
    server_state: Dict[str, Any]
    options: Dict[str, Any]
    created_at: float
    expires_at: float
    user_id: Optional[int] = None
    username: Optional[str] = None
    state: CeremonyState = CeremonyState.OPTIONS_ISSUED
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def issue(
        cls,
        kind: CeremonyKind,
        server_state: Mapping[str, Any],
        options: Mapping[str, Any],
        *,
        ttl: float,
        user_id: Optional[int] = None,
        username: Optional[str] = None,
        clock: Clock = time.time,
    ) -> "ChallengeSession":
        now = clock()
        return cls(
            challenge=str(server_state["challenge"]),
            kind=kind,
            server_state=dict(server_state),
            options=dict(options),
            created_at=now,
            expires_at=now + ttl,
            user_id=user_id,
            username=username,
        )

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def advance(self, state: CeremonyState) -> "ChallengeSession":
        return replace(self, state=state)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "challenge": self.challenge,
            "kind": self.kind.value,
            "server_state": convert_bytes_for_json(self.server_state),
            "options": convert_bytes_for_json(self.options),
            "created_at": self.created_at,
            "expires_at": self.expires_at,
            "user_id": self.user_id,
            "username": self.username,
            "state": self.state.value,
            "extra": convert_bytes_for_json(self.extra),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ChallengeSession":
        return cls(
            challenge=data["challenge"],
            kind=CeremonyKind(data["kind"]),
            server_state=dict(data.get("server_state") or {}),
            options=dict(data.get("options") or {}),
            created_at=float(data["created_at"]),
            expires_at=float(data["expires_at"]),
            user_id=data.get("user_id"),
            username=data.get("username"),
            state=CeremonyState(data.get("state", CeremonyState.OPTIONS_ISSUED.value)),
            extra=dict(data.get("extra") or {}),
        )


class ChallengeStore(abc.ABC):
    """Keyed store with single-writer overwrite semantics."""

    def __init__(self, clock: Clock = time.time) -> None:
        self.clock = clock

    @abc.abstractmethod
    def put(self, session_id: str, ceremony: ChallengeSession) -> None:
        """Store ``ceremony``, abandoning any previous one for the session."""

    @abc.abstractmethod
    def peek(self, session_id: str) -> Optional[ChallengeSession]:
        """Return the live ceremony without consuming it."""

    @abc.abstractmethod
    def take(self, session_id: str) -> Optional[ChallengeSession]:
        """Atomically remove and return the live ceremony."""

    @abc.abstractmethod
    def clear(self, session_id: str) -> None:
        ...

    @abc.abstractmethod
    def purge_expired(self) -> int:
        ...


class MemoryChallengeStore(ChallengeStore):
    """In-process store; suitable for a single server process.

    Expired entries are dropped on every write, and at most ``max_entries``
    sessions are held. Past that limit the oldest pending challenge is evicted.
    """

    def __init__(self, clock: Clock = time.time, *, max_entries: int = 10_000) -> None:
        super().__init__(clock)
        if max_entries < 1:
            raise ValueError("max_entries must be positive")
        self.max_entries = max_entries
        self._entries: Dict[str, ChallengeSession] = {}
        self._lock = threading.Lock()

    def _drop_expired_locked(self, now: float) -> int:
        expired = [key for key, value in self._entries.items() if value.is_expired(now)]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def put(self, session_id: str, ceremony: ChallengeSession) -> None:
        evicted = 0
        with self._lock:
            self._drop_expired_locked(self.clock())
            previous = self._entries.pop(session_id, None)
            while len(self._entries) >= self.max_entries:
                del self._entries[next(iter(self._entries))]
                evicted += 1
            self._entries[session_id] = ceremony
        if evicted:
            logger.warning("Challenge store full; evicted %d pending challenge(s)", evicted)
        if previous is not None:
            logger.info(
                "Abandoned unconsumed %s challenge %s... for a new %s ceremony",
                previous.kind.value,
                previous.challenge[:8],
                ceremony.kind.value,
            )

    def peek(self, session_id: str) -> Optional[ChallengeSession]:
        with self._lock:
            ceremony = self._entries.get(session_id)
            if ceremony is not None and ceremony.is_expired(self.clock()):
                del self._entries[session_id]
                return None
            return ceremony

    def take(self, session_id: str) -> Optional[ChallengeSession]:
        with self._lock:
            ceremony = self._entries.pop(session_id, None)
        if ceremony is None:
            return None
        if ceremony.is_expired(self.clock()):
            logger.info("Discarded expired %s challenge %s...", ceremony.kind.value, ceremony.challenge[:8])
            return None
        return ceremony

    def clear(self, session_id: str) -> None:
        with self._lock:
            self._entries.pop(session_id, None)

    def purge_expired(self) -> int:
        with self._lock:
            return self._drop_expired_locked(self.clock())

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class DatabaseChallengeStore(ChallengeStore):
    """Store shared by every worker process using the same database file."""

    def __init__(self, database: Database, clock: Clock = time.time) -> None:
        super().__init__(clock)
        self.database = database

    def put(self, session_id: str, ceremony: ChallengeSession) -> None:
        payload = json.dumps(ceremony.to_dict())
        with self.database.connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO webauthn_challenges (session_id, payload, expires_at) "
                "VALUES (?, ?, ?)",
                (session_id, payload, ceremony.expires_at),
            )

    def peek(self, session_id: str) -> Optional[ChallengeSession]:
        with self.database.connect() as conn:
            row = conn.execute(
                "SELECT payload FROM webauthn_challenges WHERE session_id = ? AND expires_at > ?",
                (session_id, self.clock()),
            ).fetchone()
        return ChallengeSession.from_dict(json.loads(row["payload"])) if row else None

    def take(self, session_id: str) -> Optional[ChallengeSession]:
        with self.database.connect() as conn:
            row = conn.execute(
                "SELECT payload, expires_at FROM webauthn_challenges WHERE session_id = ?",
                (session_id,),
            ).fetchone()
            if row is None:
                return None
            cursor = conn.execute(
                "DELETE FROM webauthn_challenges WHERE session_id = ? AND payload = ?",
                (session_id, row["payload"]),
            )
            if cursor.rowcount != 1:
                # Another worker consumed or replaced it first.
                return None
        if row["expires_at"] <= self.clock():
            return None
        return ChallengeSession.from_dict(json.loads(row["payload"]))

    def clear(self, session_id: str) -> None:
        with self.database.connect() as conn:
            conn.execute("DELETE FROM webauthn_challenges WHERE session_id = ?", (session_id,))

    def purge_expired(self) -> int:
        with self.database.connect() as conn:
            cursor = conn.execute(
                "DELETE FROM webauthn_challenges WHERE expires_at <= ?", (self.clock(),)
            )
            return cursor.rowcount


def create_challenge_store(backend: str, database: Optional[Database] = None) -> ChallengeStore:
    backend = (backend or "memory").strip().lower()
    if backend == "memory":
        return MemoryChallengeStore()
    if backend == "database":
        if database is None:
            raise ValueError("The database challenge backend requires a database")
        return DatabaseChallengeStore(database)
    raise ValueError(f"Unknown challenge store backend: {backend!r}")
