"""Credential and user storage backed by SQLite."""
from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

from fido2.utils import websafe_encode

from .errors import StoreUnavailable

__all__ = [
    "Credential",
    "CredentialStore",
    "Database",
    "DuplicateCredential",
    "DuplicateUser",
    "MissingOwner",
    "User",
    "UserStore",
    "convert_bytes_for_json",
]

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    username TEXT NOT NULL UNIQUE,
    name TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS webauthn_credentials (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    credential_id BLOB NOT NULL UNIQUE,
    public_key BLOB NOT NULL,
    counter INTEGER NOT NULL DEFAULT 0 CHECK (counter >= 0),
    transports TEXT,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_webauthn_credentials_user
    ON webauthn_credentials (user_id);

CREATE TABLE IF NOT EXISTS webauthn_challenges (
    session_id TEXT PRIMARY KEY,
    payload TEXT NOT NULL,
    expires_at REAL NOT NULL
);
"""


class DuplicateCredential(Exception):
    """Raised when a credential identifier is already registered."""


class DuplicateUser(Exception):
    """Raised when a username is already taken."""


class MissingOwner(Exception):
    """Raised when a credential is stored for a user that no longer exists."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def convert_bytes_for_json(obj: Any) -> Any:
    """Recursively convert bytes-like objects to base64url strings for JSON serialization."""
    if isinstance(obj, (bytes, bytearray, memoryview)):
        return websafe_encode(bytes(obj))
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, dict) or hasattr(obj, "items"):
        return {k: convert_bytes_for_json(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [convert_bytes_for_json(item) for item in obj]
    return obj


@dataclass(frozen=True)
class User:
    id: int
    username: str
    name: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.name or self.username

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "username": self.username, "name": self.name}


@dataclass(frozen=True)
class Credential:
    id: int
    user_id: int
    credential_id: bytes
    public_key: bytes
    counter: int
    transports: Tuple[str, ...] = field(default_factory=tuple)
    created_at: Optional[datetime] = None

    @property
    def credential_id_b64(self) -> str:
        return websafe_encode(self.credential_id)

    def to_status_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "created": self.created_at.isoformat() if self.created_at else None,
        }


def _split_transports(raw: Optional[str]) -> Tuple[str, ...]:
    if not raw:
        return ()
    return tuple(part for part in (item.strip() for item in raw.split(",")) if part)


def _credential_from_row(row: sqlite3.Row) -> Credential:
    return Credential(
        id=row["id"],
        user_id=row["user_id"],
        credential_id=bytes(row["credential_id"]),
        public_key=bytes(row["public_key"]),
        counter=row["counter"],
        transports=_split_transports(row["transports"]),
        created_at=_parse_timestamp(row["created_at"]),
    )


def _user_from_row(row: sqlite3.Row) -> User:
    return User(id=row["id"], username=row["username"], name=row["name"])


class Database:
    """Thin wrapper handing out SQLite connections for one database file."""

    def __init__(self, path: str, *, timeout: float = 10.0) -> None:
        self.path = path
        self.timeout = timeout

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        """Yield a connection inside a transaction.

        Any ``sqlite3.Error`` other than an integrity violation is surfaced
        as :class:`StoreUnavailable`.
        """

        try:
            conn = sqlite3.connect(self.path, timeout=self.timeout)
        except sqlite3.Error as exc:
            logger.exception("Unable to open database %s", self.path)
            raise StoreUnavailable() from exc

        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA foreign_keys = ON")
            with conn:
                yield conn
        except sqlite3.IntegrityError:
            raise
        except sqlite3.Error as exc:
            logger.exception("Database operation failed on %s", self.path)
            raise StoreUnavailable() from exc
        finally:
            conn.close()

    def initialize(self) -> None:
        try:
            conn = sqlite3.connect(self.path, timeout=self.timeout)
        except sqlite3.Error as exc:
            raise StoreUnavailable() from exc
        try:
            conn.executescript(_SCHEMA)
            conn.commit()
        except sqlite3.Error as exc:
            logger.exception("Unable to create schema in %s", self.path)
            raise StoreUnavailable() from exc
        finally:
            conn.close()
        logger.info("Database schema ready at %s", self.path)


class UserStore:
    def __init__(self, database: Database) -> None:
        self.database = database

    def create(self, username: str, name: Optional[str] = None) -> User:
        username = username.strip()
        if not username:
            raise ValueError("username must not be empty")
        try:
            with self.database.connect() as conn:
                cursor = conn.execute(
                    "INSERT INTO users (username, name, created_at) VALUES (?, ?, ?)",
                    (username, name, _utcnow().isoformat()),
                )
                user_id = cursor.lastrowid
        except sqlite3.IntegrityError as exc:
            raise DuplicateUser(username) from exc
        return User(id=int(user_id), username=username, name=name)

    def get(self, user_id: int) -> Optional[User]:
        with self.database.connect() as conn:
            row = conn.execute(
                "SELECT id, username, name FROM users WHERE id = ?", (user_id,)
            ).fetchone()
        return _user_from_row(row) if row else None

    def get_by_username(self, username: str) -> Optional[User]:
        with self.database.connect() as conn:
            row = conn.execute(
                "SELECT id, username, name FROM users WHERE username = ?", (username,)
            ).fetchone()
        return _user_from_row(row) if row else None


class CredentialStore:
    """Persistent credential rows keyed by the authenticator's credential id."""

    _COLUMNS = "id, user_id, credential_id, public_key, counter, transports, created_at"

    def __init__(self, database: Database) -> None:
        self.database = database

    def list_for_user(self, user_id: int) -> List[Credential]:
        with self.database.connect() as conn:
            rows = conn.execute(
                f"SELECT {self._COLUMNS} FROM webauthn_credentials WHERE user_id = ? ORDER BY id",
                (user_id,),
            ).fetchall()
        return [_credential_from_row(row) for row in rows]

    def get(self, row_id: int) -> Optional[Credential]:
        with self.database.connect() as conn:
            row = conn.execute(
                f"SELECT {self._COLUMNS} FROM webauthn_credentials WHERE id = ?", (row_id,)
            ).fetchone()
        return _credential_from_row(row) if row else None

    def get_by_credential_id(self, credential_id: bytes) -> Optional[Credential]:
        with self.database.connect() as conn:
            row = conn.execute(
                f"SELECT {self._COLUMNS} FROM webauthn_credentials WHERE credential_id = ?",
                (bytes(credential_id),),
            ).fetchone()
        return _credential_from_row(row) if row else None

    def create(
        self,
        user_id: int,
        credential_id: bytes,
        public_key: bytes,
        counter: int,
        transports: Iterable[str] = (),
    ) -> Credential:
        if counter < 0:
            raise ValueError("signature counter must be non-negative")
        transport_tuple = tuple(dict.fromkeys(t for t in transports if isinstance(t, str) and t))
        created_at = _utcnow()
        try:
            with self.database.connect() as conn:
                cursor = conn.execute(
                    "INSERT INTO webauthn_credentials "
                    "(user_id, credential_id, public_key, counter, transports, created_at) "
                    "VALUES (?, ?, ?, ?, ?, ?)",
                    (
                        user_id,
                        bytes(credential_id),
                        bytes(public_key),
                        counter,
                        ",".join(transport_tuple) or None,
                        created_at.isoformat(),
                    ),
                )
                row_id = cursor.lastrowid
        except sqlite3.IntegrityError as exc:
            message = str(exc).upper()
            if "UNIQUE" in message:
                raise DuplicateCredential(websafe_encode(bytes(credential_id))) from exc
            if "FOREIGN KEY" in message:
                raise MissingOwner(user_id) from exc
            logger.exception("Unexpected constraint failure storing credential for user %d", user_id)
            raise StoreUnavailable() from exc

        return Credential(
            id=int(row_id),
            user_id=user_id,
            credential_id=bytes(credential_id),
            public_key=bytes(public_key),
            counter=counter,
            transports=transport_tuple,
            created_at=created_at,
        )

    def update_counter(self, credential_id: bytes, expected: int, new: int) -> bool:
        """Compare-and-set the signature counter.

        Returns ``False`` when the stored counter no longer equals
        ``expected``, i.e. a concurrent authentication won the race.
        """

        with self.database.connect() as conn:
            cursor = conn.execute(
                "UPDATE webauthn_credentials SET counter = ? "
                "WHERE credential_id = ? AND counter = ?",
                (new, bytes(credential_id), expected),
            )
            updated = cursor.rowcount == 1
        if not updated:
            logger.warning(
                "Counter update lost for credential %s (expected %d)",
                websafe_encode(bytes(credential_id))[:12],
                expected,
            )
        return updated

    def delete(self, row_id: int) -> bool:
        with self.database.connect() as conn:
            cursor = conn.execute("DELETE FROM webauthn_credentials WHERE id = ?", (row_id,))
            return cursor.rowcount > 0
