"""Caller identity held in the Flask session."""
from __future__ import annotations

import secrets
from typing import Optional

from flask import has_request_context, session

from .errors import Unauthenticated
from .storage import User, UserStore

__all__ = [
    "current_user",
    "ensure_ceremony_session_id",
    "get_ceremony_session_id",
    "login_user",
    "logout_user",
    "require_user",
]

_SESSION_USER_KEY = "user_id"
_SESSION_CEREMONY_KEY = "webauthn_session_id"


def get_ceremony_session_id(*, create: bool = False) -> Optional[str]:
    if not has_request_context():
        return None

    existing = session.get(_SESSION_CEREMONY_KEY)
    if isinstance(existing, str) and existing.strip():
        return existing.strip()

    if not create:
        return None

    identifier = secrets.token_urlsafe(32)
    session[_SESSION_CEREMONY_KEY] = identifier
    return identifier


def ensure_ceremony_session_id() -> str:
    identifier = get_ceremony_session_id(create=True)
    if not identifier:
        raise RuntimeError("Unable to establish a ceremony session identifier.")
    session.permanent = True
    return identifier


def current_user(users: UserStore) -> Optional[User]:
    if not has_request_context():
        return None
    user_id = session.get(_SESSION_USER_KEY)
    if not isinstance(user_id, int):
        return None
    user = users.get(user_id)
    if user is None:
        # Account removed while the cookie was still valid.
        session.pop(_SESSION_USER_KEY, None)
    return user


def require_user(users: UserStore) -> User:
    user = current_user(users)
    if user is None:
        raise Unauthenticated()
    return user


def login_user(user: User) -> None:
    """Mark ``user`` as authenticated and rotate the ceremony session id."""

    session[_SESSION_USER_KEY] = user.id
    session.pop(_SESSION_CEREMONY_KEY, None)
    session.permanent = True


def logout_user() -> None:
    session.pop(_SESSION_USER_KEY, None)
    session.pop(_SESSION_CEREMONY_KEY, None)
