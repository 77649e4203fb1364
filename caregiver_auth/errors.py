"""Error taxonomy for the passkey ceremonies."""
from __future__ import annotations

from typing import Any, Dict, Optional

__all__ = [
    "BadRequest",
    "CeremonyError",
    "ConfigurationError",
    "CredentialNotFound",
    "CredentialOwnershipMismatch",
    "Forbidden",
    "NoCredentials",
    "NotFound",
    "SessionExpired",
    "StoreUnavailable",
    "Unauthenticated",
    "UserNotFound",
    "VerificationFailed",
]


class ConfigurationError(Exception):
    """Raised when the relying party configuration is unusable."""


class CeremonyError(Exception):
    """Base class for outcomes surfaced to the caller of a ceremony step.

    Every subclass maps to one distinct, user-actionable outcome. None of
    them are retried: a WebAuthn ceremony is single-shot per challenge.
    """

    code = "CeremonyError"
    status_code = 400
    default_message = "WebAuthn ceremony failed"

    def __init__(self, message: Optional[str] = None, *, status_code: Optional[int] = None) -> None:
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.message}


class BadRequest(CeremonyError):
    code = "BadRequest"
    default_message = "Malformed request"


class Unauthenticated(CeremonyError):
    code = "Unauthenticated"
    status_code = 401
    default_message = "Not authenticated"


class SessionExpired(CeremonyError):
    code = "SessionExpired"
    default_message = "WebAuthn session expired"


class UserNotFound(CeremonyError):
    code = "UserNotFound"
    status_code = 404
    default_message = "User not found"


class NoCredentials(CeremonyError):
    code = "NoCredentials"
    default_message = "No WebAuthn credentials found for this user"


class CredentialNotFound(CeremonyError):
    code = "CredentialNotFound"
    default_message = "Credential not found"


class CredentialOwnershipMismatch(CeremonyError):
    code = "CredentialOwnershipMismatch"
    status_code = 403
    default_message = "Credential does not belong to this user"


class VerificationFailed(CeremonyError):
    code = "VerificationFailed"
    default_message = "WebAuthn verification failed"


class Forbidden(CeremonyError):
    code = "Forbidden"
    status_code = 403
    default_message = "Not authorized to delete this credential"


class NotFound(CeremonyError):
    code = "NotFound"
    status_code = 404
    default_message = "Credential not found"


class StoreUnavailable(CeremonyError):
    code = "StoreUnavailable"
    status_code = 503
    default_message = "Credential store unavailable"
