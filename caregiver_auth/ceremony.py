"""Registration and authentication ceremony orchestration.

Each ceremony runs ``IDLE -> OPTIONS_ISSUED -> RESPONSE_RECEIVED`` and ends in
``VERIFIED`` or ``REJECTED``. The challenge is taken out of the store as soon
as a response arrives, so every terminal state leaves the session without an
outstanding challenge.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from flask import Flask, current_app, has_app_context

from .challenges import (
    CeremonyKind,
    CeremonyState,
    ChallengeSession,
    ChallengeStore,
    create_challenge_store,
)
from .config import app, get_relying_party
from .errors import (
    BadRequest,
    CeremonyError,
    CredentialNotFound,
    CredentialOwnershipMismatch,
    Forbidden,
    NoCredentials,
    NotFound,
    SessionExpired,
    Unauthenticated,
    UserNotFound,
    VerificationFailed,
)
from .storage import (
    Credential,
    CredentialStore,
    Database,
    DuplicateCredential,
    MissingOwner,
    User,
    UserStore,
)
from .verifier import CeremonyCrypto, Fido2CeremonyCrypto, credential_id_from_response

__all__ = [
    "CeremonyOrchestrator",
    "Services",
    "get_services",
    "init_app",
]

logger = logging.getLogger(__name__)

_SERVICES_EXTENSION_KEY = "caregiver_auth.services"


def _prefix(challenge: str) -> str:
    return challenge[:8] + "..."


class CeremonyOrchestrator:
    def __init__(
        self,
        users: UserStore,
        credentials: CredentialStore,
        challenges: ChallengeStore,
        crypto: CeremonyCrypto,
        *,
        challenge_ttl: float = 300,
    ) -> None:
        self.users = users
        self.credentials = credentials
        self.challenges = challenges
        self.crypto = crypto
        self.challenge_ttl = challenge_ttl

    # -- helpers -----------------------------------------------------------

    def _issue(
        self,
        session_id: str,
        kind: CeremonyKind,
        issued: Any,
        *,
        user_id: Optional[int] = None,
        username: Optional[str] = None,
    ) -> ChallengeSession:
        ceremony = ChallengeSession.issue(
            kind,
            issued.state,
            issued.options,
            ttl=self.challenge_ttl,
            user_id=user_id,
            username=username,
            clock=self.challenges.clock,
        )
        self.challenges.put(session_id, ceremony)
        logger.info(
            "%s ceremony %s -> %s (challenge %s)",
            kind.value,
            CeremonyState.IDLE.value,
            ceremony.state.value,
            _prefix(ceremony.challenge),
        )
        return ceremony

    def _receive(self, session_id: Optional[str], kind: CeremonyKind, message: str) -> ChallengeSession:
        ceremony = self.challenges.take(session_id) if session_id else None
        if ceremony is None:
            raise SessionExpired(message)
        if ceremony.kind is not kind:
            logger.warning(
                "Discarded %s challenge %s presented to a %s finish",
                ceremony.kind.value,
                _prefix(ceremony.challenge),
                kind.value,
            )
            raise SessionExpired(message)
        return ceremony.advance(CeremonyState.RESPONSE_RECEIVED)

    @staticmethod
    def _finish(ceremony: ChallengeSession, state: CeremonyState, reason: Optional[str] = None) -> None:
        ceremony = ceremony.advance(state)
        if state is CeremonyState.VERIFIED:
            logger.info(
                "%s ceremony %s (challenge %s)", ceremony.kind.value, state.value, _prefix(ceremony.challenge)
            )
        else:
            logger.warning(
                "%s ceremony %s (challenge %s): %s",
                ceremony.kind.value,
                state.value,
                _prefix(ceremony.challenge),
                reason,
            )

    # -- registration ------------------------------------------------------

    def registration_start(self, session_id: str, user: Optional[User]) -> Dict[str, Any]:
        """Issue creation options for ``user``, replacing any pending ceremony."""

        if user is None:
            raise Unauthenticated()
        existing = self.credentials.list_for_user(user.id)
        issued = self.crypto.registration_options(user, existing)
        self._issue(session_id, CeremonyKind.REGISTRATION, issued, user_id=user.id)
        return issued.options

    def registration_finish(self, session_id: Optional[str], user: Optional[User], response: Any) -> Credential:
        if user is None:
            raise Unauthenticated()

        ceremony = self._receive(session_id, CeremonyKind.REGISTRATION, "Registration session expired")
        if ceremony.user_id != user.id:
            self._finish(ceremony, CeremonyState.REJECTED, "challenge bound to another user")
            raise SessionExpired("Registration session expired")

        try:
            result = self.crypto.verify_registration(ceremony.server_state, response)
        except CeremonyError as exc:
            self._finish(ceremony, CeremonyState.REJECTED, exc.message)
            raise

        try:
            credential = self.credentials.create(
                user.id,
                result.credential_id,
                result.public_key,
                result.counter,
                result.transports,
            )
        except DuplicateCredential as exc:
            self._finish(ceremony, CeremonyState.REJECTED, "credential already registered")
            raise VerificationFailed("Credential is already registered") from exc
        except MissingOwner as exc:
            self._finish(ceremony, CeremonyState.REJECTED, "account no longer exists")
            raise Unauthenticated("Account no longer exists") from exc
        except CeremonyError as exc:
            self._finish(ceremony, CeremonyState.REJECTED, exc.message)
            raise

        self._finish(ceremony, CeremonyState.VERIFIED)
        logger.info("Registered credential %s for user %d", credential.credential_id_b64[:12], user.id)
        return credential

    # -- authentication ----------------------------------------------------

    def authentication_start(self, session_id: str, username: Optional[str]) -> Dict[str, Any]:
        username = (username or "").strip()
        if not username:
            raise BadRequest("Username is required")

        user = self.users.get_by_username(username)
        if user is None:
            raise UserNotFound()

        allowed = self.credentials.list_for_user(user.id)
        if not allowed:
            raise NoCredentials()

        issued = self.crypto.authentication_options(allowed)
        self._issue(session_id, CeremonyKind.AUTHENTICATION, issued, username=user.username)
        return issued.options

    def authentication_finish(
        self,
        session_id: Optional[str],
        response: Any,
        establish_session: Callable[[User], None],
    ) -> User:
        """Verify an assertion and only then call ``establish_session``.

        The stored counter is advanced before the session is established; if
        that callback fails the counter stays advanced.
        """

        ceremony = self._receive(session_id, CeremonyKind.AUTHENTICATION, "Authentication session expired")
        if not ceremony.username:
            self._finish(ceremony, CeremonyState.REJECTED, "no username bound to challenge")
            raise SessionExpired("Authentication session expired")

        try:
            user = self.users.get_by_username(ceremony.username)
            if user is None:
                raise UserNotFound()

            credential_id = credential_id_from_response(response)
            credential = self.credentials.get_by_credential_id(credential_id)
            if credential is None:
                raise CredentialNotFound()
            if credential.user_id != user.id:
                raise CredentialOwnershipMismatch()

            result = self.crypto.verify_authentication(ceremony.server_state, response, credential)

            if not self.credentials.update_counter(credential.credential_id, credential.counter, result.new_counter):
                raise VerificationFailed("Credential was used concurrently; please retry")
        except CeremonyError as exc:
            self._finish(ceremony, CeremonyState.REJECTED, exc.message)
            raise

        establish_session(user)
        self._finish(ceremony, CeremonyState.VERIFIED)
        return user

    # -- management --------------------------------------------------------

    def status(self, user: Optional[User]) -> Dict[str, Any]:
        if user is None:
            raise Unauthenticated()
        credentials = self.credentials.list_for_user(user.id)
        return {
            "enabled": bool(credentials),
            "credentials": [credential.to_status_dict() for credential in credentials],
        }

    def delete_credential(self, user: Optional[User], row_id: int) -> None:
        if user is None:
            raise Unauthenticated()
        credential = self.credentials.get(row_id)
        if credential is None:
            raise NotFound()
        if credential.user_id != user.id:
            raise Forbidden()
        self.credentials.delete(row_id)
        logger.info("User %d deleted credential %d", user.id, row_id)


@dataclass
class Services:
    database: Database
    users: UserStore
    credentials: CredentialStore
    challenges: ChallengeStore
    orchestrator: CeremonyOrchestrator


def init_app(
    target: Optional[Flask] = None,
    *,
    crypto: Optional[CeremonyCrypto] = None,
    challenges: Optional[ChallengeStore] = None,
) -> Services:
    """Create the stores and orchestrator for ``target`` from its config."""

    flask_app = target or app
    database = Database(flask_app.config["DATABASE"])
    database.initialize()

    if challenges is None:
        challenges = create_challenge_store(flask_app.config.get("WEBAUTHN_CHALLENGE_BACKEND", "memory"), database)
    if crypto is None:
        crypto = Fido2CeremonyCrypto(
            get_relying_party(flask_app),
            allow_counterless=bool(flask_app.config.get("WEBAUTHN_ALLOW_COUNTERLESS")),
        )

    users = UserStore(database)
    credentials = CredentialStore(database)
    orchestrator = CeremonyOrchestrator(
        users,
        credentials,
        challenges,
        crypto,
        challenge_ttl=float(flask_app.config.get("WEBAUTHN_CHALLENGE_TTL", 300)),
    )
    services = Services(database, users, credentials, challenges, orchestrator)
    flask_app.extensions[_SERVICES_EXTENSION_KEY] = services
    flask_app.logger.info(
        "Ceremony services ready (database %s, %s challenge store)",
        database.path,
        type(challenges).__name__,
    )
    return services


def get_services() -> Services:
    flask_app = current_app._get_current_object() if has_app_context() else app  # type: ignore[attr-defined]
    services = flask_app.extensions.get(_SERVICES_EXTENSION_KEY)
    if services is None:
        services = init_app(flask_app)
    return services
