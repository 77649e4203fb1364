"""Ceremony verification on top of python-fido2.

The orchestrator only talks to :class:`CeremonyCrypto`; the fido2 backed
implementation lives in :class:`Fido2CeremonyCrypto`. Signature checks,
challenge matching, origin and RP-ID binding are delegated to
:class:`fido2.server.Fido2Server`. The signature counter policy is enforced
here because fido2 leaves it to the relying party.
"""
from __future__ import annotations

import abc
import logging
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Optional, Tuple

from fido2 import cbor
from fido2.cose import CoseKey
from fido2.utils import websafe_decode
from fido2.webauthn import AttestedCredentialData, AuthenticationResponse

from .config import RelyingParty, create_fido_server, get_relying_party
from .errors import VerificationFailed
from .options import IssuedOptions, build_authentication_options, build_registration_options
from .storage import Credential, User

__all__ = [
    "AuthenticationVerification",
    "CeremonyCrypto",
    "Fido2CeremonyCrypto",
    "RegistrationVerification",
    "check_counter",
    "credential_id_from_response",
]

logger = logging.getLogger(__name__)

# Placeholder AAGUID for rebuilding stored credentials; fido2 matches on id only.
_ZERO_AAGUID = bytes(16)


@dataclass(frozen=True)
class RegistrationVerification:
    credential_id: bytes
    public_key: bytes
    counter: int
    transports: Tuple[str, ...] = ()


@dataclass(frozen=True)
class AuthenticationVerification:
    credential_id: bytes
    new_counter: int


def check_counter(stored: int, new: int, *, allow_counterless: bool = False) -> bool:
    """Return ``True`` when ``new`` is an acceptable successor of ``stored``.

    The counter must strictly increase. An authenticator that never
    increments (stored 0, reported 0) is only tolerated when
    ``allow_counterless`` is set.
    """

    if new > stored:
        return True
    return allow_counterless and stored == 0 and new == 0


def credential_id_from_response(response: Any) -> bytes:
    """Extract the raw credential id from a client credential JSON object."""

    if not isinstance(response, Mapping):
        raise VerificationFailed("Credential response must be a JSON object")
    raw = response.get("rawId") or response.get("id")
    if not isinstance(raw, str) or not raw:
        raise VerificationFailed("Credential response is missing its id")
    try:
        return websafe_decode(raw)
    except (ValueError, TypeError) as exc:
        raise VerificationFailed("Credential id is not valid base64url") from exc


def _response_transports(response: Mapping[str, Any]) -> Tuple[str, ...]:
    inner = response.get("response")
    if not isinstance(inner, Mapping):
        return ()
    transports = inner.get("transports")
    if not isinstance(transports, (list, tuple)):
        return ()
    return tuple(t for t in transports if isinstance(t, str) and t)


class CeremonyCrypto(abc.ABC):
    """Capability the orchestrator uses to create and check ceremonies."""

    @abc.abstractmethod
    def registration_options(self, user: User, exclude: Iterable[Credential]) -> IssuedOptions:
        ...

    @abc.abstractmethod
    def authentication_options(self, allow: Iterable[Credential]) -> IssuedOptions:
        ...

    @abc.abstractmethod
    def verify_registration(
        self, state: Mapping[str, Any], response: Any
    ) -> RegistrationVerification:
        ...

    @abc.abstractmethod
    def verify_authentication(
        self, state: Mapping[str, Any], response: Any, credential: Credential
    ) -> AuthenticationVerification:
        ...


class Fido2CeremonyCrypto(CeremonyCrypto):
    def __init__(
        self,
        relying_party: Optional[RelyingParty] = None,
        *,
        allow_counterless: bool = False,
    ) -> None:
        self.relying_party = relying_party or get_relying_party()
        self.allow_counterless = allow_counterless
        self.server = create_fido_server(self.relying_party)

    def registration_options(self, user: User, exclude: Iterable[Credential]) -> IssuedOptions:
        return build_registration_options(self.server, user, exclude)

    def authentication_options(self, allow: Iterable[Credential]) -> IssuedOptions:
        return build_authentication_options(self.server, allow)

    def verify_registration(
        self, state: Mapping[str, Any], response: Any
    ) -> RegistrationVerification:
        credential_id_from_response(response)
        try:
            auth_data = self.server.register_complete(dict(state), response)
        except Exception as exc:
            logger.warning("Registration response rejected: %s", exc)
            raise VerificationFailed() from exc

        credential_data = auth_data.credential_data
        if credential_data is None:
            raise VerificationFailed("Registration response carries no credential data")

        return RegistrationVerification(
            credential_id=bytes(credential_data.credential_id),
            public_key=cbor.encode(dict(credential_data.public_key)),
            counter=int(auth_data.counter),
            transports=_response_transports(response),
        )

    def verify_authentication(
        self, state: Mapping[str, Any], response: Any, credential: Credential
    ) -> AuthenticationVerification:
        credential_id = credential_id_from_response(response)
        if credential_id != credential.credential_id:
            raise VerificationFailed("Credential id does not match the stored credential")

        try:
            parsed = AuthenticationResponse.from_dict(response)
            attested = AttestedCredentialData.create(
                _ZERO_AAGUID,
                credential.credential_id,
                CoseKey.parse(cbor.decode(credential.public_key)),
            )
            self.server.authenticate_complete(dict(state), [attested], parsed)
        except Exception as exc:
            logger.warning("Authentication response rejected: %s", exc)
            raise VerificationFailed() from exc

        new_counter = int(parsed.response.authenticator_data.counter)
        if not check_counter(credential.counter, new_counter, allow_counterless=self.allow_counterless):
            logger.warning(
                "Signature counter did not increase for credential %s (stored %d, got %d)",
                credential.credential_id_b64[:12],
                credential.counter,
                new_counter,
            )
            raise VerificationFailed("Signature counter did not increase; possible cloned authenticator")

        return AuthenticationVerification(credential_id=credential_id, new_counter=new_counter)
