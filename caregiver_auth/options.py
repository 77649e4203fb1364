"""Builders for the registration and authentication option payloads."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping

from fido2.server import Fido2Server
from fido2.utils import websafe_encode
from fido2.webauthn import (
    AuthenticatorAttachment,
    AuthenticatorTransport,
    PublicKeyCredentialDescriptor,
    PublicKeyCredentialType,
    PublicKeyCredentialUserEntity,
    ResidentKeyRequirement,
    UserVerificationRequirement,
)

from .storage import Credential, User

__all__ = [
    "IssuedOptions",
    "REGISTRATION_ATTACHMENT",
    "REGISTRATION_RESIDENT_KEY",
    "USER_VERIFICATION",
    "build_authentication_options",
    "build_registration_options",
    "credential_descriptors",
    "make_json_safe",
    "user_entity",
]

# Preferences only; responses that ignore them are still accepted.
REGISTRATION_ATTACHMENT = AuthenticatorAttachment.PLATFORM
REGISTRATION_RESIDENT_KEY = ResidentKeyRequirement.PREFERRED
USER_VERIFICATION = UserVerificationRequirement.PREFERRED

_KNOWN_TRANSPORTS = {transport.value for transport in AuthenticatorTransport}


@dataclass(frozen=True)
class IssuedOptions:
    """Options payload for the client plus the state needed to verify its reply."""

    options: Dict[str, Any]
    state: Dict[str, Any]

    @property
    def challenge(self) -> str:
        return str(self.state["challenge"])


def make_json_safe(value: Any) -> Any:
    """Recursively convert fido2 option objects into JSON friendly structures."""

    if isinstance(value, (bytes, bytearray, memoryview)):
        return websafe_encode(bytes(value))
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Mapping):
        return {str(key): make_json_safe(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [make_json_safe(item) for item in value]
    return value


def user_entity(user: User) -> PublicKeyCredentialUserEntity:
    # The user handle is the UTF-8 form of the numeric id, never the username.
    return PublicKeyCredentialUserEntity(
        name=user.username,
        id=str(user.id).encode("utf-8"),
        display_name=user.display_name,
    )


def _transports(credential: Credential) -> List[AuthenticatorTransport]:
    return [AuthenticatorTransport(t) for t in credential.transports if t in _KNOWN_TRANSPORTS]


def credential_descriptors(credentials: Iterable[Credential]) -> List[PublicKeyCredentialDescriptor]:
    descriptors = []
    for credential in credentials:
        transports = _transports(credential)
        descriptors.append(
            PublicKeyCredentialDescriptor(
                type=PublicKeyCredentialType.PUBLIC_KEY,
                id=credential.credential_id,
                transports=transports or None,
            )
        )
    return descriptors


def build_registration_options(
    server: Fido2Server, user: User, exclude: Iterable[Credential]
) -> IssuedOptions:
    """Create options for a new credential, excluding ones ``user`` already owns."""

    options, state = server.register_begin(
        user_entity(user),
        credential_descriptors(exclude),
        resident_key_requirement=REGISTRATION_RESIDENT_KEY,
        user_verification=USER_VERIFICATION,
        authenticator_attachment=REGISTRATION_ATTACHMENT,
    )
    return IssuedOptions(options=make_json_safe(dict(options)), state=make_json_safe(state))


def build_authentication_options(server: Fido2Server, allow: Iterable[Credential]) -> IssuedOptions:
    options, state = server.authenticate_begin(
        credential_descriptors(allow),
        user_verification=USER_VERIFICATION,
    )
    return IssuedOptions(options=make_json_safe(dict(options)), state=make_json_safe(state))
