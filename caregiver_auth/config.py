"""Configuration and application setup for the caregiver passkey service."""
from __future__ import annotations

import os
import re
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

from fido2.rpid import verify_rp_id
from fido2.server import Fido2Server
from fido2.webauthn import AttestationConveyancePreference, PublicKeyCredentialRpEntity
from flask import Flask, current_app, has_app_context

from .errors import ConfigurationError

app = Flask(__name__)
app.secret_key = os.environ.get("CAREGIVER_SECRET_KEY") or os.urandom(32)  # Used for session.

# Keep the database next to this module, regardless of CWD.
basepath = os.path.abspath(os.path.dirname(__file__))

_RP_EXTENSION_KEY = "caregiver_auth.relying_party"


def _env_flag(name: str) -> Optional[bool]:
    """Return ``True`` or ``False`` when the named env var is explicitly set."""

    raw_value = os.environ.get(name)
    if raw_value is None:
        return None

    normalised = raw_value.strip().lower()
    if normalised in {"", "0", "false", "off", "no"}:
        return False
    return True


def _env_int(name: str, default: int) -> int:
    raw_value = os.environ.get(name)
    if raw_value is None or not raw_value.strip():
        return default
    try:
        return int(raw_value.strip())
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be an integer, got {raw_value!r}") from exc


def _parse_origins(raw_value: Optional[str]) -> Optional[List[str]]:
    """Normalise a comma, semicolon or newline separated list of origins."""

    if raw_value is None:
        return None

    components = re.split(r"[,;\n]+", raw_value)
    origins: List[str] = []
    for component in components:
        cleaned = component.strip().rstrip("/")
        if cleaned and cleaned not in origins:
            origins.append(cleaned)
    if not origins:
        return None
    return origins


def _default_origins(rp_id: str, production: bool) -> List[str]:
    if production:
        return [f"https://{rp_id}"]
    if rp_id == "localhost":
        # Development server port.
        return [f"http://{rp_id}:5000", f"https://{rp_id}"]
    return [f"https://{rp_id}"]


_PRODUCTION = bool(_env_flag("CAREGIVER_PRODUCTION"))
_DEFAULT_RP_NAME = os.environ.get("CAREGIVER_RP_NAME", "CareGiver App")
_DEFAULT_RP_ID = (os.environ.get("CAREGIVER_RP_ID") or "localhost").strip().lower()

app.config.setdefault("PRODUCTION", _PRODUCTION)
app.config.setdefault("DATABASE", os.environ.get("CAREGIVER_DATABASE") or os.path.join(basepath, "caregiver.db"))
app.config.setdefault("WEBAUTHN_RP_NAME", _DEFAULT_RP_NAME)
app.config.setdefault("WEBAUTHN_RP_ID", _DEFAULT_RP_ID)
app.config.setdefault(
    "WEBAUTHN_ORIGINS",
    _parse_origins(os.environ.get("CAREGIVER_ORIGINS")) or _default_origins(_DEFAULT_RP_ID, _PRODUCTION),
)
app.config.setdefault("WEBAUTHN_CHALLENGE_TTL", _env_int("CAREGIVER_CHALLENGE_TTL", 300))
app.config.setdefault(
    "WEBAUTHN_CHALLENGE_BACKEND",
    (os.environ.get("CAREGIVER_CHALLENGE_BACKEND") or "memory").strip().lower(),
)
app.config.setdefault("WEBAUTHN_ALLOW_COUNTERLESS", bool(_env_flag("CAREGIVER_ALLOW_COUNTERLESS")))


@dataclass(frozen=True)
class RelyingParty:
    """Relying party identity plus the origins allowed to run ceremonies."""

    name: str
    id: str
    origins: Tuple[str, ...]

    def validate(self) -> None:
        if not self.name:
            raise ConfigurationError("Relying party name must not be empty")
        if not self.id:
            raise ConfigurationError("Relying party identifier must not be empty")
        if not self.origins:
            raise ConfigurationError("At least one accepted origin is required")
        for origin in self.origins:
            # The RP ID must be a registrable suffix of every accepted origin.
            if not verify_rp_id(self.id, origin):
                raise ConfigurationError(
                    f"Origin {origin!r} is not valid for relying party ID {self.id!r}"
                )

    def accepts_origin(self, origin: str) -> bool:
        return origin in self.origins

    def entity(self) -> PublicKeyCredentialRpEntity:
        return PublicKeyCredentialRpEntity(name=self.name, id=self.id)


def build_relying_party(
    name: Optional[str] = None,
    rp_id: Optional[str] = None,
    origins: Optional[Iterable[str]] = None,
) -> RelyingParty:
    """Resolve the relying party from explicit values or the app config."""

    config = app.config
    resolved_id = (rp_id or config.get("WEBAUTHN_RP_ID") or "localhost").strip().lower()
    resolved_name = name or config.get("WEBAUTHN_RP_NAME") or "CareGiver App"

    if origins is None:
        origins = config.get("WEBAUTHN_ORIGINS") or _default_origins(
            resolved_id, bool(config.get("PRODUCTION"))
        )
    if isinstance(origins, str):
        origins = _parse_origins(origins) or []

    normalised = tuple(dict.fromkeys(origin.strip().rstrip("/") for origin in origins if origin.strip()))
    return RelyingParty(name=resolved_name, id=resolved_id, origins=normalised)


def configure_relying_party(
    target: Optional[Flask] = None,
    *,
    name: Optional[str] = None,
    rp_id: Optional[str] = None,
    origins: Optional[Iterable[str]] = None,
) -> RelyingParty:
    """Validate the relying party and install it on the application.

    Raises :class:`ConfigurationError` when any accepted origin does not
    belong to the relying party identifier.
    """

    flask_app = target or app
    relying_party = build_relying_party(name, rp_id, origins)
    relying_party.validate()

    flask_app.config["WEBAUTHN_RP_NAME"] = relying_party.name
    flask_app.config["WEBAUTHN_RP_ID"] = relying_party.id
    flask_app.config["WEBAUTHN_ORIGINS"] = list(relying_party.origins)
    flask_app.extensions[_RP_EXTENSION_KEY] = relying_party
    flask_app.logger.info(
        "Relying party %r (%s) accepts origins: %s",
        relying_party.name,
        relying_party.id,
        ", ".join(relying_party.origins),
    )
    return relying_party


def get_relying_party(target: Optional[Flask] = None) -> RelyingParty:
    """Return the relying party installed on the active application."""

    flask_app = target or (current_app._get_current_object() if has_app_context() else app)  # type: ignore[attr-defined]
    relying_party = flask_app.extensions.get(_RP_EXTENSION_KEY)
    if relying_party is None:
        relying_party = configure_relying_party(flask_app)
    return relying_party


def create_fido_server(relying_party: RelyingParty) -> Fido2Server:
    """Instantiate a :class:`Fido2Server` bound to ``relying_party``.

    Origins are checked by membership in the configured list rather than by
    deriving them from the RP ID, so proxy and tunnel origins can be allowed
    explicitly.
    """

    return Fido2Server(
        relying_party.entity(),
        attestation=AttestationConveyancePreference.NONE,
        verify_origin=relying_party.accepts_origin,
    )


# Validate at import time so a misconfigured deployment fails to start.
rp = configure_relying_party(app)

__all__ = [
    "RelyingParty",
    "app",
    "basepath",
    "build_relying_party",
    "configure_relying_party",
    "create_fido_server",
    "get_relying_party",
    "rp",
]
