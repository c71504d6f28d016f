"""Configuration and application setup for the passkey server."""
from __future__ import annotations

import hashlib
import logging
import os
from dataclasses import dataclass
from typing import Any, Mapping, Optional
from urllib.parse import urlsplit

from fido2.webauthn import PublicKeyCredentialRpEntity
from flask import Flask

__all__ = [
    "DEFAULT_ORIGIN",
    "DEFAULT_RP_ID",
    "DEFAULT_RP_NAME",
    "RelyingPartySettings",
    "app",
    "build_rp_entity",
    "origin_matches_rp_id",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_RP_ID = "localhost"
DEFAULT_RP_NAME = "WebAuthn Test Demo"
DEFAULT_ORIGIN = "http://localhost:3000"
DEFAULT_DATABASE = os.path.join("data", "webauthn.db")

app = Flask(__name__)
app.secret_key = os.environ.get("PASSKEY_SECRET_KEY") or os.urandom(32)


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
    except ValueError:
        LOGGER.warning("Ignoring non-integer value %r for %s.", raw_value, name)
        return default


app.config.setdefault("PASSKEY_RP_ID", os.environ.get("PASSKEY_RP_ID", DEFAULT_RP_ID))
app.config.setdefault("PASSKEY_RP_NAME", os.environ.get("PASSKEY_RP_NAME", DEFAULT_RP_NAME))
app.config.setdefault("PASSKEY_ORIGIN", os.environ.get("PASSKEY_ORIGIN", DEFAULT_ORIGIN))
app.config.setdefault("PASSKEY_DATABASE", os.environ.get("PASSKEY_DATABASE", DEFAULT_DATABASE))
app.config.setdefault("PASSKEY_CEREMONY_TIMEOUT_MS", _env_int("PASSKEY_CEREMONY_TIMEOUT_MS", 60000))
app.config.setdefault(
    "PASSKEY_REGISTRATION_CHALLENGE_TTL", _env_int("PASSKEY_REGISTRATION_CHALLENGE_TTL", 300)
)
app.config.setdefault(
    "PASSKEY_AUTHENTICATION_CHALLENGE_TTL", _env_int("PASSKEY_AUTHENTICATION_CHALLENGE_TTL", 300)
)
app.config.setdefault("PASSKEY_LOGIN_SESSION_TTL", _env_int("PASSKEY_LOGIN_SESSION_TTL", 24 * 60 * 60))
app.config.setdefault("PASSKEY_SWEEP_INTERVAL", _env_int("PASSKEY_SWEEP_INTERVAL", 0))

app.config.setdefault("PASSKEY_EXPOSE_DEBUG_LOGS", bool(_env_flag("PASSKEY_EXPOSE_DEBUG_LOGS")))


def origin_matches_rp_id(origin: str, rp_id: str) -> bool:
    """Return whether ``origin``'s host is the RP ID or one of its subdomains."""

    host = (urlsplit(origin).hostname or "").lower()
    rp_id = rp_id.lower()
    return host == rp_id or host.endswith("." + rp_id)


def build_rp_entity(rp_id: str, rp_name: str) -> PublicKeyCredentialRpEntity:
    return PublicKeyCredentialRpEntity(name=rp_name, id=rp_id)


@dataclass(frozen=True)
class RelyingPartySettings:
    """Relying-party binding shared by every ceremony of one deployment."""

    rp_id: str = DEFAULT_RP_ID
    rp_name: str = DEFAULT_RP_NAME
    origin: str = DEFAULT_ORIGIN
    timeout_ms: int = 60000
    registration_challenge_ttl: int = 300
    authentication_challenge_ttl: int = 300

    def __post_init__(self) -> None:
        rp_id = (self.rp_id or "").strip()
        if not rp_id or "://" in rp_id:
            raise ValueError(f"RP ID must be a bare domain, got {self.rp_id!r}")
        object.__setattr__(self, "rp_id", rp_id)
        object.__setattr__(self, "origin", (self.origin or "").strip().rstrip("/"))

        if not origin_matches_rp_id(self.origin, self.rp_id):
            LOGGER.warning(
                "Origin %s is not within RP ID %s; every ceremony will be rejected.",
                self.origin,
                self.rp_id,
            )

    @classmethod
    def from_mapping(cls, config: Mapping[str, Any]) -> "RelyingPartySettings":
        return cls(
            rp_id=config.get("PASSKEY_RP_ID") or DEFAULT_RP_ID,
            rp_name=config.get("PASSKEY_RP_NAME") or DEFAULT_RP_NAME,
            origin=config.get("PASSKEY_ORIGIN") or DEFAULT_ORIGIN,
            timeout_ms=int(config.get("PASSKEY_CEREMONY_TIMEOUT_MS", 60000)),
            registration_challenge_ttl=int(config.get("PASSKEY_REGISTRATION_CHALLENGE_TTL", 300)),
            authentication_challenge_ttl=int(config.get("PASSKEY_AUTHENTICATION_CHALLENGE_TTL", 300)),
        )

    @property
    def rp_entity(self) -> PublicKeyCredentialRpEntity:
        return build_rp_entity(self.rp_id, self.rp_name)

    @property
    def rp_id_hash(self) -> bytes:
        return hashlib.sha256(self.rp_id.encode("utf-8")).digest()
