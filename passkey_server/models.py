"""Records exchanged between the ceremony engine and credential stores."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from fido2.utils import websafe_decode
from fido2.webauthn import (
    AuthenticatorTransport,
    PublicKeyCredentialDescriptor,
    PublicKeyCredentialType,
)

__all__ = [
    "ChallengeSession",
    "Credential",
    "DeviceCategory",
    "LoginSession",
    "Purpose",
    "User",
]


class DeviceCategory(str, Enum):
    PLATFORM = "platform"
    CROSS_PLATFORM = "cross-platform"


class Purpose(str, Enum):
    """What a ceremony challenge was issued for."""

    REGISTRATION = "registration"
    AUTHENTICATION = "authentication"


@dataclass(frozen=True)
class User:
    id: int
    username: str
    password_hash: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def user_handle(self) -> bytes:
        """Opaque WebAuthn user handle derived from the numeric id."""
        return str(self.id).encode("utf-8")


@dataclass(frozen=True)
class Credential:
    """A registered passkey. ``credential_id`` is unpadded base64url."""

    id: int
    user_id: int
    credential_id: str
    public_key: bytes
    counter: int
    device_type: DeviceCategory
    backup_eligible: bool = False
    backed_up: bool = False
    transports: Tuple[str, ...] = ()
    created_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None

    def descriptor(self) -> PublicKeyCredentialDescriptor:
        return PublicKeyCredentialDescriptor(
            type=PublicKeyCredentialType.PUBLIC_KEY,
            id=websafe_decode(self.credential_id),
            transports=[AuthenticatorTransport(t) for t in self.transports] or None,
        )

    def to_json(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "credentialId": self.credential_id,
            "deviceType": self.device_type.value,
            "backupEligible": self.backup_eligible,
            "backedUp": self.backed_up,
            "transports": list(self.transports) or None,
            "counter": self.counter,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "lastUsedAt": self.last_used_at.isoformat() if self.last_used_at else None,
        }


@dataclass(frozen=True)
class ChallengeSession:
    """A pending, single-use ceremony challenge."""

    id: str
    user_id: Optional[int]
    purpose: Purpose
    challenge: str
    created_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass(frozen=True)
class LoginSession:
    """Post-login session; lives far longer than a ceremony challenge."""

    id: str
    user_id: int
    username: str
    method: str
    created_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

