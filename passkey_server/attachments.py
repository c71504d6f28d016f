"""Helpers for authenticator attachment, transport hints and device categories."""
from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any, FrozenSet, List, Optional, Set

from fido2.webauthn import Aaguid, AuthenticatorAttachment, AuthenticatorTransport

from .models import DeviceCategory

__all__ = [
    "KNOWN_TRANSPORTS",
    "device_category_from_aaguid",
    "normalize_attachment",
    "normalize_transports",
]


KNOWN_TRANSPORTS: FrozenSet[str] = frozenset(
    transport.value for transport in AuthenticatorTransport
)

_KNOWN_ATTACHMENTS: FrozenSet[str] = frozenset(
    attachment.value for attachment in AuthenticatorAttachment
)


def normalize_attachment(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    normalized = value.strip().lower()
    if normalized not in _KNOWN_ATTACHMENTS:
        return None
    return normalized


def normalize_transports(raw_values: Any) -> List[str]:
    """Return the recognised transport hints in first-seen order, without duplicates."""

    if isinstance(raw_values, Mapping):
        candidates: Iterable[Any] = raw_values.values()
    elif isinstance(raw_values, (str, bytes, bytearray)) or raw_values is None:
        return []
    elif isinstance(raw_values, Iterable):
        candidates = raw_values
    else:
        return []

    normalized: List[str] = []
    seen: Set[str] = set()
    for candidate in candidates:
        if not isinstance(candidate, str):
            continue
        value = candidate.strip().lower()
        if value in KNOWN_TRANSPORTS and value not in seen:
            normalized.append(value)
            seen.add(value)
    return normalized


def device_category_from_aaguid(aaguid: Optional[bytes]) -> DeviceCategory:
    """Classify an authenticator from its AAGUID.

    Platform authenticators registered without attestation report the all-zero
    AAGUID; any other AAGUID identifies a roaming authenticator model.
    """

    if aaguid is None or bytes(aaguid) == bytes(Aaguid.NONE):
        return DeviceCategory.PLATFORM
    return DeviceCategory.CROSS_PLATFORM
