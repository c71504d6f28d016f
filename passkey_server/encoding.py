"""Binary/text conversions for WebAuthn JSON payloads."""
from __future__ import annotations

import base64
import binascii
from collections.abc import Iterable, Mapping
from enum import Enum
from typing import Any

from fido2.utils import websafe_encode

__all__ = [
    "decode_binary_value",
    "encode_base64url",
    "format_credential_id",
    "make_json_safe",
    "normalize_credential_id",
]


def _add_base64_padding(value: str) -> str:
    return value + "=" * (-len(value) % 4)


def encode_base64url(data: bytes) -> str:
    """Encode bytes as unpadded base64url."""
    return websafe_encode(bytes(data))


def decode_binary_value(value: Any) -> bytes:
    """Decode a JSON binary field (base64url, base64 or a byte array) into bytes."""

    if value is None:
        raise ValueError("missing binary value")

    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)

    if isinstance(value, str):
        candidate = value.strip()
        if not candidate:
            raise ValueError("empty string")

        try:
            return base64.b64decode(_add_base64_padding(candidate), altchars=b"-_", validate=True)
        except (binascii.Error, ValueError):
            pass

        try:
            return base64.b64decode(_add_base64_padding(candidate), validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValueError("invalid base64 value") from exc

    if isinstance(value, Iterable):
        try:
            return bytes(value)
        except (TypeError, ValueError) as exc:
            raise ValueError("invalid byte array") from exc

    raise ValueError("unsupported binary value type")


def normalize_credential_id(value: Any) -> str:
    """Return the canonical textual form (unpadded base64url) of a credential id."""

    return encode_base64url(decode_binary_value(value))


def format_credential_id(credential_id: str) -> str:
    """Render a credential id as hex, or return it unchanged when it is not base64url."""

    try:
        return decode_binary_value(credential_id).hex()
    except ValueError:
        return credential_id


def make_json_safe(value: Any) -> Any:
    """Recursively convert bytes-like and enum option values into JSON-friendly data."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (bytes, bytearray, memoryview)):
        return encode_base64url(bytes(value))
    if isinstance(value, Mapping):
        return {key: make_json_safe(val) for key, val in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [make_json_safe(item) for item in value]
    return value
