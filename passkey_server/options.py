"""Registration and authentication options (WebAuthn JSON wire format)."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from fido2.cose import ES256, RS256
from fido2.utils import websafe_decode
from fido2.webauthn import (
    AttestationConveyancePreference,
    AuthenticatorAttachment,
    AuthenticatorSelectionCriteria,
    PublicKeyCredentialCreationOptions,
    PublicKeyCredentialDescriptor,
    PublicKeyCredentialParameters,
    PublicKeyCredentialRequestOptions,
    PublicKeyCredentialType,
    PublicKeyCredentialUserEntity,
    ResidentKeyRequirement,
    UserVerificationRequirement,
)

from .config import RelyingPartySettings
from .debug import CeremonyLog, redact_challenge
from .encoding import encode_base64url, make_json_safe
from .models import Credential
from .storage import CredentialStore

__all__ = [
    "CeremonyOptions",
    "MIN_CHALLENGE_BYTES",
    "SUPPORTED_ALGORITHMS",
    "generate_authentication_options",
    "generate_challenge",
    "generate_registration_options",
]

MIN_CHALLENGE_BYTES = 16
_CHALLENGE_BYTES = 32

# ECDSA P-256 with SHA-256, RSASSA-PKCS1-v1_5 with SHA-256.
SUPPORTED_ALGORITHMS: Tuple[int, ...] = (ES256.ALGORITHM, RS256.ALGORITHM)


@dataclass
class CeremonyOptions:
    options: Dict[str, Any]
    challenge: str
    debug_logs: List[Dict[str, Any]] = field(default_factory=list)


def generate_challenge(length: int = _CHALLENGE_BYTES) -> str:
    """Return a fresh random challenge as unpadded base64url."""

    if length < MIN_CHALLENGE_BYTES:
        raise ValueError(f"challenge must be at least {MIN_CHALLENGE_BYTES} bytes")
    return encode_base64url(os.urandom(length))


def _descriptors(credentials: Sequence[Credential]) -> List[PublicKeyCredentialDescriptor]:
    return [credential.descriptor() for credential in credentials]


def generate_registration_options(
    settings: RelyingPartySettings,
    user_id: int,
    username: str,
    existing_credentials: Sequence[Credential],
    *,
    log: Optional[CeremonyLog] = None,
) -> CeremonyOptions:
    """Build ``PublicKeyCredentialCreationOptions`` for ``username``.

    Credentials the user already owns go into ``excludeCredentials`` so an
    authenticator cannot be enrolled twice. Persisting the challenge is left
    to the caller.
    """

    log = log if log is not None else CeremonyLog("registration-options")
    log.info(
        "registration-start",
        "Starting passkey registration process",
        {"userId": user_id, "username": username},
    )

    exclude_credentials = _descriptors(existing_credentials)
    log.info(
        "registration-query",
        "Retrieved existing passkeys",
        {
            "count": len(existing_credentials),
            "passkeys": [
                {"id": c.credential_id, "deviceType": c.device_type.value}
                for c in existing_credentials
            ],
        },
    )

    challenge = generate_challenge()

    creation_options = PublicKeyCredentialCreationOptions(
        rp=settings.rp_entity,
        user=PublicKeyCredentialUserEntity(
            name=username,
            id=str(user_id).encode("utf-8"),
            display_name=username,
        ),
        challenge=websafe_decode(challenge),
        pub_key_cred_params=[
            PublicKeyCredentialParameters(type=PublicKeyCredentialType.PUBLIC_KEY, alg=alg)
            for alg in SUPPORTED_ALGORITHMS
        ],
        timeout=settings.timeout_ms,
        exclude_credentials=exclude_credentials,
        authenticator_selection=AuthenticatorSelectionCriteria(
            authenticator_attachment=AuthenticatorAttachment.PLATFORM,
            resident_key=ResidentKeyRequirement.PREFERRED,
            user_verification=UserVerificationRequirement.PREFERRED,
        ),
        attestation=AttestationConveyancePreference.NONE,
        extensions={"credProps": True},
    )
    options: Dict[str, Any] = make_json_safe(dict(creation_options))

    log.success(
        "registration-generated",
        "Registration options generated successfully",
        {
            "rpId": settings.rp_id,
            "challenge": redact_challenge(challenge),
            "excludeCredentials": len(exclude_credentials),
            "algorithms": list(SUPPORTED_ALGORITHMS),
        },
    )
    return CeremonyOptions(options=options, challenge=challenge, debug_logs=log.to_list())


def generate_authentication_options(
    settings: RelyingPartySettings,
    username: Optional[str],
    lookup: CredentialStore,
    *,
    log: Optional[CeremonyLog] = None,
) -> CeremonyOptions:
    """Build ``PublicKeyCredentialRequestOptions``.

    With a known ``username`` the user's credentials form ``allowCredentials``;
    otherwise the list is omitted and any discoverable credential may answer.
    """

    log = log if log is not None else CeremonyLog("authentication-options")
    log.info("auth-start", "Starting passkey authentication process", {"username": username})

    allow_credentials: List[PublicKeyCredentialDescriptor] = []
    if username:
        user = lookup.find_user_by_username(username)
        if user is not None:
            credentials = lookup.find_credentials_by_user(user.id)
            allow_credentials = _descriptors(credentials)
            log.info(
                "auth-credentials",
                "Found user passkeys",
                {
                    "username": username,
                    "passkeyCount": len(credentials),
                    "credentials": [
                        {"id": c.credential_id, "transports": list(c.transports) or None}
                        for c in credentials
                    ],
                },
            )
        else:
            # Same options as the discoverable flow so unknown usernames look like known ones.
            log.info("auth-credentials", "No passkeys to restrict to; using discoverable flow")

    challenge = generate_challenge()
    request_options = PublicKeyCredentialRequestOptions(
        challenge=websafe_decode(challenge),
        timeout=settings.timeout_ms,
        rp_id=settings.rp_id,
        allow_credentials=allow_credentials or None,
        user_verification=UserVerificationRequirement.PREFERRED,
    )
    options: Dict[str, Any] = make_json_safe(dict(request_options))

    log.success(
        "auth-generated",
        "Authentication options generated successfully",
        {
            "rpId": settings.rp_id,
            "challenge": redact_challenge(challenge),
            "allowCredentials": len(allow_credentials),
        },
    )
    return CeremonyOptions(options=options, challenge=challenge, debug_logs=log.to_list())
