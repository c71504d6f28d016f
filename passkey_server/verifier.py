"""Verification of WebAuthn registration and authentication responses.

Both flows are single-shot: the response is parsed, every check runs in a
fixed order and only when all of them pass is the store touched (a new
credential row, or a counter bump). Expected rejections are reported as
``verified=False`` results carrying a stable ``reason``; store faults
propagate to the caller.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

from cryptography.exceptions import InvalidSignature as _CryptoInvalidSignature
from cryptography.hazmat.primitives import constant_time
from fido2 import cbor
from fido2.attestation import Attestation, InvalidData, UnsupportedType
from fido2.attestation import InvalidSignature as _AttestationInvalidSignature
from fido2.cose import CoseKey
from fido2.utils import websafe_decode
from fido2.webauthn import (
    AttestationObject,
    AttestedCredentialData,
    AuthenticatorData,
    CollectedClientData,
)

from .attachments import device_category_from_aaguid, normalize_attachment, normalize_transports
from .config import RelyingPartySettings
from .debug import CeremonyLog, redact_challenge, redact_secret
from .encoding import decode_binary_value, encode_base64url, normalize_credential_id
from .errors import (
    CeremonyError,
    CeremonyTypeMismatch,
    ChallengeMismatch,
    CounterRegression,
    CredentialNotFound,
    InvalidSignature,
    MalformedResponse,
    OriginMismatch,
    RpIdMismatch,
    StoreUnavailable,
    UnsupportedAlgorithm,
    UserHandleMismatch,
    UserPresenceMissing,
)
from .models import Credential
from .options import SUPPORTED_ALGORITHMS
from .storage import CredentialStore

__all__ = [
    "AuthenticationResult",
    "CeremonyVerifier",
    "RegistrationResult",
]


@dataclass
class RegistrationResult:
    verified: bool
    credential_id: str = ""
    reason: Optional[str] = None
    detail: Optional[str] = None
    credential: Optional[Credential] = None
    debug_logs: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class AuthenticationResult:
    verified: bool
    user_id: Optional[int] = None
    username: Optional[str] = None
    credential_id: Optional[str] = None
    new_counter: Optional[int] = None
    reason: Optional[str] = None
    detail: Optional[str] = None
    debug_logs: List[Dict[str, Any]] = field(default_factory=list)


def _response_body(response: Any) -> Mapping[str, Any]:
    if not isinstance(response, Mapping):
        raise MalformedResponse("Credential response must be a JSON object.")
    body = response.get("response")
    if not isinstance(body, Mapping):
        raise MalformedResponse("Credential response is missing its 'response' member.")
    return body


def _decode_member(body: Mapping[str, Any], name: str) -> bytes:
    try:
        return decode_binary_value(body.get(name))
    except ValueError as exc:
        raise MalformedResponse(f"'{name}' is missing or not base64url: {exc}") from exc


def _parse_client_data(raw: bytes) -> CollectedClientData:
    try:
        return CollectedClientData(raw)
    except Exception as exc:
        raise MalformedResponse(f"clientDataJSON could not be parsed: {exc}") from exc


def _declared_credential_id(response: Mapping[str, Any]) -> Optional[str]:
    raw_value = response.get("rawId") or response.get("id")
    if raw_value is None:
        return None
    try:
        return normalize_credential_id(raw_value)
    except ValueError as exc:
        raise MalformedResponse(f"Credential id is not base64url: {exc}") from exc


def _describe_flags(auth_data: AuthenticatorData) -> Dict[str, bool]:
    return {
        "userPresent": auth_data.is_user_present(),
        "userVerified": auth_data.is_user_verified(),
        "backupEligible": auth_data.is_backup_eligible(),
        "backedUp": auth_data.is_backed_up(),
    }


class CeremonyVerifier:
    """Validates client responses against the relying party and stored credentials."""

    def __init__(self, settings: RelyingPartySettings, store: CredentialStore) -> None:
        self.settings = settings
        self.store = store

    # Shared checks

    def _check_client_data(
        self,
        client_data: CollectedClientData,
        expected_type: CollectedClientData.TYPE,
        expected_challenge: str,
        log: CeremonyLog,
    ) -> None:
        if client_data.type != expected_type.value:
            raise CeremonyTypeMismatch(
                f"Client data type {client_data.type!r} is not {expected_type.value!r}."
            )

        try:
            expected = websafe_decode(expected_challenge)
        except (TypeError, ValueError) as exc:
            raise ChallengeMismatch("Issued challenge is not valid base64url.") from exc
        if not constant_time.bytes_eq(bytes(client_data.challenge), expected):
            raise ChallengeMismatch()
        log.info(
            "client-data-challenge",
            "Challenge matches",
            {"challenge": redact_challenge(expected_challenge)},
        )

        if client_data.origin != self.settings.origin:
            raise OriginMismatch(
                f"Origin {client_data.origin!r} does not match {self.settings.origin!r}."
            )
        log.info("client-data-origin", "Origin matches", {"origin": client_data.origin})

    def _check_authenticator_data(self, auth_data: AuthenticatorData, log: CeremonyLog) -> None:
        if not constant_time.bytes_eq(bytes(auth_data.rp_id_hash), self.settings.rp_id_hash):
            raise RpIdMismatch(f"RP ID hash does not match {self.settings.rp_id!r}.")
        if not auth_data.is_user_present():
            raise UserPresenceMissing()
        log.info(
            "authenticator-data",
            "RP ID hash and flags accepted",
            {"rpId": self.settings.rp_id, "counter": auth_data.counter, **_describe_flags(auth_data)},
        )

    # Registration

    def verify_registration(
        self,
        response: Any,
        expected_challenge: str,
        user_id: int,
        *,
        log: Optional[CeremonyLog] = None,
    ) -> RegistrationResult:
        log = log if log is not None else CeremonyLog("registration-verify")
        log.info(
            "verification-start",
            "Starting passkey verification process",
            {"expectedChallenge": redact_challenge(expected_challenge), "userId": user_id},
        )

        try:
            credential = self._verify_registration(response, expected_challenge, user_id, log)
        except CeremonyError as exc:
            log.error("verification-error", exc.detail, {"reason": exc.reason})
            return RegistrationResult(
                verified=False,
                reason=exc.reason,
                detail=exc.detail,
                debug_logs=log.to_list(),
            )
        except StoreUnavailable as exc:
            log.error("verification-error", "Credential store unavailable", {"error": str(exc)})
            raise

        return RegistrationResult(
            verified=True,
            credential_id=credential.credential_id,
            credential=credential,
            debug_logs=log.to_list(),
        )

    def _verify_registration(
        self,
        response: Any,
        expected_challenge: str,
        user_id: int,
        log: CeremonyLog,
    ) -> Credential:
        body = _response_body(response)
        log.info(
            "verification-input",
            "Received registration response",
            {
                "id": response.get("id"),
                "attestationObject": "present" if body.get("attestationObject") else "missing",
                "clientDataJSON": "present" if body.get("clientDataJSON") else "missing",
            },
        )

        client_data = _parse_client_data(_decode_member(body, "clientDataJSON"))
        try:
            attestation_object = AttestationObject(_decode_member(body, "attestationObject"))
        except MalformedResponse:
            raise
        except Exception as exc:
            raise MalformedResponse(f"attestationObject could not be parsed: {exc}") from exc

        self._check_client_data(client_data, CollectedClientData.TYPE.CREATE, expected_challenge, log)

        auth_data = attestation_object.auth_data
        self._check_authenticator_data(auth_data, log)

        credential_data: Optional[AttestedCredentialData] = auth_data.credential_data
        if credential_data is None:
            raise MalformedResponse("Authenticator data carries no attested credential data.")

        algorithm = credential_data.public_key.get(3)
        if algorithm not in SUPPORTED_ALGORITHMS:
            raise UnsupportedAlgorithm(f"COSE algorithm {algorithm!r} was not offered.")

        self._verify_attestation(attestation_object, client_data, log)

        # The authenticator-reported id is authoritative; the client copy must agree.
        credential_id = encode_base64url(bytes(credential_data.credential_id))
        declared_id = _declared_credential_id(response)
        if declared_id is not None and declared_id != credential_id:
            raise MalformedResponse("Credential id in response does not match authenticator data.")

        public_key = cbor.encode(dict(credential_data.public_key))
        device_type = device_category_from_aaguid(bytes(credential_data.aaguid))
        transports = normalize_transports(body.get("transports"))

        stored = self.store.insert_credential(
            user_id,
            credential_id,
            public_key,
            auth_data.counter,
            device_type,
            auth_data.is_backed_up(),
            transports,
            backup_eligible=auth_data.is_backup_eligible(),
        )
        log.success(
            "verification-stored",
            "Passkey stored in database",
            {
                "credentialId": credential_id,
                "aaguid": str(credential_data.aaguid),
                "deviceType": device_type.value,
                "algorithm": algorithm,
                "publicKey": redact_secret(public_key),
                "counter": auth_data.counter,
                "backupEligible": stored.backup_eligible,
                "backedUp": stored.backed_up,
                "transports": transports,
                "authenticatorAttachment": normalize_attachment(response.get("authenticatorAttachment")),
            },
        )
        return stored

    def _verify_attestation(
        self,
        attestation_object: AttestationObject,
        client_data: CollectedClientData,
        log: CeremonyLog,
    ) -> None:
        fmt = attestation_object.fmt
        try:
            attestation = Attestation.for_type(fmt)()
            result = attestation.verify(
                attestation_object.att_stmt,
                attestation_object.auth_data,
                client_data.hash,
            )
        except UnsupportedType as exc:
            raise InvalidSignature(f"Unsupported attestation format {fmt!r}.") from exc
        except (_AttestationInvalidSignature, InvalidData) as exc:
            raise InvalidSignature(f"Attestation statement ({fmt}) is invalid: {exc}") from exc
        except Exception as exc:
            raise InvalidSignature(f"Attestation statement ({fmt}) could not be verified: {exc}") from exc

        # Trust paths are not evaluated: the relying party asks for "none".
        log.info(
            "attestation",
            "Attestation statement verified",
            {
                "format": fmt,
                "attestationType": getattr(result.attestation_type, "name", str(result.attestation_type)),
                "trustPathLength": len(result.trust_path or []),
            },
        )

    # Authentication

    def verify_authentication(
        self,
        response: Any,
        expected_challenge: str,
        *,
        expected_user_id: Optional[int] = None,
        log: Optional[CeremonyLog] = None,
    ) -> AuthenticationResult:
        """Verify an assertion against ``expected_challenge``.

        When the challenge was issued for a known user, ``expected_user_id``
        limits the answer to that user's credentials, the ones offered in
        ``allowCredentials``.
        """

        log = log if log is not None else CeremonyLog("authentication-verify")
        log.info(
            "auth-verify-start",
            "Starting passkey authentication verification",
            {
                "expectedChallenge": redact_challenge(expected_challenge),
                "credentialId": response.get("id") if isinstance(response, Mapping) else None,
            },
        )

        try:
            credential, user, new_counter = self._verify_authentication(
                response, expected_challenge, expected_user_id, log
            )
        except CounterRegression as exc:
            log.warning(
                "auth-verify-counter",
                "Signature counter regression: the authenticator may have been cloned",
                {"reason": exc.reason},
            )
            log.error("auth-verify-error", exc.detail, {"reason": exc.reason})
            return AuthenticationResult(
                verified=False, reason=exc.reason, detail=exc.detail, debug_logs=log.to_list()
            )
        except CeremonyError as exc:
            log.error("auth-verify-error", exc.detail, {"reason": exc.reason})
            return AuthenticationResult(
                verified=False, reason=exc.reason, detail=exc.detail, debug_logs=log.to_list()
            )
        except StoreUnavailable as exc:
            log.error("auth-verify-error", "Credential store unavailable", {"error": str(exc)})
            raise

        return AuthenticationResult(
            verified=True,
            user_id=user.id,
            username=user.username,
            credential_id=credential.credential_id,
            new_counter=new_counter,
            debug_logs=log.to_list(),
        )

    def _verify_authentication(
        self,
        response: Any,
        expected_challenge: str,
        expected_user_id: Optional[int],
        log: CeremonyLog,
    ) -> Tuple[Credential, Any, int]:
        body = _response_body(response)
        log.info(
            "auth-verify-input",
            "Received authentication response",
            {
                "id": response.get("id"),
                "authenticatorData": "present" if body.get("authenticatorData") else "missing",
                "clientDataJSON": "present" if body.get("clientDataJSON") else "missing",
                "signature": "present" if body.get("signature") else "missing",
                "userHandle": "present" if body.get("userHandle") else "missing",
            },
        )

        credential_id = _declared_credential_id(response)
        if credential_id is None:
            raise MalformedResponse("Credential id is missing.")

        found = self.store.find_credential_by_credential_id(credential_id)
        if found is None:
            raise CredentialNotFound()
        credential, user = found
        if expected_user_id is not None and user.id != expected_user_id:
            raise CredentialNotFound("Credential is not allowed for this challenge.")
        log.info(
            "auth-verify-found",
            "Found passkey in database",
            {"credentialId": credential_id, "userId": user.id, "counter": credential.counter},
        )

        client_data = _parse_client_data(_decode_member(body, "clientDataJSON"))
        try:
            auth_data = AuthenticatorData(_decode_member(body, "authenticatorData"))
        except MalformedResponse:
            raise
        except Exception as exc:
            raise MalformedResponse(f"authenticatorData could not be parsed: {exc}") from exc
        signature = _decode_member(body, "signature")

        self._check_client_data(client_data, CollectedClientData.TYPE.GET, expected_challenge, log)
        self._check_authenticator_data(auth_data, log)

        if body.get("userHandle"):
            try:
                user_handle = decode_binary_value(body.get("userHandle"))
            except ValueError as exc:
                raise MalformedResponse("userHandle is not base64url.") from exc
            if not constant_time.bytes_eq(user_handle, user.user_handle):
                raise UserHandleMismatch()

        try:
            public_key = CoseKey.parse(cbor.decode(credential.public_key))
            public_key.verify(bytes(auth_data) + client_data.hash, signature)
        except (_CryptoInvalidSignature, ValueError) as exc:
            raise InvalidSignature("Assertion signature is not valid for the stored public key.") from exc
        log.info(
            "auth-verify-signature",
            "Assertion signature verified",
            {"signature": redact_secret(signature), "algorithm": public_key.get(3)},
        )

        stored_counter = credential.counter
        new_counter = auth_data.counter
        # A stored counter of zero means the authenticator does not implement one.
        if stored_counter != 0 and new_counter <= stored_counter:
            raise CounterRegression(
                f"Signature counter {new_counter} is not greater than stored counter {stored_counter}."
            )

        if not self.store.update_credential_counter(
            credential_id, new_counter, expected_counter=stored_counter
        ):
            raise CounterRegression("Credential was used concurrently; counter already advanced.")
        log.success(
            "auth-verify-updated",
            "Passkey counter updated",
            {"previousCounter": stored_counter, "newCounter": new_counter},
        )
        return credential, user, new_counter
