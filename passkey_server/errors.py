"""Exception taxonomy for ceremonies, stores and password accounts."""
from __future__ import annotations

from typing import Optional

__all__ = [
    "AccountError",
    "CeremonyError",
    "CeremonyTypeMismatch",
    "ChallengeMismatch",
    "ChallengeNotFound",
    "CounterRegression",
    "CredentialNotFound",
    "DuplicateCredential",
    "InvalidCredentials",
    "InvalidSignature",
    "MalformedResponse",
    "OriginMismatch",
    "RpIdMismatch",
    "StoreUnavailable",
    "UnsupportedAlgorithm",
    "UserHandleMismatch",
    "UserPresenceMissing",
    "UsernameTaken",
]


class CeremonyError(Exception):
    """Expected rejection of a WebAuthn ceremony.

    Instances never carry secret material: ``detail`` is meant to be shown to
    operators and, in redacted form, to the client.
    """

    reason = "ceremony_failed"
    default_detail = "WebAuthn ceremony failed."

    def __init__(self, detail: Optional[str] = None) -> None:
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class ChallengeMismatch(CeremonyError):
    reason = "challenge_mismatch"
    default_detail = "Client data challenge does not match the issued challenge."


class OriginMismatch(CeremonyError):
    reason = "origin_mismatch"
    default_detail = "Client data origin does not match the configured origin."


class RpIdMismatch(CeremonyError):
    reason = "rp_id_mismatch"
    default_detail = "Authenticator data RP ID hash does not match the configured RP ID."


class InvalidSignature(CeremonyError):
    reason = "invalid_signature"
    default_detail = "Signature could not be verified."


class DuplicateCredential(CeremonyError):
    reason = "duplicate_credential"
    default_detail = "Credential is already registered."


class CredentialNotFound(CeremonyError):
    reason = "credential_not_found"
    default_detail = "Credential is not registered."


class CounterRegression(CeremonyError):
    """Signature counter did not advance: the authenticator may be cloned."""

    reason = "counter_regression"
    default_detail = "Signature counter did not increase; the credential may have been cloned."


class ChallengeNotFound(CeremonyError):
    reason = "challenge_not_found"
    default_detail = "Challenge is unknown, already used or expired."


class MalformedResponse(CeremonyError):
    reason = "malformed_response"
    default_detail = "Credential response could not be parsed."


class CeremonyTypeMismatch(CeremonyError):
    reason = "ceremony_type_mismatch"
    default_detail = "Client data type does not match the ceremony."


class UserPresenceMissing(CeremonyError):
    reason = "user_presence_missing"
    default_detail = "Authenticator did not report user presence."


class UnsupportedAlgorithm(CeremonyError):
    reason = "unsupported_algorithm"
    default_detail = "Credential public key algorithm was not offered."


class UserHandleMismatch(CeremonyError):
    reason = "user_handle_mismatch"
    default_detail = "User handle does not belong to the credential owner."


class StoreUnavailable(Exception):
    """Raised when the backing store cannot serve a request."""


class AccountError(Exception):
    """Base class for password account failures."""


class UsernameTaken(AccountError):
    """Raised when registering a username that already exists."""


class InvalidCredentials(AccountError):
    """Raised for an unknown username or a wrong password."""
