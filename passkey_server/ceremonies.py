"""High level registration and authentication flows over a credential store."""
from __future__ import annotations

import logging
from typing import List, Optional, Tuple

from .challenges import ChallengeManager
from .config import RelyingPartySettings
from .debug import CeremonyLog
from .encoding import normalize_credential_id
from .errors import ChallengeNotFound
from .models import Credential, Purpose, User
from .options import CeremonyOptions, generate_authentication_options, generate_registration_options
from .storage import CredentialStore
from .verifier import AuthenticationResult, CeremonyVerifier, RegistrationResult

__all__ = ["PasskeyCeremonies"]

LOGGER = logging.getLogger(__name__)


class PasskeyCeremonies:
    """Pairs option generation with verification through persisted challenges.

    ``begin_*`` returns the opaque challenge session id the caller must hand
    back to the matching ``finish_*`` call.
    """

    def __init__(
        self,
        settings: RelyingPartySettings,
        store: CredentialStore,
        challenges: Optional[ChallengeManager] = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.challenges = challenges or ChallengeManager(store)
        self.verifier = CeremonyVerifier(settings, store)

    def begin_registration(self, user: User) -> Tuple[str, CeremonyOptions]:
        log = CeremonyLog("registration-options")
        existing = self.store.find_credentials_by_user(user.id)
        options = generate_registration_options(
            self.settings, user.id, user.username, existing, log=log
        )
        session = self.challenges.issue(
            user.id,
            Purpose.REGISTRATION,
            options.challenge,
            self.settings.registration_challenge_ttl,
        )
        LOGGER.debug("Issued registration challenge for user %s.", user.id)
        return session.id, options

    def finish_registration(
        self, session_id: Optional[str], response: object, user: User
    ) -> RegistrationResult:
        log = CeremonyLog("registration-verify")
        try:
            session = self.challenges.consume(session_id, Purpose.REGISTRATION)
            if session.user_id != user.id:
                raise ChallengeNotFound("Challenge was issued to a different user.")
        except ChallengeNotFound as exc:
            log.error("verification-error", exc.detail, {"reason": exc.reason})
            return RegistrationResult(
                verified=False, reason=exc.reason, detail=exc.detail, debug_logs=log.to_list()
            )

        result = self.verifier.verify_registration(response, session.challenge, user.id, log=log)
        if result.verified:
            LOGGER.info("Registered passkey %s for user %s.", result.credential_id, user.id)
        else:
            LOGGER.info("Passkey registration for user %s rejected: %s.", user.id, result.reason)
        return result

    def begin_authentication(self, username: Optional[str] = None) -> Tuple[str, CeremonyOptions]:
        log = CeremonyLog("authentication-options")
        options = generate_authentication_options(self.settings, username, self.store, log=log)

        user_id = None
        if username:
            user = self.store.find_user_by_username(username)
            user_id = user.id if user is not None else None
        session = self.challenges.issue(
            user_id,
            Purpose.AUTHENTICATION,
            options.challenge,
            self.settings.authentication_challenge_ttl,
        )
        return session.id, options

    def finish_authentication(self, session_id: Optional[str], response: object) -> AuthenticationResult:
        log = CeremonyLog("authentication-verify")
        try:
            session = self.challenges.consume(session_id, Purpose.AUTHENTICATION)
        except ChallengeNotFound as exc:
            log.error("auth-verify-error", exc.detail, {"reason": exc.reason})
            return AuthenticationResult(
                verified=False, reason=exc.reason, detail=exc.detail, debug_logs=log.to_list()
            )

        result = self.verifier.verify_authentication(
            response, session.challenge, expected_user_id=session.user_id, log=log
        )
        if result.verified:
            LOGGER.info("User %s authenticated with passkey %s.", result.user_id, result.credential_id)
        else:
            LOGGER.info("Passkey authentication rejected: %s.", result.reason)
        return result

    def list_credentials(self, user_id: int) -> List[Credential]:
        return self.store.find_credentials_by_user(user_id)

    def delete_credential(self, credential_id: str, user_id: int) -> int:
        try:
            credential_id = normalize_credential_id(credential_id)
        except ValueError:
            return 0
        removed = self.store.delete_credential(credential_id, user_id)
        if removed:
            LOGGER.info("Deleted passkey %s for user %s.", credential_id, user_id)
        return removed

    def delete_passkey(self, passkey_id: int, user_id: int) -> int:
        """Delete one of the user's credentials by its numeric record id."""

        for credential in self.store.find_credentials_by_user(user_id):
            if credential.id == passkey_id:
                return self.delete_credential(credential.credential_id, user_id)
        return 0

    def sweep_expired(self) -> int:
        return self.challenges.sweep_expired()
