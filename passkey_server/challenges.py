"""Ceremony challenge and login session lifecycles."""
from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta
from typing import Callable, Optional, Union

from .errors import ChallengeNotFound
from .models import ChallengeSession, LoginSession, Purpose
from .storage import CredentialStore, utcnow

__all__ = [
    "ChallengeManager",
    "LoginSessionManager",
    "new_session_id",
]

LOGGER = logging.getLogger(__name__)

Clock = Callable[[], datetime]
Duration = Union[int, float, timedelta]


def new_session_id() -> str:
    return secrets.token_urlsafe(32)


def _as_timedelta(ttl: Duration) -> timedelta:
    if isinstance(ttl, timedelta):
        return ttl
    return timedelta(seconds=ttl)


class ChallengeManager:
    """Issues single-use challenges bound to a user and a ceremony purpose.

    Expiry is checked when a challenge is consumed; :meth:`sweep_expired`
    only reclaims storage.
    """

    def __init__(self, store: CredentialStore, *, clock: Clock = utcnow) -> None:
        self.store = store
        self.clock = clock

    def issue(
        self,
        user_id: Optional[int],
        purpose: Purpose,
        challenge: str,
        ttl: Duration,
    ) -> ChallengeSession:
        now = self.clock()
        expires_at = now + _as_timedelta(ttl)
        if user_id is None:
            return self.store.create_challenge_session(
                new_session_id(), None, challenge, expires_at, purpose=purpose, now=now
            )
        # One live challenge per (user, purpose): a re-request replaces it.
        session, replaced = self.store.replace_challenge_session(
            new_session_id(), user_id, challenge, expires_at, purpose=purpose, now=now
        )
        if replaced:
            LOGGER.debug("Replaced %d pending %s challenge(s) for user %s.", replaced, purpose.value, user_id)
        return session

    def consume(self, session_id: Optional[str], purpose: Optional[Purpose] = None) -> ChallengeSession:
        """Fetch and invalidate a challenge.

        The challenge is gone after this call whatever the outcome, so a
        captured response can never be replayed against it.
        """

        if not session_id:
            raise ChallengeNotFound()
        session = self.store.pop_challenge_session(session_id, now=self.clock())
        if session is None:
            raise ChallengeNotFound()
        if purpose is not None and session.purpose != purpose:
            raise ChallengeNotFound(f"Challenge was issued for {session.purpose.value}.")
        return session

    def sweep_expired(self) -> int:
        removed = self.store.delete_expired_challenge_sessions(now=self.clock())
        if removed:
            LOGGER.info("Removed %d expired ceremony challenge(s).", removed)
        return removed


class LoginSessionManager:
    """Authenticated sessions created after a password or passkey login."""

    def __init__(
        self,
        store: CredentialStore,
        *,
        ttl: Duration = timedelta(hours=24),
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.ttl = _as_timedelta(ttl)
        self.clock = clock

    def start(self, user_id: int, method: str) -> LoginSession:
        now = self.clock()
        return self.store.create_login_session(
            new_session_id(), user_id, method, now + self.ttl, now=now
        )

    def resolve(self, session_id: Optional[str]) -> Optional[LoginSession]:
        if not session_id:
            return None
        return self.store.get_login_session(session_id, now=self.clock())

    def end(self, session_id: Optional[str]) -> None:
        if session_id:
            self.store.delete_login_session(session_id)

    def sweep_expired(self) -> int:
        removed = self.store.delete_expired_login_sessions(now=self.clock())
        if removed:
            LOGGER.info("Removed %d expired login session(s).", removed)
        return removed
