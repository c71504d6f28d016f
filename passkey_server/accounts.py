"""Username and password accounts."""
from __future__ import annotations

import logging

from werkzeug.security import check_password_hash, generate_password_hash

from .errors import InvalidCredentials, UsernameTaken
from .models import User
from .storage import CredentialStore

__all__ = ["AccountService", "MIN_PASSWORD_LENGTH"]

LOGGER = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 6

# Checked against when the username is unknown so both failure paths cost the same.
_DUMMY_HASH = generate_password_hash("passkey-server-dummy-password")


class AccountService:
    def __init__(self, store: CredentialStore) -> None:
        self.store = store

    def register(self, username: str, password: str) -> User:
        """Create a password account.

        Raises ``ValueError`` for a blank username or short password and
        :class:`UsernameTaken` when the name is in use.
        """

        username = (username or "").strip()
        if not username:
            raise ValueError("Username is required")
        if not password or len(password) < MIN_PASSWORD_LENGTH:
            raise ValueError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")

        if self.store.find_user_by_username(username) is not None:
            raise UsernameTaken(username)

        user = self.store.create_user(username, generate_password_hash(password))
        LOGGER.info("Registered user %s (id %s).", username, user.id)
        return user

    def authenticate(self, username: str, password: str) -> User:
        user = self.store.find_user_by_username((username or "").strip())
        if user is None or not user.password_hash:
            check_password_hash(_DUMMY_HASH, password or "")
            raise InvalidCredentials()
        if not check_password_hash(user.password_hash, password or ""):
            raise InvalidCredentials()
        return user
