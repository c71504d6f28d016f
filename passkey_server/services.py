"""Per-application wiring of the store, ceremonies and sessions."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from flask import Flask, current_app

from .accounts import AccountService
from .ceremonies import PasskeyCeremonies
from .challenges import LoginSessionManager
from .config import RelyingPartySettings
from .storage import CredentialStore, create_store

__all__ = ["PasskeyServices", "get_services", "init_services"]

_EXTENSION_KEY = "passkey_server"


@dataclass
class PasskeyServices:
    settings: RelyingPartySettings
    store: CredentialStore
    ceremonies: PasskeyCeremonies
    accounts: AccountService
    login_sessions: LoginSessionManager

    def sweep_expired(self) -> int:
        """Drop expired ceremony challenges and login sessions."""

        return self.ceremonies.sweep_expired() + self.login_sessions.sweep_expired()


def init_services(app: Flask, store: Optional[CredentialStore] = None) -> PasskeyServices:
    """Build the services from ``app.config`` and attach them to ``app``.

    Any previously attached store is closed first.
    """

    previous = app.extensions.get(_EXTENSION_KEY)
    if previous is not None and previous.store is not store:
        previous.store.close()

    settings = RelyingPartySettings.from_mapping(app.config)
    if store is None:
        store = create_store(app.config.get("PASSKEY_DATABASE"))

    services = PasskeyServices(
        settings=settings,
        store=store,
        ceremonies=PasskeyCeremonies(settings, store),
        accounts=AccountService(store),
        login_sessions=LoginSessionManager(
            store, ttl=int(app.config.get("PASSKEY_LOGIN_SESSION_TTL", 24 * 60 * 60))
        ),
    )
    app.extensions[_EXTENSION_KEY] = services
    return services


def get_services(app: Optional[Flask] = None) -> PasskeyServices:
    target = app if app is not None else current_app
    services = target.extensions.get(_EXTENSION_KEY)
    if services is None:
        services = init_services(target)
    return services
