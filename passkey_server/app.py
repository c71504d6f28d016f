"""Application entry point for the passkey server."""
from __future__ import annotations

import logging
import os
from typing import Optional

from .config import app
from .services import PasskeyServices, init_services
from .storage import CredentialStore
from .sweeper import start_sweeper

# Import the route modules so their decorators register endpoints with Flask.
from . import routes  # noqa: F401

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_app(store: Optional[CredentialStore] = None) -> PasskeyServices:
    """Attach services to the app and drop records that expired while it was down."""

    services = init_services(app, store)
    removed = services.sweep_expired()
    if removed:
        app.logger.info("Removed %d expired record(s) at startup.", removed)

    interval = int(app.config.get("PASSKEY_SWEEP_INTERVAL", 0))
    if interval > 0:
        start_sweeper(services, interval, app.logger)
    return services


def main() -> None:
    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)

    configure_app()
    # Browsers only allow WebAuthn over plain HTTP for localhost.
    app.run(
        host=os.environ.get("PASSKEY_HOST", "localhost"),
        port=int(os.environ.get("PASSKEY_PORT", "3000")),
        debug=False,
    )


__all__ = ["app", "configure_app", "main"]


if __name__ == "__main__":  # pragma: no cover - convenience script entry point.
    main()
