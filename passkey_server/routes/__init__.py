"""Route registrations for the passkey server."""

# Import submodules to register routes via decorators.
from . import general  # noqa: F401
from . import passkeys  # noqa: F401

__all__ = ["general", "passkeys"]
