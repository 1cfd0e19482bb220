"""Agent signing key access."""

from .backend import CommandSignerBackend, SignerBackend
from .service import SignerService, to_relay_public_key

__all__ = [
    "CommandSignerBackend",
    "SignerBackend",
    "SignerService",
    "to_relay_public_key",
]
