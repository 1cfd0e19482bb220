"""
Signer service: the agent key as the rest of the engine sees it.
"""

import logging
from typing import Any, Dict, Optional

from agentwallet.core.errors import SignerError
from agentwallet.core.policy import AgentKey
from agentwallet.service.store.wallet_config import SignerConfig

from .backend import SignerBackend, normalize_hex

logger = logging.getLogger(__name__)


def to_relay_public_key(public_key: str) -> str:
    """Uncompressed P-256 point (0x04 || X || Y) -> 64-byte X || Y hex."""
    raw = normalize_hex(public_key)[2:]
    try:
        data = bytes.fromhex(raw)
    except ValueError:
        raise SignerError("INVALID_PUBLIC_KEY", "Public key is not valid hex.")

    if len(data) == 64:
        return "0x" + data.hex()
    if len(data) == 65 and data[0] == 0x04:
        return "0x" + data[1:].hex()

    raise SignerError(
        "INVALID_PUBLIC_KEY",
        "Expected an uncompressed P-256 public key.",
        {"bytes": len(data)},
    )


class SignerService:
    """Wraps a SignerBackend with the persisted key handle."""

    def __init__(self, backend: SignerBackend, config: SignerConfig):
        self.backend = backend
        self.config = config

    @property
    def key_id(self) -> str:
        return self.config.key_id

    def _handle(self) -> str:
        if not self.config.handle:
            raise SignerError(
                "KEY_NOT_INITIALIZED",
                "Agent signing key has not been initialized.",
                hint="Reconcile again so the key readiness step can create the key.",
            )
        return self.config.handle

    async def exists(self) -> bool:
        if not self.config.handle:
            return False
        info = await self.backend.info(self.config.handle)
        return bool(info.get("exists"))

    async def init(self, label: Optional[str] = None, overwrite: bool = False) -> bool:
        """Ensure a key exists. Returns True when a new key was created."""
        if not overwrite and await self.exists():
            return False

        _, handle = await self.backend.create(label or self.config.label)
        self.config.handle = handle
        self.config.backend = self.backend.name
        logger.info(f"Created agent signing key {self.key_id} on {self.backend.name}")
        return True

    async def get_agent_key(self) -> AgentKey:
        public_key = await self.backend.get_public_key(self._handle())
        return AgentKey(public_key=to_relay_public_key(public_key), type="p256")

    async def sign(self, digest: bytes) -> bytes:
        """Sign a precomputed digest; no further hashing."""
        return await self.backend.sign(self._handle(), digest, "none")

    async def info(self) -> Dict[str, Any]:
        return {
            "keyId": self.key_id,
            "backend": self.backend.name,
            "curve": "p256",
            "exists": await self.exists(),
        }
