"""
Per-invocation wallet session.

Bundles everything one reconciliation (or status query) needs: settings, the
relay client, the signer, the local store and a clock. A session is opened for
one invocation and closed at the end; nothing is shared between invocations.
"""

import logging
import time
from typing import Callable, Optional

import httpx

from agentwallet.config.settings import EngineSettings
from agentwallet.core.errors import ConfigurationError
from agentwallet.service.relay.client import RelayClient
from agentwallet.service.signer.backend import CommandSignerBackend, SignerBackend
from agentwallet.service.signer.service import SignerService
from agentwallet.service.store.wallet_config import WalletConfig, WalletConfigStore

logger = logging.getLogger(__name__)


class WalletSession:
    """Explicit context for one engine invocation."""

    def __init__(
        self,
        settings: EngineSettings,
        relay: RelayClient,
        signer_backend: SignerBackend,
        store: WalletConfigStore,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self.relay = relay
        self.store = store
        self.clock = clock
        self.signer = SignerService(signer_backend, store.config.signer)

    @classmethod
    async def open(
        cls,
        settings: EngineSettings,
        signer_backend: Optional[SignerBackend] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.time,
    ) -> "WalletSession":
        """Load the local store and wire up collaborators."""
        store = WalletConfigStore(settings.config_path)
        await store.load()

        relay = RelayClient(
            settings.relay_url,
            timeout_seconds=settings.relay_timeout_seconds,
            transport=transport,
        )
        backend = signer_backend or CommandSignerBackend(settings.signer_command)
        logger.debug(f"Opened wallet session (relay={settings.relay_url}, signer={backend.name})")
        return cls(settings, relay, backend, store, clock=clock)

    @property
    def config(self) -> WalletConfig:
        return self.store.config

    @property
    def address(self) -> str:
        address = self.config.account.address
        if not address:
            raise ConfigurationError(
                "MISSING_ACCOUNT_ADDRESS",
                "No smart account address configured.",
            )
        return address

    @property
    def chain_id(self) -> int:
        chain_id = self.config.account.chain_id
        if chain_id is None:
            raise ConfigurationError(
                "MISSING_CHAIN_ID",
                "No chain id configured for the smart account.",
            )
        return chain_id

    def now(self) -> float:
        return self.clock()

    async def close(self) -> None:
        await self.relay.close()

    async def __aenter__(self) -> "WalletSession":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
