"""
Local wallet configuration store.

Persists signer settings, the smart account address and chain, the ids of
capabilities granted from this machine, and at most one pending capability
record (granted but not yet observed active on chain). Stored as JSON at
<config_home>/agent-wallet/config.json.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiofiles

from agentwallet.core.errors import ConfigurationError
from agentwallet.core.policy import CapabilityOrigin, CapabilityRecord

logger = logging.getLogger(__name__)

CONFIG_VERSION = 1
DEFAULT_KEY_ID = "se.agent.wallet.default"


@dataclass
class SignerConfig:
    key_id: str = DEFAULT_KEY_ID
    backend: str = "command"
    label: Optional[str] = None
    handle: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        d = {"keyId": self.key_id, "backend": self.backend}
        if self.label:
            d["label"] = self.label
        if self.handle:
            d["handle"] = self.handle
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SignerConfig":
        return cls(
            key_id=data.get("keyId", DEFAULT_KEY_ID),
            backend=data.get("backend", "command"),
            label=data.get("label"),
            handle=data.get("handle"),
        )


@dataclass
class AccountConfig:
    address: Optional[str] = None
    chain_id: Optional[int] = None
    testnet: Optional[bool] = None
    capability_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"capabilityIds": list(self.capability_ids)}
        if self.address:
            d["address"] = self.address
        if self.chain_id is not None:
            d["chainId"] = self.chain_id
        if self.testnet is not None:
            d["testnet"] = self.testnet
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AccountConfig":
        chain_id = data.get("chainId")
        testnet = data.get("testnet")
        return cls(
            address=data.get("address") or None,
            chain_id=chain_id if isinstance(chain_id, int) else None,
            testnet=testnet if isinstance(testnet, bool) else None,
            capability_ids=list(data.get("capabilityIds", [])),
        )


@dataclass
class WalletConfig:
    """In-memory view of config.json."""

    signer: SignerConfig = field(default_factory=SignerConfig)
    account: AccountConfig = field(default_factory=AccountConfig)
    pending: Optional[Dict[str, Any]] = None
    version: int = CONFIG_VERSION

    def to_dict(self) -> Dict[str, Any]:
        d = {
            "version": self.version,
            "signer": self.signer.to_dict(),
            "account": self.account.to_dict(),
        }
        if self.pending:
            d["pendingCapability"] = self.pending
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WalletConfig":
        return cls(
            signer=SignerConfig.from_dict(data.get("signer") or {}),
            account=AccountConfig.from_dict(data.get("account") or {}),
            pending=data.get("pendingCapability") or None,
            version=data.get("version", CONFIG_VERSION),
        )


class WalletConfigStore:
    """
    JSON-backed store for WalletConfig.

    The pending record is the only capability state kept locally; active
    capabilities are always re-fetched from the relay.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self.config = WalletConfig()

    async def load(self) -> WalletConfig:
        if not self.path.exists():
            self.config = WalletConfig()
            return self.config

        try:
            async with aiofiles.open(self.path, "r") as f:
                content = await f.read()
            data = json.loads(content)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(
                "INVALID_CONFIG_FILE",
                f"Could not read wallet config: {e}",
                {"path": str(self.path)},
            )

        if not isinstance(data, dict):
            raise ConfigurationError(
                "INVALID_CONFIG_FILE",
                "Wallet config must be a JSON object.",
                {"path": str(self.path)},
            )

        self.config = WalletConfig.from_dict(data)
        logger.debug(f"Loaded wallet config from {self.path}")
        return self.config

    async def save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".json.tmp")
        async with aiofiles.open(tmp, "w") as f:
            await f.write(json.dumps(self.config.to_dict(), indent=2) + "\n")
        tmp.replace(self.path)
        logger.debug(f"Saved wallet config to {self.path}")

    # ========== Pending capability ==========

    def get_pending(self, address: Optional[str] = None, chain_id: Optional[int] = None) -> Optional[CapabilityRecord]:
        """
        The pending record, if one is stored for this account and chain.

        A record that cannot be parsed is treated as absent.
        """
        raw = self.config.pending
        if not raw:
            return None

        try:
            record = CapabilityRecord.from_dict({**raw, "origin": CapabilityOrigin.PENDING.value})
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Ignoring unreadable pending capability record: {e}")
            return None

        if address and record.address.lower() != address.lower():
            return None
        if chain_id is not None and record.chain_id != chain_id:
            return None
        return record

    async def set_pending(self, record: CapabilityRecord) -> None:
        """Store `record` as the single pending capability, replacing any prior one."""
        data = record.to_dict()
        data.pop("origin", None)
        data.setdefault("createdAt", datetime.now(timezone.utc).isoformat())
        previous = self.config.pending
        if previous and previous.get("id") != record.id:
            logger.info(f"Replacing pending capability {previous.get('id')} with {record.id}")
        self.config.pending = data
        self.remember(record.id)
        await self.save()

    async def clear_pending(self, capability_id: Optional[str] = None) -> bool:
        """Drop the pending record; with an id, only if it matches."""
        pending = self.config.pending
        if not pending:
            return False
        if capability_id is not None and pending.get("id") != capability_id:
            return False
        self.config.pending = None
        await self.save()
        logger.info(f"Cleared pending capability {pending.get('id')}")
        return True

    def remember(self, capability_id: str) -> bool:
        """Track a capability id granted to this agent; True if it was new."""
        ids = self.config.account.capability_ids
        if capability_id in ids:
            return False
        ids.append(capability_id)
        return True
