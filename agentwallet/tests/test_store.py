"""
Tests for the local wallet config store.
"""

import asyncio
import json
import time

import pytest

from agentwallet.core.errors import ConfigurationError
from agentwallet.core.policy import (
    AgentKey,
    CallEntry,
    CapabilityOrigin,
    CapabilityRecord,
    SpendEntry,
    SpendPeriod,
)
from agentwallet.service.store.wallet_config import WalletConfigStore

from .conftest import ACCOUNT, AGENT_RELAY_KEY, CHAIN_ID, OTHER_ACCOUNT, TARGET


def pending_record(record_id="0x01", address=ACCOUNT, chain_id=CHAIN_ID):
    return CapabilityRecord(
        id=record_id,
        address=address,
        chain_id=chain_id,
        expiry=int(time.time()) + 86400,
        key=AgentKey(public_key=AGENT_RELAY_KEY),
        calls=(CallEntry(to=TARGET),),
        spend=(SpendEntry(limit=100, period=SpendPeriod.DAY),),
        origin=CapabilityOrigin.PENDING,
    )


class TestWalletConfigStore:
    @pytest.fixture
    def store(self, tmp_path):
        return WalletConfigStore(tmp_path / "agent-wallet" / "config.json")

    def test_missing_file_gives_defaults(self, store):
        config = asyncio.run(store.load())
        assert config.account.address is None
        assert config.pending is None
        assert config.signer.key_id == "se.agent.wallet.default"

    def test_corrupt_file(self, store):
        store.path.parent.mkdir(parents=True)
        store.path.write_text("{not json")
        with pytest.raises(ConfigurationError) as exc:
            asyncio.run(store.load())
        assert exc.value.code == "INVALID_CONFIG_FILE"

    def test_pending_persisted_in_documented_shape(self, store):
        async def go():
            await store.set_pending(pending_record())

        asyncio.run(go())
        data = json.loads(store.path.read_text())
        pending = data["pendingCapability"]
        assert set(pending) == {"id", "address", "chainId", "createdAt", "expiry", "key", "calls", "spend"}
        assert pending["calls"] == [{"to": TARGET}]
        assert pending["spend"][0]["limit"] == "100"
        assert data["account"]["capabilityIds"] == ["0x01"]

    def test_single_pending_record_overwritten(self, store):
        async def go():
            await store.set_pending(pending_record("0x01"))
            await store.set_pending(pending_record("0x02"))
            reloaded = WalletConfigStore(store.path)
            await reloaded.load()
            return reloaded

        reloaded = asyncio.run(go())
        assert reloaded.get_pending(ACCOUNT, CHAIN_ID).id == "0x02"
        assert reloaded.config.account.capability_ids == ["0x01", "0x02"]

    def test_pending_scoped_to_account_and_chain(self, store):
        asyncio.run(store.set_pending(pending_record()))
        assert store.get_pending(ACCOUNT.upper().replace("0X", "0x"), CHAIN_ID) is not None
        assert store.get_pending(OTHER_ACCOUNT, CHAIN_ID) is None
        assert store.get_pending(ACCOUNT, 8453) is None

    def test_clear_pending_only_matching_id(self, store):
        async def go():
            await store.set_pending(pending_record("0x01"))
            first = await store.clear_pending("0x99")
            second = await store.clear_pending("0x01")
            third = await store.clear_pending()
            return first, second, third

        assert asyncio.run(go()) == (False, True, False)
        assert store.get_pending() is None

    def test_unreadable_pending_ignored(self, store):
        store.config.pending = {"id": "0x01"}
        assert store.get_pending() is None
