"""
Tests for capability state discovery.
"""

import asyncio
import json
import time

import pytest

from agentwallet.core.errors import InsecureStateError
from agentwallet.core.policy import CallEntry, DesiredPolicy
from agentwallet.service.discovery import StateDiscovery

from .conftest import (
    ACCOUNT,
    TARGET,
    key_record,
    pending_capability,
    relay_call,
    relay_spend,
)

POLICY = DesiredPolicy(spend_limit=100, calls=(CallEntry(to=TARGET),))


def discover(open_session, policy=POLICY):
    async def go():
        async with await open_session() as session:
            return await StateDiscovery(session).discover(policy)

    return asyncio.run(go())


class TestActiveDiscovery:
    def test_filters_role_key_and_expiry(self, relay, configured, open_session):
        configured()
        scope = [relay_call(TARGET, None), relay_spend(100)]
        relay.keys = [
            key_record(scope, key_hash="0x01"),
            key_record(scope, role="admin", key_hash="0x02"),
            key_record(scope, public_key="0x" + "22" * 64, key_hash="0x03"),
            key_record(scope, expiry=int(time.time()) - 60, key_hash="0x04"),
        ]
        result = discover(open_session)
        assert [r.id for r in result.active] == ["0x01"]
        assert result.active_match(POLICY).id == "0x01"

    def test_rejected_records_reported(self, relay, configured, open_session):
        configured()
        relay.keys = [key_record([relay_spend(1)]), key_record([{"type": "bogus"}])]
        result = discover(open_session)
        assert len(result.active) == 1
        assert result.rejected[0]["index"] == 1

    def test_insecure_active_dropped_when_policy_given(self, relay, configured, open_session):
        configured()
        relay.keys = [key_record([relay_call(ACCOUNT, None), relay_spend(100)], key_hash="0xbad")]
        result = discover(open_session)
        assert result.active == []
        assert result.insecure[0].record.id == "0xbad"
        assert not result.insecure[0].removed

    def test_insecure_active_fatal_without_policy(self, relay, configured, open_session):
        configured()
        relay.keys = [key_record([relay_call(ACCOUNT, None), relay_spend(100)], key_hash="0xbad")]
        with pytest.raises(InsecureStateError) as exc:
            discover(open_session, policy=None)
        assert exc.value.code == "INSECURE_ACTIVE_CAPABILITY"


class TestPendingDiscovery:
    def test_pending_loaded(self, configured, open_session):
        configured(pending=pending_capability())
        result = discover(open_session)
        assert result.pending is not None
        assert result.pending_match(POLICY) is not None

    def test_expired_pending_ignored(self, configured, open_session):
        configured(pending=pending_capability(expiry=int(time.time()) - 10))
        assert discover(open_session).pending is None

    def test_pending_for_other_key_ignored(self, configured, open_session):
        configured(pending=pending_capability(public_key="0x" + "22" * 64))
        assert discover(open_session).pending is None

    def test_insecure_pending_removed(self, settings, configured, open_session):
        configured(pending=pending_capability(calls=[{"to": ACCOUNT}]))
        result = discover(open_session)
        assert result.pending is None
        assert result.insecure[0].removed
        assert "pendingCapability" not in json.loads(settings.config_path.read_text())


class TestSummary:
    def summary(self, open_session):
        async def go():
            async with await open_session() as session:
                return await StateDiscovery(session).summary()

        return asyncio.run(go())

    def test_unconfigured(self, relay, open_session):
        summary = self.summary(open_session)
        assert summary["state"] == "unconfigured"
        assert summary["warnings"] == []
        assert relay.count("wallet_getKeys") == 0

    def test_pending(self, configured, open_session):
        configured(pending=pending_capability())
        summary = self.summary(open_session)
        assert summary["state"] == "pending_activation"
        assert summary["pendingSince"] == "2026-01-01T00:00:00+00:00"

    def test_active(self, relay, configured, open_session):
        configured()
        relay.keys = [
            key_record([relay_spend(1)], expiry=2_000_000_000),
            key_record([relay_spend(1)], expiry=int(time.time()) - 60),
        ]
        summary = self.summary(open_session)
        assert summary["state"] == "active_onchain"
        assert summary["active"] == 1
        assert summary["total"] == 2
        assert summary["latestExpiry"].startswith("2033-05-18")

    def test_insecure_pending_removed_and_reported(self, settings, configured, open_session):
        """Status applies the same self-call guard as discovery."""
        configured(pending=pending_capability(calls=[{"to": ACCOUNT}]))
        summary = self.summary(open_session)
        assert summary["state"] == "unconfigured"
        assert summary["pendingId"] is None
        assert summary["warnings"][0]["code"] == "INSECURE_PENDING_CAPABILITY_REMOVED"
        assert "pendingCapability" not in json.loads(settings.config_path.read_text())
