"""
Tests for activation classification and settlement watching.
"""

import asyncio
import json
import time

import httpx
import pytest

from agentwallet.core.checkpoints import ActivationState
from agentwallet.core.errors import OperationTimeoutError, RelayError
from agentwallet.core.policy import CallEntry, DesiredPolicy
from agentwallet.service.activation import ActivationClassifier

from .conftest import TARGET, key_record, pending_capability, relay_call, relay_spend

PENDING_ID = "0x" + "0f" * 32
POLICY = DesiredPolicy(spend_limit=100, calls=(CallEntry(to=TARGET),))


def active_key():
    return key_record([relay_call(TARGET, None), relay_spend(100)], key_hash=PENDING_ID)


class TestClassify:
    def classify(self, open_session, policy=POLICY, timeout=None):
        async def go():
            async with await open_session() as session:
                return await ActivationClassifier(session).classify(policy, timeout=timeout)

        return asyncio.run(go())

    def test_pending_becomes_active(self, relay, settings, configured, open_session):
        configured(pending=pending_capability(record_id=PENDING_ID))
        relay.keys = [active_key()]
        result = self.classify(open_session)
        assert result.state == ActivationState.ACTIVE_ONCHAIN
        assert result.record.id == PENDING_ID
        assert result.pending_cleared
        assert result.polls == 1
        assert "pendingCapability" not in json.loads(settings.config_path.read_text())

    def test_stays_pending_until_deadline(self, relay, settings, configured, open_session):
        configured(pending=pending_capability(record_id=PENDING_ID))
        result = self.classify(open_session)
        assert result.state == ActivationState.PENDING_ACTIVATION
        assert result.record.id == PENDING_ID
        assert result.polls > 1
        assert relay.count("wallet_getKeys") == result.polls
        assert json.loads(settings.config_path.read_text())["pendingCapability"]["id"] == PENDING_ID

    def test_zero_timeout_polls_once(self, relay, configured, open_session):
        configured(pending=pending_capability(record_id=PENDING_ID))
        result = self.classify(open_session, timeout=0)
        assert result.polls == 1

    def test_relay_down_for_every_poll_raises(self, relay, configured, open_session):
        """Without a single successful poll the state is unknown, not pending."""
        configured(pending=pending_capability(record_id=PENDING_ID))
        relay.errors["wallet_getKeys"] = 503
        with pytest.raises(RelayError) as exc:
            self.classify(open_session)
        assert exc.value.code == "RELAY_HTTP_ERROR"
        assert relay.count("wallet_getKeys") > 1

    def test_slow_relay_bounded_by_deadline(self, relay, configured, open_session):
        configured(pending=pending_capability(record_id=PENDING_ID))
        handler = relay.handler

        async def slow(request):
            await asyncio.sleep(1)
            return handler(request)

        relay.handler = slow
        started = time.monotonic()
        with pytest.raises(OperationTimeoutError) as exc:
            self.classify(open_session)
        assert exc.value.code == "DISCOVERY_TIMEOUT"
        assert time.monotonic() - started < 0.5

    def test_unrelated_active_record_keeps_pending(self, relay, settings, configured, open_session):
        """An active record that satisfies the policy but not the pending grant leaves it stored."""
        configured(pending=pending_capability(record_id=PENDING_ID, limit=555))
        relay.keys = [key_record([relay_call(TARGET, None), relay_spend(100)], key_hash="0x01")]
        result = self.classify(open_session)
        assert result.state == ActivationState.ACTIVE_ONCHAIN
        assert result.record.id == "0x01"
        assert not result.pending_cleared
        assert json.loads(settings.config_path.read_text())["pendingCapability"]["id"] == PENDING_ID

    def test_recovers_after_transient_error(self, relay, configured, open_session):
        configured(pending=pending_capability(record_id=PENDING_ID))
        relay.keys = [active_key()]
        relay.errors["wallet_getKeys"] = httpx.ConnectError("flaky")
        handler = relay.handler

        def flaky_once(request):
            try:
                return handler(request)
            finally:
                relay.errors.pop("wallet_getKeys", None)

        relay.handler = flaky_once
        result = self.classify(open_session)
        assert result.state == ActivationState.ACTIVE_ONCHAIN
        assert result.polls == 2

    def test_no_policy_takes_latest_active(self, relay, configured, open_session):
        configured()
        relay.keys = [
            key_record([relay_spend(1)], expiry=1_900_000_000, key_hash="0x01"),
            key_record([relay_spend(1)], expiry=2_000_000_000, key_hash="0x02"),
        ]
        result = self.classify(open_session, policy=None)
        assert result.record.id == "0x02"


class TestAwaitSettlement:
    def watch(self, open_session, request_id="0xreq"):
        async def go():
            async with await open_session() as session:
                return await ActivationClassifier(session).await_settlement(request_id)

        return asyncio.run(go())

    def test_settled_operation_activates(self, relay, configured, open_session):
        configured(pending=pending_capability(record_id=PENDING_ID))
        relay.keys = [active_key()]
        relay.calls_status["0xreq"] = {"status": 200, "receipts": [{"transactionHash": "0xfeed"}]}
        report = self.watch(open_session)
        assert report.settled
        assert report.transaction_hash == "0xfeed"
        assert report.status == "success"
        assert report.activation.state == ActivationState.ACTIVE_ONCHAIN
        assert report.activation.pending_cleared

    def test_failed_operation_still_settles(self, relay, configured, open_session):
        configured(pending=pending_capability(record_id=PENDING_ID))
        relay.calls_status["0xreq"] = {"status": 500}
        report = self.watch(open_session)
        assert report.settled
        assert report.status == "failure"
        assert report.activation.state == ActivationState.PENDING_ACTIVATION

    def test_never_settles(self, relay, configured, open_session):
        configured(pending=pending_capability(record_id=PENDING_ID))
        report = self.watch(open_session)
        assert not report.settled
        assert report.activation is None
        assert relay.count("wallet_getCallsStatus") > 1

    def test_status_errors_recorded(self, relay, configured, open_session):
        configured(pending=pending_capability(record_id=PENDING_ID))
        relay.errors["wallet_getCallsStatus"] = {"code": -32000, "message": "unknown bundle"}
        report = self.watch(open_session)
        assert not report.settled
        assert "RELAY_RPC_ERROR" in report.errors

    def test_classification_failure_after_settlement_recorded(self, relay, configured, open_session):
        configured(pending=pending_capability(record_id=PENDING_ID))
        relay.calls_status["0xreq"] = {"status": 200}
        relay.errors["wallet_getKeys"] = 503
        report = self.watch(open_session)
        assert report.settled
        assert report.activation is None
        assert "RELAY_HTTP_ERROR" in report.errors
