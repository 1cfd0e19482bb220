"""
Activation classifier.

A granted capability is only enforceable once the relay reports it as an
active key record. Until then it is pending activation; that is a normal
terminal state for a run, not a failure.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from agentwallet.core.checkpoints import ActivationState
from agentwallet.core.deadline import Deadline
from agentwallet.core.errors import (
    OperationTimeoutError,
    PolicyValidationError,
    RelayError,
    WalletError,
)
from agentwallet.core.matcher import matches
from agentwallet.core.policy import CapabilityRecord, DesiredPolicy
from agentwallet.service.discovery import DiscoveryResult, StateDiscovery
from agentwallet.service.session import WalletSession

logger = logging.getLogger(__name__)


@dataclass
class ActivationResult:
    state: ActivationState
    record: Optional[CapabilityRecord] = None
    pending_cleared: bool = False
    polls: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "capability": self.record.to_dict() if self.record else None,
            "pendingCleared": self.pending_cleared,
            "polls": self.polls,
        }


@dataclass
class SettlementReport:
    """Outcome of watching one submitted operation."""

    request_id: str
    status: str = "pending"
    transaction_hash: Optional[str] = None
    settled: bool = False
    activation: Optional[ActivationResult] = None
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "requestId": self.request_id,
            "status": self.status,
            "transactionHash": self.transaction_hash,
            "settled": self.settled,
            "activation": self.activation.to_dict() if self.activation else None,
            "errors": self.errors,
        }


class ActivationClassifier:
    """Polls discovery until a matching capability is active or time runs out."""

    def __init__(self, session: WalletSession, discovery: Optional[StateDiscovery] = None):
        self.session = session
        self.discovery = discovery or StateDiscovery(session)

    async def classify(
        self,
        policy: Optional[DesiredPolicy],
        timeout: Optional[float] = None,
    ) -> ActivationResult:
        """
        Classify the capability for `policy`.

        With no policy, any secure active record counts as active. When the
        deadline passes without a match, the pending record is left untouched
        and the result is PENDING_ACTIVATION. Failed polls are retried until
        the deadline; if none succeeded, the last failure is raised.
        """
        settings = self.session.settings
        deadline = Deadline(settings.discovery_timeout_seconds if timeout is None else timeout)
        polls = 0
        pending = None
        observed = False
        last_error: Optional[WalletError] = None

        while True:
            polls += 1
            # a zero budget still allows one full discovery pass
            if polls == 1 and deadline.expired:
                budget = Deadline(settings.relay_timeout_seconds)
            else:
                budget = deadline
            try:
                snapshot = await budget.bound(
                    self.discovery.discover(policy),
                    "DISCOVERY_TIMEOUT",
                    "Timed out while discovering capability state.",
                    {"poll": polls},
                    cap=settings.relay_timeout_seconds,
                )
            except OperationTimeoutError as e:
                last_error = e
                logger.warning(f"Activation poll {polls} timed out")
                break
            except RelayError as e:
                last_error = e
                logger.warning(f"Activation poll {polls} failed, retrying: {e}")
            else:
                observed = True
                active = self._active_match(policy, snapshot)
                if active is not None:
                    cleared = await self._clear_pending(snapshot, active)
                    logger.info(f"Capability {active.id} is active on chain after {polls} poll(s)")
                    return ActivationResult(
                        state=ActivationState.ACTIVE_ONCHAIN,
                        record=active,
                        pending_cleared=cleared,
                        polls=polls,
                    )
                pending = snapshot.pending_match(policy) if policy else snapshot.pending

            if deadline.expired:
                break
            await deadline.sleep(settings.discovery_interval_seconds)
            if deadline.expired:
                break

        if not observed and last_error is not None:
            logger.error(f"No activation poll succeeded in {polls} attempt(s): {last_error.code}")
            raise last_error

        logger.info(f"No active capability after {polls} poll(s); pending activation")
        return ActivationResult(
            state=ActivationState.PENDING_ACTIVATION,
            record=pending,
            polls=polls,
        )

    @staticmethod
    def _active_match(policy: Optional[DesiredPolicy], snapshot: DiscoveryResult) -> Optional[CapabilityRecord]:
        if policy is not None:
            return snapshot.active_match(policy)
        if not snapshot.active:
            return None
        return max(snapshot.active, key=lambda r: r.expiry)

    async def _clear_pending(self, snapshot: DiscoveryResult, active: CapabilityRecord) -> bool:
        """Drop the pending record only once `active` is its on-chain counterpart."""
        pending = snapshot.pending
        if pending is None:
            return False
        if pending.id != active.id:
            try:
                envelope = DesiredPolicy.from_record(pending)
            except PolicyValidationError:
                envelope = None
            if envelope is None or not matches(envelope, active):
                logger.debug(f"Pending capability {pending.id} is not settled by {active.id}; keeping it")
                return False
        return await self.session.store.clear_pending(pending.id)

    async def await_settlement(self, request_id: str) -> SettlementReport:
        """
        Watch a submitted operation until it settles, then classify once.

        Status polling is best effort: individual failures are recorded and
        polling continues until the settlement deadline.
        """
        settings = self.session.settings
        deadline = Deadline(settings.settlement_timeout_seconds)
        report = SettlementReport(request_id=request_id)

        while not deadline.expired:
            try:
                snapshot = await deadline.bound(
                    self.session.relay.get_calls_status(request_id),
                    "SETTLEMENT_STATUS_TIMEOUT",
                    "Timed out while fetching call status.",
                    {"requestId": request_id},
                    cap=settings.status_timeout_seconds,
                )
            except (RelayError, OperationTimeoutError) as e:
                report.errors.append(e.code)
                logger.debug(f"Call status poll for {request_id} failed: {e}")
            else:
                report.status = snapshot.state
                report.transaction_hash = snapshot.transaction_hash
                if report.transaction_hash or report.status != "pending":
                    report.settled = True
                    break

            await deadline.sleep(settings.settlement_interval_seconds)

        if report.settled:
            logger.info(
                f"Operation {request_id} settled ({report.status}, tx={report.transaction_hash})"
            )
            pending = self.session.store.get_pending(
                self.session.address, self.session.chain_id
            )
            policy = DesiredPolicy.from_record(pending) if pending else None
            try:
                report.activation = await self.classify(policy, timeout=0)
            except (RelayError, OperationTimeoutError) as e:
                report.errors.append(e.code)
                logger.warning(f"Could not classify activation after {request_id} settled: {e}")
        else:
            logger.warning(f"Operation {request_id} did not settle before the deadline")

        return report
