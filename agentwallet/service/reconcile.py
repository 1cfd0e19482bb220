"""
Capability reconciliation step runner.

Converges the agent capability toward a desired policy through a fixed
sequence of steps, one checkpoint each:

1. account_readiness          - smart account address and chain resolved
2. key_readiness              - agent signing key exists
3. capability_state_discovery - active and pending capabilities observed
4. capability_preparation     - grant issued only if nothing satisfies the policy
5. capability_classification  - active on chain or pending activation
6. outcome                    - final verdict and next action

Re-running with the same inputs converges: steps whose state already holds
report already_ok and no second grant is issued. The first failing step aborts
the run with ReconciliationAborted carrying every checkpoint so far.
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from agentwallet.config.settings import SUPPORTED_CHAINS, EngineSettings, resolve_chain_id
from agentwallet.core.checkpoints import (
    ActivationState,
    Checkpoint,
    CheckpointName,
    CheckpointStatus,
    ReconcileResult,
)
from agentwallet.core.errors import (
    CapabilityStateError,
    ConfigurationError,
    PolicyValidationError,
    ReconciliationAborted,
    next_action_for,
    to_wallet_error,
)
from agentwallet.core.policy import CapabilityRecord, DesiredPolicy
from agentwallet.core.security import validate_policy
from agentwallet.service.activation import ActivationClassifier, ActivationResult
from agentwallet.service.discovery import DiscoveryResult, StateDiscovery
from agentwallet.service.grants import GrantOrchestrator
from agentwallet.service.session import WalletSession

logger = logging.getLogger(__name__)

_ADDRESS = re.compile(r"^0x[0-9a-fA-F]{40}$")

FIRST_OPERATION_HINT = (
    "Run a first real allowlisted operation with the agent key to activate "
    "the pending capability on chain."
)


@dataclass
class ReconcileRequest:
    """Inputs for one reconciliation run."""

    policy: Optional[DesiredPolicy] = None
    address: Optional[str] = None
    chain_id: Optional[int] = None
    testnet: Optional[bool] = None

    @classmethod
    def from_dict(
        cls,
        data: Dict[str, Any],
        settings: Optional[EngineSettings] = None,
    ) -> "ReconcileRequest":
        raw_policy = data.get("policy")
        chain_id = data.get("chainId")
        if chain_id is not None:
            try:
                chain_id = int(chain_id)
            except (TypeError, ValueError):
                raise ConfigurationError(
                    "INVALID_CHAIN_ID", f"Chain id must be an integer, got {chain_id!r}."
                )
        return cls(
            policy=_parse_policy(raw_policy, settings) if raw_policy is not None else None,
            address=data.get("address") or None,
            chain_id=chain_id,
            testnet=data.get("testnet"),
        )


def _parse_policy(raw: Dict[str, Any], settings: Optional[EngineSettings]) -> DesiredPolicy:
    if settings is None:
        return DesiredPolicy.from_dict(raw)
    return DesiredPolicy.from_dict(
        raw,
        default_period=settings.default_spend_period,
        default_expiry_days=settings.default_expiry_days,
    )


@dataclass
class StepResult:
    status: CheckpointStatus
    summary: str
    details: Optional[Dict[str, Any]] = None


class ReconciliationRunner:
    """Runs the reconciliation steps for one session."""

    def __init__(self, session: WalletSession):
        self.session = session
        self.discovery = StateDiscovery(session)
        self.grants = GrantOrchestrator(session)
        self.classifier = ActivationClassifier(session, self.discovery)
        self.checkpoints: List[Checkpoint] = []

        # state carried between steps
        self._policy: Optional[DesiredPolicy] = None
        self._snapshot: Optional[DiscoveryResult] = None
        self._satisfied_by: Optional[CapabilityRecord] = None
        self._granted: Optional[CapabilityRecord] = None
        self._activation: Optional[ActivationResult] = None

    async def _step(
        self,
        name: CheckpointName,
        run: Callable[[], Awaitable[StepResult]],
    ) -> StepResult:
        logger.info(f"[{name.value}] starting")
        try:
            result = await run()
        except Exception as e:
            error = to_wallet_error(e)
            next_action = next_action_for(name.value, error)
            logger.error(f"[{name.value}] failed: {error.code}: {error.message}")
            failed = Checkpoint(
                name=name,
                status=CheckpointStatus.FAILED,
                summary=error.message,
                details={**error.to_dict(), "next_action": next_action},
            )
            raise ReconciliationAborted(
                error, name.value, self.checkpoints + [failed], next_action
            ) from e

        self.checkpoints.append(
            Checkpoint(
                name=name,
                status=result.status,
                summary=result.summary,
                details=result.details or {},
            )
        )
        logger.info(f"[{name.value}] {result.status.value}: {result.summary}")
        return result

    async def run(self, request: ReconcileRequest) -> ReconcileResult:
        self.checkpoints = []
        self._policy = request.policy

        await self._step(CheckpointName.ACCOUNT_READINESS, lambda: self._account_readiness(request))
        await self._step(CheckpointName.KEY_READINESS, self._key_readiness)
        await self._step(CheckpointName.CAPABILITY_STATE_DISCOVERY, self._state_discovery)
        await self._step(CheckpointName.CAPABILITY_PREPARATION, self._preparation)
        await self._step(CheckpointName.CAPABILITY_CLASSIFICATION, self._classification)
        outcome = await self._step(CheckpointName.OUTCOME, self._outcome)

        activation = self._activation
        return ReconcileResult(
            state=activation.state,
            checkpoints=list(self.checkpoints),
            capability=activation.record,
            granted=self._granted is not None,
            next_action=(outcome.details or {}).get("next_action"),
        )

    # ========== Steps ==========

    async def _account_readiness(self, request: ReconcileRequest) -> StepResult:
        store = self.session.store
        account = store.config.account

        address = request.address or account.address
        if not address:
            raise ConfigurationError(
                "MISSING_ACCOUNT_ADDRESS",
                "No smart account address supplied or configured.",
            )
        if not _ADDRESS.match(address):
            raise ConfigurationError(
                "INVALID_ACCOUNT_ADDRESS",
                "Smart account address must be a 20-byte hex address.",
                {"address": address},
            )

        chain_id = resolve_chain_id(request.chain_id, request.testnet, account.chain_id)

        details = {"address": address, "chainId": chain_id, "chain": SUPPORTED_CHAINS[chain_id]}

        if account.address is None:
            account.address = address
            account.chain_id = chain_id
            await store.save()
            return StepResult(CheckpointStatus.CREATED, f"Account {address} configured on chain {chain_id}.", details)

        changed_address = account.address.lower() != address.lower()
        changed_chain = account.chain_id != chain_id
        if changed_address or changed_chain:
            previous = {"address": account.address, "chainId": account.chain_id}
            account.address = address
            account.chain_id = chain_id
            if changed_address and store.config.pending:
                logger.info("Account changed; dropping pending capability")
                store.config.pending = None
            await store.save()
            return StepResult(
                CheckpointStatus.UPDATED,
                f"Account switched to {address} on chain {chain_id}.",
                {**details, "previous": previous},
            )

        return StepResult(CheckpointStatus.ALREADY_OK, f"Account {address} on chain {chain_id}.", details)

    async def _key_readiness(self) -> StepResult:
        signer = self.session.signer
        created = await signer.init(label=self.session.settings.signer_label)
        if created:
            await self.session.store.save()
        key = await signer.get_agent_key()
        details = {"keyId": signer.key_id, "publicKey": key.public_key, "type": key.type}
        if created:
            return StepResult(CheckpointStatus.CREATED, "Agent signing key created.", details)
        return StepResult(CheckpointStatus.ALREADY_OK, "Agent signing key present.", details)

    async def _state_discovery(self) -> StepResult:
        policy = self._policy
        if policy is not None:
            validate_policy(policy, self.session.address)

        snapshot = await self.discovery.discover(policy)
        self._snapshot = snapshot

        if policy is None:
            if snapshot.empty:
                raise PolicyValidationError(
                    "POLICY_REQUIRED",
                    "No capability exists yet and no desired policy was supplied.",
                )
            if snapshot.pending is not None and not snapshot.active:
                self._policy = DesiredPolicy.from_record(snapshot.pending)
            self._satisfied_by = (
                max(snapshot.active, key=lambda r: r.expiry) if snapshot.active else snapshot.pending
            )
        else:
            self._satisfied_by = snapshot.active_match(policy) or snapshot.pending_match(policy)

        details = {
            "active": len(snapshot.active),
            "pending": snapshot.pending.id if snapshot.pending else None,
            "matched": self._satisfied_by.id if self._satisfied_by else None,
        }
        if snapshot.insecure:
            details["insecure"] = [f.to_dict() for f in snapshot.insecure]
        if snapshot.rejected:
            details["rejected"] = snapshot.rejected

        if self._satisfied_by is not None:
            return StepResult(
                CheckpointStatus.ALREADY_OK,
                f"Capability {self._satisfied_by.id} ({self._satisfied_by.origin.value}) satisfies the policy.",
                details,
            )
        return StepResult(
            CheckpointStatus.UPDATED,
            "No existing capability satisfies the desired policy.",
            details,
        )

    async def _preparation(self) -> StepResult:
        if self._satisfied_by is not None or self._policy is None:
            return StepResult(
                CheckpointStatus.ALREADY_OK,
                "Existing capability reused; no grant needed.",
                {"capabilityId": self._satisfied_by.id if self._satisfied_by else None},
            )

        record = await self.grants.grant(self._policy)
        self._granted = record
        return StepResult(
            CheckpointStatus.UPDATED,
            f"Capability {record.id} granted and pending activation.",
            {"capabilityId": record.id, "expiry": record.expiry},
        )

    async def _classification(self) -> StepResult:
        result = await self.classifier.classify(self._policy)
        self._activation = result
        snapshot = self._snapshot
        was_active = bool(
            snapshot is not None
            and self._satisfied_by is not None
            and self._satisfied_by in snapshot.active
        )

        if result.state == ActivationState.ACTIVE_ONCHAIN:
            if self.session.store.remember(result.record.id):
                await self.session.store.save()
            details = {"state": result.state.value, "capabilityId": result.record.id, "expiry": result.record.expiry}
            if self._granted is None and was_active and not result.pending_cleared:
                return StepResult(CheckpointStatus.ALREADY_OK, f"Capability {result.record.id} is active on chain.", details)
            return StepResult(CheckpointStatus.UPDATED, f"Capability {result.record.id} is now active on chain.", details)

        pending = self.session.store.get_pending(self.session.address, self.session.chain_id)
        if pending is None and self._granted is None:
            raise CapabilityStateError(
                "CAPABILITY_NOT_FINALIZED",
                "No active capability and no pending capability were found.",
                {"state": result.state.value},
            )

        capability = result.record or pending or self._granted
        if result.record is None:
            self._activation = ActivationResult(
                state=result.state, record=capability, polls=result.polls
            )
        details = {"state": result.state.value, "capabilityId": capability.id if capability else None}
        if self._granted is not None:
            return StepResult(CheckpointStatus.UPDATED, f"Capability {capability.id} is pending activation.", details)
        return StepResult(CheckpointStatus.ALREADY_OK, f"Capability {capability.id} is still pending activation.", details)

    async def _outcome(self) -> StepResult:
        activation = self._activation
        record = activation.record
        details: Dict[str, Any] = {
            "state": activation.state.value,
            "capabilityId": record.id if record else None,
        }

        if activation.state == ActivationState.ACTIVE_ONCHAIN:
            return StepResult(CheckpointStatus.ALREADY_OK, "Agent capability is active on chain.", details)

        pending = self.session.store.get_pending(self.session.address, self.session.chain_id)
        if pending is not None:
            details["pending"] = {
                "id": pending.id,
                "createdAt": pending.created_at,
                "chainId": pending.chain_id,
            }
        details["next_action"] = FIRST_OPERATION_HINT

        classification = self.checkpoints[-1].status
        return StepResult(classification, "Agent capability is pending activation.", details)


async def reconcile(session: WalletSession, request: ReconcileRequest) -> ReconcileResult:
    """Run one reconciliation for `request` within `session`."""
    return await ReconciliationRunner(session).run(request)
