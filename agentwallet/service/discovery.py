"""
Capability state discovery.

Builds one consistent, validated snapshot of the agent's capabilities: the
active records the relay reports for this account, chain and agent key, plus
the locally stored pending record. Nothing leaves this module without passing
the self-call guard.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from agentwallet.core.checkpoints import ActivationState, InsecureFinding
from agentwallet.core.errors import InsecureStateError
from agentwallet.core.matcher import find_match
from agentwallet.core.policy import AgentKey, CapabilityRecord, DesiredPolicy
from agentwallet.core.security import find_unsafe_self_calls
from agentwallet.service.session import WalletSession

logger = logging.getLogger(__name__)


def _iso(ts: Optional[float]) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


@dataclass
class DiscoveryResult:
    """Validated capability snapshot."""

    active: List[CapabilityRecord] = field(default_factory=list)
    pending: Optional[CapabilityRecord] = None
    insecure: List[InsecureFinding] = field(default_factory=list)
    rejected: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not self.active and self.pending is None

    def active_match(self, policy: DesiredPolicy) -> Optional[CapabilityRecord]:
        return find_match(policy, self.active)

    def pending_match(self, policy: DesiredPolicy) -> Optional[CapabilityRecord]:
        if self.pending is None:
            return None
        return find_match(policy, [self.pending])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "active": [r.to_dict() for r in self.active],
            "pending": self.pending.to_dict() if self.pending else None,
            "insecure": [f.to_dict() for f in self.insecure],
            "rejected": self.rejected,
        }


class StateDiscovery:
    """Reads and validates capability state for one session."""

    def __init__(self, session: WalletSession):
        self.session = session

    async def fetch_active(self, agent_key: AgentKey, include_expired: bool = False):
        """Relay records for this agent key, plus the records rejected while parsing."""
        address = self.session.address
        chain_id = self.session.chain_id
        parsed = await self.session.relay.get_keys(address, chain_id)
        now = self.session.now()

        records = []
        for candidate in parsed.records:
            if candidate.role != "normal":
                continue
            if not candidate.key.same_as(agent_key):
                continue
            if not include_expired and candidate.expiry <= now:
                continue
            records.append(candidate.to_record(address, chain_id))
        return records, parsed.rejected

    async def discover(self, policy: Optional[DesiredPolicy] = None) -> DiscoveryResult:
        """
        Snapshot active and pending capabilities.

        Insecure active records are dropped from the snapshot; insecure pending
        records are also deleted from the store. With no desired policy to
        replace it, an insecure active record is fatal.
        """
        address = self.session.address
        agent_key = await self.session.signer.get_agent_key()
        active, rejected = await self.fetch_active(agent_key)

        result = DiscoveryResult(rejected=rejected)

        for record in active:
            offending = find_unsafe_self_calls(record.calls, address)
            if offending:
                logger.warning(
                    f"Active capability {record.id} allows broad self-calls on {address}"
                )
                result.insecure.append(
                    InsecureFinding(record=record, entries=[e.to_dict() for e in offending])
                )
                continue
            result.active.append(record)

        if policy is None and result.insecure:
            raise InsecureStateError(
                "INSECURE_ACTIVE_CAPABILITY",
                "An active agent capability allows unrestricted calls into the smart account.",
                {
                    "account": address,
                    "insecure": [f.to_dict() for f in result.insecure],
                },
            )

        pending, finding = await self._load_pending(agent_key)
        result.pending = pending
        if finding is not None:
            result.insecure.append(finding)

        logger.debug(
            f"Discovered {len(result.active)} active, "
            f"{'1' if result.pending else '0'} pending, "
            f"{len(result.insecure)} insecure capabilities"
        )
        return result

    async def _load_pending(self, agent_key: AgentKey):
        """
        The stored pending record if it can be trusted, plus any insecure finding.

        Expired records and records for another agent key are ignored; a record
        with a broad self-call scope is deleted from the store.
        """
        address = self.session.address
        pending = self.session.store.get_pending(address, self.session.chain_id)
        if pending is None:
            return None, None
        if not pending.is_valid(self.session.now()):
            logger.info(f"Ignoring expired pending capability {pending.id}")
            return None, None
        if not pending.key.same_as(agent_key):
            logger.info(f"Ignoring pending capability {pending.id} for another agent key")
            return None, None

        offending = find_unsafe_self_calls(pending.calls, address)
        if not offending:
            return pending, None

        logger.warning(f"Pending capability {pending.id} allows broad self-calls; removing it")
        await self.session.store.clear_pending(pending.id)
        return None, InsecureFinding(
            record=pending,
            entries=[e.to_dict() for e in offending],
            removed=True,
        )

    async def list_capabilities(self, include_expired: bool = False) -> List[CapabilityRecord]:
        agent_key = await self.session.signer.get_agent_key()
        records, _ = await self.fetch_active(agent_key, include_expired=include_expired)
        return records

    @staticmethod
    def unconfigured_summary() -> Dict[str, Any]:
        return {
            "state": ActivationState.UNCONFIGURED.value,
            "active": 0,
            "total": 0,
            "latestExpiry": None,
            "pendingSince": None,
            "pendingId": None,
            "warnings": [],
        }

    async def summary(self) -> Dict[str, Any]:
        """
        Counts, latest expiry and activation state for status reporting.

        The pending record goes through the same checks as in discover(); one
        removed for a broad self-call scope is reported under `warnings`.
        """
        account = self.session.config.account
        configured = (
            account.address
            and account.chain_id is not None
            and self.session.config.signer.handle
        )
        if not configured:
            return self.unconfigured_summary()

        agent_key = await self.session.signer.get_agent_key()
        records, _ = await self.fetch_active(agent_key, include_expired=True)
        now = self.session.now()
        active = [
            r for r in records
            if r.is_valid(now) and not find_unsafe_self_calls(r.calls, account.address)
        ]
        latest = max((r.expiry for r in active), default=None)

        warnings = []
        pending, finding = await self._load_pending(agent_key)
        if finding is not None:
            warnings.append(
                {
                    "code": "INSECURE_PENDING_CAPABILITY_REMOVED",
                    "message": f"Pending capability {finding.record.id} allowed broad self-calls and was removed.",
                    "entries": finding.entries,
                }
            )

        if active:
            state = ActivationState.ACTIVE_ONCHAIN
        elif pending is not None:
            state = ActivationState.PENDING_ACTIVATION
        else:
            state = ActivationState.UNCONFIGURED

        return {
            "state": state.value,
            "active": len(active),
            "total": len(records),
            "latestExpiry": _iso(latest),
            "pendingSince": pending.created_at if pending else None,
            "pendingId": pending.id if pending else None,
            "warnings": warnings,
        }
