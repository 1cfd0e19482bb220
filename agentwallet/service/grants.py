"""
Grant orchestrator.

Issues a new capability grant for the agent key. Granting is not idempotent
on the relay side, so callers only get here after discovery found no record
that satisfies the desired policy.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict

from agentwallet.config.settings import resolve_fee_token
from agentwallet.core.deadline import Deadline
from agentwallet.core.errors import RelayError
from agentwallet.core.policy import (
    AgentKey,
    CapabilityOrigin,
    CapabilityRecord,
    DesiredPolicy,
)
from agentwallet.core.security import validate_policy, validate_record
from agentwallet.service.session import WalletSession

logger = logging.getLogger(__name__)


def build_grant_request(
    address: str,
    chain_id: int,
    key: AgentKey,
    policy: DesiredPolicy,
    now: float,
) -> Dict[str, Any]:
    """wallet_grantPermissions parameters for `policy`."""
    spend = {
        "limit": hex(policy.spend_limit),
        "period": policy.spend_period.value,
    }
    if policy.spend_token:
        spend["token"] = policy.spend_token

    return {
        "address": address,
        "chainId": hex(chain_id),
        "expiry": policy.expiry_at(now),
        "feeToken": resolve_fee_token(chain_id, policy.fee_limit),
        "key": key.to_dict(),
        "permissions": {
            "calls": [c.to_dict() for c in policy.grant_calls()],
            "spend": [spend],
        },
    }


class GrantOrchestrator:
    """Requests capability grants and records them as pending."""

    def __init__(self, session: WalletSession):
        self.session = session

    async def grant(self, policy: DesiredPolicy) -> CapabilityRecord:
        address = self.session.address
        chain_id = self.session.chain_id

        validate_policy(policy, address)

        key = await self.session.signer.get_agent_key()
        request = build_grant_request(address, chain_id, key, policy, self.session.now())

        logger.info(
            f"Requesting capability grant for {address} on chain {chain_id} "
            f"({len(request['permissions']['calls'])} call entries, "
            f"spend {policy.spend_limit}/{policy.spend_period.value})"
        )

        deadline = Deadline(self.session.settings.grant_timeout_seconds)
        response = await deadline.bound(
            self.session.relay.grant_permissions(request),
            "GRANT_TIMEOUT",
            "Timed out waiting for the capability grant.",
            {"address": address, "chainId": chain_id},
        )

        if not response.key.public_key or response.key.public_key.lower() != key.public_key.lower():
            raise RelayError(
                "GRANT_FAILED",
                "Relay granted the capability to a different key.",
                {"grantedKey": response.key.public_key},
            )

        calls, spend = response.scope()
        record = CapabilityRecord(
            id=response.id,
            address=address,
            chain_id=chain_id,
            expiry=response.expiry,
            key=AgentKey(public_key=response.key.public_key, type=response.key.type),
            calls=calls or tuple(policy.grant_calls()),
            spend=spend or (policy.spend_entry(),),
            origin=CapabilityOrigin.PENDING,
            created_at=datetime.now(timezone.utc).isoformat(),
        )

        # the relay may widen what was asked for; never persist an unsafe scope
        validate_record(record, address)

        await self.session.store.set_pending(record)
        logger.info(f"Capability {record.id} granted, pending activation until first use")
        return record
