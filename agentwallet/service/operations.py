"""
Operation sender.

Sends allowlisted calls with the agent key in three bounded stages:
prepare (relay computes the digest), sign (local signer, prehashed) and
submit. Sending the first real operation is what activates a pending
capability, so the sender finishes by watching settlement and classifying
activation once.
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from agentwallet.core.deadline import Deadline
from agentwallet.core.errors import (
    PolicyValidationError,
    RelayError,
    SignerError,
)
from agentwallet.service.activation import ActivationClassifier, SettlementReport
from agentwallet.service.relay.models import parse_quantity
from agentwallet.service.session import WalletSession

logger = logging.getLogger(__name__)

_ADDRESS = re.compile(r"^0x[0-9a-fA-F]{40}$")
_HEX_DATA = re.compile(r"^0x([0-9a-fA-F]{2})*$")


def _invalid(message: str, **details) -> PolicyValidationError:
    return PolicyValidationError("INVALID_CALLS_JSON", message, details or None)


def parse_send_calls(calls: Any) -> List[Dict[str, Any]]:
    """Validate calls to send and normalize them to relay form."""
    if not isinstance(calls, list) or not calls:
        raise _invalid("Send calls must be a non-empty list.")

    parsed = []
    for index, call in enumerate(calls):
        if not isinstance(call, dict):
            raise _invalid("Each send call must be an object.", index=index)

        to = call.get("to")
        if not (isinstance(to, str) and _ADDRESS.match(to)):
            raise _invalid("Each send call must include a `to` address.", index=index)

        entry: Dict[str, Any] = {"to": to}

        data = call.get("data")
        if data is not None:
            if not (isinstance(data, str) and _HEX_DATA.match(data)):
                raise _invalid("Send call `data` must be 0x-prefixed hex.", index=index)
            entry["data"] = data

        value = call.get("value")
        if value is not None:
            try:
                amount = parse_quantity(value)
            except ValueError:
                amount = -1
            if amount < 0:
                raise _invalid(
                    "Each send call `value` must be a non-negative integer (decimal or 0x hex).",
                    index=index,
                )
            entry["value"] = hex(amount)

        parsed.append(entry)
    return parsed


@dataclass
class SendResult:
    bundle_id: str
    settlement: SettlementReport

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bundleId": self.bundle_id,
            "status": self.settlement.status,
            "txHash": self.settlement.transaction_hash,
            "settled": self.settlement.settled,
            "activation": (
                self.settlement.activation.to_dict() if self.settlement.activation else None
            ),
            "errors": self.settlement.errors,
        }


class OperationSender:
    """Prepares, signs and submits one operation for the agent key."""

    def __init__(self, session: WalletSession, classifier: Optional[ActivationClassifier] = None):
        self.session = session
        self.classifier = classifier or ActivationClassifier(session)

    async def send(self, calls: Any) -> SendResult:
        parsed = parse_send_calls(calls)
        address = self.session.address
        chain_id = self.session.chain_id
        relay = self.session.relay
        stage_timeout = self.session.settings.send_stage_timeout_seconds

        agent_key = await self.session.signer.get_agent_key()
        key = {**agent_key.to_dict(), "prehash": False}

        logger.info(f"Preparing {len(parsed)} call(s) from {address} on chain {chain_id}")
        try:
            prepared = await Deadline(stage_timeout).bound(
                relay.prepare_calls(
                    {
                        "calls": parsed,
                        "chainId": hex(chain_id),
                        "from": address,
                        "key": key,
                    }
                ),
                "SEND_PREPARE_TIMEOUT",
                "Timed out while preparing calls.",
                {"stage": "prepare_calls"},
            )
        except RelayError as e:
            raise RelayError(
                "SEND_PREPARE_FAILED",
                "Relay failed to prepare calls.",
                {"stage": "prepare_calls", "cause": e.to_dict()},
            ) from e

        try:
            signature = await self.session.signer.sign(bytes.fromhex(prepared.digest[2:]))
        except (SignerError, ValueError) as e:
            raise SignerError(
                "SEND_SIGN_FAILED",
                "Local signer failed to sign the prepared digest.",
                {"stage": "sign_digest", "error": str(e)},
            ) from e

        try:
            bundle_id = await Deadline(stage_timeout).bound(
                relay.send_prepared_calls(prepared.submit_params(key, "0x" + signature.hex())),
                "SEND_SUBMIT_TIMEOUT",
                "Timed out while submitting prepared calls.",
                {"stage": "send_prepared"},
            )
        except RelayError as e:
            raise RelayError(
                "SEND_SUBMIT_FAILED",
                "Relay failed to submit prepared calls.",
                {"stage": "send_prepared", "cause": e.to_dict()},
            ) from e

        if not bundle_id:
            raise RelayError("SEND_FAILED", "Relay did not return a call bundle id.")

        logger.info(f"Submitted operation {bundle_id}; waiting for settlement")
        settlement = await self.classifier.await_settlement(bundle_id)
        return SendResult(bundle_id=bundle_id, settlement=settlement)


async def send_operation(session: WalletSession, calls: Any) -> SendResult:
    """Send `calls` with the agent key within `session`."""
    return await OperationSender(session).send(calls)
