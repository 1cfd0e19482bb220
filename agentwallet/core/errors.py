"""
Error taxonomy for the capability reconciliation engine.

Every failure carries a stable code, a human message, structured details and
an optional hint. The step runner turns these into failed checkpoints with a
caller-actionable next action.

Classes:
- PolicyValidationError: caller must change input (never retried)
- ConfigurationError: account/chain prerequisites missing
- InsecureScopeError: self-call escalation detected in a supplied policy
- RelayError: remote platform failures (may be transient)
- OperationTimeoutError: a deadline elapsed
- CapabilityStateError: internal inconsistency after a grant
- InsecureStateError: active state is unsafe and nothing can replace it
- SignerError: signing backend failures
"""

from typing import Any, Dict, Optional


class WalletError(Exception):
    """Base error for the agent wallet engine."""

    retryable = False

    def __init__(
        self,
        code: str,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        hint: Optional[str] = None,
    ):
        self.code = code
        self.message = message
        self.details = details or {}
        self.hint = hint
        super().__init__(f"{code}: {message}")

    def to_dict(self) -> Dict[str, Any]:
        payload = {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
            **self.details,
        }
        if self.hint:
            payload["hint"] = self.hint
        return payload


class PolicyValidationError(WalletError):
    """Desired policy is missing, ambiguous or malformed."""


class ConfigurationError(WalletError):
    """Account or chain prerequisites are not satisfied."""


class InsecureScopeError(PolicyValidationError):
    """A scope grants the agent unrestricted calls into the account itself."""


class RelayError(WalletError):
    """Remote platform request failed."""

    retryable = True


class OperationTimeoutError(WalletError):
    """A bounded operation ran past its deadline."""

    retryable = True


class CapabilityStateError(WalletError):
    """Observed capability state contradicts what the run produced."""


class InsecureStateError(WalletError):
    """Active capability state is unsafe and there is no safe replacement."""


class SignerError(WalletError):
    """Signing backend failed or is unavailable."""


class ReconciliationAborted(WalletError):
    """
    A reconciliation step failed.

    Carries every checkpoint completed so far plus the synthetic failed
    checkpoint, so the next invocation can resume.
    """

    def __init__(self, cause: WalletError, checkpoint: str, checkpoints, next_action: str):
        super().__init__(
            cause.code,
            cause.message,
            details=dict(cause.details),
            hint=cause.hint,
        )
        self.cause = cause
        self.retryable = cause.retryable
        self.checkpoint = checkpoint
        self.checkpoints = list(checkpoints)
        self.next_action = next_action

    def to_dict(self) -> Dict[str, Any]:
        payload = self.cause.to_dict()
        payload.update(
            {
                "checkpoint": self.checkpoint,
                "checkpoints": [c.to_dict() for c in self.checkpoints],
                "next_action": self.next_action,
            }
        )
        return payload


def to_wallet_error(error: BaseException) -> WalletError:
    """Wrap an arbitrary exception so it can be attached to a checkpoint."""
    if isinstance(error, WalletError):
        return error
    return WalletError("UNEXPECTED_ERROR", str(error) or error.__class__.__name__)


_NEXT_ACTIONS = {
    "POLICY_REQUIRED": (
        "Supply a desired policy with at least one call target "
        '(for example calls=[{"to": "0x..."}]) for the first reconciliation.'
    ),
    "INVALID_CALLS_JSON": "Fix the call allowlist entries and reconcile again.",
    "INVALID_SPEND_LIMIT": "Provide a positive integer spend limit in base units.",
    "INVALID_SPEND_PERIOD": "Use one of minute, hour, day, week, month or year.",
    "INVALID_EXPIRY": "Provide a positive validity duration in days.",
    "INVALID_FEE_LIMIT": "Provide the fee cap as a positive decimal string.",
    "INVALID_SPEND_TOKEN": "Provide the spend token as a 20-byte hex address, or omit it for the native token.",
    "INSECURE_SELF_CALL_SCOPE": (
        "Remove broad self-call entries and keep only explicit external targets "
        "or specific function signatures."
    ),
    "INSECURE_ACTIVE_CAPABILITY": (
        "Reconcile again with an explicit desired policy so a safe capability "
        "without broad self-call scope can be prepared."
    ),
    "MISSING_ACCOUNT_ADDRESS": "Configure the smart account address, then reconcile again.",
    "INVALID_ACCOUNT_ADDRESS": "Supply the smart account as a 0x-prefixed 20-byte hex address.",
    "MISSING_CHAIN_ID": "Reconcile again with an explicit chain id (or the testnet flag).",
    "INVALID_CHAIN_ID": "Use a supported chain id (8453 Base, 84532 Base Sepolia).",
    "CAPABILITY_NOT_FINALIZED": (
        "Reconcile again with the desired policy to prepare the capability again."
    ),
    "RELAY_REQUEST_TIMEOUT": "The relay did not answer in time. Reconcile again shortly.",
    "RELAY_HTTP_ERROR": "Check connectivity to the relay, then reconcile again.",
    "RELAY_RPC_ERROR": "Inspect the relay error above, then reconcile again.",
    "RELAY_INVALID_RESPONSE": "The relay returned an unexpected payload. Reconcile again later.",
    "GRANT_FAILED": "Reconcile again and complete the capability grant approval.",
    "GRANT_TIMEOUT": "The grant was not confirmed in time. Reconcile again to resume.",
    "DISCOVERY_TIMEOUT": "The relay did not report capability state in time. Reconcile again shortly.",
    "SEND_PREPARE_TIMEOUT": "The relay did not prepare the operation in time. Send it again shortly.",
    "SEND_PREPARE_FAILED": "Check the calls against the active capability, then send again.",
    "SEND_SIGN_FAILED": "Make sure the agent signing key is available, then send again.",
    "SEND_SUBMIT_TIMEOUT": "Submission was not confirmed in time. Check the capability status before sending again.",
    "SEND_SUBMIT_FAILED": "Inspect the relay error above, then send again.",
    "SEND_FAILED": "The relay accepted the operation without a bundle id. Check the capability status.",
    "SIGNER_UNAVAILABLE": "Make sure the signing backend is installed and reachable.",
    "SIGNER_COMMAND_FAILED": "Inspect the signing helper output, then reconcile again.",
}

_CHECKPOINT_DEFAULTS = {
    "account_readiness": "Resolve the account configuration above, then reconcile again.",
    "key_readiness": "Make sure the agent signing key is available, then reconcile again.",
    "capability_state_discovery": (
        "Resolve the account or capability state issue above, then reconcile again."
    ),
    "capability_preparation": (
        "Reconcile again and complete the capability grant approval if prompted."
    ),
    "capability_classification": (
        "Reconcile again and complete the capability grant approval if prompted."
    ),
    "outcome": (
        "Reconcile again, then run a first real operation to activate a pending "
        "capability if needed."
    ),
}


def next_action_for(checkpoint: str, error: WalletError) -> str:
    """Derive a caller-actionable next step from an error."""
    if error.hint and error.hint.strip():
        return error.hint

    if error.code in _NEXT_ACTIONS:
        return _NEXT_ACTIONS[error.code]

    return _CHECKPOINT_DEFAULTS.get(
        checkpoint, "Fix the issue above, then reconcile again."
    )
