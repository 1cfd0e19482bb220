"""
Core capability model: policy normalization, matching, the self-call guard,
errors, deadlines and checkpoint types.
"""

from .checkpoints import (
    ActivationState,
    Checkpoint,
    CheckpointName,
    CheckpointStatus,
    InsecureFinding,
    ReconcileResult,
)
from .deadline import Deadline
from .errors import (
    CapabilityStateError,
    ConfigurationError,
    InsecureScopeError,
    InsecureStateError,
    OperationTimeoutError,
    PolicyValidationError,
    ReconciliationAborted,
    RelayError,
    SignerError,
    WalletError,
    next_action_for,
    to_wallet_error,
)
from .matcher import calls_match, find_match, matches, spend_match
from .policy import (
    ANY_SELECTOR,
    ANY_TARGET,
    NATIVE_TOKEN,
    AgentKey,
    CallEntry,
    CapabilityOrigin,
    CapabilityRecord,
    DesiredPolicy,
    SpendEntry,
    SpendPeriod,
    function_selector,
    normalize_call_scope,
    normalize_selector,
    normalize_target,
    normalize_token,
)
from .security import (
    find_unsafe_self_calls,
    is_unsafe_self_call,
    validate_policy,
    validate_record,
    validate_scope,
)

__all__ = [
    "ActivationState",
    "Checkpoint",
    "CheckpointName",
    "CheckpointStatus",
    "InsecureFinding",
    "ReconcileResult",
    "Deadline",
    "CapabilityStateError",
    "ConfigurationError",
    "InsecureScopeError",
    "InsecureStateError",
    "OperationTimeoutError",
    "PolicyValidationError",
    "ReconciliationAborted",
    "RelayError",
    "SignerError",
    "WalletError",
    "next_action_for",
    "to_wallet_error",
    "calls_match",
    "find_match",
    "matches",
    "spend_match",
    "ANY_SELECTOR",
    "ANY_TARGET",
    "NATIVE_TOKEN",
    "AgentKey",
    "CallEntry",
    "CapabilityOrigin",
    "CapabilityRecord",
    "DesiredPolicy",
    "SpendEntry",
    "SpendPeriod",
    "function_selector",
    "normalize_call_scope",
    "normalize_selector",
    "normalize_target",
    "normalize_token",
    "find_unsafe_self_calls",
    "is_unsafe_self_call",
    "validate_policy",
    "validate_record",
    "validate_scope",
]
