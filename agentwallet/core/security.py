"""
Self-call escalation guard.

An agent key allowed to call the smart account itself with any selector can
rewrite its own permissions. Such scopes are rejected wherever they appear:
desired policies before a grant, and every active or pending record before it
is trusted.
"""

import logging
from typing import Iterable, List, Optional

from .errors import InsecureScopeError
from .policy import ANY_SELECTOR, CallEntry, CapabilityRecord, DesiredPolicy

logger = logging.getLogger(__name__)


def is_unsafe_self_call(entry: CallEntry, account: str) -> bool:
    if not entry.to or entry.to.lower() != account.lower():
        return False
    selector = (entry.signature or "").strip().lower()
    return not selector or selector == ANY_SELECTOR


def find_unsafe_self_calls(entries: Optional[Iterable[CallEntry]], account: str) -> List[CallEntry]:
    return [e for e in entries or () if is_unsafe_self_call(e, account)]


def validate_scope(entries: Optional[Iterable[CallEntry]], account: str) -> None:
    """Raise InsecureScopeError if any entry is a broad self-call."""
    offending = find_unsafe_self_calls(entries, account)
    if offending:
        logger.warning(
            f"Rejected {len(offending)} broad self-call entr"
            f"{'y' if len(offending) == 1 else 'ies'} for {account}"
        )
        raise InsecureScopeError(
            "INSECURE_SELF_CALL_SCOPE",
            "Capability scope allows unrestricted calls into the smart account itself.",
            {
                "account": account,
                "entries": [e.to_dict() for e in offending],
            },
        )


def validate_policy(policy: DesiredPolicy, account: str) -> None:
    validate_scope(policy.calls, account)


def validate_record(record: CapabilityRecord, account: str) -> None:
    validate_scope(record.calls, account)


def is_record_secure(record: CapabilityRecord, account: str) -> bool:
    return not find_unsafe_self_calls(record.calls, account)
