"""
Capability matcher.

Decides whether an observed capability satisfies a desired policy. Call scope
is a subset check on normalized (target, selector) pairs; spend must match an
observed entry exactly on period, limit and token.
"""

from typing import Iterable, Optional

from .policy import (
    CapabilityRecord,
    DesiredPolicy,
    normalize_call_scope,
    normalize_spend,
)


def calls_match(policy: DesiredPolicy, record: CapabilityRecord) -> bool:
    desired = normalize_call_scope(policy.calls)
    observed = normalize_call_scope(record.calls)
    return desired <= observed


def spend_match(policy: DesiredPolicy, record: CapabilityRecord) -> bool:
    wanted = normalize_spend(policy.spend_entry())
    return any(normalize_spend(s) == wanted for s in record.spend)


def matches(policy: DesiredPolicy, record: CapabilityRecord) -> bool:
    return calls_match(policy, record) and spend_match(policy, record)


def find_match(
    policy: DesiredPolicy, records: Iterable[CapabilityRecord]
) -> Optional[CapabilityRecord]:
    """Return the matching record with the latest expiry, if any."""
    best = None
    for record in records:
        if not matches(policy, record):
            continue
        if best is None or record.expiry > best.expiry:
            best = record
    return best
