"""
Checkpoint and activation types reported by a reconciliation run.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from .policy import CapabilityRecord


class CheckpointName(str, Enum):
    """Reconciliation steps, in execution order."""

    ACCOUNT_READINESS = "account_readiness"
    KEY_READINESS = "key_readiness"
    CAPABILITY_STATE_DISCOVERY = "capability_state_discovery"
    CAPABILITY_PREPARATION = "capability_preparation"
    CAPABILITY_CLASSIFICATION = "capability_classification"
    OUTCOME = "outcome"


class CheckpointStatus(str, Enum):
    ALREADY_OK = "already_ok"
    CREATED = "created"
    UPDATED = "updated"
    SKIPPED = "skipped"
    FAILED = "failed"


class ActivationState(str, Enum):
    """Whether the agent capability is enforceable on chain yet."""

    ACTIVE_ONCHAIN = "active_onchain"
    PENDING_ACTIVATION = "pending_activation"
    UNCONFIGURED = "unconfigured"


@dataclass
class Checkpoint:
    """Outcome of one reconciliation step."""

    name: CheckpointName
    status: CheckpointStatus
    summary: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "checkpoint": self.name.value,
            "status": self.status.value,
            "summary": self.summary,
            "details": self.details,
        }


@dataclass
class InsecureFinding:
    """A capability rejected by the self-call guard during discovery."""

    record: CapabilityRecord
    entries: List[Dict[str, str]]
    removed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.record.id,
            "origin": self.record.origin.value,
            "entries": self.entries,
            "removed": self.removed,
        }


@dataclass
class ReconcileResult:
    """Final verdict of a successful run."""

    state: ActivationState
    checkpoints: List[Checkpoint]
    capability: Optional[CapabilityRecord] = None
    granted: bool = False
    next_action: Optional[str] = None

    @property
    def ok(self) -> bool:
        return all(c.status != CheckpointStatus.FAILED for c in self.checkpoints)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "state": self.state.value,
            "granted": self.granted,
            "capability": self.capability.to_dict() if self.capability else None,
            "checkpoints": [c.to_dict() for c in self.checkpoints],
            "next_action": self.next_action,
        }
