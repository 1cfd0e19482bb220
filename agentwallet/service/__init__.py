"""
Reconciliation services: relay access, signer, local store, discovery,
grants, activation, operation sending and the step runner.
"""

from .activation import ActivationClassifier, ActivationResult, SettlementReport
from .discovery import DiscoveryResult, StateDiscovery
from .grants import GrantOrchestrator, build_grant_request
from .operations import OperationSender, SendResult, parse_send_calls, send_operation
from .reconcile import ReconcileRequest, ReconciliationRunner, reconcile
from .session import WalletSession

__all__ = [
    "ActivationClassifier",
    "ActivationResult",
    "SettlementReport",
    "DiscoveryResult",
    "StateDiscovery",
    "GrantOrchestrator",
    "build_grant_request",
    "OperationSender",
    "SendResult",
    "parse_send_calls",
    "send_operation",
    "ReconcileRequest",
    "ReconciliationRunner",
    "reconcile",
    "WalletSession",
]
