"""Relay JSON-RPC client and response models."""

from .client import RelayClient
from .models import (
    CallsStatusResponse,
    GrantResponse,
    KeysParseResult,
    PreparedCalls,
    RelayKeyRecord,
    normalize_key_type,
    parse_calls_status,
    parse_grant_response,
    parse_keys_response,
    parse_prepared_calls,
    parse_quantity,
    parse_submitted_calls,
)

__all__ = [
    "RelayClient",
    "CallsStatusResponse",
    "GrantResponse",
    "KeysParseResult",
    "PreparedCalls",
    "RelayKeyRecord",
    "normalize_key_type",
    "parse_calls_status",
    "parse_grant_response",
    "parse_keys_response",
    "parse_prepared_calls",
    "parse_quantity",
    "parse_submitted_calls",
]
