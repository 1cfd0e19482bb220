"""
Capability policy model and normalizer.

A DesiredPolicy is the envelope the operator wants the agent key to hold.
A CapabilityRecord is what the relay (active) or the local store (pending)
says the key holds. Both reduce to the same canonical form before they are
compared:

- call scope: set of (target, selector) pairs, "*" for the reserved
  any-target / any-selector sentinels and for absent fields
- selectors: textual signatures reduced to their 4-byte keccak selector
- spend token: absent or zero address means the native asset
- every string lowercase
"""

import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple

from Crypto.Hash import keccak

from .errors import PolicyValidationError

ANY_TARGET = "0x3232323232323232323232323232323232323232"
ANY_SELECTOR = "0x32323232"
NATIVE_TOKEN = "0x0000000000000000000000000000000000000000"

WILDCARD = "*"
NATIVE = "native"

SECONDS_PER_DAY = 24 * 60 * 60

_HEX_SELECTOR = re.compile(r"^0x[0-9a-fA-F]{8}$")
_HEX_ADDRESS = re.compile(r"^0x[0-9a-fA-F]{40}$")
_SIGNATURE = re.compile(r"^\s*(?:function\s+)?([A-Za-z_$][A-Za-z0-9_$]*)\s*\((.*)\)\s*$", re.S)


class SpendPeriod(str, Enum):
    """Period over which a spend cap applies."""

    MINUTE = "minute"
    HOUR = "hour"
    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"


class CapabilityOrigin(str, Enum):
    """Where a capability record was observed."""

    ACTIVE = "active"
    PENDING = "pending"


@dataclass(frozen=True)
class CallEntry:
    """One allowlisted call: target address and/or function selector."""

    to: Optional[str] = None
    signature: Optional[str] = None

    def to_dict(self) -> Dict[str, str]:
        d = {}
        if self.to:
            d["to"] = self.to
        if self.signature:
            d["signature"] = self.signature
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CallEntry":
        return cls(to=data.get("to") or None, signature=data.get("signature") or None)


@dataclass(frozen=True)
class SpendEntry:
    """A spend cap of `limit` base units per `period`."""

    limit: int
    period: SpendPeriod
    token: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "limit": str(self.limit),
            "period": self.period.value,
            "token": self.token,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SpendEntry":
        return cls(
            limit=int(data["limit"]),
            period=SpendPeriod(data["period"]),
            token=data.get("token") or None,
        )


@dataclass(frozen=True)
class AgentKey:
    """Public half of the agent signing key as the relay knows it."""

    public_key: str
    type: str = "p256"

    def to_dict(self) -> Dict[str, str]:
        return {"publicKey": self.public_key, "type": self.type}

    def same_as(self, other: "AgentKey") -> bool:
        return (
            self.type == other.type
            and self.public_key.lower() == other.public_key.lower()
        )


@dataclass(frozen=True)
class CapabilityRecord:
    """An observed capability grant, either active or pending."""

    id: str
    address: str
    chain_id: int
    expiry: int
    key: AgentKey
    calls: Tuple[CallEntry, ...] = ()
    spend: Tuple[SpendEntry, ...] = ()
    origin: CapabilityOrigin = CapabilityOrigin.ACTIVE
    created_at: Optional[str] = None

    def is_valid(self, now: Optional[float] = None) -> bool:
        now = time.time() if now is None else now
        return self.expiry > now

    def to_dict(self) -> Dict[str, Any]:
        d = {
            "id": self.id,
            "address": self.address,
            "chainId": self.chain_id,
            "expiry": self.expiry,
            "key": self.key.to_dict(),
            "calls": [c.to_dict() for c in self.calls],
            "spend": [s.to_dict() for s in self.spend],
            "origin": self.origin.value,
        }
        if self.created_at:
            d["createdAt"] = self.created_at
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CapabilityRecord":
        key = data.get("key") or {}
        return cls(
            id=data["id"],
            address=data["address"],
            chain_id=int(data["chainId"]),
            expiry=int(data["expiry"]),
            key=AgentKey(public_key=key.get("publicKey", ""), type=key.get("type", "p256")),
            calls=tuple(CallEntry.from_dict(c) for c in data.get("calls", [])),
            spend=tuple(SpendEntry.from_dict(s) for s in data.get("spend", [])),
            origin=CapabilityOrigin(data.get("origin", CapabilityOrigin.PENDING.value)),
            created_at=data.get("createdAt"),
        )


@dataclass(frozen=True)
class DesiredPolicy:
    """
    Target capability envelope for one reconciliation run.

    calls=None is the wildcard policy (any target, any selector); spend cap,
    period and expiry remain the risk boundary in that case.
    """

    spend_limit: int
    spend_period: SpendPeriod = SpendPeriod.DAY
    calls: Optional[Tuple[CallEntry, ...]] = None
    spend_token: Optional[str] = None
    fee_limit: Optional[str] = None
    expiry_days: int = 7

    def __post_init__(self):
        if self.calls is not None and len(self.calls) == 0:
            raise PolicyValidationError(
                "INVALID_CALLS_JSON",
                "Call allowlist must be omitted (wildcard) or contain at least one entry.",
            )
        for entry in self.calls or ():
            if not entry.to and not entry.signature:
                raise PolicyValidationError(
                    "INVALID_CALLS_JSON",
                    "Each allowlist entry must include at least one of `to` or `signature`.",
                )
        if isinstance(self.spend_limit, bool) or not isinstance(self.spend_limit, int) or self.spend_limit <= 0:
            raise PolicyValidationError(
                "INVALID_SPEND_LIMIT",
                "Spend limit must be a positive integer in base units.",
                {"spendLimit": str(self.spend_limit)},
            )
        if isinstance(self.expiry_days, bool) or not isinstance(self.expiry_days, int) or self.expiry_days <= 0:
            raise PolicyValidationError(
                "INVALID_EXPIRY",
                "Expiry must be a positive number of days.",
                {"expiryDays": self.expiry_days},
            )

    @property
    def is_wildcard(self) -> bool:
        return self.calls is None

    def grant_calls(self) -> List[CallEntry]:
        """Call entries as sent to the relay; wildcard becomes the sentinel pair."""
        if self.calls is None:
            return [CallEntry(to=ANY_TARGET, signature=ANY_SELECTOR)]
        return list(self.calls)

    def spend_entry(self) -> SpendEntry:
        return SpendEntry(
            limit=self.spend_limit, period=self.spend_period, token=self.spend_token
        )

    def expiry_at(self, now: Optional[float] = None) -> int:
        now = time.time() if now is None else now
        return int(now) + self.expiry_days * SECONDS_PER_DAY

    def to_dict(self) -> Dict[str, Any]:
        return {
            "calls": None if self.calls is None else [c.to_dict() for c in self.calls],
            "spendLimit": str(self.spend_limit),
            "spendPeriod": self.spend_period.value,
            "spendToken": self.spend_token,
            "feeLimit": self.fee_limit,
            "expiryDays": self.expiry_days,
        }

    @classmethod
    def from_dict(
        cls,
        data: Dict[str, Any],
        default_period: str = "day",
        default_expiry_days: int = 7,
    ) -> "DesiredPolicy":
        """
        Build a policy from caller input, rejecting anything malformed.

        Omitted spend period and expiry fall back to the given defaults.
        """
        calls_raw = data.get("calls")
        calls = None
        if calls_raw is not None:
            if not isinstance(calls_raw, list) or not calls_raw:
                raise PolicyValidationError(
                    "INVALID_CALLS_JSON",
                    "Calls allowlist must be a non-empty JSON array.",
                )
            entries = []
            for item in calls_raw:
                if not isinstance(item, dict):
                    raise PolicyValidationError(
                        "INVALID_CALLS_JSON", "Each allowlist entry must be an object."
                    )
                to = item.get("to")
                if to is not None and not (isinstance(to, str) and _HEX_ADDRESS.match(to)):
                    raise PolicyValidationError(
                        "INVALID_CALLS_JSON",
                        "Allowlist `to` must be a 20-byte hex address.",
                        {"to": to},
                    )
                signature = item.get("signature")
                if signature is not None and not (isinstance(signature, str) and signature.strip()):
                    raise PolicyValidationError(
                        "INVALID_CALLS_JSON",
                        "Allowlist `signature` must be a function signature or 4-byte hex selector.",
                        {"signature": signature},
                    )
                entries.append(CallEntry.from_dict(item))
            calls = tuple(entries)

        try:
            spend_limit = int(str(data.get("spendLimit", "")), 0)
        except ValueError:
            raise PolicyValidationError(
                "INVALID_SPEND_LIMIT",
                "Spend limit must be a positive integer (decimal or 0x hex).",
                {"spendLimit": data.get("spendLimit")},
            )

        try:
            period = SpendPeriod(data.get("spendPeriod") or default_period)
        except ValueError:
            raise PolicyValidationError(
                "INVALID_SPEND_PERIOD",
                f"Unsupported spend period: {data.get('spendPeriod')}",
            )

        token = data.get("spendToken") or None
        if token is not None and not (isinstance(token, str) and _HEX_ADDRESS.match(token)):
            raise PolicyValidationError(
                "INVALID_SPEND_TOKEN",
                "Spend token must be a 20-byte hex address.",
                {"spendToken": token},
            )

        fee_limit = data.get("feeLimit")
        if fee_limit is not None:
            try:
                if float(fee_limit) <= 0:
                    raise ValueError(fee_limit)
            except (TypeError, ValueError):
                raise PolicyValidationError(
                    "INVALID_FEE_LIMIT",
                    "Fee limit must be a positive decimal string.",
                    {"feeLimit": fee_limit},
                )
            fee_limit = str(fee_limit)

        try:
            expiry_days = data.get("expiryDays")
            expiry_days = default_expiry_days if expiry_days is None else int(expiry_days)
        except (TypeError, ValueError):
            raise PolicyValidationError(
                "INVALID_EXPIRY",
                "Expiry must be a positive number of days.",
                {"expiryDays": data.get("expiryDays")},
            )

        return cls(
            calls=calls,
            spend_limit=spend_limit,
            spend_period=period,
            spend_token=token,
            fee_limit=fee_limit,
            expiry_days=expiry_days,
        )

    @classmethod
    def from_record(cls, record: CapabilityRecord) -> Optional["DesiredPolicy"]:
        """
        Recover the envelope a pending record was granted for.

        Returns None when the record carries no spend entry to match on.
        """
        if not record.spend:
            return None
        spend = record.spend[0]
        calls = tuple(record.calls) or None
        if calls is not None and normalize_call_scope(calls) == WILDCARD_SCOPE:
            calls = None
        days = max(1, int((record.expiry - time.time()) // SECONDS_PER_DAY))
        return cls(
            calls=calls,
            spend_limit=spend.limit,
            spend_period=spend.period,
            spend_token=spend.token,
            expiry_days=days,
        )


# =============================================================================
# Normalization
# =============================================================================


def is_hex_selector(value: Optional[str]) -> bool:
    return bool(value and _HEX_SELECTOR.match(value))


def _split_params(params: str) -> List[str]:
    parts, depth, current = [], 0, []
    for ch in params:
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
            if depth < 0:
                raise ValueError("Unbalanced parentheses in signature")
        if ch == "," and depth == 0:
            parts.append("".join(current))
            current = []
        else:
            current.append(ch)
    if depth != 0:
        raise ValueError("Unbalanced parentheses in signature")
    tail = "".join(current)
    if parts or tail.strip():
        parts.append(tail)
    return parts


def _canonical_param(param: str) -> str:
    param = param.strip()
    if not param:
        raise ValueError("Empty parameter in signature")
    if param.startswith("("):
        depth = 0
        for i, ch in enumerate(param):
            if ch == "(":
                depth += 1
            elif ch == ")":
                depth -= 1
                if depth == 0:
                    inner = ",".join(_canonical_param(p) for p in _split_params(param[1:i]))
                    suffix = param[i + 1:].split()[0] if param[i + 1:].strip() else ""
                    return f"({inner}){suffix}"
        raise ValueError("Unbalanced tuple parameter")
    if param.startswith("tuple("):
        return _canonical_param(param[len("tuple"):])
    # drop parameter name and data location (`uint256 amount`, `bytes calldata data`)
    type_name = param.split()[0]
    if not re.match(r"^[a-z][a-z0-9]*(\[\d*\])*$", type_name):
        raise ValueError(f"Unrecognized parameter type: {type_name}")
    if type_name == "uint":
        return "uint256"
    if type_name == "int":
        return "int256"
    return type_name


def canonical_signature(signature: str) -> str:
    """Reduce `function transfer(address to, uint256 amount)` to `transfer(address,uint256)`."""
    match = _SIGNATURE.match(signature)
    if not match:
        raise ValueError(f"Not a function signature: {signature!r}")
    name, params = match.group(1), match.group(2)
    types = [_canonical_param(p) for p in _split_params(params)]
    return f"{name}({','.join(types)})"


def function_selector(signature: str) -> str:
    """4-byte keccak-256 selector of a textual function signature."""
    digest = keccak.new(digest_bits=256)
    digest.update(canonical_signature(signature).encode("utf-8"))
    return "0x" + digest.hexdigest()[:8]


def normalize_target(to: Optional[str]) -> str:
    if not to:
        return WILDCARD
    lowered = to.lower()
    if lowered == ANY_TARGET:
        return WILDCARD
    return lowered


def normalize_selector(signature: Optional[str]) -> str:
    """Canonical selector; never raises, unknown text compares by lowercase."""
    if not signature:
        return WILDCARD
    lowered = signature.strip().lower()
    if lowered == ANY_SELECTOR:
        return WILDCARD
    if is_hex_selector(lowered):
        return lowered
    try:
        return function_selector(signature)
    except ValueError:
        return lowered


def normalize_call(entry: CallEntry) -> Tuple[str, str]:
    return normalize_target(entry.to), normalize_selector(entry.signature)


WILDCARD_SCOPE: FrozenSet[Tuple[str, str]] = frozenset({(WILDCARD, WILDCARD)})


def normalize_call_scope(calls: Optional[Iterable[CallEntry]]) -> FrozenSet[Tuple[str, str]]:
    if calls is None:
        return WILDCARD_SCOPE
    return frozenset(normalize_call(c) for c in calls)


def normalize_token(token: Optional[str]) -> str:
    if not token:
        return NATIVE
    lowered = token.lower()
    if lowered == NATIVE_TOKEN:
        return NATIVE
    return lowered


def normalize_spend(entry: SpendEntry) -> Tuple[str, int, str]:
    return entry.period.value, int(entry.limit), normalize_token(entry.token)
