"""
Strict response models for the relay JSON-RPC methods.

Every relay payload passes through these models before the engine looks at
it. Envelope violations raise RELAY_INVALID_RESPONSE; a single malformed key
record is rejected and reported instead of being coerced into shape.
"""

import logging
from typing import Annotated, Any, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from agentwallet.core.errors import RelayError
from agentwallet.core.policy import (
    AgentKey,
    CallEntry,
    CapabilityOrigin,
    CapabilityRecord,
    SpendEntry,
    SpendPeriod,
)

logger = logging.getLogger(__name__)


def _require_hex(value: str) -> str:
    if not isinstance(value, str) or not value.startswith("0x"):
        raise ValueError("expected 0x-prefixed hex string")
    return value


def parse_quantity(value: Union[int, str]) -> int:
    """Relay quantities arrive as numbers, hex strings or decimal strings."""
    if isinstance(value, bool):
        raise ValueError("boolean is not a quantity")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        value = value.strip()
        if value.lower().startswith("0x"):
            return int(value, 16)
        return int(value)
    raise ValueError(f"not a quantity: {value!r}")


def normalize_key_type(key_type: str) -> str:
    if key_type == "webauthnp256":
        return "webauthn-p256"
    return key_type


class _Strict(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)


class RelayCallPermission(_Strict):
    type: Literal["call"]
    to: str
    selector: str

    @field_validator("to", "selector")
    @classmethod
    def _hex(cls, v):
        return _require_hex(v)


class RelaySpendPermission(_Strict):
    type: Literal["spend"]
    limit: Union[int, str]
    period: SpendPeriod
    token: Optional[str] = None

    @field_validator("limit")
    @classmethod
    def _limit(cls, v):
        parsed = parse_quantity(v)
        if parsed < 0:
            raise ValueError("spend limit must be non-negative")
        return parsed


RelayPermission = Annotated[
    Union[RelayCallPermission, RelaySpendPermission], Field(discriminator="type")
]


class RelayKeyRecord(_Strict):
    """One key entry from wallet_getKeys."""

    expiry: Union[int, str]
    hash: Optional[str] = None
    public_key: str = Field(alias="publicKey")
    role: Literal["admin", "normal"]
    type: Literal["p256", "secp256k1", "webauthnp256", "webauthn-p256"]
    permissions: List[RelayPermission]

    @field_validator("expiry")
    @classmethod
    def _expiry(cls, v):
        return parse_quantity(v)

    @field_validator("hash", "public_key")
    @classmethod
    def _hex(cls, v):
        if v is None:
            return v
        return _require_hex(v)

    @property
    def key(self) -> AgentKey:
        return AgentKey(public_key=self.public_key, type=normalize_key_type(self.type))

    def to_record(self, address: str, chain_id: int) -> CapabilityRecord:
        calls = tuple(
            CallEntry(to=p.to, signature=p.selector)
            for p in self.permissions
            if isinstance(p, RelayCallPermission)
        )
        spend = tuple(
            SpendEntry(limit=p.limit, period=p.period, token=p.token)
            for p in self.permissions
            if isinstance(p, RelaySpendPermission)
        )
        return CapabilityRecord(
            id=self.hash or self.public_key,
            address=address,
            chain_id=chain_id,
            expiry=self.expiry,
            key=self.key,
            calls=calls,
            spend=spend,
            origin=CapabilityOrigin.ACTIVE,
        )


class GrantedKey(_Strict):
    public_key: str = Field(alias="publicKey")
    type: str

    @field_validator("type")
    @classmethod
    def _type(cls, v):
        return normalize_key_type(v)


class GrantedCall(_Strict):
    to: Optional[str] = None
    signature: Optional[str] = None
    selector: Optional[str] = None


class GrantedSpend(_Strict):
    limit: Union[int, str]
    period: SpendPeriod
    token: Optional[str] = None

    @field_validator("limit")
    @classmethod
    def _limit(cls, v):
        return parse_quantity(v)


class GrantedPermissions(_Strict):
    calls: List[GrantedCall] = Field(default_factory=list)
    spend: List[GrantedSpend] = Field(default_factory=list)


class GrantResponse(_Strict):
    """Result of wallet_grantPermissions."""

    id: str
    expiry: Union[int, str]
    key: GrantedKey
    permissions: Optional[GrantedPermissions] = None

    @field_validator("expiry")
    @classmethod
    def _expiry(cls, v):
        return parse_quantity(v)

    @field_validator("id")
    @classmethod
    def _id(cls, v):
        return _require_hex(v)

    def scope(self) -> Tuple[Tuple[CallEntry, ...], Tuple[SpendEntry, ...]]:
        if self.permissions is None:
            return (), ()
        calls = tuple(
            CallEntry(to=c.to, signature=c.signature or c.selector)
            for c in self.permissions.calls
        )
        spend = tuple(
            SpendEntry(limit=s.limit, period=s.period, token=s.token)
            for s in self.permissions.spend
        )
        return calls, spend


class CallReceipt(_Strict):
    transaction_hash: Optional[str] = Field(default=None, alias="transactionHash")


class CallsStatusResponse(_Strict):
    """Result of wallet_getCallsStatus."""

    id: Optional[str] = None
    status: Union[int, str]
    receipts: List[CallReceipt] = Field(default_factory=list)

    @property
    def transaction_hash(self) -> Optional[str]:
        for receipt in self.receipts:
            if receipt.transaction_hash:
                return receipt.transaction_hash
        return None

    @property
    def state(self) -> str:
        """pending | success | failure, per EIP-5792 status codes."""
        status = self.status
        if isinstance(status, str):
            lowered = status.lower()
            if lowered in ("pending", "success", "failure"):
                return lowered
            try:
                status = parse_quantity(status)
            except ValueError:
                return "failure"
        if status < 200:
            return "pending"
        if status < 300:
            return "success"
        return "failure"


class PreparedCalls(_Strict):
    """Result of wallet_prepareCalls; `context` is echoed back on submit."""

    digest: str
    context: Dict[str, Any]
    capabilities: Optional[Dict[str, Any]] = None

    @field_validator("digest")
    @classmethod
    def _digest(cls, v):
        return _require_hex(v)

    def submit_params(self, key: Dict[str, Any], signature: str) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "context": self.context,
            "key": key,
            "signature": signature,
        }
        if self.capabilities is not None:
            params["capabilities"] = self.capabilities
        return params


class SubmittedCalls(_Strict):
    id: str

    @field_validator("id")
    @classmethod
    def _id(cls, v):
        return _require_hex(v)


class KeysParseResult:
    """Records accepted from wallet_getKeys plus the ones rejected."""

    def __init__(self):
        self.records: List[RelayKeyRecord] = []
        self.rejected: List[Dict[str, Any]] = []


def invalid_response(method: str, message: str, **details) -> RelayError:
    return RelayError(
        "RELAY_INVALID_RESPONSE", message, {"method": method, **details}
    )


def parse_keys_response(payload: Any) -> KeysParseResult:
    """Parse {chainId: [keyRecord]} strictly, record by record."""
    if not isinstance(payload, dict):
        raise invalid_response("wallet_getKeys", "Expected an object keyed by chain id.")

    result = KeysParseResult()
    for chain, entries in payload.items():
        if not isinstance(entries, list):
            raise invalid_response(
                "wallet_getKeys", "Expected a list of key records per chain.", chainId=chain
            )
        for index, entry in enumerate(entries):
            try:
                result.records.append(RelayKeyRecord.model_validate(entry))
            except ValidationError as e:
                logger.warning(
                    f"Rejected malformed relay key record {chain}[{index}]: "
                    f"{e.error_count()} validation error(s)"
                )
                result.rejected.append(
                    {
                        "chainId": chain,
                        "index": index,
                        "errors": [err["msg"] for err in e.errors()],
                    }
                )
    return result


def parse_grant_response(payload: Any) -> GrantResponse:
    try:
        return GrantResponse.model_validate(payload)
    except ValidationError as e:
        raise invalid_response(
            "wallet_grantPermissions",
            "Relay returned a malformed grant.",
            errors=[err["msg"] for err in e.errors()],
        )


def parse_calls_status(payload: Any) -> CallsStatusResponse:
    try:
        return CallsStatusResponse.model_validate(payload)
    except ValidationError as e:
        raise invalid_response(
            "wallet_getCallsStatus",
            "Relay returned a malformed call status.",
            errors=[err["msg"] for err in e.errors()],
        )


def parse_prepared_calls(payload: Any) -> PreparedCalls:
    try:
        return PreparedCalls.model_validate(payload)
    except ValidationError as e:
        raise invalid_response(
            "wallet_prepareCalls",
            "Relay returned malformed prepared calls.",
            errors=[err["msg"] for err in e.errors()],
        )


def parse_submitted_calls(payload: Any) -> Optional[str]:
    """Bundle id from wallet_sendPreparedCalls; the relay may wrap it in a list."""
    if isinstance(payload, list):
        if not payload:
            return None
        payload = payload[0]
    try:
        return SubmittedCalls.model_validate(payload).id
    except ValidationError as e:
        raise invalid_response(
            "wallet_sendPreparedCalls",
            "Relay returned a malformed submission result.",
            errors=[err["msg"] for err in e.errors()],
        )
