"""
Capability reconciliation endpoints.

Exposes the reconciliation engine to local tooling:
- POST /api/v1/wallet/capabilities/reconcile
- GET  /api/v1/wallet/capabilities/status
- GET  /api/v1/wallet/capabilities
- POST /api/v1/wallet/settlements/{request_id}/watch
- POST /api/v1/wallet/operations/send
"""

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from agentwallet.core.errors import (
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
)
from agentwallet.service.activation import ActivationClassifier
from agentwallet.service.discovery import StateDiscovery
from agentwallet.service.operations import send_operation
from agentwallet.service.reconcile import ReconcileRequest, reconcile
from agentwallet.service.session import WalletSession

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Awaitable[WalletSession]]


def http_status_for(error: WalletError) -> int:
    if isinstance(error, ReconciliationAborted):
        error = error.cause
    if isinstance(error, (InsecureScopeError, InsecureStateError, CapabilityStateError)):
        return 409
    if isinstance(error, (PolicyValidationError, ConfigurationError)):
        return 400
    if isinstance(error, OperationTimeoutError) or error.code == "RELAY_REQUEST_TIMEOUT":
        return 504
    if isinstance(error, (RelayError, SignerError)):
        return 502
    return 500


def _raise_http(error: WalletError):
    status = http_status_for(error)
    logger.warning(f"Request failed with {status}: {error.code}")
    raise HTTPException(status_code=status, detail=error.to_dict())


class PolicyBody(BaseModel):
    """Desired capability policy as accepted over HTTP."""

    calls: Optional[List[Dict[str, Any]]] = None
    spendLimit: Union[int, str]
    spendPeriod: Optional[str] = None
    spendToken: Optional[str] = None
    feeLimit: Optional[Union[str, float]] = None
    expiryDays: Optional[int] = None


class ReconcileBody(BaseModel):
    address: Optional[str] = None
    chainId: Optional[int] = None
    testnet: Optional[bool] = None
    policy: Optional[PolicyBody] = None


class SendBody(BaseModel):
    calls: List[Dict[str, Any]]


async def _open(open_session: SessionFactory) -> WalletSession:
    try:
        return await open_session()
    except WalletError as e:
        _raise_http(e)


def create_capability_routes(open_session: SessionFactory):
    """Create FastAPI routes for capability reconciliation."""

    router = APIRouter(prefix="/api/v1/wallet", tags=["capabilities"])

    @router.post("/capabilities/reconcile")
    async def reconcile_capability(body: ReconcileBody):
        """Converge the agent capability to the desired policy."""
        payload: Dict[str, Any] = body.model_dump(exclude_none=True)

        async with await _open(open_session) as session:
            try:
                request = ReconcileRequest.from_dict(payload, session.settings)
                result = await reconcile(session, request)
            except WalletError as e:
                _raise_http(e)
        return result.to_dict()

    @router.get("/capabilities/status")
    async def capability_status():
        """Activation state, counts, latest expiry, signer health and warnings."""
        async with await _open(open_session) as session:
            try:
                summary = await StateDiscovery(session).summary()
            except WalletError as e:
                _raise_http(e)

            warnings = list(summary.pop("warnings", []))
            try:
                signer = await session.signer.info()
            except WalletError as e:
                logger.warning(f"Signer info unavailable: {e}")
                signer = None
                warnings.append({"code": e.code, "message": e.message})

            account = session.config.account
            return {
                "account": {"address": account.address, "chainId": account.chain_id},
                **summary,
                "signer": signer,
                "warnings": warnings,
            }

    @router.get("/capabilities")
    async def list_capabilities(include_expired: bool = False):
        """Capabilities the relay holds for the agent key."""
        async with await _open(open_session) as session:
            try:
                records = await StateDiscovery(session).list_capabilities(include_expired)
            except WalletError as e:
                _raise_http(e)
            return {"capabilities": [r.to_dict() for r in records], "count": len(records)}

    @router.post("/settlements/{request_id}/watch")
    async def watch_settlement(request_id: str):
        """Wait for a submitted operation to settle, then reclassify."""
        if not request_id.startswith("0x"):
            raise HTTPException(status_code=400, detail=f"Invalid request id: {request_id}")
        async with await _open(open_session) as session:
            try:
                report = await ActivationClassifier(session).await_settlement(request_id)
            except WalletError as e:
                _raise_http(e)
            return report.to_dict()

    @router.post("/operations/send")
    async def send(body: SendBody):
        """Send allowlisted calls with the agent key and wait for settlement."""
        async with await _open(open_session) as session:
            try:
                result = await send_operation(session, body.calls)
            except WalletError as e:
                _raise_http(e)
            return result.to_dict()

    return router
