"""
Relay client for the agent wallet.

Speaks JSON-RPC 2.0 over HTTP POST to the smart-account relay. Every call is
bounded by the per-request timeout; transport failures, HTTP errors and RPC
errors surface as RelayError with a stable code.
"""

import asyncio
import itertools
import logging
from typing import Any, Dict, List, Optional

import httpx

from agentwallet.core.errors import RelayError

from .models import (
    CallsStatusResponse,
    GrantResponse,
    KeysParseResult,
    PreparedCalls,
    invalid_response,
    parse_calls_status,
    parse_grant_response,
    parse_keys_response,
    parse_prepared_calls,
    parse_submitted_calls,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 20.0


class RelayClient:
    """
    Async JSON-RPC client for the relay.

    Use as an async context manager or call close() when done. A custom
    httpx transport can be supplied (tests use httpx.MockTransport).
    """

    def __init__(
        self,
        url: str,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self.timeout_seconds = timeout_seconds
        self._http = httpx.AsyncClient(timeout=timeout_seconds, transport=transport)
        self._ids = itertools.count(1)

    async def close(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> "RelayClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def call(self, method: str, params: List[Any]) -> Any:
        """Make one JSON-RPC call and return its `result`."""
        request = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params,
        }

        logger.debug(f"Relay request {request['id']}: {method}")

        try:
            response = await self._http.post(
                self.url,
                json=request,
                headers={"content-type": "application/json"},
                timeout=self.timeout_seconds,
            )
        except (httpx.TimeoutException, asyncio.TimeoutError) as e:
            raise RelayError(
                "RELAY_REQUEST_TIMEOUT",
                "Relay request timed out.",
                {
                    "method": method,
                    "timeoutSeconds": self.timeout_seconds,
                    "error": str(e) or e.__class__.__name__,
                },
            )
        except httpx.HTTPError as e:
            raise RelayError(
                "RELAY_HTTP_ERROR",
                "Relay request failed.",
                {"method": method, "error": str(e) or e.__class__.__name__},
            )

        if response.status_code >= 400:
            raise RelayError(
                "RELAY_HTTP_ERROR",
                "Relay request failed.",
                {
                    "method": method,
                    "status": response.status_code,
                    "statusText": response.reason_phrase,
                },
            )

        try:
            payload = response.json()
        except ValueError:
            raise invalid_response(method, "Relay response is not valid JSON.")

        if not isinstance(payload, dict):
            raise invalid_response(method, "Relay response is not a JSON-RPC object.")

        error = payload.get("error")
        if error:
            if not isinstance(error, dict):
                error = {"message": str(error)}
            raise RelayError(
                "RELAY_RPC_ERROR",
                error.get("message") or "Relay returned an error.",
                {
                    "method": method,
                    "rpcCode": error.get("code"),
                    "data": error.get("data"),
                },
            )

        if "result" not in payload:
            raise invalid_response(method, "Relay response is missing result.")

        return payload["result"]

    # ========== Wallet methods ==========

    async def get_keys(self, address: str, chain_id: int) -> KeysParseResult:
        """Keys registered on `address` for one chain, strictly parsed."""
        result = await self.call(
            "wallet_getKeys", [{"address": address, "chainIds": [chain_id]}]
        )
        return parse_keys_response(result)

    async def grant_permissions(self, request: Dict[str, Any]) -> GrantResponse:
        result = await self.call("wallet_grantPermissions", [request])
        return parse_grant_response(result)

    async def get_calls_status(self, request_id: str) -> CallsStatusResponse:
        result = await self.call("wallet_getCallsStatus", [request_id])
        return parse_calls_status(result)

    async def prepare_calls(self, request: Dict[str, Any]) -> PreparedCalls:
        result = await self.call("wallet_prepareCalls", [request])
        return parse_prepared_calls(result)

    async def send_prepared_calls(self, request: Dict[str, Any]) -> Optional[str]:
        """Submit signed prepared calls; returns the bundle id when the relay reports one."""
        result = await self.call("wallet_sendPreparedCalls", [request])
        return parse_submitted_calls(result)
