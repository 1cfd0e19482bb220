"""
Shared fixtures: a scripted relay behind httpx.MockTransport, an in-memory
signing backend and engine settings rooted in a temporary directory.
"""

import json
import time
from typing import Any, Dict, List, Optional

import httpx
import pytest

from agentwallet.config.settings import BASE_SEPOLIA_CHAIN_ID, EngineSettings
from agentwallet.core.policy import ANY_SELECTOR, ANY_TARGET, function_selector, is_hex_selector
from agentwallet.service.session import WalletSession
from agentwallet.service.signer.backend import SignerBackend

ACCOUNT = "0x" + "a1" * 20
OTHER_ACCOUNT = "0x" + "b2" * 20
TARGET = "0x" + "c3" * 20
CHAIN_ID = BASE_SEPOLIA_CHAIN_ID

AGENT_PUBLIC_KEY = "0x04" + "11" * 64
AGENT_RELAY_KEY = "0x" + "11" * 64


class FakeSignerBackend(SignerBackend):
    """Keeps one P-256 key 'handle' in memory."""

    name = "fake"

    def __init__(self, public_key: str = AGENT_PUBLIC_KEY):
        self.public_key = public_key
        self.handles = set()
        self.created = 0

    async def create(self, label: Optional[str] = None):
        self.created += 1
        handle = f"handle-{self.created}"
        self.handles.add(handle)
        return self.public_key, handle

    async def get_public_key(self, handle: str) -> str:
        return self.public_key

    async def sign(self, handle: str, payload: bytes, hash_mode: str = "none") -> bytes:
        return b"\x01" * 64

    async def info(self, handle: str) -> Dict[str, Any]:
        return {"exists": handle in self.handles}


def relay_call(to: Optional[str], signature: Optional[str]) -> Dict[str, str]:
    """A call permission the way the relay reports it."""
    selector = signature or ANY_SELECTOR
    if not is_hex_selector(selector):
        selector = function_selector(selector)
    return {"type": "call", "to": to or ANY_TARGET, "selector": selector}


def relay_spend(limit: int, period: str = "day", token: Optional[str] = None) -> Dict[str, Any]:
    entry = {"type": "spend", "limit": hex(limit), "period": period}
    if token:
        entry["token"] = token
    return entry


def key_record(
    permissions: List[Dict[str, Any]],
    expiry: Optional[int] = None,
    public_key: str = AGENT_RELAY_KEY,
    role: str = "normal",
    key_hash: Optional[str] = None,
) -> Dict[str, Any]:
    record = {
        "expiry": hex(expiry or int(time.time()) + 7 * 86400),
        "publicKey": public_key,
        "role": role,
        "type": "p256",
        "permissions": permissions,
    }
    if key_hash:
        record["hash"] = key_hash
    return record


class FakeRelay:
    """Scripted relay; grants stay pending until activate_pending()."""

    def __init__(self):
        self.keys: List[Dict[str, Any]] = []
        self.grants: List[Dict[str, Any]] = []
        self.requests: List[Dict[str, Any]] = []
        self.calls_status: Dict[str, Any] = {}
        self.errors: Dict[str, Any] = {}
        self.activate_on_grant = False
        self.grant_overrides: Dict[str, Any] = {}
        self.prepared: List[Dict[str, Any]] = []
        self.submitted: List[Dict[str, Any]] = []
        self.activate_on_send = True
        self.send_result: Any = None

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def count(self, method: str) -> int:
        return sum(1 for r in self.requests if r["method"] == method)

    def activate_pending(self):
        """Simulate the first real operation landing on chain."""
        for grant in self.grants:
            if grant.get("activated"):
                continue
            self.keys.append(self._grant_to_key(grant))
            grant["activated"] = True

    def _grant_to_key(self, grant: Dict[str, Any]) -> Dict[str, Any]:
        params = grant["params"]
        permissions = [
            relay_call(c.get("to"), c.get("signature"))
            for c in params["permissions"]["calls"]
        ]
        for s in params["permissions"]["spend"]:
            entry = {"type": "spend", "limit": s["limit"], "period": s["period"]}
            if s.get("token"):
                entry["token"] = s["token"]
            permissions.append(entry)
        return key_record(
            permissions,
            expiry=params["expiry"],
            public_key=params["key"]["publicKey"],
            key_hash=grant["id"],
        )

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        method = body["method"]
        params = body["params"]
        self.requests.append({"method": method, "params": params})

        error = self.errors.get(method)
        if isinstance(error, Exception):
            raise error
        if isinstance(error, int):
            return httpx.Response(error, json={"error": "unavailable"})
        if isinstance(error, dict):
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "error": error})

        if method == "wallet_getKeys":
            chain = params[0]["chainIds"][0]
            result = {hex(chain): list(self.keys)}
        elif method == "wallet_grantPermissions":
            result = self._grant(params[0])
        elif method == "wallet_getCallsStatus":
            result = self.calls_status.get(params[0], {"status": 100})
        elif method == "wallet_prepareCalls":
            result = self._prepare(params[0])
        elif method == "wallet_sendPreparedCalls":
            result = self._send(params[0])
        else:
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "error": {"code": -32601, "message": "Method not found"}})

        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})

    def _prepare(self, params: Dict[str, Any]) -> Dict[str, Any]:
        self.prepared.append(params)
        return {
            "digest": "0x" + "ab" * 32,
            "context": {"calls": params["calls"], "nonce": hex(len(self.prepared))},
        }

    def _send(self, params: Dict[str, Any]) -> Any:
        """A sent operation settles at once and lands any pending grant on chain."""
        self.submitted.append(params)
        if self.send_result is not None:
            return self.send_result
        bundle_id = "0x" + f"{len(self.submitted):064x}"
        self.calls_status[bundle_id] = {
            "status": 200,
            "receipts": [{"transactionHash": "0x" + "cd" * 32}],
        }
        if self.activate_on_send:
            self.activate_pending()
        return {"id": bundle_id}

    def _grant(self, params: Dict[str, Any]) -> Dict[str, Any]:
        grant_id = "0x" + f"{len(self.grants) + 1:064x}"
        grant = {"id": grant_id, "params": params}
        self.grants.append(grant)
        if self.activate_on_grant:
            self.activate_pending()
        response = {
            "id": grant_id,
            "expiry": params["expiry"],
            "key": params["key"],
            "permissions": params["permissions"],
        }
        response.update(self.grant_overrides)
        return response


@pytest.fixture
def relay():
    return FakeRelay()


@pytest.fixture
def signer_backend():
    return FakeSignerBackend()


@pytest.fixture
def settings(tmp_path):
    return EngineSettings(
        config_home=tmp_path,
        relay_url="https://relay.test/",
        relay_timeout_seconds=2.0,
        grant_timeout_seconds=2.0,
        discovery_timeout_seconds=0.05,
        discovery_interval_seconds=0.01,
        settlement_timeout_seconds=0.2,
        settlement_interval_seconds=0.01,
        status_timeout_seconds=0.1,
    )


@pytest.fixture
def open_session(settings, relay, signer_backend):
    """Factory for a WalletSession wired to the fake relay and signer."""

    async def _open() -> WalletSession:
        return await WalletSession.open(
            settings, signer_backend=signer_backend, transport=relay.transport
        )

    return _open


@pytest.fixture
def configured(settings, signer_backend):
    """Pre-write a config.json with account, chain and an existing signer key."""
    signer_backend.handles.add("handle-1")

    def _write(pending: Optional[Dict[str, Any]] = None, address: str = ACCOUNT):
        settings.config_dir.mkdir(parents=True, exist_ok=True)
        data = {
            "version": 1,
            "signer": {"keyId": "se.agent.wallet.default", "backend": "fake", "handle": "handle-1"},
            "account": {"address": address, "chainId": CHAIN_ID, "capabilityIds": []},
        }
        if pending:
            data["pendingCapability"] = pending
        settings.config_path.write_text(json.dumps(data))
        return data

    return _write


def pending_capability(
    record_id: str = "0x" + "0f" * 32,
    calls: Optional[List[Dict[str, str]]] = None,
    limit: int = 100,
    expiry: Optional[int] = None,
    public_key: str = AGENT_RELAY_KEY,
    address: str = ACCOUNT,
) -> Dict[str, Any]:
    """A pendingCapability entry as it sits in config.json."""
    return {
        "id": record_id,
        "address": address,
        "chainId": CHAIN_ID,
        "createdAt": "2026-01-01T00:00:00+00:00",
        "expiry": expiry or int(time.time()) + 7 * 86400,
        "key": {"publicKey": public_key, "type": "p256"},
        "calls": calls if calls is not None else [{"to": TARGET}],
        "spend": [{"limit": str(limit), "period": "day", "token": None}],
    }
