"""
Signing backends.

A backend owns the private key; the engine only ever sees key handles, public
keys and signatures. CommandSignerBackend drives an external helper (for
example a Secure Enclave or TPM bridge) that prints one JSON object per
invocation:

    <command> create [--label L]      -> {"ok": true, "publicKey": "0x04..", "handle": ".."}
    <command> pubkey --handle H       -> {"ok": true, "publicKey": "0x04.."}
    <command> sign --handle H --payload-hex P --hash none -> {"ok": true, "signature": "0x.."}
    <command> info --handle H         -> {"ok": true, "exists": true}

Failures are reported as {"ok": false, "error": {"code": .., "message": ..}}.
"""

import asyncio
import json
import logging
import re
import shlex
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

from agentwallet.core.errors import SignerError

logger = logging.getLogger(__name__)

_HEX = re.compile(r"^0x[0-9a-fA-F]+$")


def normalize_hex(value: str) -> str:
    value = (value or "").strip()
    if not value.lower().startswith("0x"):
        value = "0x" + value
    return "0x" + value[2:].lower()


class SignerBackend(ABC):
    """Hardware-backed key operations."""

    name: str = "abstract"

    @abstractmethod
    async def create(self, label: Optional[str] = None) -> Tuple[str, str]:
        """Create a P-256 key; returns (public_key_hex, handle)."""

    @abstractmethod
    async def get_public_key(self, handle: str) -> str:
        pass

    @abstractmethod
    async def sign(self, handle: str, payload: bytes, hash_mode: str = "none") -> bytes:
        pass

    @abstractmethod
    async def info(self, handle: str) -> Dict[str, Any]:
        pass


class CommandSignerBackend(SignerBackend):
    """Backend that shells out to a signing helper executable."""

    name = "command"

    def __init__(self, command: str, timeout_seconds: float = 30.0):
        self.command = shlex.split(command)
        self.timeout_seconds = timeout_seconds

    async def _run(self, args: List[str]) -> Dict[str, Any]:
        argv = self.command + args
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (FileNotFoundError, PermissionError) as e:
            raise SignerError(
                "SIGNER_UNAVAILABLE",
                f"Signing helper could not be started: {e}",
                {"command": self.command[0]},
            )

        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(), timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise SignerError(
                "SIGNER_COMMAND_FAILED",
                "Signing helper timed out.",
                {"command": self.command[0], "args": args[:1]},
            )

        response = self._parse(stdout.decode("utf-8", errors="replace"))
        if response is None:
            raise SignerError(
                "SIGNER_COMMAND_FAILED",
                "Signing helper returned no JSON output.",
                {
                    "command": self.command[0],
                    "exitCode": proc.returncode,
                    "stderr": stderr.decode("utf-8", errors="replace")[-500:],
                },
            )

        if not response.get("ok"):
            error = response.get("error") or {}
            raise SignerError(
                "SIGNER_COMMAND_FAILED",
                error.get("message") or "Signing helper failed.",
                {"command": self.command[0], "helperCode": error.get("code")},
            )
        return response

    @staticmethod
    def _parse(stdout: str) -> Optional[Dict[str, Any]]:
        # the helper may log before its result; the last line is the JSON
        lines = [line.strip() for line in stdout.strip().splitlines() if line.strip()]
        if not lines:
            return None
        try:
            data = json.loads(lines[-1])
        except json.JSONDecodeError:
            return None
        return data if isinstance(data, dict) else None

    def _public_key(self, response: Dict[str, Any]) -> str:
        public_key = normalize_hex(str(response.get("publicKey", "")))
        if not _HEX.match(public_key):
            raise SignerError(
                "INVALID_PUBLIC_KEY", "Signing helper returned an invalid public key."
            )
        return public_key

    async def create(self, label: Optional[str] = None) -> Tuple[str, str]:
        args = ["create"]
        if label:
            args += ["--label", label]
        response = await self._run(args)
        handle = str(response.get("handle") or "")
        if not handle:
            raise SignerError(
                "SIGNER_COMMAND_FAILED", "Signing helper returned an empty key handle."
            )
        return self._public_key(response), handle

    async def get_public_key(self, handle: str) -> str:
        response = await self._run(["pubkey", "--handle", handle])
        return self._public_key(response)

    async def sign(self, handle: str, payload: bytes, hash_mode: str = "none") -> bytes:
        response = await self._run(
            ["sign", "--handle", handle, "--payload-hex", payload.hex(), "--hash", hash_mode]
        )
        signature = normalize_hex(str(response.get("signature", "")))
        try:
            return bytes.fromhex(signature[2:])
        except ValueError:
            raise SignerError("SIGNER_COMMAND_FAILED", "Signing helper returned an invalid signature.")

    async def info(self, handle: str) -> Dict[str, Any]:
        response = await self._run(["info", "--handle", handle])
        return {"exists": bool(response.get("exists"))}
