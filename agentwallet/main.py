"""
Agent Wallet - Main Entry Point

Runs the local capability API.

Endpoints:
- GET  /health                                      - Health check
- POST /api/v1/wallet/capabilities/reconcile        - Reconcile the agent capability
- GET  /api/v1/wallet/capabilities/status           - Activation status
- GET  /api/v1/wallet/capabilities                  - List agent capabilities
- POST /api/v1/wallet/settlements/{request_id}/watch - Watch an operation settle
- POST /api/v1/wallet/operations/send               - Send calls with the agent key
"""

import logging
from datetime import datetime, timezone
from typing import Optional

import httpx
import uvicorn
from fastapi import FastAPI

from agentwallet import __version__
from agentwallet.api.capabilities import create_capability_routes
from agentwallet.config.settings import EngineSettings, get_settings
from agentwallet.service.session import WalletSession
from agentwallet.service.signer.backend import SignerBackend

logger = logging.getLogger("agentwallet.daemon")


def create_app(
    settings: Optional[EngineSettings] = None,
    signer_backend: Optional[SignerBackend] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """Build the API app; each request opens its own wallet session."""
    settings = settings or get_settings()

    app = FastAPI(
        title="Agent Wallet",
        description="Agent capability reconciliation",
        version=__version__,
    )

    async def open_session() -> WalletSession:
        return await WalletSession.open(
            settings, signer_backend=signer_backend, transport=transport
        )

    app.include_router(create_capability_routes(open_session))

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {
            "status": "ok",
            "service": "agent-wallet",
            "version": __version__,
            "relay": settings.relay_url,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    return app


def main():
    """Run the local capability API."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    settings = get_settings()
    logger.info(f"Starting agent wallet API v{__version__}")
    logger.info(f"   Listening on http://{settings.api_host}:{settings.api_port}")
    logger.info(f"   Relay: {settings.relay_url}")

    uvicorn.run(
        create_app(settings),
        host=settings.api_host,
        port=settings.api_port,
        log_level="info",
    )


if __name__ == "__main__":
    main()
