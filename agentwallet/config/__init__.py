"""Engine settings."""

from .settings import (
    BASE_CHAIN_ID,
    BASE_SEPOLIA_CHAIN_ID,
    SUPPORTED_CHAINS,
    EngineSettings,
    get_settings,
    resolve_chain_id,
    resolve_fee_token,
)

__all__ = [
    "BASE_CHAIN_ID",
    "BASE_SEPOLIA_CHAIN_ID",
    "SUPPORTED_CHAINS",
    "EngineSettings",
    "get_settings",
    "resolve_chain_id",
    "resolve_fee_token",
]
