"""Local wallet configuration and pending-capability store."""

from .wallet_config import (
    AccountConfig,
    SignerConfig,
    WalletConfig,
    WalletConfigStore,
)

__all__ = ["AccountConfig", "SignerConfig", "WalletConfig", "WalletConfigStore"]
