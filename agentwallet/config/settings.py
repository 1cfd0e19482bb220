"""
Agent Wallet - Engine Configuration

Environment Variables:
  AGENT_WALLET_CONFIG_HOME        - Root directory for agent-wallet/ state
  AGENT_WALLET_RELAY_URL          - Relay JSON-RPC endpoint
  AGENT_WALLET_RELAY_TIMEOUT      - Per-request relay timeout (seconds)
  AGENT_WALLET_GRANT_TIMEOUT      - Grant stage deadline (seconds)
  AGENT_WALLET_DISCOVERY_TIMEOUT  - Activation polling deadline (seconds)
  AGENT_WALLET_DISCOVERY_INTERVAL - Activation poll interval (seconds)
  AGENT_WALLET_SETTLEMENT_TIMEOUT - Settlement polling deadline (seconds)
  AGENT_WALLET_SETTLEMENT_INTERVAL- Settlement poll interval (seconds)
  AGENT_WALLET_STATUS_TIMEOUT     - Per-request call-status timeout (seconds)
  AGENT_WALLET_SEND_STAGE_TIMEOUT - Per-stage deadline when sending an operation (seconds)
  AGENT_WALLET_SIGNER_COMMAND     - Signing helper executable
  AGENT_WALLET_API_HOST / AGENT_WALLET_API_PORT - Local API bind address

Values from `settings.yaml` in the config directory override the defaults;
environment variables override both.
"""

import logging
import os
import platform
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from agentwallet.core.errors import ConfigurationError

logger = logging.getLogger("agentwallet.config")

ENV_PREFIX = "AGENT_WALLET_"

# =============================================================================
# DEFAULTS
# =============================================================================

RELAY_URL = os.getenv("AGENT_WALLET_RELAY_URL", "https://rpc.porto.sh")

BASE_CHAIN_ID = 8453
BASE_SEPOLIA_CHAIN_ID = 84532

# chain id -> (fee token symbol, default fee limit per period)
FEE_TOKENS = {
    BASE_CHAIN_ID: ("native", "0.01"),
    BASE_SEPOLIA_CHAIN_ID: ("EXP", "25"),
}

SUPPORTED_CHAINS = {
    BASE_CHAIN_ID: "Base",
    BASE_SEPOLIA_CHAIN_ID: "Base Sepolia",
}


def default_config_root() -> Path:
    """Platform config root; AGENT_WALLET_CONFIG_HOME wins when set."""
    override = os.getenv("AGENT_WALLET_CONFIG_HOME")
    if override:
        return Path(override)

    system = platform.system()
    if system == "Darwin":
        return Path.home() / "Library" / "Application Support"
    if system == "Windows":
        return Path(os.getenv("APPDATA", str(Path.home() / "AppData" / "Roaming")))
    return Path(os.getenv("XDG_CONFIG_HOME", str(Path.home() / ".config")))


@dataclass
class EngineSettings:
    """Runtime settings for one engine process."""

    config_home: Optional[Path] = None
    relay_url: str = RELAY_URL

    # Relay
    relay_timeout_seconds: float = 20.0

    # Grant
    grant_timeout_seconds: float = 90.0

    # Activation polling
    discovery_timeout_seconds: float = 12.0
    discovery_interval_seconds: float = 1.0

    # Settlement polling
    settlement_timeout_seconds: float = 45.0
    settlement_interval_seconds: float = 1.5
    status_timeout_seconds: float = 12.0

    # Operation send, per stage (prepare, submit)
    send_stage_timeout_seconds: float = 90.0

    # Policy defaults
    default_expiry_days: int = 7
    default_spend_period: str = "day"

    # Signer
    signer_command: str = "agent-wallet-signer"
    signer_label: str = "se.agent.wallet.default"

    # Local API
    api_host: str = "127.0.0.1"
    api_port: int = 8787

    def __post_init__(self):
        if self.config_home is None:
            self.config_home = default_config_root()
        self.config_home = Path(self.config_home)
        self.relay_url = self.relay_url.rstrip("/")

    @property
    def config_dir(self) -> Path:
        return self.config_home / "agent-wallet"

    @property
    def config_path(self) -> Path:
        return self.config_dir / "config.json"

    @property
    def settings_path(self) -> Path:
        return self.config_dir / "settings.yaml"

    def to_dict(self) -> Dict[str, Any]:
        d = {f.name: getattr(self, f.name) for f in fields(self)}
        d["config_home"] = str(self.config_home)
        return d

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "EngineSettings":
        """Load settings from settings.yaml, then environment variables."""
        environ = os.environ if environ is None else environ

        home = environ.get("AGENT_WALLET_CONFIG_HOME")
        base = cls(config_home=Path(home) if home else None)

        values = base.to_dict()
        values.update(load_yaml_overlay(base.settings_path))

        for f in fields(cls):
            if f.name == "config_home":
                continue
            key = ENV_PREFIX + _env_name(f.name)
            if key in environ:
                values[f.name] = environ[key]

        return cls(**_coerce(values))


def _env_name(field_name: str) -> str:
    # relay_timeout_seconds -> RELAY_TIMEOUT
    name = field_name.upper()
    if name.endswith("_SECONDS"):
        name = name[: -len("_SECONDS")]
    return name


def load_yaml_overlay(path: Path) -> Dict[str, Any]:
    """Read settings.yaml; a missing file is an empty overlay."""
    if not path.exists():
        return {}

    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(
            "INVALID_SETTINGS_FILE",
            f"Could not parse {path}: {e}",
            {"path": str(path)},
        )

    if not isinstance(data, dict):
        raise ConfigurationError(
            "INVALID_SETTINGS_FILE",
            f"{path} must contain a mapping of setting names to values.",
            {"path": str(path)},
        )

    known = {f.name for f in fields(EngineSettings)}
    unknown = set(data) - known
    if unknown:
        logger.warning(f"Ignoring unknown settings in {path}: {sorted(unknown)}")

    logger.debug(f"Loaded settings overlay from {path}")
    return {k: v for k, v in data.items() if k in known and k != "config_home"}


def _coerce(values: Dict[str, Any]) -> Dict[str, Any]:
    out = {}
    for f in fields(EngineSettings):
        if f.name not in values:
            continue
        value = values[f.name]
        try:
            if f.type in (float, "float"):
                value = float(value)
            elif f.type in (int, "int"):
                value = int(value)
        except (TypeError, ValueError):
            raise ConfigurationError(
                "INVALID_SETTING",
                f"Setting {f.name} must be a number, got {value!r}.",
                {"setting": f.name},
            )
        out[f.name] = value
    return out


def resolve_fee_token(chain_id: int, fee_limit: Optional[str] = None) -> Dict[str, str]:
    """Fee token descriptor for a grant on `chain_id`."""
    symbol, default_limit = FEE_TOKENS.get(chain_id, FEE_TOKENS[BASE_SEPOLIA_CHAIN_ID])
    return {"symbol": symbol, "limit": fee_limit or default_limit}


def resolve_chain_id(
    chain_id: Optional[int] = None,
    testnet: Optional[bool] = None,
    stored: Optional[int] = None,
) -> int:
    """Pick the chain for a run: explicit id, then the testnet flag, then stored."""
    if chain_id is None and testnet is not None:
        chain_id = BASE_SEPOLIA_CHAIN_ID if testnet else BASE_CHAIN_ID
    if chain_id is None:
        chain_id = stored
    if chain_id is None:
        raise ConfigurationError(
            "MISSING_CHAIN_ID",
            "No chain id configured for the smart account.",
        )
    try:
        chain_id = int(chain_id)
    except (TypeError, ValueError):
        raise ConfigurationError(
            "INVALID_CHAIN_ID", f"Chain id must be an integer, got {chain_id!r}."
        )
    if chain_id not in SUPPORTED_CHAINS:
        raise ConfigurationError(
            "INVALID_CHAIN_ID",
            f"Unsupported chain id: {chain_id}",
            {"chainId": chain_id, "supported": sorted(SUPPORTED_CHAINS)},
        )
    return chain_id


_settings: Optional[EngineSettings] = None


def get_settings() -> EngineSettings:
    """Process-wide settings loaded once from the environment."""
    global _settings
    if _settings is None:
        _settings = EngineSettings.from_env()
        logger.info(f"Settings loaded: relay={_settings.relay_url} home={_settings.config_home}")
    return _settings
