"""
Tests for engine settings.
"""

import pytest

from agentwallet.config.settings import (
    BASE_CHAIN_ID,
    BASE_SEPOLIA_CHAIN_ID,
    EngineSettings,
    resolve_chain_id,
    resolve_fee_token,
)
from agentwallet.core.errors import ConfigurationError


class TestEngineSettings:
    def test_defaults(self, tmp_path):
        settings = EngineSettings.from_env({"AGENT_WALLET_CONFIG_HOME": str(tmp_path)})
        assert settings.relay_timeout_seconds == 20.0
        assert settings.grant_timeout_seconds == 90.0
        assert settings.discovery_timeout_seconds == 12.0
        assert settings.discovery_interval_seconds == 1.0
        assert settings.settlement_timeout_seconds == 45.0
        assert settings.settlement_interval_seconds == 1.5
        assert settings.config_path == tmp_path / "agent-wallet" / "config.json"

    def test_env_overrides(self, tmp_path):
        settings = EngineSettings.from_env(
            {
                "AGENT_WALLET_CONFIG_HOME": str(tmp_path),
                "AGENT_WALLET_RELAY_URL": "https://relay.example/",
                "AGENT_WALLET_DISCOVERY_TIMEOUT": "3",
                "AGENT_WALLET_API_PORT": "9000",
                "AGENT_WALLET_SEND_STAGE_TIMEOUT": "5",
                "AGENT_WALLET_DEFAULT_EXPIRY_DAYS": "3",
            }
        )
        assert settings.relay_url == "https://relay.example"
        assert settings.discovery_timeout_seconds == 3.0
        assert settings.api_port == 9000
        assert settings.send_stage_timeout_seconds == 5.0
        assert settings.default_expiry_days == 3

    def test_yaml_overlay_then_env(self, tmp_path):
        (tmp_path / "agent-wallet").mkdir()
        (tmp_path / "agent-wallet" / "settings.yaml").write_text(
            "grant_timeout_seconds: 30\nsettlement_interval_seconds: 0.5\nunknown_key: 1\n"
        )
        settings = EngineSettings.from_env(
            {
                "AGENT_WALLET_CONFIG_HOME": str(tmp_path),
                "AGENT_WALLET_SETTLEMENT_INTERVAL": "2",
            }
        )
        assert settings.grant_timeout_seconds == 30.0
        assert settings.settlement_interval_seconds == 2.0

    def test_bad_yaml(self, tmp_path):
        (tmp_path / "agent-wallet").mkdir()
        (tmp_path / "agent-wallet" / "settings.yaml").write_text("- just\n- a list\n")
        with pytest.raises(ConfigurationError) as exc:
            EngineSettings.from_env({"AGENT_WALLET_CONFIG_HOME": str(tmp_path)})
        assert exc.value.code == "INVALID_SETTINGS_FILE"

    def test_bad_number(self, tmp_path):
        with pytest.raises(ConfigurationError) as exc:
            EngineSettings.from_env(
                {"AGENT_WALLET_CONFIG_HOME": str(tmp_path), "AGENT_WALLET_GRANT_TIMEOUT": "soon"}
            )
        assert exc.value.code == "INVALID_SETTING"


class TestChainResolution:
    def test_explicit_chain(self):
        assert resolve_chain_id(8453) == BASE_CHAIN_ID

    def test_testnet_flag_then_stored(self):
        assert resolve_chain_id(None, True, BASE_CHAIN_ID) == BASE_SEPOLIA_CHAIN_ID
        assert resolve_chain_id(None, None, BASE_CHAIN_ID) == BASE_CHAIN_ID

    def test_missing(self):
        with pytest.raises(ConfigurationError) as exc:
            resolve_chain_id()
        assert exc.value.code == "MISSING_CHAIN_ID"

    def test_unsupported(self):
        with pytest.raises(ConfigurationError) as exc:
            resolve_chain_id(1)
        assert exc.value.code == "INVALID_CHAIN_ID"

    def test_fee_token_defaults(self):
        assert resolve_fee_token(BASE_SEPOLIA_CHAIN_ID) == {"symbol": "EXP", "limit": "25"}
        assert resolve_fee_token(BASE_CHAIN_ID) == {"symbol": "native", "limit": "0.01"}
        assert resolve_fee_token(BASE_CHAIN_ID, "1")["limit"] == "1"
