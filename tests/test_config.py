"""Tests for environment-driven configuration."""

import pytest

from payjoin_flow.amounts import FeeRate
from payjoin_flow.config import DEFAULT_EXPIRE_AFTER_SECONDS, PayjoinConfig
from payjoin_flow.types import Network


ENV_VARS = [
    "PAYJOIN_FLOW_NETWORK",
    "PAYJOIN_FLOW_DIRECTORY",
    "PAYJOIN_FLOW_OHTTP_RELAY",
    "PAYJOIN_FLOW_EXPIRE_AFTER",
    "PAYJOIN_FLOW_MAX_FEE_RATE",
    "PAYJOIN_FLOW_MIN_FEE_RATE",
    "PAYJOIN_FLOW_LOG_LEVEL",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


class TestPayjoinConfig:
    def test_defaults(self):
        config = PayjoinConfig.from_env()
        assert config.network == Network.BITCOIN
        assert config.directory is None
        assert config.expire_after_seconds == DEFAULT_EXPIRE_AFTER_SECONDS
        assert config.max_fee_rate_sat_per_vb == 2
        assert config.min_fee_rate == FeeRate(0)
        assert config.log_level == "WARNING"

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("PAYJOIN_FLOW_NETWORK", "Signet")
        monkeypatch.setenv("PAYJOIN_FLOW_DIRECTORY", "https://directory.example")
        monkeypatch.setenv("PAYJOIN_FLOW_OHTTP_RELAY", "https://relay.example")
        monkeypatch.setenv("PAYJOIN_FLOW_EXPIRE_AFTER", "600")
        monkeypatch.setenv("PAYJOIN_FLOW_MIN_FEE_RATE", "250")
        monkeypatch.setenv("PAYJOIN_FLOW_LOG_LEVEL", "debug")

        config = PayjoinConfig.from_env()
        assert config.network == Network.SIGNET
        assert config.directory == "https://directory.example"
        assert config.ohttp_relay == "https://relay.example"
        assert config.expire_after_seconds == 600
        assert config.min_fee_rate == FeeRate.from_sat_per_vb(1)
        assert config.log_level == "DEBUG"

    def test_overrides_win(self, monkeypatch):
        monkeypatch.setenv("PAYJOIN_FLOW_NETWORK", "signet")
        config = PayjoinConfig.from_env(network="regtest", directory=None)
        assert config.network == Network.REGTEST

    def test_bad_integer(self, monkeypatch):
        monkeypatch.setenv("PAYJOIN_FLOW_EXPIRE_AFTER", "soon")
        with pytest.raises(ValueError, match="PAYJOIN_FLOW_EXPIRE_AFTER"):
            PayjoinConfig.from_env()

    def test_unknown_network(self, monkeypatch):
        monkeypatch.setenv("PAYJOIN_FLOW_NETWORK", "litecoin")
        with pytest.raises(ValueError):
            PayjoinConfig.from_env()

    def test_non_positive_expiry(self):
        with pytest.raises(ValueError, match="positive"):
            PayjoinConfig(expire_after_seconds=0)

    def test_to_dict(self):
        data = PayjoinConfig(network="testnet", max_fee_rate_sat_per_vb=10).to_dict()
        assert data["network"] == "testnet"
        assert data["max_fee_rate_sat_per_vb"] == 10
