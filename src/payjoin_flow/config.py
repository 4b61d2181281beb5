"""
Defaults for payjoin sessions, with environment overrides.

The protocol objects take every setting as an explicit argument; only the
CLI (or a host application that wants the same behaviour) reads these.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from .amounts import FeeRate
from .types import Network

PAYJOIN_FLOW_NETWORK_ENV = "PAYJOIN_FLOW_NETWORK"
PAYJOIN_FLOW_DIRECTORY_ENV = "PAYJOIN_FLOW_DIRECTORY"
PAYJOIN_FLOW_OHTTP_RELAY_ENV = "PAYJOIN_FLOW_OHTTP_RELAY"
PAYJOIN_FLOW_EXPIRE_AFTER_ENV = "PAYJOIN_FLOW_EXPIRE_AFTER"
PAYJOIN_FLOW_MAX_FEE_RATE_ENV = "PAYJOIN_FLOW_MAX_FEE_RATE"
PAYJOIN_FLOW_MIN_FEE_RATE_ENV = "PAYJOIN_FLOW_MIN_FEE_RATE"
PAYJOIN_FLOW_LOG_LEVEL_ENV = "PAYJOIN_FLOW_LOG_LEVEL"

DEFAULT_EXPIRE_AFTER_SECONDS = 60 * 60 * 24
DEFAULT_MAX_FEE_RATE_SAT_PER_VB = 2


@dataclass
class PayjoinConfig:
    """Configuration shared by receiver and sender tooling."""

    network: Network = Network.BITCOIN
    directory: Optional[str] = None
    ohttp_relay: Optional[str] = None
    expire_after_seconds: int = DEFAULT_EXPIRE_AFTER_SECONDS
    max_fee_rate_sat_per_vb: int = DEFAULT_MAX_FEE_RATE_SAT_PER_VB
    min_fee_rate_sat_per_kwu: int = 0
    log_level: str = "WARNING"

    def __post_init__(self):
        self.network = Network(self.network)
        if self.expire_after_seconds <= 0:
            raise ValueError(f"expire_after_seconds must be positive, got {self.expire_after_seconds}")
        if self.max_fee_rate_sat_per_vb < 0 or self.min_fee_rate_sat_per_kwu < 0:
            raise ValueError("Fee rates cannot be negative")

    @property
    def min_fee_rate(self) -> FeeRate:
        return FeeRate.from_sat_per_kwu(self.min_fee_rate_sat_per_kwu)

    @classmethod
    def from_env(cls, **overrides) -> PayjoinConfig:
        """Build a config from PAYJOIN_FLOW_* variables; explicit overrides win."""
        values: dict = {}
        if os.getenv(PAYJOIN_FLOW_NETWORK_ENV):
            values["network"] = os.environ[PAYJOIN_FLOW_NETWORK_ENV].lower()
        if os.getenv(PAYJOIN_FLOW_DIRECTORY_ENV):
            values["directory"] = os.environ[PAYJOIN_FLOW_DIRECTORY_ENV]
        if os.getenv(PAYJOIN_FLOW_OHTTP_RELAY_ENV):
            values["ohttp_relay"] = os.environ[PAYJOIN_FLOW_OHTTP_RELAY_ENV]
        if os.getenv(PAYJOIN_FLOW_EXPIRE_AFTER_ENV):
            values["expire_after_seconds"] = _env_int(PAYJOIN_FLOW_EXPIRE_AFTER_ENV)
        if os.getenv(PAYJOIN_FLOW_MAX_FEE_RATE_ENV):
            values["max_fee_rate_sat_per_vb"] = _env_int(PAYJOIN_FLOW_MAX_FEE_RATE_ENV)
        if os.getenv(PAYJOIN_FLOW_MIN_FEE_RATE_ENV):
            values["min_fee_rate_sat_per_kwu"] = _env_int(PAYJOIN_FLOW_MIN_FEE_RATE_ENV)
        if os.getenv(PAYJOIN_FLOW_LOG_LEVEL_ENV):
            values["log_level"] = os.environ[PAYJOIN_FLOW_LOG_LEVEL_ENV].upper()
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    def to_dict(self) -> dict:
        return {
            "network": self.network.value,
            "directory": self.directory,
            "ohttp_relay": self.ohttp_relay,
            "expire_after_seconds": self.expire_after_seconds,
            "max_fee_rate_sat_per_vb": self.max_fee_rate_sat_per_vb,
            "min_fee_rate_sat_per_kwu": self.min_fee_rate_sat_per_kwu,
            "log_level": self.log_level,
        }


def _env_int(name: str) -> int:
    raw = os.environ[name]
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc
