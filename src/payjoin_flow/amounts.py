"""Fee-rate and amount helpers using integer satoshi / weight-unit precision."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_CEILING, ROUND_FLOOR


SATS_PER_BTC = 100_000_000
MAX_MONEY = 21_000_000 * SATS_PER_BTC
WITNESS_SCALE_FACTOR = 4
_BTC_QUANT = Decimal("0.00000001")


@dataclass(frozen=True, order=True)
class FeeRate:
    """Fee rate stored as satoshis per kilo-weight-unit."""

    sat_per_kwu: int = 0

    def __post_init__(self):
        if self.sat_per_kwu < 0:
            raise ValueError(f"Fee rate cannot be negative: {self.sat_per_kwu}")

    @classmethod
    def from_sat_per_kwu(cls, value: int) -> FeeRate:
        return cls(int(value))

    @classmethod
    def from_sat_per_vb(cls, value: int | float | Decimal | str) -> FeeRate:
        """1 sat/vB is 250 sat/kwu. Fractional rates round up."""
        kwu = (Decimal(str(value)) * 250).to_integral_value(rounding=ROUND_CEILING)
        return cls(int(kwu))

    @property
    def sat_per_vb_floor(self) -> int:
        return self.sat_per_kwu // 250

    @property
    def sat_per_vb_ceil(self) -> int:
        return -(-self.sat_per_kwu // 250)

    @property
    def sat_per_vb(self) -> Decimal:
        return Decimal(self.sat_per_kwu) / 250

    def fee_for_weight(self, weight: int) -> int:
        """Fee in sats for `weight` WU, rounded up."""
        return -(-self.sat_per_kwu * weight // 1000)

    def __str__(self) -> str:
        return f"{format_sat_per_vb(self)} sat/vB"


ZERO_FEE_RATE = FeeRate(0)


def fee_rate_from_fee(fee_sats: int, weight: int) -> FeeRate:
    """Effective rate of paying `fee_sats` for `weight` WU, rounded down."""
    if weight <= 0:
        raise ValueError("Weight must be positive")
    return FeeRate(fee_sats * 1000 // weight)


def format_sat_per_vb(rate: FeeRate) -> str:
    """Render a rate in sat/vB without a trailing '.0' (e.g. '1', '2.5')."""
    text = format(rate.sat_per_vb.normalize(), "f")
    return text


def weight_to_vsize(weight: int) -> int:
    return -(-weight // WITNESS_SCALE_FACTOR)


def btc_to_sats(value: Decimal | str | int) -> int:
    """Convert a BTC amount to satoshis, rejecting sub-satoshi precision."""
    dec = Decimal(str(value))
    quantized = dec.quantize(_BTC_QUANT, rounding=ROUND_FLOOR)
    if quantized != dec:
        raise ValueError(f"Amount has more than 8 decimal places: {value}")
    sats = int(quantized * SATS_PER_BTC)
    if sats < 0 or sats > MAX_MONEY:
        raise ValueError(f"Amount out of range: {value}")
    return sats


def sats_to_btc(value: int) -> Decimal:
    return (Decimal(value) / SATS_PER_BTC).quantize(_BTC_QUANT)


def format_btc(value: int) -> str:
    """Format sats as a BIP 21 amount string (no trailing zeros)."""
    text = format(sats_to_btc(value).normalize(), "f")
    return text
