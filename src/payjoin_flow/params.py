"""Sender parameters carried in the payjoin request query string."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal, DecimalException
from typing import Optional

import httpx

from .amounts import FeeRate, ZERO_FEE_RATE, format_sat_per_vb
from .errors import OriginalPsbtRejected, SUPPORTED_VERSIONS, VersionUnsupportedError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AdditionalFeeContribution:
    """The most the receiver may deduct, and from which output."""

    max_amount: int
    vout: int


@dataclass(frozen=True)
class Params:
    v: int = 1
    disable_output_substitution: bool = False
    additional_fee_contribution: Optional[AdditionalFeeContribution] = None
    min_fee_rate: FeeRate = ZERO_FEE_RATE

    @classmethod
    def from_query(
        cls,
        query: str,
        supported_versions: tuple[int, ...] = SUPPORTED_VERSIONS,
    ) -> Params:
        """Parse a request query string, negotiating the protocol version."""
        pairs = httpx.QueryParams(query.lstrip("?"))
        v = 1
        disable_output_substitution = False
        max_amount: Optional[int] = None
        vout: Optional[int] = None
        min_fee_rate = ZERO_FEE_RATE

        for key, value in pairs.multi_items():
            if key == "v":
                version = _parse_uint(value)
                if version is None or version not in supported_versions:
                    raise VersionUnsupportedError(value, supported_versions)
                v = version
            elif key == "additionalfeeoutputindex":
                vout = _parse_uint(value)
                if vout is None:
                    logger.warning("Ignoring invalid additionalfeeoutputindex: %s", value)
            elif key == "maxadditionalfeecontribution":
                max_amount = _parse_uint(value)
                if max_amount is None:
                    logger.warning("Ignoring invalid maxadditionalfeecontribution: %s", value)
            elif key == "minfeerate":
                min_fee_rate = _parse_min_fee_rate(value)
            elif key == "disableoutputsubstitution":
                disable_output_substitution = value == "true"

        contribution = None
        if max_amount is not None and vout is not None:
            contribution = AdditionalFeeContribution(max_amount=max_amount, vout=vout)
        elif max_amount is not None or vout is not None:
            logger.warning(
                "Only one of maxadditionalfeecontribution and additionalfeeoutputindex "
                "was given, ignoring the fee contribution"
            )

        params = cls(
            v=v,
            disable_output_substitution=disable_output_substitution,
            additional_fee_contribution=contribution,
            min_fee_rate=min_fee_rate,
        )
        logger.debug("Parsed sender params: %s", params)
        return params

    def to_query(self) -> str:
        pairs: list[tuple[str, str]] = [("v", str(self.v))]
        if self.disable_output_substitution:
            pairs.append(("disableoutputsubstitution", "true"))
        if self.additional_fee_contribution is not None:
            pairs.append(("additionalfeeoutputindex", str(self.additional_fee_contribution.vout)))
            pairs.append(("maxadditionalfeecontribution", str(self.additional_fee_contribution.max_amount)))
        if self.min_fee_rate > ZERO_FEE_RATE:
            pairs.append(("minfeerate", format_sat_per_vb(self.min_fee_rate)))
        return str(httpx.QueryParams(pairs))


def _parse_uint(value: str) -> Optional[int]:
    # isdigit() alone accepts non-ASCII digits that int() rejects
    if value.isascii() and value.isdigit():
        return int(value)
    return None


def _parse_min_fee_rate(value: str) -> FeeRate:
    try:
        rate = Decimal(value)
        if not rate.is_finite() or rate < 0:
            raise OriginalPsbtRejected(f"Invalid minfeerate: {value}")
        return FeeRate.from_sat_per_vb(rate)
    except DecimalException as exc:
        raise OriginalPsbtRejected(f"Invalid minfeerate: {value}") from exc
