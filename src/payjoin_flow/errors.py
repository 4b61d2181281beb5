"""
Payjoin error types.

Specific exceptions for different failure modes, enabling callers
to handle each case appropriately (reject, retry, re-extract, abort).
"""

from __future__ import annotations

import json
from typing import Optional


SUPPORTED_VERSIONS = (1, 2)


class PayjoinError(Exception):
    """Base error for all payjoin operations."""
    pass


# Protocol rejections
class ProtocolError(PayjoinError):
    """The original transaction or a negotiation parameter broke an invariant.

    Deterministic: retrying with the same data fails the same way.
    """

    error_code = "original-psbt-rejected"

    def to_json(self) -> str:
        """BIP 78 receiver error response body."""
        return json.dumps({"errorCode": self.error_code, "message": str(self)})


class OriginalPsbtRejected(ProtocolError):
    """The sender's original PSBT fails a receiver check."""
    pass


class InvalidOriginalPsbtError(OriginalPsbtRejected):
    """The original PSBT is malformed or inconsistent."""
    pass


class NotBroadcastableError(OriginalPsbtRejected):
    """The host reported the original transaction cannot be broadcast."""

    def __init__(self):
        super().__init__("Original PSBT cannot be broadcast")


class PsbtBelowFeeRateError(OriginalPsbtRejected):
    """Original PSBT fee rate is below the receiver minimum."""

    def __init__(self, fee_rate, min_fee_rate):
        self.fee_rate = fee_rate
        self.min_fee_rate = min_fee_rate
        super().__init__(f"Original PSBT fee rate {fee_rate} is below minimum {min_fee_rate}")


class InputOwnedError(OriginalPsbtRejected):
    """An original input spends a script the receiver owns."""

    def __init__(self, script_pubkey: bytes):
        self.script_pubkey = script_pubkey
        super().__init__(f"The receiver rejected the original PSBT: input owned ({script_pubkey.hex()})")


class MixedInputScriptsError(OriginalPsbtRejected):
    """Original inputs use more than one script type."""

    def __init__(self, first: str, other: str):
        self.first = first
        self.other = other
        super().__init__(f"Mixed input scripts: {first} and {other}")


class InputSeenError(OriginalPsbtRejected):
    """An original input has been seen by the receiver before."""

    def __init__(self, outpoint):
        self.outpoint = outpoint
        super().__init__(f"Input {outpoint} has been seen before")


class MissingPaymentError(OriginalPsbtRejected):
    """No output of the original transaction pays the receiver."""

    def __init__(self):
        super().__init__("Original PSBT does not pay the receiver")


class VersionUnsupportedError(ProtocolError):
    """The sender asked for a protocol version this receiver does not speak."""

    error_code = "version-unsupported"

    def __init__(self, version: str, supported: tuple[int, ...] = SUPPORTED_VERSIONS):
        self.version = version
        self.supported = supported
        super().__init__(f"Payjoin version {version} is not supported")

    def to_json(self) -> str:
        return json.dumps({
            "errorCode": self.error_code,
            "supported": list(self.supported),
            "message": str(self),
        })


class OutputSubstitutionError(ProtocolError):
    """Receiver output replacement violates the sender's policy."""
    pass


class InputContributionError(ProtocolError):
    """Receiver-contributed inputs are unusable."""
    pass


class FeeRateBoundError(ProtocolError):
    """The payjoin fee rate falls outside the receiver's [min, max] bounds."""

    def __init__(self, fee_rate, min_fee_rate, max_fee_rate):
        self.fee_rate = fee_rate
        self.min_fee_rate = min_fee_rate
        self.max_fee_rate = max_fee_rate
        super().__init__(
            f"Payjoin fee rate {fee_rate} is outside bounds [{min_fee_rate}, {max_fee_rate}]"
        )


# Coin selection
class SelectionError(PayjoinError):
    """No candidate input satisfies the privacy policy."""
    pass


# Host callback failures
class ServerError(PayjoinError):
    """A host-supplied callback failed. The cause is chained as __cause__."""

    error_code = "unavailable"

    def to_json(self) -> str:
        # Host failure details stay local.
        return json.dumps({"errorCode": self.error_code, "message": "The payjoin endpoint is not available for now."})


# Transport errors
class TransportError(PayjoinError):
    """Encapsulation, decryption or relay-level failure."""
    pass


class UnexpectedStatusError(TransportError):
    """The relay or directory answered with a non-success status."""

    def __init__(self, status_code: int):
        self.status_code = status_code
        super().__init__(f"Unexpected response status: {status_code}")


# Sender-side validation
class ValidationError(PayjoinError):
    """The receiver's payjoin proposal violates the original commitment."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class ReceiverResponseError(ValidationError):
    """The receiver answered with a BIP 78 JSON error."""

    WELL_KNOWN = ("unavailable", "not-enough-money", "version-unsupported", "original-psbt-rejected")

    def __init__(
        self,
        error_code: str,
        message: str,
        supported_versions: Optional[list[int]] = None,
    ):
        self.error_code = error_code
        self.message = message
        self.supported_versions = supported_versions
        super().__init__(f"Receiver error {error_code}: {message}")

    @property
    def is_well_known(self) -> bool:
        return self.error_code in self.WELL_KNOWN


# Parameter errors
class BuildSenderError(PayjoinError):
    """Sender parameters are inconsistent with the original PSBT."""
    pass


class UriError(PayjoinError):
    """The payment URI is malformed or does not support payjoin."""
    pass


# Session errors
class SessionError(PayjoinError):
    """Base error for session descriptor problems."""
    pass


class SessionExpiredError(SessionError):
    """The session's expiry has passed."""

    def __init__(self, expiry: float):
        self.expiry = expiry
        super().__init__(f"Session expired at {expiry:.0f}")


# Pipeline misuse
class StageConsumedError(PayjoinError):
    """A pipeline stage was advanced a second time."""

    def __init__(self, stage: str):
        self.stage = stage
        super().__init__(f"{stage} has already been advanced")
