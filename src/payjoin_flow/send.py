"""
Sender side of the payjoin negotiation.

    SenderBuilder --build_*()--> Sender --extract_*()--> (Request, context)

The host sends each Request and feeds the response body to the returned
context. v1 contexts answer with the payjoin PSBT directly; the v2 post
context yields a get context that is polled until the receiver's proposal
arrives in the sender's mailbox.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Optional, Union

from . import ohttp, v2
from .amounts import FeeRate, ZERO_FEE_RATE, fee_rate_from_fee
from .errors import (
    BuildSenderError,
    ReceiverResponseError,
    SessionExpiredError,
    UnexpectedStatusError,
    UriError,
    ValidationError,
)
from .hpke import HpkeKeyPair
from .params import AdditionalFeeContribution, Params
from .psbt import P2TR_KEY_SPEND_INPUT_WEIGHT, Psbt, PsbtError, output_weight_sum
from .types import Request
from .uri import PjUri

logger = logging.getLogger(__name__)

V1_CONTENT_TYPE = "text/plain"


def _parse_psbt(psbt: Union[str, Psbt]) -> Psbt:
    if isinstance(psbt, Psbt):
        return psbt.clone()
    try:
        parsed = Psbt.from_base64(psbt)
        parsed.validate()
        parsed.validate_input_utxos()
        parsed.fee()
    except PsbtError as exc:
        raise BuildSenderError(f"Invalid original PSBT: {exc}") from exc
    return parsed


def _as_fee_rate(value: Union[FeeRate, int]) -> FeeRate:
    return value if isinstance(value, FeeRate) else FeeRate.from_sat_per_kwu(value)


def _with_query(url: str, query: str) -> str:
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}{query}"


# ── Builder ──────────────────────────────────────────────────────────

class SenderBuilder:
    """Collects the sender's policy before committing to fee parameters."""

    def __init__(self, psbt: Psbt, uri: PjUri, payee: bytes, disable_output_substitution: bool = False):
        self._psbt = psbt
        self._uri = uri
        self._payee = payee
        self._disable_output_substitution = disable_output_substitution

    @classmethod
    def from_psbt_and_uri(cls, psbt: Union[str, Psbt], uri: Union[str, PjUri]) -> SenderBuilder:
        """Check the original pays the URI's address exactly once, for its amount."""
        if isinstance(uri, str):
            uri = PjUri.parse(uri)
        original = _parse_psbt(psbt)
        try:
            payee = uri.script_pubkey()
        except UriError as exc:
            raise BuildSenderError(str(exc)) from exc

        payee_outputs = [txout for txout in original.outputs if txout.script_pubkey == payee]
        if not payee_outputs:
            raise BuildSenderError("Original PSBT does not pay the URI address")
        if len(payee_outputs) > 1:
            raise BuildSenderError("Original PSBT pays the URI address more than once")
        if uri.amount is not None and payee_outputs[0].value != uri.amount:
            raise BuildSenderError(
                f"Payee output of {payee_outputs[0].value} sats does not match URI amount {uri.amount}"
            )
        return cls(original, uri, payee, uri.output_substitution_disabled)

    def always_disable_output_substitution(self, disable: bool = True) -> SenderBuilder:
        """Forbid the receiver from changing its output even if the URI allows it."""
        return SenderBuilder(
            self._psbt,
            self._uri,
            self._payee,
            self._uri.output_substitution_disabled or disable,
        )

    def _change_candidates(self) -> list[int]:
        return [
            vout for vout, txout in enumerate(self._psbt.outputs)
            if txout.script_pubkey != self._payee
        ]

    def build_recommended(self, min_fee_rate: FeeRate) -> Sender:
        """Offer to pay for one receiver input at `min_fee_rate` (sat/kwu).

        The input is assumed to be of the sender's own type; mixed sender
        inputs fall back to the cheapest standard input. The fee comes out of
        the first output not paying the receiver. Without one no contribution
        is offered.
        """
        min_fee_rate = _as_fee_rate(min_fee_rate)
        candidates = self._change_candidates()
        if not candidates:
            logger.debug("No change output, building without fee contribution")
            return self.build_non_incentivizing(min_fee_rate)
        change_vout = candidates[0]

        kinds = {inp.script_type() for inp in self._psbt.inputs}
        try:
            if len(kinds) == 1:
                input_weight = self._psbt.inputs[0].expected_weight()
            else:
                input_weight = P2TR_KEY_SPEND_INPUT_WEIGHT
        except PsbtError as exc:
            raise BuildSenderError(str(exc)) from exc

        recommended = min_fee_rate.fee_for_weight(input_weight)
        available = self._psbt.outputs[change_vout].value
        if available < recommended:
            logger.warning("Insufficient funds to maintain specified minimum feerate.")
            return self.build_with_additional_fee(available, change_vout, min_fee_rate, clamp_fee_contribution=True)
        return self.build_with_additional_fee(recommended, change_vout, min_fee_rate, clamp_fee_contribution=False)

    def build_with_additional_fee(
        self,
        max_fee_contribution: int,
        change_index: Optional[int],
        min_fee_rate: FeeRate,
        clamp_fee_contribution: bool = False,
    ) -> Sender:
        """Let the receiver take up to `max_fee_contribution` sats from a change output.

        With `change_index` None the change output is the one not paying the
        receiver, which needs a transaction of at most two outputs.
        `clamp_fee_contribution` lowers the offer to the change value instead
        of failing when the change cannot cover it.
        """
        if max_fee_contribution < 0:
            raise BuildSenderError("Fee contribution cannot be negative")
        outputs = self._psbt.outputs
        if change_index is None:
            if len(outputs) > 2:
                raise BuildSenderError("Ambiguous change output, give change_index explicitly")
            candidates = self._change_candidates()
            if not candidates:
                logger.debug("No change output, building without fee contribution")
                return self.build_non_incentivizing(min_fee_rate)
            change_index = candidates[0]
        elif change_index >= len(outputs):
            raise BuildSenderError(f"Change index {change_index} is out of bounds")
        elif outputs[change_index].script_pubkey == self._payee:
            raise BuildSenderError("Change index points at the payee output")

        change_value = outputs[change_index].value
        if change_value < max_fee_contribution:
            if not clamp_fee_contribution:
                raise BuildSenderError(
                    f"Change output of {change_value} sats cannot cover fee contribution of {max_fee_contribution}"
                )
            logger.debug("Clamping fee contribution %d to %d", max_fee_contribution, change_value)
            max_fee_contribution = change_value

        contribution = AdditionalFeeContribution(max_amount=max_fee_contribution, vout=change_index)
        return self._build(contribution, min_fee_rate)

    def build_non_incentivizing(self, min_fee_rate: FeeRate) -> Sender:
        """Ask for a payjoin without paying towards the receiver's input."""
        return self._build(None, min_fee_rate)

    def _build(self, contribution: Optional[AdditionalFeeContribution], min_fee_rate: FeeRate) -> Sender:
        return Sender(
            psbt=self._psbt,
            uri=self._uri,
            payee=self._payee,
            disable_output_substitution=self._disable_output_substitution,
            fee_contribution=contribution,
            min_fee_rate=_as_fee_rate(min_fee_rate),
        )


# ── Sender ───────────────────────────────────────────────────────────

class Sender:
    """A payjoin request ready to be extracted for either protocol version."""

    def __init__(
        self,
        psbt: Psbt,
        uri: PjUri,
        payee: bytes,
        disable_output_substitution: bool,
        fee_contribution: Optional[AdditionalFeeContribution],
        min_fee_rate: FeeRate,
        reply_key: Optional[HpkeKeyPair] = None,
    ):
        self._psbt = psbt
        self._uri = uri
        self._payee = payee
        self._disable_output_substitution = disable_output_substitution
        self._fee_contribution = fee_contribution
        self._min_fee_rate = min_fee_rate
        self._reply_key = reply_key or HpkeKeyPair.generate()

    @property
    def uri(self) -> PjUri:
        return self._uri

    @property
    def fee_contribution(self) -> Optional[AdditionalFeeContribution]:
        return self._fee_contribution

    def params(self, version: int) -> Params:
        return Params(
            v=version,
            disable_output_substitution=self._disable_output_substitution,
            additional_fee_contribution=self._fee_contribution,
            min_fee_rate=self._min_fee_rate,
        )

    def _psbt_context(self, version: int) -> PsbtContext:
        return PsbtContext(
            original=self._psbt.clone(),
            payee=self._payee,
            disable_output_substitution=self._disable_output_substitution,
            fee_contribution=self._fee_contribution,
            min_fee_rate=self._min_fee_rate,
            version=version,
        )

    def extract_v1(self) -> tuple[Request, V1Context]:
        """BIP 78 request, posted straight to the pj endpoint."""
        request = Request(
            url=_with_query(self._uri.pj, self.params(1).to_query()),
            content_type=V1_CONTENT_TYPE,
            body=self._psbt.to_base64().encode("ascii"),
        )
        return request, V1Context(self._psbt_context(1))

    def extract_v2(self, ohttp_relay: str) -> tuple[Request, V2PostContext]:
        """Encrypted request for the receiver's mailbox, sent through `ohttp_relay`.

        Every call encrypts afresh; never resend an extracted body.
        """
        uri = self._uri
        if uri.ohttp_keys is None:
            raise UriError("URI does not support payjoin v2 (no ohttp parameter)")
        if uri.is_expired:
            raise SessionExpiredError(uri.expiry)
        directory, receiver_key = v2.split_subdir_url(uri.pj)

        body = f"{self._psbt.to_base64()}\n{self.params(2).to_query()}".encode("ascii")
        message = v2.encrypt_message_a(receiver_key, self._reply_key.public_key, body)
        encapsulated, ohttp_ctx = ohttp.encapsulate(uri.ohttp_keys, "POST", uri.pj, message)
        request = Request(
            url=str(ohttp_relay),
            content_type=ohttp.OHTTP_REQUEST_CONTENT_TYPE,
            body=encapsulated,
        )
        context = V2PostContext(
            psbt_context=self._psbt_context(2),
            directory=directory,
            ohttp_keys=uri.ohttp_keys,
            reply_key=self._reply_key,
            ohttp_context=ohttp_ctx,
        )
        return request, context

    def extract_highest_version(self, ohttp_relay: str) -> tuple[Request, Union[V1Context, V2PostContext]]:
        if self._uri.supports_v2:
            return self.extract_v2(ohttp_relay)
        return self.extract_v1()


# ── Response contexts ────────────────────────────────────────────────

def _receiver_error(text: str) -> ReceiverResponseError:
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ValidationError("Receiver returned neither a PSBT nor a JSON error") from exc
    if not isinstance(data, dict) or "errorCode" not in data:
        raise ValidationError("Receiver returned an unrecognized JSON response")
    supported = data.get("supported")
    return ReceiverResponseError(
        error_code=str(data["errorCode"]),
        message=str(data.get("message", "")),
        supported_versions=list(supported) if isinstance(supported, list) else None,
    )


def _decode_response_text(body: bytes) -> str:
    try:
        return body.decode("utf-8").strip()
    except UnicodeDecodeError as exc:
        raise ValidationError("Receiver response is not text") from exc


class V1Context:
    """What the sender needs to check a v1 response."""

    def __init__(self, psbt_context: PsbtContext):
        self._psbt_context = psbt_context

    def process_response(self, body: bytes) -> str:
        """Validate the receiver's answer; returns the payjoin PSBT to sign."""
        return self._psbt_context.process_response_text(_decode_response_text(body))


class V2PostContext:
    def __init__(
        self,
        psbt_context: PsbtContext,
        directory: str,
        ohttp_keys: ohttp.OhttpKeys,
        reply_key: HpkeKeyPair,
        ohttp_context: ohttp.ClientResponse,
    ):
        self._psbt_context = psbt_context
        self._directory = directory
        self._ohttp_keys = ohttp_keys
        self._reply_key = reply_key
        self._ohttp_context = ohttp_context

    def process_response(self, body: bytes) -> V2GetContext:
        """Confirm the directory stored our request, then poll with the result."""
        response = self._ohttp_context.decapsulate(body)
        if not response.is_success:
            raise UnexpectedStatusError(response.status)
        logger.debug("Directory accepted original PSBT (%d)", response.status)
        return V2GetContext(self._psbt_context, self._directory, self._ohttp_keys, self._reply_key)


class V2GetContext:
    """Polls the sender's mailbox for the receiver's proposal."""

    def __init__(
        self,
        psbt_context: PsbtContext,
        directory: str,
        ohttp_keys: ohttp.OhttpKeys,
        reply_key: HpkeKeyPair,
    ):
        self._psbt_context = psbt_context
        self._directory = directory
        self._ohttp_keys = ohttp_keys
        self._reply_key = reply_key

    @property
    def mailbox_url(self) -> str:
        return v2.subdir_url(self._directory, self._reply_key.public_key)

    def extract_req(self, ohttp_relay: str) -> tuple[Request, ohttp.ClientResponse]:
        body, ctx = ohttp.encapsulate(self._ohttp_keys, "GET", self.mailbox_url)
        request = Request(
            url=str(ohttp_relay),
            content_type=ohttp.OHTTP_REQUEST_CONTENT_TYPE,
            body=body,
        )
        return request, ctx

    def process_response(self, body: bytes, ohttp_context: ohttp.ClientResponse) -> Optional[str]:
        """The validated payjoin PSBT, or None while the receiver has not answered."""
        response = ohttp_context.decapsulate(body)
        if response.status == 202 or (response.is_success and not response.content):
            return None
        if not response.is_success:
            raise UnexpectedStatusError(response.status)
        plaintext = v2.decrypt_message_b(response.content, self._reply_key.secret_key)
        return self._psbt_context.process_response_text(_decode_response_text(plaintext))


# ── Proposal validation ──────────────────────────────────────────────

@dataclass
class PsbtContext:
    """The original commitment a payjoin proposal is checked against."""

    original: Psbt
    payee: bytes
    disable_output_substitution: bool
    fee_contribution: Optional[AdditionalFeeContribution]
    min_fee_rate: FeeRate = ZERO_FEE_RATE
    version: int = 1

    def process_response_text(self, text: str) -> str:
        if text.startswith("{"):
            raise _receiver_error(text)
        try:
            proposal = Psbt.from_base64(text)
        except PsbtError as exc:
            raise ValidationError(f"Receiver returned an invalid PSBT: {exc}") from exc
        return self.process_proposal(proposal).to_base64()

    def process_proposal(self, proposal: Psbt) -> Psbt:
        self._basic_checks(proposal)
        self._check_inputs(proposal)
        contributed_fee = self._check_outputs(proposal)
        self._restore_original_utxos(proposal)
        self._check_fees(proposal, contributed_fee)
        logger.debug("Payjoin proposal accepted (receiver took %d sats of fee contribution)", contributed_fee)
        return proposal

    def _basic_checks(self, proposal: Psbt) -> None:
        if proposal.version != self.original.version:
            raise ValidationError("Transaction versions don't match")
        if proposal.lock_time != self.original.lock_time:
            raise ValidationError("Lock times don't match")
        if proposal.has_xpubs:
            raise ValidationError("Proposal contains global xpubs")

    def _check_inputs(self, proposal: Psbt) -> None:
        original_inputs = list(self.original.inputs)
        sender_sequence = original_inputs[0].sequence
        sender_type = original_inputs[0].script_type()
        position = 0
        for proposed in proposal.inputs:
            if proposed.has_key_paths:
                raise ValidationError(f"Input {proposed.prevout} contains key paths")
            if proposed.has_partial_sigs:
                raise ValidationError(f"Input {proposed.prevout} contains partial signatures")

            if position < len(original_inputs) and proposed.prevout == original_inputs[position].prevout:
                if proposed.sequence != original_inputs[position].sequence:
                    raise ValidationError(f"Sender input {proposed.prevout} sequence changed")
                if proposed.final_script_sig:
                    raise ValidationError(f"Sender input {proposed.prevout} contains a final scriptSig")
                if proposed.final_script_witness:
                    raise ValidationError(f"Sender input {proposed.prevout} contains a final witness")
                position += 1
                continue

            # Receiver input
            if not proposed.has_utxo_info:
                raise ValidationError(f"Receiver input {proposed.prevout} is missing UTXO information")
            if not proposed.is_finalized:
                raise ValidationError(f"Receiver input {proposed.prevout} is not finalized")
            if proposed.sequence != sender_sequence:
                raise ValidationError("Mixed input sequences")
            try:
                receiver_type = proposed.script_type()
            except PsbtError as exc:
                raise ValidationError(str(exc)) from exc
            if self.version == 1 and receiver_type != sender_type:
                raise ValidationError(f"Receiver added a {receiver_type} input to {sender_type} inputs")

        if position != len(original_inputs):
            raise ValidationError("Some sender inputs are missing or were shuffled")

    def _check_outputs(self, proposal: Psbt) -> int:
        """Walk the outputs in order; returns the fee the receiver took from us."""
        original_outputs = list(enumerate(self.original.outputs))
        position = 0
        contributed_fee = 0
        contribution = self.fee_contribution
        for vout, proposed in enumerate(proposal.outputs):
            if vout in proposal.outputs_with_key_paths:
                raise ValidationError(f"Output {vout} contains key paths")
            if position >= len(original_outputs):
                continue
            original_vout, original = original_outputs[position]

            if (
                contribution is not None
                and original_vout == contribution.vout
                and proposed.script_pubkey == original.script_pubkey
            ):
                if proposed.value < original.value:
                    contributed_fee = original.value - proposed.value
                    if contributed_fee > contribution.max_amount:
                        raise ValidationError(
                            f"Fee contribution of {contributed_fee} exceeds the maximum {contribution.max_amount}"
                        )
                position += 1
            elif original.script_pubkey == self.payee:
                if self.disable_output_substitution and (
                    proposed.script_pubkey != original.script_pubkey or proposed.value < original.value
                ):
                    raise ValidationError("Output substitution is disabled")
                position += 1
            elif proposed.script_pubkey == original.script_pubkey:
                if proposed.value < original.value:
                    raise ValidationError(f"Output {original_vout} value decreased")
                position += 1
            # otherwise the receiver added this output

        if position != len(original_outputs):
            raise ValidationError("Some original outputs are missing or were shuffled")
        return contributed_fee

    def _restore_original_utxos(self, proposal: Psbt) -> None:
        originals = {inp.prevout: inp for inp in self.original.inputs}
        for inp in proposal.inputs:
            original = originals.get(inp.prevout)
            if original is not None:
                inp.utxo = original.utxo
                inp.redeem_script = original.redeem_script
                inp.witness_script = original.witness_script

    def _check_fees(self, proposal: Psbt, contributed_fee: int) -> None:
        try:
            proposed_fee = proposal.fee()
        except PsbtError as exc:
            raise ValidationError(str(exc)) from exc
        original_fee = self.original.fee()
        if proposed_fee < original_fee:
            raise ValidationError("Absolute fee decreased")
        if contributed_fee > proposed_fee - original_fee:
            raise ValidationError("Payee took the contributed fee")

        original_weight = self.original.actual_weight()
        original_fee_rate = fee_rate_from_fee(original_fee, original_weight)
        sender_outpoints = set(self.original.outpoints())
        try:
            additional_input_weight = sum(
                inp.expected_weight() for inp in proposal.inputs if inp.prevout not in sender_outpoints
            )
        except PsbtError as exc:
            raise ValidationError(str(exc)) from exc
        if contributed_fee > original_fee_rate.fee_for_weight(additional_input_weight):
            raise ValidationError("Fee contribution pays for an output size increase")

        if self.min_fee_rate > ZERO_FEE_RATE:
            added_output_weight = output_weight_sum(proposal) - output_weight_sum(self.original)
            proposed_weight = original_weight + additional_input_weight + added_output_weight
            proposed_rate = fee_rate_from_fee(proposed_fee, proposed_weight)
            if proposed_rate < self.min_fee_rate:
                raise ValidationError(
                    f"Proposal fee rate {proposed_rate} is below the minimum {self.min_fee_rate}"
                )

