"""
Receiver negotiation once the output set is known.

`ProvisionalProposal` accumulates the receiver's contributions and may be
driven from several call sites, so every public method holds its lock.
`finalize_proposal` works on a copy of the locked state: a failed finalize
leaves the negotiation as it was. `PayjoinProposal` is the immutable result
and knows how to hand itself back to the sender.
"""

from __future__ import annotations

import logging
import random
import threading
from dataclasses import dataclass
from typing import Callable, Mapping, Optional, TypeVar

from . import ohttp, v2
from .amounts import FeeRate, ZERO_FEE_RATE, fee_rate_from_fee
from .config import DEFAULT_MAX_FEE_RATE_SAT_PER_VB
from .errors import (
    FeeRateBoundError,
    InputContributionError,
    OriginalPsbtRejected,
    OutputSubstitutionError,
    PayjoinError,
    SelectionError,
    ServerError,
    SessionError,
    UnexpectedStatusError,
)
from .params import Params
from .psbt import Psbt, PsbtError, PsbtInput, output_weight_sum
from .types import OutPoint, Request, TxOut

logger = logging.getLogger(__name__)

secure_random = random.SystemRandom()

T = TypeVar("T")


def call_host(callback: Callable[..., T], *args) -> T:
    """Run a host callback. Failures other than payjoin errors become ServerError."""
    try:
        return callback(*args)
    except PayjoinError:
        raise
    except Exception as exc:
        name = getattr(callback, "__name__", type(callback).__name__)
        logger.warning("Host callback %s failed: %s", name, exc)
        raise ServerError(f"Host callback {name} failed: {exc}") from exc


@dataclass(frozen=True)
class InputPair:
    """A receiver UTXO offered for contribution."""

    outpoint: OutPoint
    txout: TxOut
    redeem_script: bytes = b""

    @property
    def value(self) -> int:
        return self.txout.value

    def to_psbt_input(self, sequence: int) -> PsbtInput:
        return PsbtInput(
            prevout=self.outpoint,
            sequence=sequence,
            utxo=self.txout.to_bitcointx(),
            redeem_script=self.redeem_script,
        )

    def script_type(self) -> str:
        return self.to_psbt_input(0).script_type()


def select_preserving_privacy(
    payjoin: Psbt,
    change_vout: int,
    candidate_inputs: Mapping[int, OutPoint],
) -> OutPoint:
    """Pick a candidate that keeps the smallest output at least as large as the smallest input.

    An output smaller than every input marks an input as unnecessary, which
    analysts read as the payer's change (the unnecessary input heuristic).
    The heuristic is defined over two-output transactions. With a single
    output there is no change to give away and the first candidate is taken.
    """
    if len(payjoin.outputs) > 2:
        raise SelectionError("Too many outputs for privacy-preserving input selection")
    if not candidate_inputs:
        raise SelectionError("No candidate inputs")
    if len(payjoin.outputs) == 1:
        return next(iter(candidate_inputs.values()))

    min_out = min(txout.value for txout in payjoin.outputs)
    min_in = min(inp.previous_txout().value for inp in payjoin.inputs)
    prior_payment = payjoin.outputs[change_vout].value

    for amount, outpoint in candidate_inputs.items():
        candidate_min_out = min(min_out, prior_payment + amount)
        candidate_min_in = min(min_in, amount)
        if candidate_min_out >= candidate_min_in:
            logger.debug("Selected candidate %s (%d sats)", outpoint, amount)
            return outpoint

    raise SelectionError("No candidate input avoids the unnecessary input heuristic")


def _contributed_input_weight(payjoin: Psbt, receiver_inputs: set[OutPoint]) -> int:
    try:
        return sum(
            inp.expected_weight() for inp in payjoin.inputs if inp.prevout in receiver_inputs
        )
    except PsbtError as exc:
        raise InputContributionError(f"Cannot weigh contributed input: {exc}") from exc


def _apply_fee(
    original: Psbt,
    payjoin: Psbt,
    params: Params,
    change_vout: int,
    receiver_inputs: set[OutPoint],
    min_fee_rate: FeeRate,
    max_fee_rate: FeeRate,
) -> None:
    """Pay for the receiver's additions, taking the sender's allowed share first."""
    input_weight = _contributed_input_weight(payjoin, receiver_inputs)
    additional_fee = min_fee_rate.fee_for_weight(input_weight)
    receiver_fee = additional_fee
    logger.debug("additional_fee: %d (input weight %d)", additional_fee, input_weight)

    contribution = params.additional_fee_contribution
    if additional_fee > 0 and contribution is not None:
        if contribution.vout >= len(original.outputs):
            raise OriginalPsbtRejected(
                f"additionalfeeoutputindex {contribution.vout} is out of range"
            )
        # Receiver outputs may have moved the sender's output; find it by script.
        sender_script = original.outputs[contribution.vout].script_pubkey
        sender_vout = next(
            (i for i, txout in enumerate(payjoin.outputs) if txout.script_pubkey == sender_script),
            None,
        )
        if sender_vout is None:
            raise OutputSubstitutionError("Sender fee output is missing from the payjoin")
        sender_fee = min(contribution.max_amount, additional_fee)
        sender_output = payjoin.outputs[sender_vout]
        if sender_fee > sender_output.value:
            raise OriginalPsbtRejected("Sender fee output cannot cover its fee contribution")
        payjoin.outputs[sender_vout] = TxOut(sender_output.value - sender_fee, sender_output.script_pubkey)
        receiver_fee -= sender_fee
        logger.debug("sender_additional_fee: %d", sender_fee)

    # The sender only pays for inputs; added outputs are on the receiver.
    output_weight = max(0, output_weight_sum(payjoin) - output_weight_sum(original))
    receiver_fee += min_fee_rate.fee_for_weight(output_weight)
    logger.debug("receiver_additional_fee: %d", receiver_fee)

    max_fee = max_fee_rate.fee_for_weight(input_weight + output_weight)
    if receiver_fee > max_fee:
        proposed = fee_rate_from_fee(receiver_fee, input_weight + output_weight)
        raise FeeRateBoundError(proposed, min_fee_rate, max_fee_rate)

    if receiver_fee > 0:
        change = payjoin.outputs[change_vout]
        if receiver_fee > change.value:
            raise InputContributionError("Receiver output cannot cover the additional fee")
        payjoin.outputs[change_vout] = TxOut(change.value - receiver_fee, change.script_pubkey)


def _estimated_weight(original: Psbt, payjoin: Psbt, receiver_inputs: set[OutPoint]) -> int:
    """Finalized original weight plus the receiver's predicted additions."""
    weight = original.actual_weight()
    weight += _contributed_input_weight(payjoin, receiver_inputs)
    weight += output_weight_sum(payjoin) - output_weight_sum(original)
    return weight


def _check_processed(draft: Psbt, processed: Psbt) -> None:
    if (
        processed.outpoints() != draft.outpoints()
        or processed.outputs != draft.outputs
        or processed.version != draft.version
        or processed.lock_time != draft.lock_time
    ):
        raise ServerError("process_psbt changed the transaction")
    for draft_input, processed_input in zip(draft.inputs, processed.inputs):
        if processed_input.utxo is None:
            processed_input.utxo = draft_input.utxo


class ProvisionalProposal:
    """A payjoin under construction, owned by one negotiation."""

    def __init__(
        self,
        original: Psbt,
        payjoin: Psbt,
        params: Params,
        change_vout: int,
        owned_vouts: list[int],
        receiver_inputs: list[OutPoint],
        session: Optional[v2.SessionContext] = None,
    ):
        self._lock = threading.Lock()
        self._original = original
        self._payjoin = payjoin
        self._params = params
        self._change_vout = change_vout
        self._owned_vouts = list(owned_vouts)
        self._receiver_inputs = list(receiver_inputs)
        self._session = session

    def is_output_substitution_disabled(self) -> bool:
        with self._lock:
            return self._params.disable_output_substitution

    def contribute_witness_input(self, txo: TxOut, outpoint: OutPoint) -> None:
        """Add one receiver input and credit its value to the receiver's output."""
        with self._lock:
            payjoin = self._payjoin
            if outpoint in payjoin.outpoints():
                raise InputContributionError(f"Duplicate input {outpoint}")
            sequence = payjoin.inputs[0].sequence
            change = payjoin.outputs[self._change_vout]
            payjoin.outputs[self._change_vout] = TxOut(change.value + txo.value, change.script_pubkey)
            index = secure_random.randint(0, len(payjoin.inputs))
            payjoin.inputs.insert(index, InputPair(outpoint, txo).to_psbt_input(sequence))
            self._receiver_inputs.append(outpoint)
            logger.debug("Contributed input %s at index %d", outpoint, index)

    def try_preserving_privacy(self, candidate_inputs: Mapping[int, OutPoint]) -> OutPoint:
        with self._lock:
            return select_preserving_privacy(self._payjoin, self._change_vout, candidate_inputs)

    def try_substitute_receiver_output(self, generate_script: Callable[[], bytes]) -> None:
        """Swap the receiver output's script for a fresh one, unless the sender forbids it."""
        with self._lock:
            if self._params.disable_output_substitution:
                logger.debug("Output substitution disabled, keeping receiver output")
                return
            script = bytes(call_host(generate_script))
            change = self._payjoin.outputs[self._change_vout]
            self._payjoin.outputs[self._change_vout] = TxOut(change.value, script)

    def finalize_proposal(
        self,
        process_psbt: Callable[[str], str],
        min_feerate_sat_per_vb: Optional[int] = None,
        max_feerate_sat_per_vb: int = DEFAULT_MAX_FEE_RATE_SAT_PER_VB,
    ) -> PayjoinProposal:
        """Apply fees, have the host sign, and check the result's fee rate.

        The resulting fee rate must lie in [min, max], where min is the larger
        of `min_feerate_sat_per_vb` and the sender's `minfeerate`.
        """
        with self._lock:
            original = self._original.clone()
            draft = self._payjoin.clone()
            params = self._params
            change_vout = self._change_vout
            owned_vouts = tuple(self._owned_vouts)
            receiver_inputs = tuple(self._receiver_inputs)
            session = self._session

        min_fee_rate = (
            FeeRate.from_sat_per_vb(min_feerate_sat_per_vb)
            if min_feerate_sat_per_vb is not None
            else ZERO_FEE_RATE
        )
        min_fee_rate = max(min_fee_rate, params.min_fee_rate)
        max_fee_rate = FeeRate.from_sat_per_vb(max_feerate_sat_per_vb)
        receiver_set = set(receiver_inputs)

        _apply_fee(original, draft, params, change_vout, receiver_set, min_fee_rate, max_fee_rate)
        weight = _estimated_weight(original, draft, receiver_set)

        for inp in draft.inputs:
            if inp.prevout not in receiver_set:
                inp.clear_finals()

        processed_text = call_host(process_psbt, draft.to_base64())
        try:
            processed = Psbt.from_base64(processed_text)
        except PsbtError as exc:
            raise ServerError("process_psbt returned an invalid PSBT") from exc
        _check_processed(draft, processed)
        try:
            fee = processed.fee()
        except PsbtError as exc:
            raise ServerError(f"process_psbt returned an unusable PSBT: {exc}") from exc

        fee_rate = fee_rate_from_fee(fee, weight)
        if fee_rate < min_fee_rate or fee_rate > max_fee_rate:
            logger.warning("Payjoin fee rate %s outside [%s, %s]", fee_rate, min_fee_rate, max_fee_rate)
            raise FeeRateBoundError(fee_rate, min_fee_rate, max_fee_rate)

        for inp in processed.inputs:
            inp.has_key_paths = False
            inp.has_partial_sigs = False
            if inp.prevout in receiver_set:
                if not inp.is_finalized:
                    raise ServerError(f"process_psbt did not finalize receiver input {inp.prevout}")
            else:
                inp.utxo = None
                inp.clear_finals()
        processed.outputs_with_key_paths = set()
        processed.has_xpubs = False

        logger.debug("Finalized payjoin at %s with %d receiver inputs", fee_rate, len(receiver_inputs))
        return PayjoinProposal(processed, params, owned_vouts, receiver_inputs, session)


class PayjoinProposal:
    """A finalized payjoin, ready to return to the sender."""

    def __init__(
        self,
        psbt: Psbt,
        params: Params,
        owned_vouts: tuple[int, ...],
        receiver_inputs: tuple[OutPoint, ...],
        session: Optional[v2.SessionContext] = None,
    ):
        self._psbt = psbt
        self._psbt_text = psbt.to_base64()
        self._params = params
        self._owned_vouts = owned_vouts
        self._receiver_inputs = receiver_inputs
        self._session = session

    def utxos_to_be_locked(self) -> list[OutPoint]:
        """Receiver-contributed outpoints the host must lock before broadcasting."""
        present = set(self._psbt.outpoints())
        return [outpoint for outpoint in self._receiver_inputs if outpoint in present]

    def is_output_substitution_disabled(self) -> bool:
        return self._params.disable_output_substitution

    def owned_vouts(self) -> list[int]:
        return list(self._owned_vouts)

    def psbt(self) -> str:
        return self._psbt_text

    def extract_v1_req(self) -> str:
        """Body of the BIP 78 response to a direct request."""
        return self._psbt_text

    def extract_v2_req(self) -> tuple[Request, ohttp.ClientResponse]:
        """Post the proposal to the sender's mailbox through the relay.

        A v1 sender that reached us through the directory gets the plain PSBT
        in our own mailbox instead.
        """
        session = self._session
        if session is None:
            raise SessionError("Proposal was not received through a directory session")
        if session.reply_key is not None:
            body = v2.encrypt_message_b(session.reply_key, self._psbt_text.encode("ascii"))
            target = v2.subdir_url(session.directory, session.reply_key)
            method = "POST"
        else:
            body = self._psbt_text.encode("ascii")
            target = session.mailbox_url
            method = "PUT"
        encapsulated, ctx = ohttp.encapsulate(session.ohttp_keys, method, target, body)
        request = Request(
            url=session.ohttp_relay,
            content_type=ohttp.OHTTP_REQUEST_CONTENT_TYPE,
            body=encapsulated,
        )
        return request, ctx

    def process_res(self, body: bytes, ohttp_context: ohttp.ClientResponse) -> None:
        """Check the directory stored the proposal."""
        response = ohttp_context.decapsulate(body)
        if not response.is_success:
            raise UnexpectedStatusError(response.status)
        logger.debug("Directory accepted payjoin proposal (%d)", response.status)
