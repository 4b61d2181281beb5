"""
Receiver verification pipeline.

Each stage wraps the proposal so far and exposes only the next check. A
check consumes its stage and returns the next one, so the checks run in
order and each runs once:

    UncheckedProposal
      -> MaybeInputsOwned        check_broadcast_suitability / assume_interactive_receiver
      -> MaybeMixedInputScripts  check_inputs_not_owned
      -> MaybeInputsSeen         check_no_mixed_input_scripts
      -> OutputsUnknown          check_no_inputs_seen_before
      -> WantsOutputs            identify_receiver_outputs
      -> WantsInputs             commit_outputs
      -> ProvisionalProposal     commit_inputs

Host predicates are plain callables; their failures surface as ServerError
and leave the stage live for a retry. A failed check raises a ProtocolError
subclass and consumes the stage.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Callable, Iterable, Mapping, Optional

from .amounts import FeeRate
from .errors import (
    InputContributionError,
    InputOwnedError,
    InputSeenError,
    InvalidOriginalPsbtError,
    MissingPaymentError,
    MixedInputScriptsError,
    NotBroadcastableError,
    OriginalPsbtRejected,
    OutputSubstitutionError,
    ProtocolError,
    PsbtBelowFeeRateError,
    StageConsumedError,
)
from .params import Params
from .provisional import InputPair, ProvisionalProposal, secure_random, call_host, select_preserving_privacy
from .psbt import Psbt, PsbtError
from .types import OutPoint, TxOut
from .v2 import SessionContext

logger = logging.getLogger(__name__)

# A 4 MWU transaction, base64 encoded.
MAX_CONTENT_LENGTH = 4_000_000 * 4 // 3


@dataclass(frozen=True)
class _Proposal:
    original: Psbt
    params: Params
    session: Optional[SessionContext] = None


class _Stage:
    """A pipeline step that can be advanced exactly once."""

    def __init__(self, proposal: _Proposal):
        self._proposal = proposal
        self._consumed = False

    def _ensure_live(self) -> None:
        if self._consumed:
            raise StageConsumedError(type(self).__name__)

    def _advance(self, stage):
        self._consumed = True
        logger.debug("%s -> %s", type(self).__name__, type(stage).__name__)
        return stage

    def _reject(self, error: ProtocolError) -> ProtocolError:
        """Consume the stage on a protocol rejection; host failures leave it live."""
        self._consumed = True
        logger.debug("%s rejected: %s", type(self).__name__, error)
        return error

    @property
    def params(self) -> Params:
        return self._proposal.params


def _parse_original(psbt_text: str) -> Psbt:
    try:
        psbt = Psbt.from_base64(psbt_text)
        psbt.validate()
        psbt.validate_input_utxos()
    except PsbtError as exc:
        raise InvalidOriginalPsbtError(str(exc)) from exc
    return psbt


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    for key, value in headers.items():
        if key.lower() == name:
            return value
    return None


class UncheckedProposal(_Stage):
    """The sender's original PSBT and parameters, nothing checked yet."""

    @classmethod
    def from_request(
        cls,
        body: bytes,
        query: str,
        headers: Mapping[str, str],
    ) -> UncheckedProposal:
        """Entry point for a direct BIP 78 request."""
        content_type = _header(headers, "content-type")
        if content_type is None or not content_type.lower().startswith("text/plain"):
            raise OriginalPsbtRejected(f"Invalid content type: {content_type}")
        content_length = (_header(headers, "content-length") or "").strip()
        if not (content_length.isascii() and content_length.isdigit()):
            raise OriginalPsbtRejected("Missing or invalid content length")
        length = int(content_length)
        if length > MAX_CONTENT_LENGTH:
            raise OriginalPsbtRejected(f"Content length too large: {length}")
        if length != len(body):
            raise OriginalPsbtRejected(f"Content length {length} does not match body of {len(body)} bytes")
        try:
            psbt_text = body.decode("ascii")
        except UnicodeDecodeError as exc:
            raise InvalidOriginalPsbtError("Body is not base64 text") from exc
        return cls.from_parts(psbt_text, query)

    @classmethod
    def from_parts(
        cls,
        psbt_text: str,
        query: str,
        session: Optional[SessionContext] = None,
    ) -> UncheckedProposal:
        params = Params.from_query(query)
        original = _parse_original(psbt_text)
        logger.debug("Received original PSBT with %d inputs, params %s", len(original.inputs), params)
        return cls(_Proposal(original=original, params=params, session=session))

    def extract_tx_to_schedule_broadcast(self) -> bytes:
        """The original transaction, to broadcast if the payjoin never completes."""
        return self._proposal.original.extract_tx_bytes()

    def original_fee_rate(self) -> FeeRate:
        try:
            return self._proposal.original.fee_rate()
        except PsbtError as exc:
            raise InvalidOriginalPsbtError(str(exc)) from exc

    def check_broadcast_suitability(
        self,
        min_fee_rate: Optional[FeeRate],
        can_broadcast: Callable[[bytes], bool],
    ) -> MaybeInputsOwned:
        """Require the original to be broadcastable before engaging further.

        `min_fee_rate` is in sat/kwu. Non-interactive receivers should always
        call this so that a sender who abandons the payjoin still pays a fee
        when the original is broadcast.
        """
        self._ensure_live()
        try:
            fee_rate = self.original_fee_rate()
        except InvalidOriginalPsbtError as exc:
            raise self._reject(exc)
        if min_fee_rate is not None and fee_rate < min_fee_rate:
            raise self._reject(PsbtBelowFeeRateError(fee_rate, min_fee_rate))
        if not call_host(can_broadcast, self.extract_tx_to_schedule_broadcast()):
            raise self._reject(NotBroadcastableError())
        return self._advance(MaybeInputsOwned(self._proposal))

    def assume_interactive_receiver(self) -> MaybeInputsOwned:
        """Skip the broadcast check; only for receivers with a human in the loop."""
        self._ensure_live()
        return self._advance(MaybeInputsOwned(self._proposal))


class MaybeInputsOwned(_Stage):
    def check_inputs_not_owned(self, is_owned: Callable[[bytes], bool]) -> MaybeMixedInputScripts:
        """Reject originals that spend the receiver's own coins."""
        self._ensure_live()
        for inp in self._proposal.original.inputs:
            script = inp.previous_txout().script_pubkey
            if call_host(is_owned, script):
                logger.warning("Original PSBT spends an input we own: %s", inp.prevout)
                raise self._reject(InputOwnedError(script))
        return self._advance(MaybeMixedInputScripts(self._proposal))


class MaybeMixedInputScripts(_Stage):
    def check_no_mixed_input_scripts(self) -> MaybeInputsSeen:
        self._ensure_live()
        first = None
        for inp in self._proposal.original.inputs:
            kind = inp.script_type()
            if first is None:
                first = kind
            elif kind != first:
                raise self._reject(MixedInputScriptsError(first, kind))
        return self._advance(MaybeInputsSeen(self._proposal))


class MaybeInputsSeen(_Stage):
    def check_no_inputs_seen_before(self, is_known: Callable[[OutPoint], bool]) -> OutputsUnknown:
        """Reject inputs we have seen before, a sign of UTXO scanning."""
        self._ensure_live()
        for inp in self._proposal.original.inputs:
            if call_host(is_known, inp.prevout):
                logger.warning(
                    "Request contains an input we've seen before: %s. "
                    "Refusing to reveal our UTXOs again.",
                    inp.prevout,
                )
                raise self._reject(InputSeenError(inp.prevout))
        return self._advance(OutputsUnknown(self._proposal))


class OutputsUnknown(_Stage):
    def identify_receiver_outputs(self, is_receiver_output: Callable[[bytes], bool]) -> WantsOutputs:
        """Find the outputs paying us. At least one is required."""
        self._ensure_live()
        original = self._proposal.original
        owned_vouts = [
            vout
            for vout, txout in enumerate(original.outputs)
            if call_host(is_receiver_output, txout.script_pubkey)
        ]
        if not owned_vouts:
            raise self._reject(MissingPaymentError())

        proposal = self._proposal
        contribution = proposal.params.additional_fee_contribution
        if contribution is not None and contribution.vout in owned_vouts:
            # The sender cannot pay fees from our own output.
            logger.warning("additionalfeeoutputindex %d points at a receiver output, ignoring", contribution.vout)
            proposal = replace(proposal, params=replace(proposal.params, additional_fee_contribution=None))

        return self._advance(WantsOutputs(
            proposal,
            payjoin=original.clone(),
            owned_vouts=owned_vouts,
            change_vout=owned_vouts[0],
        ))


class WantsOutputs(_Stage):
    """Receiver outputs identified; they may be replaced before committing."""

    def __init__(self, proposal: _Proposal, payjoin: Psbt, owned_vouts: list[int], change_vout: int):
        super().__init__(proposal)
        self._payjoin = payjoin
        self._owned_vouts = owned_vouts
        self._change_vout = change_vout

    def is_output_substitution_disabled(self) -> bool:
        return self.params.disable_output_substitution

    def owned_vouts(self) -> list[int]:
        return list(self._owned_vouts)

    def substitute_receiver_script(self, output_script: bytes) -> WantsOutputs:
        """Pay the receiver's (first) output to a different script."""
        value = self._payjoin.outputs[self._change_vout].value
        return self.replace_receiver_outputs([TxOut(value, bytes(output_script))], bytes(output_script))

    def replace_receiver_outputs(self, replacement_outputs: Iterable[TxOut], drain_script: bytes) -> WantsOutputs:
        """Replace every receiver output.

        Outputs with the same script substitute in place; otherwise a random
        replacement takes the slot. Leftover replacements are inserted at
        random positions. `drain_script` marks the output that absorbs change
        and fees.
        """
        self._ensure_live()
        original = self._proposal.original
        disabled = self.params.disable_output_substitution
        replacements = list(replacement_outputs)
        pool = list(replacements)
        outputs: list[TxOut] = []

        for vout, original_output in enumerate(original.outputs):
            if vout not in self._owned_vouts:
                outputs.append(original_output)
                continue
            if not pool:
                raise OutputSubstitutionError("Not enough outputs to replace the receiver outputs")
            same_script = next(
                (txo for txo in pool if txo.script_pubkey == original_output.script_pubkey), None
            )
            if same_script is not None:
                if disabled and same_script.value < original_output.value:
                    raise OutputSubstitutionError(
                        "Decreasing the receiver output value is not allowed when output substitution is disabled"
                    )
                pool.remove(same_script)
                outputs.append(same_script)
            else:
                if disabled:
                    raise OutputSubstitutionError(
                        "Changing the receiver output script is not allowed when output substitution is disabled"
                    )
                outputs.append(pool.pop(secure_random.randrange(len(pool))))

        for txo in pool:
            outputs.insert(secure_random.randint(0, len(outputs)), txo)

        owned_vouts = [vout for vout, txo in enumerate(outputs) if txo in replacements]
        change_vout = next(
            (vout for vout, txo in enumerate(outputs) if txo.script_pubkey == bytes(drain_script)),
            None,
        )
        if change_vout is None:
            raise OutputSubstitutionError("The drain script is not among the receiver outputs")

        payjoin = original.clone()
        payjoin.outputs = outputs
        payjoin.outputs_with_key_paths = set()
        return self._advance(WantsOutputs(self._proposal, payjoin, owned_vouts, change_vout))

    def commit_outputs(self) -> WantsInputs:
        self._ensure_live()
        return self._advance(WantsInputs(
            self._proposal, self._payjoin, self._owned_vouts, self._change_vout, receiver_inputs=[]
        ))


class WantsInputs(_Stage):
    """Outputs fixed; receiver inputs may be contributed before committing."""

    def __init__(
        self,
        proposal: _Proposal,
        payjoin: Psbt,
        owned_vouts: list[int],
        change_vout: int,
        receiver_inputs: list[InputPair],
    ):
        super().__init__(proposal)
        self._payjoin = payjoin
        self._owned_vouts = owned_vouts
        self._change_vout = change_vout
        self._receiver_inputs = receiver_inputs

    def try_preserving_privacy(self, candidate_inputs: Mapping[int, OutPoint]) -> OutPoint:
        return select_preserving_privacy(self._payjoin, self._change_vout, candidate_inputs)

    def _receiver_min_input_amount(self) -> int:
        """Sats our inputs must bring in before any of it counts as change."""
        added = self._payjoin.output_amount() - self._proposal.original.output_amount()
        already = sum(pair.value for pair in self._receiver_inputs)
        return max(0, added - already)

    def contribute_witness_inputs(self, inputs: Iterable[InputPair]) -> WantsInputs:
        """Insert receiver inputs at random positions; the excess goes to the change output."""
        self._ensure_live()
        original = self._proposal.original
        payjoin = self._payjoin.clone()
        sequence = payjoin.inputs[0].sequence
        sender_type = original.inputs[0].script_type()
        existing = set(payjoin.outpoints())
        contributed = list(self._receiver_inputs)

        amount = 0
        for pair in inputs:
            if pair.outpoint in existing:
                raise InputContributionError(f"Duplicate input {pair.outpoint}")
            try:
                input_type = pair.script_type()
            except PsbtError as exc:
                raise InputContributionError(str(exc)) from exc
            if self.params.v == 1 and input_type != sender_type:
                # v1 proposals must not introduce mixed input script types
                raise InputContributionError(
                    f"Contributed {input_type} input does not match sender {sender_type} inputs"
                )
            existing.add(pair.outpoint)
            contributed.append(pair)
            amount += pair.value
            index = secure_random.randint(0, len(payjoin.inputs))
            payjoin.inputs.insert(index, pair.to_psbt_input(sequence))

        min_amount = self._receiver_min_input_amount()
        if amount < min_amount:
            raise InputContributionError(
                f"Contributed inputs total {amount} sats, at least {min_amount} needed"
            )
        change = payjoin.outputs[self._change_vout]
        payjoin.outputs[self._change_vout] = TxOut(change.value + amount - min_amount, change.script_pubkey)

        return self._advance(WantsInputs(
            self._proposal, payjoin, self._owned_vouts, self._change_vout, contributed
        ))

    def commit_inputs(self) -> ProvisionalProposal:
        self._ensure_live()
        return self._advance(ProvisionalProposal(
            original=self._proposal.original,
            payjoin=self._payjoin,
            params=self.params,
            change_vout=self._change_vout,
            owned_vouts=self._owned_vouts,
            receiver_inputs=[pair.outpoint for pair in self._receiver_inputs],
            session=self._proposal.session,
        ))
