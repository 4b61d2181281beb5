"""
PSBT model used by the protocol logic.

Base64 PSBTs are parsed and serialized with python-bitcointx; in between the
sender and receiver work on the plain `Psbt` dataclass below so that inputs
and outputs can be inserted, reordered and revalued freely. Fields the
protocol requires to be stripped (BIP 32 derivations, xpubs, partial
signatures) are not carried over, only flagged.
"""

from __future__ import annotations

import base64
import binascii
import copy
import logging
from dataclasses import dataclass, field
from typing import Optional, Union

from bitcointx.core import (
    CMutableTransaction,
    CTransaction,
    CTxIn,
    CTxInWitness,
    CTxOut,
    CTxWitness,
)
from bitcointx.core.psbt import PartiallySignedTransaction, PSBT_Input
from bitcointx.core.script import CScript, CScriptWitness
from bitcointx.core.serialize import SerializationError

from .amounts import FeeRate, WITNESS_SCALE_FACTOR, fee_rate_from_fee
from .types import OutPoint, TxOut

logger = logging.getLogger(__name__)


P2PKH = "p2pkh"
P2SH = "p2sh"
P2WPKH = "p2wpkh"
P2WSH = "p2wsh"
P2TR = "p2tr"
UNKNOWN = "unknown"

# Predicted satisfied-input weights (txid, vout, sequence, scriptSig, witness).
P2PKH_INPUT_WEIGHT = 592
NESTED_P2WPKH_INPUT_WEIGHT = 364
P2WPKH_INPUT_WEIGHT = 272
P2TR_KEY_SPEND_INPUT_WEIGHT = 230
# Weight of an input without its scriptSig/witness: (32 + 4 + 4 + 1) * 4
TXIN_BASE_WEIGHT = 164

DEFAULT_SEQUENCE = 0xFFFFFFFF

Utxo = Union[CTxOut, CTransaction]


class PsbtError(ValueError):
    """A PSBT could not be decoded or lacks data the protocol needs."""
    pass


def classify_script(script: bytes) -> str:
    """Standard output-script type of a scriptPubKey."""
    n = len(script)
    if n == 25 and script[:3] == b"\x76\xa9\x14" and script[23:] == b"\x88\xac":
        return P2PKH
    if n == 23 and script[:2] == b"\xa9\x14" and script[22:] == b"\x87":
        return P2SH
    if n == 22 and script[:2] == b"\x00\x14":
        return P2WPKH
    if n == 34 and script[:2] == b"\x00\x20":
        return P2WSH
    if n == 34 and script[:2] == b"\x51\x20":
        return P2TR
    return UNKNOWN


def _var_int_size(n: int) -> int:
    if n < 0xFD:
        return 1
    if n <= 0xFFFF:
        return 3
    if n <= 0xFFFFFFFF:
        return 5
    return 9


def output_weight(txout: TxOut) -> int:
    spk_len = len(txout.script_pubkey)
    return (8 + _var_int_size(spk_len) + spk_len) * WITNESS_SCALE_FACTOR


@dataclass
class PsbtInput:
    prevout: OutPoint
    sequence: int = DEFAULT_SEQUENCE
    utxo: Optional[Utxo] = None
    final_script_sig: bytes = b""
    final_script_witness: list[bytes] = field(default_factory=list)
    redeem_script: bytes = b""
    witness_script: bytes = b""
    has_partial_sigs: bool = False
    has_key_paths: bool = False

    @property
    def is_finalized(self) -> bool:
        return bool(self.final_script_sig or self.final_script_witness)

    @property
    def has_utxo_info(self) -> bool:
        return self.utxo is not None

    def previous_txout(self) -> TxOut:
        if isinstance(self.utxo, CTxOut):
            return TxOut.from_bitcointx(self.utxo)
        if isinstance(self.utxo, CTransaction):
            if self.prevout.vout >= len(self.utxo.vout):
                raise PsbtError(f"Prevout index out of range for input {self.prevout}")
            return TxOut.from_bitcointx(self.utxo.vout[self.prevout.vout])
        raise PsbtError(f"Missing UTXO information for input {self.prevout}")

    def script_type(self) -> str:
        return classify_script(self.previous_txout().script_pubkey)

    def _is_nested_p2wpkh(self) -> bool:
        if self.redeem_script:
            return classify_script(self.redeem_script) == P2WPKH
        # scriptSig pushing a 22-byte v0 keyhash program
        sig = self.final_script_sig
        return len(sig) == 23 and sig[0] == 0x16 and classify_script(sig[1:]) == P2WPKH

    def expected_weight(self) -> int:
        """Predicted weight of this input once satisfied."""
        kind = self.script_type()
        if kind == P2PKH:
            return P2PKH_INPUT_WEIGHT
        if kind == P2WPKH:
            return P2WPKH_INPUT_WEIGHT
        if kind == P2TR:
            return P2TR_KEY_SPEND_INPUT_WEIGHT
        if kind == P2SH and self._is_nested_p2wpkh():
            return NESTED_P2WPKH_INPUT_WEIGHT
        raise PsbtError(f"Cannot predict the weight of a {kind} input ({self.prevout})")

    def is_segwit(self) -> bool:
        kind = self.script_type()
        return kind in (P2WPKH, P2WSH, P2TR) or (kind == P2SH and self._is_nested_p2wpkh())

    def clear_finals(self) -> None:
        self.final_script_sig = b""
        self.final_script_witness = []


@dataclass
class Psbt:
    version: int
    lock_time: int
    inputs: list[PsbtInput]
    outputs: list[TxOut]
    outputs_with_key_paths: set[int] = field(default_factory=set)
    has_xpubs: bool = False

    # ── Decoding / encoding ──────────────────────────────────────────

    @classmethod
    def from_base64(cls, text: Union[str, bytes]) -> Psbt:
        if isinstance(text, bytes):
            try:
                text = text.decode("ascii")
            except UnicodeDecodeError as exc:
                raise PsbtError("PSBT is not ASCII base64") from exc
        try:
            raw = PartiallySignedTransaction.from_base64(
                text.strip(), relaxed_sanity_checks=True
            )
        except (ValueError, SerializationError, binascii.Error) as exc:
            raise PsbtError(f"Invalid PSBT: {exc}") from exc
        return cls.from_bitcointx(raw)

    @classmethod
    def from_bitcointx(cls, raw: PartiallySignedTransaction) -> Psbt:
        tx = raw.unsigned_tx
        inputs = []
        for txin, inp in zip(tx.vin, raw.inputs):
            utxo: Optional[Utxo] = inp.utxo
            inputs.append(PsbtInput(
                prevout=OutPoint.from_bitcointx(txin.prevout),
                sequence=txin.nSequence,
                utxo=utxo,
                final_script_sig=bytes(inp.final_script_sig),
                final_script_witness=[bytes(item) for item in inp.final_script_witness.stack],
                redeem_script=bytes(inp.redeem_script),
                witness_script=bytes(inp.witness_script),
                has_partial_sigs=bool(inp.partial_sigs),
                has_key_paths=bool(inp.derivation_map),
            ))
        outputs = [TxOut.from_bitcointx(txout) for txout in tx.vout]
        keyed = {i for i, outp in enumerate(raw.outputs) if outp.derivation_map}
        return cls(
            version=tx.nVersion,
            lock_time=tx.nLockTime,
            inputs=inputs,
            outputs=outputs,
            outputs_with_key_paths=keyed,
            has_xpubs=bool(raw.xpubs),
        )

    def unsigned_tx(self) -> CTransaction:
        vin = [
            CTxIn(inp.prevout.to_bitcointx(), nSequence=inp.sequence)
            for inp in self.inputs
        ]
        vout = [txout.to_bitcointx() for txout in self.outputs]
        return CTransaction(vin, vout, nLockTime=self.lock_time, nVersion=self.version)

    def to_bitcointx(self) -> PartiallySignedTransaction:
        tx = self.unsigned_tx()
        psbt_inputs = []
        for index, inp in enumerate(self.inputs):
            psbt_inputs.append(PSBT_Input(
                unsigned_tx=tx,
                index=index,
                utxo=inp.utxo,
                redeem_script=CScript(inp.redeem_script),
                witness_script=CScript(inp.witness_script),
                final_script_sig=inp.final_script_sig,
                final_script_witness=CScriptWitness(inp.final_script_witness),
                relaxed_sanity_checks=True,
            ))
        return PartiallySignedTransaction(
            unsigned_tx=tx, inputs=psbt_inputs, relaxed_sanity_checks=True
        )

    def to_base64(self) -> str:
        # Signatures are never checked here, only carried.
        raw = self.to_bitcointx().serialize(relaxed_sanity_checks=True)
        return base64.b64encode(raw).decode("ascii")

    def __str__(self) -> str:
        return self.to_base64()

    def clone(self) -> Psbt:
        return copy.deepcopy(self)

    # ── Structure checks ─────────────────────────────────────────────

    def validate(self) -> None:
        """Reject duplicate outpoints and empty transactions."""
        if not self.inputs:
            raise PsbtError("PSBT has no inputs")
        if not self.outputs:
            raise PsbtError("PSBT has no outputs")
        seen: set[OutPoint] = set()
        for inp in self.inputs:
            if inp.prevout in seen:
                raise PsbtError(f"Duplicate input {inp.prevout}")
            seen.add(inp.prevout)

    def validate_input_utxos(self) -> None:
        for inp in self.inputs:
            inp.previous_txout()

    def outpoints(self) -> list[OutPoint]:
        return [inp.prevout for inp in self.inputs]

    # ── Amounts and weight ───────────────────────────────────────────

    def input_amount(self) -> int:
        return sum(inp.previous_txout().value for inp in self.inputs)

    def output_amount(self) -> int:
        return sum(txout.value for txout in self.outputs)

    def fee(self) -> int:
        fee = self.input_amount() - self.output_amount()
        if fee < 0:
            raise PsbtError(f"Negative fee: inputs pay less than outputs by {-fee} sats")
        return fee

    def extract_tx(self) -> CTransaction:
        """Transaction with final scriptSigs and witnesses, without signature checks."""
        tx = CMutableTransaction.from_instance(self.unsigned_tx())
        witnesses = []
        for index, inp in enumerate(self.inputs):
            tx.vin[index].scriptSig = CScript(inp.final_script_sig)
            witnesses.append(CTxInWitness(CScriptWitness(inp.final_script_witness)))
        tx.wit = CTxWitness(witnesses)
        return CTransaction.from_instance(tx)

    def extract_tx_bytes(self) -> bytes:
        return self.extract_tx().serialize()

    def actual_weight(self) -> int:
        tx = self.extract_tx()
        stripped = len(tx.serialize(include_witness=False))
        total = len(tx.serialize())
        return stripped * (WITNESS_SCALE_FACTOR - 1) + total

    def predicted_weight(self) -> int:
        """Weight once every input carries a maximal standard satisfaction."""
        base = 4 + 4 + _var_int_size(len(self.inputs)) + _var_int_size(len(self.outputs))
        weight = base * WITNESS_SCALE_FACTOR
        weight += sum(output_weight(txout) for txout in self.outputs)
        segwit = any(inp.is_segwit() for inp in self.inputs)
        if segwit:
            weight += 2  # marker and flag
        for inp in self.inputs:
            weight += inp.expected_weight()
            if segwit and not inp.is_segwit():
                weight += 1  # empty witness stack
        return weight

    def fee_rate(self) -> FeeRate:
        """Fee rate of the finalized transaction."""
        return fee_rate_from_fee(self.fee(), self.actual_weight())

    def predicted_fee_rate(self) -> FeeRate:
        return fee_rate_from_fee(self.fee(), self.predicted_weight())


def input_weight_sum(psbt: Psbt) -> int:
    return sum(inp.expected_weight() for inp in psbt.inputs)


def output_weight_sum(psbt: Psbt) -> int:
    return sum(output_weight(txout) for txout in psbt.outputs)
