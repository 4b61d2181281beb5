"""Shared PSBT builders for payjoin tests.

Transactions use P2WPKH scripts with dummy witnesses whose sizes match a
real signature and pubkey, so weights and fee rates come out exact.
"""

import pytest
from bitcointx.core import CTxOut
from bitcointx.core.script import CScript

from payjoin_flow.psbt import Psbt, PsbtInput
from payjoin_flow.types import OutPoint, TxOut
from payjoin_flow.uri import script_to_address


SEQUENCE = 0xFFFFFFFD

SENDER_SPK = b"\x00\x14" + b"\x11" * 20
RECEIVER_SPK = b"\x00\x14" + b"\x22" * 20
SENDER_CHANGE_SPK = b"\x00\x14" + b"\x33" * 20
RECEIVER_UTXO_SPK = b"\x00\x14" + b"\x44" * 20
P2PKH_SPK = b"\x76\xa9\x14" + b"\x55" * 20 + b"\x88\xac"

DUMMY_WITNESS = [b"\x30" + b"\x01" * 71, b"\x02" + b"\x03" * 32]

PAYMENT = 50_000
CHANGE = 49_000
# version, counts, one input, two 22-byte-script outputs, locktime, witness
ORIGINAL_WEIGHT = 562


def outpoint(n: int, vout: int = 0) -> OutPoint:
    return OutPoint(txid=f"{n:064x}", vout=vout)


def make_input(op: OutPoint, value: int, spk: bytes = SENDER_SPK, signed: bool = True) -> PsbtInput:
    inp = PsbtInput(prevout=op, sequence=SEQUENCE, utxo=CTxOut(value, CScript(spk)))
    if signed:
        if spk == P2PKH_SPK:
            inp.final_script_sig = b"\x48" + b"\x30" * 72 + b"\x21" + b"\x02" * 33
        else:
            inp.final_script_witness = list(DUMMY_WITNESS)
    return inp


def make_psbt(inputs, outputs, version: int = 2, lock_time: int = 0) -> Psbt:
    return Psbt(
        version=version,
        lock_time=lock_time,
        inputs=list(inputs),
        outputs=[TxOut(value, spk) for value, spk in outputs],
    )


def original_with_fee(fee: int, change: int = CHANGE) -> Psbt:
    """One sender input paying PAYMENT to the receiver plus `change`."""
    return make_psbt(
        [make_input(outpoint(1), PAYMENT + change + fee)],
        [(PAYMENT, RECEIVER_SPK), (change, SENDER_CHANGE_SPK)],
    )


def sign_inputs(owned):
    """A process_psbt callback that finalizes the inputs in `owned`."""
    owned = set(owned)

    def process_psbt(psbt_text: str) -> str:
        psbt = Psbt.from_base64(psbt_text)
        for inp in psbt.inputs:
            if inp.prevout in owned:
                inp.final_script_witness = list(DUMMY_WITNESS)
        return psbt.to_base64()

    return process_psbt


@pytest.fixture
def original() -> Psbt:
    """100k sat input, 1000 sat fee."""
    return original_with_fee(1_000)


@pytest.fixture
def receiver_address() -> str:
    return script_to_address(RECEIVER_SPK, "bitcoin")
