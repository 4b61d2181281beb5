"""Plain value types shared by the sender and receiver."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from bitcointx.core import COutPoint, CTxOut, b2lx, lx
from bitcointx.core.script import CScript


class Network(str, Enum):
    BITCOIN = "bitcoin"
    TESTNET = "testnet"
    SIGNET = "signet"
    REGTEST = "regtest"


@dataclass(frozen=True)
class OutPoint:
    """A transaction output reference. `txid` is the usual big-endian hex."""

    txid: str
    vout: int

    def __str__(self) -> str:
        return f"{self.txid}:{self.vout}"

    @classmethod
    def parse(cls, value: str) -> OutPoint:
        txid, sep, vout = value.rpartition(":")
        if not sep or len(txid) != 64 or not vout.isdigit():
            raise ValueError(f"Invalid outpoint: {value}")
        return cls(txid=txid.lower(), vout=int(vout))

    @classmethod
    def from_bitcointx(cls, outpoint: COutPoint) -> OutPoint:
        return cls(txid=b2lx(outpoint.hash), vout=outpoint.n)

    def to_bitcointx(self) -> COutPoint:
        return COutPoint(lx(self.txid), self.vout)


@dataclass(frozen=True)
class TxOut:
    value: int
    script_pubkey: bytes

    @classmethod
    def from_bitcointx(cls, txout: CTxOut) -> TxOut:
        return cls(value=txout.nValue, script_pubkey=bytes(txout.scriptPubKey))

    def to_bitcointx(self) -> CTxOut:
        return CTxOut(self.value, CScript(self.script_pubkey))


@dataclass
class Request:
    """An HTTP request for the host to send. The core never sends it."""

    url: str
    content_type: str
    body: bytes

    def to_dict(self) -> dict:
        return {
            "url": self.url,
            "content_type": self.content_type,
            "body_len": len(self.body),
        }
