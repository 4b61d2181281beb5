"""
payjoin-flow — Payjoin (BIP 78 / BIP 77) protocol logic for Bitcoin wallets.

Receiver: a checked pipeline turns the sender's original PSBT into a
jointly funded payjoin proposal. Sender: builds the request, then validates
the receiver's proposal against the original commitment. Version 2 sessions
exchange HPKE-encrypted messages through a directory behind an OHTTP relay.
No I/O happens here; the host sends every Request.
"""

__version__ = "0.1.0"

from .amounts import FeeRate
from .config import PayjoinConfig
from .errors import (
    BuildSenderError,
    FeeRateBoundError,
    OriginalPsbtRejected,
    PayjoinError,
    ProtocolError,
    ReceiverResponseError,
    SelectionError,
    ServerError,
    TransportError,
    ValidationError,
)
from .ohttp import OhttpKeys
from .params import Params
from .provisional import InputPair, PayjoinProposal, ProvisionalProposal
from .psbt import Psbt
from .receive import UncheckedProposal
from .send import Sender, SenderBuilder, V1Context, V2GetContext, V2PostContext
from .session import Receiver
from .types import Network, OutPoint, Request, TxOut
from .uri import PjUri

__all__ = [
    "FeeRate", "PayjoinConfig", "OhttpKeys", "Params", "Psbt", "PjUri",
    "Network", "OutPoint", "TxOut", "Request",
    "Receiver", "UncheckedProposal", "InputPair", "ProvisionalProposal", "PayjoinProposal",
    "SenderBuilder", "Sender", "V1Context", "V2PostContext", "V2GetContext",
    "PayjoinError", "ProtocolError", "OriginalPsbtRejected", "FeeRateBoundError",
    "SelectionError", "ServerError", "TransportError", "ValidationError",
    "ReceiverResponseError", "BuildSenderError",
]
