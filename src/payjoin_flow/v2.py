"""
Store-and-forward payload encryption and directory addressing.

Message A (sender to receiver) carries the sender's reply public key and
the original PSBT with its query parameters; message B (receiver to
sender) carries the payjoin proposal. Both are HPKE-sealed over a
fixed-size plaintext so the directory sees uniform blobs.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from typing import Optional

import httpx
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey, X25519PublicKey

from . import hpke
from .ohttp import OhttpKeys, b64url_decode, b64url_encode
from .types import Network


PADDED_PLAINTEXT_BYTES = 7168
MESSAGE_BYTES = hpke.N_ENC + PADDED_PLAINTEXT_BYTES + hpke.N_T

_INFO_A = b"PjV2MsgA"
_INFO_B = b"PjV2MsgB"


class V2Error(hpke.HpkeError):
    """A v2 payload is malformed or does not fit the padded size."""
    pass


def pad(payload: bytes) -> bytes:
    if len(payload) > PADDED_PLAINTEXT_BYTES:
        raise V2Error(f"Payload of {len(payload)} bytes exceeds {PADDED_PLAINTEXT_BYTES}")
    return payload + b"\x00" * (PADDED_PLAINTEXT_BYTES - len(payload))


def unpad(plaintext: bytes) -> bytes:
    return plaintext.rstrip(b"\x00")


def encrypt_message_a(receiver_pk: X25519PublicKey, reply_pk: X25519PublicKey, body: bytes) -> bytes:
    plaintext = pad(hpke.public_bytes(reply_pk) + body)
    return hpke.seal(receiver_pk, _INFO_A, plaintext)


def decrypt_message_a(message: bytes, receiver_sk: X25519PrivateKey) -> tuple[bytes, X25519PublicKey]:
    """Returns (body, reply public key)."""
    if len(message) != MESSAGE_BYTES:
        raise V2Error(f"Message A must be {MESSAGE_BYTES} bytes, got {len(message)}")
    plaintext = hpke.open_(receiver_sk, _INFO_A, message)
    reply_pk = hpke.load_public_key(plaintext[:hpke.N_PK])
    return unpad(plaintext[hpke.N_PK:]), reply_pk


def encrypt_message_b(reply_pk: X25519PublicKey, body: bytes) -> bytes:
    return hpke.seal(reply_pk, _INFO_B, pad(body))


def decrypt_message_b(message: bytes, reply_sk: X25519PrivateKey) -> bytes:
    if len(message) != MESSAGE_BYTES:
        raise V2Error(f"Message B must be {MESSAGE_BYTES} bytes, got {len(message)}")
    return unpad(hpke.open_(reply_sk, _INFO_B, message))


# ── Directory addressing ─────────────────────────────────────────────

def short_id(public_key: X25519PublicKey) -> str:
    """Mailbox identifier: unpadded base64url of the raw public key."""
    return b64url_encode(hpke.public_bytes(public_key))


def subdir_url(directory: str, public_key: X25519PublicKey) -> str:
    base = str(directory).rstrip("/")
    return f"{base}/{short_id(public_key)}"


def split_subdir_url(url: str) -> tuple[str, X25519PublicKey]:
    """Split `<directory>/<id>` into the directory URL and the mailbox key."""
    parsed = httpx.URL(url)
    path = parsed.path.rstrip("/")
    directory_path, _, mailbox = path.rpartition("/")
    if not mailbox:
        raise V2Error(f"No mailbox id in {url}")
    public_key = hpke.load_public_key(b64url_decode(mailbox))
    directory = f"{parsed.scheme}://{parsed.netloc.decode('ascii')}{directory_path}"
    return directory, public_key


@dataclass(frozen=True)
class SessionContext:
    """What a receiver session needs to talk to its directory mailbox.

    `reply_key` is set once a v2 sender has told us where to send the
    payjoin proposal.
    """

    address: str
    network: Network
    directory: str
    ohttp_keys: OhttpKeys
    ohttp_relay: str
    expiry: float
    key_pair: hpke.HpkeKeyPair = field(repr=False)
    reply_key: Optional[X25519PublicKey] = field(default=None, repr=False)

    @property
    def mailbox_url(self) -> str:
        return subdir_url(self.directory, self.key_pair.public_key)

    @property
    def is_expired(self) -> bool:
        return time.time() > self.expiry

    def with_reply_key(self, reply_key: Optional[X25519PublicKey]) -> SessionContext:
        return replace(self, reply_key=reply_key)
