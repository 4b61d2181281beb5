"""
HPKE base mode (RFC 9180) for a single cipher suite:
DHKEM(X25519, HKDF-SHA256), HKDF-SHA256, ChaCha20-Poly1305.

Only what OHTTP and the v2 payload encryption need is implemented:
single-shot seal/open plus the secret exporter.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass, field

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, hmac, serialization
from cryptography.hazmat.primitives.asymmetric.x25519 import (
    X25519PrivateKey,
    X25519PublicKey,
)
from cryptography.hazmat.primitives.ciphers.aead import ChaCha20Poly1305
from cryptography.hazmat.primitives.kdf.hkdf import HKDFExpand

from .errors import TransportError


KEM_X25519_HKDF_SHA256 = 0x0020
KDF_HKDF_SHA256 = 0x0001
AEAD_CHACHA20_POLY1305 = 0x0003

N_SECRET = 32
N_ENC = 32
N_PK = 32
N_K = 32
N_N = 12
N_H = 32
N_T = 16

MODE_BASE = 0x00

_VERSION_LABEL = b"HPKE-v1"
_KEM_SUITE_ID = b"KEM" + struct.pack(">H", KEM_X25519_HKDF_SHA256)
_HPKE_SUITE_ID = b"HPKE" + struct.pack(
    ">HHH", KEM_X25519_HKDF_SHA256, KDF_HKDF_SHA256, AEAD_CHACHA20_POLY1305
)


class HpkeError(TransportError):
    """Encryption, decryption or key decoding failed."""
    pass


# ── Keys ─────────────────────────────────────────────────────────────

def public_bytes(key: X25519PublicKey) -> bytes:
    return key.public_bytes(serialization.Encoding.Raw, serialization.PublicFormat.Raw)


def private_bytes(key: X25519PrivateKey) -> bytes:
    return key.private_bytes(
        serialization.Encoding.Raw,
        serialization.PrivateFormat.Raw,
        serialization.NoEncryption(),
    )


def load_public_key(data: bytes) -> X25519PublicKey:
    if len(data) != N_PK:
        raise HpkeError(f"Public key must be {N_PK} bytes, got {len(data)}")
    return X25519PublicKey.from_public_bytes(data)


def load_private_key(data: bytes) -> X25519PrivateKey:
    if len(data) != N_SECRET:
        raise HpkeError(f"Private key must be {N_SECRET} bytes, got {len(data)}")
    return X25519PrivateKey.from_private_bytes(data)


@dataclass(frozen=True)
class HpkeKeyPair:
    secret_key: X25519PrivateKey
    public_key: X25519PublicKey = field(init=False)

    def __post_init__(self):
        object.__setattr__(self, "public_key", self.secret_key.public_key())

    @classmethod
    def generate(cls) -> HpkeKeyPair:
        return cls(X25519PrivateKey.generate())

    @classmethod
    def from_secret_bytes(cls, data: bytes) -> HpkeKeyPair:
        return cls(load_private_key(data))

    @property
    def public_bytes(self) -> bytes:
        return public_bytes(self.public_key)

    @property
    def secret_bytes(self) -> bytes:
        return private_bytes(self.secret_key)

    def __repr__(self) -> str:
        return f"HpkeKeyPair(public={self.public_bytes.hex()})"


# ── KDF ──────────────────────────────────────────────────────────────

def hkdf_extract(salt: bytes, ikm: bytes) -> bytes:
    h = hmac.HMAC(salt or b"\x00" * N_H, hashes.SHA256())
    h.update(ikm)
    return h.finalize()


def hkdf_expand(prk: bytes, info: bytes, length: int) -> bytes:
    return HKDFExpand(algorithm=hashes.SHA256(), length=length, info=info).derive(prk)


def _labeled_extract(suite_id: bytes, salt: bytes, label: bytes, ikm: bytes) -> bytes:
    return hkdf_extract(salt, _VERSION_LABEL + suite_id + label + ikm)


def _labeled_expand(suite_id: bytes, prk: bytes, label: bytes, info: bytes, length: int) -> bytes:
    labeled_info = struct.pack(">H", length) + _VERSION_LABEL + suite_id + label + info
    return hkdf_expand(prk, labeled_info, length)


# ── KEM ──────────────────────────────────────────────────────────────

def _extract_and_expand(dh: bytes, kem_context: bytes) -> bytes:
    eae_prk = _labeled_extract(_KEM_SUITE_ID, b"", b"eae_prk", dh)
    return _labeled_expand(_KEM_SUITE_ID, eae_prk, b"shared_secret", kem_context, N_SECRET)


def _encap(pk_r: X25519PublicKey) -> tuple[bytes, bytes]:
    sk_e = X25519PrivateKey.generate()
    dh = sk_e.exchange(pk_r)
    enc = public_bytes(sk_e.public_key())
    kem_context = enc + public_bytes(pk_r)
    return _extract_and_expand(dh, kem_context), enc


def _decap(enc: bytes, sk_r: X25519PrivateKey) -> bytes:
    pk_e = load_public_key(enc)
    try:
        dh = sk_r.exchange(pk_e)
    except ValueError as exc:
        # all-zero shared secret
        raise HpkeError("Invalid encapsulated key") from exc
    kem_context = enc + public_bytes(sk_r.public_key())
    return _extract_and_expand(dh, kem_context)


# ── Context ──────────────────────────────────────────────────────────

class HpkeContext:
    """Encryption context produced by the key schedule.

    A context seals or opens messages in sequence; each call advances the
    nonce counter.
    """

    def __init__(self, key: bytes, base_nonce: bytes, exporter_secret: bytes):
        self._aead = ChaCha20Poly1305(key)
        self._base_nonce = base_nonce
        self._exporter_secret = exporter_secret
        self._seq = 0

    def _next_nonce(self) -> bytes:
        seq = self._seq.to_bytes(N_N, "big")
        self._seq += 1
        return bytes(a ^ b for a, b in zip(self._base_nonce, seq))

    def seal(self, plaintext: bytes, aad: bytes = b"") -> bytes:
        return self._aead.encrypt(self._next_nonce(), plaintext, aad)

    def open(self, ciphertext: bytes, aad: bytes = b"") -> bytes:
        try:
            return self._aead.decrypt(self._next_nonce(), ciphertext, aad)
        except InvalidTag as exc:
            raise HpkeError("HPKE decryption failed") from exc

    def export(self, exporter_context: bytes, length: int) -> bytes:
        return _labeled_expand(_HPKE_SUITE_ID, self._exporter_secret, b"sec", exporter_context, length)


def _key_schedule(shared_secret: bytes, info: bytes) -> HpkeContext:
    psk_id_hash = _labeled_extract(_HPKE_SUITE_ID, b"", b"psk_id_hash", b"")
    info_hash = _labeled_extract(_HPKE_SUITE_ID, b"", b"info_hash", info)
    context = bytes([MODE_BASE]) + psk_id_hash + info_hash
    secret = _labeled_extract(_HPKE_SUITE_ID, shared_secret, b"secret", b"")
    return HpkeContext(
        key=_labeled_expand(_HPKE_SUITE_ID, secret, b"key", context, N_K),
        base_nonce=_labeled_expand(_HPKE_SUITE_ID, secret, b"base_nonce", context, N_N),
        exporter_secret=_labeled_expand(_HPKE_SUITE_ID, secret, b"exp", context, N_H),
    )


def setup_sender(pk_r: X25519PublicKey, info: bytes) -> tuple[bytes, HpkeContext]:
    """Returns (enc, context) for encrypting to `pk_r`."""
    shared_secret, enc = _encap(pk_r)
    return enc, _key_schedule(shared_secret, info)


def setup_receiver(enc: bytes, sk_r: X25519PrivateKey, info: bytes) -> HpkeContext:
    return _key_schedule(_decap(enc, sk_r), info)


def seal(pk_r: X25519PublicKey, info: bytes, plaintext: bytes, aad: bytes = b"") -> bytes:
    """Single-shot encryption. Returns enc || ciphertext."""
    enc, ctx = setup_sender(pk_r, info)
    return enc + ctx.seal(plaintext, aad)


def open_(sk_r: X25519PrivateKey, info: bytes, message: bytes, aad: bytes = b"") -> bytes:
    """Single-shot decryption of enc || ciphertext."""
    if len(message) < N_ENC + N_T:
        raise HpkeError("HPKE message too short")
    ctx = setup_receiver(message[:N_ENC], sk_r, info)
    return ctx.open(message[N_ENC:], aad)
