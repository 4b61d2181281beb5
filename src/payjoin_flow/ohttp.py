"""
Oblivious HTTP (RFC 9458) with binary HTTP (RFC 9292) messages.

Clients (sender and receiver) encapsulate a request to the directory's
gateway key and send it through a relay, so the directory never learns
their network address and the relay never sees the content. Encapsulated
requests are padded to a fixed size so that message lengths do not leak
the kind of payjoin message inside.

The gateway half (`OhttpGateway`) is the directory's side of the exchange.
"""

from __future__ import annotations

import base64
import logging
import os
import struct
from dataclasses import dataclass, field
from typing import Optional

import httpx

from . import hpke
from .errors import TransportError

logger = logging.getLogger(__name__)


ENCAPSULATED_MESSAGE_BYTES = 8192
OHTTP_REQUEST_CONTENT_TYPE = "message/ohttp-req"
OHTTP_RESPONSE_CONTENT_TYPE = "message/ohttp-res"

_REQUEST_LABEL = b"message/bhttp request"
_RESPONSE_LABEL = b"message/bhttp response"
_HEADER_LEN = 7
_RESPONSE_NONCE_LEN = max(hpke.N_K, hpke.N_N)

# Largest binary HTTP message that still fits one encapsulated request.
BHTTP_PADDED_BYTES = ENCAPSULATED_MESSAGE_BYTES - _HEADER_LEN - hpke.N_ENC - hpke.N_T


class OhttpError(TransportError):
    """Malformed OHTTP key configuration or encapsulated message."""
    pass


def b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(text: str) -> bytes:
    padded = text + "=" * (-len(text) % 4)
    try:
        return base64.urlsafe_b64decode(padded.encode("ascii"))
    except (ValueError, UnicodeEncodeError) as exc:
        raise OhttpError(f"Invalid base64url: {text!r}") from exc


# ── Key configuration ────────────────────────────────────────────────

@dataclass(frozen=True)
class OhttpKeys:
    """A gateway key configuration (RFC 9458 section 3)."""

    key_id: int
    public_key: bytes
    kem_id: int = hpke.KEM_X25519_HKDF_SHA256
    symmetric: tuple[tuple[int, int], ...] = (
        (hpke.KDF_HKDF_SHA256, hpke.AEAD_CHACHA20_POLY1305),
    )

    def __post_init__(self):
        if not 0 <= self.key_id <= 0xFF:
            raise OhttpError(f"Key id out of range: {self.key_id}")

    def encode(self) -> bytes:
        suites = b"".join(struct.pack(">HH", kdf, aead) for kdf, aead in self.symmetric)
        return (
            struct.pack(">BH", self.key_id, self.kem_id)
            + self.public_key
            + struct.pack(">H", len(suites))
            + suites
        )

    @classmethod
    def decode(cls, data: bytes) -> OhttpKeys:
        if len(data) < 3:
            raise OhttpError("Key configuration too short")
        key_id, kem_id = struct.unpack(">BH", data[:3])
        if kem_id != hpke.KEM_X25519_HKDF_SHA256:
            raise OhttpError(f"Unsupported KEM: 0x{kem_id:04x}")
        offset = 3 + hpke.N_PK
        if len(data) < offset + 2:
            raise OhttpError("Key configuration too short")
        public_key = data[3:offset]
        (suites_len,) = struct.unpack(">H", data[offset:offset + 2])
        suites_raw = data[offset + 2:offset + 2 + suites_len]
        if len(suites_raw) != suites_len or suites_len % 4:
            raise OhttpError("Malformed symmetric algorithm list")
        symmetric = tuple(
            struct.unpack(">HH", suites_raw[i:i + 4]) for i in range(0, suites_len, 4)
        )
        return cls(key_id=key_id, public_key=public_key, kem_id=kem_id, symmetric=symmetric)

    @classmethod
    def from_ohttp_keys_response(cls, data: bytes) -> OhttpKeys:
        """First usable configuration of an `application/ohttp-keys` body."""
        offset = 0
        while offset + 2 <= len(data):
            (length,) = struct.unpack(">H", data[offset:offset + 2])
            config = data[offset + 2:offset + 2 + length]
            offset += 2 + length
            try:
                return cls.decode(config)
            except OhttpError as exc:
                logger.debug("Skipping OHTTP key configuration: %s", exc)
        raise OhttpError("No supported OHTTP key configuration")

    def to_string(self) -> str:
        return b64url_encode(self.encode())

    @classmethod
    def from_string(cls, text: str) -> OhttpKeys:
        return cls.decode(b64url_decode(text))

    def supports(self, kdf_id: int, aead_id: int) -> bool:
        return (kdf_id, aead_id) in self.symmetric


# ── Binary HTTP ──────────────────────────────────────────────────────

def encode_varint(value: int) -> bytes:
    if value < 0x40:
        return struct.pack(">B", value)
    if value < 0x4000:
        return struct.pack(">H", value | 0x4000)
    if value < 0x40000000:
        return struct.pack(">I", value | 0x80000000)
    if value < 0x4000000000000000:
        return struct.pack(">Q", value | 0xC000000000000000)
    raise OhttpError(f"Varint too large: {value}")


class _Reader:
    def __init__(self, data: bytes):
        self.data = data
        self.pos = 0

    def at_end(self) -> bool:
        return self.pos >= len(self.data) or not any(self.data[self.pos:])

    def varint(self) -> int:
        if self.pos >= len(self.data):
            raise OhttpError("Truncated binary HTTP message")
        first = self.data[self.pos]
        length = 1 << (first >> 6)
        raw = self.data[self.pos:self.pos + length]
        if len(raw) != length:
            raise OhttpError("Truncated varint")
        self.pos += length
        value = raw[0] & 0x3F
        for b in raw[1:]:
            value = (value << 8) | b
        return value

    def chunk(self) -> bytes:
        length = self.varint()
        raw = self.data[self.pos:self.pos + length]
        if len(raw) != length:
            raise OhttpError("Truncated binary HTTP field")
        self.pos += length
        return raw

    def fields(self) -> list[tuple[bytes, bytes]]:
        section = _Reader(self.chunk())
        result = []
        while section.pos < len(section.data):
            result.append((section.chunk(), section.chunk()))
        return result


def _chunk(data: bytes) -> bytes:
    return encode_varint(len(data)) + data


def _fields(headers: list[tuple[bytes, bytes]]) -> bytes:
    return _chunk(b"".join(_chunk(name) + _chunk(value) for name, value in headers))


@dataclass
class BhttpRequest:
    method: str
    url: str
    headers: list[tuple[bytes, bytes]] = field(default_factory=list)
    content: bytes = b""

    def encode(self, pad_to: int = 0) -> bytes:
        parsed = httpx.URL(self.url)
        path = parsed.raw_path.decode("ascii") or "/"
        out = (
            encode_varint(0)
            + _chunk(self.method.encode("ascii"))
            + _chunk(parsed.scheme.encode("ascii"))
            + _chunk(parsed.netloc)
            + _chunk(path.encode("ascii"))
            + _fields(self.headers)
            + _chunk(self.content)
            + _chunk(b"")
        )
        if pad_to:
            if len(out) > pad_to:
                raise OhttpError(f"Request of {len(out)} bytes exceeds {pad_to}")
            out += b"\x00" * (pad_to - len(out))
        return out

    @classmethod
    def decode(cls, data: bytes) -> BhttpRequest:
        reader = _Reader(data)
        if reader.varint() != 0:
            raise OhttpError("Not a known-length binary HTTP request")
        method = reader.chunk().decode("ascii")
        scheme = reader.chunk().decode("ascii")
        authority = reader.chunk().decode("ascii")
        path = reader.chunk().decode("ascii")
        headers = reader.fields()
        content = b"" if reader.at_end() else reader.chunk()
        return cls(method=method, url=f"{scheme}://{authority}{path}", headers=headers, content=content)


@dataclass
class BhttpResponse:
    status: int
    headers: list[tuple[bytes, bytes]] = field(default_factory=list)
    content: bytes = b""

    @property
    def is_success(self) -> bool:
        return 200 <= self.status < 300

    def encode(self) -> bytes:
        return (
            encode_varint(1)
            + encode_varint(self.status)
            + _fields(self.headers)
            + _chunk(self.content)
            + _chunk(b"")
        )

    @classmethod
    def decode(cls, data: bytes) -> BhttpResponse:
        reader = _Reader(data)
        if reader.varint() != 1:
            raise OhttpError("Not a known-length binary HTTP response")
        status = reader.varint()
        while 100 <= status < 200:
            reader.fields()
            status = reader.varint()
        if not 200 <= status < 600:
            raise OhttpError(f"Invalid status code: {status}")
        headers = [] if reader.at_end() else reader.fields()
        content = b"" if reader.at_end() else reader.chunk()
        return cls(status=status, headers=headers, content=content)


# ── Client side ──────────────────────────────────────────────────────

def _request_header(keys: OhttpKeys) -> bytes:
    kdf_id, aead_id = hpke.KDF_HKDF_SHA256, hpke.AEAD_CHACHA20_POLY1305
    if not keys.supports(kdf_id, aead_id):
        raise OhttpError("Gateway does not support HKDF-SHA256/ChaCha20-Poly1305")
    return struct.pack(">BHHH", keys.key_id, keys.kem_id, kdf_id, aead_id)


class ClientResponse:
    """Decryption state for the response to one encapsulated request."""

    def __init__(self, enc: bytes, context: hpke.HpkeContext):
        self._enc = enc
        self._context = context

    def decapsulate(self, body: bytes) -> BhttpResponse:
        if len(body) < _RESPONSE_NONCE_LEN + hpke.N_T:
            raise OhttpError("Encapsulated response too short")
        response_nonce = body[:_RESPONSE_NONCE_LEN]
        aead_key, aead_nonce = _response_keys(self._context, self._enc, response_nonce)
        plaintext = _aead_open(aead_key, aead_nonce, body[_RESPONSE_NONCE_LEN:])
        return BhttpResponse.decode(plaintext)


def encapsulate(
    keys: OhttpKeys,
    method: str,
    target_url: str,
    body: Optional[bytes] = None,
    content_type: Optional[str] = None,
) -> tuple[bytes, ClientResponse]:
    """Encapsulate one request for the gateway. Returns (body, response context)."""
    headers = []
    if content_type:
        headers.append((b"content-type", content_type.encode("ascii")))
    request = BhttpRequest(method=method, url=target_url, headers=headers, content=body or b"")
    plaintext = request.encode(pad_to=BHTTP_PADDED_BYTES)

    header = _request_header(keys)
    info = _REQUEST_LABEL + b"\x00" + header
    enc, context = hpke.setup_sender(hpke.load_public_key(keys.public_key), info)
    ciphertext = context.seal(plaintext)
    logger.debug("Encapsulated %s %s", method, target_url)
    return header + enc + ciphertext, ClientResponse(enc, context)


def _response_keys(context: hpke.HpkeContext, enc: bytes, response_nonce: bytes) -> tuple[bytes, bytes]:
    secret = context.export(_RESPONSE_LABEL, _RESPONSE_NONCE_LEN)
    prk = hpke.hkdf_extract(enc + response_nonce, secret)
    return hpke.hkdf_expand(prk, b"key", hpke.N_K), hpke.hkdf_expand(prk, b"nonce", hpke.N_N)


def _aead_open(key: bytes, nonce: bytes, ciphertext: bytes) -> bytes:
    return hpke.HpkeContext(key, nonce, b"").open(ciphertext)


def _aead_seal(key: bytes, nonce: bytes, plaintext: bytes) -> bytes:
    return hpke.HpkeContext(key, nonce, b"").seal(plaintext)


# ── Gateway side ─────────────────────────────────────────────────────

class ServerResponse:
    """Encryption state for answering one decapsulated request."""

    def __init__(self, enc: bytes, context: hpke.HpkeContext):
        self._enc = enc
        self._context = context

    def encapsulate(self, response: BhttpResponse) -> bytes:
        response_nonce = os.urandom(_RESPONSE_NONCE_LEN)
        aead_key, aead_nonce = _response_keys(self._context, self._enc, response_nonce)
        return response_nonce + _aead_seal(aead_key, aead_nonce, response.encode())


class OhttpGateway:
    """Holds a gateway key pair and opens encapsulated requests."""

    def __init__(self, key_pair: hpke.HpkeKeyPair, key_id: int = 1):
        self.key_pair = key_pair
        self.keys = OhttpKeys(key_id=key_id, public_key=key_pair.public_bytes)

    @classmethod
    def generate(cls, key_id: int = 1) -> OhttpGateway:
        return cls(hpke.HpkeKeyPair.generate(), key_id)

    def decapsulate(self, body: bytes) -> tuple[BhttpRequest, ServerResponse]:
        if len(body) < _HEADER_LEN + hpke.N_ENC + hpke.N_T:
            raise OhttpError("Encapsulated request too short")
        header = body[:_HEADER_LEN]
        key_id, kem_id, kdf_id, aead_id = struct.unpack(">BHHH", header)
        if key_id != self.keys.key_id:
            raise OhttpError(f"Unknown key id: {key_id}")
        if kem_id != self.keys.kem_id or not self.keys.supports(kdf_id, aead_id):
            raise OhttpError("Unsupported OHTTP algorithms")
        enc = body[_HEADER_LEN:_HEADER_LEN + hpke.N_ENC]
        info = _REQUEST_LABEL + b"\x00" + header
        context = hpke.setup_receiver(enc, self.key_pair.secret_key, info)
        plaintext = context.open(body[_HEADER_LEN + hpke.N_ENC:])
        return BhttpRequest.decode(plaintext), ServerResponse(enc, context)
