"""
Minimal BIP 21 payment URIs with payjoin parameters, and address helpers.

Parameters understood beyond `amount`:
    pj       payjoin endpoint (v1 URL or `<directory>/<mailbox id>` for v2)
    pjos     `0` disables output substitution
    ohttp    directory gateway key configuration (base64url)
    exp      session expiry as a unix timestamp
Everything else is preserved as-is.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Optional, Union
from urllib.parse import quote, unquote

import bitcointx
from bitcointx.core.script import CScript
from bitcointx.wallet import CCoinAddress, CCoinAddressError

from .amounts import btc_to_sats, format_btc
from .errors import UriError
from .ohttp import OhttpKeys, OhttpError
from .types import Network

_SCHEME = "bitcoin:"

_CHAIN_PARAMS = {
    Network.BITCOIN: "bitcoin",
    Network.TESTNET: "bitcoin/testnet",
    Network.SIGNET: "bitcoin/signet",
    Network.REGTEST: "bitcoin/regtest",
}


def address_to_script(address: str, network: Union[Network, str]) -> bytes:
    """scriptPubKey for `address`, which must belong to `network`."""
    network = Network(network)
    with bitcointx.ChainParams(_CHAIN_PARAMS[network]):
        try:
            return bytes(CCoinAddress(address).to_scriptPubKey())
        except (CCoinAddressError, ValueError) as exc:
            raise UriError(f"Invalid {network.value} address: {address}") from exc


def script_to_address(script: bytes, network: Union[Network, str]) -> str:
    network = Network(network)
    with bitcointx.ChainParams(_CHAIN_PARAMS[network]):
        return str(CCoinAddress.from_scriptPubKey(CScript(script)))


@dataclass
class PjUri:
    address: str
    pj: str
    amount: Optional[int] = None
    output_substitution_disabled: bool = False
    ohttp_keys: Optional[OhttpKeys] = None
    expiry: Optional[int] = None
    extras: dict[str, str] = field(default_factory=dict)

    @classmethod
    def parse(cls, text: str) -> PjUri:
        if not text.lower().startswith(_SCHEME):
            raise UriError("Not a bitcoin: URI")
        address, _, query = text[len(_SCHEME):].partition("?")
        if not address:
            raise UriError("URI has no address")

        params: dict[str, str] = {}
        for pair in filter(None, query.split("&")):
            key, _, value = pair.partition("=")
            key = unquote(key).lower()
            if key in params:
                raise UriError(f"Duplicate parameter: {key}")
            params[key] = unquote(value)

        pj = params.pop("pj", None)
        if not pj:
            raise UriError("URI does not support payjoin (no pj parameter)")
        if not (pj.startswith("https://") or pj.startswith("http://")):
            raise UriError(f"Unsupported payjoin endpoint: {pj}")

        amount = None
        if "amount" in params:
            try:
                amount = btc_to_sats(params.pop("amount"))
            except (ValueError, ArithmeticError) as exc:
                raise UriError(f"Invalid amount: {exc}") from exc

        ohttp_keys = None
        if "ohttp" in params:
            try:
                ohttp_keys = OhttpKeys.from_string(params.pop("ohttp"))
            except OhttpError as exc:
                raise UriError(f"Invalid ohttp parameter: {exc}") from exc

        expiry = None
        if "exp" in params:
            exp = params.pop("exp")
            if not exp.isdigit():
                raise UriError(f"Invalid exp parameter: {exp}")
            expiry = int(exp)

        return cls(
            address=address,
            pj=pj,
            amount=amount,
            output_substitution_disabled=params.pop("pjos", "1") == "0",
            ohttp_keys=ohttp_keys,
            expiry=expiry,
            extras=params,
        )

    def __str__(self) -> str:
        pairs = []
        if self.amount is not None:
            pairs.append(("amount", format_btc(self.amount)))
        pairs.extend(self.extras.items())
        pairs.append(("pj", self.pj))
        if self.output_substitution_disabled:
            pairs.append(("pjos", "0"))
        if self.ohttp_keys is not None:
            pairs.append(("ohttp", self.ohttp_keys.to_string()))
        if self.expiry is not None:
            pairs.append(("exp", str(self.expiry)))
        query = "&".join(f"{k}={quote(v, safe='/:')}" for k, v in pairs)
        return f"{_SCHEME}{self.address}?{query}"

    @property
    def is_expired(self) -> bool:
        return self.expiry is not None and time.time() > self.expiry

    @property
    def supports_v2(self) -> bool:
        return self.ohttp_keys is not None

    def script_pubkey(self, network: Optional[Union[Network, str]] = None) -> bytes:
        """Payee scriptPubKey. Without a network, any network's address is accepted."""
        if network is not None:
            return address_to_script(self.address, network)
        for candidate in Network:
            try:
                return address_to_script(self.address, candidate)
            except UriError:
                continue
        raise UriError(f"Invalid address: {self.address}")
