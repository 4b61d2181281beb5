"""
Receiver session: one payjoin offer served through a directory mailbox.

The session key pair names the mailbox and decrypts what v2 senders post
to it. The receiver polls the mailbox through an OHTTP relay with
`extract_req` / `process_res` until an original PSBT arrives.
"""

from __future__ import annotations

import logging
import time
from typing import Optional, Union

from . import ohttp, v2
from .config import DEFAULT_EXPIRE_AFTER_SECONDS
from .errors import InvalidOriginalPsbtError, UnexpectedStatusError
from .hpke import HpkeKeyPair
from .receive import UncheckedProposal
from .types import Network, Request
from .uri import PjUri, address_to_script

logger = logging.getLogger(__name__)


def _split_body(text: str) -> tuple[str, str]:
    psbt_text, _, query = text.partition("\n")
    return psbt_text.strip(), query.strip()


class Receiver:
    """Immutable description of one payjoin session."""

    def __init__(self, context: v2.SessionContext):
        self._context = context

    @classmethod
    def new(
        cls,
        address: str,
        network: Union[Network, str],
        directory: str,
        ohttp_keys: ohttp.OhttpKeys,
        ohttp_relay: str,
        expire_after: Optional[int] = None,
        key_pair: Optional[HpkeKeyPair] = None,
    ) -> Receiver:
        """Start a session.

        `expire_after` is in seconds and defaults to one day. The address must
        belong to `network`.
        """
        network = Network(network)
        address_to_script(address, network)
        expire_after = DEFAULT_EXPIRE_AFTER_SECONDS if expire_after is None else expire_after
        context = v2.SessionContext(
            address=address,
            network=network,
            directory=str(directory).rstrip("/"),
            ohttp_keys=ohttp_keys,
            ohttp_relay=str(ohttp_relay),
            expiry=time.time() + expire_after,
            key_pair=key_pair or HpkeKeyPair.generate(),
        )
        logger.info("Receiver session %s created (expires in %ds)", v2.short_id(context.key_pair.public_key), expire_after)
        return cls(context)

    @property
    def context(self) -> v2.SessionContext:
        return self._context

    @property
    def expiry(self) -> float:
        return self._context.expiry

    @property
    def is_expired(self) -> bool:
        return self._context.is_expired

    def id(self) -> str:
        """Public session identifier (the mailbox id)."""
        return v2.short_id(self._context.key_pair.public_key)

    def pj_url(self) -> str:
        return self._context.mailbox_url

    def pj_uri(
        self,
        amount: Optional[int] = None,
        output_substitution_disabled: bool = False,
    ) -> PjUri:
        return PjUri(
            address=self._context.address,
            pj=self.pj_url(),
            amount=amount,
            output_substitution_disabled=output_substitution_disabled,
            ohttp_keys=self._context.ohttp_keys,
            expiry=int(self._context.expiry),
        )

    def extract_req(self) -> tuple[Request, ohttp.ClientResponse]:
        """Poll request for the mailbox. Extract a fresh one for every attempt."""
        body, ctx = ohttp.encapsulate(self._context.ohttp_keys, "GET", self.pj_url())
        request = Request(
            url=self._context.ohttp_relay,
            content_type=ohttp.OHTTP_REQUEST_CONTENT_TYPE,
            body=body,
        )
        return request, ctx

    def process_res(self, body: bytes, context: ohttp.ClientResponse) -> Optional[UncheckedProposal]:
        """Open the directory's answer. None means nothing has arrived yet."""
        response = context.decapsulate(body)
        if response.status == 202 or (response.is_success and not response.content):
            return None
        if not response.is_success:
            raise UnexpectedStatusError(response.status)

        content = response.content
        try:
            text = content.decode("utf-8")
        except UnicodeDecodeError:
            return self._from_message_a(content)
        # v1 senders post the plain request body to the mailbox.
        psbt_text, query = _split_body(text)
        logger.debug("Received v1 request through directory")
        return UncheckedProposal.from_parts(psbt_text, query, self._context.with_reply_key(None))

    def _from_message_a(self, message: bytes) -> UncheckedProposal:
        body, reply_key = v2.decrypt_message_a(message, self._context.key_pair.secret_key)
        try:
            text = body.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise InvalidOriginalPsbtError("Request body is not text") from exc
        psbt_text, query = _split_body(text)
        logger.debug("Received v2 request through directory")
        return UncheckedProposal.from_parts(psbt_text, query, self._context.with_reply_key(reply_key))

    def to_dict(self) -> dict:
        return {
            "id": self.id(),
            "address": self._context.address,
            "network": self._context.network.value,
            "directory": self._context.directory,
            "ohttp_relay": self._context.ohttp_relay,
            "pj_url": self.pj_url(),
            "expires_at": self._context.expiry,
            "expired": self.is_expired,
        }
