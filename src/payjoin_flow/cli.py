"""
payjoin-flow CLI — inspect payjoin artifacts and prepare requests.

Commands:
    payjoin-flow inspect    Summarize a base64 PSBT
    payjoin-flow uri        Parse a BIP 21 payjoin URI
    payjoin-flow session    Start a receiver session and print its URI
    payjoin-flow request    Build the sender's payjoin request for a PSBT
    payjoin-flow config     Show the effective configuration

Nothing here talks to the network: requests are written out for another
tool to send.
"""

from __future__ import annotations

import json
import logging
import sys
import time
from pathlib import Path
from typing import Optional

import click

from . import __version__
from .amounts import FeeRate, format_btc
from .config import PayjoinConfig
from .errors import PayjoinError
from .ohttp import OhttpKeys
from .psbt import Psbt, PsbtError
from .send import SenderBuilder
from .session import Receiver
from .types import Network
from .uri import PjUri

NETWORKS = [network.value for network in Network]


def _load_config(ctx: click.Context) -> PayjoinConfig:
    return ctx.obj["config"]


def _read_text(value: str) -> str:
    """Accept a literal value, `@path` to read a file, or `-` for stdin."""
    if value == "-":
        return sys.stdin.read().strip()
    if value.startswith("@"):
        return Path(value[1:]).read_text().strip()
    return value.strip()


def _fail(message: str):
    click.echo(f"❌ {message}", err=True)
    sys.exit(1)


# ── CLI ───────────────────────────────────────────────────────────

@click.group()
@click.version_option(version=__version__)
@click.option("--network", type=click.Choice(NETWORKS), default=None,
              help="Bitcoin network (env PAYJOIN_FLOW_NETWORK, default bitcoin)")
@click.option("--log-level", default=None,
              help="Logging level (env PAYJOIN_FLOW_LOG_LEVEL, default WARNING)")
@click.pass_context
def main(ctx: click.Context, network: Optional[str], log_level: Optional[str]):
    """payjoin-flow — BIP 78 / BIP 77 payjoin negotiation tooling."""
    try:
        config = PayjoinConfig.from_env(network=network, log_level=log_level.upper() if log_level else None)
    except ValueError as exc:
        _fail(f"Invalid configuration: {exc}")
    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["config"] = config


@main.command()
@click.pass_context
def config(ctx: click.Context):
    """Show the effective configuration."""
    click.echo(json.dumps(_load_config(ctx).to_dict(), indent=2))


@main.command()
@click.argument("psbt")
def inspect(psbt: str):
    """Summarize a PSBT (literal base64, @file or - for stdin)."""
    try:
        parsed = Psbt.from_base64(_read_text(psbt))
        parsed.validate()
    except PsbtError as exc:
        _fail(str(exc))

    click.echo(f"Version:  {parsed.version}")
    click.echo(f"Locktime: {parsed.lock_time}")
    click.echo(f"Inputs ({len(parsed.inputs)}):")
    for inp in parsed.inputs:
        if inp.has_utxo_info:
            txout = inp.previous_txout()
            detail = f"{txout.value} sats {inp.script_type()}"
        else:
            detail = "no utxo info"
        status = "finalized" if inp.is_finalized else "unsigned"
        click.echo(f"   {inp.prevout}  {detail}  {status}")
    click.echo(f"Outputs ({len(parsed.outputs)}):")
    for vout, txout in enumerate(parsed.outputs):
        click.echo(f"   {vout}: {txout.value} sats  {txout.script_pubkey.hex()}")
    try:
        click.echo(f"Fee:      {parsed.fee()} sats ({parsed.predicted_fee_rate()} predicted)")
    except PsbtError as exc:
        click.echo(f"Fee:      unknown ({exc})")


@main.command()
@click.argument("uri")
def uri(uri: str):
    """Parse a BIP 21 URI with payjoin parameters."""
    try:
        parsed = PjUri.parse(uri)
    except PayjoinError as exc:
        _fail(str(exc))

    click.echo(f"Address:  {parsed.address}")
    if parsed.amount is not None:
        click.echo(f"Amount:   {format_btc(parsed.amount)} BTC")
    click.echo(f"Endpoint: {parsed.pj}")
    click.echo(f"Version:  {'2' if parsed.supports_v2 else '1'}")
    click.echo(f"Output substitution: {'disabled' if parsed.output_substitution_disabled else 'allowed'}")
    if parsed.expiry is not None:
        status = "expired" if parsed.is_expired else "valid"
        click.echo(f"Expires:  {time.strftime('%Y-%m-%d %H:%M', time.localtime(parsed.expiry))} ({status})")


@main.command()
@click.option("--address", required=True, help="Receiving address")
@click.option("--directory", default=None, help="Payjoin directory URL (env PAYJOIN_FLOW_DIRECTORY)")
@click.option("--ohttp-relay", default=None, help="OHTTP relay URL (env PAYJOIN_FLOW_OHTTP_RELAY)")
@click.option("--ohttp-keys", required=True,
              help="Directory OHTTP key configuration (base64url, @file or - for stdin)")
@click.option("--amount", type=int, default=None, help="Requested amount in sats")
@click.option("--expire-after", type=int, default=None,
              help="Session lifetime in seconds (env PAYJOIN_FLOW_EXPIRE_AFTER, default 1 day)")
@click.option("--disable-output-substitution", is_flag=True, default=False,
              help="Advertise pjos=0")
@click.pass_context
def session(
    ctx: click.Context,
    address: str,
    directory: Optional[str],
    ohttp_relay: Optional[str],
    ohttp_keys: str,
    amount: Optional[int],
    expire_after: Optional[int],
    disable_output_substitution: bool,
):
    """Start a receiver session and print the URI to hand to the sender."""
    config = _load_config(ctx)
    directory = directory or config.directory
    ohttp_relay = ohttp_relay or config.ohttp_relay
    if not directory or not ohttp_relay:
        _fail("--directory and --ohttp-relay are required (or set them in the environment)")

    try:
        keys = OhttpKeys.from_string(_read_text(ohttp_keys))
        receiver = Receiver.new(
            address=address,
            network=config.network,
            directory=directory,
            ohttp_keys=keys,
            ohttp_relay=ohttp_relay,
            expire_after=expire_after or config.expire_after_seconds,
        )
    except PayjoinError as exc:
        _fail(f"Failed to start session: {exc}")

    pj_uri = receiver.pj_uri(amount=amount, output_substitution_disabled=disable_output_substitution)
    click.echo(f"✅ Session created: {receiver.id()}")
    click.echo(f"   Mailbox:  {receiver.pj_url()}")
    click.echo(f"   Expires:  {time.strftime('%Y-%m-%d %H:%M', time.localtime(receiver.expiry))}")
    click.echo(f"   URI:      {pj_uri}")


@main.command()
@click.option("--psbt", "psbt_text", required=True, help="Original PSBT (base64, @file or - for stdin)")
@click.option("--uri", "uri_text", required=True, help="Receiver's BIP 21 payjoin URI")
@click.option("--min-fee-rate", type=float, default=None,
              help="Minimum payjoin fee rate in sat/vB (env PAYJOIN_FLOW_MIN_FEE_RATE in sat/kwu)")
@click.option("--max-fee-contribution", type=int, default=None,
              help="Offer at most this many sats towards the receiver's input")
@click.option("--change-index", type=int, default=None, help="Output paying for the contribution")
@click.option("--clamp", is_flag=True, default=False,
              help="Lower the contribution to the change value instead of failing")
@click.option("--no-contribution", is_flag=True, default=False, help="Do not offer a fee contribution")
@click.option("--disable-output-substitution", is_flag=True, default=False,
              help="Forbid the receiver from replacing its output")
@click.option("--ohttp-relay", default=None, help="OHTTP relay URL for v2 receivers")
@click.option("--out", "out_path", type=click.Path(dir_okay=False, writable=True), default=None,
              help="Write the request body to this file")
@click.pass_context
def request(
    ctx: click.Context,
    psbt_text: str,
    uri_text: str,
    min_fee_rate: Optional[float],
    max_fee_contribution: Optional[int],
    change_index: Optional[int],
    clamp: bool,
    no_contribution: bool,
    disable_output_substitution: bool,
    ohttp_relay: Optional[str],
    out_path: Optional[str],
):
    """Build the payjoin request for an original PSBT."""
    config = _load_config(ctx)
    rate = FeeRate.from_sat_per_vb(min_fee_rate) if min_fee_rate is not None else config.min_fee_rate

    try:
        builder = SenderBuilder.from_psbt_and_uri(_read_text(psbt_text), uri_text)
        if disable_output_substitution:
            builder = builder.always_disable_output_substitution(True)
        if no_contribution:
            sender = builder.build_non_incentivizing(rate)
        elif max_fee_contribution is not None:
            sender = builder.build_with_additional_fee(max_fee_contribution, change_index, rate, clamp)
        else:
            sender = builder.build_recommended(rate)

        relay = ohttp_relay or config.ohttp_relay
        if sender.uri.supports_v2:
            if not relay:
                _fail("The receiver uses payjoin v2: --ohttp-relay is required")
            req, _ = sender.extract_v2(relay)
        else:
            req, _ = sender.extract_v1()
    except PayjoinError as exc:
        _fail(f"Failed to build request: {exc}")

    contribution = sender.fee_contribution
    click.echo(f"✅ Request ready: POST {req.url}")
    click.echo(f"   Content-Type: {req.content_type}")
    click.echo(f"   Body:         {len(req.body)} bytes")
    if contribution is not None:
        click.echo(f"   Fee offer:    up to {contribution.max_amount} sats from output {contribution.vout}")
    if out_path:
        Path(out_path).write_bytes(req.body)
        click.echo(f"   Saved to:     {out_path}")
    elif not sender.uri.supports_v2:
        click.echo(req.body.decode("ascii"))


if __name__ == "__main__":
    main()
