"""Tests for the sender: building requests and validating proposals."""

import pytest

from conftest import (
    CHANGE,
    P2PKH_SPK,
    PAYMENT,
    RECEIVER_SPK,
    RECEIVER_UTXO_SPK,
    SENDER_CHANGE_SPK,
    make_input,
    make_psbt,
    original_with_fee,
    outpoint,
    sign_inputs,
)
from payjoin_flow import ohttp, v2
from payjoin_flow.amounts import FeeRate, ZERO_FEE_RATE
from payjoin_flow.errors import (
    BuildSenderError,
    ReceiverResponseError,
    SessionExpiredError,
    UnexpectedStatusError,
    UriError,
    ValidationError,
)
from payjoin_flow.params import AdditionalFeeContribution, Params
from payjoin_flow.provisional import InputPair
from payjoin_flow.psbt import Psbt
from payjoin_flow.receive import UncheckedProposal
from payjoin_flow.send import PsbtContext, SenderBuilder, V1Context, V2PostContext
from payjoin_flow.session import Receiver
from payjoin_flow.types import TxOut


PJ = "https://receiver.example/pj"
RELAY = "https://relay.example"
NEW_SPK = b"\x00\x14" + b"\x66" * 20
ONE_SAT_PER_VB = FeeRate.from_sat_per_vb(1)


def _uri(address, **extra):
    query = "&".join([f"pj={PJ}"] + [f"{k}={v}" for k, v in extra.items()])
    return f"bitcoin:{address}?{query}"


def _negotiate(unchecked):
    """Run the receiver pipeline, contributing one 30k input."""
    return (
        unchecked.assume_interactive_receiver()
        .check_inputs_not_owned(lambda script: False)
        .check_no_mixed_input_scripts()
        .check_no_inputs_seen_before(lambda outpoint: False)
        .identify_receiver_outputs(lambda script: script == RECEIVER_SPK)
        .commit_outputs()
        .contribute_witness_inputs([InputPair(outpoint(50), TxOut(30_000, RECEIVER_UTXO_SPK))])
        .commit_inputs()
        .finalize_proposal(sign_inputs([outpoint(50)]), min_feerate_sat_per_vb=1, max_feerate_sat_per_vb=1000)
    )


def _context(original, contribution=None, disabled=False, min_fee_rate=ZERO_FEE_RATE, version=1):
    return PsbtContext(
        original=original,
        payee=RECEIVER_SPK,
        disable_output_substitution=disabled,
        fee_contribution=contribution,
        min_fee_rate=min_fee_rate,
        version=version,
    )


def _proposal(receiver=(PAYMENT + 30_000, RECEIVER_SPK), change=CHANGE, receiver_input=None, **kwargs):
    """Payjoin of the 1000-sat-fee original with one 30k receiver input."""
    if receiver_input is None:
        receiver_input = make_input(outpoint(50), 30_000, RECEIVER_UTXO_SPK)
    return make_psbt(
        [make_input(outpoint(1), PAYMENT + CHANGE + 1_000, signed=False), receiver_input],
        [receiver, (change, SENDER_CHANGE_SPK)],
        **kwargs,
    )


class TestSenderBuilder:
    def test_recommended_contribution(self, original, receiver_address):
        sender = SenderBuilder.from_psbt_and_uri(original, _uri(receiver_address)).build_recommended(ONE_SAT_PER_VB)
        assert sender.fee_contribution == AdditionalFeeContribution(max_amount=68, vout=1)

    def test_recommended_accepts_sat_per_kwu(self, original, receiver_address):
        builder = SenderBuilder.from_psbt_and_uri(original, _uri(receiver_address))
        assert builder.build_recommended(250).fee_contribution == AdditionalFeeContribution(68, 1)

    def test_recommended_clamps_to_change(self, receiver_address):
        original = original_with_fee(1_000, change=50)
        sender = SenderBuilder.from_psbt_and_uri(original, _uri(receiver_address)).build_recommended(ONE_SAT_PER_VB)
        assert sender.fee_contribution == AdditionalFeeContribution(max_amount=50, vout=1)

    def test_recommended_uses_first_change_of_many(self, receiver_address):
        original = make_psbt(
            [make_input(outpoint(1), 100_000)],
            [(PAYMENT, RECEIVER_SPK), (20_000, SENDER_CHANGE_SPK), (29_000, NEW_SPK)],
        )
        sender = SenderBuilder.from_psbt_and_uri(original, _uri(receiver_address)).build_recommended(ONE_SAT_PER_VB)
        assert sender.fee_contribution == AdditionalFeeContribution(max_amount=68, vout=1)

    def test_recommended_skips_payee_in_first_position(self, receiver_address):
        original = make_psbt(
            [make_input(outpoint(1), 100_000)],
            [(20_000, SENDER_CHANGE_SPK), (PAYMENT, RECEIVER_SPK), (29_000, NEW_SPK)],
        )
        sender = SenderBuilder.from_psbt_and_uri(original, _uri(receiver_address)).build_recommended(ONE_SAT_PER_VB)
        assert sender.fee_contribution == AdditionalFeeContribution(max_amount=68, vout=0)

    def test_recommended_without_change(self, receiver_address):
        original = make_psbt([make_input(outpoint(1), PAYMENT + 1_000)], [(PAYMENT, RECEIVER_SPK)])
        sender = SenderBuilder.from_psbt_and_uri(original, _uri(receiver_address)).build_recommended(ONE_SAT_PER_VB)
        assert sender.fee_contribution is None

    def test_clamp_fee_contribution(self, receiver_address):
        original = original_with_fee(1_000, change=500)
        builder = SenderBuilder.from_psbt_and_uri(original, _uri(receiver_address))
        sender = builder.build_with_additional_fee(1_000, None, ONE_SAT_PER_VB, clamp_fee_contribution=True)
        assert sender.fee_contribution == AdditionalFeeContribution(max_amount=500, vout=1)

    def test_unclamped_contribution_too_large(self, receiver_address):
        original = original_with_fee(1_000, change=500)
        builder = SenderBuilder.from_psbt_and_uri(original, _uri(receiver_address))
        with pytest.raises(BuildSenderError, match="cannot cover"):
            builder.build_with_additional_fee(1_000, None, ONE_SAT_PER_VB)

    def test_ambiguous_change(self, receiver_address):
        original = make_psbt(
            [make_input(outpoint(1), 100_000)],
            [(PAYMENT, RECEIVER_SPK), (20_000, SENDER_CHANGE_SPK), (29_000, NEW_SPK)],
        )
        builder = SenderBuilder.from_psbt_and_uri(original, _uri(receiver_address))
        with pytest.raises(BuildSenderError, match="Ambiguous"):
            builder.build_with_additional_fee(100, None, ONE_SAT_PER_VB)
        sender = builder.build_with_additional_fee(100, 2, ONE_SAT_PER_VB)
        assert sender.fee_contribution == AdditionalFeeContribution(max_amount=100, vout=2)

    def test_change_index_checks(self, original, receiver_address):
        builder = SenderBuilder.from_psbt_and_uri(original, _uri(receiver_address))
        with pytest.raises(BuildSenderError, match="out of bounds"):
            builder.build_with_additional_fee(100, 2, ONE_SAT_PER_VB)
        with pytest.raises(BuildSenderError, match="payee"):
            builder.build_with_additional_fee(100, 0, ONE_SAT_PER_VB)

    def test_no_change_output(self, receiver_address):
        original = make_psbt([make_input(outpoint(1), 51_000)], [(PAYMENT, RECEIVER_SPK)])
        builder = SenderBuilder.from_psbt_and_uri(original, _uri(receiver_address))
        assert builder.build_with_additional_fee(100, None, ONE_SAT_PER_VB).fee_contribution is None

    def test_uri_address_not_paid(self, original, receiver_address):
        other = original_with_fee(1_000)
        other.outputs[0] = TxOut(PAYMENT, NEW_SPK)
        with pytest.raises(BuildSenderError, match="does not pay"):
            SenderBuilder.from_psbt_and_uri(other, _uri(receiver_address))

    def test_uri_amount_mismatch(self, original, receiver_address):
        with pytest.raises(BuildSenderError, match="does not match"):
            SenderBuilder.from_psbt_and_uri(original, _uri(receiver_address, amount="0.001"))

    def test_uri_amount_match(self, original, receiver_address):
        builder = SenderBuilder.from_psbt_and_uri(original.to_base64(), _uri(receiver_address, amount="0.0005"))
        assert builder.build_non_incentivizing(ONE_SAT_PER_VB).fee_contribution is None

    def test_payee_paid_twice(self, receiver_address):
        original = make_psbt(
            [make_input(outpoint(1), 100_000)],
            [(PAYMENT, RECEIVER_SPK), (PAYMENT - 1_000, RECEIVER_SPK)],
        )
        with pytest.raises(BuildSenderError, match="more than once"):
            SenderBuilder.from_psbt_and_uri(original, _uri(receiver_address))

    def test_invalid_psbt(self, receiver_address):
        with pytest.raises(BuildSenderError, match="Invalid original PSBT"):
            SenderBuilder.from_psbt_and_uri("bm90IGEgcHNidA==", _uri(receiver_address))

    def test_output_substitution(self, original, receiver_address):
        builder = SenderBuilder.from_psbt_and_uri(original, _uri(receiver_address))
        assert not builder.build_non_incentivizing(ZERO_FEE_RATE).params(1).disable_output_substitution
        disabled = builder.always_disable_output_substitution().build_non_incentivizing(ZERO_FEE_RATE)
        assert disabled.params(1).disable_output_substitution

    def test_uri_pjos_cannot_be_overridden(self, original, receiver_address):
        builder = SenderBuilder.from_psbt_and_uri(original, _uri(receiver_address, pjos="0"))
        sender = builder.always_disable_output_substitution(False).build_non_incentivizing(ZERO_FEE_RATE)
        assert sender.params(1).disable_output_substitution


class TestV1Flow:
    def test_extract_v1(self, original, receiver_address):
        sender = SenderBuilder.from_psbt_and_uri(original, _uri(receiver_address)).build_recommended(ONE_SAT_PER_VB)
        request, context = sender.extract_v1()
        assert isinstance(context, V1Context)
        assert request.url.startswith(PJ + "?")
        assert request.content_type == "text/plain"
        assert request.body == original.to_base64().encode("ascii")
        params = Params.from_query(request.url.split("?", 1)[1])
        assert params == Params(
            v=1,
            additional_fee_contribution=AdditionalFeeContribution(68, 1),
            min_fee_rate=ONE_SAT_PER_VB,
        )

    def test_end_to_end(self, original, receiver_address):
        sender = SenderBuilder.from_psbt_and_uri(original, _uri(receiver_address)).build_recommended(ONE_SAT_PER_VB)
        request, context = sender.extract_v1()

        unchecked = UncheckedProposal.from_request(
            request.body,
            request.url.split("?", 1)[1],
            {"Content-Type": request.content_type, "Content-Length": str(len(request.body))},
        )
        assert unchecked.params.additional_fee_contribution == AdditionalFeeContribution(68, 1)
        payjoin = _negotiate(unchecked)

        result = Psbt.from_base64(context.process_response(payjoin.extract_v1_req().encode("ascii")))
        assert result.outputs == [
            TxOut(PAYMENT + 30_000, RECEIVER_SPK),
            TxOut(CHANGE - 68, SENDER_CHANGE_SPK),
        ]
        assert result.fee() == 1_068
        assert {inp.prevout for inp in result.inputs} == {outpoint(1), outpoint(50)}
        assert all(inp.has_utxo_info for inp in result.inputs)

    def test_receiver_error(self, original):
        context = V1Context(_context(original))
        with pytest.raises(ReceiverResponseError) as exc_info:
            context.process_response(b'{"errorCode": "unavailable", "message": "try later"}')
        assert exc_info.value.error_code == "unavailable"
        assert exc_info.value.is_well_known

    def test_version_unsupported_lists_versions(self, original):
        context = V1Context(_context(original))
        with pytest.raises(ReceiverResponseError) as exc_info:
            context.process_response(
                b'{"errorCode": "version-unsupported", "supported": [2], "message": "v2 only"}'
            )
        assert exc_info.value.supported_versions == [2]

    def test_unrecognized_json(self, original):
        context = V1Context(_context(original))
        with pytest.raises(ValidationError, match="neither"):
            context.process_response(b"{not json")
        with pytest.raises(ValidationError, match="unrecognized"):
            context.process_response(b'{"error": "x"}')

    def test_not_a_psbt(self, original):
        with pytest.raises(ValidationError, match="invalid PSBT"):
            V1Context(_context(original)).process_response(b"hello")

    def test_not_text(self, original):
        with pytest.raises(ValidationError, match="not text"):
            V1Context(_context(original)).process_response(b"\xff\xfe")


class TestProposalValidation:
    def test_valid_proposal(self, original):
        result = _context(original).process_proposal(_proposal())
        assert result.fee() == 1_000

    def test_receiver_may_add_output(self, original):
        proposal = _proposal()
        proposal.outputs = [
            TxOut(PAYMENT + 25_000, RECEIVER_SPK),
            TxOut(5_000, NEW_SPK),
            TxOut(CHANGE, SENDER_CHANGE_SPK),
        ]
        _context(original).process_proposal(proposal)

    def test_substitution_allowed(self, original):
        _context(original).process_proposal(_proposal(receiver=(PAYMENT + 30_000, NEW_SPK)))

    def test_substitution_disabled(self, original):
        with pytest.raises(ValidationError, match="Output substitution is disabled"):
            _context(original, disabled=True).process_proposal(_proposal(receiver=(PAYMENT + 30_000, NEW_SPK)))

    def test_version_changed(self, original):
        with pytest.raises(ValidationError, match="versions"):
            _context(original).process_proposal(_proposal(version=1))

    def test_lock_time_changed(self, original):
        with pytest.raises(ValidationError, match="Lock times"):
            _context(original).process_proposal(_proposal(lock_time=800_000))

    def test_xpubs(self, original):
        proposal = _proposal()
        proposal.has_xpubs = True
        with pytest.raises(ValidationError, match="xpubs"):
            _context(original).process_proposal(proposal)

    def test_input_key_paths(self, original):
        proposal = _proposal()
        proposal.inputs[1].has_key_paths = True
        with pytest.raises(ValidationError, match="key paths"):
            _context(original).process_proposal(proposal)

    def test_output_key_paths(self, original):
        proposal = _proposal()
        proposal.outputs_with_key_paths = {0}
        with pytest.raises(ValidationError, match="key paths"):
            _context(original).process_proposal(proposal)

    def test_sender_input_signed(self, original):
        proposal = _proposal()
        proposal.inputs[0] = make_input(outpoint(1), PAYMENT + CHANGE + 1_000)
        with pytest.raises(ValidationError, match="final witness"):
            _context(original).process_proposal(proposal)

    def test_receiver_input_unsigned(self, original):
        receiver_input = make_input(outpoint(50), 30_000, RECEIVER_UTXO_SPK, signed=False)
        with pytest.raises(ValidationError, match="not finalized"):
            _context(original).process_proposal(_proposal(receiver_input=receiver_input))

    def test_receiver_input_sequence(self, original):
        receiver_input = make_input(outpoint(50), 30_000, RECEIVER_UTXO_SPK)
        receiver_input.sequence = 0xFFFFFFFE
        with pytest.raises(ValidationError, match="Mixed input sequences"):
            _context(original).process_proposal(_proposal(receiver_input=receiver_input))

    def test_receiver_input_script_type_v1(self, original):
        receiver_input = make_input(outpoint(50), 30_000, P2PKH_SPK)
        with pytest.raises(ValidationError, match="Receiver added"):
            _context(original).process_proposal(_proposal(receiver_input=receiver_input))

    def test_missing_sender_input(self, original):
        proposal = _proposal()
        del proposal.inputs[0]
        with pytest.raises(ValidationError, match="missing or were shuffled"):
            _context(original).process_proposal(proposal)

    def test_shuffled_outputs(self, original):
        proposal = _proposal()
        proposal.outputs.reverse()
        with pytest.raises(ValidationError, match="missing or were shuffled"):
            _context(original).process_proposal(proposal)

    def test_change_decreased_without_contribution(self, original):
        with pytest.raises(ValidationError, match="value decreased"):
            _context(original).process_proposal(_proposal(receiver=(PAYMENT + 30_000 + 68, RECEIVER_SPK), change=CHANGE - 68))

    def test_contribution_within_maximum(self, original):
        context = _context(original, contribution=AdditionalFeeContribution(68, 1))
        result = context.process_proposal(_proposal(change=CHANGE - 68))
        assert result.fee() == 1_068

    def test_contribution_above_maximum(self, original):
        context = _context(original, contribution=AdditionalFeeContribution(50, 1))
        with pytest.raises(ValidationError, match="exceeds"):
            context.process_proposal(_proposal(change=CHANGE - 68))

    def test_payee_took_contribution(self, original):
        context = _context(original, contribution=AdditionalFeeContribution(68, 1))
        with pytest.raises(ValidationError, match="Payee took"):
            context.process_proposal(_proposal(receiver=(PAYMENT + 30_068, RECEIVER_SPK), change=CHANGE - 68))

    def test_fee_decreased(self, original):
        with pytest.raises(ValidationError, match="Absolute fee decreased"):
            _context(original).process_proposal(_proposal(receiver=(PAYMENT + 30_500, RECEIVER_SPK)))

    def test_below_min_fee_rate(self, original):
        # 1000 sats over 834 WU is just under 5 sat/vB.
        context = _context(original, min_fee_rate=FeeRate.from_sat_per_vb(5))
        with pytest.raises(ValidationError, match="below the minimum"):
            context.process_proposal(_proposal())
        _context(original, min_fee_rate=FeeRate.from_sat_per_vb(4)).process_proposal(_proposal())


class TestV2Flow:
    def _session(self, gateway, address, **kwargs):
        return Receiver.new(
            address=address,
            network="bitcoin",
            directory="https://directory.example",
            ohttp_keys=gateway.keys,
            ohttp_relay=RELAY,
            **kwargs,
        )

    def test_requires_ohttp_keys(self, original, receiver_address):
        sender = SenderBuilder.from_psbt_and_uri(original, _uri(receiver_address)).build_recommended(ONE_SAT_PER_VB)
        with pytest.raises(UriError, match="v2"):
            sender.extract_v2(RELAY)

    def test_expired_uri(self, original, receiver_address):
        gateway = ohttp.OhttpGateway.generate()
        receiver = self._session(gateway, receiver_address, expire_after=-10)
        sender = SenderBuilder.from_psbt_and_uri(original, receiver.pj_uri()).build_recommended(ONE_SAT_PER_VB)
        with pytest.raises(SessionExpiredError):
            sender.extract_v2(RELAY)

    def test_highest_version(self, original, receiver_address):
        gateway = ohttp.OhttpGateway.generate()
        receiver = self._session(gateway, receiver_address)
        v2_sender = SenderBuilder.from_psbt_and_uri(original, receiver.pj_uri()).build_recommended(ONE_SAT_PER_VB)
        v1_sender = SenderBuilder.from_psbt_and_uri(original, _uri(receiver_address)).build_recommended(ONE_SAT_PER_VB)
        assert isinstance(v2_sender.extract_highest_version(RELAY)[1], V2PostContext)
        assert isinstance(v1_sender.extract_highest_version(RELAY)[1], V1Context)

    def test_directory_rejects_post(self, original, receiver_address):
        gateway = ohttp.OhttpGateway.generate()
        receiver = self._session(gateway, receiver_address)
        sender = SenderBuilder.from_psbt_and_uri(original, receiver.pj_uri()).build_recommended(ONE_SAT_PER_VB)
        request, context = sender.extract_v2(RELAY)
        _, server = gateway.decapsulate(request.body)
        with pytest.raises(UnexpectedStatusError):
            context.process_response(server.encapsulate(ohttp.BhttpResponse(status=413)))

    def test_end_to_end(self, original, receiver_address):
        gateway = ohttp.OhttpGateway.generate()
        receiver = self._session(gateway, receiver_address)
        sender = SenderBuilder.from_psbt_and_uri(original, receiver.pj_uri()).build_recommended(ONE_SAT_PER_VB)

        # Sender posts message A to the receiver's mailbox.
        request, post_context = sender.extract_v2(RELAY)
        assert request.url == RELAY
        inner, server = gateway.decapsulate(request.body)
        assert inner.method == "POST"
        assert inner.url == receiver.pj_url()
        assert len(inner.content) == v2.MESSAGE_BYTES
        get_context = post_context.process_response(server.encapsulate(ohttp.BhttpResponse(status=200)))

        # Receiver picks it up and answers.
        poll, poll_ctx = receiver.extract_req()
        _, server = gateway.decapsulate(poll.body)
        unchecked = receiver.process_res(
            server.encapsulate(ohttp.BhttpResponse(status=200, content=inner.content)), poll_ctx
        )
        assert unchecked.params.v == 2
        payjoin = _negotiate(unchecked)
        reply, _ = payjoin.extract_v2_req()
        reply_inner, _ = gateway.decapsulate(reply.body)
        assert reply_inner.url == get_context.mailbox_url

        # Sender polls its own mailbox: first nothing, then the proposal.
        get_request, get_ctx = get_context.extract_req(RELAY)
        get_inner, server = gateway.decapsulate(get_request.body)
        assert get_inner.method == "GET"
        assert get_inner.url == get_context.mailbox_url
        assert get_context.process_response(server.encapsulate(ohttp.BhttpResponse(status=202)), get_ctx) is None

        get_request, get_ctx = get_context.extract_req(RELAY)
        _, server = gateway.decapsulate(get_request.body)
        result = get_context.process_response(
            server.encapsulate(ohttp.BhttpResponse(status=200, content=reply_inner.content)), get_ctx
        )
        assert Psbt.from_base64(result).fee() == 1_068
