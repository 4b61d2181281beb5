"""Tests for receiver contribution, fee application and finalization."""

import threading

import pytest

from conftest import (
    CHANGE,
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
from payjoin_flow.errors import (
    FeeRateBoundError,
    InputContributionError,
    SelectionError,
    ServerError,
    SessionError,
)
from payjoin_flow.provisional import InputPair, select_preserving_privacy
from payjoin_flow.psbt import Psbt
from payjoin_flow.receive import UncheckedProposal
from payjoin_flow.types import TxOut


NEW_SPK = b"\x00\x14" + b"\x66" * 20


def _never(_):
    return False


def _wants_inputs(psbt, query="v=1"):
    return (
        UncheckedProposal.from_parts(psbt.to_base64(), query)
        .assume_interactive_receiver()
        .check_inputs_not_owned(_never)
        .check_no_mixed_input_scripts()
        .check_no_inputs_seen_before(_never)
        .identify_receiver_outputs(lambda script: script == RECEIVER_SPK)
        .commit_outputs()
    )


def _provisional(psbt, contributions=((50, 30_000),), query="v=1"):
    pairs = [InputPair(outpoint(n), TxOut(value, RECEIVER_UTXO_SPK)) for n, value in contributions]
    inputs = _wants_inputs(psbt, query)
    if pairs:
        inputs = inputs.contribute_witness_inputs(pairs)
    return inputs.commit_inputs()


def _outputs(proposal):
    return Psbt.from_base64(proposal.psbt()).outputs


class TestFeeBounds:
    def test_500_sat_per_vb_within_bounds(self):
        # 104_250 sats over an estimated 834 WU is exactly 500 sat/vB.
        provisional = _provisional(original_with_fee(104_182))
        proposal = provisional.finalize_proposal(
            sign_inputs([outpoint(50)]), min_feerate_sat_per_vb=1, max_feerate_sat_per_vb=1000
        )
        assert Psbt.from_base64(proposal.psbt()).outputs[0].value == PAYMENT + 30_000 - 68

    def test_2000_sat_per_vb_above_max(self):
        provisional = _provisional(original_with_fee(416_932))
        with pytest.raises(FeeRateBoundError) as exc_info:
            provisional.finalize_proposal(
                sign_inputs([outpoint(50)]), min_feerate_sat_per_vb=1, max_feerate_sat_per_vb=1000
            )
        assert exc_info.value.fee_rate.sat_per_vb == 2000

    def test_below_min(self):
        provisional = _provisional(original_with_fee(1_000))
        with pytest.raises(FeeRateBoundError):
            provisional.finalize_proposal(
                sign_inputs([outpoint(50)]), min_feerate_sat_per_vb=10, max_feerate_sat_per_vb=1000
            )

    def test_sender_min_fee_rate_raises_floor(self):
        provisional = _provisional(original_with_fee(1_000), query="v=1&minfeerate=10")
        with pytest.raises(FeeRateBoundError):
            provisional.finalize_proposal(sign_inputs([outpoint(50)]), max_feerate_sat_per_vb=1000)

    def test_default_max_is_2_sat_per_vb(self):
        provisional = _provisional(original_with_fee(1_000))
        with pytest.raises(FeeRateBoundError):
            provisional.finalize_proposal(sign_inputs([outpoint(50)]))


class TestFeeContribution:
    def test_sender_pays_up_to_its_maximum(self, original):
        provisional = _provisional(
            original, query="v=1&additionalfeeoutputindex=1&maxadditionalfeecontribution=50"
        )
        proposal = provisional.finalize_proposal(
            sign_inputs([outpoint(50)]), min_feerate_sat_per_vb=1, max_feerate_sat_per_vb=1000
        )
        outputs = _outputs(proposal)
        assert outputs[1] == TxOut(CHANGE - 50, SENDER_CHANGE_SPK)
        assert outputs[0] == TxOut(PAYMENT + 30_000 - 18, RECEIVER_SPK)

    def test_sender_pays_whole_fee_when_allowed(self, original):
        provisional = _provisional(
            original, query="v=1&additionalfeeoutputindex=1&maxadditionalfeecontribution=1000"
        )
        proposal = provisional.finalize_proposal(
            sign_inputs([outpoint(50)]), min_feerate_sat_per_vb=1, max_feerate_sat_per_vb=1000
        )
        outputs = _outputs(proposal)
        assert outputs[1].value == CHANGE - 68
        assert outputs[0].value == PAYMENT + 30_000

    def test_no_fee_without_min_rate(self, original):
        provisional = _provisional(original)
        proposal = provisional.finalize_proposal(sign_inputs([outpoint(50)]), max_feerate_sat_per_vb=1000)
        assert _outputs(proposal)[0].value == PAYMENT + 30_000


class TestFinalize:
    def test_utxos_to_be_locked_are_receiver_inputs(self, original):
        provisional = _provisional(original, contributions=((50, 30_000), (51, 20_000)))
        proposal = provisional.finalize_proposal(
            sign_inputs([outpoint(50), outpoint(51)]), max_feerate_sat_per_vb=1000
        )
        assert set(proposal.utxos_to_be_locked()) == {outpoint(50), outpoint(51)}
        assert outpoint(1) not in proposal.utxos_to_be_locked()

    def test_sender_inputs_stripped(self, original):
        proposal = _provisional(original).finalize_proposal(
            sign_inputs([outpoint(50)]), max_feerate_sat_per_vb=1000
        )
        psbt = Psbt.from_base64(proposal.extract_v1_req())
        by_outpoint = {inp.prevout: inp for inp in psbt.inputs}
        sender = by_outpoint[outpoint(1)]
        assert not sender.is_finalized
        assert not sender.has_utxo_info
        receiver = by_outpoint[outpoint(50)]
        assert receiver.is_finalized
        assert receiver.has_utxo_info

    def test_sequence_copied_to_receiver_input(self, original):
        proposal = _provisional(original).finalize_proposal(
            sign_inputs([outpoint(50)]), max_feerate_sat_per_vb=1000
        )
        sequences = {inp.sequence for inp in Psbt.from_base64(proposal.psbt()).inputs}
        assert sequences == {original.inputs[0].sequence}

    def test_unsigned_receiver_input(self, original):
        with pytest.raises(ServerError, match="finalize"):
            _provisional(original).finalize_proposal(lambda text: text, max_feerate_sat_per_vb=1000)

    def test_process_psbt_must_not_change_transaction(self, original):
        def process_psbt(text):
            psbt = Psbt.from_base64(text)
            psbt.outputs[0] = TxOut(1, RECEIVER_SPK)
            return psbt.to_base64()

        with pytest.raises(ServerError, match="changed"):
            _provisional(original).finalize_proposal(process_psbt, max_feerate_sat_per_vb=1000)

    def test_process_psbt_garbage(self, original):
        with pytest.raises(ServerError, match="invalid PSBT"):
            _provisional(original).finalize_proposal(lambda text: "garbage", max_feerate_sat_per_vb=1000)

    def test_failed_finalize_can_be_retried(self, original):
        provisional = _provisional(original)

        def failing(text):
            raise RuntimeError("signer locked")

        with pytest.raises(ServerError) as exc_info:
            provisional.finalize_proposal(failing, max_feerate_sat_per_vb=1000)
        assert isinstance(exc_info.value.__cause__, RuntimeError)

        proposal = provisional.finalize_proposal(sign_inputs([outpoint(50)]), max_feerate_sat_per_vb=1000)
        assert proposal.utxos_to_be_locked() == [outpoint(50)]

    def test_proposal_accessors(self, original):
        proposal = _provisional(original, query="v=1&disableoutputsubstitution=true").finalize_proposal(
            sign_inputs([outpoint(50)]), max_feerate_sat_per_vb=1000
        )
        assert proposal.is_output_substitution_disabled()
        assert proposal.is_output_substitution_disabled()
        assert proposal.owned_vouts() == [0]
        assert proposal.psbt() == proposal.extract_v1_req()

    def test_extract_v2_requires_session(self, original):
        proposal = _provisional(original).finalize_proposal(
            sign_inputs([outpoint(50)]), max_feerate_sat_per_vb=1000
        )
        with pytest.raises(SessionError):
            proposal.extract_v2_req()


class TestProvisionalMutation:
    def test_contribute_witness_input(self, original):
        provisional = _provisional(original, contributions=())
        provisional.contribute_witness_input(TxOut(30_000, RECEIVER_UTXO_SPK), outpoint(50))
        proposal = provisional.finalize_proposal(sign_inputs([outpoint(50)]), max_feerate_sat_per_vb=1000)
        assert proposal.utxos_to_be_locked() == [outpoint(50)]
        assert _outputs(proposal)[0].value == PAYMENT + 30_000

    def test_contribute_duplicate(self, original):
        provisional = _provisional(original)
        with pytest.raises(InputContributionError, match="Duplicate"):
            provisional.contribute_witness_input(TxOut(30_000, RECEIVER_UTXO_SPK), outpoint(50))

    def test_concurrent_contributions(self, original):
        provisional = _provisional(original, contributions=())
        threads = [
            threading.Thread(
                target=provisional.contribute_witness_input,
                args=(TxOut(10_000, RECEIVER_UTXO_SPK), outpoint(100 + n)),
            )
            for n in range(8)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        owned = [outpoint(100 + n) for n in range(8)]
        proposal = provisional.finalize_proposal(sign_inputs(owned), max_feerate_sat_per_vb=1000)
        assert set(proposal.utxos_to_be_locked()) == set(owned)
        assert _outputs(proposal)[0].value == PAYMENT + 80_000

    def test_substitute_receiver_output(self, original):
        provisional = _provisional(original)
        provisional.try_substitute_receiver_output(lambda: NEW_SPK)
        proposal = provisional.finalize_proposal(sign_inputs([outpoint(50)]), max_feerate_sat_per_vb=1000)
        assert _outputs(proposal)[0].script_pubkey == NEW_SPK

    def test_substitution_disabled_skips_generator(self, original):
        provisional = _provisional(original, query="v=1&disableoutputsubstitution=true")
        calls = []
        provisional.try_substitute_receiver_output(lambda: calls.append(1) or NEW_SPK)
        assert calls == []

    def test_generator_failure(self, original):
        provisional = _provisional(original)

        def generate_script():
            raise OSError("wallet unavailable")

        with pytest.raises(ServerError):
            provisional.try_substitute_receiver_output(generate_script)

    def test_output_substitution_query_is_stable(self, original):
        provisional = _provisional(original)
        assert provisional.is_output_substitution_disabled() is False
        assert provisional.is_output_substitution_disabled() is False


class TestPrivacySelection:
    def _payjoin(self, outputs):
        return make_psbt([make_input(outpoint(1), 100_000)], outputs)

    def test_picks_candidate_avoiding_unnecessary_input(self):
        payjoin = self._payjoin([(PAYMENT, RECEIVER_SPK), (CHANGE, SENDER_CHANGE_SPK)])
        chosen = select_preserving_privacy(payjoin, 0, {500_000: outpoint(60), 20_000: outpoint(61)})
        assert chosen == outpoint(61)

    def test_first_qualifying_candidate_wins(self):
        payjoin = self._payjoin([(PAYMENT, RECEIVER_SPK), (CHANGE, SENDER_CHANGE_SPK)])
        chosen = select_preserving_privacy(payjoin, 0, {10_000: outpoint(60), 20_000: outpoint(61)})
        assert chosen == outpoint(60)

    def test_no_qualifying_candidate(self):
        payjoin = self._payjoin([(PAYMENT, RECEIVER_SPK), (CHANGE, SENDER_CHANGE_SPK)])
        with pytest.raises(SelectionError, match="heuristic"):
            select_preserving_privacy(payjoin, 0, {500_000: outpoint(60)})

    def test_empty_candidates(self):
        payjoin = self._payjoin([(PAYMENT, RECEIVER_SPK), (CHANGE, SENDER_CHANGE_SPK)])
        with pytest.raises(SelectionError, match="No candidate"):
            select_preserving_privacy(payjoin, 0, {})

    def test_single_output_takes_first_candidate(self):
        payjoin = self._payjoin([(PAYMENT, RECEIVER_SPK)])
        chosen = select_preserving_privacy(payjoin, 0, {500_000: outpoint(60), 20_000: outpoint(61)})
        assert chosen == outpoint(60)

    def test_single_output_without_candidates(self):
        payjoin = self._payjoin([(PAYMENT, RECEIVER_SPK)])
        with pytest.raises(SelectionError, match="No candidate"):
            select_preserving_privacy(payjoin, 0, {})

    def test_too_many_outputs(self):
        payjoin = self._payjoin([
            (PAYMENT, RECEIVER_SPK),
            (20_000, SENDER_CHANGE_SPK),
            (29_000, NEW_SPK),
        ])
        with pytest.raises(SelectionError, match="Too many outputs"):
            select_preserving_privacy(payjoin, 0, {10_000: outpoint(60)})

    def test_on_provisional_proposal(self, original):
        provisional = _provisional(original, contributions=())
        assert provisional.try_preserving_privacy({20_000: outpoint(61)}) == outpoint(61)
