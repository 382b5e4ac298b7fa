from __future__ import annotations

import logging
import unittest

from settlement_fixtures import BTC_FEED_ID, ETH_FEED_ID, RECEIVER_PROGRAM_ID, WORMHOLE_PROGRAM_ID, accumulator_update
from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from modules.settlement.errors import NoAttestationData, PhaseBuildError
from modules.settlement.phases import PACKET_DATA_SIZE, PostPhaseBuilder, build_consume_phase, serialized_size
from modules.settlement.types import StepId


def _builder(**overrides: object) -> PostPhaseBuilder:
    params: dict[str, object] = {
        "logger": logging.getLogger("test.phases"),
        "receiver_program_id": RECEIVER_PROGRAM_ID,
        "wormhole_program_id": WORMHOLE_PROGRAM_ID,
    }
    params.update(overrides)
    return PostPhaseBuilder(**params)  # type: ignore[arg-type]


class PostPhaseBuilderTests(unittest.TestCase):
    def setUp(self) -> None:
        self.payer = Keypair().pubkey()
        self.builder = _builder()

    def test_small_attestation_fits_one_phase(self) -> None:
        plan = self.builder.build(
            update_data=accumulator_update(signature_count=1),
            feed_id_hex=BTC_FEED_ID,
            payer=self.payer,
            blockhash=Hash.default(),
        )

        self.assertEqual([phase.step for phase in plan.phases], [StepId.POST_WRITE])
        phase = plan.phases[0]
        self.assertLessEqual(serialized_size(phase.transaction), PACKET_DATA_SIZE)
        self.assertEqual(phase.ephemeral_signers, ())
        self.assertEqual(phase.transaction.message.header.num_required_signatures, 1)
        self.assertIn(plan.price_update_address, list(phase.transaction.message.account_keys))

    def test_large_attestation_splits_into_init_and_write(self) -> None:
        plan = self.builder.build(
            update_data=accumulator_update(signature_count=13),
            feed_id_hex=BTC_FEED_ID,
            payer=self.payer,
            blockhash=Hash.default(),
        )

        self.assertEqual([phase.step for phase in plan.phases], [StepId.POST_INIT, StepId.POST_WRITE])
        init, write = plan.phases
        self.assertEqual(len(init.ephemeral_signers), 1)
        encoded_vaa = init.ephemeral_signers[0].pubkey()
        init_keys = list(init.transaction.message.account_keys)
        self.assertEqual(init.transaction.message.header.num_required_signatures, 2)
        self.assertEqual(init_keys[:2], [self.payer, encoded_vaa])
        self.assertIn(encoded_vaa, list(write.transaction.message.account_keys))
        self.assertIn(plan.price_update_address, list(write.transaction.message.account_keys))
        for phase in plan.phases:
            self.assertLessEqual(serialized_size(phase.transaction), PACKET_DATA_SIZE)

    def test_predicted_address_is_deterministic_per_payer_and_feed(self) -> None:
        first = self.builder.predict_price_update_address(self.payer, BTC_FEED_ID)
        again = self.builder.predict_price_update_address(self.payer, "0x" + BTC_FEED_ID.upper())
        other_feed = self.builder.predict_price_update_address(self.payer, ETH_FEED_ID)
        other_payer = self.builder.predict_price_update_address(Keypair().pubkey(), BTC_FEED_ID)

        self.assertEqual(first, again)
        self.assertNotEqual(first, other_feed)
        self.assertNotEqual(first, other_payer)

    def test_plan_address_matches_prediction(self) -> None:
        plan = self.builder.build(
            update_data=accumulator_update(),
            feed_id_hex=BTC_FEED_ID,
            payer=self.payer,
            blockhash=Hash.default(),
        )
        self.assertEqual(plan.price_update_address, self.builder.predict_price_update_address(self.payer, BTC_FEED_ID))

    def test_missing_feed_raises(self) -> None:
        with self.assertRaises(NoAttestationData):
            self.builder.build(
                update_data=accumulator_update(feed_ids=(ETH_FEED_ID,)),
                feed_id_hex=BTC_FEED_ID,
                payer=self.payer,
                blockhash=Hash.default(),
            )

    def test_split_over_budget_raises(self) -> None:
        builder = _builder(size_budget=600)
        with self.assertRaises(PhaseBuildError):
            builder.build(
                update_data=accumulator_update(signature_count=13),
                feed_id_hex=BTC_FEED_ID,
                payer=self.payer,
                blockhash=Hash.default(),
            )


class ConsumePhaseTests(unittest.TestCase):
    def test_wraps_instructions_with_trailing_reclaim(self) -> None:
        payer = Keypair().pubkey()
        builder = _builder()
        consume = Instruction(
            Pubkey.new_unique(),
            b"\x01\x02",
            [AccountMeta(payer, is_signer=True, is_writable=True)],
        )
        reclaim = builder.reclaim_rent_instruction(payer, Pubkey.new_unique())

        phase = build_consume_phase(
            instructions=[consume],
            payer=payer,
            blockhash=Hash.default(),
            compute_unit_price_micro_lamports=50_000,
            trailing_instructions=[reclaim],
        )

        self.assertEqual(phase.step, StepId.RESOLVE)
        # compute limit, compute price, consume, reclaim
        self.assertEqual(len(phase.transaction.message.instructions), 4)
        self.assertEqual(phase.transaction.message.account_keys[0], payer)

    def test_empty_instruction_list_raises(self) -> None:
        with self.assertRaises(PhaseBuildError):
            build_consume_phase(
                instructions=[],
                payer=Keypair().pubkey(),
                blockhash=Hash.default(),
                compute_unit_price_micro_lamports=0,
            )


if __name__ == "__main__":
    unittest.main()
