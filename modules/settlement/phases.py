from __future__ import annotations

import hashlib
import logging
from typing import Sequence

from borsh_construct import U8, U32, Bytes, CStruct, Vec
from solders.compute_budget import set_compute_unit_limit, set_compute_unit_price
from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.system_program import ID as SYSTEM_PROGRAM_ID
from solders.system_program import CreateAccountParams, create_account
from solders.transaction import VersionedTransaction

from modules.common import log_event

from .errors import PhaseBuildError
from .oracle_bytes import MerkleUpdate, find_feed_update, parse_accumulator_update, parse_vaa_header
from .types import PostPlan, StepId, TransactionPhase, feed_id_bytes

PACKET_DATA_SIZE = 1232
DEFAULT_VAA_SPLIT_INDEX = 755
ENCODED_VAA_HEADER_SIZE = 46
POST_COMPUTE_UNIT_LIMIT = 400_000
CONSUME_COMPUTE_UNIT_LIMIT = 400_000

# Default cluster rent: 3480 lamports per byte-year, two years for exemption,
# 128 bytes of per-account storage overhead.
RENT_LAMPORTS_PER_BYTE_YEAR = 3480
RENT_EXEMPTION_YEARS = 2
ACCOUNT_STORAGE_OVERHEAD = 128

MerklePriceUpdateLayout = CStruct("message" / Bytes, "proof" / Vec(U8[20]))
PostUpdateAtomicLayout = CStruct(
    "vaa" / Bytes,
    "merkle_price_update" / MerklePriceUpdateLayout,
    "treasury_id" / U8,
)
PostUpdateLayout = CStruct("merkle_price_update" / MerklePriceUpdateLayout, "treasury_id" / U8)
WriteEncodedVaaLayout = CStruct("index" / U32, "data" / Bytes)


def sighash(name: str) -> bytes:
    return hashlib.sha256(f"global:{name}".encode()).digest()[:8]


def rent_exempt_lamports(space: int) -> int:
    return (ACCOUNT_STORAGE_OVERHEAD + space) * RENT_LAMPORTS_PER_BYTE_YEAR * RENT_EXEMPTION_YEARS


def _merkle_args(update: MerkleUpdate) -> dict[str, object]:
    return {"message": update.message, "proof": [list(node) for node in update.proof]}


def compile_unsigned(
    payer: Pubkey,
    instructions: Sequence[Instruction],
    blockhash: Hash,
) -> VersionedTransaction:
    """Compile a v0 transaction with every signature slot left zeroed."""
    message = MessageV0.try_compile(payer, list(instructions), [], blockhash)
    required = message.header.num_required_signatures
    return VersionedTransaction.populate(message, [Signature.default()] * required)


def serialized_size(transaction: VersionedTransaction) -> int:
    return len(bytes(transaction))


class PostPhaseBuilder:
    """Builds the transactions that post one feed's attestation on-chain."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        receiver_program_id: Pubkey,
        wormhole_program_id: Pubkey,
        compute_unit_price_micro_lamports: int = 50_000,
        treasury_id: int = 0,
        vaa_split_index: int = DEFAULT_VAA_SPLIT_INDEX,
        size_budget: int = PACKET_DATA_SIZE,
    ) -> None:
        self._logger = logger
        self._receiver_program_id = receiver_program_id
        self._wormhole_program_id = wormhole_program_id
        self._compute_unit_price = max(0, int(compute_unit_price_micro_lamports))
        self._treasury_id = treasury_id
        self._vaa_split_index = max(1, int(vaa_split_index))
        self._size_budget = size_budget

    @property
    def receiver_program_id(self) -> Pubkey:
        return self._receiver_program_id

    def predict_price_update_address(self, payer: Pubkey, feed_id_hex: str) -> Pubkey:
        seeds = [b"price_update", bytes(payer), feed_id_bytes(feed_id_hex)]
        return Pubkey.find_program_address(seeds, self._receiver_program_id)[0]

    def config_address(self) -> Pubkey:
        return Pubkey.find_program_address([b"config"], self._receiver_program_id)[0]

    def treasury_address(self) -> Pubkey:
        return Pubkey.find_program_address([b"treasury", bytes([self._treasury_id])], self._receiver_program_id)[0]

    def guardian_set_address(self, guardian_set_index: int) -> Pubkey:
        seeds = [b"GuardianSet", guardian_set_index.to_bytes(4, "big")]
        return Pubkey.find_program_address(seeds, self._wormhole_program_id)[0]

    def build(
        self,
        *,
        update_data: bytes,
        feed_id_hex: str,
        payer: Pubkey,
        blockhash: Hash,
    ) -> PostPlan:
        accumulator = parse_accumulator_update(update_data)
        merkle_update, price_message = find_feed_update(accumulator, feed_id_bytes(feed_id_hex))
        vaa_header = parse_vaa_header(accumulator.vaa)
        guardian_set = self.guardian_set_address(vaa_header.guardian_set_index)
        price_update = self.predict_price_update_address(payer, feed_id_hex)

        atomic = self._build_atomic(
            payer=payer,
            blockhash=blockhash,
            vaa=accumulator.vaa,
            merkle_update=merkle_update,
            guardian_set=guardian_set,
            price_update=price_update,
        )
        atomic_size = serialized_size(atomic)
        if atomic_size <= self._size_budget:
            phases: tuple[TransactionPhase, ...] = (TransactionPhase(step=StepId.POST_WRITE, transaction=atomic),)
        else:
            phases = self._build_split(
                payer=payer,
                blockhash=blockhash,
                vaa=accumulator.vaa,
                merkle_update=merkle_update,
                guardian_set=guardian_set,
                price_update=price_update,
            )

        log_event(
            self._logger,
            level="info",
            event="post_phases_built",
            message="Built attestation post phases",
            feed_id=price_message.feed_id_hex,
            publish_time=price_message.publish_time,
            guardian_set_index=vaa_header.guardian_set_index,
            vaa_bytes=len(accumulator.vaa),
            atomic_tx_bytes=atomic_size,
            phase_count=len(phases),
            steps=[phase.step.value for phase in phases],
            price_update_address=str(price_update),
        )
        return PostPlan(phases=phases, price_update_address=price_update)

    def _prelude(self, compute_unit_limit: int | None = None) -> list[Instruction]:
        prelude: list[Instruction] = []
        if compute_unit_limit is not None:
            prelude.append(set_compute_unit_limit(compute_unit_limit))
        prelude.append(set_compute_unit_price(self._compute_unit_price))
        return prelude

    def _build_atomic(
        self,
        *,
        payer: Pubkey,
        blockhash: Hash,
        vaa: bytes,
        merkle_update: MerkleUpdate,
        guardian_set: Pubkey,
        price_update: Pubkey,
    ) -> VersionedTransaction:
        data = sighash("post_update_atomic") + PostUpdateAtomicLayout.build(
            {
                "vaa": vaa,
                "merkle_price_update": _merkle_args(merkle_update),
                "treasury_id": self._treasury_id,
            }
        )
        post_ix = Instruction(
            self._receiver_program_id,
            data,
            [
                AccountMeta(payer, is_signer=True, is_writable=True),
                AccountMeta(guardian_set, is_signer=False, is_writable=False),
                AccountMeta(self.config_address(), is_signer=False, is_writable=False),
                AccountMeta(self.treasury_address(), is_signer=False, is_writable=True),
                AccountMeta(price_update, is_signer=False, is_writable=True),
                AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
            ],
        )
        return compile_unsigned(payer, [*self._prelude(POST_COMPUTE_UNIT_LIMIT), post_ix], blockhash)

    def _write_encoded_vaa_ix(self, payer: Pubkey, encoded_vaa: Pubkey, index: int, chunk: bytes) -> Instruction:
        data = sighash("write_encoded_vaa") + WriteEncodedVaaLayout.build({"index": index, "data": chunk})
        return Instruction(
            self._wormhole_program_id,
            data,
            [
                AccountMeta(payer, is_signer=True, is_writable=False),
                AccountMeta(encoded_vaa, is_signer=False, is_writable=True),
            ],
        )

    def _build_split(
        self,
        *,
        payer: Pubkey,
        blockhash: Hash,
        vaa: bytes,
        merkle_update: MerkleUpdate,
        guardian_set: Pubkey,
        price_update: Pubkey,
    ) -> tuple[TransactionPhase, ...]:
        encoded_vaa_keypair = Keypair()
        encoded_vaa = encoded_vaa_keypair.pubkey()
        space = ENCODED_VAA_HEADER_SIZE + len(vaa)
        head, tail = vaa[: self._vaa_split_index], vaa[self._vaa_split_index :]

        init_ixs = [
            *self._prelude(),
            create_account(
                CreateAccountParams(
                    from_pubkey=payer,
                    to_pubkey=encoded_vaa,
                    lamports=rent_exempt_lamports(space),
                    space=space,
                    owner=self._wormhole_program_id,
                )
            ),
            Instruction(
                self._wormhole_program_id,
                sighash("init_encoded_vaa"),
                [
                    AccountMeta(payer, is_signer=True, is_writable=False),
                    AccountMeta(encoded_vaa, is_signer=False, is_writable=True),
                ],
            ),
            self._write_encoded_vaa_ix(payer, encoded_vaa, 0, head),
        ]
        init_tx = compile_unsigned(payer, init_ixs, blockhash)

        write_ixs = [*self._prelude(POST_COMPUTE_UNIT_LIMIT)]
        if tail:
            write_ixs.append(self._write_encoded_vaa_ix(payer, encoded_vaa, len(head), tail))
        write_ixs.extend(
            [
                Instruction(
                    self._wormhole_program_id,
                    sighash("verify_encoded_vaa_v1"),
                    [
                        AccountMeta(payer, is_signer=True, is_writable=False),
                        AccountMeta(encoded_vaa, is_signer=False, is_writable=True),
                        AccountMeta(guardian_set, is_signer=False, is_writable=False),
                    ],
                ),
                Instruction(
                    self._receiver_program_id,
                    sighash("post_update")
                    + PostUpdateLayout.build(
                        {"merkle_price_update": _merkle_args(merkle_update), "treasury_id": self._treasury_id}
                    ),
                    [
                        AccountMeta(payer, is_signer=True, is_writable=True),
                        AccountMeta(encoded_vaa, is_signer=False, is_writable=False),
                        AccountMeta(self.config_address(), is_signer=False, is_writable=False),
                        AccountMeta(self.treasury_address(), is_signer=False, is_writable=True),
                        AccountMeta(price_update, is_signer=False, is_writable=True),
                        AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
                    ],
                ),
                Instruction(
                    self._wormhole_program_id,
                    sighash("close_encoded_vaa"),
                    [
                        AccountMeta(payer, is_signer=True, is_writable=True),
                        AccountMeta(encoded_vaa, is_signer=False, is_writable=True),
                    ],
                ),
            ]
        )
        write_tx = compile_unsigned(payer, write_ixs, blockhash)

        for phase_name, transaction in (("post:init", init_tx), ("post:write", write_tx)):
            size = serialized_size(transaction)
            if size > self._size_budget:
                raise PhaseBuildError(
                    f"{phase_name} transaction is oversized; size={size} bytes budget={self._size_budget}"
                )

        return (
            TransactionPhase(step=StepId.POST_INIT, transaction=init_tx, ephemeral_signers=(encoded_vaa_keypair,)),
            TransactionPhase(step=StepId.POST_WRITE, transaction=write_tx),
        )

    def reclaim_rent_instruction(self, payer: Pubkey, price_update: Pubkey) -> Instruction:
        return Instruction(
            self._receiver_program_id,
            sighash("reclaim_rent"),
            [
                AccountMeta(payer, is_signer=True, is_writable=True),
                AccountMeta(price_update, is_signer=False, is_writable=True),
            ],
        )


def build_consume_phase(
    *,
    instructions: Sequence[Instruction],
    payer: Pubkey,
    blockhash: Hash,
    compute_unit_price_micro_lamports: int,
    trailing_instructions: Sequence[Instruction] = (),
    step: StepId = StepId.RESOLVE,
) -> TransactionPhase:
    if not instructions:
        raise PhaseBuildError("consume phase has no instructions")
    prelude = [
        set_compute_unit_limit(CONSUME_COMPUTE_UNIT_LIMIT),
        set_compute_unit_price(max(0, int(compute_unit_price_micro_lamports))),
    ]
    transaction = compile_unsigned(payer, [*prelude, *instructions, *trailing_instructions], blockhash)
    size = serialized_size(transaction)
    if size > PACKET_DATA_SIZE:
        raise PhaseBuildError(f"{step.value} transaction is oversized; size={size} bytes")
    return TransactionPhase(step=step, transaction=transaction)
