from __future__ import annotations

import asyncio
import logging

from solders.instruction import Instruction
from solders.pubkey import Pubkey

from modules.common import log_event

from .attestation import HermesAttestationFetcher
from .backend import BackendClient
from .classifier import FailureClassifier
from .errors import DecodeError, WalletUnsupported
from .instructions import decode_instruction, patch_instruction, resolve_placeholder_override
from .phases import PostPhaseBuilder, build_consume_phase
from .progress import ProgressCallback, ProgressReporter
from .signer import TransactionSubmitter, Wallet
from .steps import StepRunner
from .types import PipelineResult, PostPlan, ResolveBundle, RunState, StepId


class SettlementRun:
    """One resolution attempt for one market.

    idle -> fetching -> posting -> resolving -> done, with ``failed`` reachable
    from every non-terminal state. Instances are single use; retrying means a
    new run and a fresh attestation.
    """

    def __init__(
        self,
        *,
        logger: logging.Logger,
        backend: BackendClient,
        fetcher: HermesAttestationFetcher,
        builder: PostPhaseBuilder,
        submitter: TransactionSubmitter,
        wallet: Wallet,
        compute_unit_price_micro_lamports: int = 50_000,
        close_update_accounts: bool = True,
        classifier: FailureClassifier | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        self._logger = logger
        self._backend = backend
        self._fetcher = fetcher
        self._builder = builder
        self._submitter = submitter
        self._wallet = wallet
        self._compute_unit_price = compute_unit_price_micro_lamports
        self._close_update_accounts = close_update_accounts

        self.result = PipelineResult()
        self.reporter = ProgressReporter(logger=logger, on_progress=on_progress)
        self._runner = StepRunner(
            logger=logger,
            submitter=submitter,
            reporter=self.reporter,
            result=self.result,
            classifier=classifier,
        )

    @property
    def state(self) -> RunState:
        return self.result.state

    def _enter(self, state: RunState) -> None:
        log_event(
            self._logger,
            level="debug",
            event="run_state_changed",
            message="Settlement run state changed",
            previous_state=self.result.state.value,
            state=state.value,
        )
        self.result.state = state

    async def run(self, market_pda: str) -> PipelineResult:
        if self.result.state is not RunState.IDLE:
            raise RuntimeError("SettlementRun instances are single use; start a new run to retry")

        self._enter(RunState.FETCHING)
        try:
            payer = self._payer()
            bundle = await self._backend.resolve_instruction_bundle(market_pda)
            attestation = await self._fetcher.fetch(bundle.feed_id_hex, bundle.end_ts)
            blockhash = await self._submitter.ledger.latest_blockhash()
            plan = self._builder.build(
                update_data=attestation.first,
                feed_id_hex=bundle.feed_id_hex,
                payer=payer,
                blockhash=blockhash,
            )
            consume_instructions = self._patched_instructions(bundle, plan)
        except asyncio.CancelledError:
            raise
        except Exception as error:
            self._runner.fail(StepId.FETCH, error)

        self._enter(RunState.POSTING)
        for phase in plan.phases:
            await self._runner.run(phase, self._wallet)

        self._enter(RunState.RESOLVING)
        try:
            trailing: list[Instruction] = []
            if self._close_update_accounts:
                trailing.append(self._builder.reclaim_rent_instruction(payer, plan.price_update_address))
            resolve_phase = build_consume_phase(
                instructions=consume_instructions,
                payer=payer,
                blockhash=await self._submitter.ledger.latest_blockhash(),
                compute_unit_price_micro_lamports=self._compute_unit_price,
                trailing_instructions=trailing,
                step=StepId.RESOLVE,
            )
        except asyncio.CancelledError:
            raise
        except Exception as error:
            self._runner.fail(StepId.RESOLVE, error)

        await self._runner.run(resolve_phase, self._wallet, simulate=True)

        self._enter(RunState.DONE)
        log_event(
            self._logger,
            level="info",
            event="settlement_done",
            message="Market resolution finished",
            market_pda=market_pda,
            market_id=bundle.market_id,
            signatures=list(self.result.signatures),
            warnings=[step.value for step in self.result.warnings],
        )
        return self.result

    def _payer(self) -> Pubkey:
        payer = getattr(self._wallet, "pubkey", None)
        if not isinstance(payer, Pubkey):
            raise WalletUnsupported("Wallet exposes no public key")
        return payer

    def _patched_instructions(self, bundle: ResolveBundle, plan: PostPlan) -> list[Instruction]:
        try:
            market_id = Pubkey.from_string(bundle.market_id)
        except ValueError as error:
            raise DecodeError(f"market_id is not an address: {bundle.market_id!r}") from error

        patched: list[Instruction] = []
        for idx, spec in enumerate(bundle.instructions):
            instruction = decode_instruction(spec, section=f"instructions[{idx}]")
            override = resolve_placeholder_override(
                spec,
                account_index=bundle.price_update_index,
                replacement_address=plan.price_update_address,
            )
            patched.append(patch_instruction(instruction, override, force_non_signer={market_id}))
        return patched
