from __future__ import annotations

import asyncio
import logging
from typing import Any

from modules.common import log_event

from .backend import BackendClient
from .classifier import FailureClassifier
from .instructions import decode_transaction_b64
from .progress import ProgressCallback, ProgressReporter
from .signer import TransactionSubmitter, Wallet
from .steps import StepRunner
from .types import MarketDraft, PipelineResult, RunState, StepId, TransactionPhase


class _ServerTransactionFlow:
    """Shared plumbing for flows that sign transactions the backend built."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        backend: BackendClient,
        submitter: TransactionSubmitter,
        wallet: Wallet,
        classifier: FailureClassifier | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        self._logger = logger
        self._backend = backend
        self._submitter = submitter
        self._wallet = wallet

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

    def _begin(self) -> None:
        if self.result.state is not RunState.IDLE:
            raise RuntimeError(f"{type(self).__name__} instances are single use")
        self.result.state = RunState.FETCHING


class BetPlacementFlow(_ServerTransactionFlow):
    async def run(self, market_pda: str, side: str, amount_ui: float) -> PipelineResult:
        self._begin()
        try:
            tx_base64 = await self._backend.prepare_bet(market_pda, side, amount_ui)
            transaction = decode_transaction_b64(tx_base64, section="bet.tx_base64")
        except asyncio.CancelledError:
            raise
        except Exception as error:
            self._runner.fail(StepId.FETCH, error)

        self.result.state = RunState.POSTING
        await self._runner.run(TransactionPhase(step=StepId.BET, transaction=transaction), self._wallet, simulate=True)

        self.result.state = RunState.DONE
        log_event(
            self._logger,
            level="info",
            event="bet_placed",
            message="Bet placement finished",
            market_pda=market_pda,
            side=side,
            amount_ui=amount_ui,
            signatures=list(self.result.signatures),
        )
        return self.result


class MarketCreationFlow(_ServerTransactionFlow):
    """Create a market, optionally seed it with a bet, then tell the backend."""

    async def run(self, payload: dict[str, Any]) -> PipelineResult:
        self._begin()
        try:
            draft: MarketDraft = await self._backend.create_market(payload)
            phases = [
                TransactionPhase(
                    step=StepId.CREATE,
                    transaction=decode_transaction_b64(draft.create_tx_b64, section="createTx"),
                )
            ]
            if draft.place_bet_tx_b64:
                phases.append(
                    TransactionPhase(
                        step=StepId.BET,
                        transaction=decode_transaction_b64(draft.place_bet_tx_b64, section="placeBetTx"),
                    )
                )
        except asyncio.CancelledError:
            raise
        except Exception as error:
            self._runner.fail(StepId.FETCH, error)

        self.result.state = RunState.POSTING
        create_signature = await self._runner.run(phases[0], self._wallet, simulate=True)
        for phase in phases[1:]:
            await self._runner.run(phase, self._wallet, simulate=True)

        await self._confirm(payload, draft.market_id, create_signature)

        self.result.state = RunState.DONE
        log_event(
            self._logger,
            level="info",
            event="market_created",
            message="Market creation finished",
            market_id=draft.market_id,
            signatures=list(self.result.signatures),
            warnings=[step.value for step in self.result.warnings],
        )
        return self.result

    async def _confirm(self, payload: dict[str, Any], market_id: str, signature: str | None) -> None:
        # The market already exists on chain here, so a failed confirm only warns.
        self.reporter.start(StepId.CONFIRM)
        if not signature:
            self.result.warnings.append(StepId.CONFIRM)
            self.reporter.warning(StepId.CONFIRM, "create signature unknown; backend was not notified")
            return

        try:
            await self._backend.confirm_market(payload, market_id, signature)
        except asyncio.CancelledError:
            raise
        except Exception as error:
            self.result.warnings.append(StepId.CONFIRM)
            self.reporter.warning(StepId.CONFIRM, str(error), signature=signature)
            return

        self.reporter.success(StepId.CONFIRM, signature)
