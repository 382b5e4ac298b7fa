from __future__ import annotations

import asyncio
import logging
from typing import NoReturn

from modules.common import log_event

from .classifier import FailureClassifier
from .errors import SettlementAborted, SubmissionError
from .progress import ProgressReporter
from .signer import TransactionSubmitter, Wallet
from .types import PipelineResult, RunState, StepId, TransactionPhase


class StepRunner:
    """Runs one signed step: start event, submit, classify, closing event.

    A soft failure is recorded as a warning and the caller carries on; a fatal
    one marks the result failed and raises ``SettlementAborted``.
    """

    def __init__(
        self,
        *,
        logger: logging.Logger,
        submitter: TransactionSubmitter,
        reporter: ProgressReporter,
        result: PipelineResult,
        classifier: FailureClassifier | None = None,
    ) -> None:
        self._logger = logger
        self._submitter = submitter
        self._reporter = reporter
        self._result = result
        self._classifier = classifier or FailureClassifier()

    @property
    def result(self) -> PipelineResult:
        return self._result

    async def run(self, phase: TransactionPhase, wallet: Wallet, *, simulate: bool = False) -> str | None:
        step = phase.step
        self._reporter.start(step)
        try:
            if simulate:
                await self._submitter.simulate(phase)
            signature = await self._submitter.submit(phase, wallet)
        except asyncio.CancelledError:
            raise
        except Exception as error:
            return self._handle_failure(phase, error)

        self._result.signatures.append(signature)
        self._reporter.success(step, signature)
        return signature

    def _handle_failure(self, phase: TransactionPhase, error: Exception) -> str | None:
        """Soft-classified send failures become warnings; anything else aborts."""
        step = phase.step
        # Only errors from the send path can mean the effect already landed.
        if not isinstance(error, SubmissionError):
            self.fail(step, error)

        signature = error.signature
        if self._classifier.classify(error) == "soft":
            log_event(
                self._logger,
                level="warning",
                event="step_already_processed",
                message="Transaction was already processed; continuing",
                step=step.value,
                tx_signature=signature,
                error=str(error),
            )
            if signature:
                self._result.signatures.append(signature)
            self._result.warnings.append(step)
            self._reporter.warning(step, str(error), signature=signature)
            return signature

        self.fail(step, error)

    def fail(self, step: StepId, error: BaseException) -> NoReturn:
        """Record a fatal error against ``step`` and abort the run."""
        self._result.state = RunState.FAILED
        self._reporter.error(step, str(error))
        raise SettlementAborted(step=step, cause=error, result=self._result) from error
