from __future__ import annotations

import logging
import unittest
from unittest.mock import AsyncMock, MagicMock

from modules.settlement.classifier import FailureClassifier
from modules.settlement.errors import SettlementAborted, SubmissionError, TimedOut
from modules.settlement.progress import ProgressReporter
from modules.settlement.steps import StepRunner
from modules.settlement.types import PipelineResult, ProgressEvent, RunState, StepId, TransactionPhase


class FailureClassifierTests(unittest.TestCase):
    def setUp(self) -> None:
        self.classifier = FailureClassifier()

    def test_already_processed_variants_are_soft(self) -> None:
        for text in (
            "Transaction simulation failed: This transaction has already been processed",
            "RPC error: transaction already processed",
            "TransactionErrorAlreadyProcessed",
        ):
            with self.subTest(text=text):
                self.assertEqual(self.classifier.classify(SubmissionError(text)), "soft")

    def test_wrapped_cause_is_inspected(self) -> None:
        try:
            try:
                raise RuntimeError("This transaction has already been processed")
            except RuntimeError as inner:
                raise SubmissionError("[resolve] send failed") from inner
        except SubmissionError as error:
            self.assertEqual(self.classifier.classify(error), "soft")

    def test_everything_else_is_fatal(self) -> None:
        for error in (
            SubmissionError("Blockhash not found"),
            TimedOut("not confirmed within 45s"),
            ValueError("bad input"),
        ):
            with self.subTest(error=error):
                self.assertEqual(self.classifier.classify(error), "fatal")


class ProgressReporterTests(unittest.TestCase):
    def setUp(self) -> None:
        self.received: list[ProgressEvent] = []
        self.reporter = ProgressReporter(logger=logging.getLogger("test.progress"), on_progress=self.received.append)

    def test_events_are_recorded_and_forwarded_in_order(self) -> None:
        self.reporter.start(StepId.POST_WRITE)
        self.reporter.success(StepId.POST_WRITE, "sig-1")
        self.reporter.start(StepId.RESOLVE)
        self.reporter.warning(StepId.RESOLVE, "already processed", signature="sig-2")

        self.assertEqual(list(self.reporter.events), self.received)
        self.assertEqual(
            [(event.kind, event.step) for event in self.received],
            [
                ("start", StepId.POST_WRITE),
                ("success", StepId.POST_WRITE),
                ("start", StepId.RESOLVE),
                ("warning", StepId.RESOLVE),
            ],
        )
        self.assertTrue(self.reporter.has_warnings)
        self.assertEqual(
            self.received[-1].to_dict(),
            {"kind": "warning", "step": "resolve", "signature": "sig-2", "message": "already processed"},
        )

    def test_step_id_cannot_start_twice(self) -> None:
        self.reporter.start(StepId.BET)
        with self.assertRaises(ValueError):
            self.reporter.start(StepId.BET)

    def test_no_warnings_by_default(self) -> None:
        self.reporter.error(StepId.FETCH, "boom")
        self.assertFalse(self.reporter.has_warnings)

    def test_callback_failure_is_logged_and_event_kept(self) -> None:
        def broken_callback(event: ProgressEvent) -> None:
            raise RuntimeError("display went away")

        logger = logging.getLogger("test.progress.broken")
        reporter = ProgressReporter(logger=logger, on_progress=broken_callback)
        with self.assertLogs(logger, level="WARNING") as captured:
            reporter.start(StepId.RESOLVE)
            reporter.error(StepId.RESOLVE, "boom")

        self.assertEqual([event.kind for event in reporter.events], ["start", "error"])
        self.assertEqual(
            [record.event for record in captured.records],  # type: ignore[attr-defined]
            ["progress_callback_failed", "step_error", "progress_callback_failed"],
        )


class StepRunnerTests(unittest.IsolatedAsyncioTestCase):
    def _runner(self, error: Exception) -> tuple[StepRunner, PipelineResult, ProgressReporter]:
        logger = logging.getLogger("test.steps")
        submitter = AsyncMock()
        submitter.submit.side_effect = error
        result = PipelineResult()
        reporter = ProgressReporter(logger=logger)
        runner = StepRunner(logger=logger, submitter=submitter, reporter=reporter, result=result)
        return runner, result, reporter

    def _phase(self) -> TransactionPhase:
        return TransactionPhase(step=StepId.RESOLVE, transaction=MagicMock())

    async def test_send_side_already_processed_is_soft(self) -> None:
        runner, result, reporter = self._runner(
            SubmissionError("This transaction has already been processed", signature="sig-9")
        )

        signature = await runner.run(self._phase(), MagicMock())

        self.assertEqual(signature, "sig-9")
        self.assertEqual(result.warnings, [StepId.RESOLVE])
        self.assertEqual(result.signatures, ["sig-9"])
        self.assertEqual([event.kind for event in reporter.events], ["start", "warning"])

    async def test_wallet_side_error_is_never_soft(self) -> None:
        runner, result, reporter = self._runner(RuntimeError("User rejected: request already processed by wallet"))

        with self.assertRaises(SettlementAborted) as ctx:
            await runner.run(self._phase(), MagicMock())

        self.assertEqual(ctx.exception.step, StepId.RESOLVE)
        self.assertEqual(result.state, RunState.FAILED)
        self.assertEqual(result.warnings, [])
        self.assertEqual([event.kind for event in reporter.events], ["start", "error"])


if __name__ == "__main__":
    unittest.main()
