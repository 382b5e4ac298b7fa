from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .types import PipelineResult, StepId


class SettlementError(RuntimeError):
    pass


class DecodeError(SettlementError):
    """A server-issued instruction or transaction could not be decoded."""


class NoAttestationData(SettlementError):
    """The oracle returned nothing usable for the requested feed and time."""


class PhaseBuildError(SettlementError):
    pass


class WalletUnsupported(SettlementError):
    pass


class IncompleteSignature(SettlementError):
    def __init__(self, message: str, *, slot_index: int) -> None:
        super().__init__(message)
        self.slot_index = slot_index


class SubmissionError(SettlementError):
    def __init__(self, message: str, *, signature: str | None = None) -> None:
        super().__init__(message)
        self.signature = signature


class TimedOut(SubmissionError):
    pass


class BackendError(SettlementError):
    def __init__(self, message: str, *, status: int | None = None, endpoint: str | None = None) -> None:
        super().__init__(message)
        self.status = status
        self.endpoint = endpoint


class SettlementAborted(SettlementError):
    """A step failed fatally; ``result`` holds what landed before it."""

    def __init__(self, *, step: "StepId", cause: BaseException, result: "PipelineResult") -> None:
        super().__init__(f"[{step.value}] {cause}")
        self.step = step
        self.cause = cause
        self.result = result

    @property
    def last_signature(self) -> str | None:
        return self.result.signatures[-1] if self.result.signatures else None
