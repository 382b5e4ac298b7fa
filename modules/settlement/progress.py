from __future__ import annotations

import logging
from typing import Callable

from modules.common import log_event

from .types import EventKind, ProgressEvent, StepId

ProgressCallback = Callable[[ProgressEvent], None]

_LOG_LEVELS: dict[EventKind, str] = {
    "start": "info",
    "success": "info",
    "warning": "warning",
    "error": "error",
}


class ProgressReporter:
    """Collects step events for one run and forwards them to an optional callback."""

    def __init__(self, *, logger: logging.Logger, on_progress: ProgressCallback | None = None) -> None:
        self._logger = logger
        self._on_progress = on_progress
        self._events: list[ProgressEvent] = []
        self._started: set[StepId] = set()

    @property
    def events(self) -> tuple[ProgressEvent, ...]:
        return tuple(self._events)

    @property
    def has_warnings(self) -> bool:
        return any(event.kind == "warning" for event in self._events)

    def start(self, step: StepId) -> None:
        if step in self._started:
            raise ValueError(f"step {step.value} was already started in this run")
        self._started.add(step)
        self._emit(ProgressEvent(kind="start", step=step))

    def success(self, step: StepId, signature: str) -> None:
        self._emit(ProgressEvent(kind="success", step=step, signature=signature))

    def warning(self, step: StepId, message: str, signature: str | None = None) -> None:
        self._emit(ProgressEvent(kind="warning", step=step, signature=signature, message=message))

    def error(self, step: StepId, message: str) -> None:
        self._emit(ProgressEvent(kind="error", step=step, message=message))

    def _emit(self, event: ProgressEvent) -> None:
        self._events.append(event)
        log_event(
            self._logger,
            level=_LOG_LEVELS[event.kind],
            event=f"step_{event.kind}",
            message=f"Step {event.step.value}: {event.kind}",
            step=event.step.value,
            tx_signature=event.signature,
            detail=event.message,
        )
        if self._on_progress is None:
            return
        try:
            self._on_progress(event)
        except Exception as error:
            log_event(
                self._logger,
                level="warning",
                event="progress_callback_failed",
                message="Progress callback raised; event kept and run continues",
                step=event.step.value,
                kind=event.kind,
                error=str(error),
                error_type=type(error).__name__,
            )
