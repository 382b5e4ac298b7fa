from __future__ import annotations

from .types import Classification

ALREADY_PROCESSED_MARKERS = (
    "already been processed",
    "already processed",
    "alreadyprocessed",
)


class FailureClassifier:
    """Decides whether a failed submission still had its on-ledger effect.

    Only duplicate submissions count as soft; the match is on the error text
    because the RPC reports them as a preflight message, not a typed code.
    """

    def __init__(self, markers: tuple[str, ...] = ALREADY_PROCESSED_MARKERS) -> None:
        self._markers = tuple(marker.lower() for marker in markers)

    def classify(self, error: BaseException) -> Classification:
        text = self._describe(error)
        if any(marker in text for marker in self._markers):
            return "soft"
        return "fatal"

    @staticmethod
    def _describe(error: BaseException) -> str:
        parts = [str(error), repr(error)]
        cause = error.__cause__
        if cause is not None:
            parts.append(str(cause))
        return " ".join(parts).lower()
