"""Error taxonomy and the bounded error log used by the orchestrator."""

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)


class RecommendationError(Exception):
    """Base class for every error raised by the recommendation core."""

    kind = "recommendation_error"
    retryable = False

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        self.message = message
        self.context = context or {}
        super().__init__(message)


class InsufficientDataError(RecommendationError):
    """Unknown component, user or specification. Recovered with a fallback."""

    kind = "insufficient_data"


class ExternalServiceError(RecommendationError):
    """A dependency (catalog, store, AI service) failed or timed out."""

    kind = "external_service"
    retryable = True


class ValidationError(RecommendationError, ValueError):
    """Rejected input. Never retried, never coerced, always surfaced to the caller."""

    kind = "validation"


@dataclass
class ErrorRecord:
    """Structured record of an absorbed error."""

    kind: str
    message: str
    context: dict[str, Any]
    retryable: bool
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "message": self.message,
            "context": self.context,
            "retryable": self.retryable,
            "timestamp": self.timestamp,
        }


def classify(error: BaseException) -> tuple[str, bool]:
    """Map an exception to (kind, retryable).

    Our own errors carry their kind; anything else came out of a port
    (repository, store, HTTP client) and counts as an external service failure.
    """
    if isinstance(error, RecommendationError):
        return error.kind, error.retryable
    return ExternalServiceError.kind, True


class ErrorLog:
    """Bounded in-memory log of absorbed errors with simple health statistics."""

    def __init__(self, max_size: int = 1000, clock=time.time):
        self._records: deque[ErrorRecord] = deque(maxlen=max_size)
        self._clock = clock

    def record(self, error: BaseException, context: dict[str, Any]) -> ErrorRecord:
        """Store an error and log it at a level matching its kind."""
        kind, retryable = classify(error)
        message = str(error) or type(error).__name__
        merged = {**getattr(error, "context", {}), **context}
        rec = ErrorRecord(kind, message, merged, retryable, self._clock())
        self._records.append(rec)

        if kind == InsufficientDataError.kind:
            logger.info(f"{kind}: {message} (operation={merged.get('operation')})")
        else:
            logger.warning(
                f"{kind}: {type(error).__name__}: {message} (operation={merged.get('operation')})",
                extra={"error": rec.to_dict()},
            )
        return rec

    def recent(self, limit: int = 10) -> list[ErrorRecord]:
        return list(self._records)[-limit:]

    def stats(self) -> dict[str, Any]:
        """Totals by kind plus the number of errors in the last hour."""
        one_hour_ago = self._clock() - 3600
        by_kind: dict[str, int] = {}
        for rec in self._records:
            by_kind[rec.kind] = by_kind.get(rec.kind, 0) + 1
        last_hour = [r for r in self._records if r.timestamp > one_hour_ago]
        return {
            "total_errors": len(self._records),
            "errors_by_kind": by_kind,
            "errors_last_hour": len(last_hour),
            "recent": [r.to_dict() for r in last_hour[-10:]],
        }

    def clear(self) -> None:
        self._records.clear()

    def __len__(self) -> int:
        return len(self._records)
