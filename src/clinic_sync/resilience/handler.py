"""Single entry point for integration failures.

Classifies the failure, logs it with its service tag, keeps a bounded
history for operator stats, and hands retryable errors to the
RetryCoordinator. Non-retryable errors are logged for manual remediation.
"""

from __future__ import annotations

from collections import Counter, deque
from datetime import datetime, timezone
from typing import Any

import structlog

from src.clinic_sync.core.monitoring import integration_errors_total
from src.clinic_sync.resilience.classifier import ClassifiedError, ErrorClassifier
from src.clinic_sync.resilience.retry import RetryCoordinator, RetryEntry
from src.clinic_sync.resilience.signals import RetrySignal

logger = structlog.get_logger(__name__)


class IntegrationErrorHandler:
    def __init__(
        self,
        coordinator: RetryCoordinator,
        classifier: ErrorClassifier | None = None,
        history_size: int = 100,
    ) -> None:
        self._coordinator = coordinator
        self._classifier = classifier or ErrorClassifier()
        self._history: deque[tuple[datetime, ClassifiedError]] = deque(maxlen=history_size)

    @property
    def coordinator(self) -> RetryCoordinator:
        return self._coordinator

    def handle(
        self,
        error: BaseException | str,
        service: str,
        context: dict[str, Any] | None = None,
        status_code: int | None = None,
    ) -> ClassifiedError:
        """Classify ``error`` and route it. Never raises."""
        classified = self.record(error, service, context=context, status_code=status_code)
        self.route(classified)
        return classified

    def record(
        self,
        error: BaseException | str,
        service: str,
        context: dict[str, Any] | None = None,
        status_code: int | None = None,
    ) -> ClassifiedError:
        """Classify and log ``error`` without scheduling anything.

        Callers that batch failures pass the result to ``route`` or
        ``route_retry_failure`` once per batch.
        """
        classified = self._classifier.classify(error, service, status_code=status_code, context=context)
        self._record(classified)
        return classified

    def route(self, classified: ClassifiedError) -> RetryEntry | None:
        """Schedule a retryable error; log the rest for manual remediation."""
        if classified.retryable:
            return self._coordinator.schedule(classified)
        logger.error(
            "integration_error.manual_remediation",
            service=classified.service,
            kind=classified.kind.value,
            error=classified.message,
            user_message=classified.user_message,
            **classified.context,
        )
        return None

    def handle_retry_failure(self, signal: RetrySignal, error: BaseException | str) -> ClassifiedError:
        """Route a failure of the operation that ``signal`` re-ran."""
        classified = self.record(error, signal.service, context=signal.context)
        self.route_retry_failure(signal, classified)
        return classified

    def route_retry_failure(self, signal: RetrySignal, classified: ClassifiedError) -> RetryEntry | None:
        return self._coordinator.reschedule(signal, classified)

    def _record(self, classified: ClassifiedError) -> None:
        self._history.append((datetime.now(timezone.utc), classified))
        integration_errors_total.labels(service=classified.service, kind=classified.kind.value).inc()
        logger.warning(
            "integration_error.classified",
            service=classified.service,
            kind=classified.kind.value,
            retryable=classified.retryable,
            retry_after=classified.retry_after,
            default_delay=classified.default_delay,
            status_code=classified.status_code,
            error=classified.message,
        )

    def stats(self) -> dict[str, Any]:
        by_kind = Counter(c.kind.value for _, c in self._history)
        by_service = Counter(c.service for _, c in self._history)
        recent = [
            {
                "at": at.isoformat(),
                "service": c.service,
                "kind": c.kind.value,
                "retryable": c.retryable,
                "message": c.user_message,
            }
            for at, c in list(self._history)[-10:]
        ]
        return {
            "total_errors": len(self._history),
            "by_kind": dict(by_kind),
            "by_service": dict(by_service),
            "pending_retries": len(self._coordinator),
            "recent": recent,
        }

    def clear_history(self) -> None:
        self._history.clear()
