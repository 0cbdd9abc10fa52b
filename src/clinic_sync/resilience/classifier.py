"""Integration error taxonomy.

Maps a raw failure (exception, message, or HTTP status code) plus the
originating service tag onto an ErrorKind with a retryability flag and a
default retry delay hint. Order of checks: network/timeout, rate limit,
authentication, then service-specific rules, then ServiceUnavailable.
"""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import httpx

from src.clinic_sync.resilience.rate_limiter import RateLimitExceeded


class ErrorKind(str, Enum):
    NETWORK_TIMEOUT = "NetworkTimeout"
    RATE_LIMITED = "RateLimited"
    AUTH_FAILURE = "AuthFailure"
    PAYMENT_PROCESSING = "PaymentProcessing"
    MESSAGE_DELIVERY = "MessageDelivery"
    AI_ANALYSIS_UNAVAILABLE = "AIAnalysisUnavailable"
    FILE_UPLOAD = "FileUpload"
    SERVICE_UNAVAILABLE = "ServiceUnavailable"


USER_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.NETWORK_TIMEOUT: "Network connection issue. Please check your internet connection.",
    ErrorKind.RATE_LIMITED: "Service is temporarily busy. Please try again in a moment.",
    ErrorKind.AUTH_FAILURE: "Authentication failed. Please check your credentials.",
    ErrorKind.PAYMENT_PROCESSING: "Payment processing issue. Please try again.",
    ErrorKind.MESSAGE_DELIVERY: "Message delivery issue. We'll try again shortly.",
    ErrorKind.AI_ANALYSIS_UNAVAILABLE: "AI analysis temporarily unavailable. Please try again.",
    ErrorKind.FILE_UPLOAD: "File upload failed. Please try again.",
    ErrorKind.SERVICE_UNAVAILABLE: "Service temporarily unavailable. Please try again.",
}

PERMANENT_USER_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.PAYMENT_PROCESSING: "Payment was declined. Please check your payment method.",
    ErrorKind.MESSAGE_DELIVERY: "Invalid destination address. Please check it and try again.",
    ErrorKind.FILE_UPLOAD: "File is too large. Please choose a smaller file.",
}

NETWORK_TIMEOUT_DELAY = 5.0
RATE_LIMIT_DEFAULT_DELAY = 60.0

# Advisory per-kind waits. Only RateLimited falls back to its default as the
# effective retry_after; other kinds follow the coordinator backoff.
DEFAULT_DELAYS: dict[ErrorKind, float] = {
    ErrorKind.NETWORK_TIMEOUT: NETWORK_TIMEOUT_DELAY,
    ErrorKind.RATE_LIMITED: RATE_LIMIT_DEFAULT_DELAY,
}

_NETWORK_MARKERS = ("timeout", "timed out", "network", "econnreset", "enotfound", "connection reset", "connecterror")
_RATE_LIMIT_MARKERS = ("rate limit", "429", "too many requests")
_AUTH_MARKERS = ("401", "403", "unauthorized", "forbidden", "invalid credentials")

_PAYMENT_SERVICES = ("stripe", "stripe-webhook", "stripe-subscription", "payments")
_MESSAGE_SERVICES = ("twilio", "twilio-sms", "twilio-whatsapp", "sms", "email")
_AI_SERVICES = ("azure-ai", "azure-ai-sentiment", "azure-ai-keyphrases", "ai-analysis")
_UPLOAD_SERVICES = ("file-upload",)

_PERMANENT_PAYMENT = ("card_declined", "declined", "invalid payment method")
_PERMANENT_MESSAGE = ("invalid number", "invalid phone", "invalid address", "malformed")
_PERMANENT_UPLOAD = ("file too large", "payload too large", "413")

_RETRY_AFTER_RE = re.compile(r"retry[- ]after[:= ]*(\d+(?:\.\d+)?)", re.IGNORECASE)


@dataclass
class ClassifiedError:
    """A raw failure mapped onto the taxonomy.

    ``retry_after`` is an explicit wait the coordinator must honor (a server
    Retry-After, or the RateLimited default). ``default_delay`` is the
    kind's advisory hint and never overrides backoff.
    """

    kind: ErrorKind
    service: str
    message: str
    retryable: bool
    retry_after: float | None = None
    default_delay: float | None = None
    status_code: int | None = None
    context: dict[str, Any] = field(default_factory=dict)
    user_message: str = ""


def _status_code_of(error: BaseException | None) -> int | None:
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    return None


def _server_retry_after(error: BaseException | None, message: str) -> float | None:
    if isinstance(error, RateLimitExceeded) and error.retry_after is not None:
        return float(error.retry_after)
    if isinstance(error, httpx.HTTPStatusError):
        header = error.response.headers.get("Retry-After")
        if header:
            try:
                return float(header)
            except ValueError:
                pass
    match = _RETRY_AFTER_RE.search(message)
    return float(match.group(1)) if match else None


def _contains(text: str, markers: tuple[str, ...]) -> bool:
    return any(m in text for m in markers)


class ErrorClassifier:
    """Stateless mapper from raw failures to ClassifiedError."""

    def classify(
        self,
        error: BaseException | str,
        service: str,
        status_code: int | None = None,
        context: dict[str, Any] | None = None,
    ) -> ClassifiedError:
        exc = error if isinstance(error, BaseException) else None
        message = str(error) or type(error).__name__
        code = status_code if status_code is not None else _status_code_of(exc)
        text = message.lower()
        if code is not None:
            text = f"{text} {code}"

        kind, retryable, retry_after = self._match(exc, text, service, message, code)

        user_message = USER_MESSAGES[kind]
        if not retryable and kind in PERMANENT_USER_MESSAGES:
            user_message = PERMANENT_USER_MESSAGES[kind]

        return ClassifiedError(
            kind=kind,
            service=service,
            message=message,
            retryable=retryable,
            retry_after=retry_after,
            default_delay=DEFAULT_DELAYS.get(kind),
            status_code=code,
            context=dict(context or {}),
            user_message=user_message,
        )

    def _match(
        self,
        exc: BaseException | None,
        text: str,
        service: str,
        message: str,
        code: int | None,
    ) -> tuple[ErrorKind, bool, float | None]:
        if self._is_network_error(exc, text):
            return ErrorKind.NETWORK_TIMEOUT, True, None

        if isinstance(exc, RateLimitExceeded) or code == 429 or _contains(text, _RATE_LIMIT_MARKERS):
            retry_after = _server_retry_after(exc, message)
            return ErrorKind.RATE_LIMITED, True, retry_after or RATE_LIMIT_DEFAULT_DELAY

        if code in (401, 403) or _contains(text, _AUTH_MARKERS):
            return ErrorKind.AUTH_FAILURE, False, None

        tag = service.lower()
        if tag in _PAYMENT_SERVICES:
            return ErrorKind.PAYMENT_PROCESSING, not _contains(text, _PERMANENT_PAYMENT), None
        if tag in _MESSAGE_SERVICES:
            return ErrorKind.MESSAGE_DELIVERY, not _contains(text, _PERMANENT_MESSAGE), None
        if tag in _AI_SERVICES:
            return ErrorKind.AI_ANALYSIS_UNAVAILABLE, True, None
        if tag in _UPLOAD_SERVICES:
            return ErrorKind.FILE_UPLOAD, not _contains(text, _PERMANENT_UPLOAD), None

        return ErrorKind.SERVICE_UNAVAILABLE, True, None

    @staticmethod
    def _is_network_error(exc: BaseException | None, text: str) -> bool:
        if isinstance(exc, (asyncio.TimeoutError, TimeoutError, httpx.TimeoutException, httpx.NetworkError)):
            return True
        return _contains(text, _NETWORK_MARKERS)
