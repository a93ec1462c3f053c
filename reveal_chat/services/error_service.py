import asyncio
import logging
import re

from reveal_chat.errors import ChatError
from reveal_chat.models import (
    RETRYABLE_KINDS,
    ClassifiedError,
    ErrorKind,
    OrchestratorSettings,
)

logger = logging.getLogger(__name__)

_STATUS_RE = re.compile(r"\b(?:http|status)[ :=]*([1-5]\d\d)\b")

_RATE_LIMIT_MARKERS = ("rate limit", "too many requests", "quota exceeded")
_AUTH_MARKERS = (
    "unauthorized",
    "forbidden",
    "access denied",
    "permission denied",
    "invalid api key",
    "missing api key",
    "session expired",
    "token expired",
    "not authenticated",
)
_VALIDATION_MARKERS = (
    "validation failed",
    "invalid input",
    "invalid data",
    "invalid request",
    "context length",
)
_NETWORK_MARKERS = (
    "timed out",
    "timeout",
    "network",
    "connection",
    "offline",
    "no internet",
    "temporarily unavailable",
    "request failed",
    "server error",
)

_USER_MESSAGES = {
    ErrorKind.NETWORK: "Network problem while contacting the service.",
    ErrorKind.AUTHORIZATION: "Authorization failed. Please sign in again.",
    ErrorKind.VALIDATION: "The request was rejected as invalid.",
    ErrorKind.RATE_LIMITED: "Too many requests. Please wait a moment.",
    ErrorKind.UNKNOWN: "Something went wrong.",
}


class MessageErrorHandler:
    def __init__(self, settings: OrchestratorSettings | None = None):
        self.settings = settings or OrchestratorSettings()

    def classify(self, exc: BaseException) -> ClassifiedError:
        text = str(exc).strip() or exc.__class__.__name__
        status = self._extract_status(exc, text)

        if isinstance(exc, ChatError) and exc.kind is not None:
            kind = exc.kind
        elif status is not None:
            kind = self._kind_for_status(status)
        elif isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
            kind = ErrorKind.NETWORK
        else:
            kind = self._kind_for_text(text.lower())

        if kind == ErrorKind.UNKNOWN:
            logger.warning(
                "Unclassified failure %s: %s",
                exc.__class__.__name__,
                text,
                exc_info=exc,
            )
        return ClassifiedError(
            kind=kind,
            reason=text,
            retryable=kind in RETRYABLE_KINDS,
            status=status,
        )

    def backoff_delay(self, failures: int, kind: ErrorKind) -> float:
        step = max(0, failures - 1)
        delay = (
            self.settings.retry_base_delay + step * self.settings.retry_delay_increment
        )
        if kind == ErrorKind.RATE_LIMITED:
            delay *= self.settings.rate_limit_multiplier
        return delay

    def user_message(self, classified: ClassifiedError) -> str:
        prefix = _USER_MESSAGES.get(
            classified.kind, _USER_MESSAGES[ErrorKind.UNKNOWN]
        )
        if classified.reason and classified.reason not in prefix:
            return f"{prefix} ({classified.reason[:160]})"
        return prefix

    def _extract_status(self, exc: BaseException, text: str) -> int | None:
        for attr in ("status_code", "status", "code"):
            value = getattr(exc, attr, None)
            if isinstance(value, int) and 100 <= value <= 599:
                return value
        match = _STATUS_RE.search(text.lower())
        if match:
            return int(match.group(1))
        return None

    def _kind_for_status(self, status: int) -> ErrorKind:
        if status == 429:
            return ErrorKind.RATE_LIMITED
        if status in (401, 403):
            return ErrorKind.AUTHORIZATION
        if status in (408, 425):
            return ErrorKind.NETWORK
        if status >= 500:
            return ErrorKind.NETWORK
        if 400 <= status < 500:
            return ErrorKind.VALIDATION
        return ErrorKind.UNKNOWN

    def _kind_for_text(self, lowered: str) -> ErrorKind:
        if any(marker in lowered for marker in _RATE_LIMIT_MARKERS):
            return ErrorKind.RATE_LIMITED
        if any(marker in lowered for marker in _AUTH_MARKERS):
            return ErrorKind.AUTHORIZATION
        if any(marker in lowered for marker in _VALIDATION_MARKERS):
            return ErrorKind.VALIDATION
        if any(marker in lowered for marker in _NETWORK_MARKERS):
            return ErrorKind.NETWORK
        return ErrorKind.UNKNOWN
