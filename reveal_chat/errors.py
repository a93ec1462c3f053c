from __future__ import annotations

from typing import TYPE_CHECKING

from reveal_chat.models import ErrorKind

if TYPE_CHECKING:
    from reveal_chat.models import ClassifiedError, Message


class ChatError(Exception):
    kind: ErrorKind | None = None

    def __init__(self, message: str, kind: ErrorKind | None = None):
        super().__init__(message)
        if kind is not None:
            self.kind = kind

    @property
    def reason(self) -> str:
        return str(self)


class ValidationError(ChatError):
    kind = ErrorKind.VALIDATION


class TransientError(ChatError):
    kind = ErrorKind.UNKNOWN


class TerminalError(ChatError):
    kind = ErrorKind.AUTHORIZATION


class StaleReadTimeout(ChatError):
    def __init__(self, message: str, record: "Message", attempts: int):
        super().__init__(message)
        self.record = record
        self.attempts = attempts


class AccessDenied(ChatError):
    kind = ErrorKind.AUTHORIZATION


class NotFound(ChatError):
    kind = ErrorKind.VALIDATION


class InFlightError(ChatError):
    kind = ErrorKind.VALIDATION


class SendFailed(ChatError):
    def __init__(self, classified: "ClassifiedError"):
        super().__init__(classified.reason, classified.kind)
        self.classified = classified
