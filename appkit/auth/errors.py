from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


# ----------------------------
# Failure codes
# ----------------------------

AJAX_FAILED = "ajax:failed"
NO_RESULT = "answer:no-result"
RESULT_ERROR = "answer:result-error"
WRONG_DATA = "answer:wrong-data"
WRONG_HMAC = "answer:wrong-hmac"
NO_PUBLIC_KEY = "answer:no-public-key"
ENCRYPT_FAILED = "encrypt:failed"


class HandshakeError(Exception):
    """A handshake step was rejected. `code` is one of the failure codes above."""

    def __init__(self, code: str, message: Optional[str] = None):
        super().__init__(message or code)
        self.code = code
        self.message = message


class TransportError(Exception):
    """
    Network-level failure of a single request.

    kind:
      - "timeout": no answer within the configured timeout
      - "http": non-2xx status
      - "parsererror": body is not JSON
      - "error": anything else httpx raised (DNS, connection reset, ...)
    """

    def __init__(
        self,
        kind: str,
        detail: str,
        *,
        url: str,
        status_code: Optional[int] = None,
    ):
        super().__init__(f"{kind}: {detail}")
        self.kind = kind
        self.detail = detail
        self.url = url
        self.status_code = status_code


# ----------------------------
# Error reporting sink
# ----------------------------

@dataclass(frozen=True)
class ErrorEvent:
    category: str
    origin: str
    message: str
    context: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class ErrorReporter(Protocol):
    def report(self, event: ErrorEvent) -> None: ...


class LoggingErrorReporter:
    def __init__(self, log: Optional[logging.Logger] = None):
        self._log = log or logger

    def report(self, event: ErrorEvent) -> None:
        self._log.warning(
            "[%s] %s: %s (%s)", event.category, event.origin, event.message, event.context
        )


class CollectingErrorReporter:
    """Keeps every reported event in memory. Handy for tests and debugging."""

    def __init__(self):
        self.events: list[ErrorEvent] = []

    def report(self, event: ErrorEvent) -> None:
        self.events.append(event)
