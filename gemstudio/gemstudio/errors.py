"""Exception types and the transient-error classifier shared by the retry layer."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Optional

TRANSIENT_STATUS_CODES = (500, 503)
TRANSIENT_MARKERS = re.compile(r"\b(unavailable|overloaded|internal)\b", re.IGNORECASE)
TRANSIENT_STATUS_TEXT = re.compile(r"\b50[03]\b")


class GemStudioError(Exception):
    """Base class for errors raised by gemstudio."""


class RemoteServiceError(GemStudioError):
    """The generation service answered with an error or could not be reached.

    Args:
        status (Optional[int]): HTTP status code, ``None`` for transport failures.
        message (str): Human-readable message from the service.
        reason (Optional[str]): Service status string such as ``UNAVAILABLE``.
        body (Any): Parsed error payload, kept for diagnostics.
    """

    def __init__(self, status: Optional[int], message: str, reason: Optional[str] = None, body: Any = None):
        self.status = status
        self.message = message
        self.reason = reason
        self.body = body
        prefix = f"{status} {reason}" if reason else f"{status}"
        super().__init__(f"{prefix}: {message}" if status is not None else message)


class PermissionDeniedError(RemoteServiceError):
    """HTTP 403 from the service; the API key lacks access to the model."""


class NoImageGeneratedError(GemStudioError):
    """The service responded without an image part."""


class InvalidPlanError(GemStudioError):
    """An analysis response could not be parsed as JSON."""


@dataclass(frozen=True)
class ErrorClassification:
    transient: bool
    status: Optional[int] = None


def _status_of(exc: BaseException) -> Optional[int]:
    """Return the first integer status code the exception exposes, if any."""

    candidates = [getattr(exc, name, None) for name in ("status", "status_code", "code")]
    response = getattr(exc, "response", None)
    if response is not None:
        candidates.append(getattr(response, "status", None))
        candidates.append(getattr(response, "status_code", None))
    for value in candidates:
        if isinstance(value, bool):
            continue
        if isinstance(value, int):
            return value
        if isinstance(value, str) and value.isdigit():
            return int(value)
    return None


def classify_error(exc: BaseException) -> ErrorClassification:
    """Decide whether ``exc`` is worth retrying.

    Remote error shapes are not uniform, so the status code, the ``message``
    and ``reason`` attributes and the string dump of the exception are all
    searched (case-insensitively) for overload or internal-fault words. A
    bare 500 or 503 in the text only counts when the exception carries no
    status code of its own.

    Args:
        exc (BaseException): Error caught from a remote call.

    Returns:
        ErrorClassification: ``transient`` plus the status code that was found.
    """
    status = _status_of(exc)
    if status in TRANSIENT_STATUS_CODES:
        return ErrorClassification(True, status)
    if status is not None and 400 <= status < 500:
        return ErrorClassification(False, status)

    haystack = " ".join(
        str(part)
        for part in (
            getattr(exc, "message", ""),
            getattr(exc, "reason", ""),
            exc,
            repr(exc),
        )
        if part
    )
    transient = bool(TRANSIENT_MARKERS.search(haystack))
    if not transient and status is None:
        # a bare 500/503 only counts as a whole number, not inside a port or id
        transient = bool(TRANSIENT_STATUS_TEXT.search(haystack))
    return ErrorClassification(transient, status)


def is_transient_error(exc: BaseException) -> bool:
    return classify_error(exc).transient


__all__ = [
    "ErrorClassification",
    "GemStudioError",
    "InvalidPlanError",
    "NoImageGeneratedError",
    "PermissionDeniedError",
    "RemoteServiceError",
    "classify_error",
    "is_transient_error",
]
