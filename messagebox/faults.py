"""Error taxonomy and fault classification for messaging actions.

Every failure surfaced to callers is a :class:`MessagingError` carrying a
stable ``code`` (see :class:`ErrorCode`) and a :class:`FaultKind` tag from a
closed set.  Raw exceptions coming from the HTTP client or the browser are
normalised exactly once with :func:`wrap_fault` at the boundary where they are
caught; the classifier itself is pure and never performs I/O.
"""

from __future__ import annotations

import errno
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, Iterator, Optional

MAX_DETAILS = 800
MAX_TIMEOUT_DETAILS = 300


class FaultKind(str, Enum):
    PROXY_TUNNEL = "proxy-tunnel"
    DETACHED_SESSION = "detached-session"
    AUTH_REQUIRED = "auth-required"
    UI_NOT_READY = "ui-not-ready"
    ACTION_TIMEOUT = "action-timeout"
    UNKNOWN = "unknown"


class ErrorCode(str, Enum):
    AUTH_REQUIRED = "AUTH_REQUIRED"
    CONVERSATION_ID_REQUIRED = "CONVERSATION_ID_REQUIRED"
    CONSENT_REQUIRED = "CONSENT_REQUIRED"
    MESSAGE_EMPTY = "MESSAGE_EMPTY"
    MESSAGE_INPUT_NOT_FOUND = "MESSAGE_INPUT_NOT_FOUND"
    MESSAGE_FILE_INPUT_NOT_FOUND = "MESSAGE_FILE_INPUT_NOT_FOUND"
    MESSAGE_SEND_BUTTON_NOT_READY = "MESSAGE_SEND_BUTTON_NOT_READY"
    DECLINE_BUTTON_NOT_FOUND = "DECLINE_BUTTON_NOT_FOUND"
    CONVERSATION_NOT_READY = "CONVERSATION_NOT_READY"
    MESSAGE_ACTION_TIMEOUT = "MESSAGE_ACTION_TIMEOUT"
    MESSAGE_SEND_NOT_CONFIRMED = "MESSAGE_SEND_NOT_CONFIRMED"
    MESSAGE_MEDIA_SEND_NOT_CONFIRMED = "MESSAGE_MEDIA_SEND_NOT_CONFIRMED"
    DECLINE_NOT_APPLIED = "DECLINE_NOT_APPLIED"
    PROXY_TUNNEL_CONNECTION_FAILED = "PROXY_TUNNEL_CONNECTION_FAILED"
    MESSAGEBOX_API_EMPTY = "MESSAGEBOX_API_EMPTY"
    BROWSER_SESSION_DETACHED = "BROWSER_SESSION_DETACHED"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


_CODE_KINDS: Dict[str, FaultKind] = {
    ErrorCode.AUTH_REQUIRED.value: FaultKind.AUTH_REQUIRED,
    ErrorCode.MESSAGE_ACTION_TIMEOUT.value: FaultKind.ACTION_TIMEOUT,
    ErrorCode.PROXY_TUNNEL_CONNECTION_FAILED.value: FaultKind.PROXY_TUNNEL,
    ErrorCode.CONVERSATION_NOT_READY.value: FaultKind.UI_NOT_READY,
    ErrorCode.BROWSER_SESSION_DETACHED.value: FaultKind.DETACHED_SESSION,
}

_KIND_CODES: Dict[FaultKind, ErrorCode] = {
    FaultKind.PROXY_TUNNEL: ErrorCode.PROXY_TUNNEL_CONNECTION_FAILED,
    FaultKind.AUTH_REQUIRED: ErrorCode.AUTH_REQUIRED,
    FaultKind.ACTION_TIMEOUT: ErrorCode.MESSAGE_ACTION_TIMEOUT,
    FaultKind.DETACHED_SESSION: ErrorCode.BROWSER_SESSION_DETACHED,
    FaultKind.UI_NOT_READY: ErrorCode.CONVERSATION_NOT_READY,
}

DETACHED_SESSION_PATTERNS = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"attempted to use detached frame",
        r"execution context was destroyed",
        r"cannot find context with specified id",
        r"target (page, context or browser )?(has been )?closed",
        r"session closed",
        r"most likely because of a navigation",
    )
)

PROXY_TUNNEL_PATTERNS = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"err_tunnel_connection_failed",
        r"err_proxy_connection_failed",
        r"err_no_supported_proxies",
        r"proxy connection failed",
        r"socks connection failed",
        r"socks proxy",
        r"tunneling socket could not be established",
        r"proxyconnect",
        r"proxy authentication required",
        r"econnrefused",
        r"ehostunreach",
        r"enetunreach",
        r"etimedout",
    )
)

PROXY_TUNNEL_CODES = frozenset(
    {
        "ERR_TUNNEL_CONNECTION_FAILED",
        "ERR_PROXY_CONNECTION_FAILED",
        "ERR_NO_SUPPORTED_PROXIES",
        "ECONNREFUSED",
        "ECONNRESET",
        "EHOSTUNREACH",
        "ENETUNREACH",
        "ETIMEDOUT",
        "ESOCKETTIMEDOUT",
        ErrorCode.PROXY_TUNNEL_CONNECTION_FAILED.value,
    }
)

# Exception class names raised by the HTTP client when the proxy hop fails.
_PROXY_EXCEPTION_NAMES = frozenset({"ProxyError", "SOCKSError", "ProxyConnectionError"})

_TIMEOUT_PATTERN = re.compile(r"timeout \d+(\.\d+)?ms exceeded|timed out", re.IGNORECASE)

AUTH_STATUSES = frozenset({401, 403})
PROXY_AUTH_STATUS = 407


@dataclass(slots=True)
class Fault:
    """Classification attached to every surfaced error."""

    kind: FaultKind
    message: str
    details: str = ""
    cause: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "kind": self.kind.value,
            "message": self.message,
            "details": self.details,
        }
        if self.cause:
            payload["cause"] = self.cause
        return payload


class MessagingError(Exception):
    """Normalised error raised by every public messaging operation."""

    def __init__(
        self,
        code: ErrorCode | str,
        message: Optional[str] = None,
        *,
        kind: Optional[FaultKind] = None,
        details: str = "",
        original_message: str = "",
        cause: Optional[BaseException] = None,
        status: Optional[int] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        code_value = code.value if isinstance(code, ErrorCode) else str(code)
        super().__init__(message or code_value)
        self.code = code_value
        self.kind = kind or _CODE_KINDS.get(code_value, FaultKind.UNKNOWN)
        self.details = (details or "")[:MAX_DETAILS]
        self.original_message = original_message or str(self)
        self.cause = cause
        self.status = status
        self.data: Dict[str, Any] = dict(data or {})

    @property
    def fault(self) -> Fault:
        cause_message = error_message(self.cause) if self.cause is not None else None
        return Fault(kind=self.kind, message=str(self), details=self.details, cause=cause_message)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "code": self.code,
            "message": str(self),
            "fault": self.fault.to_dict(),
        }
        if self.original_message and self.original_message != str(self):
            payload["original_message"] = self.original_message
        if self.status is not None:
            payload["status"] = self.status
        if self.data:
            payload["data"] = self.data
        return payload


def error_message(error: Any) -> str:
    if error is None:
        return ""
    if isinstance(error, BaseException):
        text = getattr(error, "message", None)
        if isinstance(text, str) and text:
            return text
        text = str(error)
        return text or type(error).__name__
    return str(error)


def error_code(error: Any) -> str:
    """Return the transport-reported code of ``error`` if it has one."""

    code = getattr(error, "code", None)
    if isinstance(code, Enum):
        code = code.value
    if isinstance(code, str) and code:
        return code.upper()
    errno_value = getattr(error, "errno", None)
    if isinstance(errno_value, int) and errno_value in errno.errorcode:
        return errno.errorcode[errno_value]
    return ""


def error_status(error: Any) -> Optional[int]:
    status = getattr(error, "status", None)
    if isinstance(status, int):
        return status
    status = getattr(error, "status_code", None)
    if isinstance(status, int):
        return status
    try:
        response = getattr(error, "response", None)
    except RuntimeError:
        response = None
    status = getattr(response, "status_code", None)
    return status if isinstance(status, int) else None


def _cause_of(error: Any) -> Any:
    cause = getattr(error, "cause", None)
    if isinstance(cause, BaseException):
        return cause
    if isinstance(error, BaseException):
        return error.__cause__ or error.__context__
    return None


def _chain(error: Any, limit: int = 6) -> Iterator[Any]:
    seen: set[int] = set()
    current = error
    while current is not None and len(seen) < limit and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = _cause_of(current)


def _matches(patterns: Iterable[re.Pattern[str]], text: str) -> bool:
    return any(pattern.search(text) for pattern in patterns)


def _is_proxy_tunnel(item: Any) -> bool:
    if error_status(item) == PROXY_AUTH_STATUS:
        return True
    if error_code(item) in PROXY_TUNNEL_CODES:
        return True
    if type(item).__name__ in _PROXY_EXCEPTION_NAMES:
        return True
    return _matches(PROXY_TUNNEL_PATTERNS, error_message(item))


def _is_auth_required(item: Any) -> bool:
    return error_code(item) == ErrorCode.AUTH_REQUIRED.value or error_status(item) in AUTH_STATUSES


def _is_detached(item: Any) -> bool:
    if error_code(item) == ErrorCode.BROWSER_SESSION_DETACHED.value:
        return True
    return _matches(DETACHED_SESSION_PATTERNS, error_message(item))


def _is_timeout(item: Any) -> bool:
    if error_code(item) == ErrorCode.MESSAGE_ACTION_TIMEOUT.value:
        return True
    if isinstance(item, TimeoutError) or type(item).__name__ == "TimeoutError":
        return True
    return bool(_TIMEOUT_PATTERN.search(error_message(item)))


def _is_ui_not_ready(item: Any) -> bool:
    return error_code(item) == ErrorCode.CONVERSATION_NOT_READY.value


_CHECKS = (
    (FaultKind.PROXY_TUNNEL, _is_proxy_tunnel),
    (FaultKind.AUTH_REQUIRED, _is_auth_required),
    (FaultKind.DETACHED_SESSION, _is_detached),
    (FaultKind.ACTION_TIMEOUT, _is_timeout),
    (FaultKind.UI_NOT_READY, _is_ui_not_ready),
)


def classify_fault(error: Any) -> FaultKind:
    """Map a raised error to one tag of the closed fault taxonomy."""

    if error is None:
        return FaultKind.UNKNOWN
    if isinstance(error, MessagingError) and error.kind is not FaultKind.UNKNOWN:
        return error.kind
    chain = list(_chain(error))
    for kind, check in _CHECKS:
        if any(check(item) for item in chain):
            return kind
    return FaultKind.UNKNOWN


def build_details(*parts: str, limit: int = MAX_DETAILS) -> str:
    unique: list[str] = []
    for part in parts:
        text = (part or "").strip()
        if text and text not in unique:
            unique.append(text)
    return " | ".join(unique)[:limit]


def wrap_fault(error: BaseException, context: str = "") -> MessagingError:
    """Normalise ``error`` into a classified :class:`MessagingError`."""

    if isinstance(error, MessagingError):
        return error
    kind = classify_fault(error)
    message = error_message(error)
    cause = _cause_of(error)
    details = build_details(context, message, error_message(cause) if cause is not None else "")
    known = _KIND_CODES.get(kind)
    if known is not None:
        code: ErrorCode | str = known
        text = known.value
    else:
        code = error_code(error) or ErrorCode.UNKNOWN_ERROR
        text = message
    return MessagingError(
        code,
        text,
        kind=kind,
        details=details,
        original_message=message,
        cause=error,
        status=error_status(error),
    )


def action_timeout_error(context: str) -> MessagingError:
    return MessagingError(
        ErrorCode.MESSAGE_ACTION_TIMEOUT,
        kind=FaultKind.ACTION_TIMEOUT,
        details=(context or "")[:MAX_TIMEOUT_DETAILS],
    )


def is_proxy_tunnel_error(error: Any) -> bool:
    return classify_fault(error) is FaultKind.PROXY_TUNNEL
