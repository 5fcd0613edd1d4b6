"""Page event watchers: dialogs, page errors and messaging mutation requests."""

from __future__ import annotations

import logging
import re
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from playwright.async_api import Dialog, Error as PlaywrightError

from .deadline import SYSTEM_CLOCK, Clock, DeadlineBudget

log = logging.getLogger(__name__)

MUTATION_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})
BLOCKED_FRAGMENTS = (
    "doubleclick",
    "googlesyndication",
    "google-analytics",
    "/analytics",
    "gtm.js",
    "hotjar",
    "clarity",
    "facebook",
    "fbevents",
    "pubmatic",
    "criteo",
    "teads",
    "xplosion",
    "pixel",
    "adserver",
    "adsm.",
    "measurement",
    "logger",
    "tracking",
    "bat.bing",
)
_BODY_HINT = re.compile(r"(mutation|send|reply|upload|attachment|image|media|picture|photo)", re.IGNORECASE)
_URL_HINT = re.compile(r"(/send|/reply|/upload|/attachment|/media|bilder|photos?)", re.IGNORECASE)
_MAX_EVENTS = 50


def is_likely_messaging_mutation(url: str, method: str = "", body: Optional[str] = "") -> bool:
    """True for a write request to the marketplace that looks like a message send or upload."""

    if str(method or "").upper() not in MUTATION_METHODS:
        return False
    href = str(url or "").strip().lower()
    if not href or "kleinanzeigen" not in href:
        return False
    if any(fragment in href for fragment in BLOCKED_FRAGMENTS):
        return False
    payload = str(body or "")
    if payload:
        return bool(_BODY_HINT.search(payload))
    return bool(_URL_HINT.search(href))


def _request_body(request: Any) -> str:
    try:
        return request.post_data or ""
    except (PlaywrightError, UnicodeDecodeError, ValueError):
        # Binary multipart uploads cannot be decoded as text.
        return "upload"


class PageWatchdog:
    """Attach page event listeners for diagnostics and the send-request signal."""

    def __init__(
        self,
        session: Any,
        *,
        clock: Clock = SYSTEM_CLOCK,
        default_dialog_action: str = "accept",
    ) -> None:
        self.session = session
        self.clock = clock
        self.default_dialog_action = default_dialog_action
        self.dialog_events: List[Dict[str, Any]] = []
        self.page_errors: List[Dict[str, Any]] = []
        self.failed_requests: List[Dict[str, Any]] = []
        self.console_errors: List[Dict[str, Any]] = []
        self.navigations: List[str] = []
        self.last_mutation_at: float = 0.0
        self.last_mutation_url: str = ""
        self._listeners: List[Tuple[str, Callable[..., Any]]] = []
        self._started = False

    def start(self) -> "PageWatchdog":
        if self._started:
            return self
        self._started = True
        self._register("dialog", self._handle_dialog)
        self._register("pageerror", self._handle_page_error)
        self._register("crash", self._handle_crash)
        self._register("request", self._handle_request)
        self._register("requestfailed", self._handle_request_failed)
        self._register("console", self._handle_console)
        self._register("framenavigated", self._handle_navigation)
        return self

    def stop(self) -> None:
        if not self._started:
            return
        for event, handler in self._listeners:
            try:
                self.session.off(event, handler)
            except Exception as exc:
                log.debug("Listener removal failed for %s: %s", event, exc)
        self._listeners.clear()
        self._started = False

    def __enter__(self) -> "PageWatchdog":
        return self.start()

    def __exit__(self, *exc_info: Any) -> None:
        self.stop()

    # mutation signal --------------------------------------------------------

    def note_request(self, url: str, method: str, body: str = "") -> None:
        if is_likely_messaging_mutation(url, method, body):
            self.last_mutation_at = self.clock.monotonic()
            self.last_mutation_url = url

    def mutation_after(self, started_at: float) -> bool:
        return self.last_mutation_at > 0 and self.last_mutation_at >= started_at

    async def wait_for_mutation(
        self,
        started_at: float,
        *,
        timeout_ms: float,
        deadline: Optional[DeadlineBudget] = None,
        poll_ms: float = 180,
    ) -> bool:
        """Wait until a mutation-shaped request fired at or after ``started_at``."""

        limit = self.clock.monotonic() + timeout_ms / 1000
        while True:
            if self.mutation_after(started_at):
                return True
            if self.clock.monotonic() >= limit:
                return False
            if deadline is not None and not deadline.has_time_left(2500):
                return False
            await self.clock.sleep(poll_ms / 1000)

    # diagnostics ------------------------------------------------------------

    def collect_warnings(self) -> List[str]:
        warnings: List[str] = []
        for event in self.dialog_events + self.page_errors:
            summary = event.get("summary")
            if summary:
                warnings.append(f"{event.get('level', 'INFO')}:auto:{summary}")
        return warnings

    def snapshot(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        if self.dialog_events:
            data["dialogs"] = list(self.dialog_events)
        if self.page_errors:
            data["page_errors"] = list(self.page_errors)
        if self.failed_requests:
            data["failed_requests"] = list(self.failed_requests[-10:])
        if self.console_errors:
            data["console_errors"] = list(self.console_errors[-10:])
        if self.navigations:
            data["navigations"] = list(self.navigations[-10:])
        if self.last_mutation_url:
            data["last_mutation_url"] = self.last_mutation_url
        return data

    # handlers ---------------------------------------------------------------

    def _register(self, event: str, handler: Callable[..., Any]) -> None:
        self.session.on(event, handler)
        self._listeners.append((event, handler))

    @staticmethod
    def _append(bucket: List[Dict[str, Any]], event: Dict[str, Any]) -> None:
        bucket.append(event)
        if len(bucket) > _MAX_EVENTS:
            del bucket[0]

    async def _handle_dialog(self, dialog: Dialog) -> None:
        action = "accept" if dialog.type == "beforeunload" else self.default_dialog_action
        event: Dict[str, Any] = {"timestamp": time.time(), "type": dialog.type, "message": dialog.message, "action": action}
        try:
            if action == "accept":
                await dialog.accept()
            else:
                await dialog.dismiss()
            event["level"] = "INFO"
            event["summary"] = f"{dialog.type} dialog automatically {action}ed"
        except PlaywrightError as exc:
            event["level"] = "WARNING"
            event["summary"] = f"Failed to {action} {dialog.type} dialog: {exc}"
        self._append(self.dialog_events, event)

    def _handle_page_error(self, error: Any) -> None:
        message = getattr(error, "message", None) or str(error)
        self._append(
            self.page_errors,
            {"timestamp": time.time(), "message": message, "level": "WARNING", "summary": f"Page error captured: {message}"},
        )

    def _handle_crash(self, *_: Any) -> None:
        self._append(
            self.page_errors,
            {"timestamp": time.time(), "message": "Page crashed", "level": "ERROR", "summary": "Page crashed unexpectedly"},
        )

    def _handle_request(self, request: Any) -> None:
        try:
            self.note_request(request.url, request.method, _request_body(request))
        except Exception as exc:
            log.debug("Request inspection failed: %s", exc)

    def _handle_request_failed(self, request: Any) -> None:
        failure = getattr(request, "failure", None)
        self._append(
            self.failed_requests,
            {"timestamp": time.time(), "url": getattr(request, "url", ""), "failure": str(failure or "")},
        )

    def _handle_console(self, message: Any) -> None:
        if getattr(message, "type", "") != "error":
            return
        self._append(self.console_errors, {"timestamp": time.time(), "text": getattr(message, "text", "")})

    def _handle_navigation(self, frame: Any) -> None:
        if getattr(frame, "parent_frame", None) is None:
            self.navigations.append(getattr(frame, "url", ""))
            del self.navigations[:-_MAX_EVENTS]
