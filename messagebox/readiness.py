"""Conversation readiness: poll the rendered page until the action's controls exist.

The state machine moves ``RESOLVING -> POLLING -> (READY | RECOVERING)`` and
ends in ``READY``, ``TIMEOUT`` or ``ABORTED``.  Recovery is modelled as an
ordered list of :class:`RecoveryStrategy` objects that the orchestrator loop
tries one attempt at a time; strategy failures are recorded as diagnostics
and never escape the loop.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, fields
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from .faults import ErrorCode, MessagingError, action_timeout_error, build_details, wrap_fault
from .locators import LocatorCatalog
from .models import ActionContext
from .page_scripts import (
    BOOTSTRAP_DIAGNOSTIC_SCRIPT,
    CLICK_CONVERSATION_LINK_SCRIPT,
    RENDER_HOOK_SCRIPT,
    UI_STATE_SCRIPT,
)
from .urls import MESSAGE_LIST_URL

log = logging.getLogger(__name__)

GRACE_RATIO = 0.55
GRACE_MIN_MS = 7000
GRACE_MAX_MS = 12000
STALL_MS = 4500
RECOVERY_RESERVE_MS = 2500
POLL_INTERVAL_MS = 300
RECOVERY_NAV_TIMEOUT_MS = 12000

Hook = Callable[[], Awaitable[Any]]


class ReadinessMode(str, Enum):
    SEND_MEDIA = "send-media"
    OFFER_DECLINE = "offer-decline"
    SEND_TEXT = "send-text"


class ReadinessState(str, Enum):
    RESOLVING = "resolving"
    POLLING = "polling"
    RECOVERING = "recovering"
    READY = "ready"
    TIMEOUT = "timeout"
    ABORTED = "aborted"


_STATE_KEYS = {
    "has_reply_box": "hasReplyBox",
    "has_file_input": "hasFileInput",
    "has_upload_control": "hasUploadControl",
    "has_send_button_enabled": "hasSendButtonEnabled",
    "has_payment_box": "hasPaymentBox",
    "has_decline_control": "hasDeclineControl",
    "has_message_content": "hasMessageContent",
    "has_loading_indicator": "hasLoadingIndicator",
    "has_matching_conversation_link": "hasMatchingConversationLink",
    "has_render_hook": "hasRenderHook",
}


@dataclass(frozen=True)
class UIState:
    """What the rendered page exposes right now; recomputed on every poll."""

    url: str = ""
    has_reply_box: bool = False
    has_file_input: bool = False
    has_upload_control: bool = False
    has_send_button_enabled: bool = False
    has_payment_box: bool = False
    has_decline_control: bool = False
    has_message_content: bool = False
    has_loading_indicator: bool = False
    has_matching_conversation_link: bool = False
    has_render_hook: bool = False

    @classmethod
    def from_frames(cls, results: Iterable[Any]) -> "UIState":
        """Merge per-frame UI state results; a control present in any frame counts."""

        flags = {name: False for name in _STATE_KEYS}
        url = ""
        for result in results:
            if not isinstance(result, Mapping):
                continue
            url = url or str(result.get("url") or "")
            for name, key in _STATE_KEYS.items():
                flags[name] = flags[name] or bool(result.get(key))
        return cls(url=url, **flags)

    @property
    def has_action_controls(self) -> bool:
        return (
            self.has_reply_box
            or self.has_file_input
            or self.has_upload_control
            or self.has_payment_box
            or self.has_decline_control
        )

    @property
    def is_loading_blocking(self) -> bool:
        return self.has_loading_indicator and not self.has_action_controls

    def signature(self) -> str:
        return "".join("1" if getattr(self, f.name) else "0" for f in fields(self) if f.name != "url")

    def satisfies(self, mode: ReadinessMode) -> bool:
        if mode is ReadinessMode.SEND_MEDIA:
            present = self.has_reply_box or self.has_file_input or self.has_upload_control
            return present and not self.is_loading_blocking
        if mode is ReadinessMode.OFFER_DECLINE:
            return (
                self.has_decline_control
                or self.has_payment_box
                or (self.has_message_content and self.has_reply_box)
            )
        return self.has_reply_box and not self.is_loading_blocking

    def to_dict(self) -> Dict[str, Any]:
        data = {_STATE_KEYS.get(key, key): value for key, value in asdict(self).items()}
        data["isLoadingBlocking"] = self.is_loading_blocking
        return data


async def read_ui_state(session: Any, locators: LocatorCatalog, conversation_id: str = "") -> UIState:
    arg = {"locators": locators.as_script_arg(), "conversationId": conversation_id}
    return UIState.from_frames(await session.evaluate_all(UI_STATE_SCRIPT, arg))


# ---------------------------------------------------------------------------
# recovery strategies


class RecoveryStrategy:
    """One way of nudging a stuck conversation page; limited to ``max_attempts``.

    Applicable strategies run in descending ``priority``, ties in list order.
    """

    name = "strategy"
    max_attempts = 1
    priority = 0

    def __init__(self) -> None:
        self.attempts = 0

    @property
    def exhausted(self) -> bool:
        return self.attempts >= self.max_attempts

    def applicable(self, machine: "ConversationReadiness", state: UIState) -> bool:
        return True

    async def attempt(self, machine: "ConversationReadiness", state: UIState) -> bool:
        """Perform the recovery; return whether anything was actually done."""

        raise NotImplementedError


class ClickConversationLink(RecoveryStrategy):
    name = "click-conversation-link"

    def applicable(self, machine: "ConversationReadiness", state: UIState) -> bool:
        return bool(machine.conversation_id) and state.has_matching_conversation_link

    async def attempt(self, machine: "ConversationReadiness", state: UIState) -> bool:
        arg = {"conversationId": machine.conversation_id, "selectors": machine.locators.conversation_link}
        return bool(await machine.session.evaluate_first(CLICK_CONVERSATION_LINK_SCRIPT, arg))


class Renavigate(RecoveryStrategy):
    name = "renavigate"
    max_attempts = 2

    def applicable(self, machine: "ConversationReadiness", state: UIState) -> bool:
        return bool(machine.target_url)

    async def attempt(self, machine: "ConversationReadiness", state: UIState) -> bool:
        await machine.navigate(machine.target_url, "readiness-renavigate")
        return True


class ViaConversationList(RecoveryStrategy):
    name = "via-conversation-list"

    def applicable(self, machine: "ConversationReadiness", state: UIState) -> bool:
        return bool(machine.target_url)

    async def attempt(self, machine: "ConversationReadiness", state: UIState) -> bool:
        await machine.navigate(MESSAGE_LIST_URL, "readiness-list")
        await machine.ctx.pause(250, 450, context="readiness-list")
        await machine.navigate(machine.target_url, "readiness-list-back")
        return True


class InvokeRenderHook(RecoveryStrategy):
    """Kick the page's own render entry point while it is stuck on a loading indicator."""

    name = "invoke-render-hook"
    max_attempts = 2
    min_interval_ms = 5500
    # Tried ahead of any navigation while the page is stuck loading.
    priority = 1

    def __init__(self) -> None:
        super().__init__()
        self._last_at: Optional[float] = None

    def applicable(self, machine: "ConversationReadiness", state: UIState) -> bool:
        if not (state.is_loading_blocking and state.has_render_hook):
            return False
        if self._last_at is None:
            return True
        return (machine.clock.monotonic() - self._last_at) * 1000 >= self.min_interval_ms

    async def attempt(self, machine: "ConversationReadiness", state: UIState) -> bool:
        self._last_at = machine.clock.monotonic()
        arg = {"hooks": machine.locators.render_hooks, "scripts": machine.locators.bootstrap_scripts}
        outcome = await machine.session.evaluate(RENDER_HOOK_SCRIPT, arg)
        return bool(outcome)


def default_strategies() -> List[RecoveryStrategy]:
    return [ClickConversationLink(), Renavigate(), ViaConversationList(), InvokeRenderHook()]


# ---------------------------------------------------------------------------
# state machine


class ConversationReadiness:
    """Drive one browser session until the conversation is ready for ``mode``."""

    def __init__(
        self,
        session: Any,
        ctx: ActionContext,
        *,
        mode: ReadinessMode,
        locators: LocatorCatalog,
        timeout_ms: float,
        target_url: str = "",
        conversation_id: str = "",
        hooks: Sequence[Hook] = (),
        strategies: Optional[Sequence[RecoveryStrategy]] = None,
        stall_ms: float = STALL_MS,
        poll_interval_ms: float = POLL_INTERVAL_MS,
    ) -> None:
        self.session = session
        self.ctx = ctx
        self.mode = mode
        self.locators = locators
        self.timeout_ms = max(0.0, timeout_ms)
        self.target_url = target_url
        self.conversation_id = conversation_id
        self.hooks = list(hooks)
        self.strategies = list(strategies) if strategies is not None else default_strategies()
        self.stall_ms = stall_ms
        self.poll_interval_ms = poll_interval_ms
        self.grace_ms = max(GRACE_MIN_MS, min(GRACE_MAX_MS, self.timeout_ms * GRACE_RATIO))
        self.state = ReadinessState.RESOLVING
        self.last_ui: UIState = UIState()
        self.recoveries: List[Dict[str, Any]] = []

    @property
    def clock(self):
        return self.ctx.deadline.clock

    def _transition(self, state: ReadinessState, **data: Any) -> None:
        self.state = state
        self.ctx.record("readiness_state", state=state.value, mode=self.mode.value, **data)

    def _abort_if_needed(self) -> None:
        if self.ctx.cancel.cancelled:
            self._transition(ReadinessState.ABORTED, reason=self.ctx.cancel.reason)
            raise action_timeout_error(f"{self.ctx.route}:readiness-aborted:{self.ctx.cancel.reason}")
        if self.session.is_closed:
            self._transition(ReadinessState.ABORTED, reason="session-closed")
            raise action_timeout_error(f"{self.ctx.route}:readiness-aborted:session-closed")

    async def navigate(self, url: str, context: str) -> None:
        timeout = self.ctx.deadline.step_timeout(RECOVERY_NAV_TIMEOUT_MS, min_ms=3000, context=context)
        await self.session.navigate(url, timeout_ms=timeout, context=context)

    async def _run_hooks(self) -> None:
        for hook in self.hooks:
            try:
                await hook()
            except MessagingError as exc:
                if exc.code == ErrorCode.MESSAGE_ACTION_TIMEOUT.value:
                    raise
                log.debug("Readiness hook failed: %s", exc)
            except Exception as exc:
                log.debug("Readiness hook failed: %s", exc)

    async def _recover(self, ui: UIState) -> None:
        for strategy in sorted(self.strategies, key=lambda s: -s.priority):
            if strategy.exhausted or not strategy.applicable(self, ui):
                continue
            strategy.attempts += 1
            entry: Dict[str, Any] = {"strategy": strategy.name, "attempt": strategy.attempts}
            try:
                acted = await strategy.attempt(self, ui)
                entry["acted"] = acted
            except Exception as exc:
                fault = wrap_fault(exc, f"readiness-{strategy.name}")
                if fault.code == ErrorCode.MESSAGE_ACTION_TIMEOUT.value and self.ctx.deadline.expired:
                    raise fault
                entry.update(acted=False, error=fault.code, details=fault.details)
                acted = False
            self.recoveries.append(entry)
            self.ctx.record("readiness_recovery", **entry)
            log.info("[%s] readiness recovery %s", self.ctx.debug_id, entry)
            if acted:
                return

    async def wait(self) -> UIState:
        clock = self.clock
        started = clock.monotonic()
        ends_at = started + self.timeout_ms / 1000
        self._transition(ReadinessState.RESOLVING, timeout_ms=int(self.timeout_ms))
        last_signature = ""
        last_progress = started
        self._transition(ReadinessState.POLLING)

        while True:
            self._abort_if_needed()
            self.ctx.checkpoint("readiness")
            await self._run_hooks()
            ui = await read_ui_state(self.session, self.locators, self.conversation_id)
            self.last_ui = ui
            if ui.satisfies(self.mode):
                self._transition(ReadinessState.READY, ui=ui.signature())
                return ui

            now = clock.monotonic()
            signature = ui.signature()
            if signature != last_signature:
                last_signature = signature
                last_progress = now
            if now >= ends_at:
                break

            elapsed_ms = (now - started) * 1000
            stalled_ms = (now - last_progress) * 1000
            remaining_ms = (ends_at - now) * 1000
            if elapsed_ms >= self.grace_ms and stalled_ms > self.stall_ms and remaining_ms > RECOVERY_RESERVE_MS:
                self._transition(ReadinessState.RECOVERING, ui=signature)
                await self._recover(ui)
                last_progress = clock.monotonic()
                self._transition(ReadinessState.POLLING)
                continue

            await clock.sleep(min(self.poll_interval_ms, remaining_ms) / 1000)

        raise await self._not_ready_error()

    async def _not_ready_error(self) -> MessagingError:
        self._transition(ReadinessState.TIMEOUT, ui=self.last_ui.signature())
        bootstrap = await self.session.evaluate(
            BOOTSTRAP_DIAGNOSTIC_SCRIPT,
            {"scripts": self.locators.bootstrap_scripts, "dialogs": self.locators.dialog},
        )
        ui = self.last_ui.to_dict()
        return MessagingError(
            ErrorCode.CONVERSATION_NOT_READY,
            details=build_details(
                f"{self.ctx.route}:{self.mode.value}",
                f"ui={json.dumps(ui, sort_keys=True)}",
                f"recoveries={len(self.recoveries)}",
            ),
            data={
                "ui_state": ui,
                "bootstrap": bootstrap or {},
                "recoveries": list(self.recoveries),
                "events": self.ctx.events.tail(),
            },
        )

