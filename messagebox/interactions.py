"""Click, type and wait helpers shared by the messaging executors.

Every helper receives the session and the action context explicitly.  Waiting
loops go through :func:`poll`, which checks the abort signal and the action
deadline before each attempt and never waits past the deadline.
"""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Dict, Iterable, Optional, Sequence

from .locators import LocatorCatalog
from .models import ActionContext
from .page_scripts import (
    ATTACHMENT_STATE_SCRIPT,
    CLICK_TEXT_SCRIPT,
    COMPOSER_STATE_SCRIPT,
    MATCHES_ANY_SCRIPT,
)
from .urls import is_login_url

log = logging.getLogger(__name__)

DEFAULT_POLL_MS = 180
_DIALOG_SCOPE = ["[role='dialog']", "[aria-modal='true']", "[class*='Modal']"]


def _clicked(result: Any) -> bool:
    return isinstance(result, dict) and bool(result.get("clicked"))


async def poll(
    ctx: ActionContext,
    timeout_ms: float,
    *,
    context: str = "poll",
    interval_ms: float = DEFAULT_POLL_MS,
) -> AsyncIterator[int]:
    """Yield attempt numbers until ``timeout_ms`` elapses; always yields at least once."""

    clock = ctx.deadline.clock
    limit = clock.monotonic() + ctx.deadline.clamp(timeout_ms) / 1000
    attempt = 0
    while True:
        ctx.checkpoint(context)
        yield attempt
        attempt += 1
        remaining = limit - clock.monotonic()
        if remaining <= 0:
            return
        await clock.sleep(min(interval_ms / 1000, remaining))


# ---------------------------------------------------------------------------
# clicking


async def click_button_by_text(
    session: Any,
    ctx: ActionContext,
    labels: Sequence[str],
    *,
    timeout_ms: float = 0,
    prefer_dialog: bool = False,
    prefer_top_layer: bool = False,
    require_in: Optional[Sequence[str]] = None,
    exclude_in: Optional[Sequence[str]] = None,
) -> str:
    """Click the best visible button whose text matches one of ``labels``.

    Returns the matched label, or an empty string when nothing was clicked.
    """

    arg = {
        "labels": list(labels),
        "preferDialog": prefer_dialog,
        "preferTopLayer": prefer_top_layer,
        "requireIn": list(require_in or []),
        "excludeIn": list(exclude_in or []),
    }
    async for _ in poll(ctx, timeout_ms, context="click-text"):
        result = await session.evaluate_first(CLICK_TEXT_SCRIPT, arg, accept=_clicked)
        if _clicked(result):
            return str(result.get("label") or "clicked")
    return ""


async def first_interactive(session: Any, selectors: Sequence[str]) -> Any:
    """First visible and enabled element matching ``selectors``, in selector order."""

    for handle in await session.find_elements(selectors, require_visible=True):
        try:
            if await handle.is_enabled():
                return handle
        except Exception as exc:
            log.debug("Enabled check failed: %s", exc)
    return None


async def click_first_interactive(
    session: Any,
    ctx: ActionContext,
    selectors: Sequence[str],
    *,
    timeout_ms: float = 0,
) -> bool:
    async for _ in poll(ctx, timeout_ms, context="click-selector"):
        handle = await first_interactive(session, selectors)
        if handle is not None and await session.dispatch_click(handle):
            return True
    return False


async def matches_any(session: Any, selectors: Sequence[str]) -> bool:
    if not selectors:
        return False
    results = await session.evaluate_all(MATCHES_ANY_SCRIPT, {"selectors": list(selectors)})
    return any(bool(result) for result in results)


async def has_visible_dialog(session: Any, locators: LocatorCatalog) -> bool:
    return await matches_any(session, locators.dialog)


async def dismiss_blocking_modals(
    session: Any,
    ctx: ActionContext,
    locators: LocatorCatalog,
    *,
    max_passes: int = 6,
) -> bool:
    """Dismiss interstitial dialogs by continue labels, close buttons, then Escape."""

    labels = list(locators.continue_labels) + list(locators.dismiss_labels)
    acted_any = False
    for _ in range(max_passes):
        ctx.checkpoint("dismiss-modals")
        if await click_button_by_text(session, ctx, labels, prefer_dialog=True, prefer_top_layer=True, require_in=_DIALOG_SCOPE):
            acted_any = True
            await ctx.pause(110, 190, context="dismiss-modals")
            continue
        if await click_first_interactive(session, ctx, locators.dialog_close):
            acted_any = True
            await ctx.pause(100, 170, context="dismiss-modals")
            continue
        try:
            await session.press("Escape")
        except Exception as exc:
            log.debug("Escape press failed: %s", exc)
        await ctx.pause(120, context="dismiss-modals")
        if not await has_visible_dialog(session, locators):
            break
    if acted_any:
        ctx.record("modals_dismissed")
    return acted_any


async def is_auth_wall(session: Any, locators: LocatorCatalog) -> bool:
    if is_login_url(session.url):
        return True
    return await matches_any(session, locators.login_wall)


# ---------------------------------------------------------------------------
# composer


async def find_message_input(session: Any, locators: LocatorCatalog) -> Any:
    handles = await session.find_elements(locators.message_input, require_visible=True)
    return handles[0] if handles else None


async def clear_and_type(session: Any, ctx: ActionContext, handle: Any, text: str) -> None:
    ctx.checkpoint("type-text")
    await session.type_text(handle, text, humanized=ctx.pause_scale > 0)
    ctx.record("text_typed", length=len(text))


async def click_send(session: Any, ctx: ActionContext, locators: LocatorCatalog) -> str:
    """Click the send control, falling back to the submission key.

    Returns how the send was triggered: ``"button"``, ``"label"`` or ``"enter"``.
    """

    ctx.checkpoint("click-send")
    handle = await first_interactive(session, locators.send_button)
    if handle is not None and await session.dispatch_click(handle):
        ctx.record("send_clicked", via="button")
        return "button"
    if await click_button_by_text(session, ctx, locators.send_labels, require_in=locators.reply_box):
        ctx.record("send_clicked", via="label")
        return "label"
    await session.press("Enter")
    ctx.record("send_clicked", via="enter")
    return "enter"


def _merge_counts(results: Iterable[Any], keys: Sequence[str]) -> Dict[str, Any]:
    merged: Dict[str, Any] = {key: 0 for key in keys}
    flags: Dict[str, bool] = {}
    for result in results:
        if not isinstance(result, dict):
            continue
        for key in keys:
            merged[key] = max(merged[key], int(result.get(key) or 0))
        for key, value in result.items():
            if isinstance(value, bool):
                flags[key] = flags.get(key, False) or value
            elif key == "text" and value:
                merged["text"] = str(merged.get("text") or "") + str(value)
    merged.update(flags)
    return merged


async def attachment_state(session: Any, locators: LocatorCatalog) -> Dict[str, Any]:
    arg = {
        "fileInputs": locators.file_input,
        "previews": locators.attachment_preview,
        "sendButtons": locators.send_button,
    }
    state = _merge_counts(await session.evaluate_all(ATTACHMENT_STATE_SCRIPT, arg), ("files", "previews"))
    state.setdefault("sendEnabled", False)
    return state


async def wait_for_attachment_ready(
    session: Any,
    ctx: ActionContext,
    locators: LocatorCatalog,
    expected: int,
    *,
    timeout_ms: float,
) -> bool:
    expected = max(1, expected)
    async for _ in poll(ctx, timeout_ms, context="attachment-ready"):
        state = await attachment_state(session, locators)
        if state["files"] >= expected or state["previews"] >= expected:
            ctx.record("attachments_ready", **state)
            return True
    return False


async def wait_for_send_enabled(
    session: Any,
    ctx: ActionContext,
    locators: LocatorCatalog,
    *,
    timeout_ms: float,
) -> bool:
    async for _ in poll(ctx, timeout_ms, context="send-enabled"):
        if (await attachment_state(session, locators))["sendEnabled"]:
            return True
    return False


async def composer_state(session: Any, locators: LocatorCatalog) -> Dict[str, Any]:
    arg = {
        "inputs": locators.message_input,
        "fileInputs": locators.file_input,
        "previews": locators.attachment_preview,
        "replyBox": locators.reply_box,
    }
    state = _merge_counts(await session.evaluate_all(COMPOSER_STATE_SCRIPT, arg), ("files", "previews"))
    state.setdefault("present", False)
    state.setdefault("text", "")
    return state


async def wait_for_composer_settled(
    session: Any,
    ctx: ActionContext,
    locators: LocatorCatalog,
    *,
    expect_text_clear: bool,
    expect_attachment_clear: bool,
    timeout_ms: float,
) -> bool:
    """True once the composer dropped the sent text and/or staged attachments."""

    async for _ in poll(ctx, timeout_ms, context="composer-settled"):
        state = await composer_state(session, locators)
        if not state["present"]:
            # The reply box re-rendered away with nothing left pending.
            return True
        text_clear = not expect_text_clear or not str(state["text"]).strip()
        attachments_clear = not expect_attachment_clear or (state["files"] == 0 and state["previews"] == 0)
        if text_clear and attachments_clear:
            return True
    return False
