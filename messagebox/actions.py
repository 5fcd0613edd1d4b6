"""Action executors: send text, send media and decline an offer.

All three share one template (:meth:`ActionExecutor.run`): validate the
target, load the stored session, build the :class:`ActionContext`, then drive
the action.  Browser work happens inside one scoped session; confirmation
always re-reads the conversation through the primary transport.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Sequence
from urllib.parse import urljoin

from .config import MessagingConfig
from .consent import ConsentHandler
from .confirmation import Evidence, SnapshotConfirmation, offer_blocks
from .cookies import Cookie, load_account_cookies
from .deadline import SYSTEM_CLOCK, CancellationToken, Clock, DeadlineBudget
from .devices import device_profile_for
from .faults import ErrorCode, FaultKind, MessagingError, action_timeout_error, build_details, wrap_fault
from .interactions import (
    attachment_state,
    click_button_by_text,
    click_first_interactive,
    click_send,
    clear_and_type,
    dismiss_blocking_modals,
    find_message_input,
    first_interactive,
    has_visible_dialog,
    poll,
    wait_for_attachment_ready,
    wait_for_composer_settled,
    wait_for_send_enabled,
)
from .locators import LocatorCatalog
from .media import MAX_FILES, stage_media
from .models import Account, ActionContext, ConversationRef, ConversationSnapshot, DeviceProfile, MediaFile, Proxy
from .navigation import goto, open_signed_in
from .readiness import ConversationReadiness, ReadinessMode
from .scraping import find_matching_item, scrape_conversation_list
from .session import BrowserSessionFactory
from .snapshots import empty_snapshot
from .structured_logging import ActionEventLog, new_debug_id
from .transport import ConversationReader, TransportFactory, client_factory
from .urls import HOME_URL, MESSAGE_LIST_URL, build_conversation_url
from .watchdogs import PageWatchdog

log = logging.getLogger(__name__)

READINESS_RATIO = 0.5
READINESS_MIN_MS = 8000
READINESS_MAX_MS = 25000
READINESS_RESERVE_MS = 8000
UPLOAD_ATTEMPTS = 3
INTERSTITIAL_PASSES = 3
DECLINE_CONFIRM_PASSES = 5

IdFactory = Callable[[str], str]


@dataclass(slots=True)
class ActionRequest:
    """One invocation of a messaging action."""

    account: Account
    proxy: Optional[Proxy]
    target: ConversationRef
    text: str = ""
    files: Sequence[MediaFile] = ()
    cancel: Optional[CancellationToken] = None
    hard_deadline_ms: Optional[float] = None
    debug_id: str = ""


@dataclass
class BrowserRun:
    """Browser-side state of one action, handed to the mode-specific interaction."""

    session: Any
    watchdog: PageWatchdog
    confirmation: SnapshotConfirmation
    before: Optional[ConversationSnapshot] = None
    evidence: Evidence = field(default_factory=Evidence)


class ActionExecutor:
    """Template shared by the three messaging actions."""

    route = "action"
    mode = ReadinessMode.SEND_TEXT

    def __init__(
        self,
        config: MessagingConfig,
        *,
        transport_factory: Optional[TransportFactory] = None,
        session_factory: Optional[Any] = None,
        locators: Optional[LocatorCatalog] = None,
        consent: Optional[ConsentHandler] = None,
        clock: Clock = SYSTEM_CLOCK,
        id_factory: IdFactory = new_debug_id,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.config = config
        self.transport_factory = transport_factory or client_factory(config)
        self.session_factory = session_factory or BrowserSessionFactory(config)
        self.locators = locators or LocatorCatalog.from_overrides(config.locators)
        self.consent = consent or ConsentHandler(self.locators)
        self.clock = clock
        self.id_factory = id_factory
        self.rng = rng

    # template ---------------------------------------------------------------

    def validate(self, request: ActionRequest) -> None:
        if not request.target.identifies_target:
            raise MessagingError(ErrorCode.CONVERSATION_ID_REQUIRED, details=build_details(self.route))

    async def run(self, request: ActionRequest) -> ConversationSnapshot:
        self.validate(request)
        cookies = load_account_cookies(request.account.cookie)
        if not cookies:
            raise MessagingError(
                ErrorCode.AUTH_REQUIRED,
                details=build_details(self.route, f"account {request.account.id} has no stored session"),
            )
        device = device_profile_for(request.account, self.rng)
        ctx = self._new_context(request)
        unlink = self._link_cancel(request.cancel, ctx.cancel)
        guard = asyncio.get_running_loop().call_later(
            ctx.deadline.ceiling_ms / 1000, ctx.cancel.cancel, "deadline-exceeded"
        )
        log.info(
            "[%s] %s start account=%s conversation=%s deadline=%dms",
            ctx.debug_id,
            self.route,
            request.account.id,
            ctx.conversation_id or ctx.conversation_url or "?",
            int(ctx.deadline.ceiling_ms),
        )
        ctx.record("action_start", device=device.id, deadline_ms=int(ctx.deadline.ceiling_ms))
        try:
            snapshot = await self._execute_bounded(request, ctx, cookies, device)
        except Exception as exc:
            error = self._normalise(exc, ctx)
            ctx.record("action_failed", code=error.code, kind=error.kind.value, details=error.details)
            log.warning("[%s] %s failed: %s %s", ctx.debug_id, self.route, error.code, error.details)
            if error is exc:
                raise
            raise error from exc
        else:
            ctx.record("action_done", messages=len(snapshot.messages))
            log.info("[%s] %s done in %dms", ctx.debug_id, self.route, int(ctx.deadline.elapsed_ms()))
            return snapshot
        finally:
            guard.cancel()
            unlink()
            ctx.events.close()

    def _new_context(self, request: ActionRequest) -> ActionContext:
        debug_id = request.debug_id or self.id_factory(self.route)
        deadline = DeadlineBudget.for_action(
            default_ms=self.config.action_deadline_ms,
            min_ms=self.config.min_action_deadline_ms,
            grace_ms=self.config.hard_deadline_grace_ms,
            hard_deadline_ms=request.hard_deadline_ms,
            clock=self.clock,
            label=self.route,
        )
        target = request.target
        return ActionContext(
            route=self.route,
            debug_id=debug_id,
            account_id=request.account.id,
            conversation_id=target.conversation_id,
            conversation_url=target.canonical_url if target.addressable else "",
            deadline=deadline,
            cancel=CancellationToken(),
            events=ActionEventLog.create(
                debug_id, self.route, enabled=self.config.debug_events, log_root=self.config.log_root
            ),
            pause_scale=self.config.pause_scale,
            rng=self.rng,
        )

    @staticmethod
    def _link_cancel(outer: Optional[CancellationToken], inner: CancellationToken) -> Callable[[], None]:
        if outer is None:
            return lambda: None

        def forward() -> None:
            inner.cancel(outer.reason or "aborted")

        outer.add_callback(forward)
        return lambda: outer.remove_callback(forward)

    def _normalise(self, exc: BaseException, ctx: ActionContext) -> MessagingError:
        error = wrap_fault(exc, ctx.route)
        # Errors raised by a session torn down on abort are reported as the abort itself.
        if ctx.cancel.cancelled and error.kind is not FaultKind.ACTION_TIMEOUT:
            timeout = action_timeout_error(f"{ctx.route}:aborted:{ctx.cancel.reason}")
            timeout.cause = exc
            return timeout
        return error

    async def _execute_bounded(
        self,
        request: ActionRequest,
        ctx: ActionContext,
        cookies: List[Cookie],
        device: DeviceProfile,
    ) -> ConversationSnapshot:
        """Run :meth:`execute`, cancelling it outright once the hard stop passes.

        The guard timer only flags the cancellation token; an await stuck in
        I/O never sees it, so the task itself is cancelled here.
        """

        stop_s = ctx.deadline.hard_stop_ms(self.config.hard_deadline_grace_ms) / 1000
        scope = asyncio.timeout(stop_s)
        try:
            async with scope:
                return await self.execute(request, ctx, cookies, device)
        except TimeoutError as exc:
            if not scope.expired():
                raise
            ctx.cancel.cancel("deadline-exceeded")
            raise action_timeout_error(f"{ctx.route}:hard-stop:{int(ctx.deadline.elapsed_ms())}ms") from exc

    def request_timeout(self, ctx: ActionContext, context: str) -> int:
        """Per-request transport timeout, bounded by what is left of the budget."""

        timeout = ctx.deadline.clamp(self.config.request_timeout_ms)
        if timeout <= 0:
            raise action_timeout_error(f"{ctx.route}:{context}:budget-exhausted")
        return timeout

    async def execute(
        self,
        request: ActionRequest,
        ctx: ActionContext,
        cookies: List[Cookie],
        device: DeviceProfile,
    ) -> ConversationSnapshot:
        async with self.transport_factory(cookies, request.proxy, device) as client:
            reader = ConversationReader(client)
            return await self.perform(request, ctx, reader, cookies, device)

    async def perform(
        self,
        request: ActionRequest,
        ctx: ActionContext,
        reader: ConversationReader,
        cookies: List[Cookie],
        device: DeviceProfile,
    ) -> ConversationSnapshot:
        return await self.browser_flow(request, ctx, reader, cookies, device)

    async def interact(self, request: ActionRequest, ctx: ActionContext, run: BrowserRun) -> ConversationSnapshot:
        raise NotImplementedError

    # target resolution ------------------------------------------------------

    async def resolve_via_transport(self, request: ActionRequest, ctx: ActionContext, reader: ConversationReader) -> None:
        """Fill in the conversation id from participant/ad title; failures leave it unresolved."""

        if ctx.conversation_id or ctx.conversation_url:
            return
        target = request.target
        try:
            summary = await reader.find_conversation(
                participant=target.participant,
                ad_title=target.ad_title,
                timeout_ms=self.request_timeout(ctx, "resolve-conversation"),
            )
        except Exception as exc:
            fault = wrap_fault(exc, "resolve-conversation")
            ctx.cancel.raise_if_cancelled(f"{ctx.route}:resolve")
            if fault.kind is FaultKind.ACTION_TIMEOUT and ctx.deadline.expired:
                raise fault from exc
            ctx.record("resolve_failed", code=fault.code)
            log.info("[%s] conversation lookup via transport failed: %s", ctx.debug_id, fault.details)
            return
        if summary is not None and summary.conversation_id:
            ctx.update_target(summary.conversation_id, summary.conversation_url)
            ctx.record("conversation_resolved", via="transport", conversation_id=summary.conversation_id)

    async def resolve_in_browser(self, session: Any, request: ActionRequest, ctx: ActionContext) -> None:
        """Pick the conversation from the rendered list page and open it."""

        items = await scrape_conversation_list(session, ctx, self.locators)
        target = request.target
        match = find_matching_item(items, participant=target.participant, ad_title=target.ad_title)
        if match is None:
            raise MessagingError(
                ErrorCode.CONVERSATION_ID_REQUIRED,
                details=build_details(ctx.route, "no listed conversation matches", target.participant, target.ad_title),
            )
        conversation_id = str(match.get("conversationId") or "")
        href = str(match.get("href") or "")
        url = build_conversation_url(conversation_id) if conversation_id else urljoin(HOME_URL, href)
        ctx.update_target(conversation_id, url)
        ctx.record("conversation_resolved", via="browser", conversation_id=conversation_id)
        await goto(session, ctx, self.config, url, "open-resolved")

    # browser flow -----------------------------------------------------------

    def _confirmation(self, ctx: ActionContext, reader: ConversationReader) -> SnapshotConfirmation:
        async def fetch(timeout_ms: int) -> ConversationSnapshot:
            if not ctx.conversation_id:
                raise MessagingError(ErrorCode.CONVERSATION_ID_REQUIRED, details="conversation id unresolved")
            return await reader.snapshot(ctx.conversation_id, ctx.conversation_url, timeout_ms=timeout_ms)

        return SnapshotConfirmation(
            fetch,
            ctx,
            timeout_ms=self.config.snapshot_timeout_ms,
            attempts=self.config.snapshot_attempts,
            retry_delay_ms=self.config.snapshot_retry_delay_ms,
        )

    def _readiness_hooks(self, session: Any, ctx: ActionContext) -> List[Any]:
        async def consent_hook() -> None:
            await self.consent.settle(session, ctx, cookie_timeout_ms=0, gdpr_timeout_ms=0)

        async def dialog_hook() -> None:
            if await has_visible_dialog(session, self.locators):
                await dismiss_blocking_modals(session, ctx, self.locators, max_passes=1)

        if self.mode is ReadinessMode.OFFER_DECLINE:
            # Interstitials in front of the payment box are handled by the decline pass itself.
            return [consent_hook]
        return [consent_hook, dialog_hook]

    def readiness(self, session: Any, ctx: ActionContext, *, timeout_ms: Optional[float] = None) -> ConversationReadiness:
        if timeout_ms is None:
            timeout_ms = ctx.deadline.fraction(
                READINESS_RATIO,
                min_ms=READINESS_MIN_MS,
                max_ms=READINESS_MAX_MS,
                reserve_ms=READINESS_RESERVE_MS,
            )
        return ConversationReadiness(
            session,
            ctx,
            mode=self.mode,
            locators=self.locators,
            timeout_ms=timeout_ms,
            target_url=ctx.conversation_url,
            conversation_id=ctx.conversation_id,
            hooks=self._readiness_hooks(session, ctx),
        )

    async def browser_flow(
        self,
        request: ActionRequest,
        ctx: ActionContext,
        reader: ConversationReader,
        cookies: List[Cookie],
        device: DeviceProfile,
    ) -> ConversationSnapshot:
        await self.resolve_via_transport(request, ctx, reader)
        confirmation = self._confirmation(ctx, reader)
        before = await confirmation.capture("before") if ctx.conversation_id else None

        async with self.session_factory.open(proxy=request.proxy, device=device, cancel=ctx.cancel) as session:
            with PageWatchdog(session, clock=self.clock) as watchdog:
                try:
                    await open_signed_in(
                        session,
                        ctx,
                        cookies=cookies,
                        target_url=ctx.conversation_url or MESSAGE_LIST_URL,
                        consent=self.consent,
                        config=self.config,
                        locators=self.locators,
                    )
                    if not ctx.conversation_url:
                        await self.resolve_in_browser(session, request, ctx)
                        before = await confirmation.capture("before")
                    await self.readiness(session, ctx).wait()
                    run = BrowserRun(session=session, watchdog=watchdog, confirmation=confirmation, before=before)
                    return await self.interact(request, ctx, run)
                finally:
                    diagnostics = watchdog.snapshot()
                    if diagnostics:
                        ctx.record("page_diagnostics", **diagnostics)

    async def observe_send(
        self,
        ctx: ActionContext,
        run: BrowserRun,
        started_at: float,
        *,
        expect_text_clear: bool,
        expect_attachment_clear: bool,
    ) -> None:
        """Collect the network and composer signals that follow a send click."""

        run.evidence.network_signal = run.evidence.network_signal or await run.watchdog.wait_for_mutation(
            started_at,
            timeout_ms=ctx.deadline.clamp(6000, reserve_ms=4000),
            deadline=ctx.deadline,
        )
        if run.evidence.network_signal:
            run.evidence.request_url = run.watchdog.last_mutation_url
        run.evidence.composer_settled = run.evidence.composer_settled or await wait_for_composer_settled(
            run.session,
            ctx,
            self.locators,
            expect_text_clear=expect_text_clear,
            expect_attachment_clear=expect_attachment_clear,
            timeout_ms=ctx.deadline.clamp(5000, reserve_ms=3000),
        )
        ctx.record("send_observed", **run.evidence.to_dict())


class SendTextExecutor(ActionExecutor):
    """Post through the primary transport; drive the browser only when that fails."""

    route = "send-message"
    mode = ReadinessMode.SEND_TEXT

    def validate(self, request: ActionRequest) -> None:
        super().validate(request)
        if not request.text.strip():
            raise MessagingError(ErrorCode.MESSAGE_EMPTY, details=build_details(self.route))

    async def perform(
        self,
        request: ActionRequest,
        ctx: ActionContext,
        reader: ConversationReader,
        cookies: List[Cookie],
        device: DeviceProfile,
    ) -> ConversationSnapshot:
        if not self.config.force_web:
            snapshot = await self.send_via_transport(request, ctx, reader)
            if snapshot is not None:
                return snapshot
        return await self.browser_flow(request, ctx, reader, cookies, device)

    async def send_via_transport(
        self, request: ActionRequest, ctx: ActionContext, reader: ConversationReader
    ) -> Optional[ConversationSnapshot]:
        try:
            user_id = await reader.user_id(timeout_ms=self.request_timeout(ctx, "transport-user-id"))
            await self.resolve_via_transport(request, ctx, reader)
            if not ctx.conversation_id:
                ctx.record("transport_skipped", reason="conversation-unresolved")
                return None
            ctx.checkpoint("transport-send")
            await reader.client.post_message(
                user_id,
                ctx.conversation_id,
                request.text,
                timeout_ms=self.request_timeout(ctx, "transport-send"),
            )
        except Exception as exc:
            fault = wrap_fault(exc, "transport-send")
            if ctx.cancel.cancelled or (fault.kind is FaultKind.ACTION_TIMEOUT and ctx.deadline.expired):
                raise fault from exc
            ctx.record("transport_failed", code=fault.code, kind=fault.kind.value)
            log.warning("[%s] transport send failed, falling back to browser: %s", ctx.debug_id, fault.details)
            return None

        ctx.record("transport_posted", conversation_id=ctx.conversation_id)
        try:
            return await reader.snapshot(
                ctx.conversation_id,
                ctx.conversation_url,
                timeout_ms=ctx.deadline.clamp(self.config.snapshot_timeout_ms, reserve_ms=250) or None,
            )
        except Exception as exc:
            # Already posted: a browser retry here would send the message twice.
            fault = wrap_fault(exc, "transport-refetch")
            log.warning("[%s] message posted but re-fetch failed: %s", ctx.debug_id, fault.details)
            ctx.record("transport_refetch_failed", code=fault.code)
            return empty_snapshot(ctx.conversation_id, ctx.conversation_url)

    async def interact(self, request: ActionRequest, ctx: ActionContext, run: BrowserRun) -> ConversationSnapshot:
        handle = await find_message_input(run.session, self.locators)
        if handle is None:
            raise MessagingError(ErrorCode.MESSAGE_INPUT_NOT_FOUND, details=build_details(ctx.route, run.session.url))
        await clear_and_type(run.session, ctx, handle, request.text)
        await ctx.pause(150, 320, context="before-send")
        started_at = self.clock.monotonic()
        await click_send(run.session, ctx, self.locators)
        await self.observe_send(ctx, run, started_at, expect_text_clear=True, expect_attachment_clear=False)
        return await run.confirmation.confirm_text(run.before, request.text, run.evidence)


class SendMediaExecutor(ActionExecutor):
    """Attach images (and optional text) through the reply box."""

    route = "send-media"
    mode = ReadinessMode.SEND_MEDIA

    def validate(self, request: ActionRequest) -> None:
        if not request.text.strip() and not request.files:
            raise MessagingError(ErrorCode.MESSAGE_EMPTY, details=build_details(self.route, "neither text nor files"))
        super().validate(request)

    async def attach_files(self, session: Any, ctx: ActionContext, payloads: Sequence[dict]) -> str:
        """Hand the files to the page; returns how they were attached."""

        for attempt in range(1, UPLOAD_ATTEMPTS + 1):
            ctx.checkpoint("attach-files")
            for handle in await session.find_elements(self.locators.file_input):
                try:
                    await session.set_input_files(handle, payloads)
                except Exception as exc:
                    log.info("[%s] file input rejected files: %s", ctx.debug_id, exc)
                    continue
                ctx.record("files_attached", via="input", attempt=attempt, count=len(payloads))
                return "input"
            trigger = await first_interactive(session, self.locators.upload_button)
            if trigger is not None:
                chooser_timeout = ctx.deadline.clamp(5000, reserve_ms=2500)
                if chooser_timeout > 0 and await session.upload_via_chooser(trigger, payloads, timeout_ms=chooser_timeout):
                    ctx.record("files_attached", via="chooser", attempt=attempt, count=len(payloads))
                    return "chooser"
            ctx.record("file_input_missing", attempt=attempt)
            if attempt == UPLOAD_ATTEMPTS:
                break
            if attempt == 1:
                await ctx.pause(400, 700, context="attach-files")
                continue
            timeout = ctx.deadline.step_timeout(12000, min_ms=3000, reserve_ms=6000, context="attach-reload")
            await session.reload(timeout_ms=timeout, context="attach-reload")
            await self.readiness(session, ctx, timeout_ms=ctx.deadline.clamp(8000, reserve_ms=6000)).wait()
        raise MessagingError(ErrorCode.MESSAGE_FILE_INPUT_NOT_FOUND, details=build_details(ctx.route, session.url))

    async def interact(self, request: ActionRequest, ctx: ActionContext, run: BrowserRun) -> ConversationSnapshot:
        session = run.session
        files = list(request.files)
        if len(files) > MAX_FILES:
            log.warning("[%s] %d files given, sending the first %d", ctx.debug_id, len(files), MAX_FILES)
            files = files[:MAX_FILES]
        payloads = stage_media(files)

        if payloads:
            await self.attach_files(session, ctx, payloads)
            ready = await wait_for_attachment_ready(
                session, ctx, self.locators, len(payloads), timeout_ms=ctx.deadline.clamp(15000, reserve_ms=6000)
            )
            enabled = await wait_for_send_enabled(
                session, ctx, self.locators, timeout_ms=ctx.deadline.clamp(8000, reserve_ms=5000)
            )
            ctx.record("attachment_wait", ready=ready, send_enabled=enabled)
            if not ready and not enabled:
                raise MessagingError(
                    ErrorCode.MESSAGE_SEND_BUTTON_NOT_READY,
                    details=build_details(ctx.route, f"state={await attachment_state(session, self.locators)}"),
                )

        text = request.text.strip()
        if text:
            handle = await find_message_input(session, self.locators)
            if handle is None:
                raise MessagingError(ErrorCode.MESSAGE_INPUT_NOT_FOUND, details=build_details(ctx.route, session.url))
            await clear_and_type(session, ctx, handle, request.text)
        await ctx.pause(180, 360, context="before-send")

        started_at = self.clock.monotonic()
        await click_send(session, ctx, self.locators)
        await self.observe_send(ctx, run, started_at, expect_text_clear=bool(text), expect_attachment_clear=bool(payloads))
        if not run.evidence.network_signal and not run.evidence.composer_settled:
            # Composer still holds the payload, so the first click did not submit it.
            log.info("[%s] send click inconclusive, retrying once", ctx.debug_id)
            await ctx.pause(300, 600, context="send-retry")
            await click_send(session, ctx, self.locators)
            ctx.record("send_retried")
            await self.observe_send(
                ctx, run, started_at, expect_text_clear=bool(text), expect_attachment_clear=bool(payloads)
            )
        return await run.confirmation.confirm_media(run.before, request.text, run.evidence, file_count=len(payloads))


class DeclineOfferExecutor(ActionExecutor):
    """Decline the payment/offer proposal shown in a conversation."""

    route = "decline-offer"
    mode = ReadinessMode.OFFER_DECLINE

    async def dismiss_interstitials(self, session: Any, ctx: ActionContext) -> int:
        dismissed = 0
        for _ in range(INTERSTITIAL_PASSES):
            label = await click_button_by_text(
                session,
                ctx,
                self.locators.continue_labels,
                prefer_dialog=True,
                prefer_top_layer=True,
                require_in=self.locators.dialog,
            )
            if not label:
                break
            dismissed += 1
            ctx.record("interstitial_dismissed", label=label)
            await ctx.pause(150, 260, context="decline-interstitial")
        return dismissed

    async def click_decline(self, session: Any, ctx: ActionContext) -> str:
        """Click the decline control: dialog scope, payment box, known controls, then anywhere."""

        labels = self.locators.decline_labels
        async for _ in poll(ctx, ctx.deadline.clamp(6000, reserve_ms=5000), context="decline-click", interval_ms=300):
            if await click_button_by_text(
                session, ctx, labels, prefer_dialog=True, prefer_top_layer=True, require_in=self.locators.dialog
            ):
                return "dialog"
            if await click_button_by_text(session, ctx, labels, require_in=self.locators.payment_box):
                return "payment-box"
            if await click_first_interactive(session, ctx, self.locators.decline_control):
                return "control"
            if await click_button_by_text(session, ctx, labels, exclude_in=self.locators.reply_box):
                return "generic"
        return ""

    async def confirm_passes(self, session: Any, ctx: ActionContext) -> int:
        """Answer follow-up dialogs ("really decline?", "continue") that appear after the click."""

        labels = list(self.locators.decline_labels) + list(self.locators.continue_labels)
        clicked = 0
        for index in range(DECLINE_CONFIRM_PASSES):
            label = await click_button_by_text(
                session,
                ctx,
                labels,
                timeout_ms=ctx.deadline.clamp(1500 if index == 0 else 900, reserve_ms=4000),
                prefer_dialog=True,
                prefer_top_layer=True,
                require_in=self.locators.dialog,
            )
            if not label:
                break
            clicked += 1
            ctx.record("decline_confirm_clicked", label=label, attempt=index + 1)
            await ctx.pause(200, 350, context="decline-confirm")
        return clicked

    async def interact(self, request: ActionRequest, ctx: ActionContext, run: BrowserRun) -> ConversationSnapshot:
        session = run.session
        await self.dismiss_interstitials(session, ctx)
        started_at = self.clock.monotonic()
        via = await self.click_decline(session, ctx)
        if not via:
            current = await run.confirmation.capture("no-control")
            if current is not None and not offer_blocks(current):
                ctx.record("decline_not_needed")
                log.info("[%s] no offer awaiting a response, nothing to decline", ctx.debug_id)
                return current
            raise MessagingError(ErrorCode.DECLINE_BUTTON_NOT_FOUND, details=build_details(ctx.route, session.url))

        ctx.record("decline_clicked", via=via)
        confirmations = await self.confirm_passes(session, ctx)
        run.evidence.interaction_fired = True
        if run.watchdog.mutation_after(started_at):
            run.evidence.network_signal = True
            run.evidence.request_url = run.watchdog.last_mutation_url
        ctx.record("decline_sequence", via=via, confirmations=confirmations)
        return await run.confirmation.confirm_decline(run.before, run.evidence)
