import pytest

from fakes import FakeSession, ManualClock
from messagebox.deadline import CancellationToken, DeadlineBudget
from messagebox.faults import ErrorCode, MessagingError
from messagebox.locators import DEFAULT_LOCATORS
from messagebox.models import ActionContext
from messagebox.readiness import (
    ConversationReadiness,
    InvokeRenderHook,
    ReadinessMode,
    ReadinessState,
    RecoveryStrategy,
    Renavigate,
    UIState,
)
from messagebox.structured_logging import ActionEventLog
from messagebox.urls import MESSAGE_LIST_URL

TARGET = "https://www.kleinanzeigen.de/m-nachrichten.html?conversationId=c-1"


def _context(clock: ManualClock) -> ActionContext:
    return ActionContext(
        route="send-message",
        debug_id="dbg",
        account_id=1,
        conversation_id="c-1",
        conversation_url=TARGET,
        deadline=DeadlineBudget(45000, clock=clock),
        cancel=CancellationToken(),
        events=ActionEventLog("dbg", "send-message"),
        pause_scale=0,
    )


def _machine(session: FakeSession, ctx: ActionContext, *, mode=ReadinessMode.SEND_TEXT, timeout_ms=20000, strategies=None):
    return ConversationReadiness(
        session,
        ctx,
        mode=mode,
        locators=DEFAULT_LOCATORS,
        timeout_ms=timeout_ms,
        target_url=TARGET,
        conversation_id="c-1",
        strategies=strategies,
    )


class ExplodingStrategy(RecoveryStrategy):
    name = "exploding"

    async def attempt(self, machine, state) -> bool:
        raise RuntimeError("boom")


def test_ui_state_results_merge_across_frames() -> None:
    state = UIState.from_frames([{"url": TARGET, "hasLoadingIndicator": True}, None, {"hasFileInput": True}])

    assert state.url == TARGET
    assert state.has_file_input and state.has_loading_indicator
    assert not state.is_loading_blocking
    assert state.satisfies(ReadinessMode.SEND_MEDIA)
    assert not state.satisfies(ReadinessMode.SEND_TEXT)


def test_mode_predicates() -> None:
    assert not UIState(has_reply_box=True, has_loading_indicator=True).is_loading_blocking
    assert UIState(has_loading_indicator=True).is_loading_blocking
    assert UIState(has_message_content=True, has_reply_box=True).satisfies(ReadinessMode.OFFER_DECLINE)
    assert not UIState(has_message_content=True).satisfies(ReadinessMode.OFFER_DECLINE)
    assert UIState(has_payment_box=True).satisfies(ReadinessMode.OFFER_DECLINE)
    assert UIState(has_reply_box=True).to_dict()["hasReplyBox"] is True


@pytest.mark.asyncio
async def test_ready_page_returns_immediately() -> None:
    clock = ManualClock()
    session = FakeSession(url=TARGET)
    machine = _machine(session, _context(clock))

    state = await machine.wait()

    assert state.has_reply_box
    assert machine.state is ReadinessState.READY
    assert clock.sleeps == []


@pytest.mark.asyncio
async def test_never_ready_reports_ui_state_after_recoveries() -> None:
    clock = ManualClock()
    session = FakeSession(url=TARGET)
    session.ui = {}
    machine = _machine(session, _context(clock))

    with pytest.raises(MessagingError) as excinfo:
        await machine.wait()

    error = excinfo.value
    assert error.code == ErrorCode.CONVERSATION_NOT_READY.value
    assert error.data["ui_state"]["hasReplyBox"] is False
    assert [r["strategy"] for r in error.data["recoveries"]] == ["renavigate", "renavigate"]
    assert session.navigations == [TARGET, TARGET]
    assert machine.state is ReadinessState.TIMEOUT


@pytest.mark.asyncio
async def test_recovery_can_make_the_page_ready() -> None:
    clock = ManualClock()
    session = FakeSession(url=TARGET)
    session.ui = {"hasLoadingIndicator": True}

    def rendered(page: FakeSession, url: str) -> None:
        page.ui = {"hasReplyBox": True}

    session.on_navigate = rendered
    machine = _machine(session, _context(clock))

    state = await machine.wait()

    assert state.has_reply_box
    assert len(machine.recoveries) == 1


@pytest.mark.asyncio
async def test_strategy_failure_is_recorded_and_next_strategy_runs() -> None:
    clock = ManualClock()
    session = FakeSession(url=TARGET)
    session.ui = {}
    machine = _machine(session, _context(clock), strategies=[ExplodingStrategy(), Renavigate()])

    with pytest.raises(MessagingError):
        await machine.wait()

    first, second = machine.recoveries[:2]
    assert first["strategy"] == "exploding" and first["acted"] is False
    assert first["error"] == ErrorCode.UNKNOWN_ERROR.value
    assert second["strategy"] == "renavigate"


@pytest.mark.asyncio
async def test_cancelled_request_aborts_polling() -> None:
    clock = ManualClock()
    session = FakeSession(url=TARGET)
    session.ui = {}
    ctx = _context(clock)
    ctx.cancel.cancel("client-gone")
    machine = _machine(session, ctx)

    with pytest.raises(MessagingError) as excinfo:
        await machine.wait()

    assert excinfo.value.code == ErrorCode.MESSAGE_ACTION_TIMEOUT.value
    assert machine.state is ReadinessState.ABORTED


class TimedRenderHook(InvokeRenderHook):
    def __init__(self) -> None:
        super().__init__()
        self.times = []

    async def attempt(self, machine, state) -> bool:
        self.times.append(machine.clock.monotonic())
        return await super().attempt(machine, state)


def _strategies(machine: ConversationReadiness):
    return [entry["strategy"] for entry in machine.recoveries]


def test_render_hook_only_applies_to_a_page_stuck_loading() -> None:
    machine = _machine(FakeSession(url=TARGET), _context(ManualClock()))
    strategy = InvokeRenderHook()

    assert strategy.applicable(machine, UIState(has_loading_indicator=True, has_render_hook=True))
    assert not strategy.applicable(machine, UIState(has_loading_indicator=True))
    assert not strategy.applicable(machine, UIState(has_render_hook=True))
    assert not strategy.applicable(
        machine, UIState(has_loading_indicator=True, has_render_hook=True, has_payment_box=True)
    )


@pytest.mark.asyncio
async def test_matching_conversation_link_is_clicked_before_navigating() -> None:
    clock = ManualClock()
    session = FakeSession(url=TARGET)
    session.ui = {"hasMatchingConversationLink": True}

    def opened(page: FakeSession) -> None:
        page.ui = {"hasReplyBox": True}

    session.on_link_click = opened
    machine = _machine(session, _context(clock))

    await machine.wait()

    assert _strategies(machine) == ["click-conversation-link"]
    assert session.navigations == []


@pytest.mark.asyncio
async def test_navigation_strategies_run_in_order_until_exhausted() -> None:
    clock = ManualClock()
    session = FakeSession(url=TARGET)
    session.ui = {}
    machine = _machine(session, _context(clock), timeout_ms=40000)

    with pytest.raises(MessagingError):
        await machine.wait()

    assert _strategies(machine) == ["renavigate", "renavigate", "via-conversation-list"]
    assert session.navigations == [TARGET, TARGET, MESSAGE_LIST_URL, TARGET]
    assert session.render_hook_calls == 0


@pytest.mark.asyncio
async def test_render_hook_runs_first_while_loading_is_blocking() -> None:
    clock = ManualClock()
    session = FakeSession(url=TARGET)
    session.ui = {"hasLoadingIndicator": True, "hasRenderHook": True}
    session.render_hook_result = {"invoked": True}
    machine = _machine(session, _context(clock))

    with pytest.raises(MessagingError):
        await machine.wait()

    assert _strategies(machine) == ["invoke-render-hook", "renavigate"]
    assert session.render_hook_calls == 1


@pytest.mark.asyncio
async def test_render_hook_without_effect_falls_through_in_the_same_round() -> None:
    clock = ManualClock()
    session = FakeSession(url=TARGET)
    session.ui = {"hasLoadingIndicator": True, "hasRenderHook": True}
    machine = _machine(session, _context(clock))

    with pytest.raises(MessagingError):
        await machine.wait()

    first, second = machine.recoveries[:2]
    assert first["strategy"] == "invoke-render-hook" and first["acted"] is False
    assert second["strategy"] == "renavigate"


@pytest.mark.asyncio
async def test_render_hook_is_rate_limited_and_capped() -> None:
    clock = ManualClock()
    session = FakeSession(url=TARGET)
    session.ui = {"hasLoadingIndicator": True, "hasRenderHook": True}
    session.render_hook_result = {"invoked": True}
    hook = TimedRenderHook()
    machine = _machine(session, _context(clock), timeout_ms=40000, strategies=[hook])

    with pytest.raises(MessagingError):
        await machine.wait()

    assert len(hook.times) == 2
    assert hook.times[1] - hook.times[0] >= InvokeRenderHook.min_interval_ms / 1000
    assert session.render_hook_calls == 2
    assert hook.exhausted
