import random

import pytest

from fakes import ManualClock
from messagebox.deadline import CancellationToken, DeadlineBudget
from messagebox.faults import ErrorCode, MessagingError


def test_for_action_without_hard_deadline_uses_default() -> None:
    budget = DeadlineBudget.for_action(default_ms=45000, min_ms=25000, grace_ms=2500, clock=ManualClock())

    assert budget.ceiling_ms == 45000


def test_for_action_leaves_grace_before_hard_deadline() -> None:
    budget = DeadlineBudget.for_action(
        default_ms=45000, min_ms=25000, grace_ms=2500, hard_deadline_ms=20000, clock=ManualClock()
    )

    assert budget.ceiling_ms == 17500


def test_for_action_halves_tiny_hard_deadline() -> None:
    budget = DeadlineBudget.for_action(
        default_ms=45000, min_ms=25000, grace_ms=2500, hard_deadline_ms=4000, clock=ManualClock()
    )

    assert budget.ceiling_ms == 2000


def test_step_timeout_is_clamped_to_remaining_budget() -> None:
    clock = ManualClock()
    budget = DeadlineBudget(10000, clock=clock)

    assert budget.step_timeout(20000, min_ms=1000, reserve_ms=2000) == 8000
    clock.advance(5)
    assert budget.step_timeout(20000, min_ms=1000, reserve_ms=2000) == 3000


def test_step_timeout_fails_fast_when_minimum_cannot_be_met() -> None:
    clock = ManualClock()
    budget = DeadlineBudget(10000, clock=clock)
    clock.advance(8.5)

    with pytest.raises(MessagingError) as excinfo:
        budget.step_timeout(5000, min_ms=1000, reserve_ms=2000, context="navigate")

    assert excinfo.value.code == ErrorCode.MESSAGE_ACTION_TIMEOUT.value
    assert "navigate" in excinfo.value.details


def test_expired_budget_raises_and_clamp_returns_zero() -> None:
    clock = ManualClock()
    budget = DeadlineBudget(1000, clock=clock)
    clock.advance(1.5)

    assert budget.expired
    assert budget.clamp(500) == 0
    with pytest.raises(MessagingError):
        budget.ensure_not_expired("poll")


def test_fraction_is_bounded() -> None:
    budget = DeadlineBudget(45000, clock=ManualClock())

    assert budget.fraction(0.5, min_ms=8000, max_ms=25000) == 22500
    assert budget.fraction(0.1, min_ms=8000, max_ms=25000) == 8000
    assert budget.fraction(0.9, min_ms=8000, max_ms=25000, reserve_ms=30000) == 15000


@pytest.mark.asyncio
async def test_pause_never_overruns_the_ceiling() -> None:
    clock = ManualClock()
    budget = DeadlineBudget(1000, clock=clock)

    await budget.pause(5000)

    assert clock.sleeps == [1.0]


@pytest.mark.asyncio
async def test_pause_observes_cancellation() -> None:
    token = CancellationToken()
    token.cancel("caller-gone")

    with pytest.raises(MessagingError) as excinfo:
        await DeadlineBudget(1000, clock=ManualClock()).pause(100, cancel=token)

    assert "caller-gone" in excinfo.value.details


def test_cancel_runs_callbacks_once() -> None:
    calls = []
    token = CancellationToken()
    token.add_callback(lambda: calls.append("first"))

    token.cancel("abort")
    token.cancel("again")
    token.add_callback(lambda: calls.append("late"))

    assert calls == ["first", "late"]
    assert token.reason == "abort"


def test_removed_callback_is_not_called() -> None:
    calls = []
    token = CancellationToken()
    callback = lambda: calls.append("x")  # noqa: E731
    token.add_callback(callback)
    token.remove_callback(callback)

    token.cancel()

    assert calls == []


@pytest.mark.parametrize("hard_deadline_ms", [600, 4000, 20000])
def test_hard_stop_never_passes_the_callers_hard_deadline(hard_deadline_ms) -> None:
    budget = DeadlineBudget.for_action(
        default_ms=45000, min_ms=25000, grace_ms=2500, hard_deadline_ms=hard_deadline_ms, clock=ManualClock()
    )

    assert budget.ceiling_ms < budget.hard_stop_ms(2500) <= hard_deadline_ms


def test_hard_stop_adds_full_grace_without_hard_deadline() -> None:
    budget = DeadlineBudget.for_action(default_ms=45000, min_ms=25000, grace_ms=2500, clock=ManualClock())

    assert budget.hard_stop_ms(2500) == 47500


@pytest.mark.asyncio
async def test_pause_is_reproducible_with_a_seeded_rng() -> None:
    first, second = ManualClock(), ManualClock()

    for clock in (first, second):
        budget = DeadlineBudget(10000, clock=clock)
        await budget.pause(100, 900, rng=random.Random(11))
        await budget.pause(100, 900, rng=random.Random(12))

    assert first.sleeps == second.sleeps
    assert all(0.1 <= seconds <= 0.9 for seconds in first.sleeps)
