"""Deadline budgeting and cancellation for a single action invocation."""

from __future__ import annotations

import asyncio
import logging
import random
import time
from typing import Callable, List, Optional

from .faults import action_timeout_error

log = logging.getLogger(__name__)

DEFAULT_STEP_MIN_MS = 1200
DEFAULT_STEP_RESERVE_MS = 2500
STEP_MIN_FLOOR_MS = 500


class Clock:
    """Monotonic time source and sleeper shared by every waiting loop."""

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))


SYSTEM_CLOCK = Clock()


class CancellationToken:
    """Explicit abort signal threaded into every suspension point."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason = ""
        self._callbacks: List[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str:
        return self._reason

    def cancel(self, reason: str = "aborted") -> None:
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception as exc:  # pragma: no cover - callbacks are internal
                log.warning("Cancellation callback failed: %s", exc)

    def add_callback(self, callback: Callable[[], None]) -> None:
        if self._event.is_set():
            callback()
            return
        self._callbacks.append(callback)

    def remove_callback(self, callback: Callable[[], None]) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self, context: str) -> None:
        if self._event.is_set():
            raise action_timeout_error(f"{context}-aborted:{self._reason}")


class DeadlineBudget:
    """Tracks elapsed time against a fixed ceiling and hands out step timeouts.

    ``ceiling_ms`` is fixed at construction.  Every navigation, poll loop and
    retry asks the budget for its timeout so nested steps can never add up to
    more than the ceiling.
    """

    def __init__(self, ceiling_ms: float, *, clock: Clock = SYSTEM_CLOCK, label: str = "") -> None:
        self.ceiling_ms = float(max(0.0, ceiling_ms))
        self.clock = clock
        self.label = label
        self._started = clock.monotonic()

    @classmethod
    def for_action(
        cls,
        *,
        default_ms: int,
        min_ms: int,
        grace_ms: int,
        hard_deadline_ms: Optional[float] = None,
        clock: Clock = SYSTEM_CLOCK,
        label: str = "",
    ) -> "DeadlineBudget":
        """Derive the action ceiling from the configured default and a caller hard deadline.

        Without a hard deadline the configured default applies.  With one the
        ceiling never exceeds ``hard_deadline_ms - grace_ms`` so the caller gets
        its answer before its own timer fires.
        """

        if not hard_deadline_ms or hard_deadline_ms <= 0:
            return cls(max(min_ms, default_ms), clock=clock, label=label)
        if hard_deadline_ms > 2 * grace_ms:
            usable = hard_deadline_ms - grace_ms
        else:
            usable = hard_deadline_ms / 2
        return cls(min(max(min_ms, default_ms), usable), clock=clock, label=label)

    def hard_stop_ms(self, grace_ms: float) -> float:
        """Point after which running work is cancelled outright.

        The grace window is capped at the ceiling itself, which keeps the stop
        within a caller hard deadline however :meth:`for_action` derived the
        ceiling from it.
        """

        return self.ceiling_ms + min(max(0.0, grace_ms), self.ceiling_ms)

    def elapsed_ms(self) -> float:
        return (self.clock.monotonic() - self._started) * 1000.0

    def remaining_ms(self) -> float:
        return max(0.0, self.ceiling_ms - self.elapsed_ms())

    @property
    def expired(self) -> bool:
        return self.elapsed_ms() >= self.ceiling_ms

    def has_time_left(self, reserve_ms: float = 0.0) -> bool:
        return self.remaining_ms() > reserve_ms

    def ensure_not_expired(self, context: str) -> None:
        if self.expired:
            raise action_timeout_error(f"{context}:{int(self.elapsed_ms())}ms")

    def step_timeout(
        self,
        desired_ms: float,
        *,
        min_ms: float = DEFAULT_STEP_MIN_MS,
        reserve_ms: float = DEFAULT_STEP_RESERVE_MS,
        context: str = "",
    ) -> int:
        """Clamp ``desired_ms`` to what the budget can still afford."""

        self.ensure_not_expired(context or "step")
        floor = max(STEP_MIN_FLOOR_MS, min_ms)
        desired = max(floor, desired_ms)
        available = self.remaining_ms() - reserve_ms
        if available <= floor:
            raise action_timeout_error(f"{context or 'step'}:budget-exhausted:{int(self.remaining_ms())}ms")
        return int(max(floor, min(desired, available)))

    def clamp(self, desired_ms: float, reserve_ms: float = 0.0) -> int:
        """Non-failing variant of :meth:`step_timeout` for best-effort waits."""

        return int(max(0.0, min(desired_ms, self.remaining_ms() - reserve_ms)))

    def fraction(self, ratio: float, *, min_ms: float, max_ms: float, reserve_ms: float = 0.0) -> int:
        """Sub-budget proportional to the ceiling, bounded and clamped to what remains."""

        share = max(min_ms, min(max_ms, self.ceiling_ms * ratio))
        return self.clamp(share, reserve_ms)

    async def pause(
        self,
        min_ms: float,
        max_ms: Optional[float] = None,
        *,
        scale: float = 1.0,
        cancel: Optional[CancellationToken] = None,
        context: str = "pause",
        rng: Optional[random.Random] = None,
    ) -> None:
        """Sleep for a (randomised) interval that never overruns the ceiling.

        ``rng`` makes the interval reproducible; the module generator is used otherwise.
        """

        if cancel is not None:
            cancel.raise_if_cancelled(context)
        upper = min_ms if max_ms is None else max_ms
        source = rng if rng is not None else random
        wanted = source.uniform(min_ms, upper) * scale
        delay = self.clamp(wanted)
        if delay > 0:
            await self.clock.sleep(delay / 1000.0)
        if cancel is not None:
            cancel.raise_if_cancelled(context)
