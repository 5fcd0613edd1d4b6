"""Before/after snapshot comparison deciding whether an action took effect."""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple

from .faults import ErrorCode, MessagingError, build_details, wrap_fault
from .models import ActionContext, ConversationSnapshot, Message
from .snapshots import PAYMENT_MESSAGE_TYPE, empty_snapshot
from .urls import normalize_match

log = logging.getLogger(__name__)

MIN_SNAPSHOT_TIMEOUT_MS = 500
_LABEL_KEYS = ("ctaText", "label", "title", "text", "actionType")

SnapshotFetcher = Callable[[int], Awaitable[ConversationSnapshot]]


# ---------------------------------------------------------------------------
# counting


def count_outgoing_text_matches(snapshot: Optional[ConversationSnapshot], text: str) -> int:
    expected = normalize_match(text)
    if not expected or snapshot is None:
        return 0
    count = 0
    for message in snapshot.outgoing():
        current = normalize_match(message.text)
        if current and (current == expected or expected in current):
            count += 1
    return count


def attachment_units(snapshot: Optional[ConversationSnapshot]) -> int:
    if snapshot is None:
        return 0
    return sum(len(message.attachments) for message in snapshot.outgoing())


def text_confirmed(before: Optional[ConversationSnapshot], after: ConversationSnapshot, text: str) -> bool:
    before_count = count_outgoing_text_matches(before, text)
    after_count = count_outgoing_text_matches(after, text)
    return after_count > before_count or (before_count == 0 and after_count > 0)


def media_increased(before: Optional[ConversationSnapshot], after: ConversationSnapshot) -> bool:
    return attachment_units(after) > attachment_units(before)


# ---------------------------------------------------------------------------
# offers


def action_labels(offer: Mapping[str, Any]) -> List[str]:
    labels: List[str] = []
    for action in offer.get("actions") or []:
        if isinstance(action, Mapping):
            raw = next((action.get(key) for key in _LABEL_KEYS if action.get(key)), "")
        else:
            raw = action
        label = normalize_match(str(raw or ""))
        if label:
            labels.append(label)
    return labels


def is_offer_block(message: Message) -> bool:
    """A payment/offer proposal that still carries response actions."""

    offer = message.offer or {}
    if not offer.get("actions"):
        return False
    return (
        str(offer.get("type") or "").upper() == PAYMENT_MESSAGE_TYPE
        or bool(offer.get("paymentAndShippingMessageType"))
        or bool(offer.get("offerId"))
        or bool(offer.get("negotiationId"))
    )


def offer_blocks(snapshot: Optional[ConversationSnapshot]) -> List[Tuple[int, Message]]:
    if snapshot is None:
        return []
    return [(index, message) for index, message in enumerate(snapshot.messages) if is_offer_block(message)]


def offer_fingerprint(message: Message, index: int) -> str:
    offer = message.offer or {}
    identity = "|".join(
        [str(offer.get("offerId") or ""), str(offer.get("negotiationId") or ""), message.id, str(index)]
    )
    return f"{identity}::{','.join(sorted(action_labels(offer)))}"


def offer_fingerprints(snapshot: Optional[ConversationSnapshot]) -> Counter:
    return Counter(offer_fingerprint(message, index) for index, message in offer_blocks(snapshot))


def decline_applied(before: Optional[ConversationSnapshot], after: ConversationSnapshot) -> bool:
    """No offer blocks remain, or some block seen before has disappeared."""

    after_prints = offer_fingerprints(after)
    if not after_prints:
        return True
    before_prints = offer_fingerprints(before)
    return any(after_prints[fingerprint] < count for fingerprint, count in before_prints.items())


# ---------------------------------------------------------------------------
# decision


@dataclass
class Evidence:
    """Interaction-side signals collected while the browser performed the action."""

    interaction_fired: bool = False
    network_signal: bool = False
    composer_settled: bool = False
    request_url: str = ""

    @property
    def any(self) -> bool:
        return self.interaction_fired or self.network_signal or self.composer_settled

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class SnapshotConfirmation:
    """Capture snapshots through the primary transport and apply the decision policy.

    A failed capture means "no baseline" or "no after-state", never an error.
    When the comparison is inconclusive but the interaction left evidence the
    action counts as done: reporting a false failure invites a duplicate send.
    """

    def __init__(
        self,
        fetch: SnapshotFetcher,
        ctx: ActionContext,
        *,
        timeout_ms: int,
        attempts: int = 1,
        retry_delay_ms: int = 350,
    ) -> None:
        self.fetch = fetch
        self.ctx = ctx
        self.timeout_ms = timeout_ms
        self.attempts = max(1, attempts)
        self.retry_delay_ms = retry_delay_ms

    async def capture(self, label: str) -> Optional[ConversationSnapshot]:
        for attempt in range(self.attempts):
            self.ctx.cancel.raise_if_cancelled(f"{self.ctx.route}:snapshot-{label}")
            timeout = self.ctx.deadline.clamp(self.timeout_ms, reserve_ms=250)
            if timeout < MIN_SNAPSHOT_TIMEOUT_MS:
                self.ctx.record("snapshot_skipped", label=label, reason="budget")
                return None
            try:
                snapshot = await self.fetch(timeout)
            except Exception as exc:
                fault = wrap_fault(exc, f"snapshot-{label}")
                self.ctx.record("snapshot_failed", label=label, attempt=attempt + 1, code=fault.code)
                log.info("[%s] %s snapshot failed: %s", self.ctx.debug_id, label, fault.details)
                if attempt + 1 < self.attempts:
                    await self.ctx.pause(self.retry_delay_ms, context=f"snapshot-{label}")
                continue
            self.ctx.record("snapshot_captured", label=label, messages=len(snapshot.messages))
            return snapshot
        return None

    async def _confirm(
        self,
        check: Callable[[ConversationSnapshot], bool],
        *,
        failure: ErrorCode,
        evidence: Evidence,
    ) -> ConversationSnapshot:
        after = await self.capture("after")
        confirmed = after is not None and check(after)
        if not confirmed and self.ctx.deadline.has_time_left(self.retry_delay_ms + MIN_SNAPSHOT_TIMEOUT_MS):
            await self.ctx.pause(self.retry_delay_ms, context="snapshot-retry")
            retried = await self.capture("after-retry")
            if retried is not None:
                after = retried
                confirmed = check(retried)

        self.ctx.record("confirmation", confirmed=confirmed, evidence=evidence.to_dict(), failure=failure.value)
        if confirmed and after is not None:
            return after
        if evidence.any:
            log.warning(
                "[%s] %s not visible in snapshot, presuming success from interaction evidence %s",
                self.ctx.debug_id,
                self.ctx.route,
                evidence.to_dict(),
            )
            return after or empty_snapshot(self.ctx.conversation_id, self.ctx.conversation_url)
        raise MessagingError(
            failure,
            details=build_details(self.ctx.route, self.ctx.conversation_id, evidence.request_url),
            data={"evidence": evidence.to_dict()},
        )

    async def confirm_text(
        self, before: Optional[ConversationSnapshot], text: str, evidence: Evidence
    ) -> ConversationSnapshot:
        return await self._confirm(
            lambda after: text_confirmed(before, after, text),
            failure=ErrorCode.MESSAGE_SEND_NOT_CONFIRMED,
            evidence=evidence,
        )

    async def confirm_media(
        self, before: Optional[ConversationSnapshot], text: str, evidence: Evidence, *, file_count: int
    ) -> ConversationSnapshot:
        def check(after: ConversationSnapshot) -> bool:
            if text.strip() and not text_confirmed(before, after, text):
                return False
            if file_count <= 0:
                return True
            return media_increased(before, after) or evidence.network_signal or evidence.composer_settled

        return await self._confirm(check, failure=ErrorCode.MESSAGE_MEDIA_SEND_NOT_CONFIRMED, evidence=evidence)

    async def confirm_decline(
        self, before: Optional[ConversationSnapshot], evidence: Evidence
    ) -> ConversationSnapshot:
        return await self._confirm(
            lambda after: decline_applied(before, after),
            failure=ErrorCode.DECLINE_NOT_APPLIED,
            evidence=evidence,
        )
