"""Browser-driven reading of the conversation list and single threads.

Used when the primary transport is unavailable or returns nothing, and to
resolve a conversation by participant/ad title inside a browser session.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional

from .interactions import poll
from .locators import LocatorCatalog
from .models import ActionContext, ConversationSnapshot
from .page_scripts import CONVERSATION_LIST_SCRIPT, THREAD_MESSAGES_SCRIPT, THREAD_META_SCRIPT
from .snapshots import match_conversation, snapshot_from_page
from .urls import extract_conversation_id

log = logging.getLogger(__name__)

LIST_TIMEOUT_MS = 8000
THREAD_TIMEOUT_MS = 8000


def _item_key(item: Mapping[str, Any]) -> str:
    return str(item.get("conversationId") or item.get("href") or "")


async def scrape_conversation_list(
    session: Any,
    ctx: ActionContext,
    locators: LocatorCatalog,
    *,
    timeout_ms: float = LIST_TIMEOUT_MS,
) -> List[Dict[str, Any]]:
    """Conversation cards of the currently opened list page, merged across frames."""

    items: List[Dict[str, Any]] = []
    async for _ in poll(ctx, timeout_ms, context="scrape-list", interval_ms=400):
        seen = set()
        items = []
        for result in await session.evaluate_all(CONVERSATION_LIST_SCRIPT, {"cards": locators.conversation_card}):
            for item in result or []:
                if not isinstance(item, Mapping):
                    continue
                key = _item_key(item)
                if key and key in seen:
                    continue
                seen.add(key)
                entry = dict(item)
                entry["conversationId"] = entry.get("conversationId") or extract_conversation_id(entry.get("href"))
                items.append(entry)
        if items:
            break
    ctx.record("list_scraped", count=len(items))
    return items


def find_matching_item(
    items: List[Dict[str, Any]],
    *,
    participant: str = "",
    ad_title: str = "",
) -> Optional[Dict[str, Any]]:
    for item in items:
        if match_conversation(item, participant, ad_title):
            return item
    return None


async def scrape_thread(
    session: Any,
    ctx: ActionContext,
    *,
    conversation_id: str = "",
    conversation_url: str = "",
    fallback_sender: str = "",
    timeout_ms: float = THREAD_TIMEOUT_MS,
) -> ConversationSnapshot:
    """Messages of the currently opened thread page."""

    raw: List[Mapping[str, Any]] = []
    async for _ in poll(ctx, timeout_ms, context="scrape-thread", interval_ms=400):
        raw = []
        for result in await session.evaluate_all(THREAD_MESSAGES_SCRIPT, {"fallbackSender": fallback_sender}):
            raw.extend(entry for entry in (result or []) if isinstance(entry, Mapping))
        if raw:
            break
    meta = await session.evaluate(THREAD_META_SCRIPT, {}) or {}
    snapshot = snapshot_from_page(
        raw,
        meta,
        conversation_id=conversation_id or extract_conversation_id(session.url),
        conversation_url=conversation_url,
    )
    ctx.record("thread_scraped", messages=len(snapshot.messages))
    return snapshot
