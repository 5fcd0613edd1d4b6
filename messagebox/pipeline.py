"""Conversation fetching for one account and for many accounts at once."""

from __future__ import annotations

import asyncio
import logging
import random
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Sequence
from urllib.parse import urljoin

from .config import MessagingConfig
from .consent import ConsentHandler
from .cookies import Cookie, load_account_cookies
from .deadline import SYSTEM_CLOCK, CancellationToken, Clock, DeadlineBudget
from .devices import device_profile_for
from .faults import ErrorCode, MessagingError, build_details, wrap_fault
from .locators import LocatorCatalog
from .models import Account, ActionContext, ConversationRef, ConversationSnapshot, ConversationSummary, DeviceProfile, Proxy
from .navigation import goto, open_signed_in
from .scraping import find_matching_item, scrape_conversation_list, scrape_thread
from .session import BrowserSessionFactory
from .snapshots import (
    conversations_from_page,
    is_valid_image_url,
    normalize_image_url,
    parse_timestamp,
    summary_from_api,
    summary_from_page,
    total_from_page,
)
from .structured_logging import ActionEventLog, new_debug_id
from .transport import ConversationReader, TransportFactory, client_factory
from .urls import HOME_URL, MESSAGE_LIST_URL, build_conversation_url, extract_conversation_id, normalize_match

log = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 50
MIN_CONCURRENCY = 1
MAX_CONCURRENCY = 4


@dataclass(slots=True)
class FetchOptions:
    max_conversations: Optional[int] = None
    enrich_images: bool = True
    with_messages: bool = False


# ---------------------------------------------------------------------------
# de-duplication


def conversation_key(conversation: ConversationSummary, account_id: Any = None) -> str:
    """``id:<account>:<id>``, or a composite fallback key when the id is unknown."""

    resolved = conversation.conversation_id or extract_conversation_id(conversation.conversation_url)
    account = account_id if account_id is not None else conversation.account_id
    account_key = "unknown" if account is None else str(account)
    if resolved:
        return f"id:{account_key}:{resolved}"
    parts = (conversation.participant, conversation.ad_title, conversation.last_message, conversation.time_text)
    return f"fallback:{account_key}:" + "|".join(normalize_match(part) for part in parts)


def dedupe_conversations(
    conversations: Iterable[ConversationSummary], account_id: Any = None
) -> List[ConversationSummary]:
    seen = set()
    unique: List[ConversationSummary] = []
    for conversation in conversations:
        key = conversation_key(conversation, account_id)
        if key in seen:
            continue
        seen.add(key)
        unique.append(conversation)
    return unique


def _fallback_key(participant: str, ad_title: str) -> str:
    return f"{normalize_match(participant)}|{normalize_match(ad_title)}"


def merge_images(
    conversations: Sequence[ConversationSummary], web_items: Sequence[ConversationSummary]
) -> List[ConversationSummary]:
    """Fill missing ad images (and titles) from the browser-scraped list, by id or participant|title."""

    by_id: Dict[str, ConversationSummary] = {}
    by_fallback: Dict[str, ConversationSummary] = {}
    for item in web_items:
        if item.conversation_id and item.conversation_id not in by_id:
            by_id[item.conversation_id] = item
        key = _fallback_key(item.participant, item.ad_title)
        if key != "|":
            by_fallback[key] = item

    merged: List[ConversationSummary] = []
    for conversation in conversations:
        web = by_id.get(conversation.conversation_id) or by_fallback.get(
            _fallback_key(conversation.participant, conversation.ad_title)
        )
        if web is None or is_valid_image_url(conversation.ad_image):
            merged.append(conversation)
            continue
        merged.append(
            conversation.model_copy(
                update={
                    "ad_title": conversation.ad_title or web.ad_title,
                    "ad_image": normalize_image_url(web.ad_image) if is_valid_image_url(web.ad_image) else conversation.ad_image,
                    "conversation_url": conversation.conversation_url or web.conversation_url,
                }
            )
        )
    return merged


def summarize_conversations(conversations: Iterable[ConversationSummary]) -> List[Dict[str, Any]]:
    """Flatten fetched conversations into the list payload served to clients."""

    summaries: List[Dict[str, Any]] = []
    for index, conversation in enumerate(dedupe_conversations(conversations)):
        conversation_id = conversation.conversation_id or extract_conversation_id(conversation.conversation_url)
        last = conversation.messages[-1] if conversation.messages else None
        time_source = (last.timestamp or last.time_label) if last else ""
        parsed = parse_timestamp(time_source or conversation.time_text)
        messages = []
        for message in conversation.messages:
            payload = message.to_payload()
            if not payload["date"]:
                stamp = parse_timestamp(message.timestamp or message.time_label)
                payload.update(date=stamp["date"], time=stamp["time"])
            messages.append(payload)
        summaries.append(
            {
                "id": conversation_id or f"{conversation.account_id}-{index}",
                "conversationId": conversation_id,
                "sender": conversation.participant or (last.sender if last else ""),
                "message": conversation.last_message or (last.text if last else ""),
                "date": parsed["date"],
                "time": parsed["time"],
                "unread": conversation.unread,
                "accountId": conversation.account_id,
                "accountName": conversation.account_label,
                "conversationUrl": conversation.conversation_url
                or (build_conversation_url(conversation_id) if conversation_id else ""),
                "adTitle": conversation.ad_title,
                "adImage": normalize_image_url(conversation.ad_image),
                "messages": messages,
            }
        )
    return summaries


# ---------------------------------------------------------------------------
# per-account fetching


class ConversationFetcher:
    """Read an account's conversations through the transport, falling back to the browser."""

    def __init__(
        self,
        config: MessagingConfig,
        *,
        transport_factory: Optional[TransportFactory] = None,
        session_factory: Optional[Any] = None,
        locators: Optional[LocatorCatalog] = None,
        consent: Optional[ConsentHandler] = None,
        clock: Clock = SYSTEM_CLOCK,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.config = config
        self.transport_factory = transport_factory or client_factory(config)
        self.session_factory = session_factory or BrowserSessionFactory(config)
        self.locators = locators or LocatorCatalog.from_overrides(config.locators)
        self.consent = consent or ConsentHandler(self.locators)
        self.clock = clock
        self.rng = rng

    def _context(self, route: str, account: Account, debug_id: str, target: Optional[ConversationRef] = None) -> ActionContext:
        return ActionContext(
            route=route,
            debug_id=debug_id,
            account_id=account.id,
            conversation_id=target.conversation_id if target else "",
            conversation_url=target.canonical_url if target and target.addressable else "",
            deadline=DeadlineBudget(self.config.fetch_deadline_ms, clock=self.clock, label=route),
            cancel=CancellationToken(),
            events=ActionEventLog.create(debug_id, route, enabled=self.config.debug_events, log_root=self.config.log_root),
            pause_scale=self.config.pause_scale,
            rng=self.rng,
        )

    @staticmethod
    def _cookies(account: Account) -> List[Cookie]:
        cookies = load_account_cookies(account.cookie)
        if not cookies:
            raise MessagingError(ErrorCode.AUTH_REQUIRED, details=build_details(f"account {account.id} has no stored session"))
        return cookies

    @asynccontextmanager
    async def _signed_in_page(
        self,
        ctx: ActionContext,
        cookies: List[Cookie],
        proxy: Optional[Proxy],
        device: DeviceProfile,
        target_url: str,
    ) -> AsyncIterator[Any]:
        async with self.session_factory.open(proxy=proxy, device=device, cancel=ctx.cancel) as session:
            await open_signed_in(
                session,
                ctx,
                cookies=cookies,
                target_url=target_url,
                consent=self.consent,
                config=self.config,
                locators=self.locators,
            )
            yield session

    # conversation lists ------------------------------------------------------

    async def fetch_account_conversations(
        self,
        account: Account,
        proxy: Optional[Proxy],
        options: Optional[FetchOptions] = None,
        *,
        debug_id: str = "",
    ) -> List[ConversationSummary]:
        options = options or FetchOptions()
        cookies = self._cookies(account)
        device = device_profile_for(account, self.rng)
        ctx = self._context("fetch-conversations", account, debug_id or new_debug_id("fetch-conversations"))
        try:
            if not self.config.force_web:
                try:
                    return await self._conversations_via_transport(account, proxy, device, cookies, options, ctx)
                except Exception as exc:
                    fault = wrap_fault(exc, "transport-list")
                    log.info("[%s] API fetch failed for %s: %s", ctx.debug_id, account.label, fault.code)
                    ctx.record("transport_list_failed", code=fault.code)
            return await self._conversations_via_browser(account, proxy, device, cookies, options, ctx)
        finally:
            ctx.events.close()

    async def _conversations_via_transport(
        self,
        account: Account,
        proxy: Optional[Proxy],
        device: DeviceProfile,
        cookies: List[Cookie],
        options: FetchOptions,
        ctx: ActionContext,
    ) -> List[ConversationSummary]:
        async with self.transport_factory(cookies, proxy, device) as client:
            reader = ConversationReader(client)
            user_id = await reader.user_id()
            size = options.max_conversations or DEFAULT_PAGE_SIZE
            first = await client.list_conversations(user_id, page=0, size=size)
            raw = conversations_from_page(first)
            total = total_from_page(first, len(raw))
            page = 1
            while not options.max_conversations and len(raw) < total and page < self.config.max_pages:
                batch = conversations_from_page(await client.list_conversations(user_id, page=page, size=size))
                if not batch:
                    break
                raw.extend(batch)
                page += 1

            conversations = dedupe_conversations(
                (summary_from_api(item, user_id=user_id, account_id=account.id, account_label=account.label) for item in raw),
                account.id,
            )
            if options.max_conversations:
                conversations = conversations[: options.max_conversations]
            if not conversations:
                raise MessagingError(ErrorCode.MESSAGEBOX_API_EMPTY, details=build_details(account.label))

            if options.with_messages:
                conversations = [await self._with_messages(reader, conversation, ctx) for conversation in conversations]

        if options.enrich_images and any(not is_valid_image_url(c.ad_image) for c in conversations):
            try:
                web_items = await self._scrape_list(account, proxy, device, cookies, options, ctx)
                conversations = merge_images(conversations, dedupe_conversations(web_items, account.id))
            except Exception as exc:
                fault = wrap_fault(exc, "image-enrichment")
                log.info("[%s] web preview fetch failed for %s: %s", ctx.debug_id, account.label, fault.details)

        log.info("[%s] API conversations: %d for %s (pages=%d)", ctx.debug_id, len(conversations), account.label, page)
        ctx.record("conversations_listed", via="transport", count=len(conversations))
        return conversations

    async def _with_messages(
        self, reader: ConversationReader, conversation: ConversationSummary, ctx: ActionContext
    ) -> ConversationSummary:
        try:
            snapshot = await reader.snapshot(conversation.conversation_id, conversation.conversation_url)
        except Exception as exc:
            log.info("[%s] detail fetch failed for %s: %s", ctx.debug_id, conversation.conversation_id, wrap_fault(exc).code)
            return conversation
        return conversation.model_copy(update={"messages": list(snapshot.messages)})

    async def _scrape_list(
        self,
        account: Account,
        proxy: Optional[Proxy],
        device: DeviceProfile,
        cookies: List[Cookie],
        options: FetchOptions,
        ctx: ActionContext,
    ) -> List[ConversationSummary]:
        async with self._signed_in_page(ctx, cookies, proxy, device, MESSAGE_LIST_URL) as session:
            items = await scrape_conversation_list(session, ctx, self.locators)
        summaries = [summary_from_page(item, account_id=account.id, account_label=account.label) for item in items]
        if options.max_conversations:
            summaries = summaries[: options.max_conversations]
        return summaries

    async def _conversations_via_browser(
        self,
        account: Account,
        proxy: Optional[Proxy],
        device: DeviceProfile,
        cookies: List[Cookie],
        options: FetchOptions,
        ctx: ActionContext,
    ) -> List[ConversationSummary]:
        parsed: List[ConversationSummary] = []
        async with self._signed_in_page(ctx, cookies, proxy, device, MESSAGE_LIST_URL) as session:
            items = await scrape_conversation_list(session, ctx, self.locators)
            listed = dedupe_conversations(
                (summary_from_page(item, account_id=account.id, account_label=account.label) for item in items),
                account.id,
            )
            log.info("[%s] found %d conversations for %s", ctx.debug_id, len(listed), account.label)
            limit = options.max_conversations or len(listed)
            for conversation in listed[:limit]:
                if not conversation.conversation_url:
                    continue
                url = urljoin(HOME_URL, conversation.conversation_url)
                await goto(session, ctx, self.config, url, "open-thread")
                await ctx.pause(120, 240, context="open-thread")
                snapshot = await scrape_thread(
                    session,
                    ctx,
                    conversation_id=conversation.conversation_id,
                    conversation_url=url,
                    fallback_sender=conversation.participant,
                )
                parsed.append(
                    conversation.model_copy(
                        update={
                            "conversation_url": url,
                            "participant": conversation.participant or snapshot.participant,
                            "ad_title": conversation.ad_title or snapshot.ad_title,
                            "ad_image": conversation.ad_image or snapshot.ad_image,
                            "messages": list(snapshot.messages),
                        }
                    )
                )
        ctx.record("conversations_listed", via="browser", count=len(parsed))
        return parsed

    # single thread -----------------------------------------------------------

    async def fetch_thread_messages(
        self,
        account: Account,
        proxy: Optional[Proxy],
        target: ConversationRef,
        *,
        debug_id: str = "",
    ) -> ConversationSnapshot:
        if not target.identifies_target:
            raise MessagingError(ErrorCode.CONVERSATION_ID_REQUIRED, details="fetch-thread")
        cookies = self._cookies(account)
        device = device_profile_for(account, self.rng)
        ctx = self._context("fetch-thread", account, debug_id or new_debug_id("fetch-thread"), target)
        try:
            if not self.config.force_web:
                try:
                    return await self._thread_via_transport(target, proxy, device, cookies, ctx)
                except Exception as exc:
                    fault = wrap_fault(exc, "transport-thread")
                    log.info("[%s] API thread fetch failed: %s", ctx.debug_id, fault.code)
                    ctx.record("transport_thread_failed", code=fault.code)
            return await self._thread_via_browser(target, proxy, device, cookies, ctx)
        finally:
            ctx.events.close()

    async def _thread_via_transport(
        self,
        target: ConversationRef,
        proxy: Optional[Proxy],
        device: DeviceProfile,
        cookies: List[Cookie],
        ctx: ActionContext,
    ) -> ConversationSnapshot:
        async with self.transport_factory(cookies, proxy, device) as client:
            reader = ConversationReader(client)
            if not ctx.conversation_id:
                summary = await reader.find_conversation(
                    participant=target.participant, ad_title=target.ad_title, size=DEFAULT_PAGE_SIZE
                )
                if summary is None:
                    raise MessagingError(ErrorCode.CONVERSATION_ID_REQUIRED, details="no listed conversation matches")
                ctx.update_target(summary.conversation_id, summary.conversation_url)
            return await reader.snapshot(ctx.conversation_id, ctx.conversation_url)

    async def _thread_via_browser(
        self,
        target: ConversationRef,
        proxy: Optional[Proxy],
        device: DeviceProfile,
        cookies: List[Cookie],
        ctx: ActionContext,
    ) -> ConversationSnapshot:
        async with self._signed_in_page(ctx, cookies, proxy, device, ctx.conversation_url or MESSAGE_LIST_URL) as session:
            if not ctx.conversation_url:
                items = await scrape_conversation_list(session, ctx, self.locators)
                match = find_matching_item(items, participant=target.participant, ad_title=target.ad_title)
                if match is None:
                    raise MessagingError(ErrorCode.CONVERSATION_ID_REQUIRED, details="no listed conversation matches")
                conversation_id = str(match.get("conversationId") or "")
                url = build_conversation_url(conversation_id) if conversation_id else urljoin(HOME_URL, str(match.get("href") or ""))
                ctx.update_target(conversation_id, url)
                await goto(session, ctx, self.config, url, "open-thread")
            return await scrape_thread(
                session,
                ctx,
                conversation_id=ctx.conversation_id,
                conversation_url=ctx.conversation_url,
                fallback_sender=target.participant,
            )


# ---------------------------------------------------------------------------
# many accounts


def resolve_proxy(account: Account, proxies: Iterable[Proxy]) -> Optional[Proxy]:
    if account.proxy_id is None:
        return None
    for proxy in proxies:
        if proxy.id is not None and str(proxy.id) == str(account.proxy_id):
            return proxy
    return None


async def fetch_messages(
    accounts: Sequence[Account],
    proxies: Sequence[Proxy],
    fetcher: ConversationFetcher,
    options: Optional[FetchOptions] = None,
    *,
    concurrency: int = 2,
) -> List[ConversationSummary]:
    """Fetch every account's conversations with a bounded number of workers.

    Workers share one cursor over the account list.  A failing account is
    logged and skipped; it never aborts the batch.
    """

    eligible = [account for account in accounts if account.cookie]
    results: List[ConversationSummary] = []
    cursor = 0

    async def worker(worker_id: int) -> None:
        nonlocal cursor
        while cursor < len(eligible):
            account = eligible[cursor]
            cursor += 1
            proxy = resolve_proxy(account, proxies)
            try:
                conversations = await fetcher.fetch_account_conversations(account, proxy, options)
            except Exception as exc:
                fault = wrap_fault(exc, f"fetch-account-{account.id}")
                log.warning("Worker %d: fetch failed for %s: %s %s", worker_id, account.label, fault.code, fault.details)
                continue
            results.extend(conversations)

    workers = max(MIN_CONCURRENCY, min(MAX_CONCURRENCY, concurrency, len(eligible) or 1))
    await asyncio.gather(*(worker(index) for index in range(workers)))
    return results
