"""Public facade over the messaging executors and the fetch pipeline."""

from __future__ import annotations

import logging
import random
from typing import Any, Callable, List, Optional, Sequence

from .actions import ActionRequest, DeclineOfferExecutor, SendMediaExecutor, SendTextExecutor
from .config import MessagingConfig, load_config
from .consent import ConsentHandler
from .deadline import SYSTEM_CLOCK, CancellationToken, Clock
from .locators import LocatorCatalog
from .models import Account, ConversationRef, ConversationSnapshot, ConversationSummary, MediaFile, Proxy
from .pipeline import ConversationFetcher, FetchOptions, fetch_messages
from .session import BrowserSessionFactory
from .structured_logging import new_debug_id
from .transport import TransportFactory, client_factory

log = logging.getLogger(__name__)


class MessageService:
    """Entry point for reading conversations and performing messaging actions.

    Collaborators (transport, browser sessions, clock, id generator) are
    injected once and shared by every operation; nothing else is cached
    between invocations.
    """

    def __init__(
        self,
        config: Optional[MessagingConfig] = None,
        *,
        transport_factory: Optional[TransportFactory] = None,
        session_factory: Optional[Any] = None,
        locators: Optional[LocatorCatalog] = None,
        clock: Clock = SYSTEM_CLOCK,
        id_factory: Callable[[str], str] = new_debug_id,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.config = config or load_config()
        self.locators = locators or LocatorCatalog.from_overrides(self.config.locators)
        self.transport_factory = transport_factory or client_factory(self.config)
        self.session_factory = session_factory or BrowserSessionFactory(self.config)
        self.id_factory = id_factory
        shared = dict(
            transport_factory=self.transport_factory,
            session_factory=self.session_factory,
            locators=self.locators,
            consent=ConsentHandler(self.locators),
            clock=clock,
            rng=rng,
        )
        self.fetcher = ConversationFetcher(self.config, **shared)
        self.send_text = SendTextExecutor(self.config, id_factory=id_factory, **shared)
        self.send_media = SendMediaExecutor(self.config, id_factory=id_factory, **shared)
        self.decline_offer = DeclineOfferExecutor(self.config, id_factory=id_factory, **shared)

    def new_debug_id(self, route: str) -> str:
        return self.id_factory(route)

    # reads --------------------------------------------------------------------

    async def fetch_account_conversations(
        self,
        account: Account,
        proxy: Optional[Proxy],
        *,
        max_conversations: Optional[int] = None,
        enrich_images: bool = True,
        debug_id: str = "",
    ) -> List[ConversationSummary]:
        options = FetchOptions(max_conversations=max_conversations, enrich_images=enrich_images)
        return await self.fetcher.fetch_account_conversations(account, proxy, options, debug_id=debug_id)

    async def fetch_thread_messages(
        self,
        account: Account,
        proxy: Optional[Proxy],
        target: ConversationRef,
        *,
        debug_id: str = "",
    ) -> ConversationSnapshot:
        return await self.fetcher.fetch_thread_messages(account, proxy, target, debug_id=debug_id)

    async def fetch_messages(
        self,
        accounts: Sequence[Account],
        proxies: Sequence[Proxy],
        options: Optional[FetchOptions] = None,
    ) -> List[ConversationSummary]:
        log.info("Fetching conversations for %d accounts (concurrency=%d)", len(accounts), self.config.fetch_concurrency)
        return await fetch_messages(
            accounts,
            proxies,
            self.fetcher,
            options,
            concurrency=self.config.fetch_concurrency,
        )

    # actions ------------------------------------------------------------------

    async def send_conversation_message(
        self,
        account: Account,
        proxy: Optional[Proxy],
        target: ConversationRef,
        text: str,
        *,
        cancel: Optional[CancellationToken] = None,
        hard_deadline_ms: Optional[float] = None,
        debug_id: str = "",
    ) -> ConversationSnapshot:
        request = ActionRequest(
            account=account,
            proxy=proxy,
            target=target,
            text=text,
            cancel=cancel,
            hard_deadline_ms=hard_deadline_ms,
            debug_id=debug_id,
        )
        return await self.send_text.run(request)

    async def send_conversation_media(
        self,
        account: Account,
        proxy: Optional[Proxy],
        target: ConversationRef,
        text: str,
        files: Sequence[MediaFile],
        *,
        cancel: Optional[CancellationToken] = None,
        hard_deadline_ms: Optional[float] = None,
        debug_id: str = "",
    ) -> ConversationSnapshot:
        request = ActionRequest(
            account=account,
            proxy=proxy,
            target=target,
            text=text,
            files=tuple(files),
            cancel=cancel,
            hard_deadline_ms=hard_deadline_ms,
            debug_id=debug_id,
        )
        return await self.send_media.run(request)

    async def decline_conversation_offer(
        self,
        account: Account,
        proxy: Optional[Proxy],
        target: ConversationRef,
        *,
        cancel: Optional[CancellationToken] = None,
        hard_deadline_ms: Optional[float] = None,
        debug_id: str = "",
    ) -> ConversationSnapshot:
        request = ActionRequest(
            account=account,
            proxy=proxy,
            target=target,
            cancel=cancel,
            hard_deadline_ms=hard_deadline_ms,
            debug_id=debug_id,
        )
        return await self.decline_offer.run(request)
