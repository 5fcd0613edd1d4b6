"""Default consent handling: cookie banner and the regional (GDPR) interstitial."""

from __future__ import annotations

import logging
from typing import Any

from .interactions import click_button_by_text, click_first_interactive, poll
from .locators import DEFAULT_LOCATORS, LocatorCatalog
from .models import ActionContext
from .urls import is_gdpr_url

log = logging.getLogger(__name__)

GDPR_EXTRA_LABELS = ("Speichern",)


class ConsentHandler:
    """Accepts consent prompts so the marketplace renders the requested page."""

    def __init__(self, locators: LocatorCatalog = DEFAULT_LOCATORS) -> None:
        self.locators = locators

    @staticmethod
    def is_consent_interruption_page(url: str) -> bool:
        return is_gdpr_url(url)

    async def dismiss_cookie_banner(self, session: Any, ctx: ActionContext, timeout_ms: float) -> bool:
        async for _ in poll(ctx, timeout_ms, context="cookie-consent", interval_ms=250):
            label = await click_button_by_text(
                session,
                ctx,
                self.locators.consent_labels,
                prefer_dialog=True,
                prefer_top_layer=True,
                require_in=self.locators.consent_container,
            )
            if label or await click_first_interactive(session, ctx, self.locators.consent_accept):
                ctx.record("cookie_banner_accepted", label=label)
                log.info("Cookie banner accepted (%s)", label or "selector")
                return True
        return False

    async def dismiss_regional_consent(self, session: Any, ctx: ActionContext, timeout_ms: float) -> bool:
        if not self.is_consent_interruption_page(session.url):
            return False
        labels = list(self.locators.consent_labels) + list(GDPR_EXTRA_LABELS)
        clicked = False
        async for _ in poll(ctx, timeout_ms, context="gdpr-consent", interval_ms=300):
            if not self.is_consent_interruption_page(session.url):
                break
            if clicked:
                continue
            clicked = bool(await click_button_by_text(session, ctx, labels, prefer_top_layer=True)) or (
                await click_first_interactive(session, ctx, self.locators.consent_accept)
            )
        left = not self.is_consent_interruption_page(session.url)
        ctx.record("gdpr_consent", clicked=clicked, left_page=left)
        if clicked and not left:
            log.warning("Regional consent clicked but page did not redirect: %s", session.url)
        return clicked

    async def settle(self, session: Any, ctx: ActionContext, *, cookie_timeout_ms: float, gdpr_timeout_ms: float) -> bool:
        """Accept whichever consent prompt is currently shown."""

        handled = False
        if self.is_consent_interruption_page(session.url):
            handled = await self.dismiss_regional_consent(session, ctx, gdpr_timeout_ms)
        if await self.dismiss_cookie_banner(session, ctx, cookie_timeout_ms):
            handled = True
        return handled
