"""Signed-in navigation shared by the action executors and the browser fetch path."""

from __future__ import annotations

import logging
from typing import Any, Iterable

from .config import MessagingConfig
from .consent import ConsentHandler
from .cookies import Cookie, to_browser_cookie
from .faults import ErrorCode, MessagingError, build_details
from .interactions import is_auth_wall
from .locators import LocatorCatalog
from .models import ActionContext
from .urls import HOME_URL, is_gdpr_url

log = logging.getLogger(__name__)

ACTION_NAV_MAX_MS = 18000
ACTION_NAV_MIN_MS = 4500
ACTION_NAV_RESERVE_MS = 9000


def navigation_timeout(ctx: ActionContext, config: MessagingConfig, context: str) -> int:
    desired = min(config.navigation_timeout_ms, ACTION_NAV_MAX_MS)
    return ctx.deadline.step_timeout(desired, min_ms=ACTION_NAV_MIN_MS, reserve_ms=ACTION_NAV_RESERVE_MS, context=context)


async def goto(session: Any, ctx: ActionContext, config: MessagingConfig, url: str, context: str) -> None:
    ctx.checkpoint(context)
    timeout = navigation_timeout(ctx, config, context)
    ctx.record("navigate", url=url, timeout_ms=timeout, context=context)
    await session.navigate(url, timeout_ms=timeout, context=context)


async def settle_consent(session: Any, ctx: ActionContext, consent: ConsentHandler, config: MessagingConfig) -> None:
    await consent.settle(
        session,
        ctx,
        cookie_timeout_ms=config.consent_timeout_ms,
        gdpr_timeout_ms=config.gdpr_timeout_ms,
    )
    if consent.is_consent_interruption_page(session.url):
        raise MessagingError(ErrorCode.CONSENT_REQUIRED, details=build_details(ctx.route, session.url))


async def open_signed_in(
    session: Any,
    ctx: ActionContext,
    *,
    cookies: Iterable[Cookie],
    target_url: str,
    consent: ConsentHandler,
    config: MessagingConfig,
    locators: LocatorCatalog,
) -> None:
    """Home page, consent, session cookies, target page, consent again, login-wall check."""

    await goto(session, ctx, config, HOME_URL, "open-home")
    await settle_consent(session, ctx, consent, config)
    browser_cookies = [to_browser_cookie(cookie) for cookie in cookies]
    await session.add_cookies(browser_cookies)
    ctx.record("cookies_injected", count=len(browser_cookies))

    await goto(session, ctx, config, target_url, "open-target")
    if is_gdpr_url(session.url):
        log.info("[%s] regional consent interstitial before %s", ctx.debug_id, target_url)
    await settle_consent(session, ctx, consent, config)
    if await is_auth_wall(session, locators):
        raise MessagingError(ErrorCode.AUTH_REQUIRED, details=build_details(ctx.route, "login wall", session.url))
