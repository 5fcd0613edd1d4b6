"""Marketplace endpoints and conversation URL helpers."""

from __future__ import annotations

import re
from typing import Optional
from urllib.parse import parse_qs, quote, urljoin, urlsplit

HOME_URL = "https://www.kleinanzeigen.de/"
MESSAGE_LIST_URL = "https://www.kleinanzeigen.de/m-nachrichten.html"
ACCESS_TOKEN_URL = "https://www.kleinanzeigen.de/m-access-token.json"
MESSAGEBOX_API_HOST = "https://gateway.kleinanzeigen.de"
MARKETPLACE_DOMAIN = ".kleinanzeigen.de"

_CONVERSATION_PARAMS = ("conversationId", "conversation", "id")
_GDPR_PATH = re.compile(r"/gdpr", re.IGNORECASE)
_LOGIN_PATH = re.compile(r"m-einloggen|/login|einloggen\.html", re.IGNORECASE)
_WHITESPACE = re.compile(r"\s+")


def build_conversation_url(conversation_id: str = "", conversation_url: str = "") -> str:
    if conversation_url:
        return conversation_url
    if not conversation_id:
        return MESSAGE_LIST_URL
    return f"{MESSAGE_LIST_URL}?conversationId={quote(str(conversation_id), safe='')}"


def extract_conversation_id(href: Optional[str]) -> str:
    if not href:
        return ""
    try:
        query = parse_qs(urlsplit(urljoin(HOME_URL, href)).query)
    except ValueError:
        return ""
    for key in _CONVERSATION_PARAMS:
        values = query.get(key)
        if values and values[0]:
            return values[0]
    return ""


def normalize_match(value: Optional[str]) -> str:
    return _WHITESPACE.sub(" ", str(value or "")).strip().lower()


def is_gdpr_url(url: str) -> bool:
    return bool(_GDPR_PATH.search(url or ""))


def is_login_url(url: str) -> bool:
    return bool(_LOGIN_PATH.search(url or ""))


def is_marketplace_url(url: str) -> bool:
    try:
        host = urlsplit(url).hostname or ""
    except ValueError:
        return False
    return host == MARKETPLACE_DOMAIN.lstrip(".") or host.endswith(MARKETPLACE_DOMAIN)
