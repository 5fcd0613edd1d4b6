"""Primary transport: the marketplace messagebox read/write API over httpx."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import quote

import httpx

from .config import MessagingConfig
from .cookies import Cookie, cookie_header, user_id_from_cookies, user_id_from_token
from .devices import DEFAULT_PROFILE
from .faults import ErrorCode, FaultKind, MessagingError, build_details, wrap_fault
from .models import ConversationSnapshot, ConversationSummary, DeviceProfile, Proxy
from .snapshots import conversations_from_page, match_conversation, snapshot_from_detail, summary_from_api
from .urls import ACCESS_TOKEN_URL, MESSAGEBOX_API_HOST

log = logging.getLogger(__name__)

MESSAGEBOX_CLIENT_HEADER = "messagebox-1"


@dataclass(slots=True)
class AccessToken:
    token: str
    messagebox_key: str = ""
    expiration: int = 0


class MessageboxClient:
    """Authoritative read/write endpoint for conversations.

    One client is opened per invocation; the access token obtained from the
    session cookies is cached on the instance only.
    """

    def __init__(
        self,
        cookies: List[Cookie],
        *,
        proxy: Optional[Proxy] = None,
        device: Optional[DeviceProfile] = None,
        timeout_ms: int = 20000,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.cookies = list(cookies)
        self.proxy = proxy
        self.device = device or DEFAULT_PROFILE
        self.timeout_ms = timeout_ms
        self._transport = transport
        self._cookie_header = cookie_header(c for c in self.cookies if c.get("value"))
        self._client: Optional[httpx.AsyncClient] = None
        self._token: Optional[AccessToken] = None

    async def __aenter__(self) -> "MessageboxClient":
        await self.open()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def open(self) -> httpx.AsyncClient:
        if self._client is None:
            kwargs: Dict[str, Any] = {
                "timeout": self.timeout_ms / 1000,
                "headers": {"User-Agent": self.device.user_agent, "Accept-Language": self.device.locale},
                "follow_redirects": True,
            }
            if self._transport is not None:
                kwargs["transport"] = self._transport
            elif self.proxy is not None:
                kwargs["proxy"] = self.proxy.url()
            self._client = httpx.AsyncClient(**kwargs)
        return self._client

    async def close(self) -> None:
        if self._client is None:
            return
        client, self._client = self._client, None
        await client.aclose()

    # public API -------------------------------------------------------------
    #
    # Every call takes an optional ``timeout_ms`` so callers can bound it by
    # what remains of their deadline; the client-wide timeout applies otherwise.

    async def exchange_session_for_access_token(self, *, timeout_ms: Optional[int] = None) -> AccessToken:
        if not self._cookie_header:
            raise MessagingError(ErrorCode.AUTH_REQUIRED, details="no session cookies")
        response = await self._request(
            "GET",
            ACCESS_TOKEN_URL,
            context="access-token",
            headers={"Cookie": self._cookie_header, "Accept": "application/json"},
            timeout_ms=timeout_ms,
        )
        token = response.headers.get("authorization", "")
        if not token:
            raise MessagingError(ErrorCode.AUTH_REQUIRED, details="access token missing from response")
        box_header = response.headers.get("messagebox", "")
        parts = box_header.split(" ")
        data = self._json(response)
        expiration = data.get("expiration") if isinstance(data, dict) else 0
        self._token = AccessToken(
            token=token,
            messagebox_key=parts[1] if len(parts) > 1 else "",
            expiration=int(expiration or 0),
        )
        return self._token

    async def access_token(self, *, timeout_ms: Optional[int] = None) -> AccessToken:
        if self._token is None:
            return await self.exchange_session_for_access_token(timeout_ms=timeout_ms)
        return self._token

    async def resolve_user_id(self, *, timeout_ms: Optional[int] = None) -> str:
        """User id from the session cookie's JWT, else from the exchanged access token."""

        user_id = user_id_from_cookies(self.cookies)
        if user_id:
            return user_id
        token = await self.access_token(timeout_ms=timeout_ms)
        user_id = user_id_from_token(token.token)
        if not user_id:
            raise MessagingError(ErrorCode.AUTH_REQUIRED, details="user id not derivable from access token")
        return user_id

    async def list_conversations(
        self, user_id: str, page: int = 0, size: int = 20, *, timeout_ms: Optional[int] = None
    ) -> Dict[str, Any]:
        url = f"{self._conversations_url(user_id)}?page={int(page)}&size={int(size)}"
        response = await self._api_request("GET", url, context="list-conversations", timeout_ms=timeout_ms)
        return self._json(response)

    async def get_conversation_detail(
        self, user_id: str, conversation_id: str, *, timeout_ms: Optional[int] = None
    ) -> Dict[str, Any]:
        url = f"{self._conversations_url(user_id)}/{quote(str(conversation_id), safe='')}?contentWarnings=true"
        response = await self._api_request("GET", url, context="conversation-detail", timeout_ms=timeout_ms)
        return self._json(response)

    async def post_message(
        self, user_id: str, conversation_id: str, text: str, *, timeout_ms: Optional[int] = None
    ) -> Dict[str, Any]:
        url = f"{self._conversations_url(user_id)}/{quote(str(conversation_id), safe='')}"
        response = await self._api_request(
            "POST", url, context="post-message", json={"message": text}, timeout_ms=timeout_ms
        )
        return self._json(response)

    # internals --------------------------------------------------------------

    def _conversations_url(self, user_id: str) -> str:
        return f"{MESSAGEBOX_API_HOST}/messagebox/api/users/{quote(str(user_id), safe='')}/conversations"

    async def _api_request(
        self, method: str, url: str, *, context: str, timeout_ms: Optional[int] = None, **kwargs: Any
    ) -> httpx.Response:
        token = await self.access_token(timeout_ms=timeout_ms)
        headers = {
            "Accept": "application/json",
            "Authorization": token.token,
            "X-ECG-USER-AGENT": MESSAGEBOX_CLIENT_HEADER,
            "Cookie": self._cookie_header,
        }
        return await self._request(
            method, url, context=context, headers=headers, timeout_ms=timeout_ms, **kwargs
        )

    async def _request(
        self,
        method: str,
        url: str,
        *,
        context: str,
        headers: Optional[Dict[str, str]] = None,
        json: Any = None,
        timeout_ms: Optional[int] = None,
    ) -> httpx.Response:
        client = await self.open()
        timeout = (timeout_ms or self.timeout_ms) / 1000
        try:
            response = await client.request(method, url, headers=headers, json=json, timeout=timeout)
        except httpx.HTTPError as exc:
            raise wrap_fault(exc, context) from exc

        status = response.status_code
        if status == 407:
            raise MessagingError(
                ErrorCode.PROXY_TUNNEL_CONNECTION_FAILED,
                kind=FaultKind.PROXY_TUNNEL,
                details=build_details(context, "Proxy authentication required"),
                status=status,
            )
        if status in (401, 403):
            raise MessagingError(ErrorCode.AUTH_REQUIRED, details=context, status=status)
        if status >= 400:
            raise MessagingError(
                f"MESSAGEBOX_API_ERROR_{status}",
                details=build_details(context, response.text[:200]),
                status=status,
            )
        return response

    @staticmethod
    def _json(response: httpx.Response) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError:
            return {}
        if isinstance(data, dict):
            return data
        if isinstance(data, list):
            return {"items": data}
        return {}


TransportFactory = Callable[[List[Cookie], Optional[Proxy], DeviceProfile], MessageboxClient]


def client_factory(config: MessagingConfig) -> TransportFactory:
    def _build(cookies: List[Cookie], proxy: Optional[Proxy], device: DeviceProfile) -> MessageboxClient:
        return MessageboxClient(cookies, proxy=proxy, device=device, timeout_ms=config.request_timeout_ms)

    return _build


class ConversationReader:
    """Snapshot reads bound to one open client; resolves the user id once."""

    def __init__(self, client: MessageboxClient) -> None:
        self.client = client
        self._user_id: Optional[str] = None

    async def user_id(self, *, timeout_ms: Optional[int] = None) -> str:
        if self._user_id is None:
            self._user_id = await self.client.resolve_user_id(timeout_ms=timeout_ms)
        return self._user_id

    async def snapshot(
        self,
        conversation_id: str,
        conversation_url: str = "",
        *,
        timeout_ms: Optional[int] = None,
    ) -> ConversationSnapshot:
        user_id = await self.user_id(timeout_ms=timeout_ms)
        detail = await self.client.get_conversation_detail(user_id, conversation_id, timeout_ms=timeout_ms)
        return snapshot_from_detail(
            detail,
            user_id=user_id,
            conversation_id=conversation_id,
            conversation_url=conversation_url,
        )

    async def find_conversation(
        self,
        *,
        participant: str = "",
        ad_title: str = "",
        size: int = 20,
        timeout_ms: Optional[int] = None,
    ) -> Optional[ConversationSummary]:
        """First listed conversation matching participant and/or ad title."""

        user_id = await self.user_id(timeout_ms=timeout_ms)
        page = await self.client.list_conversations(user_id, page=0, size=size, timeout_ms=timeout_ms)
        for raw in conversations_from_page(page):
            summary = summary_from_api(raw, user_id=user_id, account_id=None, account_label="")
            if match_conversation({"participant": summary.participant, "adTitle": summary.ad_title}, participant, ad_title):
                return summary
        return None
