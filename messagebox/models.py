"""Typed models shared by the messaging actions."""

from __future__ import annotations

import json
import random
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Tuple, Union
from urllib.parse import quote

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

from .deadline import CancellationToken, DeadlineBudget
from .faults import action_timeout_error
from .structured_logging import ActionEventLog
from .urls import build_conversation_url, extract_conversation_id

Identifier = Union[int, str]
Direction = Literal["incoming", "outgoing"]


class Proxy(BaseModel):
    """Upstream proxy an account's traffic is routed through."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: Optional[Identifier] = None
    host: str
    port: int
    username: str = ""
    password: str = ""
    type: str = Field(default="http", validation_alias=AliasChoices("type", "protocol"))

    @field_validator("type", mode="before")
    @classmethod
    def _normalise_type(cls, value: Any) -> str:
        return str(value or "http").strip().lower()

    @field_validator("host", mode="before")
    @classmethod
    def _normalise_host(cls, value: Any) -> str:
        text = str(value or "").strip()
        if "://" in text:
            text = text.split("://", 1)[1]
        return text.rstrip("/")

    @property
    def has_credentials(self) -> bool:
        return bool(self.username and self.password)

    @property
    def is_socks(self) -> bool:
        return self.type.startswith("socks")

    def scheme(self, *, for_browser: bool = False) -> str:
        # Chromium only understands socks5://, HTTP clients should resolve DNS remotely.
        if for_browser and self.type == "socks5h":
            return "socks5"
        if not for_browser and self.type == "socks5":
            return "socks5h"
        return self.type

    def server(self, *, for_browser: bool = False) -> str:
        return f"{self.scheme(for_browser=for_browser)}://{self.host}:{self.port}"

    def url(self, *, for_browser: bool = False) -> str:
        auth = ""
        if self.has_credentials:
            auth = f"{quote(self.username, safe='')}:{quote(self.password, safe='')}@"
        return f"{self.scheme(for_browser=for_browser)}://{auth}{self.host}:{self.port}"


class Geolocation(BaseModel):
    latitude: float
    longitude: float
    accuracy: float = 50


class DeviceProfile(BaseModel):
    """Browser fingerprint an account presents to the marketplace."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str
    user_agent: str = Field(validation_alias=AliasChoices("user_agent", "userAgent"))
    viewport_width: int = 1366
    viewport_height: int = 768
    locale: str = "de-DE,de;q=0.9,en;q=0.8"
    timezone: str = "Europe/Berlin"
    platform: str = "Win32"
    geolocation: Optional[Geolocation] = None

    @model_validator(mode="before")
    @classmethod
    def _flatten_viewport(cls, value: Any) -> Any:
        if isinstance(value, dict) and isinstance(value.get("viewport"), dict):
            data = dict(value)
            viewport = data.pop("viewport")
            data.setdefault("viewport_width", viewport.get("width", 1366))
            data.setdefault("viewport_height", viewport.get("height", 768))
            return data
        return value

    @property
    def browser_locale(self) -> str:
        return self.locale.split(",", 1)[0].strip() or "de-DE"


class Account(BaseModel):
    """Managed marketplace account; read-only to the messaging core."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: Identifier
    cookie: str = Field(default="", validation_alias=AliasChoices("cookie", "cookies"))
    device_profile: Optional[Union[DeviceProfile, str]] = Field(
        default=None, validation_alias=AliasChoices("device_profile", "deviceProfile")
    )
    proxy_id: Optional[Identifier] = Field(default=None, validation_alias=AliasChoices("proxy_id", "proxyId"))
    profile_name: str = Field(default="", validation_alias=AliasChoices("profile_name", "profileName"))
    profile_email: str = Field(default="", validation_alias=AliasChoices("profile_email", "profileEmail"))
    username: str = ""

    @field_validator("cookie", mode="before")
    @classmethod
    def _coerce_cookie(cls, value: Any) -> str:
        if value is None:
            return ""
        if isinstance(value, (list, dict)):
            return json.dumps(value)
        return str(value)

    @field_validator("device_profile", mode="before")
    @classmethod
    def _decode_profile(cls, value: Any) -> Any:
        if isinstance(value, str) and value.strip().startswith("{"):
            try:
                return json.loads(value)
            except ValueError:
                return None
        return value or None

    @property
    def label(self) -> str:
        return self.profile_name or self.username or self.profile_email or f"account-{self.id}"


class ConversationRef(BaseModel):
    """Target conversation, by id/URL or by participant and ad title."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    conversation_id: str = Field(default="", validation_alias=AliasChoices("conversation_id", "conversationId"))
    conversation_url: str = Field(default="", validation_alias=AliasChoices("conversation_url", "conversationUrl"))
    participant: str = ""
    ad_title: str = Field(default="", validation_alias=AliasChoices("ad_title", "adTitle"))

    @model_validator(mode="after")
    def _derive_id(self) -> "ConversationRef":
        if not self.conversation_id and self.conversation_url:
            self.conversation_id = extract_conversation_id(self.conversation_url)
        return self

    @property
    def identifies_target(self) -> bool:
        return any((self.conversation_id, self.conversation_url, self.participant, self.ad_title))

    @property
    def addressable(self) -> bool:
        return bool(self.conversation_id or self.conversation_url)

    @property
    def canonical_url(self) -> str:
        if self.conversation_id:
            return build_conversation_url(self.conversation_id)
        return build_conversation_url("", self.conversation_url)

    def with_id(self, conversation_id: str, conversation_url: str = "") -> "ConversationRef":
        return self.model_copy(
            update={
                "conversation_id": conversation_id,
                "conversation_url": conversation_url or build_conversation_url(conversation_id),
            }
        )


class Message(BaseModel):
    """One entry of a conversation; direction is fixed when the message is mapped."""

    model_config = ConfigDict(frozen=True)

    id: str
    text: str = ""
    direction: Direction = "incoming"
    sender: str = ""
    timestamp: str = ""
    time_label: str = ""
    date: str = ""
    time: str = ""
    attachments: Tuple[Dict[str, Any], ...] = ()
    offer: Optional[Dict[str, Any]] = None

    @property
    def is_outgoing(self) -> bool:
        return self.direction == "outgoing"

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.id,
            "text": self.text,
            "direction": self.direction,
            "sender": self.sender,
            "dateTime": self.timestamp,
            "timeLabel": self.time_label,
            "date": self.date,
            "time": self.time,
        }
        if self.attachments:
            payload["attachments"] = list(self.attachments)
        if self.offer:
            payload.update(self.offer)
        return payload


class ConversationSnapshot(BaseModel):
    """Point-in-time read of a conversation; compared by value, never by identity."""

    model_config = ConfigDict(frozen=True)

    conversation_id: str = ""
    conversation_url: str = ""
    participant: str = ""
    ad_title: str = ""
    ad_image: str = ""
    messages: Tuple[Message, ...] = ()

    def outgoing(self) -> List[Message]:
        return [message for message in self.messages if message.is_outgoing]

    def to_payload(self) -> Dict[str, Any]:
        return {
            "conversationId": self.conversation_id,
            "conversationUrl": self.conversation_url,
            "participant": self.participant,
            "adTitle": self.ad_title,
            "adImage": self.ad_image,
            "messages": [message.to_payload() for message in self.messages],
        }


class ConversationSummary(BaseModel):
    """Entry of an account's conversation list."""

    conversation_id: str = ""
    conversation_url: str = ""
    participant: str = ""
    ad_title: str = ""
    ad_image: str = ""
    last_message: str = ""
    time_text: str = ""
    unread: bool = False
    account_id: Optional[Identifier] = None
    account_label: str = ""
    messages: List[Message] = Field(default_factory=list)


class MediaFile(BaseModel):
    """Image attached to an outgoing message, held in memory."""

    filename: str = ""
    content: bytes
    mime_type: str = ""


@dataclass(slots=True)
class ActionContext:
    """Identifiers, deadline and abort signal threaded through one invocation."""

    route: str
    debug_id: str
    account_id: Optional[Identifier]
    conversation_id: str
    conversation_url: str
    deadline: DeadlineBudget
    cancel: CancellationToken
    events: ActionEventLog
    pause_scale: float = 1.0
    rng: Optional[random.Random] = None
    extras: Dict[str, Any] = field(default_factory=dict)

    def checkpoint(self, context: str) -> None:
        """Fail fast on abort or an exhausted deadline; called before every interaction."""

        if self.cancel.cancelled:
            raise action_timeout_error(f"{self.route}:{context}-aborted:{self.cancel.reason}")
        self.deadline.ensure_not_expired(f"{self.route}:{context}")

    def record(self, event: str, **data: Any) -> None:
        self.events.log_event(event, **data)

    async def pause(self, min_ms: float, max_ms: Optional[float] = None, *, context: str = "pause") -> None:
        await self.deadline.pause(
            min_ms, max_ms, scale=self.pause_scale, cancel=self.cancel, context=context, rng=self.rng
        )

    def update_target(self, conversation_id: str, conversation_url: str = "") -> None:
        if conversation_id:
            self.conversation_id = conversation_id
        if conversation_url:
            self.conversation_url = conversation_url
        elif conversation_id and not self.conversation_url:
            self.conversation_url = build_conversation_url(conversation_id)
