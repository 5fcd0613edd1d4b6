"""Mapping of messagebox API payloads into snapshots and summaries."""

from __future__ import annotations

import re
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple
from urllib.parse import parse_qs, urlencode, urljoin, urlsplit, urlunsplit

from .models import ConversationSnapshot, ConversationSummary, Identifier, Message
from .urls import MESSAGE_LIST_URL, build_conversation_url, extract_conversation_id, normalize_match

OUTGOING_SENDER = "You"
PAYMENT_MESSAGE_TYPE = "PAYMENT_AND_SHIPPING_MESSAGE"
IMAGE_HOST = "https://img.kleinanzeigen.de"
DEFAULT_IMAGE_RULE = "$_57.JPG"

ATTACHMENT_BUCKETS = ("attachments", "images", "imageUrls", "media", "pictures")

OFFER_PASSTHROUGH_KEYS = (
    "type",
    "title",
    "active",
    "actions",
    "paymentAndShippingMessageType",
    "itemPriceInEuroCent",
    "shippingCostInEuroCent",
    "sellerTotalInEuroCent",
    "offerId",
    "negotiationId",
    "offeredPriceInEuroCent",
    "shippingType",
    "carrierId",
    "carrierName",
    "shippingOptionName",
    "shippingOptionDescription",
    "liabilityLimitInEuroCent",
    "oppTermsAndConditionsVersion",
    "termsAndConditionsChangeInfo",
)

_LIST_KEYS = ("conversations", "items", "data", "results")
_IMAGE_KEYS = (
    "adImage",
    "adImageUrl",
    "adImageURL",
    "adImageUrlLarge",
    "adImageUrlMedium",
    "adImageUrlSmall",
    "adImageThumbnail",
    "adImageThumbnailUrl",
    "imageUrlSmall",
    "imageUrlMedium",
    "imageUrlLarge",
    "imageUrl",
    "image",
    "thumbnailUrl",
    "thumbnail",
)
_AD_PAYLOAD_KEYS = ("ad", "adInfo", "item", "advertisement")
_AD_IMAGE_KEYS = ("image", "imageUrl", "imageUrlSmall", "imageUrlMedium", "imageUrlLarge", "thumbnailUrl", "thumbnail")
_NULLISH = {"null", "undefined", "none", "false"}
_VALID_RULE = re.compile(r"^\$_[a-z0-9_.-]+$", re.IGNORECASE)
_MALFORMED_RULE = re.compile(r"(imageid|\$\{.*\}|\$_\{.*\})", re.IGNORECASE)
_TIME = re.compile(r"(\d{1,2}:\d{2})")
_ISO = re.compile(r"\d{4}-\d{2}-\d{2}T")
_DOTTED_DATE = re.compile(r"(\d{1,2})[./](\d{1,2})[./](\d{2,4})")
_OFFSET = re.compile(r"([+-]\d{2})(\d{2})$")


# ---------------------------------------------------------------------------
# timestamps and images


def parse_timestamp(value: Any, *, now: Optional[datetime] = None) -> Dict[str, str]:
    """Parse API or page timestamps into ``{date, time, iso}``."""

    if not value:
        return {"date": "", "time": "", "iso": ""}
    text = re.sub(r"\s+", " ", str(value).strip())
    match = _TIME.search(text)
    time_part = match.group(1) if match else ""
    parsed: Optional[datetime] = None

    if _ISO.search(text):
        try:
            parsed = datetime.fromisoformat(_OFFSET.sub(r"\1:\2", text.replace("Z", "+00:00")))
        except ValueError:
            parsed = None

    dotted = _DOTTED_DATE.search(text)
    if parsed is None and dotted:
        day, month, year = dotted.groups()
        try:
            parsed = datetime(int(f"20{year}" if len(year) == 2 else year), int(month), int(day))
        except ValueError:
            parsed = None

    current = now or datetime.now()
    if parsed is None and re.search(r"heute", text, re.IGNORECASE):
        parsed = current
    if parsed is None and re.search(r"gestern", text, re.IGNORECASE):
        parsed = current - timedelta(days=1)

    if parsed is None:
        return {"date": "", "time": time_part, "iso": ""}
    return {"date": parsed.date().isoformat(), "time": time_part, "iso": parsed.isoformat()}


def normalize_image_url(value: Any, base_url: str = MESSAGE_LIST_URL) -> str:
    src = str(value or "").strip()
    if not src or src.lower() in _NULLISH:
        return ""
    if "data:image/" in src or "placeholder" in src:
        return ""
    if src.startswith("//"):
        return f"https:{src}"
    collapsed = re.sub(r"^/+", "/", src)
    if collapsed.startswith("/api/v1/prod-ads/images/"):
        src = f"{IMAGE_HOST}{collapsed}"
    elif re.match(r"^img\.kleinanzeigen\.de", collapsed, re.IGNORECASE):
        src = f"https://{collapsed}"
    try:
        parts = urlsplit(urljoin(base_url, src))
    except ValueError:
        return src
    if (parts.hostname or "").lower() == "img.kleinanzeigen.de" and parts.path.startswith("/api/v1/prod-ads/images/"):
        query = parse_qs(parts.query, keep_blank_values=True)
        rule = (query.get("rule") or [""])[0]
        if not _VALID_RULE.match(rule) or _MALFORMED_RULE.search(rule):
            query["rule"] = [DEFAULT_IMAGE_RULE]
            parts = parts._replace(query=urlencode(query, doseq=True, safe="$"))
    return urlunsplit(parts)


def is_valid_image_url(value: Any) -> bool:
    return bool(re.match(r"^https?://", normalize_image_url(value), re.IGNORECASE))


def _image_candidate(candidate: Any) -> str:
    if isinstance(candidate, str):
        return normalize_image_url(candidate)
    if isinstance(candidate, Mapping):
        for key in ("url", "src", "imageUrl", "image"):
            nested = candidate.get(key)
            if isinstance(nested, str) and nested:
                return normalize_image_url(nested)
    return ""


def pick_ad_image(conversation: Mapping[str, Any]) -> str:
    candidates: List[Any] = [conversation.get(key) for key in _IMAGE_KEYS]
    for key in _AD_PAYLOAD_KEYS:
        ad = conversation.get(key)
        if isinstance(ad, Mapping):
            candidates.extend(ad.get(k) for k in _AD_IMAGE_KEYS)
            images = ad.get("images")
            if isinstance(images, list) and images:
                candidates.append(images[0])
            break
    ad_images = conversation.get("adImages")
    if isinstance(ad_images, list) and ad_images:
        candidates.append(ad_images[0])
    for candidate in candidates:
        image = _image_candidate(candidate)
        if image:
            return image
    return ""


# ---------------------------------------------------------------------------
# participants and matching


def pick_participant(conversation: Mapping[str, Any], user_id: str = "") -> str:
    buyer = str(conversation.get("userIdBuyer") or "")
    seller = str(conversation.get("userIdSeller") or "")
    current = str(user_id or "")
    if current and buyer and current == buyer:
        return conversation.get("sellerName") or ""
    if current and seller and current == seller:
        return conversation.get("buyerName") or ""
    return conversation.get("sellerName") or conversation.get("buyerName") or ""


def match_conversation(candidate: Mapping[str, Any], participant: str = "", ad_title: str = "") -> bool:
    """Case-insensitive substring match on participant and/or ad title."""

    wanted_participant = normalize_match(participant)
    wanted_title = normalize_match(ad_title)
    have_participant = normalize_match(candidate.get("participant"))
    have_title = normalize_match(candidate.get("adTitle") or candidate.get("ad_title"))
    if wanted_participant and wanted_title:
        return wanted_participant in have_participant and wanted_title in have_title
    if wanted_participant:
        return wanted_participant in have_participant
    if wanted_title:
        return wanted_title in have_title
    return False


# ---------------------------------------------------------------------------
# messages


def is_payment_message(message: Mapping[str, Any]) -> bool:
    return str(message.get("type") or "").upper() == PAYMENT_MESSAGE_TYPE or bool(
        message.get("paymentAndShippingMessageType")
    )


def _attachments(message: Mapping[str, Any]) -> Tuple[Dict[str, Any], ...]:
    units: List[Dict[str, Any]] = []
    for bucket in ATTACHMENT_BUCKETS:
        items = message.get(bucket)
        if not isinstance(items, list):
            continue
        for item in items:
            if isinstance(item, Mapping):
                units.append(dict(item))
            elif item:
                units.append({"url": str(item)})
    return tuple(units)


def map_api_message(message: Mapping[str, Any], index: int, participant: str = "") -> Optional[Message]:
    """Map one API message; content-less non-payment messages are dropped."""

    text = message.get("text") or message.get("textShort") or message.get("textShortTrimmed") or message.get("title") or ""
    attachments = _attachments(message)
    payment = is_payment_message(message)
    if not str(text).strip() and not attachments and not payment:
        return None
    direction = "outgoing" if message.get("boundness") == "OUTBOUND" else "incoming"
    received = str(message.get("receivedDate") or "")
    parsed = parse_timestamp(received)
    offer = {key: message[key] for key in OFFER_PASSTHROUGH_KEYS if key in message}
    return Message(
        id=str(message.get("messageId") or f"message-{index}"),
        text=str(text),
        direction=direction,
        sender=OUTGOING_SENDER if direction == "outgoing" else participant,
        timestamp=received,
        time_label=received,
        date=parsed["date"],
        time=parsed["time"],
        attachments=attachments,
        offer=offer or None,
    )


def map_page_message(raw: Mapping[str, Any], index: int) -> Optional[Message]:
    """Map a message scraped from the rendered thread."""

    text = str(raw.get("text") or "").strip()
    if not text:
        return None
    stamp = str(raw.get("dateTime") or raw.get("timeLabel") or "")
    parsed = parse_timestamp(stamp)
    direction = "outgoing" if raw.get("direction") == "outgoing" else "incoming"
    return Message(
        id=str(raw.get("id") or f"message-{index}"),
        text=text,
        direction=direction,
        sender=OUTGOING_SENDER if direction == "outgoing" else str(raw.get("sender") or ""),
        timestamp=str(raw.get("dateTime") or ""),
        time_label=str(raw.get("timeLabel") or ""),
        date=parsed["date"],
        time=parsed["time"],
    )


def snapshot_from_detail(
    detail: Mapping[str, Any],
    *,
    user_id: str = "",
    conversation_id: str = "",
    conversation_url: str = "",
) -> ConversationSnapshot:
    participant = pick_participant(detail, user_id)
    messages = [
        mapped
        for index, raw in enumerate(detail.get("messages") or [])
        if isinstance(raw, Mapping) and (mapped := map_api_message(raw, index, participant)) is not None
    ]
    resolved_id = str(detail.get("id") or conversation_id or "")
    return ConversationSnapshot(
        conversation_id=resolved_id,
        conversation_url=conversation_url or build_conversation_url(resolved_id),
        participant=participant,
        ad_title=str(detail.get("adTitle") or ""),
        ad_image=pick_ad_image(detail),
        messages=tuple(messages),
    )


def snapshot_from_page(
    raw_messages: Iterable[Mapping[str, Any]],
    meta: Optional[Mapping[str, Any]] = None,
    *,
    conversation_id: str = "",
    conversation_url: str = "",
) -> ConversationSnapshot:
    meta = meta or {}
    messages = [m for i, raw in enumerate(raw_messages) if (m := map_page_message(raw, i)) is not None]
    return ConversationSnapshot(
        conversation_id=conversation_id,
        conversation_url=conversation_url or build_conversation_url(conversation_id),
        participant=str(meta.get("participant") or ""),
        ad_title=str(meta.get("adTitle") or ""),
        ad_image=normalize_image_url(meta.get("adImage")),
        messages=tuple(messages),
    )


def empty_snapshot(conversation_id: str = "", conversation_url: str = "") -> ConversationSnapshot:
    return ConversationSnapshot(
        conversation_id=conversation_id,
        conversation_url=conversation_url or build_conversation_url(conversation_id),
    )


# ---------------------------------------------------------------------------
# conversation lists


def conversations_from_page(payload: Mapping[str, Any]) -> List[Dict[str, Any]]:
    for key in _LIST_KEYS:
        items = payload.get(key)
        if isinstance(items, list):
            return [item for item in items if isinstance(item, Mapping)]
    return []


def total_from_page(payload: Mapping[str, Any], fallback: int) -> int:
    meta = payload.get("_meta") or {}
    for value in (meta.get("numFound") if isinstance(meta, Mapping) else None, payload.get("total"), payload.get("totalElements")):
        try:
            if value is not None:
                return int(value)
        except (TypeError, ValueError):
            continue
    return fallback


def summary_from_api(
    conversation: Mapping[str, Any],
    *,
    user_id: str,
    account_id: Optional[Identifier],
    account_label: str,
) -> ConversationSummary:
    conversation_id = str(conversation.get("id") or conversation.get("conversationId") or "")
    return ConversationSummary(
        conversation_id=conversation_id,
        conversation_url=build_conversation_url(conversation_id),
        participant=pick_participant(conversation, user_id),
        ad_title=str(conversation.get("adTitle") or ""),
        ad_image=pick_ad_image(conversation),
        last_message=str(conversation.get("textShortTrimmed") or ""),
        time_text=str(conversation.get("receivedDate") or ""),
        unread=bool(conversation.get("unread")),
        account_id=account_id,
        account_label=account_label,
    )


def summary_from_page(
    item: Mapping[str, Any],
    *,
    account_id: Optional[Identifier],
    account_label: str,
) -> ConversationSummary:
    href = str(item.get("href") or "")
    conversation_id = str(item.get("conversationId") or extract_conversation_id(href))
    return ConversationSummary(
        conversation_id=conversation_id,
        conversation_url=href or (build_conversation_url(conversation_id) if conversation_id else ""),
        participant=str(item.get("participant") or ""),
        ad_title=str(item.get("adTitle") or ""),
        ad_image=normalize_image_url(item.get("adImage")),
        last_message=str(item.get("lastMessage") or ""),
        time_text=str(item.get("timeText") or ""),
        unread=bool(item.get("unread")),
        account_id=account_id,
        account_label=account_label,
    )
