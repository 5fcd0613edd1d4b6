from datetime import datetime

from fakes import api_message, detail, offer_message
from messagebox.snapshots import (
    conversations_from_page,
    map_api_message,
    match_conversation,
    normalize_image_url,
    parse_timestamp,
    pick_participant,
    snapshot_from_detail,
    snapshot_from_page,
    summary_from_page,
    total_from_page,
)
from messagebox.urls import build_conversation_url


def test_parse_iso_timestamp_with_compact_offset() -> None:
    parsed = parse_timestamp("2024-05-02T10:15:00.000+0200")

    assert parsed["date"] == "2024-05-02"
    assert parsed["time"] == "10:15"
    assert parsed["iso"].startswith("2024-05-02T10:15:00")


def test_parse_relative_and_dotted_dates() -> None:
    now = datetime(2024, 5, 2, 12, 0)

    assert parse_timestamp("gestern, 14:05", now=now)["date"] == "2024-05-01"
    assert parse_timestamp("Heute 09:30", now=now) == {"date": "2024-05-02", "time": "09:30", "iso": now.isoformat()}
    assert parse_timestamp("02.05.24")["date"] == "2024-05-02"
    assert parse_timestamp("") == {"date": "", "time": "", "iso": ""}


def test_image_urls_are_normalised() -> None:
    assert normalize_image_url("//img.kleinanzeigen.de/a.jpg") == "https://img.kleinanzeigen.de/a.jpg"
    assert normalize_image_url("data:image/png;base64,xx") == ""
    assert normalize_image_url("null") == ""
    fixed = normalize_image_url("/api/v1/prod-ads/images/ab/cd?rule=$_{imageId}")
    assert fixed.startswith("https://img.kleinanzeigen.de/api/v1/prod-ads/images/ab/cd?")
    assert fixed.endswith("rule=$_57.JPG")


def test_participant_depends_on_current_user() -> None:
    conversation = detail()

    assert pick_participant(conversation, "u1") == "Erika"
    assert pick_participant(conversation, "u2") == "Max"
    assert pick_participant(conversation, "") == "Erika"


def test_content_less_messages_are_dropped_but_payment_blocks_kept() -> None:
    assert map_api_message(api_message("m1", ""), 0) is None
    payment = map_api_message(api_message("m2", "", type="PAYMENT_AND_SHIPPING_MESSAGE"), 1)
    assert payment is not None


def test_snapshot_from_detail() -> None:
    snapshot = snapshot_from_detail(
        detail(api_message("m1", "Hallo"), api_message("m2", "Hi", outbound=True), offer_message()),
        user_id="u1",
    )

    assert snapshot.conversation_id == "c-1"
    assert snapshot.conversation_url == build_conversation_url("c-1")
    assert snapshot.participant == "Erika"
    assert [m.sender for m in snapshot.messages] == ["Erika", "You", "Erika"]
    assert [m.id for m in snapshot.outgoing()] == ["m2"]
    offer = snapshot.messages[2]
    assert offer.offer is not None and offer.offer["offerId"] == "o-1"
    assert offer.to_payload()["negotiationId"] == "n-1"


def test_snapshot_from_page_skips_blank_rows() -> None:
    snapshot = snapshot_from_page(
        [{"id": "p1", "text": "Hallo", "direction": "incoming", "sender": "Erika"}, {"text": "  "}],
        {"participant": "Erika", "adTitle": "Fahrrad"},
        conversation_id="c-9",
    )

    assert len(snapshot.messages) == 1
    assert snapshot.ad_title == "Fahrrad"
    assert snapshot.conversation_url.endswith("conversationId=c-9")


def test_conversation_matching() -> None:
    candidate = {"participant": "Erika  Muster", "adTitle": "Rotes Fahrrad"}

    assert match_conversation(candidate, participant="erika muster")
    assert match_conversation(candidate, ad_title="FAHRRAD")
    assert not match_conversation(candidate, participant="erika", ad_title="Sofa")
    assert not match_conversation(candidate)


def test_list_page_helpers() -> None:
    payload = {"conversations": [{"id": "a"}, "junk"], "_meta": {"numFound": "7"}}

    assert conversations_from_page(payload) == [{"id": "a"}]
    assert total_from_page(payload, 0) == 7
    assert total_from_page({}, 3) == 3


def test_summary_from_page_extracts_id_from_href() -> None:
    summary = summary_from_page(
        {"href": "/m-nachrichten.html?conversationId=abc", "participant": "Erika", "unread": 1},
        account_id=4,
        account_label="Main",
    )

    assert summary.conversation_id == "abc"
    assert summary.unread is True
    assert summary.account_id == 4
