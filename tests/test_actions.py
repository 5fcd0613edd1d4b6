import asyncio

import httpx
import pytest

from fakes import (
    DIALOG,
    FILE_INPUT,
    INPUT,
    PAYMENT_BOX,
    SEND,
    SESSION_COOKIE,
    FakeHandle,
    FakeSession,
    FakeSessionFactory,
    FakeTransport,
    ManualClock,
    api_message,
    detail,
    make_config,
    offer_message,
)
from messagebox.deadline import CancellationToken
from messagebox.faults import ErrorCode, FaultKind, MessagingError
from messagebox.models import Account, ConversationRef, MediaFile
from messagebox.service import MessageService
from messagebox.transport import MessageboxClient

ACCOUNT = Account(id=7, cookie=SESSION_COOKIE, profile_name="Seller")
TARGET = ConversationRef(conversation_id="c-1")


def _service(transport: FakeTransport, factory: FakeSessionFactory, clock: ManualClock, **config) -> MessageService:
    return MessageService(
        make_config(**config),
        transport_factory=transport.factory,
        session_factory=factory,
        clock=clock,
        id_factory=lambda route: f"{route}-test",
    )


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def session() -> FakeSession:
    page = FakeSession()
    page.elements = {INPUT: [FakeHandle("input")], SEND: [FakeHandle("send")]}
    return page


@pytest.fixture
def factory(session: FakeSession) -> FakeSessionFactory:
    return FakeSessionFactory(session)


# ---------------------------------------------------------------------------
# validation


@pytest.mark.asyncio
async def test_missing_target_is_rejected_before_any_io(clock, factory) -> None:
    transport = FakeTransport()
    service = _service(transport, factory, clock)

    with pytest.raises(MessagingError) as excinfo:
        await service.send_conversation_message(ACCOUNT, None, ConversationRef(), "Hallo")

    assert excinfo.value.code == ErrorCode.CONVERSATION_ID_REQUIRED.value
    assert transport.opened == 0
    assert factory.opened == 0


@pytest.mark.asyncio
async def test_account_without_session_requires_auth(clock, factory) -> None:
    service = _service(FakeTransport(), factory, clock)

    with pytest.raises(MessagingError) as excinfo:
        await service.decline_conversation_offer(Account(id=8), None, TARGET)

    assert excinfo.value.code == ErrorCode.AUTH_REQUIRED.value
    assert excinfo.value.kind is FaultKind.AUTH_REQUIRED


@pytest.mark.asyncio
async def test_blank_text_is_rejected(clock, factory) -> None:
    service = _service(FakeTransport(), factory, clock)

    with pytest.raises(MessagingError) as excinfo:
        await service.send_conversation_message(ACCOUNT, None, TARGET, "   ")

    assert excinfo.value.code == ErrorCode.MESSAGE_EMPTY.value


# ---------------------------------------------------------------------------
# send text


@pytest.mark.asyncio
async def test_send_text_via_transport_never_opens_browser(clock, factory) -> None:
    transport = FakeTransport()
    transport.details = [detail(api_message("m1", "Hallo, noch da?", outbound=True))]
    service = _service(transport, factory, clock)

    snapshot = await service.send_conversation_message(ACCOUNT, None, TARGET, "Hallo, noch da?")

    assert transport.posted == [("u1", "c-1", "Hallo, noch da?")]
    assert factory.opened == 0
    assert [m.text for m in snapshot.outgoing()] == ["Hallo, noch da?"]


@pytest.mark.asyncio
async def test_send_text_resolves_conversation_by_participant(clock, factory) -> None:
    transport = FakeTransport()
    transport.pages = [
        {
            "conversations": [
                {"id": "c-9", "userIdBuyer": "u1", "sellerName": "Andere", "adTitle": "Sofa"},
                {"id": "c-1", "userIdBuyer": "u1", "sellerName": "Erika Muster", "adTitle": "Fahrrad 28 Zoll"},
            ]
        }
    ]
    service = _service(transport, factory, clock)

    await service.send_conversation_message(
        ACCOUNT, None, ConversationRef(participant="erika", ad_title="fahrrad"), "Guten Tag"
    )

    assert transport.posted == [("u1", "c-1", "Guten Tag")]


@pytest.mark.asyncio
async def test_posted_message_with_failed_refetch_does_not_resend(clock, factory) -> None:
    transport = FakeTransport()

    def break_reads(t: FakeTransport) -> None:
        t.detail_error = RuntimeError("read timeout")

    transport.on_post = break_reads
    service = _service(transport, factory, clock)

    snapshot = await service.send_conversation_message(ACCOUNT, None, TARGET, "Hallo")

    assert len(transport.posted) == 1
    assert factory.opened == 0
    assert snapshot.conversation_id == "c-1"
    assert snapshot.messages == ()


@pytest.mark.asyncio
async def test_send_text_falls_back_to_browser_when_post_fails(clock, factory, session) -> None:
    transport = FakeTransport()
    transport.post_error = MessagingError("MESSAGEBOX_API_ERROR_500", status=500)
    transport.details = [detail(), detail(api_message("m2", "Hallo", outbound=True))]

    def sent(page: FakeSession) -> None:
        page.composer["text"] = ""

    session.on_send = sent
    service = _service(transport, factory, clock)

    snapshot = await service.send_conversation_message(ACCOUNT, None, TARGET, "Hallo")

    assert factory.opened == 1 and factory.closed == 1
    assert session.typed == ["Hallo"]
    assert "send" in session.clicks
    assert session.navigations[0] == "https://www.kleinanzeigen.de/"
    assert [m.text for m in snapshot.outgoing()] == ["Hallo"]


@pytest.mark.asyncio
async def test_send_text_without_any_evidence_is_not_confirmed(clock, factory) -> None:
    transport = FakeTransport()
    service = _service(transport, factory, clock, force_web=True)

    with pytest.raises(MessagingError) as excinfo:
        await service.send_conversation_message(ACCOUNT, None, TARGET, "Hallo")

    assert excinfo.value.code == ErrorCode.MESSAGE_SEND_NOT_CONFIRMED.value
    assert transport.posted == []
    assert factory.closed == 1


@pytest.mark.asyncio
async def test_missing_message_input_is_reported(clock, factory, session) -> None:
    session.elements = {SEND: [FakeHandle("send")]}
    service = _service(FakeTransport(), factory, clock, force_web=True)

    with pytest.raises(MessagingError) as excinfo:
        await service.send_conversation_message(ACCOUNT, None, TARGET, "Hallo")

    assert excinfo.value.code == ErrorCode.MESSAGE_INPUT_NOT_FOUND.value


@pytest.mark.asyncio
async def test_login_wall_requires_auth(clock, factory, session) -> None:
    def redirect(page: FakeSession, url: str) -> None:
        if "conversationId" in url:
            page.url = "https://www.kleinanzeigen.de/m-einloggen.html"

    session.on_navigate = redirect
    service = _service(FakeTransport(), factory, clock, force_web=True)

    with pytest.raises(MessagingError) as excinfo:
        await service.send_conversation_message(ACCOUNT, None, TARGET, "Hallo")

    assert excinfo.value.code == ErrorCode.AUTH_REQUIRED.value
    assert factory.closed == 1


# ---------------------------------------------------------------------------
# cancellation and deadlines


@pytest.mark.asyncio
async def test_cancelled_request_never_posts(clock, factory) -> None:
    transport = FakeTransport()
    service = _service(transport, factory, clock)
    token = CancellationToken()
    token.cancel("caller-gone")

    with pytest.raises(MessagingError) as excinfo:
        await service.send_conversation_message(ACCOUNT, None, TARGET, "Hallo", cancel=token)

    assert excinfo.value.code == ErrorCode.MESSAGE_ACTION_TIMEOUT.value
    assert transport.posted == []


@pytest.mark.asyncio
async def test_short_hard_deadline_fails_within_the_deadline(clock, factory, session) -> None:
    session.ui = {}
    service = _service(FakeTransport(), factory, clock, force_web=True)
    started = clock.monotonic()

    with pytest.raises(MessagingError) as excinfo:
        await service.send_conversation_message(ACCOUNT, None, TARGET, "Hallo", hard_deadline_ms=10000)

    assert excinfo.value.code == ErrorCode.MESSAGE_ACTION_TIMEOUT.value
    assert (clock.monotonic() - started) * 1000 <= 10000
    assert factory.closed == factory.opened


@pytest.mark.asyncio
async def test_transport_requests_are_bounded_by_the_action_budget(clock, factory) -> None:
    transport = FakeTransport()
    service = _service(transport, factory, clock)

    await service.send_conversation_message(ACCOUNT, None, TARGET, "Hallo", hard_deadline_ms=10000)

    assert [name for name, _ in transport.timeouts] == ["user-id", "post"]
    assert {timeout for _, timeout in transport.timeouts} == {7500}


@pytest.mark.asyncio
async def test_hung_transport_is_cut_off_at_the_hard_deadline(factory) -> None:
    async def hung_gateway(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(5)
        return httpx.Response(200, json={})

    def transport_factory(cookies, proxy, device) -> MessageboxClient:
        return MessageboxClient(cookies, device=device, transport=httpx.MockTransport(hung_gateway))

    service = MessageService(
        make_config(),
        transport_factory=transport_factory,
        session_factory=factory,
        id_factory=lambda route: f"{route}-test",
    )
    loop = asyncio.get_running_loop()
    started = loop.time()

    with pytest.raises(MessagingError) as excinfo:
        await service.send_conversation_message(ACCOUNT, None, TARGET, "Hallo", hard_deadline_ms=600)

    assert excinfo.value.code == ErrorCode.MESSAGE_ACTION_TIMEOUT.value
    assert loop.time() - started < 1.5
    assert factory.opened == 0


# ---------------------------------------------------------------------------
# send media


def _images(count: int):
    return [MediaFile(filename=f"bild-{i}.jpg", content=b"\xff\xd8\xff\xe0jpeg", mime_type="image/jpeg") for i in range(count)]


@pytest.mark.asyncio
async def test_media_send_with_network_signal_succeeds_without_read_model_change(clock, factory, session) -> None:
    session.ui = {"hasReplyBox": True, "hasFileInput": True}
    session.elements = {FILE_INPUT: [FakeHandle("file")], SEND: [FakeHandle("send")]}
    session.on_send = lambda page: page.emit_mutation()
    transport = FakeTransport()
    service = _service(transport, factory, clock)

    snapshot = await service.send_conversation_media(ACCOUNT, None, TARGET, "", _images(2))

    assert [p["name"] for p in session.uploaded[0]] == ["bild-0.jpg", "bild-1.jpg"]
    assert session.clicks.count("send") == 1
    assert snapshot.conversation_id == "c-1"
    assert transport.posted == []


@pytest.mark.asyncio
async def test_media_send_requires_text_or_files(clock, factory) -> None:
    service = _service(FakeTransport(), factory, clock)

    with pytest.raises(MessagingError) as excinfo:
        await service.send_conversation_media(ACCOUNT, None, TARGET, "", [])

    assert excinfo.value.code == ErrorCode.MESSAGE_EMPTY.value
    assert factory.opened == 0


@pytest.mark.asyncio
async def test_media_send_reloads_once_then_reports_missing_file_input(clock, factory, session) -> None:
    session.ui = {"hasReplyBox": True}
    service = _service(FakeTransport(), factory, clock)

    with pytest.raises(MessagingError) as excinfo:
        await service.send_conversation_media(ACCOUNT, None, TARGET, "", _images(1))

    assert excinfo.value.code == ErrorCode.MESSAGE_FILE_INPUT_NOT_FOUND.value
    assert session.reloads == 1
    assert factory.closed == 1


@pytest.mark.asyncio
async def test_media_send_retries_inconclusive_click_once(clock, factory, session) -> None:
    session.ui = {"hasReplyBox": True, "hasFileInput": True}
    session.elements = {FILE_INPUT: [FakeHandle("file")], SEND: [FakeHandle("send")]}
    transport = FakeTransport()
    transport.details = [detail(), detail(api_message("m5", "", outbound=True, attachments=[{"url": "https://img/1"}]))]
    service = _service(transport, factory, clock)

    snapshot = await service.send_conversation_media(ACCOUNT, None, TARGET, "", _images(1))

    assert session.clicks.count("send") == 2
    assert len(snapshot.outgoing()[0].attachments) == 1


# ---------------------------------------------------------------------------
# decline offer


@pytest.mark.asyncio
async def test_decline_returns_after_snapshot_without_offer_blocks(clock, factory, session) -> None:
    session.ui = {"hasPaymentBox": True}
    session.buttons = [
        {"label": "Weiter", "within": [DIALOG]},
        {"label": "Ablehnen", "within": [PAYMENT_BOX]},
    ]
    transport = FakeTransport()
    transport.details = [detail(offer_message()), detail(api_message("m1", "Hallo"))]
    service = _service(transport, factory, clock)

    snapshot = await service.decline_conversation_offer(ACCOUNT, None, TARGET)

    assert session.clicked_labels == ["Weiter", "Ablehnen"]
    assert [m.id for m in snapshot.messages] == ["m1"]


@pytest.mark.asyncio
async def test_decline_is_idempotent_when_no_offer_is_pending(clock, factory, session) -> None:
    session.ui = {"hasMessageContent": True, "hasReplyBox": True}
    transport = FakeTransport()
    transport.details = [detail(api_message("m1", "Hallo"))]
    service = _service(transport, factory, clock)

    first = await service.decline_conversation_offer(ACCOUNT, None, TARGET)
    second = await service.decline_conversation_offer(ACCOUNT, None, TARGET)

    assert first == second
    assert session.clicked_labels == []


@pytest.mark.asyncio
async def test_decline_without_control_but_pending_offer_fails(clock, factory, session) -> None:
    session.ui = {"hasPaymentBox": True}
    transport = FakeTransport()
    transport.details = [detail(offer_message())]
    service = _service(transport, factory, clock)

    with pytest.raises(MessagingError) as excinfo:
        await service.decline_conversation_offer(ACCOUNT, None, TARGET)

    assert excinfo.value.code == ErrorCode.DECLINE_BUTTON_NOT_FOUND.value


@pytest.mark.asyncio
async def test_decline_click_counts_as_evidence_when_snapshot_is_unchanged(clock, factory, session) -> None:
    session.ui = {"hasPaymentBox": True}
    session.buttons = [{"label": "Anfrage ablehnen", "within": [PAYMENT_BOX]}]
    transport = FakeTransport()
    transport.details = [detail(offer_message())]
    service = _service(transport, factory, clock)

    snapshot = await service.decline_conversation_offer(ACCOUNT, None, TARGET)

    assert session.clicked_labels == ["Anfrage ablehnen"]
    assert snapshot.conversation_id == "c-1"
