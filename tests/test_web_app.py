import asyncio
import io
import json
from pathlib import Path
from typing import Any, List, Optional

import pytest

from fakes import SESSION_COOKIE, make_config
from messagebox.directory import JsonAccountDirectory
from messagebox.faults import ErrorCode, MessagingError
from messagebox.models import ConversationSnapshot, ConversationSummary, Message
from web.app import AsyncRunner, create_app


class InlineRunner:
    def run(self, coro, timeout: Optional[float] = None) -> Any:
        return asyncio.run(coro)


class StubService:
    def __init__(self) -> None:
        self.config = make_config()
        self.calls: List[tuple] = []
        self.error: Optional[BaseException] = None
        self.snapshot = ConversationSnapshot(
            conversation_id="c-1",
            conversation_url="https://www.kleinanzeigen.de/m-nachrichten.html?conversationId=c-1",
            participant="Erika",
            ad_title="Fahrrad",
            messages=(Message(id="m1", text="Hallo", direction="outgoing", sender="You"),),
        )

    def new_debug_id(self, route: str) -> str:
        return f"{route}-1"

    async def _answer(self, name: str, *args: Any, **kwargs: Any) -> Any:
        self.calls.append((name, args, kwargs))
        if self.error is not None:
            raise self.error
        return self.snapshot

    async def send_conversation_message(self, *args: Any, **kwargs: Any) -> ConversationSnapshot:
        return await self._answer("send", *args, **kwargs)

    async def send_conversation_media(self, *args: Any, **kwargs: Any) -> ConversationSnapshot:
        return await self._answer("media", *args, **kwargs)

    async def decline_conversation_offer(self, *args: Any, **kwargs: Any) -> ConversationSnapshot:
        return await self._answer("decline", *args, **kwargs)

    async def fetch_thread_messages(self, *args: Any, **kwargs: Any) -> ConversationSnapshot:
        return await self._answer("thread", *args, **kwargs)

    async def fetch_messages(self, accounts, proxies, options=None) -> List[ConversationSummary]:
        self.calls.append(("list", (accounts, proxies, options), {}))
        return [
            ConversationSummary(conversation_id="c-1", participant="Erika", account_id=a.id, account_label=a.label)
            for a in accounts
        ]


@pytest.fixture
def service() -> StubService:
    return StubService()


@pytest.fixture
def client(tmp_path: Path, service: StubService):
    path = tmp_path / "accounts.json"
    path.write_text(
        json.dumps(
            {
                "accounts": [
                    {"id": 7, "cookie": SESSION_COOKIE, "profileName": "Seller", "proxyId": 3},
                    {"id": 8, "cookie": SESSION_COOKIE},
                ],
                "proxies": [{"id": 3, "host": "10.0.0.1", "port": 8080}],
            }
        ),
        encoding="utf-8",
    )
    app = create_app(service=service, directory=JsonAccountDirectory(path), runner=InlineRunner())
    return app.test_client()


def test_healthz(client) -> None:
    assert client.get("/healthz").get_json() == {"status": "ok"}


def test_send_returns_snapshot(client, service: StubService) -> None:
    response = client.post(
        "/api/messages/send",
        json={"accountId": "7", "conversationId": "c-1", "text": "Hallo", "hardDeadlineMs": 20000},
    )

    body = response.get_json()
    assert response.status_code == 200
    assert body["success"] is True
    assert body["debugId"] == "send-message-1"
    assert body["messages"][0]["text"] == "Hallo"
    name, args, kwargs = service.calls[0]
    account, proxy, target, text = args
    assert account.id == 7 and proxy.port == 8080
    assert target.conversation_id == "c-1"
    assert text == "Hallo"
    assert kwargs["hard_deadline_ms"] == 20000


@pytest.mark.parametrize(
    "payload,status,code",
    [
        ({"conversationId": "c-1", "text": "x"}, 400, "VALIDATION_ERROR"),
        ({"accountId": "99", "conversationId": "c-1", "text": "x"}, 404, "ACCOUNT_NOT_FOUND"),
        ({"accountId": "7", "conversationId": "c-1", "hardDeadlineMs": "soon"}, 400, "VALIDATION_ERROR"),
    ],
)
def test_request_validation(client, payload, status, code) -> None:
    response = client.post("/api/messages/send", json=payload)

    assert response.status_code == status
    assert response.get_json()["code"] == code


@pytest.mark.parametrize(
    "error,status",
    [
        (MessagingError(ErrorCode.AUTH_REQUIRED), 401),
        (MessagingError(ErrorCode.PROXY_TUNNEL_CONNECTION_FAILED), 502),
        (MessagingError(ErrorCode.MESSAGE_ACTION_TIMEOUT), 504),
        (MessagingError(ErrorCode.MESSAGE_EMPTY), 400),
        (MessagingError(ErrorCode.MESSAGE_SEND_NOT_CONFIRMED), 500),
    ],
)
def test_messaging_errors_map_to_status(client, service: StubService, error, status) -> None:
    service.error = error

    response = client.post("/api/messages/send", json={"accountId": "7", "conversationId": "c-1", "text": "x"})

    body = response.get_json()
    assert response.status_code == status
    assert body["success"] is False
    assert body["code"] == error.code
    assert body["debugId"] == "send-message-1"


def test_not_ready_error_carries_ui_state(client, service: StubService) -> None:
    service.error = MessagingError(ErrorCode.CONVERSATION_NOT_READY, data={"ui_state": {"hasReplyBox": False}})

    response = client.post("/api/messages/offer/decline", json={"accountId": "7", "conversationId": "c-1"})

    assert response.status_code == 500
    assert response.get_json()["uiState"] == {"hasReplyBox": False}


def test_unexpected_errors_are_normalised(client, service: StubService) -> None:
    service.error = RuntimeError("kaputt")

    response = client.post("/api/messages/send", json={"accountId": "7", "conversationId": "c-1", "text": "x"})

    body = response.get_json()
    assert response.status_code == 500
    assert body["code"] == ErrorCode.UNKNOWN_ERROR.value
    assert "kaputt" in body["details"]


def test_send_media_passes_uploads(client, service: StubService) -> None:
    response = client.post(
        "/api/messages/send-media",
        data={
            "accountId": "7",
            "conversationId": "c-1",
            "text": "Fotos",
            "images": [(io.BytesIO(b"one"), "a.png"), (io.BytesIO(b"two"), "b.jpg")],
        },
        content_type="multipart/form-data",
    )

    assert response.status_code == 200
    name, args, _ = service.calls[0]
    files = args[4]
    assert name == "media"
    assert [f.filename for f in files] == ["a.png", "b.jpg"]
    assert files[0].content == b"one"
    assert files[0].mime_type == "image/png"


def test_send_media_rejects_too_many_files(client, service: StubService) -> None:
    response = client.post(
        "/api/messages/send-media",
        data={
            "accountId": "7",
            "conversationId": "c-1",
            "images": [(io.BytesIO(b"x"), f"{i}.png") for i in range(11)],
        },
        content_type="multipart/form-data",
    )

    assert response.status_code == 400
    assert response.get_json()["code"] == "TOO_MANY_FILES"
    assert service.calls == []


def test_list_messages(client, service: StubService) -> None:
    response = client.get("/api/messages?limit=5")

    items = response.get_json()
    assert [item["accountId"] for item in items] == [7, 8]
    assert items[0]["accountName"] == "Seller"
    _, (accounts, proxies, options), _ = service.calls[0]
    assert options.max_conversations == 5
    assert len(proxies) == 1


def test_thread_by_query(client, service: StubService) -> None:
    response = client.get("/api/messages/thread?accountId=8&participant=Erika")

    assert response.status_code == 200
    _, args, _ = service.calls[0]
    assert args[1] is None
    assert args[2].participant == "Erika"


def test_async_runner_times_out() -> None:
    runner = AsyncRunner()
    try:
        assert runner.run(asyncio.sleep(0, result="done"), timeout=5) == "done"
        with pytest.raises(MessagingError) as excinfo:
            runner.run(asyncio.sleep(5), timeout=0.05)
        assert excinfo.value.code == ErrorCode.MESSAGE_ACTION_TIMEOUT.value
    finally:
        runner.shutdown()
