import pytest

from fakes import MESSAGE_MUTATION_URL, FakeRequest, FakeSession, ManualClock
from messagebox.watchdogs import PageWatchdog, is_likely_messaging_mutation


@pytest.mark.parametrize(
    "url,method,body,expected",
    [
        (MESSAGE_MUTATION_URL, "POST", "", True),
        ("https://www.kleinanzeigen.de/api/conversations/c-1", "POST", '{"message": "hi", "type": "send"}', True),
        ("https://www.kleinanzeigen.de/api/conversations/c-1", "POST", '{"seen": true}', False),
        (MESSAGE_MUTATION_URL, "GET", "", False),
        ("https://example.com/send", "POST", "", False),
        ("https://www.kleinanzeigen.de/tracking/send", "POST", "", False),
        ("https://www.kleinanzeigen.de/m-bilder-upload.json", "PUT", "", True),
    ],
)
def test_mutation_shape(url: str, method: str, body: str, expected: bool) -> None:
    assert is_likely_messaging_mutation(url, method, body) is expected


def test_request_listener_records_mutation_time() -> None:
    clock = ManualClock()
    session = FakeSession()
    watchdog = PageWatchdog(session, clock=clock).start()
    started = clock.monotonic()

    session.emit("request", FakeRequest("https://www.kleinanzeigen.de/m-nachrichten.html", "GET"))
    assert not watchdog.mutation_after(started)

    clock.advance(1)
    session.emit_mutation()

    assert watchdog.mutation_after(started)
    assert not watchdog.mutation_after(clock.monotonic() + 1)
    assert watchdog.snapshot()["last_mutation_url"] == MESSAGE_MUTATION_URL


def test_stop_detaches_listeners() -> None:
    session = FakeSession()
    with PageWatchdog(session):
        assert session.listeners["request"]

    assert all(not handlers for handlers in session.listeners.values())


def test_page_errors_become_warnings() -> None:
    session = FakeSession()
    watchdog = PageWatchdog(session).start()

    session.emit("pageerror", RuntimeError("undefined is not a function"))

    assert watchdog.collect_warnings() == ["WARNING:auto:Page error captured: undefined is not a function"]


@pytest.mark.asyncio
async def test_wait_for_mutation_times_out_on_the_manual_clock() -> None:
    clock = ManualClock()
    watchdog = PageWatchdog(FakeSession(), clock=clock)

    assert await watchdog.wait_for_mutation(clock.monotonic(), timeout_ms=1000) is False
    assert sum(clock.sleeps) >= 1.0
