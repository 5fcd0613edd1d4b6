import asyncio
import socket

import pytest

from messagebox.faults import ErrorCode, MessagingError
from messagebox.models import Proxy
from messagebox.proxy_forwarder import ProxyForwarder, needs_forwarder
from messagebox.session import browser_proxy_settings


class SocksUpstream:
    """Tiny SOCKS5 server: username/password auth, CONNECT, then echoes the tunnel."""

    def __init__(self, username: str = "kl", password: str = "geheim") -> None:
        self.username = username
        self.password = password
        self.port = 0
        self.credentials = []
        self.targets = []
        self._server = None
        self._writers = set()

    async def __aenter__(self) -> "SocksUpstream":
        self._server = await asyncio.start_server(self._handle, "127.0.0.1", 0)
        self.port = self._server.sockets[0].getsockname()[1]
        return self

    async def __aexit__(self, *exc_info) -> None:
        self._server.close()
        for writer in list(self._writers):
            writer.close()
        await asyncio.wait_for(self._server.wait_closed(), 2)

    def proxy(self, password: str = "") -> Proxy:
        return Proxy(
            host="127.0.0.1", port=self.port, username=self.username, password=password or self.password, type="socks5"
        )

    async def _read_prefixed(self, reader: asyncio.StreamReader) -> bytes:
        length = (await reader.readexactly(1))[0]
        return await reader.readexactly(length)

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._writers.add(writer)
        try:
            _, count = await reader.readexactly(2)
            methods = await reader.readexactly(count)
            if 2 not in methods:
                writer.write(b"\x05\xff")
                return
            writer.write(b"\x05\x02")
            await reader.readexactly(1)
            user = (await self._read_prefixed(reader)).decode()
            password = (await self._read_prefixed(reader)).decode()
            self.credentials.append((user, password))
            if (user, password) != (self.username, self.password):
                writer.write(b"\x01\x01")
                return
            writer.write(b"\x01\x00")
            _, _, _, address_type = await reader.readexactly(4)
            if address_type == 3:
                host = (await self._read_prefixed(reader)).decode()
            else:
                host = socket.inet_ntoa(await reader.readexactly(4))
            port = int.from_bytes(await reader.readexactly(2), "big")
            self.targets.append((host, port))
            writer.write(b"\x05\x00\x00\x01" + bytes(6))
            await writer.drain()
            while True:
                data = await reader.read(1024)
                if not data:
                    break
                writer.write(data)
                await writer.drain()
        except (asyncio.IncompleteReadError, ConnectionError):
            pass
        finally:
            self._writers.discard(writer)
            writer.close()


async def _send(forwarder: ProxyForwarder, payload: bytes):
    reader, writer = await asyncio.open_connection("127.0.0.1", forwarder.port)
    writer.write(payload)
    await writer.drain()
    return reader, writer


def test_only_authenticated_socks_proxies_need_forwarding() -> None:
    assert needs_forwarder(Proxy(host="p", port=1, username="u", password="p", type="socks5"))
    assert not needs_forwarder(Proxy(host="p", port=1, type="socks5"))
    assert not needs_forwarder(Proxy(host="p", port=1, username="u", password="p", type="http"))
    assert not needs_forwarder(None)


@pytest.mark.asyncio
async def test_browser_is_pointed_at_the_running_forwarder() -> None:
    proxy = Proxy(host="10.0.0.2", port=1080, username="kl", password="geheim", type="socks5")

    with pytest.raises(MessagingError) as excinfo:
        browser_proxy_settings(proxy)
    assert excinfo.value.code == ErrorCode.PROXY_TUNNEL_CONNECTION_FAILED.value

    async with ProxyForwarder(proxy) as forwarder:
        settings = browser_proxy_settings(proxy, forwarder)

    assert settings == {"server": f"http://127.0.0.1:{forwarder.port}"}
    http_proxy = Proxy(host="10.0.0.3", port=3128, username="kl", password="geheim")
    assert browser_proxy_settings(http_proxy) == {
        "server": "http://10.0.0.3:3128",
        "username": "kl",
        "password": "geheim",
    }


@pytest.mark.asyncio
async def test_connect_tunnel_authenticates_against_upstream() -> None:
    async with SocksUpstream() as upstream, ProxyForwarder(upstream.proxy()) as forwarder:
        reader, writer = await _send(forwarder, b"CONNECT www.kleinanzeigen.de:443 HTTP/1.1\r\nHost: x\r\n\r\n")
        status = await asyncio.wait_for(reader.readuntil(b"\r\n\r\n"), 2)
        writer.write(b"ping")
        await writer.drain()
        echoed = await asyncio.wait_for(reader.readexactly(4), 2)
        writer.close()

    assert status.startswith(b"HTTP/1.1 200")
    assert echoed == b"ping"
    assert upstream.credentials == [("kl", "geheim")]
    assert upstream.targets == [("www.kleinanzeigen.de", 443)]


@pytest.mark.asyncio
async def test_plain_http_request_is_rewritten_to_origin_form() -> None:
    request = b"GET http://example.test/pfad?x=1 HTTP/1.1\r\nHost: example.test\r\nProxy-Connection: keep-alive\r\n\r\n"
    expected = b"GET /pfad?x=1 HTTP/1.1\r\nHost: example.test\r\n\r\n"
    async with SocksUpstream() as upstream, ProxyForwarder(upstream.proxy()) as forwarder:
        reader, writer = await _send(forwarder, request)
        forwarded = await asyncio.wait_for(reader.readexactly(len(expected)), 2)
        writer.close()

    assert forwarded == expected
    assert upstream.targets == [("example.test", 80)]


@pytest.mark.asyncio
async def test_rejected_credentials_answer_bad_gateway() -> None:
    async with SocksUpstream() as upstream, ProxyForwarder(upstream.proxy(password="falsch")) as forwarder:
        reader, writer = await _send(forwarder, b"CONNECT www.kleinanzeigen.de:443 HTTP/1.1\r\n\r\n")
        status = await asyncio.wait_for(reader.readuntil(b"\r\n\r\n"), 2)
        writer.close()

    assert status.startswith(b"HTTP/1.1 502")
    assert upstream.targets == []


@pytest.mark.asyncio
async def test_closed_forwarder_releases_its_port() -> None:
    forwarder = await ProxyForwarder(Proxy(host="127.0.0.1", port=9, username="u", password="p", type="socks5")).start()
    port = forwarder.port
    await forwarder.close()

    with pytest.raises(OSError):
        await asyncio.open_connection("127.0.0.1", port)
