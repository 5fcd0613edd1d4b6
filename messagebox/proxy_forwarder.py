"""Local forwarder that lets the browser use an authenticated SOCKS5 proxy.

Chromium cannot send SOCKS credentials.  For such accounts the browser is
pointed at an unauthenticated HTTP proxy on loopback instead; every tunnel it
opens is carried to the target through the account's SOCKS5 proxy with
username/password authentication.  One forwarder lives exactly as long as
the browser session that uses it.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional, Set, Tuple
from urllib.parse import urlsplit

from socksio import socks5
from socksio.exceptions import ProtocolError

from .models import Proxy

log = logging.getLogger(__name__)

LOCAL_HOST = "127.0.0.1"
CONNECT_TIMEOUT_S = 20.0
CLOSE_TIMEOUT_S = 2.0
READ_CHUNK = 64 * 1024
HEAD_TERMINATOR = b"\r\n\r\n"


class UpstreamError(Exception):
    """The SOCKS upstream refused the handshake or could not reach the target."""


def needs_forwarder(proxy: Optional[Proxy]) -> bool:
    return proxy is not None and proxy.is_socks and proxy.has_credentials


def _split_host_port(authority: str, default_port: int) -> Tuple[str, int]:
    host, sep, port = authority.rpartition(":")
    if not sep or not port.isdigit():
        return authority.strip("[]"), default_port
    return host.strip("[]"), int(port)


async def _pipe(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
    try:
        while True:
            chunk = await reader.read(READ_CHUNK)
            if not chunk:
                break
            writer.write(chunk)
            await writer.drain()
    except OSError as exc:
        log.debug("Forwarded stream ended: %s", exc)
    finally:
        writer.close()


class ProxyForwarder:
    """Loopback HTTP proxy (CONNECT and absolute-form requests) over a SOCKS5 upstream."""

    def __init__(self, upstream: Proxy, *, connect_timeout_s: float = CONNECT_TIMEOUT_S) -> None:
        self.upstream = upstream
        self.connect_timeout_s = connect_timeout_s
        self.port = 0
        self._server: Optional[asyncio.AbstractServer] = None
        self._clients: Set[asyncio.StreamWriter] = set()

    @property
    def server(self) -> str:
        return f"http://{LOCAL_HOST}:{self.port}"

    async def __aenter__(self) -> "ProxyForwarder":
        return await self.start()

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def start(self) -> "ProxyForwarder":
        if self._server is None:
            self._server = await asyncio.start_server(self._handle, LOCAL_HOST, 0)
            self.port = self._server.sockets[0].getsockname()[1]
            log.info("Proxy forwarder %s -> %s:%s", self.server, self.upstream.host, self.upstream.port)
        return self

    async def close(self) -> None:
        if self._server is None:
            return
        server, self._server = self._server, None
        server.close()
        for writer in list(self._clients):
            writer.close()
        try:
            await asyncio.wait_for(server.wait_closed(), CLOSE_TIMEOUT_S)
        except asyncio.TimeoutError:
            log.warning("Proxy forwarder %s did not close in time", self.server)

    # connections ------------------------------------------------------------

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._clients.add(writer)
        try:
            try:
                head = await reader.readuntil(HEAD_TERMINATOR)
                method, target, version, headers = self._parse_head(head)
            except (asyncio.IncompleteReadError, asyncio.LimitOverrunError, ValueError) as exc:
                log.debug("Malformed request to proxy forwarder: %s", exc)
                await self._reply(writer, 400, "Bad Request")
                return

            if method == "CONNECT":
                host, port = _split_host_port(target, 443)
            else:
                parts = urlsplit(target)
                if parts.scheme != "http" or not parts.hostname:
                    await self._reply(writer, 400, "Bad Request")
                    return
                host, port = parts.hostname, parts.port or 80

            try:
                upstream_reader, upstream_writer = await self._open_tunnel(host, port)
            except (UpstreamError, OSError, asyncio.TimeoutError) as exc:
                log.warning("Proxy forwarder could not reach %s:%s: %s", host, port, exc)
                await self._reply(writer, 502, "Bad Gateway")
                return

            if method == "CONNECT":
                writer.write(b"HTTP/1.1 200 Connection Established\r\n\r\n")
                await writer.drain()
            else:
                path = parts.path or "/"
                if parts.query:
                    path = f"{path}?{parts.query}"
                upstream_writer.write(f"{method} {path} {version}\r\n".encode("latin-1") + headers)
            await asyncio.gather(_pipe(reader, upstream_writer), _pipe(upstream_reader, writer))
        finally:
            self._clients.discard(writer)
            writer.close()

    @staticmethod
    def _parse_head(head: bytes) -> Tuple[str, str, str, bytes]:
        request_line, _, rest = head.partition(b"\r\n")
        method, target, version = request_line.decode("latin-1").split(" ")
        # Hop-by-hop proxy headers stay with this hop.
        kept = [line for line in rest.split(b"\r\n") if not line.lower().startswith(b"proxy-")]
        return method.upper(), target, version, b"\r\n".join(kept)

    @staticmethod
    async def _reply(writer: asyncio.StreamWriter, status: int, reason: str) -> None:
        writer.write(f"HTTP/1.1 {status} {reason}\r\nContent-Length: 0\r\nConnection: close\r\n\r\n".encode())
        try:
            await writer.drain()
        except OSError as exc:
            log.debug("Proxy forwarder reply not delivered: %s", exc)

    # upstream ---------------------------------------------------------------

    async def _open_tunnel(self, host: str, port: int) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        reader, writer = await asyncio.wait_for(
            asyncio.open_connection(self.upstream.host, self.upstream.port), self.connect_timeout_s
        )
        try:
            await asyncio.wait_for(self._handshake(reader, writer, host, port), self.connect_timeout_s)
        except BaseException:
            writer.close()
            raise
        return reader, writer

    async def _handshake(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter, host: str, port: int) -> None:
        conn = socks5.SOCKS5Connection()
        conn.send(socks5.SOCKS5AuthMethodsRequest([socks5.SOCKS5AuthMethod.USERNAME_PASSWORD]))
        reply = await self._exchange(conn, reader, writer)
        if not isinstance(reply, socks5.SOCKS5AuthReply) or reply.method != socks5.SOCKS5AuthMethod.USERNAME_PASSWORD:
            raise UpstreamError("upstream refused username/password authentication")

        conn.send(
            socks5.SOCKS5UsernamePasswordRequest(self.upstream.username.encode(), self.upstream.password.encode())
        )
        reply = await self._exchange(conn, reader, writer)
        if not isinstance(reply, socks5.SOCKS5UsernamePasswordReply) or not reply.success:
            raise UpstreamError("upstream rejected the proxy credentials")

        conn.send(socks5.SOCKS5CommandRequest.from_address(socks5.SOCKS5Command.CONNECT, (host, port)))
        reply = await self._exchange(conn, reader, writer)
        if not isinstance(reply, socks5.SOCKS5Reply) or reply.reply_code != socks5.SOCKS5ReplyCode.SUCCEEDED:
            raise UpstreamError(f"upstream could not connect to {host}:{port}")

    @staticmethod
    async def _exchange(conn: socks5.SOCKS5Connection, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> Any:
        writer.write(conn.data_to_send())
        await writer.drain()
        data = await reader.read(4096)
        if not data:
            raise UpstreamError("upstream closed the connection during the handshake")
        try:
            return conn.receive_data(data)
        except ProtocolError as exc:
            raise UpstreamError(f"malformed upstream reply: {exc}") from exc
