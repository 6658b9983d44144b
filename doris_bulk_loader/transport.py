"""
HTTP/1.1 exchange with an explicit ``Expect: 100-continue`` phase.

requests and urllib3 send the body right after the headers and never surface
the interim ``100 Continue`` response, so a Stream Load exchange is driven
here step by step on top of ``http.client``: send the headers, wait for the
interim answer (or an early final one such as a redirect), stream the body
as chunked frames, then read the final response.
"""

import http.client
import logging
import selectors
import socket
import time
from typing import Mapping, Optional
from urllib.parse import urlsplit

from requests.structures import CaseInsensitiveDict

from .errors import TransportError
from .request import StreamLoadRequest

logger = logging.getLogger(__name__)

REDIRECT_STATUSES = (301, 302, 303, 307, 308)

# Upper bound for an interim response head
_MAX_HEAD = 64 * 1024
_PEEK_INTERVAL = 0.005


class RawResponse:
    """Final HTTP response of an exchange."""

    def __init__(self, status: int, reason: str, headers: Mapping[str, str], body: bytes):
        self.status = status
        self.reason = reason
        self.headers = CaseInsensitiveDict(headers)
        self.body = body

    @property
    def is_redirect(self) -> bool:
        return self.status in REDIRECT_STATUSES

    @property
    def location(self) -> Optional[str]:
        return self.headers.get("Location")

    def __repr__(self) -> str:
        return f"RawResponse({self.status} {self.reason}, {len(self.body)} bytes)"


def _status_code(status_line: bytes) -> int:
    parts = status_line.split(None, 2)
    if len(parts) < 2 or not parts[0].startswith(b"HTTP/"):
        raise http.client.BadStatusLine(status_line.decode("latin-1", errors="replace"))
    try:
        return int(parts[1])
    except ValueError:
        raise http.client.BadStatusLine(status_line.decode("latin-1", errors="replace"))


class Exchange:
    """One request/response exchange over its own connection."""

    def __init__(self, request: StreamLoadRequest, timeout: float):
        parts = urlsplit(request.url)
        if parts.scheme != "http":
            raise TransportError(f"Unsupported URL scheme in {request.url}", label=request.label)
        self.request = request
        self._path = parts.path + (f"?{parts.query}" if parts.query else "")
        self._conn = http.client.HTTPConnection(parts.hostname, parts.port or 80, timeout=timeout)
        # Never reconnect silently once the exchange is torn down
        self._conn.auto_open = 0
        self._aborted = False

    def set_timeout(self, timeout: float):
        self._conn.timeout = timeout
        if self._conn.sock is not None:
            self._conn.sock.settimeout(timeout)

    def send_headers(self):
        """Connect and send the request line and headers, no body."""
        if self._aborted:
            raise http.client.NotConnected(f"Exchange with {self.request.url} was aborted")
        self._conn.connect()
        self._conn.putrequest(self.request.method, self._path, skip_accept_encoding=True)
        for key, value in self.request.headers.items():
            self._conn.putheader(key, value)
        self._conn.endheaders()

    def await_continue(self, timeout: float) -> Optional[RawResponse]:
        """Wait for the server's answer to ``Expect: 100-continue``.

        Returns None when the body should be sent: either '100 Continue'
        arrived or the server stayed silent for ``timeout`` seconds. Returns
        the final response when the server answered without reading the
        body, e.g. a redirect or an error.
        """
        sock = self._conn.sock
        deadline = time.monotonic() + timeout
        # poll/epoll based, so descriptors above FD_SETSIZE work too
        with selectors.DefaultSelector() as selector:
            selector.register(sock, selectors.EVENT_READ)
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    logger.debug(f"No interim response from {self.request.url}, sending body")
                    return None
                if not selector.select(remaining):
                    continue

                head = sock.recv(_MAX_HEAD, socket.MSG_PEEK)
                if not head:
                    raise ConnectionError("Connection closed while waiting for 100-continue")
                end = head.find(b"\r\n\r\n")
                if end < 0:
                    if len(head) >= _MAX_HEAD:
                        raise http.client.LineTooLong("interim response head")
                    time.sleep(_PEEK_INTERVAL)
                    continue

                status = _status_code(head[: head.find(b"\r\n")])
                if 100 <= status < 200:
                    self._discard(end + 4)
                    if status == 100:
                        return None
                    continue
                return self.read_response()

    def _discard(self, size: int):
        sock = self._conn.sock
        while size > 0:
            data = sock.recv(size)
            if not data:
                raise ConnectionError("Connection closed while reading interim response")
            size -= len(data)

    def write(self, chunk: bytes):
        """Send one chunk of the body as an HTTP chunked frame."""
        if not chunk:
            return
        self._conn.send(b"%x\r\n%s\r\n" % (len(chunk), chunk))

    def finish(self) -> RawResponse:
        """Terminate the chunked body and read the final response."""
        self._conn.send(b"0\r\n\r\n")
        return self.read_response()

    def read_response(self) -> RawResponse:
        response = self._conn.getresponse()
        body = response.read()
        return RawResponse(response.status, response.reason, dict(response.getheaders()), body)

    def early_response(self, timeout: float) -> Optional[RawResponse]:
        """Read a final response the server sent before it stopped reading the body.

        Servers reject a load mid-stream by answering and closing the
        connection, which surfaces as a reset on the next write. The answer
        usually still sits in the receive buffer.

        Returns:
            The response, or None when there is nothing readable
        """
        if self._aborted or self._conn.sock is None:
            return None
        self.set_timeout(timeout)
        try:
            return self.read_response()
        except (OSError, http.client.HTTPException) as e:
            logger.debug(f"No response readable from {self.request.url} after failed write: {e}")
            return None

    def abort(self):
        """Tear the connection down, unblocking a pending read or write.

        Later reads and writes raise instead of reconnecting.
        """
        self._aborted = True
        sock = self._conn.sock
        if sock is not None:
            try:
                sock.shutdown(socket.SHUT_RDWR)
            except OSError as e:
                logger.debug(f"Socket shutdown for {self.request.url} failed: {e}")
        self._conn.close()

    def close(self):
        self._conn.close()


class HTTPTransport:
    """Opens one connection per exchange; nothing is shared between batches."""

    def open(self, request: StreamLoadRequest, timeout: float) -> Exchange:
        logger.debug(f"Opening connection for {request}")
        return Exchange(request, timeout)
