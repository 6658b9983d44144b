"""
Integration tests for the HTTP transport against loopback servers.

Tests:
- 100-continue handshake followed by a chunked body
- Silent servers: the body is sent after the continue timeout
- Early final responses skip the body
- Coordinator to ingest node redirect keeps label and credentials
- Timeouts while waiting for the final response
- Store verdicts sent while the body is still streaming
- Aborted exchanges, and sockets numbered above the select() limit
"""

import http.client
import json
import os
import socket
import threading
import time
from typing import List, Optional

import pytest

from doris_bulk_loader import (
    AuthOptions,
    FormatConfig,
    LoadBatch,
    LoadOptions,
    LoadStatus,
    RequestBuilder,
    StoreRejection,
    StreamLoadClient,
    StreamLoadRequest,
    TransportError,
)
from doris_bulk_loader.transport import Exchange

SUCCESS = {"TxnId": 7, "Status": "Success", "Message": "OK", "NumberLoadedRows": 3, "NumberFilteredRows": 0}


class Reply:
    """How a scripted server answers one connection.

    Modes:
        continue: send '100 Continue', read the body, then answer
        silent: read the body without an interim response, then answer
        early: answer right after the headers without reading the body
        stall: read the body and never answer
        hold: read only the headers and wait for the client to disconnect
        reject: send '100 Continue', read part of the body, answer and
            close without reading the rest
    """

    def __init__(self, mode: str, status: int = 200, payload=None, headers=None):
        self.mode = mode
        self.status = status
        self.payload = payload
        self.headers = headers or {}


class Captured:
    def __init__(self, request_line: str, headers: dict, body: Optional[bytes]):
        self.request_line = request_line
        self.headers = headers
        self.body = body


def _read_chunked(stream) -> bytes:
    body = b""
    while True:
        size = int(stream.readline().strip(), 16)
        if size == 0:
            stream.readline()
            return body
        body += stream.read(size)
        stream.readline()


class ScriptedServer:
    """Loopback HTTP server answering one connection per scripted reply."""

    def __init__(self, *replies: Reply):
        self.replies = list(replies)
        self.requests: List[Captured] = []
        self.errors: List[BaseException] = []
        self._sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._sock.bind(("127.0.0.1", 0))
        self._sock.listen(len(self.replies))
        self._sock.settimeout(5)
        self.port = self._sock.getsockname()[1]
        self._thread = threading.Thread(target=self._serve, daemon=True)
        self._thread.start()

    @property
    def url(self) -> str:
        return f"http://127.0.0.1:{self.port}/api/demo/users/_stream_load"

    def _serve(self):
        try:
            for reply in self.replies:
                conn, _ = self._sock.accept()
                conn.settimeout(5)
                with conn:
                    self._handle(conn, reply)
        except BaseException as e:
            self.errors.append(e)
        finally:
            self._sock.close()

    def _handle(self, conn: socket.socket, reply: Reply):
        stream = conn.makefile("rb")
        request_line = stream.readline().decode("latin-1").strip()
        headers = {}
        while True:
            line = stream.readline()
            if line in (b"\r\n", b""):
                break
            key, _, value = line.decode("latin-1").partition(":")
            headers[key.strip().lower()] = value.strip()

        body = None
        if reply.mode == "hold":
            self.requests.append(Captured(request_line, headers, body))
            conn.recv(1)
            return
        if reply.mode == "reject":
            conn.sendall(b"HTTP/1.1 100 Continue\r\n\r\n")
            body = stream.read(1024)
        elif reply.mode == "continue":
            conn.sendall(b"HTTP/1.1 100 Continue\r\n\r\n")
            body = _read_chunked(stream)
        elif reply.mode in ("silent", "stall"):
            body = _read_chunked(stream)
        self.requests.append(Captured(request_line, headers, body))

        if reply.mode == "stall":
            # Hold the connection until the client gives up
            conn.recv(1)
            return

        payload = b"" if reply.payload is None else json.dumps(reply.payload).encode("utf-8")
        head = [f"HTTP/1.1 {reply.status} Status", f"Content-Length: {len(payload)}", "Connection: close"]
        head.extend(f"{key}: {value}" for key, value in reply.headers.items())
        conn.sendall(("\r\n".join(head) + "\r\n\r\n").encode("latin-1") + payload)
        if reply.mode == "reject":
            # The unread body makes the close reset the connection
            conn.shutdown(socket.SHUT_WR)
            time.sleep(0.2)

    def join(self):
        self._thread.join(timeout=5)
        assert not self.errors, self.errors


@pytest.fixture
def load(destination, people):
    def _load(server: ScriptedServer, rows=None, **options):
        options.setdefault("continue_timeout", 1.0)
        options.setdefault("timeout", 10.0)
        client = StreamLoadClient(
            AuthOptions(host="127.0.0.1", http_port=server.port, user="loader", password="secret"),
            LoadOptions(**options),
        )
        batch = LoadBatch(destination, FormatConfig("csv"))
        for row in people if rows is None else rows:
            batch.add(row)
        try:
            return client.load(batch)
        finally:
            server.join()

    return _load


def test_continue_then_chunked_body(load):
    server = ScriptedServer(Reply("continue", payload=SUCCESS))

    result = load(server)

    assert result.is_success
    assert result.loaded_rows == 3
    captured = server.requests[0]
    assert captured.request_line == "PUT /api/demo/users/_stream_load HTTP/1.1"
    assert captured.headers["expect"] == "100-continue"
    assert captured.headers["transfer-encoding"] == "chunked"
    assert captured.headers["columns"] == "id,name"
    assert captured.headers["label"] == result.label
    assert captured.body == b"1,Alice\n2,Bob\n3,Carol"


def test_silent_server_gets_body_after_continue_timeout(load):
    server = ScriptedServer(Reply("silent", payload=SUCCESS))

    result = load(server, continue_timeout=0.2)

    assert result.is_success
    assert server.requests[0].body == b"1,Alice\n2,Bob\n3,Carol"


def test_early_rejection_skips_body(load):
    server = ScriptedServer(Reply("early", payload={"Status": "Fail", "Message": "table users not found"}))

    with pytest.raises(StoreRejection, match="table users not found"):
        load(server)

    assert server.requests[0].body is None


def test_redirect_to_ingest_node(load):
    backend = ScriptedServer(Reply("continue", payload=SUCCESS))
    frontend = ScriptedServer(Reply("early", status=307, headers={"Location": backend.url}))

    result = load(frontend)
    backend.join()

    assert result.is_success
    coordinator, = frontend.requests
    ingest, = backend.requests
    assert coordinator.body is None
    assert ingest.body == b"1,Alice\n2,Bob\n3,Carol"
    assert ingest.headers["label"] == coordinator.headers["label"] == result.label
    assert ingest.headers["authorization"] == coordinator.headers["authorization"]
    assert ingest.headers["host"] == f"127.0.0.1:{backend.port}"


def test_second_redirect_fails(load):
    elsewhere = ScriptedServer()
    backend = ScriptedServer(Reply("early", status=307, headers={"Location": elsewhere.url}))
    frontend = ScriptedServer(Reply("early", status=307, headers={"Location": backend.url}))

    with pytest.raises(TransportError, match="redirected again"):
        load(frontend)
    backend.join()

    assert len(backend.requests) == 1
    assert elsewhere.requests == []


def test_timeout_waiting_for_response(load):
    server = ScriptedServer(Reply("stall"))

    with pytest.raises(TransportError) as excinfo:
        load(server, timeout=0.5, continue_timeout=0.1)

    assert excinfo.value.indeterminate
    assert server.requests[0].body == b"1,Alice\n2,Bob\n3,Carol"


def test_unsupported_scheme():
    request = StreamLoadRequest("PUT", "https://fe.example:8030/api/demo/users/_stream_load", {}, "lbl")
    with pytest.raises(TransportError, match="scheme") as excinfo:
        Exchange(request, timeout=1.0)
    assert not excinfo.value.indeterminate


def test_rejection_while_streaming_reports_store_verdict(load):
    verdict = {"Status": "Fail", "Message": "too many filtered rows"}
    server = ScriptedServer(Reply("reject", payload=verdict))
    rows = [(i, "x" * 40) for i in range(200000)]

    with pytest.raises(StoreRejection, match="too many filtered rows") as excinfo:
        load(server, rows=rows)

    assert excinfo.value.result.status == LoadStatus.FAIL
    assert len(server.requests[0].body) == 1024


def test_aborted_exchange_does_not_reconnect(destination):
    server = ScriptedServer(Reply("hold"))
    builder = RequestBuilder(AuthOptions(host="127.0.0.1", http_port=server.port))
    exchange = Exchange(builder.build(destination, FormatConfig("csv"), "lbl"), timeout=5.0)

    exchange.send_headers()
    exchange.abort()
    with pytest.raises(http.client.NotConnected):
        exchange.write(b"1,Alice")
    with pytest.raises(http.client.NotConnected):
        exchange.send_headers()
    server.join()

    assert len(server.requests) == 1


def test_socket_above_select_limit(load):
    resource = pytest.importorskip("resource")
    soft, hard = resource.getrlimit(resource.RLIMIT_NOFILE)
    wanted = 2048 if hard == resource.RLIM_INFINITY else min(2048, hard)
    if wanted < 1200:
        pytest.skip(f"open file limit {hard} is too low")
    resource.setrlimit(resource.RLIMIT_NOFILE, (max(soft, wanted), hard))

    handles = []
    try:
        while not handles or handles[-1].fileno() < 1100:
            handles.append(open(os.devnull, "rb"))
        server = ScriptedServer(Reply("continue", payload=SUCCESS))

        result = load(server)
    finally:
        for handle in handles:
            handle.close()
        resource.setrlimit(resource.RLIMIT_NOFILE, (soft, hard))

    assert result.is_success
    assert server.requests[0].body == b"1,Alice\n2,Bob\n3,Carol"
