"""
Pytest configuration and fixtures for doris-bulk-loader.

Provides a scripted in-memory transport for the client state machine and
canned Stream Load responses.
"""

import json
import threading
from typing import Any, Callable, Dict, List, Optional

import pytest

from doris_bulk_loader import AuthOptions, Destination, RawResponse


class Leg:
    """Script of one HTTP exchange seen by the fake transport."""

    def __init__(
        self,
        interim: Optional[RawResponse] = None,
        final: Optional[RawResponse] = None,
        headers_error: Optional[BaseException] = None,
        write_error_after: Optional[int] = None,
        write_error: Optional[BaseException] = None,
        on_write: Optional[Callable[[bytes], None]] = None,
        finish_error: Optional[BaseException] = None,
        early: Optional[RawResponse] = None,
    ):
        self.interim = interim
        self.final = final
        self.headers_error = headers_error
        self.write_error_after = write_error_after
        self.write_error = write_error
        self.on_write = on_write
        self.finish_error = finish_error
        self.early = early


class FakeExchange:
    def __init__(self, request, leg: Leg):
        self.request = request
        self.leg = leg
        self.chunks: List[bytes] = []
        self.timeouts: List[float] = []
        self.headers_sent = False
        self.finished = False
        self.aborted = False
        self.closed = False

    @property
    def body(self) -> bytes:
        return b"".join(self.chunks)

    def set_timeout(self, timeout):
        self.timeouts.append(timeout)

    def send_headers(self):
        if self.leg.headers_error is not None:
            raise self.leg.headers_error
        self.headers_sent = True

    def await_continue(self, timeout):
        return self.leg.interim

    def write(self, chunk):
        if self.aborted:
            raise ConnectionAbortedError("exchange aborted")
        if self.leg.write_error_after is not None and len(self.chunks) >= self.leg.write_error_after:
            raise self.leg.write_error or BrokenPipeError("connection reset by peer")
        self.chunks.append(chunk)
        if self.leg.on_write is not None:
            self.leg.on_write(chunk)

    def finish(self):
        if self.aborted:
            raise ConnectionAbortedError("exchange aborted")
        if self.leg.finish_error is not None:
            raise self.leg.finish_error
        self.finished = True
        return self.leg.final

    def early_response(self, timeout):
        return self.leg.early

    def abort(self):
        self.aborted = True

    def close(self):
        self.closed = True


class FakeTransport:
    """Hands out scripted exchanges in order, one per opened connection."""

    def __init__(self, *legs: Leg):
        self.legs = list(legs)
        self.exchanges: List[FakeExchange] = []
        self._lock = threading.Lock()

    def open(self, request, timeout):
        with self._lock:
            if not self.legs:
                raise AssertionError(f"Unexpected exchange for {request}")
            exchange = FakeExchange(request, self.legs.pop(0))
            self.exchanges.append(exchange)
        return exchange


def make_json_response(payload: Dict[str, Any], status: int = 200) -> RawResponse:
    return RawResponse(
        status, "OK", {"Content-Type": "application/json"}, json.dumps(payload).encode("utf-8")
    )


def make_success(loaded: int = 3, filtered: int = 0, label: Optional[str] = None, **extra) -> RawResponse:
    payload = {
        "TxnId": 1001,
        "Status": "Success",
        "Message": "OK",
        "NumberTotalRows": loaded + filtered,
        "NumberLoadedRows": loaded,
        "NumberFilteredRows": filtered,
        "NumberUnselectedRows": 0,
        "LoadBytes": 24,
        "LoadTimeMs": 54,
    }
    if label is not None:
        payload["Label"] = label
    payload.update(extra)
    return make_json_response(payload)


def make_redirect(location: str, status: int = 307) -> RawResponse:
    return RawResponse(status, "Temporary Redirect", {"Location": location}, b"")


@pytest.fixture
def leg():
    return Leg


@pytest.fixture
def fake_transport():
    return FakeTransport


@pytest.fixture
def json_response():
    return make_json_response


@pytest.fixture
def success_response():
    return make_success


@pytest.fixture
def redirect_response():
    return make_redirect


@pytest.fixture
def auth_options():
    return AuthOptions(host="fe.example", http_port=8030, user="loader", password="secret")


@pytest.fixture
def destination():
    return Destination("demo", "users", ["id", "name"])


@pytest.fixture
def people():
    return [
        {"id": 1, "name": "Alice"},
        {"id": 2, "name": "Bob"},
        {"id": 3, "name": "Carol"},
    ]
