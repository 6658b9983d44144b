"""Stream Load client."""

import http.client
import logging
import threading
import time
from enum import Enum
from typing import Iterator, Optional, Tuple

from .batch import LoadBatch
from .encoding import chunked
from .errors import ConfigurationError, LoadCancelled, TransportError
from .labels import LabelGenerator, next_label
from .options import AuthOptions, LoadOptions
from .request import RequestBuilder, StreamLoadRequest
from .response import LoadResult, ResponseClassifier, raise_for_result
from .transport import HTTPTransport, RawResponse

logger = logging.getLogger(__name__)


class LoadState(Enum):
    IDLE = "Idle"
    REQUEST_SENT = "RequestSent"
    AWAITING_CONTINUE = "AwaitingContinue"
    STREAMING = "Streaming"
    AWAITING_RESPONSE = "AwaitingResponse"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"


class StreamLoadClient:
    """Submits load batches to one Doris endpoint, one batch at a time.

    Each submission walks the states Idle -> RequestSent -> AwaitingContinue
    -> Streaming -> AwaitingResponse -> Succeeded/Failed. A final response
    received while awaiting '100 Continue' skips the body entirely. A redirect
    to the ingest node, either before the body or after it, is followed
    exactly once with the same label and headers.

    Clients are cheap; concurrent workers should each use their own client.
    Only the label generator is meant to be shared.
    """

    def __init__(
        self,
        auth_options: Optional[AuthOptions] = None,
        load_options: Optional[LoadOptions] = None,
        transport: Optional[HTTPTransport] = None,
        label_generator: Optional[LabelGenerator] = None,
        classifier: Optional[ResponseClassifier] = None,
    ):
        self.auth_options = auth_options if auth_options else AuthOptions()
        self.load_options = load_options if load_options else LoadOptions()
        self.transport = transport if transport else HTTPTransport()
        self.label_generator = label_generator
        self.classifier = classifier if classifier else ResponseClassifier()
        self.request_builder = RequestBuilder(self.auth_options, self.load_options.headers)

        self.state = LoadState.IDLE
        self._busy = threading.Lock()
        self._cancelled = threading.Event()
        self._exchange = None
        self._label: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self):
        """Abort the load in flight, if any. Safe to call from another thread.

        The aborted batch is indeterminate: the store may or may not have
        committed it. Later calls to load() fail immediately.
        """
        self._cancelled.set()
        exchange = self._exchange
        if exchange is not None:
            logger.debug(f"Cancelling stream load {self._label}")
            exchange.abort()

    def new_label(self, table_name: str) -> str:
        if self.label_generator is not None:
            return self.label_generator.next(table_name)
        return next_label(table_name)

    def load(self, batch: LoadBatch) -> LoadResult:
        """Submit a batch and return the store's verdict.

        A label is assigned to the batch if it has none yet; a batch that is
        resubmitted keeps its label.

        Returns:
            LoadResult of an accepted load, possibly with filtered rows

        Raises:
            ConfigurationError: empty batch or invalid request settings
            EncodingError: a row could not be encoded; the batch was aborted
            StoreRejection: the store refused the load
            TransportError: connection, timeout or protocol failure
            LoadCancelled: cancel() was called during the load
        """
        if len(batch) == 0:
            raise ConfigurationError("Cannot submit an empty batch")
        if not self._busy.acquire(blocking=False):
            raise RuntimeError("StreamLoadClient is already loading a batch")
        try:
            if batch.label is None:
                batch.label = self.new_label(batch.table)
            self._label = batch.label
            self.state = LoadState.IDLE

            request = self.request_builder.build(
                batch.destination, batch.format_config, batch.label, batch.merge_on_write
            )
            logger.debug(
                f"Stream load {batch.label}: {len(batch)} rows to {batch.database}.{batch.table} "
                f"({batch.format_config.format} format)"
            )
            deadline = time.monotonic() + self.load_options.timeout
            result, body_sent = self._submit(request, batch, deadline)
            return raise_for_result(result, indeterminate=body_sent)
        finally:
            self._exchange = None
            self._busy.release()

    def _transition(self, state: LoadState):
        logger.debug(f"Stream load {self._label}: {self.state.value} -> {state.value}")
        self.state = state

    def _remaining(self, deadline: float, indeterminate: bool) -> float:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise TransportError(
                f"Stream load {self._label} exceeded its {self.load_options.timeout}s deadline",
                label=self._label,
                indeterminate=indeterminate,
            )
        return remaining

    def _check_cancelled(self):
        if self._cancelled.is_set():
            raise LoadCancelled(f"Stream load {self._label} was cancelled", label=self._label)

    def _body(self, batch: LoadBatch) -> Iterator[bytes]:
        return chunked(batch.encode(), self.load_options.chunk_size)

    def _submit(
        self, request: StreamLoadRequest, batch: LoadBatch, deadline: float
    ) -> Tuple[LoadResult, bool]:
        """Run exchanges until a final, non-redirect response arrives.

        Returns:
            The classified result and whether the body was written
        """
        body = self._body(batch)
        redirected = False

        while True:
            response, body_sent = self._exchange_once(request, body, deadline)

            if response.is_redirect:
                if redirected:
                    self._transition(LoadState.FAILED)
                    raise TransportError(
                        f"Stream load {self._label} redirected again by {request.url} "
                        f"(HTTP {response.status} to {response.location})",
                        label=self._label,
                        indeterminate=body_sent,
                    )
                if not response.location:
                    self._transition(LoadState.FAILED)
                    raise TransportError(
                        f"Redirect from {request.url} without Location header",
                        label=self._label,
                        indeterminate=body_sent,
                    )
                redirected = True
                request = request.redirected(response.location)
                logger.debug(f"Stream load {self._label}: redirect to {request.url}")
                if body_sent:
                    # The body went to the coordinator; recompute it for the ingest node
                    body = self._body(batch)
                self.state = LoadState.IDLE
                continue

            result = self.classifier.classify(response.status, response.body, label=self._label)
            self._transition(LoadState.SUCCEEDED if result.is_success else LoadState.FAILED)
            logger.debug(f"Stream load {self._label} finished: {result.payload or result.message}")
            return result, body_sent

    def _exchange_once(
        self, request: StreamLoadRequest, body: Iterator[bytes], deadline: float
    ) -> Tuple[RawResponse, bool]:
        """Run one HTTP exchange.

        Returns:
            The final response and whether the body was written
        """
        self._check_cancelled()
        exchange = self.transport.open(request, self._remaining(deadline, False))
        self._exchange = exchange
        streaming = False
        try:
            exchange.send_headers()
            self._transition(LoadState.REQUEST_SENT)

            self._transition(LoadState.AWAITING_CONTINUE)
            continue_timeout = min(self.load_options.continue_timeout, self._remaining(deadline, False))
            response = exchange.await_continue(continue_timeout)
            if response is not None:
                logger.debug(
                    f"Stream load {self._label}: HTTP {response.status} before body from {request.url}"
                )
                return response, False

            self._transition(LoadState.STREAMING)
            streaming = True
            try:
                for chunk in body:
                    self._check_cancelled()
                    exchange.set_timeout(self._remaining(deadline, True))
                    exchange.write(chunk)

                self._transition(LoadState.AWAITING_RESPONSE)
                exchange.set_timeout(self._remaining(deadline, True))
                return exchange.finish(), True
            except OSError as e:
                response = self._early_response(exchange, deadline, e)
                if response is None:
                    raise
                return response, True
        except (OSError, http.client.HTTPException) as e:
            self._transition(LoadState.FAILED)
            if self._cancelled.is_set():
                raise LoadCancelled(f"Stream load {self._label} was cancelled", label=self._label) from e
            if isinstance(e, TimeoutError):
                message = f"Stream load {self._label} timed out against {request.url}"
            else:
                message = f"Stream load {self._label} failed against {request.url}: {e}"
            logger.error(message)
            raise TransportError(message, label=self._label, indeterminate=streaming) from e
        except Exception:
            self._transition(LoadState.FAILED)
            raise
        finally:
            self._exchange = None
            exchange.close()

    def _early_response(self, exchange, deadline: float, error: OSError) -> Optional[RawResponse]:
        """Look for the store's verdict after the connection broke mid-body."""
        if self._cancelled.is_set() or isinstance(error, TimeoutError):
            return None
        timeout = min(self.load_options.continue_timeout, deadline - time.monotonic())
        if timeout <= 0:
            return None
        response = exchange.early_response(timeout)
        if response is not None:
            self._transition(LoadState.AWAITING_RESPONSE)
            logger.warning(
                f"Stream load {self._label}: {exchange.request.url} answered HTTP {response.status} "
                f"before the body was complete ({error})"
            )
        return response
