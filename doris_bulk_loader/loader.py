"""Pipeline facing bulk loader: buffering, flushing and parallel submission."""

import concurrent.futures
import logging
import threading
import time
from typing import Any, Dict, Iterator, List, Optional, Set

from .batch import Block, LoadBatch, iter_block_rows, split_delete_flag
from .client import StreamLoadClient
from .encoding import RowValues
from .errors import LoadCancelled, StoreRejection, TransportError
from .labels import LabelGenerator
from .options import AuthOptions, Destination, LoadOptions
from .response import LoadResult
from .transport import HTTPTransport

logger = logging.getLogger(__name__)


class LoadStats:
    """Step level counters over all batches of a loader."""

    def __init__(self):
        self.batches = 0
        self.rows_written = 0
        self.rows_loaded = 0
        self.rows_filtered = 0
        self.rows_unselected = 0
        self.load_bytes = 0
        self.results: List[LoadResult] = []
        self._lock = threading.Lock()

    def record(self, batch: LoadBatch, result: LoadResult):
        with self._lock:
            self.batches += 1
            self.rows_written += len(batch)
            self.rows_loaded += result.loaded_rows
            self.rows_filtered += result.filtered_rows
            self.rows_unselected += result.unselected_rows
            self.load_bytes += result.load_bytes
            self.results.append(result)

    def as_dict(self) -> Dict[str, int]:
        with self._lock:
            return {
                "batches": self.batches,
                "rows_written": self.rows_written,
                "rows_loaded": self.rows_loaded,
                "rows_filtered": self.rows_filtered,
                "rows_unselected": self.rows_unselected,
                "load_bytes": self.load_bytes,
            }


class _ClientGroup:
    """Clients of batches in flight that are cancelled together."""

    def __init__(self, parent: Optional["_ClientGroup"] = None):
        self.parent = parent
        self.cancelled = threading.Event()
        self._clients: Set[StreamLoadClient] = set()
        self._lock = threading.Lock()

    def add(self, client: StreamLoadClient):
        with self._lock:
            if self.cancelled.is_set():
                client.cancel()
            self._clients.add(client)
        if self.parent is not None:
            self.parent.add(client)

    def discard(self, client: StreamLoadClient):
        with self._lock:
            self._clients.discard(client)
        if self.parent is not None:
            self.parent.discard(client)

    def cancel(self):
        with self._lock:
            self.cancelled.set()
            clients = list(self._clients)
        for client in clients:
            client.cancel()


class DorisBulkLoader:
    """Loads rows produced by a pipeline into one Doris table.

    Rows are buffered into batches that are flushed once ``batch_size`` rows
    or about ``batch_bytes`` bytes are buffered, or once the buffer is older
    than ``flush_interval`` seconds. Every batch gets its own label and its
    own StreamLoadClient.

    Example:
        >>> destination = Destination("demo", "users", ["id", "name"])
        >>> with DorisBulkLoader(destination) as loader:
        ...     loader.write({"id": 1, "name": "Alice"})
        ...     loader.write({"id": 2}, delete=True)  # needs merge_on_write=True
    """

    def __init__(
        self,
        destination: Destination,
        auth_options: Optional[AuthOptions] = None,
        load_options: Optional[LoadOptions] = None,
        transport: Optional[HTTPTransport] = None,
        label_generator: Optional[LabelGenerator] = None,
    ):
        self.destination = destination
        self.auth_options = auth_options if auth_options else AuthOptions()
        self.load_options = load_options if load_options else LoadOptions()
        self.transport = transport if transport else HTTPTransport()
        self.label_generator = label_generator if label_generator else LabelGenerator()
        self.stats = LoadStats()

        self._batch: Optional[LoadBatch] = None
        self._batch_started = 0.0
        self._clients = _ClientGroup()

    def _new_batch(self) -> LoadBatch:
        return LoadBatch(
            self.destination,
            self.load_options.format_config,
            merge_on_write=self.load_options.merge_on_write,
        )

    def _should_flush(self) -> bool:
        batch = self._batch
        if batch is None:
            return False
        if len(batch) >= self.load_options.batch_size:
            return True
        if batch.estimated_bytes >= self.load_options.batch_bytes:
            return True
        interval = self.load_options.flush_interval
        return interval is not None and time.monotonic() - self._batch_started >= interval

    def write(self, row: RowValues, delete: bool = False) -> Optional[LoadResult]:
        """Buffer one row, flushing when a threshold is reached.

        Args:
            row: Mapping of column name to value, or values in column order
            delete: Delete the row instead of upserting it (merge-on-write only)

        Returns:
            LoadResult when this write triggered a flush, otherwise None
        """
        if self._batch is None:
            self._batch = self._new_batch()
            self._batch_started = time.monotonic()
        self._batch.add(row, delete)
        if self._should_flush():
            return self.flush()
        return None

    def write_block(self, block: Block, delete_column: Optional[str] = None) -> List[LoadResult]:
        """Buffer every row of a block.

        Args:
            block: list of dicts, pandas DataFrame, pyarrow Table/RecordBatch or
                iterable of RecordBatch
            delete_column: Name of a boolean column carrying the delete intent.
                It is removed from the rows before encoding

        Returns:
            Results of the batches flushed while writing
        """
        results = []
        for row in iter_block_rows(block):
            values, delete = split_delete_flag(row, delete_column)
            result = self.write(values, delete)
            if result is not None:
                results.append(result)
        return results

    def flush(self) -> Optional[LoadResult]:
        """Submit the buffered rows, if any."""
        batch, self._batch = self._batch, None
        if batch is None or len(batch) == 0:
            return None
        return self._load_batch(batch)

    def load_block(self, block: Block, delete_column: Optional[str] = None) -> List[LoadResult]:
        """Load a block in batches of ``batch_size`` rows submitted concurrently.

        At most ``num_parallel`` batches are in flight; the block is consumed
        lazily as batches complete. Rows already buffered by write() are not
        part of this call.

        When a batch fails, the batches of this call still in flight are
        cancelled and the first error is raised. Batches that completed are
        recorded in ``stats``.
        """
        num_parallel = self.load_options.num_parallel
        results: List[LoadResult] = []
        pending: Set[concurrent.futures.Future] = set()
        group = _ClientGroup(self._clients)

        with concurrent.futures.ThreadPoolExecutor(max_workers=num_parallel) as executor:
            try:
                for batch_idx, batch in enumerate(self._split(block, delete_column)):
                    if len(pending) >= num_parallel:
                        pending = self._collect(pending, results)
                    logger.debug(f"Submitting batch {batch_idx} with {len(batch)} rows")
                    pending.add(executor.submit(self._load_batch, batch, group))

                while pending:
                    pending = self._collect(pending, results)
            except BaseException:
                for future in pending:
                    future.cancel()
                group.cancel()
                raise

        logger.debug(
            f"Loaded {sum(r.loaded_rows for r in results)} rows into "
            f"{self.destination.database}.{self.destination.table} in {len(results)} batches"
        )
        return results

    @staticmethod
    def _collect(
        pending: Set[concurrent.futures.Future], results: List[LoadResult]
    ) -> Set[concurrent.futures.Future]:
        """Wait for at least one batch, keep every completed result, then raise
        the first failure if any."""
        done, pending = concurrent.futures.wait(
            pending, return_when=concurrent.futures.FIRST_COMPLETED
        )
        error = None
        for future in done:
            try:
                results.append(future.result())
            except BaseException as e:
                if error is None:
                    error = e
        if error is not None:
            raise error
        return pending

    def _split(self, block: Block, delete_column: Optional[str]) -> Iterator[LoadBatch]:
        batch = self._new_batch()
        for row in iter_block_rows(block):
            values, delete = split_delete_flag(row, delete_column)
            batch.add(values, delete)
            if len(batch) >= self.load_options.batch_size or batch.estimated_bytes >= self.load_options.batch_bytes:
                yield batch
                batch = self._new_batch()
        if len(batch):
            yield batch

    def _new_client(self, group: Optional[_ClientGroup] = None) -> StreamLoadClient:
        client = StreamLoadClient(
            self.auth_options,
            self.load_options,
            transport=self.transport,
            label_generator=self.label_generator,
        )
        (group or self._clients).add(client)
        return client

    def _load_batch(self, batch: LoadBatch, group: Optional[_ClientGroup] = None) -> LoadResult:
        """Submit one batch, retrying only where the policy allows it.

        Failures before any body byte was sent are retried up to
        ``max_retries`` times under the same label. Failures with an unknown
        outcome are retried only with ``retry_indeterminate``; if the store
        then reports the label as already finished, the earlier attempt is
        taken as the success.
        """
        group = group or self._clients
        client = self._new_client(group)
        attempt = 0
        try:
            while True:
                try:
                    result = client.load(batch)
                    break
                except LoadCancelled:
                    raise
                except TransportError as e:
                    if e.indeterminate and not self.load_options.retry_indeterminate:
                        logger.error(
                            f"Stream load {batch.label} outcome unknown, not retrying: {e}"
                        )
                        raise
                    if attempt >= self.load_options.max_retries:
                        logger.error(f"Stream load {batch.label} failed after {attempt + 1} attempts: {e}")
                        raise
                    attempt += 1
                    backoff = self.load_options.retry_backoff * (2 ** (attempt - 1))
                    logger.warning(
                        f"Stream load {batch.label} attempt {attempt} failed: {e}; retrying in {backoff:.1f}s"
                    )
                    time.sleep(backoff)
                except StoreRejection as e:
                    if attempt > 0 and e.result.already_loaded:
                        logger.info(
                            f"Stream load {batch.label} was committed by an earlier attempt"
                        )
                        result = e.result
                        break
                    raise
        finally:
            group.discard(client)

        self.stats.record(batch, result)
        return result

    def cancel(self):
        """Abort all loads in flight. Aborted batches are indeterminate."""
        self._clients.cancel()

    def close(self):
        """Flush the remaining rows."""
        self.flush()

    def __enter__(self) -> "DorisBulkLoader":
        return self

    def __exit__(self, exc_type: Any, exc: Any, tb: Any):
        if exc_type is None:
            self.close()
        else:
            self._batch = None
