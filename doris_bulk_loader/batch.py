"""Load batches and conversion of pipeline blocks into rows."""

from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple, Union

import pandas as pd
import pyarrow as pa

from .encoding import Row, RowEncoder, RowValues
from .errors import ConfigurationError
from .options import Destination, FormatConfig

# All supported data types for write_block/load_block
Block = Union[List[dict], pd.DataFrame, pa.Table, pa.RecordBatch, Iterable[pa.RecordBatch]]


def block_to_arrow_table(block: Block) -> pa.Table:
    """Convert an in-memory block to a PyArrow Table.

    Args:
        block: list of dicts, pandas DataFrame, pyarrow Table or RecordBatch

    Returns:
        PyArrow Table representation of the data

    Raises:
        TypeError: If data type is not supported
    """
    if isinstance(block, list):
        if not block:
            raise ValueError("Cannot create table from empty list")
        # Assume list of dicts
        return pa.Table.from_pylist(block)
    if isinstance(block, pd.DataFrame):
        return pa.Table.from_pandas(block, preserve_index=False)
    if isinstance(block, pa.Table):
        return block
    if isinstance(block, pa.RecordBatch):
        return pa.Table.from_batches([block])
    raise TypeError(
        f"Unsupported data type {type(block)}. Supported types: list of dicts, pandas DataFrame, pyarrow Table, pyarrow RecordBatch, or iterable of RecordBatch."
    )


def iter_record_batches(block: Block) -> Iterator[pa.RecordBatch]:
    """Yield the record batches of a block without materializing iterables."""
    if isinstance(block, (list, pd.DataFrame, pa.Table, pa.RecordBatch)):
        yield from block_to_arrow_table(block).to_batches()
        return
    if isinstance(block, Iterable):
        # Assume iterable of RecordBatch
        for batch in block:
            if not isinstance(batch, pa.RecordBatch):
                raise TypeError(f"Expected pyarrow RecordBatch, got {type(batch)}")
            yield batch
        return
    block_to_arrow_table(block)


def iter_block_rows(block: Block) -> Iterator[Dict[str, Any]]:
    """Yield rows of a block as dicts, one record batch in memory at a time."""
    for batch in iter_record_batches(block):
        yield from batch.to_pylist()


class LoadBatch:
    """Rows of one load transaction.

    The label stays None until the batch is submitted; the client assigns it
    right before the first request and keeps it for the redirect and for
    retries of the same batch.
    """

    def __init__(
        self,
        destination: Destination,
        format_config: FormatConfig,
        merge_on_write: bool = False,
        label: Optional[str] = None,
    ):
        self.destination = destination
        self.format_config = format_config
        self.merge_on_write = merge_on_write
        self.label = label
        self.encoder = RowEncoder(destination.columns, merge_on_write)
        self.rows: List[Row] = []
        self.estimated_bytes = 0
        self.delete_count = 0

    @property
    def database(self) -> str:
        return self.destination.database

    @property
    def table(self) -> str:
        return self.destination.table

    @property
    def wire_columns(self) -> List[str]:
        return self.encoder.wire_columns

    def add(self, values: RowValues, delete: bool = False):
        """Append a row.

        Raises:
            ConfigurationError: delete intent on a table without merge-on-write
        """
        if delete and not self.merge_on_write:
            raise ConfigurationError(
                f"Delete row for {self.destination.table} requires merge_on_write=True"
            )
        self.rows.append(Row(values, delete))
        self.estimated_bytes += _estimate_size(values)
        if delete:
            self.delete_count += 1

    def encode(self) -> Iterator[bytes]:
        """Encode the rows in order. Each call recomputes the body from scratch."""
        return self.encoder.encode(self.rows, self.format_config)

    def __len__(self) -> int:
        return len(self.rows)

    def __iter__(self) -> Iterator[Row]:
        return iter(self.rows)

    def __repr__(self) -> str:
        return (
            f"LoadBatch({self.destination.database}.{self.destination.table}, "
            f"rows={len(self.rows)}, label={self.label!r})"
        )


def _estimate_size(values: RowValues) -> int:
    items: Iterable[Any] = values.values() if isinstance(values, Mapping) else values
    size = 0
    for value in items:
        size += len(value) if isinstance(value, (str, bytes)) else 8
        size += 1
    return size


def split_delete_flag(
    row: Dict[str, Any], delete_column: Optional[str]
) -> Tuple[Dict[str, Any], bool]:
    """Pop the delete intent column out of a block row."""
    if delete_column is None:
        return row, False
    if delete_column not in row:
        raise ConfigurationError(f"Delete column '{delete_column}' not found in block")
    flag = row.pop(delete_column)
    return row, not pd.isna(flag) and bool(flag)
