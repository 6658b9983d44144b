"""Serialization of rows into Stream Load bodies."""

import datetime
import json
import math
from decimal import Decimal
from typing import Any, Iterable, Iterator, List, Mapping, NamedTuple, Optional, Sequence, Union

import pandas as pd

from .constants import (
    DELETE_SIGN_FALSE,
    DELETE_SIGN_TRUE,
    DORIS_DELETE_SIGN,
    JSON_ARRAY_END,
    JSON_ARRAY_START,
)
from .errors import ConfigurationError, EncodingError
from .options import FormatConfig

RowValues = Union[Mapping[str, Any], Sequence[Any]]


class Row(NamedTuple):
    """Field values of one row plus its delete intent."""

    values: RowValues
    delete: bool = False


def format_value(value: Any) -> Optional[str]:
    """Render a field value as the text the store parses, None for null."""
    # numpy scalars and arrays coming out of pandas
    if type(value).__module__ == "numpy" and hasattr(value, "tolist"):
        value = value.tolist()

    if isinstance(value, (list, tuple, dict)):
        try:
            return json.dumps(value, ensure_ascii=False, separators=(",", ":"), default=_json_default)
        except (TypeError, ValueError) as e:
            raise EncodingError(f"Cannot encode nested value {value!r}: {e}") from e

    if pd.isna(value):
        return None

    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, Decimal)):
        return str(value)
    if isinstance(value, float):
        if math.isinf(value):
            raise EncodingError(f"Cannot encode non-finite float {value!r}")
        return repr(value)
    if isinstance(value, datetime.datetime):
        return value.isoformat(sep=" ")
    if isinstance(value, (datetime.date, datetime.time)):
        return value.isoformat()
    if isinstance(value, (bytes, bytearray)):
        try:
            return bytes(value).decode("utf-8")
        except UnicodeDecodeError as e:
            raise EncodingError(f"Binary value is not valid UTF-8: {e}") from e

    raise EncodingError(f"Cannot encode value of type {type(value).__name__}: {value!r}")


def _json_default(value: Any) -> Any:
    text = format_value(value)
    if text is None:
        return None
    return text


class RowEncoder:
    """Encodes rows for one destination column list.

    In merge-on-write mode every encoded row gets the delete marker column
    appended after the regular columns, truthy for delete rows and falsy
    otherwise. Outside merge-on-write a delete row cannot be expressed and is
    rejected.
    """

    def __init__(self, columns: Sequence[str], merge_on_write: bool = False):
        if not columns:
            raise ConfigurationError("columns cannot be empty")
        self.columns: List[str] = list(columns)
        self.merge_on_write = merge_on_write

    @property
    def wire_columns(self) -> List[str]:
        """Columns in the order fields are written."""
        if self.merge_on_write:
            return self.columns + [DORIS_DELETE_SIGN]
        return list(self.columns)

    def _field_texts(self, row: Row) -> List[Optional[str]]:
        values = row.values
        if isinstance(values, Mapping):
            texts = [format_value(values.get(col)) for col in self.columns]
        else:
            if len(values) != len(self.columns):
                raise EncodingError(
                    f"Row has {len(values)} fields but {len(self.columns)} columns are configured"
                )
            texts = [format_value(v) for v in values]

        if self.merge_on_write:
            texts.append(DELETE_SIGN_TRUE if row.delete else DELETE_SIGN_FALSE)
        elif row.delete:
            raise ConfigurationError(
                "Delete rows require a merge-on-write destination (merge_on_write=True)"
            )
        return texts

    def encode_row(self, row: Union[Row, RowValues], format_config: FormatConfig) -> bytes:
        """Encode a single row without any row separator."""
        if not isinstance(row, Row):
            row = Row(row)
        texts = self._field_texts(row)

        if format_config.is_json:
            obj = dict(zip(self.wire_columns, texts))
            return json.dumps(obj, ensure_ascii=False, separators=(",", ":")).encode("utf-8")

        fields = [format_config.null_value if t is None else t for t in texts]
        return format_config.field_delimiter.join(fields).encode("utf-8")

    def encode(
        self, rows: Iterable[Union[Row, RowValues]], format_config: FormatConfig
    ) -> Iterator[bytes]:
        """Lazily encode rows into body fragments, one fragment per row.

        Rows are separated by the line delimiter with no trailing delimiter.
        JSON bodies are wrapped in an array unless strip_outer_array is set.
        """
        separator = format_config.line_delimiter.encode("utf-8")
        wrap = format_config.is_json and not format_config.strip_outer_array

        if wrap:
            yield JSON_ARRAY_START.encode("utf-8")
        first = True
        for row in rows:
            piece = self.encode_row(row, format_config)
            if first:
                first = False
                yield piece
            else:
                yield separator + piece
        if wrap:
            yield JSON_ARRAY_END.encode("utf-8")


def chunked(fragments: Iterable[bytes], chunk_size: int) -> Iterator[bytes]:
    """Coalesce small fragments into chunks of about ``chunk_size`` bytes."""
    buffer = bytearray()
    for fragment in fragments:
        buffer += fragment
        if len(buffer) >= chunk_size:
            yield bytes(buffer)
            buffer.clear()
    if buffer:
        yield bytes(buffer)
