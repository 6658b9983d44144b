"""Doris Stream Load bulk loader"""

from .batch import Block, LoadBatch, block_to_arrow_table, iter_block_rows
from .client import LoadState, StreamLoadClient
from .encoding import Row, RowEncoder, format_value
from .errors import (
    ConfigurationError,
    DorisLoadError,
    EncodingError,
    LoadCancelled,
    StoreRejection,
    TransportError,
)
from .labels import LabelGenerator
from .loader import DorisBulkLoader, LoadStats
from .options import AuthOptions, Destination, FormatConfig, LoadOptions, effective_line_delimiter
from .request import RequestBuilder, StreamLoadRequest
from .response import LoadResult, LoadStatus, ResponseClassifier, fetch_error_log, raise_for_result
from .transport import HTTPTransport, RawResponse

__all__ = [
    "AuthOptions",
    "Block",
    "ConfigurationError",
    "Destination",
    "DorisBulkLoader",
    "DorisLoadError",
    "EncodingError",
    "FormatConfig",
    "HTTPTransport",
    "LabelGenerator",
    "LoadBatch",
    "LoadCancelled",
    "LoadOptions",
    "LoadResult",
    "LoadState",
    "LoadStats",
    "LoadStatus",
    "RawResponse",
    "RequestBuilder",
    "ResponseClassifier",
    "Row",
    "RowEncoder",
    "StoreRejection",
    "StreamLoadClient",
    "StreamLoadRequest",
    "TransportError",
    "block_to_arrow_table",
    "effective_line_delimiter",
    "fetch_error_log",
    "format_value",
    "iter_block_rows",
    "raise_for_result",
]
