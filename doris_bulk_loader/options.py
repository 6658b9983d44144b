"""Connection, destination and load options."""

import inspect
import os
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .constants import (
    CSV,
    DORIS_DELETE_SIGN,
    FIELD_DELIMITER_DEFAULT,
    JSON,
    LINE_DELIMITER_DEFAULT,
    LINE_DELIMITER_JSON,
    NULL_VALUE,
    STRIP_OUTER_ARRAY_DEFAULT,
    SUPPORTED_FORMATS,
)
from .errors import ConfigurationError


def _to_bool(name: str, value: Any) -> bool:
    """Interpret booleans coming from string based configuration."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "1", "yes", "y"):
            return True
        if lowered in ("false", "0", "no", "n"):
            return False
    raise ConfigurationError(f"Option '{name}' expects a boolean, got {value!r}")


def effective_line_delimiter(format: str, line_delimiter: Optional[str] = None) -> str:
    """Return the line delimiter actually used for a format.

    JSON rows are elements of one array and are always separated by ``,``.
    CSV uses the configured delimiter, or ``\\n`` when none was configured.
    """
    if format == JSON:
        return LINE_DELIMITER_JSON
    return line_delimiter or LINE_DELIMITER_DEFAULT


class AuthOptions:
    """Options for logging into the Doris HTTP endpoint."""

    def __init__(
        self,
        host: str = "localhost",
        http_port: int = 8030,
        user: str = "root",
        password: str = "",
    ):
        self.host = host
        self.http_port = int(http_port)
        self.user = user
        self.password = password

        if not self.host:
            raise ConfigurationError("host cannot be empty")
        if self.http_port <= 0:
            raise ConfigurationError("http_port must be positive")

    @classmethod
    def from_env(cls, prefix: str = "DORIS_") -> "AuthOptions":
        """Build options from ``DORIS_HOST``, ``DORIS_HTTP_PORT``, ``DORIS_USER``
        and ``DORIS_PASSWORD`` (or the same names under another prefix)."""
        return cls(
            host=os.getenv(f"{prefix}HOST", "localhost"),
            http_port=int(os.getenv(f"{prefix}HTTP_PORT", "8030")),
            user=os.getenv(f"{prefix}USER", "root"),
            password=os.getenv(f"{prefix}PASSWORD", ""),
        )

    def __repr__(self) -> str:
        return f"AuthOptions(host={self.host!r}, http_port={self.http_port}, user={self.user!r})"


class Destination:
    """Target table of a load and the columns rows are mapped onto."""

    def __init__(self, database: str, table: str, columns: Sequence[str]):
        self.database = database
        self.table = table
        self.columns: List[str] = list(columns)

        self._validate()

    def _validate(self):
        if not self.database:
            raise ConfigurationError("database cannot be empty")
        if not self.table:
            raise ConfigurationError("table cannot be empty")
        if not self.columns:
            raise ConfigurationError("columns cannot be empty")
        if len(set(self.columns)) != len(self.columns):
            raise ConfigurationError(f"Duplicate column names in {self.columns}")
        if DORIS_DELETE_SIGN in self.columns:
            raise ConfigurationError(
                f"'{DORIS_DELETE_SIGN}' is reserved and added automatically in merge-on-write mode"
            )

    def __repr__(self) -> str:
        return f"Destination({self.database}.{self.table}, columns={self.columns})"


class FormatConfig:
    """Wire format of a Stream Load body."""

    def __init__(
        self,
        format: str = CSV,
        field_delimiter: str = FIELD_DELIMITER_DEFAULT,
        line_delimiter: Optional[str] = None,
        strip_outer_array: bool = STRIP_OUTER_ARRAY_DEFAULT,
        null_value: str = NULL_VALUE,
    ):
        """Format config.

        Args:
            format: 'csv' or 'json'
            field_delimiter: Separator between CSV fields (default ',')
            line_delimiter: Separator between CSV rows. Ignored for JSON, where
                rows are always separated by ','
            strip_outer_array: JSON only. When False the rows are wrapped in a
                top level array
            null_value: Sentinel written for null CSV fields
        """
        self.format = (format or "").lower()
        self.field_delimiter = field_delimiter
        self.line_delimiter = effective_line_delimiter(self.format, line_delimiter)
        self.strip_outer_array = strip_outer_array
        self.null_value = null_value

        self._validate()

    def _validate(self):
        if self.format not in SUPPORTED_FORMATS:
            raise ConfigurationError(
                f"Unsupported format '{self.format}'. Supported formats: {list(SUPPORTED_FORMATS)}"
            )
        if not self.field_delimiter:
            raise ConfigurationError("field_delimiter cannot be empty")
        if self.format == CSV and self.field_delimiter == self.line_delimiter:
            raise ConfigurationError(
                f"field_delimiter and line_delimiter must differ, both are {self.field_delimiter!r}"
            )

    @property
    def is_json(self) -> bool:
        return self.format == JSON

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, FormatConfig):
            return NotImplemented
        return vars(self) == vars(other)

    def __repr__(self) -> str:
        return (
            f"FormatConfig(format={self.format!r}, field_delimiter={self.field_delimiter!r}, "
            f"line_delimiter={self.line_delimiter!r}, strip_outer_array={self.strip_outer_array})"
        )


class LoadOptions:
    """Options for data loading."""

    def __init__(
        self,
        format: str = CSV,
        field_delimiter: Optional[str] = None,
        line_delimiter: Optional[str] = None,
        strip_outer_array: Any = STRIP_OUTER_ARRAY_DEFAULT,
        merge_on_write: Any = False,
        batch_size: int = 10000,
        batch_bytes: int = 64 * 1024 * 1024,
        flush_interval: Optional[float] = None,
        num_parallel: int = 8,
        timeout: float = 3600.0,
        continue_timeout: float = 3.0,
        chunk_size: int = 64 * 1024,
        max_retries: int = 3,
        retry_backoff: float = 0.5,
        retry_indeterminate: Any = False,
        headers: Optional[Mapping[str, str]] = None,
    ):
        """Load options.

        Args:
            format: Format for stream loading ('csv' or 'json')
            field_delimiter: CSV field separator (default ',')
            line_delimiter: CSV row separator (default '\\n'; always ',' for JSON)
            strip_outer_array: JSON only, see FormatConfig
            merge_on_write: Destination is a merge-on-write unique key table;
                every row then carries the delete marker column
            batch_size: Flush the buffer after this many rows
            batch_bytes: Flush the buffer once the buffered rows reach roughly this size
            flush_interval: Flush the buffer when older than this many seconds
            num_parallel: Maximum concurrent batches in load_block
            timeout: Deadline in seconds for one batch, covering the continue
                wait, streaming and the wait for the final response
            continue_timeout: Seconds to wait for '100 Continue' before streaming anyway
            chunk_size: Size of the body chunks written to the socket
            max_retries: Retries for failures that happened before any body
                byte was sent
            retry_backoff: Seconds to wait before the first retry, doubled per retry
            retry_indeterminate: Also resubmit the same label after a failure
                whose outcome is unknown (operator confirmation)
            headers: Extra Stream Load headers, e.g. {'max_filter_ratio': '0.1'}
        """
        self.format_config = FormatConfig(
            format=format,
            field_delimiter=field_delimiter or FIELD_DELIMITER_DEFAULT,
            line_delimiter=line_delimiter,
            strip_outer_array=_to_bool("strip_outer_array", strip_outer_array),
        )
        self.merge_on_write = _to_bool("merge_on_write", merge_on_write)
        self.batch_size = int(batch_size)
        self.batch_bytes = int(batch_bytes)
        self.flush_interval = float(flush_interval) if flush_interval is not None else None
        self.num_parallel = int(num_parallel)
        self.timeout = float(timeout)
        self.continue_timeout = float(continue_timeout)
        self.chunk_size = int(chunk_size)
        self.max_retries = int(max_retries)
        self.retry_backoff = float(retry_backoff)
        self.retry_indeterminate = _to_bool("retry_indeterminate", retry_indeterminate)
        self.headers: Dict[str, str] = {str(k): str(v) for k, v in (headers or {}).items()}

        self._validate()

    def _validate(self):
        if self.batch_size <= 0:
            raise ConfigurationError("batch_size must be positive")
        if self.batch_bytes <= 0:
            raise ConfigurationError("batch_bytes must be positive")
        if self.flush_interval is not None and self.flush_interval <= 0:
            raise ConfigurationError("flush_interval must be positive")
        if self.num_parallel <= 0:
            raise ConfigurationError("num_parallel must be positive")
        if self.timeout <= 0:
            raise ConfigurationError("timeout must be positive")
        if self.continue_timeout < 0:
            raise ConfigurationError("continue_timeout cannot be negative")
        if self.chunk_size <= 0:
            raise ConfigurationError("chunk_size must be positive")
        if self.max_retries < 0:
            raise ConfigurationError("max_retries cannot be negative")
        if self.retry_backoff < 0:
            raise ConfigurationError("retry_backoff cannot be negative")

    @property
    def format(self) -> str:
        return self.format_config.format

    @classmethod
    def from_dict(cls, config: Mapping[str, Any]) -> "LoadOptions":
        """Build options from a flat mapping such as a parsed config file."""
        known = set(inspect.signature(cls.__init__).parameters) - {"self"}
        unknown = sorted(set(config) - known)
        if unknown:
            raise ConfigurationError(f"Unknown load options: {unknown}")
        return cls(**dict(config))
