"""Assembly of Stream Load HTTP requests."""

import logging
from typing import Dict, Mapping, Optional
from urllib.parse import urljoin

import requests
from requests.auth import HTTPBasicAuth
from requests.structures import CaseInsensitiveDict

from .constants import (
    COLUMNS_KEY,
    DORIS_DELETE_SIGN,
    EXPECT_DEFAULT,
    EXPECT_KEY,
    FIELD_DELIMITER_KEY,
    FORMAT_KEY,
    LABEL_KEY,
    LINE_DELIMITER_KEY,
    LOAD_URL_PATTERN,
    RESERVED_HEADERS,
    STRIP_OUTER_ARRAY_KEY,
)
from .errors import ConfigurationError
from .options import AuthOptions, Destination, FormatConfig

logger = logging.getLogger(__name__)

_CONTENT_TYPES = {
    "csv": "text/plain; charset=UTF-8",
    "json": "application/json; charset=UTF-8",
}


def escape_delimiter(delimiter: str) -> str:
    """Write a delimiter the way Stream Load headers expect it, e.g. ``\\n``."""
    escaped = []
    for ch in delimiter:
        if ch == "\n":
            escaped.append("\\n")
        elif ch == "\t":
            escaped.append("\\t")
        elif ch == "\r":
            escaped.append("\\r")
        elif ord(ch) < 0x20 or ord(ch) == 0x7F:
            escaped.append(f"\\x{ord(ch):02x}")
        else:
            escaped.append(ch)
    return "".join(escaped)


def load_url(host: str, port: int, database: str, table: str) -> str:
    return LOAD_URL_PATTERN.format(host=host, port=port, database=database, table=table)


class StreamLoadRequest:
    """Method, URL and headers of one Stream Load call. The body is supplied
    separately by the client."""

    def __init__(self, method: str, url: str, headers: Mapping[str, str], label: str):
        self.method = method
        self.url = url
        self.headers = CaseInsensitiveDict(headers)
        self.label = label

    def redirected(self, location: str) -> "StreamLoadRequest":
        """Same request against a redirect target. All headers are kept,
        including the label and the credentials."""
        return StreamLoadRequest(self.method, urljoin(self.url, location), self.headers, self.label)

    def __repr__(self) -> str:
        return f"StreamLoadRequest({self.method} {self.url}, label={self.label!r})"


class RequestBuilder:
    """Builds Stream Load requests for one Doris endpoint."""

    def __init__(
        self,
        auth_options: AuthOptions,
        extra_headers: Optional[Mapping[str, str]] = None,
    ):
        self.auth_options = auth_options
        self.extra_headers: Dict[str, str] = dict(extra_headers or {})

        clashing = sorted(k for k in self.extra_headers if k.lower() in RESERVED_HEADERS)
        if clashing:
            raise ConfigurationError(f"Headers {clashing} are managed by the loader and cannot be overridden")

    def build(
        self,
        destination: Destination,
        format_config: FormatConfig,
        label: str,
        merge_on_write: bool = False,
    ) -> StreamLoadRequest:
        """Build the request for one batch.

        Args:
            destination: Database, table and columns of the load
            format_config: Wire format of the body
            label: Label of the batch
            merge_on_write: Add the delete marker to the column list

        Returns:
            StreamLoadRequest ready for the transport
        """
        if not label:
            raise ConfigurationError("label cannot be empty")

        url = load_url(
            self.auth_options.host,
            self.auth_options.http_port,
            destination.database,
            destination.table,
        )

        columns = list(destination.columns)
        if merge_on_write:
            columns.append(DORIS_DELETE_SIGN)

        headers = dict(self.extra_headers)
        headers.update(
            {
                "Content-Type": _CONTENT_TYPES[format_config.format],
                EXPECT_KEY: EXPECT_DEFAULT,
                LABEL_KEY: label,
                FORMAT_KEY: format_config.format,
                COLUMNS_KEY: ",".join(columns),
                FIELD_DELIMITER_KEY: escape_delimiter(format_config.field_delimiter),
                LINE_DELIMITER_KEY: escape_delimiter(format_config.line_delimiter),
            }
        )
        if format_config.is_json:
            headers[STRIP_OUTER_ARRAY_KEY] = "true" if format_config.strip_outer_array else "false"

        # Let requests apply the basic auth header and normalize the URL
        try:
            prepared = requests.Request(
                "PUT",
                url,
                headers=headers,
                auth=HTTPBasicAuth(self.auth_options.user, self.auth_options.password),
            ).prepare()
        except (requests.exceptions.InvalidHeader, requests.exceptions.InvalidURL) as e:
            raise ConfigurationError(f"Invalid stream load request for {url}: {e}") from e
        prepared.headers.pop("Content-Length", None)
        prepared.headers["Transfer-Encoding"] = "chunked"

        logger.debug(f"Built stream load request {prepared.method} {prepared.url} label={label}")
        return StreamLoadRequest(prepared.method, prepared.url, prepared.headers, label)
