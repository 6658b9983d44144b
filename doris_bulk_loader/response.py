"""Classification of Stream Load responses."""

import json
import logging
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Union

import requests
from requests.auth import HTTPBasicAuth

from .constants import (
    EXISTING_JOB_FINISHED,
    STATUS_FAIL,
    STATUS_LABEL_ALREADY_EXISTS,
    STATUS_PUBLISH_TIMEOUT,
    STATUS_SUCCESS,
)
from .errors import StoreRejection, TransportError
from .options import AuthOptions

logger = logging.getLogger(__name__)


class LoadStatus(str, Enum):
    SUCCESS = "Success"
    PUBLISH_TIMEOUT = "PublishTimeout"
    LABEL_ALREADY_EXISTS = "LabelAlreadyExists"
    FAIL = "Fail"
    TRANSPORT_ERROR = "TransportError"


_STATUS_MAP = {
    STATUS_SUCCESS.lower(): LoadStatus.SUCCESS,
    STATUS_PUBLISH_TIMEOUT.lower(): LoadStatus.PUBLISH_TIMEOUT,
    STATUS_LABEL_ALREADY_EXISTS.lower(): LoadStatus.LABEL_ALREADY_EXISTS,
    STATUS_FAIL.lower(): LoadStatus.FAIL,
    # FE level errors (authentication, unknown table) use this spelling
    "failed": LoadStatus.FAIL,
}


class LoadResult:
    """Outcome of one Stream Load submission."""

    def __init__(
        self,
        status: LoadStatus,
        label: Optional[str] = None,
        http_status: Optional[int] = None,
        message: str = "",
        loaded_rows: int = 0,
        filtered_rows: int = 0,
        total_rows: int = 0,
        unselected_rows: int = 0,
        load_bytes: int = 0,
        load_time_ms: int = 0,
        txn_id: Optional[int] = None,
        error_url: Optional[str] = None,
        existing_job_status: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
    ):
        self.status = status
        self.label = label
        self.http_status = http_status
        self.message = message
        self.loaded_rows = loaded_rows
        self.filtered_rows = filtered_rows
        self.total_rows = total_rows
        self.unselected_rows = unselected_rows
        self.load_bytes = load_bytes
        self.load_time_ms = load_time_ms
        self.txn_id = txn_id
        self.error_url = error_url
        self.existing_job_status = existing_job_status
        self.payload = payload or {}

    @property
    def is_success(self) -> bool:
        """The store committed the data. A publish timeout still means the
        transaction is committed and becomes visible later."""
        return self.status in (LoadStatus.SUCCESS, LoadStatus.PUBLISH_TIMEOUT)

    @property
    def partial(self) -> bool:
        """Committed, but the store filtered some rows out."""
        return self.is_success and self.filtered_rows > 0

    @property
    def already_loaded(self) -> bool:
        """The label was taken by an earlier attempt that finished."""
        return (
            self.status == LoadStatus.LABEL_ALREADY_EXISTS
            and (self.existing_job_status or "").upper() == EXISTING_JOB_FINISHED
        )

    def __repr__(self) -> str:
        return (
            f"LoadResult(status={self.status.value}, label={self.label!r}, "
            f"loaded={self.loaded_rows}, filtered={self.filtered_rows})"
        )


def _lookup(payload: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in payload:
            return payload[key]
    return None


def _to_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


class ResponseClassifier:
    """Maps the HTTP status and JSON body of a Stream Load response to a LoadResult."""

    def classify(
        self,
        http_status: Optional[int],
        body: Union[bytes, str, Mapping[str, Any], None],
        label: Optional[str] = None,
    ) -> LoadResult:
        if isinstance(body, (bytes, bytearray)):
            body = body.decode("utf-8", errors="replace")

        if isinstance(body, str):
            try:
                payload = json.loads(body)
            except ValueError:
                return LoadResult(
                    LoadStatus.TRANSPORT_ERROR,
                    label=label,
                    http_status=http_status,
                    message=f"HTTP {http_status}: response is not JSON: {body[:512]!r}",
                )
        else:
            payload = body

        if not isinstance(payload, Mapping):
            return LoadResult(
                LoadStatus.TRANSPORT_ERROR,
                label=label,
                http_status=http_status,
                message=f"HTTP {http_status}: unexpected response body {payload!r}",
            )

        raw_status = _lookup(payload, "Status", "status")
        message = str(_lookup(payload, "Message", "msg", "message") or "")
        if raw_status is None:
            return LoadResult(
                LoadStatus.TRANSPORT_ERROR,
                label=label,
                http_status=http_status,
                message=f"HTTP {http_status}: response has no status field: {payload!r}",
                payload=dict(payload),
            )

        status = _STATUS_MAP.get(str(raw_status).strip().lower(), LoadStatus.FAIL)
        if status == LoadStatus.SUCCESS and http_status is not None and not 200 <= http_status < 300:
            status = LoadStatus.FAIL
            message = message or f"HTTP {http_status}"

        return LoadResult(
            status,
            label=_lookup(payload, "Label") or label,
            http_status=http_status,
            message=message,
            loaded_rows=_to_int(payload.get("NumberLoadedRows")),
            filtered_rows=_to_int(payload.get("NumberFilteredRows")),
            total_rows=_to_int(payload.get("NumberTotalRows")),
            unselected_rows=_to_int(payload.get("NumberUnselectedRows")),
            load_bytes=_to_int(payload.get("LoadBytes")),
            load_time_ms=_to_int(payload.get("LoadTimeMs")),
            txn_id=payload.get("TxnId"),
            error_url=_lookup(payload, "ErrorURL") or None,
            existing_job_status=payload.get("ExistingJobStatus"),
            payload=dict(payload),
        )


def raise_for_result(result: LoadResult, indeterminate: bool = True) -> LoadResult:
    """Return accepted results, raise the matching error for everything else.

    Args:
        result: Classified response
        indeterminate: Whether the body reached the store, so an unreadable
            response leaves the outcome unknown

    Raises:
        StoreRejection: the store refused the load (label collision, data errors)
        TransportError: the response could not be understood
    """
    if result.is_success:
        if result.status == LoadStatus.PUBLISH_TIMEOUT:
            logger.warning(
                f"Stream load {result.label} committed but publish timed out, data becomes visible later"
            )
        if result.partial:
            logger.warning(
                f"Stream load {result.label} filtered {result.filtered_rows} of "
                f"{result.total_rows} rows, error log: {result.error_url}"
            )
        return result

    if result.status == LoadStatus.TRANSPORT_ERROR:
        raise TransportError(result.message, label=result.label, indeterminate=indeterminate)

    text = f"Stream load {result.label} rejected ({result.status.value}): {result.message}"
    if result.error_url:
        text += f" (error log: {result.error_url})"
    logger.error(text)
    raise StoreRejection(text, result)


def fetch_error_log(error_url: str, auth_options: Optional[AuthOptions] = None, timeout: float = 30.0) -> str:
    """Download the store's report of rows filtered out of a load."""
    auth = HTTPBasicAuth(auth_options.user, auth_options.password) if auth_options else None
    try:
        response = requests.get(error_url, auth=auth, timeout=timeout)
        response.raise_for_status()
    except requests.exceptions.RequestException as e:
        raise TransportError(f"Failed to fetch error log {error_url}: {e}") from e
    return response.text
