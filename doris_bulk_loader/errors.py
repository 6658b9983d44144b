"""
Exceptions raised by the Doris bulk loader.

Configuration problems are caught before any request is built, encoding
problems abort the batch being streamed, transport problems carry whether
the store may already have accepted the batch, and store rejections carry the
parsed response so callers can report the store's text verbatim.
"""

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .response import LoadResult


class DorisLoadError(Exception):
    """Base error for Stream Load operations."""

    pass


class ConfigurationError(DorisLoadError, ValueError):
    """Missing or invalid destination, column list or format combination."""

    pass


class EncodingError(DorisLoadError):
    """A row value cannot be represented in the chosen wire format."""

    pass


class TransportError(DorisLoadError):
    """Connection failure, timeout or malformed response.

    ``indeterminate`` is True once any part of the body may have reached the
    store: the label's outcome is then unknown and resubmitting it needs an
    explicit decision by the caller.
    """

    def __init__(
        self,
        message: str,
        label: Optional[str] = None,
        indeterminate: bool = False,
    ):
        super().__init__(message)
        self.label = label
        self.indeterminate = indeterminate


class LoadCancelled(TransportError):
    """The load was cancelled while in flight."""

    def __init__(self, message: str, label: Optional[str] = None):
        super().__init__(message, label=label, indeterminate=True)


class StoreRejection(DorisLoadError):
    """The store completed the exchange but refused the load."""

    def __init__(self, message: str, result: "LoadResult"):
        super().__init__(message)
        self.result = result

    @property
    def label(self) -> Optional[str]:
        return self.result.label
