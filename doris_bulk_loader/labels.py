"""Load label generation."""

import itertools
import re
import threading
import time
import uuid

from .constants import LABEL_MAX_LENGTH, LABEL_SUFFIX

_INVALID_LABEL_CHARS = re.compile(r"[^-_A-Za-z0-9:]")


class LabelGenerator:
    """Generates Stream Load labels.

    A label looks like ``<table>_<run>_<millis>_<counter>_DorisBulkLoad``.
    ``run`` is a short random token fixed per generator so labels from two
    pipeline runs never meet, and ``counter`` is incremented under a lock so
    concurrent batches for the same table never collide even when they share
    a millisecond.
    """

    def __init__(self, suffix: str = LABEL_SUFFIX):
        self.suffix = suffix
        self.run_id = uuid.uuid4().hex[:8]
        self._counter = itertools.count(1)
        self._lock = threading.Lock()

    def next(self, table_name: str) -> str:
        with self._lock:
            seq = next(self._counter)
        millis = int(time.time() * 1000)
        tail = f"_{self.run_id}_{millis}_{seq}_{self.suffix}"
        prefix = _INVALID_LABEL_CHARS.sub("_", table_name)
        return prefix[: max(0, LABEL_MAX_LENGTH - len(tail))] + tail


_default_generator = LabelGenerator()


def next_label(table_name: str) -> str:
    """Return a label from the process wide generator."""
    return _default_generator.next(table_name)
