import logging
import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from promapi import Matrix, SampleStream

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


class FakeSource:
    """Stand-in for PrometheusAPI that records every range query.

    `responses` is consumed in order; an Exception instance is raised, anything
    else is returned as the query result. Once exhausted, `default` is used.
    """

    def __init__(self, metrics=None, responses=None, default=None, flags=None):
        self.metrics = list(metrics or [])
        self.responses = list(responses or [])
        self.default = default if default is not None else Matrix([])
        self._flags = flags or {}
        self.calls = []
        self._lock = threading.Lock()

    def label_values(self, label="__name__"):
        return list(self.metrics)

    def flags(self):
        return dict(self._flags)

    def query_range(self, query, start, end, step, timeout=None):
        with self._lock:
            self.calls.append((query, start, end, step, timeout))
            item = self.responses.pop(0) if self.responses else self.default
        if isinstance(item, Exception):
            raise item
        return item, []


def hourly_matrix(labels=None, count=60, value=0.5, start=T0):
    values = [((start + timedelta(minutes=i)).timestamp(), value) for i in range(count)]
    return Matrix([SampleStream(dict(labels or {"host": "a"}), values)])


@pytest.fixture
def write_api():
    return MagicMock()


@pytest.fixture
def test_logger():
    return logging.getLogger("tests.transfer")
