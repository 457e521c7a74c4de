"""
Minimal read-only client for the Prometheus HTTP API (v1).

Only the three calls the migration needs are implemented:
    label_values()  -> GET /api/v1/label/<name>/values
    query_range()   -> GET /api/v1/query_range
    flags()         -> GET /api/v1/status/flags

Query results are decoded into one of four shapes (Matrix, Vector, Scalar,
String) mirroring Prometheus' `resultType`.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Tuple, Union

import requests

logger = logging.getLogger(__name__)

SamplePair = Tuple[float, float]


class PrometheusAPIError(Exception):
    """The server answered with `"status": "error"` or an unreadable body."""

    def __init__(self, error_type: str, message: str):
        super().__init__(f"{error_type}: {message}")
        self.error_type = error_type
        self.message = message


class UnsupportedResultError(TypeError):
    """A query returned something that is not one of the four known shapes."""


@dataclass(frozen=True)
class SampleStream:
    metric: Dict[str, str]
    values: List[SamplePair] = field(default_factory=list)


@dataclass(frozen=True)
class Sample:
    metric: Dict[str, str]
    timestamp: float
    value: float


@dataclass(frozen=True)
class Matrix:
    series: List[SampleStream] = field(default_factory=list)


@dataclass(frozen=True)
class Vector:
    samples: List[Sample] = field(default_factory=list)


@dataclass(frozen=True)
class Scalar:
    timestamp: float
    value: float


@dataclass(frozen=True)
class String:
    timestamp: float
    value: str


QueryResult = Union[Matrix, Vector, Scalar, String]


def _pair(raw) -> SamplePair:
    ts, val = raw
    return float(ts), float(val)


def parse_result(data: dict) -> QueryResult:
    """Decode the `data` member of a query response."""
    kind = data.get("resultType")
    result = data.get("result")
    if kind == "matrix":
        return Matrix([
            SampleStream(dict(s.get("metric") or {}), [_pair(v) for v in s.get("values") or []])
            for s in result or []
        ])
    if kind == "vector":
        samples = []
        for s in result or []:
            ts, val = _pair(s["value"])
            samples.append(Sample(dict(s.get("metric") or {}), ts, val))
        return Vector(samples)
    if kind == "scalar":
        ts, val = _pair(result)
        return Scalar(ts, val)
    if kind == "string":
        ts, val = result
        return String(float(ts), str(val))
    raise UnsupportedResultError(f"unknown resultType {kind!r}")


def format_time(t: datetime | float) -> str:
    if isinstance(t, datetime):
        return f"{t.timestamp():.3f}"
    return f"{float(t):.3f}"


class PrometheusAPI:
    def __init__(self, url: str, username: str | None = None, password: str | None = None,
                 verify_ssl: bool = True, session: requests.Session | None = None):
        self.url = url.rstrip("/")
        self.session = session or requests.Session()
        if username:
            self.session.auth = (username, password or "")
        self.verify_ssl = verify_ssl

    def _get(self, path: str, params: dict | None = None, timeout: float | None = None):
        resp = self.session.get(f"{self.url}{path}", params=params, timeout=timeout, verify=self.verify_ssl)
        try:
            body = resp.json()
        except ValueError:
            # proxies and wrong URLs answer with HTML
            resp.raise_for_status()
            raise PrometheusAPIError("bad_response", f"non-JSON body from {path}")
        if body.get("status") == "error":
            raise PrometheusAPIError(body.get("errorType", "unknown"), body.get("error", ""))
        resp.raise_for_status()
        return body.get("data"), body.get("warnings") or []

    def label_values(self, label: str = "__name__") -> List[str]:
        data, warnings = self._get(f"/api/v1/label/{label}/values")
        for w in warnings:
            logger.info("label values warning: %s", w)
        return list(data or [])

    def query_range(self, query: str, start: datetime | float, end: datetime | float,
                    step: timedelta, timeout: timedelta | None = None) -> Tuple[QueryResult, List[str]]:
        params = {
            "query": query,
            "start": format_time(start),
            "end": format_time(end),
            "step": f"{step.total_seconds():g}",
        }
        http_timeout = None
        if timeout is not None:
            http_timeout = timeout.total_seconds()
            params["timeout"] = f"{http_timeout:g}s"
        logger.debug("query_range %s", params)
        data, warnings = self._get("/api/v1/query_range", params=params, timeout=http_timeout)
        return parse_result(data or {}), list(warnings)

    def flags(self) -> Dict[str, str]:
        data, _ = self._get("/api/v1/status/flags")
        return {str(k): str(v) for k, v in (data or {}).items()}

    def close(self):
        self.session.close()
