"""
Convert Prometheus query results into InfluxDB batches.

Conversion is pure: label sets are copied tag by tag into fresh dicts and no
input is mutated, so the same result always converts to equal batches.

Shapes:
    Matrix -> one batch per series; series labels become batch tags, the
              external labels ride on each point.
    Vector -> one batch; series labels merged with the external labels,
              external labels win on collision.
    Scalar -> one batch, one point, external labels only.
    String -> one batch, one point, external labels only, millisecond precision.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Dict, List, Mapping

from promapi import Matrix, QueryResult, Scalar, String, UnsupportedResultError, Vector

__all__ = ["Batch", "DestPoint", "FIELD_KEY", "Precision", "UnsupportedResultError", "convert", "point_to_string"]

FIELD_KEY = "value"


class Precision(str, enum.Enum):
    NANOSECONDS = "ns"
    MILLISECONDS = "ms"


@dataclass(frozen=True)
class DestPoint:
    measurement: str
    tags: Dict[str, str]
    timestamp: int
    field_value: float | str
    precision: Precision = Precision.NANOSECONDS


@dataclass(frozen=True)
class Batch:
    database: str
    points: List[DestPoint]
    precision: Precision = Precision.NANOSECONDS
    tags: Dict[str, str] = field(default_factory=dict)

    def effective_tags(self, point: DestPoint) -> Dict[str, str]:
        """Tags a point is written with: batch tags applied over point tags."""
        tags = dict(point.tags)
        tags.update(self.tags)
        return tags


def to_timestamp(ts: float, precision: Precision) -> int:
    # Prometheus timestamps carry millisecond resolution.
    ms = int(round(ts * 1000))
    if precision is Precision.MILLISECONDS:
        return ms
    return ms * 1_000_000


def labels_to_tags(labels: Mapping[str, str]) -> Dict[str, str]:
    tags: Dict[str, str] = {}
    for k, v in labels.items():
        tags[str(k)] = str(v)
    return tags


def convert(name: str, result: QueryResult, database: str, external_labels: Mapping[str, str]) -> List[Batch]:
    ns = Precision.NANOSECONDS
    if isinstance(result, Matrix):
        batches = []
        for stream in result.series:
            points = [
                DestPoint(name, labels_to_tags(external_labels), to_timestamp(ts, ns), float(val), ns)
                for ts, val in stream.values
            ]
            batches.append(Batch(database, points, ns, labels_to_tags(stream.metric)))
        return batches
    if isinstance(result, Vector):
        points = []
        for sample in result.samples:
            tags = labels_to_tags(sample.metric)
            tags.update(labels_to_tags(external_labels))
            points.append(DestPoint(name, tags, to_timestamp(sample.timestamp, ns), float(sample.value), ns))
        return [Batch(database, points, ns)]
    if isinstance(result, Scalar):
        point = DestPoint(name, labels_to_tags(external_labels), to_timestamp(result.timestamp, ns),
                          float(result.value), ns)
        return [Batch(database, [point], ns)]
    if isinstance(result, String):
        ms = Precision.MILLISECONDS
        point = DestPoint(name, labels_to_tags(external_labels), to_timestamp(result.timestamp, ms),
                          str(result.value), ms)
        return [Batch(database, [point], ms)]
    raise UnsupportedResultError(f"unsupported query result type {type(result).__name__} for {name}")


def point_to_string(batch: Batch, p: DestPoint) -> str:
    """Convert a point to a human-readable string for logging."""
    tags = ", ".join(f"{k}={v}" for k, v in sorted(batch.effective_tags(p).items()))
    return f"Point(measurement={p.measurement}, tags=[{tags}], field={{'{FIELD_KEY}': {p.field_value!r}}}, time={p.timestamp}{p.precision.value})"
