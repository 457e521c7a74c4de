"""
Unit tests for the Prometheus -> InfluxDB point converter.
"""

import pytest

from convert import Batch, DestPoint, Precision, UnsupportedResultError, convert, point_to_string, to_timestamp
from promapi import Matrix, Sample, SampleStream, Scalar, String, Vector

EXTERNAL = {"monitor": "codelab-monitor"}
TS = 1704067200.0
TS_NS = 1704067200 * 10**9


class TestMatrix:
    def test_one_batch_per_series(self):
        result = Matrix([
            SampleStream({"host": "a"}, [(TS, 0.5), (TS + 60, 1.0)]),
            SampleStream({"host": "b"}, [(TS, 2.0)]),
        ])
        batches = convert("cpu_usage", result, "prometheus", EXTERNAL)

        assert len(batches) == 2
        assert batches[0].tags == {"host": "a"}
        assert batches[0].database == "prometheus"
        assert batches[0].precision is Precision.NANOSECONDS
        assert [p.timestamp for p in batches[0].points] == [TS_NS, TS_NS + 60 * 10**9]
        assert [p.field_value for p in batches[0].points] == [0.5, 1.0]
        assert all(p.tags == EXTERNAL for p in batches[0].points)
        assert len(batches[1].points) == 1

    def test_external_labels_stay_on_points(self):
        batches = convert("up", Matrix([SampleStream({"job": "node"}, [(TS, 1.0)])]), "db", EXTERNAL)
        point = batches[0].points[0]
        assert "monitor" not in batches[0].tags
        assert batches[0].effective_tags(point) == {"job": "node", "monitor": "codelab-monitor"}

    def test_values_widened_to_float(self):
        batches = convert("up", Matrix([SampleStream({}, [(TS, 1)])]), "db", EXTERNAL)
        assert isinstance(batches[0].points[0].field_value, float)

    def test_empty_matrix(self):
        assert convert("up", Matrix([]), "db", EXTERNAL) == []


class TestVector:
    def test_single_batch_with_merged_tags(self):
        result = Vector([Sample({"host": "a"}, TS, 1.5), Sample({"host": "b"}, TS, 2.5)])
        batches = convert("load", result, "db", EXTERNAL)

        assert len(batches) == 1
        assert batches[0].tags == {}
        assert [p.tags for p in batches[0].points] == [
            {"host": "a", "monitor": "codelab-monitor"},
            {"host": "b", "monitor": "codelab-monitor"},
        ]
        assert batches[0].points[0].timestamp == TS_NS

    def test_external_label_wins_on_collision(self):
        result = Vector([Sample({"monitor": "from-source", "host": "a"}, TS, 1.0)])
        point = convert("load", result, "db", EXTERNAL)[0].points[0]
        assert point.tags["monitor"] == "codelab-monitor"


class TestScalarAndString:
    def test_scalar(self):
        batches = convert("answer", Scalar(TS, 42), "db", EXTERNAL)
        assert len(batches) == 1
        point = batches[0].points[0]
        assert point.tags == EXTERNAL
        assert point.field_value == 42.0
        assert point.precision is Precision.NANOSECONDS
        # written at the sample time, no shift
        assert point.timestamp == TS_NS

    def test_string(self):
        batches = convert("build", String(TS + 0.123, "v1.2"), "db", EXTERNAL)
        point = batches[0].points[0]
        assert batches[0].precision is Precision.MILLISECONDS
        assert point.precision is Precision.MILLISECONDS
        assert point.timestamp == 1704067200123
        assert point.field_value == "v1.2"
        assert point.tags == EXTERNAL


def test_unknown_shape_rejected():
    with pytest.raises(UnsupportedResultError, match="cpu_usage"):
        convert("cpu_usage", {"resultType": "matrix"}, "db", EXTERNAL)


def test_conversion_is_repeatable_and_does_not_mutate_input():
    labels = {"host": "a", "monitor": "x"}
    result = Vector([Sample(labels, TS, 1.0)])
    first = convert("m", result, "db", EXTERNAL)
    second = convert("m", result, "db", EXTERNAL)
    assert first == second
    assert labels == {"host": "a", "monitor": "x"}


def test_every_point_carries_monitor_label():
    results = [
        Matrix([SampleStream({"host": "a"}, [(TS, 1.0), (TS + 1, 2.0)])]),
        Vector([Sample({"host": "a"}, TS, 1.0)]),
        Scalar(TS, 1.0),
        String(TS, "x"),
    ]
    for result in results:
        for batch in convert("m", result, "db", EXTERNAL):
            for point in batch.points:
                assert batch.effective_tags(point)["monitor"] == "codelab-monitor"


def test_to_timestamp_rounds_to_milliseconds():
    assert to_timestamp(1.234, Precision.MILLISECONDS) == 1234
    assert to_timestamp(1704067200.001, Precision.NANOSECONDS) == 1704067200001000000
    assert to_timestamp(1.25, Precision.NANOSECONDS) == 1_250_000_000


def test_point_to_string():
    batch = Batch("db", [DestPoint("up", {"monitor": "m"}, 5, 1.0)], tags={"job": "node"})
    text = point_to_string(batch, batch.points[0])
    assert text == "Point(measurement=up, tags=[job=node, monitor=m], field={'value': 1.0}, time=5ns)"
