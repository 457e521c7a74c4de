"""
Transfer engine: move every metric's history from Prometheus into InfluxDB.

    Transfer.run()
      -> MetricSynchronizer.sync(metric)   (one per metric, at most `concurrency` at once)
           -> source.query_range()         (window halves on failure)
           -> convert()
           -> BatchWriter.write()          (each batch retried `retry` times)

A metric that fails is logged and recorded in the report; the other metrics
carry on.
"""
from __future__ import annotations

import logging
import re
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List

from influxdb_client import Point, WritePrecision

from convert import FIELD_KEY, Batch, Precision, UnsupportedResultError, convert, point_to_string

logger = logging.getLogger(__name__)

DURATION_RE = re.compile(r"(\d+)(ms|y|w|d|h|m|s)")
UNIT_SECONDS = {"ms": 0.001, "s": 1, "m": 60, "h": 3600, "d": 86400, "w": 604800, "y": 31536000}
RETENTION_FLAGS = ("storage.tsdb.retention.time", "storage.tsdb.retention")

WRITE_PRECISION = {
    Precision.NANOSECONDS: WritePrecision.NS,
    Precision.MILLISECONDS: WritePrecision.MS,
}


class TransferError(Exception):
    pass


class ConfigurationError(TransferError, ValueError):
    pass


class MetricSyncError(TransferError):
    """A single metric could not be migrated."""

    def __init__(self, metric: str, cause: BaseException | None = None, message: str | None = None):
        self.metric = metric
        self.cause = cause
        super().__init__(message or f"{metric}: {cause}")


class BatchWriteError(MetricSyncError):
    pass


class TransferCancelled(MetricSyncError):
    def __init__(self, metric: str):
        super().__init__(metric, message=f"{metric}: cancelled")


def parse_duration(s: str) -> timedelta:
    """Parse a Prometheus duration such as '15d', '1h30m' or '500ms'."""
    s = s.strip()
    pos = 0
    seconds = 0.0
    for m in DURATION_RE.finditer(s):
        if m.start() != pos:
            break
        seconds += int(m.group(1)) * UNIT_SECONDS[m.group(2)]
        pos = m.end()
    if not s or pos != len(s):
        raise ValueError(f"Invalid duration: {s!r}")
    return timedelta(seconds=seconds)


@dataclass(frozen=True)
class TransferSettings:
    batch_threshold: int = 6000
    max_query_failures: int = 15
    query_timeout: timedelta = timedelta(seconds=10)
    default_retention: timedelta = timedelta(days=15)


@dataclass
class MetricResult:
    metric: str
    batches: int = 0
    points: int = 0
    windows: int = 0


@dataclass
class TransferReport:
    metrics: int = 0
    succeeded: List[MetricResult] = field(default_factory=list)
    failed: Dict[str, Exception] = field(default_factory=dict)
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return not self.failed and not self.cancelled

    @property
    def first_error(self) -> Exception | None:
        return next(iter(self.failed.values()), None)

    @property
    def batches(self) -> int:
        return sum(r.batches for r in self.succeeded)

    @property
    def points(self) -> int:
        return sum(r.points for r in self.succeeded)


class BatchWriter:
    """Write batches to InfluxDB, retrying each batch up to `retry` extra times."""

    def __init__(self, write_api, retry: int = 5, log: logging.Logger | None = None, dry_run: bool = False):
        self.write_api = write_api
        self.retry = max(retry, 0)
        self.log = log or logger
        self.dry_run = dry_run

    @staticmethod
    def to_points(batch: Batch) -> List[Point]:
        precision = WRITE_PRECISION[batch.precision]
        points = []
        for p in batch.points:
            point = Point(p.measurement)
            for k, v in batch.effective_tags(p).items():
                point.tag(k, v)
            point.field(FIELD_KEY, p.field_value)
            point.time(p.timestamp, precision)
            points.append(point)
        return points

    def write(self, metric: str, batches: List[Batch]) -> int:
        for batch in batches:
            if self.dry_run:
                for p in batch.points:
                    self.log.info("Dry run: would write %s", point_to_string(batch, p))
                continue
            records = self.to_points(batch)
            err: Exception | None = None
            for attempt in range(self.retry + 1):
                try:
                    self.write_api.write(bucket=batch.database, record=records,
                                         write_precision=WRITE_PRECISION[batch.precision])
                    err = None
                    break
                except Exception as e:
                    err = e
                    self.log.debug("[%s] write attempt %d/%d failed: %s", metric, attempt + 1, self.retry + 1, e)
            if err is not None:
                self.log.error("[%s] write failed after %d attempts: %s", metric, self.retry + 1, err)
                raise BatchWriteError(metric, err) from err
        self.log.info("[%s] %d batches migrated", metric, len(batches))
        return len(batches)


class MetricSynchronizer:
    """Pull one metric's history window by window and hand it to the writer."""

    def __init__(self, source, writer: BatchWriter, database: str, monitor_label: str,
                 settings: TransferSettings | None = None, log: logging.Logger | None = None):
        self.source = source
        self.writer = writer
        self.database = database
        self.external_labels = {"monitor": monitor_label}
        self.settings = settings or TransferSettings()
        self.log = log or logger

    def _flush(self, metric: str, pending: List[Batch], result: MetricResult):
        self.writer.write(metric, pending)
        result.batches += len(pending)
        result.points += sum(len(b.points) for b in pending)

    def sync(self, metric: str, start: datetime, end: datetime, step: timedelta,
             cancel: threading.Event | None = None) -> MetricResult:
        result = MetricResult(metric)
        cur = start
        window = end - start
        failures = 0
        pending: List[Batch] = []

        while cur < end:
            if cancel is not None and cancel.is_set():
                raise TransferCancelled(metric)
            win_end = min(cur + window, end)
            try:
                if window <= timedelta(0):
                    raise ValueError(f"window shrank to zero at {cur.isoformat()}")
                value, warnings = self.source.query_range(metric, cur, win_end, step,
                                                          timeout=self.settings.query_timeout)
            except UnsupportedResultError as e:
                self.log.error("[%s] unsupported query result: %s", metric, e)
                raise MetricSyncError(metric, e) from e
            except Exception as e:
                failures += 1
                if failures < self.settings.max_query_failures:
                    self.log.debug("[%s] query %s -> %s failed (%d/%d), window %s -> %s: %s",
                                   metric, cur.isoformat(), win_end.isoformat(), failures,
                                   self.settings.max_query_failures, window, window // 2, e)
                    window = window // 2
                    continue
                self.log.error("[%s] giving up after %d failed queries: %s", metric, failures, e)
                raise MetricSyncError(metric, e) from e
            for w in warnings:
                self.log.info("[%s] query warning: %s", metric, w)

            try:
                pending.extend(convert(metric, value, self.database, self.external_labels))
            except UnsupportedResultError as e:
                raise MetricSyncError(metric, e) from e
            result.windows += 1
            self.log.info("[%s] %s -> %s: %d batches pending", metric, cur.isoformat(),
                          win_end.isoformat(), len(pending))

            if len(pending) > self.settings.batch_threshold:
                self._flush(metric, pending, result)
                pending = []
            cur = win_end

        if pending:
            self._flush(metric, pending, result)
        self.log.info("[%s] migrated %d points in %d batches", metric, result.points, result.batches)
        return result


class Transfer:
    def __init__(self, source, write_api, database: str, monitor_label: str,
                 start: datetime | None = None, end: datetime | None = None, step: timedelta | None = None,
                 concurrency: int = 1, retry: int = 5, settings: TransferSettings | None = None,
                 log: logging.Logger | None = None, dry_run: bool = False):
        self.source = source
        self.database = database
        self.start = start
        self.end = end
        self.step = step
        self.concurrency = concurrency
        self.settings = settings or TransferSettings()
        self.log = log or logger
        self.writer = BatchWriter(write_api, retry, self.log, dry_run=dry_run)
        self.synchronizer = MetricSynchronizer(source, self.writer, database, monitor_label,
                                               self.settings, self.log)

    def retention(self) -> timedelta:
        flags = self.source.flags()
        value = None
        for key in RETENTION_FLAGS:
            v = flags.get(key)
            if v and v != "0s":
                value = v
                break
        if value is None:
            self.log.info("No retention limit reported, assuming %s", self.settings.default_retention)
            return self.settings.default_retention
        try:
            return parse_duration(value)
        except ValueError as e:
            raise ConfigurationError(f"Cannot parse retention {value!r}") from e

    def resolve_window(self, now: datetime | None = None):
        """Fill in end, step, start and concurrency where they were left unset."""
        now = now or datetime.now(timezone.utc)
        if self.end is None:
            self.end = now
        if not self.step:
            self.step = timedelta(minutes=1)
        if self.start is None:
            self.start = now - self.retention()
        if not self.concurrency or self.concurrency < 1:
            self.concurrency = 1
        self.log.debug("Start=%s End=%s Step=%s Concurrency=%d", self.start, self.end, self.step, self.concurrency)

    def _sync_one(self, metric: str, report: TransferReport, lock: threading.Lock,
                  gate: threading.BoundedSemaphore, cancel: threading.Event | None):
        try:
            res = self.synchronizer.sync(metric, self.start, self.end, self.step, cancel)
        except TransferCancelled as e:
            self.log.info("[%s] cancelled", metric)
            with lock:
                report.failed[metric] = e
        except Exception as e:
            self.log.error("[%s] migration failed: %s", metric, e)
            with lock:
                report.failed[metric] = e
        else:
            with lock:
                report.succeeded.append(res)
        finally:
            gate.release()

    def run(self, cancel: threading.Event | None = None) -> TransferReport:
        self.resolve_window()
        metrics = self.source.label_values("__name__")
        self.log.info("Found %d metrics, migrating %s -> %s with %d workers", len(metrics),
                      self.start.isoformat(), self.end.isoformat(), self.concurrency)

        report = TransferReport(metrics=len(metrics))
        cancel = cancel or threading.Event()
        lock = threading.Lock()
        gate = threading.BoundedSemaphore(self.concurrency)
        pool = ThreadPoolExecutor(max_workers=self.concurrency)
        try:
            for metric in metrics:
                gate.acquire()
                if cancel.is_set():
                    gate.release()
                    break
                pool.submit(self._sync_one, metric, report, lock, gate, cancel)
            pool.shutdown(wait=True)
        except KeyboardInterrupt:
            # interrupts land in the main thread, either while dispatching or while waiting on workers
            self.log.warning("Interrupted, waiting for running metrics to stop")
            cancel.set()
            pool.shutdown(wait=True)
        report.cancelled = cancel.is_set()
        cancelled = [m for m, e in report.failed.items() if isinstance(e, TransferCancelled)]
        if cancelled:
            self.log.warning("%d metrics cancelled: %s", len(cancelled), ", ".join(cancelled))
        self.log.info("Done. %d/%d metrics migrated, %d points in %d batches, %d failed",
                      len(report.succeeded), report.metrics, report.points, report.batches, len(report.failed))
        return report
