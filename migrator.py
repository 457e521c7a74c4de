#!/usr/bin/env python3
"""
Copy the full history of every Prometheus metric into InfluxDB.
Every point is written with a `monitor=<label>` tag identifying its origin.

InfluxDB credentials may come from a simple key-value .influx.toml file and/or
command-line flags (flags win).

Expected .influx.toml format:
    url = "http://localhost:8086"
    token = "<auth token>"        # InfluxDB 2.x
    org = "my-org"                # InfluxDB 2.x
    username = "admin"            # InfluxDB 1.x, used when no token is given
    password = "secret"           # InfluxDB 1.x
    timeout = 6000                # optional (ms)
    connection_pool_maxsize = 25  # optional
    auth_basic = false            # optional
    verify_ssl = true             # optional

Other keys are ignored.

Tips:
- Leave --start empty to start at the Prometheus retention horizon.
- Use --dry-run to log detailed point information without writing.
- Use -c to migrate several metrics at once.
- Use --verbose to see each failed query and the window shrinking.
- On PowerShell, quote relative starts like '--start "-4d"'.
"""
from __future__ import annotations

import argparse
import logging
import re
import sys
import threading
from datetime import datetime, timedelta, timezone
from typing import List

import toml
from influxdb_client import InfluxDBClient
from influxdb_client.client.write_api import SYNCHRONOUS

from promapi import PrometheusAPI
from transfer import Transfer, TransferCancelled, TransferError, TransferSettings, parse_duration

logger = logging.getLogger(__name__)

RELATIVE_RE = re.compile(r"^-(\d+(?:ms|[smhdwy])(?:\d+(?:ms|[smhdwy]))*)$")

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INTERRUPTED = 130


def parse_time(ts: str | None, now: datetime | None = None) -> datetime | None:
    """Parse RFC3339/ISO 8601, 'now' or a relative '-6h' into an aware UTC datetime."""
    if ts is None:
        return None
    ts = ts.strip()
    if not ts:
        return None
    now = now or datetime.now(timezone.utc)
    if ts in ("now", "now()"):
        return now
    m = RELATIVE_RE.match(ts)
    if m:
        return now - parse_duration(m.group(1))
    try:
        dt = datetime.fromisoformat(ts.replace("Z", "+00:00"))
    except ValueError as e:
        raise ValueError(f"Unrecognized time format: {ts}") from e
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_step(s: str) -> timedelta:
    try:
        return parse_duration(s)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e)) from e


def load_influx_config(path: str | None) -> dict:
    cfg = toml.load(path) if path else {}
    parsed = {
        "url": cfg.get("url"),
        "org": cfg.get("org"),
        "token": cfg.get("token"),
        "username": cfg.get("username"),
        "password": cfg.get("password"),
        "timeout": cfg.get("timeout"),
        "connection_pool_maxsize": cfg.get("connection_pool_maxsize"),
        "auth_basic": cfg.get("auth_basic"),
        "verify_ssl": cfg.get("verify_ssl"),
    }
    safe_log = {k: v for k, v in parsed.items() if k not in ("token", "password")}
    logger.debug("Loaded Influx config from %s: %s", path, safe_log)
    return parsed


def merge_influx_args(cfg: dict, args: argparse.Namespace) -> dict:
    merged = dict(cfg)
    for key, value in (
        ("url", args.influxdb_url),
        ("org", args.org),
        ("token", args.token),
        ("username", args.username),
        ("password", args.password),
    ):
        if value:
            merged[key] = value
    if not merged.get("url"):
        raise ValueError("No InfluxDB URL: pass --influxdb-url or set url in --influx-config")
    # InfluxDB 1.x compatibility: user:password token, no org.
    if not merged.get("token"):
        if merged.get("username"):
            merged["token"] = f"{merged['username']}:{merged.get('password') or ''}"
        else:
            merged["token"] = ""
    if not merged.get("org"):
        merged["org"] = "-"
    return merged


def build_client(cfg: dict) -> InfluxDBClient:
    kwargs = {
        "url": cfg["url"],
        "org": cfg["org"],
        "token": cfg["token"],
        "timeout": cfg.get("timeout") or 60000,
    }
    if cfg.get("connection_pool_maxsize"):
        kwargs["connection_pool_maxsize"] = cfg.get("connection_pool_maxsize")
    if cfg.get("auth_basic") is not None:
        kwargs["auth_basic"] = bool(cfg.get("auth_basic"))
    if cfg.get("verify_ssl") is not None:
        kwargs["verify_ssl"] = bool(cfg.get("verify_ssl"))
    return InfluxDBClient(**kwargs)


def bucket_name(database: str, retention_policy: str | None) -> str:
    if retention_policy:
        return f"{database}/{retention_policy}"
    return database


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Migrate Prometheus history into InfluxDB")
    ap.add_argument("--prometheus-url", required=True, help="URL of the Prometheus server to read samples from")
    ap.add_argument("--prometheus-username")
    ap.add_argument("--prometheus-password")
    ap.add_argument("--influx-config", help="Path to dest .influx.toml")
    ap.add_argument("--influxdb-url", help="URL of the InfluxDB server to write samples to")
    ap.add_argument("--username", help="InfluxDB 1.x username")
    ap.add_argument("--password", help="InfluxDB 1.x password")
    ap.add_argument("--token", help="InfluxDB 2.x token")
    ap.add_argument("--org", help="InfluxDB 2.x organization")
    ap.add_argument("--influxdb.database", dest="database", default="prometheus",
                    help="Database (or bucket) to store samples in")
    ap.add_argument("--retention-policy", help="InfluxDB 1.x retention policy")
    ap.add_argument("--monitor-label", default="codelab-monitor", help="Value of the monitor tag added to every point")
    ap.add_argument("--start", help="Start time; defaults to now minus the Prometheus retention")
    ap.add_argument("--end", help="End time; defaults to now")
    ap.add_argument("--step", type=parse_step, default=timedelta(minutes=1), help="Query resolution step")
    ap.add_argument("-c", "--concurrency", type=int, default=1, help="Metrics migrated concurrently")
    ap.add_argument("--retry", type=int, default=5, help="Extra write attempts per batch")
    ap.add_argument("--batch-threshold", type=int, default=TransferSettings.batch_threshold,
                    help="Flush once more than this many batches are pending for a metric")
    ap.add_argument("--max-query-failures", type=int, default=TransferSettings.max_query_failures,
                    help="Failed queries tolerated per metric before giving up")
    ap.add_argument("--query-timeout", type=parse_step, default=TransferSettings.query_timeout)
    ap.add_argument("--default-retention", type=parse_step, default=TransferSettings.default_retention,
                    help="Retention assumed when Prometheus reports none")
    ap.add_argument("--dry-run", action="store_true", help="Log detailed point information without writing")
    ap.add_argument("--no-fail-on-error", dest="fail_on_error", action="store_false",
                    help="Exit 0 even when some metrics failed")
    ap.add_argument("--verbose", action="store_true", help="Enable debug logging")
    return ap


def run(argv: List[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    logging.getLogger().setLevel(logging.DEBUG if args.verbose else logging.INFO)

    try:
        start = parse_time(args.start)
        end = parse_time(args.end)
        influx_cfg = merge_influx_args(load_influx_config(args.influx_config), args)
    except (ValueError, OSError) as e:
        logger.error("%s", e)
        return EXIT_FAILED

    settings = TransferSettings(
        batch_threshold=args.batch_threshold,
        max_query_failures=args.max_query_failures,
        query_timeout=args.query_timeout,
        default_retention=args.default_retention,
    )

    src = PrometheusAPI(args.prometheus_url, args.prometheus_username, args.prometheus_password)
    dst = build_client(influx_cfg)
    cancel = threading.Event()
    try:
        t = Transfer(
            src, dst.write_api(write_options=SYNCHRONOUS), bucket_name(args.database, args.retention_policy),
            args.monitor_label, start=start, end=end, step=args.step, concurrency=args.concurrency,
            retry=args.retry, settings=settings, dry_run=args.dry_run,
        )
        report = t.run(cancel)
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        return EXIT_INTERRUPTED
    except TransferError as e:
        logger.error("Migration aborted: %s", e)
        return EXIT_FAILED
    except Exception as e:
        logger.exception("Migration aborted: %s", e)
        return EXIT_FAILED
    finally:
        src.close()
        dst.close()

    failed = {m: e for m, e in report.failed.items() if not isinstance(e, TransferCancelled)}
    for metric, err in failed.items():
        logger.error("failed: %s (%s)", metric, err)
    if report.cancelled:
        logger.warning("Interrupted, %d metrics cancelled", len(report.failed) - len(failed))
        return EXIT_INTERRUPTED
    if failed and args.fail_on_error:
        return EXIT_FAILED
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(run())
