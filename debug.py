# from a Python REPL or debugger
import migrator

# Run with custom arguments
migrator.run([
    "--prometheus-url", "http://localhost:9090",
    "--influx-config", r".\.influx.local.toml",
    "--influxdb.database", "prometheus",
    "--monitor-label", "codelab-monitor",
    # One day
    # "--start", "2024-01-01T00:00:00Z",
    # "--end", "2024-01-02T00:00:00Z",
    # Last six hours
    "--start", "-6h",
    "--step", "1m",
    "-c", "4",
    # Small numbers make the window shrinking easy to watch
    # "--batch-threshold", "10",
    # "--max-query-failures", "4",
    "--verbose",
    "--dry-run",  # Log points without writing
])
