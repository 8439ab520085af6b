"""In-memory request counters and their plain-text exposition."""

import gc
import math
import threading
import time
from typing import Dict, List, Optional, Tuple

import psutil

from .config import Settings

DURATION_BUCKETS: Tuple[Tuple[str, float], ...] = (
    ("0.1", 0.1),
    ("0.5", 0.5),
    ("1.0", 1.0),
    ("+Inf", math.inf),
)
TIMED_METHODS = ("GET", "POST")
EXPOSITION_CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"


class MetricsRegistry:
    """Thread-safe counters updated by the request handlers.

    Every update happens under a single lock, so concurrent workers never
    lose increments and counters only ever grow.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.started_at = time.time()
        self._counters: Dict[str, int] = {
            "requests_total": 0,
            "requests_success": 0,
            "requests_error": 0,
            "uploads_total": 0,
            "uploads_success": 0,
            "uploads_error": 0,
            "directory_lists": 0,
            "file_serves": 0,
        }
        self._buckets: Dict[str, Dict[str, int]] = {
            method: {label: 0 for label, _ in DURATION_BUCKETS} for method in TIMED_METHODS
        }
        self._duration_sum: Dict[str, float] = {method: 0.0 for method in TIMED_METHODS}
        self._duration_count: Dict[str, int] = {method: 0 for method in TIMED_METHODS}

    def _increment(self, name: str) -> None:
        with self._lock:
            self._counters[name] += 1

    def request_started(self) -> None:
        self._increment("requests_total")

    def request_succeeded(self) -> None:
        self._increment("requests_success")

    def request_failed(self) -> None:
        self._increment("requests_error")

    def upload_started(self) -> None:
        self._increment("uploads_total")

    def upload_succeeded(self) -> None:
        self._increment("uploads_success")

    def upload_failed(self) -> None:
        self._increment("uploads_error")

    def directory_listed(self) -> None:
        self._increment("directory_lists")

    def file_served(self) -> None:
        self._increment("file_serves")

    def observe_duration(self, method: str, seconds: float) -> None:
        """Record one completed request; methods other than GET/POST are ignored."""
        buckets = self._buckets.get(method)
        if buckets is None:
            return
        with self._lock:
            self._duration_count[method] += 1
            self._duration_sum[method] += seconds
            for label, threshold in DURATION_BUCKETS:
                if seconds <= threshold:
                    buckets[label] += 1

    def snapshot(self) -> Dict[str, object]:
        with self._lock:
            return {
                "counters": dict(self._counters),
                "buckets": {method: dict(values) for method, values in self._buckets.items()},
                "duration_sum": dict(self._duration_sum),
                "duration_count": dict(self._duration_count),
            }


def _process_gauges() -> Dict[str, int]:
    memory = psutil.Process().memory_info()
    return {
        "rss": memory.rss,
        "vms": memory.vms,
        "threads": threading.active_count(),
        "gc_total": sum(generation.get("collections", 0) for generation in gc.get_stats()),
    }


def _label(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\"", "\\\"").replace("\n", "\\n")


def _family(lines: List[str], name: str, help_text: str, metric_type: str) -> None:
    lines.append(f"# HELP {name} {help_text}")
    lines.append(f"# TYPE {name} {metric_type}")


def render_exposition(registry: MetricsRegistry, settings: Settings, now: Optional[float] = None) -> str:
    snapshot = registry.snapshot()
    counters = snapshot["counters"]
    gauges = _process_gauges()
    uptime = (now if now is not None else time.time()) - registry.started_at

    lines: List[str] = []
    _family(lines, "filebrowser_info", "Information about the file browser", "gauge")
    lines.append(
        f'filebrowser_info{{version="{_label(settings.git_commit)}",build_date="{_label(settings.build_date)}"}} 1'
    )
    lines.append("")

    _family(lines, "filebrowser_uptime_seconds", "Total uptime in seconds", "gauge")
    lines.append(f"filebrowser_uptime_seconds {uptime:.2f}")
    lines.append("")

    _family(lines, "filebrowser_http_requests_total", "Total number of HTTP requests", "counter")
    lines.append(f'filebrowser_http_requests_total{{status="total"}} {counters["requests_total"]}')
    lines.append(f'filebrowser_http_requests_total{{status="success"}} {counters["requests_success"]}')
    lines.append(f'filebrowser_http_requests_total{{status="error"}} {counters["requests_error"]}')
    lines.append("")

    _family(lines, "filebrowser_uploads_total", "Total number of file uploads", "counter")
    lines.append(f'filebrowser_uploads_total{{status="total"}} {counters["uploads_total"]}')
    lines.append(f'filebrowser_uploads_total{{status="success"}} {counters["uploads_success"]}')
    lines.append(f'filebrowser_uploads_total{{status="error"}} {counters["uploads_error"]}')
    lines.append("")

    _family(lines, "filebrowser_operations_total", "Total number of file operations", "counter")
    lines.append(f'filebrowser_operations_total{{type="directory_list"}} {counters["directory_lists"]}')
    lines.append(f'filebrowser_operations_total{{type="file_serve"}} {counters["file_serves"]}')
    lines.append("")

    _family(
        lines,
        "filebrowser_http_request_duration_seconds",
        "HTTP request duration in seconds",
        "histogram",
    )
    for method in TIMED_METHODS:
        for label, _ in DURATION_BUCKETS:
            count = snapshot["buckets"][method][label]
            lines.append(
                f'filebrowser_http_request_duration_seconds_bucket{{le="{label}",method="{method}"}} {count}'
            )
        lines.append(
            f'filebrowser_http_request_duration_seconds_sum{{method="{method}"}} '
            f'{snapshot["duration_sum"][method]:.6f}'
        )
        lines.append(
            f'filebrowser_http_request_duration_seconds_count{{method="{method}"}} '
            f'{snapshot["duration_count"][method]}'
        )
    lines.append("")

    _family(lines, "filebrowser_memory_bytes", "Memory usage in bytes", "gauge")
    lines.append(f'filebrowser_memory_bytes{{type="rss"}} {gauges["rss"]}')
    lines.append(f'filebrowser_memory_bytes{{type="vms"}} {gauges["vms"]}')
    lines.append("")

    _family(lines, "filebrowser_threads", "Current number of threads", "gauge")
    lines.append(f"filebrowser_threads {gauges['threads']}")
    lines.append("")

    _family(lines, "filebrowser_gc_total", "Total number of garbage collections", "counter")
    lines.append(f"filebrowser_gc_total {gauges['gc_total']}")
    lines.append("")

    _family(lines, "filebrowser_config", "Configuration settings", "gauge")
    setting = "uploads_enabled" if settings.enable_upload else "uploads_disabled"
    lines.append(f'filebrowser_config{{setting="{setting}"}} 1')

    return "\n".join(lines) + "\n"
