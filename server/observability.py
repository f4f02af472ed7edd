"""
Structured event logging and in-process metrics for the device group server.

Every service module logs through `structured_logger.log_event` and counts
through `metrics`; `/metrics` renders the collector as Prometheus text.
"""
import json
import logging
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List
from contextvars import ContextVar
from collections import defaultdict
from threading import Lock

request_id_var: ContextVar[Optional[str]] = ContextVar('request_id', default=None)

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}

# Milliseconds
REQUEST_LATENCY_BUCKETS = [5, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000, 10000]
SWEEP_LATENCY_BUCKETS = [50, 250, 1000, 2500, 5000, 10000, 30000, 60000, 120000]

HISTOGRAM_BUCKETS: Dict[str, List[float]] = {
    "http_request_latency_ms": REQUEST_LATENCY_BUCKETS,
    "retention_device_latency_ms": SWEEP_LATENCY_BUCKETS,
}


class StructuredLogger:
    """
    One JSON object per line: `ts`, `request_id`, `level`, `event`, then the
    event's own fields.
    """

    def __init__(self, name: str = "devicegroups"):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(logging.INFO)

        if not self.logger.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(logging.Formatter('%(message)s'))
            self.logger.addHandler(handler)

    def log_event(self, event: str, level: str = "INFO", **fields) -> None:
        """
        Args:
            event: Dotted event name, e.g. "group.member.added", "retention.sweep.aborted"
            level: DEBUG, INFO, WARN or ERROR
            **fields: Identifiers and figures for the event (account_id, group_id, total, ...)
        """
        log_level = _LEVELS.get(level, logging.INFO)
        if not self.logger.isEnabledFor(log_level):
            return

        entry: Dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "request_id": request_id_var.get(),
            "level": level,
            "event": event,
        }
        entry.update(fields)
        self.logger.log(log_level, json.dumps(entry, default=str))


def _label_str(labels: Dict[str, str]) -> str:
    return ",".join(f'{k}="{v}"' for k, v in sorted(labels.items()))


class MetricsCollector:
    """
    Labelled counters and histograms, rendered in Prometheus text format.

    Histogram buckets are chosen per metric from HISTOGRAM_BUCKETS; metrics
    without an entry use the request latency buckets.
    """

    def __init__(self, buckets: Optional[Dict[str, List[float]]] = None):
        self._lock = Lock()
        self._counters: Dict[str, Dict[tuple, int]] = defaultdict(lambda: defaultdict(int))
        self._histograms: Dict[str, Dict[tuple, list]] = defaultdict(lambda: defaultdict(list))
        self.buckets = HISTOGRAM_BUCKETS if buckets is None else buckets

    def inc_counter(self, metric_name: str, labels: Optional[Dict[str, str]] = None, value: int = 1):
        label_tuple = tuple(sorted((labels or {}).items()))
        with self._lock:
            self._counters[metric_name][label_tuple] += value

    def observe_histogram(self, metric_name: str, value: float, labels: Optional[Dict[str, str]] = None):
        label_tuple = tuple(sorted((labels or {}).items()))
        with self._lock:
            self._histograms[metric_name][label_tuple].append(value)

    def _buckets_for(self, metric_name: str) -> List[float]:
        return self.buckets.get(metric_name, REQUEST_LATENCY_BUCKETS)

    def get_prometheus_text(self) -> str:
        lines = []

        with self._lock:
            for metric_name, series in sorted(self._counters.items()):
                lines.append(f"# TYPE {metric_name} counter")
                for label_tuple, count in sorted(series.items()):
                    suffix = f"{{{_label_str(dict(label_tuple))}}}" if label_tuple else ""
                    lines.append(f"{metric_name}{suffix} {count}")

            for metric_name, series in sorted(self._histograms.items()):
                lines.append(f"# TYPE {metric_name} histogram")
                buckets = self._buckets_for(metric_name)
                for label_tuple, observations in sorted(series.items()):
                    label_dict = dict(label_tuple)

                    for bucket in buckets:
                        count = sum(1 for obs in observations if obs <= bucket)
                        lines.append(f"{metric_name}_bucket{{{_label_str({**label_dict, 'le': str(bucket)})}}} {count}")
                    lines.append(f"{metric_name}_bucket{{{_label_str({**label_dict, 'le': '+Inf'})}}} {len(observations)}")

                    suffix = f"{{{_label_str(label_dict)}}}" if label_dict else ""
                    lines.append(f"{metric_name}_count{suffix} {len(observations)}")
                    if observations:
                        lines.append(f"{metric_name}_sum{suffix} {sum(observations)}")

        return "\n".join(lines) + "\n"


structured_logger = StructuredLogger()
metrics = MetricsCollector()
