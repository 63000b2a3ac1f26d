from __future__ import annotations

import contextlib
import contextvars
import json
import logging
import threading
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Dict

from flask import current_app, g, has_app_context, has_request_context, request


_HTTP_DURATION_BUCKETS_MS = (5.0, 10.0, 25.0, 50.0, 100.0, 250.0, 500.0, 1000.0, 2500.0, 5000.0, 10000.0)
_TRANSFER_PROCESSING_BUCKETS_MS = (10.0, 25.0, 50.0, 100.0, 250.0, 500.0, 1000.0, 2500.0, 5000.0, 10000.0, 30000.0)
_TRANSFER_BACKOFF_BUCKETS_SECONDS = (10.0, 20.0, 40.0, 80.0, 160.0, 320.0, 640.0, 1280.0, 2560.0)

_LOG_REQUEST_ID_CTX: contextvars.ContextVar[str] = contextvars.ContextVar("log_request_id", default="")


def _normalize_request_id(value: str | None) -> str:
    return str(value or "").strip() or "n/a"


def set_log_request_id(request_id: str | None) -> None:
    _LOG_REQUEST_ID_CTX.set(_normalize_request_id(request_id))


@contextlib.contextmanager
def bind_request_id(request_id: str | None):
    token = _LOG_REQUEST_ID_CTX.set(_normalize_request_id(request_id))
    try:
        yield _LOG_REQUEST_ID_CTX.get()
    finally:
        _LOG_REQUEST_ID_CTX.reset(token)


def _background_request_id(default: str | None = None) -> str:
    request_id = str(_LOG_REQUEST_ID_CTX.get() or "").strip()
    if request_id and request_id != "n/a":
        return request_id
    return default or "n/a"


class JsonLogFormatter(logging.Formatter):
    _base_keys = {
        "name",
        "msg",
        "args",
        "levelname",
        "levelno",
        "pathname",
        "filename",
        "module",
        "exc_info",
        "exc_text",
        "stack_info",
        "lineno",
        "funcName",
        "created",
        "msecs",
        "relativeCreated",
        "thread",
        "threadName",
        "processName",
        "process",
        "taskName",
    }

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, object] = {
            "ts": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        if has_request_context():
            payload["request_id"] = current_request_id(default="n/a")
            payload["path"] = request.path
            payload["method"] = request.method
            if request.url_rule is not None:
                payload["route"] = request.url_rule.rule
        else:
            record_request_id = str(getattr(record, "request_id", "") or "").strip()
            payload["request_id"] = record_request_id or _background_request_id(default="n/a")

        for key, value in record.__dict__.items():
            if key in self._base_keys or key.startswith("_"):
                continue
            if key in payload:
                continue
            if callable(value):
                continue
            payload[key] = value

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True, separators=(",", ":"), default=str)


def configure_json_logging(app) -> None:
    if not bool(app.config.get("LOG_JSON", True)):
        return
    level_name = str(app.config.get("LOG_LEVEL", "INFO")).strip().upper()
    level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonLogFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(level)
    app.logger.handlers = []
    app.logger.propagate = True


def ensure_request_id() -> str:
    request_id = str(getattr(g, "request_id", "") or "").strip()
    if request_id:
        set_log_request_id(request_id)
        return request_id
    incoming = str(request.headers.get("X-Request-Id") or "").strip()
    request_id = incoming or str(uuid.uuid4())
    g.request_id = request_id
    set_log_request_id(request_id)
    return request_id


def current_request_id(default: str | None = None) -> str:
    if has_request_context():
        request_id = str(getattr(g, "request_id", "") or "").strip()
        if request_id:
            return request_id
    return _background_request_id(default=default)


class MetricsRegistry:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._requests_total = 0
        self._errors_total = 0
        self._by_route: Dict[str, Dict[str, float]] = {}

        self._http_request_total: Dict[tuple[str, str, str], int] = {}
        self._http_request_duration_ms: Dict[tuple[str, str], dict] = {}

        self._transfer_outcome_total: Dict[str, int] = {}
        self._transfer_round_total: Dict[str, int] = {}
        self._transfer_cooldown_total = 0
        self._transfer_processing_time = self._new_histogram_state(_TRANSFER_PROCESSING_BUCKETS_MS)
        self._transfer_retry_backoff = self._new_histogram_state(_TRANSFER_BACKOFF_BUCKETS_SECONDS)
        self._erp_simulator_result_total: Dict[str, int] = {}

    @staticmethod
    def _bucket_label(limit: float) -> str:
        return f"{limit:g}"

    @classmethod
    def _new_histogram_state(cls, limits: tuple[float, ...]) -> dict:
        return {
            "count": 0,
            "sum": 0.0,
            "buckets": {cls._bucket_label(limit): 0 for limit in limits} | {"+Inf": 0},
        }

    @classmethod
    def _observe_histogram(cls, state: dict, value: float, limits: tuple[float, ...]) -> None:
        amount = max(0.0, float(value))
        state["count"] += 1
        state["sum"] += amount
        for limit in limits:
            if amount <= limit:
                key = cls._bucket_label(limit)
                state["buckets"][key] = int(state["buckets"].get(key, 0)) + 1
        state["buckets"]["+Inf"] = int(state["count"])

    @staticmethod
    def _copy_histogram(state: dict) -> dict:
        return {
            "count": int(state["count"]),
            "sum": float(state["sum"]),
            "buckets": {label: int(count) for label, count in state["buckets"].items()},
        }

    @staticmethod
    def _label_key(value: str) -> str:
        return str(value or "unknown").strip().lower() or "unknown"

    def observe_http(self, method: str, route: str, status_code: int, duration_ms: float) -> None:
        method_key = str(method or "GET").strip().upper() or "GET"
        route_key = str(route or "unknown").strip() or "unknown"
        status_key = str(int(status_code))

        key = f"{method_key} {route_key}"
        with self._lock:
            bucket = self._by_route.setdefault(
                key,
                {
                    "requests": 0.0,
                    "errors": 0.0,
                    "latency_sum_ms": 0.0,
                    "latency_max_ms": 0.0,
                },
            )
            bucket["requests"] += 1
            bucket["latency_sum_ms"] += max(0.0, float(duration_ms))
            bucket["latency_max_ms"] = max(bucket["latency_max_ms"], max(0.0, float(duration_ms)))
            self._requests_total += 1
            if int(status_code) >= 400:
                bucket["errors"] += 1
                self._errors_total += 1

            self._http_request_total[(method_key, route_key, status_key)] = (
                int(self._http_request_total.get((method_key, route_key, status_key), 0)) + 1
            )
            histogram = self._http_request_duration_ms.setdefault(
                (method_key, route_key),
                self._new_histogram_state(_HTTP_DURATION_BUCKETS_MS),
            )
            self._observe_histogram(histogram, duration_ms, _HTTP_DURATION_BUCKETS_MS)

    def observe_transfer_outcome(self, outcome: str) -> None:
        key = self._label_key(outcome)
        with self._lock:
            self._transfer_outcome_total[key] = int(self._transfer_outcome_total.get(key, 0)) + 1

    def observe_transfer_processing(self, duration_ms: float) -> None:
        with self._lock:
            self._observe_histogram(self._transfer_processing_time, duration_ms, _TRANSFER_PROCESSING_BUCKETS_MS)

    def observe_transfer_backoff(self, backoff_seconds: float) -> None:
        with self._lock:
            self._observe_histogram(self._transfer_retry_backoff, backoff_seconds, _TRANSFER_BACKOFF_BUCKETS_SECONDS)

    def observe_transfer_round(self, result: str) -> None:
        key = self._label_key(result)
        with self._lock:
            self._transfer_round_total[key] = int(self._transfer_round_total.get(key, 0)) + 1

    def observe_transfer_cooldown(self) -> None:
        with self._lock:
            self._transfer_cooldown_total += 1

    def observe_erp_simulator_result(self, result: str) -> None:
        key = self._label_key(result)
        with self._lock:
            self._erp_simulator_result_total[key] = int(self._erp_simulator_result_total.get(key, 0)) + 1

    def snapshot(self) -> dict:
        with self._lock:
            route_stats = []
            for route, bucket in self._by_route.items():
                requests_count = int(bucket["requests"])
                avg_ms = 0.0
                if requests_count > 0:
                    avg_ms = float(bucket["latency_sum_ms"]) / requests_count
                route_stats.append(
                    {
                        "route": route,
                        "requests": requests_count,
                        "errors": int(bucket["errors"]),
                        "avg_latency_ms": round(avg_ms, 2),
                        "max_latency_ms": round(float(bucket["latency_max_ms"]), 2),
                    }
                )
            route_stats.sort(key=lambda item: item["requests"], reverse=True)
            return {
                "requests_total": int(self._requests_total),
                "errors_total": int(self._errors_total),
                "by_route": route_stats[:40],
                "transfer_posting": {
                    "outcomes": dict(sorted(self._transfer_outcome_total.items())),
                    "rounds": dict(sorted(self._transfer_round_total.items())),
                    "cooldowns": int(self._transfer_cooldown_total),
                    "processing_count": int(self._transfer_processing_time["count"]),
                    "retry_backoff_count": int(self._transfer_retry_backoff["count"]),
                },
            }

    def prometheus_snapshot(self) -> dict:
        with self._lock:
            http_totals = [
                {
                    "method": method,
                    "route": route,
                    "status": status,
                    "value": int(value),
                }
                for (method, route, status), value in sorted(self._http_request_total.items())
            ]
            http_histograms = []
            for (method, route), histogram in sorted(self._http_request_duration_ms.items()):
                http_histograms.append({"method": method, "route": route, **self._copy_histogram(histogram)})
            return {
                "http_request_total": http_totals,
                "http_request_duration_ms": http_histograms,
                "transfer_posting_outcome_total": dict(sorted(self._transfer_outcome_total.items())),
                "transfer_posting_round_total": dict(sorted(self._transfer_round_total.items())),
                "transfer_posting_cooldown_total": int(self._transfer_cooldown_total),
                "transfer_posting_processing_ms": self._copy_histogram(self._transfer_processing_time),
                "transfer_posting_retry_backoff_seconds": self._copy_histogram(self._transfer_retry_backoff),
                "erp_simulator_result_total": dict(sorted(self._erp_simulator_result_total.items())),
            }

    def reset(self) -> None:
        with self._lock:
            self._requests_total = 0
            self._errors_total = 0
            self._by_route.clear()
            self._http_request_total.clear()
            self._http_request_duration_ms.clear()
            self._transfer_outcome_total.clear()
            self._transfer_round_total.clear()
            self._transfer_cooldown_total = 0
            self._transfer_processing_time = self._new_histogram_state(_TRANSFER_PROCESSING_BUCKETS_MS)
            self._transfer_retry_backoff = self._new_histogram_state(_TRANSFER_BACKOFF_BUCKETS_SECONDS)
            self._erp_simulator_result_total.clear()


_METRICS = MetricsRegistry()


def mark_request_start() -> None:
    g._request_started_at = time.perf_counter()


def observe_response(response):
    started = float(getattr(g, "_request_started_at", 0.0) or 0.0)
    elapsed_ms = 0.0
    if started > 0.0:
        elapsed_ms = (time.perf_counter() - started) * 1000.0
    route = request.url_rule.rule if request.url_rule is not None else request.path
    _METRICS.observe_http(request.method, route, int(response.status_code), elapsed_ms)
    response.headers["X-Response-Time-Ms"] = f"{elapsed_ms:.2f}"
    return response


def metrics_snapshot() -> dict:
    return _METRICS.snapshot()


def observe_transfer_posting_outcome(outcome: str) -> None:
    _METRICS.observe_transfer_outcome(outcome)


def observe_transfer_posting_processing(duration_ms: float) -> None:
    _METRICS.observe_transfer_processing(duration_ms)


def observe_transfer_posting_backoff(backoff_seconds: float) -> None:
    _METRICS.observe_transfer_backoff(backoff_seconds)


def observe_transfer_posting_round(result: str) -> None:
    _METRICS.observe_transfer_round(result)


def observe_transfer_posting_cooldown() -> None:
    _METRICS.observe_transfer_cooldown()


def observe_erp_simulator_result(result: str) -> None:
    _METRICS.observe_erp_simulator_result(result)


def _prom_label(value: object) -> str:
    return str(value).replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _prom_line(name: str, value: int | float, labels: dict[str, object] | None = None) -> str:
    if labels:
        labels_blob = ",".join(f'{key}="{_prom_label(val)}"' for key, val in sorted(labels.items()))
        return f"{name}{{{labels_blob}}} {value}"
    return f"{name} {value}"


def _prom_histogram(lines: list[str], name: str, hist: dict, labels: dict[str, object] | None = None) -> None:
    base_labels = dict(labels or {})
    for le_label, bucket_value in hist["buckets"].items():
        lines.append(_prom_line(f"{name}_bucket", int(bucket_value), labels=base_labels | {"le": le_label}))
    lines.append(_prom_line(f"{name}_sum", float(hist["sum"]), labels=base_labels or None))
    lines.append(_prom_line(f"{name}_count", int(hist["count"]), labels=base_labels or None))


def prometheus_metrics_text(*, queue_state: dict | None = None) -> str:
    snapshot = _METRICS.prometheus_snapshot()
    lines: list[str] = []

    lines.append("# HELP http_request_total Total HTTP requests by method, route and status.")
    lines.append("# TYPE http_request_total counter")
    for sample in snapshot["http_request_total"]:
        lines.append(
            _prom_line(
                "http_request_total",
                int(sample["value"]),
                labels={
                    "method": sample["method"],
                    "route": sample["route"],
                    "status": sample["status"],
                },
            )
        )

    lines.append("# HELP http_request_duration_ms HTTP request duration in milliseconds.")
    lines.append("# TYPE http_request_duration_ms histogram")
    for hist in snapshot["http_request_duration_ms"]:
        _prom_histogram(lines, "http_request_duration_ms", hist, {"method": hist["method"], "route": hist["route"]})

    queue = ((queue_state or {}).get("queue") or {}) if isinstance(queue_state, dict) else {}
    lines.append("# HELP transfer_queue_size Inventory transfer queue size by status.")
    lines.append("# TYPE transfer_queue_size gauge")
    for status in ("pending", "processing", "failed", "requires_review", "completed", "cancelled"):
        lines.append(_prom_line("transfer_queue_size", int(queue.get(status) or 0), labels={"status": status}))

    lines.append("# HELP transfer_queue_stale_processing Entries stuck in processing past the stale threshold.")
    lines.append("# TYPE transfer_queue_stale_processing gauge")
    lines.append(_prom_line("transfer_queue_stale_processing", int(queue.get("stale_processing") or 0)))

    lines.append("# HELP transfer_posting_outcome_total Transfer posting outcomes by result.")
    lines.append("# TYPE transfer_posting_outcome_total counter")
    for outcome, value in snapshot["transfer_posting_outcome_total"].items():
        lines.append(_prom_line("transfer_posting_outcome_total", int(value), labels={"outcome": outcome}))

    lines.append("# HELP transfer_posting_round_total Posting rounds by result.")
    lines.append("# TYPE transfer_posting_round_total counter")
    for result, value in snapshot["transfer_posting_round_total"].items():
        lines.append(_prom_line("transfer_posting_round_total", int(value), labels={"result": result}))

    lines.append("# HELP transfer_posting_cooldown_total Cool-down pauses after repeated round failures.")
    lines.append("# TYPE transfer_posting_cooldown_total counter")
    lines.append(_prom_line("transfer_posting_cooldown_total", int(snapshot["transfer_posting_cooldown_total"])))

    lines.append("# HELP transfer_posting_processing_ms Time spent posting one queue entry in milliseconds.")
    lines.append("# TYPE transfer_posting_processing_ms histogram")
    _prom_histogram(lines, "transfer_posting_processing_ms", snapshot["transfer_posting_processing_ms"])

    lines.append("# HELP transfer_posting_retry_backoff_seconds Retry delay scheduled after a failed posting.")
    lines.append("# TYPE transfer_posting_retry_backoff_seconds histogram")
    _prom_histogram(lines, "transfer_posting_retry_backoff_seconds", snapshot["transfer_posting_retry_backoff_seconds"])

    lines.append("# HELP erp_simulator_result_total ERP simulator results by outcome.")
    lines.append("# TYPE erp_simulator_result_total counter")
    for result, value in snapshot["erp_simulator_result_total"].items():
        lines.append(_prom_line("erp_simulator_result_total", int(value), labels={"result": result}))

    return "\n".join(lines) + "\n"


def reset_metrics_for_tests() -> None:
    _METRICS.reset()
    set_log_request_id(None)


def _queue_thresholds() -> tuple[int, int]:
    stale_seconds = 900
    critical_pending = 50
    if has_app_context():
        try:
            stale_seconds = int(current_app.config.get("TRANSFER_QUEUE_STALE_PROCESSING_SECONDS", stale_seconds))
            critical_pending = int(current_app.config.get("TRANSFER_QUEUE_CRITICAL_PENDING", critical_pending))
        except (TypeError, ValueError):
            pass
    return max(1, stale_seconds), max(1, critical_pending)


def transfer_queue_health(db) -> dict:
    from shop_inventory.contexts.transfers.infrastructure.sql_queue_store import SqlQueueStore

    store = SqlQueueStore(db)
    stats = store.stats()
    counts = dict(stats["counts"])
    stale_seconds, critical_pending = _queue_thresholds()
    stale_processing = store.count_stale_processing(timedelta(seconds=stale_seconds))

    now = datetime.now(timezone.utc)
    oldest = stats.get("oldest_pending_at")
    oldest_age = max(0, int((now - oldest).total_seconds())) if oldest else 0

    worker_state = "idle"
    if stale_processing > 0:
        worker_state = "stalled"
    elif counts.get("processing", 0) > 0:
        worker_state = "running"
    elif counts.get("pending", 0) > 0 or counts.get("failed", 0) > 0:
        worker_state = "draining"
    backlog_critical = counts.get("pending", 0) >= critical_pending or oldest_age >= stale_seconds

    return {
        "worker_status": worker_state,
        "backlog_critical": backlog_critical,
        "queue": {
            **counts,
            "stale_processing": stale_processing,
            "stale_after_seconds": stale_seconds,
            "oldest_pending_age_seconds": oldest_age,
            "total_pending_quantity": float(stats.get("total_pending_quantity") or 0.0),
        },
    }
