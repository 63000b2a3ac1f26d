from __future__ import annotations

import logging
import os
import threading
import uuid
from typing import Callable, Dict

from flask import Flask

from shop_inventory.observability import (
    bind_request_id,
    observe_transfer_posting_cooldown,
    observe_transfer_posting_round,
)


RoundFn = Callable[[threading.Event], Dict[str, int]]


class PollingScheduler:
    """Runs posting rounds on a fixed cadence until stopped.

    Rounds never overlap: ``run_round`` takes a non-blocking gate and returns
    ``None`` when another round still holds it. The stop event doubles as the
    sleep primitive so ``stop()`` interrupts warm-up, interval and cool-down
    waits immediately.
    """

    def __init__(
        self,
        round_fn: RoundFn,
        *,
        interval_seconds: float = 10,
        warmup_seconds: float = 7,
        max_consecutive_errors: int = 10,
        error_backoff_seconds: float = 60,
        name: str = "transfer-posting",
    ) -> None:
        self._round_fn = round_fn
        self.interval_seconds = max(0.0, float(interval_seconds))
        self.warmup_seconds = max(0.0, float(warmup_seconds))
        self.max_consecutive_errors = max(1, int(max_consecutive_errors))
        self.error_backoff_seconds = max(0.0, float(error_backoff_seconds))
        self.name = name

        self.consecutive_errors = 0
        self.last_summary: Dict[str, int] | None = None
        self._stop_event = threading.Event()
        self._gate = threading.Lock()
        self._thread: threading.Thread | None = None
        self._logger = logging.getLogger("shop_inventory")

    @property
    def stop_event(self) -> threading.Event:
        return self._stop_event

    def is_running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def start(self) -> None:
        if self.is_running():
            return
        self._thread = threading.Thread(target=self.run_forever, name=self.name, daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        self._stop_event.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout)

    def run_round(self) -> Dict[str, int] | None:
        if not self._gate.acquire(blocking=False):
            self._logger.debug("transfer_posting_round_skipped", extra={"reason": "round_in_progress"})
            observe_transfer_posting_round("skipped")
            return None
        try:
            with bind_request_id(f"{self.name}-{uuid.uuid4().hex[:12]}"):
                summary = self._round_fn(self._stop_event)
        finally:
            self._gate.release()
        self.last_summary = summary
        observe_transfer_posting_round("completed")
        return summary

    def run_forever(self) -> None:
        self._logger.info(
            "transfer_posting_scheduler_started",
            extra={
                "interval_seconds": self.interval_seconds,
                "warmup_seconds": self.warmup_seconds,
                "max_consecutive_errors": self.max_consecutive_errors,
            },
        )
        if self._pause(self.warmup_seconds):
            self._logger.info("transfer_posting_scheduler_stopped")
            return

        while not self._stop_event.is_set():
            try:
                self.run_round()
                self.consecutive_errors = 0
            except Exception:  # noqa: BLE001 - a failing round must not kill the loop
                if self._stop_event.is_set():
                    break
                self.consecutive_errors += 1
                observe_transfer_posting_round("failed")
                self._logger.exception(
                    "transfer_posting_round_failed",
                    extra={"consecutive_errors": self.consecutive_errors},
                )
                if self.consecutive_errors >= self.max_consecutive_errors:
                    self._logger.warning(
                        "transfer_posting_cooldown",
                        extra={
                            "consecutive_errors": self.consecutive_errors,
                            "cooldown_seconds": self.error_backoff_seconds,
                        },
                    )
                    observe_transfer_posting_cooldown()
                    stopped = self._pause(self.error_backoff_seconds)
                    self.consecutive_errors = 0
                    if stopped:
                        break

            if self._pause(self.interval_seconds):
                break

        self._logger.info("transfer_posting_scheduler_stopped")

    def _pause(self, seconds: float) -> bool:
        """Waits up to ``seconds``; returns True when stop was requested."""
        return self._stop_event.wait(seconds)

    def state(self) -> dict:
        return {
            "running": self.is_running(),
            "consecutive_errors": self.consecutive_errors,
            "interval_seconds": self.interval_seconds,
            "last_summary": dict(self.last_summary) if self.last_summary else None,
        }


def start_transfer_posting_scheduler(app: Flask) -> PollingScheduler | None:
    if not _should_start_scheduler(app):
        return None
    from shop_inventory.contexts.transfers.interfaces.workers.runtime import build_round_fn

    scheduler = PollingScheduler(
        build_round_fn(app),
        interval_seconds=_int_config(app, "TRANSFER_POSTING_INTERVAL_SECONDS", 10, 1, 3600),
        warmup_seconds=_int_config(app, "TRANSFER_POSTING_WARMUP_SECONDS", 7, 0, 600),
        max_consecutive_errors=_int_config(app, "TRANSFER_POSTING_MAX_CONSECUTIVE_ERRORS", 10, 1, 1000),
        error_backoff_seconds=_int_config(app, "TRANSFER_POSTING_ERROR_BACKOFF_SECONDS", 60, 1, 3600),
    )
    scheduler.start()
    app.extensions["transfer_posting_scheduler"] = scheduler
    app.logger.info(
        "Transfer posting scheduler started: interval=%ss batch=%s",
        scheduler.interval_seconds,
        _int_config(app, "TRANSFER_POSTING_BATCH_SIZE", 5, 1, 100),
    )
    return scheduler


def _should_start_scheduler(app: Flask) -> bool:
    if not app.config.get("TRANSFER_POSTING_ENABLED", False):
        return False
    if app.config.get("TESTING"):
        return False
    if app.debug:
        run_main = os.environ.get("WERKZEUG_RUN_MAIN")
        if run_main and run_main.lower() != "true":
            return False
    return True


def _int_config(app: Flask, key: str, default: int, min_value: int, max_value: int) -> int:
    try:
        value = int(app.config.get(key, default))
    except (TypeError, ValueError):
        value = default
    return max(min_value, min(value, max_value))
