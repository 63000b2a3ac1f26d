from __future__ import annotations

import argparse

from shop_inventory import create_app
from shop_inventory.config import Config
from shop_inventory.contexts.transfers.interfaces.workers.runtime import build_gateway, build_round_fn, run_posting_round
from shop_inventory.scheduler import PollingScheduler


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Posts queued inventory transfers to the ERP.")
    parser.add_argument("--once", action="store_true", help="Process a single batch and exit.")
    parser.add_argument("--limit", type=int, default=0, help="Maximum entries per batch.")
    parser.add_argument("--interval", type=int, default=0, help="Seconds between batches.")
    return parser


def worker_config(base_config=Config):
    # This process owns the posting loop; a second in-app scheduler would overlap its rounds.
    return type(
        "TransferPostingWorkerConfig",
        (base_config,),
        {"TRANSFER_POSTING_ENABLED": False, "DB_AUTO_INIT": False},
    )


def main(argv: list[str] | None = None, config_class=Config) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    app = create_app(worker_config(config_class))
    gateway = build_gateway(app)

    if args.once:
        summary = run_posting_round(app, gateway, limit=max(1, int(args.limit)) if args.limit else None)
        app.logger.info("transfer_posting_worker_batch_completed", extra=dict(summary))
        return 0

    if args.limit:
        app.config["TRANSFER_POSTING_BATCH_SIZE"] = max(1, int(args.limit))
    interval_seconds = max(1, int(args.interval or app.config.get("TRANSFER_POSTING_INTERVAL_SECONDS", 10) or 10))
    scheduler = PollingScheduler(
        build_round_fn(app, gateway),
        interval_seconds=interval_seconds,
        warmup_seconds=0,
        max_consecutive_errors=int(app.config.get("TRANSFER_POSTING_MAX_CONSECUTIVE_ERRORS", 10) or 10),
        error_backoff_seconds=int(app.config.get("TRANSFER_POSTING_ERROR_BACKOFF_SECONDS", 60) or 60),
        name="transfer-posting-worker",
    )
    try:
        scheduler.run_forever()
    except KeyboardInterrupt:
        scheduler.stop()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
