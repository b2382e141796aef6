from __future__ import annotations

import argparse
import logging
import signal
from datetime import datetime, timezone

from apscheduler.schedulers.blocking import BlockingScheduler

import birthday_app.db as db
from birthday_app.config import Settings, load_settings
from birthday_app.db import init_db
from birthday_app.jobs.recovery import RecoveryRunner
from birthday_app.jobs.scheduler import SchedulerEngine
from birthday_app.ledger import SqliteMessageLedger
from birthday_app.notifier import build_delivery_client
from birthday_app.retry import RetryPolicy
from birthday_app.users import SqliteUserDirectory

logger = logging.getLogger(__name__)


def build_components(settings: Settings) -> tuple[SchedulerEngine, RecoveryRunner]:
    directory = SqliteUserDirectory()
    ledger = SqliteMessageLedger()
    client = build_delivery_client(settings.webhook_url, settings.delivery_timeout_seconds)
    policy = RetryPolicy(max_retries=settings.max_delivery_retries, base_delay_s=settings.backoff_base_seconds)
    engine = SchedulerEngine(
        directory,
        ledger,
        client,
        target_hour=settings.target_hour,
        max_ledger_retries=settings.max_ledger_retries,
        retry_window_days=settings.retry_window_days,
        policy=policy,
    )
    recovery = RecoveryRunner(
        directory,
        ledger,
        client,
        lookback_days=settings.recovery_lookback_days,
        policy=policy,
    )
    return engine, recovery


def build_scheduler(engine: SchedulerEngine, interval_s: float) -> BlockingScheduler:
    """Interval job for ``engine.tick()``.

    Runs that come due while a tick is still running are coalesced into one
    and dropped by ``max_instances=1``; the engine's own guard backs this up.
    """
    scheduler = BlockingScheduler(timezone="UTC")
    scheduler.add_job(
        engine.tick,
        trigger="interval",
        seconds=interval_s,
        id="birthday_tick",
        name="Birthday tick",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        next_run_time=datetime.now(timezone.utc),
    )
    return scheduler


def _install_signal_handlers(scheduler: BlockingScheduler) -> None:
    def _handle(signum, _frame) -> None:
        logger.info("Received signal %s, stopping scheduler", signum)
        if scheduler.running:
            scheduler.shutdown(wait=True)

    signal.signal(signal.SIGINT, _handle)
    signal.signal(signal.SIGTERM, _handle)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Birthday notification scheduler")
    parser.add_argument("--once", action="store_true", help="Run recovery and a single tick, then exit")
    parser.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    args = parser.parse_args(argv)

    logging.basicConfig(level=args.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    settings = load_settings()
    db.DB_PATH = settings.db_path
    init_db()

    engine, recovery = build_components(settings)
    # Recovery must finish before the first tick.
    recovery.run()

    if args.once:
        engine.tick()
        return

    scheduler = build_scheduler(engine, settings.scan_interval_seconds)
    _install_signal_handlers(scheduler)
    logger.info("Birthday scheduler started (every %ss, target hour %02d:00)", settings.scan_interval_seconds, settings.target_hour)
    try:
        scheduler.start()
    finally:
        if scheduler.running:
            scheduler.shutdown(wait=True)
    logger.info("Birthday scheduler stopped")


if __name__ == "__main__":
    main()
