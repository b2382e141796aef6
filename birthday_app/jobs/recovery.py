from __future__ import annotations

import logging
import time
from datetime import date, datetime, timedelta
from typing import Callable

from birthday_app.clock import Clock
from birthday_app.jobs.scheduler import deliver_record
from birthday_app.ledger import MessageLedger
from birthday_app.models import STATUS_PENDING, User
from birthday_app.notifier import DeliveryClient
from birthday_app.retry import RetryPolicy
from birthday_app.users import UserDirectory

logger = logging.getLogger(__name__)


def local_birthday_dates(user: User, clock: Clock, now: datetime, days: int) -> list[date]:
    """Local dates in the last ``days`` days (today included) that fall on the user's birthday."""
    found: list[date] = []
    for i in range(days):
        local = clock.local_time_at(now - timedelta(days=i), user.timezone)
        if user.has_birthday_on(local.date) and local.date not in found:
            found.append(local.date)
    return found


class RecoveryRunner:
    """Startup pass that sends birthdays missed while the process was down.

    Only ``pending`` records are advanced. ``sent`` records are never re-sent
    and ``failed`` ones are left to the scheduler's retry pass.
    """

    def __init__(
        self,
        directory: UserDirectory,
        ledger: MessageLedger,
        client: DeliveryClient,
        clock: Clock | None = None,
        *,
        lookback_days: int = 7,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.directory = directory
        self.ledger = ledger
        self.client = client
        self.clock = clock or Clock()
        self.lookback_days = lookback_days
        self.policy = policy or RetryPolicy()
        self.sleep = sleep
        self.has_run = False

    def run(self) -> dict:
        stats = {"checked": 0, "recovered": 0, "failed": 0, "errors": 0}
        if self.has_run:
            logger.warning("Recovery already ran for this process; ignoring")
            return stats
        self.has_run = True

        logger.info("Checking for missed birthday messages (last %d days)", self.lookback_days)
        try:
            users = self.directory.all_users()
        except Exception:
            logger.exception("Error recovering missed messages: could not list users")
            return stats

        now = self.clock.now()
        for user in users:
            stats["checked"] += 1
            try:
                for missed_date in local_birthday_dates(user, self.clock, now, self.lookback_days):
                    record = self.ledger.get_or_create(user.id, missed_date)
                    if record.status != STATUS_PENDING:
                        continue
                    logger.info("Found missed birthday for %s on %s", user.full_name, missed_date)
                    if deliver_record(
                        self.ledger, self.client, self.policy, self.clock, user, record,
                        "Recovery attempt failed", sleep=self.sleep,
                    ):
                        stats["recovered"] += 1
                        logger.info("Recovered missed birthday message for %s", user.full_name)
                    else:
                        stats["failed"] += 1
            except Exception:
                stats["errors"] += 1
                logger.exception("Error checking missed birthdays for user %s (%s)", user.id, user.full_name)

        logger.info("Recovery done: %s", stats)
        return stats
