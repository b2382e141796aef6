from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable

from birthday_app.clock import Clock
from birthday_app.errors import UserNotFound
from birthday_app.ledger import MessageLedger
from birthday_app.models import STATUS_SENT, BirthdayMessageRecord, User
from birthday_app.notifier import DeliveryClient
from birthday_app.retry import RetryPolicy, send_with_retry
from birthday_app.users import UserDirectory

logger = logging.getLogger(__name__)


class EngineState(Enum):
    IDLE = "idle"
    RUNNING = "running"


def deliver_record(
    ledger: MessageLedger,
    client: DeliveryClient,
    policy: RetryPolicy,
    clock: Clock,
    user: User,
    record: BirthdayMessageRecord,
    error_text: str,
    sleep: Callable[[float], None] = time.sleep,
) -> bool:
    result = send_with_retry(client, user, policy, sleep=sleep)
    if result.ok:
        ledger.mark_sent(record.id, clock.now())
        return True
    if result.last_error:
        error_text = f"{error_text}: {result.last_error}"
    ledger.mark_failed(record.id, error_text)
    return False


class SchedulerEngine:
    """Runs one birthday scan per ``tick()``; overlapping ticks are dropped."""

    def __init__(
        self,
        directory: UserDirectory,
        ledger: MessageLedger,
        client: DeliveryClient,
        clock: Clock | None = None,
        *,
        target_hour: int = 9,
        max_ledger_retries: int = 5,
        retry_window_days: int = 1,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.directory = directory
        self.ledger = ledger
        self.client = client
        self.clock = clock or Clock()
        self.target_hour = target_hour
        self.max_ledger_retries = max_ledger_retries
        self.retry_window_days = retry_window_days
        self.policy = policy or RetryPolicy()
        self.sleep = sleep
        self._lock = threading.Lock()
        self._state = EngineState.IDLE

    @property
    def state(self) -> EngineState:
        with self._lock:
            return self._state

    def tick(self) -> dict | None:
        with self._lock:
            if self._state is EngineState.RUNNING:
                logger.info("Previous birthday check still running, skipping tick")
                return None
            self._state = EngineState.RUNNING
        try:
            return self._scan()
        except Exception:
            logger.exception("Birthday scan failed")
            return None
        finally:
            with self._lock:
                self._state = EngineState.IDLE

    def _scan(self) -> dict:
        now = self.clock.now()
        stats = {"candidates": 0, "fired": 0, "sent": 0, "failed": 0, "skipped": 0, "retried": 0, "errors": 0}
        delivered_ids: set[str] = set()

        for user in self._candidates(now):
            stats["candidates"] += 1
            try:
                self._process_user(user, now, stats, delivered_ids)
            except Exception:
                stats["errors"] += 1
                logger.exception("Error processing birthday for user %s (%s)", user.id, user.full_name)

        self._retry_failed(now, stats, delivered_ids)
        logger.info("Birthday tick done: %s", stats)
        return stats

    def _candidates(self, now: datetime) -> list[User]:
        # Local dates lag or lead UTC by at most a day.
        seen: set[str] = set()
        users: list[User] = []
        utc_today = now.date()
        for offset in (-1, 0, 1):
            day = utc_today + timedelta(days=offset)
            try:
                found = self.directory.users_with_birthday(day.month, day.day)
            except Exception:
                logger.exception("Directory lookup failed for %02d-%02d", day.month, day.day)
                continue
            for user in found:
                if user.id not in seen:
                    seen.add(user.id)
                    users.append(user)
        return users

    def _process_user(self, user: User, now: datetime, stats: dict, delivered_ids: set[str]) -> None:
        local = self.clock.local_time_at(now, user.timezone)
        if not user.has_birthday_on(local.date) or local.hour != self.target_hour:
            stats["skipped"] += 1
            return

        stats["fired"] += 1
        record = self.ledger.get_or_create(user.id, local.date)
        if record.status == STATUS_SENT:
            return

        logger.info("Sending birthday message to %s (%s, local %s %02d:xx)", user.full_name, user.timezone, local.date, local.hour)
        delivered_ids.add(record.id)
        if self._deliver(user, record, "Failed to send after retries"):
            stats["sent"] += 1
            logger.info("Birthday message sent to %s", user.full_name)
        else:
            stats["failed"] += 1
            logger.error("Failed to send birthday message to %s", user.full_name)

    def _retry_failed(self, now: datetime, stats: dict, delivered_ids: set[str]) -> None:
        try:
            records = self.ledger.list_failed(self.retry_window_days, self.max_ledger_retries, now.date())
        except Exception:
            logger.exception("Could not load failed birthday messages")
            return

        for record in records:
            if record.id in delivered_ids:
                continue
            try:
                user = self.directory.user_by_id(record.user_id)
                logger.info("Retrying failed message for %s (%s)", user.full_name, record.message_date)
                stats["retried"] += 1
                if self._deliver(user, record, "Retry failed"):
                    stats["sent"] += 1
                    logger.info("Retry successful for %s", user.full_name)
                else:
                    stats["failed"] += 1
            except UserNotFound:
                stats["skipped"] += 1
                logger.warning("User %s no longer exists; skipping retry of message %s", record.user_id, record.id)
            except Exception:
                stats["errors"] += 1
                logger.exception("Error retrying message %s for user %s", record.id, record.user_id)

    def _deliver(self, user: User, record: BirthdayMessageRecord, error_text: str) -> bool:
        return deliver_record(self.ledger, self.client, self.policy, self.clock, user, record, error_text, sleep=self.sleep)