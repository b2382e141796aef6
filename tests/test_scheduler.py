from __future__ import annotations

import threading
import unittest
from datetime import date, datetime, timezone

from birthday_app.clock import FrozenClock
from birthday_app.errors import TransientDeliveryError
from birthday_app.jobs.scheduler import EngineState, SchedulerEngine
from birthday_app.ledger import SqliteMessageLedger
from birthday_app.models import STATUS_FAILED, STATUS_SENT
from birthday_app.retry import RetryPolicy
from fakes import DBIsolatedTestCase, FakeDirectory, ScriptedDeliveryClient, make_user


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


class EngineTestCase(DBIsolatedTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.ledger = SqliteMessageLedger()
        self.clock = FrozenClock(utc(2026, 3, 3, 9, 0))
        self.sleeps: list[float] = []

    def make_engine(self, users, client, **kwargs) -> SchedulerEngine:
        kwargs.setdefault("policy", RetryPolicy(max_retries=0))
        return SchedulerEngine(
            FakeDirectory(users),
            self.ledger,
            client,
            self.clock,
            sleep=self.sleeps.append,
            **kwargs,
        )


class FiringWindowTests(EngineTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.user = make_user("user-1", date(1990, 3, 3), "UTC")
        self.client = ScriptedDeliveryClient(True)
        self.engine = self.make_engine([self.user], self.client)

    def test_before_target_hour_creates_nothing(self) -> None:
        self.clock.set(utc(2026, 3, 3, 8, 59))
        self.engine.tick()
        self.assertEqual(self.count_records("user-1", date(2026, 3, 3)), 0)
        self.assertEqual(self.client.calls, [])

    def test_start_of_target_hour_fires(self) -> None:
        self.clock.set(utc(2026, 3, 3, 9, 0))
        stats = self.engine.tick()
        self.assertEqual(self.count_records("user-1", date(2026, 3, 3)), 1)
        self.assertEqual(len(self.client.calls), 1)
        self.assertEqual(stats["fired"], 1)
        self.assertEqual(stats["sent"], 1)

    def test_end_of_target_hour_fires(self) -> None:
        self.clock.set(utc(2026, 3, 3, 9, 59))
        self.engine.tick()
        self.assertEqual(len(self.client.calls), 1)

    def test_after_target_hour_creates_nothing(self) -> None:
        self.clock.set(utc(2026, 3, 3, 10, 0))
        stats = self.engine.tick()
        self.assertEqual(self.count_records("user-1", date(2026, 3, 3)), 0)
        self.assertEqual(self.client.calls, [])
        self.assertEqual(stats["skipped"], 1)

    def test_configured_target_hour(self) -> None:
        engine = self.make_engine([self.user], self.client, target_hour=7)
        self.clock.set(utc(2026, 3, 3, 7, 30))
        engine.tick()
        self.assertEqual(len(self.client.calls), 1)

    def test_wrong_day_does_not_fire(self) -> None:
        self.clock.set(utc(2026, 3, 4, 9, 0))
        self.engine.tick()
        self.assertEqual(self.client.calls, [])


class TimezoneTests(EngineTestCase):
    def test_end_to_end_london(self) -> None:
        user = make_user("user-uk", date(1988, 3, 3), "Europe/London", first="Jane", last="Smith")
        client = ScriptedDeliveryClient(True)
        self.clock.set(utc(2026, 3, 3, 9, 10))

        self.make_engine([user], client).tick()

        record = self.ledger.get_or_create("user-uk", date(2026, 3, 3))
        self.assertEqual(record.status, STATUS_SENT)
        self.assertEqual(record.sent_at, utc(2026, 3, 3, 9, 10).isoformat())
        self.assertEqual(record.retry_count, 0)
        self.assertEqual(client.calls, [user])

    def test_uses_each_users_local_hour(self) -> None:
        ny = make_user("user-ny", date(1990, 7, 1), "America/New_York")
        la = make_user("user-la", date(1990, 7, 1), "America/Los_Angeles")
        client = ScriptedDeliveryClient(True)
        # 13:00 UTC in July: 09:00 in New York, 06:00 in Los Angeles
        self.clock.set(utc(2026, 7, 1, 13, 0))

        self.make_engine([ny, la], client).tick()

        self.assertEqual(client.calls, [ny])

    def test_local_date_ahead_of_utc(self) -> None:
        user = make_user("user-nz", date(1995, 3, 4), "Pacific/Auckland")
        client = ScriptedDeliveryClient(True)
        # 20:00 UTC on 3 March is 09:00 NZDT on 4 March
        self.clock.set(utc(2026, 3, 3, 20, 0))

        self.make_engine([user], client).tick()

        self.assertEqual(client.calls, [user])
        self.assertEqual(self.ledger.get_or_create("user-nz", date(2026, 3, 4)).status, STATUS_SENT)
        self.assertEqual(self.count_records("user-nz", date(2026, 3, 3)), 0)

    def test_local_date_behind_utc(self) -> None:
        user = make_user("user-hi", date(1995, 3, 3), "Pacific/Honolulu")
        client = ScriptedDeliveryClient(True)
        # 19:00 UTC on 3 March is 09:00 on 3 March in Honolulu; 4 March UTC is too late
        self.clock.set(utc(2026, 3, 4, 19, 0))
        self.make_engine([user], client).tick()
        self.assertEqual(client.calls, [])

        self.clock.set(utc(2026, 3, 3, 19, 0))
        self.make_engine([user], client).tick()
        self.assertEqual(client.calls, [user])


class IdempotencyTests(EngineTestCase):
    def test_sent_record_is_not_sent_again(self) -> None:
        user = make_user("user-1", date(1990, 3, 3))
        client = ScriptedDeliveryClient(True)
        engine = self.make_engine([user], client)

        engine.tick()
        first = self.ledger.get_or_create("user-1", date(2026, 3, 3))
        self.clock.set(utc(2026, 3, 3, 9, 30))
        engine.tick()
        engine.tick()

        second = self.ledger.get_or_create("user-1", date(2026, 3, 3))
        self.assertEqual(len(client.calls), 1)
        self.assertEqual(second.status, STATUS_SENT)
        self.assertEqual(second.sent_at, first.sent_at)
        self.assertEqual(self.count_records("user-1", date(2026, 3, 3)), 1)

    def test_failed_first_attempt_is_recorded(self) -> None:
        user = make_user("user-1", date(1990, 3, 3))
        client = ScriptedDeliveryClient(False)

        stats = self.make_engine([user], client, policy=RetryPolicy(max_retries=2, base_delay_s=1)).tick()

        record = self.ledger.get_or_create("user-1", date(2026, 3, 3))
        self.assertEqual(record.status, STATUS_FAILED)
        self.assertEqual(record.retry_count, 1)
        self.assertEqual(record.error_message, "Failed to send after retries")
        # one in-call round (3 attempts); the retry pass leaves it for the next tick
        self.assertEqual(len(client.calls), 3)
        self.assertEqual(self.sleeps, [1, 2])
        self.assertEqual(stats["failed"], 1)
        self.assertEqual(stats["retried"], 0)

    def test_transport_error_is_stored_with_the_record(self) -> None:
        user = make_user("user-1", date(1990, 3, 3))
        client = ScriptedDeliveryClient(TransientDeliveryError("HTTP 503 from webhook"))

        self.make_engine([user], client).tick()

        record = self.ledger.get_or_create("user-1", date(2026, 3, 3))
        self.assertEqual(record.error_message, "Failed to send after retries: HTTP 503 from webhook")


class FailedRecordInFiringHourTests(EngineTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.user = make_user("user-1", date(1990, 3, 3))
        self.record = self.ledger.get_or_create("user-1", date(2026, 3, 3))
        self.clock.set(utc(2026, 3, 3, 9, 30))

    def test_record_at_retry_cap_is_still_attempted(self) -> None:
        for _ in range(5):
            self.ledger.mark_failed(self.record.id, "boom")
        client = ScriptedDeliveryClient(True)

        stats = self.make_engine([self.user], client, max_ledger_retries=5).tick()

        self.assertEqual(len(client.calls), 1)
        self.assertEqual(self.ledger.get(self.record.id).status, STATUS_SENT)
        self.assertEqual(stats["sent"], 1)
        self.assertEqual(stats["retried"], 0)

    def test_record_under_cap_gets_one_round_per_tick(self) -> None:
        self.ledger.mark_failed(self.record.id, "boom")
        client = ScriptedDeliveryClient(False)
        engine = self.make_engine([self.user], client, max_ledger_retries=5)

        stats = engine.tick()

        record = self.ledger.get(self.record.id)
        self.assertEqual(len(client.calls), 1)
        self.assertEqual(record.status, STATUS_FAILED)
        self.assertEqual(record.retry_count, 2)
        self.assertEqual(record.error_message, "Failed to send after retries")
        self.assertEqual(stats["failed"], 1)
        self.assertEqual(stats["retried"], 0)

        self.clock.set(utc(2026, 3, 3, 9, 31))
        engine.tick()
        self.assertEqual(len(client.calls), 2)
        self.assertEqual(self.ledger.get(self.record.id).retry_count, 3)


class RetryPassTests(EngineTestCase):
    def test_retry_bound(self) -> None:
        user = make_user("user-1", date(1990, 3, 3))
        client = ScriptedDeliveryClient(False)
        engine = self.make_engine([user], client, max_ledger_retries=5)

        for hour in range(9, 20):
            self.clock.set(utc(2026, 3, 3, hour, 0))
            engine.tick()

        record = self.ledger.get_or_create("user-1", date(2026, 3, 3))
        self.assertEqual(record.status, STATUS_FAILED)
        self.assertEqual(record.retry_count, 5)
        self.assertEqual(record.error_message, "Retry failed")
        self.assertEqual(len(client.calls), 5)

    def test_retry_succeeds_on_later_tick(self) -> None:
        user = make_user("user-1", date(1990, 3, 3))
        client = ScriptedDeliveryClient(False, True)
        engine = self.make_engine([user], client)

        engine.tick()
        # past the firing hour only the retry pass touches the record
        self.clock.set(utc(2026, 3, 3, 10, 0))
        stats = engine.tick()

        record = self.ledger.get_or_create("user-1", date(2026, 3, 3))
        self.assertEqual(record.status, STATUS_SENT)
        self.assertEqual(record.retry_count, 1)
        self.assertEqual(stats["retried"], 1)
        self.assertEqual(len(client.calls), 2)

    def test_recency_cutoff(self) -> None:
        old_user = make_user("old", date(1990, 3, 8))
        recent_user = make_user("recent", date(1990, 3, 9))
        old = self.ledger.get_or_create("old", date(2026, 3, 8))
        recent = self.ledger.get_or_create("recent", date(2026, 3, 9))
        self.ledger.mark_failed(old.id, "boom")
        self.ledger.mark_failed(recent.id, "boom")
        client = ScriptedDeliveryClient(True)
        self.clock.set(utc(2026, 3, 10, 15, 0))

        self.make_engine([old_user, recent_user], client).tick()

        self.assertEqual(client.calls, [recent_user])
        self.assertEqual(self.ledger.get(recent.id).status, STATUS_SENT)
        self.assertEqual(self.ledger.get(old.id).status, STATUS_FAILED)
        self.assertEqual(self.ledger.get(old.id).retry_count, 1)

    def test_deleted_user_is_skipped(self) -> None:
        record = self.ledger.get_or_create("gone", date(2026, 3, 3))
        self.ledger.mark_failed(record.id, "boom")
        client = ScriptedDeliveryClient(True)

        with self.assertLogs("birthday_app.jobs.scheduler", level="WARNING"):
            stats = self.make_engine([], client).tick()

        self.assertEqual(client.calls, [])
        self.assertEqual(stats["skipped"], 1)
        self.assertEqual(self.ledger.get(record.id).status, STATUS_FAILED)


class _ExplodingLedger(SqliteMessageLedger):
    def __init__(self, bad_user_id: str) -> None:
        self.bad_user_id = bad_user_id

    def get_or_create(self, user_id, message_date):
        if user_id == self.bad_user_id:
            raise RuntimeError("disk on fire")
        return super().get_or_create(user_id, message_date)


class _BrokenDirectory(FakeDirectory):
    def users_with_birthday(self, month, day):
        raise RuntimeError("directory down")


class FaultIsolationTests(EngineTestCase):
    def test_one_users_failure_does_not_stop_the_others(self) -> None:
        bad = make_user("bad", date(1990, 3, 3))
        good = make_user("good", date(1990, 3, 3))
        client = ScriptedDeliveryClient(True)
        engine = SchedulerEngine(FakeDirectory([bad, good]), _ExplodingLedger("bad"), client, self.clock)

        with self.assertLogs("birthday_app.jobs.scheduler", level="ERROR"):
            stats = engine.tick()

        self.assertEqual(stats["errors"], 1)
        self.assertEqual(client.calls, [good])
        self.assertEqual(self.ledger.get_or_create("good", date(2026, 3, 3)).status, STATUS_SENT)

    def test_tick_never_raises(self) -> None:
        engine = SchedulerEngine(_BrokenDirectory([]), self.ledger, ScriptedDeliveryClient(True), self.clock)
        with self.assertLogs("birthday_app.jobs.scheduler", level="ERROR"):
            stats = engine.tick()
        self.assertEqual(stats["candidates"], 0)
        self.assertIs(engine.state, EngineState.IDLE)


class _BlockingClient(ScriptedDeliveryClient):
    def __init__(self) -> None:
        super().__init__(True)
        self.entered = threading.Event()
        self.release = threading.Event()

    def send(self, user):
        self.entered.set()
        self.release.wait(5)
        return super().send(user)


class SingleFlightTests(EngineTestCase):
    def test_overlapping_tick_is_dropped(self) -> None:
        user = make_user("user-1", date(1990, 3, 3))
        client = _BlockingClient()
        engine = self.make_engine([user], client)
        results: list = []

        worker = threading.Thread(target=lambda: results.append(engine.tick()))
        worker.start()
        self.assertTrue(client.entered.wait(5))
        self.assertIs(engine.state, EngineState.RUNNING)

        with self.assertLogs("birthday_app.jobs.scheduler", level="INFO") as logs:
            self.assertIsNone(engine.tick())
        self.assertTrue(any("still running" in line for line in logs.output))

        client.release.set()
        worker.join(5)

        self.assertEqual(results[0]["sent"], 1)
        self.assertEqual(len(client.calls), 1)
        self.assertIs(engine.state, EngineState.IDLE)
        self.assertIsNotNone(engine.tick())


if __name__ == "__main__":
    unittest.main()
