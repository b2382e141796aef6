from __future__ import annotations

import uuid
from datetime import date, datetime, timedelta

from birthday_app.db import get_conn, utc_now_iso
from birthday_app.models import STATUS_FAILED, STATUS_PENDING, STATUS_SENT, BirthdayMessageRecord


class MessageLedger:
    """One record per (user, message date); the source of truth for "already handled"."""

    def get_or_create(self, user_id: str, message_date: date) -> BirthdayMessageRecord:
        raise NotImplementedError

    def get(self, record_id: str) -> BirthdayMessageRecord | None:
        raise NotImplementedError

    def mark_sent(self, record_id: str, sent_at: datetime) -> None:
        raise NotImplementedError

    def mark_failed(self, record_id: str, error_text: str) -> None:
        raise NotImplementedError

    def list_failed(self, max_age_days: int, max_retries: int, today: date) -> list[BirthdayMessageRecord]:
        raise NotImplementedError


class SqliteMessageLedger(MessageLedger):
    def get_or_create(self, user_id: str, message_date: date) -> BirthdayMessageRecord:
        # A conflicting insert means another writer got there first; reading back
        # returns that record.
        now = utc_now_iso()
        conn = get_conn()
        try:
            conn.execute(
                """
                INSERT INTO birthday_message (id, user_id, message_date, status, retry_count, created_at, updated_at)
                VALUES (?, ?, ?, ?, 0, ?, ?)
                ON CONFLICT(user_id, message_date) DO NOTHING
                """,
                (str(uuid.uuid4()), user_id, message_date.isoformat(), STATUS_PENDING, now, now),
            )
            conn.commit()
            row = conn.execute(
                "SELECT * FROM birthday_message WHERE user_id = ? AND message_date = ?",
                (user_id, message_date.isoformat()),
            ).fetchone()
            assert row is not None
            return BirthdayMessageRecord.from_row(row)
        finally:
            conn.close()

    def get(self, record_id: str) -> BirthdayMessageRecord | None:
        conn = get_conn()
        try:
            row = conn.execute("SELECT * FROM birthday_message WHERE id = ?", (record_id,)).fetchone()
            return BirthdayMessageRecord.from_row(row) if row else None
        finally:
            conn.close()

    def mark_sent(self, record_id: str, sent_at: datetime) -> None:
        conn = get_conn()
        try:
            conn.execute(
                """
                UPDATE birthday_message
                SET status = ?, sent_at = ?, error_message = NULL, updated_at = ?
                WHERE id = ? AND status != ?
                """,
                (STATUS_SENT, sent_at.isoformat(), utc_now_iso(), record_id, STATUS_SENT),
            )
            conn.commit()
        finally:
            conn.close()

    def mark_failed(self, record_id: str, error_text: str) -> None:
        # sent is terminal
        conn = get_conn()
        try:
            conn.execute(
                """
                UPDATE birthday_message
                SET status = ?, retry_count = retry_count + 1, error_message = ?, updated_at = ?
                WHERE id = ? AND status != ?
                """,
                (STATUS_FAILED, error_text, utc_now_iso(), record_id, STATUS_SENT),
            )
            conn.commit()
        finally:
            conn.close()

    def list_failed(self, max_age_days: int, max_retries: int, today: date) -> list[BirthdayMessageRecord]:
        oldest = today - timedelta(days=max_age_days)
        conn = get_conn()
        try:
            rows = conn.execute(
                """
                SELECT * FROM birthday_message
                WHERE status = ? AND retry_count < ? AND message_date >= ?
                ORDER BY message_date, created_at
                """,
                (STATUS_FAILED, max_retries, oldest.isoformat()),
            ).fetchall()
            return [BirthdayMessageRecord.from_row(r) for r in rows]
        finally:
            conn.close()