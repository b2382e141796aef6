from __future__ import annotations

import uuid
from datetime import date

from birthday_app.clock import is_valid_timezone
from birthday_app.db import get_conn, utc_now_iso
from birthday_app.errors import InvalidTimezone, UserNotFound
from birthday_app.models import User


class UserDirectory:
    def users_with_birthday(self, month: int, day: int) -> list[User]:
        raise NotImplementedError

    def all_users(self) -> list[User]:
        raise NotImplementedError

    def user_by_id(self, user_id: str) -> User:
        raise NotImplementedError


class SqliteUserDirectory(UserDirectory):
    def users_with_birthday(self, month: int, day: int) -> list[User]:
        conn = get_conn()
        try:
            rows = conn.execute(
                "SELECT * FROM users WHERE birth_month = ? AND birth_day = ? ORDER BY created_at, id",
                (month, day),
            ).fetchall()
            return [User.from_row(r) for r in rows]
        finally:
            conn.close()

    def all_users(self) -> list[User]:
        return list_users()

    def user_by_id(self, user_id: str) -> User:
        return get_user(user_id)


def _check_timezone(timezone_id: str) -> str:
    timezone_id = timezone_id.strip()
    if not is_valid_timezone(timezone_id):
        raise InvalidTimezone(timezone_id)
    return timezone_id


def get_user(user_id: str) -> User:
    conn = get_conn()
    try:
        row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        if not row:
            raise UserNotFound(user_id)
        return User.from_row(row)
    finally:
        conn.close()


def list_users() -> list[User]:
    conn = get_conn()
    try:
        rows = conn.execute("SELECT * FROM users ORDER BY created_at, id").fetchall()
        return [User.from_row(r) for r in rows]
    finally:
        conn.close()


def create_user(first_name: str, last_name: str, birth_date: date, timezone_id: str) -> User:
    timezone_id = _check_timezone(timezone_id)
    user_id = str(uuid.uuid4())
    now = utc_now_iso()
    conn = get_conn()
    try:
        conn.execute(
            """
            INSERT INTO users (id, first_name, last_name, birth_date, birth_month, birth_day, timezone, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                user_id,
                first_name.strip(),
                last_name.strip(),
                birth_date.isoformat(),
                birth_date.month,
                birth_date.day,
                timezone_id,
                now,
                now,
            ),
        )
        conn.commit()
    finally:
        conn.close()
    return get_user(user_id)


def update_user(
    user_id: str,
    first_name: str | None = None,
    last_name: str | None = None,
    birth_date: date | None = None,
    timezone_id: str | None = None,
) -> User:
    current = get_user(user_id)
    if timezone_id is not None:
        timezone_id = _check_timezone(timezone_id)
    birth = birth_date or current.birth_date
    conn = get_conn()
    try:
        conn.execute(
            """
            UPDATE users
            SET first_name = ?, last_name = ?, birth_date = ?, birth_month = ?, birth_day = ?, timezone = ?, updated_at = ?
            WHERE id = ?
            """,
            (
                first_name.strip() if first_name else current.first_name,
                last_name.strip() if last_name else current.last_name,
                birth.isoformat(),
                birth.month,
                birth.day,
                timezone_id or current.timezone,
                utc_now_iso(),
                user_id,
            ),
        )
        conn.commit()
    finally:
        conn.close()
    return get_user(user_id)


def delete_user(user_id: str) -> None:
    conn = get_conn()
    try:
        cur = conn.execute("DELETE FROM users WHERE id = ?", (user_id,))
        conn.commit()
        if cur.rowcount == 0:
            raise UserNotFound(user_id)
    finally:
        conn.close()
