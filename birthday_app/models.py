from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from datetime import date

STATUS_PENDING = "pending"
STATUS_SENT = "sent"
STATUS_FAILED = "failed"


@dataclass(frozen=True)
class User:
    id: str
    first_name: str
    last_name: str
    birth_date: date
    timezone: str
    created_at: str = ""
    updated_at: str = ""

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    @property
    def birth_month(self) -> int:
        return self.birth_date.month

    @property
    def birth_day(self) -> int:
        return self.birth_date.day

    def has_birthday_on(self, day: date) -> bool:
        return (day.month, day.day) == (self.birth_month, self.birth_day)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> User:
        return cls(
            id=row["id"],
            first_name=row["first_name"],
            last_name=row["last_name"],
            birth_date=date.fromisoformat(row["birth_date"]),
            timezone=row["timezone"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def to_json(self) -> dict:
        return {
            "id": self.id,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "birthDate": self.birth_date.isoformat(),
            "timezone": self.timezone,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


@dataclass(frozen=True)
class BirthdayMessageRecord:
    id: str
    user_id: str
    message_date: date
    status: str = STATUS_PENDING
    sent_at: str | None = None
    retry_count: int = 0
    error_message: str | None = None
    created_at: str = ""
    updated_at: str = ""

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> BirthdayMessageRecord:
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            message_date=date.fromisoformat(row["message_date"]),
            status=row["status"],
            sent_at=row["sent_at"],
            retry_count=row["retry_count"],
            error_message=row["error_message"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
