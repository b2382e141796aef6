from __future__ import annotations


class TransientDeliveryError(Exception):
    """Timeout, network failure or non-success response from the transport."""


class UserNotFound(LookupError):
    def __init__(self, user_id: str) -> None:
        super().__init__(f"User with id {user_id} not found")
        self.user_id = user_id


class InvalidTimezone(ValueError):
    def __init__(self, timezone_id: str) -> None:
        super().__init__(f"Invalid timezone: {timezone_id}")
        self.timezone_id = timezone_id
