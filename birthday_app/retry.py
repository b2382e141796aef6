from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable

from birthday_app.models import User
from birthday_app.notifier import DeliveryClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeliveryResult:
    ok: bool
    last_error: str | None = None


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    base_delay_s: float = 1.0

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def should_retry(self, attempt_index: int) -> bool:
        return attempt_index < self.max_retries

    def delay_for(self, attempt_index: int) -> float:
        return self.base_delay_s * (2 ** attempt_index)


def send_with_retry(
    client: DeliveryClient,
    user: User,
    policy: RetryPolicy,
    sleep: Callable[[float], None] = time.sleep,
) -> DeliveryResult:
    """Try ``client.send`` up to ``policy.max_attempts`` times.

    Any exception from the client counts as a failed attempt. Between attempts
    the loop sleeps ``policy.delay_for(attempt_index)``. The result carries the
    error text of the last attempt when that attempt raised.
    """
    attempt_index = 0
    while True:
        last_error = None
        try:
            if client.send(user):
                return DeliveryResult(ok=True)
            logger.warning("Delivery attempt %d for %s was rejected", attempt_index + 1, user.full_name)
        except Exception as exc:
            last_error = str(exc) or type(exc).__name__
            logger.warning("Delivery attempt %d for %s failed: %s", attempt_index + 1, user.full_name, exc)

        if not policy.should_retry(attempt_index):
            logger.warning("Giving up on %s after %d attempts", user.full_name, attempt_index + 1)
            return DeliveryResult(ok=False, last_error=last_error)
        delay = policy.delay_for(attempt_index)
        logger.info("Retrying message for %s in %.2fs (retry %d)", user.full_name, delay, attempt_index + 1)
        sleep(delay)
        attempt_index += 1
