from __future__ import annotations

import json
import logging
import urllib.error
import urllib.request
from datetime import datetime, timezone

from birthday_app.errors import TransientDeliveryError
from birthday_app.models import User

logger = logging.getLogger(__name__)


def birthday_message(user: User) -> str:
    return f"Hey, {user.full_name} it's your birthday"


class DeliveryClient:
    def send(self, user: User) -> bool:
        raise NotImplementedError


class NoopDeliveryClient(DeliveryClient):
    def send(self, user: User) -> bool:
        logger.info("No webhook configured; would have sent %r", birthday_message(user))
        return True


class WebhookDeliveryClient(DeliveryClient):
    def __init__(self, webhook_url: str, timeout_s: float = 10) -> None:
        self.webhook_url = webhook_url
        self.timeout_s = timeout_s

    def _build_request(self, user: User) -> urllib.request.Request:
        payload = {
            "message": birthday_message(user),
            "user": {
                "id": user.id,
                "firstName": user.first_name,
                "lastName": user.last_name,
                "timezone": user.timezone,
            },
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        return urllib.request.Request(
            self.webhook_url,
            data=json.dumps(payload).encode("utf-8"),
            headers={"Content-Type": "application/json"},
            method="POST",
        )

    def send(self, user: User) -> bool:
        req = self._build_request(user)
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_s) as resp:
                status = resp.status
                resp.read()
        except urllib.error.HTTPError as exc:
            raise TransientDeliveryError(f"HTTP {exc.code} from webhook") from exc
        except (urllib.error.URLError, TimeoutError, OSError) as exc:
            raise TransientDeliveryError(f"Webhook transport error: {exc}") from exc

        if 200 <= status < 300:
            logger.info("Birthday message sent to %s", user.full_name)
            return True
        logger.warning("Webhook answered %s for %s", status, user.full_name)
        return False


def build_delivery_client(webhook_url: str, timeout_s: float) -> DeliveryClient:
    if webhook_url:
        return WebhookDeliveryClient(webhook_url, timeout_s=timeout_s)
    return NoopDeliveryClient()
