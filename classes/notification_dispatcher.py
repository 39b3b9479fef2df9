# classes/notification_dispatcher.py

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

import requests

from classes.errors import DispatchError
from classes.google_helpers import get_telegram_bot_token
from classes.snapshots import NotificationPlan

logger = logging.getLogger("craft_backend")

TELEGRAM_API_URL = "https://api.telegram.org"


class Messenger(Protocol):
    def send(self, recipient_id: str, text: str, actions: Optional[dict[str, Any]] = None) -> bool:
        ...


class TelegramMessenger:
    """Telegram Bot API `sendMessage`, Markdown parse mode, optional inline keyboard."""

    def __init__(self, token: Optional[str] = None, timeout: float = 10.0, http=None):
        self._token = token
        self.timeout = timeout
        self.http = http or requests.Session()

    @property
    def token(self) -> str:
        if not self._token:
            self._token = get_telegram_bot_token()
        return self._token

    def send(self, recipient_id: str, text: str, actions: Optional[dict[str, Any]] = None) -> bool:
        payload: dict[str, Any] = {
            "chat_id": recipient_id,
            "text": text,
            "parse_mode": "Markdown",
        }
        if actions:
            payload["reply_markup"] = actions

        try:
            resp = self.http.post(
                f"{TELEGRAM_API_URL}/bot{self.token}/sendMessage",
                json=payload,
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            raise DispatchError(f"Telegram request failed: {e}") from e

        if resp.status_code != 200:
            raise DispatchError(f"HTTP {resp.status_code}: {resp.text}")
        return True


@dataclass
class DispatchReport:
    sent: int = 0
    skipped: int = 0
    failed: list[dict[str, str]] = field(default_factory=list)

    @property
    def failure_count(self) -> int:
        return len(self.failed)


class NotificationDispatcher:
    """
    Best-effort push of already-committed notifications.

    Each delivery is attempted once. Failures are logged with recipient and
    notification type and reported back, never raised and never retried.
    """

    def __init__(self, messenger: Messenger, max_workers: int = 8):
        self.messenger = messenger
        self.max_workers = max_workers

    def dispatch(self, notifications: list[NotificationPlan]) -> DispatchReport:
        report = DispatchReport()
        deliverable = []
        for n in notifications:
            if n.channel_id:
                deliverable.append(n)
            else:
                report.skipped += 1
                logger.debug(f"No messaging channel for user {n.user_id}, {n.type} stays feed-only")

        if not deliverable:
            return report

        workers = min(self.max_workers, len(deliverable))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="dispatch") as pool:
            outcomes = list(pool.map(self._send_one, deliverable))

        for n, error in zip(deliverable, outcomes):
            if error is None:
                report.sent += 1
            else:
                report.failed.append({"user_id": n.user_id, "type": n.type, "error": error})
        return report

    def _send_one(self, n: NotificationPlan) -> Optional[str]:
        try:
            ok = self.messenger.send(n.channel_id, n.message, n.actions)
        except Exception as e:
            logger.warning(f"Dispatch of {n.type} to user {n.user_id} (channel {n.channel_id}) failed: {e}")
            return str(e)
        if not ok:
            logger.warning(f"Dispatch of {n.type} to user {n.user_id} (channel {n.channel_id}) was rejected")
            return "rejected"
        logger.info(f"Sent {n.type} to user {n.user_id}")
        return None
