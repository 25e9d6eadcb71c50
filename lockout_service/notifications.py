import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from lockout_service.errors import NotificationDeliveryFailed

logger = logging.getLogger(__name__)

EMAIL = "email"
SMS = "sms"
ADMIN = "admin"


@dataclass(frozen=True)
class Notification:
    channel: str
    event: str
    account_id: str
    tier: int = 0
    locked_until: datetime | None = None
    reason: str | None = None
    attempts: int = 0
    actor: str | None = None

    @property
    def subject(self) -> str:
        if self.event == "lockout":
            return f"Account {self.account_id} locked (tier {self.tier})"
        if self.event == "unlock":
            return f"Account {self.account_id} unlocked"
        return f"Security alert for account {self.account_id}"


class NotificationChannel(Protocol):
    def send(self, notification: Notification) -> None: ...


class LoggingChannel:
    """Stands in for an external gateway by writing the notification to the log."""

    def __init__(self, name: str):
        self.name = name
        self.sent: list[Notification] = []

    def send(self, notification: Notification) -> None:
        self.sent.append(notification)
        logger.info("[%s] %s", self.name, notification.subject)


class NotificationDispatcher:
    def __init__(self, channels: dict | None = None, max_workers: int = 2, max_pending: int = 1000):
        self.channels = channels if channels is not None else {
            EMAIL: LoggingChannel(EMAIL),
            SMS: LoggingChannel(SMS),
            ADMIN: LoggingChannel(ADMIN),
        }
        self.max_pending = max_pending
        self._pending = 0
        self._pending_lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="notify")

    def dispatch(self, notification: Notification) -> Future | None:
        """Queue a notification. Returns None when it was dropped."""
        if notification.channel not in self.channels:
            logger.warning("No channel configured for %s notifications", notification.channel)
            return None
        with self._pending_lock:
            if self._pending >= self.max_pending:
                logger.warning("Notification queue full, dropping %s for %s", notification.event, notification.account_id)
                return None
            self._pending += 1
        try:
            future = self._executor.submit(self._deliver, notification)
        except RuntimeError:
            self._release()
            logger.warning("Notification dispatcher is shut down, dropping %s", notification.subject)
            return None
        future.add_done_callback(lambda _: self._release())
        return future

    def send(self, notification: Notification, timeout: float | None = None) -> bool:
        """Dispatch and wait up to ``timeout`` seconds. False means "not sent"."""
        future = self.dispatch(notification)
        if future is None:
            return False
        try:
            return future.result(timeout=timeout)
        except FutureTimeout:
            logger.warning("Timed out waiting for %s notification to %s", notification.channel, notification.account_id)
            return False

    def notify_lockout(self, policy, account_id: str, tier: int, locked_until, reason, attempts: int) -> list[Future]:
        settings = policy.notifications
        reason_value = getattr(reason, "value", reason)
        channels = []
        if settings.email_on_lockout:
            channels.append(EMAIL)
        if settings.sms_on_lockout:
            channels.append(SMS)
        if settings.admin_notifications and attempts >= settings.notification_threshold:
            channels.append(ADMIN)
        return self._fan_out(
            channels,
            event="lockout",
            account_id=account_id,
            tier=tier,
            locked_until=locked_until,
            reason=reason_value,
            attempts=attempts,
        )

    def notify_unlock(self, policy, account_id: str, actor: str) -> list[Future]:
        if not policy.notifications.email_on_unlock:
            return []
        return self._fan_out([EMAIL], event="unlock", account_id=account_id, actor=actor)

    def _fan_out(self, channels, **fields) -> list[Future]:
        futures = []
        for channel in channels:
            future = self.dispatch(Notification(channel=channel, **fields))
            if future is not None:
                futures.append(future)
        return futures

    def _deliver(self, notification: Notification) -> bool:
        channel = self.channels[notification.channel]
        try:
            channel.send(notification)
            return True
        except Exception as e:
            failure = NotificationDeliveryFailed(notification.channel, notification.account_id, str(e))
            logger.warning("%s", failure)
            return False

    def _release(self) -> None:
        with self._pending_lock:
            self._pending -= 1

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
