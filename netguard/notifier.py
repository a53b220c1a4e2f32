from __future__ import annotations

"""Supervisor notifications: bounded persisted queue plus Apprise fan-out."""

from typing import Any

from loguru import logger

from .models import Notification, NotificationType
from .state_store import StateStore


class NotificationGateway:
    """Forward notifications to any Apprise URL."""

    def __init__(self, notify_url: str, prefix: str = "[NetGuard]") -> None:
        self.notify_url = notify_url
        self.prefix = prefix.strip() or "[NetGuard]"
        self.app = None
        if not notify_url:
            return
        try:
            import apprise

            app = apprise.Apprise()
            if not app.add(notify_url):
                logger.warning("apprise rejected notify url: {}", notify_url)
                return
            self.app = app
        except Exception as exc:
            logger.warning("apprise init failed: {}", exc)

    @property
    def enabled(self) -> bool:
        return self.app is not None

    def send_notification(self, notification: Notification) -> bool:
        """Send one supervisor notification and return whether delivery succeeded."""
        return self.send_text(title=notification.title, body=notification.format_message(), tag=notification.type)

    def send_text(self, title: str, body: str, tag: str = "-") -> bool:
        """Send a plain text message with the prefix line."""
        if not self.app:
            logger.debug("notification gateway unavailable, {} not forwarded", tag)
            return False

        wrapped_body = f"{self.prefix}\n{body}"
        try:
            ok = self.app.notify(title=title, body=wrapped_body)
            if not ok:
                logger.error("notification send failed for {}", tag)
            return bool(ok)
        except Exception as exc:
            logger.exception("notification exception for {}: {}", tag, exc)
            return False


class NotificationQueue:
    """Most-recent-first notification list capped at `max_items`, kept in the store."""

    def __init__(self, store: StateStore, max_items: int = 20, gateway: NotificationGateway | None = None) -> None:
        self.store = store
        self.max_items = max(max_items, 1)
        self.gateway = gateway

    def push(
        self,
        type_: NotificationType,
        title: str,
        message: str,
        data: dict[str, Any] | None = None,
    ) -> Notification:
        notification = Notification(type=type_, title=title, message=message, data=data or {})
        items = [notification, *self.store.get_notifications()]
        self.store.set_notifications(items[: self.max_items])
        logger.info("notification {}: {}", type_, message)
        if self.gateway is not None:
            self.gateway.send_notification(notification)
        return notification

    def items(self) -> list[Notification]:
        return self.store.get_notifications()

    def pending(self) -> list[Notification]:
        return [item for item in self.items() if not item.acknowledged]

    def acknowledge(self, notification_id: str) -> bool:
        """Mark one entry as seen; False when the id is unknown."""
        items = self.items()
        for item in items:
            if item.id == notification_id:
                item.acknowledged = True
                self.store.set_notifications(items)
                return True
        return False

    def clear_acknowledged(self) -> int:
        items = self.items()
        kept = [item for item in items if not item.acknowledged]
        self.store.set_notifications(kept)
        return len(items) - len(kept)

    def clear(self) -> None:
        self.store.set_notifications([])
