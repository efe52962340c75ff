"""
Notification Dispatch Module

Fire-and-forget delivery of typed notifications raised by the engine:
delinquency reminders, threshold utilization alerts and application updates.
A failed delivery is logged and never propagates to the caller.
"""

import hashlib
import hmac
import json
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

import requests

from .clock import Clock, SystemClock
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord


logger = get_logger("loan_engine.notifications")


class NotificationType(Enum):
    """Types of notifications"""
    # Delinquency tiers
    REMINDER_3_DAYS = "reminder_3_days"
    REMINDER_7_DAYS = "reminder_7_days"
    FINAL_NOTICE = "final_notice"

    # Monthly threshold utilization
    THRESHOLD_WARNING = "threshold_warning"
    THRESHOLD_CRITICAL = "threshold_critical"

    # Application and loan updates
    APPLICATION_QUEUED = "application_queued"
    APPLICATION_READY = "application_ready"
    LOAN_CLOSED = "loan_closed"


class NotificationPriority(Enum):
    """Notification priority levels"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


DEFAULT_PRIORITIES = {
    NotificationType.REMINDER_3_DAYS: NotificationPriority.LOW,
    NotificationType.REMINDER_7_DAYS: NotificationPriority.MEDIUM,
    NotificationType.FINAL_NOTICE: NotificationPriority.HIGH,
    NotificationType.THRESHOLD_WARNING: NotificationPriority.MEDIUM,
    NotificationType.THRESHOLD_CRITICAL: NotificationPriority.CRITICAL,
    NotificationType.APPLICATION_QUEUED: NotificationPriority.LOW,
    NotificationType.APPLICATION_READY: NotificationPriority.MEDIUM,
    NotificationType.LOAN_CLOSED: NotificationPriority.LOW,
}


@dataclass
class Notification(StorageRecord):
    """A notification handed to a dispatcher"""
    notification_type: NotificationType
    recipient_id: str
    priority: NotificationPriority
    data: Dict[str, Any] = field(default_factory=dict)
    read: bool = False


class NotificationDispatcher(ABC):
    """
    Base dispatcher.

    send() never raises: delivery errors are logged and reported as False.
    """

    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or SystemClock()

    def send(self, notification_type: NotificationType, recipient_id: str,
             data: Optional[Dict[str, Any]] = None) -> bool:
        now = self.clock.now()
        notification = Notification(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            notification_type=notification_type,
            recipient_id=recipient_id,
            priority=DEFAULT_PRIORITIES.get(notification_type, NotificationPriority.MEDIUM),
            data=json.loads(json.dumps(data or {}, default=str)),
        )
        try:
            return self.deliver(notification)
        except Exception:
            log_action(
                logger, "warning",
                f"Notification delivery failed: {notification_type.value} to {recipient_id}",
                action="notification_failed", resource=recipient_id,
                extra={"notification_id": notification.id,
                       "dispatcher": type(self).__name__},
                exc_info=True,
            )
            return False

    @abstractmethod
    def deliver(self, notification: Notification) -> bool:
        """Deliver one notification; may raise"""
        pass


class LogNotificationDispatcher(NotificationDispatcher):
    """Writes notifications to the engine log"""

    def deliver(self, notification: Notification) -> bool:
        log_action(
            logger, "info",
            f"Notification {notification.notification_type.value} for {notification.recipient_id}",
            action="notification_sent", resource=notification.recipient_id,
            extra={"notification_id": notification.id,
                   "priority": notification.priority.value,
                   "data": notification.data},
        )
        return True


class StorageNotificationDispatcher(NotificationDispatcher):
    """Keeps in-app notifications in storage for later display"""

    def __init__(self, storage: StorageInterface, clock: Optional[Clock] = None,
                 table_name: str = "notifications"):
        super().__init__(clock)
        self.storage = storage
        self.table_name = table_name

    def deliver(self, notification: Notification) -> bool:
        self.storage.save(self.table_name, notification.id, notification.to_dict())
        return True

    def get_notifications(self, recipient_id: Optional[str] = None,
                          notification_type: Optional[NotificationType] = None,
                          unread_only: bool = False) -> List[Notification]:
        filters: Dict[str, Any] = {}
        if recipient_id is not None:
            filters['recipient_id'] = recipient_id
        if notification_type is not None:
            filters['notification_type'] = notification_type.value
        if unread_only:
            filters['read'] = False
        notifications = [Notification.from_dict(d) for d in self.storage.find(self.table_name, filters)]
        notifications.sort(key=lambda n: n.created_at)
        return notifications

    def mark_read(self, notification_id: str) -> bool:
        data = self.storage.load(self.table_name, notification_id)
        if data is None:
            return False
        notification = Notification.from_dict(data)
        notification.read = True
        notification.updated_at = self.clock.now()
        self.storage.save(self.table_name, notification.id, notification.to_dict())
        return True


class WebhookNotificationDispatcher(NotificationDispatcher):
    """POSTs notifications as JSON to an external endpoint"""

    def __init__(self, url: str, timeout: float = 5.0, secret: Optional[str] = None,
                 clock: Optional[Clock] = None, session: Optional[requests.Session] = None):
        super().__init__(clock)
        self.url = url
        self.timeout = timeout
        self.secret = secret
        self.session = session or requests.Session()

    def deliver(self, notification: Notification) -> bool:
        payload = {
            "notification_id": notification.id,
            "type": notification.notification_type.value,
            "priority": notification.priority.value,
            "recipient_id": notification.recipient_id,
            "timestamp": notification.created_at.isoformat(),
            "data": notification.data,
        }
        body = json.dumps(payload, sort_keys=True)
        headers = {"Content-Type": "application/json"}
        if self.secret:
            signature = hmac.new(self.secret.encode(), body.encode(), hashlib.sha256).hexdigest()
            headers["X-Signature-SHA256"] = signature

        response = self.session.post(self.url, data=body, headers=headers, timeout=self.timeout)
        response.raise_for_status()
        return True


class CompositeNotificationDispatcher(NotificationDispatcher):
    """Fans a notification out to several dispatchers"""

    def __init__(self, dispatchers: List[NotificationDispatcher], clock: Optional[Clock] = None):
        super().__init__(clock)
        self.dispatchers = list(dispatchers)

    def deliver(self, notification: Notification) -> bool:
        delivered = True
        for dispatcher in self.dispatchers:
            try:
                delivered = dispatcher.deliver(notification) and delivered
            except Exception:
                log_action(
                    logger, "warning",
                    f"{type(dispatcher).__name__} failed to deliver {notification.id}",
                    action="notification_failed", resource=notification.recipient_id,
                    exc_info=True,
                )
                delivered = False
        return delivered
