"""
Tests for notification dispatch

Delivery is fire-and-forget: a failing channel is logged and reported as
False, never raised into the engine.
"""

import hashlib
import hmac
import json
import pytest
from datetime import datetime, timezone
from unittest.mock import Mock

import requests

from loan_engine.clock import FixedClock
from loan_engine.notifications import (
    CompositeNotificationDispatcher, LogNotificationDispatcher, NotificationPriority,
    NotificationType, StorageNotificationDispatcher, WebhookNotificationDispatcher,
)
from loan_engine.storage import InMemoryStorage


@pytest.fixture
def clock():
    return FixedClock(datetime(2026, 1, 15, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def store(clock):
    return StorageNotificationDispatcher(InMemoryStorage(), clock)


class TestStorageDispatcher:
    """Test in-app notifications"""

    def test_send_and_query(self, store):
        """Sent notifications are stored with their default priority"""
        assert store.send(NotificationType.FINAL_NOTICE, "MEM001", {"days_overdue": 30})
        store.send(NotificationType.REMINDER_3_DAYS, "MEM001")
        store.send(NotificationType.FINAL_NOTICE, "MEM002")

        mine = store.get_notifications("MEM001")
        assert len(mine) == 2
        final = store.get_notifications("MEM001", NotificationType.FINAL_NOTICE)
        assert final[0].priority == NotificationPriority.HIGH
        assert final[0].data == {"days_overdue": 30}

    def test_mark_read(self, store):
        """Read notifications drop out of the unread view"""
        store.send(NotificationType.APPLICATION_READY, "MEM001")
        notification = store.get_notifications("MEM001")[0]

        assert store.mark_read(notification.id)
        assert store.get_notifications("MEM001", unread_only=True) == []
        assert not store.mark_read("missing")

    def test_data_is_json_safe(self, store):
        """Non-JSON values in the payload are stringified"""
        store.send(NotificationType.LOAN_CLOSED, "MEM001", {"closed_at": datetime(2026, 2, 1)})
        assert store.get_notifications("MEM001")[0].data == {"closed_at": "2026-02-01 00:00:00"}


class TestWebhookDispatcher:
    """Test webhook delivery"""

    def test_posts_signed_payload(self, clock):
        """The body is signed with HMAC-SHA256 when a secret is configured"""
        session = Mock(spec=requests.Session)
        dispatcher = WebhookNotificationDispatcher("https://hooks.example.test/loans", 2.0,
                                                   "s3cret", clock, session=session)

        assert dispatcher.send(NotificationType.THRESHOLD_CRITICAL, "loan-committee",
                               {"utilization_pct": "95.00"})

        session.post.assert_called_once()
        args, kwargs = session.post.call_args
        assert args == ("https://hooks.example.test/loans",)
        assert kwargs["timeout"] == 2.0
        body = kwargs["data"]
        payload = json.loads(body)
        assert payload["type"] == "threshold_critical"
        assert payload["priority"] == "critical"
        assert payload["data"] == {"utilization_pct": "95.00"}
        expected = hmac.new(b"s3cret", body.encode(), hashlib.sha256).hexdigest()
        assert kwargs["headers"]["X-Signature-SHA256"] == expected

    def test_unsigned_without_secret(self, clock):
        """No secret, no signature header"""
        session = Mock(spec=requests.Session)
        dispatcher = WebhookNotificationDispatcher("https://hooks.example.test", clock=clock,
                                                   session=session)
        dispatcher.send(NotificationType.LOAN_CLOSED, "MEM001")
        assert "X-Signature-SHA256" not in session.post.call_args.kwargs["headers"]

    def test_failure_is_swallowed(self, clock):
        """Connection errors and HTTP errors become False"""
        session = Mock(spec=requests.Session)
        session.post.side_effect = requests.ConnectionError("unreachable")
        dispatcher = WebhookNotificationDispatcher("https://hooks.example.test", clock=clock,
                                                   session=session)
        assert dispatcher.send(NotificationType.FINAL_NOTICE, "MEM001") is False

        session.post.side_effect = None
        session.post.return_value.raise_for_status.side_effect = requests.HTTPError("500")
        assert dispatcher.send(NotificationType.FINAL_NOTICE, "MEM001") is False


class TestCompositeDispatcher:
    """Test fan-out"""

    def test_one_failing_channel_does_not_block_others(self, clock, store):
        """The storage copy is kept even when the webhook is down"""
        session = Mock(spec=requests.Session)
        session.post.side_effect = requests.Timeout("slow")
        webhook = WebhookNotificationDispatcher("https://hooks.example.test", clock=clock,
                                                session=session)
        composite = CompositeNotificationDispatcher(
            [webhook, store, LogNotificationDispatcher(clock)], clock,
        )

        assert composite.send(NotificationType.REMINDER_7_DAYS, "MEM001") is False
        assert len(store.get_notifications("MEM001")) == 1

    def test_all_channels_succeed(self, clock, store):
        """True when every channel delivered"""
        composite = CompositeNotificationDispatcher([store, LogNotificationDispatcher(clock)], clock)
        assert composite.send(NotificationType.APPLICATION_QUEUED, "MEM001")
