"""
Tests for notification ports and event dispatch
"""

import pytest
from unittest.mock import MagicMock, patch

import requests

from loan_ledger.storage import InMemoryStorage
from loan_ledger.notifications import (
    NotificationEvent, NotificationPort, MessageType, MessagePriority,
    StorageNotificationPort, LogNotificationPort, WebhookNotificationPort,
    CompositeNotificationPort, dispatch_events
)


def overdue_event(loan_id="loan-1") -> NotificationEvent:
    return NotificationEvent(
        message_type=MessageType.OVERDUE,
        title="Loan Overdue",
        message="Loan for Mutale Banda (NRC: 111111/11/1) is overdue. Amount due: K1300.00",
        priority=MessagePriority.HIGH,
        customer_id="cust-1",
        loan_id=loan_id,
        action_required=True,
        metadata={"days_overdue": 2}
    )


def completed_event() -> NotificationEvent:
    return NotificationEvent(
        message_type=MessageType.LOAN_COMPLETED,
        title="Loan Completed",
        message="Loan for Mutale Banda has been fully paid",
        priority=MessagePriority.LOW,
        loan_id="loan-2"
    )


class RecordingPort(NotificationPort):

    def __init__(self):
        self.events = []

    def emit(self, event):
        self.events.append(event)


class FailingPort(NotificationPort):

    def emit(self, event):
        raise ConnectionError("SMS gateway unreachable")


class TestStorageNotificationPort:
    """Test the persisted message inbox"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.port = StorageNotificationPort(self.storage)

    def test_emit_persists_message(self):
        self.port.emit(overdue_event())

        messages = self.port.list_messages()
        assert len(messages) == 1
        message = messages[0]
        assert message.message_type == MessageType.OVERDUE
        assert message.priority == MessagePriority.HIGH
        assert message.action_required
        assert not message.is_read
        assert message.metadata == {"days_overdue": 2}

    def test_filter_by_type(self):
        self.port.emit(overdue_event())
        self.port.emit(completed_event())

        completed = self.port.list_messages(message_type=MessageType.LOAN_COMPLETED)
        assert [m.loan_id for m in completed] == ["loan-2"]

    def test_mark_read(self):
        self.port.emit(overdue_event())
        self.port.emit(completed_event())
        assert self.port.unread_count() == 2

        target = self.port.list_messages(message_type=MessageType.OVERDUE)[0]
        updated = self.port.mark_read(target.id)

        assert updated.is_read
        assert updated.read_at is not None
        assert self.port.unread_count() == 1
        assert [m.loan_id for m in self.port.list_messages(unread_only=True)] == ["loan-2"]

    def test_mark_read_unknown(self):
        assert self.port.mark_read("missing") is None


class TestLogNotificationPort:

    def test_emit_logs_event(self):
        logger = MagicMock()
        LogNotificationPort(logger).emit(completed_event())

        logger.info.assert_called_once_with(
            "[loan_completed] Loan Completed: Loan for Mutale Banda has been fully paid"
        )


class TestWebhookNotificationPort:

    @patch("loan_ledger.notifications.requests.post")
    def test_posts_event_payload(self, mock_post):
        mock_post.return_value.raise_for_status.return_value = None
        port = WebhookNotificationPort("https://hooks.example.com/ledger", timeout=2.0)

        port.emit(overdue_event())

        mock_post.assert_called_once()
        args, kwargs = mock_post.call_args
        assert args[0] == "https://hooks.example.com/ledger"
        assert kwargs['timeout'] == 2.0
        assert kwargs['json']['message_type'] == "overdue"
        assert kwargs['json']['loan_id'] == "loan-1"
        assert 'timestamp' in kwargs['json']

    @patch("loan_ledger.notifications.requests.post")
    def test_http_error_raises(self, mock_post):
        mock_post.return_value.raise_for_status.side_effect = requests.HTTPError("502")
        port = WebhookNotificationPort("https://hooks.example.com/ledger")

        with pytest.raises(requests.HTTPError):
            port.emit(overdue_event())


class TestDispatch:
    """Test fire-and-forget fan-out"""

    def test_composite_fans_out(self):
        first, second = RecordingPort(), RecordingPort()
        CompositeNotificationPort([first, second]).emit(completed_event())

        assert len(first.events) == 1
        assert len(second.events) == 1

    def test_dispatch_counts_delivered(self):
        port = RecordingPort()
        assert dispatch_events(port, [overdue_event(), completed_event()]) == 2
        assert len(port.events) == 2

    def test_dispatch_swallows_failures(self):
        logger = MagicMock()
        delivered = dispatch_events(FailingPort(), [overdue_event("loan-9")], logger=logger)

        assert delivered == 0
        logger.error.assert_called_once()
        assert "loan-9" in logger.error.call_args[0][0]

    def test_dispatch_continues_after_failure(self):
        port = RecordingPort()
        calls = []

        class FlakyPort(NotificationPort):
            def emit(self, event):
                calls.append(event)
                if len(calls) == 1:
                    raise TimeoutError("slow gateway")
                port.emit(event)

        delivered = dispatch_events(FlakyPort(), [overdue_event(), completed_event()], logger=MagicMock())
        assert delivered == 1
        assert [e.loan_id for e in port.events] == ["loan-2"]

    def test_dispatch_nothing(self):
        assert dispatch_events(RecordingPort(), []) == 0
