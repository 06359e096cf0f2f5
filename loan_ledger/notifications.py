"""
Notification Module

The payment processor and the status sweep never perform notification I/O
themselves: they return NotificationEvent values and the caller hands them to a
NotificationPort through dispatch_events(). Delivery is fire-and-forget; a failed
emission is logged and not retried.
"""

from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any, Iterable
from enum import Enum
from abc import ABC, abstractmethod
import uuid
import logging

import requests

from .storage import StorageInterface, StorageRecord
from .logging_config import get_logger


class MessageType(Enum):
    """Kinds of human-readable events"""
    OVERDUE = "overdue"
    PAYMENT_REMINDER = "payment_reminder"
    LOAN_COMPLETED = "loan_completed"
    LOAN_APPROVED = "loan_approved"
    LOAN_REJECTED = "loan_rejected"
    SYSTEM_ALERT = "system_alert"


class MessagePriority(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


@dataclass(frozen=True)
class NotificationEvent:
    """An event to emit, produced by ledger operations"""
    message_type: MessageType
    title: str
    message: str
    priority: MessagePriority = MessagePriority.MEDIUM
    customer_id: Optional[str] = None
    loan_id: Optional[str] = None
    action_required: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'message_type': self.message_type.value,
            'title': self.title,
            'message': self.message,
            'priority': self.priority.value,
            'customer_id': self.customer_id,
            'loan_id': self.loan_id,
            'action_required': self.action_required,
            'metadata': self.metadata,
        }


@dataclass
class Message(StorageRecord):
    """A persisted notification"""
    message_type: MessageType
    title: str
    message: str
    priority: MessagePriority
    customer_id: Optional[str] = None
    loan_id: Optional[str] = None
    action_required: bool = False
    is_read: bool = False
    read_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        result = self.base_dict()
        result.update({
            'message_type': self.message_type.value,
            'title': self.title,
            'message': self.message,
            'priority': self.priority.value,
            'customer_id': self.customer_id,
            'loan_id': self.loan_id,
            'action_required': self.action_required,
            'is_read': self.is_read,
            'read_at': self.read_at.isoformat() if self.read_at else None,
            'metadata': self.metadata,
        })
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Message':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            message_type=MessageType(data['message_type']),
            title=data['title'],
            message=data['message'],
            priority=MessagePriority(data['priority']),
            customer_id=data.get('customer_id'),
            loan_id=data.get('loan_id'),
            action_required=data.get('action_required', False),
            is_read=data.get('is_read', False),
            read_at=datetime.fromisoformat(data['read_at']) if data.get('read_at') else None,
            metadata=data.get('metadata') or {},
        )


class NotificationPort(ABC):
    """Destination for notification events"""

    @abstractmethod
    def emit(self, event: NotificationEvent) -> None:
        """Deliver one event; may raise on failure"""
        pass


class LogNotificationPort(NotificationPort):
    """Writes events to the application log"""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or get_logger("loan_ledger.notifications")

    def emit(self, event: NotificationEvent) -> None:
        self.logger.info(f"[{event.message_type.value}] {event.title}: {event.message}")


class StorageNotificationPort(NotificationPort):
    """Persists events as messages for the back-office inbox"""

    def __init__(self, storage: StorageInterface, table_name: str = "messages"):
        self.storage = storage
        self.table_name = table_name

    def emit(self, event: NotificationEvent) -> None:
        now = datetime.now(timezone.utc)
        message = Message(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            message_type=event.message_type,
            title=event.title,
            message=event.message,
            priority=event.priority,
            customer_id=event.customer_id,
            loan_id=event.loan_id,
            action_required=event.action_required,
            metadata=event.metadata,
        )
        self.storage.save(self.table_name, message.id, message.to_dict())

    def list_messages(
        self,
        message_type: Optional[MessageType] = None,
        unread_only: bool = False
    ) -> List[Message]:
        filters: Dict[str, Any] = {}
        if message_type:
            filters['message_type'] = message_type.value
        if unread_only:
            filters['is_read'] = False
        messages = [Message.from_dict(d) for d in self.storage.find(self.table_name, filters)]
        messages.sort(key=lambda m: m.created_at, reverse=True)
        return messages

    def get_message(self, message_id: str) -> Optional[Message]:
        data = self.storage.load(self.table_name, message_id)
        return Message.from_dict(data) if data else None

    def mark_read(self, message_id: str) -> Optional[Message]:
        message = self.get_message(message_id)
        if not message:
            return None
        if not message.is_read:
            message.is_read = True
            message.read_at = datetime.now(timezone.utc)
            message.updated_at = message.read_at
            self.storage.save(self.table_name, message.id, message.to_dict())
        return message

    def unread_count(self) -> int:
        return len(self.storage.find(self.table_name, {'is_read': False}))


class WebhookNotificationPort(NotificationPort):
    """POSTs events to an external endpoint"""

    def __init__(self, url: str, timeout: float = 5.0):
        self.url = url
        self.timeout = timeout

    def emit(self, event: NotificationEvent) -> None:
        payload = event.to_dict()
        payload['timestamp'] = datetime.now(timezone.utc).isoformat()
        response = requests.post(
            self.url,
            json=payload,
            timeout=self.timeout,
            headers={"Content-Type": "application/json"}
        )
        response.raise_for_status()


class CompositeNotificationPort(NotificationPort):
    """Fans an event out to several ports"""

    def __init__(self, ports: Iterable[NotificationPort]):
        self.ports = list(ports)

    def emit(self, event: NotificationEvent) -> None:
        for port in self.ports:
            port.emit(event)


def dispatch_events(
    port: NotificationPort,
    events: Iterable[NotificationEvent],
    logger: Optional[logging.Logger] = None
) -> int:
    """
    Emit events one by one; failures are logged and skipped.

    Returns:
        Number of events delivered
    """
    logger = logger or get_logger("loan_ledger.notifications")
    delivered = 0
    for event in events:
        try:
            port.emit(event)
            delivered += 1
        except Exception as e:
            logger.error(
                f"Failed to emit {event.message_type.value} notification "
                f"for loan {event.loan_id}: {e}"
            )
    return delivered
