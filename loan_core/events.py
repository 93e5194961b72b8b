"""
Event System Module

Publish/subscribe dispatcher for domain events. Every committed write in the
loan core publishes one event carrying the cache keys it invalidates, so a
caching layer in front of the API can drop exactly the stale entries.
"""

from enum import Enum
from typing import Callable, Dict, List, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone
import uuid
import logging
from threading import RLock


class DomainEvent(Enum):
    """Domain events that can occur in the loan core"""

    # Loan events
    LOAN_CREATED = "loan.created"
    LOAN_APPROVED = "loan.approved"
    LOAN_REJECTED = "loan.rejected"
    LOAN_PAYMENT_RECORDED = "loan.payment_recorded"
    LOAN_REPAYMENT_RECORDED = "loan.repayment_recorded"
    LOAN_PAYMENT_REVERSED = "loan.payment_reversed"
    LOAN_COMPLETED = "loan.completed"
    LOAN_STATUS_CHANGED = "loan.status_changed"
    LOAN_UPDATED = "loan.updated"
    LOAN_DELETED = "loan.deleted"

    # Ledger events
    TRANSACTION_RECORDED = "ledger.transaction_recorded"
    TRANSACTION_REVERSED = "ledger.transaction_reversed"

    # Bank account events
    ACCOUNT_BALANCE_ADJUSTED = "account.balance_adjusted"


# Cache keys
LOAN_LIST_KEY = "loans:list"
DASHBOARD_KEY = "loans:dashboard"


def loan_detail_key(loan_id: str) -> str:
    return f"loans:detail:{loan_id}"


def branch_dashboard_key(branch_id: str) -> str:
    return f"loans:dashboard:branch:{branch_id}"


def account_key(account_id: str) -> str:
    return f"bank-accounts:detail:{account_id}"


def loan_invalidation_keys(loan_id: str, branch_id: Optional[str]) -> List[str]:
    """Cache keys made stale by any committed write to one loan"""
    keys = [LOAN_LIST_KEY, loan_detail_key(loan_id), DASHBOARD_KEY]
    if branch_id:
        keys.append(branch_dashboard_key(branch_id))
    return keys


@dataclass
class EventPayload:
    """Payload for domain events"""
    event_type: DomainEvent
    entity_type: str
    entity_id: str
    data: Dict[str, Any]
    invalidates: List[str] = field(default_factory=list)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization"""
        return {
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'data': self.data,
            'invalidates': list(self.invalidates),
            'timestamp': self.timestamp.isoformat(),
            'event_id': self.event_id
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EventPayload':
        """Create from dictionary"""
        return cls(
            event_type=DomainEvent(data['event_type']),
            entity_type=data['entity_type'],
            entity_id=data['entity_id'],
            data=data['data'],
            invalidates=list(data.get('invalidates', [])),
            timestamp=datetime.fromisoformat(data['timestamp']) if isinstance(data['timestamp'], str) else data['timestamp'],
            event_id=data['event_id']
        )


def _handler_name(handler: Callable) -> str:
    return getattr(handler, "__name__", repr(handler))


class EventDispatcher:
    """Central event dispatcher - publish/subscribe pattern"""

    def __init__(self):
        self._handlers: Dict[DomainEvent, List[Callable]] = {}
        self._global_handlers: List[Callable] = []
        self._lock = RLock()
        self.logger = logging.getLogger("loan_core.events")

    def subscribe(self, event_type: DomainEvent, handler: Callable) -> None:
        """Subscribe to a specific event type"""
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)
            self.logger.debug(f"Subscribed handler {_handler_name(handler)} to {event_type.value}")

    def subscribe_all(self, handler: Callable) -> None:
        """Subscribe to ALL events"""
        with self._lock:
            self._global_handlers.append(handler)
            self.logger.debug(f"Subscribed global handler {_handler_name(handler)}")

    def unsubscribe(self, event_type: DomainEvent, handler: Callable) -> None:
        """Unsubscribe from a specific event type"""
        with self._lock:
            try:
                self._handlers.get(event_type, []).remove(handler)
            except ValueError:
                self.logger.warning(f"Handler {_handler_name(handler)} was not subscribed to {event_type.value}")

    def publish(self, event: EventPayload) -> None:
        """Publish event to all subscribers; a failing handler never aborts the write"""
        with self._lock:
            handlers = list(self._handlers.get(event.event_type, [])) + list(self._global_handlers)

        self.logger.debug(f"Publishing event {event.event_type.value} for {event.entity_type}:{event.entity_id}")
        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                self.logger.error(f"Error in event handler {_handler_name(handler)} for {event.event_type.value}: {e}")

    def clear(self) -> None:
        """Clear all handlers"""
        with self._lock:
            self._handlers.clear()
            self._global_handlers.clear()

    def get_handler_count(self, event_type: Optional[DomainEvent] = None) -> int:
        """Get count of handlers for a specific event type or all"""
        with self._lock:
            if event_type:
                return len(self._handlers.get(event_type, []))
            total = sum(len(handlers) for handlers in self._handlers.values())
            return total + len(self._global_handlers)


def create_loan_event(event_type: DomainEvent, loan, **extra: Any) -> EventPayload:
    """Create a loan-related event"""
    data = {
        "loan_number": loan.loan_number,
        "direction": loan.direction.value,
        "status": loan.status.value,
        "branch_id": loan.branch_id,
        "total_amount": str(loan.total_amount),
        "paid_amount": str(loan.paid_amount),
        "due_amount": str(loan.due_amount)
    }
    data.update({k: str(v) if v is not None else None for k, v in extra.items()})
    return EventPayload(
        event_type=event_type,
        entity_type="loan",
        entity_id=loan.id,
        data=data,
        invalidates=loan_invalidation_keys(loan.id, loan.branch_id)
    )
