"""
Event System Module

Publish/subscribe dispatcher for the structured events the engine emits to the
presentation layer (status changes, payment lifecycle, sync failures, alerts).
"""

from enum import Enum
from typing import Callable, Dict, List, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone
import uuid
import logging


class DomainEvent(Enum):
    """Events emitted by the engine"""

    # Loan events
    LOAN_STATUS_CHANGED = "loan.status_changed"
    LOAN_KYC_CHANGED = "loan.kyc_changed"
    LOAN_DELETED = "loan.deleted"
    LOAN_RECONCILED = "loan.reconciled"

    # Payment events
    PAYMENT_RECORDED = "payment.recorded"
    PAYMENT_CONFIRMED = "payment.confirmed"
    PAYMENT_REJECTED = "payment.rejected"

    # Sync events
    SYNC_FAILED_TERMINAL = "sync.failed_terminal"

    # Alert events
    ALERT_RAISED = "alert.raised"
    ALERT_RETRACTED = "alert.retracted"


@dataclass
class EventPayload:
    """Payload for domain events"""
    event_type: DomainEvent
    entity_type: str
    entity_id: str
    data: Dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization"""
        return {
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'data': self.data,
            'timestamp': self.timestamp.isoformat(),
            'event_id': self.event_id
        }


class EventDispatcher:
    """Central event dispatcher - publish/subscribe pattern"""

    def __init__(self):
        self._handlers: Dict[DomainEvent, List[Callable]] = {}
        self._global_handlers: List[Callable] = []
        self.logger = logging.getLogger("emi_ledger.events")

    def subscribe(self, event_type: DomainEvent, handler: Callable) -> None:
        """Subscribe to a specific event type"""
        self._handlers.setdefault(event_type, []).append(handler)

    def subscribe_all(self, handler: Callable) -> None:
        """Subscribe to ALL events"""
        self._global_handlers.append(handler)

    def unsubscribe(self, event_type: DomainEvent, handler: Callable) -> None:
        """Unsubscribe from a specific event type"""
        try:
            self._handlers.get(event_type, []).remove(handler)
        except ValueError:
            self.logger.warning(
                f"Handler {getattr(handler, '__name__', repr(handler))} was not subscribed to {event_type.value}"
            )

    def publish(self, event: EventPayload) -> None:
        """Publish event to all subscribers"""
        self.logger.debug(f"Publishing {event.event_type.value} for {event.entity_type}:{event.entity_id}")

        for handler in self._handlers.get(event.event_type, []) + self._global_handlers:
            try:
                handler(event)
            except Exception as e:
                # Handler errors never propagate to the publisher
                self.logger.error(
                    f"Error in event handler {getattr(handler, '__name__', repr(handler))} "
                    f"for {event.event_type.value}: {e}"
                )

    def emit(self, event_type: DomainEvent, entity_type: str, entity_id: str,
             data: Optional[Dict[str, Any]] = None) -> EventPayload:
        """Build and publish an event in one call"""
        event = EventPayload(event_type, entity_type, entity_id, data or {})
        self.publish(event)
        return event

    def clear(self) -> None:
        """Clear all handlers"""
        self._handlers.clear()
        self._global_handlers.clear()

    def get_handler_count(self, event_type: Optional[DomainEvent] = None) -> int:
        """Get count of handlers for a specific event type or all"""
        if event_type:
            return len(self._handlers.get(event_type, []))
        return sum(len(h) for h in self._handlers.values()) + len(self._global_handlers)
