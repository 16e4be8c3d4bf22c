"""Domain events and the in-process dispatcher.

Events are collected while a transaction is open and handed to the
dispatcher only after the commit succeeded. Handlers are side effects
(notifications, ledger requests); their failures are logged and never
propagate back into engine state.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Callable, Dict, List, Optional, Type
import uuid

from aws_lambda_powertools import Logger

from booking_swap.config import settings
from booking_swap.model import utcnow

logger = Logger(service=settings.POWERTOOLS_SERVICE_NAME)


@dataclass
class DomainEvent:
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()), init=False)
    occurred_at: datetime = field(default_factory=utcnow, init=False)

    @property
    def event_type(self) -> str:
        return self.__class__.__name__

    def to_message(self) -> dict:
        payload = asdict(self)
        payload["occurred_at"] = self.occurred_at.isoformat()
        payload["type"] = self.event_type
        return payload


@dataclass
class TargetCreated(DomainEvent):
    edge_id: int
    source_swap_id: int
    target_swap_id: int
    proposer_id: int
    target_owner_id: int


@dataclass
class ProposalRejected(DomainEvent):
    edge_id: int
    source_swap_id: int
    target_swap_id: int
    proposer_id: int
    rejected_by: Optional[int]
    reason: Optional[str] = None


@dataclass
class MatchCreated(DomainEvent):
    match_id: int
    edge_id: int
    source_booking_id: int
    target_booking_id: int
    source_owner_id: int
    target_owner_id: int


@dataclass
class MatchRolledBack(DomainEvent):
    match_id: int
    edge_id: int
    source_owner_id: int
    target_owner_id: int
    reason: Optional[str] = None


class EventDispatcher:
    """Routes events to every handler registered for their type"""

    def __init__(self):
        self._handlers: Dict[Type[DomainEvent], List[Callable]] = {}

    def register(self, event_type: Type[DomainEvent], handler: Callable[[DomainEvent], None]):
        self._handlers.setdefault(event_type, []).append(handler)
        logger.debug(f"Registered handler {getattr(handler, '__name__', handler)} for {event_type.__name__}")

    def clear(self):
        self._handlers.clear()

    def publish(self, events: List[DomainEvent]):
        for event in events:
            handlers = self._handlers.get(type(event), [])
            if not handlers:
                logger.debug(f"No handlers registered for {event.event_type}")
                continue

            for handler in handlers:
                try:
                    handler(event)
                except Exception as e:
                    logger.error(
                        f"Handler {getattr(handler, '__name__', handler)} failed for {event.event_type}: {e}",
                        extra={"event_id": event.event_id},
                    )


event_dispatcher = EventDispatcher()
