from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from booking_swap.config import settings
from booking_swap.model import SwapTarget, SwapTargetEvent, utcnow


class EventType:
    TARGET_CREATED = "target_created"
    TARGET_CANCELLED = "target_cancelled"
    TARGET_RETARGETED = "target_retargeted"
    TARGET_EXPIRED = "target_expired"
    PROPOSAL_ACCEPTED = "proposal_accepted"
    PROPOSAL_REJECTED = "proposal_rejected"
    AUTO_REJECTED = "auto_rejected"
    MATCH_ROLLED_BACK = "match_rolled_back"


class Severity:
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


SORT_FIELDS = {
    "timestamp": SwapTargetEvent.created_at,
    "type": SwapTargetEvent.event_type,
    "actor": SwapTargetEvent.actor_id,
    "severity": SwapTargetEvent.severity,
}


@dataclass
class HistoryFilter:
    actor_id: Optional[int] = None
    swap_id: Optional[int] = None
    edge_id: Optional[int] = None
    event_types: List[str] = field(default_factory=list)
    severities: List[str] = field(default_factory=list)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


@dataclass
class HistoryPage:
    items: list
    total: int
    page: int
    limit: int

    @property
    def has_more(self) -> bool:
        return self.page * self.limit < self.total


def record_transition(
    db: Session,
    edge: SwapTarget,
    event_type: str,
    from_status: Optional[str],
    to_status: str,
    actor_id: Optional[int] = None,
    severity: str = Severity.INFO,
    reason: Optional[str] = None,
) -> SwapTargetEvent:
    """Append one entry to the transition log inside the caller's transaction"""
    if edge.id is None:
        db.flush()

    entry = SwapTargetEvent(
        swap_target_id=edge.id,
        event_type=event_type,
        from_status=from_status,
        to_status=to_status,
        actor_id=actor_id,
        severity=severity,
        reason=reason,
        created_at=utcnow(),
    )
    db.add(entry)
    return entry


def get_targeting_history(
    db: Session,
    filters: HistoryFilter = None,
    sort_field: str = "timestamp",
    sort_direction: str = "desc",
    page: int = 1,
    limit: int = None,
) -> HistoryPage:
    """Paginated read over the transition log; never mutates anything"""
    filters = filters or HistoryFilter()
    page = max(1, page)
    limit = limit or settings.HISTORY_PAGE_SIZE
    limit = max(1, min(limit, settings.HISTORY_MAX_PAGE_SIZE))

    query = (
        db.query(SwapTargetEvent, SwapTarget)
        .join(SwapTarget, SwapTargetEvent.swap_target_id == SwapTarget.id)
    )

    if filters.actor_id is not None:
        query = query.filter(SwapTargetEvent.actor_id == filters.actor_id)
    if filters.swap_id is not None:
        query = query.filter(
            or_(SwapTarget.source_swap_id == filters.swap_id, SwapTarget.target_swap_id == filters.swap_id)
        )
    if filters.edge_id is not None:
        query = query.filter(SwapTargetEvent.swap_target_id == filters.edge_id)
    if filters.event_types:
        query = query.filter(SwapTargetEvent.event_type.in_(filters.event_types))
    if filters.severities:
        query = query.filter(SwapTargetEvent.severity.in_(filters.severities))
    if filters.start_date:
        query = query.filter(SwapTargetEvent.created_at >= filters.start_date)
    if filters.end_date:
        query = query.filter(SwapTargetEvent.created_at <= filters.end_date)

    total = query.count()

    column = SORT_FIELDS.get(sort_field, SwapTargetEvent.created_at)
    if sort_direction.lower() == "asc":
        query = query.order_by(column.asc(), SwapTargetEvent.id.asc())
    else:
        query = query.order_by(column.desc(), SwapTargetEvent.id.desc())

    rows = query.offset((page - 1) * limit).limit(limit).all()

    items = [
        {
            "id": event.id,
            "edge_id": edge.id,
            "source_swap_id": edge.source_swap_id,
            "target_swap_id": edge.target_swap_id,
            "event_type": event.event_type,
            "from_status": event.from_status,
            "to_status": event.to_status,
            "actor_id": event.actor_id,
            "actor": "system" if event.actor_id is None else f"user:{event.actor_id}",
            "severity": event.severity,
            "reason": event.reason,
            "timestamp": event.created_at,
        }
        for event, edge in rows
    ]

    return HistoryPage(items=items, total=total, page=page, limit=limit)
