from typing import Iterable, List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from booking_swap.errors import InvalidTransition
from booking_swap.model import SwapTarget, TargetStatus, utcnow
from booking_swap.services.history import record_transition, Severity

TERMINAL = (TargetStatus.ACCEPTED, TargetStatus.REJECTED, TargetStatus.CANCELLED)


def active_incoming(db: Session, swap_id: int) -> List[SwapTarget]:
    return (
        db.query(SwapTarget)
        .filter(SwapTarget.target_swap_id == swap_id, SwapTarget.status == TargetStatus.ACTIVE)
        .order_by(SwapTarget.id)
        .all()
    )


def active_outgoing(db: Session, swap_id: int) -> Optional[SwapTarget]:
    return (
        db.query(SwapTarget)
        .filter(SwapTarget.source_swap_id == swap_id, SwapTarget.status == TargetStatus.ACTIVE)
        .first()
    )


def active_edges_touching(db: Session, swap_ids: Iterable[int]) -> List[SwapTarget]:
    swap_ids = list(swap_ids)
    return (
        db.query(SwapTarget)
        .filter(
            SwapTarget.status == TargetStatus.ACTIVE,
            or_(SwapTarget.source_swap_id.in_(swap_ids), SwapTarget.target_swap_id.in_(swap_ids)),
        )
        .order_by(SwapTarget.id)
        .all()
    )


def transition_edge(
    db: Session,
    edge: SwapTarget,
    to_status: str,
    event_type: str,
    actor_id: Optional[int] = None,
    severity: str = Severity.INFO,
    reason: Optional[str] = None,
) -> SwapTarget:
    """Move an active edge to a terminal status and log it"""
    if edge.status != TargetStatus.ACTIVE or to_status not in TERMINAL:
        raise InvalidTransition(f"Swap target {edge.id} cannot move from {edge.status} to {to_status}")

    from_status = edge.status
    edge.status = to_status
    edge.resolved_at = utcnow()
    if reason:
        edge.reason = reason

    record_transition(db, edge, event_type, from_status, to_status, actor_id, severity, reason)
    return edge


def resolve_edges(
    db: Session,
    edges: Iterable[SwapTarget],
    to_status: str,
    event_type: str,
    actor_id: Optional[int] = None,
    severity: str = Severity.WARNING,
    reason: Optional[str] = None,
) -> List[SwapTarget]:
    return [
        transition_edge(db, edge, to_status, event_type, actor_id, severity, reason)
        for edge in edges
        if edge.status == TargetStatus.ACTIVE
    ]
