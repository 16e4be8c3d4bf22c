from sqlalchemy.orm import Session
from aws_lambda_powertools import Logger

from booking_swap.config import settings
from booking_swap.model import Swap
from booking_swap.services.collaborators import booking_collaborator, identity_collaborator
from booking_swap.services.compatibility import score_compatibility
from booking_swap.services.edges import active_incoming, active_outgoing
from booking_swap.services.swaps import get_swap

logger = Logger(service=settings.POWERTOOLS_SERVICE_NAME)


def compatibility_between(db: Session, swap: Swap, other: Swap) -> dict:
    """Score the other swap's booking against this swap's booking"""
    return score_compatibility(
        booking_collaborator.find_booking(db, other.source_booking_id),
        booking_collaborator.find_booking(db, swap.source_booking_id),
    )


def get_swap_card(db: Session, swap_id: int, viewer_id: int) -> dict:
    """
    Everything a swap page shows in one read.

    Incoming proposal details and their compatibility reports are private to
    the swap owner; everyone else sees the count and the outgoing target.
    """
    swap = get_swap(db, swap_id)
    owner_id = identity_collaborator.resolve_owner(db, swap)
    incoming = active_incoming(db, swap.id)
    is_owner = viewer_id is not None and owner_id == viewer_id

    reports = []
    if is_owner:
        for edge in incoming:
            reports.append({
                "edge_id": edge.id,
                "source_swap_id": edge.source_swap_id,
                "report": compatibility_between(db, swap, db.get(Swap, edge.source_swap_id)),
            })

    logger.debug(f"Built card for swap {swap_id}, viewer {viewer_id}, owner view {is_owner}")
    return {
        "swap": swap,
        "owner_id": owner_id,
        "incoming_targets": incoming if is_owner else [],
        "incoming_count": len(incoming),
        "outgoing_target": active_outgoing(db, swap.id),
        "compatibility_reports": reports,
    }
