from datetime import datetime
from typing import List

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from aws_lambda_powertools import Logger

from booking_swap.config import settings
from booking_swap.errors import (
    ConcurrentModification,
    DuplicateSwap,
    InvalidBookingState,
    InvalidSwapRequest,
    InvalidTransition,
    OwnershipMismatch,
    SwapNotFound,
)
from booking_swap.model import (
    Booking,
    BookingStatus,
    Swap,
    SwapMode,
    SwapStatus,
    TargetStatus,
    as_utc_naive,
    utcnow,
)
from booking_swap.services.collaborators import booking_collaborator, identity_collaborator
from booking_swap.services.edges import active_edges_touching, resolve_edges
from booking_swap.services.history import EventType, Severity
from booking_swap.services.locking import swap_locks

logger = Logger(service=settings.POWERTOOLS_SERVICE_NAME)


def get_swap(db: Session, swap_id: int) -> Swap:
    swap = db.get(Swap, swap_id)
    if not swap:
        raise SwapNotFound(f"Swap {swap_id} not found")
    return swap


def _validate_listing(mode, expires_at, auction_starts_at, auction_ends_at, now):
    if mode not in SwapMode.ALL:
        raise InvalidSwapRequest(f"Unknown swap mode: {mode}")

    if expires_at <= now:
        raise InvalidSwapRequest("Expiry must be in the future")

    if mode == SwapMode.ONE_FOR_ONE:
        if auction_starts_at or auction_ends_at:
            raise InvalidSwapRequest("Only auction swaps take an auction window")
        return

    if not auction_starts_at or not auction_ends_at:
        raise InvalidSwapRequest("Auction swaps need an auction window")
    if auction_ends_at <= auction_starts_at:
        raise InvalidSwapRequest("Auction window must end after it starts")
    if expires_at < auction_ends_at:
        raise InvalidSwapRequest("Auction swaps cannot expire before their window closes")


def create_swap(
    db: Session,
    booking_id: int,
    mode: str,
    expires_at: datetime,
    auction_starts_at: datetime = None,
    auction_ends_at: datetime = None,
    requester_id: int = None,
    now: datetime = None,
) -> Swap:
    """List a booking as exchangeable"""
    now = as_utc_naive(now) or utcnow()
    expires_at = as_utc_naive(expires_at)
    auction_starts_at = as_utc_naive(auction_starts_at)
    auction_ends_at = as_utc_naive(auction_ends_at)
    _validate_listing(mode, expires_at, auction_starts_at, auction_ends_at, now)

    booking = booking_collaborator.get_booking(db, booking_id)

    if requester_id is not None and booking.owner_id != requester_id:
        raise OwnershipMismatch(f"User {requester_id} does not own booking {booking_id}")

    if booking.status != BookingStatus.AVAILABLE:
        raise InvalidBookingState(f"Booking {booking_id} is {booking.status}, must be available")

    existing = db.query(Swap).filter(
        Swap.source_booking_id == booking_id,
        Swap.status == SwapStatus.ACTIVE,
    ).first()
    if existing:
        raise DuplicateSwap(f"Booking {booking_id} already has active swap {existing.id}")

    swap = Swap(
        source_booking_id=booking_id,
        mode=mode,
        auction_starts_at=auction_starts_at,
        auction_ends_at=auction_ends_at,
        expires_at=expires_at,
        status=SwapStatus.ACTIVE,
    )
    db.add(swap)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise DuplicateSwap(f"Booking {booking_id} already has an active swap")
    db.refresh(swap)

    logger.info(f"Created {mode} swap {swap.id} for booking {booking_id}")
    return swap


def _transition(swap: Swap, to_status: str) -> bool:
    """Returns False when the swap already sits in `to_status`"""
    if swap.status == to_status:
        return False
    if swap.status != SwapStatus.ACTIVE:
        raise InvalidTransition(f"Swap {swap.id} is {swap.status} and cannot become {to_status}")
    swap.status = to_status
    swap.updated_at = utcnow()
    return True


def mark_matched(swap: Swap) -> bool:
    return _transition(swap, SwapStatus.MATCHED)


def mark_cancelled(swap: Swap) -> bool:
    return _transition(swap, SwapStatus.CANCELLED)


def mark_expired(swap: Swap) -> bool:
    return _transition(swap, SwapStatus.EXPIRED)


def reactivate(swap: Swap) -> bool:
    """Undo a match; only used when the ledger mint fails"""
    if swap.status == SwapStatus.ACTIVE:
        return False
    if swap.status != SwapStatus.MATCHED:
        raise InvalidTransition(f"Swap {swap.id} is {swap.status} and cannot be reactivated")
    swap.status = SwapStatus.ACTIVE
    swap.updated_at = utcnow()
    return True


def expire_swaps(db: Session, now: datetime = None) -> int:
    """Expire every active swap whose expiry has passed, cancelling its edges"""
    now = as_utc_naive(now) or utcnow()
    due = [
        swap_id
        for (swap_id,) in db.query(Swap.id)
        .filter(Swap.status == SwapStatus.ACTIVE, Swap.expires_at <= now)
        .order_by(Swap.id)
        .all()
    ]
    if not due:
        return 0

    logger.info(f"Expiry sweep found {len(due)} due swaps")
    expired = 0
    for swap_id in due:
        try:
            with swap_locks.hold(db, [swap_id]) as locked:
                swap = locked[0] if locked else None
                if swap is None or not (swap.status == SwapStatus.ACTIVE and swap.is_expired_at(now)):
                    db.rollback()
                    continue

                mark_expired(swap)
                cancelled = resolve_edges(
                    db,
                    active_edges_touching(db, [swap.id]),
                    TargetStatus.CANCELLED,
                    EventType.TARGET_EXPIRED,
                    severity=Severity.WARNING,
                    reason=f"swap {swap.id} expired",
                )
                db.commit()
                expired += 1
                logger.info(f"Expired swap {swap.id}, cancelled {len(cancelled)} targets")
        except ConcurrentModification:
            db.rollback()
            logger.warning(f"Swap {swap_id} busy during expiry sweep, leaving it for the next run")

    return expired


def cancel_swap(db: Session, swap_id: int, requester_id: int) -> Swap:
    """Owner withdraws a listing"""
    get_swap(db, swap_id)
    with swap_locks.hold(db, [swap_id]) as locked:
        swap = locked[0]
        try:
            if not identity_collaborator.owns_swap(db, requester_id, swap):
                raise OwnershipMismatch(f"User {requester_id} does not own swap {swap_id}")

            if mark_cancelled(swap):
                resolve_edges(
                    db,
                    active_edges_touching(db, [swap.id]),
                    TargetStatus.CANCELLED,
                    EventType.TARGET_CANCELLED,
                    actor_id=requester_id,
                    reason=f"swap {swap.id} withdrawn",
                )
            db.commit()
        except Exception:
            db.rollback()
            raise

    logger.info(f"Swap {swap_id} cancelled by user {requester_id}")
    return swap


def browse_swaps(db: Session, viewer_id: int, location: str = None, now: datetime = None) -> List[Swap]:
    """Active swaps open to the viewer; the viewer's own listings are excluded"""
    now = as_utc_naive(now) or utcnow()
    query = (
        db.query(Swap)
        .join(Booking, Swap.source_booking_id == Booking.id)
        .filter(
            Swap.status == SwapStatus.ACTIVE,
            Swap.expires_at > now,
            Booking.owner_id != viewer_id,
        )
    )
    if location:
        query = query.filter(Booking.location.ilike(f"%{location}%"))
    return query.order_by(Swap.created_at.desc(), Swap.id.desc()).all()
