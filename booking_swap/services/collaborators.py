from typing import Optional
from sqlalchemy.orm import Session
from aws_lambda_powertools import Logger

from booking_swap.config import settings
from booking_swap.errors import BookingNotFound, BookingStatusConflict
from booking_swap.model import Booking, Swap

logger = Logger(service=settings.POWERTOOLS_SERVICE_NAME)


class BookingCollaborator:
    """Access to booking records; the engine only ever writes `status`"""

    def get_booking(self, db: Session, booking_id: int) -> Booking:
        booking = db.get(Booking, booking_id)
        if not booking:
            raise BookingNotFound(f"Booking {booking_id} not found")
        return booking

    def find_booking(self, db: Session, booking_id: Optional[int]) -> Optional[Booking]:
        """Lookup that never raises, for read paths that degrade instead"""
        if booking_id is None:
            return None
        return db.get(Booking, booking_id)

    def set_booking_status(self, db: Session, booking_id: int, status: str, expected: tuple = None):
        booking = self.get_booking(db, booking_id)
        if expected and booking.status not in expected:
            logger.warning(
                f"Booking {booking_id} is {booking.status}, cannot move to {status}",
                extra={"expected": list(expected)},
            )
            raise BookingStatusConflict(
                f"Booking {booking_id} is {booking.status}; expected one of {', '.join(expected)}"
            )
        booking.status = status
        return booking


class IdentityCollaborator:
    """Answers ownership questions by joining through the booking"""

    def __init__(self, bookings: BookingCollaborator = None):
        self.bookings = bookings or BookingCollaborator()

    def resolve_owner(self, db: Session, swap: Swap) -> Optional[int]:
        booking = self.bookings.find_booking(db, swap.source_booking_id)
        return booking.owner_id if booking else None

    def owns_booking(self, db: Session, user_id: int, booking_id: int) -> bool:
        booking = self.bookings.find_booking(db, booking_id)
        return booking is not None and user_id is not None and booking.owner_id == user_id

    def owns_swap(self, db: Session, user_id: int, swap: Swap) -> bool:
        return self.owns_booking(db, user_id, swap.source_booking_id)


booking_collaborator = BookingCollaborator()
identity_collaborator = IdentityCollaborator(booking_collaborator)
