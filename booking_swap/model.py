from sqlalchemy import (
    Column,
    Integer,
    String,
    DateTime,
    Float,
    ForeignKey,
    Index,
    text,
)
from sqlalchemy.orm import declarative_base, relationship
from datetime import datetime, timezone

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_utc_naive(value):
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class BookingStatus:
    AVAILABLE = "available"
    SWAPPING = "swapping"
    MATCHED = "matched"
    CANCELLED = "cancelled"


class SwapMode:
    ONE_FOR_ONE = "oneForOne"
    AUCTION = "auction"

    ALL = (ONE_FOR_ONE, AUCTION)


class SwapStatus:
    ACTIVE = "active"
    MATCHED = "matched"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class TargetStatus:
    ACTIVE = "active"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class MatchStatus:
    PENDING_MINT = "pendingMint"
    MINTED = "minted"
    ROLLED_BACK = "rolledBack"


class Booking(Base):
    """Booking owned by the booking service; this service only writes `status`"""
    __tablename__ = "bookings"

    id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(Integer, nullable=False, index=True)

    location = Column(String, nullable=True)
    check_in = Column(DateTime, nullable=True)
    check_out = Column(DateTime, nullable=True)
    original_price = Column(Float, nullable=True)
    swap_value = Column(Float, nullable=True)
    accommodation_type = Column(String, nullable=True)
    guest_count = Column(Integer, nullable=True)

    status = Column(String, nullable=False, default=BookingStatus.AVAILABLE)

    swaps = relationship("Swap", back_populates="source_booking")


class Swap(Base):
    __tablename__ = "swaps"

    id = Column(Integer, primary_key=True, index=True)
    source_booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=False, index=True)

    mode = Column(String, nullable=False, default=SwapMode.ONE_FOR_ONE)
    auction_starts_at = Column(DateTime, nullable=True)
    auction_ends_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=False)

    status = Column(String, nullable=False, default=SwapStatus.ACTIVE, index=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    source_booking = relationship("Booking", back_populates="swaps")

    __table_args__ = (
        # One live listing per booking
        Index(
            "uq_swaps_active_booking",
            "source_booking_id",
            unique=True,
            sqlite_where=text("status = 'active'"),
            postgresql_where=text("status = 'active'"),
        ),
    )

    @property
    def is_auction(self) -> bool:
        return self.mode == SwapMode.AUCTION

    def is_expired_at(self, now: datetime) -> bool:
        """Same predicate the expiry sweep uses"""
        return self.expires_at <= now

    def is_live(self, now: datetime) -> bool:
        return self.status == SwapStatus.ACTIVE and not self.is_expired_at(now)

    def auction_open_at(self, now: datetime) -> bool:
        if not self.is_auction:
            return False
        if self.auction_starts_at and now < self.auction_starts_at:
            return False
        if self.auction_ends_at and now >= self.auction_ends_at:
            return False
        return True


class SwapTarget(Base):
    __tablename__ = "swap_targets"

    id = Column(Integer, primary_key=True, index=True)
    source_swap_id = Column(Integer, ForeignKey("swaps.id"), nullable=False, index=True)
    target_swap_id = Column(Integer, ForeignKey("swaps.id"), nullable=False, index=True)

    status = Column(String, nullable=False, default=TargetStatus.ACTIVE)
    reason = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    resolved_at = Column(DateTime, nullable=True)

    source_swap = relationship("Swap", foreign_keys=[source_swap_id])
    target_swap = relationship("Swap", foreign_keys=[target_swap_id])

    __table_args__ = (
        # A swap can point at only one target at a time
        Index(
            "uq_swap_targets_active_source",
            "source_swap_id",
            unique=True,
            sqlite_where=text("status = 'active'"),
            postgresql_where=text("status = 'active'"),
        ),
        Index("ix_swap_targets_target_status", "target_swap_id", "status"),
    )


class SwapMatch(Base):
    __tablename__ = "swap_matches"

    id = Column(Integer, primary_key=True, index=True)
    # A rolled back edge goes active again and may be accepted into a new match
    swap_target_id = Column(Integer, ForeignKey("swap_targets.id"), nullable=False, index=True)

    status = Column(String, nullable=False, default=MatchStatus.PENDING_MINT)
    failure_reason = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    resolved_at = Column(DateTime, nullable=True)

    swap_target = relationship("SwapTarget")


class SwapTargetEvent(Base):
    """Append-only log of every edge transition"""
    __tablename__ = "swap_target_events"

    id = Column(Integer, primary_key=True, index=True)
    swap_target_id = Column(Integer, ForeignKey("swap_targets.id"), nullable=False, index=True)

    event_type = Column(String, nullable=False, index=True)
    from_status = Column(String, nullable=True)
    to_status = Column(String, nullable=False)
    actor_id = Column(Integer, nullable=True)  # None = system
    severity = Column(String, nullable=False, default="info")
    reason = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow, index=True)

    swap_target = relationship("SwapTarget")
