from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Tuple

from sqlalchemy.orm import Session
from aws_lambda_powertools import Logger

from booking_swap.config import settings
from booking_swap.errors import (
    EdgeNotActive,
    InvalidTransition,
    MatchNotFound,
    OwnershipMismatch,
    StaleSwapState,
    TargetNotFound,
)
from booking_swap.events import (
    EventDispatcher,
    MatchCreated,
    MatchRolledBack,
    ProposalRejected,
    event_dispatcher,
)
from booking_swap.model import (
    BookingStatus,
    MatchStatus,
    Swap,
    SwapMatch,
    SwapTarget,
    TargetStatus,
    utcnow,
)
from booking_swap.services.collaborators import (
    BookingCollaborator,
    IdentityCollaborator,
    booking_collaborator,
    identity_collaborator,
)
from booking_swap.services.edges import active_edges_touching, resolve_edges, transition_edge
from booking_swap.services.history import EventType, Severity, record_transition
from booking_swap.services.ledger import LedgerMintPublisher, ledger_publisher
from booking_swap.services.locking import SwapLockRegistry, swap_locks
from booking_swap.services.swaps import mark_matched, reactivate

logger = Logger(service=settings.POWERTOOLS_SERVICE_NAME)


APPLIED = "applied"
ALREADY_APPLIED = "already_applied"


@dataclass
class ResolutionResult:
    edge: SwapTarget
    outcome: str = APPLIED
    match: Optional[SwapMatch] = None

    @property
    def already_applied(self) -> bool:
        return self.outcome == ALREADY_APPLIED


class ProposalResolutionEngine:
    """
    Accepts and rejects proposals, and follows a match through minting.

    accept() is the only path that turns an edge into a match. It locks both
    swaps, re-reads everything and commits the edge, the auto-rejections,
    both swap statuses, both booking statuses and the match row together.
    """

    def __init__(
        self,
        dispatcher: EventDispatcher = None,
        ledger: LedgerMintPublisher = None,
        bookings: BookingCollaborator = None,
        identity: IdentityCollaborator = None,
        locks: SwapLockRegistry = None,
        lock_timeout: float = None,
    ):
        self.dispatcher = dispatcher or event_dispatcher
        self.ledger = ledger or ledger_publisher
        self.bookings = bookings or booking_collaborator
        self.identity = identity or identity_collaborator
        self.locks = locks or swap_locks
        self.lock_timeout = lock_timeout

    def _endpoints(self, db: Session, edge_id: int) -> Tuple[int, int]:
        snapshot = db.get(SwapTarget, edge_id)
        if not snapshot:
            raise TargetNotFound(f"Swap target {edge_id} not found")
        return snapshot.source_swap_id, snapshot.target_swap_id

    def _reload_edge(self, db: Session, edge_id: int) -> SwapTarget:
        edge = db.get(SwapTarget, edge_id, populate_existing=True, with_for_update=True)
        if not edge:
            raise TargetNotFound(f"Swap target {edge_id} not found")
        return edge

    def _require_target_owner(self, db: Session, user_id: int, target: Swap, action: str):
        if not self.identity.owns_swap(db, user_id, target):
            raise OwnershipMismatch(f"Only the owner of swap {target.id} can {action} this proposal")

    def _latest_match(self, db: Session, edge_id: int) -> Optional[SwapMatch]:
        return (
            db.query(SwapMatch)
            .filter(SwapMatch.swap_target_id == edge_id)
            .order_by(SwapMatch.id.desc())
            .first()
        )

    def accept(self, db: Session, edge_id: int, accepter_id: int, now: datetime = None) -> ResolutionResult:
        now = now or utcnow()
        source_id, target_id = self._endpoints(db, edge_id)

        with self.locks.hold(db, [source_id, target_id], self.lock_timeout) as swaps:
            swaps_by_id = {swap.id: swap for swap in swaps}
            try:
                edge = self._reload_edge(db, edge_id)
                source = swaps_by_id[edge.source_swap_id]
                target = swaps_by_id[edge.target_swap_id]

                if edge.status == TargetStatus.ACCEPTED:
                    self._require_target_owner(db, accepter_id, target, "accept")
                    match = self._latest_match(db, edge.id)
                    db.rollback()
                    logger.info(f"Swap target {edge_id} already accepted")
                    return ResolutionResult(edge, ALREADY_APPLIED, match)
                if edge.status != TargetStatus.ACTIVE:
                    raise EdgeNotActive(f"Swap target {edge_id} is {edge.status}")

                self._require_target_owner(db, accepter_id, target, "accept")

                for swap in (source, target):
                    if not swap.is_live(now):
                        raise StaleSwapState(f"Swap {swap.id} is {swap.status} or past its expiry")

                transition_edge(db, edge, TargetStatus.ACCEPTED, EventType.PROPOSAL_ACCEPTED, actor_id=accepter_id)

                # Every other live proposal touching either swap loses
                competing = [e for e in active_edges_touching(db, [source.id, target.id]) if e.id != edge.id]
                rejected = resolve_edges(
                    db,
                    competing,
                    TargetStatus.REJECTED,
                    EventType.AUTO_REJECTED,
                    actor_id=accepter_id,
                    reason=f"swap target {edge.id} was accepted",
                )

                mark_matched(source)
                mark_matched(target)

                expected = (BookingStatus.AVAILABLE,)
                self.bookings.set_booking_status(db, source.source_booking_id, BookingStatus.SWAPPING, expected)
                self.bookings.set_booking_status(db, target.source_booking_id, BookingStatus.SWAPPING, expected)

                match = SwapMatch(swap_target_id=edge.id, status=MatchStatus.PENDING_MINT, created_at=now)
                db.add(match)
                db.flush()

                match_event = MatchCreated(
                    match_id=match.id,
                    edge_id=edge.id,
                    source_booking_id=source.source_booking_id,
                    target_booking_id=target.source_booking_id,
                    source_owner_id=self.identity.resolve_owner(db, source),
                    target_owner_id=accepter_id,
                )
                rejection_events = [self._rejection_event(db, e, accepter_id) for e in rejected]

                db.commit()
            except Exception:
                db.rollback()
                raise

        logger.info(
            f"Swap target {edge_id} accepted, match {match.id} pending mint",
            extra={"auto_rejected": [e.id for e in rejected]},
        )

        events = list(rejection_events)
        if self.ledger.request_mint(match_event):
            events.insert(0, match_event)
            self.dispatcher.publish(events)
            return ResolutionResult(edge, APPLIED, match)

        self.dispatcher.publish(events)
        logger.error(f"Mint request for match {match.id} was not queued, rolling back")
        self.rollback(db, match.id, reason="mint request could not be queued")
        return ResolutionResult(edge, APPLIED, match)

    def _rejection_event(self, db: Session, edge: SwapTarget, rejected_by: Optional[int]) -> ProposalRejected:
        proposer = self.identity.resolve_owner(db, db.get(Swap, edge.source_swap_id))
        return ProposalRejected(
            edge_id=edge.id,
            source_swap_id=edge.source_swap_id,
            target_swap_id=edge.target_swap_id,
            proposer_id=proposer,
            rejected_by=rejected_by,
            reason=edge.reason,
        )

    def reject(self, db: Session, edge_id: int, rejecter_id: int, reason: str = None) -> ResolutionResult:
        source_id, target_id = self._endpoints(db, edge_id)

        with self.locks.hold(db, [source_id, target_id], self.lock_timeout) as swaps:
            swaps_by_id = {swap.id: swap for swap in swaps}
            try:
                edge = self._reload_edge(db, edge_id)
                target = swaps_by_id[edge.target_swap_id]

                if edge.status == TargetStatus.REJECTED:
                    self._require_target_owner(db, rejecter_id, target, "reject")
                    db.rollback()
                    logger.info(f"Swap target {edge_id} already rejected")
                    return ResolutionResult(edge, ALREADY_APPLIED)
                if edge.status != TargetStatus.ACTIVE:
                    raise EdgeNotActive(f"Swap target {edge_id} is {edge.status}")

                self._require_target_owner(db, rejecter_id, target, "reject")

                transition_edge(
                    db,
                    edge,
                    TargetStatus.REJECTED,
                    EventType.PROPOSAL_REJECTED,
                    actor_id=rejecter_id,
                    reason=reason,
                )
                event = self._rejection_event(db, edge, rejecter_id)
                db.commit()
            except Exception:
                db.rollback()
                raise

        logger.info(f"Swap target {edge_id} rejected by user {rejecter_id}")
        self.dispatcher.publish([event])
        return ResolutionResult(edge, APPLIED)

    def _locked_match(self, db: Session, match_id: int):
        match = db.get(SwapMatch, match_id)
        if not match:
            raise MatchNotFound(f"Match {match_id} not found")
        edge = db.get(SwapTarget, match.swap_target_id)
        return match, [edge.source_swap_id, edge.target_swap_id]

    def confirm_mint(self, db: Session, match_id: int) -> ResolutionResult:
        """Ledger reported success: the match is final"""
        _, endpoints = self._locked_match(db, match_id)

        with self.locks.hold(db, endpoints, self.lock_timeout) as swaps:
            swaps_by_id = {swap.id: swap for swap in swaps}
            try:
                match = db.get(SwapMatch, match_id, populate_existing=True, with_for_update=True)
                edge = self._reload_edge(db, match.swap_target_id)

                if match.status == MatchStatus.MINTED:
                    db.rollback()
                    return ResolutionResult(edge, ALREADY_APPLIED, match)
                if match.status != MatchStatus.PENDING_MINT:
                    raise InvalidTransition(f"Match {match_id} is {match.status} and cannot be minted")

                expected = (BookingStatus.SWAPPING,)
                for swap_id in (edge.source_swap_id, edge.target_swap_id):
                    booking_id = swaps_by_id[swap_id].source_booking_id
                    self.bookings.set_booking_status(db, booking_id, BookingStatus.MATCHED, expected)

                match.status = MatchStatus.MINTED
                match.resolved_at = utcnow()
                db.commit()
            except Exception:
                db.rollback()
                raise

        logger.info(f"Match {match_id} minted")
        return ResolutionResult(edge, APPLIED, match)

    def rollback(
        self, db: Session, match_id: int, reason: str = None, requester_id: int = None
    ) -> ResolutionResult:
        """
        Undo a pending match after a mint failure.

        Both swaps and the accepted edge go back to active and both bookings
        back to available. Proposals auto-rejected at accept time stay
        rejected.

        Without a requester the call comes from the mint pipeline itself.
        A requester must own one of the two matched swaps.
        """
        _, endpoints = self._locked_match(db, match_id)

        with self.locks.hold(db, endpoints, self.lock_timeout) as swaps:
            swaps_by_id = {swap.id: swap for swap in swaps}
            try:
                match = db.get(SwapMatch, match_id, populate_existing=True, with_for_update=True)
                edge = self._reload_edge(db, match.swap_target_id)

                if requester_id is not None and not any(
                    self.identity.owns_swap(db, requester_id, swap) for swap in swaps
                ):
                    raise OwnershipMismatch(f"Only a party to match {match_id} can roll it back")

                if match.status == MatchStatus.ROLLED_BACK:
                    db.rollback()
                    return ResolutionResult(edge, ALREADY_APPLIED, match)
                if match.status != MatchStatus.PENDING_MINT:
                    raise InvalidTransition(f"Match {match_id} is {match.status} and cannot be rolled back")
                if edge.status != TargetStatus.ACCEPTED:
                    raise InvalidTransition(f"Swap target {edge.id} is {edge.status}, expected accepted")

                edge.status = TargetStatus.ACTIVE
                edge.resolved_at = None
                edge.reason = reason
                record_transition(
                    db,
                    edge,
                    EventType.MATCH_ROLLED_BACK,
                    TargetStatus.ACCEPTED,
                    TargetStatus.ACTIVE,
                    actor_id=requester_id,
                    severity=Severity.ERROR,
                    reason=reason,
                )

                source = swaps_by_id[edge.source_swap_id]
                target = swaps_by_id[edge.target_swap_id]
                for swap in (source, target):
                    reactivate(swap)
                    booking = self.bookings.find_booking(db, swap.source_booking_id)
                    if booking is None or booking.status != BookingStatus.SWAPPING:
                        logger.warning(f"Booking {swap.source_booking_id} not swapping, leaving its status alone")
                        continue
                    booking.status = BookingStatus.AVAILABLE

                match.status = MatchStatus.ROLLED_BACK
                match.failure_reason = reason
                match.resolved_at = utcnow()

                event = MatchRolledBack(
                    match_id=match.id,
                    edge_id=edge.id,
                    source_owner_id=self.identity.resolve_owner(db, source),
                    target_owner_id=self.identity.resolve_owner(db, target),
                    reason=reason,
                )
                db.commit()
            except Exception:
                db.rollback()
                raise

        logger.warning(f"Match {match_id} rolled back: {reason}")
        self.dispatcher.publish([event])
        return ResolutionResult(edge, APPLIED, match)


resolution_engine = ProposalResolutionEngine()
