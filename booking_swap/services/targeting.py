from datetime import datetime
from typing import List, Optional, Union

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from aws_lambda_powertools import Logger

from booking_swap.config import settings
from booking_swap.errors import (
    AuctionClosed,
    ConcurrentModification,
    InvalidTransition,
    NoActiveTarget,
    OwnershipMismatch,
    SelfTargetError,
    SourceAlreadyTargeting,
    SourceNotActive,
    TargetExclusivityViolation,
    TargetNotActive,
    TargetNotFound,
)
from booking_swap.events import EventDispatcher, TargetCreated, event_dispatcher
from booking_swap.model import Swap, SwapTarget, TargetStatus, utcnow
from booking_swap.services.collaborators import IdentityCollaborator, identity_collaborator
from booking_swap.services.edges import active_incoming, active_outgoing, transition_edge
from booking_swap.services.history import EventType, record_transition
from booking_swap.services.locking import SwapLockRegistry, swap_locks
from booking_swap.services.swaps import get_swap

logger = Logger(service=settings.POWERTOOLS_SERVICE_NAME)


class TargetingGraph:
    """
    Directed proposals between swaps.

    Every write locks both endpoint swaps, re-reads them and validates
    against the fresh rows before touching any edge.
    """

    def __init__(
        self,
        dispatcher: EventDispatcher = None,
        identity: IdentityCollaborator = None,
        locks: SwapLockRegistry = None,
        lock_timeout: float = None,
    ):
        self.dispatcher = dispatcher or event_dispatcher
        self.identity = identity or identity_collaborator
        self.locks = locks or swap_locks
        self.lock_timeout = lock_timeout

    def create_target(
        self,
        db: Session,
        source_swap_id: int,
        target_swap_id: int,
        proposer_id: int,
        now: datetime = None,
    ) -> SwapTarget:
        if source_swap_id == target_swap_id:
            raise SelfTargetError("A swap cannot target itself")

        get_swap(db, source_swap_id)
        get_swap(db, target_swap_id)

        with self.locks.hold(db, [source_swap_id, target_swap_id], self.lock_timeout) as swaps:
            swaps_by_id = {swap.id: swap for swap in swaps}
            try:
                edge, event = self._create_locked(
                    db,
                    swaps_by_id[source_swap_id],
                    swaps_by_id[target_swap_id],
                    proposer_id,
                    now or utcnow(),
                )
                db.commit()
            except IntegrityError:
                db.rollback()
                raise SourceAlreadyTargeting(f"Swap {source_swap_id} already targets another swap")
            except Exception:
                db.rollback()
                raise

        logger.info(f"Swap {source_swap_id} now targets swap {target_swap_id} (edge {edge.id})")
        self.dispatcher.publish([event])
        return edge

    def _create_locked(self, db: Session, source: Swap, target: Swap, proposer_id: int, now: datetime):
        if not self.identity.owns_swap(db, proposer_id, source):
            raise OwnershipMismatch(f"User {proposer_id} does not own swap {source.id}")

        target_owner = self.identity.resolve_owner(db, target)
        if target_owner == proposer_id:
            raise SelfTargetError("Cannot target a swap of your own booking")

        if not source.is_live(now):
            raise SourceNotActive(f"Swap {source.id} is {source.status} and cannot propose")
        if not target.is_live(now):
            raise TargetNotActive(f"Swap {target.id} is {target.status} and cannot receive proposals")

        if target.is_auction and not target.auction_open_at(now):
            raise AuctionClosed(f"Auction for swap {target.id} is not accepting proposals")

        current = active_outgoing(db, source.id)
        if current:
            raise SourceAlreadyTargeting(
                f"Swap {source.id} already targets swap {current.target_swap_id}; retarget instead"
            )

        if not target.is_auction:
            incoming = active_incoming(db, target.id)
            if incoming:
                raise TargetExclusivityViolation(
                    f"Swap {target.id} already has a pending proposal (target {incoming[0].id})"
                )

        edge = SwapTarget(
            source_swap_id=source.id,
            target_swap_id=target.id,
            status=TargetStatus.ACTIVE,
            created_at=now,
        )
        db.add(edge)
        db.flush()
        record_transition(db, edge, EventType.TARGET_CREATED, None, TargetStatus.ACTIVE, proposer_id)

        event = TargetCreated(
            edge_id=edge.id,
            source_swap_id=source.id,
            target_swap_id=target.id,
            proposer_id=proposer_id,
            target_owner_id=target_owner,
        )
        return edge, event

    def retarget(
        self,
        db: Session,
        source_swap_id: int,
        new_target_swap_id: int,
        proposer_id: int,
        now: datetime = None,
    ) -> SwapTarget:
        """Cancel the current proposal and create a new one, all or nothing"""
        if source_swap_id == new_target_swap_id:
            raise SelfTargetError("A swap cannot target itself")

        get_swap(db, source_swap_id)
        get_swap(db, new_target_swap_id)
        current = active_outgoing(db, source_swap_id)
        if current is None:
            raise NoActiveTarget(f"Swap {source_swap_id} has no active target to replace")

        lock_ids = [source_swap_id, current.target_swap_id, new_target_swap_id]
        with self.locks.hold(db, lock_ids, self.lock_timeout) as swaps:
            swaps_by_id = {swap.id: swap for swap in swaps}
            try:
                source = swaps_by_id[source_swap_id]
                if not self.identity.owns_swap(db, proposer_id, source):
                    raise OwnershipMismatch(f"User {proposer_id} does not own swap {source_swap_id}")

                current = active_outgoing(db, source_swap_id)
                if current is None:
                    raise NoActiveTarget(f"Swap {source_swap_id} has no active target to replace")
                if current.target_swap_id not in swaps_by_id:
                    raise ConcurrentModification(f"Swap {source_swap_id} changed target while retargeting")

                if current.target_swap_id == new_target_swap_id:
                    db.rollback()
                    return current

                transition_edge(
                    db,
                    current,
                    TargetStatus.CANCELLED,
                    EventType.TARGET_RETARGETED,
                    actor_id=proposer_id,
                    reason=f"retargeted to swap {new_target_swap_id}",
                )
                db.flush()

                edge, event = self._create_locked(
                    db, source, swaps_by_id[new_target_swap_id], proposer_id, now or utcnow()
                )
                db.commit()
            except IntegrityError:
                db.rollback()
                raise ConcurrentModification(f"Swap {source_swap_id} was retargeted concurrently")
            except Exception:
                db.rollback()
                raise

        logger.info(f"Swap {source_swap_id} retargeted from {current.target_swap_id} to {new_target_swap_id}")
        self.dispatcher.publish([event])
        return edge

    def cancel_target(self, db: Session, edge_id: int, requester_id: int) -> SwapTarget:
        """Withdraw (proposer) or dismiss (target owner) an active proposal"""
        snapshot = db.get(SwapTarget, edge_id)
        if not snapshot:
            raise TargetNotFound(f"Swap target {edge_id} not found")

        endpoints = [snapshot.source_swap_id, snapshot.target_swap_id]
        with self.locks.hold(db, endpoints, self.lock_timeout) as swaps:
            swaps_by_id = {swap.id: swap for swap in swaps}
            try:
                edge = db.get(SwapTarget, edge_id, populate_existing=True, with_for_update=True)
                source = swaps_by_id[edge.source_swap_id]
                target = swaps_by_id[edge.target_swap_id]

                if not (self.identity.owns_swap(db, requester_id, source)
                        or self.identity.owns_swap(db, requester_id, target)):
                    raise OwnershipMismatch(f"User {requester_id} is not a party to swap target {edge_id}")

                if edge.status != TargetStatus.ACTIVE:
                    raise InvalidTransition(f"Swap target {edge_id} is {edge.status} and cannot be cancelled")

                transition_edge(db, edge, TargetStatus.CANCELLED, EventType.TARGET_CANCELLED, actor_id=requester_id)
                db.commit()
            except Exception:
                db.rollback()
                raise

        logger.info(f"Swap target {edge_id} cancelled by user {requester_id}")
        return edge

    def get_incoming_targets(self, db: Session, swap_id: int, include_historical: bool = False) -> List[SwapTarget]:
        if not include_historical:
            return active_incoming(db, swap_id)
        return (
            db.query(SwapTarget)
            .filter(SwapTarget.target_swap_id == swap_id)
            .order_by(SwapTarget.created_at.desc(), SwapTarget.id.desc())
            .all()
        )

    def get_outgoing_target(
        self, db: Session, swap_id: int, include_historical: bool = False
    ) -> Union[Optional[SwapTarget], List[SwapTarget]]:
        """The active outgoing edge, or every outgoing edge newest first"""
        if not include_historical:
            return active_outgoing(db, swap_id)
        return (
            db.query(SwapTarget)
            .filter(SwapTarget.source_swap_id == swap_id)
            .order_by(SwapTarget.created_at.desc(), SwapTarget.id.desc())
            .all()
        )


targeting_graph = TargetingGraph()
