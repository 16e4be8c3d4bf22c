import threading
import pytest
from datetime import timedelta
from unittest.mock import Mock

from booking_swap.errors import (
    BookingStatusConflict,
    ConcurrentModification,
    EdgeNotActive,
    InvalidTransition,
    MatchNotFound,
    OwnershipMismatch,
    StaleSwapState,
)
from booking_swap.events import MatchCreated, MatchRolledBack, ProposalRejected
from booking_swap.model import (
    Booking,
    BookingStatus,
    MatchStatus,
    Swap,
    SwapMatch,
    SwapMode,
    SwapStatus,
    SwapTarget,
    TargetStatus,
    utcnow,
)
from booking_swap.services.history import EventType, HistoryFilter, Severity, get_targeting_history
from booking_swap.services.locking import SwapLockRegistry
from booking_swap.services.resolution import ProposalResolutionEngine, resolution_engine
from booking_swap.services.targeting import TargetingGraph, targeting_graph


@pytest.fixture
def paris(make_swap):
    return make_swap(owner_id=1, location="Paris")


@pytest.fixture
def rome(make_swap):
    return make_swap(owner_id=2, location="Rome", price=1050.0)


@pytest.fixture
def proposal(db, paris, rome):
    return targeting_graph.create_target(db, paris.id, rome.id, 1)


def booking_status(db, swap):
    return db.get(Booking, swap.source_booking_id).status


def test_accept_creates_match(db, paris, rome, proposal, captured_events):
    result = resolution_engine.accept(db, proposal.id, accepter_id=2)

    db.expire_all()
    assert result.outcome == "applied"
    assert result.edge.status == TargetStatus.ACCEPTED
    assert result.match.status == MatchStatus.PENDING_MINT
    assert paris.status == SwapStatus.MATCHED
    assert rome.status == SwapStatus.MATCHED
    assert booking_status(db, paris) == BookingStatus.SWAPPING
    assert booking_status(db, rome) == BookingStatus.SWAPPING

    matches = [e for e in captured_events if isinstance(e, MatchCreated)]
    assert len(matches) == 1
    assert matches[0].match_id == result.match.id
    assert matches[0].source_booking_id == paris.source_booking_id
    assert matches[0].target_booking_id == rome.source_booking_id
    assert matches[0].source_owner_id == 1


def test_accept_is_idempotent(db, proposal, captured_events):
    first = resolution_engine.accept(db, proposal.id, 2)
    second = resolution_engine.accept(db, proposal.id, 2)

    assert second.already_applied
    assert second.match.id == first.match.id
    assert db.query(SwapMatch).count() == 1
    assert len([e for e in captured_events if isinstance(e, MatchCreated)]) == 1


def test_accept_requires_target_owner(db, proposal):
    with pytest.raises(OwnershipMismatch):
        resolution_engine.accept(db, proposal.id, accepter_id=1)

    db.expire_all()
    assert db.get(SwapTarget, proposal.id).status == TargetStatus.ACTIVE


def test_repeat_accept_by_stranger_is_refused(db, proposal):
    resolution_engine.accept(db, proposal.id, 2)

    with pytest.raises(OwnershipMismatch):
        resolution_engine.accept(db, proposal.id, 7)


def test_accept_after_source_expired(db, paris, proposal):
    paris.expires_at = utcnow() - timedelta(seconds=1)
    db.commit()

    with pytest.raises(StaleSwapState):
        resolution_engine.accept(db, proposal.id, 2)

    db.expire_all()
    assert db.get(SwapTarget, proposal.id).status == TargetStatus.ACTIVE
    assert db.query(SwapMatch).count() == 0


def test_accept_rolls_back_on_booking_conflict(db, paris, rome, proposal):
    db.get(Booking, rome.source_booking_id).status = BookingStatus.CANCELLED
    db.commit()

    with pytest.raises(BookingStatusConflict):
        resolution_engine.accept(db, proposal.id, 2)

    db.expire_all()
    assert db.get(SwapTarget, proposal.id).status == TargetStatus.ACTIVE
    assert paris.status == SwapStatus.ACTIVE
    assert rome.status == SwapStatus.ACTIVE
    assert booking_status(db, paris) == BookingStatus.AVAILABLE
    assert db.query(SwapMatch).count() == 0


def test_auction_accept_rejects_other_bids(db, make_swap, paris, captured_events):
    auction = make_swap(owner_id=2, location="Rome", mode=SwapMode.AUCTION)
    berlin = make_swap(owner_id=3, location="Berlin")
    winner = targeting_graph.create_target(db, paris.id, auction.id, 1)
    loser = targeting_graph.create_target(db, berlin.id, auction.id, 3)

    resolution_engine.accept(db, winner.id, 2)

    db.expire_all()
    assert db.get(SwapTarget, winner.id).status == TargetStatus.ACCEPTED
    assert db.get(SwapTarget, loser.id).status == TargetStatus.REJECTED
    assert berlin.status == SwapStatus.ACTIVE
    assert targeting_graph.get_outgoing_target(db, berlin.id) is None

    rejections = [e for e in captured_events if isinstance(e, ProposalRejected)]
    assert [e.edge_id for e in rejections] == [loser.id]
    assert rejections[0].proposer_id == 3

    auto = get_targeting_history(db, HistoryFilter(event_types=[EventType.AUTO_REJECTED]))
    assert auto.total == 1
    assert auto.items[0]["severity"] == Severity.WARNING


def test_accept_rejects_other_edges_touching_either_swap(db, make_swap, paris, rome, proposal):
    berlin = make_swap(owner_id=3, location="Berlin")
    into_paris = targeting_graph.create_target(db, berlin.id, paris.id, 3)

    resolution_engine.accept(db, proposal.id, 2)

    db.expire_all()
    assert db.get(SwapTarget, into_paris.id).status == TargetStatus.REJECTED


def test_reject(db, paris, rome, proposal, captured_events):
    result = resolution_engine.reject(db, proposal.id, rejecter_id=2, reason="dates do not work")

    db.expire_all()
    assert result.outcome == "applied"
    assert db.get(SwapTarget, proposal.id).status == TargetStatus.REJECTED
    assert db.get(SwapTarget, proposal.id).reason == "dates do not work"
    assert paris.status == SwapStatus.ACTIVE
    assert rome.status == SwapStatus.ACTIVE

    assert len(captured_events) == 1
    assert isinstance(captured_events[0], ProposalRejected)
    assert captured_events[0].rejected_by == 2

    # Both slots are free again
    again = targeting_graph.create_target(db, paris.id, rome.id, 1)
    assert again.status == TargetStatus.ACTIVE


def test_reject_is_idempotent(db, proposal, captured_events):
    resolution_engine.reject(db, proposal.id, 2)
    second = resolution_engine.reject(db, proposal.id, 2)

    assert second.already_applied
    assert len(captured_events) == 1


def test_reject_after_accept(db, proposal):
    resolution_engine.accept(db, proposal.id, 2)

    with pytest.raises(EdgeNotActive):
        resolution_engine.reject(db, proposal.id, 2)


def test_accept_after_cancel(db, proposal):
    targeting_graph.cancel_target(db, proposal.id, 1)

    with pytest.raises(EdgeNotActive):
        resolution_engine.accept(db, proposal.id, 2)


def test_concurrent_accepts_on_shared_swap(db, session_factory, make_swap, paris, rome, proposal):
    # proposal: paris -> rome (accepted by 2); competing: berlin -> paris (accepted by 1)
    berlin = make_swap(owner_id=3, location="Berlin")
    competing = targeting_graph.create_target(db, berlin.id, paris.id, 3)

    barrier = threading.Barrier(2)
    outcomes = {}

    def run(edge_id, accepter_id):
        session = session_factory()
        try:
            barrier.wait()
            outcomes[edge_id] = resolution_engine.accept(session, edge_id, accepter_id).outcome
        except Exception as e:
            outcomes[edge_id] = e
        finally:
            session.close()

    threads = [
        threading.Thread(target=run, args=(proposal.id, 2)),
        threading.Thread(target=run, args=(competing.id, 1)),
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    winners = [edge_id for edge_id, outcome in outcomes.items() if outcome == "applied"]
    losers = [outcome for outcome in outcomes.values() if isinstance(outcome, Exception)]
    assert len(winners) == 1
    assert len(losers) == 1
    assert isinstance(losers[0], EdgeNotActive)

    db.expire_all()
    assert db.query(SwapMatch).count() == 1
    assert db.get(Swap, paris.id).status == SwapStatus.MATCHED


def test_confirm_mint(db, paris, rome, proposal):
    match = resolution_engine.accept(db, proposal.id, 2).match

    result = resolution_engine.confirm_mint(db, match.id)
    again = resolution_engine.confirm_mint(db, match.id)

    db.expire_all()
    assert result.match.status == MatchStatus.MINTED
    assert again.already_applied
    assert booking_status(db, paris) == BookingStatus.MATCHED
    assert booking_status(db, rome) == BookingStatus.MATCHED


def test_rollback_restores_everything(db, make_swap, paris, rome, captured_events):
    auction = make_swap(owner_id=4, location="Madrid", mode=SwapMode.AUCTION)
    berlin = make_swap(owner_id=3, location="Berlin")
    winner = targeting_graph.create_target(db, paris.id, auction.id, 1)
    loser = targeting_graph.create_target(db, berlin.id, auction.id, 3)
    match = resolution_engine.accept(db, winner.id, 4).match

    result = resolution_engine.rollback(db, match.id, reason="ledger unavailable")

    db.expire_all()
    assert result.outcome == "applied"
    assert db.get(SwapMatch, match.id).status == MatchStatus.ROLLED_BACK
    assert db.get(SwapMatch, match.id).failure_reason == "ledger unavailable"
    assert db.get(SwapTarget, winner.id).status == TargetStatus.ACTIVE
    assert db.get(SwapTarget, loser.id).status == TargetStatus.REJECTED
    assert paris.status == SwapStatus.ACTIVE
    assert auction.status == SwapStatus.ACTIVE
    assert booking_status(db, paris) == BookingStatus.AVAILABLE
    assert booking_status(db, auction) == BookingStatus.AVAILABLE

    rolled_back = [e for e in captured_events if isinstance(e, MatchRolledBack)]
    assert len(rolled_back) == 1
    assert {rolled_back[0].source_owner_id, rolled_back[0].target_owner_id} == {1, 4}

    history = get_targeting_history(db, HistoryFilter(event_types=[EventType.MATCH_ROLLED_BACK]))
    assert history.total == 1
    assert history.items[0]["severity"] == Severity.ERROR
    assert history.items[0]["actor"] == "system"


def test_rollback_is_idempotent(db, proposal, captured_events):
    match = resolution_engine.accept(db, proposal.id, 2).match
    resolution_engine.rollback(db, match.id, "mint failed")

    again = resolution_engine.rollback(db, match.id, "mint failed")

    assert again.already_applied
    assert len([e for e in captured_events if isinstance(e, MatchRolledBack)]) == 1


def test_minted_match_cannot_roll_back(db, proposal):
    match = resolution_engine.accept(db, proposal.id, 2).match
    resolution_engine.confirm_mint(db, match.id)

    with pytest.raises(InvalidTransition):
        resolution_engine.rollback(db, match.id, "too late")


def test_rollback_unknown_match(db):
    with pytest.raises(MatchNotFound):
        resolution_engine.rollback(db, 404)


def test_rolled_back_edge_can_be_accepted_again(db, proposal):
    first = resolution_engine.accept(db, proposal.id, 2).match
    resolution_engine.rollback(db, first.id, "mint failed")

    second = resolution_engine.accept(db, proposal.id, 2)

    assert second.outcome == "applied"
    assert second.match.id != first.id
    assert db.query(SwapMatch).count() == 2


def test_unqueued_mint_rolls_back(db, paris, rome, proposal, captured_events):
    ledger = Mock()
    ledger.request_mint.return_value = False
    engine = ProposalResolutionEngine(ledger=ledger)

    result = engine.accept(db, proposal.id, 2)

    db.expire_all()
    ledger.request_mint.assert_called_once()
    assert db.get(SwapMatch, result.match.id).status == MatchStatus.ROLLED_BACK
    assert db.get(SwapTarget, proposal.id).status == TargetStatus.ACTIVE
    assert paris.status == SwapStatus.ACTIVE
    assert booking_status(db, rome) == BookingStatus.AVAILABLE
    assert [type(e) for e in captured_events] == [MatchRolledBack]


def test_rollback_by_stranger_is_refused(db, paris, rome, proposal, captured_events):
    match = resolution_engine.accept(db, proposal.id, 2).match

    with pytest.raises(OwnershipMismatch):
        resolution_engine.rollback(db, match.id, "not mine", requester_id=777)

    db.expire_all()
    assert db.get(SwapMatch, match.id).status == MatchStatus.PENDING_MINT
    assert rome.status == SwapStatus.MATCHED
    assert booking_status(db, rome) == BookingStatus.SWAPPING
    assert not [e for e in captured_events if isinstance(e, MatchRolledBack)]


def test_rollback_by_party_is_recorded_as_theirs(db, paris, rome, proposal):
    match = resolution_engine.accept(db, proposal.id, 2).match

    result = resolution_engine.rollback(db, match.id, "changed my mind", requester_id=1)

    assert result.outcome == "applied"
    history = get_targeting_history(db, HistoryFilter(event_types=[EventType.MATCH_ROLLED_BACK]))
    assert history.items[0]["actor"] == "user:1"


def test_accept_gives_up_when_swap_lock_is_held(db, rome, proposal):
    locks = SwapLockRegistry()
    engine = ProposalResolutionEngine(locks=locks, lock_timeout=0.1)
    held = locks._lock_for(rome.id)
    held.acquire()

    try:
        with pytest.raises(ConcurrentModification):
            engine.accept(db, proposal.id, 2)
    finally:
        held.release()
        locks._release(rome.id)

    db.expire_all()
    assert db.get(SwapTarget, proposal.id).status == TargetStatus.ACTIVE
    assert engine.accept(db, proposal.id, 2).outcome == "applied"


def test_lock_registry_drops_released_swaps(db, make_swap):
    locks = SwapLockRegistry()
    graph = TargetingGraph(locks=locks)
    engine = ProposalResolutionEngine(locks=locks)

    edges = []
    for owner_id in range(10, 20):
        source = make_swap(owner_id=owner_id, location="Paris")
        target = make_swap(owner_id=owner_id + 100, location="Rome")
        edges.append(graph.create_target(db, source.id, target.id, owner_id))
    engine.accept(db, edges[0].id, 110)

    with locks.hold(db, [edges[1].source_swap_id]):
        assert list(locks._locks) == [edges[1].source_swap_id]
    db.rollback()

    assert locks._locks == {}
    assert locks._holders == {}
