from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from sqlalchemy.orm import Session
from typing import List, Optional
from datetime import datetime
from aws_lambda_powertools import Logger

from booking_swap.config import settings
from booking_swap.db import get_db
from booking_swap.errors import OwnershipMismatch
from booking_swap.model import Swap, as_utc_naive
from booking_swap.schema import (
    CompatibilityReport,
    HistoryPageResponse,
    IncomingCompatibility,
    RejectRequest,
    ResolutionResponse,
    RetargetRequest,
    RollbackRequest,
    SwapCard,
    SwapCreate,
    SwapMatchResponse,
    SwapResponse,
    SwapTargetResponse,
    TargetCreate,
)
from booking_swap.services import swaps as swap_service
from booking_swap.services.cards import compatibility_between, get_swap_card
from booking_swap.services.collaborators import identity_collaborator
from booking_swap.services.history import HistoryFilter, get_targeting_history
from booking_swap.services.resolution import ResolutionResult, resolution_engine
from booking_swap.services.targeting import targeting_graph

logger = Logger(service=settings.POWERTOOLS_SERVICE_NAME)

router = APIRouter()


def get_current_user_id(x_user_id: Optional[int] = Header(None)) -> int:
    """
    Acting user, as asserted by the upstream authenticator
    """
    if x_user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )
    return x_user_id


def _swap_response(db: Session, swap: Swap) -> SwapResponse:
    response = SwapResponse.model_validate(swap)
    response.owner_id = identity_collaborator.resolve_owner(db, swap)
    return response


def _resolution_response(result: ResolutionResult) -> ResolutionResponse:
    return ResolutionResponse(
        outcome=result.outcome,
        target=SwapTargetResponse.model_validate(result.edge),
        match=SwapMatchResponse.model_validate(result.match) if result.match else None,
    )


# Swaps

@router.post("/swaps", response_model=SwapResponse, status_code=status.HTTP_201_CREATED)
def create_swap(
    swap: SwapCreate,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    """
    List one of your bookings for exchange
    """
    new_swap = swap_service.create_swap(
        db,
        booking_id=swap.booking_id,
        mode=swap.mode,
        expires_at=swap.expires_at,
        auction_starts_at=swap.auction_starts_at,
        auction_ends_at=swap.auction_ends_at,
        requester_id=user_id,
    )
    return _swap_response(db, new_swap)


@router.get("/swaps", response_model=List[SwapResponse])
def browse_swaps(
    location: Optional[str] = None,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    """
    Active swaps from other users, optionally filtered by location
    """
    return [_swap_response(db, swap) for swap in swap_service.browse_swaps(db, user_id, location)]


@router.delete("/swaps/{swap_id}", response_model=SwapResponse)
def cancel_swap(
    swap_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    swap = swap_service.cancel_swap(db, swap_id, user_id)
    return _swap_response(db, swap)


@router.get("/swaps/{swap_id}/card", response_model=SwapCard)
def swap_card(
    swap_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    """
    Swap page: incoming proposals and their compatibility are shown to the owner only
    """
    card = get_swap_card(db, swap_id, user_id)
    swap = SwapResponse.model_validate(card["swap"])
    swap.owner_id = card["owner_id"]
    outgoing = card["outgoing_target"]

    return SwapCard(
        swap=swap,
        incoming_targets=[SwapTargetResponse.model_validate(edge) for edge in card["incoming_targets"]],
        incoming_count=card["incoming_count"],
        outgoing_target=SwapTargetResponse.model_validate(outgoing) if outgoing else None,
        compatibility_reports=[IncomingCompatibility(**entry) for entry in card["compatibility_reports"]],
    )


@router.get("/swaps/{swap_id}/targets/incoming", response_model=List[SwapTargetResponse])
def incoming_targets(
    swap_id: int,
    include_historical: bool = False,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    """
    Proposals received by a swap; owner only
    """
    swap = swap_service.get_swap(db, swap_id)
    if not identity_collaborator.owns_swap(db, user_id, swap):
        raise OwnershipMismatch(f"Only the owner of swap {swap_id} can list its proposals")
    return targeting_graph.get_incoming_targets(db, swap_id, include_historical)


@router.get("/swaps/{swap_id}/targets/outgoing", response_model=List[SwapTargetResponse])
def outgoing_targets(
    swap_id: int,
    include_historical: bool = False,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    """
    The swap's current target, or its whole targeting trail with include_historical
    """
    swap_service.get_swap(db, swap_id)
    if include_historical:
        return targeting_graph.get_outgoing_target(db, swap_id, include_historical=True)
    current = targeting_graph.get_outgoing_target(db, swap_id)
    return [current] if current else []


@router.get("/swaps/{swap_id}/compatibility/{other_swap_id}", response_model=CompatibilityReport)
def compatibility(
    swap_id: int,
    other_swap_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    """
    How well another swap's booking fits this one, recomputed on every call
    """
    swap = swap_service.get_swap(db, swap_id)
    other = swap_service.get_swap(db, other_swap_id)
    return compatibility_between(db, swap, other)


# Targets

@router.post("/targets", response_model=SwapTargetResponse, status_code=status.HTTP_201_CREATED)
def create_target(
    target: TargetCreate,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    """
    Propose your swap to another swap
    """
    return targeting_graph.create_target(db, target.source_swap_id, target.target_swap_id, user_id)


@router.put("/swaps/{swap_id}/target", response_model=SwapTargetResponse)
def retarget(
    swap_id: int,
    request: RetargetRequest,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    """
    Replace the swap's current proposal with one to a different swap
    """
    return targeting_graph.retarget(db, swap_id, request.target_swap_id, user_id)


@router.delete("/targets/{target_id}", response_model=SwapTargetResponse)
def cancel_target(
    target_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    return targeting_graph.cancel_target(db, target_id, user_id)


@router.put("/targets/{target_id}/accept", response_model=ResolutionResponse)
def accept_target(
    target_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    """
    Accept a proposal made to your swap
    """
    result = resolution_engine.accept(db, target_id, user_id)
    return _resolution_response(result)


@router.put("/targets/{target_id}/reject", response_model=ResolutionResponse)
def reject_target(
    target_id: int,
    request: Optional[RejectRequest] = None,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    """
    Decline a proposal made to your swap
    """
    reason = request.reason if request else None
    result = resolution_engine.reject(db, target_id, user_id, reason)
    return _resolution_response(result)


# Matches

@router.post("/matches/{match_id}/rollback", response_model=ResolutionResponse)
def rollback_match(
    match_id: int,
    request: Optional[RollbackRequest] = None,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    """
    Recovery for a match whose mint never completed, open to either party
    """
    reason = request.reason if request and request.reason else f"rolled back by user {user_id}"
    logger.warning(f"Manual rollback of match {match_id} requested by user {user_id}")
    result = resolution_engine.rollback(db, match_id, reason, requester_id=user_id)
    return _resolution_response(result)


# History

@router.get("/history", response_model=HistoryPageResponse)
def targeting_history(
    actor_id: Optional[int] = None,
    swap_id: Optional[int] = None,
    edge_id: Optional[int] = None,
    event_type: Optional[List[str]] = Query(None),
    severity: Optional[List[str]] = Query(None),
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    sort_field: str = "timestamp",
    sort_direction: str = "desc",
    page: int = Query(1, ge=1),
    limit: int = Query(settings.HISTORY_PAGE_SIZE, ge=1, le=settings.HISTORY_MAX_PAGE_SIZE),
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    """
    Filterable, paginated log of every proposal transition
    """
    filters = HistoryFilter(
        actor_id=actor_id,
        swap_id=swap_id,
        edge_id=edge_id,
        event_types=event_type or [],
        severities=severity or [],
        start_date=as_utc_naive(start_date),
        end_date=as_utc_naive(end_date),
    )
    result = get_targeting_history(db, filters, sort_field, sort_direction, page, limit)
    return HistoryPageResponse(
        items=result.items,
        total=result.total,
        page=result.page,
        limit=result.limit,
        has_more=result.has_more,
    )
