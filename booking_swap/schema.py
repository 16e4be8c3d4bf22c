from pydantic import BaseModel, Field
from datetime import datetime
from typing import Dict, List, Optional

from booking_swap.model import SwapMode


# Swap Schemas
class SwapCreate(BaseModel):
    booking_id: int
    mode: str = SwapMode.ONE_FOR_ONE
    expires_at: datetime
    auction_starts_at: Optional[datetime] = None
    auction_ends_at: Optional[datetime] = None


class SwapResponse(BaseModel):
    id: int
    source_booking_id: int
    owner_id: Optional[int] = None  # derived from the booking, never stored
    mode: str
    auction_starts_at: Optional[datetime] = None
    auction_ends_at: Optional[datetime] = None
    expires_at: datetime
    status: str
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# Targeting Schemas
class TargetCreate(BaseModel):
    source_swap_id: int
    target_swap_id: int


class RetargetRequest(BaseModel):
    target_swap_id: int


class RejectRequest(BaseModel):
    reason: Optional[str] = None


class RollbackRequest(BaseModel):
    reason: Optional[str] = None


class SwapTargetResponse(BaseModel):
    id: int
    source_swap_id: int
    target_swap_id: int
    status: str
    reason: Optional[str] = None
    created_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class SwapMatchResponse(BaseModel):
    id: int
    swap_target_id: int
    status: str
    failure_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ResolutionResponse(BaseModel):
    """Result of accept / reject / rollback"""
    outcome: str  # applied | already_applied
    target: SwapTargetResponse
    match: Optional[SwapMatchResponse] = None


# Compatibility Schemas
class CompatibilityFactor(BaseModel):
    score: int
    weight: float
    details: str
    status: str  # excellent | good | fair | poor


class CompatibilityReport(BaseModel):
    overallScore: int = Field(ge=0, le=100)
    factors: Dict[str, CompatibilityFactor]
    recommendations: List[str] = []
    potentialIssues: List[str] = []


class IncomingCompatibility(BaseModel):
    edge_id: int
    source_swap_id: int
    report: CompatibilityReport


class SwapCard(BaseModel):
    swap: SwapResponse
    incoming_targets: List[SwapTargetResponse] = []
    incoming_count: int
    outgoing_target: Optional[SwapTargetResponse] = None
    compatibility_reports: List[IncomingCompatibility] = []


# History Schemas
class HistoryEventResponse(BaseModel):
    id: int
    edge_id: int
    source_swap_id: int
    target_swap_id: int
    event_type: str
    from_status: Optional[str] = None
    to_status: str
    actor_id: Optional[int] = None
    actor: str
    severity: str
    reason: Optional[str] = None
    timestamp: datetime


class HistoryPageResponse(BaseModel):
    items: List[HistoryEventResponse]
    total: int
    page: int
    limit: int
    has_more: bool
