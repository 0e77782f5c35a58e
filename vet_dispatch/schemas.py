"""
schemas.py
==========
Pydantic models used for validating incoming requests and
structuring outgoing API responses.
"""

import datetime
from pydantic import BaseModel, Field
from typing import Optional, List

from .models import ConsultationKind


class CaseCreate(BaseModel):
    """Request body handed over by the intake collaborator."""
    city: str = Field(min_length=1)
    state: Optional[str] = None
    address: Optional[str] = None
    species: str = Field(min_length=1)
    description: str = ""
    is_emergency: bool = False
    consultation_kind: ConsultationKind = ConsultationKind.physical
    owner_name: Optional[str] = None
    owner_email: Optional[str] = None
    owner_phone: Optional[str] = None


class CaseCreatedResponse(BaseModel):
    """Response after a case was stored and dispatched."""
    case_id: int
    outcome: str
    notified_vet_ids: List[int]


class CandidateResponse(BaseModel):
    vet_id: int
    status: str
    notified_at: Optional[datetime.datetime] = None
    responded_at: Optional[datetime.datetime] = None


class CaseResponse(BaseModel):
    """Response model for a case and its dispatch state."""
    id: int
    status: str
    city: str
    species: str
    is_emergency: bool
    assigned_vet_id: Optional[int] = None
    created_at: Optional[datetime.datetime] = None
    closed_at: Optional[datetime.datetime] = None
    candidates: List[CandidateResponse]


class EmailLogResponse(BaseModel):
    id: int
    recipient_email: str
    recipient_name: Optional[str] = None
    recipient_type: str
    subject: str
    message_kind: str
    status: str
    attempts: int
    error_message: Optional[str] = None
    case_id: Optional[int] = None
    vet_id: Optional[int] = None
    created_at: Optional[datetime.datetime] = None
    sent_at: Optional[datetime.datetime] = None


class EmailLogPage(BaseModel):
    """Paginated email log listing for the ops dashboard."""
    logs: List[EmailLogResponse]
    total: int
    page: int
    page_size: int
    total_pages: int


class SweepResponse(BaseModel):
    expired: List[int]
    redispatched: List[int]
