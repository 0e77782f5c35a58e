"""
models.py
=========
SQLAlchemy ORM models for the veterinary case dispatch service.
Contains tables for:
 - Vet (candidate directory)
 - Case (the appointment being dispatched)
 - DispatchCandidate (one row per notified vet per case)
 - ActionToken (single-use accept / decline links)
 - EmailLog (every notification attempt and its outcome)
"""

from sqlalchemy import (
    Boolean, Column, Integer, String, DateTime, Text, ForeignKey, Enum,
    UniqueConstraint, Index,
)
from sqlalchemy.orm import declarative_base, relationship
import datetime
import enum

# SQLAlchemy Base class
Base = declarative_base()


def utcnow() -> datetime.datetime:
    """Naive UTC timestamp, the format every DateTime column stores."""
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


# ---------------------------------------------------------------------------
# ENUM DEFINITIONS
# ---------------------------------------------------------------------------

class CaseStatus(str, enum.Enum):
    """Lifecycle of a case. OPEN is the only non-terminal status."""
    open = "OPEN"
    assigned = "ASSIGNED"
    expired = "EXPIRED"
    cancelled = "CANCELLED"


class ConsultationKind(str, enum.Enum):
    physical = "physical"
    virtual = "virtual"
    subsidized = "subsidized"


class CandidateStatus(str, enum.Enum):
    """Where a notified vet stands for one case."""
    notified = "NOTIFIED"
    accepted = "ACCEPTED"
    declined = "DECLINED"
    lost = "LOST"
    expired = "EXPIRED"


class ActionKind(str, enum.Enum):
    accept = "ACCEPT"
    decline = "DECLINE"


class RecipientType(str, enum.Enum):
    vet = "VET"
    owner = "OWNER"
    operator = "OPERATOR"


class MessageKind(str, enum.Enum):
    initial_notification = "INITIAL_NOTIFICATION"
    acceptance_confirmation = "ACCEPTANCE_CONFIRMATION"
    case_taken = "CASE_TAKEN"
    owner_assignment = "OWNER_ASSIGNMENT"
    other = "OTHER"


class DeliveryStatus(str, enum.Enum):
    pending = "PENDING"
    sent = "SENT"
    failed = "FAILED"


# ---------------------------------------------------------------------------
# TABLE DEFINITIONS
# ---------------------------------------------------------------------------

class Vet(Base):
    """Stores vet profile, coverage area and availability."""
    __tablename__ = "vets"

    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)
    email = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    city = Column(String, nullable=False, index=True)
    # Comma separated species names; empty means every species
    species_covered = Column(Text, default="")
    is_active = Column(Boolean, default=True, nullable=False)
    is_available = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    def covers(self, species: str) -> bool:
        covered = [s.strip().lower() for s in (self.species_covered or "").split(",") if s.strip()]
        return not covered or species.strip().lower() in covered


class Case(Base):
    """An animal-care request awaiting assignment to exactly one vet."""
    __tablename__ = "cases"

    id = Column(Integer, primary_key=True)
    city = Column(String, nullable=False)
    state = Column(String, nullable=True)
    address = Column(Text, nullable=True)
    species = Column(String, nullable=False)
    description = Column(Text, nullable=False, default="")
    is_emergency = Column(Boolean, default=False, nullable=False)
    consultation_kind = Column(Enum(ConsultationKind), default=ConsultationKind.physical, nullable=False)

    owner_name = Column(String, nullable=True)
    owner_email = Column(String, nullable=True)
    owner_phone = Column(String, nullable=True)

    # Only ever changed through conditional UPDATEs in claims.py
    status = Column(Enum(CaseStatus), default=CaseStatus.open, nullable=False, index=True)
    assigned_vet_id = Column(Integer, ForeignKey("vets.id"), nullable=True)

    created_at = Column(DateTime, default=utcnow, index=True)
    closed_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    assigned_vet = relationship("Vet")
    candidates = relationship("DispatchCandidate", back_populates="case", order_by="DispatchCandidate.id")


class DispatchCandidate(Base):
    """One vet notified about one case."""
    __tablename__ = "dispatch_candidates"
    __table_args__ = (
        UniqueConstraint("case_id", "vet_id", name="uq_dispatch_case_vet"),
    )

    id = Column(Integer, primary_key=True)
    case_id = Column(Integer, ForeignKey("cases.id"), nullable=False, index=True)
    vet_id = Column(Integer, ForeignKey("vets.id"), nullable=False)
    status = Column(Enum(CandidateStatus), default=CandidateStatus.notified, nullable=False)
    notified_at = Column(DateTime, default=utcnow)
    responded_at = Column(DateTime, nullable=True)

    case = relationship("Case", back_populates="candidates")
    vet = relationship("Vet")


class ActionToken(Base):
    """Single-use credential behind an accept or decline link."""
    __tablename__ = "action_tokens"
    __table_args__ = (
        UniqueConstraint("case_id", "vet_id", "action", name="uq_token_case_vet_action"),
    )

    id = Column(Integer, primary_key=True)
    token = Column(String(64), nullable=False, unique=True)
    case_id = Column(Integer, ForeignKey("cases.id"), nullable=False)
    vet_id = Column(Integer, ForeignKey("vets.id"), nullable=False)
    action = Column(Enum(ActionKind), nullable=False)
    created_at = Column(DateTime, default=utcnow)
    consumed_at = Column(DateTime, nullable=True)


class EmailLog(Base):
    """Append-only record of one notification attempt."""
    __tablename__ = "email_logs"
    __table_args__ = (
        Index("ix_email_logs_kind_status", "message_kind", "status"),
    )

    id = Column(Integer, primary_key=True)
    recipient_email = Column(String, nullable=False)
    recipient_name = Column(String, nullable=True)
    recipient_type = Column(Enum(RecipientType), nullable=False)
    subject = Column(String, nullable=False)
    message_kind = Column(Enum(MessageKind), nullable=False)
    status = Column(Enum(DeliveryStatus), default=DeliveryStatus.pending, nullable=False)
    attempts = Column(Integer, default=0, nullable=False)
    error_message = Column(Text, nullable=True)
    metadata_json = Column(Text, nullable=True)  # typically JSON
    case_id = Column(Integer, ForeignKey("cases.id"), nullable=True, index=True)
    vet_id = Column(Integer, ForeignKey("vets.id"), nullable=True)
    created_at = Column(DateTime, default=utcnow, index=True)
    sent_at = Column(DateTime, nullable=True)
