"""
main.py
========
This is the FastAPI entry point for the veterinary case dispatch service.
It:
 - Initializes the database (and optionally seeds demo vets).
 - Starts the background expiry / re-dispatch sweep.
 - Serves the accept / decline links embedded in outgoing e-mails.
 - Exposes case intake, status and cancellation endpoints.
 - Exposes the e-mail delivery log read-only for the ops dashboard.
"""

import asyncio
import logging
import math
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse

from .claims import ResponseCode
from .config import CORS_ORIGINS, LOG_LEVEL, SEED_DEMO_VETS, SWEEP_INTERVAL_SECONDS
from .db import SessionLocal, engine, init_db
from .dispatcher import expiry_worker
from .email_log import PAGE_SIZE
from .errors import CaseNotFound
from .models import Base, Case, DeliveryStatus, EmailLog, MessageKind, Vet
from .pages import render_result_page
from .schemas import (
    CandidateResponse, CaseCreate, CaseCreatedResponse, CaseResponse,
    EmailLogPage, EmailLogResponse, SweepResponse,
)
from .services import Services, build_services

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

DEMO_VETS = [
    ("Dr. Ayesha Khan", "ayesha.khan@example.com", "Lahore", "Cow,Buffalo,Goat"),
    ("Dr. Bilal Ahmed", "bilal.ahmed@example.com", "Lahore", "Cow,Sheep"),
    ("Dr. Sana Malik", "sana.malik@example.com", "Lahore", ""),
    ("Dr. Omar Farooq", "omar.farooq@example.com", "Karachi", "Dog,Cat"),
    ("Dr. Hina Raza", "hina.raza@example.com", "Islamabad", "Horse,Cow"),
]


def seed_demo_vets(session_factory):
    """Insert a few demo vets when the directory is empty."""
    db = session_factory()
    try:
        vet_count = db.query(Vet).count()
        if vet_count:
            logger.info(f"🩻 {vet_count} vets already exist in the directory.")
            return
        logger.info("🩺 No vets found. Seeding demo vets...")
        db.add_all([
            Vet(name=name, email=email, city=city, species_covered=species)
            for name, email, city, species in DEMO_VETS
        ])
        db.commit()
    finally:
        db.close()


# ---------------------------------------------------------------------------
# APP LIFESPAN
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Initializes the database, wires services, starts the sweep worker.
    A Services bundle already placed on app.state (tests) is used as is.
    """
    logger.info("🚀 Starting Vet Dispatch Backend...")
    if getattr(app.state, "services", None) is None:
        init_db(Base, bind=engine)
        app.state.services = build_services(SessionLocal)
        if SEED_DEMO_VETS:
            seed_demo_vets(SessionLocal)

    sweep_task = None
    if SWEEP_INTERVAL_SECONDS > 0:
        sweep_task = asyncio.create_task(expiry_worker(app.state.services.coordinator, SWEEP_INTERVAL_SECONDS))

    yield

    if sweep_task is not None:
        sweep_task.cancel()
        try:
            await sweep_task
        except asyncio.CancelledError:
            pass
    logger.info("👋 Vet Dispatch Backend stopped")


app = FastAPI(title="Vet Dispatch Backend", version="1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_services(request: Request) -> Services:
    return request.app.state.services


# ---------------------------------------------------------------------------
# RESPONSE LINKS (embedded in e-mails)
# ---------------------------------------------------------------------------

@app.get("/cases/{case_id}/respond", response_class=HTMLResponse)
def respond_to_case(
    case_id: int,
    token: str = Query(""),
    action: str = Query(""),
    services: Services = Depends(get_services),
):
    """
    Accept / decline link target. Always answers with a confirmation page;
    stale, replayed or broken links get an informational page, never a 5xx.
    """
    action = action.lower()
    if action == "accept":
        result = services.resolver.accept_via_token(token, case_id=case_id)
    elif action == "decline":
        result = services.resolver.decline_via_token(token, case_id=case_id)
    else:
        return HTMLResponse(render_result_page(ResponseCode.invalid_link))

    vet_name = None
    assigned_name = None
    if result.vet_id is not None:
        contact = services.source.contact_for(result.vet_id)
        vet_name = contact.name if contact else None
    if result.assigned_vet_id is not None:
        contact = services.source.contact_for(result.assigned_vet_id)
        assigned_name = contact.name if contact else None

    return HTMLResponse(render_result_page(result.code, vet_name=vet_name, assigned_vet_name=assigned_name))


# ---------------------------------------------------------------------------
# CASE ENDPOINTS
# ---------------------------------------------------------------------------

@app.post("/api/cases", response_model=CaseCreatedResponse)
def api_create_case(req: CaseCreate, services: Services = Depends(get_services)):
    """
    Intake hook: store an OPEN case and broadcast it to eligible vets.
    """
    summary = services.coordinator.create_case(**req.model_dump())
    return CaseCreatedResponse(
        case_id=summary.case_id,
        outcome=summary.outcome,
        notified_vet_ids=summary.notified_vet_ids,
    )


@app.get("/api/cases/{case_id}", response_model=CaseResponse)
def api_get_case(case_id: int, services: Services = Depends(get_services)):
    """
    Get a case's status, assignment and per-vet dispatch state.
    """
    db = services.session_factory()
    try:
        case = db.get(Case, case_id)
        if not case:
            raise HTTPException(status_code=404, detail="Case not found")

        return CaseResponse(
            id=case.id,
            status=case.status.value,
            city=case.city,
            species=case.species,
            is_emergency=case.is_emergency,
            assigned_vet_id=case.assigned_vet_id,
            created_at=case.created_at,
            closed_at=case.closed_at,
            candidates=[
                CandidateResponse(
                    vet_id=c.vet_id,
                    status=c.status.value,
                    notified_at=c.notified_at,
                    responded_at=c.responded_at,
                )
                for c in case.candidates
            ],
        )
    finally:
        db.close()


@app.post("/api/cases/{case_id}/cancel")
def api_cancel_case(case_id: int, services: Services = Depends(get_services)):
    """
    Cancel an OPEN case. Cancelling a case that already left OPEN is a no-op.
    """
    try:
        cancelled = services.resolver.cancel_case(case_id)
    except CaseNotFound:
        raise HTTPException(status_code=404, detail="Case not found")
    return {"case_id": case_id, "cancelled": cancelled}


@app.post("/api/sweep", response_model=SweepResponse)
def api_run_sweep(services: Services = Depends(get_services)):
    """Run one expiry / re-dispatch sweep now (for cron-driven deployments)."""
    report = services.coordinator.run_sweep()
    return SweepResponse(expired=report.expired, redispatched=report.redispatched)


# ---------------------------------------------------------------------------
# EMAIL DELIVERY LOG (read-only)
# ---------------------------------------------------------------------------

def _log_response(entry: EmailLog) -> EmailLogResponse:
    return EmailLogResponse(
        id=entry.id,
        recipient_email=entry.recipient_email,
        recipient_name=entry.recipient_name,
        recipient_type=entry.recipient_type.value,
        subject=entry.subject,
        message_kind=entry.message_kind.value,
        status=entry.status.value,
        attempts=entry.attempts,
        error_message=entry.error_message,
        case_id=entry.case_id,
        vet_id=entry.vet_id,
        created_at=entry.created_at,
        sent_at=entry.sent_at,
    )


@app.get("/api/email-logs", response_model=EmailLogPage)
def api_list_email_logs(
    recipient: Optional[str] = None,
    message_kind: Optional[MessageKind] = None,
    status: Optional[DeliveryStatus] = None,
    case_id: Optional[int] = None,
    page: int = Query(1, ge=1),
    services: Services = Depends(get_services),
):
    """
    Filter delivery logs by recipient / subject text, message kind, status
    and case. Newest first, 20 per page.
    """
    rows, total = services.delivery_log.search(
        recipient=recipient,
        message_kind=message_kind,
        status=status,
        case_id=case_id,
        page=page,
        page_size=PAGE_SIZE,
    )
    return EmailLogPage(
        logs=[_log_response(r) for r in rows],
        total=total,
        page=page,
        page_size=PAGE_SIZE,
        total_pages=math.ceil(total / PAGE_SIZE),
    )


@app.get("/api/email-logs/{log_id}", response_model=EmailLogResponse)
def api_get_email_log(log_id: int, services: Services = Depends(get_services)):
    entry = services.delivery_log.get(log_id)
    if entry is None:
        raise HTTPException(status_code=404, detail="Email log not found")
    return _log_response(entry)


# ---------------------------------------------------------------------------
# ROOT ENDPOINT
# ---------------------------------------------------------------------------

@app.get("/")
def root():
    """Basic health check endpoint."""
    return {"message": "Vet Dispatch Backend is running!"}
