"""
dispatcher.py
=============
This module handles the case dispatch workflow:
 - Persists a new case and broadcasts it to every eligible vet
 - Retries candidate selection with exponential backoff
 - Periodic sweep: expires stale OPEN cases and re-dispatches cases that
   never reached anybody
"""

import asyncio
import datetime
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import backoff
from sqlalchemy.exc import IntegrityError

from .candidates import CandidateSelector
from .claims import expire_case
from .config import CASE_TTL_MINUTES, SELECTION_MAX_TRIES
from .errors import CaseNotFound, SelectionUnavailable
from .fanout import CaseSnapshot, DeliveryResult, NotificationFanout
from .models import (
    ActionKind, Case, CaseStatus, DispatchCandidate, utcnow,
)
from .token_vault import TokenVault

logger = logging.getLogger(__name__)


@dataclass
class DispatchSummary:
    case_id: int
    # dispatched | no_candidates | selection_unavailable | not_open | already_dispatched
    outcome: str
    notified_vet_ids: List[int] = field(default_factory=list)
    deliveries: List[DeliveryResult] = field(default_factory=list)


@dataclass
class SweepReport:
    expired: List[int] = field(default_factory=list)
    redispatched: List[int] = field(default_factory=list)


class DispatchCoordinator:

    def __init__(
        self,
        session_factory,
        selector: CandidateSelector,
        vault: TokenVault,
        fanout: NotificationFanout,
        escalation=None,
        case_ttl: datetime.timedelta = datetime.timedelta(minutes=CASE_TTL_MINUTES),
        selection_max_tries: int = SELECTION_MAX_TRIES,
        selection_backoff_factor: float = 1.0,
    ):
        self.session_factory = session_factory
        self.selector = selector
        self.vault = vault
        self.fanout = fanout
        self.escalation = escalation
        self.case_ttl = case_ttl
        self.selection_max_tries = max(1, selection_max_tries)
        self.selection_backoff_factor = selection_backoff_factor

    # -----------------------------------------------------------------------
    # CASE CREATION + BROADCAST
    # -----------------------------------------------------------------------

    def create_case(self, **fields) -> DispatchSummary:
        """
        Persist an OPEN case from intake data and dispatch it.
        Intake validation happens upstream; this only stores what it is given.
        """
        db = self.session_factory()
        try:
            case = Case(status=CaseStatus.open, **fields)
            db.add(case)
            db.commit()
            case_id = case.id
        finally:
            db.close()

        logger.info(f"📋 Case {case_id} created ({fields.get('species')} in {fields.get('city')})")
        return self.dispatch_case(case_id)

    def dispatch_case(self, case_id: int) -> DispatchSummary:
        """
        Select candidates, record them, issue their tokens and broadcast.

        Safe to call again for the same case: already-notified vets are not
        re-notified, and token issue is idempotent. A selection failure
        leaves the case OPEN for the re-dispatch sweep.
        """
        db = self.session_factory()
        try:
            case = db.get(Case, case_id)
            if case is None:
                raise CaseNotFound(case_id)
            if case.status != CaseStatus.open:
                return DispatchSummary(case_id, "not_open")
            snapshot = CaseSnapshot.of(case)
        finally:
            db.close()

        try:
            vet_ids = self._select(snapshot)
        except SelectionUnavailable as e:
            logger.error(f"❌ Candidate selection for case {case_id} gave up: {e}. Case stays OPEN")
            return DispatchSummary(case_id, "selection_unavailable")

        if not vet_ids:
            logger.warning(f"⚠️ No eligible vets for case {case_id}; it stays OPEN until the sweep")
            return DispatchSummary(case_id, "no_candidates")

        db = self.session_factory()
        try:
            # Lock the case row first: nothing is recorded for a case that just closed
            still_open = (
                db.query(Case)
                .filter(Case.id == case_id, Case.status == CaseStatus.open)
                .update({Case.updated_at: utcnow()}, synchronize_session=False)
            )
            if still_open != 1:
                db.rollback()
                return DispatchSummary(case_id, "not_open")

            known = {
                vet_id for (vet_id,) in
                db.query(DispatchCandidate.vet_id).filter(DispatchCandidate.case_id == case_id).all()
            }
            new_ids = [v for v in vet_ids if v not in known]
            for vet_id in new_ids:
                db.add(DispatchCandidate(case_id=case_id, vet_id=vet_id))
            db.flush()

            tokens: Dict[int, Dict[ActionKind, str]] = {}
            for vet_id in new_ids:
                tokens[vet_id] = {
                    action: self.vault.issue(db, case_id, vet_id, action)
                    for action in (ActionKind.accept, ActionKind.decline)
                }
            db.commit()
        except IntegrityError:
            db.rollback()
            logger.info(f"🔁 Case {case_id} was dispatched concurrently, skipping")
            return DispatchSummary(case_id, "already_dispatched")
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        if not new_ids:
            return DispatchSummary(case_id, "already_dispatched")

        deliveries = self.fanout.broadcast_new(snapshot, new_ids, tokens)
        sent = sum(1 for d in deliveries if d.ok)
        logger.info(f"📣 Case {case_id} broadcast to {len(new_ids)} vet(s), {sent} delivered")
        return DispatchSummary(case_id, "dispatched", notified_vet_ids=new_ids, deliveries=deliveries)

    def _select(self, case) -> List[int]:

        @backoff.on_exception(
            backoff.expo,
            SelectionUnavailable,
            max_tries=self.selection_max_tries,
            factor=self.selection_backoff_factor,
            jitter=None,
            logger=logger,
        )
        def _attempt():
            return self.selector.select(case)

        return _attempt()

    # -----------------------------------------------------------------------
    # SWEEPS
    # -----------------------------------------------------------------------

    def expire_stale_cases(self, now: Optional[datetime.datetime] = None) -> List[int]:
        """
        Move OPEN cases older than the TTL to EXPIRED. Each case expires at
        most once even with several sweepers or a concurrent accept; only
        the cases this call expired are returned and escalated.
        """
        now = now or utcnow()
        cutoff = now - self.case_ttl

        db = self.session_factory()
        try:
            stale = [
                case_id for (case_id,) in
                db.query(Case.id)
                .filter(Case.status == CaseStatus.open, Case.created_at <= cutoff)
                .order_by(Case.id)
                .all()
            ]
        finally:
            db.close()

        expired: List[CaseSnapshot] = []
        for case_id in stale:
            db = self.session_factory()
            try:
                if expire_case(db, case_id, now):
                    snapshot = CaseSnapshot.of(db.get(Case, case_id, populate_existing=True))
                    db.commit()
                    expired.append(snapshot)
                else:
                    db.rollback()
            except Exception:
                db.rollback()
                raise
            finally:
                db.close()

        for snapshot in expired:
            logger.info(f"⌛ Case {snapshot.id} expired after {self.case_ttl}")
            if self.escalation is not None:
                try:
                    self.escalation.on_expired(snapshot, f"no vet accepted within {self.case_ttl}")
                except Exception:
                    logger.exception(f"❌ Escalation for case {snapshot.id} failed")

        return [s.id for s in expired]

    def redispatch_undispatched(self) -> List[int]:
        """Retry dispatch for OPEN cases that have no notified vets at all."""
        db = self.session_factory()
        try:
            case_ids = [
                case_id for (case_id,) in
                db.query(Case.id)
                .filter(
                    Case.status == CaseStatus.open,
                    ~Case.candidates.any(),
                )
                .order_by(Case.id)
                .all()
            ]
        finally:
            db.close()

        redispatched = []
        for case_id in case_ids:
            summary = self.dispatch_case(case_id)
            if summary.outcome == "dispatched":
                redispatched.append(case_id)
        return redispatched

    def run_sweep(self, now: Optional[datetime.datetime] = None) -> SweepReport:
        report = SweepReport()
        report.expired = self.expire_stale_cases(now)
        report.redispatched = self.redispatch_undispatched()
        if report.expired or report.redispatched:
            logger.info(f"🧹 Sweep: expired={report.expired} redispatched={report.redispatched}")
        return report


# ---------------------------------------------------------------------------
# BACKGROUND SWEEP WORKER
# ---------------------------------------------------------------------------

async def expiry_worker(coordinator: DispatchCoordinator, interval: float):
    """
    Background worker that periodically:
     1. Expires OPEN cases past their TTL
     2. Re-dispatches cases no vet was ever notified about
    """
    logger.info(f"⚙️ Expiry worker started (every {interval}s)")
    while True:
        await asyncio.sleep(interval)
        try:
            await asyncio.to_thread(coordinator.run_sweep)
        except Exception:
            logger.exception("❌ Sweep failed, retrying next interval")
