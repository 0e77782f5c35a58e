"""
claims.py
=========
The race-safe core: turns an accept / decline click into exactly one state
transition.

Every decision is a conditional UPDATE whose row count says who won:
 - the token row      UNUSED -> CONSUMED   (consumed_at IS NULL)
 - the case row       OPEN   -> ASSIGNED | EXPIRED | CANCELLED
 - the candidate row  NOTIFIED -> ACCEPTED | DECLINED | LOST | EXPIRED
Token redemption and the state change it triggers commit in one transaction,
so a replayed or concurrent click on the same link always sees the final
outcome of the first one. No in-process locks are involved; the case row is
the only synchronization point, which keeps this safe across processes.

Outcome notifications are sent after commit and never undo a claim.
"""

import enum
import logging
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy import exists
from sqlalchemy.orm import Session

from .errors import CaseNotFound, InvariantViolation, TokenAlreadyConsumed, TokenNotFound
from .fanout import CaseSnapshot
from .models import (
    ActionKind, Case, CandidateStatus, CaseStatus, DispatchCandidate, utcnow,
)
from .token_vault import TokenBinding, TokenVault

logger = logging.getLogger(__name__)


class ResponseCode(str, enum.Enum):
    """What the vet is told after clicking a link."""
    assigned = "assigned"
    declined = "declined"
    already_accepted = "already_accepted"
    already_declined = "already_declined"
    already_lost = "already_lost"
    case_already_assigned = "case_already_assigned"
    invalid_link = "invalid_link"


@dataclass(frozen=True)
class ResponseResult:
    code: ResponseCode
    case_id: Optional[int] = None
    vet_id: Optional[int] = None
    assigned_vet_id: Optional[int] = None


class AssignmentResult(ResponseResult):
    """Result of accept_via_token."""


class DeclineResult(ResponseResult):
    """Result of decline_via_token."""


# ---------------------------------------------------------------------------
# CONDITIONAL TRANSITIONS (caller owns the transaction)
# ---------------------------------------------------------------------------

def _candidate(db: Session, case_id: int, vet_id: int) -> Optional[DispatchCandidate]:
    return (
        db.query(DispatchCandidate)
        .populate_existing()
        .filter(DispatchCandidate.case_id == case_id, DispatchCandidate.vet_id == vet_id)
        .one_or_none()
    )


def _move_candidate(db: Session, case_id: int, vet_id: int, to: CandidateStatus, now) -> bool:
    """NOTIFIED -> ``to`` for one candidate; False if it already moved."""
    updated = (
        db.query(DispatchCandidate)
        .filter(
            DispatchCandidate.case_id == case_id,
            DispatchCandidate.vet_id == vet_id,
            DispatchCandidate.status == CandidateStatus.notified,
        )
        .update({DispatchCandidate.status: to, DispatchCandidate.responded_at: now}, synchronize_session=False)
    )
    return updated == 1


def _close_waiting(db: Session, case_id: int, to: CandidateStatus) -> List[int]:
    """
    Move every still NOTIFIED candidate of the case to ``to``; returns the
    vet ids of exactly the rows moved. The rows are locked FOR UPDATE first,
    so a concurrent decline either commits before the read or waits for us.
    """
    waiting = [
        vet_id for (vet_id,) in db.query(DispatchCandidate.vet_id)
        .filter(DispatchCandidate.case_id == case_id, DispatchCandidate.status == CandidateStatus.notified)
        .order_by(DispatchCandidate.id)
        .with_for_update()
        .all()
    ]
    if not waiting:
        return []

    moved = (
        db.query(DispatchCandidate)
        .filter(
            DispatchCandidate.case_id == case_id,
            DispatchCandidate.vet_id.in_(waiting),
            DispatchCandidate.status == CandidateStatus.notified,
        )
        .update({DispatchCandidate.status: to}, synchronize_session=False)
    )
    if moved != len(waiting):
        raise InvariantViolation(
            f"Case {case_id}: {len(waiting)} locked candidates but {moved} moved to {to.value}"
        )
    return waiting


def expire_case(db: Session, case_id: int, now=None) -> bool:
    """
    OPEN -> EXPIRED, only if still OPEN. Waiting candidates become EXPIRED.
    Returns True for the one caller whose write took effect.
    """
    now = now or utcnow()
    updated = (
        db.query(Case)
        .filter(Case.id == case_id, Case.status == CaseStatus.open)
        .update({Case.status: CaseStatus.expired, Case.closed_at: now, Case.updated_at: now}, synchronize_session=False)
    )
    if updated != 1:
        return False
    _close_waiting(db, case_id, CandidateStatus.expired)
    return True


# ---------------------------------------------------------------------------
# CLAIM RESOLVER
# ---------------------------------------------------------------------------

class ClaimResolver:

    def __init__(self, session_factory, vault: TokenVault, fanout):
        self.session_factory = session_factory
        self.vault = vault
        self.fanout = fanout

    # -----------------------------------------------------------------------
    # ACCEPT
    # -----------------------------------------------------------------------

    def accept_via_token(self, token: str, case_id: Optional[int] = None) -> AssignmentResult:
        """
        Redeem an accept token and try to claim the case for its vet.

        Exactly one of any number of concurrent accepts for the same OPEN
        case returns ``assigned``; the rest get ``case_already_assigned``.
        Replaying a consumed token reports the candidate's final state.
        """
        db = self.session_factory()
        try:
            try:
                binding = self.vault.redeem(db, token, case_id=case_id, action=ActionKind.accept)
            except TokenNotFound:
                db.rollback()
                logger.info(f"🔗 Invalid accept link for case {case_id}")
                return AssignmentResult(ResponseCode.invalid_link, case_id=case_id)
            except TokenAlreadyConsumed as e:
                result = self._replay(db, e.binding, AssignmentResult)
                db.rollback()
                return result

            now = utcnow()
            still_waiting = exists().where(
                DispatchCandidate.case_id == binding.case_id,
                DispatchCandidate.vet_id == binding.vet_id,
                DispatchCandidate.status == CandidateStatus.notified,
            )
            claimed = (
                db.query(Case)
                .filter(Case.id == binding.case_id, Case.status == CaseStatus.open, still_waiting)
                .update(
                    {
                        Case.status: CaseStatus.assigned,
                        Case.assigned_vet_id: binding.vet_id,
                        Case.closed_at: now,
                        Case.updated_at: now,
                    },
                    synchronize_session=False,
                )
            )

            if claimed != 1:
                result = self._refused(db, binding, now)
                db.commit()
                return result

            _move_candidate(db, binding.case_id, binding.vet_id, CandidateStatus.accepted, now)
            losers = _close_waiting(db, binding.case_id, CandidateStatus.lost)

            winners = (
                db.query(DispatchCandidate)
                .filter(
                    DispatchCandidate.case_id == binding.case_id,
                    DispatchCandidate.status == CandidateStatus.accepted,
                )
                .count()
            )
            if winners != 1:
                raise InvariantViolation(f"Case {binding.case_id} has {winners} accepted candidates")

            case = db.get(Case, binding.case_id, populate_existing=True)
            snapshot = CaseSnapshot.of(case)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        logger.info(f"✅ Case {binding.case_id} assigned to vet {binding.vet_id}; {len(losers)} vet(s) lost the race")
        self._announce_claim(snapshot, binding.vet_id, losers)
        return AssignmentResult(
            ResponseCode.assigned,
            case_id=binding.case_id,
            vet_id=binding.vet_id,
            assigned_vet_id=binding.vet_id,
        )

    def _refused(self, db: Session, binding: TokenBinding, now) -> AssignmentResult:
        """The conditional claim matched nothing: work out why, settle the candidate row."""
        case = db.get(Case, binding.case_id, populate_existing=True)
        row = _candidate(db, binding.case_id, binding.vet_id)
        if case is None or row is None:
            logger.error(f"❌ Token for case {binding.case_id} / vet {binding.vet_id} has no dispatch record")
            return AssignmentResult(ResponseCode.invalid_link, case_id=binding.case_id, vet_id=binding.vet_id)

        common = dict(case_id=case.id, vet_id=binding.vet_id, assigned_vet_id=case.assigned_vet_id)

        if row.status == CandidateStatus.declined:
            return AssignmentResult(ResponseCode.already_declined, **common)
        if row.status == CandidateStatus.accepted:
            return AssignmentResult(ResponseCode.already_accepted, **common)

        _move_candidate(db, case.id, binding.vet_id, CandidateStatus.lost, now)
        if case.status == CaseStatus.cancelled:
            logger.info(f"🚫 Accept on cancelled case {case.id} by vet {binding.vet_id}")
            return AssignmentResult(ResponseCode.already_lost, **common)

        logger.info(f"🏁 Vet {binding.vet_id} accepted case {case.id} too late ({case.status.value})")
        return AssignmentResult(ResponseCode.case_already_assigned, **common)

    def _announce_claim(self, snapshot: CaseSnapshot, winner_vet_id: int, losers: List[int]) -> None:
        """Best effort: a failed send is logged, the claim stands."""
        try:
            self.fanout.announce_assigned(snapshot, winner_vet_id)
        except Exception:
            logger.exception(f"❌ Acceptance confirmation for case {snapshot.id} failed")
        try:
            self.fanout.announce_owner(snapshot, winner_vet_id)
        except Exception:
            logger.exception(f"❌ Owner notification for case {snapshot.id} failed")
        if losers:
            try:
                self.fanout.announce_lost(snapshot, losers, winner_vet_id=winner_vet_id)
            except Exception:
                logger.exception(f"❌ Case-taken notifications for case {snapshot.id} failed")

    # -----------------------------------------------------------------------
    # DECLINE
    # -----------------------------------------------------------------------

    def decline_via_token(self, token: str, case_id: Optional[int] = None) -> DeclineResult:
        """
        Redeem a decline token. Declining never touches the case status and
        never stops another vet from accepting; a case every vet declined
        stays OPEN until the expiry sweep.
        """
        db = self.session_factory()
        try:
            try:
                binding = self.vault.redeem(db, token, case_id=case_id, action=ActionKind.decline)
            except TokenNotFound:
                db.rollback()
                logger.info(f"🔗 Invalid decline link for case {case_id}")
                return DeclineResult(ResponseCode.invalid_link, case_id=case_id)
            except TokenAlreadyConsumed as e:
                result = self._replay(db, e.binding, DeclineResult)
                db.rollback()
                return result

            now = utcnow()
            if not _move_candidate(db, binding.case_id, binding.vet_id, CandidateStatus.declined, now):
                # Case already closed for this vet; the token is still spent
                result = self._replay(db, binding, DeclineResult)
                db.commit()
                return result
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        logger.info(f"🙅 Vet {binding.vet_id} declined case {binding.case_id}")
        return DeclineResult(ResponseCode.declined, case_id=binding.case_id, vet_id=binding.vet_id)

    # -----------------------------------------------------------------------
    # CANCEL
    # -----------------------------------------------------------------------

    def cancel_case(self, case_id: int) -> bool:
        """
        OPEN -> CANCELLED. Waiting candidates are marked LOST so their links
        redeem as ``already_lost``. False if the case had already left OPEN.
        """
        db = self.session_factory()
        try:
            now = utcnow()
            updated = (
                db.query(Case)
                .filter(Case.id == case_id, Case.status == CaseStatus.open)
                .update({Case.status: CaseStatus.cancelled, Case.closed_at: now, Case.updated_at: now}, synchronize_session=False)
            )
            if updated != 1:
                db.rollback()
                if db.get(Case, case_id) is None:
                    raise CaseNotFound(case_id)
                return False
            closed = _close_waiting(db, case_id, CandidateStatus.lost)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        logger.info(f"🚫 Case {case_id} cancelled, {len(closed)} pending vet(s) released")
        return True

    # -----------------------------------------------------------------------
    # HELPERS
    # -----------------------------------------------------------------------

    def _replay(self, db: Session, binding: TokenBinding, result_cls):
        """Deterministic answer for a link whose effect already happened."""
        row = _candidate(db, binding.case_id, binding.vet_id)
        case = db.get(Case, binding.case_id, populate_existing=True)
        assigned_vet_id = case.assigned_vet_id if case else None

        if row is not None and row.status == CandidateStatus.accepted:
            code = ResponseCode.already_accepted
        elif row is not None and row.status == CandidateStatus.declined:
            code = ResponseCode.already_declined
        else:
            code = ResponseCode.already_lost
        return result_cls(code, case_id=binding.case_id, vet_id=binding.vet_id, assigned_vet_id=assigned_vet_id)
