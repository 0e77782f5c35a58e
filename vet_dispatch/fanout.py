"""
fanout.py
=========
Sends one class of message to many recipients, each tracked on its own.

Every recipient is an independent unit of work: its address is looked up and
the message rendered, a PENDING log row is written, the sender is called and
the row is closed as SENT or FAILED. Units run on a bounded thread pool and a
failure in one never reaches the others. The fan-out trusts the recipient
lists it is given; deciding who won or lost is the ClaimResolver's job.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Tuple
from urllib.parse import urlencode

from . import email_templates
from .candidates import CandidateSource, Contact
from .config import FANOUT_WORKERS, OPERATOR_EMAIL, PUBLIC_BASE_URL
from .email_log import EmailDeliveryLog
from .email_templates import RenderedMessage
from .models import ActionKind, MessageKind, RecipientType
from .senders import NotificationSender

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CaseSnapshot:
    """Plain copy of the case fields the templates need, safe to share across threads."""
    id: int
    city: str
    state: Optional[str]
    address: Optional[str]
    species: str
    description: str
    is_emergency: bool
    consultation_kind: str
    owner_name: Optional[str]
    owner_email: Optional[str]
    owner_phone: Optional[str]

    @classmethod
    def of(cls, case) -> "CaseSnapshot":
        if isinstance(case, cls):
            return case
        return cls(
            id=case.id,
            city=case.city,
            state=case.state,
            address=case.address,
            species=case.species,
            description=case.description or "",
            is_emergency=bool(case.is_emergency),
            consultation_kind=getattr(case.consultation_kind, "value", case.consultation_kind),
            owner_name=case.owner_name,
            owner_email=case.owner_email,
            owner_phone=case.owner_phone,
        )


@dataclass(frozen=True)
class DeliveryResult:
    recipient: str
    message_kind: MessageKind
    ok: bool
    log_id: Optional[int] = None
    vet_id: Optional[int] = None
    error: Optional[str] = None


@dataclass
class _Job:
    """
    One recipient's unit of work. ``prepare`` looks up the address and renders
    the message; it runs inside the unit so a lookup failure stays local.
    """
    recipient_type: RecipientType
    message_kind: MessageKind
    case_id: int
    fallback_subject: str
    prepare: Callable[[], Tuple[str, Optional[str], RenderedMessage, dict]]
    vet_id: Optional[int] = None


class NotificationFanout:

    def __init__(
        self,
        sender: NotificationSender,
        source: CandidateSource,
        delivery_log: EmailDeliveryLog,
        base_url: str = PUBLIC_BASE_URL,
        max_workers: int = FANOUT_WORKERS,
        operator_email: Optional[str] = OPERATOR_EMAIL,
    ):
        self.sender = sender
        self.source = source
        self.delivery_log = delivery_log
        self.base_url = base_url.rstrip("/")
        self.max_workers = max(1, max_workers)
        self.operator_email = operator_email

    # -----------------------------------------------------------------------
    # LINKS
    # -----------------------------------------------------------------------

    def respond_link(self, case_id: int, token: str, action: ActionKind) -> str:
        query = urlencode({"token": token, "action": action.value.lower()})
        return f"{self.base_url}/cases/{case_id}/respond?{query}"

    def history_form_link(self, case_id: int) -> str:
        return f"{self.base_url}/historyform?appointmentId={case_id}"

    def case_link(self, case_id: int) -> str:
        return f"{self.base_url}/api/cases/{case_id}"

    # -----------------------------------------------------------------------
    # MESSAGE CLASSES
    # -----------------------------------------------------------------------

    def broadcast_new(
        self,
        case,
        vet_ids: Iterable[int],
        tokens_by_vet_id: Dict[int, Dict[ActionKind, str]],
    ) -> List[DeliveryResult]:
        """Initial accept / decline invitation to every candidate."""
        snap = CaseSnapshot.of(case)
        jobs = []
        for vet_id in vet_ids:
            tokens = tokens_by_vet_id.get(vet_id) or {}
            if ActionKind.accept not in tokens or ActionKind.decline not in tokens:
                logger.error(f"❌ No tokens for vet {vet_id} on case {snap.id}, skipping")
                continue
            jobs.append(self._vet_job(vet_id, snap, MessageKind.initial_notification, self._invitation(snap, tokens)))
        return self._run_all(jobs)

    def announce_assigned(self, case, winner_vet_id: int) -> DeliveryResult:
        """Full details and follow-up form link, to the winner only."""
        snap = CaseSnapshot.of(case)

        def render(contact: Contact) -> Tuple[RenderedMessage, dict]:
            message = email_templates.acceptance_confirmation(
                contact.name, snap, history_form_link=self.history_form_link(snap.id)
            )
            return message, {"ownerPhone": snap.owner_phone, "species": snap.species, "city": snap.city}

        return self._deliver(self._vet_job(winner_vet_id, snap, MessageKind.acceptance_confirmation, render))

    def announce_lost(self, case, loser_vet_ids: Iterable[int], winner_vet_id: Optional[int] = None) -> List[DeliveryResult]:
        """'Case already taken' to each vet in ``loser_vet_ids``, once each."""
        snap = CaseSnapshot.of(case)
        winner_name = self._winner_name(snap, winner_vet_id)

        def render(contact: Contact) -> Tuple[RenderedMessage, dict]:
            message = email_templates.case_taken(contact.name, snap, accepted_by=winner_name)
            return message, {"acceptedByDoctor": winner_name, "species": snap.species, "city": snap.city}

        return self._run_all([
            self._vet_job(vet_id, snap, MessageKind.case_taken, render) for vet_id in loser_vet_ids
        ])

    def announce_owner(self, case, winner_vet_id: int) -> Optional[DeliveryResult]:
        """Let the animal owner know who accepted. Skipped without an owner e-mail."""
        snap = CaseSnapshot.of(case)
        if not snap.owner_email:
            return None

        def address() -> Tuple[str, Optional[str], RenderedMessage, dict]:
            vet = self._contact(winner_vet_id)
            message = email_templates.owner_assignment(snap, vet.name, vet.phone)
            metadata = {"doctorName": vet.name, "species": snap.species, "city": snap.city}
            return snap.owner_email, snap.owner_name, message, metadata

        return self._deliver(_Job(
            recipient_type=RecipientType.owner,
            message_kind=MessageKind.owner_assignment,
            case_id=snap.id,
            vet_id=winner_vet_id,
            fallback_subject=f"Veterinarian Assigned - case #{snap.id}",
            prepare=address,
        ))

    def notify_operator(self, case, reason: str) -> Optional[DeliveryResult]:
        snap = CaseSnapshot.of(case)
        if not self.operator_email:
            logger.warning(f"⚠️ OPERATOR_EMAIL not configured, case {snap.id} escalation not sent")
            return None

        def address() -> Tuple[str, Optional[str], RenderedMessage, dict]:
            message = email_templates.operator_escalation(snap, reason, self.case_link(snap.id))
            return self.operator_email, "Operator", message, {"reason": reason}

        return self._deliver(_Job(
            recipient_type=RecipientType.operator,
            message_kind=MessageKind.other,
            case_id=snap.id,
            fallback_subject=f"Unassigned Case #{snap.id}",
            prepare=address,
        ))

    # -----------------------------------------------------------------------
    # DELIVERY
    # -----------------------------------------------------------------------

    def _invitation(self, snap: CaseSnapshot, tokens: Dict[ActionKind, str]):
        def render(contact: Contact) -> Tuple[RenderedMessage, dict]:
            message = email_templates.initial_notification(
                contact.name,
                snap,
                accept_link=self.respond_link(snap.id, tokens[ActionKind.accept], ActionKind.accept),
                decline_link=self.respond_link(snap.id, tokens[ActionKind.decline], ActionKind.decline),
            )
            return message, {"species": snap.species, "city": snap.city, "isEmergency": snap.is_emergency}
        return render

    def _contact(self, vet_id: int) -> Contact:
        contact = self.source.contact_for(vet_id)
        if contact is None:
            return Contact(vet_id=vet_id, name=f"Vet #{vet_id}", email=None)
        return contact

    def _winner_name(self, snap: CaseSnapshot, winner_vet_id: Optional[int]) -> Optional[str]:
        """Name for the 'taken by' line; the notices still go out without it."""
        if winner_vet_id is None:
            return None
        try:
            winner = self.source.contact_for(winner_vet_id)
        except Exception:
            logger.exception(f"❌ Could not look up winner {winner_vet_id} of case {snap.id}, sending without name")
            return None
        return winner.name if winner else None

    def _vet_job(
        self,
        vet_id: int,
        snap: CaseSnapshot,
        kind: MessageKind,
        render: Callable[[Contact], Tuple[RenderedMessage, dict]],
    ) -> _Job:

        def address() -> Tuple[str, Optional[str], RenderedMessage, dict]:
            contact = self._contact(vet_id)
            message, metadata = render(contact)
            return contact.email or "", contact.name, message, metadata

        return _Job(
            recipient_type=RecipientType.vet,
            message_kind=kind,
            case_id=snap.id,
            vet_id=vet_id,
            fallback_subject=f"{kind.value} - case #{snap.id}",
            prepare=address,
        )

    def _run_all(self, jobs: List[_Job]) -> List[DeliveryResult]:
        if not jobs:
            return []
        workers = min(self.max_workers, len(jobs))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="fanout") as pool:
            return list(pool.map(self._deliver, jobs))

    def _deliver(self, job: _Job) -> DeliveryResult:
        """
        One recipient: resolve address and render, PENDING row, send,
        SENT / FAILED. Never raises; every outcome leaves a log row when
        the log store is reachable.
        """
        log_id = None
        recipient = ""
        try:
            try:
                recipient, name, message, metadata = job.prepare()
            except Exception as e:
                error = f"{type(e).__name__}: {e}"
                logger.error(f"❌ Could not prepare {job.message_kind.value} for case {job.case_id} / vet {job.vet_id}: {error}")
                log_id = self.delivery_log.record_pending(
                    recipient_email="",
                    recipient_type=job.recipient_type,
                    subject=job.fallback_subject,
                    message_kind=job.message_kind,
                    case_id=job.case_id,
                    vet_id=job.vet_id,
                )
                self.delivery_log.mark_failed(log_id, error, attempts=0)
                return DeliveryResult("", job.message_kind, False, log_id, job.vet_id, error)

            log_id = self.delivery_log.record_pending(
                recipient_email=recipient,
                recipient_name=name,
                recipient_type=job.recipient_type,
                subject=message.subject,
                message_kind=job.message_kind,
                case_id=job.case_id,
                vet_id=job.vet_id,
                metadata=metadata,
            )

            if not recipient:
                error = "No e-mail address on file"
                self.delivery_log.mark_failed(log_id, error, attempts=0)
                logger.warning(f"⚠️ {job.message_kind.value} for case {job.case_id}: vet {job.vet_id} has no e-mail")
                return DeliveryResult(recipient, job.message_kind, False, log_id, job.vet_id, error)

            try:
                result = self.sender.send(recipient, message.subject, message.html, message.text)
            except Exception as e:
                error = f"{type(e).__name__}: {e}"
                self.delivery_log.mark_failed(log_id, error)
                logger.error(f"❌ Sender crashed for {recipient} (case {job.case_id}): {error}")
                return DeliveryResult(recipient, job.message_kind, False, log_id, job.vet_id, error)

            if result.ok:
                self.delivery_log.mark_sent(log_id, attempts=result.attempts)
                logger.info(f"📨 {job.message_kind.value} sent to {recipient} (case {job.case_id})")
                return DeliveryResult(recipient, job.message_kind, True, log_id, job.vet_id)

            self.delivery_log.mark_failed(log_id, result.error or "send failed", attempts=result.attempts)
            logger.warning(f"⚠️ {job.message_kind.value} to {recipient} failed: {result.error}")
            return DeliveryResult(recipient, job.message_kind, False, log_id, job.vet_id, result.error)

        except Exception as e:
            # Logging store trouble for this recipient stays with this recipient
            logger.exception(f"❌ Delivery bookkeeping failed for {recipient or job.vet_id} (case {job.case_id})")
            return DeliveryResult(recipient, job.message_kind, False, log_id, job.vet_id, str(e))
