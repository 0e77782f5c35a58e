"""
email_log.py
============
Append-only delivery log for every notification the engine sends.

Each attempt is written as PENDING before the sender is called, so a crash
mid-send still leaves a trace, then moved once to SENT or FAILED. The
terminal update is conditional on the row still being PENDING; finished rows
are never rewritten. The query helpers back the read-only ops dashboard.
"""

import json
import logging
from typing import List, Optional, Tuple

from sqlalchemy import or_

from .models import (
    DeliveryStatus, EmailLog, MessageKind, RecipientType, utcnow,
)

logger = logging.getLogger(__name__)

PAGE_SIZE = 20


class EmailDeliveryLog:
    """Writes and reads EmailLog rows, one short transaction per call."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    # -----------------------------------------------------------------------
    # WRITES
    # -----------------------------------------------------------------------

    def record_pending(
        self,
        recipient_email: str,
        recipient_type: RecipientType,
        subject: str,
        message_kind: MessageKind,
        recipient_name: Optional[str] = None,
        case_id: Optional[int] = None,
        vet_id: Optional[int] = None,
        metadata: Optional[dict] = None,
    ) -> int:
        db = self.session_factory()
        try:
            entry = EmailLog(
                recipient_email=recipient_email,
                recipient_name=recipient_name,
                recipient_type=recipient_type,
                subject=subject,
                message_kind=message_kind,
                status=DeliveryStatus.pending,
                case_id=case_id,
                vet_id=vet_id,
                metadata_json=json.dumps(metadata) if metadata else None,
            )
            db.add(entry)
            db.commit()
            return entry.id
        finally:
            db.close()

    def mark_sent(self, log_id: int, attempts: int = 1) -> bool:
        return self._finish(log_id, DeliveryStatus.sent, attempts=attempts)

    def mark_failed(self, log_id: int, error: str, attempts: int = 1) -> bool:
        return self._finish(log_id, DeliveryStatus.failed, attempts=attempts, error=error)

    def _finish(self, log_id: int, status: DeliveryStatus, attempts: int, error: Optional[str] = None) -> bool:
        values = {
            EmailLog.status: status,
            EmailLog.attempts: attempts,
        }
        if status == DeliveryStatus.sent:
            values[EmailLog.sent_at] = utcnow()
        else:
            values[EmailLog.error_message] = (error or "unknown error")[:2000]

        db = self.session_factory()
        try:
            updated = (
                db.query(EmailLog)
                .filter(EmailLog.id == log_id, EmailLog.status == DeliveryStatus.pending)
                .update(values, synchronize_session=False)
            )
            db.commit()
        finally:
            db.close()

        if not updated:
            logger.warning(f"⚠️ Email log {log_id} is not PENDING, left unchanged")
        return updated == 1

    # -----------------------------------------------------------------------
    # READS (ops dashboard)
    # -----------------------------------------------------------------------

    def get(self, log_id: int) -> Optional[EmailLog]:
        db = self.session_factory()
        try:
            return db.get(EmailLog, log_id)
        finally:
            db.close()

    def search(
        self,
        recipient: Optional[str] = None,
        message_kind: Optional[MessageKind] = None,
        status: Optional[DeliveryStatus] = None,
        case_id: Optional[int] = None,
        page: int = 1,
        page_size: int = PAGE_SIZE,
    ) -> Tuple[List[EmailLog], int]:
        """
        Filter logs newest first. ``recipient`` matches a substring of the
        address, the recipient name or the subject.
        Returns (rows for the page, total matching rows).
        """
        db = self.session_factory()
        try:
            query = db.query(EmailLog)
            if message_kind is not None:
                query = query.filter(EmailLog.message_kind == message_kind)
            if status is not None:
                query = query.filter(EmailLog.status == status)
            if case_id is not None:
                query = query.filter(EmailLog.case_id == case_id)
            if recipient:
                pattern = f"%{recipient}%"
                query = query.filter(or_(
                    EmailLog.recipient_email.ilike(pattern),
                    EmailLog.recipient_name.ilike(pattern),
                    EmailLog.subject.ilike(pattern),
                ))

            total = query.count()
            rows = (
                query.order_by(EmailLog.created_at.desc(), EmailLog.id.desc())
                .offset((max(page, 1) - 1) * page_size)
                .limit(page_size)
                .all()
            )
            return rows, total
        finally:
            db.close()

    def count(
        self,
        case_id: Optional[int] = None,
        message_kind: Optional[MessageKind] = None,
        status: Optional[DeliveryStatus] = None,
    ) -> int:
        db = self.session_factory()
        try:
            query = db.query(EmailLog)
            if case_id is not None:
                query = query.filter(EmailLog.case_id == case_id)
            if message_kind is not None:
                query = query.filter(EmailLog.message_kind == message_kind)
            if status is not None:
                query = query.filter(EmailLog.status == status)
            return query.count()
        finally:
            db.close()
