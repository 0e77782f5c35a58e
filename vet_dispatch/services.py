"""
services.py
===========
Wires the dispatch components together. The web app builds one Services
bundle at startup; tests build their own around a temporary database and
fake sender / candidate source.
"""

import datetime
from dataclasses import dataclass
from typing import Optional

from .candidates import CandidateSelector, CandidateSource, DatabaseCandidateSource
from .claims import ClaimResolver
from .config import (
    CASE_TTL_MINUTES, ESCALATION_POLICY, FANOUT_WORKERS, OPERATOR_EMAIL,
    PUBLIC_BASE_URL, SELECTION_MAX_TRIES,
)
from .dispatcher import DispatchCoordinator
from .email_log import EmailDeliveryLog
from .escalation import EscalationPolicy
from .fanout import NotificationFanout
from .senders import NotificationSender, make_sender
from .token_vault import TokenVault


@dataclass
class Services:
    session_factory: object
    delivery_log: EmailDeliveryLog
    vault: TokenVault
    source: CandidateSource
    fanout: NotificationFanout
    escalation: EscalationPolicy
    resolver: ClaimResolver
    coordinator: DispatchCoordinator


def build_services(
    session_factory,
    sender: Optional[NotificationSender] = None,
    source: Optional[CandidateSource] = None,
    base_url: str = PUBLIC_BASE_URL,
    escalation_policy: str = ESCALATION_POLICY,
    operator_email: Optional[str] = OPERATOR_EMAIL,
    case_ttl: datetime.timedelta = datetime.timedelta(minutes=CASE_TTL_MINUTES),
    fanout_workers: int = FANOUT_WORKERS,
    selection_max_tries: int = SELECTION_MAX_TRIES,
    selection_backoff_factor: float = 1.0,
) -> Services:
    sender = sender or make_sender()
    source = source or DatabaseCandidateSource(session_factory)

    delivery_log = EmailDeliveryLog(session_factory)
    vault = TokenVault()
    fanout = NotificationFanout(
        sender,
        source,
        delivery_log,
        base_url=base_url,
        max_workers=fanout_workers,
        operator_email=operator_email,
    )
    escalation = EscalationPolicy(escalation_policy, fanout=fanout)
    resolver = ClaimResolver(session_factory, vault, fanout)
    coordinator = DispatchCoordinator(
        session_factory,
        CandidateSelector(source),
        vault,
        fanout,
        escalation=escalation,
        case_ttl=case_ttl,
        selection_max_tries=selection_max_tries,
        selection_backoff_factor=selection_backoff_factor,
    )
    return Services(
        session_factory=session_factory,
        delivery_log=delivery_log,
        vault=vault,
        source=source,
        fanout=fanout,
        escalation=escalation,
        resolver=resolver,
        coordinator=coordinator,
    )
