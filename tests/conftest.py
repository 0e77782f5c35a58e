"""
conftest.py
===========
Shared fixtures for the dispatch tests.
Every test gets its own temporary SQLite file, a recording fake sender and
the real components wired by build_services().
"""

import threading
from typing import Dict, List, Optional

import pytest

from vet_dispatch.candidates import CandidateSource, Contact
from vet_dispatch.db import init_db, make_engine, make_session_factory
from vet_dispatch.models import ActionKind, ActionToken, Base, Vet
from vet_dispatch.senders import NotificationSender, SendResult
from vet_dispatch.services import build_services


# --------------------------------------------------------------------------
# FAKES
# --------------------------------------------------------------------------

class FakeSender(NotificationSender):
    """Records every send. Addresses can be told to fail or to raise."""

    def __init__(self):
        self.sent: List[dict] = []
        self.fail_for = set()
        self.raise_for = set()
        self._lock = threading.Lock()

    def send(self, to, subject, html_body, text_body):
        if to in self.raise_for:
            raise RuntimeError(f"mailbox {to} exploded")
        with self._lock:
            self.sent.append({"to": to, "subject": subject, "html": html_body, "text": text_body})
        if to in self.fail_for:
            return SendResult(ok=False, error="550 mailbox unavailable", attempts=3)
        return SendResult(ok=True)

    def sent_to(self, address: str) -> List[dict]:
        return [m for m in self.sent if m["to"] == address]


class StaticCandidateSource(CandidateSource):
    """Fixed eligibility list; can be made to fail a number of times."""

    def __init__(self, contacts: Dict[int, Contact], eligible: Optional[List[int]] = None):
        self.contacts = contacts
        self.eligible = list(contacts) if eligible is None else eligible
        self.failures_left = 0
        self.calls = 0

    def find_eligible(self, city, species, exclude_unavailable=True):
        self.calls += 1
        if self.failures_left:
            self.failures_left -= 1
            raise ConnectionError("vet directory unreachable")
        return list(self.eligible)

    def contact_for(self, vet_id):
        return self.contacts.get(vet_id)


# --------------------------------------------------------------------------
# FIXTURES
# --------------------------------------------------------------------------

@pytest.fixture
def session_factory(tmp_path):
    """Fresh SQLite database file per test."""
    engine = make_engine(f"sqlite:///{tmp_path / 'dispatch.db'}")
    init_db(Base, bind=engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def sender():
    return FakeSender()


@pytest.fixture
def add_vet(session_factory):
    """Insert a vet row and return its id."""

    def _add(name, city="Lahore", species="Cow", email=None, **extra):
        db = session_factory()
        try:
            vet = Vet(
                name=name,
                email=email if email is not None else f"{name.lower().replace(' ', '.')}@example.com",
                city=city,
                species_covered=species,
                **extra,
            )
            db.add(vet)
            db.commit()
            return vet.id
        finally:
            db.close()

    return _add


@pytest.fixture
def make_services(session_factory, sender):
    """Build the service bundle; keyword arguments override the defaults."""

    def _make(**overrides):
        options = dict(
            sender=sender,
            base_url="http://test.local",
            escalation_policy="none",
            operator_email=None,
            fanout_workers=4,
            selection_backoff_factor=0,
        )
        options.update(overrides)
        return build_services(session_factory, **options)

    return _make


@pytest.fixture
def services(make_services):
    return make_services()


@pytest.fixture
def lahore_vets(add_vet):
    """Three Lahore vets who cover cows, plus two who must never be picked."""
    ids = [add_vet("V1"), add_vet("V2"), add_vet("V3")]
    add_vet("Karachi Vet", city="Karachi")
    add_vet("Dog Vet", species="Dog")
    return ids


@pytest.fixture
def tokens_for(session_factory):
    """Look up the issued token string for (case, vet, action)."""

    def _lookup(case_id, vet_id, action=ActionKind.accept):
        db = session_factory()
        try:
            return (
                db.query(ActionToken.token)
                .filter(
                    ActionToken.case_id == case_id,
                    ActionToken.vet_id == vet_id,
                    ActionToken.action == action,
                )
                .scalar()
            )
        finally:
            db.close()

    return _lookup


def cow_case(**extra):
    fields = dict(
        city="Lahore",
        species="Cow",
        description="Cow not eating since yesterday",
        owner_name="Farmer Ali",
        owner_email="owner@example.com",
        owner_phone="+92-300-0000000",
    )
    fields.update(extra)
    return fields
