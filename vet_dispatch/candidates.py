"""
candidates.py
=============
Who gets notified about a case.

CandidateSource is the pluggable eligibility backend; DatabaseCandidateSource
is the default one, reading the ``vets`` table. CandidateSelector is the thin
stateless front the coordinator talks to.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from .errors import SelectionUnavailable
from .models import Vet

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Contact:
    vet_id: int
    name: str
    email: Optional[str]
    phone: Optional[str] = None


class CandidateSource:
    """Eligibility rules live behind this interface."""

    def find_eligible(self, city: str, species: str, exclude_unavailable: bool = True) -> List[int]:
        raise NotImplementedError

    def contact_for(self, vet_id: int) -> Optional[Contact]:
        raise NotImplementedError


class DatabaseCandidateSource(CandidateSource):
    """
    Active vets in the case's city who cover the species and have an e-mail
    address. Vets with an empty coverage list take every species.
    """

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def find_eligible(self, city: str, species: str, exclude_unavailable: bool = True) -> List[int]:
        db = self.session_factory()
        try:
            query = db.query(Vet).filter(
                Vet.is_active.is_(True),
                func.lower(Vet.city) == city.strip().lower(),
                Vet.email.isnot(None),
            )
            if exclude_unavailable:
                query = query.filter(Vet.is_available.is_(True))
            vets = query.order_by(Vet.id).all()
        except SQLAlchemyError as e:
            raise SelectionUnavailable(f"Vet directory query failed: {e}") from e
        finally:
            db.close()

        return [v.id for v in vets if v.covers(species)]

    def contact_for(self, vet_id: int) -> Optional[Contact]:
        db = self.session_factory()
        try:
            vet = db.get(Vet, vet_id)
            if vet is None:
                return None
            return Contact(vet_id=vet.id, name=vet.name, email=vet.email, phone=vet.phone)
        finally:
            db.close()


class CandidateSelector:
    """Delegates to a CandidateSource; keeps no state of its own."""

    def __init__(self, source: CandidateSource):
        self.source = source

    def select(self, case) -> List[int]:
        """
        Ordered, de-duplicated vet ids eligible for ``case``.
        Any failure of the source surfaces as SelectionUnavailable.
        """
        try:
            found = self.source.find_eligible(case.city, case.species, exclude_unavailable=True)
        except SelectionUnavailable:
            raise
        except Exception as e:
            raise SelectionUnavailable(f"Candidate source failed: {e}") from e

        seen = set()
        ordered = []
        for vet_id in found:
            if vet_id not in seen:
                seen.add(vet_id)
                ordered.append(vet_id)

        logger.info(f"🔎 {len(ordered)} eligible vet(s) for case {case.id} ({case.species} in {case.city})")
        return ordered
