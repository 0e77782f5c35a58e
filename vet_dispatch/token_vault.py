"""
token_vault.py
==============
Mints and redeems the single-use tokens embedded in accept / decline links.

A token is bound to exactly one (case, vet, action). Redemption is a single
conditional UPDATE on the token row, so two concurrent clicks on the same
link produce exactly one successful redemption; the other gets
TokenAlreadyConsumed. Functions take the caller's session and never commit:
the claim in claims.py commits redemption and state change together.
"""

import logging
import secrets
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from .errors import DuplicateActiveToken, TokenAlreadyConsumed, TokenNotFound
from .models import ActionKind, ActionToken, utcnow

logger = logging.getLogger(__name__)

TOKEN_BYTES = 32


@dataclass(frozen=True)
class TokenBinding:
    """What a token is bound to."""
    token: str
    case_id: int
    vet_id: int
    action: ActionKind


def _new_token() -> str:
    return secrets.token_urlsafe(TOKEN_BYTES)


class TokenVault:

    def issue(
        self,
        db: Session,
        case_id: int,
        vet_id: int,
        action: ActionKind,
        reuse_existing: bool = True,
    ) -> str:
        """
        Return a token for (case, vet, action).

        An unconsumed token for the same triple is handed back when
        ``reuse_existing`` is set, so retrying the notification step never
        multiplies valid links. Otherwise DuplicateActiveToken is raised.
        A consumed triple cannot be re-issued (TokenAlreadyConsumed).
        """
        existing = self._find(db, case_id, vet_id, action)
        if existing is None:
            row = ActionToken(token=_new_token(), case_id=case_id, vet_id=vet_id, action=action)
            db.add(row)
            # A concurrent issue for the same triple fails here on the unique constraint
            db.flush()
            return row.token

        if existing.consumed_at is not None:
            raise TokenAlreadyConsumed(
                f"{action.value} token for case {case_id} / vet {vet_id} was already used"
            )
        if not reuse_existing:
            raise DuplicateActiveToken(
                f"Active {action.value} token already exists for case {case_id} / vet {vet_id}",
                token=existing.token,
            )
        return existing.token

    def redeem(
        self,
        db: Session,
        token: str,
        case_id: Optional[int] = None,
        action: Optional[ActionKind] = None,
    ) -> TokenBinding:
        """
        Consume ``token`` and return its binding.

        ``case_id`` / ``action`` are what the incoming link claims the token
        is for; a token presented on the wrong link is treated as unknown and
        left untouched. Redeeming an already consumed token raises
        TokenAlreadyConsumed carrying the binding.
        """
        if not token:
            raise TokenNotFound("Empty token")

        filters = [ActionToken.token == token]
        if case_id is not None:
            filters.append(ActionToken.case_id == case_id)
        if action is not None:
            filters.append(ActionToken.action == action)

        consumed = (
            db.query(ActionToken)
            .filter(*filters, ActionToken.consumed_at.is_(None))
            .update({ActionToken.consumed_at: utcnow()}, synchronize_session=False)
        )

        row = db.query(ActionToken).filter(*filters).one_or_none()
        if row is None:
            raise TokenNotFound("Unknown token")

        binding = TokenBinding(
            token=row.token,
            case_id=row.case_id,
            vet_id=row.vet_id,
            action=row.action,
        )
        if consumed != 1:
            logger.debug(f"🔂 Token for case={row.case_id} vet={row.vet_id} already consumed")
            raise TokenAlreadyConsumed(
                f"{row.action.value} token for case {row.case_id} / vet {row.vet_id} was already used",
                binding=binding,
            )
        return binding

    def peek(self, db: Session, token: str) -> Optional[ActionToken]:
        """Read-only lookup, never consumes."""
        return db.query(ActionToken).filter(ActionToken.token == token).one_or_none()

    def _find(self, db: Session, case_id: int, vet_id: int, action: ActionKind) -> Optional[ActionToken]:
        return (
            db.query(ActionToken)
            .filter(
                ActionToken.case_id == case_id,
                ActionToken.vet_id == vet_id,
                ActionToken.action == action,
            )
            .one_or_none()
        )
