"""Workspace credit ledger: free grants, paid top-ups and debits."""
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from leadmarket.config import get_settings
from leadmarket.database import insert_ignore
from leadmarket.models.credits import CreditGrant, CreditTopUp, WorkspaceCredits
from leadmarket.utils import utcnow

logger = logging.getLogger(__name__)


@dataclass
class GrantResult:
    already_granted: bool
    credits: Decimal


def ensure_account(db: Session, workspace_id: str) -> None:
    """Create the zero-balance row for a workspace if it is missing."""
    db.execute(
        insert_ignore(db, WorkspaceCredits, ["workspace_id"]).values(
            workspace_id=workspace_id,
            balance=0,
            total_purchased=0,
            total_used=0,
            total_earned=0,
        )
    )


def get_balance(db: Session, workspace_id: str) -> Decimal:
    balance = db.execute(
        select(WorkspaceCredits.balance).where(WorkspaceCredits.workspace_id == workspace_id)
    ).scalar_one_or_none()
    return Decimal(balance) if balance is not None else Decimal("0")


def _apply_grant(db: Session, grant_id: int, workspace_id: str, credits: Decimal) -> bool:
    """
    Add a grant's credits to the balance exactly once.

    The grant row is stamped in the same transaction as the increment, so a
    second call (retry, reconciliation) finds nothing left to apply.
    """
    ensure_account(db, workspace_id)
    stamped = db.execute(
        update(CreditGrant)
        .where(CreditGrant.id == grant_id, CreditGrant.balance_applied_at.is_(None))
        .values(balance_applied_at=utcnow())
    )
    if stamped.rowcount != 1:
        db.rollback()
        return False
    db.execute(
        update(WorkspaceCredits)
        .where(WorkspaceCredits.workspace_id == workspace_id)
        .values(
            balance=WorkspaceCredits.balance + credits,
            total_earned=WorkspaceCredits.total_earned + credits,
        )
    )
    db.commit()
    return True


def grant_free_credits(
    db: Session, workspace_id: str, credits: Optional[Decimal] = None
) -> GrantResult:
    """
    Grant the free-trial credits to a workspace at most once.

    The unique ``free_credit_grants.workspace_id`` insert decides who wins
    under concurrent callers; only the winner adjusts the balance.
    """
    amount = Decimal(credits if credits is not None else get_settings().free_trial_credits)

    grant_id = db.execute(
        insert_ignore(db, CreditGrant, ["workspace_id"])
        .values(workspace_id=workspace_id, credits_granted=amount)
        .returning(CreditGrant.id)
    ).scalar_one_or_none()

    if grant_id is None:
        db.rollback()
        existing = db.execute(
            select(CreditGrant.credits_granted).where(CreditGrant.workspace_id == workspace_id)
        ).scalar_one()
        logger.info(f"Free credits already granted to workspace {workspace_id}")
        return GrantResult(already_granted=True, credits=Decimal(existing))

    db.commit()
    logger.info(f"Recorded free credit grant {grant_id} for workspace {workspace_id}")

    try:
        _apply_grant(db, grant_id, workspace_id, amount)
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning(f"Balance add failed for grant {grant_id}, retrying once: {e}")
        try:
            _apply_grant(db, grant_id, workspace_id, amount)
        except SQLAlchemyError:
            db.rollback()
            logger.error(
                f"Grant {grant_id} recorded but balance not applied; "
                "left for reconciliation",
                exc_info=True,
            )
    return GrantResult(already_granted=False, credits=amount)


def apply_pending_grants(db: Session) -> int:
    """Apply every recorded grant whose balance increment never landed."""
    pending = db.execute(
        select(CreditGrant.id, CreditGrant.workspace_id, CreditGrant.credits_granted).where(
            CreditGrant.balance_applied_at.is_(None)
        )
    ).all()
    applied = 0
    for grant_id, workspace_id, credits in pending:
        if _apply_grant(db, grant_id, workspace_id, Decimal(credits)):
            applied += 1
    if applied:
        logger.info(f"Applied {applied} pending credit grants")
    return applied


def add_credits(db: Session, workspace_id: str, credits: Decimal, reference: str) -> bool:
    """
    Idempotent paid top-up keyed by an external payment reference.

    Returns:
        True if this call added the credits, False if the reference was
        already applied.
    """
    if credits <= 0:
        raise ValueError("credits must be positive")

    topup_id = db.execute(
        insert_ignore(db, CreditTopUp, ["reference"])
        .values(workspace_id=workspace_id, reference=reference, credits=credits)
        .returning(CreditTopUp.id)
    ).scalar_one_or_none()
    if topup_id is None:
        db.rollback()
        logger.info(f"Top-up {reference} already applied")
        return False

    ensure_account(db, workspace_id)
    db.execute(
        update(WorkspaceCredits)
        .where(WorkspaceCredits.workspace_id == workspace_id)
        .values(
            balance=WorkspaceCredits.balance + credits,
            total_purchased=WorkspaceCredits.total_purchased + credits,
        )
    )
    db.commit()
    logger.info(f"Added {credits} credits to workspace {workspace_id} ({reference})")
    return True


def debit_credits(db: Session, workspace_id: str, amount: Decimal) -> bool:
    """
    Conditionally debit ``amount``; does not commit.

    Returns False (and changes nothing) when the balance is too low.
    """
    result = db.execute(
        update(WorkspaceCredits)
        .where(
            WorkspaceCredits.workspace_id == workspace_id,
            WorkspaceCredits.balance >= amount,
        )
        .values(
            balance=WorkspaceCredits.balance - amount,
            total_used=WorkspaceCredits.total_used + amount,
        )
    )
    return result.rowcount == 1
