"""Shared request dependencies: caller identity and error translation."""
import hmac
from typing import Optional

from fastapi import Depends, Header, HTTPException
from sqlalchemy.orm import Session

from leadmarket.config import get_settings
from leadmarket.database import get_db
from leadmarket.errors import (
    ConflictError,
    IngestionFailure,
    LeadMarketError,
    LedgerInvariantViolation,
    NotFoundError,
    PaymentProviderError,
    PaymentProviderTimeout,
    PaymentVerificationError,
)
from leadmarket.models.partner import Partner
from leadmarket.services.payments import PaymentGateway, get_payment_gateway
from leadmarket.services.storage import LocalStorage, get_storage


def get_current_partner(
    x_partner_id: str = Header(..., description="Authenticated partner id"),
    db: Session = Depends(get_db),
) -> Partner:
    """
    Resolve the calling partner.

    Authentication happens upstream; the gateway forwards the verified
    identity in ``X-Partner-Id``.
    """
    partner = db.get(Partner, x_partner_id)
    if partner is None or not partner.is_active:
        raise HTTPException(status_code=403, detail="Partner account not found")
    return partner


def get_current_workspace(
    x_workspace_id: str = Header(..., min_length=1, max_length=36),
) -> str:
    """Buyer workspace id forwarded by the authenticating gateway."""
    return x_workspace_id


def get_webhook_owner(
    x_partner_id: Optional[str] = Header(None),
    x_workspace_id: Optional[str] = Header(None),
) -> str:
    owner_id = x_partner_id or x_workspace_id
    if not owner_id:
        raise HTTPException(status_code=401, detail="Missing caller identity")
    return owner_id


def require_admin(x_admin_token: str = Header(...)) -> None:
    if not hmac.compare_digest(x_admin_token, get_settings().admin_token):
        raise HTTPException(status_code=403, detail="Admin token required")


def get_gateway() -> PaymentGateway:
    return get_payment_gateway()


def get_file_storage() -> LocalStorage:
    return get_storage()


def http_error(exc: LeadMarketError, conflict_status: int = 400) -> HTTPException:
    """Translate a domain error into the HTTP response the API promises."""
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, LedgerInvariantViolation):
        return HTTPException(
            status_code=400, detail={"reason": exc.reason, "message": exc.message}
        )
    if isinstance(exc, ConflictError):
        return HTTPException(status_code=conflict_status, detail=str(exc))
    if isinstance(exc, (PaymentVerificationError, IngestionFailure)):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, PaymentProviderTimeout):
        return HTTPException(
            status_code=504, detail="Payment provider timed out; safe to retry"
        )
    if isinstance(exc, PaymentProviderError):
        return HTTPException(status_code=502, detail=str(exc))
    return HTTPException(status_code=500, detail="Internal error")
