import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional
from urllib.parse import urlencode, urljoin

from flask import current_app
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError

from journal_billing.cardcom.client import CardcomClient, CardcomDeclined, CardcomError, get_client
from journal_billing.extensions import db
from journal_billing.models import PaymentSession, User, WebhookRecord
from journal_billing.models.payment_session import (
    OPEN_SESSION_STATUSES,
    SESSION_EXPIRED,
    SESSION_FAILED,
    SESSION_PENDING,
    SESSION_SUBMITTED,
)
from journal_billing.observability import log_event
from journal_billing.services.plans import get_plan
from journal_billing.utils.helpers import utcnow


class SessionError(RuntimeError):
    def __init__(self, code: str, message: Optional[str] = None):
        super().__init__(message or code)
        self.code = code


@dataclass
class InitiationResult:
    success: bool
    session: Optional[PaymentSession]
    url: Optional[str] = None
    replayed: bool = False
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        s = self.session
        return {
            "success": self.success,
            "reference": s.reference if s else None,
            "sessionId": s.id if s else None,
            "lowProfileId": s.low_profile_id if s else None,
            "status": s.status if s else None,
            "url": self.url,
            "replayed": self.replayed,
            "error": self.error,
        }


def _absolute_url(path: str, **params) -> str:
    base = (current_app.config.get("APP_BASE_URL") or "").rstrip("/") + "/"
    url = urljoin(base, path.lstrip("/"))
    return f"{url}?{urlencode(params)}" if params else url


def new_reference() -> str:
    return f"ps_{uuid.uuid4().hex}"


def find_session(
    identifier: Optional[str] = None,
    *,
    reference: Optional[str] = None,
    low_profile_id: Optional[str] = None,
) -> Optional[PaymentSession]:
    """By reference first, then by gateway profile id. `identifier` may be either."""
    if reference:
        found = PaymentSession.query.filter_by(reference=reference).first()
        if found is not None:
            return found
    if low_profile_id:
        found = PaymentSession.query.filter_by(low_profile_id=low_profile_id).first()
        if found is not None:
            return found
    if identifier:
        return PaymentSession.query.filter(
            or_(PaymentSession.reference == identifier, PaymentSession.low_profile_id == identifier)
        ).first()
    return None


def _replay(session: PaymentSession) -> InitiationResult:
    log_event("payment_session_replayed", reference=session.reference, status=session.status)
    return InitiationResult(
        success=session.status != SESSION_FAILED,
        session=session,
        url=session.payment_url,
        replayed=True,
        error=(session.details or {}).get("error"),
    )


def initiate_session(
    *,
    plan_id: str,
    email: Optional[str] = None,
    full_name: Optional[str] = None,
    phone: Optional[str] = None,
    user_id: Optional[int] = None,
    reference: Optional[str] = None,
    registration: Optional[Dict[str, Any]] = None,
    success_url: Optional[str] = None,
    failed_url: Optional[str] = None,
    client: Optional[CardcomClient] = None,
) -> InitiationResult:
    """
    Create a pending session and open a CardCom hosted page for it.
    A known `reference` is an idempotent replay: the stored session comes back
    and the gateway is not called again.
    """
    if reference:
        existing = PaymentSession.query.filter_by(reference=reference).first()
        if existing is not None:
            return _replay(existing)

    plan = get_plan(plan_id)
    if plan is None:
        raise SessionError("unknown_plan", f"Unknown plan {plan_id!r}")

    user = db.session.get(User, user_id) if user_id else None
    if user_id and user is None:
        raise SessionError("unknown_user")
    email = (email or (user.email if user else "") or "").strip().lower()
    if "@" not in email:
        raise SessionError("invalid_email")
    full_name = full_name or (user.full_name if user else None)

    now = utcnow()
    ttl = int(current_app.config.get("PAYMENT_SESSION_TTL_MINUTES", 30))
    session = PaymentSession(
        reference=reference or new_reference(),
        user_id=user.id if user else None,
        payer_email=email,
        plan_id=plan.id,
        amount=plan.amount,
        currency=plan.currency,
        operation=plan.operation,
        status=SESSION_PENDING,
        details={"payer": {"email": email, "full_name": full_name, "phone": phone},
                 "registration": registration or None},
        expires_at=now + timedelta(minutes=ttl),
    )
    db.session.add(session)
    try:
        db.session.commit()
    except IntegrityError:
        # same client reference raced us
        db.session.rollback()
        existing = PaymentSession.query.filter_by(reference=reference).first()
        if existing is None:
            raise
        return _replay(existing)

    ref = session.reference
    try:
        client = client or get_client()
        page = client.create_low_profile(
            operation=plan.operation,
            amount=plan.amount,
            currency=plan.currency,
            return_value=ref,
            product_name=plan.name,
            success_url=success_url or _absolute_url("payments/return", reference=ref),
            failed_url=failed_url or _absolute_url("payments/return", reference=ref, outcome="failed"),
            webhook_url=_absolute_url("webhooks/cardcom"),
            email=email,
            full_name=full_name,
            phone=phone,
        )
    except CardcomError as exc:
        error = "gateway_declined" if isinstance(exc, CardcomDeclined) else "gateway_unavailable"
        session.status = SESSION_FAILED
        session.details = {**(session.details or {}), "error": error, "gateway_error": str(exc)}
        db.session.commit()
        log_event("payment_session_failed", level=logging.WARNING, reference=ref, plan=plan.id, error=str(exc))
        return InitiationResult(success=False, session=session, error=error)

    session.low_profile_id = page.low_profile_id
    session.payment_url = page.url
    session.status = SESSION_SUBMITTED
    db.session.commit()

    log_event(
        "payment_session_created",
        reference=ref,
        session_id=session.id,
        plan=plan.id,
        operation=plan.operation,
        amount=str(plan.amount),
        user_id=session.user_id,
    )
    return InitiationResult(success=True, session=session, url=page.url)


def has_pending_notifications(session: PaymentSession) -> bool:
    """True while a stored gateway notification for the session still awaits processing."""
    match = [WebhookRecord.reference == session.reference]
    if session.low_profile_id:
        match.append(WebhookRecord.low_profile_id == session.low_profile_id)
    pending = WebhookRecord.query.filter(or_(*match), WebhookRecord.processed.is_(False))
    return db.session.query(pending.exists()).scalar()


def expire_stale_sessions(now: Optional[datetime] = None) -> int:
    """Open sessions past expires_at with no notification left to process -> expired."""
    now = now or utcnow()
    candidates = PaymentSession.query.filter(
        PaymentSession.status.in_(OPEN_SESSION_STATUSES),
        PaymentSession.expires_at < now,
    ).all()
    expired = 0
    for session in candidates:
        if has_pending_notifications(session):
            continue
        session.status = SESSION_EXPIRED
        expired += 1
    db.session.commit()
    if expired:
        log_event("payment_sessions_expired", count=expired)
    return expired
