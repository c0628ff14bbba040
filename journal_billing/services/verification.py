"""
Redirect verification: what the browser sees when it lands back from CardCom.

Cheapest, most trustworthy source first:
  1. the session is already terminal
  2. a processed, successful webhook record exists
  3. GetLpResult (status API), once
  4. the legacy indicator endpoint, only when 3 failed in transit
Gateway answers are stored as manual_recovery webhook records and driven
through the same processing path as real webhooks.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from flask import current_app
from sqlalchemy import or_

from journal_billing.cardcom.client import CardcomClient, CardcomError, CardcomTransientError, get_client
from journal_billing.extensions import db
from journal_billing.models import PaymentHistory, PaymentSession, WebhookRecord
from journal_billing.models.payment_history import EVENT_PURCHASE
from journal_billing.models.payment_session import (
    OPEN_SESSION_STATUSES,
    SESSION_COMPLETED,
    SESSION_EXPIRED,
)
from journal_billing.models.webhook_record import SOURCE_MANUAL_RECOVERY
from journal_billing.observability import log_event
from journal_billing.services.sessions import find_session, has_pending_notifications
from journal_billing.services.webhooks import process_webhook_record, strip_secrets
from journal_billing.utils.helpers import utcnow

STATUS_PROCESSING = "processing"
STATUS_UNKNOWN = "unknown"


@dataclass
class VerificationResult:
    success: bool
    status: str
    source: str
    session: Optional[PaymentSession] = None
    transaction_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "success": self.success,
            "status": self.status,
            "source": self.source,
            "reference": self.session.reference if self.session else None,
        }
        if self.transaction_id:
            data["transactionId"] = self.transaction_id
        if self.status == STATUS_PROCESSING:
            data["supportEmail"] = current_app.config.get("SUPPORT_EMAIL")
        return data


def _purchase_recorded(session: PaymentSession) -> bool:
    # a late confirmation pays for the session without moving it out of expired/failed
    q = PaymentHistory.query.filter_by(session_id=session.id, event=EVENT_PURCHASE)
    return db.session.query(q.exists()).scalar()


def _outcome(session: PaymentSession):
    """(success, public status) for a session as stored."""
    if session.status == SESSION_COMPLETED or _purchase_recorded(session):
        return True, SESSION_COMPLETED
    if session.status in OPEN_SESSION_STATUSES:
        return False, STATUS_PROCESSING
    return False, session.status


def _from_session(session: PaymentSession, source: str) -> VerificationResult:
    success, status = _outcome(session)
    return VerificationResult(
        success=success,
        status=status,
        source=source,
        session=session,
        transaction_id=session.transaction_id,
    )


def _processed_success(session: PaymentSession) -> Optional[WebhookRecord]:
    match = [WebhookRecord.reference == session.reference]
    if session.low_profile_id:
        match.append(WebhookRecord.low_profile_id == session.low_profile_id)
    candidates = (
        WebhookRecord.query.filter(or_(*match), WebhookRecord.processed.is_(True))
        .order_by(WebhookRecord.processed_at.desc())
        .all()
    )
    for record in candidates:
        if record.succeeded:
            return record
    return None


def _fetch_from_gateway(session: PaymentSession, client: CardcomClient):
    """(payload, source) or (None, None) when the gateway could not be reached."""
    try:
        return client.get_lp_result(session.low_profile_id), "status_api"
    except CardcomTransientError as exc:
        current_app.logger.warning("GetLpResult unavailable for %s: %s", session.reference, exc)
    except CardcomError as exc:
        current_app.logger.warning("GetLpResult failed for %s: %s", session.reference, exc)
        return None, None
    try:
        return client.get_indicator(session.low_profile_id), "indicator"
    except CardcomError as exc:
        current_app.logger.warning("indicator lookup failed for %s: %s", session.reference, exc)
        return None, None


def verify_redirect(
    identifier: Optional[str] = None,
    *,
    reference: Optional[str] = None,
    low_profile_id: Optional[str] = None,
    client: Optional[CardcomClient] = None,
) -> VerificationResult:
    """Safe to call any number of times; terminal sessions are a plain read."""
    session = find_session(identifier, reference=reference, low_profile_id=low_profile_id)
    if session is None:
        return VerificationResult(success=False, status=STATUS_UNKNOWN, source="none")

    if session.is_terminal:
        return _from_session(session, "stored")

    if _processed_success(session) is not None:
        return VerificationResult(success=True, status=SESSION_COMPLETED, source="webhook",
                                  session=session, transaction_id=session.transaction_id)

    if not session.low_profile_id:
        return _from_session(session, "pending")

    try:
        client = client or get_client()
    except CardcomError as exc:
        current_app.logger.error("cannot verify %s: %s", session.reference, exc)
        return _from_session(session, "pending")

    payload, source = _fetch_from_gateway(session, client)
    if payload is None:
        return _from_session(session, "pending")

    payload = strip_secrets(payload)
    payload.setdefault("ReturnValue", session.reference)
    payload.setdefault("LowProfileId", session.low_profile_id)
    record = WebhookRecord(
        source=SOURCE_MANUAL_RECOVERY,
        reference=session.reference,
        low_profile_id=session.low_profile_id,
        payload=payload,
        processed=False,
        processing_attempts=0,
    )
    db.session.add(record)
    db.session.commit()
    log_event("manual_recovery_fetched", record_id=record.id, reference=session.reference, source=source)

    process_webhook_record(record)
    db.session.refresh(session)
    return _from_session(session, source)


def session_status(
    identifier: Optional[str] = None,
    *,
    reference: Optional[str] = None,
    low_profile_id: Optional[str] = None,
    live: bool = True,
    client: Optional[CardcomClient] = None,
) -> Dict[str, Any]:
    """Backs GET /payments/status: {success, status, transactionId?}."""
    session = find_session(identifier, reference=reference, low_profile_id=low_profile_id)
    if session is None:
        return {"success": False, "status": STATUS_UNKNOWN}

    if live and not session.is_terminal:
        try:
            verify_redirect(reference=session.reference, client=client)
        except CardcomError as exc:
            current_app.logger.warning("live status check failed for %s: %s", session.reference, exc)
        db.session.refresh(session)

    if (
        session.status in OPEN_SESSION_STATUSES
        and session.expires_at
        and session.expires_at < utcnow()
        and not has_pending_notifications(session)
    ):
        session.status = SESSION_EXPIRED
        db.session.commit()
        log_event("payment_session_expired", level=logging.INFO, reference=session.reference)

    success, status = _outcome(session)
    data = {"success": success, "status": status, "reference": session.reference}
    if session.transaction_id:
        data["transactionId"] = session.transaction_id
    return data
