from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from flask import current_app
from sqlalchemy import or_

from journal_billing.cardcom.notifications import extract_email, peek_identifiers
from journal_billing.extensions import db
from journal_billing.models import PaymentSession, WebhookRecord
from journal_billing.models.payment_session import OPEN_SESSION_STATUSES, SESSION_EXPIRED
from journal_billing.observability import log_event
from journal_billing.services.identity import find_user_by_email
from journal_billing.services.sessions import find_session
from journal_billing.services.webhooks import process_webhook_record
from journal_billing.utils.helpers import utcnow


@dataclass
class SweepReport:
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    details: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"total": self.total, "succeeded": self.succeeded, "failed": self.failed, "details": self.details}


def _due_records(max_attempts: int, max_age_hours: int, limit: int, now: datetime):
    return (
        WebhookRecord.query.filter(
            WebhookRecord.processed.is_(False),
            WebhookRecord.processing_attempts < max_attempts,
            WebhookRecord.created_at >= now - timedelta(hours=max_age_hours),
            or_(WebhookRecord.next_attempt_at.is_(None), WebhookRecord.next_attempt_at <= now),
        )
        .order_by(WebhookRecord.created_at.asc(), WebhookRecord.id.asc())
        .limit(limit)
        .all()
    )


def _reresolve(record: WebhookRecord) -> Optional[int]:
    """
    Re-resolve the owner of a stuck record: session reference first, then
    payer email. Patches the record (and its session) in place; caller commits.
    """
    payload = dict(record.payload or {})
    reference, low_profile_id = peek_identifiers(payload)
    session = find_session(reference=reference, low_profile_id=low_profile_id)
    if session is not None and session.user_id:
        record.resolved_user_id = session.user_id
        return session.user_id

    email = extract_email(payload) or (session.payer_email if session is not None else None)
    user = find_user_by_email(email)
    if user is None:
        return None

    record.resolved_user_id = user.id
    if session is not None:
        session.user_id = user.id
        return user.id

    # session only reachable through the user: point the payload at it
    candidate = (
        PaymentSession.query.filter(
            or_(PaymentSession.user_id == user.id, PaymentSession.payer_email == user.email),
            PaymentSession.status.in_(OPEN_SESSION_STATUSES + (SESSION_EXPIRED,)),
        )
        .order_by(PaymentSession.created_at.desc(), PaymentSession.id.desc())
        .first()
    )
    if candidate is not None:
        candidate.user_id = candidate.user_id or user.id
        payload["ReturnValue"] = candidate.reference
        record.payload = payload
        record.reference = candidate.reference
    return user.id


def sweep_unprocessed_webhooks(
    max_attempts: Optional[int] = None,
    max_age_hours: Optional[int] = None,
    limit: Optional[int] = None,
    now: Optional[datetime] = None,
) -> SweepReport:
    cfg = current_app.config
    max_attempts = int(max_attempts or cfg.get("WEBHOOK_MAX_ATTEMPTS", 3))
    max_age_hours = int(max_age_hours or cfg.get("WEBHOOK_MAX_AGE_HOURS", 48))
    limit = int(limit or cfg.get("WEBHOOK_SWEEP_LIMIT", 20))
    now = now or utcnow()

    report = SweepReport()
    for record in _due_records(max_attempts, max_age_hours, limit, now):
        report.total += 1
        record_id = record.id
        try:
            user_id = _reresolve(record)
            db.session.commit()
            result = process_webhook_record(record, now=now)
        except Exception as exc:
            db.session.rollback()
            current_app.logger.exception("sweep failed for webhook record %s", record_id)
            report.failed += 1
            report.details.append({"id": record_id, "ok": False, "error": str(exc)})
            continue

        record = db.session.get(WebhookRecord, record_id)
        if record.processed:
            report.succeeded += 1
        else:
            report.failed += 1
        report.details.append({
            "id": record_id,
            "ok": bool(record.processed),
            "user_id": user_id,
            "status": (result or {}).get("status"),
        })

    log_event("webhook_sweep_done", total=report.total, succeeded=report.succeeded, failed=report.failed)
    return report
