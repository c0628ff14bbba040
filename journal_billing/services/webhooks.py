import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Mapping, Optional

from flask import current_app

from journal_billing.cardcom.notifications import (
    OUTCOME_FAILED,
    OUTCOME_SUCCEEDED,
    PayloadRejected,
    decode_notification,
    evaluate,
    peek_identifiers,
)
from journal_billing.extensions import db
from journal_billing.models import WebhookRecord
from journal_billing.models.webhook_record import SOURCE_CARDCOM
from journal_billing.observability import log_event
from journal_billing.services.identity import IdentityUnresolved, resolve_session_user
from journal_billing.services.reconciliation import apply_confirmation, record_failure
from journal_billing.services.sessions import find_session
from journal_billing.utils.helpers import utcnow

# never persisted in clear
_SECRET_KEYS = {"terminalnumber", "username", "apiname", "apipassword", "userpassword"}


def strip_secrets(payload: Mapping[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in payload.items() if str(k).lower() not in _SECRET_KEYS}


def ingest_webhook(payload: Mapping[str, Any], source: str = SOURCE_CARDCOM) -> WebhookRecord:
    """Persist the raw notification first, then process it."""
    reference, low_profile_id = peek_identifiers(payload)
    record = WebhookRecord(
        source=source,
        reference=reference,
        low_profile_id=low_profile_id,
        payload=strip_secrets(payload),
        processed=False,
        processing_attempts=0,
    )
    db.session.add(record)
    db.session.commit()
    log_event("webhook_received", record_id=record.id, source=source,
              reference=reference, low_profile_id=low_profile_id)
    process_webhook_record(record)
    return record


def _retry_at(record: WebhookRecord, now: datetime) -> datetime:
    base = int(current_app.config.get("WEBHOOK_RETRY_BASE_SECONDS", 300))
    return now + timedelta(seconds=base * max(record.processing_attempts or 1, 1))


def _defer(record: WebhookRecord, result: Dict[str, Any], now: datetime) -> Dict[str, Any]:
    record.processed = False
    record.processing_result = result
    record.next_attempt_at = _retry_at(record, now)
    db.session.commit()
    log_event("webhook_deferred", level=logging.WARNING, record_id=record.id, reference=record.reference,
              attempts=record.processing_attempts, next_attempt_at=record.next_attempt_at, result=result)
    return result


def process_webhook_record(record: WebhookRecord, now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Drive one stored notification through decode -> outcome -> identity -> core.
    Returns the processing_result written to the record.
    """
    now = now or utcnow()
    record_id = record.id
    record.processing_attempts = (record.processing_attempts or 0) + 1
    record.last_attempt_at = now
    db.session.commit()

    try:
        notification = decode_notification(record.payload or {})
    except PayloadRejected as exc:
        result = {"success": False, "status": "rejected", "error": str(exc)}
        record.processed = True
        record.processing_result = result
        record.processed_at = now
        record.next_attempt_at = None
        db.session.commit()
        log_event("webhook_rejected", level=logging.WARNING, record_id=record_id, error=str(exc))
        return result

    session = find_session(reference=notification.reference, low_profile_id=notification.low_profile_id)
    if session is None:
        return _defer(record, {"success": False, "status": "session_unknown"}, now)

    # a decline needs no account; only a success has to land on a user
    outcome = evaluate(notification, session.operation)
    user = resolve_session_user(session, notification)
    if user is not None:
        record.resolved_user_id = user.id
        db.session.commit()
    elif outcome == OUTCOME_SUCCEEDED:
        db.session.rollback()
        return _defer(record, {"success": False, "status": "identity_unresolved",
                               "reference": session.reference}, now)

    try:
        if outcome == OUTCOME_SUCCEEDED:
            result = apply_confirmation(session, notification, webhook_record=record).as_record_result()
        elif outcome == OUTCOME_FAILED:
            reason = "declined"
            result = record_failure(session, notification, reason=reason, webhook_record=record).as_record_result()
        else:
            result = {"success": False, "status": "inconclusive", "reference": session.reference}
            record.processed = True
            record.processing_result = result
            record.processed_at = now
            db.session.commit()
            log_event("webhook_inconclusive", level=logging.WARNING, record_id=record_id,
                      **notification.summary())
    except IdentityUnresolved:
        db.session.rollback()
        return _defer(db.session.get(WebhookRecord, record_id),
                      {"success": False, "status": "identity_unresolved"}, now)
    except Exception as exc:
        db.session.rollback()
        current_app.logger.exception("webhook record %s processing failed", record_id)
        return _defer(db.session.get(WebhookRecord, record_id),
                      {"success": False, "status": "error", "error": str(exc)}, now)
    return result


def reprocess_webhook(record_id: int) -> Optional[Dict[str, Any]]:
    """Operator re-drive of a single record, processed or not."""
    record = db.session.get(WebhookRecord, record_id)
    if record is None:
        return None
    return process_webhook_record(record)
