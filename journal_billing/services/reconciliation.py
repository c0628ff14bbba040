"""
Reconciliation core: the single mutation every confirmation channel ends in.

Webhook, redirect verification, status polling and the sweeper all call
apply_confirmation() / record_failure(). Both read the persisted session
status before writing and treat "already done" as a successful no-op, so
the same confirmation can arrive any number of times, on any channel, in
any order.
"""
import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Dict, Optional

from flask import current_app
from sqlalchemy.exc import IntegrityError

from journal_billing.cardcom.notifications import Notification
from journal_billing.extensions import db
from journal_billing.models import (
    PaymentHistory,
    PaymentSession,
    PaymentToken,
    Plan,
    Subscription,
    User,
    WebhookRecord,
)
from journal_billing.models.payment_history import EVENT_PURCHASE, EVENT_PURCHASE_FAILED
from journal_billing.models.payment_session import SESSION_COMPLETED, SESSION_FAILED
from journal_billing.models.plan import OPERATION_TOKENIZE_ONLY
from journal_billing.models.subscription import SUB_ACTIVE, SUB_SUSPENDED, SUB_TRIAL
from journal_billing.observability import log_event
from journal_billing.services import email as mailer
from journal_billing.services.identity import IdentityUnresolved
from journal_billing.services.plans import period_end, trial_end
from journal_billing.services.subscriptions import current_subscription, transition
from journal_billing.utils.helpers import utcnow


@dataclass
class ReconcileResult:
    applied: bool
    status: str
    duplicate: bool = False
    session_id: Optional[int] = None
    subscription_id: Optional[int] = None

    def as_record_result(self) -> Dict[str, Any]:
        return {
            "success": self.status in ("completed", "duplicate"),
            "status": self.status,
            "applied": self.applied,
            "session_id": self.session_id,
            "subscription_id": self.subscription_id,
        }


def _lock_session(session_id: int) -> PaymentSession:
    return (
        db.session.query(PaymentSession)
        .filter(PaymentSession.id == session_id)
        .with_for_update()
        .populate_existing()
        .one()
    )


def _finish_record(record: Optional[WebhookRecord], result: Dict[str, Any], now: datetime, user_id=None) -> None:
    if record is None:
        return
    record.processed = True
    record.processing_result = result
    record.processed_at = now
    record.next_attempt_at = None
    if user_id and not record.resolved_user_id:
        record.resolved_user_id = user_id


def _history_exists(session_id: int, event: str) -> bool:
    q = PaymentHistory.query.filter_by(session_id=session_id, event=event)
    return db.session.query(q.exists()).scalar()


def _parse_date(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        return None


def _store_token(user_id: int, session: PaymentSession, notification: Notification, now: datetime) -> Optional[PaymentToken]:
    """Insert once per (user, token); the newest token is the only valid one."""
    if not notification.token:
        return None
    token = PaymentToken.query.filter_by(user_id=user_id, token=notification.token).first()
    if token is None:
        token = PaymentToken(
            user_id=user_id,
            token=notification.token,
            source_session_id=session.id,
        )
        db.session.add(token)
    token.token_expiry = _parse_date(notification.token_expiry) or token.token_expiry
    token.card_brand = notification.card_brand or token.card_brand
    token.card_last4 = notification.card_last4 or token.card_last4
    token.card_month = notification.card_month or token.card_month
    token.card_year = notification.card_year or token.card_year
    token.is_valid = True
    token.invalidated_at = None
    db.session.flush()

    older = PaymentToken.query.filter(
        PaymentToken.user_id == user_id,
        PaymentToken.id != token.id,
        PaymentToken.is_valid.is_(True),
    ).all()
    for stale in older:
        stale.is_valid = False
        stale.invalidated_at = now
    return token


def _upsert_subscription(
    user_id: int,
    plan: Plan,
    session: PaymentSession,
    notification: Notification,
    token: Optional[PaymentToken],
    now: datetime,
) -> Subscription:
    subscription = current_subscription(user_id, lock=True)
    if subscription is None:
        subscription = Subscription(user_id=user_id, plan_type=plan.id, status=None, payment_method={})
        db.session.add(subscription)
    previous = subscription.status

    if plan.operation == OPERATION_TOKENIZE_ONLY:
        if previous == SUB_ACTIVE:
            # card update on a paying subscription: keep the paid-through dates
            transition(subscription, SUB_ACTIVE)
            if subscription.next_charge_at is None:
                subscription.current_period_ends_at = subscription.next_charge_at = period_end(plan, now)
        elif previous == SUB_SUSPENDED:
            # new card for a suspended account: the scheduler charges it on its next run
            transition(subscription, SUB_ACTIVE)
            subscription.trial_ends_at = None
            subscription.current_period_ends_at = now
            subscription.next_charge_at = now
        else:
            transition(subscription, SUB_TRIAL)
            subscription.trial_ends_at = trial_end(plan, now)
            subscription.current_period_ends_at = subscription.trial_ends_at
            subscription.next_charge_at = subscription.trial_ends_at
    else:
        transition(subscription, SUB_ACTIVE)
        subscription.trial_ends_at = None
        ends = period_end(plan, now)
        subscription.current_period_ends_at = ends
        subscription.next_charge_at = ends

    subscription.plan_type = plan.id
    subscription.fail_count = 0
    subscription.source_session_id = session.id
    subscription.cancelled_at = None
    if token is not None:
        subscription.payment_token_id = token.id
    if notification.card_last4 or notification.card_brand:
        subscription.payment_method = notification.payment_method()
    db.session.flush()
    return subscription


def _notify(fn, **kwargs) -> None:
    try:
        fn(**kwargs)
    except Exception as exc:
        current_app.logger.warning("notification %s failed: %s", getattr(fn, "__name__", fn), exc)


def _duplicate(session: PaymentSession, record: Optional[WebhookRecord], now: datetime) -> ReconcileResult:
    result = ReconcileResult(applied=False, status="duplicate", duplicate=True, session_id=session.id)
    if record is not None:
        _finish_record(record, result.as_record_result(), now, user_id=session.user_id)
        db.session.commit()
    log_event("reconcile_duplicate", reference=session.reference, session_id=session.id,
              record_id=record.id if record else None)
    return result


def apply_confirmation(
    session: PaymentSession,
    notification: Notification,
    webhook_record: Optional[WebhookRecord] = None,
) -> ReconcileResult:
    """
    Apply one successful confirmation: subscription, token, history, session,
    record. One commit; core write errors roll back and propagate.
    """
    now = utcnow()
    session_id = session.id
    session = _lock_session(session_id)

    if session.status == SESSION_COMPLETED or _history_exists(session.id, EVENT_PURCHASE):
        return _duplicate(session, webhook_record, now)

    if not session.user_id:
        raise IdentityUnresolved(f"session {session.reference!r} has no user")
    user_id = session.user_id
    plan = db.session.get(Plan, session.plan_id)
    late = session.is_terminal  # expired or failed, yet the gateway says paid

    try:
        token = _store_token(user_id, session, notification, now)
        subscription = _upsert_subscription(user_id, plan, session, notification, token, now)

        details: Dict[str, Any] = {
            "operation": session.operation,
            "channel": webhook_record.source if webhook_record is not None else "direct",
            "shape": notification.shape,
        }
        if late:
            details["late_confirmation"] = True
            details["session_status"] = session.status
        db.session.add(PaymentHistory(
            user_id=user_id,
            session_id=session.id,
            subscription_id=subscription.id,
            event=EVENT_PURCHASE,
            status="completed",
            amount=session.amount,
            currency=session.currency,
            transaction_id=notification.transaction_id,
            invoice_number=notification.invoice_number,
            payment_method=notification.payment_method(),
            details=details,
        ))

        if not late:
            session.status = SESSION_COMPLETED
            session.completed_at = now
        session.transaction_id = notification.transaction_id or session.transaction_id
        session.details = {
            **(session.details or {}),
            "transaction": {
                "transaction_id": notification.transaction_id,
                "invoice_number": notification.invoice_number,
                "payment_method": notification.payment_method(),
            },
        }

        result = ReconcileResult(
            applied=True,
            status="completed",
            session_id=session.id,
            subscription_id=subscription.id,
        )
        _finish_record(webhook_record, result.as_record_result(), now, user_id=user_id)
        db.session.commit()
    except IntegrityError:
        # another channel won the race on the token/history guards
        db.session.rollback()
        return _duplicate(_lock_session(session_id), webhook_record, now)
    except Exception:
        db.session.rollback()
        raise

    log_event(
        "reconcile_applied",
        reference=session.reference,
        session_id=session.id,
        user_id=user_id,
        subscription_id=subscription.id,
        subscription_status=subscription.status,
        plan=plan.id,
        transaction_id=notification.transaction_id,
        tokenized=token is not None,
        late=late,
    )

    user = db.session.get(User, user_id)
    to_email = (user.email if user else None) or session.payer_email
    if to_email:
        _notify(mailer.send_payment_confirmation, to_email=to_email, user_id=user_id,
                plan=plan, session=session, subscription=subscription)
    return result


def record_failure(
    session: PaymentSession,
    notification: Optional[Notification],
    reason: Optional[str] = None,
    webhook_record: Optional[WebhookRecord] = None,
) -> ReconcileResult:
    """Definitive gateway rejection. The subscription is never touched."""
    now = utcnow()
    session_id = session.id
    session = _lock_session(session_id)

    if session.is_terminal or _history_exists(session.id, EVENT_PURCHASE_FAILED):
        result = ReconcileResult(applied=False, status="ignored", duplicate=True, session_id=session.id)
        if webhook_record is not None:
            _finish_record(webhook_record, {**result.as_record_result(), "session_status": session.status}, now)
            db.session.commit()
        return result

    codes = {}
    if notification is not None:
        codes = {
            "operation_response": notification.operation_response,
            "deal_response": notification.deal_response,
            "token_response": notification.token_response,
        }
    try:
        session.status = SESSION_FAILED
        session.details = {**(session.details or {}), "failure": {"reason": reason, **codes}}
        db.session.add(PaymentHistory(
            user_id=session.user_id,
            session_id=session.id,
            event=EVENT_PURCHASE_FAILED,
            status="failed",
            amount=session.amount,
            currency=session.currency,
            transaction_id=notification.transaction_id if notification else None,
            payment_method=notification.payment_method() if notification else {},
            details={"reason": reason, **codes},
        ))
        result = ReconcileResult(applied=True, status="failed", session_id=session.id)
        _finish_record(webhook_record, {**result.as_record_result(), "success": False, "reason": reason},
                       now, user_id=session.user_id)
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return ReconcileResult(applied=False, status="ignored", duplicate=True, session_id=session_id)
    except Exception:
        db.session.rollback()
        raise

    log_event("payment_failed", level=logging.WARNING, reference=session.reference,
              session_id=session.id, user_id=session.user_id, reason=reason, **codes)

    to_email = session.payer_email
    if session.user_id:
        user = db.session.get(User, session.user_id)
        to_email = (user.email if user else None) or to_email
    if to_email:
        _notify(mailer.send_payment_failed, to_email=to_email, user_id=session.user_id,
                session=session, reason=reason)
    return result
