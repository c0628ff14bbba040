from typing import Any, Dict, Optional

from flask import current_app

from journal_billing.extensions import db
from journal_billing.models import PaymentHistory, PaymentToken, Subscription, User
from journal_billing.models.payment_history import EVENT_CANCELLATION
from journal_billing.models.subscription import (
    ALLOWED_TRANSITIONS,
    SUB_CANCELLED,
    TERMINAL_SUBSCRIPTION_STATUSES,
)
from journal_billing.observability import log_event
from journal_billing.services import email as mailer
from journal_billing.utils.helpers import isoformat_utc, utcnow


class SubscriptionError(RuntimeError):
    def __init__(self, code: str, message: Optional[str] = None):
        super().__init__(message or code)
        self.code = code


class InvalidTransition(SubscriptionError):
    def __init__(self, current: Optional[str], target: str):
        super().__init__("invalid_transition", f"{current!r} -> {target!r} is not allowed")
        self.current = current
        self.target = target


def transition(subscription: Subscription, new_status: str) -> Subscription:
    """The only writer of Subscription.status."""
    current = subscription.status
    if new_status not in ALLOWED_TRANSITIONS.get(current, set()):
        raise InvalidTransition(current, new_status)
    subscription.status = new_status
    return subscription


def current_subscription(user_id: int, lock: bool = False) -> Optional[Subscription]:
    """The authoritative row: newest subscription not in a terminal state."""
    q = (
        db.session.query(Subscription)
        .filter(
            Subscription.user_id == user_id,
            Subscription.status.notin_(TERMINAL_SUBSCRIPTION_STATUSES),
        )
        .order_by(Subscription.created_at.desc(), Subscription.id.desc())
    )
    if lock:
        q = q.with_for_update(of=Subscription)
    return q.first()


def latest_subscription(user_id: int) -> Optional[Subscription]:
    return (
        Subscription.query.filter_by(user_id=user_id)
        .order_by(Subscription.created_at.desc(), Subscription.id.desc())
        .first()
    )


def subscription_summary(subscription: Optional[Subscription]) -> Dict[str, Any]:
    if subscription is None:
        return {"status": None}
    return {
        "id": subscription.id,
        "plan": subscription.plan_type,
        "status": subscription.status,
        "trialEndsAt": isoformat_utc(subscription.trial_ends_at),
        "currentPeriodEndsAt": isoformat_utc(subscription.current_period_ends_at),
        "nextChargeAt": isoformat_utc(subscription.next_charge_at),
        "paymentMethod": subscription.payment_method or {},
        "failCount": subscription.fail_count,
        "cancelledAt": isoformat_utc(subscription.cancelled_at),
    }


def cancel_subscription(user_id: int, reason: Optional[str] = None, feedback: Optional[str] = None) -> Subscription:
    subscription = current_subscription(user_id, lock=True)
    if subscription is None:
        latest = latest_subscription(user_id)
        if latest is not None and latest.status == SUB_CANCELLED:
            return latest
        raise SubscriptionError("not_found", "No subscription to cancel")

    now = utcnow()
    previous = subscription.status
    try:
        transition(subscription, SUB_CANCELLED)
        subscription.cancelled_at = now
        subscription.next_charge_at = None
        token = db.session.get(PaymentToken, subscription.payment_token_id) if subscription.payment_token_id else None
        if token is not None and token.is_valid:
            token.is_valid = False
            token.invalidated_at = now
        db.session.add(PaymentHistory(
            user_id=user_id,
            subscription_id=subscription.id,
            event=EVENT_CANCELLATION,
            status="cancelled",
            amount=None,
            currency=None,
            payment_method=subscription.payment_method or {},
            details={"reason": reason, "feedback": feedback, "previous_status": previous},
        ))
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    log_event("subscription_cancelled", subscription_id=subscription.id, user_id=user_id,
              previous_status=previous, reason=reason)

    user = db.session.get(User, user_id)
    if user is not None:
        try:
            mailer.send_cancellation_notice(to_email=user.email, user_id=user.id, subscription=subscription)
        except Exception as exc:
            current_app.logger.warning("cancellation email failed for user %s: %s", user_id, exc)
    return subscription

