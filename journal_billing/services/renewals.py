import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from flask import current_app

from journal_billing.cardcom.client import CardcomClient, CardcomError, get_client
from journal_billing.extensions import db
from journal_billing.models import PaymentHistory, PaymentToken, Plan, Subscription, User
from journal_billing.models.payment_history import EVENT_RENEWAL, EVENT_RENEWAL_FAILED
from journal_billing.models.plan import RECURRING_PERIODS
from journal_billing.models.subscription import CHARGEABLE_STATUSES, SUB_ACTIVE, SUB_SUSPENDED
from journal_billing.observability import log_event
from journal_billing.services import email as mailer
from journal_billing.services.plans import period_end
from journal_billing.services.subscriptions import transition
from journal_billing.utils.helpers import utcnow

OUTCOME_CHARGED = "succeeded"
OUTCOME_DECLINED = "failed"
OUTCOME_SKIPPED = "skipped"
OUTCOME_ERROR = "error"


@dataclass
class RenewalReport:
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    errors: int = 0
    details: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "errors": self.errors,
            "details": self.details,
        }


def _due_query(now: datetime, subscription_id: Optional[int] = None):
    q = (
        db.session.query(Subscription)
        .join(Plan, Plan.id == Subscription.plan_type)
        .filter(
            Subscription.next_charge_at.isnot(None),
            Subscription.next_charge_at <= now,
            Subscription.status.in_(CHARGEABLE_STATUSES),
            Plan.period.in_(RECURRING_PERIODS),
        )
    )
    if subscription_id is not None:
        q = q.filter(Subscription.id == subscription_id)
    return q


def _charge_token(subscription: Subscription) -> Optional[PaymentToken]:
    token = subscription.payment_token
    if token is not None and token.is_valid:
        return token
    return (
        PaymentToken.query.filter_by(user_id=subscription.user_id, is_valid=True)
        .order_by(PaymentToken.created_at.desc(), PaymentToken.id.desc())
        .first()
    )


def _renew_one(subscription_id: int, now: datetime, client: CardcomClient) -> Dict[str, Any]:
    subscription = _due_query(now, subscription_id).with_for_update(of=Subscription).populate_existing().first()
    if subscription is None:
        # another run got here first, or the row changed since selection
        return {"id": subscription_id, "outcome": OUTCOME_SKIPPED, "reason": "not_due"}

    plan = db.session.get(Plan, subscription.plan_type)
    token = _charge_token(subscription)
    if token is None:
        db.session.rollback()
        log_event("renewal_skipped", level=logging.WARNING, subscription_id=subscription_id, reason="no_valid_token")
        return {"id": subscription_id, "outcome": OUTCOME_SKIPPED, "reason": "no_valid_token"}

    amount = plan.renewal_amount if plan.renewal_amount is not None else plan.amount
    external_id = f"renewal-{subscription.id}-{subscription.next_charge_at:%Y%m%d}"
    try:
        charge = client.charge_token(
            token=token.token,
            amount=amount,
            currency=plan.currency,
            card_month=token.card_month,
            card_year=token.card_year,
            product_name=plan.name,
            external_id=external_id,
        )
    except CardcomError as exc:
        db.session.rollback()
        log_event("renewal_error", level=logging.WARNING, subscription_id=subscription_id, error=str(exc))
        return {"id": subscription_id, "outcome": OUTCOME_ERROR, "error": str(exc)}

    method = {"brand": token.card_brand, "last4": token.card_last4,
              "exp_month": token.card_month, "exp_year": token.card_year}
    suspended = False
    try:
        if charge.approved:
            transition(subscription, SUB_ACTIVE)
            subscription.trial_ends_at = None
            ends = period_end(plan, now)
            subscription.current_period_ends_at = ends
            subscription.next_charge_at = ends
            subscription.fail_count = 0
            subscription.payment_token_id = token.id
            db.session.add(PaymentHistory(
                user_id=subscription.user_id,
                subscription_id=subscription.id,
                event=EVENT_RENEWAL,
                status="completed",
                amount=amount,
                currency=plan.currency,
                transaction_id=charge.deal_number,
                payment_method=method,
                details={"external_id": external_id},
            ))
        else:
            subscription.fail_count = (subscription.fail_count or 0) + 1
            max_failures = int(current_app.config.get("RENEWAL_MAX_FAILURES", 3))
            if subscription.fail_count >= max_failures:
                transition(subscription, SUB_SUSPENDED)
                suspended = True
            db.session.add(PaymentHistory(
                user_id=subscription.user_id,
                subscription_id=subscription.id,
                event=EVENT_RENEWAL_FAILED,
                status="failed",
                amount=amount,
                currency=plan.currency,
                payment_method=method,
                details={
                    "external_id": external_id,
                    "response_code": charge.response_code,
                    "description": charge.description,
                    "attempt": subscription.fail_count,
                },
            ))
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    if charge.approved:
        log_event("renewal_charged", subscription_id=subscription.id, user_id=subscription.user_id,
                  amount=str(amount), deal_number=charge.deal_number,
                  next_charge_at=subscription.next_charge_at)
        return {"id": subscription.id, "outcome": OUTCOME_CHARGED, "deal_number": charge.deal_number}

    log_event("renewal_declined", level=logging.WARNING, subscription_id=subscription.id,
              user_id=subscription.user_id, response_code=charge.response_code,
              fail_count=subscription.fail_count)
    if suspended:
        log_event("subscription_suspended", level=logging.WARNING, subscription_id=subscription.id,
                  user_id=subscription.user_id, fail_count=subscription.fail_count)
        user = db.session.get(User, subscription.user_id)
        if user is not None:
            try:
                mailer.send_suspension_notice(to_email=user.email, user_id=user.id, subscription=subscription)
            except Exception as exc:
                current_app.logger.warning("suspension email failed for subscription %s: %s", subscription.id, exc)
    return {"id": subscription.id, "outcome": OUTCOME_DECLINED, "fail_count": subscription.fail_count,
            "suspended": suspended}


def charge_due_subscriptions(
    subscription_id: Optional[int] = None,
    now: Optional[datetime] = None,
    client: Optional[CardcomClient] = None,
) -> RenewalReport:
    now = now or utcnow()
    due_ids = [row.id for row in _due_query(now, subscription_id).order_by(Subscription.next_charge_at.asc()).all()]
    report = RenewalReport(total=len(due_ids))
    if not due_ids:
        return report

    client = client or get_client()
    for sub_id in due_ids:
        try:
            detail = _renew_one(sub_id, now, client)
        except Exception as exc:
            current_app.logger.exception("renewal failed for subscription %s", sub_id)
            detail = {"id": sub_id, "outcome": OUTCOME_ERROR, "error": str(exc)}
        outcome = detail["outcome"]
        if outcome == OUTCOME_CHARGED:
            report.succeeded += 1
        elif outcome == OUTCOME_DECLINED:
            report.failed += 1
        elif outcome == OUTCOME_SKIPPED:
            report.skipped += 1
        else:
            report.errors += 1
        report.details.append(detail)

    log_event("renewals_done", total=report.total, succeeded=report.succeeded, failed=report.failed,
              skipped=report.skipped, errors=report.errors)
    return report
