"""
Renewal reminders: a heads-up before a trial turns into a paid month and
before an annual plan renews.

A subscription is reminded at most once per period end. The end date a
reminder covered is kept on the row, so the job can run as often as cron
likes and a renewed period gets its own reminder.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from flask import current_app
from sqlalchemy import or_

from journal_billing.extensions import db
from journal_billing.models import Plan, Subscription, User
from journal_billing.models.plan import PERIOD_YEAR
from journal_billing.models.subscription import SUB_ACTIVE, SUB_TRIAL
from journal_billing.observability import log_event
from journal_billing.services import email as mailer
from journal_billing.utils.helpers import utcnow

KIND_TRIAL = "trial_ending"
KIND_ANNUAL = "annual_renewal"


@dataclass
class ReminderReport:
    total: int = 0
    trial_sent: int = 0
    annual_sent: int = 0
    errors: int = 0
    details: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "trial_sent": self.trial_sent,
            "annual_sent": self.annual_sent,
            "errors": self.errors,
            "details": self.details,
        }


def _not_reminded(end_column):
    return or_(Subscription.reminder_sent_for.is_(None), Subscription.reminder_sent_for != end_column)


def _trials_ending(now: datetime, days: int) -> List[Subscription]:
    return (
        Subscription.query.filter(
            Subscription.status == SUB_TRIAL,
            Subscription.trial_ends_at > now,
            Subscription.trial_ends_at <= now + timedelta(days=days),
            _not_reminded(Subscription.trial_ends_at),
        )
        .order_by(Subscription.trial_ends_at.asc())
        .all()
    )


def _annual_renewing(now: datetime, days: int) -> List[Subscription]:
    return (
        Subscription.query.join(Plan, Plan.id == Subscription.plan_type)
        .filter(
            Subscription.status == SUB_ACTIVE,
            Plan.period == PERIOD_YEAR,
            Subscription.current_period_ends_at > now,
            Subscription.current_period_ends_at <= now + timedelta(days=days),
            _not_reminded(Subscription.current_period_ends_at),
        )
        .order_by(Subscription.current_period_ends_at.asc())
        .all()
    )


def _remind_one(subscription: Subscription, kind: str, due_at: datetime) -> Dict[str, Any]:
    detail = {"id": subscription.id, "user_id": subscription.user_id, "kind": kind}
    user = db.session.get(User, subscription.user_id)
    if user is None or not user.email:
        return {**detail, "ok": False, "error": "no_email"}

    plan = db.session.get(Plan, subscription.plan_type)
    sent = mailer.send_renewal_reminder(
        to_email=user.email,
        user_id=user.id,
        subscription=subscription,
        plan=plan,
        kind=kind,
        due_at=due_at,
        name=user.full_name,
    )
    if not sent:
        # left unmarked; the next run tries again
        return {**detail, "ok": False, "error": "send_failed"}

    subscription.reminder_sent_for = due_at
    db.session.commit()
    return {**detail, "ok": True, "due_at": due_at}


def send_renewal_reminders(
    now: Optional[datetime] = None,
    trial_days: Optional[int] = None,
    annual_days: Optional[int] = None,
) -> ReminderReport:
    cfg = current_app.config
    now = now or utcnow()
    trial_days = int(trial_days or cfg.get("REMINDER_TRIAL_DAYS", 3))
    annual_days = int(annual_days or cfg.get("REMINDER_ANNUAL_DAYS", 14))

    batch = [(sub, KIND_TRIAL, sub.trial_ends_at) for sub in _trials_ending(now, trial_days)]
    batch += [(sub, KIND_ANNUAL, sub.current_period_ends_at) for sub in _annual_renewing(now, annual_days)]

    report = ReminderReport(total=len(batch))
    for sub, kind, due_at in batch:
        sub_id = sub.id
        try:
            detail = _remind_one(sub, kind, due_at)
        except Exception as exc:
            db.session.rollback()
            current_app.logger.exception("renewal reminder failed for subscription %s", sub_id)
            detail = {"id": sub_id, "kind": kind, "ok": False, "error": str(exc)}

        if not detail["ok"]:
            report.errors += 1
        elif kind == KIND_TRIAL:
            report.trial_sent += 1
        else:
            report.annual_sent += 1
        report.details.append(detail)

    log_event("renewal_reminders_done", total=report.total, trial_sent=report.trial_sent,
              annual_sent=report.annual_sent, errors=report.errors)
    return report
