from typing import Optional, Dict, Any
from flask import current_app, render_template
from flask_mail import Message
from journal_billing.extensions import db, mail
from journal_billing.models import EmailLog
from journal_billing.utils.helpers import isoformat_utc
import json
import time


def _base_context() -> Dict[str, Any]:
    cfg = current_app.config
    return {
        "product_name": cfg.get("PRODUCT_NAME", "Trading Journal"),
        "support_email": cfg.get("SUPPORT_EMAIL"),
        "app_url": cfg.get("APP_BASE_URL"),
    }


def send_email(to_email: str, subject: str, template: str, context: Optional[Dict[str, Any]] = None, user_id: Optional[int] = None) -> bool:
    """
    template: basename under templates/email/ without extension (e.g. 'payment_confirmed').
    Renders both HTML and plaintext and records an EmailLog row. Returns True when handed to the mailer.
    """
    ctx = {**_base_context(), **(context or {})}
    html_body = render_template(f"email/{template}.html", **ctx)
    text_body = render_template(f"email/{template}.txt", **ctx)

    msg = Message(recipients=[to_email], subject=subject)
    msg.body = text_body
    msg.html = html_body

    elog = EmailLog(
        user_id=user_id,
        to_email=to_email.lower(),
        template=template,
        subject=subject,
        status="queued",
        meta={},
    )
    db.session.add(elog)
    db.session.commit()

    start = time.perf_counter()
    try:
        mail.send(msg)
    except Exception as ex:
        latency_ms = int((time.perf_counter() - start) * 1000)
        elog.status = "failed"
        elog.meta = {"error": str(ex)}
        db.session.commit()
        current_app.logger.warning(json.dumps({
            "event": "mail_send",
            "template": template,
            "to": to_email.lower(),
            "outcome": "smtp_error",
            "latency_ms": latency_ms,
            "smtp_error": str(ex),
        }))
        return False

    latency_ms = int((time.perf_counter() - start) * 1000)
    elog.status = "sent"
    db.session.commit()
    current_app.logger.info(json.dumps({
        "event": "mail_send",
        "template": template,
        "to": to_email.lower(),
        "outcome": "sent",
        "latency_ms": latency_ms,
    }))
    return True


def send_payment_confirmation(*, to_email: str, user_id: Optional[int], plan, session, subscription) -> bool:
    ctx = {
        "plan_name": plan.name,
        "amount": session.amount,
        "currency": session.currency,
        "reference": session.reference,
        "transaction_id": session.transaction_id,
        "status": subscription.status,
        "trial_ends_at": isoformat_utc(subscription.trial_ends_at),
        "next_charge_at": isoformat_utc(subscription.next_charge_at),
    }
    return send_email(to_email, "Your payment was received", "payment_confirmed", ctx, user_id=user_id)


def send_payment_failed(*, to_email: str, user_id: Optional[int], session, reason: Optional[str] = None) -> bool:
    ctx = {
        "amount": session.amount,
        "currency": session.currency,
        "reference": session.reference,
        "reason": reason,
    }
    return send_email(to_email, "Your payment did not go through", "payment_failed", ctx, user_id=user_id)


def send_cancellation_notice(*, to_email: str, user_id: Optional[int], subscription) -> bool:
    ctx = {
        "plan_type": subscription.plan_type,
        "cancelled_at": isoformat_utc(subscription.cancelled_at),
        "access_until": isoformat_utc(subscription.current_period_ends_at),
    }
    return send_email(to_email, "Your subscription was cancelled", "subscription_cancelled", ctx, user_id=user_id)


def send_suspension_notice(*, to_email: str, user_id: Optional[int], subscription) -> bool:
    ctx = {
        "plan_type": subscription.plan_type,
        "fail_count": subscription.fail_count,
    }
    return send_email(to_email, "Action needed: subscription suspended", "subscription_suspended", ctx, user_id=user_id)


_REMINDER_SUBJECTS = {
    "trial_ending": "Your free trial ends soon",
    "annual_renewal": "Your annual subscription renews soon",
}


def send_renewal_reminder(*, to_email: str, user_id: Optional[int], subscription, plan, kind: str, due_at, name: Optional[str] = None) -> bool:
    """kind doubles as the template name: 'trial_ending' or 'annual_renewal'."""
    ctx = {
        "name": name,
        "plan_name": plan.name,
        "amount": plan.renewal_amount,
        "currency": plan.currency,
        "due_date": due_at.date().isoformat(),
        "due_at": isoformat_utc(due_at),
    }
    return send_email(to_email, _REMINDER_SUBJECTS[kind], kind, ctx, user_id=user_id)
