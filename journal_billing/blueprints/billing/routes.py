from flask import Blueprint, request, jsonify, current_app
from flask_login import login_required, current_user
from journal_billing.extensions import limiter
from journal_billing.services.subscriptions import (
    SubscriptionError,
    cancel_subscription,
    current_subscription,
    latest_subscription,
    subscription_summary,
)

billing_bp = Blueprint("billing", __name__)


@billing_bp.get("/subscription")
@login_required
def subscription():
    sub = current_subscription(current_user.id) or latest_subscription(current_user.id)
    return jsonify(subscription_summary(sub)), 200


@billing_bp.post("/subscription/cancel")
@limiter.limit("5/minute")
@login_required
def cancel():
    data = request.get_json(silent=True) or request.form.to_dict()
    try:
        sub = cancel_subscription(
            current_user.id,
            reason=(data.get("reason") or None),
            feedback=(data.get("feedback") or None),
        )
    except SubscriptionError as exc:
        status = 404 if exc.code == "not_found" else 409
        return jsonify({"error": exc.code, "supportEmail": current_app.config.get("SUPPORT_EMAIL")}), status
    return jsonify(subscription_summary(sub)), 200
