from flask import request, jsonify, current_app
from flask_login import current_user
from . import bp
from journal_billing.extensions import csrf, limiter
from journal_billing.services.sessions import SessionError, initiate_session
from journal_billing.services.verification import session_status, verify_redirect

_MESSAGES = {
    "unknown_plan": "The selected plan is not available.",
    "invalid_email": "A valid email address is required.",
    "unknown_user": "Unknown account.",
    "gateway_declined": "The payment page could not be opened. Please try again.",
    "gateway_unavailable": "The payment provider is not responding. Please try again shortly.",
}


def _error(key: str, status: int):
    return jsonify({
        "error": key,
        "message": _MESSAGES.get(key, key),
        "supportEmail": current_app.config.get("SUPPORT_EMAIL"),
    }), status


def _identifier_args():
    args = request.args
    return {
        "reference": args.get("reference") or args.get("ReturnValue") or None,
        "low_profile_id": (args.get("lowProfileId") or args.get("lowprofilecode")
                           or args.get("LowProfileId") or None),
    }


@csrf.exempt
@bp.post("/sessions")
@limiter.limit("10/minute")
def create_session():
    data = request.get_json(silent=True) or {}
    plan_id = (data.get("plan") or data.get("planId") or "").strip()
    if not plan_id:
        return _error("unknown_plan", 400)

    user_id = current_user.id if getattr(current_user, "is_authenticated", False) else None
    try:
        result = initiate_session(
            plan_id=plan_id,
            email=data.get("email"),
            full_name=data.get("fullName"),
            phone=data.get("phone"),
            user_id=user_id,
            reference=(data.get("reference") or None),
            registration=data.get("registration"),
        )
    except SessionError as exc:
        return _error(exc.code, 400)

    if not result.success:
        return _error(result.error or "gateway_unavailable", 502)
    return jsonify(result.to_dict()), (200 if result.replayed else 201)


@bp.get("/return")
def payment_return():
    """Browser lands here from the hosted page (success or failure URL)."""
    ids = _identifier_args()
    if not ids["reference"] and not ids["low_profile_id"]:
        return _error("missing_identifier", 400)
    result = verify_redirect(**ids)
    if result.status == "unknown":
        return jsonify(result.to_dict()), 404
    return jsonify(result.to_dict()), 200


@bp.get("/status")
@limiter.limit("60/minute")
def payment_status():
    ids = _identifier_args()
    if not ids["reference"] and not ids["low_profile_id"]:
        return _error("missing_identifier", 400)
    live = (request.args.get("live", "1") or "1").lower() not in ("0", "false", "no")
    data = session_status(live=live, **ids)
    return jsonify(data), (404 if data["status"] == "unknown" else 200)
