import json
from flask import request, jsonify, current_app
from . import bp
from journal_billing.extensions import csrf, limiter
from journal_billing.cardcom.notifications import merge_payload
from journal_billing.services.webhooks import ingest_webhook

# ----- CardCom notifications (indicator / Low Profile webhook) -----
@csrf.exempt
@limiter.exempt
@bp.route("/cardcom", methods=["GET", "POST"])
def cardcom_webhook():
    """
    CardCom -> /webhooks/cardcom
    Always 200: CardCom retries aggressively on anything else, and every
    notification is already persisted before processing starts.
    """
    try:
        body = request.get_json(silent=True)
        if body is None and not request.form:
            body = request.get_data(cache=True, as_text=True)
        payload = merge_payload(query=request.args, form=request.form, body=body)
    except Exception:
        current_app.logger.exception("cardcom webhook: unreadable request")
        return jsonify({"ok": True, "processed": False, "result": "unreadable"}), 200

    if not payload:
        current_app.logger.warning(json.dumps({"event": "webhook_empty", "method": request.method}))
        return jsonify({"ok": True, "processed": False, "result": "empty"}), 200

    try:
        record = ingest_webhook(payload)
        result = (record.processing_result or {}).get("status")
        return jsonify({"ok": True, "processed": bool(record.processed), "result": result}), 200
    except Exception:
        current_app.logger.exception("cardcom webhook processing failed")
        return jsonify({"ok": True, "processed": False, "result": "error"}), 200
