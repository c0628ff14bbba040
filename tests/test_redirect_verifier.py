from datetime import timedelta

from journal_billing.cardcom.client import CardcomDeclined, CardcomTransientError, get_client
from journal_billing.extensions import db
from journal_billing.models import PaymentSession, Subscription, User, WebhookRecord
from journal_billing.services.sessions import expire_stale_sessions
from journal_billing.services.sweeper import sweep_unprocessed_webhooks
from journal_billing.services.verification import session_status, verify_redirect
from journal_billing.utils.helpers import utcnow


def test_return_recovers_missed_webhook_via_status_api(app, client, cardcom, start_session, user_id, lp_payload):
    ref, lp = start_session(plan_id="annual", user_id=user_id)
    result = lp_payload(ref, lp)
    del result["ReturnValue"]
    cardcom.lp_results[lp] = result

    resp = client.get("/payments/return", query_string={"reference": ref})
    assert resp.status_code == 200
    data = resp.get_json()
    assert data["success"] is True
    assert data["status"] == "completed"
    assert data["source"] == "status_api"
    assert data["transactionId"] == "9001"
    assert cardcom.lp_calls == [lp]
    assert cardcom.indicator_calls == []

    with app.app_context():
        record = WebhookRecord.query.one()
        assert record.source == "manual_recovery"
        assert record.processed
        assert record.payload["ReturnValue"] == ref
        assert Subscription.query.filter_by(user_id=user_id).one().status == "active"


def test_return_falls_back_to_indicator_on_transport_error(app, client, cardcom, start_session, user_id):
    ref, lp = start_session(plan_id="annual", user_id=user_id)
    cardcom.lp_error = CardcomTransientError("timeout")
    cardcom.indicator_results[lp] = {
        "OperationResponse": "0",
        "DealResponse": "0",
        "TokenResponse": "0",
        "Token": "tok-ind",
        "TokenExDate": "20300131",
        "InternalDealNumber": "4242",
    }

    resp = client.get("/payments/return", query_string={"lowProfileId": lp})
    data = resp.get_json()
    assert data["status"] == "completed"
    assert data["source"] == "indicator"
    assert cardcom.indicator_calls == [lp]


def test_return_without_gateway_answer_reports_processing(app, client, cardcom, start_session, user_id):
    ref, lp = start_session(plan_id="annual", user_id=user_id)
    cardcom.lp_error = CardcomTransientError("timeout")
    cardcom.indicator_error = CardcomTransientError("timeout")

    resp = client.get("/payments/return", query_string={"reference": ref})
    data = resp.get_json()
    assert resp.status_code == 200
    assert data["success"] is False
    assert data["status"] == "processing"
    assert data["supportEmail"] == "support@example.test"
    with app.app_context():
        assert WebhookRecord.query.count() == 0


def test_non_transient_gateway_error_skips_indicator(app, cardcom, start_session, user_id):
    ref, lp = start_session(plan_id="annual", user_id=user_id)
    cardcom.lp_error = CardcomDeclined(501, "unknown profile")
    with app.app_context():
        result = verify_redirect(reference=ref)
        assert result.status == "processing"
        assert cardcom.indicator_calls == []


def test_terminal_session_is_a_plain_read(app, client, cardcom, start_session, user_id, lp_payload):
    ref, lp = start_session(plan_id="annual", user_id=user_id)
    client.post("/webhooks/cardcom", json=lp_payload(ref, lp))

    for _ in range(3):
        data = client.get("/payments/return", query_string={"reference": ref}).get_json()
        assert data["status"] == "completed"
        assert data["source"] == "stored"
    assert cardcom.lp_calls == []


def test_failure_redirect_is_verified_not_trusted(app, client, cardcom, start_session, user_id, lp_payload):
    ref, lp = start_session(plan_id="annual", user_id=user_id)
    cardcom.lp_results[lp] = lp_payload(ref, lp)

    # the failure URL must not fail a session the gateway reports as paid
    data = client.get("/payments/return", query_string={"reference": ref, "outcome": "failed"}).get_json()
    assert data["status"] == "completed"


def test_return_unknown_and_missing_identifier(client, cardcom):
    assert client.get("/payments/return", query_string={"reference": "ps_nope"}).status_code == 404
    assert client.get("/payments/return").status_code == 400


def test_status_endpoint_without_live_check(app, client, cardcom, start_session, user_id):
    ref, lp = start_session(plan_id="annual", user_id=user_id)

    resp = client.get("/payments/status", query_string={"reference": ref, "live": "0"})
    assert resp.status_code == 200
    assert resp.get_json() == {"success": False, "status": "processing", "reference": ref}
    assert cardcom.lp_calls == []


def test_status_expires_overdue_session(app, cardcom, start_session, user_id):
    ref, lp = start_session(plan_id="annual", user_id=user_id)
    with app.app_context():
        s = PaymentSession.query.filter_by(reference=ref).one()
        s.expires_at = utcnow() - timedelta(minutes=5)
        db.session.commit()

        data = session_status(reference=ref, live=False)
        assert data["status"] == "expired"
        assert data["success"] is False


def test_status_live_check_completes_session(app, client, cardcom, start_session, user_id, lp_payload):
    ref, lp = start_session(plan_id="monthly", user_id=user_id)
    cardcom.lp_results[lp] = lp_payload(ref, lp)

    resp = client.get("/payments/status", query_string={"lowProfileId": lp})
    data = resp.get_json()
    assert data["success"] is True
    assert data["status"] == "completed"
    assert data["transactionId"] == "9001"


def test_status_unknown_session(client, cardcom):
    resp = client.get("/payments/status", query_string={"reference": "ps_nope"})
    assert resp.status_code == 404
    assert resp.get_json()["status"] == "unknown"


def test_recovered_gateway_answer_is_stored_without_credentials(app, client, cardcom, start_session, user_id, lp_payload):
    ref, lp = start_session(plan_id="annual", user_id=user_id)
    answer = lp_payload(ref, lp)
    answer.update(TerminalNumber="1000", ApiName="test-api")
    cardcom.lp_results[lp] = answer

    assert client.get("/payments/return", query_string={"reference": ref}).get_json()["success"] is True

    with app.app_context():
        stored = WebhookRecord.query.one().payload
        assert "TerminalNumber" not in stored
        assert "ApiName" not in stored
        assert stored["LowProfileId"] == lp


def test_deferred_payment_is_not_reported_expired(app, client, start_session, lp_payload):
    ref, lp = start_session(plan_id="annual", email="prereg@example.com")
    assert client.post("/webhooks/cardcom", json=lp_payload(ref, lp)).get_json()["result"] == "identity_unresolved"

    with app.app_context():
        s = PaymentSession.query.filter_by(reference=ref).one()
        s.expires_at = utcnow() - timedelta(minutes=5)
        db.session.commit()

        assert session_status(reference=ref, live=False) == {
            "success": False, "status": "processing", "reference": ref,
        }
        assert expire_stale_sessions() == 0
        assert PaymentSession.query.filter_by(reference=ref).one().status == "submitted"

        db.session.add(User(email="prereg@example.com"))
        db.session.commit()
        assert sweep_unprocessed_webhooks(now=utcnow() + timedelta(hours=1)).succeeded == 1

        data = session_status(reference=ref, live=False)
        assert data == {"success": True, "status": "completed", "reference": ref, "transactionId": "9001"}


def test_late_confirmation_reports_success(app, client, cardcom, start_session, user_id, lp_payload):
    ref, lp = start_session(plan_id="annual", user_id=user_id)
    with app.app_context():
        s = PaymentSession.query.filter_by(reference=ref).one()
        s.status = "expired"
        db.session.commit()

    client.post("/webhooks/cardcom", json=lp_payload(ref, lp))

    data = client.get("/payments/status", query_string={"reference": ref}).get_json()
    assert data["success"] is True
    assert data["status"] == "completed"

    data = client.get("/payments/return", query_string={"lowProfileId": lp}).get_json()
    assert data["success"] is True
    assert data["source"] == "stored"
    assert cardcom.lp_calls == []

    with app.app_context():
        assert PaymentSession.query.filter_by(reference=ref).one().status == "expired"


def test_status_without_gateway_config_reports_processing(app, client, cardcom, start_session, user_id, monkeypatch):
    ref, _ = start_session(plan_id="annual", user_id=user_id)
    monkeypatch.setattr("journal_billing.services.verification.get_client", get_client)
    monkeypatch.setitem(app.config, "CARDCOM_TERMINAL_NUMBER", None)

    resp = client.get("/payments/status", query_string={"reference": ref})
    assert resp.status_code == 200
    assert resp.get_json() == {"success": False, "status": "processing", "reference": ref}
