from journal_billing.extensions import db
from journal_billing.models import (
    EmailLog,
    PaymentHistory,
    PaymentSession,
    PaymentToken,
    Subscription,
    WebhookRecord,
)
from journal_billing.services.webhooks import reprocess_webhook


def test_webhook_success_activates_annual_subscription(app, client, start_session, user_id, lp_payload):
    ref, lp = start_session(plan_id="annual", user_id=user_id)

    resp = client.post("/webhooks/cardcom", json=lp_payload(ref, lp))
    assert resp.status_code == 200
    assert resp.get_json() == {"ok": True, "processed": True, "result": "completed"}

    with app.app_context():
        s = PaymentSession.query.filter_by(reference=ref).one()
        assert s.status == "completed"
        assert s.transaction_id == "9001"

        sub = Subscription.query.filter_by(user_id=user_id).one()
        assert sub.status == "active"
        assert sub.plan_type == "annual"
        assert sub.trial_ends_at is None
        assert sub.next_charge_at == sub.current_period_ends_at
        assert sub.payment_method["last4"] == "4242"
        assert "tok-1" not in str(sub.payment_method)

        token = PaymentToken.query.filter_by(user_id=user_id).one()
        assert token.token == "tok-1"
        assert token.is_valid
        assert sub.payment_token_id == token.id
        assert str(token.token_expiry) == "2030-12-31"

        history = PaymentHistory.query.filter_by(session_id=s.id).all()
        assert [h.event for h in history] == ["purchase"]
        assert history[0].status == "completed"

        record = WebhookRecord.query.one()
        assert record.processed
        assert record.processing_attempts == 1
        assert record.resolved_user_id == user_id


def test_monthly_token_only_starts_trial(app, client, start_session, user_id, lp_payload):
    ref, lp = start_session(plan_id="monthly", user_id=user_id)
    client.post("/webhooks/cardcom", json=lp_payload(ref, lp))

    with app.app_context():
        sub = Subscription.query.filter_by(user_id=user_id).one()
        assert sub.status == "trial"
        assert sub.trial_ends_at is not None
        assert sub.next_charge_at == sub.trial_ends_at


def test_duplicate_webhook_is_a_noop(app, client, start_session, user_id, lp_payload):
    ref, lp = start_session(plan_id="annual", user_id=user_id)
    payload = lp_payload(ref, lp)

    client.post("/webhooks/cardcom", json=payload)
    resp = client.post("/webhooks/cardcom", json=payload)
    assert resp.status_code == 200
    assert resp.get_json()["result"] == "duplicate"

    with app.app_context():
        assert Subscription.query.count() == 1
        assert PaymentToken.query.count() == 1
        assert PaymentHistory.query.filter_by(event="purchase").count() == 1
        assert WebhookRecord.query.filter_by(processed=True).count() == 2


def test_indicator_query_string_webhook(app, client, start_session, user_id):
    ref, lp = start_session(plan_id="vip", user_id=user_id)
    resp = client.get(
        "/webhooks/cardcom",
        query_string={
            "terminalnumber": "1000",
            "lowprofilecode": lp,
            "ReturnValue": ref,
            "OperationResponse": "0",
            "DealResponse": "0",
            "InternalDealNumber": "555",
            "CardNumber": "1234",
        },
    )
    assert resp.get_json()["result"] == "completed"

    with app.app_context():
        sub = Subscription.query.filter_by(user_id=user_id).one()
        assert sub.status == "active"
        assert sub.plan_type == "vip"
        assert sub.next_charge_at is None
        record = WebhookRecord.query.one()
        assert "terminalnumber" not in record.payload


def test_declined_webhook_fails_session_only(app, client, start_session, user_id):
    ref, lp = start_session(plan_id="annual", user_id=user_id)
    resp = client.post("/webhooks/cardcom", data={
        "ReturnValue": ref,
        "lowprofilecode": lp,
        "OperationResponse": "0",
        "DealResponse": "33",
        "TokenResponse": "",
    })
    assert resp.get_json()["processed"] is True

    with app.app_context():
        s = PaymentSession.query.filter_by(reference=ref).one()
        assert s.status == "failed"
        assert s.details["failure"]["deal_response"] == 33
        assert Subscription.query.count() == 0
        failed = PaymentHistory.query.filter_by(event="purchase_failed").one()
        assert failed.status == "failed"


def test_inconclusive_webhook_leaves_session_open(app, client, start_session, user_id):
    ref, lp = start_session(plan_id="annual", user_id=user_id)
    resp = client.post("/webhooks/cardcom", data={
        "ReturnValue": ref,
        "lowprofilecode": lp,
        "OperationResponse": "0",
        "DealResponse": "0",
    })
    assert resp.get_json()["result"] == "inconclusive"

    with app.app_context():
        assert PaymentSession.query.filter_by(reference=ref).one().status == "submitted"
        assert Subscription.query.count() == 0


def test_unknown_shape_is_rejected_but_stored(app, client):
    resp = client.post("/webhooks/cardcom", json={"hello": "world"})
    assert resp.status_code == 200
    assert resp.get_json()["result"] == "rejected"

    with app.app_context():
        record = WebhookRecord.query.one()
        assert record.processed
        assert record.payload == {"hello": "world"}


def test_empty_webhook_is_acknowledged(app, client):
    resp = client.post("/webhooks/cardcom")
    assert resp.status_code == 200
    assert resp.get_json()["processed"] is False
    with app.app_context():
        assert WebhookRecord.query.count() == 0


def test_unknown_session_is_deferred(app, client, plans, lp_payload):
    resp = client.post("/webhooks/cardcom", json=lp_payload("ps_missing", "lp-missing"))
    assert resp.get_json() == {"ok": True, "processed": False, "result": "session_unknown"}

    with app.app_context():
        record = WebhookRecord.query.one()
        assert record.processed is False
        assert record.next_attempt_at is not None
        assert record.processing_attempts == 1


def test_unresolved_identity_is_deferred_then_reprocessed(app, client, start_session, lp_payload):
    from journal_billing.models import User

    ref, lp = start_session(plan_id="annual", email="late@example.com")
    resp = client.post("/webhooks/cardcom", json=lp_payload(ref, lp))
    assert resp.get_json()["result"] == "identity_unresolved"

    with app.app_context():
        db.session.add(User(email="late@example.com"))
        db.session.commit()
        record_id = WebhookRecord.query.one().id

        result = reprocess_webhook(record_id)
        assert result["status"] == "completed"
        s = PaymentSession.query.filter_by(reference=ref).one()
        assert s.status == "completed"
        assert s.user_id is not None
        assert WebhookRecord.query.one().processing_attempts == 2


def test_late_success_after_expiry_still_applies(app, client, start_session, user_id, lp_payload):
    ref, lp = start_session(plan_id="annual", user_id=user_id)
    with app.app_context():
        s = PaymentSession.query.filter_by(reference=ref).one()
        s.status = "expired"
        db.session.commit()

    client.post("/webhooks/cardcom", json=lp_payload(ref, lp))

    with app.app_context():
        assert PaymentSession.query.filter_by(reference=ref).one().status == "expired"
        assert Subscription.query.filter_by(user_id=user_id).one().status == "active"
        purchase = PaymentHistory.query.filter_by(event="purchase").one()
        assert purchase.details["late_confirmation"] is True
        assert purchase.details["session_status"] == "expired"


def test_decline_before_registration_fails_session_without_user(app, client, start_session):
    ref, lp = start_session(plan_id="annual", email="walkin@example.com")
    resp = client.post("/webhooks/cardcom", data={
        "ReturnValue": ref,
        "lowprofilecode": lp,
        "OperationResponse": "5",
        "DealResponse": "5",
    })
    assert resp.get_json() == {"ok": True, "processed": True, "result": "failed"}

    with app.app_context():
        s = PaymentSession.query.filter_by(reference=ref).one()
        assert s.status == "failed"
        assert s.user_id is None
        failed = PaymentHistory.query.filter_by(event="purchase_failed").one()
        assert failed.user_id is None
        assert failed.session_id == s.id
        record = WebhookRecord.query.one()
        assert record.processed
        assert record.next_attempt_at is None
        notice = EmailLog.query.filter_by(template="payment_failed").one()
        assert notice.to_email == "walkin@example.com"
        assert Subscription.query.count() == 0
