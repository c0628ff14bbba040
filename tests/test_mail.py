from journal_billing.extensions import mail
from journal_billing.models import EmailLog
from journal_billing.services import email as mailer

def test_email_templates_render_support_address(app):
    with app.app_context():
        for name in ("payment_confirmed", "payment_failed", "subscription_cancelled", "subscription_suspended"):
            ctx = {
                "product_name": "Trading Journal",
                "support_email": "support@example.test",
                "plan_name": "Annual",
                "plan_type": "annual",
                "amount": "899.00",
                "currency": "ILS",
                "reference": "ps_1",
                "fail_count": 3,
            }
            html = app.jinja_env.get_template(f"email/{name}.html").render(**ctx)
            txt = app.jinja_env.get_template(f"email/{name}.txt").render(**ctx)
            assert "support@example.test" in html
            assert "support@example.test" in txt


def test_send_email_logs_sent(app):
    with app.app_context():
        with mail.record_messages() as outbox:
            ok = mailer.send_email("Buyer@Example.com", "Hello", "payment_failed",
                                   {"amount": "10.00", "currency": "ILS", "reference": "ps_1"})
        assert ok is True
        assert len(outbox) == 1
        assert outbox[0].subject == "Hello"
        row = EmailLog.query.one()
        assert row.to_email == "buyer@example.com"
        assert row.status == "sent"


def test_send_email_smtp_failure_is_logged(app, monkeypatch):
    def _boom(msg):
        raise OSError("smtp down")
    monkeypatch.setattr(mail, "send", _boom)

    with app.app_context():
        ok = mailer.send_email("x@example.com", "Hello", "payment_failed",
                               {"amount": "10.00", "currency": "ILS", "reference": "ps_1"})
        assert ok is False
        row = EmailLog.query.one()
        assert row.status == "failed"
        assert "smtp down" in row.meta["error"]


def test_confirmation_email_sent_on_purchase(app, client, start_session, user_id, lp_payload):
    ref, lp = start_session(plan_id="monthly", user_id=user_id)
    client.post("/webhooks/cardcom", json=lp_payload(ref, lp))
    with app.app_context():
        row = EmailLog.query.filter_by(template="payment_confirmed").one()
        assert row.user_id == user_id
        assert row.status == "sent"
