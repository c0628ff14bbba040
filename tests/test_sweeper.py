from datetime import timedelta

from journal_billing.extensions import db
from journal_billing.models import PaymentSession, Subscription, User, WebhookRecord
from journal_billing.services.sweeper import sweep_unprocessed_webhooks
from journal_billing.utils.helpers import utcnow


def _later(minutes=60):
    return utcnow() + timedelta(minutes=minutes)


def test_sweeper_recovers_once_user_exists(app, client, start_session, lp_payload):
    ref, lp = start_session(plan_id="annual", email="newcomer@example.com")
    client.post("/webhooks/cardcom", json=lp_payload(ref, lp))

    with app.app_context():
        assert WebhookRecord.query.one().processed is False
        db.session.add(User(email="newcomer@example.com"))
        db.session.commit()

        report = sweep_unprocessed_webhooks(now=_later())
        assert (report.total, report.succeeded, report.failed) == (1, 1, 0)

        record = WebhookRecord.query.one()
        assert record.processed
        assert record.resolved_user_id is not None
        assert PaymentSession.query.filter_by(reference=ref).one().status == "completed"
        assert Subscription.query.count() == 1


def test_sweeper_respects_retry_schedule(app, client, start_session, lp_payload):
    ref, lp = start_session(plan_id="annual", email="nobody@example.com")
    client.post("/webhooks/cardcom", json=lp_payload(ref, lp))

    with app.app_context():
        # next_attempt_at is in the future right after the first failure
        assert sweep_unprocessed_webhooks().total == 0

        report = sweep_unprocessed_webhooks(now=_later())
        assert report.total == 1
        assert report.failed == 1
        assert WebhookRecord.query.one().processing_attempts == 2


def test_sweeper_stops_at_attempt_cap(app, client, start_session, lp_payload):
    ref, lp = start_session(plan_id="annual", email="nobody@example.com")
    client.post("/webhooks/cardcom", json=lp_payload(ref, lp))

    with app.app_context():
        record = WebhookRecord.query.one()
        record.processing_attempts = 3
        db.session.commit()

        assert sweep_unprocessed_webhooks(now=_later()).total == 0
        assert sweep_unprocessed_webhooks(now=_later(), max_attempts=5).total == 1


def test_sweeper_ignores_old_records(app, client, start_session, lp_payload):
    ref, lp = start_session(plan_id="annual", email="nobody@example.com")
    client.post("/webhooks/cardcom", json=lp_payload(ref, lp))

    with app.app_context():
        assert sweep_unprocessed_webhooks(now=_later(60 * 49)).total == 0


def test_sweeper_matches_orphan_by_payer_email(app, client, plans, cardcom, user_id, lp_payload):
    from journal_billing.services.sessions import initiate_session

    with app.app_context():
        session = initiate_session(plan_id="monthly", email="trader@example.com").session
        ref, lp = session.reference, session.low_profile_id

    # notification lost its ReturnValue and carries an unknown profile id
    payload = lp_payload("", "lp-other", email="trader@example.com")
    client.post("/webhooks/cardcom", json=payload)

    with app.app_context():
        record = WebhookRecord.query.one()
        assert record.processing_result["status"] == "session_unknown"

        report = sweep_unprocessed_webhooks(now=_later())
        assert report.succeeded == 1
        record = WebhookRecord.query.one()
        assert record.reference == ref
        assert record.payload["ReturnValue"] == ref
        s = PaymentSession.query.filter_by(reference=ref).one()
        assert s.status == "completed"
        assert s.user_id == user_id
