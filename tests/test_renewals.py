from datetime import timedelta

from journal_billing.cardcom.client import CardcomTransientError
from journal_billing.extensions import db
from journal_billing.models import EmailLog, PaymentHistory, PaymentToken, Subscription
from journal_billing.services.renewals import charge_due_subscriptions
from journal_billing.utils.helpers import utcnow


def _due_subscription(app, user_id, plan="monthly", status="trial", with_token=True, token_value="tok-r"):
    with app.app_context():
        token = None
        if with_token:
            token = PaymentToken(user_id=user_id, token=token_value, card_month=12, card_year=2030, card_last4="4242")
            db.session.add(token)
            db.session.flush()
        now = utcnow()
        sub = Subscription(
            user_id=user_id,
            plan_type=plan,
            status=status,
            trial_ends_at=now - timedelta(hours=1) if status == "trial" else None,
            current_period_ends_at=now - timedelta(hours=1),
            next_charge_at=now - timedelta(hours=1),
            payment_token_id=token.id if token else None,
            payment_method={},
        )
        db.session.add(sub)
        db.session.commit()
        return sub.id


def test_trial_end_charges_and_activates(app, cardcom, plans, user_id):
    sub_id = _due_subscription(app, user_id)
    with app.app_context():
        report = charge_due_subscriptions()
        assert (report.total, report.succeeded) == (1, 1)

        charge = cardcom.charges[0]
        assert charge["token"] == "tok-r"
        assert str(charge["amount"]) == "99.00"
        assert charge["external_id"].startswith(f"renewal-{sub_id}-")

        sub = db.session.get(Subscription, sub_id)
        assert sub.status == "active"
        assert sub.trial_ends_at is None
        assert sub.fail_count == 0
        assert sub.next_charge_at > utcnow() + timedelta(days=27)
        row = PaymentHistory.query.filter_by(event="renewal").one()
        assert row.transaction_id == "D1"

        # nothing due any more
        assert charge_due_subscriptions().total == 0


def test_three_declines_suspend(app, cardcom, plans, user_id):
    sub_id = _due_subscription(app, user_id, status="active")
    cardcom.charge_results = [51, 51, 51]
    with app.app_context():
        for expected in (1, 2):
            report = charge_due_subscriptions()
            assert report.failed == 1
            sub = db.session.get(Subscription, sub_id)
            assert sub.fail_count == expected
            assert sub.status == "active"

        charge_due_subscriptions()
        sub = db.session.get(Subscription, sub_id)
        assert sub.status == "suspended"
        assert sub.fail_count == 3
        assert PaymentHistory.query.filter_by(event="renewal_failed").count() == 3
        assert EmailLog.query.filter_by(template="subscription_suspended").count() == 1

        # suspended subscriptions are not charged
        assert charge_due_subscriptions().total == 0
        assert len(cardcom.charges) == 3


def test_transport_error_does_not_count_as_decline(app, cardcom, plans, user_id):
    sub_id = _due_subscription(app, user_id, status="active")
    cardcom.charge_results = [CardcomTransientError("timeout")]
    with app.app_context():
        report = charge_due_subscriptions()
        assert report.errors == 1
        sub = db.session.get(Subscription, sub_id)
        assert sub.fail_count == 0
        assert sub.status == "active"
        assert PaymentHistory.query.count() == 0


def test_missing_token_is_skipped(app, cardcom, plans, user_id):
    _due_subscription(app, user_id, status="active", with_token=False)
    with app.app_context():
        report = charge_due_subscriptions()
        assert report.skipped == 1
        assert cardcom.charges == []


def test_lifetime_and_cancelled_are_never_charged(app, cardcom, plans, user_id):
    _due_subscription(app, user_id, plan="vip", status="active")
    _due_subscription(app, user_id, plan="annual", status="cancelled", token_value="tok-c")
    with app.app_context():
        assert charge_due_subscriptions().total == 0
        assert cardcom.charges == []


def test_single_subscription_run(app, cardcom, plans, user_id):
    first = _due_subscription(app, user_id, status="active")
    with app.app_context():
        report = charge_due_subscriptions(subscription_id=first + 100)
        assert report.total == 0
        report = charge_due_subscriptions(subscription_id=first)
        assert report.succeeded == 1
