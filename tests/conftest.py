import os
# Ensure the app factory picks the Testing config & SQLite memory DB
os.environ.setdefault("APP_ENV", "testing")
os.environ.setdefault("TEST_DATABASE_URL", "sqlite:///:memory:")

import itertools

import pytest
from journal_billing import create_app
from journal_billing.extensions import db
from journal_billing.cardcom.client import ChargeResult, LowProfilePage
from journal_billing.models import User
from journal_billing.services.plans import seed_default_plans

@pytest.fixture(scope="session")
def app():
    app = create_app()
    app.config.update(
        TESTING=True,
        SQLALCHEMY_DATABASE_URI="sqlite:///:memory:",
        MAIL_SUPPRESS_SEND=True,
        APP_BASE_URL="http://example.test",
        WTF_CSRF_ENABLED=False,
        SUPPORT_EMAIL="support@example.test",
        APP_ENV="test",
    )
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.drop_all()

@pytest.fixture()
def client(app):
    return app.test_client()

@pytest.fixture(autouse=True)
def _db_clean(app):
    # Clean BEFORE each test
    with app.app_context():
        db.session.rollback()
        for tbl in reversed(db.metadata.sorted_tables):
            db.session.execute(tbl.delete())
        db.session.commit()
    yield
    # And AFTER each test (keeps state hermetic even if a test fails mid-transaction)
    with app.app_context():
        db.session.rollback()
        for tbl in reversed(db.metadata.sorted_tables):
            db.session.execute(tbl.delete())
        db.session.commit()

@pytest.fixture()
def plans(app):
    with app.app_context():
        seed_default_plans()

@pytest.fixture()
def user_id(app):
    with app.app_context():
        u = User(email="trader@example.com", full_name="Dana Trader")
        u.set_password("x")
        db.session.add(u)
        db.session.commit()
        return u.id


class FakeCardcom:
    """Stands in for CardcomClient; records every call."""

    def __init__(self):
        self._ids = itertools.count(1)
        self.created = []
        self.lp_calls = []
        self.indicator_calls = []
        self.charges = []
        self.create_error = None
        self.lp_error = None
        self.indicator_error = None
        self.lp_results = {}
        self.indicator_results = {}
        self.charge_results = []

    def create_low_profile(self, **kwargs):
        self.created.append(kwargs)
        if self.create_error is not None:
            raise self.create_error
        n = next(self._ids)
        return LowProfilePage(low_profile_id=f"lp-{n}", url=f"https://pay.example.test/lp-{n}")

    def get_lp_result(self, low_profile_id):
        self.lp_calls.append(low_profile_id)
        if self.lp_error is not None:
            raise self.lp_error
        return dict(self.lp_results.get(low_profile_id, {}))

    def get_indicator(self, low_profile_id):
        self.indicator_calls.append(low_profile_id)
        if self.indicator_error is not None:
            raise self.indicator_error
        return dict(self.indicator_results.get(low_profile_id, {}))

    def charge_token(self, **kwargs):
        self.charges.append(kwargs)
        outcome = self.charge_results.pop(0) if self.charge_results else True
        if isinstance(outcome, Exception):
            raise outcome
        if outcome is True:
            return ChargeResult(approved=True, response_code=0, deal_number=f"D{len(self.charges)}",
                                description="OK")
        return ChargeResult(approved=False, response_code=outcome, deal_number=None, description="Declined")


@pytest.fixture()
def cardcom(monkeypatch):
    fake = FakeCardcom()
    # patch the name imported in each service
    for target in (
        "journal_billing.services.sessions.get_client",
        "journal_billing.services.verification.get_client",
        "journal_billing.services.renewals.get_client",
    ):
        monkeypatch.setattr(target, lambda: fake)
    return fake


def lp_success(reference, low_profile_id, token="tok-1", last4="4242", email=None, deal_code=0, transaction_id="9001"):
    """Low Profile result/webhook body for an approved page."""
    deal = {
        "ResponseCode": deal_code,
        "TranzactionId": transaction_id,
        "Last4CardDigits": last4,
        "Brand": "Visa",
        "Amount": 899,
        "CardMonth": 12,
        "CardYear": 2030,
    }
    if email:
        deal["CardOwnerEmail"] = email
    body = {
        "ResponseCode": 0,
        "Description": "OK",
        "LowProfileId": low_profile_id,
        "ReturnValue": reference,
        "TranzactionInfo": deal,
    }
    if token:
        body["TokenInfo"] = {"Token": token, "TokenExDate": "20301231", "CardMonth": 12, "CardYear": 2030}
    return body


@pytest.fixture()
def lp_payload():
    return lp_success


def open_session(app, cardcom, plan_id="annual", user_id=None, email="trader@example.com"):
    """Initiate a session through the service; returns (reference, low_profile_id)."""
    from journal_billing.services.sessions import initiate_session
    with app.app_context():
        result = initiate_session(plan_id=plan_id, email=email, user_id=user_id)
        assert result.success, result.error
        return result.session.reference, result.session.low_profile_id


@pytest.fixture()
def start_session(app, cardcom, plans):
    def _start(plan_id="annual", user_id=None, email="trader@example.com"):
        return open_session(app, cardcom, plan_id=plan_id, user_id=user_id, email=email)
    return _start
