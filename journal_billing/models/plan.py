from sqlalchemy import func, text
from journal_billing.extensions import db
from journal_billing.utils.helpers import utcnow
from .columns import Money

OPERATION_CHARGE_ONLY = "charge_only"
OPERATION_CHARGE_AND_TOKENIZE = "charge_and_tokenize"
OPERATION_TOKENIZE_ONLY = "tokenize_only"
OPERATIONS = (OPERATION_CHARGE_ONLY, OPERATION_CHARGE_AND_TOKENIZE, OPERATION_TOKENIZE_ONLY)

PERIOD_MONTH = "month"
PERIOD_YEAR = "year"
PERIOD_LIFETIME = "lifetime"
RECURRING_PERIODS = (PERIOD_MONTH, PERIOD_YEAR)

class Plan(db.Model):
    __tablename__ = "plans"

    id = db.Column(db.String(32), primary_key=True)  # "monthly" | "annual" | "vip"
    name = db.Column(db.String(120), nullable=False)

    amount = db.Column(Money, nullable=False)          # first charge (0 for token-only trials)
    renewal_amount = db.Column(Money, nullable=True)   # recurring charge; NULL for lifetime
    currency = db.Column(db.String(3), nullable=False, server_default=text("'ILS'"))

    operation = db.Column(db.String(32), nullable=False)
    period = db.Column(db.String(16), nullable=False)
    trial_months = db.Column(db.Integer, nullable=False, server_default=text("0"))

    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow, server_default=func.now())
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, server_default=func.now(), onupdate=utcnow)

    @property
    def is_recurring(self) -> bool:
        return self.period in RECURRING_PERIODS

    def __repr__(self) -> str:
        return f"<Plan id={self.id!r} amount={self.amount} operation={self.operation!r} period={self.period!r}>"
