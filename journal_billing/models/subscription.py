from sqlalchemy import func, text
from journal_billing.extensions import db
from journal_billing.utils.helpers import utcnow
from .columns import JSONDocument

SUB_TRIAL = "trial"
SUB_ACTIVE = "active"
SUB_CANCELLED = "cancelled"
SUB_SUSPENDED = "suspended"
SUB_FAILED = "failed"

TERMINAL_SUBSCRIPTION_STATUSES = (SUB_CANCELLED, SUB_FAILED)
CHARGEABLE_STATUSES = (SUB_ACTIVE, SUB_TRIAL)

# None stands for "no subscription yet"
ALLOWED_TRANSITIONS = {
    None: {SUB_TRIAL, SUB_ACTIVE},
    SUB_TRIAL: {SUB_TRIAL, SUB_ACTIVE, SUB_SUSPENDED, SUB_CANCELLED},
    SUB_ACTIVE: {SUB_ACTIVE, SUB_SUSPENDED, SUB_CANCELLED},
    SUB_SUSPENDED: {SUB_ACTIVE, SUB_SUSPENDED, SUB_CANCELLED},
    SUB_CANCELLED: set(),
    SUB_FAILED: set(),
}

class Subscription(db.Model):
    __tablename__ = "subscriptions"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True)

    plan_type = db.Column(db.String(32), db.ForeignKey("plans.id"), nullable=False, index=True)
    status = db.Column(db.String(16), nullable=False, index=True)

    trial_ends_at = db.Column(db.DateTime, nullable=True)
    current_period_ends_at = db.Column(db.DateTime, nullable=True)
    next_charge_at = db.Column(db.DateTime, nullable=True, index=True)

    payment_method = db.Column(JSONDocument, nullable=False, default=dict)  # brand / last4 / expiry only
    payment_token_id = db.Column(db.Integer, db.ForeignKey("payment_tokens.id"), nullable=True)
    fail_count = db.Column(db.Integer, nullable=False, server_default=text("0"), default=0)

    source_session_id = db.Column(db.Integer, db.ForeignKey("payment_sessions.id"), nullable=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)
    reminder_sent_for = db.Column(db.DateTime, nullable=True)  # period end the last reminder covered

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow, server_default=func.now())
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, server_default=func.now(), onupdate=utcnow)

    payment_token = db.relationship("PaymentToken", foreign_keys=[payment_token_id], lazy="joined")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_SUBSCRIPTION_STATUSES

    def __repr__(self) -> str:
        return f"<Subscription id={self.id} user_id={self.user_id} status={self.status!r} plan_type={self.plan_type!r}>"
