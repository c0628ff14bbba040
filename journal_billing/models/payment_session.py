from sqlalchemy import func
from journal_billing.extensions import db
from journal_billing.utils.helpers import utcnow
from .columns import JSONDocument, Money

SESSION_PENDING = "pending"
SESSION_SUBMITTED = "submitted"
SESSION_COMPLETED = "completed"
SESSION_FAILED = "failed"
SESSION_EXPIRED = "expired"

OPEN_SESSION_STATUSES = (SESSION_PENDING, SESSION_SUBMITTED)
TERMINAL_SESSION_STATUSES = (SESSION_COMPLETED, SESSION_FAILED, SESSION_EXPIRED)

class PaymentSession(db.Model):
    """One hosted-payment-page attempt. Status only moves forward."""

    __tablename__ = "payment_sessions"

    id = db.Column(db.Integer, primary_key=True)
    reference = db.Column(db.String(64), nullable=False, unique=True, index=True)  # echoed as ReturnValue
    low_profile_id = db.Column(db.String(64), nullable=True, unique=True, index=True)

    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="RESTRICT"), nullable=True, index=True)
    payer_email = db.Column(db.String(320), nullable=True, index=True)

    plan_id = db.Column(db.String(32), db.ForeignKey("plans.id"), nullable=False)
    amount = db.Column(Money, nullable=False)
    currency = db.Column(db.String(3), nullable=False)
    operation = db.Column(db.String(32), nullable=False)

    status = db.Column(db.String(16), nullable=False, index=True, default=SESSION_PENDING)
    payment_url = db.Column(db.String(1024), nullable=True)
    transaction_id = db.Column(db.String(64), nullable=True)
    details = db.Column(JSONDocument, nullable=False, default=dict)

    expires_at = db.Column(db.DateTime, nullable=False)
    completed_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow, server_default=func.now())
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, server_default=func.now(), onupdate=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_SESSION_STATUSES

    def __repr__(self) -> str:
        return f"<PaymentSession id={self.id} reference={self.reference!r} status={self.status!r}>"
