from sqlalchemy import func, UniqueConstraint
from journal_billing.extensions import db
from journal_billing.utils.helpers import utcnow
from .columns import JSONDocument, Money

EVENT_PURCHASE = "purchase"
EVENT_PURCHASE_FAILED = "purchase_failed"
EVENT_RENEWAL = "renewal"
EVENT_RENEWAL_FAILED = "renewal_failed"
EVENT_CANCELLATION = "cancellation"

class PaymentHistory(db.Model):
    """
    Append-only money movement / status log.
    Only document_url may be attached after insert.
    """

    __tablename__ = "payment_history"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)
    session_id = db.Column(db.Integer, db.ForeignKey("payment_sessions.id"), nullable=True, index=True)
    subscription_id = db.Column(db.Integer, db.ForeignKey("subscriptions.id"), nullable=True, index=True)

    event = db.Column(db.String(32), nullable=False, index=True)
    status = db.Column(db.String(16), nullable=False, index=True)  # completed | failed | cancelled
    amount = db.Column(Money, nullable=True)
    currency = db.Column(db.String(3), nullable=True)

    transaction_id = db.Column(db.String(64), nullable=True, index=True)
    invoice_number = db.Column(db.String(64), nullable=True)
    payment_method = db.Column(JSONDocument, nullable=False, default=dict)
    details = db.Column(JSONDocument, nullable=False, default=dict)
    document_url = db.Column(db.String(1024), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow, server_default=func.now(), index=True)

    __table_args__ = (
        # NULL session ids (renewals, cancellations) never collide
        UniqueConstraint("session_id", "event", name="uq_payment_history_session_event"),
    )

    def __repr__(self) -> str:
        return f"<PaymentHistory id={self.id} event={self.event!r} status={self.status!r} amount={self.amount}>"
