from sqlalchemy import func, UniqueConstraint
from journal_billing.extensions import db
from journal_billing.utils.helpers import utcnow

class PaymentToken(db.Model):
    """Recurring-charge credential. Invalidated, never deleted."""

    __tablename__ = "payment_tokens"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True)
    token = db.Column(db.String(128), nullable=False)
    token_expiry = db.Column(db.Date, nullable=True)

    card_brand = db.Column(db.String(32), nullable=True)
    card_last4 = db.Column(db.String(4), nullable=True)
    card_month = db.Column(db.Integer, nullable=True)
    card_year = db.Column(db.Integer, nullable=True)

    is_valid = db.Column(db.Boolean, nullable=False, default=True, index=True)
    source_session_id = db.Column(db.Integer, db.ForeignKey("payment_sessions.id"), nullable=True)

    invalidated_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow, server_default=func.now())

    __table_args__ = (
        UniqueConstraint("user_id", "token", name="uq_payment_tokens_user_token"),
    )

    def __repr__(self) -> str:
        return f"<PaymentToken id={self.id} user_id={self.user_id} last4={self.card_last4!r} valid={self.is_valid}>"
