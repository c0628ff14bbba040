from sqlalchemy import func, text
from journal_billing.extensions import db
from journal_billing.utils.helpers import utcnow
from .columns import JSONDocument

SOURCE_CARDCOM = "cardcom"
SOURCE_MANUAL_RECOVERY = "manual_recovery"

class WebhookRecord(db.Model):
    """Raw gateway notification, kept for audit and retried until processed."""

    __tablename__ = "webhook_records"

    id = db.Column(db.Integer, primary_key=True)
    source = db.Column(db.String(32), nullable=False, index=True, default=SOURCE_CARDCOM)
    reference = db.Column(db.String(64), nullable=True, index=True)
    low_profile_id = db.Column(db.String(64), nullable=True, index=True)

    payload = db.Column(JSONDocument, nullable=False, default=dict)
    processed = db.Column(db.Boolean, nullable=False, index=True, default=False)
    processing_attempts = db.Column(db.Integer, nullable=False, server_default=text("0"), default=0)
    processing_result = db.Column(JSONDocument, nullable=True)
    resolved_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    next_attempt_at = db.Column(db.DateTime, nullable=True, index=True)
    last_attempt_at = db.Column(db.DateTime, nullable=True)
    processed_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow, server_default=func.now(), index=True)

    @property
    def succeeded(self) -> bool:
        return bool(self.processed and (self.processing_result or {}).get("success"))

    def __repr__(self) -> str:
        return f"<WebhookRecord id={self.id} reference={self.reference!r} processed={self.processed}>"
