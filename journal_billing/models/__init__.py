from .user import User
from .plan import Plan
from .payment_session import PaymentSession
from .webhook_record import WebhookRecord
from .payment_token import PaymentToken
from .subscription import Subscription
from .payment_history import PaymentHistory
from .email_log import EmailLog

__all__ = [
    "User",
    "Plan",
    "PaymentSession",
    "WebhookRecord",
    "PaymentToken",
    "Subscription",
    "PaymentHistory",
    "EmailLog",
]
