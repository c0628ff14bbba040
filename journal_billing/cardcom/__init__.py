from .client import (
    CardcomClient,
    CardcomError,
    CardcomTransientError,
    CardcomDeclined,
    CardcomNotConfigured,
    ChargeResult,
    LowProfilePage,
    get_client,
)
from .notifications import (
    Notification,
    PayloadRejected,
    decode_notification,
    format_token_expiry,
    is_successful,
    merge_payload,
)

__all__ = [
    "CardcomClient", "CardcomError", "CardcomTransientError", "CardcomDeclined", "CardcomNotConfigured",
    "ChargeResult", "LowProfilePage", "get_client",
    "Notification", "PayloadRejected", "decode_notification", "format_token_expiry",
    "is_successful", "merge_payload",
]
