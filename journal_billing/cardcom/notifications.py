"""
CardCom notification decoding.

Two steps, always in this order:
  merge_payload()       query string + form body + JSON body -> one flat dict
  decode_notification() dict -> Notification, or PayloadRejected

Two payload shapes are known: the flat "indicator" shape (legacy
interface, also what BillGoldGetLowProfileIndicator returns) and the nested
Low Profile result shape (API v11 webhooks and GetLpResult). Anything else
is rejected outright.
"""
import json
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, Mapping, Optional
from urllib.parse import parse_qsl

from journal_billing.models.plan import (
    OPERATION_CHARGE_ONLY,
    OPERATION_CHARGE_AND_TOKENIZE,
    OPERATION_TOKENIZE_ONLY,
)
from journal_billing.utils.helpers import last_four, round_currency, safe_int

SHAPE_INDICATOR = "indicator"
SHAPE_LOW_PROFILE = "low_profile"

OUTCOME_SUCCEEDED = "succeeded"
OUTCOME_FAILED = "failed"
OUTCOME_INCONCLUSIVE = "inconclusive"

_OPERATION_CODES = {
    "1": OPERATION_CHARGE_ONLY,
    "2": OPERATION_CHARGE_AND_TOKENIZE,
    "3": OPERATION_TOKENIZE_ONLY,
    "chargeonly": OPERATION_CHARGE_ONLY,
    "chargeandcreatetoken": OPERATION_CHARGE_AND_TOKENIZE,
    "createtokenonly": OPERATION_TOKENIZE_ONLY,
    OPERATION_CHARGE_ONLY: OPERATION_CHARGE_ONLY,
    OPERATION_CHARGE_AND_TOKENIZE: OPERATION_CHARGE_AND_TOKENIZE,
    OPERATION_TOKENIZE_ONLY: OPERATION_TOKENIZE_ONLY,
}

_INDICATOR_CODES = ("OperationResponse", "DealResponse", "TokenResponse")
_LOW_PROFILE_MARKERS = ("TranzactionInfo", "TokenInfo", "UIValues", "DocumentInfo")


class PayloadRejected(RuntimeError):
    """Payload matches no known CardCom notification shape."""


@dataclass(frozen=True)
class Notification:
    shape: str
    reference: Optional[str]
    low_profile_id: Optional[str]
    operation: Optional[str] = None
    operation_response: Optional[int] = None
    deal_response: Optional[int] = None
    token_response: Optional[int] = None
    token: Optional[str] = None
    token_expiry: Optional[str] = None  # YYYY-MM-DD
    card_month: Optional[int] = None
    card_year: Optional[int] = None
    card_last4: Optional[str] = None
    card_brand: Optional[str] = None
    transaction_id: Optional[str] = None
    invoice_number: Optional[str] = None
    amount: Optional[Decimal] = None
    payer_email: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    def payment_method(self) -> Dict[str, Any]:
        """Masked card summary; never includes the token."""
        return {
            "brand": self.card_brand,
            "last4": self.card_last4,
            "exp_month": self.card_month,
            "exp_year": self.card_year,
        }

    def summary(self) -> Dict[str, Any]:
        """Log-safe view."""
        return {
            "shape": self.shape,
            "reference": self.reference,
            "low_profile_id": self.low_profile_id,
            "operation": self.operation,
            "codes": [self.operation_response, self.deal_response, self.token_response],
            "transaction_id": self.transaction_id,
            "has_token": bool(self.token),
        }


# ---- parse ---------------------------------------------------------------

def _flatten(source: Any) -> Dict[str, Any]:
    if source is None:
        return {}
    if hasattr(source, "to_dict") and hasattr(source, "getlist"):
        return source.to_dict(flat=True)  # werkzeug MultiDict: first value wins
    if isinstance(source, Mapping):
        return dict(source)
    if isinstance(source, (bytes, bytearray)):
        source = source.decode("utf-8", errors="replace")
    if isinstance(source, str):
        text = source.strip()
        if not text:
            return {}
        if text[:1] in "{[":
            try:
                parsed = json.loads(text)
            except ValueError:
                parsed = None
            return dict(parsed) if isinstance(parsed, dict) else {}
        return dict(parse_qsl(text, keep_blank_values=True))
    return {}


def merge_payload(query: Any = None, form: Any = None, body: Any = None) -> Dict[str, Any]:
    """
    Collapse the three ways CardCom delivers a notification into one dict.
    Precedence: JSON/raw body over form fields over query string.
    Keys are stripped; values are kept as received.
    """
    merged: Dict[str, Any] = {}
    for part in (query, form, body):
        for key, value in _flatten(part).items():
            if key is None:
                continue
            name = str(key).strip()
            if name:
                merged[name] = value
    return merged


# ---- validate ------------------------------------------------------------

def _ci(payload: Mapping[str, Any], *names: str) -> Any:
    """Case-insensitive lookup of the first present, non-empty key."""
    lowered = {str(k).lower(): v for k, v in payload.items()}
    for name in names:
        value = lowered.get(name.lower())
        if value not in (None, ""):
            return value
    return None


def _block(payload: Mapping[str, Any], name: str) -> Dict[str, Any]:
    value = _ci(payload, name)
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError:
            return {}
    return dict(value) if isinstance(value, Mapping) else {}


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _amount(value: Any) -> Optional[Decimal]:
    if value in (None, ""):
        return None
    return round_currency(value)


def operation_from_code(value: Any) -> Optional[str]:
    if value in (None, ""):
        return None
    return _OPERATION_CODES.get(str(value).strip().lower())


def format_token_expiry(value: Any) -> Optional[str]:
    """CardCom TokenExDate (YYYYMMDD) -> YYYY-MM-DD; None when unparseable."""
    if value in (None, ""):
        return None
    if isinstance(value, (date, datetime)):
        return value.strftime("%Y-%m-%d")
    text = str(value).strip()
    for fmt in ("%Y%m%d", "%Y-%m-%d", "%d/%m/%Y"):
        try:
            return datetime.strptime(text, fmt).strftime("%Y-%m-%d")
        except ValueError:
            continue
    return None


def _expiry_parts(expiry: Optional[str]):
    if not expiry:
        return None, None
    year, month, _ = expiry.split("-")
    return int(month), int(year)


def peek_identifiers(payload: Mapping[str, Any]):
    """(reference, low_profile_id) without validating the rest of the payload."""
    if not isinstance(payload, Mapping):
        return None, None
    reference = _text(_ci(payload, "ReturnValue"))
    low_profile_id = _text(_ci(payload, "LowProfileId", "LowProfileCode"))
    return reference, low_profile_id


def extract_email(payload: Mapping[str, Any]) -> Optional[str]:
    """Payer email wherever the gateway put it."""
    candidates = (
        _block(payload, "TranzactionInfo").get("CardOwnerEmail"),
        _block(payload, "UIValues").get("CardOwnerEmail"),
        _ci(payload, "CardOwnerEmail", "Email", "email"),
    )
    for value in candidates:
        text = _text(value)
        if text and "@" in text:
            return text.lower()
    return None


def _decode_indicator(payload: Mapping[str, Any]) -> Notification:
    token_expiry = format_token_expiry(_ci(payload, "TokenExDate"))
    exp_month, exp_year = _expiry_parts(token_expiry)
    return Notification(
        shape=SHAPE_INDICATOR,
        reference=_text(_ci(payload, "ReturnValue")),
        low_profile_id=_text(_ci(payload, "LowProfileCode", "LowProfileId", "lowprofilecode")),
        operation=operation_from_code(_ci(payload, "Operation")),
        operation_response=safe_int(_ci(payload, "OperationResponse", "ResponseCode")),
        deal_response=safe_int(_ci(payload, "DealResponse")),
        token_response=safe_int(_ci(payload, "TokenResponse")),
        token=_text(_ci(payload, "Token")),
        token_expiry=token_expiry,
        card_month=safe_int(_ci(payload, "CardValidityMonth", "CardMonth")) or exp_month,
        card_year=safe_int(_ci(payload, "CardValidityYear", "CardYear")) or exp_year,
        card_last4=last_four(_ci(payload, "Last4CardDigits", "CardNumber", "CardNum")),
        card_brand=_text(_ci(payload, "CardType", "Brand", "Mutag24")),
        transaction_id=_text(_ci(payload, "InternalDealNumber", "TranzactionId")),
        invoice_number=_text(_ci(payload, "InvoiceNumber")),
        amount=_amount(_ci(payload, "SumToBill", "Amount")),
        payer_email=extract_email(payload),
        raw=dict(payload),
    )


def _decode_low_profile(payload: Mapping[str, Any]) -> Notification:
    deal = _block(payload, "TranzactionInfo")
    token_info = _block(payload, "TokenInfo")
    document = _block(payload, "DocumentInfo")

    response_code = safe_int(_ci(payload, "ResponseCode"))
    token = _text(token_info.get("Token"))
    # The nested shape has no TokenResponse; a token is only issued when the whole operation succeeds.
    if token and response_code == 0:
        token_response = 0
    elif response_code not in (None, 0):
        token_response = response_code
    else:
        token_response = None

    token_expiry = format_token_expiry(token_info.get("TokenExDate"))
    exp_month, exp_year = _expiry_parts(token_expiry)
    return Notification(
        shape=SHAPE_LOW_PROFILE,
        reference=_text(_ci(payload, "ReturnValue")),
        low_profile_id=_text(_ci(payload, "LowProfileId", "LowProfileCode")),
        operation=operation_from_code(_ci(payload, "Operation")),
        operation_response=response_code,
        deal_response=safe_int(deal.get("ResponseCode")) if deal else None,
        token_response=token_response,
        token=token,
        token_expiry=token_expiry,
        card_month=safe_int(token_info.get("CardMonth") or deal.get("CardMonth")) or exp_month,
        card_year=safe_int(token_info.get("CardYear") or deal.get("CardYear")) or exp_year,
        card_last4=last_four(deal.get("Last4CardDigits") or deal.get("Last4CardDigitsString")),
        card_brand=_text(deal.get("Brand") or deal.get("CardInfo")),
        transaction_id=_text(deal.get("TranzactionId")),
        invoice_number=_text(document.get("DocumentNumber")),
        amount=_amount(deal.get("Amount")),
        payer_email=extract_email(payload),
        raw=dict(payload),
    )


def decode_notification(payload: Mapping[str, Any]) -> Notification:
    """Strict, tagged decode. Raises PayloadRejected for unknown shapes."""
    if not isinstance(payload, Mapping) or not payload:
        raise PayloadRejected("empty payload")

    if any(_ci(payload, key) is not None for key in _LOW_PROFILE_MARKERS):
        notification = _decode_low_profile(payload)
        has_code = notification.operation_response is not None
    elif any(_ci(payload, key) is not None for key in _INDICATOR_CODES):
        notification = _decode_indicator(payload)
        has_code = True
    elif _ci(payload, "LowProfileId") is not None and _ci(payload, "ResponseCode") is not None:
        notification = _decode_low_profile(payload)
        has_code = notification.operation_response is not None
    else:
        raise PayloadRejected("unknown payload shape")

    if not has_code:
        raise PayloadRejected("no response code")
    if not notification.reference and not notification.low_profile_id:
        raise PayloadRejected("no ReturnValue or profile id")
    return notification


# ---- evaluate ------------------------------------------------------------

_REQUIRED_CODES = {
    OPERATION_TOKENIZE_ONLY: ("token_response",),
    OPERATION_CHARGE_ONLY: ("operation_response", "deal_response"),
    OPERATION_CHARGE_AND_TOKENIZE: ("operation_response", "deal_response", "token_response"),
}


def _codes(notification: Notification, names: Iterable[str]):
    return [getattr(notification, name) for name in names]


def evaluate(notification: Notification, operation: Optional[str]) -> str:
    """
    succeeded: every code the operation kind requires is present and 0.
    failed: a required code, or OperationResponse, is present and non-zero.
    inconclusive: otherwise (codes missing, nothing non-zero).
    """
    kind = operation or notification.operation
    required = _REQUIRED_CODES.get(kind)
    if required is None:
        return OUTCOME_INCONCLUSIVE
    codes = _codes(notification, required)
    if all(code == 0 for code in codes):
        return OUTCOME_SUCCEEDED
    if any(code not in (None, 0) for code in codes) or notification.operation_response not in (None, 0):
        return OUTCOME_FAILED
    return OUTCOME_INCONCLUSIVE


def is_successful(notification: Notification, operation: Optional[str]) -> bool:
    return evaluate(notification, operation) == OUTCOME_SUCCEEDED
