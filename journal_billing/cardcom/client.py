"""
Thin CardCom client: the four calls the reconciliation flow makes.

All calls are single-shot. Transport problems surface as
CardcomTransientError so callers can decide whether to retry later;
a non-zero gateway response code surfaces as CardcomDeclined.
"""
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Optional
from urllib.parse import parse_qsl, urljoin

import requests
from flask import current_app

from journal_billing.models.plan import (
    OPERATION_CHARGE_ONLY,
    OPERATION_CHARGE_AND_TOKENIZE,
    OPERATION_TOKENIZE_ONLY,
)
from journal_billing.utils.helpers import safe_int

CREATE_PATH = "/api/v11/LowProfile/Create"
RESULT_PATH = "/api/v11/LowProfile/GetLpResult"
INDICATOR_PATH = "/Interface/BillGoldGetLowProfileIndicator.aspx"
CHARGE_TOKEN_PATH = "/Interface/ChargeToken.aspx"

OPERATION_NAMES = {
    OPERATION_CHARGE_ONLY: "ChargeOnly",
    OPERATION_CHARGE_AND_TOKENIZE: "ChargeAndCreateToken",
    OPERATION_TOKENIZE_ONLY: "CreateTokenOnly",
}

ISO_COIN_IDS = {"ILS": 1, "USD": 2}


class CardcomError(RuntimeError):
    """Base class for gateway failures."""


class CardcomTransientError(CardcomError):
    """Timeout, connection failure or 5xx. Safe to retry later."""


class CardcomNotConfigured(CardcomError):
    """Terminal number or API name missing from the app config."""


class CardcomDeclined(CardcomError):
    """The gateway answered with a non-zero response code."""

    def __init__(self, code: Optional[int], description: str = "", payload: Optional[Dict[str, Any]] = None):
        super().__init__(f"CardCom response {code}: {description}".strip())
        self.code = code
        self.description = description
        self.payload = payload or {}


@dataclass(frozen=True)
class LowProfilePage:
    low_profile_id: str
    url: str
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ChargeResult:
    approved: bool
    response_code: Optional[int]
    deal_number: Optional[str]
    description: str
    raw: Dict[str, Any] = field(default_factory=dict)


class CardcomClient:
    def __init__(
        self,
        *,
        base_url: str,
        terminal_number: str,
        api_name: str,
        api_password: Optional[str] = None,
        timeout: float = 10.0,
        language: str = "he",
        http: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/") + "/"
        self.terminal_number = str(terminal_number)
        self.api_name = api_name
        self.api_password = api_password
        self.timeout = timeout
        self.language = language
        self.http = http or requests.Session()

    # ---- transport ----------------------------------------------------

    def _url(self, path: str) -> str:
        return urljoin(self.base_url, path.lstrip("/"))

    def _post(self, path: str, **kwargs) -> requests.Response:
        try:
            resp = self.http.post(self._url(path), timeout=self.timeout, **kwargs)
        except (requests.Timeout, requests.ConnectionError) as exc:
            raise CardcomTransientError(f"{path}: {exc.__class__.__name__}: {exc}") from exc
        except requests.RequestException as exc:
            raise CardcomError(f"{path}: {exc}") from exc
        if resp.status_code >= 500:
            raise CardcomTransientError(f"{path}: HTTP {resp.status_code}")
        if resp.status_code >= 400:
            raise CardcomError(f"{path}: HTTP {resp.status_code}")
        return resp

    def _post_json(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        resp = self._post(path, json=body)
        try:
            data = resp.json()
        except ValueError as exc:
            raise CardcomError(f"{path}: response is not JSON") from exc
        if not isinstance(data, dict):
            raise CardcomError(f"{path}: unexpected response type {type(data).__name__}")
        return data

    def _post_form(self, path: str, data: Dict[str, Any]) -> Dict[str, str]:
        resp = self._post(path, data=data)
        return dict(parse_qsl(resp.text or "", keep_blank_values=True))

    # ---- operations ---------------------------------------------------

    def create_low_profile(
        self,
        *,
        operation: str,
        amount: Decimal,
        currency: str,
        return_value: str,
        product_name: str,
        success_url: str,
        failed_url: str,
        webhook_url: str,
        email: Optional[str] = None,
        full_name: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> LowProfilePage:
        """Open a hosted payment page; ReturnValue is echoed on redirect and webhook."""
        if operation not in OPERATION_NAMES:
            raise ValueError(f"Unknown operation {operation!r}")
        body = {
            "TerminalNumber": self.terminal_number,
            "ApiName": self.api_name,
            "Operation": OPERATION_NAMES[operation],
            "ReturnValue": return_value,
            "Amount": float(amount),
            "ISOCoinId": ISO_COIN_IDS.get(currency.upper(), 1),
            "ProductName": product_name,
            "Language": self.language,
            "SuccessRedirectUrl": success_url,
            "FailedRedirectUrl": failed_url,
            "WebHookUrl": webhook_url,
            "MaxNumOfPayments": 1,
            "UIDefinition": {
                "IsCardOwnerEmailRequired": True,
                "CardOwnerEmailValue": email,
                "CardOwnerNameValue": full_name,
                "CardOwnerPhoneValue": phone,
            },
        }
        data = self._post_json(CREATE_PATH, body)
        code = safe_int(data.get("ResponseCode"))
        if code != 0:
            raise CardcomDeclined(code, str(data.get("Description") or ""), data)
        low_profile_id = data.get("LowProfileId")
        url = data.get("Url")
        if not low_profile_id or not url:
            raise CardcomError("LowProfile/Create: missing LowProfileId or Url")
        return LowProfilePage(low_profile_id=str(low_profile_id), url=str(url), raw=data)

    def get_lp_result(self, low_profile_id: str) -> Dict[str, Any]:
        """Status API: raw Low Profile result (ResponseCode, TranzactionInfo, TokenInfo)."""
        return self._post_json(RESULT_PATH, {
            "TerminalNumber": self.terminal_number,
            "ApiName": self.api_name,
            "LowProfileId": low_profile_id,
        })

    def get_indicator(self, low_profile_id: str) -> Dict[str, str]:
        """Legacy transaction-result endpoint; returns the flat indicator fields."""
        data = {
            "terminalnumber": self.terminal_number,
            "username": self.api_name,
            "lowprofilecode": low_profile_id,
            "codepage": "65001",
        }
        return self._post_form(INDICATOR_PATH, data)

    def charge_token(
        self,
        *,
        token: str,
        amount: Decimal,
        currency: str,
        card_month: Optional[int],
        card_year: Optional[int],
        product_name: str,
        external_id: str,
    ) -> ChargeResult:
        data = {
            "TerminalNumber": self.terminal_number,
            "UserName": self.api_name,
            "TokenToCharge.Token": token,
            "TokenToCharge.CardValidityMonth": f"{card_month:02d}" if card_month else "",
            "TokenToCharge.CardValidityYear": str(card_year or ""),
            "TokenToCharge.SumToBill": f"{Decimal(amount):.2f}",
            "TokenToCharge.CoinID": str(ISO_COIN_IDS.get(currency.upper(), 1)),
            "TokenToCharge.APILevel": "10",
            "TokenToCharge.ProductName": product_name,
            "TokenToCharge.IsRecurringPayment": "true",
            # gateway-side dedupe for repeated charge attempts of one period
            "TokenToCharge.UniqAsmachta": external_id,
        }
        if self.api_password:
            data["TokenToCharge.UserPassword"] = self.api_password
        result = self._post_form(CHARGE_TOKEN_PATH, data)
        code = safe_int(result.get("ResponseCode"))
        return ChargeResult(
            approved=code == 0,
            response_code=code,
            deal_number=result.get("InternalDealNumber") or None,
            description=result.get("Description") or "",
            raw=result,
        )


def get_client() -> CardcomClient:
    cfg = current_app.config
    terminal = cfg.get("CARDCOM_TERMINAL_NUMBER")
    api_name = cfg.get("CARDCOM_API_NAME")
    if not terminal or not api_name:
        raise CardcomNotConfigured("CARDCOM_TERMINAL_NUMBER / CARDCOM_API_NAME are not configured")
    return CardcomClient(
        base_url=cfg.get("CARDCOM_BASE_URL", "https://secure.cardcom.solutions"),
        terminal_number=terminal,
        api_name=api_name,
        api_password=cfg.get("CARDCOM_API_PASSWORD"),
        timeout=float(cfg.get("CARDCOM_TIMEOUT_SECONDS", 10)),
        language=cfg.get("CARDCOM_LANGUAGE", "he"),
    )
