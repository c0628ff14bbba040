"""
Status poller: client side of GET /payments/status.

Used when the browser-facing flow cannot wait for the webhook. The
"processing" marker is only a UX hint; the server-side session status is
what decides.
"""
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, MutableMapping, Optional

import requests

STATE_SUCCEEDED = "succeeded"
STATE_FAILED = "failed"
STATE_AMBIGUOUS = "ambiguous"

_FAILED_STATUSES = ("failed", "expired")

AMBIGUOUS_MESSAGE = (
    "We could not confirm your payment yet. If you were charged, your "
    "subscription will be activated shortly; otherwise contact support."
)


@dataclass
class PollOutcome:
    state: str
    status: Optional[str] = None
    transaction_id: Optional[str] = None
    attempts: int = 0
    message: Optional[str] = None
    last_error: Optional[str] = None


class PaymentStatusPoller:
    def __init__(
        self,
        status_url: str,
        http: Optional[requests.Session] = None,
        max_retries: int = 3,
        base_delay: float = 2.0,
        timeout: float = 10.0,
        sleep: Callable[[float], None] = time.sleep,
        markers: Optional[MutableMapping[str, Any]] = None,
        param: str = "lowProfileId",
        support_email: Optional[str] = None,
    ):
        self.status_url = status_url
        self.http = http or requests.Session()
        self.max_retries = max(1, int(max_retries))
        self.base_delay = base_delay
        self.timeout = timeout
        self.sleep = sleep
        self.markers = markers if markers is not None else {}
        self.param = param
        self.support_email = support_email

    @staticmethod
    def marker_key(identifier: str) -> str:
        return f"processing:{identifier}"

    def _check(self, identifier: str) -> Dict[str, Any]:
        resp = self.http.get(
            self.status_url,
            params={self.param: identifier, "live": "1"},
            timeout=self.timeout,
        )
        resp.raise_for_status()
        data = resp.json()
        if not isinstance(data, dict):
            raise ValueError("status endpoint returned a non-object")
        return data

    def poll(self, identifier: str) -> PollOutcome:
        key = self.marker_key(identifier)
        self.markers[key] = True
        last_error = None
        try:
            for attempt in range(1, self.max_retries + 1):
                try:
                    data = self._check(identifier)
                except (requests.RequestException, ValueError) as exc:
                    last_error = str(exc)
                else:
                    status = data.get("status")
                    if data.get("success"):
                        return PollOutcome(STATE_SUCCEEDED, status=status,
                                           transaction_id=data.get("transactionId"), attempts=attempt)
                    if status in _FAILED_STATUSES:
                        return PollOutcome(STATE_FAILED, status=status, attempts=attempt)
                if attempt < self.max_retries:
                    self.sleep(attempt * self.base_delay)

            message = AMBIGUOUS_MESSAGE
            if self.support_email:
                message = f"{message} ({self.support_email})"
            return PollOutcome(STATE_AMBIGUOUS, status="processing", attempts=self.max_retries,
                               message=message, last_error=last_error)
        finally:
            self.markers.pop(key, None)
