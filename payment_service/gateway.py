import base64
import logging
import os
from typing import Any, Dict, Optional

import httpx

from shared.errors import Internal

logger = logging.getLogger(__name__)

TOSS_API_BASE = os.getenv("TOSS_API_BASE", "https://api.tosspayments.com").rstrip("/")
TOSS_TIMEOUT = float(os.getenv("TOSS_TIMEOUT", "10"))


class GatewayError(Exception):
    pass


class GatewayRejected(GatewayError):
    """The gateway answered with a non-2xx status."""

    def __init__(self, status_code: int, payload: Dict[str, Any]):
        self.status_code = status_code
        self.payload = payload
        self.message = payload.get("message") or "unknown gateway error"
        super().__init__(f"{status_code}: {self.message}")


class GatewayUnavailable(GatewayError):
    pass


class TossPaymentsClient:
    """
    Thin client for the Toss Payments v1 API.

    The secret key stays inside this object; callers only ever see the
    gateway's response bodies.
    """

    def __init__(self, http: httpx.AsyncClient, secret_key: Optional[str], base_url: str = TOSS_API_BASE):
        self._http = http
        self._secret_key = secret_key
        self._base_url = base_url.rstrip("/")

    def _headers(self, idempotency_key: Optional[str] = None) -> Dict[str, str]:
        if not self._secret_key:
            raise Internal("Payment gateway secret key is not configured")
        token = base64.b64encode(f"{self._secret_key}:".encode("utf-8")).decode("ascii")
        headers = {
            "Authorization": f"Basic {token}",
            "Content-Type": "application/json",
        }
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    async def _post(self, path: str, body: Dict[str, Any], headers: Dict[str, str]) -> Dict[str, Any]:
        try:
            r = await self._http.post(f"{self._base_url}{path}", json=body, headers=headers)
        except httpx.TimeoutException as e:
            raise GatewayUnavailable("Payment gateway timeout") from e
        except httpx.RequestError as e:
            raise GatewayUnavailable("Payment gateway unavailable") from e

        try:
            data = r.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {"data": data}

        if r.status_code >= 300:
            logger.warning(
                "gateway rejected request path=%s status=%s code=%s",
                path, r.status_code, data.get("code"),
            )
            raise GatewayRejected(r.status_code, data)
        return data

    async def confirm(self, payment_key: str, order_id: str, amount: int) -> Dict[str, Any]:
        return await self._post(
            "/v1/payments/confirm",
            {"paymentKey": payment_key, "orderId": order_id, "amount": amount},
            self._headers(),
        )

    async def cancel(
        self,
        payment_key: str,
        cancel_reason: str,
        *,
        cancel_amount: Optional[int] = None,
        tax_free_amount: Optional[int] = None,
        refund_receive_account: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        # The gateway derives VAT itself; only the tax-free part is sent.
        body: Dict[str, Any] = {"cancelReason": cancel_reason}
        if cancel_amount:
            body["cancelAmount"] = cancel_amount
        if tax_free_amount is not None:
            body["taxFreeAmount"] = tax_free_amount
        if refund_receive_account:
            body["refundReceiveAccount"] = refund_receive_account
        return await self._post(
            f"/v1/payments/{payment_key}/cancel",
            body,
            self._headers(idempotency_key),
        )

    async def aclose(self) -> None:
        await self._http.aclose()


def build_client() -> TossPaymentsClient:
    return TossPaymentsClient(
        httpx.AsyncClient(timeout=TOSS_TIMEOUT),
        os.getenv("TOSS_SECRET_KEY"),
    )
