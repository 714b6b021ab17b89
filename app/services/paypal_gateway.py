# app/services/paypal_gateway.py
# PayPal REST API (Orders v2 / Payouts v1)
# 每個方法都回傳 {"success": True, ...} 或 {"success": False, "error": ...}，不往外拋

import logging
import uuid
from decimal import Decimal
from typing import Any, Dict, Optional, Protocol

import httpx

from app.core.config import settings

logger = logging.getLogger(__name__)

SANDBOX_API_URL = "https://api-m.sandbox.paypal.com"
LIVE_API_URL = "https://api-m.paypal.com"


class PaymentGateway(Protocol):
    async def create_order(self, amount: Decimal, currency: str) -> Dict[str, Any]:
        ...

    async def capture_order(self, order_id: str) -> Dict[str, Any]:
        ...

    async def create_payout(self, email: str, amount: Decimal, currency: str, note: str) -> Dict[str, Any]:
        ...


class PayPalGateway:
    def __init__(
        self,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        mode: Optional[str] = None,
        timeout: float = 30.0,
    ):
        self.client_id = client_id or settings.PAYPAL_CLIENT_ID
        self.client_secret = client_secret or settings.PAYPAL_CLIENT_SECRET
        self.mode = mode or settings.PAYPAL_MODE
        self.base_url = LIVE_API_URL if self.mode == "live" else SANDBOX_API_URL
        self.timeout = timeout

    async def _get_access_token(self, http_client: httpx.AsyncClient) -> str:
        if not self.client_id or not self.client_secret:
            raise RuntimeError("PayPal credentials not configured (PAYPAL_CLIENT_ID / PAYPAL_CLIENT_SECRET)")
        response = await http_client.post(
            f"{self.base_url}/v1/oauth2/token",
            auth=(self.client_id, self.client_secret),
            data={"grant_type": "client_credentials"},
        )
        if response.status_code != 200:
            raise RuntimeError(f"PayPal OAuth failed: {response.text}")
        return response.json()["access_token"]

    async def _request(self, method: str, path: str, json: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        async with httpx.AsyncClient(timeout=self.timeout) as http_client:
            token = await self._get_access_token(http_client)
            response = await http_client.request(
                method,
                f"{self.base_url}{path}",
                json=json,
                headers={
                    "Authorization": f"Bearer {token}",
                    "Content-Type": "application/json",
                    "PayPal-Request-Id": str(uuid.uuid4()),
                    "Prefer": "return=representation",
                },
            )
            if response.status_code >= 400:
                raise RuntimeError(f"PayPal API {path} failed ({response.status_code}): {response.text}")
            return response.json()

    async def create_order(self, amount: Decimal, currency: str = "USD") -> Dict[str, Any]:
        body = {
            "intent": "CAPTURE",
            "purchase_units": [{
                "amount": {"currency_code": currency, "value": f"{Decimal(amount):.2f}"},
                "description": "Add Funds to Freelancing Platform",
            }],
            "application_context": {
                "brand_name": "Freelancing Platform",
                "user_action": "PAY_NOW",
                "return_url": f"{settings.FRONTEND_URL}/payment/success",
                "cancel_url": f"{settings.FRONTEND_URL}/payment/cancel",
            },
        }
        try:
            order = await self._request("POST", "/v2/checkout/orders", json=body)
            logger.info(f"✅ PayPal order created: {order.get('id')}")
            return {
                "success": True,
                "order_id": order.get("id"),
                "status": order.get("status"),
                "links": order.get("links", []),
            }
        except Exception as e:
            logger.error(f"❌ PayPal create order error: {e}")
            return {"success": False, "error": str(e)}

    async def capture_order(self, order_id: str) -> Dict[str, Any]:
        try:
            capture = await self._request("POST", f"/v2/checkout/orders/{order_id}/capture", json={})
            units = capture.get("purchase_units") or [{}]
            captures = (units[0].get("payments") or {}).get("captures") or [{}]
            logger.info(f"✅ PayPal order captured: {capture.get('id')}")
            return {
                "success": True,
                "order_id": capture.get("id"),
                "status": capture.get("status"),
                "capture_id": captures[0].get("id"),
                "amount": captures[0].get("amount"),
            }
        except Exception as e:
            logger.error(f"❌ PayPal capture order error: {e}")
            return {"success": False, "error": str(e)}

    async def create_payout(
        self, email: str, amount: Decimal, currency: str = "USD", note: str = "Freelancing Platform Payout"
    ) -> Dict[str, Any]:
        batch_id = f"Payout_{uuid.uuid4().hex}"
        body = {
            "sender_batch_header": {
                "sender_batch_id": batch_id,
                "email_subject": "You have a payout!",
                "email_message": note,
            },
            "items": [{
                "recipient_type": "EMAIL",
                "amount": {"value": f"{Decimal(amount):.2f}", "currency": currency},
                "receiver": email,
                "note": note,
                "sender_item_id": f"item_{uuid.uuid4().hex[:12]}",
            }],
        }
        try:
            payout = await self._request("POST", "/v1/payments/payouts", json=body)
            header = payout.get("batch_header", {})
            logger.info(f"✅ PayPal payout created: {header.get('payout_batch_id')}")
            return {
                "success": True,
                "batch_id": header.get("payout_batch_id"),
                "batch_status": header.get("batch_status"),
            }
        except Exception as e:
            logger.error(f"❌ PayPal payout error: {e}")
            return {"success": False, "error": str(e)}
