"""
PayPal funding provider

Orders API v2 with client-credentials OAuth. The order carries the user
id in custom_id so a captured order can only fund the account that
created it.
"""
import logging
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx

from labelbay.core.config import settings
from labelbay.core.exceptions import PaymentVerificationError, ProviderError
from labelbay.modules.funding.providers import register_funding_provider
from labelbay.modules.funding.providers.base import FundingOrder, FundingProvider, VerifiedPayment
from labelbay.modules.shipping.providers.base import parse_amount

logger = logging.getLogger(__name__)


@register_funding_provider("paypal")
class PayPalProvider(FundingProvider):
    name = "paypal"
    settings_prefix = "PAYPAL"

    def __init__(
        self,
        client_id: str,
        secret: str,
        base_url: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 15.0,
    ):
        self.client_id = client_id
        self.secret = secret
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(base_url=self.base_url, transport=transport, timeout=timeout)
        self._access_token: Optional[str] = None

    @classmethod
    def is_configured(cls) -> bool:
        return bool(settings.PAYPAL_ENABLED and settings.PAYPAL_CLIENT_ID and settings.PAYPAL_SECRET)

    @classmethod
    def from_settings(cls, config, transport=None) -> "PayPalProvider":
        return cls(
            client_id=config.PAYPAL_CLIENT_ID,
            secret=config.PAYPAL_SECRET,
            base_url=config.paypal_api_base,
            transport=transport,
        )

    async def close(self):
        await self._client.aclose()

    # ==================== HTTP ====================

    async def _get_access_token(self) -> str:
        if self._access_token:
            return self._access_token

        try:
            response = await self._client.post(
                "/v1/oauth2/token",
                auth=(self.client_id, self.secret),
                data={"grant_type": "client_credentials"},
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        except httpx.HTTPError as e:
            logger.error(f"[FUNDING] PayPal auth request failed: {e}")
            raise ProviderError(f"PayPal unreachable: {type(e).__name__}", provider=self.name) from e
        if response.status_code >= 400:
            logger.error(f"[FUNDING] PayPal auth failed: {response.status_code}")
            raise ProviderError("Failed to authenticate with PayPal", provider=self.name,
                                details={"status_code": response.status_code})
        self._access_token = response.json().get("access_token")
        if not self._access_token:
            raise ProviderError("PayPal returned no access token", provider=self.name)
        return self._access_token

    async def _request(self, method: str, path: str, json: Optional[Dict[str, Any]] = None) -> httpx.Response:
        token = await self._get_access_token()
        try:
            return await self._client.request(
                method,
                path,
                json=json,
                headers={"Authorization": f"Bearer {token}", "Content-Type": "application/json"},
            )
        except httpx.HTTPError as e:
            logger.error(f"[FUNDING] PayPal {method} {path} failed: {e}")
            raise ProviderError(f"PayPal unreachable: {type(e).__name__}", provider=self.name) from e

    async def _get_order(self, order_id: str) -> Dict[str, Any]:
        response = await self._request("GET", f"/v2/checkout/orders/{order_id}")
        if response.status_code == 404:
            raise PaymentVerificationError("PayPal order not found", provider=self.name,
                                           details={"order_id": order_id})
        if response.status_code >= 400:
            raise ProviderError(f"PayPal API error: {response.status_code}", provider=self.name,
                                details={"status_code": response.status_code})
        return response.json()

    # ==================== Orders ====================

    async def create_order(self, user_id: str, amount: Decimal, currency: str) -> FundingOrder:
        response = await self._request(
            "POST",
            "/v2/checkout/orders",
            json={
                "intent": "CAPTURE",
                "purchase_units": [
                    {
                        "amount": {"currency_code": currency, "value": f"{amount:.2f}"},
                        "custom_id": user_id,
                        "description": "Account balance deposit",
                    }
                ],
            },
        )
        if response.status_code >= 400:
            logger.error(f"[FUNDING] PayPal order creation failed: {response.status_code} - {response.text[:300]}")
            raise ProviderError("Failed to create PayPal order", provider=self.name,
                                details={"status_code": response.status_code})

        data = response.json()
        approval_url = next(
            (link.get("href") for link in data.get("links", []) if link.get("rel") in ("approve", "payer-action")),
            None,
        )
        logger.info(f"[FUNDING] PayPal order {data.get('id')} created for user {user_id}: {amount} {currency}")
        return FundingOrder(
            provider=self.name,
            order_id=data["id"],
            amount=amount,
            currency=currency,
            status=data.get("status", "CREATED"),
            approval_url=approval_url,
        )

    async def _capture(self, order_id: str) -> Dict[str, Any]:
        response = await self._request("POST", f"/v2/checkout/orders/{order_id}/capture")
        if response.status_code == 422:
            # Already captured by a concurrent request
            return await self._get_order(order_id)
        if response.status_code >= 400:
            logger.error(f"[FUNDING] PayPal capture failed for {order_id}: {response.status_code}")
            raise PaymentVerificationError("Failed to capture PayPal payment", provider=self.name,
                                           details={"order_id": order_id, "status_code": response.status_code})
        return response.json()

    async def verify_payment(self, user_id: str, order_id: str) -> VerifiedPayment:
        order = await self._get_order(order_id)
        if order.get("status") == "APPROVED":
            order = await self._capture(order_id)

        status = order.get("status")
        if status != "COMPLETED":
            raise PaymentVerificationError(
                f"PayPal order is not completed (status: {status})",
                provider=self.name,
                details={"order_id": order_id, "status": status},
            )

        units = order.get("purchase_units") or [{}]
        unit = units[0]
        if unit.get("custom_id") != user_id:
            logger.warning(f"[FUNDING] PayPal order {order_id} belongs to another user, rejected for {user_id}")
            raise PaymentVerificationError("Payment does not belong to this account", provider=self.name,
                                           details={"order_id": order_id})

        captures = (unit.get("payments") or {}).get("captures") or []
        money = captures[0].get("amount", {}) if captures else unit.get("amount", {})
        amount = parse_amount(money.get("value"))
        if amount is None or amount <= 0:
            raise PaymentVerificationError("PayPal order has no captured amount", provider=self.name,
                                           details={"order_id": order_id})

        return VerifiedPayment(
            provider=self.name,
            order_id=order_id,
            user_id=user_id,
            amount=amount,
            currency=money.get("currency_code", "USD"),
            status=status,
        )
