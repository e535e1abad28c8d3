import asyncio
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

import httpx

from services.exceptions import PaymentError
from services.pricing import to_cents
from .config import paypal_config, PayPalConfig

logger = logging.getLogger(__name__)


class PayPalClient:
    """Payment collaborator backed by the PayPal Orders v2 API."""

    def __init__(
        self,
        config: PayPalConfig = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.config = config or paypal_config
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._access_token: Optional[str] = None
        self._lock = asyncio.Lock()

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            async with self._lock:
                if self._client is None or self._client.is_closed:
                    self._client = httpx.AsyncClient(
                        base_url=self.config.api_url,
                        timeout=httpx.Timeout(self.config.timeout),
                        transport=self._transport
                    )
        return self._client

    async def close(self):
        if self._client:
            await self._client.aclose()
            self._client = None
        self._access_token = None

    async def _get_access_token(self) -> str:
        if self._access_token:
            return self._access_token
        if not self.config.client_id or not self.config.client_secret:
            raise PaymentError("PayPal credentials not configured")

        client = await self._get_client()
        try:
            response = await client.post(
                self.config.token_url,
                data={"grant_type": "client_credentials"},
                auth=(self.config.client_id, self.config.client_secret)
            )
        except httpx.HTTPError as e:
            raise PaymentError(f"PayPal authentication failed: {e}") from e
        if response.status_code >= 400:
            raise PaymentError(f"PayPal authentication failed ({response.status_code})")
        self._access_token = response.json()["access_token"]
        return self._access_token

    async def _post(self, url: str, json: Dict[str, Any]) -> Dict[str, Any]:
        token = await self._get_access_token()
        client = await self._get_client()
        try:
            response = await client.post(
                url,
                json=json,
                headers={
                    "Authorization": f"Bearer {token}",
                    "Prefer": "return=representation"
                }
            )
        except httpx.HTTPError as e:
            logger.error(f"PayPal request to {url} failed: {e}")
            raise PaymentError(f"Payment provider unreachable: {e}") from e

        if response.status_code == 401:
            self._access_token = None
        if response.status_code >= 400:
            try:
                detail = response.json().get("message", response.text)
            except ValueError:
                detail = response.text or "Unknown error"
            logger.error(f"PayPal request to {url} returned {response.status_code}: {detail}")
            raise PaymentError(detail)
        return response.json()

    async def create_payment_intent(self, amount_cents: int, currency: str = "USD") -> Dict[str, Any]:
        value = f"{Decimal(amount_cents) / 100:.2f}"
        order = await self._post(self.config.orders_url, {
            "intent": "CAPTURE",
            "purchase_units": [{
                "amount": {"currency_code": currency, "value": value},
                "description": f"Add ${value} to balance"
            }]
        })
        approve_url = next(
            (link["href"] for link in order.get("links", []) if link.get("rel") in ("approve", "payer-action")),
            None
        )
        return {
            "order_id": order["id"],
            "status": order.get("status", "CREATED"),
            "approve_url": approve_url
        }

    async def capture(self, order_id: str) -> Dict[str, Any]:
        result = await self._post(f"{self.config.orders_url}/{order_id}/capture", {})
        if result.get("status") != "COMPLETED":
            raise PaymentError(f"Payment {order_id} not completed (status {result.get('status')})")

        try:
            capture = result["purchase_units"][0]["payments"]["captures"][0]
            amount = capture["amount"]
            return {
                "external_ref": capture["id"],
                "amount_cents": to_cents(Decimal(amount["value"])),
                "currency": amount["currency_code"]
            }
        except (KeyError, IndexError, InvalidOperation) as e:
            raise PaymentError(f"Unexpected capture response for {order_id}") from e


_client_instance: Optional[PayPalClient] = None


def get_payment_client() -> PayPalClient:
    global _client_instance
    if _client_instance is None:
        _client_instance = PayPalClient()
    return _client_instance


async def close_payment_client():
    global _client_instance
    if _client_instance:
        await _client_instance.close()
        _client_instance = None
