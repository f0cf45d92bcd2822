"""
Razorpay Service for Credit Pack Purchases

Implements the Razorpay Orders REST API and signature checks.

Features:
- Order creation with notes tracking account and plan
- Checkout signature verification (order_id|payment_id)
- Webhook signature verification over the raw body
- Bounded request timeouts

Required Environment Variables:
- RAZORPAY_KEY_ID
- RAZORPAY_KEY_SECRET
- RAZORPAY_WEBHOOK_SECRET
- RAZORPAY_TIMEOUT_SECONDS (optional)
"""

import hashlib
import hmac
import logging
import os
from typing import Optional, Dict, Any

import httpx

from .config import RAZORPAY_CONFIG
from .exceptions import ProviderUnavailable

logger = logging.getLogger(__name__)


def compute_payment_signature(secret: str, order_id: str, payment_id: str) -> str:
    """Signature Razorpay Checkout returns to the client after payment."""
    return hmac.new(
        secret.encode(),
        f"{order_id}|{payment_id}".encode(),
        hashlib.sha256
    ).hexdigest()


def compute_webhook_signature(secret: str, body: bytes) -> str:
    """Signature Razorpay puts in X-Razorpay-Signature for a webhook body."""
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


class RazorpayService:
    """Razorpay client for credit pack orders."""

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._transport = transport

    @property
    def api_base(self) -> str:
        return os.environ.get("RAZORPAY_API_BASE", RAZORPAY_CONFIG["api_base"])

    @property
    def key_id(self) -> str:
        return os.environ.get("RAZORPAY_KEY_ID", "")

    @property
    def key_secret(self) -> str:
        return os.environ.get("RAZORPAY_KEY_SECRET", "")

    @property
    def webhook_secret(self) -> str:
        return os.environ.get("RAZORPAY_WEBHOOK_SECRET", "")

    @property
    def timeout(self) -> float:
        try:
            return float(os.environ.get("RAZORPAY_TIMEOUT_SECONDS", RAZORPAY_CONFIG["default_timeout_seconds"]))
        except ValueError:
            return RAZORPAY_CONFIG["default_timeout_seconds"]

    def _client(self) -> httpx.AsyncClient:
        if not self.key_id or not self.key_secret:
            raise ProviderUnavailable(
                details="Razorpay is not configured. Set RAZORPAY_KEY_ID and RAZORPAY_KEY_SECRET"
            )
        return httpx.AsyncClient(
            base_url=self.api_base,
            auth=(self.key_id, self.key_secret),
            timeout=self.timeout,
            transport=self._transport
        )

    async def create_order(
        self,
        amount: int,
        currency: str,
        receipt: str,
        notes: Optional[Dict[str, str]] = None
    ) -> Dict[str, Any]:
        """
        Create a Razorpay order.

        Args:
            amount: Amount in minor units (paise)
            currency: ISO currency code
            receipt: Our receipt reference (max 40 chars)
            notes: Key/value notes echoed back in payment entities

        Returns:
            Razorpay order entity (id, amount, currency, status, ...)

        Raises:
            ProviderUnavailable: timeout, transport error or non-2xx response
        """
        order_data = {
            "amount": amount,
            "currency": currency,
            "receipt": receipt,
            "notes": notes or {}
        }

        try:
            async with self._client() as client:
                response = await client.post("/orders", json=order_data)
        except httpx.TimeoutException as e:
            logger.error(f"Razorpay order creation timed out (receipt={receipt}): {e}")
            raise ProviderUnavailable(details="Order creation timed out") from e
        except httpx.HTTPError as e:
            logger.error(f"Razorpay order creation failed (receipt={receipt}): {e}")
            raise ProviderUnavailable(details=str(e)) from e

        if response.status_code not in (200, 201):
            logger.error(f"Razorpay order creation failed: {response.status_code} {response.text}")
            raise ProviderUnavailable(details=f"Razorpay returned {response.status_code}")

        order = response.json()
        if not order.get("id"):
            logger.error(f"Razorpay order response without id: {order}")
            raise ProviderUnavailable(details="Razorpay returned no order id")

        return order

    def verify_payment_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        """Check the checkout signature for order_id|payment_id."""
        if not self.key_secret:
            logger.error("RAZORPAY_KEY_SECRET not configured, rejecting payment signature")
            return False
        if not order_id or not payment_id or not signature:
            return False

        expected = compute_payment_signature(self.key_secret, order_id, payment_id)
        return hmac.compare_digest(expected.encode(), signature.encode("utf-8"))

    def verify_webhook_signature(self, body: bytes, signature: Optional[str]) -> bool:
        """Check X-Razorpay-Signature over the exact raw body bytes."""
        if not self.webhook_secret:
            logger.error("RAZORPAY_WEBHOOK_SECRET not configured, rejecting webhook")
            return False
        if not signature:
            return False

        expected = compute_webhook_signature(self.webhook_secret, body)
        return hmac.compare_digest(expected.encode(), signature.encode("utf-8"))
