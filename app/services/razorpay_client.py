"""
Thin Razorpay client — order creation and checkout signature checks.

Stateless and without retries: a failed or timed-out order request is
reported as ``GatewayUnavailable`` and the caller decides what to do.
"""
import hashlib
import hmac
import logging
from typing import Any, Optional

import requests

from app.core.config import get_settings
from app.services.errors import GatewayUnavailable

logger = logging.getLogger(__name__)


class RazorpayClient:

    def __init__(
        self,
        key_id: str,
        key_secret: str,
        api_base: str = "https://api.razorpay.com/v1",
        timeout: float = 15.0,
    ):
        self.key_id = key_id
        self.key_secret = key_secret
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout

    def _request(
        self,
        method: str,
        path: str,
        json_payload: Optional[dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> dict[str, Any]:
        url = f"{self.api_base}/{path.lstrip('/')}"
        try:
            response = requests.request(
                method=method.upper(),
                url=url,
                auth=(self.key_id, self.key_secret),
                json=json_payload,
                timeout=timeout or self.timeout,
            )
        except requests.Timeout as exc:
            raise GatewayUnavailable(f"Razorpay request timed out: {exc}") from exc
        except requests.RequestException as exc:
            raise GatewayUnavailable(f"Failed to contact Razorpay: {exc}") from exc

        if response.status_code >= 400:
            raise GatewayUnavailable(
                f"Razorpay returned HTTP {response.status_code} for {path}"
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise GatewayUnavailable("Invalid response received from Razorpay.") from exc

        if not isinstance(payload, dict):
            raise GatewayUnavailable("Unexpected response format from Razorpay.")
        return payload

    def create_order(
        self,
        amount_minor: int,
        currency: str,
        receipt: str,
        notes: Optional[dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> dict[str, Any]:
        """
        Create a remote order.

        Args:
            amount_minor: Amount in the currency's smallest unit (paise for INR)
            currency: ISO currency code
            receipt: Merchant receipt reference (max 40 chars)
            notes: Free key/value metadata stored on the order
            timeout: Deadline in seconds for this call

        Returns:
            The order payload; ``id`` is guaranteed to be a non-empty string.

        Raises:
            GatewayUnavailable: network failure, timeout, error status, or an
                order without id.
        """
        order = self._request(
            "POST",
            "/orders",
            json_payload={
                "amount": amount_minor,
                "currency": currency,
                "receipt": receipt[:40],
                "notes": notes or {},
            },
            timeout=timeout,
        )
        order_id = order.get("id")
        if not isinstance(order_id, str) or not order_id.strip():
            logger.error("Invalid Razorpay order response: %s", order)
            raise GatewayUnavailable("Razorpay returned an order without id")
        return order

    def expected_signature(self, order_id: str, payment_id: str) -> str:
        signed_payload = f"{order_id}|{payment_id}".encode("utf-8")
        return hmac.new(
            self.key_secret.encode("utf-8"),
            signed_payload,
            hashlib.sha256,
        ).hexdigest()

    def verify_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        if not signature:
            return False
        expected = self.expected_signature(order_id, payment_id)
        return hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8"))


def get_gateway_client() -> RazorpayClient:
    """FastAPI dependency: a client configured from settings."""
    settings = get_settings()
    if not settings.RAZORPAY_KEY_ID or not settings.RAZORPAY_KEY_SECRET:
        raise GatewayUnavailable("Razorpay credentials not configured")
    return RazorpayClient(
        key_id=settings.RAZORPAY_KEY_ID,
        key_secret=settings.RAZORPAY_KEY_SECRET,
        api_base=settings.RAZORPAY_API_BASE,
        timeout=settings.RAZORPAY_TIMEOUT_SECONDS,
    )
