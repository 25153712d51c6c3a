"""Payment provider adapter: webhook signatures and REST lookups."""
import hashlib
import hmac
from typing import Any, Optional

import httpx
import structlog

from usage_billing.config import settings
from usage_billing.exceptions import ExternalProviderError, NotFoundError, SignatureVerificationError

logger = structlog.get_logger(__name__)

SIGNATURE_HEADER = "x-provider-signature"


def compute_signature(payload: bytes, secret: str) -> str:
    """HMAC-SHA256 hex digest of the raw payload."""
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def verify_webhook_signature(payload: bytes, signature: Optional[str], secret: str) -> None:
    """
    Verify a webhook signature with a constant-time comparison.

    Args:
        payload: Raw request body, exactly as received
        signature: Value of the signature header
        secret: Shared webhook secret

    Raises:
        SignatureVerificationError: If the header is missing or doesn't match
    """
    if not signature:
        raise SignatureVerificationError("Missing webhook signature", missing=True)

    expected = compute_signature(payload, secret)
    if not hmac.compare_digest(expected.encode("utf-8"), signature.strip().encode("utf-8")):
        raise SignatureVerificationError("Invalid webhook signature")


class PaymentProviderAdapter:
    """
    Async client for the payment provider REST API.

    Every call has a bounded timeout. Timeouts, connection failures and 5xx
    responses raise ExternalProviderError so callers can retry later.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        key_id: Optional[str] = None,
        key_secret: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._base_url = (base_url or settings.provider_api_base_url).rstrip("/")
        self._auth = (key_id or settings.provider_key_id, key_secret or settings.provider_key_secret)
        self._timeout = httpx.Timeout(timeout or settings.provider_timeout_seconds)
        self._transport = transport

    async def fetch_payment(self, payment_id: str) -> dict[str, Any]:
        """
        Fetch a payment by ID.

        Raises:
            NotFoundError: If the provider has no such payment
            ExternalProviderError: On timeout, connection failure or server error
        """
        return await self._request("GET", f"/payments/{payment_id}")

    async def fetch_subscription(self, subscription_id: str) -> dict[str, Any]:
        """Fetch a provider subscription by ID."""
        return await self._request("GET", f"/subscriptions/{subscription_id}")

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        try:
            async with httpx.AsyncClient(
                base_url=self._base_url,
                auth=self._auth,
                timeout=self._timeout,
                transport=self._transport,
            ) as client:
                response = await client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            logger.warning("payment_provider_timeout", method=method, path=path)
            raise ExternalProviderError(f"Payment provider timed out on {method} {path}") from e
        except httpx.HTTPError as e:
            logger.warning("payment_provider_unreachable", method=method, path=path, error=str(e))
            raise ExternalProviderError(f"Payment provider unreachable: {e}") from e

        if response.status_code == 404:
            raise NotFoundError(f"Provider resource {path} not found")
        if response.status_code >= 500:
            logger.warning("payment_provider_server_error", path=path, status_code=response.status_code)
            raise ExternalProviderError(f"Payment provider returned {response.status_code}")
        if response.status_code >= 400:
            raise ExternalProviderError(
                f"Payment provider rejected {method} {path}: {response.status_code}", retryable=False
            )

        try:
            return response.json()
        except ValueError as e:
            raise ExternalProviderError("Payment provider returned a non-JSON body") from e
