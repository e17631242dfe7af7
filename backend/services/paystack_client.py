"""
Paystack gateway client.

Handles:
    1. Transaction initialization (hosted checkout session)
    2. Transaction verification by reference
    3. Webhook signature verification (HMAC-SHA512 of the raw body)

Every outbound call carries GATEWAY_TIMEOUT_SECONDS. A timeout surfaces as
GatewayTimeoutError so callers can retry with the same reference; any other
transport/HTTP failure or an unsuccessful envelope is a GatewayError.
"""
import hashlib
import hmac
import logging
from typing import Optional

import httpx

from config import settings
from domain.errors import GatewayError, GatewayTimeoutError

logger = logging.getLogger(__name__)


class PaystackClient:
    """Thin async wrapper over the Paystack REST API."""

    def __init__(
        self,
        secret_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._secret_key = secret_key
        self._base_url = base_url
        self._timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def secret_key(self) -> str:
        return self._secret_key if self._secret_key is not None else settings.paystack_secret_key

    @property
    def timeout(self) -> float:
        return self._timeout if self._timeout is not None else settings.gateway_timeout_seconds

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self._base_url or settings.paystack_base_url,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    async def _request(self, method: str, path: str, operation: str, json: dict | None = None) -> dict:
        if not self.secret_key:
            raise GatewayError("Payment gateway misconfigured (PAYSTACK_SECRET_KEY missing)")

        try:
            response = await self._get_client().request(
                method,
                path,
                json=json,
                headers={
                    "Authorization": f"Bearer {self.secret_key}",
                    "Content-Type": "application/json",
                },
            )
            response.raise_for_status()
            body = response.json()
        except httpx.TimeoutException:
            logger.warning(f"Paystack {operation} timed out after {self.timeout}s")
            raise GatewayTimeoutError(operation, self.timeout)
        except httpx.HTTPStatusError as e:
            logger.error(f"Paystack {operation} returned HTTP {e.response.status_code}")
            raise GatewayError(
                f"Payment gateway rejected {operation}",
                details={"status_code": e.response.status_code},
            )
        except (httpx.TransportError, ValueError) as e:
            logger.error(f"Paystack {operation} failed: {e}")
            raise GatewayError(f"Payment gateway unreachable during {operation}")

        if not body.get("status"):
            raise GatewayError(
                f"Payment gateway refused {operation}: {body.get('message', 'unknown error')}"
            )
        return body.get("data") or {}

    async def initialize_transaction(
        self,
        *,
        email: str,
        amount: int,
        reference: str,
        currency: str,
        metadata: dict,
        callback_url: str | None = None,
    ) -> dict:
        """
        Open a hosted checkout session.

        Returns the gateway's data: authorization_url, access_code, reference.
        """
        return await self._request(
            "POST",
            "/transaction/initialize",
            "initialize",
            json={
                "email": email,
                "amount": amount,
                "reference": reference,
                "currency": currency,
                "metadata": metadata,
                "callback_url": callback_url or settings.payment_callback_url,
            },
        )

    async def verify_transaction(self, reference: str) -> dict:
        """Fetch the gateway's record for a reference (status, amount, metadata, ...)."""
        return await self._request("GET", f"/transaction/verify/{reference}", "verify")


def verify_webhook_signature(payload: bytes, signature: str, secret: str | None = None) -> bool:
    """
    Verify a Paystack webhook HMAC-SHA512 signature.

    Fails closed: a missing secret or a missing signature rejects the webhook.
    """
    secret = secret if secret is not None else settings.webhook_secret
    if not secret:
        logger.error(
            "PAYSTACK_SECRET_KEY not configured - rejecting webhook. "
            "Set it in .env to accept gateway webhooks."
        )
        return False

    if not signature:
        logger.warning("Webhook received without signature header")
        return False

    expected = hmac.new(
        secret.encode("utf-8"),
        payload,
        hashlib.sha512,
    ).hexdigest()

    # Header values arrive latin-1 decoded; compare bytes so any text just fails to match
    return hmac.compare_digest(expected.encode("ascii"), signature.encode("utf-8", "replace"))


# Process-wide client (connection pool reused across requests)
paystack_client = PaystackClient()
