"""Bold card-present terminal connector over the Bold REST API."""

import logging
from typing import Any, Dict, Optional

import httpx
from redis.asyncio import Redis

from ..cache import access_token_key
from ..errors import (
    ChargeError,
    ChargeValidationError,
    ConflictError,
    NotFoundError,
    UpstreamUnavailableError,
)
from .base import (
    GatewayBase,
    GatewayPaymentRequest,
    GatewayPaymentResponse,
    GatewayPaymentStatus,
    GatewayTerminalStatus,
)

logger = logging.getLogger(__name__)

BASE_URLS = {
    "production": "https://api.bold.co/v1",
    "sandbox": "https://sandbox.bold.co/v1",
}

# HTTP status -> (error class, message) for provider failures
_STATUS_ERRORS = {
    400: (ChargeValidationError, "Invalid payment request, check the charge data"),
    401: (UpstreamUnavailableError, "Payment service authentication failed"),
    403: (UpstreamUnavailableError, "Operation not permitted by payment service"),
    404: (NotFoundError, "Terminal not found"),
    409: (ConflictError, "Duplicate transaction"),
    503: (UpstreamUnavailableError, "Payment service temporarily unavailable"),
}


def classify_http_error(status_code: int, body: Any) -> ChargeError:
    """Translate a provider HTTP failure into a typed charge error."""
    error_cls, message = _STATUS_ERRORS.get(status_code, (None, None))
    if error_cls is None:
        provider_message = body.get("message") if isinstance(body, dict) else None
        error_cls = UpstreamUnavailableError if status_code >= 500 else ChargeValidationError
        message = provider_message or "Error processing payment"
    if error_cls is UpstreamUnavailableError:
        return UpstreamUnavailableError(message, upstream_status=status_code)
    return error_cls(message)


class BoldConnector(GatewayBase):
    """
    Bold connector using httpx. Access tokens come from the OAuth
    client-credentials grant and are shared between processes through Redis.
    """

    name = "bold"

    def __init__(
        self,
        client_id: Optional[str],
        client_secret: Optional[str],
        redis: Redis,
        environment: str = "sandbox",
        timeout: float = 30.0,
        token_safety_margin: int = 60,
        terminal_prefix: str = "",
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.redis = redis
        self.base_url = BASE_URLS.get(environment, BASE_URLS["sandbox"])
        self.token_safety_margin = token_safety_margin
        self.terminal_prefix = terminal_prefix
        self._client = client or httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            headers={"Content-Type": "application/json", "Accept": "application/json"},
        )

    async def close(self) -> None:
        await self._client.aclose()

    def _terminal(self, terminal_id: str) -> str:
        if self.terminal_prefix and not terminal_id.startswith(self.terminal_prefix):
            return f"{self.terminal_prefix}{terminal_id}"
        return terminal_id

    async def get_access_token(self) -> str:
        """Return a cached access token, requesting a new one when missing."""
        cache_key = str(access_token_key(self.name))
        cached = await self.redis.get(cache_key)
        if cached:
            return cached

        if not self.client_id or not self.client_secret:
            raise UpstreamUnavailableError("Payment service credentials are not configured")

        try:
            response = await self._client.post(
                "/oauth/token",
                json={
                    "grant_type": "client_credentials",
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "scope": "payments",
                },
            )
            response.raise_for_status()
            data = response.json()
            access_token = data["access_token"]
            expires_in = int(data.get("expires_in", 0))
        except (httpx.HTTPError, ValueError, KeyError) as e:
            logger.error(f"Bold OAuth error: {e}")
            raise UpstreamUnavailableError("Payment service authentication failed") from e

        ttl = expires_in - self.token_safety_margin
        if ttl > 0:
            await self.redis.set(cache_key, access_token, ex=ttl)
        return access_token

    async def _request(self, method: str, path: str, json: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        token = await self.get_access_token()
        try:
            response = await self._client.request(
                method,
                path,
                json=json,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.TimeoutException as e:
            logger.warning(f"Bold request {method} {path} timed out")
            raise UpstreamUnavailableError("Payment service timed out") from e
        except httpx.HTTPError as e:
            logger.warning(f"Bold request {method} {path} failed: {e}")
            raise UpstreamUnavailableError("Could not connect to payment service") from e

        if response.is_error:
            try:
                body = response.json()
            except ValueError:
                body = response.text
            logger.error(f"Bold API error {response.status_code} on {method} {path}: {body}")
            if response.status_code == 401:
                # Token may have been revoked early
                await self.redis.delete(str(access_token_key(self.name)))
            raise classify_http_error(response.status_code, body)

        try:
            return response.json()
        except ValueError as e:
            raise UpstreamUnavailableError("Payment service returned an invalid response") from e

    async def create_payment(self, request: GatewayPaymentRequest) -> GatewayPaymentResponse:
        data = await self._request(
            "POST",
            "/payments",
            json={
                "amount": request.amount,
                "currency": request.currency,
                "terminal_id": self._terminal(request.terminal_id),
                "reference_id": request.reference_id,
                "description": request.description,
                "metadata": request.metadata,
            },
        )
        if not data.get("id"):
            raise UpstreamUnavailableError("Payment service response is missing the transaction id")
        logger.info(f"Bold accepted payment {data['id']} for reference {request.reference_id}")
        return GatewayPaymentResponse(
            provider_transaction_id=str(data["id"]),
            status=data.get("status"),
            raw_provider_response=data,
        )

    async def get_payment(self, provider_transaction_id: str) -> GatewayPaymentStatus:
        data = await self._request("GET", f"/payments/{provider_transaction_id}")
        return GatewayPaymentStatus.from_provider(provider_transaction_id, data)

    async def get_terminal_status(self, terminal_id: str) -> GatewayTerminalStatus:
        data = await self._request("GET", f"/terminals/{self._terminal(terminal_id)}")
        return GatewayTerminalStatus(
            terminal_id=terminal_id,
            status=data.get("status"),
            raw_provider_response=data,
        )

    def health_check(self) -> Dict[str, Any]:
        return {
            "ok": bool(self.client_id and self.client_secret),
            "provider": self.name,
            "base_url": self.base_url,
        }
