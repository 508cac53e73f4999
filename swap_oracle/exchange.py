"""Client for the market maker that executes the second-ledger leg of a swap."""

import json
from abc import ABC, abstractmethod
from typing import Any, Optional

import httpx
import structlog
from cachetools import TTLCache

from .config import Config, config
from .errors import ExchangeError, ExchangeUnavailableError, OrderNotFoundError
from .models import OrderStatus

logger = structlog.get_logger()


class ExchangeService(ABC):
    """The order-execution collaborator, seen from the oracle."""

    @abstractmethod
    async def get_quote(self, params: dict[str, Any]) -> dict[str, Any]:
        pass

    @abstractmethod
    async def submit_order(self, params: dict[str, Any]) -> str:
        """Place an order; returns its reference."""

    @abstractmethod
    async def get_order_status(self, order_reference: str) -> OrderStatus:
        """Raises OrderNotFoundError if the exchange does not know the order."""

    @abstractmethod
    async def cancel_order(self, order_reference: str) -> dict[str, Any]:
        pass

    async def check_health(self) -> bool:
        return True

    async def close(self):
        pass


class HTTPExchangeService(ExchangeService):
    """
    Market maker HTTP API.

    The client does not retry by itself: polling already retries order
    status lookups, and order submission must not be duplicated blindly.
    """

    def __init__(self, settings: Optional[Config] = None, client: Optional[httpx.AsyncClient] = None):
        settings = settings or config
        self.client = client or httpx.AsyncClient(
            base_url=settings.exchange_api_url,
            timeout=settings.exchange_timeout,
            headers={"Accept": "application/json"},
        )
        if settings.exchange_api_key:
            self.client.headers["x-api-key"] = settings.exchange_api_key

        # Quotes are only good for a few seconds anyway
        self._quote_cache: TTLCache = TTLCache(maxsize=100, ttl=settings.quote_cache_ttl)

    async def close(self):
        await self.client.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        try:
            response = await self.client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise ExchangeUnavailableError(f"Exchange unreachable: {e}") from e

        if response.status_code == 404:
            raise OrderNotFoundError(f"Not found: {path}")
        if response.status_code >= 500:
            raise ExchangeUnavailableError(
                f"Exchange error {response.status_code}: {response.text}"
            )
        if response.status_code >= 400:
            raise ExchangeError(f"Exchange rejected request ({response.status_code}): {response.text}")

        try:
            return response.json()
        except ValueError:
            raise ExchangeError("Exchange returned a non-JSON response") from None

    async def get_quote(self, params: dict[str, Any]) -> dict[str, Any]:
        """Fetch a quote, served from a short-lived cache when possible."""
        cache_key = json.dumps(params, sort_keys=True, default=str)
        if cache_key in self._quote_cache:
            return self._quote_cache[cache_key]

        quote = await self._request("GET", "/api/quote", params=params)
        self._quote_cache[cache_key] = quote
        logger.info(
            "Quote received",
            sell_amount=quote.get("sellAmount"),
            buy_amount=quote.get("buyAmount"),
            fee_amount=quote.get("feeAmount"),
        )
        return quote

    async def submit_order(self, params: dict[str, Any]) -> str:
        result = await self._request("POST", "/api/trade", json=params)
        order_reference = result.get("orderUid") or result.get("orderReference")
        if not order_reference:
            raise ExchangeError("Exchange accepted the trade but returned no order reference")
        logger.info(
            "Order submitted",
            order_reference=order_reference,
            estimated_execution_time=result.get("estimatedExecutionTime"),
        )
        return order_reference

    async def get_order_status(self, order_reference: str) -> OrderStatus:
        data = await self._request("GET", f"/api/order-status/{order_reference}")
        try:
            return OrderStatus.from_wire(data)
        except ValueError as e:
            raise ExchangeError(f"Unrecognised order status payload: {e}") from e

    async def cancel_order(self, order_reference: str) -> dict[str, Any]:
        result = await self._request("POST", f"/api/cancel-order/{order_reference}")
        logger.info(
            "Order cancelled",
            order_reference=order_reference,
            cancellation_tx_hash=result.get("cancellationTxHash"),
        )
        return result

    async def check_health(self) -> bool:
        try:
            await self._request("GET", "/health")
            return True
        except (ExchangeError, ExchangeUnavailableError) as e:
            logger.warning("Exchange health check failed", error=str(e))
            return False
