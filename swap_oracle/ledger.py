"""Bitcoin ledger access: UTXO lookup and transaction broadcast."""

import itertools
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Optional

import httpx
import structlog
from bitcoin.core import COIN

from .config import Config, config
from .errors import LedgerRejectedError, LedgerUnavailableError
from .models import SpendableOutput

logger = structlog.get_logger()

# bitcoind RPC codes that mean "try again later" rather than "no"
_TRANSIENT_RPC_CODES = {-28, -9, -10}  # warming up, not connected, downloading


class LedgerClient(ABC):
    """What the redemption engine needs from the Bitcoin network."""

    @abstractmethod
    async def list_spendable_outputs(self, address: str) -> list[SpendableOutput]:
        """Unspent outputs at ``address`` in the order the backend reports them."""

    @abstractmethod
    async def broadcast(self, raw_transaction: str) -> str:
        """Submit a hex-encoded transaction; returns its txid."""

    async def close(self):
        pass


class MempoolLedger(LedgerClient):
    """Esplora-compatible REST API (mempool.space, blockstream.info)."""

    def __init__(self, base_url: Optional[str] = None, client: Optional[httpx.AsyncClient] = None):
        self.base_url = (base_url or config.mempool_api_url).rstrip("/")
        self.client = client or httpx.AsyncClient(timeout=30.0)

    async def close(self):
        await self.client.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            response = await self.client.request(method, f"{self.base_url}{path}", **kwargs)
        except httpx.HTTPError as e:
            raise LedgerUnavailableError(f"Mempool API unreachable: {e}") from e
        if response.status_code >= 500:
            raise LedgerUnavailableError(
                f"Mempool API error {response.status_code}: {response.text}"
            )
        return response

    async def list_spendable_outputs(self, address: str) -> list[SpendableOutput]:
        response = await self._request("GET", f"/address/{address}/utxo")
        if response.status_code != 200:
            raise LedgerRejectedError(response.text or f"HTTP {response.status_code}")
        return [
            SpendableOutput(txid=utxo["txid"], vout=utxo["vout"], amount=utxo["value"])
            for utxo in response.json()
        ]

    async def broadcast(self, raw_transaction: str) -> str:
        response = await self._request(
            "POST",
            "/tx",
            content=raw_transaction,
            headers={"Content-Type": "text/plain"},
        )
        if response.status_code != 200:
            raise LedgerRejectedError(response.text or f"HTTP {response.status_code}")
        txid = response.text.strip()
        logger.info("Broadcast transaction", txid=txid, backend="mempool")
        return txid


class BitcoinRPCLedger(LedgerClient):
    """Bitcoin Core JSON-RPC."""

    def __init__(self, settings: Optional[Config] = None, client: Optional[httpx.AsyncClient] = None):
        settings = settings or config
        self.url = settings.bitcoin_rpc_url
        auth = None
        if settings.bitcoin_rpc_user:
            auth = (settings.bitcoin_rpc_user, settings.bitcoin_rpc_pass or "")
        self.client = client or httpx.AsyncClient(timeout=60.0, auth=auth)
        self._ids = itertools.count(1)

    async def close(self):
        await self.client.aclose()

    async def call(self, method: str, *params: Any) -> Any:
        payload = {
            "jsonrpc": "1.0",
            "id": next(self._ids),
            "method": method,
            "params": list(params),
        }
        try:
            response = await self.client.post(self.url, json=payload)
        except httpx.HTTPError as e:
            raise LedgerUnavailableError(f"Bitcoin RPC unreachable: {e}") from e

        if response.status_code in (401, 403):
            raise LedgerRejectedError("Bitcoin RPC authentication failed")

        # bitcoind answers RPC errors with HTTP 500 and a JSON body
        try:
            body = response.json()
        except ValueError:
            raise LedgerUnavailableError(
                f"Bitcoin RPC error {response.status_code}: {response.text}"
            ) from None

        error = body.get("error")
        if error:
            message = error.get("message", str(error))
            if error.get("code") in _TRANSIENT_RPC_CODES:
                raise LedgerUnavailableError(f"Bitcoin RPC not ready: {message}")
            raise LedgerRejectedError(message)
        return body.get("result")

    async def list_spendable_outputs(self, address: str) -> list[SpendableOutput]:
        result = await self.call("scantxoutset", "start", [f"addr({address})"])
        if not result or not result.get("success", True):
            return []
        return [
            SpendableOutput(
                txid=utxo["txid"],
                vout=utxo["vout"],
                amount=int(Decimal(str(utxo["amount"])) * COIN),
            )
            for utxo in result.get("unspents", [])
        ]

    async def broadcast(self, raw_transaction: str) -> str:
        txid = await self.call("sendrawtransaction", raw_transaction)
        logger.info("Broadcast transaction", txid=txid, backend="rpc")
        return txid


def create_ledger(settings: Optional[Config] = None) -> LedgerClient:
    """Pick the backend the way the rest of the config does: mempool API unless disabled."""
    settings = settings or config
    if settings.use_mempool_api:
        return MempoolLedger(settings.mempool_api_url)
    return BitcoinRPCLedger(settings)
