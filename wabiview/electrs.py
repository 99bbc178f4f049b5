"""Electrs REST client for indexed lookups."""

from typing import Any, Optional

import httpx
import structlog

from .config import config

logger = structlog.get_logger()


class ElectrsClient:
    """Simple GET + JSON lookups against an Electrs (Esplora) REST API."""

    def __init__(
        self, base_url: Optional[str] = None, client: Optional[httpx.AsyncClient] = None
    ):
        self.base_url = (base_url or config.electrs_url).rstrip("/")
        self.client = client or httpx.AsyncClient(timeout=30.0)

    async def _get(self, path: str) -> httpx.Response:
        response = await self.client.get(f"{self.base_url}/{path}")
        response.raise_for_status()
        return response

    async def get_transaction(self, txid: str) -> dict[str, Any] | None:
        try:
            return (await self._get(f"tx/{txid}")).json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Failed to get transaction from Electrs", txid=txid, error=str(e))
            return None

    async def get_raw_transaction(self, txid: str) -> str | None:
        try:
            return (await self._get(f"tx/{txid}/hex")).text.strip()
        except httpx.HTTPError as e:
            logger.error(
                "Failed to get raw transaction from Electrs", txid=txid, error=str(e)
            )
            return None

    async def get_transaction_status(self, txid: str) -> dict[str, Any] | None:
        try:
            return (await self._get(f"tx/{txid}/status")).json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(
                "Failed to get transaction status from Electrs", txid=txid, error=str(e)
            )
            return None

    async def get_address_transactions(self, address: str) -> list[dict[str, Any]] | None:
        try:
            return (await self._get(f"address/{address}/txs")).json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(
                "Failed to get address transactions from Electrs",
                address=address,
                error=str(e),
            )
            return None

    async def get_block_height(self) -> int | None:
        try:
            return int((await self._get("blocks/tip/height")).text.strip())
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Failed to get block height from Electrs", error=str(e))
            return None

    async def is_healthy(self) -> bool:
        return await self.get_block_height() is not None

    async def close(self):
        """Close the HTTP client."""
        await self.client.aclose()
