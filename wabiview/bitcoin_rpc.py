"""
Bitcoin Core JSON-RPC client.

The node is the authoritative source for blocks, transactions and the
mempool. Every call returns None when the node can't answer: callers
decide whether that skips an item or the whole step.
"""

import itertools
from typing import Any, Optional

import httpx
import structlog

from .config import config

logger = structlog.get_logger()


class BitcoinRpc:
    """Thin async wrapper around the RPC methods we need."""

    def __init__(
        self,
        rpc_url: Optional[str] = None,
        rpc_user: Optional[str] = None,
        rpc_password: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.rpc_url = rpc_url or config.bitcoin_rpc_url
        user = rpc_user if rpc_user is not None else config.bitcoin_rpc_user
        password = (
            rpc_password if rpc_password is not None else config.bitcoin_rpc_pass
        )
        auth = (user, password or "") if user else None
        self.client = client or httpx.AsyncClient(
            timeout=config.bitcoin_rpc_timeout, auth=auth
        )
        self._ids = itertools.count(1)

    async def call(self, method: str, *params: Any) -> Any | None:
        """
        Make one RPC call.

        Returns:
            The ``result`` member, or None on transport failure, non-2xx,
            malformed JSON or a non-null ``error`` member.
        """
        payload = {
            "jsonrpc": "1.0",
            "id": next(self._ids),
            "method": method,
            "params": list(params),
        }
        try:
            response = await self.client.post(self.rpc_url, json=payload)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Bitcoin RPC call failed", method=method, error=str(e))
            return None

        if not isinstance(data, dict):
            logger.error("Unexpected Bitcoin RPC response", method=method)
            return None
        if data.get("error") is not None:
            logger.error("Bitcoin RPC error", method=method, error=data["error"])
            return None
        return data.get("result")

    async def get_block_count(self) -> int | None:
        return await self.call("getblockcount")

    async def get_block_hash(self, height: int) -> str | None:
        return await self.call("getblockhash", height)

    async def get_block(
        self, block_hash: str, verbosity: int = 1
    ) -> dict[str, Any] | None:
        return await self.call("getblock", block_hash, verbosity)

    async def get_raw_transaction(
        self, txid: str, verbose: bool = True
    ) -> dict[str, Any] | None:
        return await self.call("getrawtransaction", txid, verbose)

    async def get_mempool_info(self) -> dict[str, Any] | None:
        return await self.call("getmempoolinfo")

    async def get_raw_mempool(self) -> list[str] | None:
        return await self.call("getrawmempool")

    async def is_healthy(self) -> bool:
        return await self.get_block_count() is not None

    async def close(self):
        """Close the HTTP client."""
        await self.client.aclose()
