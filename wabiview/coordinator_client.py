"""HTTP client for the WabiSabi coordinator API."""

from typing import Optional

import httpx
import structlog
from pydantic import ValidationError

from .config import config
from .models import CoordinatorStatus, RoundInfo, RoundsMonitorResponse
from .registry import normalize_url

logger = structlog.get_logger()


class CoordinatorClient:
    """
    Fetches status and round lists from coordinators.

    Holds no state besides the connection pool. Every failure (timeout,
    non-2xx, bad JSON, unexpected payload) is logged here and reported
    to the caller as "no data".
    """

    def __init__(self, client: Optional[httpx.AsyncClient] = None):
        self.client = client or httpx.AsyncClient(
            timeout=config.coordinator_timeout,
            headers={"Accept": "application/json"},
        )
        self.status_path = config.coordinator_status_path.strip("/")
        self.rounds_path = config.coordinator_rounds_path.strip("/")

    def _url(self, coordinator_url: str, path: str) -> str:
        return f"{normalize_url(coordinator_url)}/{path}"

    async def is_online(self, coordinator_url: str) -> bool:
        """Check if a coordinator answers its status endpoint."""
        try:
            response = await self.client.get(
                self._url(coordinator_url, self.status_path)
            )
            return response.is_success
        except httpx.HTTPError as e:
            logger.debug("Coordinator unreachable", url=coordinator_url, error=str(e))
            return False

    async def get_status(self, coordinator_url: str) -> CoordinatorStatus | None:
        """Get the current round and coordinator parameters."""
        try:
            response = await self.client.get(
                self._url(coordinator_url, self.status_path)
            )
            response.raise_for_status()
            return CoordinatorStatus.model_validate(response.json())
        except (httpx.HTTPError, ValueError, ValidationError) as e:
            logger.error(
                "Failed to get coordinator status", url=coordinator_url, error=str(e)
            )
            return None

    async def get_rounds(self, coordinator_url: str) -> list[RoundInfo] | None:
        """Get all rounds the coordinator currently reports."""
        try:
            response = await self.client.get(
                self._url(coordinator_url, self.rounds_path)
            )
            response.raise_for_status()
            monitor = RoundsMonitorResponse.model_validate(response.json())
            return monitor.rounds
        except (httpx.HTTPError, ValueError, ValidationError) as e:
            logger.debug(
                "Failed to get coordinator rounds", url=coordinator_url, error=str(e)
            )
            return None

    async def close(self):
        """Close the HTTP client."""
        await self.client.aclose()
