import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from kaspa_gateway.derivation import normalize_address
from kaspa_gateway.errors import ApiError

logger = logging.getLogger(__name__)

USER_AGENT = "Kaspa-Payments-Gateway/1.0"


class KaspaApiClient:
    """Read-only client for the public Kaspa REST API (api.kaspa.org)."""

    def __init__(self, base_url: str = "https://api.kaspa.org", prefix: str = "kaspa",
                 timeout: float = 15.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.prefix = prefix
        self.timeout = timeout
        self.transport = transport

    async def get_balance(self, address: str) -> int:
        """Current balance of ``address`` in sompi."""
        data = await self._get_json(address, "balance")
        if not isinstance(data, dict) or "balance" not in data:
            raise ApiError(f"Balance response for {address} has no balance field")
        try:
            return int(data["balance"])
        except (TypeError, ValueError):
            raise ApiError(f"Balance response for {address} is not an integer: {data['balance']!r}")

    async def get_full_transactions(self, address: str, limit: int = 50) -> List[Dict[str, Any]]:
        data = await self._get_json(address, "full-transactions", params={"limit": limit})
        # The API answers with a bare list; some proxies wrap it
        if isinstance(data, dict):
            data = data.get("transactions")
        if not isinstance(data, list):
            raise ApiError(f"Transaction response for {address} is not a list")
        return data

    async def _get_json(self, address: str, resource: str, params=None):
        address = normalize_address(address, self.prefix)
        url = f"{self.base_url}/addresses/{quote(address, safe='')}/{resource}"
        headers = {"User-Agent": USER_AGENT, "Accept": "application/json"}

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.get(url, params=params, headers=headers)
        except httpx.TimeoutException:
            logger.warning(f"Kaspa API timeout for {resource} of {address}")
            raise ApiError(f"Timed out fetching {resource} for {address}")
        except httpx.HTTPError as e:
            logger.warning(f"Kaspa API request failed for {resource} of {address}: {e}")
            raise ApiError(f"Request failed fetching {resource} for {address}: {e}")

        if response.status_code != 200:
            logger.warning(f"Kaspa API returned {response.status_code} for {resource} of {address}")
            raise ApiError(f"Kaspa API returned {response.status_code}", status_code=response.status_code)

        try:
            return response.json()
        except ValueError:
            raise ApiError(f"Kaspa API returned invalid JSON for {resource} of {address}")
