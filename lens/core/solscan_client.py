"""
Solscan Pro API (v2) client for DeFi swap activities and token holders.
"""

import asyncio
import logging
import os
import time
from typing import Any, Dict, List, Optional, Tuple

import aiohttp

from .errors import ConfigurationError, SourceError
from .orchestrator import paginate_pages

logger = logging.getLogger(__name__)


class SolscanClient:
    """Authenticated Solscan v2 client (`token` header)."""

    BASE_URL = "https://pro-api.solscan.io/v2.0"
    SWAP_ACTIVITY_TYPES = ("ACTIVITY_TOKEN_SWAP", "ACTIVITY_AGG_TOKEN_SWAP")
    ACTIVITY_PAGE_SIZE = 100
    HOLDER_PAGE_SIZE = 40

    def __init__(
        self,
        api_key: Optional[str] = None,
        session: Optional[aiohttp.ClientSession] = None,
        rate_limit_delay: float = 0.1,
        max_concurrency: int = 4,
    ):
        self.api_key = api_key or os.getenv("SOLSCAN_API_KEY")
        self.rate_limit_delay = rate_limit_delay
        self.max_concurrency = max_concurrency
        self.last_request_time = 0.0
        self._rate_lock: Optional[asyncio.Lock] = None
        self._rate_lock_loop = None
        self._session = session
        self._own_session = False

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession()
            self._own_session = True
        return self._session

    async def close(self):
        if self._own_session and self._session:
            await self._session.close()
            self._session = None
            self._own_session = False

    def _get_rate_lock(self) -> asyncio.Lock:
        # One lock per event loop; each asyncio.run() starts a fresh loop
        loop = asyncio.get_running_loop()
        if self._rate_lock is None or self._rate_lock_loop is not loop:
            self._rate_lock = asyncio.Lock()
            self._rate_lock_loop = loop
        return self._rate_lock

    async def _rate_limit_async(self):
        async with self._get_rate_lock():
            time_since_last = time.monotonic() - self.last_request_time
            if time_since_last < self.rate_limit_delay:
                await asyncio.sleep(self.rate_limit_delay - time_since_last)
            self.last_request_time = time.monotonic()

    async def _make_request(self, endpoint: str, params: List[Tuple[str, Any]]) -> Any:
        """
        GET an endpoint and return the `data` member of a successful body.

        Params are (key, value) pairs so list-valued filters repeat the key.
        """
        if not self.api_key:
            raise ConfigurationError("SOLSCAN_API_KEY is not configured")
        await self._rate_limit_async()

        session = await self._get_session()
        headers = {"token": self.api_key, "Content-Type": "application/json"}
        async with session.get(f"{self.BASE_URL}{endpoint}", params=params, headers=headers) as response:
            if response.status != 200:
                body = await response.text()
                raise SourceError.from_status(response.status, f"Solscan {endpoint} returned {response.status}: {body[:200]}")
            try:
                body = await response.json(content_type=None)
            except ValueError as e:
                raise SourceError(f"Solscan {endpoint} returned invalid JSON: {e}", kind="malformed")

        if not isinstance(body, dict) or not body.get("success"):
            errors = body.get("errors") if isinstance(body, dict) else body
            raise SourceError(f"Solscan {endpoint} returned an error: {errors}")
        return body.get("data")

    async def get_wallet_swaps(self, wallet: str, max_pages: int = 10) -> List[Dict[str, Any]]:
        """Raw swap activities for `wallet`, newest first, walked until a short page."""
        activities: List[Dict[str, Any]] = []
        for page in range(1, max_pages + 1):
            params = [("address", wallet)]
            params.extend(("activity_type[]", t) for t in self.SWAP_ACTIVITY_TYPES)
            params.extend([
                ("page", page),
                ("page_size", self.ACTIVITY_PAGE_SIZE),
                ("sort_by", "block_time"),
                ("sort_order", "desc"),
            ])
            batch = await self._make_request("/account/defi/activities", params)
            if batch is None:
                batch = []
            if not isinstance(batch, list):
                raise SourceError("Solscan activities page is not a list", kind="malformed")
            activities.extend(batch)
            if len(batch) < self.ACTIVITY_PAGE_SIZE:
                break
        else:
            logger.info(f"Solscan swap history for {wallet} stopped at the {max_pages}-page cap")

        logger.info(f"Fetched {len(activities)} Solscan swap activities for {wallet}")
        return activities

    async def get_token_holders(self, mint: str, max_pages: int = 200) -> List[Dict[str, Any]]:
        """
        Every holder item of `mint`.

        The first page carries a `total` hint; the remaining pages are then
        fetched in parallel. Any failed page fails the whole census.
        """
        async def fetch_page(page: int) -> Tuple[List[Dict[str, Any]], Optional[int]]:
            data = await self._make_request("/token/holders", [
                ("address", mint),
                ("page", page),
                ("page_size", self.HOLDER_PAGE_SIZE),
            ])
            if not isinstance(data, dict) or not isinstance(data.get("items"), list):
                raise SourceError("Solscan holders page is malformed", kind="malformed")
            total = data.get("total")
            return data["items"], int(total) if isinstance(total, (int, float)) else None

        items, _ = await paginate_pages(
            fetch_page,
            page_size=self.HOLDER_PAGE_SIZE,
            max_pages=max_pages,
            max_concurrency=self.max_concurrency,
            require_complete=True,
            description=f"Solscan holders for {mint}",
        )
        logger.info(f"Fetched {len(items)} Solscan holder accounts for {mint}")
        return items
