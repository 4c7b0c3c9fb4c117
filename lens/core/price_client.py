"""Jupiter Price API client: current price per token in native-asset units."""

import asyncio
import logging
import time
from decimal import Decimal, InvalidOperation
from typing import Dict, Iterable, Optional

import aiohttp

from .errors import SourceError
from .models import NATIVE_MINT

logger = logging.getLogger(__name__)


class JupiterPriceClient:
    """
    External price provider.

    Only the engine's report assembly calls this; the Position Ledger takes
    prices as plain inputs.
    """

    BATCH_SIZE = 100

    def __init__(self, api_url: str = "https://price.jup.ag/v6", session: Optional[aiohttp.ClientSession] = None):
        """
        Initialize Jupiter client.

        Args:
            api_url: Jupiter Price API URL
            session: Optional aiohttp session (for connection pooling)
        """
        self.api_url = api_url
        self.rate_limit_delay = 0.3  # Seconds between requests
        self.last_request_time = 0.0
        self._session = session
        self._own_session = False

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None:
            self._session = aiohttp.ClientSession()
            self._own_session = True
        return self._session

    async def close(self):
        """Close session if we own it."""
        if self._own_session and self._session:
            await self._session.close()
            self._session = None
            self._own_session = False

    async def _rate_limit(self):
        """Ensure we don't exceed rate limits."""
        time_since_last = time.monotonic() - self.last_request_time
        if time_since_last < self.rate_limit_delay:
            await asyncio.sleep(self.rate_limit_delay - time_since_last)
        self.last_request_time = time.monotonic()

    async def get_prices(self, mints: Iterable[str]) -> Dict[str, Decimal]:
        """
        Price per token, denominated in the native asset, for each mint.

        Mints Jupiter does not know are simply absent from the result.
        """
        mints = sorted({m for m in mints if m and m != NATIVE_MINT})
        prices: Dict[str, Decimal] = {}
        session = await self._get_session()

        for start in range(0, len(mints), self.BATCH_SIZE):
            batch = mints[start:start + self.BATCH_SIZE]
            await self._rate_limit()
            params = {"ids": ",".join(batch), "vsToken": NATIVE_MINT}
            async with session.get(f"{self.api_url}/price", params=params) as response:
                if response.status != 200:
                    raise SourceError.from_status(response.status, f"Jupiter price returned {response.status}")
                try:
                    data = await response.json(content_type=None) or {}
                except ValueError as e:
                    raise SourceError(f"Jupiter price returned invalid JSON: {e}", kind="malformed")

            for mint, entry in (data.get("data") or {}).items():
                price = entry.get("price") if isinstance(entry, dict) else None
                if price is None:
                    continue
                try:
                    value = Decimal(str(price))
                except InvalidOperation:
                    logger.debug(f"Ignoring unparseable Jupiter price for {mint}: {price!r}")
                    continue
                if value > 0:
                    prices[mint] = value

        logger.debug(f"Jupiter returned prices for {len(prices)}/{len(mints)} mints")
        return prices
