"""
Helius API client for transaction history, token accounts and supply.

Retries are the Fetch Orchestrator's job: every fault here is raised as a
typed SourceError/ConfigurationError so the orchestrator can decide.
"""

import asyncio
import logging
import os
import time
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import parse_qs, urlparse

import aiohttp

from .errors import ConfigurationError, IncompletePaginationError, SourceError, redact
from .orchestrator import paginate_cursor

logger = logging.getLogger(__name__)

# JSON-RPC code Helius uses for rate limiting
RPC_RATE_LIMITED = -32429


def resolve_helius_api_key(api_key: Optional[str] = None) -> Optional[str]:
    """Explicit key, else HELIUS_API_KEY, else the api-key query parameter of the RPC URL."""
    if api_key:
        return api_key
    api_key = os.getenv("HELIUS_API_KEY")
    if api_key:
        return api_key
    rpc_url = os.getenv("HELIUS_RPC_URL") or os.getenv("SOLANA_RPC_URL", "")
    if rpc_url:
        query_params = parse_qs(urlparse(rpc_url).query)
        if "api-key" in query_params:
            return query_params["api-key"][0]
    return None


class HeliusClient:
    """Client for the Helius enhanced-transactions API and RPC."""

    BASE_URL = "https://api.helius.xyz/v0"
    RPC_URL = "https://mainnet.helius-rpc.com/"
    TX_PAGE_SIZE = 100
    TOKEN_ACCOUNTS_PAGE_SIZE = 1000

    def __init__(
        self,
        api_key: Optional[str] = None,
        session: Optional[aiohttp.ClientSession] = None,
        rate_limit_delay: float = 0.1,
    ):
        """
        Initialize the Helius client.

        Args:
            api_key: Helius API key (optional, falls back to env vars)
            session: Optional aiohttp session (for connection pooling)
            rate_limit_delay: Minimum spacing between requests in seconds
        """
        self.api_key = resolve_helius_api_key(api_key)
        self.last_request_time = 0.0
        # Conservative rate limit: 10 calls/sec
        self.rate_limit_delay = rate_limit_delay
        self._rate_lock: Optional[asyncio.Lock] = None
        self._rate_lock_loop = None
        self.api_calls_made = 0

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

    def _require_key(self) -> str:
        if not self.api_key:
            raise ConfigurationError("HELIUS_API_KEY is not configured")
        return self.api_key

    def _get_rate_lock(self) -> asyncio.Lock:
        # One lock per event loop; each asyncio.run() starts a fresh loop
        loop = asyncio.get_running_loop()
        if self._rate_lock is None or self._rate_lock_loop is not loop:
            self._rate_lock = asyncio.Lock()
            self._rate_lock_loop = loop
        return self._rate_lock

    async def _rate_limit_async(self):
        """Space requests at least `rate_limit_delay` apart."""
        async with self._get_rate_lock():
            time_since_last = time.monotonic() - self.last_request_time
            if time_since_last < self.rate_limit_delay:
                await asyncio.sleep(self.rate_limit_delay - time_since_last)
            self.last_request_time = time.monotonic()

    @staticmethod
    async def _read_json(response: aiohttp.ClientResponse, what: str) -> Any:
        if response.status != 200:
            body = await response.text()
            raise SourceError.from_status(response.status, f"Helius {what} returned {response.status}: {body[:200]}")
        try:
            return await response.json(content_type=None)
        except ValueError as e:
            raise SourceError(f"Helius {what} returned invalid JSON: {e}", kind="malformed")

    async def _make_request(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """
        GET a Helius REST endpoint.

        Raises:
            ConfigurationError: no API key
            SourceError: non-200 status or undecodable body
        """
        api_key = self._require_key()
        await self._rate_limit_async()
        request_params = dict(params or {})
        request_params["api-key"] = api_key

        session = await self._get_session()
        async with session.get(f"{self.BASE_URL}{endpoint}", params=request_params) as response:
            self.api_calls_made += 1
            return await self._read_json(response, endpoint)

    async def _rpc(self, method: str, params: Any) -> Any:
        """POST a JSON-RPC call and return its `result`."""
        api_key = self._require_key()
        await self._rate_limit_async()
        payload = {"jsonrpc": "2.0", "id": "lens", "method": method, "params": params}

        session = await self._get_session()
        async with session.post(self.RPC_URL, params={"api-key": api_key}, json=payload) as response:
            self.api_calls_made += 1
            data = await self._read_json(response, method)

        if not isinstance(data, dict):
            raise SourceError(f"Helius {method} returned a non-object body", kind="malformed")
        error = data.get("error")
        if error:
            code = error.get("code") if isinstance(error, dict) else None
            message = error.get("message") if isinstance(error, dict) else error
            if code == RPC_RATE_LIMITED:
                raise SourceError(f"Helius {method} rate limited: {message}", retryable=True, status=429)
            raise SourceError(f"Helius {method} error {code}: {redact(str(message))}")
        if "result" not in data:
            raise SourceError(f"Helius {method} response has no result", kind="malformed")
        return data["result"]

    async def get_address_transactions(
        self,
        address: str,
        max_pages: int = 20,
        cutoff_ms: Optional[int] = None,
        tx_type: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Enhanced transactions for an address, newest first."""
        txs, _ = await self.get_address_history(address, max_pages, cutoff_ms, tx_type)
        return txs

    async def get_address_history(
        self,
        address: str,
        max_pages: int = 20,
        cutoff_ms: Optional[int] = None,
        tx_type: Optional[str] = None,
    ) -> Tuple[List[Dict[str, Any]], bool]:
        """
        Enhanced transactions for an address plus whether the walk finished.

        Pages backwards with `before=<signature>` until an empty page, the
        cutoff timestamp or the page cap. `complete` is False only when the
        page cap stopped the walk.
        """
        endpoint = f"/addresses/{address}/transactions"

        async def fetch_page(before: Optional[str]) -> Tuple[List[Dict[str, Any]], Optional[str]]:
            params: Dict[str, Any] = {"limit": self.TX_PAGE_SIZE}
            if before:
                params["before"] = before
            if tx_type:
                params["type"] = tx_type

            batch = await self._make_request(endpoint, params)
            if isinstance(batch, dict):
                batch = batch.get("transactions", [])
            if not isinstance(batch, list):
                raise SourceError(f"Helius {endpoint} returned a non-list page", kind="malformed")
            if not batch:
                return [], None

            kept = []
            reached_cutoff = False
            for tx in batch:
                ts = tx.get("timestamp") if isinstance(tx, dict) else None
                if cutoff_ms is not None and ts and ts * 1000 < cutoff_ms:
                    reached_cutoff = True
                else:
                    kept.append(tx)

            # The next cursor is the last raw signature, filtered or not
            last_sig = batch[-1].get("signature") if isinstance(batch[-1], dict) else None
            if reached_cutoff or not last_sig or last_sig == before:
                return kept, None
            return kept, last_sig

        txs, complete = await paginate_cursor(
            fetch_page, max_pages, require_complete=False, description=f"Helius history for {address}"
        )
        logger.info(f"Fetched {len(txs)} transactions for {address}{'' if complete else ' (page cap reached)'}")
        return txs, complete

    async def get_token_accounts(self, mint: str, max_pages: int = 200) -> List[Dict[str, Any]]:
        """
        Every non-zero token account of `mint` via DAS getTokenAccounts.

        Walks page numbers until an empty page. A census needs the complete
        set, so exceeding `max_pages` raises IncompletePaginationError.
        """
        accounts: List[Dict[str, Any]] = []
        for page in range(1, max_pages + 1):
            result = await self._rpc("getTokenAccounts", {
                "mint": mint,
                "page": page,
                "limit": self.TOKEN_ACCOUNTS_PAGE_SIZE,
                "options": {"showZeroBalance": False},
            })
            batch = result.get("token_accounts") if isinstance(result, dict) else None
            if batch is None:
                raise SourceError("Helius getTokenAccounts result has no token_accounts", kind="malformed")
            if not batch:
                logger.info(f"Fetched {len(accounts)} token accounts for {mint} over {page - 1} pages")
                return accounts
            accounts.extend(batch)

        raise IncompletePaginationError(f"token accounts for {mint} exceed {max_pages} pages")

    async def get_token_supply(self, mint: str) -> Tuple[Decimal, int]:
        """Return (whole-token supply, decimals)."""
        result = await self._rpc("getTokenSupply", [mint])
        try:
            value = result["value"]
            decimals = int(value["decimals"])
            amount = Decimal(str(value["amount"])).scaleb(-decimals)
        except (KeyError, TypeError, ValueError, ArithmeticError) as e:
            raise SourceError(f"Helius getTokenSupply result is malformed: {e}", kind="malformed")
        if not amount.is_finite() or amount < 0 or decimals < 0:
            raise SourceError(f"Helius getTokenSupply returned an invalid supply for {mint}", kind="malformed")
        return amount, decimals
