"""
Pytest configuration and fixtures for Lens tests.
"""

import asyncio
from collections import Counter
from decimal import Decimal

import pytest

from lens.core.cache import ResultCache
from lens.core.engine import AnalyticsEngine
from lens.core.metrics import LensMetrics
from lens.core.models import (
    NATIVE_MINT,
    AnalyticsConfig,
    RawTransferRecord,
    TradeEvent,
    TradeKind,
    TradeSource,
)
from lens.core.orchestrator import FetchOrchestrator
from lens.core.redis_client import RedisClient

# Real 32-byte public keys so address validation passes
WALLET = "9xQeWvG816bUx9EPjHmaT23yvVM2ZWbrrpZb9PusVFin"
OTHER_WALLET = "whirLbMiicVdio4qvUfM5KAg6Ct8VwpYzGff3uctyCc"
THIRD_WALLET = "metaqbxxUerdq28cj1RbAWkYQm3ybzjb6a8bt518x1s"
MINT = "DezXAZ8z7PnrnRJjz3wXBoRgixCa6xjnB7YaB1pPB263"
MINT_B = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
POOL = "675kPX9MHTjS2zt1qfr1NYHuzeLXfQM9H24wFSUt1Mp8"

LAUNCH_S = 1_700_000_000


@pytest.fixture
def wallet():
    return WALLET


@pytest.fixture
def other_wallet():
    return OTHER_WALLET


@pytest.fixture
def third_wallet():
    return THIRD_WALLET


@pytest.fixture
def mint():
    return MINT


@pytest.fixture
def mint_b():
    return MINT_B


@pytest.fixture
def pool():
    return POOL


@pytest.fixture
def make_event():
    """Builder for TradeEvents with string amounts."""
    counter = Counter()

    def build(kind, tokens, sol, ts=None, wallet=WALLET, mint=MINT, source=None, signature=None, suspect=False):
        counter["n"] += 1
        kind = TradeKind(kind) if isinstance(kind, str) else kind
        return TradeEvent(
            wallet=wallet,
            mint=mint,
            kind=kind,
            token_amount=Decimal(str(tokens)),
            sol_amount=Decimal(str(sol)),
            timestamp_ms=ts if ts is not None else counter["n"] * 1000,
            signature=signature or f"sig{counter['n']}",
            source=source or TradeSource.DIRECT_TRANSFER,
            suspect=suspect,
        )

    return build


@pytest.fixture
def make_transfer():
    """Builder for RawTransferRecords; `amount` is in whole units."""

    def build(signature, sender, receiver, amount, mint=MINT, decimals=6, ts=LAUNCH_S * 1000, fee_payer=None):
        if mint == NATIVE_MINT:
            decimals = 9
        raw = int(Decimal(str(amount)).scaleb(decimals)) if decimals is not None else int(amount)
        return RawTransferRecord(
            signature=signature,
            timestamp_ms=ts,
            mint=mint,
            from_account=sender,
            to_account=receiver,
            raw_amount=raw,
            decimals=decimals,
            fee_payer=fee_payer,
        )

    return build


def helius_trade_tx(signature, ts_s, trader, mint, tokens, sol, buy=True, counterparty=POOL, decimals=6):
    """A Helius enhanced transaction trading `tokens` of `mint` for `sol` against `counterparty`."""
    token_raw = str(int(Decimal(str(tokens)).scaleb(decimals)))
    lamports = int(Decimal(str(sol)).scaleb(9))
    token_from, token_to = (counterparty, trader) if buy else (trader, counterparty)
    sol_from, sol_to = (trader, counterparty) if buy else (counterparty, trader)
    return {
        "signature": signature,
        "timestamp": ts_s,
        "feePayer": trader,
        "type": "SWAP",
        "nativeTransfers": [
            {"fromUserAccount": sol_from, "toUserAccount": sol_to, "amount": lamports},
        ],
        "tokenTransfers": [
            {
                "fromUserAccount": token_from,
                "toUserAccount": token_to,
                "mint": mint,
                "rawTokenAmount": {"tokenAmount": token_raw, "decimals": decimals},
            },
        ],
    }


@pytest.fixture
def helius_tx():
    return helius_trade_tx


class FakeHelius:
    """In-memory stand-in for HeliusClient."""

    def __init__(self, transactions=None, supply=(Decimal("1000000"), 6), accounts=None, delay=0.0):
        self.transactions = transactions or {}
        self.supply = supply
        self.accounts = accounts or []
        self.delay = delay
        self.calls = Counter()
        self.fail_supply = None
        self.truncated = set()
        self.closed = False

    async def get_address_transactions(self, address, max_pages=20, cutoff_ms=None, tx_type=None):
        txs, _ = await self.get_address_history(address, max_pages, cutoff_ms, tx_type)
        return txs

    async def get_address_history(self, address, max_pages=20, cutoff_ms=None, tx_type=None):
        self.calls[("history", address)] += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        return list(self.transactions.get(address, [])), address not in self.truncated

    async def get_token_supply(self, mint):
        self.calls[("supply", mint)] += 1
        if self.fail_supply:
            raise self.fail_supply
        return self.supply

    async def get_token_accounts(self, mint, max_pages=200):
        self.calls[("accounts", mint)] += 1
        return list(self.accounts)

    async def close(self):
        self.closed = True


class FakeSolscan:
    def __init__(self, swaps=None, holders=None):
        self.swaps = swaps or []
        self.holders = holders or []
        self.calls = Counter()

    async def get_wallet_swaps(self, wallet, max_pages=10):
        self.calls[("swaps", wallet)] += 1
        return list(self.swaps)

    async def get_token_holders(self, mint, max_pages=200):
        self.calls[("holders", mint)] += 1
        return list(self.holders)

    async def close(self):
        pass


class FakePrices:
    def __init__(self, prices=None, hang=False):
        self.prices = prices or {}
        self.hang = hang
        self.calls = 0

    async def get_prices(self, mints):
        self.calls += 1
        if self.hang:
            await asyncio.sleep(3600)
        return {m: p for m, p in self.prices.items() if m in set(mints)}

    async def close(self):
        pass


@pytest.fixture
def fake_helius():
    return FakeHelius


@pytest.fixture
def fake_solscan():
    return FakeSolscan


@pytest.fixture
def fake_prices():
    return FakePrices


@pytest.fixture
def fast_config():
    """Short timeouts and zero backoff so failure paths finish quickly."""
    return AnalyticsConfig(
        max_attempts=2,
        backoff_seconds=0.0,
        fetch_timeout_seconds=2.0,
        price_timeout_seconds=0.05,
    )


@pytest.fixture
def metrics():
    return LensMetrics()


@pytest.fixture
def memory_cache():
    return ResultCache(RedisClient(enabled=False))


@pytest.fixture
def build_engine(fast_config, memory_cache, metrics):
    """Factory for an AnalyticsEngine wired to fakes."""

    def build(helius=None, solscan=None, prices=None, config=None, cache=None, **kwargs):
        return AnalyticsEngine(
            config=config or fast_config,
            cache=cache or memory_cache,
            helius=helius or FakeHelius(),
            solscan=solscan or FakeSolscan(),
            prices=prices or FakePrices(),
            metrics=metrics,
            orchestrator=FetchOrchestrator(max_concurrency=4, metrics=metrics),
            **kwargs,
        )

    return build
