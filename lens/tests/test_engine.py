"""
End-to-end tests for the Analytics Engine using in-memory provider fakes.
"""

import asyncio
from decimal import Decimal

import pytest

from lens.core.cache import buyers_key, census_key
from lens.core.engine import METRIC_CENSUS, METRIC_UNREALIZED, SingleFlight
from lens.core.errors import SourceError, ValidationError
from lens.core.models import NATIVE_MINT, BuyerLabel, SniperRisk

T0 = 1_700_000_000  # seconds
DEPLOYER = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"


@pytest.fixture
def history(wallet, mint, helius_tx):
    """Wallet buys 1000 tokens for 1 SOL, then sells 500 for 0.75 SOL."""
    return [
        helius_tx("buy1", T0, wallet, mint, tokens=1000, sol=1, buy=True),
        helius_tx("sell1", T0 + 120, wallet, mint, tokens=500, sol="0.75", buy=False),
    ]


@pytest.fixture
def token_accounts(wallet, other_wallet, third_wallet):
    return [
        {"address": "acct-a", "owner": wallet, "amount": 500_000_000},
        {"address": "acct-b", "owner": other_wallet, "amount": 1_500_000_000},
        {"address": "acct-c", "owner": other_wallet, "amount": 500_000_000},
        {"address": "acct-d", "owner": third_wallet, "amount": 1_000_000},  # 1 token: dust
    ]


@pytest.fixture
def mint_history(history):
    """The wallet's trades followed by the creation transaction."""
    create = {"signature": "create", "timestamp": T0, "feePayer": DEPLOYER, "type": "CREATE"}
    return [*history, create]


@pytest.fixture
def helius(fake_helius, wallet, mint, history, mint_history, token_accounts):
    return fake_helius(
        transactions={wallet: history, mint: mint_history},
        supply=(Decimal("1000000"), 6),
        accounts=token_accounts,
    )


class TestWalletAnalysis:
    def test_realized_and_unrealized_pnl(self, build_engine, helius, fake_prices, wallet, mint):
        engine = build_engine(helius=helius, prices=fake_prices({mint: Decimal("0.002")}))
        report = asyncio.run(engine.analyze_wallet(wallet))

        assert report.failures == []
        summary = report.summary
        assert summary.total_realized_pnl == Decimal("0.25")
        position = summary.positions[0].position
        assert position.remaining_tokens == Decimal("500")
        assert position.cost_basis_total == Decimal("0.5")
        # 500 * 0.002 - 0.5
        assert summary.total_unrealized_pnl == Decimal("0.5")
        assert report.windows["all"].total_realized_pnl == Decimal("0.25")

    def test_price_timeout_keeps_rest_of_report(self, build_engine, helius, fake_prices, wallet, mint):
        """Price provider hangs: P&L without unrealized, census intact, one price failure."""
        engine = build_engine(helius=helius, prices=fake_prices(hang=True))
        report = asyncio.run(engine.analyze(wallet=wallet, mint=mint))

        assert report.summary.total_realized_pnl == Decimal("0.25")
        assert report.summary.total_unrealized_pnl is None

        census = report.holder_census
        assert census is not None
        assert census.total_holder_count == 2
        assert census.dust_dropped_count == 1
        assert census.holders[0].owner != wallet
        assert census.holders[0].balance == Decimal("2000")
        assert census.holders[0].token_accounts == 2

        assert [f.metric for f in report.failures] == [METRIC_UNREALIZED]
        assert report.failures[0].kind == "timeout"
        assert report.failed_metrics == [METRIC_UNREALIZED]

        data = report.to_dict()
        assert data["summary"]["totalUnrealizedPnL"] is None
        assert data["failures"][0]["source"] == "jupiter"

    def test_concurrent_requests_share_one_fetch(self, build_engine, fake_helius, fake_prices, wallet, mint, history):
        helius = fake_helius(transactions={wallet: history}, delay=0.05)
        engine = build_engine(helius=helius, prices=fake_prices({mint: Decimal("0.001")}))

        async def run():
            return await asyncio.gather(engine.analyze_wallet(wallet), engine.analyze_wallet(wallet))

        first, second = asyncio.run(run())

        assert helius.calls[("history", wallet)] == 1
        assert first.summary.to_dict() == second.summary.to_dict()

    def test_cached_trades_reused_until_rescan(self, build_engine, helius, wallet):
        engine = build_engine(helius=helius)

        asyncio.run(engine.analyze_wallet(wallet))
        cached = asyncio.run(engine.analyze_wallet(wallet))
        assert helius.calls[("history", wallet)] == 1
        assert cached.diagnostics["trades"] == {"cached": True}

        rescanned = asyncio.run(engine.clear_and_rescan(wallet))
        assert helius.calls[("history", wallet)] == 2
        assert rescanned.summary.total_realized_pnl == Decimal("0.25")

    def test_force_refresh_bypasses_cache(self, build_engine, helius, wallet):
        engine = build_engine(helius=helius)
        asyncio.run(engine.analyze_wallet(wallet))
        asyncio.run(engine.analyze_wallet(wallet, force_refresh=True))
        assert helius.calls[("history", wallet)] == 2

    def test_history_failure_isolated(self, build_engine, fake_helius, wallet):
        class BrokenHelius(fake_helius):
            async def get_address_transactions(self, address, max_pages=20, cutoff_ms=None, tx_type=None):
                raise SourceError.from_status(401, "unauthorized api-key=abc")

        engine = build_engine(helius=BrokenHelius())
        report = asyncio.run(engine.analyze_wallet(wallet))

        assert report.summary is None
        assert report.failures[0].kind == "http"
        assert report.failures[0].status == 401
        assert "abc" not in report.failures[0].message

    def test_solscan_trade_source(self, build_engine, fake_solscan, fake_prices, wallet, mint):
        swaps = [{
            "trans_id": "s1",
            "block_time": T0,
            "from_address": wallet,
            "routers": {
                "token1": NATIVE_MINT, "token1_decimals": 9, "amount1": 2_000_000_000,
                "token2": mint, "token2_decimals": 6, "amount2": 400_000_000,
            },
        }]
        engine = build_engine(
            solscan=fake_solscan(swaps=swaps),
            prices=fake_prices({mint: Decimal("0.01")}),
            trade_source="solscan",
        )
        report = asyncio.run(engine.analyze_wallet(wallet))

        position = report.summary.positions[0].position
        assert position.remaining_tokens == Decimal("400")
        assert position.cost_basis_total == Decimal("2")
        assert report.summary.total_unrealized_pnl == Decimal("2")


class TestMintAnalysis:
    def test_census_and_buyers(self, build_engine, helius, wallet, mint):
        engine = build_engine(helius=helius)
        report = asyncio.run(engine.analyze_mint(mint))

        assert report.failures == []
        assert report.holder_census.top10_concentration_percent == Decimal("0.25")
        buyers = report.buyer_census
        assert buyers.launch_timestamp_ms == T0 * 1000
        assert [(c.wallet, c.rank, c.label) for c in buyers.classifications] == [(wallet, 1, BuyerLabel.SNIPER)]
        assert buyers.unique_buyer_count == 1
        assert buyers.deployer == DEPLOYER
        assert buyers.classifications[0].tokens_bought == Decimal("1000")
        # 500 of 1000 bought still held
        assert buyers.classifications[0].is_holding is True
        assert (buyers.snipers_holding, buyers.snipers_sold) == (1, 0)
        assert buyers.risk_level == SniperRisk.HIGH
        assert report.diagnostics["mintHistory"]["historyTruncated"] is False

    def test_deployer_buys_not_ranked(self, build_engine, fake_helius, helius_tx, mint_history, wallet, mint):
        dev_buy = helius_tx("devbuy", T0 + 5, DEPLOYER, mint, tokens=50_000, sol=5, buy=True)
        helius = fake_helius(transactions={mint: [dev_buy, *mint_history]})
        engine = build_engine(helius=helius)
        report = asyncio.run(engine.analyze_mint(mint))

        buyers = report.buyer_census
        assert [c.wallet for c in buyers.classifications] == [wallet]
        assert buyers.unique_buyer_count == 1
        assert report.to_dict()["buyerCensus"]["deployer"] == DEPLOYER

    def test_sniper_without_census_balance_has_sold(self, build_engine, fake_helius, mint_history, other_wallet, mint):
        accounts = [{"address": "acct-b", "owner": other_wallet, "amount": 1_500_000_000}]
        helius = fake_helius(transactions={mint: mint_history}, accounts=accounts)
        engine = build_engine(helius=helius)
        report = asyncio.run(engine.analyze_mint(mint))

        buyers = report.buyer_census
        assert buyers.classifications[0].is_holding is False
        assert (buyers.snipers_holding, buyers.snipers_sold) == (0, 1)
        assert buyers.risk_level == SniperRisk.LOW
        data = report.to_dict()["buyerCensus"]
        assert data["riskLevel"] == "LOW"
        assert data["classifications"][0]["isHolding"] is False

    def test_truncated_history_flagged(self, build_engine, helius, mint):
        helius.truncated.add(mint)
        engine = build_engine(helius=helius)
        report = asyncio.run(engine.analyze_mint(mint))

        assert report.diagnostics["mintHistory"]["historyTruncated"] is True
        # The creation transaction may lie beyond the cap
        assert report.buyer_census.deployer is None

    def test_explicit_launch_time(self, build_engine, helius, wallet, mint):
        engine = build_engine(helius=helius)
        report = asyncio.run(engine.analyze_mint(mint, launch_timestamp_ms=(T0 - 3600) * 1000))

        # Rank 1 is always within the default sniper rank ceiling
        assert report.buyer_census.classifications[0].label == BuyerLabel.SNIPER
        assert report.buyer_census.launch_timestamp_ms == (T0 - 3600) * 1000

    def test_supply_failure_fails_helius_census(self, build_engine, helius, mint):
        helius.fail_supply = SourceError.from_status(404, "no such mint")
        engine = build_engine(helius=helius)
        report = asyncio.run(engine.analyze_mint(mint))

        assert report.holder_census is None
        assert METRIC_CENSUS in report.failed_metrics
        # Buyer classification does not depend on the census
        assert report.buyer_census is not None
        assert report.buyer_census.risk_level == SniperRisk.UNKNOWN
        assert report.buyer_census.classifications[0].is_holding is None

    def test_solscan_census_survives_supply_failure(self, build_engine, helius, fake_solscan, wallet, mint):
        helius.fail_supply = SourceError.from_status(404, "no such mint")
        holders = [{"address": "a1", "owner": wallet, "amount": 50_000_000, "decimals": 6}]
        engine = build_engine(helius=helius, solscan=fake_solscan(holders=holders), holder_source="solscan")
        report = asyncio.run(engine.analyze_mint(mint))

        assert report.holder_census.total_holder_count == 1
        assert report.holder_census.holders[0].percent_of_supply == Decimal("100")

    def test_census_cached_until_invalidated(self, build_engine, helius, mint):
        engine = build_engine(helius=helius)
        asyncio.run(engine.analyze_mint(mint))
        asyncio.run(engine.analyze_mint(mint))
        assert helius.calls[("accounts", mint)] == 1

        engine.invalidate_mint(mint)
        asyncio.run(engine.analyze_mint(mint))
        assert helius.calls[("accounts", mint)] == 2

    def test_unreadable_cached_census_recomputed(self, build_engine, helius, memory_cache, mint):
        memory_cache.put(census_key(mint), {"mint": mint, "holders": []})
        engine = build_engine(helius=helius)
        report = asyncio.run(engine.analyze_mint(mint))

        assert report.failures == []
        assert report.holder_census.total_holder_count == 2
        assert helius.calls[("accounts", mint)] == 1

    @pytest.mark.parametrize("payload", [["not", "an", "object"], {"events": [{"wallet": "w"}]}])
    def test_unreadable_cached_buyers_recomputed(self, build_engine, helius, memory_cache, wallet, mint, payload):
        memory_cache.put(buyers_key(mint), payload)
        engine = build_engine(helius=helius)
        report = asyncio.run(engine.analyze_mint(mint))

        assert [c.wallet for c in report.buyer_census.classifications] == [wallet]
        assert helius.calls[("history", mint)] == 1


class TestValidation:
    """Malformed identifiers are rejected before any fetch."""

    @pytest.mark.parametrize("kwargs", [
        {},
        {"wallet": "not-a-wallet"},
        {"mint": "0OIl0OIl0OIl0OIl0OIl0OIl0OIl0OIl"},
        {"wallet": "11111111111111111111111111111111111111111111111"},
    ])
    def test_rejected_without_fetching(self, build_engine, helius, kwargs):
        engine = build_engine(helius=helius)
        with pytest.raises(ValidationError):
            asyncio.run(engine.analyze(**kwargs))
        assert sum(helius.calls.values()) == 0

    def test_unknown_source_rejected(self, build_engine):
        with pytest.raises(ValueError):
            build_engine(trade_source="birdeye")


class TestSingleFlight:
    def test_late_arrival_joins_running_task(self):
        flight = SingleFlight()
        runs = []

        async def compute():
            runs.append(1)
            await asyncio.sleep(0.01)
            return "result"

        async def run():
            results = await asyncio.gather(flight.run("k", compute), flight.run("k", compute))
            return results, flight.in_flight("k")

        results, still_running = asyncio.run(run())
        assert results == ["result", "result"]
        assert runs == [1]
        assert not still_running

    def test_cancelled_caller_does_not_cancel_shared_task(self):
        flight = SingleFlight()

        async def compute():
            await asyncio.sleep(0.02)
            return 42

        async def run():
            first = asyncio.ensure_future(flight.run("k", compute))
            second = asyncio.ensure_future(flight.run("k", compute))
            await asyncio.sleep(0)
            first.cancel()
            return await second

        assert asyncio.run(run()) == 42
