"""
Analytics Engine - the entry point tying the pipeline together.

Wallet branch:  cache -> Fetch Orchestrator -> ingestion -> Normalizer ->
                Position Ledger -> summaries (+ prices for unrealized P&L)
Mint branch:    cache -> Fetch Orchestrator -> Holder Aggregator
                cache -> Fetch Orchestrator -> Normalizer -> Early-Buyer Classifier

Both branches run concurrently. Any upstream failure is isolated to the
metric it feeds and reported in `AnalyticsReport.failures`; the rest of the
report is still produced. At most one computation per cache key is in flight
at any time (`SingleFlight`).
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from .addresses import validate_address
from .cache import ResultCache, buyers_key, census_key, trades_key
from .classifier import apply_holding_status, classify
from .decimal_utils import decimal_to_float
from .errors import ValidationError
from .helius_client import HeliusClient
from .holders import census
from .ingestion import (
    earliest_fee_payer,
    parse_helius_token_accounts,
    parse_helius_transactions,
    parse_solscan_activities,
    parse_solscan_holders,
)
from .ledger import replay
from .metrics import LensMetrics
from .models import AnalyticsConfig, BuyerCensus, HolderCensus, SourceFailure, TradeEvent, TradeKind
from .normalizer import normalize, normalize_mint
from .orchestrator import FetchOrchestrator, FetchOutcome, RequestSpec, RetryPolicy
from .portfolio import WalletSummary, analyze_time_windows, summarize_wallet
from .price_client import JupiterPriceClient
from .redis_client import RedisClient
from .solscan_client import SolscanClient

logger = logging.getLogger(__name__)

# Metric names used in SourceFailure.metric
METRIC_POSITIONS = "positions"
METRIC_UNREALIZED = "unrealized_pnl"
METRIC_CENSUS = "holder_census"
METRIC_SUPPLY = "total_supply"
METRIC_BUYERS = "buyer_classification"

SOURCES = ("helius", "solscan")


class SingleFlight:
    """
    At most one in-flight computation per key.

    Late arrivals await the same task. Each caller awaits through
    `asyncio.shield`, so one caller being cancelled never cancels the
    computation the others are waiting on.
    """

    def __init__(self):
        self._inflight: Dict[str, asyncio.Task] = {}

    def in_flight(self, key: str) -> bool:
        return key in self._inflight

    async def run(self, key: str, factory: Callable[[], Awaitable[Any]]) -> Any:
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(factory())
            self._inflight[key] = task
            task.add_done_callback(lambda t, k=key: self._forget(k, t))
        else:
            logger.debug(f"Joining in-flight computation for {key}")
        return await asyncio.shield(task)

    def _forget(self, key: str, task: asyncio.Task):
        if self._inflight.get(key) is task:
            del self._inflight[key]


@dataclass
class TradeHistory:
    """A wallet's normalized trades, or the failure that prevented them."""
    wallet: str
    events: List[TradeEvent] = field(default_factory=list)
    diagnostics: Dict[str, Any] = field(default_factory=dict)
    failure: Optional[SourceFailure] = None
    from_cache: bool = False


@dataclass
class MintHistory:
    """Buy events for a mint plus its earliest observed activity and deployer."""
    mint: str
    buy_events: List[TradeEvent] = field(default_factory=list)
    earliest_ms: Optional[int] = None
    deployer: Optional[str] = None
    diagnostics: Dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "events": [e.to_dict() for e in self.buy_events],
            "earliestMs": self.earliest_ms,
            "deployer": self.deployer,
            "diagnostics": self.diagnostics,
        }

    @classmethod
    def from_payload(cls, mint: str, payload: Dict[str, Any]) -> "MintHistory":
        return cls(
            mint=mint,
            buy_events=[TradeEvent.from_dict(e) for e in payload.get("events", [])],
            earliest_ms=payload.get("earliestMs"),
            deployer=payload.get("deployer"),
            diagnostics=payload.get("diagnostics") or {},
        )


def _census_dict(holder_census: HolderCensus) -> Dict[str, Any]:
    return {
        "mint": holder_census.mint,
        "totalHolderCount": holder_census.total_holder_count,
        "top10ConcentrationPercent": decimal_to_float(holder_census.top10_concentration_percent),
        "totalSupply": decimal_to_float(holder_census.total_supply),
        "dustDroppedCount": holder_census.dust_dropped_count,
        "malformedDroppedCount": holder_census.malformed_dropped_count,
        "holders": [
            {
                "owner": h.owner,
                "balance": decimal_to_float(h.balance),
                "percentOfSupply": decimal_to_float(h.percent_of_supply),
                "tokenAccounts": h.token_accounts,
                "excludedFromConcentration": h.excluded_from_concentration,
            }
            for h in holder_census.holders
        ],
    }


def _buyers_dict(buyer_census: BuyerCensus) -> Dict[str, Any]:
    return {
        "mint": buyer_census.mint,
        "launchTimestampMs": buyer_census.launch_timestamp_ms,
        "uniqueBuyerCount": buyer_census.unique_buyer_count,
        "sniperCount": buyer_census.sniper_count,
        "earlyCount": buyer_census.early_count,
        "deployer": buyer_census.deployer,
        "snipersHolding": buyer_census.snipers_holding,
        "snipersSold": buyer_census.snipers_sold,
        "riskLevel": buyer_census.risk_level.value,
        "classifications": [
            {
                "wallet": c.wallet,
                "firstBuyTimestampMs": c.first_buy_timestamp_ms,
                "rank": c.rank,
                "label": c.label.value,
                "tokensBought": decimal_to_float(c.tokens_bought),
                "isHolding": c.is_holding,
            }
            for c in buyer_census.classifications
        ],
    }


@dataclass
class AnalyticsReport:
    """Whatever metrics could be computed, plus which failed and why."""
    wallet: Optional[str] = None
    mint: Optional[str] = None
    generated_at_ms: int = 0
    summary: Optional[WalletSummary] = None
    windows: Dict[str, WalletSummary] = field(default_factory=dict)
    holder_census: Optional[HolderCensus] = None
    buyer_census: Optional[BuyerCensus] = None
    failures: List[SourceFailure] = field(default_factory=list)
    diagnostics: Dict[str, Any] = field(default_factory=dict)

    @property
    def failed_metrics(self) -> List[str]:
        return sorted({f.metric for f in self.failures if f.metric})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "wallet": self.wallet,
            "mint": self.mint,
            "generatedAtMs": self.generated_at_ms,
            "summary": self.summary.to_dict() if self.summary else None,
            "windows": {name: s.to_dict(include_positions=False) for name, s in self.windows.items()},
            "holderCensus": _census_dict(self.holder_census) if self.holder_census else None,
            "buyerCensus": _buyers_dict(self.buyer_census) if self.buyer_census else None,
            "failures": [f.to_dict() for f in self.failures],
            "failedMetrics": self.failed_metrics,
            "diagnostics": self.diagnostics,
        }


class AnalyticsEngine:
    """
    Analytics entry point.

    Args:
        config: Thresholds and fetch policy
        cache: Result cache (defaults to an in-memory RedisClient fallback)
        helius: Transaction-history / ownership provider
        solscan: Alternative history / ownership provider
        prices: External price provider
        metrics: Optional LensMetrics sink
        trade_source: 'helius' or 'solscan'
        holder_source: 'helius' or 'solscan'
        max_concurrency: Bound on outstanding upstream requests
    """

    def __init__(
        self,
        config: Optional[AnalyticsConfig] = None,
        cache: Optional[ResultCache] = None,
        helius: Optional[HeliusClient] = None,
        solscan: Optional[SolscanClient] = None,
        prices: Optional[JupiterPriceClient] = None,
        metrics: Optional[LensMetrics] = None,
        trade_source: str = "helius",
        holder_source: str = "helius",
        max_concurrency: int = 4,
        orchestrator: Optional[FetchOrchestrator] = None,
        clock: Callable[[], float] = time.time,
    ):
        if trade_source not in SOURCES or holder_source not in SOURCES:
            raise ValueError(f"unknown source: trade={trade_source} holder={holder_source}")

        self.config = config or AnalyticsConfig()
        self.metrics = metrics
        self.cache = cache or ResultCache(RedisClient(enabled=False), metrics=metrics)
        self.helius = helius or HeliusClient()
        self.solscan = solscan or SolscanClient(max_concurrency=max_concurrency)
        self.prices = prices or JupiterPriceClient()
        self.trade_source = trade_source
        self.holder_source = holder_source
        self.orchestrator = orchestrator or FetchOrchestrator(max_concurrency=max_concurrency, metrics=metrics)
        self.retry = RetryPolicy(
            max_attempts=self.config.max_attempts,
            base_delay_seconds=self.config.backoff_seconds,
        )
        self._clock = clock
        self._single_flight = SingleFlight()

    async def close(self):
        for client in (self.helius, self.solscan, self.prices):
            await client.close()

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _deadline(self, deadline_seconds: Optional[float]) -> Optional[float]:
        return None if deadline_seconds is None else self.orchestrator.deadline_in(deadline_seconds)

    def _spec(self, key: str, source: str, fetch: Callable[[], Awaitable[Any]], metric: str,
              timeout: Optional[float] = None) -> RequestSpec:
        return RequestSpec(
            key=key,
            source=source,
            fetch=fetch,
            metric=metric,
            timeout_seconds=timeout or self.config.fetch_timeout_seconds,
            retry=self.retry,
        )

    def _record_drops(self, stage: str, dropped: Dict[str, int]):
        if self.metrics and dropped:
            self.metrics.record_drops(stage, dropped)

    # ------------------------------------------------------------------
    # Wallet trades
    # ------------------------------------------------------------------

    async def get_wallet_trades(
        self,
        wallet: str,
        force_refresh: bool = False,
        deadline: Optional[float] = None,
    ) -> TradeHistory:
        """Cached trades, else one shared fetch+normalize per wallet."""
        validate_address(wallet, "wallet")
        key = trades_key(wallet)

        if not force_refresh:
            cached = self.cache.load_cached_trades(wallet)
            if cached is not None:
                logger.debug(f"Using cached trades for {wallet}")
                return TradeHistory(wallet=wallet, events=cached, diagnostics={"cached": True}, from_cache=True)

        fingerprint = self.cache.begin(key)
        return await self._single_flight.run(
            f"{key}#{fingerprint}",
            lambda: self._compute_wallet_trades(wallet, fingerprint, deadline),
        )

    async def _compute_wallet_trades(self, wallet: str, fingerprint: str, deadline: Optional[float]) -> TradeHistory:
        max_pages = self.config.wallet_tx_max_pages
        if self.trade_source == "solscan":
            outcome = await self.orchestrator.fetch_one(self._spec(
                f"swaps:{wallet}", "solscan",
                lambda: self.solscan.get_wallet_swaps(wallet, max_pages),
                METRIC_POSITIONS,
            ), deadline)
            if not outcome.ok:
                return TradeHistory(wallet=wallet, failure=outcome.failure)
            legs, stats = parse_solscan_activities(outcome.result, wallet)
            transfers = []
        else:
            outcome = await self.orchestrator.fetch_one(self._spec(
                f"history:{wallet}", "helius",
                lambda: self.helius.get_address_transactions(wallet, max_pages),
                METRIC_POSITIONS,
            ), deadline)
            if not outcome.ok:
                return TradeHistory(wallet=wallet, failure=outcome.failure)
            transfers, legs, stats = parse_helius_transactions(outcome.result)

        trades = normalize(wallet, transfers, legs, self.config)
        events = list(trades)
        diagnostics = {"ingestion": stats.to_dict(), "normalizer": trades.diagnostics.to_dict()}
        self._record_drops("ingestion", stats.dropped)
        self._record_drops("normalizer", trades.diagnostics.dropped)

        self.cache.save_trades(wallet, events, fingerprint=fingerprint, diagnostics=diagnostics)
        logger.info(f"Reconstructed {len(events)} trade events for {wallet}")
        return TradeHistory(wallet=wallet, events=events, diagnostics=diagnostics)

    async def _fetch_prices(self, mints: List[str], deadline: Optional[float]) -> FetchOutcome:
        return await self.orchestrator.fetch_one(self._spec(
            f"prices:{len(mints)}", "jupiter",
            lambda: self.prices.get_prices(mints),
            METRIC_UNREALIZED,
            timeout=self.config.price_timeout_seconds,
        ), deadline)

    async def _wallet_branch(
        self,
        report: AnalyticsReport,
        wallet: str,
        target_mint: Optional[str],
        force_refresh: bool,
        deadline: Optional[float],
    ):
        history = await self.get_wallet_trades(wallet, force_refresh, deadline)
        report.diagnostics["trades"] = history.diagnostics
        if history.failure:
            report.failures.append(history.failure)
            return

        wallet_events = [e for e in history.events if e.wallet == wallet]
        result = replay(wallet_events)
        positions = result.for_wallet(wallet)
        untracked = {mint: amount for (w, mint), amount in result.untracked_sell_tokens.items() if w == wallet}

        priced_mints = sorted({p.mint for p in positions if p.remaining_tokens > 0} | ({target_mint} if target_mint else set()))
        prices: Optional[Dict[str, Decimal]] = {}
        if priced_mints:
            outcome = await self._fetch_prices(priced_mints, deadline)
            if outcome.ok:
                prices = outcome.result
            else:
                report.failures.append(outcome.failure)
                prices = None

        report.summary = summarize_wallet(positions, prices, untracked)
        report.windows = analyze_time_windows(wallet_events, self._now_ms(), prices)
        report.diagnostics["suspectEventsSkipped"] = result.suspect_skipped

    # ------------------------------------------------------------------
    # Mint census and buyers
    # ------------------------------------------------------------------

    async def get_holder_census(
        self,
        mint: str,
        force_refresh: bool = False,
        deadline: Optional[float] = None,
    ) -> Tuple[Optional[HolderCensus], List[SourceFailure]]:
        validate_address(mint, "mint")
        key = census_key(mint)
        if not force_refresh:
            entry = self.cache.get(key)
            if entry is not None:
                try:
                    return HolderCensus.from_dict(entry.payload), []
                except (AttributeError, ArithmeticError, KeyError, TypeError, ValueError) as e:
                    logger.warning(f"Cached census for {mint} is unreadable, recomputing: {e}")

        fingerprint = self.cache.begin(key)
        return await self._single_flight.run(
            f"{key}#{fingerprint}",
            lambda: self._compute_census(mint, fingerprint, deadline),
        )

    async def _compute_census(
        self,
        mint: str,
        fingerprint: str,
        deadline: Optional[float],
    ) -> Tuple[Optional[HolderCensus], List[SourceFailure]]:
        max_pages = self.config.holder_max_pages
        specs = [self._spec(f"supply:{mint}", "helius", lambda: self.helius.get_token_supply(mint), METRIC_SUPPLY)]
        if self.holder_source == "solscan":
            specs.append(self._spec(
                f"holders:{mint}", "solscan",
                lambda: self.solscan.get_token_holders(mint, max_pages),
                METRIC_CENSUS,
            ))
        else:
            specs.append(self._spec(
                f"holders:{mint}", "helius",
                lambda: self.helius.get_token_accounts(mint, max_pages),
                METRIC_CENSUS,
            ))

        outcomes = await self.orchestrator.fetch_all(specs, deadline)
        supply_outcome = outcomes[f"supply:{mint}"]
        holders_outcome = outcomes[f"holders:{mint}"]

        failures = []
        if not holders_outcome.ok:
            failures.append(holders_outcome.failure)
            return None, failures

        total_supply, decimals = (None, None)
        if supply_outcome.ok:
            total_supply, decimals = supply_outcome.result
        else:
            failures.append(supply_outcome.failure)

        if self.holder_source == "solscan":
            records, stats = parse_solscan_holders(holders_outcome.result)
        else:
            if decimals is None:
                # Helius token accounts carry no decimals; without supply the census is unusable
                failures.append(SourceFailure(
                    key=f"holders:{mint}", source="helius", metric=METRIC_CENSUS, kind="incomplete",
                    message="token decimals unavailable because the supply fetch failed",
                ))
                return None, failures
            records, stats = parse_helius_token_accounts(holders_outcome.result, decimals)
        self._record_drops("ingestion", stats.dropped)

        holder_census = census(mint, records, total_supply, self.config)
        if holder_census.dust_dropped_count:
            self._record_drops("census", {"dust": holder_census.dust_dropped_count})

        self.cache.put(census_key(mint), holder_census.to_dict(), fingerprint)
        return holder_census, failures

    async def get_mint_history(
        self,
        mint: str,
        force_refresh: bool = False,
        deadline: Optional[float] = None,
    ) -> Tuple[Optional[MintHistory], Optional[SourceFailure]]:
        validate_address(mint, "mint")
        key = buyers_key(mint)
        if not force_refresh:
            entry = self.cache.get(key)
            if entry is not None:
                try:
                    return MintHistory.from_payload(mint, entry.payload), None
                except (AttributeError, ArithmeticError, KeyError, TypeError, ValueError) as e:
                    logger.warning(f"Cached buyer history for {mint} is unreadable, recomputing: {e}")

        fingerprint = self.cache.begin(key)
        return await self._single_flight.run(
            f"{key}#{fingerprint}",
            lambda: self._compute_mint_history(mint, fingerprint, deadline),
        )

    async def _compute_mint_history(
        self,
        mint: str,
        fingerprint: str,
        deadline: Optional[float],
    ) -> Tuple[Optional[MintHistory], Optional[SourceFailure]]:
        outcome = await self.orchestrator.fetch_one(self._spec(
            f"mint-history:{mint}", "helius",
            lambda: self.helius.get_address_history(mint, self.config.wallet_tx_max_pages),
            METRIC_BUYERS,
        ), deadline)
        if not outcome.ok:
            return None, outcome.failure

        txs, complete = outcome.result
        transfers, legs, stats = parse_helius_transactions(txs)
        trades = normalize_mint(mint, transfers, legs, self.config)
        buys = [e for e in trades if e.kind == TradeKind.BUY]

        timestamps = [r.timestamp_ms for r in transfers if r.mint == mint]
        timestamps.extend(leg.timestamp_ms for leg in legs if mint in (leg.token_in, leg.token_out))
        if not complete:
            logger.warning(f"History for {mint} hit the page cap; buyer ranks cover recent activity only")
        history = MintHistory(
            mint=mint,
            buy_events=buys,
            earliest_ms=min(timestamps) if timestamps else None,
            # A truncated walk never reaches the creation transaction
            deployer=earliest_fee_payer(txs) if complete else None,
            diagnostics={
                "ingestion": stats.to_dict(),
                "normalizer": trades.diagnostics.to_dict(),
                "historyTruncated": not complete,
            },
        )
        self._record_drops("ingestion", stats.dropped)
        self._record_drops("normalizer", trades.diagnostics.dropped)

        self.cache.put(buyers_key(mint), history.to_payload(), fingerprint)
        return history, None

    async def _mint_branch(
        self,
        report: AnalyticsReport,
        mint: str,
        launch_timestamp_ms: Optional[int],
        force_refresh: bool,
        deadline: Optional[float],
    ):
        (holder_census, census_failures), (history, history_failure) = await asyncio.gather(
            self.get_holder_census(mint, force_refresh, deadline),
            self.get_mint_history(mint, force_refresh, deadline),
        )
        report.holder_census = holder_census
        report.failures.extend(census_failures)

        if history_failure:
            report.failures.append(history_failure)
            return

        launch_ms = launch_timestamp_ms
        if launch_ms is None:
            launch_ms = history.earliest_ms if history.earliest_ms is not None else self._now_ms()
        buyer_census = classify(mint, launch_ms, history.buy_events, self.config, deployer=history.deployer)
        if holder_census is not None:
            buyer_census = apply_holding_status(buyer_census, holder_census, self.config)
        report.buyer_census = buyer_census
        report.diagnostics["mintHistory"] = history.diagnostics

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    async def analyze(
        self,
        wallet: Optional[str] = None,
        mint: Optional[str] = None,
        launch_timestamp_ms: Optional[int] = None,
        force_refresh: bool = False,
        deadline_seconds: Optional[float] = None,
    ) -> AnalyticsReport:
        """
        Full analytics for a wallet and/or mint.

        Raises:
            ValidationError: neither identifier given, or one is malformed
                (raised before any fetch)
        """
        if not wallet and not mint:
            raise ValidationError("a wallet or a mint is required")
        if wallet:
            validate_address(wallet, "wallet")
        if mint:
            validate_address(mint, "mint")

        started = time.monotonic()
        deadline = self._deadline(deadline_seconds)
        report = AnalyticsReport(wallet=wallet, mint=mint, generated_at_ms=self._now_ms())

        branches = []
        if wallet:
            branches.append(self._wallet_branch(report, wallet, mint, force_refresh, deadline))
        if mint:
            branches.append(self._mint_branch(report, mint, launch_timestamp_ms, force_refresh, deadline))
        await asyncio.gather(*branches)

        if self.metrics:
            self.metrics.record_analysis_duration(time.monotonic() - started)
        if report.failures:
            logger.warning(f"Analysis completed with failed metrics: {report.failed_metrics}")
        return report

    async def analyze_wallet(self, wallet: str, force_refresh: bool = False,
                             deadline_seconds: Optional[float] = None) -> AnalyticsReport:
        return await self.analyze(wallet=wallet, force_refresh=force_refresh, deadline_seconds=deadline_seconds)

    async def analyze_mint(self, mint: str, launch_timestamp_ms: Optional[int] = None, force_refresh: bool = False,
                           deadline_seconds: Optional[float] = None) -> AnalyticsReport:
        return await self.analyze(
            mint=mint,
            launch_timestamp_ms=launch_timestamp_ms,
            force_refresh=force_refresh,
            deadline_seconds=deadline_seconds,
        )

    async def clear_and_rescan(self, wallet: str) -> AnalyticsReport:
        """User-triggered rescan: drop cached trades, then recompute."""
        validate_address(wallet, "wallet")
        self.cache.clear_cached_trades(wallet)
        logger.info(f"Cleared cached trades for {wallet}; rescanning")
        return await self.analyze(wallet=wallet)

    def invalidate_mint(self, mint: str):
        validate_address(mint, "mint")
        self.cache.invalidate(census_key(mint))
        self.cache.invalidate(buyers_key(mint))
