"""
Early-Buyer Classifier.

Ranks wallets by their first BUY of a mint and labels them by entry timing
relative to the launch reference point, then checks which of them still
hold against a holder census.
"""

import logging
from collections import defaultdict
from dataclasses import replace
from decimal import Decimal
from typing import Dict, Iterable, Optional, Tuple

from .decimal_utils import ZERO
from .models import (
    AnalyticsConfig,
    BuyerCensus,
    BuyerClassification,
    BuyerLabel,
    HolderCensus,
    SniperRisk,
    TradeEvent,
    TradeKind,
    TradeSource,
)

logger = logging.getLogger(__name__)


def _is_buy(event: TradeEvent, mint: str) -> bool:
    # Airdrops are receipts, not purchases
    return event.mint == mint and event.kind == TradeKind.BUY and event.source != TradeSource.AIRDROP


def label_for(rank: int, first_buy_ms: int, launch_ms: int, config: AnalyticsConfig) -> BuyerLabel:
    delta = first_buy_ms - launch_ms
    if rank <= config.sniper_rank_ceiling or delta <= config.sniper_window_ms:
        return BuyerLabel.SNIPER
    if delta <= config.early_window_ms:
        return BuyerLabel.EARLY
    return BuyerLabel.ORGANIC


def unique_buyer_count(
    mint: str,
    buy_events: Iterable[TradeEvent],
    window: Optional[Tuple[Optional[int], Optional[int]]] = None,
) -> int:
    """Distinct wallets with at least one BUY inside `window` (start, end), inclusive."""
    start, end = window if window else (None, None)
    wallets = set()
    for event in buy_events:
        if not _is_buy(event, mint):
            continue
        if start is not None and event.timestamp_ms < start:
            continue
        if end is not None and event.timestamp_ms > end:
            continue
        wallets.add(event.wallet)
    return len(wallets)


def classify(
    mint: str,
    launch_timestamp_ms: int,
    buy_events: Iterable[TradeEvent],
    config: Optional[AnalyticsConfig] = None,
    window: Optional[Tuple[Optional[int], Optional[int]]] = None,
    deployer: Optional[str] = None,
) -> BuyerCensus:
    """
    Label every buyer of `mint` as SNIPER, EARLY or ORGANIC.

    Ranks start at 1 and follow first-buy time; ties are broken by wallet
    address so the result is deterministic. The unique-buyer window defaults
    to unbounded (every buy since launch counts). The deployer's own buys
    are neither ranked nor counted.
    """
    config = config or AnalyticsConfig()
    events = [e for e in buy_events if _is_buy(e, mint) and e.wallet != deployer]

    first_buys: Dict[str, int] = {}
    bought: Dict[str, Decimal] = defaultdict(Decimal)
    for event in events:
        current = first_buys.get(event.wallet)
        if current is None or event.timestamp_ms < current:
            first_buys[event.wallet] = event.timestamp_ms
        bought[event.wallet] += event.token_amount

    ordered = sorted(first_buys.items(), key=lambda item: (item[1], item[0]))
    classifications = [
        BuyerClassification(
            wallet=wallet,
            first_buy_timestamp_ms=first_ms,
            rank=rank,
            label=label_for(rank, first_ms, launch_timestamp_ms, config),
            tokens_bought=bought[wallet],
        )
        for rank, (wallet, first_ms) in enumerate(ordered, start=1)
    ]

    result = BuyerCensus(
        mint=mint,
        launch_timestamp_ms=launch_timestamp_ms,
        classifications=classifications,
        unique_buyer_count=unique_buyer_count(mint, events, window),
        deployer=deployer,
    )
    logger.info(
        f"Classified {len(classifications)} buyers for {mint}: "
        f"{result.sniper_count} snipers, {result.early_count} early"
    )
    return result


def sniper_risk(snipers: int, sold: int, config: AnalyticsConfig) -> SniperRisk:
    """Rate dump risk by the share of snipers that have already sold."""
    if snipers == 0:
        return SniperRisk.LOW
    sold_ratio = Decimal(sold) / Decimal(snipers)
    if sold_ratio > config.sniper_low_risk_sold_ratio:
        return SniperRisk.LOW
    if sold_ratio < config.sniper_high_risk_sold_ratio:
        return SniperRisk.HIGH
    return SniperRisk.MEDIUM


def apply_holding_status(
    buyer_census: BuyerCensus,
    holder_census: HolderCensus,
    config: Optional[AnalyticsConfig] = None,
) -> BuyerCensus:
    """
    Mark which buyers still hold, using the holder census balances.

    A buyer holds while their balance exceeds `holding_min_fraction` of the
    tokens they bought. Dust owners are absent from the census and count as
    sold.
    """
    config = config or AnalyticsConfig()
    balances = {h.owner: h.balance for h in holder_census.holders}

    classifications = []
    for c in buyer_census.classifications:
        balance = balances.get(c.wallet, ZERO)
        holding = balance > c.tokens_bought * config.holding_min_fraction and balance > ZERO
        classifications.append(replace(c, is_holding=holding))

    snipers = [c for c in classifications if c.label == BuyerLabel.SNIPER]
    holding_count = sum(1 for c in snipers if c.is_holding)
    sold_count = len(snipers) - holding_count
    return replace(
        buyer_census,
        classifications=classifications,
        snipers_holding=holding_count,
        snipers_sold=sold_count,
        risk_level=sniper_risk(len(snipers), sold_count, config),
    )
