"""
Position Ledger: weighted-average cost basis per (wallet, mint).

`apply` is a pure fold step. Sells larger than the tracked remaining balance
are clamped; the clamped excess is returned by `apply_with_excess` and
accumulated by `replay` as an untracked-acquisition diagnostic.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

from .decimal_utils import ZERO
from .errors import OutOfOrderEventError, ValidationError
from .models import Position, TradeEvent, TradeKind

logger = logging.getLogger(__name__)

PairKey = Tuple[str, str]


def _validate(position: Position, event: TradeEvent):
    if not event.wallet or not event.mint:
        raise ValidationError("trade event is missing wallet or mint")
    if event.wallet != position.wallet or event.mint != position.mint:
        raise ValidationError(
            f"event for {event.wallet}/{event.mint} applied to position {position.wallet}/{position.mint}"
        )
    if event.token_amount <= ZERO:
        raise ValidationError(f"trade event {event.signature} has non-positive token amount")
    if position.last_timestamp_ms is not None and event.timestamp_ms < position.last_timestamp_ms:
        raise OutOfOrderEventError(
            f"event {event.signature} at {event.timestamp_ms} precedes last applied event at {position.last_timestamp_ms}"
        )


def apply_with_excess(position: Position, event: TradeEvent) -> Tuple[Position, Decimal]:
    """
    Apply one event and return (new_position, clamped_sell_excess).

    Raises:
        ValidationError: missing wallet/mint, pair mismatch or non-positive amount
        OutOfOrderEventError: event older than the last applied event
    """
    _validate(position, event)

    if event.kind == TradeKind.BUY:
        return replace(
            position,
            cost_basis_total=position.cost_basis_total + event.sol_amount,
            remaining_tokens=position.remaining_tokens + event.token_amount,
            trade_count=position.trade_count + 1,
            tokens_bought=position.tokens_bought + event.token_amount,
            sol_spent=position.sol_spent + event.sol_amount,
            buy_count=position.buy_count + 1,
            first_buy_ms=position.first_buy_ms if position.first_buy_ms is not None else event.timestamp_ms,
            last_timestamp_ms=event.timestamp_ms,
        ), ZERO

    sell_amount = min(event.token_amount, position.remaining_tokens)
    excess = event.token_amount - sell_amount
    if sell_amount == ZERO:
        # Nothing tracked to sell against
        return position, excess

    avg_cost = position.average_cost
    allocated_cost = avg_cost * sell_amount
    remaining = position.remaining_tokens - sell_amount
    cost = position.cost_basis_total - allocated_cost
    if remaining == ZERO or cost < ZERO:
        cost = ZERO

    return replace(
        position,
        remaining_tokens=remaining,
        cost_basis_total=cost,
        realized_pnl=position.realized_pnl + event.sol_amount - allocated_cost,
        realized_proceeds=position.realized_proceeds + event.sol_amount,
        trade_count=position.trade_count + 1,
        sell_count=position.sell_count + 1,
        last_sell_ms=event.timestamp_ms,
        last_timestamp_ms=event.timestamp_ms,
    ), excess


def apply(position: Position, event: TradeEvent) -> Position:
    """Apply one TradeEvent to a position (pure)."""
    new_position, _ = apply_with_excess(position, event)
    return new_position


def unrealized_pnl(position: Position, price_per_token: Optional[Decimal]) -> Optional[Decimal]:
    """remaining * price - cost basis; None when no price is available."""
    if price_per_token is None:
        return None
    return position.remaining_tokens * price_per_token - position.cost_basis_total


@dataclass
class ReplayResult:
    """Positions rebuilt from a full event history."""
    positions: Dict[PairKey, Position] = field(default_factory=dict)
    untracked_sell_tokens: Dict[PairKey, Decimal] = field(default_factory=dict)
    suspect_skipped: int = 0

    def for_wallet(self, wallet: str) -> List[Position]:
        return [p for (w, _), p in sorted(self.positions.items()) if w == wallet]


def replay(events: Iterable[TradeEvent]) -> ReplayResult:
    """
    Rebuild every (wallet, mint) position from scratch.

    Events are explicitly re-sorted per pair before folding; suspect events
    are excluded from ledger input.
    """
    result = ReplayResult()
    by_pair: Dict[PairKey, List[TradeEvent]] = defaultdict(list)
    for event in events:
        if event.suspect:
            result.suspect_skipped += 1
            continue
        by_pair[(event.wallet, event.mint)].append(event)

    for pair, pair_events in by_pair.items():
        pair_events.sort(key=lambda e: e.sort_key)
        position = Position(wallet=pair[0], mint=pair[1])
        untracked = ZERO
        for event in pair_events:
            position, excess = apply_with_excess(position, event)
            untracked += excess
        result.positions[pair] = position
        if untracked > ZERO:
            result.untracked_sell_tokens[pair] = untracked
            logger.debug(f"Untracked acquisition for {pair[0]}/{pair[1]}: {untracked} tokens sold beyond tracked balance")

    return result
