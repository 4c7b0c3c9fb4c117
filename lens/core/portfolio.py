"""
Per-wallet position reports and performance summaries.

Builds on the ledger's positions: status classification, on-demand
unrealized P&L from externally supplied prices, win/loss statistics over
closed positions and rolling time-window summaries.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .decimal_utils import ZERO, decimal_to_float, safe_decimal_divide
from .ledger import replay, unrealized_pnl
from .models import Position, PositionStatus, TradeEvent

logger = logging.getLogger(__name__)

# A position is CLOSED once less than this share of bought tokens remains
CLOSED_REMAINING_RATIO = Decimal('0.02')

DAY_MS = 24 * 60 * 60 * 1000
TIME_WINDOWS = {
    "1d": DAY_MS,
    "7d": 7 * DAY_MS,
    "14d": 14 * DAY_MS,
    "30d": 30 * DAY_MS,
    "all": None,
}


def position_status(position: Position, untracked_sell_tokens: Decimal = ZERO) -> PositionStatus:
    if position.buy_count == 0 and (position.sell_count > 0 or untracked_sell_tokens > ZERO):
        return PositionStatus.ORPHAN
    if position.tokens_bought > ZERO and position.remaining_tokens / position.tokens_bought < CLOSED_REMAINING_RATIO:
        return PositionStatus.CLOSED
    return PositionStatus.OPEN


@dataclass
class PositionReport:
    """Plain record describing one position for output."""
    position: Position
    status: PositionStatus
    current_price: Optional[Decimal] = None
    unrealized_pnl: Optional[Decimal] = None
    untracked_sell_tokens: Decimal = ZERO

    @property
    def hold_ms(self) -> Optional[int]:
        p = self.position
        if p.first_buy_ms is None or p.last_sell_ms is None:
            return None
        return p.last_sell_ms - p.first_buy_ms

    @property
    def roi_percent(self) -> Optional[Decimal]:
        p = self.position
        pnl = p.realized_pnl + (self.unrealized_pnl or ZERO)
        return safe_decimal_divide(pnl * 100, p.sol_spent, default=None)

    def to_dict(self) -> Dict[str, Any]:
        p = self.position
        return {
            "wallet": p.wallet,
            "mint": p.mint,
            "status": self.status.value,
            "remainingTokens": decimal_to_float(p.remaining_tokens),
            "costBasisTotal": decimal_to_float(p.cost_basis_total),
            "averageCost": decimal_to_float(p.average_cost),
            "realizedPnL": decimal_to_float(p.realized_pnl),
            "realizedProceeds": decimal_to_float(p.realized_proceeds),
            "unrealizedPnL": decimal_to_float(self.unrealized_pnl),
            "currentPrice": decimal_to_float(self.current_price),
            "tradeCount": p.trade_count,
            "buyCount": p.buy_count,
            "sellCount": p.sell_count,
            "tokensBought": decimal_to_float(p.tokens_bought),
            "solSpent": decimal_to_float(p.sol_spent),
            "holdMs": self.hold_ms,
            "roiPercent": decimal_to_float(self.roi_percent),
            "untrackedSellTokens": decimal_to_float(self.untracked_sell_tokens),
        }


@dataclass
class WalletSummary:
    """Aggregate performance over a wallet's positions."""
    positions: List[PositionReport] = field(default_factory=list)
    total_realized_pnl: Decimal = ZERO
    total_unrealized_pnl: Optional[Decimal] = None
    win_count: int = 0
    loss_count: int = 0
    win_rate: Decimal = ZERO
    profit_factor: Optional[Decimal] = None
    avg_hold_ms: Optional[int] = None
    fastest_hold_ms: Optional[int] = None
    longest_hold_ms: Optional[int] = None
    total_volume: Decimal = ZERO
    tokens_traded: int = 0
    open_count: int = 0
    closed_count: int = 0
    orphan_count: int = 0
    untracked_sell_tokens: Decimal = ZERO

    def to_dict(self, include_positions: bool = True) -> Dict[str, Any]:
        data = {
            "totalRealizedPnL": decimal_to_float(self.total_realized_pnl),
            "totalUnrealizedPnL": decimal_to_float(self.total_unrealized_pnl),
            "winCount": self.win_count,
            "lossCount": self.loss_count,
            "winRate": decimal_to_float(self.win_rate),
            "profitFactor": decimal_to_float(self.profit_factor),
            "avgHoldMs": self.avg_hold_ms,
            "fastestHoldMs": self.fastest_hold_ms,
            "longestHoldMs": self.longest_hold_ms,
            "totalVolume": decimal_to_float(self.total_volume),
            "tokensTraded": self.tokens_traded,
            "openCount": self.open_count,
            "closedCount": self.closed_count,
            "orphanCount": self.orphan_count,
            "untrackedSellTokens": decimal_to_float(self.untracked_sell_tokens),
        }
        if include_positions:
            data["positions"] = [p.to_dict() for p in self.positions]
        return data


def summarize_wallet(
    positions: Iterable[Position],
    prices: Optional[Mapping[str, Decimal]] = None,
    untracked_sell_tokens: Optional[Mapping[str, Decimal]] = None,
) -> WalletSummary:
    """
    Summarize a wallet's positions.

    Args:
        positions: Ledger positions for one wallet
        prices: mint -> native-asset price per token, or None when the
            price provider failed (unrealized P&L is then reported as None)
        untracked_sell_tokens: mint -> clamped sell excess from the ledger
    """
    untracked_sell_tokens = untracked_sell_tokens or {}
    summary = WalletSummary()
    if prices is not None:
        summary.total_unrealized_pnl = ZERO

    gross_profit = ZERO
    gross_loss = ZERO
    holds: List[int] = []

    for position in positions:
        untracked = untracked_sell_tokens.get(position.mint, ZERO)
        status = position_status(position, untracked)

        price = None
        unrealized = None
        if prices is not None and position.remaining_tokens > ZERO:
            price = prices.get(position.mint)
            unrealized = unrealized_pnl(position, price)
            if unrealized is not None:
                summary.total_unrealized_pnl += unrealized

        report = PositionReport(
            position=position,
            status=status,
            current_price=price,
            unrealized_pnl=unrealized,
            untracked_sell_tokens=untracked,
        )
        summary.positions.append(report)

        summary.total_realized_pnl += position.realized_pnl
        summary.total_volume += position.sol_spent + position.realized_proceeds
        summary.untracked_sell_tokens += untracked

        if status == PositionStatus.OPEN:
            summary.open_count += 1
        elif status == PositionStatus.ORPHAN:
            summary.orphan_count += 1
        else:
            summary.closed_count += 1
            if position.realized_pnl > ZERO:
                summary.win_count += 1
                gross_profit += position.realized_pnl
            else:
                summary.loss_count += 1
                gross_loss += -position.realized_pnl
            if report.hold_ms is not None and report.hold_ms > 0:
                holds.append(report.hold_ms)

    summary.positions.sort(key=lambda r: r.position.realized_pnl, reverse=True)
    summary.tokens_traded = len(summary.positions)
    summary.win_rate = safe_decimal_divide(Decimal(summary.win_count * 100), Decimal(summary.closed_count))
    # Undefined (None) when there are no realized losses
    summary.profit_factor = safe_decimal_divide(gross_profit, gross_loss, default=None)

    if holds:
        summary.avg_hold_ms = sum(holds) // len(holds)
        summary.fastest_hold_ms = min(holds)
        summary.longest_hold_ms = max(holds)

    return summary


def analyze_time_windows(
    events: Iterable[TradeEvent],
    now_ms: int,
    prices: Optional[Mapping[str, Decimal]] = None,
) -> Dict[str, WalletSummary]:
    """Summaries over events in the last 1d/7d/14d/30d and over all history."""
    events = list(events)
    windows: Dict[str, WalletSummary] = {}
    for name, span_ms in TIME_WINDOWS.items():
        if span_ms is None:
            selected = events
        else:
            selected = [e for e in events if e.timestamp_ms > now_ms - span_ms]
        result = replay(selected)
        untracked = {mint: amount for (_, mint), amount in result.untracked_sell_tokens.items()}
        windows[name] = summarize_wallet(result.positions.values(), prices, untracked)
    return windows
