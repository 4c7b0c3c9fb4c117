"""
Tests for the weighted-average Position Ledger.
"""

from decimal import Decimal

import pytest

from lens.core.errors import OutOfOrderEventError, ValidationError
from lens.core.ledger import apply, apply_with_excess, replay, unrealized_pnl
from lens.core.models import Position, TradeSource


@pytest.fixture
def empty_position(wallet, mint):
    return Position(wallet=wallet, mint=mint)


class TestApply:
    """Single-step fold behaviour."""

    def test_buy_then_partial_sell(self, empty_position, make_event):
        """Buy 1000 for 1, sell 500 for 0.75."""
        position = apply(empty_position, make_event("BUY", 1000, 1, ts=1000))
        position = apply(position, make_event("SELL", 500, "0.75", ts=2000))

        assert position.realized_pnl == Decimal("0.25")
        assert position.remaining_tokens == Decimal("500")
        assert position.cost_basis_total == Decimal("0.5")
        assert position.average_cost == Decimal("0.001")
        assert position.trade_count == 2

    def test_airdrop_then_full_sell(self, empty_position, make_event):
        """Airdropped tokens carry zero cost basis; the whole sale is profit."""
        position = apply(empty_position, make_event("BUY", 2000, 0, ts=1000, source=TradeSource.AIRDROP))
        position = apply(position, make_event("SELL", 2000, 1, ts=2000))

        assert position.realized_pnl == Decimal("1")
        assert position.remaining_tokens == 0
        assert position.cost_basis_total == 0

    def test_sell_with_nothing_held_leaves_position_unchanged(self, empty_position, make_event):
        position, excess = apply_with_excess(empty_position, make_event("SELL", 100, 1))

        assert position == empty_position
        assert excess == Decimal("100")

    def test_oversized_sell_is_clamped(self, empty_position, make_event):
        position = apply(empty_position, make_event("BUY", 100, 1, ts=1000))
        position, excess = apply_with_excess(position, make_event("SELL", 150, 3, ts=2000))

        assert position.remaining_tokens == 0
        assert position.cost_basis_total == 0
        assert position.realized_pnl == Decimal("2")
        assert excess == Decimal("50")

    def test_multiple_buys_average_cost(self, empty_position, make_event):
        position = apply(empty_position, make_event("BUY", 100, 1, ts=1000))
        position = apply(position, make_event("BUY", 100, 3, ts=2000))

        assert position.average_cost == Decimal("0.02")
        assert position.first_buy_ms == 1000
        assert position.buy_count == 2

    def test_cost_basis_zero_whenever_nothing_remains(self, empty_position, make_event):
        position = apply(empty_position, make_event("BUY", 3, 1, ts=1000))
        for ts in (2000, 3000, 4000):
            position = apply(position, make_event("SELL", 1, "0.5", ts=ts))

        assert position.remaining_tokens == 0
        assert position.cost_basis_total == 0

    def test_equal_timestamps_are_in_order(self, empty_position, make_event):
        position = apply(empty_position, make_event("BUY", 10, 1, ts=5000))
        position = apply(position, make_event("SELL", 5, 1, ts=5000))
        assert position.remaining_tokens == 5

    def test_out_of_order_event_rejected(self, empty_position, make_event):
        position = apply(empty_position, make_event("BUY", 10, 1, ts=5000))
        with pytest.raises(OutOfOrderEventError):
            apply(position, make_event("SELL", 5, 1, ts=4000))

    def test_non_positive_amount_rejected(self, empty_position, make_event):
        with pytest.raises(ValidationError):
            apply(empty_position, make_event("BUY", 0, 1))

    def test_pair_mismatch_rejected(self, empty_position, make_event, mint_b):
        with pytest.raises(ValidationError):
            apply(empty_position, make_event("BUY", 10, 1, mint=mint_b))

    def test_apply_is_pure(self, empty_position, make_event):
        event = make_event("BUY", 10, 1)
        first = apply(empty_position, event)
        second = apply(empty_position, event)
        assert first == second
        assert empty_position.remaining_tokens == 0


class TestUnrealized:
    def test_unrealized_pnl(self, empty_position, make_event):
        position = apply(empty_position, make_event("BUY", 1000, 1))
        assert unrealized_pnl(position, Decimal("0.002")) == Decimal("1")

    def test_no_price_means_none(self, empty_position, make_event):
        position = apply(empty_position, make_event("BUY", 1000, 1))
        assert unrealized_pnl(position, None) is None


class TestReplay:
    def test_replay_sorts_each_pair(self, wallet, mint, make_event):
        buy = make_event("BUY", 1000, 1, ts=1000)
        sell = make_event("SELL", 500, "0.75", ts=2000)

        result = replay([sell, buy])

        position = result.positions[(wallet, mint)]
        assert position.realized_pnl == Decimal("0.25")
        assert position.remaining_tokens == 500

    def test_replay_is_idempotent(self, make_event, mint_b):
        events = [
            make_event("BUY", 1000, 1, ts=1000),
            make_event("BUY", 50, 2, ts=1500, mint=mint_b),
            make_event("SELL", 400, 1, ts=2000),
            make_event("SELL", 50, 1, ts=2500, mint=mint_b),
        ]
        assert replay(events).positions == replay(events).positions

    def test_suspect_events_skipped(self, wallet, mint, make_event):
        events = [
            make_event("BUY", 100, 1, ts=1000),
            make_event("BUY", "5000000000000", 1, ts=2000, suspect=True),
        ]
        result = replay(events)

        assert result.suspect_skipped == 1
        assert result.positions[(wallet, mint)].remaining_tokens == 100

    def test_untracked_sell_excess_accumulates(self, wallet, mint, make_event):
        events = [
            make_event("SELL", 100, 1, ts=1000),
            make_event("BUY", 10, 1, ts=2000),
            make_event("SELL", 30, 1, ts=3000),
        ]
        result = replay(events)

        assert result.untracked_sell_tokens[(wallet, mint)] == Decimal("120")
        assert result.positions[(wallet, mint)].remaining_tokens == 0

    def test_for_wallet_filters(self, wallet, other_wallet, make_event):
        events = [
            make_event("BUY", 10, 1, ts=1000),
            make_event("BUY", 10, 1, ts=1000, wallet=other_wallet),
        ]
        positions = replay(events).for_wallet(wallet)
        assert [p.wallet for p in positions] == [wallet]
