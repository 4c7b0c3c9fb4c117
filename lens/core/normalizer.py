"""
Transaction Normalizer.

Turns canonical RawTransferRecords and SwapLegs into an ordered sequence of
TradeEvents for a wallet (or, via `normalize_mint`, for every trader of a
mint). Classification precedence per transaction:

1. A router SwapLeg owned by the wallet classifies the whole transaction.
2. Token received + native sent in the same signature -> BUY.
3. Token sent + native received in the same signature -> SELL.
4. Token received with no native movement -> AIRDROP (BUY at zero cost).
5. Records not touching the wallet, zero amounts and records without
   decimals are discarded and counted.
"""

import logging
from collections import Counter, defaultdict
from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Set, Tuple

from .decimal_utils import ZERO
from .models import (
    NATIVE_MINT,
    AnalyticsConfig,
    RawTransferRecord,
    SwapLeg,
    TradeEvent,
    TradeKind,
    TradeSource,
)

logger = logging.getLogger(__name__)


@dataclass
class NormalizerDiagnostics:
    """Per-run drop counters; never raised as errors."""
    dropped: Counter = field(default_factory=Counter)
    emitted: int = 0
    suspect_count: int = 0

    @property
    def dropped_total(self) -> int:
        return sum(self.dropped.values())

    def to_dict(self):
        return {
            "emitted": self.emitted,
            "suspect": self.suspect_count,
            "dropped": dict(self.dropped),
        }


class NormalizedTrades:
    """
    Lazy, finite, restartable sequence of TradeEvents.

    Every iteration re-derives the events from the materialized inputs, so
    the sequence can be consumed any number of times.
    """

    def __init__(
        self,
        wallets: Sequence[str],
        raw_records: Iterable[RawTransferRecord],
        swap_legs: Iterable[SwapLeg],
        config: Optional[AnalyticsConfig] = None,
        mint: Optional[str] = None,
    ):
        self._wallets = tuple(wallets)
        self._records = tuple(raw_records)
        self._legs = tuple(swap_legs)
        self._config = config or AnalyticsConfig()
        self._mint = mint
        self._diagnostics: Optional[NormalizerDiagnostics] = None

    def __iter__(self) -> Iterator[TradeEvent]:
        events, self._diagnostics = self._build()
        return iter(events)

    @property
    def diagnostics(self) -> NormalizerDiagnostics:
        if self._diagnostics is None:
            _, self._diagnostics = self._build()
        return self._diagnostics

    def ledger_input(self) -> List[TradeEvent]:
        """Events eligible for the Position Ledger (suspect events removed)."""
        return [event for event in self if not event.suspect]

    def _build(self) -> Tuple[List[TradeEvent], NormalizerDiagnostics]:
        wallets = set(self._wallets)
        diagnostics = NormalizerDiagnostics()
        dropped = diagnostics.dropped
        events: List[TradeEvent] = []

        # Router legs take precedence for their whole transaction
        consumed: Set[Tuple[str, str]] = set()
        for leg in self._legs:
            if leg.owner not in wallets:
                dropped["not_involved"] += 1
                continue
            consumed.add((leg.owner, leg.signature))
            events.extend(_events_from_leg(leg, dropped))

        groups: Dict[Tuple[str, str], List[RawTransferRecord]] = defaultdict(list)
        for record in self._records:
            if record.decimals is None:
                dropped["missing_decimals"] += 1
                continue
            if record.raw_amount == 0:
                dropped["zero_amount"] += 1
                continue
            involved = {record.from_account, record.to_account} & wallets
            if not involved:
                dropped["not_involved"] += 1
                continue
            if record.from_account == record.to_account:
                dropped["self_transfer"] += 1
                continue
            for wallet in involved:
                if (wallet, record.signature) in consumed:
                    continue
                groups[(wallet, record.signature)].append(record)

        for (wallet, signature), records in groups.items():
            events.extend(_events_from_transfers(wallet, signature, records, dropped))

        if self._mint is not None:
            events = [event for event in events if event.mint == self._mint]

        ceiling = self._config.suspect_token_ceiling
        flagged = []
        for event in events:
            if event.token_amount > ceiling:
                event = replace(event, suspect=True)
                diagnostics.suspect_count += 1
            flagged.append(event)

        flagged.sort(key=lambda e: e.sort_key)
        diagnostics.emitted = len(flagged)

        if diagnostics.suspect_count:
            logger.warning(f"{diagnostics.suspect_count} trade events exceed the sanity ceiling and were flagged suspect")
        if dropped:
            logger.debug(f"Normalizer dropped {diagnostics.dropped_total} records: {dict(dropped)}")
        return flagged, diagnostics


def _events_from_leg(leg: SwapLeg, dropped: Counter) -> List[TradeEvent]:
    amount_in = leg.amount_in
    amount_out = leg.amount_out
    if amount_in is None or amount_out is None:
        dropped["missing_decimals"] += 1
        return []

    in_native = leg.token_in == NATIVE_MINT
    out_native = leg.token_out == NATIVE_MINT
    if in_native and out_native:
        dropped["native_only"] += 1
        return []

    events = []
    if not out_native:
        if amount_out == ZERO:
            dropped["zero_amount"] += 1
        else:
            events.append(TradeEvent(
                wallet=leg.owner,
                mint=leg.token_out,
                kind=TradeKind.BUY,
                token_amount=amount_out,
                sol_amount=amount_in if in_native else ZERO,
                timestamp_ms=leg.timestamp_ms,
                signature=leg.signature,
                source=TradeSource.ROUTER_SWAP,
                quote_mint=leg.token_in,
                quote_amount=amount_in,
            ))
    if not in_native:
        if amount_in == ZERO:
            dropped["zero_amount"] += 1
        else:
            events.append(TradeEvent(
                wallet=leg.owner,
                mint=leg.token_in,
                kind=TradeKind.SELL,
                token_amount=amount_in,
                sol_amount=amount_out if out_native else ZERO,
                timestamp_ms=leg.timestamp_ms,
                signature=leg.signature,
                source=TradeSource.ROUTER_SWAP,
                quote_mint=leg.token_out,
                quote_amount=amount_out,
            ))
    return events


def _events_from_transfers(
    wallet: str,
    signature: str,
    records: List[RawTransferRecord],
    dropped: Counter,
) -> List[TradeEvent]:
    timestamp_ms = min(r.timestamp_ms for r in records)
    native_in = ZERO
    native_out = ZERO
    token_net: Dict[str, Decimal] = defaultdict(Decimal)

    for record in records:
        amount = record.amount
        incoming = record.to_account == wallet
        if record.is_native:
            if incoming:
                native_in += amount
            else:
                native_out += amount
        else:
            token_net[record.mint] += amount if incoming else -amount

    buys = []
    sells = []
    for mint in sorted(token_net):
        net = token_net[mint]
        if net > ZERO:
            buys.append((mint, net))
        elif net < ZERO:
            sells.append((mint, -net))
        else:
            dropped["net_zero"] += 1

    events = []
    if buys:
        # One native leg paying for several mints is split evenly
        paid = native_out > ZERO
        share = native_out / len(buys) if paid else ZERO
        source = TradeSource.DIRECT_TRANSFER if paid else TradeSource.AIRDROP
        for mint, amount in buys:
            events.append(TradeEvent(
                wallet=wallet,
                mint=mint,
                kind=TradeKind.BUY,
                token_amount=amount,
                sol_amount=share,
                timestamp_ms=timestamp_ms,
                signature=signature,
                source=source,
            ))

    if sells:
        if native_in > ZERO:
            share = native_in / len(sells)
            for mint, amount in sells:
                events.append(TradeEvent(
                    wallet=wallet,
                    mint=mint,
                    kind=TradeKind.SELL,
                    token_amount=amount,
                    sol_amount=share,
                    timestamp_ms=timestamp_ms,
                    signature=signature,
                    source=TradeSource.DIRECT_TRANSFER,
                ))
        else:
            dropped["unpaired_outgoing"] += len(sells)

    return events


def normalize(
    wallet: str,
    raw_records: Iterable[RawTransferRecord],
    swap_legs: Iterable[SwapLeg] = (),
    config: Optional[AnalyticsConfig] = None,
) -> NormalizedTrades:
    """Normalize one wallet's raw history into ordered TradeEvents."""
    return NormalizedTrades([wallet], raw_records, swap_legs, config)


def normalize_mint(
    mint: str,
    raw_records: Iterable[RawTransferRecord],
    swap_legs: Iterable[SwapLeg] = (),
    config: Optional[AnalyticsConfig] = None,
) -> NormalizedTrades:
    """
    Normalize a mint's raw history into TradeEvents for every trader.

    Traders are transaction signers where the provider reports them, else
    the counterparties of the mint's transfers. Configured system owners
    (bonding curves, pool authorities) are never treated as traders.
    """
    config = config or AnalyticsConfig()
    records = list(raw_records)
    legs = list(swap_legs)

    signatures = {r.signature for r in records if r.mint == mint}
    signatures.update(leg.signature for leg in legs if mint in (leg.token_in, leg.token_out))

    records = [r for r in records if r.signature in signatures]
    legs = [leg for leg in legs if leg.signature in signatures]

    wallets: Set[str] = {leg.owner for leg in legs}
    for record in records:
        if record.fee_payer:
            wallets.add(record.fee_payer)
        elif record.mint == mint:
            wallets.update(a for a in (record.from_account, record.to_account) if a)
    wallets -= set(config.concentration_excluded_owners)

    return NormalizedTrades(sorted(wallets), records, legs, config, mint=mint)
