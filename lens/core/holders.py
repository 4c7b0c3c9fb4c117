"""
Holder Aggregator: per-owner balances, dust filtering and concentration.
"""

import logging
from collections import defaultdict
from decimal import Decimal
from typing import Dict, Iterable, Optional

from .decimal_utils import ZERO
from .models import AnalyticsConfig, HolderCensus, HolderRecord, OwnershipRecord

logger = logging.getLogger(__name__)

TOP_N = 10
HUNDRED = Decimal('100')


def census(
    mint: str,
    records: Iterable[OwnershipRecord],
    total_supply: Optional[Decimal] = None,
    config: Optional[AnalyticsConfig] = None,
) -> HolderCensus:
    """
    Aggregate a complete set of ownership records into a census.

    One owner may control several token accounts; their balances are summed.
    Owners below the dust threshold are dropped from counts and concentration
    but tallied in `dust_dropped_count`. The supply used for percentages is
    never smaller than the observed balances, so holder balances never sum
    past it. Owners in `concentration_excluded_owners` stay in the census but
    are skipped when picking the top 10.
    """
    config = config or AnalyticsConfig()

    balances: Dict[str, Decimal] = defaultdict(Decimal)
    accounts: Dict[str, int] = defaultdict(int)
    malformed = 0
    for record in records:
        amount = record.amount
        if amount is None or not record.owner:
            malformed += 1
            continue
        balances[record.owner] += amount
        accounts[record.owner] += 1

    observed_total = sum(balances.values(), ZERO)
    supply = max(total_supply or ZERO, observed_total)

    excluded = config.concentration_excluded_owners
    holders = []
    dust_dropped = 0
    for owner, balance in balances.items():
        if balance < config.dust_threshold or balance == ZERO:
            dust_dropped += 1
            continue
        percent = balance / supply * HUNDRED if supply > ZERO else ZERO
        holders.append(HolderRecord(
            owner=owner,
            balance=balance,
            percent_of_supply=percent,
            token_accounts=accounts[owner],
            excluded_from_concentration=owner in excluded,
        ))

    holders.sort(key=lambda h: (-h.balance, h.owner))

    top_holders = [h for h in holders if not h.excluded_from_concentration][:TOP_N]
    top10 = sum((h.percent_of_supply for h in top_holders), ZERO)

    if malformed:
        logger.debug(f"Census for {mint} skipped {malformed} malformed ownership records")
    logger.info(f"Census for {mint}: {len(holders)} holders, {dust_dropped} dust owners dropped, top10 {top10:.2f}%")

    return HolderCensus(
        mint=mint,
        holders=holders,
        total_holder_count=len(holders),
        top10_concentration_percent=top10,
        total_supply=supply,
        dust_dropped_count=dust_dropped,
        malformed_dropped_count=malformed,
    )
