"""
Provider ingestion layer.

Each upstream provider has its own payload shape. The adapters here validate
those payloads and map them into the canonical RawTransferRecord, SwapLeg and
OwnershipRecord types before any shared logic runs. Unknown fields are
ignored; a record missing a required field is dropped and counted.
"""

import logging
import math
from collections import Counter
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .decimal_utils import parse_raw_amount
from .errors import MalformedRecordError
from .models import NATIVE_DECIMALS, NATIVE_MINT, OwnershipRecord, RawTransferRecord, SwapLeg

logger = logging.getLogger(__name__)


@dataclass
class IngestionStats:
    """Accepted/dropped counters for one adapter run."""
    accepted: int = 0
    dropped: Counter = field(default_factory=Counter)

    def drop(self, reason: str):
        self.dropped[reason] += 1

    @property
    def dropped_total(self) -> int:
        return sum(self.dropped.values())

    def merge(self, other: "IngestionStats") -> "IngestionStats":
        merged = IngestionStats(accepted=self.accepted + other.accepted)
        merged.dropped = self.dropped + other.dropped
        return merged

    def to_dict(self) -> Dict[str, Any]:
        return {"accepted": self.accepted, "dropped": dict(self.dropped)}


def _require(data: Dict[str, Any], key: str, reason: str) -> Any:
    value = data.get(key)
    if value is None or value == "":
        raise MalformedRecordError(reason, f"missing {key}")
    return value


def _timestamp_ms(seconds: Any) -> int:
    if isinstance(seconds, bool) or not isinstance(seconds, (int, float)):
        raise MalformedRecordError("missing_timestamp", f"bad timestamp {seconds!r}")
    if isinstance(seconds, float) and not math.isfinite(seconds):
        raise MalformedRecordError("missing_timestamp", f"bad timestamp {seconds!r}")
    return int(seconds * 1000)


def _decimals(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        decimals = int(value)
    except (TypeError, ValueError, OverflowError):
        return None
    return decimals if decimals >= 0 else None


def _raw_from_ui(ui_amount: Any, decimals: int) -> int:
    """Scale a UI amount back to base units."""
    try:
        scaled = Decimal(str(ui_amount)).scaleb(decimals)
    except (ArithmeticError, ValueError):
        raise MalformedRecordError("bad_amount", f"bad ui amount {ui_amount!r}")
    # JSON decoders accept NaN and Infinity
    if not scaled.is_finite() or scaled < 0:
        raise MalformedRecordError("bad_amount", f"bad ui amount {ui_amount!r}")
    return int(scaled.to_integral_value())


def _raw_amount(value: Any) -> int:
    raw = parse_raw_amount(value)
    if raw is None or raw < 0:
        raise MalformedRecordError("bad_amount", f"bad raw amount {value!r}")
    return raw


# ---------------------------------------------------------------------------
# Helius Enhanced Transactions
# ---------------------------------------------------------------------------

def _helius_known_decimals(tx: Dict[str, Any]) -> Dict[str, int]:
    """Collect mint decimals from accountData balance changes."""
    known: Dict[str, int] = {}
    for account in tx.get("accountData") or []:
        for change in account.get("tokenBalanceChanges") or []:
            raw = change.get("rawTokenAmount") or {}
            decimals = _decimals(raw.get("decimals"))
            mint = change.get("mint")
            if mint and decimals is not None:
                known[mint] = decimals
    return known


def _helius_token_transfer(
    transfer: Dict[str, Any],
    signature: str,
    timestamp_ms: int,
    known_decimals: Dict[str, int],
    fee_payer: Optional[str] = None,
) -> RawTransferRecord:
    mint = _require(transfer, "mint", "missing_mint")

    raw_token_amount = transfer.get("rawTokenAmount")
    if isinstance(raw_token_amount, dict):
        raw = _raw_amount(raw_token_amount.get("tokenAmount"))
        decimals = _decimals(raw_token_amount.get("decimals"))
    else:
        decimals = _decimals(transfer.get("decimals"))
        if decimals is None:
            decimals = known_decimals.get(mint)
        if decimals is None and mint == NATIVE_MINT:
            decimals = NATIVE_DECIMALS
        if decimals is None:
            raise MalformedRecordError("missing_decimals", f"no decimals for {mint}")
        raw = _raw_from_ui(transfer.get("tokenAmount"), decimals)

    if decimals is None:
        raise MalformedRecordError("missing_decimals", f"no decimals for {mint}")

    return RawTransferRecord(
        signature=signature,
        timestamp_ms=timestamp_ms,
        mint=mint,
        from_account=transfer.get("fromUserAccount") or None,
        to_account=transfer.get("toUserAccount") or None,
        raw_amount=raw,
        decimals=decimals,
        fee_payer=fee_payer,
    )


def _helius_native_transfer(
    transfer: Dict[str, Any],
    signature: str,
    timestamp_ms: int,
    fee_payer: Optional[str] = None,
) -> RawTransferRecord:
    return RawTransferRecord(
        signature=signature,
        timestamp_ms=timestamp_ms,
        mint=NATIVE_MINT,
        from_account=transfer.get("fromUserAccount") or None,
        to_account=transfer.get("toUserAccount") or None,
        raw_amount=_raw_amount(transfer.get("amount")),
        decimals=NATIVE_DECIMALS,
        fee_payer=fee_payer,
    )


def _helius_swap_side(native: Optional[Dict[str, Any]], tokens: List[Dict[str, Any]], pick_last: bool):
    """Return (owner, mint, raw_amount, decimals) for one side of a swap event."""
    if native and parse_raw_amount(native.get("amount")):
        return native.get("account"), NATIVE_MINT, _raw_amount(native.get("amount")), NATIVE_DECIMALS
    if not tokens:
        return None
    token = tokens[-1] if pick_last else tokens[0]
    raw = token.get("rawTokenAmount") or {}
    return (
        token.get("userAccount"),
        _require(token, "mint", "missing_mint"),
        _raw_amount(raw.get("tokenAmount")),
        _decimals(raw.get("decimals")),
    )


def _helius_swap_leg(swap: Dict[str, Any], signature: str, timestamp_ms: int, fee_payer: Optional[str]) -> SwapLeg:
    side_in = _helius_swap_side(swap.get("nativeInput"), swap.get("tokenInputs") or [], pick_last=False)
    side_out = _helius_swap_side(swap.get("nativeOutput"), swap.get("tokenOutputs") or [], pick_last=True)
    if side_in is None or side_out is None:
        raise MalformedRecordError("malformed_swap", "swap event lacks an input or output side")

    owner = side_in[0] or side_out[0] or fee_payer
    if not owner:
        raise MalformedRecordError("missing_owner", "swap event has no owner")

    return SwapLeg(
        signature=signature,
        timestamp_ms=timestamp_ms,
        owner=owner,
        token_in=side_in[1],
        token_out=side_out[1],
        amount_in_raw=side_in[2],
        amount_out_raw=side_out[2],
        decimals_in=side_in[3],
        decimals_out=side_out[3],
    )


def parse_helius_transactions(
    txs: Iterable[Dict[str, Any]],
) -> Tuple[List[RawTransferRecord], List[SwapLeg], IngestionStats]:
    """
    Map Helius enhanced transactions into transfers and router legs.

    Returns:
        (transfers, swap_legs, stats)
    """
    transfers: List[RawTransferRecord] = []
    legs: List[SwapLeg] = []
    stats = IngestionStats()

    for tx in txs:
        if not isinstance(tx, dict):
            stats.drop("not_an_object")
            continue
        try:
            signature = _require(tx, "signature", "missing_signature")
            timestamp_ms = _timestamp_ms(tx.get("timestamp"))
        except MalformedRecordError as e:
            stats.drop(e.reason)
            continue

        known_decimals = _helius_known_decimals(tx)
        fee_payer = tx.get("feePayer") or None

        for native in tx.get("nativeTransfers") or []:
            try:
                transfers.append(_helius_native_transfer(native, signature, timestamp_ms, fee_payer))
                stats.accepted += 1
            except MalformedRecordError as e:
                stats.drop(e.reason)

        for token in tx.get("tokenTransfers") or []:
            try:
                transfers.append(_helius_token_transfer(token, signature, timestamp_ms, known_decimals, fee_payer))
                stats.accepted += 1
            except MalformedRecordError as e:
                stats.drop(e.reason)

        swap = (tx.get("events") or {}).get("swap")
        if swap:
            try:
                legs.append(_helius_swap_leg(swap, signature, timestamp_ms, tx.get("feePayer")))
                stats.accepted += 1
            except MalformedRecordError as e:
                stats.drop(e.reason)

    if stats.dropped:
        logger.debug(f"Helius ingestion dropped {stats.dropped_total} records: {dict(stats.dropped)}")
    return transfers, legs, stats


def earliest_fee_payer(txs: Iterable[Dict[str, Any]]) -> Optional[str]:
    """
    Fee payer of the oldest transaction in a newest-first Helius history.

    For a mint's full history that is the creation transaction, so the
    result is the deployer. Timestamp ties go to the later list position.
    """
    earliest: Optional[Tuple[int, str]] = None
    for tx in txs:
        if not isinstance(tx, dict) or not tx.get("feePayer"):
            continue
        try:
            timestamp_ms = _timestamp_ms(tx.get("timestamp"))
        except MalformedRecordError:
            continue
        if earliest is None or timestamp_ms <= earliest[0]:
            earliest = (timestamp_ms, tx["feePayer"])
    return earliest[1] if earliest else None


# ---------------------------------------------------------------------------
# Solscan DeFi activities
# ---------------------------------------------------------------------------

def _solscan_swap_leg(activity: Dict[str, Any], wallet: str) -> SwapLeg:
    signature = _require(activity, "trans_id", "missing_signature")
    timestamp_ms = _timestamp_ms(activity.get("block_time"))

    routers = activity.get("routers")
    if isinstance(routers, dict):
        first = last = routers
    elif isinstance(routers, list) and routers:
        first, last = routers[0], routers[-1]
    else:
        raise MalformedRecordError("malformed_swap", "activity has no routers")

    decimals_in = _decimals(first.get("token1_decimals"))
    decimals_out = _decimals(last.get("token2_decimals"))
    if decimals_in is None or decimals_out is None:
        raise MalformedRecordError("missing_decimals", "router leg without decimals")

    return SwapLeg(
        signature=signature,
        timestamp_ms=timestamp_ms,
        owner=activity.get("from_address") or wallet,
        token_in=_require(first, "token1", "missing_mint"),
        token_out=_require(last, "token2", "missing_mint"),
        amount_in_raw=_raw_amount(first.get("amount1")),
        amount_out_raw=_raw_amount(last.get("amount2")),
        decimals_in=decimals_in,
        decimals_out=decimals_out,
    )


def parse_solscan_activities(
    activities: Iterable[Dict[str, Any]],
    wallet: str,
) -> Tuple[List[SwapLeg], IngestionStats]:
    """Map Solscan v2 swap activities for `wallet` into SwapLegs."""
    legs: List[SwapLeg] = []
    stats = IngestionStats()
    for activity in activities:
        if not isinstance(activity, dict):
            stats.drop("not_an_object")
            continue
        try:
            legs.append(_solscan_swap_leg(activity, wallet))
            stats.accepted += 1
        except MalformedRecordError as e:
            stats.drop(e.reason)

    if stats.dropped:
        logger.debug(f"Solscan ingestion dropped {stats.dropped_total} activities: {dict(stats.dropped)}")
    return legs, stats


# ---------------------------------------------------------------------------
# Ownership providers
# ---------------------------------------------------------------------------

def parse_helius_token_accounts(
    accounts: Iterable[Dict[str, Any]],
    decimals: Optional[int],
) -> Tuple[List[OwnershipRecord], IngestionStats]:
    """
    Map DAS getTokenAccounts entries into OwnershipRecords.

    DAS omits decimals per account; the caller supplies the mint's decimals
    from getTokenSupply. Without them every record is dropped.
    """
    records: List[OwnershipRecord] = []
    stats = IngestionStats()
    for account in accounts:
        try:
            if decimals is None:
                raise MalformedRecordError("missing_decimals", "mint decimals unknown")
            records.append(OwnershipRecord(
                token_account=_require(account, "address", "missing_account"),
                owner=_require(account, "owner", "missing_owner"),
                raw_amount=_raw_amount(account.get("amount")),
                decimals=decimals,
            ))
            stats.accepted += 1
        except MalformedRecordError as e:
            stats.drop(e.reason)
    return records, stats


def parse_solscan_holders(items: Iterable[Dict[str, Any]]) -> Tuple[List[OwnershipRecord], IngestionStats]:
    """Map Solscan /token/holders items into OwnershipRecords."""
    records: List[OwnershipRecord] = []
    stats = IngestionStats()
    for item in items:
        try:
            decimals = _decimals(item.get("decimals"))
            if decimals is None:
                raise MalformedRecordError("missing_decimals", "holder without decimals")
            records.append(OwnershipRecord(
                token_account=_require(item, "address", "missing_account"),
                owner=_require(item, "owner", "missing_owner"),
                raw_amount=_raw_amount(item.get("amount")),
                decimals=decimals,
            ))
            stats.accepted += 1
        except MalformedRecordError as e:
            stats.drop(e.reason)
    return records, stats
