"""
Data models for trade reconstruction, holder census and buyer classification.

This module defines the canonical records that flow between the engine's
stages: raw transfers and router legs from the ingestion layer, typed trade
events from the normalizer, per-pair positions from the ledger, and the
holder/buyer census records.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from .decimal_utils import ZERO, normalize_raw_amount, to_decimal
from .errors import ConfigurationError

# Native asset sentinel. Wrapped SOL shares the mint, so wSOL legs count as native.
NATIVE_MINT = "So11111111111111111111111111111111111111112"
NATIVE_DECIMALS = 9


class TradeKind(Enum):
    """Trade direction from the wallet's point of view."""
    BUY = "BUY"
    SELL = "SELL"


class TradeSource(Enum):
    """How a trade event was derived."""
    DIRECT_TRANSFER = "DIRECT_TRANSFER"
    ROUTER_SWAP = "ROUTER_SWAP"
    AIRDROP = "AIRDROP"


class BuyerLabel(Enum):
    """Entry-timing label for a buyer of a mint."""
    SNIPER = "SNIPER"
    EARLY = "EARLY"
    ORGANIC = "ORGANIC"


class SniperRisk(Enum):
    """Dump risk from snipers who still hold their entry."""
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    UNKNOWN = "UNKNOWN"


class PositionStatus(Enum):
    """Lifecycle state of a (wallet, mint) position."""
    OPEN = "OPEN"
    CLOSED = "CLOSED"
    ORPHAN = "ORPHAN"  # Sells seen with no tracked buy


@dataclass(frozen=True)
class RawTransferRecord:
    """One observed value movement inside a transaction."""
    signature: str
    timestamp_ms: int
    mint: str
    from_account: Optional[str]
    to_account: Optional[str]
    raw_amount: int
    decimals: Optional[int]
    fee_payer: Optional[str] = None  # Transaction signer, when the provider reports it

    @property
    def is_native(self) -> bool:
        return self.mint == NATIVE_MINT

    @property
    def amount(self) -> Optional[Decimal]:
        """Decimal-normalized amount, or None when decimals are unknown."""
        if self.decimals is None:
            return None
        return normalize_raw_amount(self.raw_amount, self.decimals)


@dataclass(frozen=True)
class SwapLeg:
    """
    Router-provided pairing of the two sides of one atomic swap.

    `owner` is the wallet that spent `token_in` and received `token_out`.
    """
    signature: str
    timestamp_ms: int
    owner: str
    token_in: str
    token_out: str
    amount_in_raw: int
    amount_out_raw: int
    decimals_in: Optional[int]
    decimals_out: Optional[int]

    @property
    def amount_in(self) -> Optional[Decimal]:
        if self.decimals_in is None:
            return None
        return normalize_raw_amount(self.amount_in_raw, self.decimals_in)

    @property
    def amount_out(self) -> Optional[Decimal]:
        if self.decimals_out is None:
            return None
        return normalize_raw_amount(self.amount_out_raw, self.decimals_out)


@dataclass(frozen=True)
class TradeEvent:
    """
    Canonical unit consumed by the Position Ledger.

    `sol_amount` is in native-asset units. For token-to-token swaps the
    counter-asset is kept in `quote_mint`/`quote_amount` and `sol_amount` is 0.
    """
    wallet: str
    mint: str
    kind: TradeKind
    token_amount: Decimal
    sol_amount: Decimal
    timestamp_ms: int
    signature: str
    source: TradeSource
    quote_mint: Optional[str] = NATIVE_MINT
    quote_amount: Optional[Decimal] = None
    suspect: bool = False

    def __post_init__(self):
        """Convert string enums if needed."""
        if isinstance(self.kind, str):
            object.__setattr__(self, "kind", TradeKind(self.kind.upper()))
        if isinstance(self.source, str):
            object.__setattr__(self, "source", TradeSource(self.source.upper()))

    @property
    def price_per_token(self) -> Optional[Decimal]:
        """Native-asset price per token; None when undefined."""
        if self.token_amount == ZERO:
            return None
        if self.source != TradeSource.AIRDROP and self.quote_mint != NATIVE_MINT:
            return None
        return self.sol_amount / self.token_amount

    @property
    def sort_key(self):
        return (self.timestamp_ms, self.signature, self.mint, self.kind.value)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "wallet": self.wallet,
            "mint": self.mint,
            "kind": self.kind.value,
            "token_amount": str(self.token_amount),
            "sol_amount": str(self.sol_amount),
            "timestamp_ms": self.timestamp_ms,
            "signature": self.signature,
            "source": self.source.value,
            "quote_mint": self.quote_mint,
            "quote_amount": None if self.quote_amount is None else str(self.quote_amount),
            "suspect": self.suspect,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TradeEvent":
        quote_amount = data.get("quote_amount")
        return cls(
            wallet=data["wallet"],
            mint=data["mint"],
            kind=TradeKind(data["kind"]),
            token_amount=to_decimal(data["token_amount"]),
            sol_amount=to_decimal(data["sol_amount"]),
            timestamp_ms=int(data["timestamp_ms"]),
            signature=data["signature"],
            source=TradeSource(data["source"]),
            quote_mint=data.get("quote_mint"),
            quote_amount=None if quote_amount is None else to_decimal(quote_amount),
            suspect=bool(data.get("suspect", False)),
        )


@dataclass(frozen=True)
class Position:
    """
    Running cost-basis state for one (wallet, mint) pair.

    Invariants: remaining_tokens >= 0, cost_basis_total >= 0, and
    cost_basis_total == 0 whenever remaining_tokens == 0.
    """
    wallet: str
    mint: str
    remaining_tokens: Decimal = ZERO
    cost_basis_total: Decimal = ZERO
    realized_pnl: Decimal = ZERO
    realized_proceeds: Decimal = ZERO
    trade_count: int = 0

    # Extra bookkeeping for summaries
    tokens_bought: Decimal = ZERO
    sol_spent: Decimal = ZERO
    buy_count: int = 0
    sell_count: int = 0
    first_buy_ms: Optional[int] = None
    last_sell_ms: Optional[int] = None
    last_timestamp_ms: Optional[int] = None

    @property
    def average_cost(self) -> Decimal:
        if self.remaining_tokens == ZERO:
            return ZERO
        return self.cost_basis_total / self.remaining_tokens


@dataclass(frozen=True)
class OwnershipRecord:
    """One token account's balance as reported by an ownership provider."""
    token_account: str
    owner: Optional[str]
    raw_amount: int
    decimals: Optional[int]

    @property
    def amount(self) -> Optional[Decimal]:
        if self.decimals is None:
            return None
        return normalize_raw_amount(self.raw_amount, self.decimals)


@dataclass(frozen=True)
class HolderRecord:
    """Per-owner aggregate for a mint."""
    owner: str
    balance: Decimal
    percent_of_supply: Decimal
    token_accounts: int = 1
    excluded_from_concentration: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "owner": self.owner,
            "balance": str(self.balance),
            "percent_of_supply": str(self.percent_of_supply),
            "token_accounts": self.token_accounts,
            "excluded_from_concentration": self.excluded_from_concentration,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HolderRecord":
        return cls(
            owner=data["owner"],
            balance=to_decimal(data["balance"]),
            percent_of_supply=to_decimal(data["percent_of_supply"]),
            token_accounts=int(data.get("token_accounts", 1)),
            excluded_from_concentration=bool(data.get("excluded_from_concentration", False)),
        )


@dataclass
class HolderCensus:
    """Full ownership enumeration for a mint at a point in time."""
    mint: str
    holders: List[HolderRecord]
    total_holder_count: int
    top10_concentration_percent: Decimal
    total_supply: Decimal
    dust_dropped_count: int = 0
    malformed_dropped_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mint": self.mint,
            "holders": [h.to_dict() for h in self.holders],
            "total_holder_count": self.total_holder_count,
            "top10_concentration_percent": str(self.top10_concentration_percent),
            "total_supply": str(self.total_supply),
            "dust_dropped_count": self.dust_dropped_count,
            "malformed_dropped_count": self.malformed_dropped_count,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HolderCensus":
        return cls(
            mint=data["mint"],
            holders=[HolderRecord.from_dict(h) for h in data.get("holders", [])],
            total_holder_count=int(data["total_holder_count"]),
            top10_concentration_percent=to_decimal(data["top10_concentration_percent"]),
            total_supply=to_decimal(data["total_supply"]),
            dust_dropped_count=int(data.get("dust_dropped_count", 0)),
            malformed_dropped_count=int(data.get("malformed_dropped_count", 0)),
        )


@dataclass(frozen=True)
class BuyerClassification:
    """
    Entry-timing label for one wallet in a mint census.

    `is_holding` is None until a holder census has been matched against the
    wallet's purchases.
    """
    wallet: str
    first_buy_timestamp_ms: int
    rank: int
    label: BuyerLabel
    tokens_bought: Decimal = ZERO
    is_holding: Optional[bool] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "wallet": self.wallet,
            "first_buy_timestamp_ms": self.first_buy_timestamp_ms,
            "rank": self.rank,
            "label": self.label.value,
            "tokens_bought": str(self.tokens_bought),
            "is_holding": self.is_holding,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BuyerClassification":
        return cls(
            wallet=data["wallet"],
            first_buy_timestamp_ms=int(data["first_buy_timestamp_ms"]),
            rank=int(data["rank"]),
            label=BuyerLabel(data["label"]),
            tokens_bought=to_decimal(data.get("tokens_bought", "0")),
            is_holding=data.get("is_holding"),
        )


@dataclass
class BuyerCensus:
    """
    Buyer classification list and unique-buyer count for a mint.

    The sniper holding fields stay None (and `risk_level` UNKNOWN) when no
    holder census was available to check balances against.
    """
    mint: str
    launch_timestamp_ms: int
    classifications: List[BuyerClassification]
    unique_buyer_count: int
    deployer: Optional[str] = None
    snipers_holding: Optional[int] = None
    snipers_sold: Optional[int] = None
    risk_level: SniperRisk = SniperRisk.UNKNOWN

    @property
    def sniper_count(self) -> int:
        return sum(1 for c in self.classifications if c.label == BuyerLabel.SNIPER)

    @property
    def early_count(self) -> int:
        return sum(1 for c in self.classifications if c.label == BuyerLabel.EARLY)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mint": self.mint,
            "launch_timestamp_ms": self.launch_timestamp_ms,
            "classifications": [c.to_dict() for c in self.classifications],
            "unique_buyer_count": self.unique_buyer_count,
            "sniper_count": self.sniper_count,
            "early_count": self.early_count,
            "deployer": self.deployer,
            "snipers_holding": self.snipers_holding,
            "snipers_sold": self.snipers_sold,
            "risk_level": self.risk_level.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BuyerCensus":
        return cls(
            mint=data["mint"],
            launch_timestamp_ms=int(data["launch_timestamp_ms"]),
            classifications=[BuyerClassification.from_dict(c) for c in data.get("classifications", [])],
            unique_buyer_count=int(data["unique_buyer_count"]),
            deployer=data.get("deployer"),
            snipers_holding=data.get("snipers_holding"),
            snipers_sold=data.get("snipers_sold"),
            risk_level=SniperRisk(data.get("risk_level", SniperRisk.UNKNOWN.value)),
        )


@dataclass
class CacheEntry:
    """A computed result as held by the Result Cache."""
    key: str
    payload: Any
    computed_at_ms: int
    source_fingerprint: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "payload": self.payload,
            "computedAtMs": self.computed_at_ms,
            "sourceFingerprint": self.source_fingerprint,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CacheEntry":
        return cls(
            key=data["key"],
            payload=data["payload"],
            computed_at_ms=int(data["computedAtMs"]),
            source_fingerprint=str(data["sourceFingerprint"]),
        )


@dataclass
class SourceFailure:
    """One upstream fetch that failed after retries; isolated to its metric."""
    key: str
    source: str
    kind: str  # timeout, deadline, http, rate_limited, malformed, configuration, incomplete, error
    message: str
    attempts: int = 0
    status: Optional[int] = None
    metric: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "source": self.source,
            "metric": self.metric,
            "kind": self.kind,
            "message": self.message,
            "attempts": self.attempts,
            "status": self.status,
        }


@dataclass(frozen=True)
class AnalyticsConfig:
    """Thresholds and fetch policy consumed by the core."""

    # Normalizer outlier policy (whole tokens)
    suspect_token_ceiling: Decimal = field(default_factory=lambda: Decimal('1000000000'))

    # Holder census
    dust_threshold: Decimal = field(default_factory=lambda: Decimal('10'))
    concentration_excluded_owners: frozenset = frozenset()

    # Early-buyer classifier
    sniper_rank_ceiling: int = 10
    sniper_window_ms: int = 60_000
    early_window_ms: int = 900_000

    # Sniper holding status: a buyer still holds when their balance exceeds
    # this fraction of what they bought. A sniper sold ratio under the high
    # bound rates HIGH risk, one over the low bound rates LOW.
    holding_min_fraction: Decimal = field(default_factory=lambda: Decimal('0.1'))
    sniper_high_risk_sold_ratio: Decimal = field(default_factory=lambda: Decimal('0.3'))
    sniper_low_risk_sold_ratio: Decimal = field(default_factory=lambda: Decimal('0.8'))

    # Fetch policy
    max_attempts: int = 3
    backoff_seconds: float = 1.0
    fetch_timeout_seconds: float = 30.0
    price_timeout_seconds: float = 10.0
    wallet_tx_max_pages: int = 20
    holder_max_pages: int = 200

    def __post_init__(self):
        if self.sniper_rank_ceiling < 1:
            raise ConfigurationError("sniper_rank_ceiling must be >= 1")
        if self.sniper_window_ms < 0 or self.early_window_ms < 0:
            raise ConfigurationError("classification windows must be non-negative")
        if self.early_window_ms < self.sniper_window_ms:
            raise ConfigurationError("early_window_ms must be >= sniper_window_ms")
        if self.dust_threshold < ZERO:
            raise ConfigurationError("dust_threshold must be non-negative")
        if self.suspect_token_ceiling <= ZERO:
            raise ConfigurationError("suspect_token_ceiling must be positive")
        if self.holding_min_fraction < ZERO:
            raise ConfigurationError("holding_min_fraction must be non-negative")
        if not ZERO <= self.sniper_high_risk_sold_ratio <= self.sniper_low_risk_sold_ratio <= 1:
            raise ConfigurationError("sniper risk ratios must satisfy 0 <= high <= low <= 1")
        if self.max_attempts < 1:
            raise ConfigurationError("max_attempts must be >= 1")
