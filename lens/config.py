"""
Lens Configuration Module

Centralized configuration management for Lens.
Loads from environment variables with sensible defaults.
"""

import os
from decimal import Decimal
from pathlib import Path
from typing import Optional

from .core.cache import ResultCache
from .core.engine import AnalyticsEngine
from .core.helius_client import HeliusClient, resolve_helius_api_key
from .core.metrics import LensMetrics, get_metrics
from .core.models import AnalyticsConfig
from .core.price_client import JupiterPriceClient
from .core.redis_client import RedisClient
from .core.solscan_client import SolscanClient
from .core.sqlite_store import SqliteStore


class LensConfig:
    """Centralized Lens configuration."""

    # ========================================================================
    # API Keys
    # ========================================================================

    @staticmethod
    def get_helius_api_key() -> Optional[str]:
        """Get Helius API key from environment or RPC URL."""
        return resolve_helius_api_key()

    @staticmethod
    def get_solscan_api_key() -> Optional[str]:
        """Get Solscan Pro API key from environment."""
        return os.getenv("SOLSCAN_API_KEY")

    # ========================================================================
    # Provider Selection
    # ========================================================================

    @staticmethod
    def get_trade_source() -> str:
        """Trade-history provider: 'helius' or 'solscan'."""
        return os.getenv("LENS_TRADE_SOURCE", "helius").lower()

    @staticmethod
    def get_holder_source() -> str:
        """Ownership provider: 'helius' or 'solscan'."""
        return os.getenv("LENS_HOLDER_SOURCE", "helius").lower()

    # ========================================================================
    # Fetch Policy
    # ========================================================================

    @staticmethod
    def get_max_concurrent_requests() -> int:
        return int(os.getenv("LENS_MAX_CONCURRENT_REQUESTS", "4"))

    @staticmethod
    def get_fetch_timeout_seconds() -> float:
        return float(os.getenv("LENS_FETCH_TIMEOUT_SECONDS", "30"))

    @staticmethod
    def get_price_timeout_seconds() -> float:
        return float(os.getenv("LENS_PRICE_TIMEOUT_SECONDS", "10"))

    @staticmethod
    def get_fetch_max_attempts() -> int:
        return int(os.getenv("LENS_FETCH_MAX_ATTEMPTS", "3"))

    @staticmethod
    def get_fetch_backoff_seconds() -> float:
        """Base delay of the exponential backoff (1s, 2s, 4s...)."""
        return float(os.getenv("LENS_FETCH_BACKOFF_SECONDS", "1.0"))

    @staticmethod
    def get_wallet_tx_max_pages() -> int:
        return int(os.getenv("LENS_WALLET_TX_MAX_PAGES", "20"))

    @staticmethod
    def get_holder_max_pages() -> int:
        return int(os.getenv("LENS_HOLDER_MAX_PAGES", "200"))

    # ========================================================================
    # Analytics Thresholds
    # ========================================================================

    @staticmethod
    def get_suspect_token_ceiling() -> Decimal:
        """Whole-token amount above which a trade is flagged as mis-decoded."""
        return Decimal(os.getenv("LENS_SUSPECT_TOKEN_CEILING", "1000000000"))

    @staticmethod
    def get_dust_threshold() -> Decimal:
        """Owners holding less than this many tokens are dust."""
        return Decimal(os.getenv("LENS_DUST_THRESHOLD", "10"))

    @staticmethod
    def get_sniper_rank_ceiling() -> int:
        return int(os.getenv("LENS_SNIPER_RANK_CEILING", "10"))

    @staticmethod
    def get_sniper_window_seconds() -> int:
        return int(os.getenv("LENS_SNIPER_WINDOW_SECONDS", "60"))

    @staticmethod
    def get_early_window_seconds() -> int:
        return int(os.getenv("LENS_EARLY_WINDOW_SECONDS", "900"))

    @staticmethod
    def get_holding_min_fraction() -> Decimal:
        """A buyer still holds when their balance exceeds this fraction of what they bought."""
        return Decimal(os.getenv("LENS_HOLDING_MIN_FRACTION", "0.1"))

    @staticmethod
    def get_concentration_excluded_owners() -> frozenset:
        """Comma-separated owners (bonding curves, pool authorities) left out of top-10 concentration."""
        raw = os.getenv("LENS_CONCENTRATION_EXCLUDED_OWNERS", "")
        return frozenset(owner.strip() for owner in raw.split(",") if owner.strip())

    # ========================================================================
    # Result Cache
    # ========================================================================

    @staticmethod
    def get_cache_backend() -> str:
        """'sqlite', 'redis' or 'memory'."""
        return os.getenv("LENS_CACHE_BACKEND", "sqlite").lower()

    @staticmethod
    def get_db_path() -> str:
        return os.getenv("LENS_DB_PATH", str(Path("data") / "lens_cache.db"))

    @staticmethod
    def get_redis_url() -> str:
        return os.getenv("REDIS_URL", "redis://localhost:6379")

    @staticmethod
    def get_trade_cache_ttl_seconds() -> int:
        return int(os.getenv("LENS_TRADE_CACHE_TTL_SECONDS", "86400"))

    @staticmethod
    def get_census_cache_ttl_seconds() -> int:
        return int(os.getenv("LENS_CENSUS_CACHE_TTL_SECONDS", "60"))

    # ========================================================================
    # Observability
    # ========================================================================

    @staticmethod
    def get_metrics_enabled() -> bool:
        return os.getenv("LENS_METRICS_ENABLED", "false").lower() == "true"

    @staticmethod
    def get_metrics_port() -> int:
        return int(os.getenv("LENS_METRICS_PORT", "8082"))

    @staticmethod
    def get_log_level() -> str:
        return os.getenv("LENS_LOG_LEVEL", "INFO").upper()

    # ========================================================================
    # Builders
    # ========================================================================

    @staticmethod
    def build_analytics_config() -> AnalyticsConfig:
        """
        Immutable thresholds and fetch policy for the core.

        Raises:
            ConfigurationError: invalid threshold combination
        """
        return AnalyticsConfig(
            suspect_token_ceiling=LensConfig.get_suspect_token_ceiling(),
            dust_threshold=LensConfig.get_dust_threshold(),
            concentration_excluded_owners=LensConfig.get_concentration_excluded_owners(),
            sniper_rank_ceiling=LensConfig.get_sniper_rank_ceiling(),
            sniper_window_ms=LensConfig.get_sniper_window_seconds() * 1000,
            early_window_ms=LensConfig.get_early_window_seconds() * 1000,
            holding_min_fraction=LensConfig.get_holding_min_fraction(),
            max_attempts=LensConfig.get_fetch_max_attempts(),
            backoff_seconds=LensConfig.get_fetch_backoff_seconds(),
            fetch_timeout_seconds=LensConfig.get_fetch_timeout_seconds(),
            price_timeout_seconds=LensConfig.get_price_timeout_seconds(),
            wallet_tx_max_pages=LensConfig.get_wallet_tx_max_pages(),
            holder_max_pages=LensConfig.get_holder_max_pages(),
        )

    @staticmethod
    def build_cache_store():
        """Backing store for the Result Cache per LENS_CACHE_BACKEND."""
        backend = LensConfig.get_cache_backend()
        if backend == "redis":
            return RedisClient(LensConfig.get_redis_url(), enabled=True)
        if backend == "memory":
            return RedisClient(enabled=False)
        return SqliteStore(LensConfig.get_db_path())

    @staticmethod
    def validate_config() -> tuple[bool, list[str]]:
        """
        Validate the current configuration.

        Returns:
            Tuple of (is_valid, list_of_warnings)
        """
        warnings = []
        is_valid = True

        trade_source = LensConfig.get_trade_source()
        holder_source = LensConfig.get_holder_source()
        for name, value in (("LENS_TRADE_SOURCE", trade_source), ("LENS_HOLDER_SOURCE", holder_source)):
            if value not in ("helius", "solscan"):
                warnings.append(f"{name}={value} is not one of helius, solscan")
                is_valid = False

        if not LensConfig.get_helius_api_key():
            warnings.append("HELIUS_API_KEY is not set. Helius-backed metrics will report configuration failures.")
        if "solscan" in (trade_source, holder_source) and not LensConfig.get_solscan_api_key():
            warnings.append("SOLSCAN_API_KEY is not set but Solscan is selected as a source.")

        if LensConfig.get_cache_backend() not in ("sqlite", "redis", "memory"):
            warnings.append(f"Unknown LENS_CACHE_BACKEND {LensConfig.get_cache_backend()}; using sqlite")

        if LensConfig.get_max_concurrent_requests() < 1:
            warnings.append("LENS_MAX_CONCURRENT_REQUESTS must be at least 1")
            is_valid = False

        if LensConfig.get_cache_backend() == "sqlite":
            db_dir = Path(LensConfig.get_db_path()).parent
            if not db_dir.exists():
                warnings.append(f"Database directory does not exist: {db_dir}. It will be created on first run.")

        return is_valid, warnings

    @staticmethod
    def print_config_summary():
        """Print a summary of current configuration."""
        print("=" * 70)
        print("Lens Configuration Summary")
        print("=" * 70)
        print(f"Helius API Key: {'Set' if LensConfig.get_helius_api_key() else 'Not set'}")
        print(f"Solscan API Key: {'Set' if LensConfig.get_solscan_api_key() else 'Not set'}")
        print(f"Trade Source: {LensConfig.get_trade_source()}")
        print(f"Holder Source: {LensConfig.get_holder_source()}")
        print(f"Max Concurrent Requests: {LensConfig.get_max_concurrent_requests()}")
        print(f"Fetch Timeout: {LensConfig.get_fetch_timeout_seconds()}s (price {LensConfig.get_price_timeout_seconds()}s)")
        print(f"Fetch Attempts: {LensConfig.get_fetch_max_attempts()} (backoff {LensConfig.get_fetch_backoff_seconds()}s)")
        print(f"Dust Threshold: {LensConfig.get_dust_threshold()} tokens")
        print(f"Suspect Ceiling: {LensConfig.get_suspect_token_ceiling()} tokens")
        print(f"Sniper Rank Ceiling: {LensConfig.get_sniper_rank_ceiling()}")
        print(f"Sniper / Early Window: {LensConfig.get_sniper_window_seconds()}s / {LensConfig.get_early_window_seconds()}s")
        print(f"Holding Min Fraction: {LensConfig.get_holding_min_fraction()}")
        print(f"Cache Backend: {LensConfig.get_cache_backend()}")
        print(f"Database Path: {LensConfig.get_db_path()}")
        print("=" * 70)

        is_valid, warnings = LensConfig.validate_config()
        if warnings:
            print("\nConfiguration Warnings:")
            for warning in warnings:
                print(f"  - {warning}")
        else:
            print("\nConfiguration looks good!")


def create_engine(metrics: Optional[LensMetrics] = None) -> AnalyticsEngine:
    """Build an AnalyticsEngine wired from the environment."""
    config = LensConfig.build_analytics_config()
    metrics = metrics or get_metrics()
    cache = ResultCache(
        LensConfig.build_cache_store(),
        trade_ttl_seconds=LensConfig.get_trade_cache_ttl_seconds(),
        census_ttl_seconds=LensConfig.get_census_cache_ttl_seconds(),
        metrics=metrics,
    )
    max_concurrency = LensConfig.get_max_concurrent_requests()
    return AnalyticsEngine(
        config=config,
        cache=cache,
        helius=HeliusClient(LensConfig.get_helius_api_key()),
        solscan=SolscanClient(LensConfig.get_solscan_api_key(), max_concurrency=max_concurrency),
        prices=JupiterPriceClient(),
        metrics=metrics,
        trade_source=LensConfig.get_trade_source(),
        holder_source=LensConfig.get_holder_source(),
        max_concurrency=max_concurrency,
    )
