"""Core analytics modules for Lens."""

from .cache import ResultCache
from .classifier import classify
from .engine import AnalyticsEngine, AnalyticsReport, SingleFlight
from .errors import (
    ConfigurationError,
    IncompletePaginationError,
    LensError,
    MalformedRecordError,
    OutOfOrderEventError,
    SourceError,
    ValidationError,
)
from .holders import census
from .ledger import apply, replay, unrealized_pnl
from .models import (
    AnalyticsConfig,
    BuyerLabel,
    Position,
    SourceFailure,
    TradeEvent,
    TradeKind,
    TradeSource,
)
from .normalizer import normalize, normalize_mint
from .orchestrator import FetchOrchestrator, RequestSpec, RetryPolicy

__all__ = [
    "AnalyticsConfig",
    "AnalyticsEngine",
    "AnalyticsReport",
    "BuyerLabel",
    "ConfigurationError",
    "FetchOrchestrator",
    "IncompletePaginationError",
    "LensError",
    "MalformedRecordError",
    "OutOfOrderEventError",
    "Position",
    "RequestSpec",
    "ResultCache",
    "RetryPolicy",
    "SingleFlight",
    "SourceError",
    "SourceFailure",
    "TradeEvent",
    "TradeKind",
    "TradeSource",
    "ValidationError",
    "apply",
    "census",
    "classify",
    "normalize",
    "normalize_mint",
    "replay",
    "unrealized_pnl",
]
