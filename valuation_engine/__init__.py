"""
valuation_engine — portfolio valuation and risk, recomputed and broadcast live.

Components:
- Instruments: Stock and Option value objects
- Market Context: immutable prices / rate / vols at one instant
- Pricing: Black-Scholes and Monte Carlo (Longstaff-Schwartz for American)
- Portfolio: single-writer aggregator, frozen states, snapshots
- Risk: VaR, expected shortfall, stress tests, performance ratios
- Broadcast: bounded pub/sub hub and the snapshot publisher thread
- Workers: cancellable valuation tasks on a thread pool
- Market Data: price source contract, static / random-walk / yfinance sources
- Ledger: BUY/SELL transactions folded into FIFO lots
- Service: the facade the web layer and CLI call
"""

from .errors import (
    ValuationError,
    ValidationError,
    InvalidInput,
    NotFound,
    InstrumentNotFound,
    PositionNotFound,
    InstrumentInUse,
    UnsupportedInstrument,
    ComputationError,
    UpstreamUnavailable,
    Cancelled,
    SubscriptionClosed,
    ConfigurationError,
)
from .config import EngineConfig
from .instruments import (
    Instrument,
    InstrumentType,
    Stock,
    Option,
    OptionType,
    ExerciseStyle,
    instrument_from_dict,
)
from .market_context import MarketContext
from .pricing import (
    Greeks,
    ValuationResult,
    BlackScholesModel,
    MonteCarloModel,
    black_scholes_price,
    black_scholes_greeks,
    implied_volatility,
    value,
)
from .portfolio import (
    Position,
    Portfolio,
    PortfolioState,
    PositionValuation,
    PortfolioSnapshot,
    PortfolioAggregator,
)
from .risk import (
    RiskEngine,
    RiskMetrics,
    PerformanceMetrics,
    StressKind,
    StressScenario,
    StressResult,
    DEFAULT_STRESS_SCENARIOS,
)
from .broadcast import BroadcastHub, Subscription, OverflowPolicy, SnapshotPublisher
from .workers import CancellationToken, ValuationTask, ValuationWorkerPool
from .market_data import (
    PriceSource,
    PriceQuote,
    StaticPriceSource,
    RandomWalkPriceSource,
    YFinancePriceSource,
    PricePoller,
)
from .ledger import Transaction, TransactionSide, Lot, TransactionLedger, compute_lots
from .service import ValuationService, MutationAck, PriceAck

__all__ = [
    # Errors
    "ValuationError", "ValidationError", "InvalidInput", "NotFound",
    "InstrumentNotFound", "PositionNotFound", "InstrumentInUse", "UnsupportedInstrument",
    "ComputationError", "UpstreamUnavailable", "Cancelled", "SubscriptionClosed",
    "ConfigurationError",
    # Config
    "EngineConfig",
    # Instruments
    "Instrument", "InstrumentType", "Stock", "Option", "OptionType",
    "ExerciseStyle", "instrument_from_dict",
    # Market Context
    "MarketContext",
    # Pricing
    "Greeks", "ValuationResult", "BlackScholesModel", "MonteCarloModel",
    "black_scholes_price", "black_scholes_greeks", "implied_volatility", "value",
    # Portfolio
    "Position", "Portfolio", "PortfolioState", "PositionValuation",
    "PortfolioSnapshot", "PortfolioAggregator",
    # Risk
    "RiskEngine", "RiskMetrics", "PerformanceMetrics", "StressKind",
    "StressScenario", "StressResult", "DEFAULT_STRESS_SCENARIOS",
    # Broadcast
    "BroadcastHub", "Subscription", "OverflowPolicy", "SnapshotPublisher",
    # Workers
    "CancellationToken", "ValuationTask", "ValuationWorkerPool",
    # Market Data
    "PriceSource", "PriceQuote", "StaticPriceSource", "RandomWalkPriceSource",
    "YFinancePriceSource", "PricePoller",
    # Ledger
    "Transaction", "TransactionSide", "Lot", "TransactionLedger", "compute_lots",
    # Service
    "ValuationService", "MutationAck", "PriceAck",
]
