"""
Portfolio Aggregator — the single-writer owner of positions and market state.

All mutations (positions, instruments, prices, rates, vols) go through one
``PortfolioAggregator`` and are serialised by its lock. Readers never see
the live structures: ``state()`` captures a frozen ``PortfolioState`` under
the lock and everything expensive (pricing, risk) runs on that copy outside
it.

Key concepts:
- Position: signed quantity of one registered instrument
- Portfolio: ordered, id-keyed position container
- PortfolioState: frozen point-in-time copy (positions, instruments, MarketContext)
- PositionValuation / PortfolioSnapshot: immutable valuation output
- PortfolioAggregator: the owner; optional listener sees every new state in
  mutation order
"""

import logging
import math
import threading
import uuid
import zlib
from collections import defaultdict
from dataclasses import dataclass, field, replace
from datetime import datetime
from types import MappingProxyType

import numpy as np

from .errors import (
    ComputationError,
    InstrumentInUse,
    InstrumentNotFound,
    InvalidInput,
    PositionNotFound,
    UnsupportedInstrument,
    UpstreamUnavailable,
    ValidationError,
)
from .instruments import Option, Stock, utcnow
from .market_context import MarketContext
from .pricing import Greeks, MonteCarloModel, default_model_for, value

logger = logging.getLogger(__name__)

# Failures that mark one position stale instead of failing the whole view.
_STALE_ERRORS = (UpstreamUnavailable, ComputationError, InvalidInput, UnsupportedInstrument)


def _check_number(name, x):
    if isinstance(x, bool) or not isinstance(x, (int, float)) or not math.isfinite(x):
        raise ValidationError(f"{name} must be a finite number, got {x!r}")
    return float(x)


def _check_cost(average_cost):
    if average_cost is None:
        return None
    average_cost = _check_number("average_cost", average_cost)
    if average_cost < 0:
        raise ValidationError(f"average_cost must be >= 0, got {average_cost}")
    return average_cost


# ── Position / Portfolio ──────────────────────────────────────────────────

@dataclass
class Position:
    """A signed quantity of one instrument. Negative quantity is a short."""
    instrument_id: str
    quantity: float
    average_cost: float = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    entry_time: datetime = field(default_factory=utcnow)

    @property
    def cost_basis(self):
        if self.average_cost is None:
            return None
        return self.quantity * self.average_cost

    def to_dict(self):
        return {
            "id": self.id,
            "instrument_id": self.instrument_id,
            "quantity": self.quantity,
            "average_cost": self.average_cost,
            "entry_time": self.entry_time.isoformat(),
        }

    def __repr__(self):
        return f"Position({self.id[:8]}, instrument={self.instrument_id[:8]}, qty={self.quantity})"


class Portfolio:
    """Ordered collection of positions with unique ids."""

    def __init__(self, name="Main Portfolio", base_currency="USD", id=None):
        self.id = id or str(uuid.uuid4())
        self.name = name
        self.base_currency = base_currency
        self._positions = {}  # id -> Position, insertion ordered

    def add(self, position):
        if position.id in self._positions:
            raise ValidationError(f"Duplicate position id {position.id}")
        self._positions[position.id] = position

    def get(self, position_id):
        try:
            return self._positions[position_id]
        except KeyError:
            raise PositionNotFound(f"Position {position_id} not found",
                                   position_id=position_id) from None

    def remove(self, position_id):
        position = self.get(position_id)
        del self._positions[position_id]
        return position

    def prune_zero(self):
        """Drop zero-quantity positions. Returns how many were removed."""
        zero = [pid for pid, p in self._positions.items() if p.quantity == 0]
        for pid in zero:
            del self._positions[pid]
        return len(zero)

    def references(self, instrument_id):
        return any(p.instrument_id == instrument_id for p in self._positions.values())

    @property
    def positions(self):
        return list(self._positions.values())

    def __len__(self):
        return len(self._positions)

    def __contains__(self, position_id):
        return position_id in self._positions

    def __repr__(self):
        return f"Portfolio({self.name!r}, {len(self)} positions)"


# ── Frozen views ──────────────────────────────────────────────────────────

@dataclass(frozen=True)
class PortfolioState:
    """Point-in-time copy of everything needed to value the portfolio."""
    version: int
    portfolio_id: str
    portfolio_name: str
    currency: str
    positions: tuple
    instruments: MappingProxyType
    context: MarketContext
    seed: int = None  # base entropy for unseeded Monte Carlo valuations
    captured_at: datetime = field(default_factory=utcnow)

    def instrument_for(self, position):
        return self.instruments.get(position.instrument_id)


@dataclass(frozen=True)
class PositionValuation:
    position_id: str
    instrument_id: str
    symbol: str
    instrument_type: str
    underlying: str
    quantity: float
    unit_value: float
    market_value: float
    weight: float = 0.0  # percent of portfolio value
    average_cost: float = None
    pnl: float = None
    pnl_pct: float = None
    greeks: Greeks = None
    model: str = None
    standard_error: float = None
    stale: bool = False
    stale_reason: str = None

    def to_dict(self):
        return {
            "position_id": self.position_id,
            "instrument_id": self.instrument_id,
            "symbol": self.symbol,
            "instrument_type": self.instrument_type,
            "underlying": self.underlying,
            "quantity": self.quantity,
            "unit_value": self.unit_value,
            "market_value": self.market_value,
            "weight": self.weight,
            "average_cost": self.average_cost,
            "pnl": self.pnl,
            "pnl_pct": self.pnl_pct,
            "greeks": self.greeks.to_dict() if self.greeks else None,
            "model": self.model,
            "standard_error": self.standard_error,
            "stale": self.stale,
            "stale_reason": self.stale_reason,
        }


@dataclass(frozen=True)
class PortfolioSnapshot:
    """Immutable valuation of one PortfolioState. Never mutated after publish."""
    sequence: int
    version: int
    timestamp: datetime
    portfolio_id: str
    portfolio_name: str
    currency: str
    total_value: float
    positions: tuple
    greeks: Greeks
    exposure_by_type: MappingProxyType
    exposure_by_underlying: MappingProxyType
    stale_positions: tuple = ()

    @property
    def total_pnl(self):
        return math.fsum(p.pnl for p in self.positions if p.pnl is not None)

    def position(self, position_id):
        for p in self.positions:
            if p.position_id == position_id:
                return p
        return None

    def with_sequence(self, sequence):
        return replace(self, sequence=sequence)

    def to_dict(self):
        return {
            "sequence": self.sequence,
            "version": self.version,
            "timestamp": self.timestamp.isoformat(),
            "portfolio_id": self.portfolio_id,
            "portfolio_name": self.portfolio_name,
            "currency": self.currency,
            "portfolio_value": self.total_value,
            "total_pnl": self.total_pnl,
            "positions": [p.to_dict() for p in self.positions],
            "greeks": self.greeks.to_dict(),
            "exposures": {
                "by_instrument_type": dict(self.exposure_by_type),
                "by_underlying": dict(self.exposure_by_underlying),
            },
            "stale_positions": list(self.stale_positions),
        }


# ── PortfolioAggregator ───────────────────────────────────────────────────

class PortfolioAggregator:
    """
    Owner of the instrument registry, positions and market state.

    Parameters
    ----------
    name, base_currency : portfolio identity
    risk_free_rate      : initial continuously-compounded rate
    european_model      : model for stocks and European options (Black-Scholes)
    american_model      : model for American options (Monte Carlo)
    seed                : entropy for unseeded Monte Carlo draws; every
                          captured state reuses it, so revaluing one state
                          (base or shocked) sees the same paths
    listener            : callable(PortfolioState), invoked inside the writer
                          lock after every mutation
    """

    def __init__(self, name="Main Portfolio", base_currency="USD", risk_free_rate=0.0,
                 european_model=None, american_model=None, listener=None,
                 seed=None):
        self._lock = threading.RLock()
        self._portfolio = Portfolio(name=name, base_currency=base_currency)
        self._instruments = {}  # id -> Instrument, insertion ordered
        self._prices = {}
        self._vols = {}
        self._dividend_yields = {}
        self._rate = risk_free_rate
        self._version = 0
        self._european_model = european_model
        self._american_model = american_model
        self.listener = listener
        self._seed = np.random.SeedSequence(seed).entropy

    # ── Mutation plumbing ────────────────────────────────────────────────

    def _mutated(self, what):
        self._version += 1
        logger.debug(f"Portfolio {self._portfolio.name} v{self._version}: {what}")
        if self.listener is not None:
            self.listener(self._capture())

    def _capture(self):
        pruned = self._portfolio.prune_zero()
        if pruned:
            logger.debug(f"Pruned {pruned} zero-quantity position(s)")
        context = MarketContext(
            prices=self._prices,
            risk_free_rate=self._rate,
            as_of=utcnow(),
            volatilities=self._vols,
            dividend_yields=self._dividend_yields,
        )
        return PortfolioState(
            version=self._version,
            portfolio_id=self._portfolio.id,
            portfolio_name=self._portfolio.name,
            currency=self._portfolio.base_currency,
            positions=tuple(replace(p) for p in self._portfolio.positions),
            instruments=MappingProxyType(dict(self._instruments)),
            context=context,
            seed=self._seed,
        )

    def republish(self):
        """Hand the listener the current state without mutating anything."""
        with self._lock:
            if self.listener is not None:
                self.listener(self._capture())

    # ── Instruments ──────────────────────────────────────────────────────

    def register_instrument(self, instrument):
        with self._lock:
            if instrument.id in self._instruments:
                raise ValidationError(f"Instrument {instrument.id} already registered",
                                      instrument_id=instrument.id)
            self._instruments[instrument.id] = instrument
            if isinstance(instrument, Stock):
                if instrument.volatility > 0:
                    self._vols.setdefault(instrument.symbol, instrument.volatility)
                if instrument.dividend_yield:
                    self._dividend_yields.setdefault(instrument.symbol, instrument.dividend_yield)
            logger.info(f"Registered {instrument.instrument_type.value} {instrument.symbol} "
                        f"({instrument.id})")
            self._mutated(f"register {instrument.symbol}")
            return instrument

    def remove_instrument(self, instrument_id):
        with self._lock:
            if instrument_id not in self._instruments:
                raise InstrumentNotFound(f"Instrument {instrument_id} not found",
                                         instrument_id=instrument_id)
            if self._portfolio.references(instrument_id):
                raise InstrumentInUse(
                    f"Instrument {instrument_id} is held by open positions",
                    instrument_id=instrument_id,
                )
            instrument = self._instruments.pop(instrument_id)
            self._mutated(f"remove instrument {instrument.symbol}")
            return instrument

    def find_instrument(self, ref):
        """Resolve an instrument id, falling back to the first one registered for a symbol."""
        with self._lock:
            if ref in self._instruments:
                return self._instruments[ref]
            for instrument in self._instruments.values():
                if instrument.symbol == ref:
                    return instrument
        raise InstrumentNotFound(f"No instrument with id or symbol {ref!r}", ref=ref)

    def instruments(self):
        with self._lock:
            return list(self._instruments.values())

    # ── Positions ────────────────────────────────────────────────────────

    def add_position(self, ref, quantity, average_cost=None):
        quantity = _check_number("quantity", quantity)
        average_cost = _check_cost(average_cost)
        with self._lock:
            instrument = self.find_instrument(ref)
            position = Position(instrument_id=instrument.id, quantity=quantity,
                                average_cost=average_cost)
            self._portfolio.add(position)
            self._mutated(f"add {quantity} {instrument.symbol}")
            return position

    def update_position(self, position_id, quantity, average_cost=None):
        quantity = _check_number("quantity", quantity)
        average_cost = _check_cost(average_cost)
        with self._lock:
            position = self._portfolio.get(position_id)
            position.quantity = quantity
            if average_cost is not None:
                position.average_cost = average_cost
            self._mutated(f"update {position_id} -> {quantity}")
            return replace(position)

    def remove_position(self, position_id):
        with self._lock:
            position = self._portfolio.remove(position_id)
            self._mutated(f"remove {position_id}")
            return position

    def get_position(self, position_id):
        with self._lock:
            position = self._portfolio.get(position_id)
            if position.quantity == 0:
                raise PositionNotFound(f"Position {position_id} not found",
                                       position_id=position_id)
            return replace(position)

    def positions(self):
        return list(self.state().positions)

    # ── Market state ─────────────────────────────────────────────────────

    def update_price(self, symbol, price):
        price = _check_number("price", price)
        if price <= 0:
            raise ValidationError(f"Price for {symbol} must be positive, got {price}")
        with self._lock:
            self._prices[symbol] = price
            self._mutated(f"price {symbol}={price}")

    def update_prices(self, prices):
        """Apply several quotes as one mutation."""
        checked = {}
        for symbol, price in prices.items():
            price = _check_number("price", price)
            if price <= 0:
                raise ValidationError(f"Price for {symbol} must be positive, got {price}")
            checked[symbol] = price
        if not checked:
            return
        with self._lock:
            self._prices.update(checked)
            self._mutated(f"prices {sorted(checked)}")

    def set_risk_free_rate(self, rate):
        rate = _check_number("risk_free_rate", rate)
        with self._lock:
            self._rate = rate
            self._mutated(f"rate={rate}")

    def set_volatility(self, symbol, vol):
        vol = _check_number("volatility", vol)
        if vol < 0:
            raise ValidationError(f"Volatility for {symbol} must be >= 0, got {vol}")
        with self._lock:
            self._vols[symbol] = vol
            self._mutated(f"vol {symbol}={vol}")

    def set_dividend_yield(self, symbol, dividend_yield):
        dividend_yield = _check_number("dividend_yield", dividend_yield)
        with self._lock:
            self._dividend_yields[symbol] = dividend_yield
            self._mutated(f"dividend yield {symbol}={dividend_yield}")

    def symbols(self):
        """Underlying symbols that need a price: registered stocks and option underlyings."""
        with self._lock:
            return sorted({inst.pricing_symbol for inst in self._instruments.values()})

    # ── Reads ────────────────────────────────────────────────────────────

    def state(self):
        with self._lock:
            return self._capture()

    @property
    def version(self):
        with self._lock:
            return self._version

    @property
    def risk_free_rate(self):
        with self._lock:
            return self._rate

    @property
    def portfolio(self):
        return self._portfolio

    def model_for(self, instrument):
        return default_model_for(instrument, self._european_model, self._american_model)

    @staticmethod
    def _state_rng(state, position):
        """Generator fixed by (state seed, position); common random numbers across versions."""
        if state.seed is None:
            return None
        return np.random.default_rng([state.seed, zlib.crc32(position.id.encode())])

    def value_position(self, state, position, context=None, rng=None, cancel=None):
        """Value one position of ``state``; failures come back as a stale valuation."""
        ctx = context or state.context
        instrument = state.instrument_for(position)
        if instrument is None:
            return PositionValuation(
                position_id=position.id, instrument_id=position.instrument_id,
                symbol="?", instrument_type="unknown", underlying=None,
                quantity=position.quantity, unit_value=0.0, market_value=0.0,
                average_cost=position.average_cost,
                stale=True, stale_reason="instrument not registered",
            )

        underlying = instrument.pricing_symbol
        model = self.model_for(instrument)
        if rng is None and isinstance(model, MonteCarloModel) and model.seed is None:
            rng = self._state_rng(state, position)
        try:
            result = value(model, instrument, ctx, rng=rng, cancel=cancel)
        except _STALE_ERRORS as e:
            logger.warning(f"Position {position.id} ({instrument.symbol}) is stale: {e}")
            return PositionValuation(
                position_id=position.id, instrument_id=instrument.id,
                symbol=instrument.symbol, instrument_type=instrument.instrument_type.value,
                underlying=underlying, quantity=position.quantity,
                unit_value=0.0, market_value=0.0, average_cost=position.average_cost,
                stale=True, stale_reason=str(e),
            )

        market_value = position.quantity * result.value
        pnl = pnl_pct = None
        cost = position.cost_basis
        if cost is not None:
            pnl = market_value - cost
            pnl_pct = pnl / abs(cost) * 100.0 if cost != 0 else 0.0

        return PositionValuation(
            position_id=position.id,
            instrument_id=instrument.id,
            symbol=instrument.symbol,
            instrument_type=instrument.instrument_type.value,
            underlying=underlying,
            quantity=position.quantity,
            unit_value=result.value,
            market_value=market_value,
            average_cost=position.average_cost,
            pnl=pnl,
            pnl_pct=pnl_pct,
            greeks=result.greeks.scaled(position.quantity) if result.greeks else None,
            model=result.model,
            standard_error=result.standard_error,
        )

    def value_state(self, state, context=None, rng=None, cancel=None):
        """Value a captured state into a PortfolioSnapshot (sequence 0)."""
        ctx = context or state.context
        valuations = [
            self.value_position(state, p, ctx, rng=rng, cancel=cancel)
            for p in state.positions
        ]
        total = math.fsum(v.market_value for v in valuations)

        weighted = []
        greeks = Greeks()
        by_type = defaultdict(float)
        by_underlying = defaultdict(float)
        for v in valuations:
            weight = v.market_value / total * 100.0 if total != 0 else 0.0
            weighted.append(replace(v, weight=weight))
            if v.stale:
                continue
            if v.greeks is not None:
                greeks = greeks + v.greeks
            by_type[v.instrument_type] += v.market_value
            by_underlying[v.underlying] += v.market_value

        return PortfolioSnapshot(
            sequence=0,
            version=state.version,
            timestamp=ctx.as_of,
            portfolio_id=state.portfolio_id,
            portfolio_name=state.portfolio_name,
            currency=state.currency,
            total_value=total,
            positions=tuple(weighted),
            greeks=greeks,
            exposure_by_type=MappingProxyType(dict(by_type)),
            exposure_by_underlying=MappingProxyType(dict(by_underlying)),
            stale_positions=tuple(v.position_id for v in weighted if v.stale),
        )

    def snapshot(self, context=None):
        return self.value_state(self.state(), context)

    def total_value(self, market_context=None):
        """Sum of quantity * per-unit value over all non-stale positions."""
        return self.snapshot(market_context).total_value

    def option_positions(self, state):
        """(position, option) pairs in ``state``."""
        return [
            (p, state.instrument_for(p)) for p in state.positions
            if isinstance(state.instrument_for(p), Option)
        ]

    def __repr__(self):
        return f"PortfolioAggregator({self._portfolio.name!r}, v{self.version})"
