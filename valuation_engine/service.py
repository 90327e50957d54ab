"""
ValuationService — the contract the request layer (Django views, WebSocket
consumer, CLI) calls.

Wires the pieces together:

    price source --(PricePoller / refresh_prices)--+
    request layer --(mutations)--------------------+--> PortfolioAggregator
                                                          | listener (in lock)
                                                          v
    ValuationWorkerPool <-- SnapshotPublisher --> BroadcastHub --> Subscriptions

Reads (snapshot, risk, stress, performance) capture a frozen state and do
the heavy lifting on the worker pool.
"""

import concurrent.futures
import logging
import math
import re
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime

from .broadcast import BroadcastHub, SnapshotPublisher
from .config import EngineConfig
from .errors import (
    InstrumentNotFound,
    InvalidInput,
    PositionNotFound,
    UpstreamUnavailable,
    ValidationError,
)
from .instruments import ExerciseStyle, Instrument, Option, Stock, instrument_from_dict, utcnow
from .ledger import TransactionLedger
from .market_data import PricePoller, build_price_source
from .portfolio import PortfolioAggregator
from .pricing import BlackScholesModel, MonteCarloModel, value
from .risk import DEFAULT_STRESS_SCENARIOS, RiskEngine
from .workers import ValuationWorkerPool

logger = logging.getLogger(__name__)

_SYMBOL_RE = re.compile(r"^[A-Za-z][A-Za-z0-9.\-^=]{0,14}$")


@dataclass(frozen=True)
class MutationAck:
    position_id: str
    status: str  # added / updated / deleted
    version: int
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self):
        return {
            "position_id": self.position_id,
            "status": self.status,
            "version": self.version,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class PriceAck:
    symbol: str
    price: float
    version: int
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self):
        return {
            "symbol": self.symbol,
            "price": self.price,
            "status": "updated",
            "version": self.version,
            "timestamp": self.timestamp.isoformat(),
        }


class ValuationService:
    """
    Long-lived owner of one portfolio and its market state.

    Parameters
    ----------
    config       : EngineConfig (defaults to ``EngineConfig()``)
    price_source : PriceSource (defaults to the one named in ``config``)
    start        : start the snapshot publisher immediately
    """

    def __init__(self, config=None, price_source=None, start=True):
        self.config = config or EngineConfig()
        cfg = self.config

        self.pool = ValuationWorkerPool(max_workers=cfg.worker_threads)
        self.hub = BroadcastHub(maxsize=cfg.subscriber_queue_size, policy=cfg.overflow_policy)
        self.risk_engine = RiskEngine(
            confidence_levels=cfg.var_confidence_levels,
            horizons=cfg.var_horizons,
            n_simulations=cfg.risk_simulations,
            seed=cfg.risk_seed,
            risk_free_rate=cfg.risk_free_rate,
        )
        self.models = {
            "black_scholes": BlackScholesModel(),
            "monte_carlo": MonteCarloModel(
                n_paths=cfg.mc_paths, n_steps=cfg.mc_steps, seed=cfg.mc_seed, greeks=True,
            ),
        }
        self.aggregator = PortfolioAggregator(
            name=cfg.portfolio_name,
            base_currency=cfg.base_currency,
            risk_free_rate=cfg.risk_free_rate,
            european_model=self.models["black_scholes"],
            american_model=MonteCarloModel(
                n_paths=cfg.snapshot_mc_paths, n_steps=cfg.mc_steps,
                seed=cfg.mc_seed, greeks=True,
            ),
            seed=cfg.mc_seed,
        )
        self.price_source = price_source or build_price_source(cfg)

        self._history = deque(maxlen=cfg.history_length)  # (timestamp, total_value)
        self._history_lock = threading.Lock()
        self._register_lock = threading.Lock()
        self.ledger = TransactionLedger()
        self._ledger_lock = threading.Lock()
        self._lot_positions = {}  # BUY transaction id -> (symbol, position id, quantity)
        self._poller = None

        self.publisher = SnapshotPublisher(
            self.hub, self.aggregator.value_state, pool=self.pool, on_publish=self._record,
        )
        self.aggregator.listener = self.publisher.enqueue
        if start:
            self.start()

    # ── Lifecycle ────────────────────────────────────────────────────────

    def start(self):
        self.publisher.start()
        self.aggregator.republish()
        logger.info(f"Valuation service started for {self.config.portfolio_name!r} "
                    f"(source={self.price_source.name}, workers={self.config.worker_threads})")

    def close(self):
        self.stop_polling()
        self.publisher.flush(timeout=5.0)
        self.publisher.stop()
        self.hub.close()
        self.pool.shutdown(wait=False)
        logger.info("Valuation service stopped")

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def flush(self, timeout=None):
        """Block until every mutation so far has been published."""
        return self.publisher.flush(timeout)

    # ── Market data plumbing ─────────────────────────────────────────────

    def _ensure_market_data(self, symbol):
        """Seed price, vol and dividend yield for ``symbol`` from the price source if missing."""
        ctx = self.aggregator.state().context
        if not ctx.has_price(symbol):
            try:
                self.aggregator.update_price(symbol, self.price_source.fetch_price(symbol))
            except UpstreamUnavailable as e:
                logger.warning(f"No initial price for {symbol}: {e}")
        if symbol not in ctx.volatilities:
            vol = self.price_source.fetch_volatility(symbol)
            self.aggregator.set_volatility(
                symbol, vol if vol is not None else self.config.default_volatility,
            )
        if symbol not in ctx.dividend_yields:
            div = self.price_source.fetch_dividend_yield(symbol)
            if div:
                self.aggregator.set_dividend_yield(symbol, div)

    def _resolve_or_register(self, ref):
        try:
            return self.aggregator.find_instrument(ref)
        except InstrumentNotFound:
            if not (self.config.auto_register_equities and _SYMBOL_RE.match(str(ref))):
                raise
        with self._register_lock:
            try:
                return self.aggregator.find_instrument(ref)
            except InstrumentNotFound:
                return self.register_instrument(Stock(symbol=ref, currency=self.config.base_currency))

    # ── Instruments ──────────────────────────────────────────────────────

    def register_instrument(self, instrument):
        """Register an Instrument (or a payload dict) and seed its market data."""
        if not isinstance(instrument, Instrument):
            instrument = instrument_from_dict(instrument)
        self._ensure_market_data(instrument.pricing_symbol)
        return self.aggregator.register_instrument(instrument)

    def remove_instrument(self, ref):
        """Remove by id or symbol; InstrumentInUse while positions hold it."""
        instrument = self.aggregator.find_instrument(ref)
        return self.aggregator.remove_instrument(instrument.id)

    def instruments(self):
        return self.aggregator.instruments()

    # ── Positions ────────────────────────────────────────────────────────

    def add_position(self, symbol, quantity, average_cost=None):
        instrument = self._resolve_or_register(symbol)
        position = self.aggregator.add_position(instrument.id, quantity, average_cost)
        logger.info(f"Added position {position.id} {quantity} x {instrument.symbol}")
        return MutationAck(position.id, "added", self.aggregator.version)

    def update_position(self, position_id, quantity, average_cost=None):
        self.aggregator.update_position(position_id, quantity, average_cost)
        return MutationAck(position_id, "updated", self.aggregator.version)

    def remove_position(self, position_id):
        self.aggregator.remove_position(position_id)
        return MutationAck(position_id, "deleted", self.aggregator.version)

    def positions(self):
        return self.aggregator.positions()

    # ── Transactions ─────────────────────────────────────────────────────

    def record_transaction(self, side, symbol, quantity, price=None, timestamp=None):
        """
        Record a BUY or SELL and rebuild ``symbol``'s lot positions.

        A BUY opens a lot (one position at the BUY price); a SELL closes
        lots oldest first. Returns the recorded Transaction.
        """
        with self._ledger_lock:
            if str(side).upper() == "BUY":
                self._resolve_or_register(symbol)
            tx = self.ledger.record(side, symbol, quantity, price, timestamp)
            self._sync_lots([tx.symbol])
        return tx

    def remove_transaction(self, transaction_id):
        with self._ledger_lock:
            tx = self.ledger.remove(transaction_id)
            self._sync_lots([tx.symbol])
        return tx

    def clear_transactions(self):
        """Forget every transaction and close the positions they opened."""
        with self._ledger_lock:
            symbols = self.ledger.clear()
            self._sync_lots(symbols)
        return symbols

    def transactions(self, limit=None):
        return self.ledger.transactions(limit)

    def _sync_lots(self, symbols):
        """Add, resize or remove lot positions so they match the ledger's open lots."""
        open_lots = self.ledger.lots()
        for symbol in symbols:
            lots = {lot.transaction_id: lot for lot in open_lots.get(symbol, [])}

            for tid, (sym, position_id, _) in list(self._lot_positions.items()):
                if sym != symbol or tid in lots:
                    continue
                del self._lot_positions[tid]
                try:
                    self.remove_position(position_id)
                except PositionNotFound:
                    logger.warning(f"Lot position {position_id} ({symbol}) was already removed")

            for tid, lot in lots.items():
                known = self._lot_positions.get(tid)
                if known is not None and known[2] == lot.quantity:
                    continue
                if known is not None:
                    try:
                        self.update_position(known[1], lot.quantity, lot.price)
                        self._lot_positions[tid] = (symbol, known[1], lot.quantity)
                        continue
                    except PositionNotFound:
                        logger.warning(f"Lot position {known[1]} ({symbol}) was removed; reopening")
                ack = self.add_position(symbol, lot.quantity, lot.price)
                self._lot_positions[tid] = (symbol, ack.position_id, lot.quantity)

    # ── Prices ───────────────────────────────────────────────────────────

    def update_price(self, symbol, price):
        if not symbol:
            raise ValidationError("symbol is required")
        self.aggregator.update_price(symbol, price)
        return PriceAck(symbol, float(price), self.aggregator.version)

    def update_prices(self, prices):
        self.aggregator.update_prices(prices)
        return self.aggregator.version

    def set_risk_free_rate(self, rate):
        self.aggregator.set_risk_free_rate(rate)

    def refresh_prices(self):
        """Pull every needed symbol (and the source's risk-free rate) from the price source."""
        symbols = self.aggregator.symbols()
        prices = self.price_source.fetch_prices(symbols)
        if prices:
            self.aggregator.update_prices(prices)
        missing = sorted(set(symbols) - set(prices))
        if missing:
            logger.warning(f"Price refresh missing {missing}")
        rate = self.price_source.fetch_risk_free_rate()
        if rate is not None and rate != self.aggregator.risk_free_rate:
            self.aggregator.set_risk_free_rate(rate)
            logger.info(f"Risk-free rate from {self.price_source.name}: {rate:.4%}")
        return prices

    def start_polling(self, interval=None):
        if self._poller is None:
            self._poller = PricePoller(
                self.price_source,
                self.aggregator.symbols,
                self.aggregator.update_prices,
                interval=interval or self.config.poll_interval,
            )
        self._poller.start()
        return self._poller

    def stop_polling(self):
        if self._poller is not None:
            self._poller.stop()

    # ── Reads ────────────────────────────────────────────────────────────

    def snapshot(self):
        """Fresh valuation of the current state (not sequence-stamped)."""
        state = self.aggregator.state()
        return self.pool.run(self.aggregator.value_state, state)

    @property
    def latest_snapshot(self):
        return self.hub.latest

    def subscribe(self, maxsize=None, policy=None, flush_timeout=5.0):
        """Subscription whose first item is the snapshot of the state at call time."""
        self.publisher.flush(flush_timeout)
        return self.hub.subscribe(maxsize=maxsize, policy=policy)

    def _record(self, snapshot):
        if snapshot.total_value > 0:
            with self._history_lock:
                self._history.append((snapshot.timestamp, snapshot.total_value))

    def history(self):
        with self._history_lock:
            return list(self._history)

    def _assumed_volatility(self, snapshot, context):
        """Market-value weighted vol of the book's underlyings."""
        default = self.config.default_volatility
        weights = []
        vols = []
        for p in snapshot.positions:
            if p.stale or p.market_value == 0:
                continue
            weights.append(abs(p.market_value))
            vols.append(context.volatility(p.underlying, default))
        if not weights:
            return default
        total = math.fsum(weights)
        return math.fsum(w * v for w, v in zip(weights, vols)) / total

    def _implied_volatility(self, state):
        """Average vol input across option positions, weighted by |quantity * multiplier|."""
        num = den = 0.0
        ctx = state.context
        for position, option in self.aggregator.option_positions(state):
            if option.volatility is not None:
                vol = ctx.effective_vol(option.volatility)
            else:
                vol = ctx.volatility(option.underlying)
            if vol is None:
                continue
            w = abs(position.quantity * option.multiplier)
            num += w * vol
            den += w
        return num / den if den else None

    def _history_returns(self):
        values = [v for _, v in self.history()]
        return [b / a - 1.0 for a, b in zip(values, values[1:])]

    @staticmethod
    def _wait(task, timeout):
        """Block for ``task``; a caller that gives up cancels the work."""
        try:
            return task.result(timeout=timeout)
        except concurrent.futures.TimeoutError:
            task.cancel()
            raise

    def _compute_risk(self, volatility=None, drift=None, benchmark_returns=None, cancel=None):
        state = self.aggregator.state()
        snap = self.aggregator.value_state(state, cancel=cancel)
        vol = volatility if volatility is not None else self._assumed_volatility(snap, state.context)
        mu = self.config.assumed_drift if drift is None else drift
        returns = self._history_returns()
        return self.risk_engine.portfolio_risk_metrics(
            snap.total_value, vol, mu,
            implied_volatility=self._implied_volatility(state),
            returns=returns if len(returns) >= 2 else None,
            benchmark_returns=benchmark_returns,
        )

    def risk_metrics(self, volatility=None, drift=None, benchmark_returns=None, timeout=None):
        """RiskMetrics for the current book, computed on the worker pool."""
        task = self.pool.submit_cancellable(self._compute_risk, volatility, drift,
                                            benchmark_returns, label="risk_metrics")
        return self._wait(task, timeout)

    def performance_metrics(self, returns=None, benchmark_returns=None):
        """Performance over ``returns`` or the retained snapshot value history."""
        if returns is not None:
            return self.risk_engine.performance_metrics(
                returns=returns, benchmark_returns=benchmark_returns,
            )
        history = self.history()
        if len(history) < 3:
            raise InvalidInput(
                f"Need at least 3 recorded portfolio values, have {len(history)}",
            )
        return self.risk_engine.performance_metrics(
            values=[v for _, v in history],
            benchmark_returns=benchmark_returns,
            start=history[0][0],
            end=history[-1][0],
        )

    def _compute_stress(self, scenarios, cancel=None):
        state = self.aggregator.state()
        base = self.aggregator.value_state(state, cancel=cancel).total_value

        def revalue(ctx):
            return self.aggregator.value_state(state, ctx, cancel=cancel).total_value

        return self.risk_engine.stress_test(base, scenarios, state.context, revalue)

    def stress_test(self, scenarios=None, timeout=None):
        scenarios = DEFAULT_STRESS_SCENARIOS if scenarios is None else scenarios
        task = self.pool.submit_cancellable(self._compute_stress, scenarios, label="stress_test")
        return self._wait(task, timeout)

    def value_instrument(self, instrument_id, model=None, context=None):
        """
        Cancellable asynchronous valuation of one registered instrument.

        ``model`` is a model object, a name from ``self.models`` or None for
        the default choice (Monte Carlo for American options).
        """
        instrument = self.aggregator.find_instrument(instrument_id)
        if model is None:
            american = (isinstance(instrument, Option)
                        and instrument.exercise_style is ExerciseStyle.AMERICAN)
            model = self.models["monte_carlo" if american else "black_scholes"]
        elif isinstance(model, str):
            try:
                model = self.models[model]
            except KeyError:
                raise ValidationError(
                    f"Unknown model {model!r} (expected one of: {sorted(self.models)})"
                ) from None
        ctx = context or self.aggregator.state().context
        return self.pool.submit_cancellable(
            value, model, instrument, ctx, label=f"value:{instrument.symbol}",
        )

    def health(self):
        return {
            "status": "ok",
            "portfolio": self.config.portfolio_name,
            "version": self.aggregator.version,
            "positions": len(self.aggregator.portfolio),
            "instruments": len(self.aggregator.instruments()),
            "subscribers": self.hub.subscriber_count,
            "sequence": self.hub.sequence,
            "publisher_running": self.publisher.is_running,
            "pending_snapshots": self.publisher.pending,
            "price_source": self.price_source.name,
            "polling": self._poller is not None and self._poller.is_running,
        }

    def __repr__(self):
        return f"ValuationService({self.config.portfolio_name!r}, v{self.aggregator.version})"
