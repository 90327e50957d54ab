"""
Market Data — price source contract and concrete sources.

The engine only depends on ``PriceSource.fetch_price(symbol) -> float``,
which raises UpstreamUnavailable when a symbol cannot be resolved. Concrete
sources:

- StaticPriceSource: fixed quotes, vols and dividend yields (tests, offline runs)
- RandomWalkPriceSource: seeded GBM jiggle around base quotes (demos)
- YFinancePriceSource: live Yahoo Finance quotes with retries and backoff
- PricePoller: background thread pulling a source into the service
"""

import logging
import math
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime

import numpy as np
import pandas as pd
import yfinance as yf

from .errors import ConfigurationError, UpstreamUnavailable
from .instruments import utcnow

logger = logging.getLogger(__name__)

SAMPLE_QUOTES = {"AAPL": 175.50, "MSFT": 415.25, "GOOGL": 142.80}
SAMPLE_VOLATILITIES = {"AAPL": 0.25, "MSFT": 0.22, "GOOGL": 0.28}
SAMPLE_DIVIDEND_YIELDS = {"AAPL": 0.0045, "MSFT": 0.0068, "GOOGL": 0.0}
SAMPLE_RISK_FREE_RATE = 0.0485

TRADING_DAYS = 252


# ── PriceQuote ────────────────────────────────────────────────────────────

@dataclass
class PriceQuote:
    """A single fetched price point."""
    symbol: str
    price: float
    timestamp: datetime = field(default_factory=utcnow)
    source: str = "static"
    metadata: dict = field(default_factory=dict)

    def __repr__(self):
        return (f"PriceQuote({self.symbol}, price={self.price:.4f}, "
                f"time={self.timestamp:%Y-%m-%d %H:%M:%S}, source={self.source})")


# ── PriceSource ───────────────────────────────────────────────────────────

class PriceSource(ABC):
    """Contract every market data source implements."""

    name = "abstract"

    @abstractmethod
    def fetch_price(self, symbol):
        """Return the latest price for ``symbol`` or raise UpstreamUnavailable."""

    def fetch_quote(self, symbol):
        return PriceQuote(symbol=symbol, price=self.fetch_price(symbol), source=self.name)

    def fetch_prices(self, symbols):
        """
        Fetch several symbols. Unavailable symbols are logged and left out,
        so a partial result is normal.
        """
        results = {}
        for symbol in symbols:
            try:
                results[symbol] = self.fetch_price(symbol)
            except UpstreamUnavailable as e:
                logger.warning(f"{self.name}: {e}")
        return results

    def fetch_volatility(self, symbol):
        """Annualised volatility estimate, or None if the source has none."""
        return None

    def fetch_dividend_yield(self, symbol):
        return 0.0

    def fetch_risk_free_rate(self):
        """Risk-free rate, or None to keep the engine's configured rate."""
        return None

    def __repr__(self):
        return f"{self.__class__.__name__}()"


# ── StaticPriceSource ─────────────────────────────────────────────────────

class StaticPriceSource(PriceSource):
    """Deterministic quotes held in memory. Defaults to the sample book."""

    name = "static"

    def __init__(self, prices=None, volatilities=None, dividend_yields=None,
                 risk_free_rate=SAMPLE_RISK_FREE_RATE):
        self._prices = dict(SAMPLE_QUOTES if prices is None else prices)
        self._vols = dict(SAMPLE_VOLATILITIES if volatilities is None else volatilities)
        self._divs = dict(SAMPLE_DIVIDEND_YIELDS if dividend_yields is None else dividend_yields)
        self._rate = risk_free_rate
        self._lock = threading.Lock()

    def fetch_price(self, symbol):
        with self._lock:
            if symbol not in self._prices:
                raise UpstreamUnavailable(f"No quote for {symbol}", symbol=symbol)
            return self._prices[symbol]

    def set_price(self, symbol, price):
        with self._lock:
            self._prices[symbol] = price

    def fetch_volatility(self, symbol):
        return self._vols.get(symbol)

    def fetch_dividend_yield(self, symbol):
        return self._divs.get(symbol, 0.0)

    def fetch_risk_free_rate(self):
        return self._rate

    @property
    def symbols(self):
        with self._lock:
            return sorted(self._prices)


# ── RandomWalkPriceSource ─────────────────────────────────────────────────

class RandomWalkPriceSource(StaticPriceSource):
    """
    Each fetch moves the quote one GBM step of ``dt`` years.

    Starts from the static quotes; a fixed ``seed`` reproduces the walk.
    """

    name = "random_walk"

    def __init__(self, prices=None, volatilities=None, dividend_yields=None,
                 risk_free_rate=SAMPLE_RISK_FREE_RATE, seed=None,
                 drift=0.0, dt=1.0 / (TRADING_DAYS * 390), default_volatility=0.20):
        super().__init__(prices, volatilities, dividend_yields, risk_free_rate)
        self._rng = np.random.default_rng(seed)
        self._drift = drift
        self._dt = dt
        self._default_vol = default_volatility

    def fetch_price(self, symbol):
        with self._lock:
            if symbol not in self._prices:
                raise UpstreamUnavailable(f"No quote for {symbol}", symbol=symbol)
            sigma = self._vols.get(symbol, self._default_vol)
            z = self._rng.standard_normal()
            step = (self._drift - 0.5 * sigma ** 2) * self._dt + sigma * math.sqrt(self._dt) * z
            price = self._prices[symbol] * math.exp(step)
            self._prices[symbol] = price
            return price


# ── YFinancePriceSource ───────────────────────────────────────────────────

def _close_series(data, symbol):
    """Close column for ``symbol`` from single- or multi-ticker download output."""
    if data is None or data.empty or "Close" not in data.columns.get_level_values(0):
        return None
    close = data["Close"]
    if isinstance(close, pd.DataFrame):
        if symbol not in close.columns:
            return None
        close = close[symbol]
    close = close.dropna()
    return close if len(close) else None


class YFinancePriceSource(PriceSource):
    """Live quotes from Yahoo Finance via yfinance, retried with exponential backoff."""

    name = "yfinance"

    def __init__(self, max_retries=2, backoff_factor=1.0, vol_period="1y"):
        self._max_retries = max_retries
        self._backoff_factor = backoff_factor
        self._vol_period = vol_period

    def _download(self, symbols, period):
        last_error = None
        for attempt in range(self._max_retries + 1):
            try:
                return yf.download(
                    symbols if len(symbols) > 1 else symbols[0],
                    period=period,
                    progress=False,
                    threads=False,
                )
            except Exception as e:
                last_error = e
                if attempt < self._max_retries:
                    wait = self._backoff_factor * (2 ** attempt)
                    logger.warning(f"Fetch attempt {attempt + 1} failed: {e}, "
                                   f"retrying in {wait:.1f}s")
                    time.sleep(wait)
        logger.error(f"All fetch attempts failed: {last_error}")
        raise UpstreamUnavailable(
            f"Yahoo Finance unavailable: {last_error}", symbols=list(symbols),
        )

    def fetch_prices(self, symbols):
        symbols = list(symbols)
        if not symbols:
            return {}
        data = self._download(symbols, period="1d")

        results = {}
        for symbol in symbols:
            close = _close_series(data, symbol)
            if close is None:
                logger.warning(f"No data returned for {symbol}, skipping")
                continue
            price = float(close.iloc[-1])
            if not math.isfinite(price) or price <= 0:
                logger.warning(f"Bad price {price} for {symbol}, skipping")
                continue
            results[symbol] = price
        return results

    def fetch_price(self, symbol):
        prices = self.fetch_prices([symbol])
        if symbol not in prices:
            raise UpstreamUnavailable(f"No quote for {symbol}", symbol=symbol)
        return prices[symbol]

    def fetch_volatility(self, symbol):
        """Annualised close-to-close volatility over ``vol_period``."""
        try:
            data = self._download([symbol], period=self._vol_period)
        except UpstreamUnavailable:
            return None
        close = _close_series(data, symbol)
        if close is None or len(close) < 3:
            return None
        log_returns = np.diff(np.log(close.to_numpy(dtype=float)))
        return float(np.std(log_returns, ddof=1) * math.sqrt(TRADING_DAYS))


def build_price_source(config):
    """Construct the source named by ``config.price_source``."""
    if config.price_source == "static":
        return StaticPriceSource(risk_free_rate=config.risk_free_rate)
    if config.price_source == "random_walk":
        return RandomWalkPriceSource(
            risk_free_rate=config.risk_free_rate,
            seed=config.risk_seed,
            default_volatility=config.default_volatility,
        )
    if config.price_source == "yfinance":
        return YFinancePriceSource()
    raise ConfigurationError(f"Unknown price source {config.price_source!r}")


# ── PricePoller ───────────────────────────────────────────────────────────

class PricePoller:
    """
    Periodic job that pulls prices from a source and hands them to a sink.

    ``symbols`` is a callable returning the symbols to poll (evaluated each
    tick, so newly added positions are picked up). ``on_prices`` receives a
    ``{symbol: price}`` dict. Failures are logged and the loop keeps going.
    """

    def __init__(self, source, symbols, on_prices, interval=5.0):
        self._source = source
        self._symbols = symbols
        self._on_prices = on_prices
        self._interval = interval
        self._stop_event = threading.Event()
        self._thread = None
        self.ticks = 0
        self.errors = 0
        self.last_error = None

    def poll_once(self):
        symbols = list(self._symbols())
        if not symbols:
            return {}
        prices = self._source.fetch_prices(symbols)
        if prices:
            self._on_prices(prices)
        self.ticks += 1
        logger.debug(f"[PricePoller] {len(prices)}/{len(symbols)} prices from {self._source.name}")
        return prices

    def _run(self):
        while not self._stop_event.is_set():
            try:
                self.poll_once()
            except Exception as e:
                self.errors += 1
                self.last_error = e
                logger.exception(f"[PricePoller] poll failed: {e}")
            self._stop_event.wait(self._interval)

    def start(self):
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="price-poller", daemon=True)
        self._thread.start()
        logger.info(f"[PricePoller] started ({self._source.name}, every {self._interval}s)")

    def stop(self, timeout=5.0):
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning("[PricePoller] thread did not stop cleanly")
        self._thread = None

    @property
    def is_running(self):
        return self._thread is not None and self._thread.is_alive()

    def __repr__(self):
        return f"PricePoller(source={self._source.name}, interval={self._interval})"
