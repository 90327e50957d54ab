"""
Risk Engine — VaR, expected shortfall, stress tests and performance ratios.

Stateless: every method works on the arrays / values it is handed. The only
input that is not a plain argument is the random source, injected as a
``seed`` (fresh generator per call, so repeated calls agree) or an ``rng``
(shared generator that advances).

Classes:
    RiskEngine          — simulation, VaR / ES, parametric and component VaR,
                          stress testing, Sharpe / Sortino / beta / drawdown
    RiskMetrics         — VaR and ES keyed by (confidence, horizon_days)
    PerformanceMetrics  — return / ratio summary of a value or return series
    StressScenario      — single-factor shock (price, volatility or rate)
    StressResult        — outcome of one scenario
"""

import logging
import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

import numpy as np
from scipy import stats

from .errors import InvalidInput, ValidationError
from .instruments import utcnow

logger = logging.getLogger(__name__)

TRADING_DAYS = 252


# ── Stress scenarios ──────────────────────────────────────────────────────

class StressKind(Enum):
    PRICE = "price"
    VOLATILITY = "volatility"
    RATE = "rate"


@dataclass(frozen=True)
class StressScenario:
    """
    One shock applied to the whole market.

    ``magnitude`` is a signed fraction for price and volatility shocks
    (-0.20 = down 20%) and an absolute rate change for rate shocks
    (0.02 = +200bp).
    """
    name: str
    kind: StressKind
    magnitude: float
    description: str = ""

    def __post_init__(self):
        if not isinstance(self.kind, StressKind):
            try:
                object.__setattr__(self, "kind", StressKind(str(self.kind).lower()))
            except ValueError:
                raise ValidationError(f"Unknown stress kind {self.kind!r}") from None
        if not math.isfinite(self.magnitude):
            raise ValidationError(f"Stress magnitude must be finite, got {self.magnitude}")

    def shock_kwargs(self):
        key = {
            StressKind.PRICE: "price_shock",
            StressKind.VOLATILITY: "vol_shock",
            StressKind.RATE: "rate_shock",
        }[self.kind]
        return {key: self.magnitude}

    def to_dict(self):
        return {
            "name": self.name,
            "kind": self.kind.value,
            "magnitude": self.magnitude,
            "description": self.description,
        }


@dataclass(frozen=True)
class StressResult:
    scenario_name: str
    kind: StressKind
    magnitude: float
    base_value: float
    stressed_value: float
    delta: float
    delta_pct: float

    def to_dict(self):
        return {
            "scenario": self.scenario_name,
            "kind": self.kind.value,
            "magnitude": self.magnitude,
            "base_value": self.base_value,
            "stressed_value": self.stressed_value,
            "pnl": self.delta,
            "pnl_pct": self.delta_pct,
        }


DEFAULT_STRESS_SCENARIOS = (
    StressScenario("Equity Crash", StressKind.PRICE, -0.20, "Broad 20% equity selloff"),
    StressScenario("Market Correction", StressKind.PRICE, -0.10, "10% pullback"),
    StressScenario("Equity Rally", StressKind.PRICE, 0.10, "10% broad rally"),
    StressScenario("Vol Spike", StressKind.VOLATILITY, 0.50, "Implied vols up 50%"),
    StressScenario("Vol Crush", StressKind.VOLATILITY, -0.30, "Implied vols down 30%"),
    StressScenario("Rates +200bp", StressKind.RATE, 0.02, "Sudden 200bp rate increase"),
    StressScenario("Rates -100bp", StressKind.RATE, -0.01, "100bp emergency cut"),
)


def scenario_by_name(name, scenarios=DEFAULT_STRESS_SCENARIOS):
    for s in scenarios:
        if s.name == name:
            return s
    raise ValidationError(f"Unknown scenario: {name}. "
                          f"Available: {[s.name for s in scenarios]}")


# ── Results ───────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class RiskMetrics:
    """VaR and ES are positive loss amounts in portfolio currency."""
    portfolio_value: float
    var: dict
    expected_shortfall: dict
    volatility: float
    implied_volatility: float = None
    beta: float = None
    sharpe_ratio: float = None
    sortino_ratio: float = None
    max_drawdown: float = None
    computed_at: datetime = field(default_factory=utcnow)

    def var_at(self, confidence, horizon_days=1):
        return self.var[(confidence, horizon_days)]

    def es_at(self, confidence, horizon_days=1):
        return self.expected_shortfall[(confidence, horizon_days)]

    def to_dict(self):
        return {
            "portfolio_value": self.portfolio_value,
            "var": [
                {"confidence": c, "horizon_days": h, "value": v}
                for (c, h), v in sorted(self.var.items())
            ],
            "expected_shortfall": [
                {"confidence": c, "horizon_days": h, "value": v}
                for (c, h), v in sorted(self.expected_shortfall.items())
            ],
            "volatility": self.volatility,
            "implied_volatility": self.implied_volatility,
            "beta": self.beta,
            "sharpe_ratio": self.sharpe_ratio,
            "sortino_ratio": self.sortino_ratio,
            "max_drawdown": self.max_drawdown,
            "computed_at": self.computed_at.isoformat(),
        }


@dataclass(frozen=True)
class PerformanceMetrics:
    total_return: float
    annualized_return: float
    volatility: float
    sharpe_ratio: float
    sortino_ratio: float
    max_drawdown: float
    calmar_ratio: float
    n_observations: int
    beta: float = None
    alpha: float = None
    start: datetime = None
    end: datetime = None

    def to_dict(self):
        return {
            "total_return": self.total_return,
            "annualized_return": self.annualized_return,
            "volatility": self.volatility,
            "sharpe_ratio": self.sharpe_ratio,
            "sortino_ratio": self.sortino_ratio,
            "max_drawdown": self.max_drawdown,
            "calmar_ratio": self.calmar_ratio,
            "beta": self.beta,
            "alpha": self.alpha,
            "n_observations": self.n_observations,
            "start": self.start.isoformat() if self.start else None,
            "end": self.end.isoformat() if self.end else None,
        }


# ── Helpers ───────────────────────────────────────────────────────────────

def _sample(values, name="returns", min_len=1):
    arr = np.asarray(values, dtype=float).ravel()
    if arr.size < min_len:
        raise InvalidInput(f"{name}: need at least {min_len} observations, got {arr.size}")
    if not np.all(np.isfinite(arr)):
        raise InvalidInput(f"{name} contain non-finite values")
    return arr


def _check_confidence(confidence):
    if not 0.0 < confidence < 1.0:
        raise InvalidInput(f"Confidence {confidence} must lie strictly between 0 and 1")


def _annualized_return(returns, periods_per_year):
    total = float(np.prod(1.0 + returns) - 1.0)
    if total <= -1.0:
        return total, -1.0
    return total, (1.0 + total) ** (periods_per_year / len(returns)) - 1.0


# ── RiskEngine ────────────────────────────────────────────────────────────

class RiskEngine:
    """
    Parameters
    ----------
    confidence_levels : VaR / ES confidence levels reported by portfolio_risk_metrics
    horizons          : VaR / ES horizons in trading days
    n_simulations     : default sample size for simulated returns
    seed              : fixed seed (fresh generator per call); ignored if ``rng`` given
    rng               : numpy Generator shared across calls
    risk_free_rate    : annual rate used by Sharpe / Sortino / alpha
    """

    def __init__(self, confidence_levels=(0.95, 0.99), horizons=(1, 10),
                 n_simulations=10_000, seed=None, rng=None, risk_free_rate=0.0):
        for c in confidence_levels:
            _check_confidence(c)
        self.confidence_levels = tuple(confidence_levels)
        self.horizons = tuple(horizons)
        self.n_simulations = n_simulations
        self.seed = seed
        self._rng = rng
        self.risk_free_rate = risk_free_rate

    def _generator(self, rng=None):
        if rng is not None:
            return rng
        if self._rng is not None:
            return self._rng
        return np.random.default_rng(self.seed)

    # ── Simulation ───────────────────────────────────────────────────────

    def simulate_terminal_values(self, initial_value, assumed_volatility, assumed_drift,
                                 n_simulations=None, horizon_days=1, rng=None):
        """
        Terminal portfolio values under single-period lognormal dynamics.

        V_T = V_0 * exp((mu - sigma^2/2) h + sigma sqrt(h) Z), h = horizon_days / 252.
        """
        n = self.n_simulations if n_simulations is None else n_simulations
        if initial_value <= 0:
            raise InvalidInput(f"initial_value must be positive, got {initial_value}")
        if assumed_volatility < 0 or not math.isfinite(assumed_volatility):
            raise InvalidInput(f"assumed_volatility must be >= 0, got {assumed_volatility}")
        if n < 1:
            raise InvalidInput(f"n_simulations must be at least 1, got {n}")
        if horizon_days <= 0:
            raise InvalidInput(f"horizon_days must be positive, got {horizon_days}")

        h = horizon_days / TRADING_DAYS
        z = self._generator(rng).standard_normal(n)
        log_ret = (assumed_drift - 0.5 * assumed_volatility ** 2) * h \
            + assumed_volatility * math.sqrt(h) * z
        return initial_value * np.exp(log_ret)

    def simulate_portfolio_returns(self, initial_value, assumed_volatility, assumed_drift,
                                   n_simulations=None, horizon_days=1, rng=None):
        """Simple returns ``V_T / V_0 - 1``; length ``n_simulations``."""
        terminal = self.simulate_terminal_values(
            initial_value, assumed_volatility, assumed_drift,
            n_simulations=n_simulations, horizon_days=horizon_days, rng=rng,
        )
        return terminal / initial_value - 1.0

    # ── VaR / ES ─────────────────────────────────────────────────────────

    def calculate_var(self, simulated_returns, confidence):
        """
        Historical-simulation VaR as a positive loss fraction.

        Non-decreasing in ``confidence`` for a fixed sample.
        """
        _check_confidence(confidence)
        returns = _sample(simulated_returns)
        return float(-np.percentile(returns, (1.0 - confidence) * 100.0))

    def expected_shortfall(self, simulated_returns, confidence):
        """Mean loss over the samples at or beyond the VaR threshold (always >= VaR)."""
        var = self.calculate_var(simulated_returns, confidence)
        returns = _sample(simulated_returns)
        tail = returns[returns <= -var]
        if len(tail) == 0:
            return var
        # Interpolated percentile can sit a hair inside the tail mean.
        return max(float(-np.mean(tail)), var)

    def calculate_volatility(self, returns, annualize=False, periods_per_year=TRADING_DAYS):
        """Sample standard deviation (ddof=1)."""
        arr = _sample(returns, min_len=2)
        vol = float(np.std(arr, ddof=1))
        return vol * math.sqrt(periods_per_year) if annualize else vol

    # ── Covariance-based VaR ─────────────────────────────────────────────

    def correlation_matrix(self, returns_matrix):
        """Pearson correlations between rows (one row per asset)."""
        try:
            arr = np.asarray(returns_matrix, dtype=float)
        except ValueError:
            raise InvalidInput("Inconsistent number of observations") from None
        if arr.ndim != 2 or arr.shape[0] == 0:
            raise InvalidInput("Returns matrix must be 2-D with at least one asset")
        if arr.shape[1] < 2:
            raise InvalidInput("Need at least two observations per asset")
        if not np.all(np.isfinite(arr)):
            raise InvalidInput("Returns matrix contains non-finite values")

        centred = arr - arr.mean(axis=1, keepdims=True)
        norms = np.sqrt((centred ** 2).sum(axis=1))
        with np.errstate(divide="ignore", invalid="ignore"):
            corr = (centred @ centred.T) / np.outer(norms, norms)
        corr = np.where(np.isfinite(corr), corr, 0.0)
        np.fill_diagonal(corr, 1.0)
        return corr

    def _portfolio_sigma(self, weights, volatilities, correlation):
        w = np.asarray(weights, dtype=float)
        v = np.asarray(volatilities, dtype=float)
        corr = np.asarray(correlation, dtype=float)
        if w.shape != v.shape or corr.shape != (len(w), len(w)):
            raise InvalidInput("Dimension mismatch in portfolio VaR calculation")
        cov = np.outer(v, v) * corr
        variance = float(w @ cov @ w)
        return w, cov, math.sqrt(max(variance, 0.0))

    def parametric_var(self, weights, volatilities, correlation, portfolio_value,
                       confidence=0.95, horizon_days=1):
        """
        Variance-covariance VaR: ``V * sigma_p * z_c * sqrt(h / 252)`` with
        annualised asset vols.
        """
        _check_confidence(confidence)
        _, _, sigma_p = self._portfolio_sigma(weights, volatilities, correlation)
        z = stats.norm.ppf(confidence)
        return float(portfolio_value * sigma_p * z * math.sqrt(horizon_days / TRADING_DAYS))

    def component_var(self, weights, volatilities, correlation, portfolio_value,
                      confidence=0.95, horizon_days=1):
        """Euler decomposition of parametric VaR; components sum to the total."""
        _check_confidence(confidence)
        w, cov, sigma_p = self._portfolio_sigma(weights, volatilities, correlation)
        if sigma_p == 0:
            return np.zeros_like(w)
        z = stats.norm.ppf(confidence)
        marginal = cov @ w / sigma_p
        scale = portfolio_value * z * math.sqrt(horizon_days / TRADING_DAYS)
        return w * marginal * scale

    # ── Stress testing ───────────────────────────────────────────────────

    def _stress_one(self, base_value, scenario, context, revalue):
        if scenario.magnitude == 0:
            stressed = base_value
        elif revalue is not None and context is not None:
            stressed = revalue(context.shocked(**scenario.shock_kwargs()))
        elif scenario.kind is StressKind.PRICE:
            stressed = base_value * (1.0 + scenario.magnitude)
        else:
            raise ValidationError(
                f"Scenario {scenario.name!r}: {scenario.kind.value} shocks need a "
                f"market context and a repricer"
            )

        delta = stressed - base_value
        return StressResult(
            scenario_name=scenario.name,
            kind=scenario.kind,
            magnitude=scenario.magnitude,
            base_value=base_value,
            stressed_value=stressed,
            delta=delta,
            delta_pct=delta / abs(base_value) * 100.0 if base_value != 0 else 0.0,
        )

    def stress_test(self, base_value, scenarios=DEFAULT_STRESS_SCENARIOS,
                    context=None, revalue=None):
        """
        One StressResult per scenario, each applied independently to the
        unshocked ``context`` and repriced via ``revalue(shocked_context)``.

        Without a repricer only price shocks are supported (linear scaling).
        A zero-magnitude scenario always reports a delta of exactly 0.
        """
        scenarios = list(scenarios)
        if not scenarios:
            return []
        if revalue is None:
            return [self._stress_one(base_value, s, context, None) for s in scenarios]

        with ThreadPoolExecutor(max_workers=min(8, len(scenarios))) as pool:
            futures = [
                pool.submit(self._stress_one, base_value, s, context, revalue)
                for s in scenarios
            ]
            return [f.result() for f in futures]

    # ── Performance ratios ───────────────────────────────────────────────

    @staticmethod
    def max_drawdown(values):
        """Largest peak-to-trough decline as a positive fraction of the peak."""
        arr = _sample(values, name="values")
        if np.any(arr <= 0):
            raise InvalidInput("values must be positive for drawdown")
        peaks = np.maximum.accumulate(arr)
        return float(-np.min(arr / peaks - 1.0))

    def sharpe_ratio(self, returns, risk_free_rate=None, periods_per_year=TRADING_DAYS):
        rf = self.risk_free_rate if risk_free_rate is None else risk_free_rate
        arr = _sample(returns, min_len=2)
        _, ann_return = _annualized_return(arr, periods_per_year)
        ann_vol = float(np.std(arr, ddof=1) * np.sqrt(periods_per_year))
        return (ann_return - rf) / max(ann_vol, 1e-10)

    def sortino_ratio(self, returns, risk_free_rate=None, periods_per_year=TRADING_DAYS):
        """Like Sharpe but penalising only downside deviation."""
        rf = self.risk_free_rate if risk_free_rate is None else risk_free_rate
        arr = _sample(returns, min_len=2)
        _, ann_return = _annualized_return(arr, periods_per_year)
        neg = arr[arr < 0]
        downside = float(np.std(neg, ddof=1) * np.sqrt(periods_per_year)) if len(neg) > 1 else 1e-10
        return (ann_return - rf) / max(downside, 1e-10)

    @staticmethod
    def beta(returns, benchmark_returns):
        r = _sample(returns, min_len=2)
        b = _sample(benchmark_returns, name="benchmark returns", min_len=2)
        if len(r) != len(b):
            raise InvalidInput(f"Return series lengths differ ({len(r)} vs {len(b)})")
        var_b = float(np.var(b, ddof=1))
        if var_b == 0:
            raise InvalidInput("Benchmark returns have zero variance")
        return float(np.cov(r, b, ddof=1)[0, 1] / var_b)

    # ── Aggregates ───────────────────────────────────────────────────────

    def portfolio_risk_metrics(self, portfolio_value, volatility, drift=0.0,
                               implied_volatility=None, returns=None,
                               benchmark_returns=None, rng=None):
        """
        VaR and ES at every configured (confidence, horizon) from simulated
        lognormal returns, plus history-based ratios when ``returns`` given.

        Losses are scaled by ``abs(portfolio_value)``. A net-short book loses
        when the underlying rises, so its VaR and ES come from the right tail
        of the simulated returns. An empty book reports zeros.
        """
        gen = self._generator(rng)
        var, es = {}, {}
        scale = abs(portfolio_value)
        for h in self.horizons:
            if scale == 0:
                sims = np.zeros(1)
            else:
                sims = self.simulate_portfolio_returns(
                    scale, volatility, drift, horizon_days=h, rng=gen,
                )
                if portfolio_value < 0:
                    sims = -sims
            for c in self.confidence_levels:
                var[(c, h)] = self.calculate_var(sims, c) * scale
                es[(c, h)] = self.expected_shortfall(sims, c) * scale

        sharpe = sortino = mdd = beta = None
        if returns is not None and len(returns) >= 2:
            arr = _sample(returns, min_len=2)
            sharpe = self.sharpe_ratio(arr)
            sortino = self.sortino_ratio(arr)
            mdd = self.max_drawdown(np.cumprod(1.0 + arr))
            if benchmark_returns is not None and len(benchmark_returns) == len(arr):
                beta = self.beta(arr, benchmark_returns)

        logger.info(f"Risk metrics: value={portfolio_value:,.2f} vol={volatility:.2%} "
                    f"levels={list(var)}")
        return RiskMetrics(
            portfolio_value=portfolio_value,
            var=var,
            expected_shortfall=es,
            volatility=volatility,
            implied_volatility=implied_volatility,
            beta=beta,
            sharpe_ratio=sharpe,
            sortino_ratio=sortino,
            max_drawdown=mdd,
        )

    def performance_metrics(self, values=None, returns=None, benchmark_returns=None,
                            risk_free_rate=None, periods_per_year=TRADING_DAYS,
                            start=None, end=None):
        """
        Performance summary from a value series (preferred) or a return series.
        """
        rf = self.risk_free_rate if risk_free_rate is None else risk_free_rate
        if values is not None:
            vals = _sample(values, name="values", min_len=2)
            if np.any(vals <= 0):
                raise InvalidInput("values must be positive")
            arr = vals[1:] / vals[:-1] - 1.0
        elif returns is not None:
            arr = _sample(returns, min_len=2)
            vals = np.cumprod(np.concatenate([[1.0], 1.0 + arr]))
        else:
            raise InvalidInput("Need either values or returns")

        total, ann_return = _annualized_return(arr, periods_per_year)
        ann_vol = float(np.std(arr, ddof=1) * np.sqrt(periods_per_year))
        mdd = self.max_drawdown(vals) if np.all(vals > 0) else 1.0
        calmar = ann_return / max(abs(mdd), 1e-10)

        beta = alpha = None
        if benchmark_returns is not None:
            bench = _sample(benchmark_returns, name="benchmark returns", min_len=2)
            if len(bench) == len(arr):
                beta = self.beta(arr, bench)
                _, bench_ann = _annualized_return(bench, periods_per_year)
                alpha = ann_return - (rf + beta * (bench_ann - rf))

        return PerformanceMetrics(
            total_return=total,
            annualized_return=ann_return,
            volatility=ann_vol,
            sharpe_ratio=self.sharpe_ratio(arr, rf, periods_per_year),
            sortino_ratio=self.sortino_ratio(arr, rf, periods_per_year),
            max_drawdown=mdd,
            calmar_ratio=calmar,
            n_observations=len(arr),
            beta=beta,
            alpha=alpha,
            start=start,
            end=end,
        )
