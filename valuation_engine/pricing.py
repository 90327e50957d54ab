"""
Pricing — Black-Scholes and Monte Carlo valuation models.

The set of models is closed: ``BlackScholesModel`` and ``MonteCarloModel`` are
frozen configuration objects and ``value()`` dispatches on which one it was
handed. Both price stocks as ``price * shares``; they differ on options.

Architecture:
    MarketContext + Instrument -> _OptionInputs (spot, strike, r, q, vol, T)
        -> BlackScholesModel  -> closed-form price + analytical Greeks
        -> MonteCarloModel    -> batched GBM paths (Longstaff-Schwartz for
                                 American exercise) + bump-and-reprice Greeks
        -> ValuationResult    -> per-contract value, unit price, Greeks

Greek conventions: per unit of the underlying scaled by the option
multiplier; vega and rho per 1.00 change in vol / rate; theta per year.
"""

import logging
import math
from dataclasses import dataclass, field, replace
from datetime import datetime

import numpy as np

from .errors import (
    Cancelled,
    ComputationError,
    InvalidInput,
    UnsupportedInstrument,
    ValidationError,
)
from .instruments import ExerciseStyle, Option, Stock, utcnow

logger = logging.getLogger(__name__)


# ── Normal CDF / PDF helpers ────────────────────────────────────────────

def _norm_cdf(x):
    """Standard normal CDF using math.erf."""
    return 0.5 * (1.0 + math.erf(x / math.sqrt(2.0)))


def _norm_pdf(x):
    """Standard normal PDF."""
    return math.exp(-0.5 * x * x) / math.sqrt(2.0 * math.pi)


# ── Results ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Greeks:
    """First and second order sensitivities of one instrument."""
    delta: float = 0.0
    gamma: float = 0.0
    vega: float = 0.0
    theta: float = 0.0
    rho: float = 0.0

    def scaled(self, factor):
        return Greeks(
            delta=self.delta * factor,
            gamma=self.gamma * factor,
            vega=self.vega * factor,
            theta=self.theta * factor,
            rho=self.rho * factor,
        )

    def __add__(self, other):
        return Greeks(
            delta=self.delta + other.delta,
            gamma=self.gamma + other.gamma,
            vega=self.vega + other.vega,
            theta=self.theta + other.theta,
            rho=self.rho + other.rho,
        )

    def to_dict(self):
        return {
            "delta": self.delta,
            "gamma": self.gamma,
            "vega": self.vega,
            "theta": self.theta,
            "rho": self.rho,
        }


@dataclass(frozen=True)
class ValuationResult:
    """
    Value of one unit of an instrument (one share basis, one contract).

    ``value`` is already multiplied by the share basis or option multiplier;
    ``unit_price`` is per unit of the underlying.
    """
    instrument_id: str
    value: float
    unit_price: float
    currency: str
    model: str
    greeks: Greeks = None
    standard_error: float = None
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self):
        return {
            "instrument_id": self.instrument_id,
            "value": self.value,
            "unit_price": self.unit_price,
            "currency": self.currency,
            "model": self.model,
            "greeks": self.greeks.to_dict() if self.greeks else None,
            "standard_error": self.standard_error,
            "timestamp": self.timestamp.isoformat(),
        }


# ── Shared input resolution ─────────────────────────────────────────────

@dataclass(frozen=True)
class _OptionInputs:
    spot: float
    strike: float
    rate: float
    dividend_yield: float
    vol: float
    expiry_years: float
    is_call: bool


def _option_inputs(option, context):
    spot = context.price(option.underlying)
    if spot <= 0:
        raise InvalidInput(f"Spot for {option.underlying} must be positive, got {spot}")

    if option.volatility is not None:
        vol = context.effective_vol(option.volatility)
    else:
        vol = context.volatility(option.underlying)
    if vol is None:
        raise InvalidInput(
            f"No volatility for {option.underlying} (option {option.symbol})",
            symbol=option.underlying,
        )
    if vol < 0:
        raise InvalidInput(f"Volatility for {option.symbol} must be >= 0, got {vol}")

    return _OptionInputs(
        spot=spot,
        strike=option.strike,
        rate=context.risk_free_rate,
        dividend_yield=context.dividend_yield(option.underlying),
        vol=vol,
        expiry_years=option.time_to_expiry(context.as_of),
        is_call=option.is_call,
    )


def _stock_result(stock, context, model_name):
    price = context.price(stock.symbol)
    if price <= 0:
        raise InvalidInput(f"Price for {stock.symbol} must be positive, got {price}")
    return ValuationResult(
        instrument_id=stock.id,
        value=price * stock.shares,
        unit_price=price,
        currency=stock.currency,
        model=model_name,
        greeks=Greeks(delta=stock.shares),
        timestamp=context.as_of,
    )


def _option_result(option, context, model_name, unit_price, unit_greeks, standard_error=None):
    if not math.isfinite(unit_price):
        raise ComputationError(f"{model_name} produced a non-finite price for {option.symbol}")
    return ValuationResult(
        instrument_id=option.id,
        value=unit_price * option.multiplier,
        unit_price=unit_price,
        currency=option.currency,
        model=model_name,
        greeks=unit_greeks.scaled(option.multiplier) if unit_greeks else None,
        standard_error=(
            standard_error * option.multiplier if standard_error is not None else None
        ),
        timestamp=context.as_of,
    )


def _payoff(spot, strike, is_call):
    if is_call:
        return np.maximum(spot - strike, 0.0)
    return np.maximum(strike - spot, 0.0)


def _check_cancel(cancel):
    if cancel is not None and cancel.is_set():
        raise Cancelled("Valuation cancelled")


# ── Black-Scholes ───────────────────────────────────────────────────────

def black_scholes_price(S, K, r, sigma, T, is_call=True, q=0.0):
    """
    Closed-form European option price with continuous dividend yield.

    ``T <= 0`` returns intrinsic value; ``sigma == 0`` returns the
    discounted forward intrinsic value.
    """
    if T <= 0:
        return max(S - K, 0.0) if is_call else max(K - S, 0.0)

    fwd_spot = S * math.exp(-q * T)
    disc_strike = K * math.exp(-r * T)
    if sigma == 0:
        if is_call:
            return max(fwd_spot - disc_strike, 0.0)
        return max(disc_strike - fwd_spot, 0.0)

    sqrt_T = math.sqrt(T)
    d1 = (math.log(S / K) + (r - q + 0.5 * sigma ** 2) * T) / (sigma * sqrt_T)
    d2 = d1 - sigma * sqrt_T

    if is_call:
        return fwd_spot * _norm_cdf(d1) - disc_strike * _norm_cdf(d2)
    return disc_strike * _norm_cdf(-d2) - fwd_spot * _norm_cdf(-d1)


def black_scholes_greeks(S, K, r, sigma, T, is_call=True, q=0.0):
    """Analytical Greeks per unit of the underlying."""
    if T <= 0:
        return Greeks()

    growth = math.exp(-q * T)
    disc = math.exp(-r * T)
    if sigma == 0:
        in_the_money = (S * growth > K * disc) if is_call else (K * disc > S * growth)
        if not in_the_money:
            return Greeks()
        return Greeks(delta=growth if is_call else -growth)

    sqrt_T = math.sqrt(T)
    d1 = (math.log(S / K) + (r - q + 0.5 * sigma ** 2) * T) / (sigma * sqrt_T)
    d2 = d1 - sigma * sqrt_T
    pdf_d1 = _norm_pdf(d1)

    gamma = growth * pdf_d1 / (S * sigma * sqrt_T)
    vega = S * growth * pdf_d1 * sqrt_T
    decay = -S * growth * pdf_d1 * sigma / (2.0 * sqrt_T)

    if is_call:
        delta = growth * _norm_cdf(d1)
        theta = decay - r * K * disc * _norm_cdf(d2) + q * S * growth * _norm_cdf(d1)
        rho = K * T * disc * _norm_cdf(d2)
    else:
        delta = growth * (_norm_cdf(d1) - 1.0)
        theta = decay + r * K * disc * _norm_cdf(-d2) - q * S * growth * _norm_cdf(-d1)
        rho = -K * T * disc * _norm_cdf(-d2)

    return Greeks(delta=delta, gamma=gamma, vega=vega, theta=theta, rho=rho)


def implied_volatility(market_price, S, K, r, T, is_call=True, q=0.0):
    """
    Invert Black-Scholes via bisection to find implied vol.

    Returns None when the price lies outside the no-arbitrage bounds.
    """
    if T <= 0 or market_price <= 0:
        return None

    lo, hi = 1e-4, 5.0
    tol = 1e-8
    if not (black_scholes_price(S, K, r, lo, T, is_call, q) - tol
            <= market_price
            <= black_scholes_price(S, K, r, hi, T, is_call, q) + tol):
        return None

    for _ in range(200):
        mid = (lo + hi) / 2.0
        price = black_scholes_price(S, K, r, mid, T, is_call, q)
        if abs(price - market_price) < tol:
            return mid
        if price < market_price:
            lo = mid
        else:
            hi = mid
        if hi - lo < tol:
            break

    return (lo + hi) / 2.0


@dataclass(frozen=True)
class BlackScholesModel:
    """Closed-form European option pricing."""
    name = "black_scholes"

    def value(self, instrument, context, rng=None, cancel=None):
        return value(self, instrument, context, rng=rng, cancel=cancel)

    def _value_option(self, option, context):
        if option.exercise_style is ExerciseStyle.AMERICAN:
            raise UnsupportedInstrument(
                f"Black-Scholes cannot price American option {option.symbol}",
                instrument_id=option.id,
            )
        p = _option_inputs(option, context)
        price = black_scholes_price(
            p.spot, p.strike, p.rate, p.vol, p.expiry_years, p.is_call, p.dividend_yield,
        )
        greeks = black_scholes_greeks(
            p.spot, p.strike, p.rate, p.vol, p.expiry_years, p.is_call, p.dividend_yield,
        )
        return _option_result(option, context, self.name, price, greeks)


# ── Monte Carlo ─────────────────────────────────────────────────────────

def _lsm_present_values(paths, strike, rate, dt, is_call):
    """
    Longstaff-Schwartz backward induction over one batch of paths.

    ``paths[:, t]`` is the spot at time ``(t + 1) * dt``. Continuation value
    is regressed on ``[1, x, x^2]`` with ``x = S / K`` over in-the-money paths.
    Returns the present value of each path's optimal cash flow.
    """
    n_steps = paths.shape[1]
    step_discount = math.exp(-rate * dt)
    cashflow = _payoff(paths[:, -1], strike, is_call)

    for t in range(n_steps - 2, -1, -1):
        cashflow = cashflow * step_discount
        spot = paths[:, t]
        exercise_value = _payoff(spot, strike, is_call)
        itm = np.flatnonzero(exercise_value > 0)
        if len(itm) < 3:
            continue
        x = spot[itm] / strike
        basis = np.column_stack([np.ones_like(x), x, x * x])
        coef, *_ = np.linalg.lstsq(basis, cashflow[itm], rcond=None)
        continuation = basis @ coef
        exercise = itm[exercise_value[itm] > continuation]
        cashflow[exercise] = exercise_value[exercise]

    return cashflow * step_discount


@dataclass(frozen=True)
class MonteCarloModel:
    """
    GBM Monte Carlo pricing in log-price space.

    Parameters
    ----------
    n_paths    : int — number of simulated paths
    n_steps    : int — time steps per path
    seed       : int or None — fixed seed reproduces a fixed price; None reseeds per call
    antithetic : bool — pair every normal draw with its negation
    batch_size : int — paths simulated between cancellation checks
    greeks     : bool — bump-and-reprice delta, gamma, vega (common random numbers)
    bump       : float — relative spot bump for delta / gamma
    """
    n_paths: int = 50_000
    n_steps: int = 50
    seed: int = None
    antithetic: bool = True
    batch_size: int = 10_000
    greeks: bool = False
    bump: float = 0.01

    name = "monte_carlo"

    def __post_init__(self):
        if self.n_paths < 2:
            raise ValidationError(f"n_paths must be at least 2, got {self.n_paths}")
        if self.n_steps < 1:
            raise ValidationError(f"n_steps must be at least 1, got {self.n_steps}")
        if self.batch_size < 1:
            raise ValidationError(f"batch_size must be at least 1, got {self.batch_size}")
        if self.bump <= 0:
            raise ValidationError(f"bump must be positive, got {self.bump}")

    def value(self, instrument, context, rng=None, cancel=None):
        return value(self, instrument, context, rng=rng, cancel=cancel)

    def _value_option(self, option, context, rng=None, cancel=None):
        american = option.exercise_style is ExerciseStyle.AMERICAN
        model_name = "monte_carlo_lsm" if american else self.name
        p = _option_inputs(option, context)

        if p.expiry_years <= 0:
            return _option_result(option, context, model_name,
                                  option.intrinsic(p.spot), Greeks(), 0.0)

        if rng is None:
            rng = np.random.default_rng(self.seed)
        # One seed per valuation so bumped re-runs see the same draws.
        path_seed = int(rng.integers(0, 2 ** 63 - 1))

        price, std_err = self._simulate(p, american, path_seed, cancel)

        greeks = None
        if self.greeks:
            greeks = self._bumped_greeks(p, american, path_seed, cancel, price)

        return _option_result(option, context, model_name, price, greeks, std_err)

    def _simulate(self, p, american, path_seed, cancel):
        """Return (price, standard_error) for one set of inputs."""
        rng = np.random.default_rng(path_seed)
        dt = p.expiry_years / self.n_steps
        drift = (p.rate - p.dividend_yield - 0.5 * p.vol ** 2) * dt
        diffusion = p.vol * math.sqrt(dt)
        discount = math.exp(-p.rate * p.expiry_years)

        samples = []
        remaining = self.n_paths
        while remaining > 0:
            _check_cancel(cancel)
            n = min(self.batch_size, remaining)
            if self.antithetic:
                half = (n + 1) // 2
                Z = rng.standard_normal((half, self.n_steps))
                Z = np.concatenate([Z, -Z])
            else:
                Z = rng.standard_normal((n, self.n_steps))

            increments = drift + diffusion * Z
            if american:
                paths = p.spot * np.exp(np.cumsum(increments, axis=1))
                pv = _lsm_present_values(paths, p.strike, p.rate, dt, p.is_call)
            else:
                terminal = p.spot * np.exp(increments.sum(axis=1))
                pv = discount * _payoff(terminal, p.strike, p.is_call)

            if self.antithetic:
                pv = 0.5 * (pv[:half] + pv[half:])
            samples.append(pv)
            remaining -= n

        _check_cancel(cancel)
        pv = np.concatenate(samples)
        price = float(pv.mean())
        std_err = float(pv.std(ddof=1) / math.sqrt(len(pv))) if len(pv) > 1 else 0.0

        if american:
            intrinsic = p.spot - p.strike if p.is_call else p.strike - p.spot
            price = max(price, intrinsic)

        if not (math.isfinite(price) and math.isfinite(std_err)):
            raise ComputationError("Monte Carlo simulation produced non-finite values")
        return price, std_err

    def _bumped_greeks(self, p, american, path_seed, cancel, base_price):
        h = self.bump * p.spot
        up, _ = self._simulate(replace(p, spot=p.spot + h), american, path_seed, cancel)
        down, _ = self._simulate(replace(p, spot=p.spot - h), american, path_seed, cancel)
        vol_bump = 0.01
        vol_up, _ = self._simulate(replace(p, vol=p.vol + vol_bump), american, path_seed, cancel)

        return Greeks(
            delta=(up - down) / (2.0 * h),
            gamma=(up - 2.0 * base_price + down) / (h * h),
            vega=(vol_up - base_price) / vol_bump,
        )


# ── Dispatch ────────────────────────────────────────────────────────────

PricingModel = (BlackScholesModel, MonteCarloModel)


def value(model, instrument, context, rng=None, cancel=None):
    """
    Value one unit of ``instrument`` under ``model`` and ``context``.

    Raises UnsupportedInstrument for combinations the model cannot price,
    InvalidInput for unusable inputs, UpstreamUnavailable for unpriced
    symbols, Cancelled if ``cancel`` is set mid-simulation.
    """
    if not isinstance(model, PricingModel):
        raise UnsupportedInstrument(f"Unknown pricing model {model!r}")

    if isinstance(instrument, Stock):
        return _stock_result(instrument, context, model.name)

    if isinstance(instrument, Option):
        if isinstance(model, BlackScholesModel):
            return model._value_option(instrument, context)
        return model._value_option(instrument, context, rng=rng, cancel=cancel)

    raise UnsupportedInstrument(
        f"{model.name} cannot price {type(instrument).__name__}",
        instrument_id=getattr(instrument, "id", None),
    )


def default_model_for(instrument, european_model=None, american_model=None):
    """European options and stocks use Black-Scholes; American options use Monte Carlo."""
    if isinstance(instrument, Option) and instrument.exercise_style is ExerciseStyle.AMERICAN:
        return american_model or MonteCarloModel()
    return european_model or BlackScholesModel()
