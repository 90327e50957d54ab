"""
MarketContext — immutable view of prices, rates and vols at one instant.

The aggregator owns the mutable market state and hands out fresh contexts;
pricing models and the risk engine only ever read them. Derived contexts
(stress shocks, bumped spots for Greeks) are new objects, never edits.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from types import MappingProxyType

from .errors import UpstreamUnavailable, ValidationError
from .instruments import utcnow


def _frozen(mapping):
    return MappingProxyType(dict(mapping or {}))


@dataclass(frozen=True)
class MarketContext:
    """
    Point-in-time market inputs.

    A symbol with no entry in ``prices`` is *unpriced*: ``price()`` raises
    UpstreamUnavailable rather than returning zero.
    """
    prices: MappingProxyType = field(default_factory=dict)
    risk_free_rate: float = 0.0
    as_of: datetime = field(default_factory=utcnow)
    volatilities: MappingProxyType = field(default_factory=dict)
    dividend_yields: MappingProxyType = field(default_factory=dict)
    vol_multiplier: float = 1.0

    def __post_init__(self):
        for name in ("prices", "volatilities", "dividend_yields"):
            object.__setattr__(self, name, _frozen(getattr(self, name)))
        for sym, px in self.prices.items():
            if px is None or px <= 0:
                raise ValidationError(f"Price for {sym} must be positive, got {px}")
        for sym, vol in self.volatilities.items():
            if vol < 0:
                raise ValidationError(f"Volatility for {sym} must be >= 0, got {vol}")

    # ── Lookups ──────────────────────────────────────────────────────────

    def has_price(self, symbol):
        return symbol in self.prices

    def price(self, symbol):
        try:
            return self.prices[symbol]
        except KeyError:
            raise UpstreamUnavailable(f"No price for {symbol}", symbol=symbol) from None

    def volatility(self, symbol, default=None):
        """Vol for ``symbol`` after any volatility shock, or ``default``."""
        vol = self.volatilities.get(symbol, default)
        if vol is None:
            return None
        return self.effective_vol(vol)

    def effective_vol(self, vol):
        """Apply this context's volatility shock to an instrument-level vol."""
        return max(vol * self.vol_multiplier, 0.0)

    def dividend_yield(self, symbol):
        return self.dividend_yields.get(symbol, 0.0)

    @property
    def symbols(self):
        return sorted(self.prices)

    # ── Derived contexts ─────────────────────────────────────────────────

    def with_price(self, symbol, price):
        prices = dict(self.prices)
        prices[symbol] = price
        return replace(self, prices=prices)

    def with_rate(self, rate):
        return replace(self, risk_free_rate=rate)

    def at(self, as_of):
        return replace(self, as_of=as_of)

    def shocked(self, price_shock=0.0, vol_shock=0.0, rate_shock=0.0):
        """
        Apply parallel shocks: spots and vols scale by ``(1 + shock)``, the
        rate moves by ``rate_shock`` in absolute terms. Vol shocks also reach
        per-instrument vol overrides through ``effective_vol``.
        """
        prices = {s: p * (1.0 + price_shock) for s, p in self.prices.items()}
        if any(p <= 0 for p in prices.values()):
            raise ValidationError(f"Price shock {price_shock:+.2%} drives prices non-positive")
        return replace(
            self,
            prices=prices,
            vol_multiplier=self.vol_multiplier * (1.0 + vol_shock),
            risk_free_rate=self.risk_free_rate + rate_shock,
        )

    def to_dict(self):
        return {
            "as_of": self.as_of.isoformat(),
            "risk_free_rate": self.risk_free_rate,
            "prices": dict(self.prices),
            "volatilities": dict(self.volatilities),
            "dividend_yields": dict(self.dividend_yields),
            "vol_multiplier": self.vol_multiplier,
        }
