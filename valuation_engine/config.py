"""
Engine configuration.

A single dataclass of knobs with sane defaults, overridable from
``VALUATION_*`` environment variables so the Django server, the CLI and the
tests all build the engine the same way.
"""

import logging
import os
from dataclasses import asdict, dataclass, field, fields

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

ENV_PREFIX = "VALUATION_"

OVERFLOW_POLICIES = ("coalesce", "disconnect")
PRICE_SOURCES = ("static", "random_walk", "yfinance")


@dataclass
class EngineConfig:
    """Configuration for the valuation service."""
    portfolio_name: str = "Main Portfolio"
    base_currency: str = "USD"
    risk_free_rate: float = 0.0485

    # Monte Carlo pricing
    mc_paths: int = 50_000
    mc_steps: int = 50
    mc_seed: int = None  # None reseeds per call
    snapshot_mc_paths: int = 10_000

    # Risk
    var_confidence_levels: list = field(default_factory=lambda: [0.95, 0.99])
    var_horizons: list = field(default_factory=lambda: [1, 10])
    risk_simulations: int = 10_000
    assumed_drift: float = 0.08
    default_volatility: float = 0.20
    risk_seed: int = None

    # Broadcast
    subscriber_queue_size: int = 64
    overflow_policy: str = "coalesce"
    history_length: int = 300

    # Workers / market data
    worker_threads: int = 4
    price_source: str = "static"
    poll_interval: float = 5.0
    auto_register_equities: bool = True

    def __post_init__(self):
        if self.overflow_policy not in OVERFLOW_POLICIES:
            raise ConfigurationError(
                f"overflow_policy must be one of {OVERFLOW_POLICIES}, "
                f"got {self.overflow_policy!r}"
            )
        if self.price_source not in PRICE_SOURCES:
            raise ConfigurationError(
                f"price_source must be one of {PRICE_SOURCES}, got {self.price_source!r}"
            )
        if self.mc_paths < 2 or self.snapshot_mc_paths < 2:
            raise ConfigurationError("Monte Carlo path counts must be at least 2")
        if self.mc_steps < 1:
            raise ConfigurationError("mc_steps must be at least 1")
        if self.subscriber_queue_size < 1:
            raise ConfigurationError("subscriber_queue_size must be at least 1")
        if self.worker_threads < 1:
            raise ConfigurationError("worker_threads must be at least 1")
        for c in self.var_confidence_levels:
            if not 0.0 < c < 1.0:
                raise ConfigurationError(f"VaR confidence {c} must lie in (0, 1)")

    @classmethod
    def from_env(cls, environ=None, **overrides):
        """
        Build a config from ``VALUATION_<FIELD>`` environment variables.

        Lists are comma-separated, booleans accept 1/0/true/false/yes/no,
        an empty value for an optional integer (e.g. ``VALUATION_MC_SEED=``)
        means None. Explicit keyword overrides win over the environment.
        """
        environ = os.environ if environ is None else environ
        defaults = cls()
        kwargs = {}

        for f in fields(cls):
            key = ENV_PREFIX + f.name.upper()
            if key not in environ:
                continue
            raw = environ[key].strip()
            current = getattr(defaults, f.name)
            try:
                kwargs[f.name] = _parse_value(f.name, raw, current)
            except ValueError as e:
                raise ConfigurationError(f"Bad value for {key}: {raw!r} ({e})") from e

        kwargs.update(overrides)
        config = cls(**kwargs)
        if kwargs:
            logger.info(f"Engine config overrides: {sorted(kwargs)}")
        return config

    def to_dict(self):
        return asdict(self)


_OPTIONAL_INT_FIELDS = {"mc_seed", "risk_seed"}
_FLOAT_LIST_FIELDS = {"var_confidence_levels"}
_INT_LIST_FIELDS = {"var_horizons"}


def _parse_value(name, raw, current):
    if name in _OPTIONAL_INT_FIELDS:
        return int(raw) if raw else None
    if name in _FLOAT_LIST_FIELDS:
        return [float(x) for x in raw.split(",") if x.strip()]
    if name in _INT_LIST_FIELDS:
        return [int(x) for x in raw.split(",") if x.strip()]
    if isinstance(current, bool):
        lowered = raw.lower()
        if lowered in ("1", "true", "yes", "on"):
            return True
        if lowered in ("0", "false", "no", "off"):
            return False
        raise ValueError("expected a boolean")
    if isinstance(current, int):
        return int(raw.replace("_", ""))
    if isinstance(current, float):
        return float(raw)
    return raw
