"""
Instrument model — typed descriptions of tradeable instruments.

Instruments are plain value objects. They know nothing about prices; the
market context supplies spot, rates and vols at valuation time. Invariants
(positive strike, non-negative vol, expiry after creation) are checked on
construction so a bad instrument can never reach a pricing model.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from .errors import ValidationError

SECONDS_PER_YEAR = 365.25 * 24.0 * 3600.0


class InstrumentType(Enum):
    STOCK = "stock"
    OPTION = "option"


class OptionType(Enum):
    CALL = "call"
    PUT = "put"


class ExerciseStyle(Enum):
    EUROPEAN = "european"
    AMERICAN = "american"


def utcnow():
    return datetime.now(timezone.utc)


def _new_id():
    return str(uuid.uuid4())


def year_fraction(start, end):
    """ACT/365.25 year fraction between two aware datetimes."""
    return (end - start).total_seconds() / SECONDS_PER_YEAR


def _coerce_enum(enum_cls, value, what):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).lower())
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValidationError(f"Unknown {what} {value!r} (expected one of: {allowed})")


@dataclass(frozen=True)
class Instrument:
    """Base class: identity, symbol and currency."""
    symbol: str
    currency: str = "USD"
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=utcnow)

    instrument_type = None

    def __post_init__(self):
        if not self.symbol or not str(self.symbol).strip():
            raise ValidationError("Instrument symbol must be a non-empty string")
        if not self.currency:
            raise ValidationError("Instrument currency must be set")

    @property
    def is_derivative(self):
        return False

    @property
    def pricing_symbol(self):
        """The symbol whose market price drives this instrument."""
        return self.symbol

    def to_dict(self):
        return {
            "id": self.id,
            "symbol": self.symbol,
            "currency": self.currency,
            "type": self.instrument_type.value,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class Stock(Instrument):
    """Equity priced directly off its last traded price."""
    shares: float = 1.0
    volatility: float = 0.0
    dividend_yield: float = 0.0
    sector: str = None

    instrument_type = InstrumentType.STOCK

    def __post_init__(self):
        super().__post_init__()
        if self.shares <= 0:
            raise ValidationError(f"Stock {self.symbol}: share basis must be positive")
        if self.volatility < 0:
            raise ValidationError(f"Stock {self.symbol}: volatility must be >= 0")

    def to_dict(self):
        d = super().to_dict()
        d.update({
            "shares": self.shares,
            "volatility": self.volatility,
            "dividend_yield": self.dividend_yield,
            "sector": self.sector,
        })
        return d


@dataclass(frozen=True)
class Option(Instrument):
    """
    Listed option on an underlying symbol.

    ``multiplier`` is the number of underlying units per contract (100 for
    US equity options). ``volatility`` overrides the underlying's vol from
    the market context when set.
    """
    underlying: str = None
    option_type: OptionType = OptionType.CALL
    strike: float = 0.0
    expiry: datetime = None
    multiplier: float = 1.0
    exercise_style: ExerciseStyle = ExerciseStyle.EUROPEAN
    volatility: float = None

    instrument_type = InstrumentType.OPTION

    def __post_init__(self):
        super().__post_init__()
        object.__setattr__(self, "option_type",
                           _coerce_enum(OptionType, self.option_type, "option type"))
        object.__setattr__(self, "exercise_style",
                           _coerce_enum(ExerciseStyle, self.exercise_style, "exercise style"))
        if not self.underlying:
            raise ValidationError(f"Option {self.symbol}: underlying symbol is required")
        if self.strike <= 0:
            raise ValidationError(f"Option {self.symbol}: strike must be > 0")
        if self.expiry is None:
            raise ValidationError(f"Option {self.symbol}: expiry is required")
        if self.expiry.tzinfo is None:
            object.__setattr__(self, "expiry", self.expiry.replace(tzinfo=timezone.utc))
        if self.expiry <= self.created_at:
            raise ValidationError(
                f"Option {self.symbol}: expiry {self.expiry.isoformat()} must be after "
                f"creation time {self.created_at.isoformat()}"
            )
        if self.multiplier <= 0:
            raise ValidationError(f"Option {self.symbol}: multiplier must be > 0")
        if self.volatility is not None and self.volatility < 0:
            raise ValidationError(f"Option {self.symbol}: volatility must be >= 0")

    @property
    def is_derivative(self):
        return True

    @property
    def is_call(self):
        return self.option_type is OptionType.CALL

    @property
    def pricing_symbol(self):
        return self.underlying

    def time_to_expiry(self, as_of):
        """Years from ``as_of`` to expiry (negative once expired)."""
        return year_fraction(as_of, self.expiry)

    def intrinsic(self, spot):
        if self.is_call:
            return max(spot - self.strike, 0.0)
        return max(self.strike - spot, 0.0)

    def to_dict(self):
        d = super().to_dict()
        d.update({
            "underlying": self.underlying,
            "option_type": self.option_type.value,
            "strike": self.strike,
            "expiry": self.expiry.isoformat(),
            "multiplier": self.multiplier,
            "exercise_style": self.exercise_style.value,
            "volatility": self.volatility,
        })
        return d


def instrument_from_dict(data):
    """Build a Stock or Option from a request payload."""
    kind = str(data.get("type", "stock")).lower()
    common = {"symbol": data.get("symbol"), "currency": data.get("currency", "USD")}
    if data.get("id"):
        common["id"] = data["id"]

    try:
        if kind == InstrumentType.STOCK.value:
            return Stock(
                shares=float(data.get("shares", 1.0)),
                volatility=float(data.get("volatility", 0.0)),
                dividend_yield=float(data.get("dividend_yield", 0.0)),
                sector=data.get("sector"),
                **common,
            )
        if kind == InstrumentType.OPTION.value:
            expiry = data.get("expiry")
            if isinstance(expiry, str):
                expiry = datetime.fromisoformat(expiry)
            vol = data.get("volatility")
            return Option(
                underlying=data.get("underlying"),
                option_type=data.get("option_type", "call"),
                strike=float(data.get("strike", 0.0)),
                expiry=expiry,
                multiplier=float(data.get("multiplier", 1.0)),
                exercise_style=data.get("exercise_style", "european"),
                volatility=None if vol is None else float(vol),
                **common,
            )
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Invalid instrument payload: {e}")

    raise ValidationError(f"Unknown instrument type {kind!r}")
