"""
Transaction Ledger — BUY / SELL history folded into open lots.

Every BUY opens a lot at its price; a SELL closes quantity from the oldest
lots first (FIFO). The ledger only records and folds; ``ValuationService``
turns the open lots into portfolio positions (one position per lot).

    ledger = TransactionLedger()
    ledger.record("BUY", "AAPL", 100, 170.0)
    ledger.record("BUY", "AAPL", 50, 180.0)
    ledger.record("SELL", "AAPL", 120)
    ledger.lots("AAPL")   # [Lot(quantity=30, price=180.0)]
"""

import logging
import math
import threading
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from .errors import NotFound, ValidationError
from .instruments import utcnow

logger = logging.getLogger(__name__)

_EPSILON = 1e-9


def _parse_timestamp(value):
    if isinstance(value, datetime):
        ts = value
    else:
        try:
            ts = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            raise ValidationError(f"timestamp must be ISO-8601, got {value!r}",
                                  field="timestamp") from None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


class TransactionSide(Enum):
    BUY = "BUY"
    SELL = "SELL"


@dataclass(frozen=True)
class Transaction:
    side: TransactionSide
    symbol: str
    quantity: float
    price: float = None
    timestamp: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    sequence: int = 0  # tie-break for equal timestamps

    def to_dict(self):
        return {
            "id": self.id,
            "type": self.side.value,
            "symbol": self.symbol,
            "quantity": self.quantity,
            "price": self.price,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class Lot:
    """Open quantity left from one BUY."""
    transaction_id: str
    symbol: str
    quantity: float
    price: float = None
    opened_at: datetime = None


def compute_lots(transactions, strict=False):
    """
    Fold transactions (in timestamp order) into ``{symbol: [Lot, ...]}``.

    A SELL larger than the open quantity closes everything; with
    ``strict=True`` it raises ValidationError instead.
    """
    open_lots = OrderedDict()
    for tx in sorted(transactions, key=lambda t: (t.timestamp, t.sequence)):
        lots = open_lots.setdefault(tx.symbol, [])
        if tx.side is TransactionSide.BUY:
            lots.append([tx.id, tx.quantity, tx.price, tx.timestamp])
            continue

        held = math.fsum(lot[1] for lot in lots)
        if strict and tx.quantity > held + _EPSILON:
            raise ValidationError(
                f"Cannot sell {tx.quantity:g} {tx.symbol}: only {held:g} held "
                f"at {tx.timestamp.isoformat()}",
                symbol=tx.symbol, held=held,
            )
        to_sell = tx.quantity
        for lot in lots:
            if to_sell <= 0:
                break
            closed = min(lot[1], to_sell)
            lot[1] -= closed
            to_sell -= closed
        open_lots[tx.symbol] = [lot for lot in lots if lot[1] > _EPSILON]

    return OrderedDict(
        (symbol, [Lot(tid, symbol, qty, price, opened) for tid, qty, price, opened in lots])
        for symbol, lots in open_lots.items()
    )


class TransactionLedger:
    """Thread-safe, in-memory transaction history."""

    def __init__(self):
        self._lock = threading.Lock()
        self._transactions = []
        self._sequence = 0

    @staticmethod
    def _build(side, symbol, quantity, price, timestamp, sequence):
        try:
            side = TransactionSide(str(side).upper())
        except ValueError:
            raise ValidationError(f"Unknown transaction type {side!r} (expected BUY or SELL)",
                                  field="type") from None
        if not symbol:
            raise ValidationError("symbol is required", field="symbol")
        if isinstance(quantity, bool) or not isinstance(quantity, (int, float)) \
                or not math.isfinite(quantity) or quantity <= 0:
            raise ValidationError(f"quantity must be a positive number, got {quantity!r}",
                                  field="quantity")
        if price is not None:
            if isinstance(price, bool) or not isinstance(price, (int, float)) \
                    or not math.isfinite(price) or price < 0:
                raise ValidationError(f"price must be >= 0, got {price!r}", field="price")
            price = float(price)
        timestamp = utcnow() if timestamp is None else _parse_timestamp(timestamp)
        return Transaction(side=side, symbol=symbol, quantity=float(quantity), price=price,
                           timestamp=timestamp, sequence=sequence)

    def record(self, side, symbol, quantity, price=None, timestamp=None):
        """Append a transaction. Rejects a SELL that would close more than is held."""
        with self._lock:
            tx = self._build(side, symbol, quantity, price, timestamp, self._sequence + 1)
            compute_lots(self._transactions + [tx], strict=True)
            self._sequence += 1
            self._transactions.append(tx)
        logger.info(f"Recorded {tx.side.value} {tx.quantity:g} {tx.symbol}"
                    + (f" @ {tx.price:,.2f}" if tx.price is not None else ""))
        return tx

    def remove(self, transaction_id):
        """Drop one transaction; later SELLs must still be covered."""
        with self._lock:
            remaining = [t for t in self._transactions if t.id != transaction_id]
            if len(remaining) == len(self._transactions):
                raise NotFound(f"Transaction {transaction_id} not found",
                               transaction_id=transaction_id)
            compute_lots(remaining, strict=True)
            removed = next(t for t in self._transactions if t.id == transaction_id)
            self._transactions = remaining
        logger.info(f"Removed transaction {transaction_id} ({removed.symbol})")
        return removed

    def clear(self):
        with self._lock:
            symbols = sorted({t.symbol for t in self._transactions})
            self._transactions = []
        logger.info(f"Cleared transactions for {symbols}")
        return symbols

    def transactions(self, limit=None):
        """Newest first."""
        with self._lock:
            ordered = sorted(self._transactions, key=lambda t: (t.timestamp, t.sequence),
                             reverse=True)
        return ordered[:limit] if limit else ordered

    def lots(self, symbol=None):
        with self._lock:
            folded = compute_lots(self._transactions)
        if symbol is not None:
            return folded.get(symbol, [])
        return folded

    def symbols(self):
        with self._lock:
            return sorted({t.symbol for t in self._transactions})

    def __len__(self):
        with self._lock:
            return len(self._transactions)

    def __repr__(self):
        return f"TransactionLedger({len(self)} transactions)"
