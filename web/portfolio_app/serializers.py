"""
Turn engine objects into JSON-ready dicts for the HTTP views and the
WebSocket stream.
"""

import math

import numpy as np


def _clean(value):
    """numpy scalars -> Python, non-finite floats -> None (JSON has no NaN)."""
    if isinstance(value, dict):
        return {k: _clean(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_clean(v) for v in value]
    if isinstance(value, np.generic):
        value = value.item()
    if isinstance(value, float) and not math.isfinite(value):
        return None
    return value


def serialize_snapshot(snapshot, message_type="snapshot"):
    """``{type, timestamp, portfolio_value, positions[], ...}``."""
    payload = snapshot.to_dict()
    payload["type"] = message_type
    return _clean(payload)


def serialize_position(position):
    return _clean(position.to_dict())


def serialize_instrument(instrument):
    return _clean(instrument.to_dict())


def serialize_ack(ack):
    return _clean(ack.to_dict())


def serialize_risk(metrics):
    payload = metrics.to_dict()
    payload["type"] = "risk"
    return _clean(payload)


def serialize_performance(metrics):
    payload = metrics.to_dict()
    payload["type"] = "performance"
    return _clean(payload)


def serialize_stress(results):
    return {
        "type": "stress",
        "results": [_clean(r.to_dict()) for r in results],
    }


def serialize_error(error):
    return _clean(error.to_dict())


def serialize_valuation(result, request_id=None):
    payload = result.to_dict()
    payload["type"] = "valuation"
    if request_id is not None:
        payload["request_id"] = request_id
    return _clean(payload)


def serialize_transaction(transaction):
    return _clean(transaction.to_dict())
