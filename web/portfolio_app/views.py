import concurrent.futures
import functools
import json
import logging

from django.http import JsonResponse
from django.views.decorators.csrf import csrf_exempt

from valuation_engine import StressScenario, ValidationError, ValuationError

from portfolio_app.engine import ServiceHolder
from portfolio_app.serializers import (
    serialize_ack,
    serialize_error,
    serialize_instrument,
    serialize_performance,
    serialize_position,
    serialize_risk,
    serialize_snapshot,
    serialize_stress,
    serialize_transaction,
    serialize_valuation,
)

logger = logging.getLogger("portfolio_app")

VALUATION_TIMEOUT = 30.0
TRANSACTION_LIMIT = 200


def _body(request):
    if not request.body:
        return {}
    try:
        data = json.loads(request.body)
    except (ValueError, UnicodeDecodeError) as e:
        raise ValidationError(f"Malformed JSON body: {e}")
    if not isinstance(data, dict):
        raise ValidationError("JSON body must be an object")
    return data


def _required(data, key):
    if data.get(key) in (None, ""):
        raise ValidationError(f"Missing required field {key!r}", field=key)
    return data[key]


def _number(value, name):
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be a number, got {value!r}", field=name) from None


def _optional_number(params, name):
    raw = params.get(name)
    return None if raw in (None, "") else _number(raw, name)


def api_view(*methods):
    """JSON endpoint: method check, CSRF exemption, engine errors -> status codes."""
    def decorator(fn):
        @csrf_exempt
        @functools.wraps(fn)
        def wrapper(request, *args, **kwargs):
            if request.method not in methods:
                return JsonResponse(
                    {"error": "method_not_allowed", "message": f"{request.method} not allowed"},
                    status=405,
                )
            try:
                return fn(request, *args, **kwargs)
            except ValuationError as e:
                if e.status >= 500:
                    logger.error(f"{request.method} {request.path} failed: {e}")
                return JsonResponse(serialize_error(e), status=e.status)
        return wrapper
    return decorator


@api_view("GET")
def health(request):
    return JsonResponse(ServiceHolder.instance().health())


@api_view("GET")
def portfolio(request):
    return JsonResponse(serialize_snapshot(ServiceHolder.instance().snapshot()))


@api_view("GET", "POST")
def positions(request):
    service = ServiceHolder.instance()
    if request.method == "GET":
        return JsonResponse({"positions": [serialize_position(p) for p in service.positions()]})

    data = _body(request)
    symbol = _required(data, "symbol")
    quantity = _number(_required(data, "quantity"), "quantity")
    avg = data.get("average_cost")
    ack = service.add_position(symbol, quantity,
                               average_cost=None if avg is None else _number(avg, "average_cost"))
    return JsonResponse(serialize_ack(ack), status=201)


@api_view("GET", "PUT", "DELETE")
def position_detail(request, position_id):
    service = ServiceHolder.instance()
    if request.method == "GET":
        return JsonResponse(serialize_position(service.aggregator.get_position(position_id)))

    if request.method == "DELETE":
        return JsonResponse(serialize_ack(service.remove_position(position_id)))

    data = _body(request)
    quantity = _number(_required(data, "quantity"), "quantity")
    avg = data.get("average_cost")
    ack = service.update_position(position_id, quantity,
                                  average_cost=None if avg is None else _number(avg, "average_cost"))
    return JsonResponse(serialize_ack(ack))


@api_view("POST")
def update_price(request):
    data = _body(request)
    symbol = _required(data, "symbol")
    price = _number(_required(data, "price"), "price")
    ack = ServiceHolder.instance().update_price(symbol, price)
    return JsonResponse(serialize_ack(ack))


@api_view("GET")
def risk_analysis(request):
    metrics = ServiceHolder.instance().risk_metrics(
        volatility=_optional_number(request.GET, "volatility"),
        drift=_optional_number(request.GET, "drift"),
    )
    return JsonResponse(serialize_risk(metrics))


@api_view("GET")
def performance_analysis(request):
    return JsonResponse(serialize_performance(ServiceHolder.instance().performance_metrics()))


@api_view("GET")
def stress_analysis(request):
    """Default scenarios, or one custom scenario via ``?kind=price&magnitude=-0.1``."""
    scenarios = None
    if request.GET.get("kind"):
        scenarios = [StressScenario(
            name=request.GET.get("name", "Custom"),
            kind=request.GET["kind"],
            magnitude=_number(request.GET.get("magnitude", 0), "magnitude"),
        )]
    return JsonResponse(serialize_stress(ServiceHolder.instance().stress_test(scenarios)))


@api_view("GET", "POST")
def instruments(request):
    service = ServiceHolder.instance()
    if request.method == "GET":
        return JsonResponse({"instruments": [serialize_instrument(i) for i in service.instruments()]})
    instrument = service.register_instrument(_body(request))
    return JsonResponse(serialize_instrument(instrument), status=201)


@api_view("GET", "DELETE")
def instrument_detail(request, instrument_id):
    """Look up by id or symbol; DELETE answers 409 while positions still hold it."""
    service = ServiceHolder.instance()
    if request.method == "GET":
        return JsonResponse(serialize_instrument(service.aggregator.find_instrument(instrument_id)))
    instrument = service.remove_instrument(instrument_id)
    return JsonResponse({"status": "deleted", "instrument": serialize_instrument(instrument)})


@api_view("GET")
def instrument_value(request, instrument_id):
    """One-off valuation, ``?model=black_scholes|monte_carlo``; abandoned on timeout."""
    service = ServiceHolder.instance()
    task = service.value_instrument(instrument_id, model=request.GET.get("model") or None)
    timeout = _optional_number(request.GET, "timeout") or VALUATION_TIMEOUT
    try:
        result = task.result(timeout=timeout)
    except concurrent.futures.TimeoutError:
        task.cancel()
        return JsonResponse(
            {"error": "timeout", "message": f"Valuation did not finish within {timeout:g}s"},
            status=504,
        )
    return JsonResponse(serialize_valuation(result))


@api_view("GET", "POST", "DELETE")
def transactions(request):
    """BUY/SELL history; positions are rebuilt from its FIFO lots on every change."""
    service = ServiceHolder.instance()
    if request.method == "GET":
        limit = request.GET.get("limit") or TRANSACTION_LIMIT
        try:
            limit = int(limit)
        except ValueError:
            raise ValidationError(f"limit must be an integer, got {limit!r}", field="limit") from None
        return JsonResponse({
            "transactions": [serialize_transaction(t) for t in service.transactions(limit)],
        })

    if request.method == "DELETE":
        symbols = service.clear_transactions()
        return JsonResponse({"status": "cleared", "symbols": symbols})

    data = _body(request)
    price = data.get("price")
    tx = service.record_transaction(
        _required(data, "type"),
        _required(data, "symbol"),
        _number(_required(data, "quantity"), "quantity"),
        price=None if price is None else _number(price, "price"),
        timestamp=data.get("timestamp"),
    )
    return JsonResponse(serialize_transaction(tx), status=201)


@api_view("DELETE")
def transaction_detail(request, transaction_id):
    tx = ServiceHolder.instance().remove_transaction(transaction_id)
    return JsonResponse({"status": "deleted", "transaction": serialize_transaction(tx)})
