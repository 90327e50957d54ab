"""Tests for the Django HTTP API and the WebSocket snapshot stream."""

import asyncio
import json
import os
import sys
from pathlib import Path

import pytest

WEB_DIR = Path(__file__).resolve().parent.parent / "web"
if str(WEB_DIR) not in sys.path:
    sys.path.insert(0, str(WEB_DIR))
os.environ.setdefault("DJANGO_SETTINGS_MODULE", "valuation_project.settings")

import django  # noqa: E402

django.setup()

from asgiref.sync import sync_to_async  # noqa: E402
from channels.testing import WebsocketCommunicator  # noqa: E402
from django.test import Client, RequestFactory  # noqa: E402

from portfolio_app import views  # noqa: E402
from portfolio_app.consumers import PortfolioConsumer  # noqa: E402
from portfolio_app.engine import ServiceHolder  # noqa: E402
from portfolio_app.serializers import _clean  # noqa: E402
from valuation_engine import EngineConfig, StaticPriceSource, ValuationService  # noqa: E402


@pytest.fixture
def service():
    svc = ServiceHolder.install(ValuationService(
        EngineConfig(mc_seed=1, risk_seed=1, snapshot_mc_paths=2_000, risk_simulations=5_000),
        price_source=StaticPriceSource(),
    ))
    yield svc
    ServiceHolder.shutdown()


@pytest.fixture
def client():
    return Client()


@pytest.fixture
def rf():
    return RequestFactory()


def _json(response):
    return json.loads(response.content)


def _post(client, path, payload):
    return client.post(path, data=json.dumps(payload), content_type="application/json")


def _put(client, path, payload):
    return client.put(path, data=json.dumps(payload), content_type="application/json")


def _option():
    from datetime import timedelta
    from valuation_engine import Option
    from valuation_engine.instruments import utcnow

    now = utcnow()
    return Option(
        symbol="AAPL 180C", underlying="AAPL", option_type="call", strike=180.0,
        expiry=now + timedelta(days=90), multiplier=100, created_at=now,
    )


async def _receive_type(communicator, message_type, timeout=5):
    """Next message of ``message_type``, skipping streamed snapshots."""
    while True:
        message = await communicator.receive_json_from(timeout=timeout)
        if message.get("type") == message_type:
            return message
        assert message.get("type") == "snapshot", message


# ── Positions ────────────────────────────────────────────────────────────

class TestPositionEndpoints:
    def test_add_position(self, service, client):
        resp = _post(client, "/api/portfolio/positions/",
                     {"symbol": "AAPL", "quantity": 100, "average_cost": 170})
        assert resp.status_code == 201
        body = _json(resp)
        assert body["status"] == "added"
        assert body["position_id"]

        listing = _json(client.get("/api/portfolio/positions/"))
        assert len(listing["positions"]) == 1
        assert listing["positions"][0]["quantity"] == 100

    def test_portfolio_view(self, service, client):
        _post(client, "/api/portfolio/positions/", {"symbol": "AAPL", "quantity": 100})
        _post(client, "/api/portfolio/positions/", {"symbol": "MSFT", "quantity": 50})
        body = _json(client.get("/api/portfolio/"))
        assert body["type"] == "snapshot"
        assert body["portfolio_value"] == pytest.approx(100 * 175.5 + 50 * 415.25)
        assert len(body["positions"]) == 2
        assert set(body["greeks"]) == {"delta", "gamma", "vega", "theta", "rho"}
        assert body["exposures"]["by_underlying"]["MSFT"] == pytest.approx(20762.5)

    def test_update_get_delete(self, service, client):
        pid = _json(_post(client, "/api/portfolio/positions/",
                          {"symbol": "AAPL", "quantity": 10}))["position_id"]
        url = f"/api/portfolio/positions/{pid}/"

        resp = _put(client, url, {"quantity": 25})
        assert resp.status_code == 200
        assert _json(resp)["status"] == "updated"
        assert _json(client.get(url))["quantity"] == 25

        resp = client.delete(url)
        assert _json(resp)["status"] == "deleted"
        resp = client.delete(url)
        assert resp.status_code == 404
        assert _json(resp)["error"] == "position_not_found"

    def test_missing_field(self, service, client):
        resp = _post(client, "/api/portfolio/positions/", {"symbol": "AAPL"})
        assert resp.status_code == 400
        assert _json(resp)["details"] == {"field": "quantity"}

    def test_malformed_json(self, service, client):
        resp = client.post("/api/portfolio/positions/", data="{not json",
                           content_type="application/json")
        assert resp.status_code == 400
        assert _json(resp)["error"] == "validation_error"

    def test_non_numeric_quantity(self, service, client):
        resp = _post(client, "/api/portfolio/positions/", {"symbol": "AAPL", "quantity": "ten"})
        assert resp.status_code == 400

    def test_unknown_instrument(self, service, client):
        resp = _post(client, "/api/portfolio/positions/", {"symbol": "not a symbol", "quantity": 1})
        assert resp.status_code == 404

    def test_method_not_allowed(self, service, client):
        resp = client.delete("/api/portfolio/positions/")
        assert resp.status_code == 405


# ── Prices and instruments ───────────────────────────────────────────────

class TestPriceAndInstrumentEndpoints:
    def test_update_price(self, service, client):
        _post(client, "/api/portfolio/positions/", {"symbol": "AAPL", "quantity": 10})
        resp = _post(client, "/api/update-price/", {"symbol": "AAPL", "price": 200})
        body = _json(resp)
        assert resp.status_code == 200
        assert body["status"] == "updated"
        assert body["price"] == 200.0
        assert _json(client.get("/api/portfolio/"))["portfolio_value"] == pytest.approx(2000.0)

    def test_update_price_rejects_non_positive(self, service, client):
        resp = _post(client, "/api/update-price/", {"symbol": "AAPL", "price": -1})
        assert resp.status_code == 400

    def test_update_price_get_not_allowed(self, service, client):
        assert client.get("/api/update-price/").status_code == 405

    def test_register_option(self, service, client):
        from datetime import timedelta
        from valuation_engine.instruments import utcnow

        resp = _post(client, "/api/instruments/", {
            "type": "option", "symbol": "AAPL 180C", "underlying": "AAPL",
            "option_type": "call", "strike": 180,
            "expiry": (utcnow() + timedelta(days=90)).isoformat(), "multiplier": 100,
        })
        assert resp.status_code == 201
        inst = _json(resp)
        assert inst["type"] == "option"

        _post(client, "/api/portfolio/positions/", {"symbol": inst["id"], "quantity": 2})
        body = _json(client.get("/api/portfolio/"))
        assert body["positions"][0]["model"] == "black_scholes"
        assert body["positions"][0]["market_value"] > 0

        listing = _json(client.get("/api/instruments/"))
        assert [i["symbol"] for i in listing["instruments"]] == ["AAPL 180C"]

    def test_delete_instrument_conflict_while_held(self, service, client):
        pid = _json(_post(client, "/api/portfolio/positions/",
                          {"symbol": "AAPL", "quantity": 10}))["position_id"]
        resp = client.delete("/api/instruments/AAPL/")
        assert resp.status_code == 409
        assert _json(resp)["error"] == "instrument_in_use"

        client.delete(f"/api/portfolio/positions/{pid}/")
        resp = client.delete("/api/instruments/AAPL/")
        assert resp.status_code == 200
        assert _json(resp)["instrument"]["symbol"] == "AAPL"
        assert client.get("/api/instruments/AAPL/").status_code == 404

    def test_value_instrument(self, service, client):
        opt = service.register_instrument(_option())
        body = _json(client.get(f"/api/instruments/{opt.id}/value/"))
        assert body["type"] == "valuation"
        assert body["model"] == "black_scholes"
        assert body["value"] > 0

        resp = client.get(f"/api/instruments/{opt.id}/value/?model=binomial")
        assert resp.status_code == 400

    def test_register_bad_instrument(self, service, client):
        resp = _post(client, "/api/instruments/", {"type": "swap", "symbol": "X"})
        assert resp.status_code == 400


# ── Transactions ─────────────────────────────────────────────────────────

class TestTransactionEndpoints:
    def test_buy_sell_rebuilds_positions(self, service, client):
        resp = _post(client, "/api/transactions/",
                     {"type": "BUY", "symbol": "AAPL", "quantity": 100, "price": 170})
        assert resp.status_code == 201
        assert _json(resp)["type"] == "BUY"
        _post(client, "/api/transactions/",
              {"type": "BUY", "symbol": "AAPL", "quantity": 50, "price": 180})
        _post(client, "/api/transactions/", {"type": "SELL", "symbol": "AAPL", "quantity": 120})

        positions = _json(client.get("/api/portfolio/positions/"))["positions"]
        assert [(p["quantity"], p["average_cost"]) for p in positions] == [(30, 180)]

        listing = _json(client.get("/api/transactions/"))["transactions"]
        assert [t["type"] for t in listing] == ["SELL", "BUY", "BUY"]
        assert len(_json(client.get("/api/transactions/?limit=1"))["transactions"]) == 1

    def test_oversell_is_rejected(self, service, client):
        _post(client, "/api/transactions/", {"type": "BUY", "symbol": "AAPL", "quantity": 1})
        resp = _post(client, "/api/transactions/", {"type": "SELL", "symbol": "AAPL", "quantity": 2})
        assert resp.status_code == 400

    def test_bad_type(self, service, client):
        resp = _post(client, "/api/transactions/", {"type": "GIFT", "symbol": "AAPL", "quantity": 1})
        assert resp.status_code == 400
        assert _json(resp)["details"] == {"field": "type"}

    def test_delete_one_and_clear(self, service, client):
        tx = _json(_post(client, "/api/transactions/",
                         {"type": "BUY", "symbol": "AAPL", "quantity": 10, "price": 1}))
        _post(client, "/api/transactions/", {"type": "BUY", "symbol": "MSFT", "quantity": 5})

        resp = client.delete(f"/api/transactions/{tx['id']}/")
        assert _json(resp)["status"] == "deleted"
        assert client.delete(f"/api/transactions/{tx['id']}/").status_code == 404

        body = _json(client.delete("/api/transactions/"))
        assert body == {"status": "cleared", "symbols": ["MSFT"]}
        assert _json(client.get("/api/portfolio/positions/"))["positions"] == []


# ── Analysis ─────────────────────────────────────────────────────────────

class TestAnalysisEndpoints:
    def test_risk(self, service, client):
        _post(client, "/api/portfolio/positions/", {"symbol": "AAPL", "quantity": 100})
        body = _json(client.get("/api/portfolio/analysis/risk/"))
        assert body["type"] == "risk"
        assert len(body["var"]) == 4
        assert all(v["value"] > 0 for v in body["var"])

    def test_risk_bad_param(self, service, client):
        resp = client.get("/api/portfolio/analysis/risk/?volatility=abc")
        assert resp.status_code == 400

    def test_stress_default(self, service, client):
        _post(client, "/api/portfolio/positions/", {"symbol": "AAPL", "quantity": 100})
        body = _json(client.get("/api/portfolio/analysis/stress/"))
        assert body["type"] == "stress"
        assert len(body["results"]) == 7
        assert body["results"][0]["pnl"] == pytest.approx(-0.2 * 17550.0)

    def test_stress_custom_zero(self, service, client):
        _post(client, "/api/portfolio/positions/", {"symbol": "AAPL", "quantity": 100})
        body = _json(client.get("/api/portfolio/analysis/stress/?kind=price&magnitude=0"))
        assert body["results"][0]["pnl"] == 0.0

    def test_stress_bad_kind(self, service, client):
        resp = client.get("/api/portfolio/analysis/stress/?kind=weather&magnitude=0.1")
        assert resp.status_code == 400

    def test_performance_without_history(self, service, client):
        resp = client.get("/api/portfolio/analysis/performance/")
        assert resp.status_code == 400
        assert _json(resp)["error"] == "invalid_input"

    def test_performance(self, service, client):
        _post(client, "/api/portfolio/positions/", {"symbol": "AAPL", "quantity": 10})
        for price in (176, 178, 177):
            _post(client, "/api/update-price/", {"symbol": "AAPL", "price": price})
        service.flush(5)
        body = _json(client.get("/api/portfolio/analysis/performance/"))
        assert body["type"] == "performance"
        assert body["n_observations"] >= 3


# ── Plumbing ─────────────────────────────────────────────────────────────

class TestPlumbing:
    def test_health_via_factory(self, service, rf):
        resp = views.health(rf.get("/api/health/"))
        assert resp.status_code == 200
        assert _json(resp)["status"] == "ok"

    def test_cors_headers(self, service, client):
        resp = client.get("/api/health/", HTTP_ORIGIN="http://dashboard.example")
        assert resp["Access-Control-Allow-Origin"] == "*"

    def test_no_cors_headers_without_origin(self, service, client):
        resp = client.get("/api/health/")
        assert "Access-Control-Allow-Origin" not in resp

    def test_cors_preflight(self, service, client):
        resp = client.options("/api/portfolio/positions/",
                              HTTP_ORIGIN="http://dashboard.example",
                              HTTP_ACCESS_CONTROL_REQUEST_METHOD="POST")
        assert resp.status_code == 200
        assert "POST" in resp["Access-Control-Allow-Methods"]
        assert "DELETE" in resp["Access-Control-Allow-Methods"]

    def test_clean_non_finite(self):
        import numpy as np
        assert _clean({"a": float("nan"), "b": [np.float64(1.5), float("inf")]}) == {
            "a": None, "b": [1.5, None],
        }

    def test_holder_install_closes_previous(self, service):
        replacement = ValuationService(EngineConfig(), price_source=StaticPriceSource())
        ServiceHolder.install(replacement)
        assert ServiceHolder.instance() is replacement
        assert not service.publisher.is_running


# ── WebSocket ────────────────────────────────────────────────────────────

class TestPortfolioConsumer:
    def test_stream(self, service):
        service.add_position("AAPL", 10)

        async def run():
            communicator = WebsocketCommunicator(PortfolioConsumer.as_asgi(), "/ws/portfolio/")
            connected, _ = await communicator.connect()
            assert connected

            first = await communicator.receive_json_from(timeout=5)
            assert first["type"] == "snapshot"
            assert first["portfolio_value"] == pytest.approx(1755.0)

            await sync_to_async(service.update_price)("AAPL", 200.0)
            update = await communicator.receive_json_from(timeout=5)
            assert update["portfolio_value"] == pytest.approx(2000.0)
            assert update["sequence"] == first["sequence"] + 1

            await communicator.send_json_to({"action": "ping"})
            assert await communicator.receive_json_from(timeout=5) == {"type": "pong"}

            await communicator.send_json_to({"action": "snapshot"})
            reply = await communicator.receive_json_from(timeout=5)
            assert reply["type"] == "snapshot_reply"

            await communicator.send_json_to({"action": "dance"})
            assert (await communicator.receive_json_from(timeout=5))["type"] == "error"

            await communicator.disconnect()

        asyncio.run(run())
        assert service.hub.subscriber_count == 0

    def test_value_and_cancel_actions(self, service):
        from valuation_engine import MonteCarloModel

        opt = service.register_instrument(_option())
        service.models["monte_carlo"] = MonteCarloModel(
            n_paths=50_000_000, n_steps=10, batch_size=5_000, seed=1,
        )

        async def run():
            communicator = WebsocketCommunicator(PortfolioConsumer.as_asgi(), "/ws/portfolio/")
            await communicator.connect()

            await communicator.send_json_to({"action": "value", "instrument_id": opt.id,
                                             "request_id": "bs"})
            started = await _receive_type(communicator, "valuation_started")
            assert started["request_id"] == "bs"
            result = await _receive_type(communicator, "valuation")
            assert result["request_id"] == "bs"
            assert result["model"] == "black_scholes"

            await communicator.send_json_to({"action": "value", "instrument_id": opt.id,
                                             "model": "monte_carlo", "request_id": "mc"})
            await _receive_type(communicator, "valuation_started")
            await communicator.send_json_to({"action": "cancel", "request_id": "mc"})
            error = await _receive_type(communicator, "error", timeout=30)
            assert error["request_id"] == "mc"
            assert error["error"] == "cancelled"

            await communicator.send_json_to({"action": "cancel", "request_id": "mc"})
            assert (await _receive_type(communicator, "error"))["request_id"] == "mc"

            await communicator.send_json_to({"action": "value", "instrument_id": "nope"})
            assert (await _receive_type(communicator, "error"))["error"] == "instrument_not_found"

            await communicator.disconnect()

        asyncio.run(run())

    def test_disconnect_cancels_running_valuation(self, service, monkeypatch):
        from valuation_engine import Cancelled, MonteCarloModel

        opt = service.register_instrument(_option())
        service.models["monte_carlo"] = MonteCarloModel(
            n_paths=50_000_000, n_steps=10, batch_size=5_000, seed=1,
        )
        started = []
        original = service.value_instrument

        def spy(*args, **kwargs):
            task = original(*args, **kwargs)
            started.append(task)
            return task

        monkeypatch.setattr(service, "value_instrument", spy)

        async def run():
            communicator = WebsocketCommunicator(PortfolioConsumer.as_asgi(), "/ws/portfolio/")
            await communicator.connect()
            await communicator.send_json_to({"action": "value", "instrument_id": opt.id,
                                             "model": "monte_carlo"})
            await _receive_type(communicator, "valuation_started")
            await communicator.disconnect()

        asyncio.run(run())
        (task,) = started
        with pytest.raises(Cancelled):
            task.result(timeout=10)
        assert task.done()

    def test_many_sockets_all_receive_updates(self, service):
        service.add_position("AAPL", 10)

        async def run():
            communicators = [
                WebsocketCommunicator(PortfolioConsumer.as_asgi(), "/ws/portfolio/")
                for _ in range(40)
            ]
            for communicator in communicators:
                connected, _ = await communicator.connect()
                assert connected
                await communicator.receive_json_from(timeout=5)

            await sync_to_async(service.update_price)("AAPL", 200.0)
            for communicator in communicators:
                update = await communicator.receive_json_from(timeout=5)
                assert update["portfolio_value"] == pytest.approx(2000.0)

            for communicator in communicators:
                await communicator.disconnect()

        asyncio.run(run())
        assert service.hub.subscriber_count == 0
