"""Tests for the portfolio aggregator, frozen states and snapshots."""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from valuation_engine import (
    BlackScholesModel,
    InstrumentInUse,
    InstrumentNotFound,
    MonteCarloModel,
    NotFound,
    Option,
    PortfolioAggregator,
    PositionNotFound,
    Stock,
    ValidationError,
    black_scholes_price,
)
from valuation_engine.instruments import utcnow


def _book(listener=None):
    agg = PortfolioAggregator(
        name="Test Book",
        risk_free_rate=0.05,
        american_model=MonteCarloModel(n_paths=4_000, n_steps=10, seed=1),
        listener=listener,
    )
    aapl = agg.register_instrument(Stock(symbol="AAPL", volatility=0.25))
    msft = agg.register_instrument(Stock(symbol="MSFT", volatility=0.22))
    agg.update_prices({"AAPL": 175.5, "MSFT": 415.25})
    return agg, aapl, msft


def _call(strike=180.0, style="european", days=180):
    now = utcnow()
    return Option(
        symbol=f"AAPL {strike:g}C", underlying="AAPL", option_type="call",
        strike=strike, expiry=now + timedelta(days=days), exercise_style=style,
        multiplier=100, created_at=now,
    )


# ── Positions ────────────────────────────────────────────────────────────

class TestPositions:
    def test_total_value(self):
        agg, _, _ = _book()
        agg.add_position("AAPL", 100, 170.0)
        agg.add_position("MSFT", 50, 400.0)
        assert agg.total_value() == pytest.approx(100 * 175.5 + 50 * 415.25)

    def test_add_then_remove_restores_total(self):
        agg, _, _ = _book()
        agg.add_position("AAPL", 100)
        before = agg.total_value()
        pos = agg.add_position("MSFT", 37)
        agg.remove_position(pos.id)
        assert agg.total_value() == before

    def test_resolves_by_id_or_symbol(self):
        agg, aapl, _ = _book()
        by_id = agg.add_position(aapl.id, 1)
        by_symbol = agg.add_position("AAPL", 2)
        assert by_id.instrument_id == by_symbol.instrument_id == aapl.id

    def test_unknown_instrument(self):
        agg, _, _ = _book()
        with pytest.raises(InstrumentNotFound):
            agg.add_position("TSLA", 10)

    def test_invalid_quantity(self):
        agg, _, _ = _book()
        with pytest.raises(ValidationError):
            agg.add_position("AAPL", float("nan"))
        with pytest.raises(ValidationError):
            agg.add_position("AAPL", "ten")
        with pytest.raises(ValidationError):
            agg.add_position("AAPL", 10, average_cost=-1.0)

    def test_update_position(self):
        agg, _, _ = _book()
        pos = agg.add_position("AAPL", 100, 170.0)
        updated = agg.update_position(pos.id, 150, 172.0)
        assert updated.quantity == 150
        assert updated.average_cost == 172.0
        assert agg.total_value() == pytest.approx(150 * 175.5)

    def test_update_rejects_negative_cost(self):
        agg, _, _ = _book()
        pos = agg.add_position("AAPL", 100, 170.0)
        version = agg.version
        with pytest.raises(ValidationError):
            agg.update_position(pos.id, 150, -1.0)
        assert agg.version == version
        kept = agg.get_position(pos.id)
        assert kept.quantity == 100
        assert kept.average_cost == 170.0

    def test_update_unknown(self):
        agg, _, _ = _book()
        with pytest.raises(PositionNotFound):
            agg.update_position("nope", 1)

    def test_remove_twice_is_not_found(self):
        agg, _, _ = _book()
        pos = agg.add_position("AAPL", 10)
        agg.remove_position(pos.id)
        with pytest.raises(NotFound):
            agg.remove_position(pos.id)

    def test_zero_quantity_pruned(self):
        agg, _, _ = _book()
        pos = agg.add_position("AAPL", 10)
        agg.update_position(pos.id, 0)
        assert agg.positions() == []
        with pytest.raises(PositionNotFound):
            agg.get_position(pos.id)

    def test_short_position(self):
        agg, _, _ = _book()
        agg.add_position("AAPL", 100)
        agg.add_position("MSFT", -10)
        snap = agg.snapshot()
        assert snap.total_value == pytest.approx(100 * 175.5 - 10 * 415.25)
        short = [p for p in snap.positions if p.quantity < 0][0]
        assert short.market_value == pytest.approx(-4152.5)

    def test_returned_position_is_a_copy(self):
        agg, _, _ = _book()
        pos = agg.add_position("AAPL", 10)
        copy = agg.get_position(pos.id)
        copy.quantity = 999
        assert agg.get_position(pos.id).quantity == 10


# ── Instruments ──────────────────────────────────────────────────────────

class TestInstruments:
    def test_duplicate_registration(self):
        agg, aapl, _ = _book()
        with pytest.raises(ValidationError):
            agg.register_instrument(aapl)

    def test_remove_held_instrument(self):
        agg, aapl, _ = _book()
        agg.add_position(aapl.id, 1)
        with pytest.raises(InstrumentInUse) as exc:
            agg.remove_instrument(aapl.id)
        assert exc.value.status == 409
        assert agg.find_instrument("AAPL") is aapl

    def test_remove_instrument(self):
        agg, _, msft = _book()
        agg.remove_instrument(msft.id)
        with pytest.raises(InstrumentNotFound):
            agg.find_instrument("MSFT")
        with pytest.raises(InstrumentNotFound):
            agg.remove_instrument(msft.id)

    def test_stock_seeds_volatility(self):
        agg, _, _ = _book()
        assert agg.state().context.volatility("AAPL") == 0.25

    def test_symbols(self):
        agg, _, _ = _book()
        agg.register_instrument(Option(
            symbol="GOOGL 150C", underlying="GOOGL", option_type="call", strike=150,
            expiry=utcnow() + timedelta(days=30),
        ))
        assert agg.symbols() == ["AAPL", "GOOGL", "MSFT"]


# ── Valuation ────────────────────────────────────────────────────────────

class TestValuation:
    def test_option_position(self):
        agg, _, _ = _book()
        opt = agg.register_instrument(_call())
        agg.add_position(opt.id, 10)
        snap = agg.snapshot()
        val = snap.positions[0]
        T = opt.time_to_expiry(snap.timestamp)
        expected = black_scholes_price(175.5, 180.0, 0.05, 0.25, T) * 100 * 10
        assert val.model == "black_scholes"
        assert val.market_value == pytest.approx(expected, rel=1e-9)
        assert val.greeks.delta > 0

    def test_american_option_uses_monte_carlo(self):
        agg, _, _ = _book()
        opt = agg.register_instrument(_call(style="american"))
        agg.add_position(opt.id, 1)
        val = agg.snapshot().positions[0]
        assert val.model == "monte_carlo_lsm"
        assert val.standard_error > 0
        assert not val.stale

    def test_unseeded_monte_carlo_is_stable_within_a_state(self):
        agg = PortfolioAggregator(
            risk_free_rate=0.05,
            american_model=MonteCarloModel(n_paths=2_000, n_steps=10),
        )
        agg.register_instrument(Stock(symbol="AAPL", volatility=0.25))
        agg.update_price("AAPL", 175.5)
        opt = agg.register_instrument(_call(style="american"))
        agg.add_position(opt.id, 3)

        state = agg.state()
        first = agg.value_state(state).total_value
        assert agg.value_state(state).total_value == first
        # a fresh capture at the same version only moves as_of by microseconds
        assert agg.snapshot().total_value == pytest.approx(first, rel=1e-4)

        shocked = state.context.shocked(price_shock=0.0)
        assert agg.value_state(state, shocked).total_value == first

    def test_unseeded_monte_carlo_ignores_unrelated_mutations(self):
        agg = PortfolioAggregator(
            risk_free_rate=0.05,
            american_model=MonteCarloModel(n_paths=2_000, n_steps=10),
        )
        agg.register_instrument(Stock(symbol="AAPL", volatility=0.25))
        agg.register_instrument(Stock(symbol="MSFT", volatility=0.2))
        agg.update_prices({"AAPL": 175.5, "MSFT": 410.0})
        opt = agg.register_instrument(_call(style="american"))
        pos = agg.add_position(opt.id, 3)

        before = agg.snapshot().position(pos.id).market_value
        agg.add_position("MSFT", 10)
        after = agg.snapshot().position(pos.id).market_value
        assert after == pytest.approx(before, rel=1e-4)

    def test_state_seed_follows_aggregator_seed(self):
        a = PortfolioAggregator(seed=11)
        b = PortfolioAggregator(seed=11)
        assert a.state().seed == b.state().seed == 11
        assert PortfolioAggregator().state().seed is not None

    def test_unpriced_position_is_stale(self):
        agg, _, _ = _book()
        agg.register_instrument(Stock(symbol="NVDA"))
        agg.add_position("AAPL", 10)
        pos = agg.add_position("NVDA", 5)
        snap = agg.snapshot()
        assert snap.stale_positions == (pos.id,)
        assert snap.position(pos.id).stale
        assert snap.position(pos.id).market_value == 0.0
        assert snap.total_value == pytest.approx(1755.0)

    def test_option_without_vol_is_stale(self):
        agg, _, _ = _book()
        agg.update_price("GOOGL", 140.0)
        opt = agg.register_instrument(Option(
            symbol="GOOGL 150C", underlying="GOOGL", option_type="call", strike=150,
            expiry=utcnow() + timedelta(days=30),
        ))
        pos = agg.add_position(opt.id, 1)
        val = agg.snapshot().position(pos.id)
        assert val.stale
        assert "volatility" in val.stale_reason.lower()

    def test_weights_and_pnl(self):
        agg, _, _ = _book()
        agg.add_position("AAPL", 100, 170.0)
        agg.add_position("MSFT", 50)
        snap = agg.snapshot()
        assert sum(p.weight for p in snap.positions) == pytest.approx(100.0)
        aapl, msft = snap.positions
        assert aapl.pnl == pytest.approx(100 * (175.5 - 170.0))
        assert aapl.pnl_pct == pytest.approx(5.5 / 170.0 * 100)
        assert msft.pnl is None
        assert snap.total_pnl == pytest.approx(550.0)

    def test_exposures_and_greeks(self):
        agg, _, _ = _book()
        opt = agg.register_instrument(_call())
        agg.add_position("AAPL", 100)
        agg.add_position("MSFT", 10)
        agg.add_position(opt.id, 2)
        snap = agg.snapshot()
        option_mv = snap.positions[2].market_value
        assert snap.exposure_by_type["stock"] == pytest.approx(17550.0 + 4152.5)
        assert snap.exposure_by_type["option"] == pytest.approx(option_mv)
        assert snap.exposure_by_underlying["AAPL"] == pytest.approx(17550.0 + option_mv)
        assert snap.exposure_by_underlying["MSFT"] == pytest.approx(4152.5)
        assert snap.greeks.delta == pytest.approx(110 + snap.positions[2].greeks.delta)

    def test_context_override(self):
        agg, _, _ = _book()
        agg.add_position("AAPL", 10)
        shocked = agg.state().context.shocked(price_shock=-0.1)
        assert agg.total_value(shocked) == pytest.approx(10 * 175.5 * 0.9)

    def test_empty_book(self):
        agg = PortfolioAggregator()
        snap = agg.snapshot()
        assert snap.total_value == 0.0
        assert snap.positions == ()

    def test_to_dict(self):
        agg, _, _ = _book()
        agg.add_position("AAPL", 10)
        d = agg.snapshot().to_dict()
        assert d["portfolio_value"] == pytest.approx(1755.0)
        assert d["portfolio_name"] == "Test Book"
        assert d["exposures"]["by_instrument_type"] == {"stock": pytest.approx(1755.0)}


# ── State and listener ──────────────────────────────────────────────────

class TestStates:
    def test_state_is_frozen_copy(self):
        agg, _, _ = _book()
        pos = agg.add_position("AAPL", 10)
        state = agg.state()
        agg.update_position(pos.id, 20)
        agg.update_price("AAPL", 200.0)
        assert state.positions[0].quantity == 10
        assert state.context.price("AAPL") == 175.5
        assert agg.value_state(state).total_value == pytest.approx(1755.0)

    def test_every_mutation_bumps_version(self):
        agg, _, _ = _book()
        v = agg.version
        agg.add_position("AAPL", 1)
        agg.update_price("AAPL", 180.0)
        agg.set_risk_free_rate(0.04)
        agg.set_volatility("AAPL", 0.3)
        assert agg.version == v + 4

    def test_update_prices_is_one_mutation(self):
        agg, _, _ = _book()
        v = agg.version
        agg.update_prices({"AAPL": 1.0, "MSFT": 2.0})
        assert agg.version == v + 1

    def test_invalid_prices_rejected(self):
        agg, _, _ = _book()
        for bad in (0, -1.0, float("nan"), float("inf")):
            with pytest.raises(ValidationError):
                agg.update_price("AAPL", bad)
        with pytest.raises(ValidationError):
            agg.update_prices({"AAPL": 10.0, "MSFT": -5.0})
        assert agg.state().context.price("AAPL") == 175.5

    def test_listener_sees_every_state_in_order(self):
        seen = []
        agg, _, _ = _book(listener=seen.append)
        agg.add_position("AAPL", 1)
        agg.update_price("AAPL", 180.0)
        versions = [s.version for s in seen]
        assert versions == list(range(1, len(seen) + 1))
        assert seen[-1].context.price("AAPL") == 180.0

    def test_concurrent_mutations_serialised(self):
        seen = []
        agg, _, _ = _book(listener=seen.append)
        start = agg.version

        def worker(i):
            for j in range(25):
                agg.add_position("AAPL", 1)
                agg.update_price("MSFT", 400.0 + i + j)

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert agg.version == start + 200
        assert len(agg.positions()) == 100
        versions = [s.version for s in seen]
        assert versions == sorted(versions)
        assert len(set(versions)) == len(versions)

    def test_option_positions(self):
        agg, _, _ = _book()
        opt = agg.register_instrument(_call())
        agg.add_position("AAPL", 1)
        agg.add_position(opt.id, 1)
        pairs = agg.option_positions(agg.state())
        assert [o.id for _, o in pairs] == [opt.id]
