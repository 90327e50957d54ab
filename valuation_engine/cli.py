"""
valuation-desk — command line front end for the valuation engine.

Usage:
    valuation-desk price --spot 100 --strike 100 --vol 0.2 --years 1   # BS vs MC
    valuation-desk risk                          # VaR / ES for the sample book
    valuation-desk stress                        # stress scenarios for the sample book
    valuation-desk demo [--ticks 5]              # stream snapshots while prices move
"""

import argparse
import logging
import sys
from datetime import timedelta

from rich.console import Console
from rich.panel import Panel
from rich.table import Table as RichTable
from rich.text import Text

from .config import EngineConfig
from .errors import ValuationError
from .instruments import ExerciseStyle, Option, OptionType, SECONDS_PER_YEAR, utcnow
from .market_context import MarketContext
from .market_data import RandomWalkPriceSource, StaticPriceSource
from .pricing import BlackScholesModel, MonteCarloModel, value
from .service import ValuationService

logger = logging.getLogger(__name__)


# ── Sample book ──────────────────────────────────────────────────────────

def build_demo_book(service):
    """Three equities plus a European call and an American put."""
    service.add_position("AAPL", 100, average_cost=170.00)
    service.add_position("MSFT", 50, average_cost=400.00)
    service.add_position("GOOGL", 75, average_cost=140.00)

    now = utcnow()
    call = service.register_instrument(Option(
        symbol="AAPL 180C", underlying="AAPL", option_type=OptionType.CALL,
        strike=180.0, expiry=now + timedelta(days=90), multiplier=100.0,
    ))
    put = service.register_instrument(Option(
        symbol="MSFT 400P", underlying="MSFT", option_type=OptionType.PUT,
        strike=400.0, expiry=now + timedelta(days=60), multiplier=100.0,
        exercise_style=ExerciseStyle.AMERICAN,
    ))
    service.add_position(call.id, 10, average_cost=550.00)
    service.add_position(put.id, -5, average_cost=900.00)
    service.flush(timeout=30.0)
    return service


# ── Rendering ────────────────────────────────────────────────────────────

def _money(x):
    return Text(f"${x:+,.2f}", style="green" if x >= 0 else "red")


def render_snapshot(snapshot, console):
    tbl = RichTable(
        title=f"{snapshot.portfolio_name} (seq {snapshot.sequence})",
        expand=True,
        title_style="bold white",
        header_style="bold cyan",
    )
    tbl.add_column("Symbol", style="bold")
    tbl.add_column("Type")
    tbl.add_column("Qty", justify="right")
    tbl.add_column("Unit Value", justify="right")
    tbl.add_column("Market Value", justify="right")
    tbl.add_column("Weight", justify="right")
    tbl.add_column("P&L", justify="right")
    tbl.add_column("Delta", justify="right")

    for p in snapshot.positions:
        if p.stale:
            tbl.add_row(p.symbol, p.instrument_type, f"{p.quantity:,.0f}",
                        Text("STALE", style="yellow"), "", "", "", p.stale_reason or "")
            continue
        tbl.add_row(
            p.symbol,
            p.instrument_type,
            f"{p.quantity:,.0f}",
            f"${p.unit_value:,.2f}",
            f"${p.market_value:,.2f}",
            f"{p.weight:.1f}%",
            _money(p.pnl) if p.pnl is not None else "-",
            f"{p.greeks.delta:,.1f}" if p.greeks else "-",
        )

    g = snapshot.greeks
    footer = (f"Total ${snapshot.total_value:,.2f}   P&L {snapshot.total_pnl:+,.2f}   "
              f"Δ {g.delta:,.1f}  Γ {g.gamma:,.3f}  ν {g.vega:,.1f}  Θ {g.theta:,.1f}")
    console.print(Panel(tbl, subtitle=footer, border_style="cyan"))


def render_risk(metrics, console):
    tbl = RichTable(title="Value at Risk", header_style="bold cyan", expand=True)
    tbl.add_column("Confidence", justify="right")
    tbl.add_column("Horizon", justify="right")
    tbl.add_column("VaR", justify="right", style="red")
    tbl.add_column("Expected Shortfall", justify="right", style="bold red")
    for (c, h), var in sorted(metrics.var.items()):
        tbl.add_row(f"{c:.0%}", f"{h}d", f"${var:,.2f}",
                    f"${metrics.expected_shortfall[(c, h)]:,.2f}")

    lines = [
        f"Portfolio value:  ${metrics.portfolio_value:,.2f}",
        f"Volatility:       {metrics.volatility:.2%}",
    ]
    if metrics.implied_volatility is not None:
        lines.append(f"Option vol:       {metrics.implied_volatility:.2%}")
    console.print(Panel(tbl, border_style="red"))
    console.print(Panel("\n".join(lines), title="Summary", border_style="cyan"))


def render_stress(results, console):
    tbl = RichTable(title="Stress Test Results", header_style="bold cyan", expand=True)
    tbl.add_column("Scenario", style="bold")
    tbl.add_column("Kind")
    tbl.add_column("Shock", justify="right")
    tbl.add_column("Stressed Value", justify="right")
    tbl.add_column("P&L", justify="right")
    tbl.add_column("P&L %", justify="right")
    for r in results:
        shock = f"{r.magnitude * 1e4:+.0f}bp" if r.kind.value == "rate" else f"{r.magnitude:+.0%}"
        tbl.add_row(r.scenario_name, r.kind.value, shock,
                    f"${r.stressed_value:,.2f}", _money(r.delta), f"{r.delta_pct:+.2f}%")
    console.print(Panel(tbl, border_style="red"))


# ── Commands ─────────────────────────────────────────────────────────────

def cmd_price(args, console):
    now = utcnow()
    expiry = now + timedelta(seconds=args.years * SECONDS_PER_YEAR)
    option = Option(
        symbol="CLI", underlying="SPOT",
        option_type=OptionType.PUT if args.put else OptionType.CALL,
        strike=args.strike, expiry=expiry, created_at=now,
        exercise_style=ExerciseStyle.AMERICAN if args.american else ExerciseStyle.EUROPEAN,
    )
    context = MarketContext(
        prices={"SPOT": args.spot}, risk_free_rate=args.rate, as_of=now,
        volatilities={"SPOT": args.vol}, dividend_yields={"SPOT": args.dividend},
    )

    models = [MonteCarloModel(n_paths=args.paths, n_steps=args.steps, seed=args.seed, greeks=True)]
    if not args.american:
        models.insert(0, BlackScholesModel())

    tbl = RichTable(title=f"{option.option_type.value.title()} K={args.strike} "
                          f"T={args.years}y ({option.exercise_style.value})",
                    header_style="bold cyan")
    for col in ("Model", "Price", "Std Err", "Delta", "Gamma", "Vega", "Theta", "Rho"):
        tbl.add_column(col, justify="right")
    for model in models:
        r = value(model, option, context)
        g = r.greeks
        tbl.add_row(
            r.model, f"{r.unit_price:.6f}",
            f"{r.standard_error:.6f}" if r.standard_error is not None else "-",
            f"{g.delta:.4f}", f"{g.gamma:.4f}", f"{g.vega:.4f}",
            f"{g.theta:.4f}" if g.theta else "-", f"{g.rho:.4f}" if g.rho else "-",
        )
    console.print(Panel(tbl, border_style="cyan"))


def _demo_service(config):
    return build_demo_book(ValuationService(config, price_source=StaticPriceSource()))


def cmd_risk(args, config, console):
    with _demo_service(config) as service:
        render_snapshot(service.snapshot(), console)
        render_risk(service.risk_metrics(), console)


def cmd_stress(args, config, console):
    with _demo_service(config) as service:
        render_stress(service.stress_test(), console)


def cmd_demo(args, config, console):
    source = RandomWalkPriceSource(seed=args.seed)
    with ValuationService(config, price_source=source) as service:
        build_demo_book(service)
        sub = service.subscribe()
        try:
            render_snapshot(sub.get(timeout=10.0), console)
            for tick in range(args.ticks):
                service.refresh_prices()
                service.flush(timeout=30.0)
                latest = None
                snap = sub.get_nowait()
                while snap is not None:
                    latest = snap
                    snap = sub.get_nowait()
                if latest is not None:
                    console.print(f"[dim]tick {tick + 1}/{args.ticks}[/dim]")
                    render_snapshot(latest, console)
        finally:
            sub.close()


# ── CLI ──────────────────────────────────────────────────────────────────

def build_parser():
    parser = argparse.ArgumentParser(prog="valuation-desk", description="Portfolio valuation desk")
    parser.add_argument("--log-level", default="WARNING", help="Logging level (default: WARNING)")

    sub = parser.add_subparsers(dest="command")

    price_p = sub.add_parser("price", help="Value one option with Black-Scholes and Monte Carlo")
    price_p.add_argument("--spot", type=float, default=100.0)
    price_p.add_argument("--strike", type=float, default=100.0)
    price_p.add_argument("--rate", type=float, default=0.05)
    price_p.add_argument("--vol", type=float, default=0.20)
    price_p.add_argument("--dividend", type=float, default=0.0)
    price_p.add_argument("--years", type=float, default=1.0, help="Time to expiry in years")
    price_p.add_argument("--put", action="store_true", help="Price a put instead of a call")
    price_p.add_argument("--american", action="store_true", help="American exercise (MC only)")
    price_p.add_argument("--paths", type=int, default=100_000,
                         help="Monte Carlo paths (default: 100000)")
    price_p.add_argument("--steps", type=int, default=50)
    price_p.add_argument("--seed", type=int, default=42)

    sub.add_parser("risk", help="VaR / expected shortfall for the sample book")
    sub.add_parser("stress", help="Stress scenarios for the sample book")

    demo_p = sub.add_parser("demo", help="Stream snapshots while prices random-walk")
    demo_p.add_argument("--ticks", type=int, default=5)
    demo_p.add_argument("--seed", type=int, default=7)

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=getattr(logging, str(args.log_level).upper(), logging.WARNING))
    console = Console(width=110)

    if args.command is None:
        parser.print_help()
        return 1

    try:
        if args.command == "price":
            cmd_price(args, console)
        else:
            config = EngineConfig.from_env()
            if args.command == "risk":
                cmd_risk(args, config, console)
            elif args.command == "stress":
                cmd_stress(args, config, console)
            elif args.command == "demo":
                cmd_demo(args, config, console)
    except ValuationError as e:
        console.print(f"[bold red]{e.kind}:[/bold red] {e.message}")
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())
