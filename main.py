"""
===============================================================================
  PRICE ACTION ENGINE — Command line
===============================================================================
  Runs the scanner over a watchlist, or prints the ranked long / short
  setups for one symbol with their confidence breakdown, live condition
  checklist and position plan.

  Usage:
    python main.py --scan                      # Scan the default watchlist
    python main.py --scan BTCUSDT ETHUSDT      # Scan the given symbols
    python main.py --scan --timeframe 1h --limit 300 --delay-ms 250
    python main.py --setups BTCUSDT            # Setups for one symbol
    python main.py --setups BTCUSDT --notify   # ...and alert ready setups
    python main.py --backtest BTCUSDT --limit 500   # Replay the engine

  Ctrl-C during a scan aborts it cleanly.
===============================================================================
"""

from __future__ import annotations

import argparse
import asyncio
import signal
from typing import Optional

import config as cfg
from alerts.telegram import TelegramAlerter
from core.backtest import Backtester, BacktestReport
from core.binance_feed import BinanceFeed
from core.candles import to_frame
from core.conditions import AlertGate, ConditionContext, ConditionTracker
from core.market_scanner import MarketScanner, ScanAborted, ScanProgress, ScanResult
from core.setups import Setup, SetupReport, generate_setups
from risk.position_sizer import compute_position
from utils.logger import setup_logging, get_logger

log = get_logger("main")

STATUS_ICONS = {"met": "[x]", "pending": "[ ]", "failed": "[!]"}


# ═════════════════════════════════════════════════════════════════════════════
#  SCAN
# ═════════════════════════════════════════════════════════════════════════════

def _print_progress(p: ScanProgress):
    r = p.result
    print(f"  [{p.current:>3}/{p.total}] {p.symbol:<12} {r.signal.value.upper():<6} "
          f"{r.confidence:>3}%  {r.reason}")


def print_scan_table(results: dict[str, ScanResult]):
    print("\n" + "=" * 72)
    print("  SCAN RESULTS")
    print("=" * 72)
    ranked = sorted(results.items(), key=lambda kv: kv[1].confidence, reverse=True)
    for sym, r in ranked:
        print(f"  {sym:<12} {r.signal.value.upper():<6} {r.confidence:>3}%  "
              f"last={r.last_price:<14.6g} bars={r.candle_count:<4} {r.reason}")
    print("=" * 72 + "\n")


async def run_scan(symbols: Optional[list[str]], timeframe: str, limit: int,
                   delay_ms: int) -> dict[str, ScanResult]:
    async with BinanceFeed() as feed:
        scanner = MarketScanner(feed, timeframe, limit, delay_ms, on_progress=_print_progress)

        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, scanner.abort)
        except (NotImplementedError, RuntimeError):
            pass  # Windows: KeyboardInterrupt ends the run instead

        try:
            return await scanner.scan(symbols or None)
        except ScanAborted as e:
            return e.results
        finally:
            try:
                loop.remove_signal_handler(signal.SIGINT)
            except (NotImplementedError, RuntimeError):
                pass


# ═════════════════════════════════════════════════════════════════════════════
#  SETUPS
# ═════════════════════════════════════════════════════════════════════════════

def _print_setup(setup: Setup, ctx: ConditionContext) -> ConditionTracker:
    print(f"\n  #{setup.id} {setup.name}  [{setup.technique_label}]  "
          f"confidence {setup.confidence:.0f}/100")
    print(f"     Entry {setup.entry[0]:.6g} - {setup.entry[1]:.6g}   Stop {setup.stop:.6g}")
    for i, t in enumerate(setup.targets, 1):
        print(f"     TP{i} {t.level:.6g}  (R:R {t.rr})")
    for name, f in setup.confidence_breakdown.items():
        print(f"       {name:<20} {f.score:>4.0f}/{f.max_score:<3.0f} {f.reason}")
    for reason in setup.reasons:
        print(f"     - {reason}")

    tracker = ConditionTracker(setup)
    for res in tracker.check_all(ctx):
        print(f"     {STATUS_ICONS[res.status.value]} {res.text}  ({res.message})")
    s = tracker.status_summary()
    print(f"     Conditions: {s['met']}/{s['total']} met")

    plan = compute_position(setup)
    if plan is not None:
        print(f"     Size {plan.size:.6g} units (value {plan.position_value:,.2f}, "
              f"risk {plan.risk_amount:,.2f})")
    return tracker


def print_setup_report(symbol: str, report: SetupReport, df, gate: Optional[AlertGate]):
    print("\n" + "=" * 72)
    print(f"  {symbol} | trend {report.trend.value}, price {report.current_price:.6g}")
    print("=" * 72)

    ctx = ConditionContext(df=df, current_price=report.current_price, trend=report.trend)
    for title, setups, why_not in (
        ("LONG", report.long_setups, report.no_long_reasons),
        ("SHORT", report.short_setups, report.no_short_reasons),
    ):
        print(f"\n  {title} SETUPS")
        if not setups:
            for reason in why_not:
                print(f"     x {reason}")
            if not why_not:
                print("     (not enough candles)")
        for setup in setups:
            tracker = _print_setup(setup, ctx)
            if gate is not None:
                gate.update(symbol, tracker)
    print()


async def run_setups(symbol: str, timeframe: str, limit: int, notify: bool):
    async with BinanceFeed() as feed:
        candles = await feed.fetch_candles(symbol, timeframe, limit)

    df = to_frame(candles)
    report = generate_setups(df)

    alerter = None
    gate = None
    if notify:
        alerter = TelegramAlerter(cfg.TELEGRAM_BOT_TOKEN, cfg.TELEGRAM_CHAT_ID)
        gate = AlertGate(alerter.setup_ready)
    try:
        print_setup_report(symbol, report, df, gate)
    finally:
        if alerter is not None:
            alerter.close()


# ═════════════════════════════════════════════════════════════════════════════
#  BACKTEST
# ═════════════════════════════════════════════════════════════════════════════

def print_backtest_report(symbol: str, timeframe: str, report: BacktestReport):
    s = report.summary()
    print("\n" + "=" * 72)
    print(f"  BACKTEST {symbol} {timeframe}")
    print("=" * 72)
    print(f"  Balance        {s['initial_balance']:>12,.2f} -> {s['final_balance']:,.2f}"
          f"  ({s['net_profit_pct']:+.1f}%)")
    print(f"  Trades         {s['trades']:>12}  wins {s['wins']}  losses {s['losses']}"
          f"  win rate {s['win_rate']:.1f}%")
    print(f"  Avg win / loss {s['avg_win']:>12,.2f} / {s['avg_loss']:,.2f}"
          f"  R:R {s['avg_rr']:.2f}  bars held {s['avg_bars_held']:.1f}")
    print(f"  Profit factor  {s['profit_factor']:>12.2f}  max drawdown "
          f"{s['max_drawdown_pct']:.1f}%  sharpe {s['sharpe_ratio']:.2f}")
    for t in report.trades:
        print(f"     {t.direction.value.upper():<5} {t.setup_type:<16} "
              f"{t.entry_price:<12.6g} -> {t.exit_price:<12.6g} {t.exit_reason:<12} "
              f"{t.net_pnl:+.2f}")
    if report.open_trade is not None:
        print(f"     still open: {report.open_trade.direction.value.upper()} "
              f"@ {report.open_trade.entry_price:.6g}")
    print("=" * 72 + "\n")


async def run_backtest(symbol: str, timeframe: str, limit: int) -> BacktestReport:
    async with BinanceFeed() as feed:
        candles = await feed.fetch_candles(symbol, timeframe, limit)
    return Backtester().run(candles)


# ═════════════════════════════════════════════════════════════════════════════
#  ENTRY POINT
# ═════════════════════════════════════════════════════════════════════════════

def main(argv: Optional[list[str]] = None):
    setup_logging()

    parser = argparse.ArgumentParser(description="Price Action Setup Engine")
    mode = parser.add_mutually_exclusive_group(required=True)
    mode.add_argument(
        "--scan", nargs="*", metavar="SYMBOL",
        help="Scan the given symbols (default watchlist when none given)",
    )
    mode.add_argument(
        "--setups", metavar="SYMBOL",
        help="Print long / short setups for one symbol",
    )
    mode.add_argument(
        "--backtest", metavar="SYMBOL",
        help="Replay the setup engine over one symbol's history",
    )
    parser.add_argument("--timeframe", default=cfg.SCAN_TIMEFRAME,
                        help=f"Candle interval (default {cfg.SCAN_TIMEFRAME})")
    parser.add_argument("--limit", type=int, default=cfg.SCAN_LIMIT,
                        help=f"Candles per symbol (default {cfg.SCAN_LIMIT})")
    parser.add_argument("--delay-ms", type=int, default=cfg.SCAN_DELAY_MS,
                        help=f"Pause between symbols (default {cfg.SCAN_DELAY_MS})")
    parser.add_argument("--notify", action="store_true",
                        help="Send Telegram alerts for ready setups / scan signals")
    args = parser.parse_args(argv)

    try:
        if args.setups:
            asyncio.run(run_setups(args.setups.upper(), args.timeframe, args.limit, args.notify))
            return

        if args.backtest:
            symbol = args.backtest.upper()
            try:
                report = asyncio.run(run_backtest(symbol, args.timeframe, args.limit))
            except ValueError as e:
                log.error(f"Backtest {symbol}: {e}")
                return
            print_backtest_report(symbol, args.timeframe, report)
            return

        symbols = [s.upper() for s in args.scan] if args.scan else None
        results = asyncio.run(run_scan(symbols, args.timeframe, args.limit, args.delay_ms))
        print_scan_table(results)
        if args.notify:
            alerter = TelegramAlerter(cfg.TELEGRAM_BOT_TOKEN, cfg.TELEGRAM_CHAT_ID)
            alerter.scan_summary(results, args.timeframe)
            alerter.close()
    except KeyboardInterrupt:
        log.info("Interrupted")


if __name__ == "__main__":
    main()
