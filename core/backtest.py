"""
===============================================================================
  Backtest — replays the setup synthesizer bar by bar
===============================================================================
  At bar i the synthesizer only sees candles[0..i].  A trade taken on that
  signal fills at the open of bar i+1, so no later candle leaks into the
  decision.

  Rules:
    - 50 bars of history before the first signal
    - best setup per side with confidence >= 60, longs checked first
    - the signal bar must close inside the setup's entry band
    - one open trade at a time, sized to risk 1% of the balance
    - stop checked before target on every bar (worst case)
    - slippage on every fill, commission on both legs

  A trade still open on the last bar is reported as ``open_trade``; its
  unrealized P&L is in the equity curve but not in the trade statistics.
===============================================================================
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from typing import Callable, Optional

import numpy as np
import pandas as pd

import config as cfg
from core.candles import CandleInput, to_frame
from core.models import Direction
from core.setups import Setup, SetupReport, generate_setups
from utils.logger import get_logger

log = get_logger("backtest")

DEFAULT_RR: float = 2.0          # target distance when a setup has no targets
WARMUP_MARGIN: int = 10          # bars required beyond the minimum history


@dataclass
class Trade:
    direction: Direction
    setup_type: str
    confidence: float
    entry_index: int
    entry_time: int
    entry_price: float
    stop: float
    target: float
    size: float
    risk_amount: float
    exit_index: int = -1
    exit_time: int = 0
    exit_price: float = 0.0
    exit_reason: str = ""
    gross_pnl: float = 0.0
    commission: float = 0.0
    net_pnl: float = 0.0
    pnl_pct: float = 0.0
    balance_after: float = 0.0

    @property
    def result(self) -> str:
        if self.net_pnl > 0:
            return "win"
        if self.net_pnl < 0:
            return "loss"
        return "breakeven"

    @property
    def bars_held(self) -> int:
        return self.exit_index - self.entry_index

    def to_dict(self) -> dict:
        d = asdict(self)
        d["direction"] = self.direction.value
        d["result"] = self.result
        return d


@dataclass(frozen=True)
class BacktestReport:
    initial_balance: float
    final_balance: float
    trades: tuple[Trade, ...]
    equity_curve: tuple[float, ...]
    max_drawdown_pct: float
    open_trade: Optional[Trade] = None

    @property
    def wins(self) -> list[Trade]:
        return [t for t in self.trades if t.result == "win"]

    @property
    def losses(self) -> list[Trade]:
        return [t for t in self.trades if t.result == "loss"]

    @property
    def net_profit(self) -> float:
        return self.final_balance - self.initial_balance

    @property
    def net_profit_pct(self) -> float:
        return self.net_profit / self.initial_balance * 100 if self.initial_balance else 0.0

    @property
    def win_rate(self) -> float:
        return len(self.wins) / len(self.trades) * 100 if self.trades else 0.0

    @property
    def gross_profit(self) -> float:
        return sum(t.net_pnl for t in self.wins)

    @property
    def gross_loss(self) -> float:
        return abs(sum(t.net_pnl for t in self.losses))

    @property
    def profit_factor(self) -> float:
        if self.gross_loss > 0:
            return self.gross_profit / self.gross_loss
        return math.inf if self.gross_profit > 0 else 0.0

    @property
    def avg_win(self) -> float:
        return self.gross_profit / len(self.wins) if self.wins else 0.0

    @property
    def avg_loss(self) -> float:
        return self.gross_loss / len(self.losses) if self.losses else 0.0

    @property
    def avg_rr(self) -> float:
        return self.avg_win / self.avg_loss if self.avg_loss > 0 else 0.0

    @property
    def avg_bars_held(self) -> float:
        return float(np.mean([t.bars_held for t in self.trades])) if self.trades else 0.0

    @property
    def sharpe_ratio(self) -> float:
        """Mean over standard deviation of per-trade returns (%)."""
        if len(self.trades) < 2:
            return 0.0
        returns = np.array([t.pnl_pct for t in self.trades])
        std = returns.std()
        return float(returns.mean() / std) if std > 0 else 0.0

    def summary(self) -> dict:
        return {
            "initial_balance": self.initial_balance,
            "final_balance": self.final_balance,
            "net_profit": self.net_profit,
            "net_profit_pct": self.net_profit_pct,
            "trades": len(self.trades),
            "wins": len(self.wins),
            "losses": len(self.losses),
            "win_rate": self.win_rate,
            "avg_win": self.avg_win,
            "avg_loss": self.avg_loss,
            "avg_rr": self.avg_rr,
            "avg_bars_held": self.avg_bars_held,
            "profit_factor": self.profit_factor,
            "max_drawdown_pct": self.max_drawdown_pct,
            "sharpe_ratio": self.sharpe_ratio,
            "open_trade": self.open_trade is not None,
        }


def _valid_entry(setup: Setup, close: float) -> bool:
    low, high = setup.entry
    if not low <= close <= high:
        return False
    if setup.direction is Direction.LONG:
        return setup.stop < low
    return setup.stop > high


class Backtester:
    """
    Walks a candle history once, calling *analyzer* (``generate_setups`` by
    default) on every growing slice while no trade is open.
    """

    def __init__(
        self,
        initial_balance: Optional[float] = None,
        risk_per_trade: Optional[float] = None,
        slippage: Optional[float] = None,
        commission: Optional[float] = None,
        min_history: Optional[int] = None,
        min_confidence: Optional[float] = None,
        analyzer: Callable[[pd.DataFrame], SetupReport] = generate_setups,
    ):
        self.initial_balance = cfg.BACKTEST_BALANCE if initial_balance is None else initial_balance
        self.risk_per_trade = cfg.BACKTEST_RISK_PER_TRADE if risk_per_trade is None else risk_per_trade
        self.slippage = cfg.BACKTEST_SLIPPAGE if slippage is None else slippage
        self.commission = cfg.BACKTEST_COMMISSION if commission is None else commission
        self.min_history = cfg.BACKTEST_MIN_HISTORY if min_history is None else min_history
        self.min_confidence = (cfg.BACKTEST_MIN_CONFIDENCE
                               if min_confidence is None else min_confidence)
        self.analyzer = analyzer
        self._reset()

    def _reset(self):
        self.balance = self.initial_balance
        self.trades: list[Trade] = []
        self.active: Optional[Trade] = None
        self.equity: list[float] = [self.initial_balance]
        self._peak = self.initial_balance
        self.max_drawdown_pct = 0.0

    # ═════════════════════════════════════════════════════════════════════
    #  MAIN LOOP
    # ═════════════════════════════════════════════════════════════════════

    def run(self, candles: CandleInput) -> BacktestReport:
        df = to_frame(candles)
        n = len(df)
        required = self.min_history + WARMUP_MARGIN
        if n < required:
            raise ValueError(f"Backtest needs at least {required} candles, got {n}")

        self._reset()
        opens = df["open"].to_numpy(dtype=float)
        highs = df["high"].to_numpy(dtype=float)
        lows = df["low"].to_numpy(dtype=float)
        closes = df["close"].to_numpy(dtype=float)
        times = df["time"].to_numpy()

        log.info(f"Backtest started: {n} candles, first signal at bar {self.min_history}")

        for i in range(self.min_history, n - 1):
            if self.active is not None:
                self._check_exit(i, highs[i], lows[i], int(times[i]))
            else:
                try:
                    report = self.analyzer(df.iloc[:i + 1])
                except Exception as e:
                    log.warning(f"Bar {i}: analysis failed ({e}), skipped")
                    continue
                self._check_entry(report, i, closes[i], opens[i + 1], int(times[i + 1]))

            equity = self._equity(closes[i])
            self.equity.append(equity)
            self._update_drawdown(equity)

        log.info(
            f"Backtest complete: {len(self.trades)} trades, "
            f"balance {self.initial_balance:.2f} -> {self.balance:.2f}"
        )
        return BacktestReport(
            initial_balance=self.initial_balance,
            final_balance=self.balance,
            trades=tuple(self.trades),
            equity_curve=tuple(self.equity),
            max_drawdown_pct=self.max_drawdown_pct,
            open_trade=self.active,
        )

    # ═════════════════════════════════════════════════════════════════════
    #  ENTRIES
    # ═════════════════════════════════════════════════════════════════════

    def _best(self, setups: tuple[Setup, ...]) -> Optional[Setup]:
        eligible = [s for s in setups if s.confidence >= self.min_confidence]
        return max(eligible, key=lambda s: s.confidence, default=None)

    def _check_entry(self, report: SetupReport, index: int, close: float,
                     next_open: float, next_time: int):
        for setups in (report.long_setups, report.short_setups):
            best = self._best(setups)
            if best is not None and _valid_entry(best, close):
                self._open_trade(best, index, next_open, next_time)
                return

    def _open_trade(self, setup: Setup, index: int, next_open: float, next_time: int):
        is_long = setup.direction is Direction.LONG
        entry = next_open * (1 + self.slippage if is_long else 1 - self.slippage)
        stop = setup.stop

        # The next open can gap through the stop; such a fill has no risk to size.
        if (is_long and entry <= stop) or (not is_long and entry >= stop):
            log.debug(f"Bar {index}: {setup.name} filled beyond its stop, skipped")
            return

        risk = abs(entry - stop)
        if setup.targets:
            target = setup.targets[0].level
        else:
            target = entry + risk * DEFAULT_RR if is_long else entry - risk * DEFAULT_RR

        risk_amount = self.balance * self.risk_per_trade
        self.active = Trade(
            direction=setup.direction,
            setup_type=setup.technique.value,
            confidence=setup.confidence,
            entry_index=index + 1,
            entry_time=next_time,
            entry_price=entry,
            stop=stop,
            target=target,
            size=risk_amount / risk,
            risk_amount=risk_amount,
        )
        log.info(
            f"Trade opened: {setup.direction.value.upper()} {setup.name} @ {entry:.6g}, "
            f"SL {stop:.6g}, TP {target:.6g}"
        )

    # ═════════════════════════════════════════════════════════════════════
    #  EXITS
    # ═════════════════════════════════════════════════════════════════════

    def _check_exit(self, index: int, high: float, low: float, time: int):
        t = self.active
        # Conservative ordering: SL first if both touched
        if t.direction is Direction.LONG:
            if low <= t.stop:
                self._close_trade(t.stop * (1 - self.slippage), "stop_loss", index, time)
            elif high >= t.target:
                self._close_trade(t.target * (1 - self.slippage), "take_profit", index, time)
        else:
            if high >= t.stop:
                self._close_trade(t.stop * (1 + self.slippage), "stop_loss", index, time)
            elif low <= t.target:
                self._close_trade(t.target * (1 + self.slippage), "take_profit", index, time)

    def _close_trade(self, price: float, reason: str, index: int, time: int):
        t = self.active
        diff = price - t.entry_price if t.direction is Direction.LONG else t.entry_price - price

        t.exit_index = index
        t.exit_time = time
        t.exit_price = price
        t.exit_reason = reason
        t.gross_pnl = diff * t.size
        t.commission = (t.entry_price + price) * t.size * self.commission
        t.net_pnl = t.gross_pnl - t.commission
        t.pnl_pct = t.net_pnl / self.balance * 100

        self.balance += t.net_pnl
        t.balance_after = self.balance
        self.trades.append(t)
        self.active = None

        log.info(f"Trade closed: {reason}, PnL {t.net_pnl:+.2f} ({t.pnl_pct:+.2f}%)")

    # ═════════════════════════════════════════════════════════════════════
    #  EQUITY
    # ═════════════════════════════════════════════════════════════════════

    def _equity(self, close: float) -> float:
        if self.active is None:
            return self.balance
        t = self.active
        diff = close - t.entry_price if t.direction is Direction.LONG else t.entry_price - close
        return self.balance + diff * t.size

    def _update_drawdown(self, equity: float):
        self._peak = max(self._peak, equity)
        if self._peak > 0:
            self.max_drawdown_pct = max(
                self.max_drawdown_pct, (self._peak - equity) / self._peak * 100)
