"""
===============================================================================
  Market Scanner — sequential multi-symbol scan with cooperative abort
===============================================================================
  For each symbol of the watchlist, in order:
      1. stop if an abort was requested
      2. fetch candles (raced against the abort event)
      3. detect smart-money patterns + trend, classify a coarse signal
      4. store the result and report progress
      5. wait ``delay_ms`` before the next symbol (skipped after the last)

  The scan signal uses its own simple weighting (OB / FVG count + trend).
  It is a quick triage of the watchlist, independent of the per-setup
  confidence score.

  A failure on one symbol never stops the scan; it becomes an ``error``
  result.  An abort stops the whole scan with ``ScanAborted``.
===============================================================================
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Callable, Optional

import config as cfg
from core.binance_feed import CandleSource
from core.candles import to_frame
from core.models import Bias, PatternSet, Trend
from core.smart_money import analyze_smart_money
from core.structures import detect_trend
from utils.logger import get_logger

log = get_logger("scanner")


class Signal(str, Enum):
    LONG = "long"
    SHORT = "short"
    NONE = "none"
    ERROR = "error"


@dataclass(frozen=True)
class ScanResult:
    signal: Signal
    confidence: int = 0
    reason: str = ""
    last_price: float = 0.0
    last_update: int = 0            # epoch milliseconds
    candle_count: int = 0

    def to_dict(self) -> dict:
        d = asdict(self)
        d["signal"] = self.signal.value
        return d


@dataclass(frozen=True)
class ScanProgress:
    current: int
    total: int
    symbol: str
    result: ScanResult


class ScanAborted(Exception):
    """The scan was cancelled; ``results`` holds what finished before."""

    def __init__(self, results: Optional[dict[str, ScanResult]] = None):
        super().__init__("Scan aborted")
        self.results = results or {}


def _now_ms() -> int:
    return int(time.time() * 1000)


def classify_signal(patterns: PatternSet, trend: Trend) -> tuple[Signal, int, str]:
    """Return ``(signal, confidence, reason)`` from pattern counts and trend."""
    bull_obs = sum(1 for ob in patterns.order_blocks if ob.kind is Bias.BULLISH and not ob.mitigated)
    bear_obs = sum(1 for ob in patterns.order_blocks if ob.kind is Bias.BEARISH and not ob.mitigated)
    bull_fvgs = sum(1 for g in patterns.fair_value_gaps if g.kind is Bias.BULLISH and not g.filled)
    bear_fvgs = sum(1 for g in patterns.fair_value_gaps if g.kind is Bias.BEARISH and not g.filled)

    bull = bull_obs * cfg.SCAN_OB_WEIGHT + bull_fvgs * cfg.SCAN_FVG_WEIGHT
    bear = bear_obs * cfg.SCAN_OB_WEIGHT + bear_fvgs * cfg.SCAN_FVG_WEIGHT
    if trend == Trend.UPTREND:
        bull += cfg.SCAN_TREND_WEIGHT
    elif trend == Trend.DOWNTREND:
        bear += cfg.SCAN_TREND_WEIGHT

    if bull >= cfg.SCAN_SIGNAL_THRESHOLD and bull > bear:
        return Signal.LONG, min(bull, 100), f"{bull_obs} OB, {bull_fvgs} FVG, Trend: {trend.value}"
    if bear >= cfg.SCAN_SIGNAL_THRESHOLD and bear > bull:
        return Signal.SHORT, min(bear, 100), f"{bear_obs} OB, {bear_fvgs} FVG, Trend: {trend.value}"
    return Signal.NONE, 0, "No clear setup"


def analyze_candles(candles) -> ScanResult:
    """Classify one symbol's candles into a ScanResult."""
    df = to_frame(candles)
    last_price = float(df["close"].iloc[-1]) if len(df) else 0.0
    if len(df) < cfg.SCAN_MIN_CANDLES:
        return ScanResult(
            signal=Signal.NONE, reason="Analysis failed",
            last_price=last_price, last_update=_now_ms(), candle_count=len(df),
        )
    signal, confidence, reason = classify_signal(analyze_smart_money(df), detect_trend(df))
    return ScanResult(
        signal=signal, confidence=confidence, reason=reason,
        last_price=last_price, last_update=_now_ms(), candle_count=len(df),
    )


class MarketScanner:
    """Scans a watchlist one symbol at a time."""

    def __init__(
        self,
        source: CandleSource,
        timeframe: str | None = None,
        limit: int | None = None,
        delay_ms: int | None = None,
        on_progress: Optional[Callable[[ScanProgress], None]] = None,
    ):
        self.source = source
        self.timeframe = timeframe or cfg.SCAN_TIMEFRAME
        self.limit = limit or cfg.SCAN_LIMIT
        self.delay_ms = cfg.SCAN_DELAY_MS if delay_ms is None else delay_ms
        self.on_progress = on_progress
        self._abort: Optional[asyncio.Event] = None

    @property
    def running(self) -> bool:
        return self._abort is not None

    def abort(self) -> None:
        """Request cancellation of the running scan; no-op when idle."""
        if self._abort is not None and not self._abort.is_set():
            log.info("Abort requested")
            self._abort.set()

    async def _until_abort(self, coro, results: dict[str, ScanResult]):
        """Await *coro* unless the abort event fires first."""
        task = asyncio.ensure_future(coro)
        waiter = asyncio.ensure_future(self._abort.wait())
        done, pending = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        for t in pending:
            t.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        if self._abort.is_set():
            if task in done and not task.cancelled():
                task.exception()  # retrieved so asyncio does not warn
            raise ScanAborted(results)
        return task.result()

    async def scan(self, watchlist: Optional[list[str]] = None) -> dict[str, ScanResult]:
        symbols = list(cfg.DEFAULT_WATCHLIST if watchlist is None else watchlist)
        total = len(symbols)
        results: dict[str, ScanResult] = {}
        self._abort = asyncio.Event()
        start = time.time()
        log.info(f"Starting scan of {total} symbols ({self.timeframe})")

        try:
            for i, symbol in enumerate(symbols):
                if self._abort.is_set():
                    raise ScanAborted(results)

                try:
                    candles = await self._until_abort(
                        self.source.fetch_candles(symbol, self.timeframe, self.limit), results)
                    result = analyze_candles(candles)
                    log.info(f"{symbol}: {result.signal.value.upper()} ({result.confidence}%)")
                except ScanAborted:
                    raise
                except Exception as e:
                    log.warning(f"{symbol}: scan failed - {e}")
                    result = ScanResult(signal=Signal.ERROR, reason=str(e), last_update=_now_ms())

                results[symbol] = result
                if self.on_progress is not None:
                    self.on_progress(ScanProgress(i + 1, total, symbol, result))

                if i < total - 1 and self.delay_ms > 0:
                    await self._until_abort(asyncio.sleep(self.delay_ms / 1000), results)

        except ScanAborted:
            log.info(f"Scan aborted after {len(results)}/{total} symbols")
            raise
        finally:
            self._abort = None

        log.info(f"Scan complete: {len(results)} symbols in {time.time() - start:.1f}s")
        return results
