"""
===============================================================================
  Condition Tracker — live checklist for a selected setup
===============================================================================
  Each confirmation string of a setup is classified once into a checker
  type by ordered keyword rules (first match wins).  ``check_all`` then
  evaluates every condition against the latest candles:

      met      the condition is satisfied right now
      pending  not yet, may still happen
      failed   the market moved in a way that breaks the condition

  Text that matches no rule becomes ``UNKNOWN`` and stays pending with
  "Manual verification required".  Every result carries a ``visual_meta``
  dict that a chart renderer can draw (tooltip + elements).
===============================================================================
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

import numpy as np
import pandas as pd

import config as cfg
from core.indicators import rsi, volume_ratio
from core.models import Direction, Trend
from core.setups import Setup
from utils.logger import get_logger

log = get_logger("conditions")


class ConditionStatus(str, Enum):
    MET = "met"
    PENDING = "pending"
    FAILED = "failed"


class CheckerType(str, Enum):
    ZONE_TOUCH = "zone_touch"
    REJECTION_CANDLE = "rejection_candle"
    VOLUME_SPIKE = "volume_spike"
    RSI_OVERSOLD_EXIT = "rsi_oversold_exit"
    RSI_OVERBOUGHT_EXIT = "rsi_overbought_exit"
    BODY_CLOSE_IN_ZONE = "body_close_in_zone"
    HTF_TREND_ALIGNMENT = "htf_trend_alignment"
    SWEEP_CANDLE = "sweep_candle"
    UNKNOWN = "unknown"


# Ordered: the first rule with a matching keyword decides.
CLASSIFICATION_RULES: list[tuple[tuple[str, ...], CheckerType]] = [
    (("zone", "boundary", "touch", "return"), CheckerType.ZONE_TOUCH),
    (("rejection", "engulfing", "pin bar"), CheckerType.REJECTION_CANDLE),
    (("volume",), CheckerType.VOLUME_SPIKE),
    (("rsi", "oversold"), CheckerType.RSI_OVERSOLD_EXIT),
    (("overbought",), CheckerType.RSI_OVERBOUGHT_EXIT),
    (("body", "close"), CheckerType.BODY_CLOSE_IN_ZONE),
    (("htf", "trend align"), CheckerType.HTF_TREND_ALIGNMENT),
    (("sweep", "wick"), CheckerType.SWEEP_CANDLE),
]

# Keywords match at the start of a word ("touch" matches "touches"), so
# "rsi" never matches inside "reversion".
_RULE_PATTERNS: list[tuple[re.Pattern, CheckerType]] = [
    (re.compile(r"\b(?:" + "|".join(map(re.escape, keywords)) + ")", re.IGNORECASE), checker)
    for keywords, checker in CLASSIFICATION_RULES
]

REJECTION_LOOKBACK = 3
REJECTION_BODY_RATIO = 0.3


def classify_condition(text: str) -> CheckerType:
    for pattern, checker in _RULE_PATTERNS:
        if pattern.search(text):
            return checker
    return CheckerType.UNKNOWN


# ═════════════════════════════════════════════════════════════════════════════
#  DATA STRUCTURES
# ═════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ConditionContext:
    """Market snapshot the checkers read.  Never mutated."""
    df: pd.DataFrame
    current_price: float
    trend: Trend = Trend.RANGING


@dataclass(frozen=True)
class Zone:
    low: float
    high: float
    direction: Direction


@dataclass
class CheckOutcome:
    status: ConditionStatus
    message: str = ""
    candle_index: Optional[int] = None
    value: Optional[float] = None
    average: Optional[float] = None


@dataclass(frozen=True)
class Condition:
    id: str
    text: str
    checker: CheckerType


@dataclass(frozen=True)
class ConditionResult:
    id: str
    text: str
    checker: CheckerType
    status: ConditionStatus
    message: str
    visual_meta: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "text": self.text,
            "checker": self.checker.value,
            "status": self.status.value,
            "message": self.message,
            "visual_meta": self.visual_meta,
        }


# ═════════════════════════════════════════════════════════════════════════════
#  CHECKERS
# ═════════════════════════════════════════════════════════════════════════════

def _check_zone_touch(ctx: ConditionContext, zone: Zone) -> CheckOutcome:
    price = ctx.current_price
    if zone.low <= price <= zone.high:
        return CheckOutcome(ConditionStatus.MET, "Price is inside the zone")
    above = price > zone.high
    if (zone.direction is Direction.LONG) == above:
        return CheckOutcome(ConditionStatus.PENDING, "Waiting for price to reach the zone")
    return CheckOutcome(ConditionStatus.FAILED, "Price ran through the zone")


def _check_rejection(ctx: ConditionContext, zone: Zone) -> CheckOutcome:
    df = ctx.df
    n = len(df)
    if n == 0:
        return CheckOutcome(ConditionStatus.PENDING, "Waiting for a rejection candle")

    start = max(0, n - REJECTION_LOOKBACK)
    o = df["open"].to_numpy(dtype=float)
    h = df["high"].to_numpy(dtype=float)
    l = df["low"].to_numpy(dtype=float)
    c = df["close"].to_numpy(dtype=float)

    for i in range(start, n):
        rng = h[i] - l[i]
        body = abs(c[i] - o[i])
        if rng > 0 and body / rng < REJECTION_BODY_RATIO:
            if l[i] <= zone.high and h[i] >= zone.low:
                return CheckOutcome(
                    ConditionStatus.MET, "Rejection candle (pin bar) detected", candle_index=i)

        if i > start:
            p = i - 1
            if zone.direction is Direction.LONG:
                engulf = (c[p] < o[p] and c[i] > o[i]
                          and c[i] > o[p] and o[i] < c[p])
            else:
                engulf = (c[p] > o[p] and c[i] < o[i]
                          and c[i] < o[p] and o[i] > c[p])
            if engulf:
                side = "Bullish" if zone.direction is Direction.LONG else "Bearish"
                return CheckOutcome(
                    ConditionStatus.MET, f"{side} engulfing detected", candle_index=i)

    return CheckOutcome(ConditionStatus.PENDING, "Waiting for a rejection candle")


def _check_volume_spike(ctx: ConditionContext, zone: Zone) -> CheckOutcome:
    period = cfg.VOLUME_AVG_PERIOD
    if len(ctx.df) < period:
        return CheckOutcome(ConditionStatus.PENDING, "Not enough history for volume")
    last, avg, ratio = volume_ratio(ctx.df, period)
    if avg > 0 and last > avg * cfg.VOLUME_SPIKE_MULT:
        return CheckOutcome(
            ConditionStatus.MET, f"Volume spike: {ratio * 100:.0f}% of average",
            candle_index=len(ctx.df) - 1, value=last, average=avg)
    return CheckOutcome(
        ConditionStatus.PENDING, "Waiting for a volume increase", value=last, average=avg)


def _last_two_rsi(df: pd.DataFrame) -> Optional[tuple[float, float]]:
    values = rsi(df).to_numpy(dtype=float)
    if len(values) < 2 or np.isnan(values[-1]) or np.isnan(values[-2]):
        return None
    return float(values[-2]), float(values[-1])


def _check_rsi_oversold(ctx: ConditionContext, zone: Zone) -> CheckOutcome:
    pair = _last_two_rsi(ctx.df)
    if pair is None:
        return CheckOutcome(ConditionStatus.PENDING, "Not enough history for RSI")
    prev, cur = pair
    if prev < cfg.RSI_OVERSOLD <= cur:
        return CheckOutcome(ConditionStatus.MET, f"RSI left oversold ({cur:.1f})", value=cur)
    if cur < cfg.RSI_OVERSOLD:
        return CheckOutcome(ConditionStatus.PENDING, f"RSI is oversold ({cur:.1f})", value=cur)
    return CheckOutcome(ConditionStatus.PENDING, "Waiting for RSI oversold", value=cur)


def _check_rsi_overbought(ctx: ConditionContext, zone: Zone) -> CheckOutcome:
    pair = _last_two_rsi(ctx.df)
    if pair is None:
        return CheckOutcome(ConditionStatus.PENDING, "Not enough history for RSI")
    prev, cur = pair
    if prev > cfg.RSI_OVERBOUGHT >= cur:
        return CheckOutcome(ConditionStatus.MET, f"RSI left overbought ({cur:.1f})", value=cur)
    return CheckOutcome(ConditionStatus.PENDING, "Waiting for RSI overbought", value=cur)


def _check_body_close(ctx: ConditionContext, zone: Zone) -> CheckOutcome:
    if len(ctx.df) == 0:
        return CheckOutcome(ConditionStatus.PENDING, "Waiting for a body close")
    close = float(ctx.df["close"].iloc[-1])
    if zone.low <= close <= zone.high:
        return CheckOutcome(
            ConditionStatus.MET, "Body closed inside the zone", candle_index=len(ctx.df) - 1)
    return CheckOutcome(ConditionStatus.PENDING, "Waiting for a body close")


def _check_htf_alignment(ctx: ConditionContext, zone: Zone) -> CheckOutcome:
    if ctx.trend == zone.direction.aligned_trend:
        return CheckOutcome(ConditionStatus.MET, f"HTF trend aligned ({ctx.trend.value})")
    if ctx.trend == Trend.RANGING:
        return CheckOutcome(ConditionStatus.PENDING, "HTF trend unclear (ranging)")
    return CheckOutcome(ConditionStatus.FAILED, f"HTF trend opposed ({ctx.trend.value})")


def _check_sweep(ctx: ConditionContext, zone: Zone) -> CheckOutcome:
    if len(ctx.df) == 0:
        return CheckOutcome(ConditionStatus.PENDING, "Waiting for a sweep")
    last = ctx.df.iloc[-1]
    o, h, l, c = float(last["open"]), float(last["high"]), float(last["low"]), float(last["close"])
    if zone.direction is Direction.LONG:
        swept = l < zone.low and min(o, c) > zone.low
    else:
        swept = h > zone.high and max(o, c) < zone.high
    if swept:
        return CheckOutcome(
            ConditionStatus.MET, "Sweep completed (wick sweep)", candle_index=len(ctx.df) - 1)
    return CheckOutcome(ConditionStatus.PENDING, "Waiting for a sweep")


def _check_unknown(ctx: ConditionContext, zone: Zone) -> CheckOutcome:
    return CheckOutcome(ConditionStatus.PENDING, "Manual verification required")


CHECKERS: dict[CheckerType, Callable[[ConditionContext, Zone], CheckOutcome]] = {
    CheckerType.ZONE_TOUCH: _check_zone_touch,
    CheckerType.REJECTION_CANDLE: _check_rejection,
    CheckerType.VOLUME_SPIKE: _check_volume_spike,
    CheckerType.RSI_OVERSOLD_EXIT: _check_rsi_oversold,
    CheckerType.RSI_OVERBOUGHT_EXIT: _check_rsi_overbought,
    CheckerType.BODY_CLOSE_IN_ZONE: _check_body_close,
    CheckerType.HTF_TREND_ALIGNMENT: _check_htf_alignment,
    CheckerType.SWEEP_CANDLE: _check_sweep,
    CheckerType.UNKNOWN: _check_unknown,
}


# ═════════════════════════════════════════════════════════════════════════════
#  VISUAL META
# ═════════════════════════════════════════════════════════════════════════════

STATUS_COLORS = {
    ConditionStatus.MET: "green",
    ConditionStatus.PENDING: "yellow",
    ConditionStatus.FAILED: "red",
}


def visual_meta(
    checker: CheckerType,
    ctx: ConditionContext,
    zone: Zone,
    outcome: CheckOutcome,
) -> dict:
    """Tooltip plus drawable elements (ZONE, LINE, ARROW, MARKER, TEXT)."""
    is_long = zone.direction is Direction.LONG
    side = "LONG" if is_long else "SHORT"
    dir_color = "green" if is_long else "red"
    status_color = STATUS_COLORS[outcome.status]
    last_index = max(len(ctx.df) - 1, 0)
    entry_price = zone.low if is_long else zone.high
    zone_box = {
        "type": "ZONE", "y1": zone.high, "y2": zone.low,
        "x1_index": max(0, last_index - 30), "x2_index": "FUTURE",
        "color": dir_color, "label": f"{side} ENTRY ZONE",
    }

    if checker is CheckerType.ZONE_TOUCH:
        return {
            "tooltip": ("Price must pull back into the zone" if is_long
                        else "Price must rally into the zone"),
            "elements": [
                zone_box,
                {"type": "LINE", "price": entry_price, "color": dir_color,
                 "label": f"Wait for price to touch {entry_price:.6g}"},
                {"type": "ARROW", "index": last_index,
                 "direction": "down" if is_long else "up", "color": "cyan"},
            ],
        }

    if checker is CheckerType.REJECTION_CANDLE:
        elements = [zone_box]
        if outcome.candle_index is not None:
            elements.append({"type": "MARKER", "index": outcome.candle_index,
                             "color": "green", "label": "Rejection"})
        else:
            elements.append({"type": "TEXT", "x_index": last_index, "y_price": entry_price,
                             "text": "Waiting for a rejection candle", "color": "yellow"})
        return {"tooltip": f"Look for a {side.lower()} pin bar or engulfing in the zone",
                "elements": elements}

    if checker is CheckerType.VOLUME_SPIKE:
        text = (f"Volume {outcome.value:.0f} vs avg {outcome.average:.0f}"
                if outcome.value is not None and outcome.average else "Waiting for volume")
        return {"tooltip": "Volume must exceed 150% of its average",
                "elements": [{"type": "TEXT", "x_index": last_index, "text": text,
                              "color": status_color}]}

    if checker in (CheckerType.RSI_OVERSOLD_EXIT, CheckerType.RSI_OVERBOUGHT_EXIT):
        oversold = checker is CheckerType.RSI_OVERSOLD_EXIT
        value = "?" if outcome.value is None else f"{outcome.value:.1f}"
        return {"tooltip": ("RSI must cross back above 30" if oversold
                            else "RSI must cross back below 70"),
                "elements": [{"type": "TEXT", "x_index": last_index,
                              "text": f"RSI: {value}", "color": status_color}]}

    if checker is CheckerType.BODY_CLOSE_IN_ZONE:
        close = ctx.current_price if len(ctx.df) == 0 else float(ctx.df["close"].iloc[-1])
        return {"tooltip": "The candle body must close inside the zone, not just the wick",
                "elements": [zone_box,
                             {"type": "LINE", "price": close, "color": status_color,
                              "label": f"Close: {close:.6g}"}]}

    if checker is CheckerType.HTF_TREND_ALIGNMENT:
        return {"tooltip": "Higher timeframe trend must agree with the setup",
                "elements": [{"type": "ARROW", "index": max(0, last_index - 10),
                              "direction": "up" if ctx.trend == Trend.UPTREND else "down",
                              "color": status_color,
                              "label": f"HTF Trend: {ctx.trend.value.upper()}"}]}

    if checker is CheckerType.SWEEP_CANDLE:
        level = entry_price
        elements = [{"type": "LINE", "price": level, "color": "pink",
                     "label": "Liquidity level"}]
        if outcome.status is ConditionStatus.MET:
            elements.append({"type": "MARKER", "index": last_index, "price": level,
                             "color": "green", "label": "SWEPT"})
        return {"tooltip": "A wick must sweep the level while the body holds",
                "elements": elements}

    return {"tooltip": "Manual verification required",
            "elements": [{"type": "MARKER", "index": last_index,
                          "price": ctx.current_price, "color": "yellow",
                          "label": "Check manually"}]}


# ═════════════════════════════════════════════════════════════════════════════
#  TRACKER
# ═════════════════════════════════════════════════════════════════════════════

class ConditionTracker:
    """Classifies a setup's confirmations once and re-checks them on demand."""

    def __init__(self, setup: Setup):
        self.setup = setup
        self.zone = Zone(low=setup.entry[0], high=setup.entry[1], direction=setup.direction)
        self.conditions: tuple[Condition, ...] = tuple(
            Condition(f"cond_{i}", text, classify_condition(text))
            for i, text in enumerate(setup.confirmations)
        )
        self.results: list[ConditionResult] = []

    def check_all(self, ctx: ConditionContext) -> list[ConditionResult]:
        results = []
        for cond in self.conditions:
            outcome = CHECKERS[cond.checker](ctx, self.zone)
            results.append(ConditionResult(
                id=cond.id,
                text=cond.text,
                checker=cond.checker,
                status=outcome.status,
                message=outcome.message,
                visual_meta=visual_meta(cond.checker, ctx, self.zone, outcome),
            ))
        self.results = results
        return results

    def status_summary(self) -> dict:
        counts = {s.value: 0 for s in ConditionStatus}
        for r in self.results:
            counts[r.status.value] += 1
        counts["total"] = len(self.results)
        return counts

    def should_alert(self) -> bool:
        summary = self.status_summary()
        return summary["total"] > 0 and summary["met"] == summary["total"]


class AlertGate:
    """
    Fires the notification sink only when a setup flips from not-ready to
    ready.  Staying ready does not re-fire; dropping out re-arms it.
    """

    def __init__(self, sink: Callable[[int, str], None]):
        self._sink = sink
        self._ready: dict[tuple[str, int], bool] = {}

    def update(self, symbol: str, tracker: ConditionTracker) -> bool:
        key = (symbol, tracker.setup.id)
        ready = tracker.should_alert()
        was_ready = self._ready.get(key, False)
        self._ready[key] = ready
        if ready and not was_ready:
            log.info(f"{symbol} setup #{tracker.setup.id} ready, all conditions met")
            self._sink(tracker.setup.id, symbol)
            return True
        return False
