"""
===============================================================================
  Market Structure — swing points, support / resistance, trend
===============================================================================
  Price is drawn to areas where orders accumulated before.  This module
  finds those areas from the swing structure of the candle slice:
    - Swing highs / lows (3-bar symmetric window)
    - S/R levels built by clustering swings within 1%
    - Trend from higher-highs / higher-lows of the recent swings
===============================================================================
"""

from __future__ import annotations

from typing import Optional

import numpy as np
import pandas as pd

from core.models import SRLevel, SwingPoint, SwingPoints, Trend
from utils.logger import get_logger

log = get_logger("structures")

SWING_LOOKBACK: int = 3          # bars each side
SR_TOLERANCE: float = 0.01       # 1% relative price distance
SR_TOUCH_STRENGTH: int = 15      # strength added per touch
SR_MAX_LEVELS: int = 8

TREND_MIN_BARS: int = 20
TREND_WINDOW: int = 40
TREND_FALLBACK_MOVE: float = 0.02


# ═════════════════════════════════════════════════════════════════════════════
#  SWING POINTS
# ═════════════════════════════════════════════════════════════════════════════

def find_swing_points(df: pd.DataFrame, lookback: int = SWING_LOOKBACK) -> SwingPoints:
    """
    Find swing highs and swing lows.

    A bar is a swing high when no bar within *lookback* bars on either side
    has a strictly greater high (mirror for lows).  Bars closer than
    *lookback* to either end of the slice are never swings.
    """
    if df is None or len(df) < 2 * lookback + 1:
        return SwingPoints()

    high_vals = df["high"].to_numpy(dtype=float)
    low_vals = df["low"].to_numpy(dtype=float)
    times = df["time"].to_numpy()

    highs: list[SwingPoint] = []
    lows: list[SwingPoint] = []

    for i in range(lookback, len(df) - lookback):
        window = slice(i - lookback, i + lookback + 1)
        if not (high_vals[window] > high_vals[i]).any():
            highs.append(SwingPoint(i, float(high_vals[i]), int(times[i]), "high"))
        if not (low_vals[window] < low_vals[i]).any():
            lows.append(SwingPoint(i, float(low_vals[i]), int(times[i]), "low"))

    return SwingPoints(tuple(highs), tuple(lows))


# ═════════════════════════════════════════════════════════════════════════════
#  SUPPORT & RESISTANCE LEVELS
# ═════════════════════════════════════════════════════════════════════════════

def find_sr_levels(
    df: pd.DataFrame,
    swings: Optional[SwingPoints] = None,
) -> list[SRLevel]:
    """
    Identify horizontal support / resistance levels.

    Algorithm:
    1. Walk the swing highs, then the swing lows, in time order.
    2. A swing within 1% of an existing level is another touch of it;
       otherwise it opens a new level (resistance for highs, support for lows).
    3. Strength is 15 per touch, capped at 100.
    4. Return the 8 strongest, strongest first.
    """
    if swings is None:
        swings = find_swing_points(df)

    clusters: list[dict] = []
    for point in (*swings.highs, *swings.lows):
        if point.price <= 0:
            continue
        existing = next(
            (c for c in clusters
             if abs(c["price"] - point.price) / point.price < SR_TOLERANCE),
            None,
        )
        if existing is not None:
            existing["touches"] += 1
        else:
            clusters.append({
                "price": point.price,
                "touches": 1,
                "kind": "resistance" if point.kind == "high" else "support",
            })

    levels = [
        SRLevel(
            price=c["price"],
            touches=c["touches"],
            strength=float(min(c["touches"] * SR_TOUCH_STRENGTH, 100)),
            kind=c["kind"],
        )
        for c in clusters
    ]
    # Stable sort: equal strength keeps creation order
    levels.sort(key=lambda lvl: lvl.strength, reverse=True)
    return levels[:SR_MAX_LEVELS]


def nearest_level(
    levels: list[SRLevel],
    price: float,
    tolerance: float = 0.02,
) -> Optional[SRLevel]:
    """First (i.e. strongest) level within *tolerance* of *price*, if any."""
    if price <= 0:
        return None
    return next(
        (lvl for lvl in levels if abs(lvl.price - price) / price < tolerance),
        None,
    )


# ═════════════════════════════════════════════════════════════════════════════
#  TREND STRUCTURE (Higher Highs / Higher Lows etc.)
# ═════════════════════════════════════════════════════════════════════════════

def detect_trend(df: pd.DataFrame) -> Trend:
    """
    Classify the recent market structure from the last 40 bars:
    - 'uptrend':    the last of the recent 3 swing highs (or lows) is higher
                    than the first
    - 'downtrend':  lower highs or lower lows
    - 'ranging':    neither, or fewer than 20 bars of history

    With fewer than 2 swing highs or lows in the window, falls back to the
    net close change: beyond ±2% is a trend.
    """
    if df is None or len(df) < TREND_MIN_BARS:
        return Trend.RANGING

    recent = df.iloc[-TREND_WINDOW:]
    swings = find_swing_points(recent)

    if len(swings.highs) < 2 or len(swings.lows) < 2:
        first_close = float(recent["close"].iloc[0])
        if first_close <= 0:
            return Trend.RANGING
        change = (float(recent["close"].iloc[-1]) - first_close) / first_close
        if change > TREND_FALLBACK_MOVE:
            return Trend.UPTREND
        if change < -TREND_FALLBACK_MOVE:
            return Trend.DOWNTREND
        return Trend.RANGING

    recent_highs = np.array([p.price for p in swings.highs[-3:]])
    recent_lows = np.array([p.price for p in swings.lows[-3:]])

    hh = recent_highs[-1] > recent_highs[0]
    hl = recent_lows[-1] > recent_lows[0]
    lh = recent_highs[-1] < recent_highs[0]
    ll = recent_lows[-1] < recent_lows[0]

    if hh or hl:
        return Trend.UPTREND
    if lh or ll:
        return Trend.DOWNTREND
    return Trend.RANGING
