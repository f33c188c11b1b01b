"""
===============================================================================
  Smart Money Concepts — Institutional Order Flow Detection
===============================================================================
  Detects the zones and events that reveal how "smart money" moves:
    • Order Blocks (OB)
    • Fair Value Gaps (FVG)
    • Consolidation Ranges
    • Break of Structure (BOS)
    • Liquidity Sweeps / Stop Hunts

  A zone is only useful while it is still active (unmitigated / unfilled),
  so every detector drops zones already invalidated by later price action
  and keeps a short tail of the most recent ones.  Thresholds below are
  fixed: the same candles must always produce the same zones.
===============================================================================
"""

from __future__ import annotations

from typing import Callable, Iterable, Optional, TypeVar

import numpy as np
import pandas as pd

from core.models import (
    Bias,
    BOSLevel,
    Direction,
    FairValueGap,
    OrderBlock,
    PatternSet,
    Range,
    Sweep,
    SwingPoints,
)
from core.structures import find_swing_points
from utils.logger import get_logger

log = get_logger("smart_money")

T = TypeVar("T")

# Order blocks
OB_MIN_MOVE: float = 0.015        # 1.5% impulse beyond the candle
OB_IMPULSE_BARS: int = 5          # bars after the candle that may carry it
OB_KEEP: int = 5

# Fair value gaps
FVG_MIN_GAP: float = 0.002        # 0.2% of the reference wick
FVG_KEEP: int = 5

# Ranges
RANGE_MIN_BARS: int = 8
RANGE_MAX_WIDTH: float = 0.03     # (high - low) / low
RANGE_BAND: float = 0.01          # extension tolerance around the range
RANGE_TOUCH: float = 0.002
RANGE_KEEP: int = 3

# Structure breaks
BOS_KEEP: int = 5

# Liquidity sweeps
POOL_TOLERANCE: float = 0.003     # equal highs / lows within 0.3%
SWEEP_PIERCE: float = 0.001       # wick must pierce the pool by 0.1%
SWEEP_KEEP: int = 3


def keep_recent(
    items: Iterable[T],
    n: int,
    active: Optional[Callable[[T], bool]] = None,
) -> list[T]:
    """Drop inactive items, then keep the last *n* without reordering."""
    kept = [item for item in items if active is None or active(item)]
    return kept[-n:] if n > 0 else []


def _arrays(df: pd.DataFrame) -> tuple[np.ndarray, ...]:
    return (
        df["open"].to_numpy(dtype=float),
        df["high"].to_numpy(dtype=float),
        df["low"].to_numpy(dtype=float),
        df["close"].to_numpy(dtype=float),
        df["time"].to_numpy(),
    )


# ═════════════════════════════════════════════════════════════════════════════
#  ORDER BLOCKS
# ═════════════════════════════════════════════════════════════════════════════

def find_order_blocks(df: pd.DataFrame) -> list[OrderBlock]:
    """
    An Order Block is the last opposing candle before a strong impulsive move.

    Bullish OB: bearish candle whose high is exceeded by more than 1.5%
    within the next 5 bars.  Mitigated once any later low trades below it.
    Bearish OB: the mirror image.

    These zones act as institutional entry areas where smart money placed
    large orders.
    """
    if df is None or len(df) < 5:
        return []

    opens, highs, lows, closes, times = _arrays(df)
    n = len(df)
    blocks: list[OrderBlock] = []

    for i in range(3, n - 1):
        stop = min(i + 1 + OB_IMPULSE_BARS, n)
        if stop - (i + 1) < 2:
            continue

        max_high = highs[i + 1:stop].max()
        min_low = lows[i + 1:stop].min()
        end_time = int(times[stop - 1])

        # Bullish OB: bearish candle → bullish impulse
        if closes[i] < opens[i] and highs[i] > 0:
            move_up = (max_high - highs[i]) / highs[i]
            if move_up > OB_MIN_MOVE:
                blocks.append(OrderBlock(
                    kind=Bias.BULLISH,
                    high=float(highs[i]),
                    low=float(lows[i]),
                    time=int(times[i]),
                    end_time=end_time,
                    strength=float(min(move_up * 100 * 3, 100)),
                    mitigated=bool((lows[i + 1:] < lows[i]).any()),
                ))

        # Bearish OB: bullish candle → bearish impulse
        if closes[i] > opens[i] and lows[i] > 0:
            move_down = (lows[i] - min_low) / lows[i]
            if move_down > OB_MIN_MOVE:
                blocks.append(OrderBlock(
                    kind=Bias.BEARISH,
                    high=float(highs[i]),
                    low=float(lows[i]),
                    time=int(times[i]),
                    end_time=end_time,
                    strength=float(min(move_down * 100 * 3, 100)),
                    mitigated=bool((highs[i + 1:] > highs[i]).any()),
                ))

    return keep_recent(blocks, OB_KEEP, active=lambda ob: not ob.mitigated)


# ═════════════════════════════════════════════════════════════════════════════
#  FAIR VALUE GAPS (FVG) — Imbalances
# ═════════════════════════════════════════════════════════════════════════════

def find_fair_value_gaps(df: pd.DataFrame) -> list[FairValueGap]:
    """
    A Fair Value Gap is a three-candle pattern with a gap between
    candle 1's wick and candle 3's wick.

    Bullish FVG: candle_1.high < candle_3.low (gap up)
    Bearish FVG: candle_1.low > candle_3.high (gap down)

    These gaps tend to get filled — price is "attracted" to them.  A gap
    is filled once any later candle trades back to candle 1's wick.
    """
    if df is None or len(df) < 3:
        return []

    _, highs, lows, _, times = _arrays(df)
    gaps: list[FairValueGap] = []

    for i in range(2, len(df)):
        c1_high, c1_low = highs[i - 2], lows[i - 2]
        c3_high, c3_low = highs[i], lows[i]

        if c1_high < c3_low and c1_high > 0:
            gap = (c3_low - c1_high) / c1_high
            if gap > FVG_MIN_GAP:
                gaps.append(FairValueGap(
                    kind=Bias.BULLISH,
                    high=float(c3_low),
                    low=float(c1_high),
                    time=int(times[i - 2]),
                    end_time=int(times[i]),
                    gap_percent=float(gap * 100),
                    filled=bool((lows[i + 1:] <= c1_high).any()),
                ))

        if c1_low > c3_high and c3_high > 0:
            gap = (c1_low - c3_high) / c3_high
            if gap > FVG_MIN_GAP:
                gaps.append(FairValueGap(
                    kind=Bias.BEARISH,
                    high=float(c1_low),
                    low=float(c3_high),
                    time=int(times[i - 2]),
                    end_time=int(times[i]),
                    gap_percent=float(gap * 100),
                    filled=bool((highs[i + 1:] >= c1_low).any()),
                ))

    return keep_recent(gaps, FVG_KEEP, active=lambda g: not g.filled)


# ═════════════════════════════════════════════════════════════════════════════
#  CONSOLIDATION RANGES
# ═════════════════════════════════════════════════════════════════════════════

def find_ranges(df: pd.DataFrame) -> list[Range]:
    """
    A range is at least 8 bars whose total width stays under 3%.

    The seed window is extended bar by bar while price stays inside a 1%
    band around it; scanning resumes after the range ends.
    """
    if df is None or len(df) <= RANGE_MIN_BARS:
        return []

    _, highs, lows, _, times = _arrays(df)
    n = len(df)
    ranges: list[Range] = []

    i = 0
    while i < n - RANGE_MIN_BARS:
        seg_high = highs[i:i + RANGE_MIN_BARS]
        seg_low = lows[i:i + RANGE_MIN_BARS]
        range_high = seg_high.max()
        range_low = seg_low.min()

        if range_low <= 0 or (range_high - range_low) / range_low >= RANGE_MAX_WIDTH:
            i += 1
            continue

        end = i + RANGE_MIN_BARS
        while end < n:
            if highs[end] > range_high * (1 + RANGE_BAND) or lows[end] < range_low * (1 - RANGE_BAND):
                break
            end += 1

        ranges.append(Range(
            high=float(range_high),
            low=float(range_low),
            start_time=int(times[i]),
            end_time=int(times[end - 1]),
            bars=end - i,
            touches_high=int((seg_high > range_high * (1 - RANGE_TOUCH)).sum()),
            touches_low=int((seg_low < range_low * (1 + RANGE_TOUCH)).sum()),
        ))
        i = end

    return keep_recent(ranges, RANGE_KEEP)


# ═════════════════════════════════════════════════════════════════════════════
#  BREAK OF STRUCTURE (BOS)
# ═════════════════════════════════════════════════════════════════════════════

def find_structure_breaks(
    df: pd.DataFrame,
    swings: Optional[SwingPoints] = None,
) -> list[BOSLevel]:
    """
    Bullish BOS: a swing high exceeds the previous swing high, and some
    candle after the previous one closed above it.
    Bearish BOS: lower swing low + a close below the previous swing low.

    Events are returned in order of the breaking candle.
    """
    if df is None or len(df) == 0:
        return []
    if swings is None:
        swings = find_swing_points(df)

    closes = df["close"].to_numpy(dtype=float)
    times = df["time"].to_numpy()
    events: list[tuple[int, BOSLevel]] = []

    for prev, cur in zip(swings.highs, swings.highs[1:]):
        if cur.price <= prev.price:
            continue
        after = np.flatnonzero(closes[prev.index + 1:] > prev.price)
        if after.size:
            k = prev.index + 1 + int(after[0])
            events.append((k, BOSLevel(Bias.BULLISH, prev.price, int(times[k]), prev.time)))

    for prev, cur in zip(swings.lows, swings.lows[1:]):
        if cur.price >= prev.price:
            continue
        after = np.flatnonzero(closes[prev.index + 1:] < prev.price)
        if after.size:
            k = prev.index + 1 + int(after[0])
            events.append((k, BOSLevel(Bias.BEARISH, prev.price, int(times[k]), prev.time)))

    events.sort(key=lambda e: e[0])
    return keep_recent((bos for _, bos in events), BOS_KEEP)


# ═════════════════════════════════════════════════════════════════════════════
#  LIQUIDITY SWEEPS / STOP HUNTS
# ═════════════════════════════════════════════════════════════════════════════

def find_liquidity_sweeps(
    df: pd.DataFrame,
    swings: Optional[SwingPoints] = None,
) -> list[Sweep]:
    """
    Equal highs (or lows) within 0.3% of each other form a liquidity pool.
    A sweep is the first later candle that wicks 0.1% through the pool but
    closes back inside it: traders who entered on the "breakout" are
    trapped as price reverses.
    """
    if df is None or len(df) == 0:
        return []
    if swings is None:
        swings = find_swing_points(df)

    _, highs, lows, closes, times = _arrays(df)
    found: list[tuple[int, Sweep]] = []

    pts = swings.highs
    for a in range(len(pts) - 1):
        for b in range(a + 1, len(pts)):
            if pts[a].price <= 0 or abs(pts[a].price - pts[b].price) / pts[a].price >= POOL_TOLERANCE:
                continue
            level = max(pts[a].price, pts[b].price)
            start = max(pts[a].index, pts[b].index) + 1
            hit = np.flatnonzero(
                (highs[start:] > level * (1 + SWEEP_PIERCE)) & (closes[start:] < level)
            )
            if hit.size:
                k = start + int(hit[0])
                found.append((k, Sweep(Bias.BEARISH, level, int(times[k]), Direction.SHORT)))

    pts = swings.lows
    for a in range(len(pts) - 1):
        for b in range(a + 1, len(pts)):
            if pts[a].price <= 0 or abs(pts[a].price - pts[b].price) / pts[a].price >= POOL_TOLERANCE:
                continue
            level = min(pts[a].price, pts[b].price)
            start = max(pts[a].index, pts[b].index) + 1
            hit = np.flatnonzero(
                (lows[start:] < level * (1 - SWEEP_PIERCE)) & (closes[start:] > level)
            )
            if hit.size:
                k = start + int(hit[0])
                found.append((k, Sweep(Bias.BULLISH, level, int(times[k]), Direction.LONG)))

    found.sort(key=lambda s: s[0])
    return keep_recent((sweep for _, sweep in found), SWEEP_KEEP)


# ═════════════════════════════════════════════════════════════════════════════
#  MASTER SMART MONEY ANALYSIS
# ═════════════════════════════════════════════════════════════════════════════

def analyze_smart_money(df: pd.DataFrame) -> PatternSet:
    """Run all five detectors over one slice, sharing its swing points."""
    swings = find_swing_points(df)
    result = PatternSet(
        swings=swings,
        order_blocks=tuple(find_order_blocks(df)),
        fair_value_gaps=tuple(find_fair_value_gaps(df)),
        ranges=tuple(find_ranges(df)),
        bos_levels=tuple(find_structure_breaks(df, swings)),
        sweeps=tuple(find_liquidity_sweeps(df, swings)),
    )
    log.debug(
        f"patterns: {len(result.order_blocks)} OB, {len(result.fair_value_gaps)} FVG, "
        f"{len(result.ranges)} range, {len(result.bos_levels)} BOS, "
        f"{len(result.sweeps)} sweep"
    )
    return result
