"""
===============================================================================
  Technical Indicators — the few the engine needs
===============================================================================
  All functions accept the pipeline's candle DataFrame:
      time, open, high, low, close, volume
  The RSI feeds the condition tracker's oversold / overbought exits; the
  volume average feeds both the confidence scorer and the volume-spike check.
===============================================================================
"""

from __future__ import annotations

import numpy as np
import pandas as pd

import config as cfg


# ═════════════════════════════════════════════════════════════════════════════
#  RSI
# ═════════════════════════════════════════════════════════════════════════════

def rsi(df: pd.DataFrame, period: int | None = None) -> pd.Series:
    """
    Relative Strength Index with Wilder smoothing.

    Both averages are seeded with the simple mean of the first ``period``
    changes, then updated as ``(avg * (period - 1) + x) / period``.
    The first ``period`` values are NaN.  A window with no losses reads 100.
    """
    period = period or cfg.RSI_PERIOD
    closes = df["close"].to_numpy(dtype=float)
    n = len(closes)
    avg_gain = np.full(n, np.nan)
    avg_loss = np.full(n, np.nan)

    if n > period:
        delta = np.diff(closes)
        gains = np.clip(delta, 0, None)
        losses = np.clip(-delta, 0, None)

        g = gains[:period].mean()
        l = losses[:period].mean()
        avg_gain[period], avg_loss[period] = g, l
        for i in range(period + 1, n):
            g = (g * (period - 1) + gains[i - 1]) / period
            l = (l * (period - 1) + losses[i - 1]) / period
            avg_gain[i], avg_loss[i] = g, l

    avg_gain = pd.Series(avg_gain, index=df.index)
    avg_loss = pd.Series(avg_loss, index=df.index)
    rs = avg_gain / avg_loss.replace(0, np.nan)
    out = 100 - (100 / (1 + rs))
    out = out.mask(avg_loss.eq(0) & avg_gain.notna(), 100.0)
    return out


def add_rsi(df: pd.DataFrame, period: int | None = None) -> pd.DataFrame:
    """Append an ``rsi`` column (returns a copy; the input stays read-only)."""
    out = df.copy()
    out["rsi"] = rsi(df, period)
    return out


# ═════════════════════════════════════════════════════════════════════════════
#  VOLUME
# ═════════════════════════════════════════════════════════════════════════════

def volume_ratio(df: pd.DataFrame, period: int | None = None) -> tuple[float, float, float]:
    """
    Return ``(last_volume, average_volume, ratio)`` over the last *period*
    bars (the last bar included).  Ratio is 0.0 when the average is 0.
    """
    period = period or cfg.VOLUME_AVG_PERIOD
    if df is None or len(df) == 0:
        return 0.0, 0.0, 0.0
    vols = df["volume"].astype(float).fillna(0.0)
    last = float(vols.iloc[-1])
    avg = float(vols.iloc[-period:].mean())
    return last, avg, (last / avg if avg > 0 else 0.0)
