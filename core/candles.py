"""
===============================================================================
  Candle Store — OHLCV records ↔ pandas DataFrame
===============================================================================
  Every detector consumes the same frame layout:
      time (epoch seconds), open, high, low, close, volume
  with a positional RangeIndex, ascending by time.  The frame is treated as
  read-only by the pipeline.
===============================================================================
"""

from __future__ import annotations

from typing import Iterable, Mapping, Union

import pandas as pd

from core.models import Candle

CANDLE_COLUMNS = ["time", "open", "high", "low", "close", "volume"]

CandleInput = Union[pd.DataFrame, Iterable[Union[Candle, Mapping]]]


def _record(c: Union[Candle, Mapping]) -> dict:
    if isinstance(c, Candle):
        return c.to_dict()
    return {
        "time": c["time"],
        "open": c["open"],
        "high": c["high"],
        "low": c["low"],
        "close": c["close"],
        "volume": c.get("volume", 0.0),
    }


def to_frame(candles: CandleInput | None) -> pd.DataFrame:
    """
    Normalise candles into the pipeline's DataFrame layout.

    Accepts a DataFrame (copied, re-indexed) or any iterable of ``Candle``
    objects / mappings with the OHLCV keys.  ``None`` gives an empty frame.
    """
    if candles is None:
        return pd.DataFrame(columns=CANDLE_COLUMNS)

    if isinstance(candles, pd.DataFrame):
        df = candles.copy()
        if "volume" not in df.columns:
            df["volume"] = 0.0
        if "time" not in df.columns:
            raise ValueError("candle frame needs a 'time' column (epoch seconds)")
    else:
        df = pd.DataFrame([_record(c) for c in candles], columns=CANDLE_COLUMNS)

    df = df[CANDLE_COLUMNS].reset_index(drop=True)
    if len(df):
        df["time"] = df["time"].astype("int64")
        df[CANDLE_COLUMNS[1:]] = df[CANDLE_COLUMNS[1:]].astype(float)
    return df


def from_frame(df: pd.DataFrame) -> list[Candle]:
    """Inverse of ``to_frame``."""
    return [
        Candle(
            time=int(row.time),
            open=float(row.open),
            high=float(row.high),
            low=float(row.low),
            close=float(row.close),
            volume=float(row.volume),
        )
        for row in df[CANDLE_COLUMNS].itertuples(index=False)
    ]


def last_close(df: pd.DataFrame) -> float:
    """Close of the newest bar, 0.0 for an empty frame."""
    if df is None or len(df) == 0:
        return 0.0
    return float(df["close"].iloc[-1])
