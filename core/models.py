"""
Value objects shared by the detection pipeline.

Every record is frozen: detectors build them once and nothing downstream
mutates an emitted zone or event.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Literal


class Trend(str, Enum):
    UPTREND = "uptrend"
    DOWNTREND = "downtrend"
    RANGING = "ranging"


class Direction(str, Enum):
    LONG = "long"
    SHORT = "short"

    @property
    def aligned_trend(self) -> Trend:
        return Trend.UPTREND if self is Direction.LONG else Trend.DOWNTREND


class Bias(str, Enum):
    BULLISH = "bullish"
    BEARISH = "bearish"


class Technique(str, Enum):
    ORDER_BLOCK = "order_block"
    FVG = "fvg"
    RANGE = "range"
    LIQUIDITY_SWEEP = "liquidity_sweep"
    BOS = "bos"

    @property
    def label(self) -> str:
        return _TECHNIQUE_LABELS[self]


_TECHNIQUE_LABELS = {
    Technique.ORDER_BLOCK: "Order Block",
    Technique.FVG: "Fair Value Gap",
    Technique.RANGE: "Range Trading",
    Technique.LIQUIDITY_SWEEP: "Liquidity Sweep",
    Technique.BOS: "Break of Structure",
}


@dataclass(frozen=True)
class Candle:
    time: int  # epoch seconds
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class SwingPoint:
    index: int
    price: float
    time: int
    kind: Literal["high", "low"]


@dataclass(frozen=True)
class SwingPoints:
    highs: tuple[SwingPoint, ...] = ()
    lows: tuple[SwingPoint, ...] = ()


@dataclass(frozen=True)
class SRLevel:
    price: float
    touches: int
    strength: float  # 0-100
    kind: Literal["support", "resistance"]


@dataclass(frozen=True)
class OrderBlock:
    kind: Bias
    high: float
    low: float
    time: int
    end_time: int
    strength: float  # 0-100
    mitigated: bool = False


@dataclass(frozen=True)
class FairValueGap:
    kind: Bias
    high: float
    low: float
    time: int
    end_time: int
    gap_percent: float
    filled: bool = False


@dataclass(frozen=True)
class Range:
    high: float
    low: float
    start_time: int
    end_time: int
    bars: int
    touches_high: int
    touches_low: int

    @property
    def midpoint(self) -> float:
        return (self.high + self.low) / 2


@dataclass(frozen=True)
class BOSLevel:
    kind: Bias
    level: float
    time: int        # time of the breaking candle
    swing_time: int  # time of the swing that was broken


@dataclass(frozen=True)
class Sweep:
    kind: Bias
    sweep_level: float
    sweep_time: int
    direction: Direction


@dataclass(frozen=True)
class PatternSet:
    """Everything the detectors found on one candle slice."""
    swings: SwingPoints = field(default_factory=SwingPoints)
    order_blocks: tuple[OrderBlock, ...] = ()
    fair_value_gaps: tuple[FairValueGap, ...] = ()
    ranges: tuple[Range, ...] = ()
    bos_levels: tuple[BOSLevel, ...] = ()
    sweeps: tuple[Sweep, ...] = ()
