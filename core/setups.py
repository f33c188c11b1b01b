"""
===============================================================================
  Setup Synthesizer — turns detected zones into ranked trade setups
===============================================================================
  For each technique and direction a "nearby" rule checks whether the last
  close sits in (or just outside) the most relevant zone.  A match becomes a
  Setup with an entry band, a stop beyond the far edge of the zone, fixed
  percentage targets, a scored confidence and a checklist of confirmations.

  Proximity rules are per technique on purpose (1%, 1.5%, 2%); they are not
  unified.

  When a side has no setup, the report explains why.
===============================================================================
"""

from __future__ import annotations

from dataclasses import dataclass, field
from itertools import count
from types import MappingProxyType
from typing import Mapping, Optional

import pandas as pd

from core.candles import last_close, to_frame, CandleInput
from core.confidence import Confidence, FactorScore, score_setup
from core.models import Bias, Direction, PatternSet, SRLevel, Technique, Trend
from core.smart_money import analyze_smart_money
from core.structures import detect_trend, find_sr_levels
from utils.logger import get_logger

log = get_logger("setups")

MIN_SETUP_BARS: int = 50
MAX_SETUPS_PER_SIDE: int = 3
ZONE_INVALIDATION: float = 0.01

CONFIRMATIONS: dict[tuple[Technique, Direction], tuple[str, ...]] = {
    (Technique.ORDER_BLOCK, Direction.LONG): (
        "Price touches the order block zone",
        "Bullish rejection candle (pin bar / engulfing)",
        "Volume spike on the reaction",
        "HTF trend alignment",
    ),
    (Technique.ORDER_BLOCK, Direction.SHORT): (
        "Price touches the order block zone",
        "Bearish rejection candle (pin bar / engulfing)",
        "Volume spike on the reaction",
        "HTF trend alignment",
    ),
    (Technique.FVG, Direction.LONG): (
        "Price returns into the gap zone",
        "Candle body close inside the gap",
        "RSI oversold exit",
    ),
    (Technique.FVG, Direction.SHORT): (
        "Price returns into the gap zone",
        "Candle body close inside the gap",
        "Overbought exit on momentum",
    ),
    (Technique.RANGE, Direction.LONG): (
        "Price touches the range low boundary",
        "Rejection candle at the range low",
        "RSI oversold exit",
    ),
    (Technique.RANGE, Direction.SHORT): (
        "Price touches the range high boundary",
        "Rejection candle at the range high",
        "Overbought exit at the range high",
    ),
    (Technique.LIQUIDITY_SWEEP, Direction.LONG): (
        "Wick sweeps below the equal lows",
        "Body close back above the level",
        "Volume spike on the sweep",
    ),
    (Technique.LIQUIDITY_SWEEP, Direction.SHORT): (
        "Wick sweeps above the equal highs",
        "Body close back below the level",
        "Volume spike on the sweep",
    ),
    (Technique.BOS, Direction.LONG): (
        "Price retests the broken level zone",
        "Bullish engulfing on the retest",
        "HTF trend alignment",
    ),
    (Technique.BOS, Direction.SHORT): (
        "Price retests the broken level zone",
        "Bearish engulfing on the retest",
        "HTF trend alignment",
    ),
}


@dataclass(frozen=True)
class Target:
    level: float
    rr: float


@dataclass(frozen=True)
class ReferenceZone:
    type: str  # "order_block" | "fvg" | "range"
    high: float
    low: float
    start_time: int
    end_time: int


@dataclass(frozen=True)
class Setup:
    """A read-only trade idea.  Re-synthesis replaces it, never edits it."""
    id: int
    name: str
    direction: Direction
    technique: Technique
    entry: tuple[float, float]          # (low, high)
    stop: float
    targets: tuple[Target, ...]
    confidence_breakdown: Mapping[str, FactorScore] = field(hash=False)
    reference_zones: tuple[ReferenceZone, ...] = ()
    reasons: tuple[str, ...] = ()
    confirmations: tuple[str, ...] = ()

    def __post_init__(self):
        # read-only view over a private copy
        object.__setattr__(
            self, "confidence_breakdown",
            MappingProxyType(dict(self.confidence_breakdown)),
        )

    @property
    def confidence(self) -> float:
        return Confidence(self.confidence_breakdown).total

    @property
    def technique_label(self) -> str:
        return self.technique.label

    @property
    def entry_mid(self) -> float:
        return (self.entry[0] + self.entry[1]) / 2

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "direction": self.direction.value,
            "technique": self.technique.value,
            "technique_label": self.technique_label,
            "entry": list(self.entry),
            "stop": self.stop,
            "targets": [{"level": t.level, "rr": t.rr} for t in self.targets],
            "confidence": self.confidence,
            "confidence_breakdown": {
                k: v.to_dict() for k, v in self.confidence_breakdown.items()
            },
            "reference_zones": [
                {
                    "type": z.type, "high": z.high, "low": z.low,
                    "start_time": z.start_time, "end_time": z.end_time,
                }
                for z in self.reference_zones
            ],
            "reasons": list(self.reasons),
            "confirmations": list(self.confirmations),
        }


@dataclass(frozen=True)
class SetupReport:
    long_setups: tuple[Setup, ...] = ()
    short_setups: tuple[Setup, ...] = ()
    no_long_reasons: tuple[str, ...] = ()
    no_short_reasons: tuple[str, ...] = ()
    trend: Trend = Trend.RANGING
    current_price: float = 0.0
    patterns: PatternSet = field(default_factory=PatternSet)

    @property
    def all_setups(self) -> tuple[Setup, ...]:
        return self.long_setups + self.short_setups


def risk_reward(direction: Direction, entry: float, stop: float, target: float) -> float:
    """(target − entry) / (entry − stop), mirrored for shorts; 0.0 without risk."""
    if direction is Direction.LONG:
        risk, reward = entry - stop, target - entry
    else:
        risk, reward = stop - entry, entry - target
    if risk <= 0:
        return 0.0
    return round(reward / risk, 2)


class _Builder:
    """Collects candidate setups for one synthesis pass."""

    def __init__(self, df: pd.DataFrame, trend: Trend, sr_levels: list[SRLevel]):
        self.df = df
        self.trend = trend
        self.sr_levels = sr_levels
        self._ids = count(1)

    def build(
        self,
        name: str,
        direction: Direction,
        technique: Technique,
        entry: tuple[float, float],
        stop: float,
        target_levels: list[float],
        reasons: tuple[str, ...],
        zone: Optional[ReferenceZone] = None,
    ) -> Setup:
        mid = (entry[0] + entry[1]) / 2
        targets = tuple(
            Target(level, risk_reward(direction, mid, stop, level))
            for level in target_levels
        )
        conf = score_setup(direction, technique, entry[0], self.trend, self.sr_levels, self.df)
        return Setup(
            id=next(self._ids),
            name=name,
            direction=direction,
            technique=technique,
            entry=entry,
            stop=stop,
            targets=targets,
            confidence_breakdown=conf.breakdown,
            reference_zones=(zone,) if zone else (),
            reasons=reasons,
            confirmations=CONFIRMATIONS[(technique, direction)],
        )


def generate_setups(candles: CandleInput) -> SetupReport:
    """
    Synthesize ranked long / short setups from the candle slice.

    Fewer than 50 bars short-circuits to an empty report with no reasons.
    """
    df = to_frame(candles)
    if len(df) < MIN_SETUP_BARS:
        return SetupReport(current_price=last_close(df))

    patterns = analyze_smart_money(df)
    sr_levels = find_sr_levels(df, patterns.swings)
    trend = detect_trend(df)
    price = last_close(df)
    last_time = int(df["time"].iloc[-1])
    b = _Builder(df, trend, sr_levels)

    longs: list[Setup] = []
    shorts: list[Setup] = []

    bull_obs = [ob for ob in patterns.order_blocks if ob.kind is Bias.BULLISH]
    bear_obs = [ob for ob in patterns.order_blocks if ob.kind is Bias.BEARISH]
    bull_fvgs = [g for g in patterns.fair_value_gaps if g.kind is Bias.BULLISH]
    bear_fvgs = [g for g in patterns.fair_value_gaps if g.kind is Bias.BEARISH]
    bull_sweep = next((s for s in patterns.sweeps if s.kind is Bias.BULLISH), None)
    bear_sweep = next((s for s in patterns.sweeps if s.kind is Bias.BEARISH), None)
    bull_bos = [e for e in patterns.bos_levels if e.kind is Bias.BULLISH]
    bear_bos = [e for e in patterns.bos_levels if e.kind is Bias.BEARISH]
    active_range = next(
        (r for r in patterns.ranges if r.low * 0.99 <= price <= r.high * 1.01),
        None,
    )

    # ══ LONG SETUPS ═════════════════════════════════════════════════════

    ob = next((o for o in bull_obs if o.low < price < o.high * 1.02), None)
    if ob:
        longs.append(b.build(
            "Order Block Long", Direction.LONG, Technique.ORDER_BLOCK,
            (ob.low, ob.high), ob.low * 0.99,
            [price * 1.02, price * 1.035, price * 1.05],
            (f"Bullish OB strength: {ob.strength:.0f}%", "Price is near the OB zone"),
            ReferenceZone("order_block", ob.high, ob.low, ob.time, last_time),
        ))

    fvg = next((g for g in bull_fvgs if g.low <= price <= g.high * 1.01), None)
    if fvg:
        longs.append(b.build(
            "FVG Fill Long", Direction.LONG, Technique.FVG,
            (fvg.low, fvg.high), fvg.low * 0.985,
            [price * 1.015, price * 1.03],
            (f"Bullish FVG: {fvg.gap_percent:.2f}%", "Gap not filled yet"),
            ReferenceZone("fvg", fvg.high, fvg.low, fvg.time, fvg.end_time),
        ))

    if active_range and price < active_range.midpoint:
        r = active_range
        longs.append(b.build(
            "Range Low Long", Direction.LONG, Technique.RANGE,
            (r.low, r.low * 1.005), r.low * 0.985,
            [r.midpoint, r.high],
            (f"Range has lasted {r.bars} bars", "Price is in the lower half of the range"),
            ReferenceZone("range", r.high, r.low, r.start_time, last_time),
        ))

    if bull_sweep:
        lvl = bull_sweep.sweep_level
        longs.append(b.build(
            "Liquidity Sweep Long", Direction.LONG, Technique.LIQUIDITY_SWEEP,
            (lvl * 0.998, lvl * 1.005), lvl * 0.985,
            [price * 1.02, price * 1.04],
            ("Equal lows were swept", "Price reclaimed the level, trap completed"),
        ))

    if bull_bos and bull_bos[-1].level < price < bull_bos[-1].level * 1.02:
        lvl = bull_bos[-1].level
        longs.append(b.build(
            "BOS Retest Long", Direction.LONG, Technique.BOS,
            (lvl * 0.998, lvl * 1.008), lvl * 0.985,
            [price * 1.025, price * 1.045],
            ("Bullish BOS formed", "Price is retesting the broken level"),
        ))

    # ══ SHORT SETUPS ════════════════════════════════════════════════════

    ob = next((o for o in bear_obs if o.low * 0.98 < price < o.high), None)
    if ob:
        shorts.append(b.build(
            "Order Block Short", Direction.SHORT, Technique.ORDER_BLOCK,
            (ob.low, ob.high), ob.high * 1.01,
            [price * 0.98, price * 0.965, price * 0.95],
            (f"Bearish OB strength: {ob.strength:.0f}%", "Price is near the OB zone"),
            ReferenceZone("order_block", ob.high, ob.low, ob.time, last_time),
        ))

    fvg = next((g for g in bear_fvgs if g.low * 0.99 <= price <= g.high), None)
    if fvg:
        shorts.append(b.build(
            "FVG Fill Short", Direction.SHORT, Technique.FVG,
            (fvg.low, fvg.high), fvg.high * 1.015,
            [price * 0.985, price * 0.97],
            (f"Bearish FVG: {fvg.gap_percent:.2f}%", "Gap not filled yet"),
            ReferenceZone("fvg", fvg.high, fvg.low, fvg.time, fvg.end_time),
        ))

    if active_range and price > active_range.midpoint:
        r = active_range
        shorts.append(b.build(
            "Range High Short", Direction.SHORT, Technique.RANGE,
            (r.high * 0.995, r.high), r.high * 1.015,
            [r.midpoint, r.low],
            (f"Range has lasted {r.bars} bars", "Price is in the upper half of the range"),
            ReferenceZone("range", r.high, r.low, r.start_time, last_time),
        ))

    if bear_sweep:
        lvl = bear_sweep.sweep_level
        shorts.append(b.build(
            "Liquidity Sweep Short", Direction.SHORT, Technique.LIQUIDITY_SWEEP,
            (lvl * 0.995, lvl * 1.002), lvl * 1.015,
            [price * 0.98, price * 0.96],
            ("Equal highs were swept", "Price rejected back below, trap completed"),
        ))

    if bear_bos and bear_bos[-1].level * 0.98 < price < bear_bos[-1].level:
        lvl = bear_bos[-1].level
        shorts.append(b.build(
            "BOS Retest Short", Direction.SHORT, Technique.BOS,
            (lvl * 0.992, lvl * 1.002), lvl * 1.015,
            [price * 0.975, price * 0.955],
            ("Bearish BOS formed", "Price is retesting the broken level"),
        ))

    # ══ NO SETUP EXPLANATIONS ═══════════════════════════════════════════

    no_long: list[str] = []
    if not longs:
        if trend == Trend.DOWNTREND:
            no_long += ["Market is in a strong downtrend", "Counter-trend long is risky"]
        if not bull_obs:
            no_long.append("No bullish order block found")
        if not bull_fvgs:
            no_long.append("No bullish FVG present")
        if bull_sweep is None:
            no_long.append("No liquidity sweep of equal lows")
        if active_range is None or price > active_range.midpoint:
            no_long.append("Price is not near the range low")
        if not no_long:
            no_long += ["Technical levels do not offer an entry", "Wait for clearer price action"]

    no_short: list[str] = []
    if not shorts:
        if trend == Trend.UPTREND:
            no_short += ["Market is in a strong uptrend", "Counter-trend short is risky"]
        if not bear_obs:
            no_short.append("No bearish order block found")
        if not bear_fvgs:
            no_short.append("No bearish FVG present")
        if bear_sweep is None:
            no_short.append("No liquidity sweep of equal highs")
        if active_range is None or price < active_range.midpoint:
            no_short.append("Price is not near the range high")
        if not no_short:
            no_short += ["Technical levels do not offer an entry", "Wait for clearer price action"]

    longs.sort(key=lambda s: s.confidence, reverse=True)
    shorts.sort(key=lambda s: s.confidence, reverse=True)

    log.debug(
        f"trend={trend.value} price={price:.6g} "
        f"long={len(longs)} short={len(shorts)}"
    )

    return SetupReport(
        long_setups=tuple(longs[:MAX_SETUPS_PER_SIDE]),
        short_setups=tuple(shorts[:MAX_SETUPS_PER_SIDE]),
        no_long_reasons=tuple(no_long),
        no_short_reasons=tuple(no_short),
        trend=trend,
        current_price=price,
        patterns=patterns,
    )


def check_zone_validity(setup: Setup, current_price: float) -> dict:
    """
    A long is invalid once price trades more than 1% below its entry low;
    a short once price is more than 1% above its entry high.
    """
    low, high = setup.entry
    if setup.direction is Direction.LONG and current_price < low * (1 - ZONE_INVALIDATION):
        return {"status": "INVALID", "reason": "Price broke below zone"}
    if setup.direction is Direction.SHORT and current_price > high * (1 + ZONE_INVALIDATION):
        return {"status": "INVALID", "reason": "Price broke above zone"}
    return {"status": "ACTIVE", "reason": ""}
