"""
===============================================================================
  Confidence Scorer — six additive factors, 0-100
===============================================================================
  Factor                 max   rule
  trend_alignment         25   with trend 25 · ranging 15 · against 5
  sr_strength             20   level within 2% of entry: touches × 5 · else 8
  pattern_quality         20   fixed weight per technique
  volume_confirmation     15   last bar vs 20-bar average
  mtf_confluence          10   placeholder (single-timeframe analysis)
  historical_rate         10   placeholder

  The total is always the sum of the breakdown; it is never stored apart
  from it.
===============================================================================
"""

from __future__ import annotations

from dataclasses import dataclass, field

import pandas as pd

from core.indicators import volume_ratio
from core.models import Direction, SRLevel, Technique, Trend
from core.structures import nearest_level

FACTOR_MAX = {
    "trend_alignment": 25,
    "sr_strength": 20,
    "pattern_quality": 20,
    "volume_confirmation": 15,
    "mtf_confluence": 10,
    "historical_rate": 10,
}

PATTERN_QUALITY = {
    Technique.ORDER_BLOCK: 18,
    Technique.LIQUIDITY_SWEEP: 17,
    Technique.FVG: 16,
    Technique.BOS: 15,
    Technique.RANGE: 14,
}
PATTERN_QUALITY_DEFAULT = 12

# Known limitation: only one timeframe is analysed and no outcome history is
# kept, so these two factors are constants until real inputs exist.
MTF_PLACEHOLDER_SCORE = 7
HISTORICAL_PLACEHOLDER_SCORE = 7

SR_PROXIMITY = 0.02
SR_FALLBACK_SCORE = 8


@dataclass(frozen=True)
class FactorScore:
    score: float
    max_score: float
    reason: str

    def to_dict(self) -> dict:
        return {"score": self.score, "max_score": self.max_score, "reason": self.reason}


@dataclass(frozen=True)
class Confidence:
    breakdown: dict[str, FactorScore] = field(default_factory=dict)

    @property
    def total(self) -> float:
        return sum(f.score for f in self.breakdown.values())

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "breakdown": {k: v.to_dict() for k, v in self.breakdown.items()},
        }


def _factor(name: str, score: float, reason: str) -> FactorScore:
    cap = FACTOR_MAX[name]
    return FactorScore(score=max(0, min(score, cap)), max_score=cap, reason=reason)


def score_setup(
    direction: Direction,
    technique: Technique,
    entry_low: float,
    trend: Trend,
    sr_levels: list[SRLevel],
    df: pd.DataFrame,
) -> Confidence:
    """Score one candidate setup against the current market context."""
    breakdown: dict[str, FactorScore] = {}

    # ── 1. Trend alignment ───────────────────────────────────────────────
    if trend == direction.aligned_trend:
        breakdown["trend_alignment"] = _factor(
            "trend_alignment", 25, f"Aligned with the {trend.value}")
    elif trend == Trend.RANGING:
        breakdown["trend_alignment"] = _factor(
            "trend_alignment", 15, "Ranging market, trade with care")
    else:
        breakdown["trend_alignment"] = _factor(
            "trend_alignment", 5, "Counter-trend trade (risky)")

    # ── 2. S/R strength ──────────────────────────────────────────────────
    level = nearest_level(sr_levels, entry_low, SR_PROXIMITY)
    if level is not None:
        breakdown["sr_strength"] = _factor(
            "sr_strength", min(level.touches * 5, 20),
            f"Level tested {level.touches}x")
    else:
        breakdown["sr_strength"] = _factor(
            "sr_strength", SR_FALLBACK_SCORE, "Medium-strength level")

    # ── 3. Pattern quality ───────────────────────────────────────────────
    breakdown["pattern_quality"] = _factor(
        "pattern_quality",
        PATTERN_QUALITY.get(technique, PATTERN_QUALITY_DEFAULT),
        f"{technique.label} pattern quality",
    )

    # ── 4. Volume ────────────────────────────────────────────────────────
    _, _, ratio = volume_ratio(df)
    if ratio > 1.5:
        breakdown["volume_confirmation"] = _factor(
            "volume_confirmation", 15, "Volume above average")
    elif ratio > 1.0:
        breakdown["volume_confirmation"] = _factor(
            "volume_confirmation", 10, "Normal volume")
    else:
        breakdown["volume_confirmation"] = _factor(
            "volume_confirmation", 5, "Low volume, be careful")

    # ── 5-6. Placeholders ────────────────────────────────────────────────
    breakdown["mtf_confluence"] = _factor(
        "mtf_confluence", MTF_PLACEHOLDER_SCORE, "Single timeframe analysis")
    breakdown["historical_rate"] = _factor(
        "historical_rate", HISTORICAL_PLACEHOLDER_SCORE,
        "Similar setups ~65% successful")

    return Confidence(breakdown)
