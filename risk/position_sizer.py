"""
===============================================================================
  Position Sizer — how much to buy for a setup at a fixed account risk
===============================================================================
  Combines:  Investment × Risk %
  Divided by: distance from the entry (middle of the entry band) to the stop
  To produce the position size in units of the base asset.
===============================================================================
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import config as cfg
from core.models import Direction
from core.setups import Setup
from utils.logger import get_logger

log = get_logger("position_sizer")


@dataclass(frozen=True)
class PositionPlan:
    entry: float
    stop: float
    size: float                 # base-asset units
    position_value: float       # size × entry
    risk_amount: float          # loss if the stop is hit
    risk_per_unit: float
    potential_gains: tuple[float, ...]

    def to_dict(self) -> dict:
        return {
            "entry": self.entry,
            "stop": self.stop,
            "size": self.size,
            "position_value": self.position_value,
            "risk_amount": self.risk_amount,
            "risk_per_unit": self.risk_per_unit,
            "potential_gains": list(self.potential_gains),
        }


def compute_position(
    setup: Setup,
    investment: float | None = None,
    risk_pct: float | None = None,
) -> Optional[PositionPlan]:
    """
    Size a position so that hitting the stop loses ``risk_pct`` % of
    ``investment``.  Returns None when the stop is on the wrong side of
    the entry (no definable risk).
    """
    investment = cfg.DEFAULT_INVESTMENT if investment is None else investment
    risk_pct = cfg.DEFAULT_RISK_PCT if risk_pct is None else risk_pct

    entry = setup.entry_mid
    if setup.direction is Direction.LONG:
        risk_per_unit = entry - setup.stop
    else:
        risk_per_unit = setup.stop - entry

    if risk_per_unit <= 0:
        log.warning(f"Setup #{setup.id}: stop {setup.stop} leaves no risk from entry {entry}")
        return None

    risk_amount = investment * (risk_pct / 100)
    size = risk_amount / risk_per_unit
    sign = 1 if setup.direction is Direction.LONG else -1
    gains = tuple((t.level - entry) * sign * size for t in setup.targets)

    return PositionPlan(
        entry=entry,
        stop=setup.stop,
        size=size,
        position_value=size * entry,
        risk_amount=risk_amount,
        risk_per_unit=risk_per_unit,
        potential_gains=gains,
    )
