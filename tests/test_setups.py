"""
Tests for core.setups — setup synthesis, ranking and zone validity.
"""

import numpy as np
import pandas as pd
import pytest

from core.confidence import FactorScore
from core.models import (
    Bias,
    BOSLevel,
    Candle,
    Direction,
    FairValueGap,
    OrderBlock,
    PatternSet,
    Range,
    Sweep,
    Technique,
    Trend,
)
from core.setups import (
    CONFIRMATIONS,
    Setup,
    Target,
    check_zone_validity,
    generate_setups,
    risk_reward,
)

T0 = 1_700_000_000


def _candle(o, h, l, c, v=1000.0):
    return {"open": o, "high": h, "low": l, "close": c, "volume": v}


def _make_df(candles):
    df = pd.DataFrame(candles)
    df.insert(0, "time", T0 + np.arange(len(df)) * 3600)
    return df


def _flat(price, n):
    return [_candle(price, price + 0.5, price - 0.5, price) for _ in range(n)]


def _order_block_frame():
    """Bullish OB at bar 10 (99 - 101); price then holds at 102.5."""
    return _make_df(
        _flat(100.0, 10)
        + [_candle(100.5, 101.0, 99.0, 99.5)]
        + _flat(100.0, 1)
        + [_candle(100.0, 103.0, 99.8, 102.8)]
        + [_candle(102.5, 102.8, 102.2, 102.5) for _ in range(47)]
    )


def _rising_frame(n=60):
    closes = 100 * 1.01 ** np.arange(n)
    return pd.DataFrame({
        "time": T0 + np.arange(n) * 3600,
        "open": closes * 0.999,
        "high": closes * 1.002,
        "low": closes * 0.998,
        "close": closes,
        "volume": 1000.0,
    })


def _setup(direction=Direction.LONG, entry=(99.0, 101.0), stop=98.0):
    return Setup(
        id=1,
        name="Test",
        direction=direction,
        technique=Technique.ORDER_BLOCK,
        entry=entry,
        stop=stop,
        targets=(Target(104.0, 2.0),),
        confidence_breakdown={"trend_alignment": FactorScore(25, 25, "x")},
    )


class TestInsufficientData:
    def test_under_50_bars_is_empty(self):
        df = _order_block_frame().iloc[:49]
        report = generate_setups(df)
        assert report.long_setups == () and report.short_setups == ()
        assert report.no_long_reasons == () and report.no_short_reasons == ()
        assert report.trend == Trend.RANGING
        assert report.current_price == 102.5

    def test_empty_input(self):
        report = generate_setups([])
        assert report.current_price == 0.0
        assert report.all_setups == ()


class TestOrderBlockLong:
    def test_geometry(self):
        report = generate_setups(_order_block_frame())
        obs = [s for s in report.long_setups if s.technique is Technique.ORDER_BLOCK]
        assert len(obs) == 1
        s = obs[0]
        p = report.current_price
        assert p == 102.5
        assert s.entry == (99.0, 101.0)
        assert s.stop == pytest.approx(98.01)
        assert [t.level for t in s.targets] == pytest.approx([p * 1.02, p * 1.035, p * 1.05])
        assert s.targets[0].rr == round((p * 1.02 - 100.0) / (100.0 - 98.01), 2)
        assert s.reference_zones[0].type == "order_block"
        assert s.technique_label == "Order Block"
        assert s.confirmations == CONFIRMATIONS[(Technique.ORDER_BLOCK, Direction.LONG)]

    def test_accepts_candle_records(self):
        df = _order_block_frame()
        candles = [Candle(int(r.time), r.open, r.high, r.low, r.close, r.volume)
                   for r in df.itertuples(index=False)]
        from_records = generate_setups(candles)
        from_frame = generate_setups(df)
        assert [s.to_dict() for s in from_records.all_setups] == \
               [s.to_dict() for s in from_frame.all_setups]


LAST_TIME = T0 + 49 * 3600


def _report_with(monkeypatch, price=100.0, **patterns):
    """Synthesize over 50 flat bars closing at *price* with the given zones."""
    monkeypatch.setattr("core.setups.analyze_smart_money",
                        lambda df: PatternSet(**patterns))
    return generate_setups(_make_df(_flat(price, 50)))


def _only(setups, technique):
    found = [s for s in setups if s.technique is technique]
    assert len(found) == 1
    return found[0]


def _ob(kind, high, low):
    return OrderBlock(kind, high, low, T0 + 10 * 3600, T0 + 15 * 3600, 60.0)


def _fvg(kind, high, low):
    return FairValueGap(kind, high, low, T0 + 10 * 3600, T0 + 12 * 3600, 0.5)


def _range(high, low):
    return Range(high, low, T0, T0 + 40 * 3600, 41, 2, 2)


class TestLongBranches:
    def test_order_block_within_two_percent(self, monkeypatch):
        report = _report_with(monkeypatch, order_blocks=(_ob(Bias.BULLISH, 98.1, 97.0),))
        assert _only(report.long_setups, Technique.ORDER_BLOCK).entry == (97.0, 98.1)

        report = _report_with(monkeypatch, order_blocks=(_ob(Bias.BULLISH, 98.0, 97.0),))
        assert report.long_setups == ()

    def test_fvg_geometry(self, monkeypatch):
        report = _report_with(monkeypatch, fair_value_gaps=(_fvg(Bias.BULLISH, 99.05, 98.0),))
        s = _only(report.long_setups, Technique.FVG)
        assert s.name == "FVG Fill Long"
        assert s.entry == (98.0, 99.05)
        assert s.stop == pytest.approx(98.0 * 0.985)
        assert [t.level for t in s.targets] == pytest.approx([101.5, 103.0])
        assert s.targets[0].rr == risk_reward(
            Direction.LONG, (98.0 + 99.05) / 2, 98.0 * 0.985, 100.0 * 1.015)
        z = s.reference_zones[0]
        assert (z.type, z.high, z.low) == ("fvg", 99.05, 98.0)
        assert (z.start_time, z.end_time) == (T0 + 10 * 3600, T0 + 12 * 3600)
        assert s.confirmations == CONFIRMATIONS[(Technique.FVG, Direction.LONG)]

    def test_fvg_within_one_percent(self, monkeypatch):
        report = _report_with(monkeypatch, fair_value_gaps=(_fvg(Bias.BULLISH, 98.95, 98.0),))
        assert report.long_setups == ()

    def test_range_low_geometry(self, monkeypatch):
        report = _report_with(monkeypatch, ranges=(_range(102.5, 99.5),))
        s = _only(report.long_setups, Technique.RANGE)
        assert s.entry == pytest.approx((99.5, 99.5 * 1.005))
        assert s.stop == pytest.approx(99.5 * 0.985)
        assert [t.level for t in s.targets] == pytest.approx([101.0, 102.5])
        z = s.reference_zones[0]
        assert (z.type, z.start_time, z.end_time) == ("range", T0, LAST_TIME)
        # below the midpoint: no range short
        assert not [x for x in report.short_setups if x.technique is Technique.RANGE]

    def test_liquidity_sweep_geometry(self, monkeypatch):
        sweep = Sweep(Bias.BULLISH, 99.8, T0 + 45 * 3600, Direction.LONG)
        report = _report_with(monkeypatch, sweeps=(sweep,))
        s = _only(report.long_setups, Technique.LIQUIDITY_SWEEP)
        assert s.entry == pytest.approx((99.8 * 0.998, 99.8 * 1.005))
        assert s.stop == pytest.approx(99.8 * 0.985)
        assert [t.level for t in s.targets] == pytest.approx([102.0, 104.0])
        assert s.reference_zones == ()
        assert report.no_short_reasons == (
            "No bearish order block found",
            "No bearish FVG present",
            "No liquidity sweep of equal highs",
            "Price is not near the range high",
        )

    def test_bos_retest_uses_last_break(self, monkeypatch):
        bos = (BOSLevel(Bias.BULLISH, 90.0, T0, T0),
               BOSLevel(Bias.BULLISH, 98.1, T0 + 30 * 3600, T0 + 20 * 3600))
        report = _report_with(monkeypatch, bos_levels=bos)
        s = _only(report.long_setups, Technique.BOS)
        assert s.entry == pytest.approx((98.1 * 0.998, 98.1 * 1.008))
        assert s.stop == pytest.approx(98.1 * 0.985)
        assert [t.level for t in s.targets] == pytest.approx([102.5, 104.5])

        # the last break is 2% or more below price: no retest
        report = _report_with(monkeypatch, bos_levels=bos[::-1])
        assert report.long_setups == ()
        report = _report_with(monkeypatch, bos_levels=(BOSLevel(Bias.BULLISH, 98.0, T0, T0),))
        assert report.long_setups == ()


class TestShortBranches:
    def test_order_block_geometry(self, monkeypatch):
        report = _report_with(monkeypatch, order_blocks=(_ob(Bias.BEARISH, 102.0, 101.9),))
        s = _only(report.short_setups, Technique.ORDER_BLOCK)
        assert s.name == "Order Block Short"
        assert s.entry == (101.9, 102.0)
        assert s.stop == pytest.approx(102.0 * 1.01)
        assert [t.level for t in s.targets] == pytest.approx([98.0, 96.5, 95.0])
        assert s.targets[0].rr == risk_reward(
            Direction.SHORT, (101.9 + 102.0) / 2, 102.0 * 1.01, 100.0 * 0.98)
        assert s.reference_zones[0].type == "order_block"

    def test_order_block_within_two_percent(self, monkeypatch):
        report = _report_with(monkeypatch, order_blocks=(_ob(Bias.BEARISH, 103.0, 102.1),))
        assert report.short_setups == ()

    def test_fvg_geometry(self, monkeypatch):
        report = _report_with(monkeypatch, fair_value_gaps=(_fvg(Bias.BEARISH, 101.5, 100.9),))
        s = _only(report.short_setups, Technique.FVG)
        assert s.entry == (100.9, 101.5)
        assert s.stop == pytest.approx(101.5 * 1.015)
        assert [t.level for t in s.targets] == pytest.approx([98.5, 97.0])
        assert s.confirmations == CONFIRMATIONS[(Technique.FVG, Direction.SHORT)]

        report = _report_with(monkeypatch, fair_value_gaps=(_fvg(Bias.BEARISH, 101.5, 101.1),))
        assert report.short_setups == ()

    def test_range_high_geometry(self, monkeypatch):
        report = _report_with(monkeypatch, ranges=(_range(99.1, 97.0),))
        s = _only(report.short_setups, Technique.RANGE)
        assert s.entry == pytest.approx((99.1 * 0.995, 99.1))
        assert s.stop == pytest.approx(99.1 * 1.015)
        assert [t.level for t in s.targets] == pytest.approx([98.05, 97.0])
        assert report.long_setups == ()

    def test_range_more_than_one_percent_away(self, monkeypatch):
        report = _report_with(monkeypatch, ranges=(_range(98.5, 97.0),))
        assert report.all_setups == ()
        assert "Price is not near the range high" in report.no_short_reasons

    def test_liquidity_sweep_geometry(self, monkeypatch):
        sweep = Sweep(Bias.BEARISH, 100.2, T0 + 45 * 3600, Direction.SHORT)
        report = _report_with(monkeypatch, sweeps=(sweep,))
        s = _only(report.short_setups, Technique.LIQUIDITY_SWEEP)
        assert s.entry == pytest.approx((100.2 * 0.995, 100.2 * 1.002))
        assert s.stop == pytest.approx(100.2 * 1.015)
        assert [t.level for t in s.targets] == pytest.approx([98.0, 96.0])

    def test_bos_retest_geometry(self, monkeypatch):
        bos = (BOSLevel(Bias.BEARISH, 102.0, T0 + 30 * 3600, T0 + 20 * 3600),)
        report = _report_with(monkeypatch, bos_levels=bos)
        s = _only(report.short_setups, Technique.BOS)
        assert s.entry == pytest.approx((102.0 * 0.992, 102.0 * 1.002))
        assert s.stop == pytest.approx(102.0 * 1.015)
        assert [t.level for t in s.targets] == pytest.approx([97.5, 95.5])

        bos = (BOSLevel(Bias.BEARISH, 102.1, T0 + 30 * 3600, T0 + 20 * 3600),)
        assert _report_with(monkeypatch, bos_levels=bos).short_setups == ()


class TestSetupRecord:
    def test_breakdown_is_read_only(self):
        breakdown = {"trend_alignment": FactorScore(25, 25, "x")}
        s = Setup(1, "t", Direction.LONG, Technique.FVG, (99.0, 101.0), 98.0, (),
                  breakdown)
        breakdown["sr_strength"] = FactorScore(20, 20, "y")
        assert s.confidence == 25
        with pytest.raises(TypeError):
            s.confidence_breakdown["sr_strength"] = FactorScore(20, 20, "y")

    def test_hashable(self):
        assert hash(_setup()) == hash(_setup())
        assert _setup() == _setup()


class TestInvariants:
    @pytest.mark.parametrize("make", [_order_block_frame, _rising_frame])
    def test_setup_invariants(self, make):
        report = generate_setups(make())
        ids = [s.id for s in report.all_setups]
        assert len(ids) == len(set(ids))
        for side in (report.long_setups, report.short_setups):
            assert len(side) <= 3
            scores = [s.confidence for s in side]
            assert scores == sorted(scores, reverse=True)
        for s in report.all_setups:
            assert s.confidence == sum(f.score for f in s.confidence_breakdown.values())
            assert 0 <= s.confidence <= 100
            assert s.entry[0] <= s.entry[1]
            if s.direction is Direction.LONG:
                assert s.stop < s.entry[0]
            else:
                assert s.stop > s.entry[1]

    def test_reasons_only_for_empty_sides(self):
        report = generate_setups(_order_block_frame())
        assert report.long_setups
        assert report.no_long_reasons == ()


class TestWhyNot:
    def test_short_reasons_in_uptrend(self):
        report = generate_setups(_rising_frame())
        assert report.trend == Trend.UPTREND
        assert report.short_setups == ()
        assert report.no_short_reasons == (
            "Market is in a strong uptrend",
            "Counter-trend short is risky",
            "No bearish order block found",
            "No bearish FVG present",
            "No liquidity sweep of equal highs",
            "Price is not near the range high",
        )


class TestRiskReward:
    def test_long(self):
        assert risk_reward(Direction.LONG, 100, 98, 104) == 2.0

    def test_short(self):
        assert risk_reward(Direction.SHORT, 100, 101, 97) == 3.0

    def test_no_risk(self):
        assert risk_reward(Direction.LONG, 100, 100, 104) == 0.0
        assert risk_reward(Direction.SHORT, 100, 99, 97) == 0.0


class TestZoneValidity:
    def test_long_invalid_below_one_percent(self):
        s = _setup()
        assert check_zone_validity(s, 98.5)["status"] == "ACTIVE"
        result = check_zone_validity(s, 97.9)
        assert result == {"status": "INVALID", "reason": "Price broke below zone"}

    def test_short_invalid_above_one_percent(self):
        s = _setup(Direction.SHORT, stop=103.0)
        assert check_zone_validity(s, 101.9)["status"] == "ACTIVE"
        assert check_zone_validity(s, 102.1)["status"] == "INVALID"

    def test_to_dict(self):
        d = _setup().to_dict()
        assert d["direction"] == "long"
        assert d["technique"] == "order_block"
        assert d["confidence"] == 25
        assert d["targets"] == [{"level": 104.0, "rr": 2.0}]


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
