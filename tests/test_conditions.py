"""
Tests for core.conditions — classification, checkers, tracker and alert gate.
"""

import numpy as np
import pandas as pd
import pytest

from core.conditions import (
    AlertGate,
    CheckerType,
    ConditionContext,
    ConditionStatus,
    ConditionTracker,
    classify_condition,
)
from core.models import Direction, Technique, Trend
from core.setups import CONFIRMATIONS, Setup, Target


def _make_df(rows):
    """rows: list of (open, high, low, close[, volume])"""
    rows = [r if len(r) == 5 else (*r, 100.0) for r in rows]
    o, h, l, c, v = (np.array(col, dtype=float) for col in zip(*rows))
    return pd.DataFrame({
        "time": 1_700_000_000 + np.arange(len(rows)) * 3600,
        "open": o, "high": h, "low": l, "close": c, "volume": v,
    })


def _flat_rows(price, n):
    return [(price, price + 0.3, price - 0.3, price + 0.1)] * n


def _setup(confirmations, direction=Direction.LONG, entry=(99.0, 101.0)):
    stop = entry[0] * 0.99 if direction is Direction.LONG else entry[1] * 1.01
    return Setup(
        id=7,
        name="Test",
        direction=direction,
        technique=Technique.ORDER_BLOCK,
        entry=entry,
        stop=stop,
        targets=(Target(110.0, 2.0),),
        confidence_breakdown={},
        confirmations=tuple(confirmations),
    )


def _check_one(text, df, price, trend=Trend.RANGING, direction=Direction.LONG):
    tracker = ConditionTracker(_setup([text], direction))
    return tracker.check_all(ConditionContext(df, price, trend))[0]


class TestClassification:
    @pytest.mark.parametrize("text, expected", [
        ("Price touches the order block zone", CheckerType.ZONE_TOUCH),
        ("Price returns to the level", CheckerType.ZONE_TOUCH),
        ("Bullish rejection candle", CheckerType.REJECTION_CANDLE),
        ("Pin bar at support", CheckerType.REJECTION_CANDLE),
        ("Volume spike on the reaction", CheckerType.VOLUME_SPIKE),
        ("RSI oversold exit", CheckerType.RSI_OVERSOLD_EXIT),
        ("Overbought exit on momentum", CheckerType.RSI_OVERBOUGHT_EXIT),
        ("Candle body close inside the gap", CheckerType.BODY_CLOSE_IN_ZONE),
        ("HTF trend alignment", CheckerType.HTF_TREND_ALIGNMENT),
        ("Wick sweeps below the equal lows", CheckerType.SWEEP_CANDLE),
        ("Check the news calendar", CheckerType.UNKNOWN),
    ])
    def test_rules(self, text, expected):
        assert classify_condition(text) == expected

    def test_first_matching_rule_wins(self):
        # "zone" outranks "body" / "close"
        assert classify_condition("Body close inside the zone") == CheckerType.ZONE_TOUCH

    def test_case_insensitive(self):
        assert classify_condition("VOLUME SPIKE") == CheckerType.VOLUME_SPIKE

    def test_keywords_match_whole_words_only(self):
        assert classify_condition("Mean reversion entry") == CheckerType.UNKNOWN
        assert classify_condition("Wait for rsi to turn up") == CheckerType.RSI_OVERSOLD_EXIT
        assert classify_condition("Shtf bias") == CheckerType.UNKNOWN

    def test_every_built_in_confirmation_has_a_checker(self):
        for texts in CONFIRMATIONS.values():
            for text in texts:
                assert classify_condition(text) != CheckerType.UNKNOWN, text

    def test_classified_once_at_construction(self):
        tracker = ConditionTracker(_setup(["Price touches the zone", "Pray"]))
        assert [c.checker for c in tracker.conditions] == [
            CheckerType.ZONE_TOUCH, CheckerType.UNKNOWN]


class TestZoneTouch:
    DF = _make_df(_flat_rows(100.0, 5))

    @pytest.mark.parametrize("price, direction, expected", [
        (100.0, Direction.LONG, ConditionStatus.MET),
        (103.0, Direction.LONG, ConditionStatus.PENDING),
        (97.0, Direction.LONG, ConditionStatus.FAILED),
        (100.0, Direction.SHORT, ConditionStatus.MET),
        (97.0, Direction.SHORT, ConditionStatus.PENDING),
        (103.0, Direction.SHORT, ConditionStatus.FAILED),
    ])
    def test_status(self, price, direction, expected):
        res = _check_one("Price touches the zone", self.DF, price, direction=direction)
        assert res.status == expected


class TestRejection:
    def test_pin_bar_in_zone(self):
        rows = _flat_rows(103.0, 5) + [(100.5, 101.0, 97.0, 100.8)]
        res = _check_one("Rejection candle", _make_df(rows), 100.8)
        assert res.status == ConditionStatus.MET
        assert res.visual_meta["elements"][-1]["type"] == "MARKER"

    def test_pin_bar_outside_zone(self):
        rows = _flat_rows(110.0, 5) + [(110.5, 111.0, 107.0, 110.8)]
        res = _check_one("Rejection candle", _make_df(rows), 110.8)
        assert res.status == ConditionStatus.PENDING

    def test_bullish_engulfing_for_long(self):
        rows = [(105, 106, 104, 105.5)] * 3 + [(105.0, 105.2, 103.9, 104.0),
                                               (103.8, 106.0, 103.7, 105.6)]
        res = _check_one("Bullish engulfing", _make_df(rows), 105.6)
        assert res.status == ConditionStatus.MET
        assert "engulfing" in res.message.lower()

    def test_bullish_engulfing_does_not_count_for_short(self):
        rows = [(105, 106, 104, 105.5)] * 3 + [(105.0, 105.2, 103.9, 104.0),
                                               (103.8, 106.0, 103.7, 105.6)]
        res = _check_one("Bearish engulfing", _make_df(rows), 105.6, direction=Direction.SHORT)
        assert res.status == ConditionStatus.PENDING


class TestVolumeSpike:
    def test_not_enough_history(self):
        rows = [(100, 101, 99, 100, 100.0)] * 19
        assert _check_one("Volume spike", _make_df(rows), 100).status == ConditionStatus.PENDING

    def test_spike(self):
        rows = [(100, 101, 99, 100, 100.0)] * 19 + [(100, 101, 99, 100, 400.0)]
        assert _check_one("Volume spike", _make_df(rows), 100).status == ConditionStatus.MET

    def test_no_spike(self):
        rows = [(100, 101, 99, 100, 100.0)] * 19 + [(100, 101, 99, 100, 120.0)]
        assert _check_one("Volume spike", _make_df(rows), 100).status == ConditionStatus.PENDING


class TestRSIExits:
    def test_oversold_exit(self):
        closes = list(np.arange(130, 100, -1)) + [111]
        df = _make_df([(c, c + 0.5, c - 0.5, c) for c in closes])
        res = _check_one("RSI oversold exit", df, 111)
        assert res.status == ConditionStatus.MET

    def test_still_oversold(self):
        closes = list(np.arange(130, 100, -1))
        df = _make_df([(c, c + 0.5, c - 0.5, c) for c in closes])
        res = _check_one("RSI oversold exit", df, 101)
        assert res.status == ConditionStatus.PENDING
        assert "oversold" in res.message

    def test_overbought_exit(self):
        closes = list(np.arange(100, 130)) + [119]
        df = _make_df([(c, c + 0.5, c - 0.5, c) for c in closes])
        res = _check_one("Overbought exit", df, 119, direction=Direction.SHORT)
        assert res.status == ConditionStatus.MET

    def test_insufficient_history(self):
        df = _make_df(_flat_rows(100.0, 5))
        assert _check_one("RSI oversold exit", df, 100).status == ConditionStatus.PENDING


class TestOtherCheckers:
    def test_body_close_in_zone(self):
        df = _make_df(_flat_rows(100.0, 3))
        assert _check_one("Body close", df, 100.1).status == ConditionStatus.MET
        df = _make_df(_flat_rows(105.0, 3))
        assert _check_one("Body close", df, 105.1).status == ConditionStatus.PENDING

    @pytest.mark.parametrize("trend, expected", [
        (Trend.UPTREND, ConditionStatus.MET),
        (Trend.RANGING, ConditionStatus.PENDING),
        (Trend.DOWNTREND, ConditionStatus.FAILED),
    ])
    def test_htf_alignment_long(self, trend, expected):
        df = _make_df(_flat_rows(100.0, 3))
        assert _check_one("HTF trend alignment", df, 100, trend).status == expected

    def test_sweep_long(self):
        df = _make_df(_flat_rows(100.0, 3) + [(99.5, 100.2, 98.0, 99.8)])
        assert _check_one("Wick sweep", df, 99.8).status == ConditionStatus.MET

    def test_sweep_short(self):
        df = _make_df(_flat_rows(100.0, 3) + [(100.5, 102.0, 100.2, 100.4)])
        res = _check_one("Wick sweep", df, 100.4, direction=Direction.SHORT)
        assert res.status == ConditionStatus.MET

    def test_short_sweep_needs_a_wick_above_the_band(self):
        # wick below the band low, nothing above the band high
        df = _make_df(_flat_rows(100.0, 3) + [(100.5, 100.8, 98.0, 100.4)])
        res = _check_one("Wick sweep", df, 100.4, direction=Direction.SHORT)
        assert res.status == ConditionStatus.PENDING

    def test_no_sweep_when_body_breaks(self):
        df = _make_df(_flat_rows(100.0, 3) + [(99.5, 100.2, 98.0, 98.5)])
        assert _check_one("Wick sweep", df, 98.5).status == ConditionStatus.PENDING

    def test_unknown_stays_pending(self):
        df = _make_df(_flat_rows(100.0, 3))
        res = _check_one("Check the news calendar", df, 100, Trend.UPTREND)
        assert res.status == ConditionStatus.PENDING
        assert res.message == "Manual verification required"
        assert res.visual_meta["tooltip"] == "Manual verification required"


class TestTracker:
    def test_no_conditions_never_alerts(self):
        tracker = ConditionTracker(_setup([]))
        tracker.check_all(ConditionContext(_make_df(_flat_rows(100.0, 3)), 100.0))
        assert tracker.status_summary() == {"met": 0, "pending": 0, "failed": 0, "total": 0}
        assert not tracker.should_alert()

    def test_summary_and_alert(self):
        tracker = ConditionTracker(_setup(["Price touches the zone", "HTF trend alignment"]))
        df = _make_df(_flat_rows(100.0, 3))
        tracker.check_all(ConditionContext(df, 100.0, Trend.UPTREND))
        assert tracker.status_summary()["met"] == 2
        assert tracker.should_alert()

        tracker.check_all(ConditionContext(df, 100.0, Trend.RANGING))
        assert tracker.status_summary() == {"met": 1, "pending": 1, "failed": 0, "total": 2}
        assert not tracker.should_alert()

    def test_check_all_is_idempotent(self):
        texts = CONFIRMATIONS[(Technique.ORDER_BLOCK, Direction.LONG)]
        tracker = ConditionTracker(_setup(texts))
        rows = [(100, 101, 99, 100.2, 100.0 + i) for i in range(40)]
        ctx = ConditionContext(_make_df(rows), 100.2, Trend.UPTREND)
        assert tracker.check_all(ctx) == tracker.check_all(ctx)

    def test_results_carry_visual_meta(self):
        texts = CONFIRMATIONS[(Technique.FVG, Direction.SHORT)]
        tracker = ConditionTracker(_setup(texts, Direction.SHORT))
        results = tracker.check_all(ConditionContext(_make_df(_flat_rows(100.0, 30)), 100.0))
        for r in results:
            assert r.visual_meta["tooltip"]
            assert isinstance(r.visual_meta["elements"], list)
            assert r.to_dict()["checker"] == r.checker.value


class TestAlertGate:
    def test_fires_on_transition_only(self):
        calls = []
        gate = AlertGate(lambda setup_id, symbol: calls.append((setup_id, symbol)))
        tracker = ConditionTracker(_setup(["Price touches the zone"]))
        df = _make_df(_flat_rows(100.0, 3))

        tracker.check_all(ConditionContext(df, 103.0))       # pending
        assert not gate.update("BTCUSDT", tracker)
        tracker.check_all(ConditionContext(df, 100.0))       # met
        assert gate.update("BTCUSDT", tracker)
        tracker.check_all(ConditionContext(df, 100.5))       # still met
        assert not gate.update("BTCUSDT", tracker)
        assert calls == [(7, "BTCUSDT")]

        tracker.check_all(ConditionContext(df, 103.0))       # re-arm
        gate.update("BTCUSDT", tracker)
        tracker.check_all(ConditionContext(df, 100.0))
        gate.update("BTCUSDT", tracker)
        assert calls == [(7, "BTCUSDT"), (7, "BTCUSDT")]

    def test_symbols_are_independent(self):
        calls = []
        gate = AlertGate(lambda setup_id, symbol: calls.append(symbol))
        tracker = ConditionTracker(_setup(["Price touches the zone"]))
        tracker.check_all(ConditionContext(_make_df(_flat_rows(100.0, 3)), 100.0))
        gate.update("BTCUSDT", tracker)
        gate.update("ETHUSDT", tracker)
        assert calls == ["BTCUSDT", "ETHUSDT"]


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
