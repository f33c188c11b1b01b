"""
Tests for core.candles — normalising candle input into the pipeline frame.
"""

import pandas as pd
import pytest

from core.candles import CANDLE_COLUMNS, from_frame, last_close, to_frame
from core.models import Candle


class TestToFrame:
    def test_from_candles(self):
        df = to_frame([Candle(1, 1.0, 2.0, 0.5, 1.5, 10.0), Candle(2, 1.5, 2.5, 1.0, 2.0)])
        assert list(df.columns) == CANDLE_COLUMNS
        assert df["time"].dtype == "int64"
        assert df["volume"].tolist() == [10.0, 0.0]

    def test_from_mappings_without_volume(self):
        df = to_frame([{"time": 1, "open": 1, "high": 2, "low": 0.5, "close": 1.5}])
        assert df["volume"].iloc[0] == 0.0
        assert df["open"].dtype == float

    def test_frame_is_copied_and_reindexed(self):
        src = pd.DataFrame({"time": [5, 6], "open": [1, 2], "high": [2, 3],
                            "low": [0, 1], "close": [1, 2]}, index=[10, 11])
        df = to_frame(src)
        assert list(df.index) == [0, 1]
        df.loc[0, "close"] = 99
        assert src["close"].iloc[0] == 1

    def test_frame_needs_time(self):
        with pytest.raises(ValueError):
            to_frame(pd.DataFrame({"open": [1], "high": [1], "low": [1], "close": [1]}))

    def test_none_is_empty(self):
        assert len(to_frame(None)) == 0

    def test_back_to_candles(self):
        candles = [Candle(1, 1.0, 2.0, 0.5, 1.5, 10.0)]
        assert from_frame(to_frame(candles)) == candles


class TestLastClose:
    def test_last_close(self):
        assert last_close(to_frame([Candle(1, 1.0, 2.0, 0.5, 1.5)])) == 1.5

    def test_empty(self):
        assert last_close(to_frame([])) == 0.0


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
