"""
===============================================================================
  PRICE ACTION ENGINE — Master Configuration
===============================================================================
  Runtime knobs for the scanner, the candle feed, alerts and logging.
  Values are loaded from .env where secrets are involved; everything else
  has a sensible default that can be overridden at runtime.

  Detection thresholds (order-block impulse, FVG gap, range width, sweep
  tolerances) are NOT here: they are fixed constants in core/smart_money.py
  so every run produces the same zones for the same candles.
===============================================================================
"""

import os
from pathlib import Path
from dotenv import load_dotenv

# ── Load .env ────────────────────────────────────────────────────────────────
_ENV_PATH = Path(__file__).parent / ".env"
load_dotenv(_ENV_PATH)

# ═════════════════════════════════════════════════════════════════════════════
#  CANDLE FEED (Binance public klines)
# ═════════════════════════════════════════════════════════════════════════════
BINANCE_BASE_URL: str = os.getenv("BINANCE_BASE_URL", "https://api.binance.com")
BINANCE_TIMEOUT: float = float(os.getenv("BINANCE_TIMEOUT", "10"))   # seconds

# ═════════════════════════════════════════════════════════════════════════════
#  TELEGRAM
# ═════════════════════════════════════════════════════════════════════════════
TELEGRAM_BOT_TOKEN: str = os.getenv("TELEGRAM_BOT_TOKEN", "")
TELEGRAM_CHAT_ID: str = os.getenv("TELEGRAM_CHAT_ID", "")

# ═════════════════════════════════════════════════════════════════════════════
#  SCANNER
# ═════════════════════════════════════════════════════════════════════════════
SCAN_TIMEFRAME: str = os.getenv("SCAN_TIMEFRAME", "4h")
SCAN_LIMIT: int = int(os.getenv("SCAN_LIMIT", "200"))       # bars per symbol
SCAN_DELAY_MS: int = int(os.getenv("SCAN_DELAY_MS", "100"))  # between symbols

# Bull/bear weights for the scanner's quick signal (independent of the
# setup confidence model)
SCAN_OB_WEIGHT: int = 30
SCAN_FVG_WEIGHT: int = 20
SCAN_TREND_WEIGHT: int = 25
SCAN_SIGNAL_THRESHOLD: int = 40
SCAN_MIN_CANDLES: int = 10

_watchlist_raw = os.getenv("WATCHLIST", "").strip()
DEFAULT_WATCHLIST: list[str] = (
    [s.strip().upper() for s in _watchlist_raw.split(",") if s.strip()]
    if _watchlist_raw
    else [
        "BTCUSDT", "ETHUSDT", "SOLUSDT", "BNBUSDT", "XRPUSDT",
        "ADAUSDT", "DOGEUSDT", "AVAXUSDT", "LINKUSDT", "DOTUSDT",
    ]
)

# ═════════════════════════════════════════════════════════════════════════════
#  INDICATORS (condition tracker)
# ═════════════════════════════════════════════════════════════════════════════
RSI_PERIOD: int = 14
RSI_OVERSOLD: float = 30.0
RSI_OVERBOUGHT: float = 70.0

VOLUME_AVG_PERIOD: int = 20
VOLUME_SPIKE_MULT: float = 1.5    # last bar volume vs 20-bar average

# ═════════════════════════════════════════════════════════════════════════════
#  POSITION CALCULATOR
# ═════════════════════════════════════════════════════════════════════════════
DEFAULT_INVESTMENT: float = float(os.getenv("DEFAULT_INVESTMENT", "1000"))
DEFAULT_RISK_PCT: float = float(os.getenv("DEFAULT_RISK_PCT", "1.0"))

# ═════════════════════════════════════════════════════════════════════════════
#  BACKTEST
# ═════════════════════════════════════════════════════════════════════════════
BACKTEST_BALANCE: float = float(os.getenv("BACKTEST_BALANCE", "1000"))
BACKTEST_RISK_PER_TRADE: float = 0.01    # fraction of balance at risk per trade
BACKTEST_SLIPPAGE: float = 0.0005        # 0.05% against us on every fill
BACKTEST_COMMISSION: float = 0.001       # 0.1% taker fee, charged on both legs
BACKTEST_MIN_HISTORY: int = 50           # bars before the first signal
BACKTEST_MIN_CONFIDENCE: float = 60.0

# ═════════════════════════════════════════════════════════════════════════════
#  LOGGING
# ═════════════════════════════════════════════════════════════════════════════
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
LOG_DIR: Path = Path(__file__).parent / "logs"
