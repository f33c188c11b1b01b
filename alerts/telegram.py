"""
===============================================================================
  TELEGRAM ALERTER — setup-ready and scan notifications via Telegram
===============================================================================
  Setup:
    1. Create a bot: talk to @BotFather on Telegram, get the token
    2. Get your chat ID: talk to @userinfobot
    3. Set TELEGRAM_BOT_TOKEN and TELEGRAM_CHAT_ID in .env

  ``setup_ready`` is the notification sink the condition tracker's
  AlertGate calls when every condition of a setup is met.
===============================================================================
"""

import time
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

import requests

from utils.logger import get_logger

logger = get_logger("telegram")


class TelegramAlerter:
    """Non-blocking Telegram notifications via HTTP.

    Sends are dispatched to a single background thread so they never stall
    the scanner's event loop (even if Telegram is slow or unreachable).
    """

    # Minimum interval between consecutive sends (rate-limit guard)
    _MIN_SEND_INTERVAL = 0.5  # seconds

    def __init__(self, bot_token: str = "", chat_id: str = "",
                 session: Optional[requests.Session] = None):
        self.chat_id = chat_id
        self.enabled = bool(bot_token and chat_id)

        if self.enabled:
            self._url = f"https://api.telegram.org/bot{bot_token}/sendMessage"
            self._session = session or requests.Session()
            # Single-thread executor serialises sends
            self._executor = ThreadPoolExecutor(
                max_workers=1, thread_name_prefix="telegram"
            )
            logger.info("Telegram alerts enabled (non-blocking, HTTP API)")
        else:
            self._url = ""
            self._session = None
            self._executor = None
            logger.info("Telegram alerts disabled (no token/chat_id)")

        self._last_send_time: float = 0.0

    # =========================================================================
    # INTERNAL SEND (runs on background thread)
    # =========================================================================

    def _send(self, text: str):
        """Queue a message for async delivery. Never blocks the caller."""
        if not self.enabled or self._executor is None:
            return None
        return self._executor.submit(self._do_send, text)

    def _do_send(self, text: str, retries: int = 1) -> bool:
        """Actual HTTP send on the background thread."""
        elapsed = time.monotonic() - self._last_send_time
        if elapsed < self._MIN_SEND_INTERVAL:
            time.sleep(self._MIN_SEND_INTERVAL - elapsed)

        for attempt in range(1 + retries):
            try:
                resp = self._session.post(
                    self._url,
                    json={
                        "chat_id": self.chat_id,
                        "text": text,
                        "parse_mode": "HTML",
                    },
                    timeout=(5, 10),  # (connect, read)
                )
                self._last_send_time = time.monotonic()
                if resp.ok:
                    return True
                if resp.status_code == 429:
                    retry_after = int(resp.headers.get("Retry-After", 5))
                    logger.warning(f"Telegram rate-limited, waiting {retry_after}s")
                    time.sleep(retry_after)
                    continue
                logger.warning(
                    f"Telegram send failed: {resp.status_code} {resp.text[:200]}"
                )
            except requests.RequestException as e:
                logger.warning(f"Telegram send failed: {e}")
                if attempt < retries:
                    time.sleep(2)
        return False

    def close(self):
        if self._executor is not None:
            self._executor.shutdown(wait=True)

    # =========================================================================
    # ALERT TYPES
    # =========================================================================

    def setup_ready(self, setup_id: int, symbol: str):
        msg = (
            f"<b>SETUP READY</b>\n"
            f"<b>{symbol}</b> setup #{setup_id}\n"
            f"All entry conditions are met"
        )
        return self._send(msg)

    def scan_summary(self, results: dict, timeframe: str):
        """One line per symbol that produced a long / short signal."""
        lines = [
            f"{sym}: {r.signal.value.upper()} ({r.confidence}%) {r.reason}"
            for sym, r in results.items()
            if r.signal.value in ("long", "short")
        ]
        if not lines:
            return None
        msg = f"<b>SCAN {timeframe}</b>\n" + "\n".join(lines)
        return self._send(msg)
