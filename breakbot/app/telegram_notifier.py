"""
Telegram alerts for breakbot.

Setup:
  1. Create a bot via @BotFather on Telegram -> get BOT_TOKEN
  2. Send /start to your bot, then get your chat_id via https://api.telegram.org/bot<TOKEN>/getUpdates
  3. Set environment variables:
       TELEGRAM_BOT_TOKEN=<your_bot_token>
       TELEGRAM_CHAT_ID=<your_chat_id>

All functions are fail-safe (never raise to caller).
"""
import logging
import os

import requests

log = logging.getLogger(__name__)


def _send_telegram(text: str) -> bool:
    """Send a message via Telegram Bot API. Returns True if sent."""
    token = os.environ.get("TELEGRAM_BOT_TOKEN", "").strip()
    chat_id = os.environ.get("TELEGRAM_CHAT_ID", "").strip()

    if not token or not chat_id:
        return False

    try:
        url = f"https://api.telegram.org/bot{token}/sendMessage"
        resp = requests.post(url, json={
            "chat_id": chat_id,
            "text": text,
            "parse_mode": "HTML",
        }, timeout=10)
        if resp.status_code == 200:
            log.info("TELEGRAM_SENT chat_id=%s", chat_id)
            return True
        log.warning("TELEGRAM_FAILED status=%s body=%s", resp.status_code, resp.text[:200])
        return False
    except requests.RequestException as e:
        log.warning("TELEGRAM_ERROR: %r", e)
        return False


def format_event(bot_id: str, event: str, payload: dict) -> str:
    """Format an engine event into a readable Telegram message."""
    lines = [f"<b>[{bot_id}] {event}</b>"]

    if event == "TRADE_OPEN":
        lines.append(f"✅ {payload.get('direction', '?')} {payload.get('symbol', '?')} #{payload.get('ticket', '?')}")
        lines.append(f"Entry: ~{payload.get('entry_price', '?')}")
        lines.append(f"Volume: {payload.get('volume', '?')}")
        lines.append(f"SL: {payload.get('sl', '?')} | TP: {payload.get('tp', '-')}")

    elif event == "TRADE_CLOSE":
        lines.append(f"\U0001f3c1 {payload.get('direction', '?')} #{payload.get('ticket', '?')} closed ({payload.get('reason', '?')})")

    elif event == "TRAIL_SL":
        lines.append(f"\U0001f4c8 #{payload.get('ticket', '?')} SL moved to {payload.get('sl', '?')} ({payload.get('stage', '')})")

    elif event == "BULK_DONE":
        lines.append(f"\U0001f4e6 opened {payload.get('opened', 0)}/{payload.get('target', '?')} {payload.get('direction', '?')} {payload.get('symbol', '?')}")

    elif event == "ENTRY_FAILED":
        lines.append(f"⚠️ {payload.get('direction', '?')} gave up after {payload.get('attempts', '?')} attempts")
        lines.append(f"code={payload.get('code', '?')} {payload.get('message', '')}")

    elif event == "STARTUP":
        lines.append(f"Bot started: {payload.get('symbol', '?')} {payload.get('timeframe', '?')} strategy={payload.get('strategy', '?')}")

    else:
        for k, v in list((payload or {}).items())[:5]:
            lines.append(f"  {k}: {v}")

    return "\n".join(lines)


def telegram_event(bot_id: str, event: str, payload: dict = None) -> bool:
    """Send an engine event via Telegram. Never raises."""
    try:
        text = format_event(str(bot_id), str(event), payload or {})
        return _send_telegram(text)
    except Exception as e:
        log.warning("telegram_event error: %r", e)
        return False
