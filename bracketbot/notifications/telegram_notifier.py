"""
Telegram Notification Module - Sends alerts and trade updates to Telegram
"""
from datetime import datetime, timezone
from typing import Optional

import aiohttp
from loguru import logger

from bracketbot.notifications.alerts import AlertChannel, Severity


_SEVERITY_EMOJI = {
    Severity.INFO: "ℹ️",
    Severity.WARNING: "⚠️",
    Severity.CRITICAL: "🚨",
}


def _utc_stamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


class TelegramNotifier(AlertChannel):
    """Telegram notification handler"""

    def __init__(self, bot_token: str, chat_id: str, request_timeout_s: float = 10.0):
        """
        Initialize Telegram notifier

        Args:
            bot_token: Telegram bot token
            chat_id: Chat ID to send messages to
            request_timeout_s: Per-request HTTP timeout
        """
        self.bot_token = bot_token
        self.chat_id = chat_id
        self.base_url = f"https://api.telegram.org/bot{bot_token}"
        self.request_timeout_s = request_timeout_s
        self.session: Optional[aiohttp.ClientSession] = None

        logger.info("Telegram notifier initialized")

    async def initialize(self):
        """Initialize async session"""
        if not self.session:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.request_timeout_s)
            )

    async def send_message(
        self,
        text: str,
        parse_mode: str = "HTML",
        disable_notification: bool = False,
    ) -> bool:
        """
        Send a message to Telegram

        Returns:
            True if sent successfully
        """
        if not self.session:
            await self.initialize()

        try:
            url = f"{self.base_url}/sendMessage"
            payload = {
                "chat_id": self.chat_id,
                "text": text,
                "parse_mode": parse_mode,
                "disable_notification": disable_notification,
            }

            async with self.session.post(url, json=payload) as response:
                data = await response.json()

                if data.get("ok"):
                    logger.debug("Message sent to Telegram")
                    return True
                logger.error(f"Telegram error: {data}")
                return False

        except (aiohttp.ClientError, ValueError) as e:
            logger.error(f"Failed to send Telegram message: {e}")
            return False

    async def send_alert(self, message: str, severity: Severity) -> bool:
        text = f"{_SEVERITY_EMOJI[severity]} <b>{severity.value.upper()}</b>\n\n{message}\n\n⏰ {_utc_stamp()} UTC"
        return await self.send_message(text, disable_notification=(severity == Severity.INFO))

    async def send_startup_message(self, equity: float, mode: str, symbol: str):
        """Send bot startup message"""
        message = f"""
🚀 <b>BRACKETBOT STARTED</b> 🚀

🤖 Mode: {mode}
📊 Symbol: {symbol}
💰 Equity: ${equity:.2f}

⏰ {_utc_stamp()} UTC
        """
        await self.send_message(message)

    async def send_shutdown_message(self, equity: float, trades_today: int):
        """Send bot shutdown message"""
        message = f"""
🛑 <b>BOT SHUTDOWN</b> 🛑

💰 Final Equity: ${equity:.2f}
📈 Trades Today: {trades_today}

⏰ {_utc_stamp()} UTC
        """
        await self.send_message(message)

    async def close(self):
        """Close the session"""
        if self.session:
            await self.session.close()
            self.session = None
