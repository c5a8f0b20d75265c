"""
Telegram notifications and operator command polling for watchr.
"""

import asyncio
import html
from typing import Awaitable, Callable, Optional
import aiohttp
import structlog

from .config import TELEGRAM_TIMEOUT_SECONDS

logger = structlog.get_logger()

# Long-poll window for getUpdates; the HTTP timeout must outlast it
POLL_TIMEOUT_SECONDS = 30
POLL_ERROR_BACKOFF_SECONDS = 1.5

CommandCallback = Callable[[str], Awaitable[Optional[str]]]


def fmt_amount(n: float) -> str:
    return f"{n:,.6f}".rstrip("0").rstrip(".")


def money(n: Optional[float]) -> str:
    return f"${fmt_amount(n)}" if n is not None else "n/a"


def fmt_pct(p: float) -> str:
    return f"{p * 100:.2f}%"


def fmt_error(e: BaseException) -> str:
    """Exception text made safe for HTML parse mode."""
    return html.escape(str(e) or type(e).__name__)


class TelegramNotifier:
    """Telegram bot used for alerts and commands. Sending never raises."""

    def __init__(
        self,
        bot_token: Optional[str],
        chat_id: Optional[str],
        allowed_user_id: Optional[str] = None,
        timeout_seconds: float = TELEGRAM_TIMEOUT_SECONDS
    ):
        self.bot_token = bot_token
        self.chat_id = chat_id
        self.allowed_user_id = allowed_user_id
        self.api_url = f"https://api.telegram.org/bot{bot_token}"
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._offset = 0
        self._session: Optional[aiohttp.ClientSession] = None

    @property
    def enabled(self) -> bool:
        return bool(self.bot_token and self.chat_id)

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()

    async def send(self, text: str, disable_notification: bool = False) -> bool:
        """Send a message to the configured chat. Returns False on any failure."""
        if not self.enabled:
            logger.debug("telegram_disabled", text=text[:80])
            return False

        payload = {
            "chat_id": self.chat_id,
            "text": text,
            "parse_mode": "HTML",
            "disable_web_page_preview": True,
            "disable_notification": disable_notification
        }

        try:
            session = await self._get_session()
            async with session.post(
                f"{self.api_url}/sendMessage",
                json=payload,
                timeout=self.timeout
            ) as response:
                if response.status == 200:
                    return True
                error = await response.text()
                logger.warning("telegram_send_failed", status=response.status, error=error[:100])
                return False
        except Exception as e:
            logger.error("telegram_error", error=str(e) or type(e).__name__)
            return False

    def _accepts(self, message: dict) -> Optional[str]:
        """Command text of an update we should act on, or None."""
        text = message.get("text")
        if not isinstance(text, str):
            return None
        text = text.strip()
        if not text.startswith("/"):
            return None

        from_id = str((message.get("from") or {}).get("id", ""))
        if self.allowed_user_id and from_id != str(self.allowed_user_id):
            logger.warning("telegram_command_rejected", from_id=from_id)
            return None
        return text

    async def fetch_commands(self) -> list:
        """One getUpdates round-trip. Advances the offset past every update seen."""
        session = await self._get_session()
        params = {"timeout": POLL_TIMEOUT_SECONDS}
        if self._offset:
            params["offset"] = self._offset

        async with session.get(
            f"{self.api_url}/getUpdates",
            params=params,
            timeout=aiohttp.ClientTimeout(total=POLL_TIMEOUT_SECONDS + 5)
        ) as response:
            data = await response.json()

        if not data.get("ok"):
            return []

        commands = []
        for update in data.get("result", []):
            self._offset = max(self._offset, int(update.get("update_id", 0)) + 1)
            message = update.get("message") or update.get("edited_message")
            if not message:
                continue
            text = self._accepts(message)
            if text:
                commands.append(text)
        return commands

    async def poll_commands(self, handler: CommandCallback) -> None:
        """Forward operator commands to `handler` and reply with its answer. Runs until cancelled."""
        if not self.bot_token:
            return

        logger.info("telegram_polling_started")
        while True:
            try:
                commands = await self.fetch_commands()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("telegram_polling_error", error=str(e) or type(e).__name__)
                await asyncio.sleep(POLL_ERROR_BACKOFF_SECONDS)
                continue

            for text in commands:
                try:
                    reply = await handler(text)
                except Exception as e:
                    logger.error("telegram_command_failed", command=text[:40], error=str(e))
                    reply = f"⚠️ Command failed: {fmt_error(e)}"
                if reply:
                    await self.send(reply)
