"""Telegram notification service.

Sends best-effort notifications about settled swaps and bridge operations.
Uses a singleton pattern to share the bot instance.
"""

import asyncio
import logging
from decimal import Decimal
from typing import Optional

from aiogram import Bot
from aiogram.exceptions import TelegramBadRequest, TelegramForbiddenError

from vaultswap.config import get_settings

logger = logging.getLogger(__name__)

# Singleton bot instance
_bot_instance: Optional[Bot] = None
_bot_lock = asyncio.Lock()


async def get_bot() -> Optional[Bot]:
    """Get or create the bot instance for notifications."""
    global _bot_instance

    if _bot_instance is not None:
        return _bot_instance

    async with _bot_lock:
        if _bot_instance is not None:
            return _bot_instance

        settings = get_settings()
        if not settings.telegram_bot_token:
            logger.warning("Telegram bot token not configured - notifications disabled")
            return None

        _bot_instance = Bot(token=settings.telegram_bot_token)
        return _bot_instance


async def close_bot() -> None:
    """Close the bot session (call on shutdown)."""
    global _bot_instance
    if _bot_instance is not None:
        await _bot_instance.session.close()
        _bot_instance = None


def _fmt(amount: Decimal) -> str:
    return f"{amount:,.9f}".rstrip("0").rstrip(".")


def _short(ref: str) -> str:
    return f"{ref[:8]}...{ref[-8:]}" if len(ref) > 20 else ref


class TelegramNotifier:
    """Sends settlement outcomes to users over Telegram."""

    def __init__(self, bot: Optional[Bot] = None):
        self._bot = bot

    async def _get_bot(self) -> Optional[Bot]:
        if self._bot:
            return self._bot
        return await get_bot()

    async def send_message(
        self,
        chat_id: int,
        message: str,
        parse_mode: Optional[str] = "HTML",
    ) -> bool:
        """Send a message to a chat.

        Returns:
            True if message was sent successfully
        """
        bot = await self._get_bot()
        if not bot:
            logger.debug("Cannot send notification - bot not initialized")
            return False

        try:
            await bot.send_message(chat_id=chat_id, text=message, parse_mode=parse_mode)
            return True
        except TelegramForbiddenError:
            logger.warning(f"Chat {chat_id} has blocked the bot")
            return False
        except TelegramBadRequest as e:
            logger.error(f"Bad request sending to {chat_id}: {e}")
            return False
        except Exception as e:
            logger.error(f"Failed to send notification to {chat_id}: {e}")
            return False

    async def notify_swap_completed(
        self,
        chat_id: int,
        direction: str,
        symbol: str,
        asset_amount: Decimal,
        settlement_amount: Decimal,
        chain_reference: Optional[str] = None,
    ) -> bool:
        """Notify that a buy or sell settled."""
        if direction == "buy":
            line = f"Bought <code>{_fmt(asset_amount)} {symbol}</code> for <code>{_fmt(settlement_amount)} SOL</code>"
        else:
            line = f"Sold <code>{_fmt(asset_amount)} {symbol}</code> for <code>{_fmt(settlement_amount)} SOL</code>"

        message = f"<b>Swap Completed</b>\n\n{line}\n"
        if chain_reference:
            message += f"TX: <code>{_short(chain_reference)}</code>\n"
        return await self.send_message(chat_id, message)

    async def notify_swap_failed(
        self,
        chat_id: int,
        direction: str,
        symbol: str,
        reason: str,
    ) -> bool:
        """Notify that a swap was rolled back."""
        refunded = "SOL refunded" if direction == "buy" else f"{symbol} restored"
        message = (
            f"<b>Swap Failed</b>\n\n"
            f"Your {direction} of {symbol} could not be executed.\n"
            f"Reason: {reason}\n\n"
            f"{refunded} to your wallet."
        )
        return await self.send_message(chat_id, message)

    async def notify_bridge_finished(
        self,
        chat_id: int,
        direction: str,
        amount: Decimal,
        reference: Optional[str] = None,
    ) -> bool:
        """Notify that a deposit was credited or a withdrawal paid out."""
        if direction == "deposit":
            message = f"<b>Deposit Confirmed</b>\n\nAmount: <code>{_fmt(amount)} SOL</code>\n"
        else:
            message = f"<b>Withdrawal Sent</b>\n\nAmount: <code>{_fmt(amount)} SOL</code>\n"
        if reference:
            message += f"TX: <code>{_short(reference)}</code>\n"
        return await self.send_message(chat_id, message)

    async def notify_bridge_failed(
        self,
        chat_id: int,
        direction: str,
        amount: Decimal,
        refunded: bool,
    ) -> bool:
        """Notify that a deposit or withdrawal failed."""
        message = (
            f"<b>{direction.capitalize()} Failed</b>\n\n"
            f"Amount: <code>{_fmt(amount)} SOL</code>\n"
        )
        if refunded:
            message += "\nThe reserved amount has been returned to your balance."
        return await self.send_message(chat_id, message)
