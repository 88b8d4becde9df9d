import os
import logging
from typing import Optional

from dotenv import load_dotenv
from telegram import Bot

load_dotenv()


def _bot_token() -> Optional[str]:
    token = os.getenv("TELEGRAM_BOT_TOKEN") or os.getenv("BOT_TOKEN")
    if token:
        token = token.strip().strip("'\"")
    return token or None


async def send_telegram_message(chat_id: int, text: str) -> bool:
    """Отправка сообщения в Telegram мерчанту с заданным chat_id.

    Returns False without raising when the bot is not configured or the
    Telegram API call fails.
    """
    token = _bot_token()
    if not token:
        logging.info("TELEGRAM_BOT_TOKEN не задан, сообщение для chat_id=%s пропущено", chat_id)
        return False
    try:
        logging.info("Отправка сообщения в Telegram: chat_id=%s", chat_id)
        async with Bot(token=token) as bot:
            await bot.send_message(chat_id=chat_id, text=text)
        return True
    except Exception:
        logging.exception("Ошибка при отправке Telegram-сообщения для chat_id=%s", chat_id)
        return False
