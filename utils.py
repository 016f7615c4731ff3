# utils.py
import logging
import html
from datetime import datetime
from typing import Optional, List

from aiogram import Bot
from aiogram.utils.markdown import hlink
from pytz import timezone as pytz_timezone

from config import Config

# Логгер для этого модуля
logger_utils = logging.getLogger(__name__)


def get_user_mention_html(user_id: int, full_name: Optional[str], username: Optional[str] = None) -> str:
    """
    Создает HTML-ссылку для упоминания пользователя.
    """
    display_name = html.escape(full_name or f"User ID {user_id}")
    if username:
        return f'<a href="https://t.me/{html.escape(username)}">{display_name}</a>'
    else:
        return hlink(display_name, f"tg://user?id={user_id}")


def format_coins(amount: float) -> str:
    """Монеты для отображения: целая часть с разделителями разрядов."""
    return f"{int(amount):,}"


def format_local_time(value: Optional[datetime]) -> str:
    if value is None:
        return "—"
    try:
        return value.astimezone(pytz_timezone(Config.TIMEZONE)).strftime('%Y-%m-%d %H:%M:%S')
    except Exception as e_tz:
        logger_utils.error(f"Ошибка форматирования времени {value!r}: {e_tz}")
        return value.strftime('%Y-%m-%d %H:%M:%S')


async def send_telegram_log(bot_instance: Bot, message_text: str, include_timestamp: bool = True):
    """
    Отправляет лог-сообщение в Telegram заданным получателям из Config.
    """
    target_ids: List[int] = []
    if Config.LOG_TELEGRAM_USER_ID is not None:
        target_ids.append(Config.LOG_TELEGRAM_USER_ID)
    if Config.LOG_TELEGRAM_CHAT_ID is not None:
        if Config.LOG_TELEGRAM_CHAT_ID not in target_ids:
            target_ids.append(Config.LOG_TELEGRAM_CHAT_ID)

    if not target_ids:
        logger_utils.info("Получатели логов в Telegram не настроены.")
        return

    full_message = message_text
    if include_timestamp:
        try:
            app_tz = pytz_timezone(Config.TIMEZONE)
            now_local = datetime.now(app_tz)
            timestamp_str = now_local.strftime('%Y-%m-%d %H:%M:%S')
            full_message = f"🕰️ <b>{timestamp_str}</b>\n{message_text}"
        except Exception as e_tz:
            logger_utils.error(f"Ошибка форматирования времени для лога Telegram: {e_tz}")
            full_message = f"🕰️ [Ошибка времени]\n{message_text}"

    for chat_id_to_send in target_ids:
        try:
            message_params = {
                "chat_id": chat_id_to_send,
                "text": full_message,
                "parse_mode": "HTML",
                "disable_web_page_preview": True
            }
            if chat_id_to_send == Config.LOG_TELEGRAM_CHAT_ID and Config.LOG_TELEGRAM_TOPIC_ID is not None:
                message_params["message_thread_id"] = Config.LOG_TELEGRAM_TOPIC_ID
            await bot_instance.send_message(**message_params)
            logger_utils.info(f"Лог отправлен получателю {chat_id_to_send}.")
        except Exception as e:
            logger_utils.error(f"Не удалось отправить лог-сообщение в Telegram для ID {chat_id_to_send}: {e}")
