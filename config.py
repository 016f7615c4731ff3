# config.py
import os
from dotenv import load_dotenv

load_dotenv()

class Config:
    BOT_TOKEN = os.getenv("BOT_TOKEN")
    DATABASE_URL = os.getenv("DATABASE_URL")
    TIMEZONE = os.getenv("TIMEZONE", "Europe/Moscow")

    # Хранилище прогресса: "postgres" (asyncpg) или "memory" (локальная отладка и тесты)
    GAME_BACKEND = os.getenv("GAME_BACKEND", "memory").strip().lower()

    # === Экономика ===
    PRICE_GROWTH_FACTOR = 1.15          # Каждый купленный объект дороже предыдущего на 15%
    PRICE_DISCOUNT_CAP = 0.95           # Максимальная скидка на объекты (95%)
    BASE_CLICK_VALUE = 1
    FACILITY_MAX_UPGRADE_LEVEL = 2
    FACILITY_UPGRADE_PRICE_MULTIPLIER = 10

    # === Престиж ===
    PRESTIGE_MIN_LIFETIME_COINS = 500
    PRESTIGE_POINT_DIVISOR = 100
    PRESTIGE_CLICK_BONUS_PER_ITEM = 100
    PRESTIGE_PRODUCTION_BONUS_PER_ITEM = 1.0
    PRESTIGE_DISCOUNT_PER_ITEM = 0.5

    # === Игровой цикл ===
    _tick_interval_str = os.getenv("TICK_INTERVAL_SECONDS", "1")
    try:
        TICK_INTERVAL_SECONDS = float(_tick_interval_str)
    except ValueError:
        print(f"Предупреждение: TICK_INTERVAL_SECONDS ('{_tick_interval_str}') не является числом. Используется 1 секунда.")
        TICK_INTERVAL_SECONDS = 1.0

    # Автосохранение всех активных сессий (планировщик)
    AUTOSAVE_INTERVAL_SECONDS = 300

    # === Рейтинг ===
    LEADERBOARD_LIMIT = 10
    _leaderboard_refresh_str = os.getenv("LEADERBOARD_REFRESH_INTERVAL_SECONDS")
    LEADERBOARD_REFRESH_INTERVAL_SECONDS = int(_leaderboard_refresh_str) if _leaderboard_refresh_str and _leaderboard_refresh_str.isdigit() else 60
    if _leaderboard_refresh_str and not _leaderboard_refresh_str.isdigit():
        print(f"Предупреждение: LEADERBOARD_REFRESH_INTERVAL_SECONDS ('{_leaderboard_refresh_str}') не является корректным числом и будет проигнорирован.")

    # Канал PostgreSQL LISTEN/NOTIFY, в который пишет триггер таблицы players
    PLAYER_CHANGES_CHANNEL = "player_changes"

    # ID для отправки логов ботом
    _log_telegram_user_id_str = os.getenv("LOG_TELEGRAM_USER_ID")
    LOG_TELEGRAM_USER_ID = int(_log_telegram_user_id_str) if _log_telegram_user_id_str and _log_telegram_user_id_str.lstrip('-').isdigit() else None
    if _log_telegram_user_id_str and LOG_TELEGRAM_USER_ID is None: # Если строка была, но не распарсилась
        print(f"Предупреждение: LOG_TELEGRAM_USER_ID ('{_log_telegram_user_id_str}') не является корректным числом и будет проигнорирован.")

    _log_telegram_chat_id_str = os.getenv("LOG_TELEGRAM_CHAT_ID")
    LOG_TELEGRAM_CHAT_ID = int(_log_telegram_chat_id_str) if _log_telegram_chat_id_str and _log_telegram_chat_id_str.lstrip('-').isdigit() else None
    if _log_telegram_chat_id_str and LOG_TELEGRAM_CHAT_ID is None:
        print(f"Предупреждение: LOG_TELEGRAM_CHAT_ID ('{_log_telegram_chat_id_str}') не является корректным числом и будет проигнорирован.")

    # Загружаем ID темы для логов
    _log_telegram_topic_id_str = os.getenv("LOG_TELEGRAM_TOPIC_ID")
    LOG_TELEGRAM_TOPIC_ID = int(_log_telegram_topic_id_str) if _log_telegram_topic_id_str and _log_telegram_topic_id_str.isdigit() else None
    if _log_telegram_topic_id_str and LOG_TELEGRAM_TOPIC_ID is None:
        print(f"Предупреждение: LOG_TELEGRAM_TOPIC_ID ('{_log_telegram_topic_id_str}') не является корректным числом. Отправка в тему для логов будет отключена.")
