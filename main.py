# main.py
import asyncio
import logging

from aiogram import Bot, Dispatcher
from aiogram.client.default import DefaultBotProperties
from aiogram.fsm.storage.memory import MemoryStorage
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from dotenv import load_dotenv
from pytz import timezone as pytz_timezone

from config import Config
import database
from game_service import create_game_service, PostgresGameService
from clicker_logic import SessionRegistry, setup_clicker_handlers
from leaderboard_logic import LeaderboardCache, setup_leaderboard_handlers
from utils import send_telegram_log

load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(name)s - %(filename)s:%(lineno)d - %(message)s'
)
logger = logging.getLogger(__name__)
logging.getLogger('apscheduler').setLevel(logging.WARNING)

if not Config.BOT_TOKEN:
    logger.critical("BOT_TOKEN environment variable not set.")
    raise ValueError("BOT_TOKEN environment variable not set.")

bot = Bot(token=Config.BOT_TOKEN, default=DefaultBotProperties(parse_mode="HTML"))
storage = MemoryStorage()
dp = Dispatcher(storage=storage)
scheduler = AsyncIOScheduler(timezone=pytz_timezone(Config.TIMEZONE) if Config.TIMEZONE else "UTC")

game_service = create_game_service()
sessions = SessionRegistry(game_service)
leaderboard = LeaderboardCache(game_service)

# Доступны в хендлерах как аргументы sessions / leaderboard / game_service
dp["game_service"] = game_service
dp["sessions"] = sessions
dp["leaderboard"] = leaderboard


async def autosave_active_sessions():
    active = sessions.active_sessions()
    if not active:
        return
    logger.info(f"Autosave: saving {len(active)} active session(s).")
    try:
        await sessions.save_all()
    except Exception as e:
        logger.error(f"Error in autosave_active_sessions: {e}", exc_info=True)


async def on_startup(dispatcher: Dispatcher):
    logger.info(f"Starting bot with '{Config.GAME_BACKEND}' game backend...")
    if isinstance(game_service, PostgresGameService):
        await database.init_db()
        logger.info("Database initialized.")

    await leaderboard.start()

    logger.info("Registering handlers...")
    setup_clicker_handlers(dispatcher)
    setup_leaderboard_handlers(dispatcher)
    logger.info("All command handlers registered.")

    try:
        # Опрос рейтинга - запасной вариант, если push-канал недоступен
        scheduler.add_job(
            leaderboard.refresh,
            'interval',
            seconds=Config.LEADERBOARD_REFRESH_INTERVAL_SECONDS,
            id='leaderboard_refresh_job',
            replace_existing=True,
            misfire_grace_time=60
        )
        scheduler.add_job(
            autosave_active_sessions,
            'interval',
            seconds=Config.AUTOSAVE_INTERVAL_SECONDS,
            id='autosave_sessions_job',
            replace_existing=True,
            misfire_grace_time=120
        )
        scheduler.start()
        logger.info(f"Scheduler started (leaderboard every {Config.LEADERBOARD_REFRESH_INTERVAL_SECONDS}s, autosave every {Config.AUTOSAVE_INTERVAL_SECONDS}s).")
    except Exception as e:
        logger.error(f"Ошибка при настройке задач планировщика: {e}", exc_info=True)

    await send_telegram_log(bot, "✅ <b>Бот запущен.</b>")


async def on_shutdown(dispatcher: Dispatcher):
    logger.info("Starting bot shutdown sequence...")
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Планировщик остановлен.")
    await sessions.close_all(save=True)
    await leaderboard.stop()
    await game_service.close()
    logger.info("Bot shutdown sequence completed (on_shutdown).")
    await send_telegram_log(bot, "⛔️ <b>Бот остановлен.</b>")


dp.startup.register(on_startup)
dp.shutdown.register(on_shutdown)


if __name__ == '__main__':
    async def main_runner():
        try:
            logger.info("Запуск бота...")
            await dp.start_polling(bot)
        except (KeyboardInterrupt, SystemExit):
            logger.info("Бот остановлен вручную (KeyboardInterrupt/SystemExit).")
        except Exception as e_run:
            logger.critical(f"Критическая ошибка при запуске/работе бота: {e_run}", exc_info=True)
        finally:
            logger.info("Начало процедуры остановки...")
            if scheduler.running:
                scheduler.shutdown(wait=False)
                logger.info("Планировщик остановлен.")
            try:
                await bot.session.close()
            except Exception as e_bot_close:
                logger.error(f"Ошибка при закрытии сессии бота: {e_bot_close}", exc_info=True)
            logger.info("Бот и ресурсы корректно остановлены (из main_runner).")

    asyncio.run(main_runner())
