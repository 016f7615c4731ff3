# leaderboard_logic.py
import html
import asyncio
import logging
from datetime import datetime, timezone as dt_timezone
from typing import Optional, List, Dict, Any, Set

from aiogram import Router, Bot
from aiogram.filters import Command
from aiogram.types import Message

from config import Config
from clicker_logic import SessionRegistry
from game_service import GameService
from utils import send_telegram_log, format_coins, format_local_time

logger = logging.getLogger(__name__)

leaderboard_router = Router()


class LeaderboardCache:
    """
    Топ игроков по монетам. Обновляется по push-уведомлениям хранилища,
    а планировщик вызывает refresh() как запасной вариант (опрос).
    """

    def __init__(self, service: GameService, limit: int = Config.LEADERBOARD_LIMIT):
        self.service = service
        self.limit = limit
        self.entries: List[Dict[str, Any]] = []
        self.last_updated: Optional[datetime] = None
        self.is_subscribed = False
        self._refresh_in_flight = False
        self._refresh_requested = False
        self._tasks: Set[asyncio.Task] = set()

    async def refresh(self) -> bool:
        # Запрос во время обновления не теряется: текущий цикл выполнит ещё один проход
        if self._refresh_in_flight:
            self._refresh_requested = True
            return False
        self._refresh_in_flight = True
        refreshed = False
        try:
            while True:
                self._refresh_requested = False
                try:
                    self.entries = await self.service.get_leaderboard(self.limit)
                    self.last_updated = datetime.now(dt_timezone.utc)
                    refreshed = True
                except Exception as e:
                    logger.error(f"Leaderboard: refresh failed, keeping previous data: {e}", exc_info=True)
                if not self._refresh_requested:
                    break
        finally:
            self._refresh_in_flight = False
        return refreshed

    def _on_player_changed(self, player_id: Optional[int]) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(self.refresh())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def start(self):
        await self.service.subscribe(self._on_player_changed)
        self.is_subscribed = True
        await self.refresh()

    async def stop(self):
        await self.service.unsubscribe(self._on_player_changed)
        self.is_subscribed = False
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def get_player_rank(self, player_id: Optional[int]) -> int:
        if player_id is None:
            return -1
        try:
            return await self.service.get_player_rank(player_id)
        except Exception as e:
            logger.error(f"Leaderboard: rank lookup failed for player {player_id}: {e}", exc_info=True)
            return -1


@leaderboard_router.message(Command("top", "leaderboard", "топ", "рейтинг", ignore_case=True))
async def top_command(message: Message, bot: Bot, leaderboard: LeaderboardCache, sessions: SessionRegistry):
    try:
        if leaderboard.last_updated is None:
            await leaderboard.refresh()
        if not leaderboard.entries:
            return await message.reply("Рейтинг пока пуст.")

        session = sessions.get(message.from_user.id) if message.from_user else None
        response_lines = [f"<b>🏆 Топ-{leaderboard.limit} по монетам:</b>"]
        for i, player in enumerate(leaderboard.entries):
            marker = " 👈" if session and session.player_id == player["id"] else ""
            response_lines.append(f"{i + 1}. {html.escape(player['username'])} - <code>{format_coins(player['coins'])}</code>{marker}")
        response_lines.append(f"\n<i>Обновлено: {format_local_time(leaderboard.last_updated)}</i>")
        await message.reply("\n".join(response_lines), disable_web_page_preview=True)
    except Exception as e:
        logger.error(f"Error in /top: {e}", exc_info=True)
        await message.reply("Ошибка отображения рейтинга.")
        await send_telegram_log(bot, f"🔴 Ошибка в /top: <pre>{html.escape(str(e))}</pre>")


@leaderboard_router.message(Command("rank", "место", ignore_case=True))
async def rank_command(message: Message, leaderboard: LeaderboardCache, sessions: SessionRegistry):
    session = sessions.get(message.from_user.id) if message.from_user else None
    if session is None:
        await message.reply("Сначала начните игру: <code>/start</code>.")
        return
    rank = await leaderboard.get_player_rank(session.player_id)
    if rank < 0:
        await message.reply("Вас пока нет в рейтинге. Сохраните прогресс: <code>/save</code>.")
        return
    await message.reply(f"📊 {html.escape(session.username)}, ваше место в рейтинге: <b>{rank}</b>.")


def setup_leaderboard_handlers(dp):
    dp.include_router(leaderboard_router)
    logger.info("Обработчики рейтинга зарегистрированы.")
