# clicker_logic.py
import re
import html
import asyncio
import logging
from typing import Optional, Dict

from aiogram import Router, Bot
from aiogram.filters import Command, CommandObject
from aiogram.types import Message

from config import Config
from economy_logic import UnlockState, get_facility_display_state, find_facility
from facility_data import PRESTIGE_ITEMS
from prestige_logic import get_next_prestige_lifetime
from game_service import GameService
from game_session import GameSession, SessionStatus
from utils import get_user_mention_html, send_telegram_log, format_coins

logger = logging.getLogger(__name__)

clicker_router = Router()

USERNAME_MAX_LENGTH = 20
_USERNAME_RE = re.compile(r"^[\w\-]{1,20}$")


class UsernameTakenError(Exception):
    """Имя игрока уже занято активной сессией другого пользователя Telegram."""


class SessionRegistry:
    """Одна игровая сессия на пользователя Telegram и на имя игрока."""

    def __init__(self, service: GameService, tick_interval: Optional[float] = None):
        self.service = service
        self.tick_interval = tick_interval
        self._sessions: Dict[int, GameSession] = {}
        # username -> user_id владельца активной сессии
        self._owners: Dict[str, int] = {}
        self._creation_lock = asyncio.Lock()

    def get(self, user_id: int) -> Optional[GameSession]:
        session = self._sessions.get(user_id)
        if session and session.status != SessionStatus.CLOSED:
            return session
        return None

    def get_owner(self, username: str) -> Optional[int]:
        owner_id = self._owners.get(username)
        if owner_id is None:
            return None
        session = self.get(owner_id)
        if session is None or session.username != username:
            self._owners.pop(username, None)
            return None
        return owner_id

    async def start(self, user_id: int, username: str, bot: Bot, chat_id: int) -> Optional[GameSession]:
        async with self._creation_lock:
            owner_id = self.get_owner(username)
            if owner_id is not None and owner_id != user_id:
                raise UsernameTakenError(username)

            existing = self.get(user_id)
            if existing and existing.username == username:
                return existing
            if existing:
                await existing.close(save=True)
                self._owners.pop(existing.username, None)
                del self._sessions[user_id]

            async def notify_chat(text: str):
                await bot.send_message(chat_id, f"ℹ️ {html.escape(text)}")

            session = GameSession(self.service, username, tick_interval=self.tick_interval, on_notice=notify_chat)
            if not await session.login():
                return None
            self._sessions[user_id] = session
            self._owners[username] = user_id
            return session

    def active_sessions(self):
        return [s for s in self._sessions.values() if s.status != SessionStatus.CLOSED]

    async def save_all(self):
        for session in self.active_sessions():
            await session.save()

    async def close_all(self, save: bool = True):
        async with self._creation_lock:
            for session in list(self._sessions.values()):
                await session.close(save=save)
            self._sessions.clear()
            self._owners.clear()


def _default_username(message: Message) -> str:
    if message.from_user.username:
        return message.from_user.username[:USERNAME_MAX_LENGTH]
    return f"player_{message.from_user.id}"[:USERNAME_MAX_LENGTH]


async def _require_session(message: Message, sessions: SessionRegistry) -> Optional[GameSession]:
    if not message.from_user:
        await message.reply("Не могу определить пользователя.")
        return None
    session = sessions.get(message.from_user.id)
    if session is None:
        await message.reply("Сначала начните игру: <code>/start</code> или <code>/start имя</code>.")
    return session


def _format_status(session: GameSession) -> str:
    stage = session.stage
    prestige = session.prestige_state
    lines = [
        f"🪙 Баланс: <b>{format_coins(session.coins)}</b>",
        f"⚙️ Производство: <b>{session.coins_per_second:.1f}</b>/сек",
        f"🖱️ За клик: <b>{format_coins(session.click_reward)}</b>",
        f"🏁 Стадия: {stage['stage']}. {html.escape(stage['name'])}",
        f"✨ Очки престижа: <b>{prestige['prestige_points']}</b>",
    ]
    if session.can_prestige_now:
        lines.append(f"🔁 Престиж доступен: +{session.pending_prestige_points} очк. (<code>/prestige</code>)")
    return "\n".join(lines)


@clicker_router.message(Command("start", "старт", "play", "играть", ignore_case=True))
async def start_command(message: Message, command: CommandObject, bot: Bot, sessions: SessionRegistry):
    if not message.from_user:
        await message.reply("Не могу определить пользователя.")
        return

    username = command.args.strip() if command.args else _default_username(message)
    if not _USERNAME_RE.match(username):
        await message.reply(f"Имя игрока: до {USERNAME_MAX_LENGTH} символов, буквы, цифры, '_' и '-'.")
        return

    user_link = get_user_mention_html(message.from_user.id, message.from_user.full_name, message.from_user.username)
    try:
        session = await sessions.start(message.from_user.id, username, bot, message.chat.id)
        if session is None:
            await message.reply("Не удалось загрузить игру. Попробуйте позже.")
            return
        await message.reply(
            f"💰 {user_link}, добро пожаловать в CoinCoin, <b>{html.escape(username)}</b>!\n\n"
            f"{_format_status(session)}\n\n"
            "Команды: <code>/click</code>, <code>/shop</code>, <code>/buy id</code>, <code>/save</code>, <code>/top</code>",
            disable_web_page_preview=True
        )
    except UsernameTakenError:
        await message.reply(f"Имя <b>{html.escape(username)}</b> уже занято другим игроком. Выберите другое: <code>/start имя</code>.")
    except Exception as e:
        logger.error(f"Error in /start for user {message.from_user.id}: {e}", exc_info=True)
        await message.reply("Произошла ошибка при запуске игры.")
        await send_telegram_log(bot, f"🔴 Ошибка в /start для {user_link}: <pre>{html.escape(str(e))}</pre>")


@clicker_router.message(Command("click", "tap", "клик", "тап", ignore_case=True))
async def click_command(message: Message, sessions: SessionRegistry):
    session = await _require_session(message, sessions)
    if not session:
        return
    reward = await session.click()
    await message.reply(f"🪙 +{format_coins(reward)} (баланс: <b>{format_coins(session.coins)}</b>)")


@clicker_router.message(Command("balance", "status", "баланс", "статус", ignore_case=True))
async def status_command(message: Message, sessions: SessionRegistry):
    session = await _require_session(message, sessions)
    if not session:
        return
    await message.reply(_format_status(session))


@clicker_router.message(Command("shop", "магазин", ignore_case=True))
async def shop_command(message: Message, sessions: SessionRegistry):
    session = await _require_session(message, sessions)
    if not session:
        return

    response_lines = [f"<b>🏪 Объекты</b> (баланс: {format_coins(session.coins)})"]
    for row in session.get_shop_rows():
        facility = row["facility"]
        if row["state"] == UnlockState.SILHOUETTE:
            response_lines.append(f"\n❔ <i>???</i> - {html.escape(row['requirement_text'])}")
            continue

        header = f"{facility['icon']} <b>{html.escape(facility['name'])}</b> (<code>{facility['id']}</code>)"
        details = f"   Цена: {format_coins(row['price'])} | Куплено: {facility['owned']}"
        if facility.get("base_cps"):
            details += f" | {row['cps']:.1f}/сек"
        if facility.get("click_value"):
            details += f" | +{facility['click_value']} за клик"
        if row["state"] == UnlockState.NEXT:
            details += f"\n   🔒 {html.escape(row['requirement_text'])}"
        elif row["upgrade_price"] > 0:
            details += f"\n   ⬆️ Улучшение (ур. {facility.get('upgrade_level', 0) + 1}): {format_coins(row['upgrade_price'])} - <code>/upgrade {facility['id']}</code>"
        response_lines.append(f"\n{header}\n{details}")
    await message.reply("\n".join(response_lines))


@clicker_router.message(Command("buy", "купить", ignore_case=True))
async def buy_command(message: Message, command: CommandObject, bot: Bot, sessions: SessionRegistry):
    session = await _require_session(message, sessions)
    if not session:
        return
    if not command.args:
        await message.reply("Укажите объект: <code>/buy coin_maker</code>. Список: <code>/shop</code>")
        return

    facility_id = command.args.strip().lower()
    facility = find_facility(session.facilities, facility_id)
    if facility is None:
        await message.reply(f"Объект <code>{html.escape(facility_id)}</code> не найден. Проверьте <code>/shop</code>.")
        return
    if get_facility_display_state(facility, session.facilities) != UnlockState.UNLOCKED:
        await message.reply("🔒 Этот объект ещё не открыт.")
        return

    price = session.get_facility_price(facility_id)
    try:
        if await session.purchase_facility(facility_id):
            await message.reply(
                f"✅ Куплено: {facility['icon']} <b>{html.escape(facility['name'])}</b> за {format_coins(price)}.\n"
                f"Баланс: <b>{format_coins(session.coins)}</b> | Производство: {session.coins_per_second:.1f}/сек"
            )
        elif session.is_prestiging:
            await message.reply("⏳ Идёт престиж, покупки временно недоступны.")
        elif session.coins < price:
            await message.reply(
                f"Не хватает монет: нужно {format_coins(price)}, у вас {format_coins(session.coins)}."
            )
        else:
            await message.reply("Покупка сейчас недоступна, попробуйте ещё раз.")
    except Exception as e:
        logger.error(f"Error in /buy {facility_id} for '{session.username}': {e}", exc_info=True)
        await message.reply("Произошла ошибка при покупке.")
        await send_telegram_log(bot, f"🔴 Ошибка в /buy ({html.escape(facility_id)}) для {html.escape(session.username)}: <pre>{html.escape(str(e))}</pre>")


@clicker_router.message(Command("upgrade", "улучшить", ignore_case=True))
async def upgrade_command(message: Message, command: CommandObject, sessions: SessionRegistry):
    session = await _require_session(message, sessions)
    if not session:
        return
    if not command.args:
        await message.reply("Укажите объект: <code>/upgrade coin_maker</code>.")
        return

    facility_id = command.args.strip().lower()
    if await session.upgrade_facility(facility_id):
        facility = find_facility(session.facilities, facility_id)
        await message.reply(f"⬆️ {html.escape(facility['name'])} улучшен до уровня {facility['upgrade_level']}!")
    else:
        await message.reply(
            "Улучшение недоступно: объект должен быть куплен, уровень ниже "
            f"{Config.FACILITY_MAX_UPGRADE_LEVEL}, а монет должно хватать."
        )


@clicker_router.message(Command("save", "сохранить", ignore_case=True))
async def save_command(message: Message, sessions: SessionRegistry):
    session = await _require_session(message, sessions)
    if not session:
        return
    # Об успехе/ошибке сессия сообщит сама через уведомление
    if session.status == SessionStatus.SAVING:
        await message.reply("⏳ Сохранение уже выполняется.")
        return
    await session.save()


@clicker_router.message(Command("prestige", "престиж", ignore_case=True))
async def prestige_command(message: Message, command: CommandObject, sessions: SessionRegistry):
    session = await _require_session(message, sessions)
    if not session:
        return

    if not session.can_prestige_now:
        await message.reply(
            f"🔁 Престиж откроется, когда вы заработаете {format_coins(get_next_prestige_lifetime(session.awarded_prestige_points))} монет "
            f"за всё время (сейчас {format_coins(session.lifetime_coins)})."
        )
        return

    if not command.args or command.args.strip().lower() not in ("confirm", "да"):
        await message.reply(
            f"🔁 Престиж сбросит монеты и все объекты, но даст <b>+{session.pending_prestige_points}</b> очк. престижа.\n"
            "Подтвердите: <code>/prestige confirm</code>"
        )
        return

    points = await session.execute_prestige()
    if points < 0:
        await message.reply("Престиж сейчас недоступен, попробуйте позже.")
        return
    await message.reply(
        f"✨ Престиж выполнен! Получено очков: <b>{points}</b>. "
        f"Всего: <b>{session.prestige_state['prestige_points']}</b>. Магазин: <code>/prestigeshop</code>"
    )


@clicker_router.message(Command("prestigeshop", "магазинпрестижа", ignore_case=True))
async def prestige_shop_command(message: Message, sessions: SessionRegistry):
    session = await _require_session(message, sessions)
    if not session:
        return

    effect = session.prestige_effect
    response_lines = [
        f"<b>✨ Магазин престижа</b> (очков: {session.prestige_state['prestige_points']})",
        f"Текущие бонусы: +{format_coins(effect['click_bonus'])} за клик, "
        f"x{effect['production_multiplier']:.0f} производство, "
        f"-{min(effect['price_discount'], Config.PRICE_DISCOUNT_CAP) * 100:.0f}% цены",
    ]
    for item_id, item in PRESTIGE_ITEMS.items():
        owned_items = session.prestige_state.get(item["items_field"], 0)
        response_lines.append(
            f"\n{item['icon']} <b>{html.escape(item['name'])}</b> (<code>{item_id}</code>) - {item['cost']} очк.\n"
            f"   {html.escape(item['description'])} Куплено: {owned_items}"
        )
    response_lines.append("\nКупить: <code>/buyprestige click_power</code>")
    await message.reply("\n".join(response_lines))


@clicker_router.message(Command("buyprestige", "купитьпрестиж", ignore_case=True))
async def buy_prestige_item_command(message: Message, command: CommandObject, sessions: SessionRegistry):
    session = await _require_session(message, sessions)
    if not session:
        return
    if not command.args:
        await message.reply("Укажите предмет: <code>/buyprestige production_boost</code>.")
        return

    item_id = command.args.strip().lower()
    item = PRESTIGE_ITEMS.get(item_id)
    if not item:
        await message.reply(f"Предмет <code>{html.escape(item_id)}</code> не найден. Проверьте <code>/prestigeshop</code>.")
        return
    if session.prestige_state["prestige_points"] < item["cost"]:
        await message.reply(f"Не хватает очков престижа: нужно {item['cost']}, у вас {session.prestige_state['prestige_points']}.")
        return

    if await session.buy_prestige_item(item_id):
        await message.reply(f"{item['icon']} Куплено: <b>{html.escape(item['name'])}</b>! Осталось очков: {session.prestige_state['prestige_points']}.")
    else:
        await message.reply("Покупка не удалась, попробуйте ещё раз.")


def setup_clicker_handlers(dp):
    dp.include_router(clicker_router)
    logger.info("Обработчики игровых команд зарегистрированы.")
