# game_session.py
"""
Игровая сессия одного игрока: начисление монет по тикам, клики, покупки,
престиж и сохранение прогресса.

Все изменения (coins, facilities, prestige_state) выполняются под self._state_lock.
Вызовы хранилища идут вне блокировки, поэтому тики и клики никогда не ждут сеть.
Ошибка хранилища не откатывает локальное состояние, а только выдаёт уведомление.
"""
import asyncio
import copy
import math
import logging
from enum import Enum
from typing import Optional, List, Dict, Any, Callable, Awaitable, Set

from config import Config
from economy_logic import (
    UnlockState, find_facility, get_facility_price, get_facility_cps, get_total_cps,
    get_click_value, get_facility_display_state, get_unlock_requirement_text,
    can_upgrade_facility, get_upgrade_price, get_game_stage,
)
from facility_data import build_initial_facilities
from game_service import GameService
from prestige_logic import (
    can_prestige, calculate_earned_points, calculate_prestige_effect,
    empty_prestige_state, prestige_state_from_record, apply_prestige_item,
)

logger = logging.getLogger(__name__)

NoticeCallback = Callable[[str], Awaitable[None]]


class SessionStatus(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    ACTIVE = "active"
    PURCHASING = "purchasing"
    PRESTIGING = "prestiging"
    SAVING = "saving"
    CLOSED = "closed"


class GameSession:

    def __init__(self, service: GameService, username: str,
                 tick_interval: Optional[float] = None,
                 on_notice: Optional[NoticeCallback] = None):
        self.service = service
        self.username = username
        self.tick_interval = tick_interval if tick_interval is not None else Config.TICK_INTERVAL_SECONDS
        self.on_notice = on_notice

        self.player: Optional[Dict[str, Any]] = None
        self.coins: float = 0.0
        self.lifetime_coins: float = 0.0
        self.awarded_prestige_points: int = 0
        self.total_clicks: int = 0
        self.facilities: List[Dict[str, Any]] = build_initial_facilities()
        self.prestige_state: Dict[str, int] = empty_prestige_state()
        self.last_notice: Optional[str] = None

        self._state_lock = asyncio.Lock()
        self._ticker_task: Optional[asyncio.Task] = None
        self._background_tasks: Set[asyncio.Task] = set()
        self._closed = False
        self._purchasing = False
        self._save_in_flight = False
        # Престиж и покупки в магазине престижа: не больше одной транзакции за раз
        self._transaction_in_flight = False
        self._prestiging = False

    # --- Производные значения ---

    @property
    def player_id(self) -> Optional[int]:
        return self.player["id"] if self.player else None

    @property
    def status(self) -> SessionStatus:
        if self._closed:
            return SessionStatus.CLOSED
        if self.player is None:
            return SessionStatus.UNAUTHENTICATED
        if self._transaction_in_flight:
            return SessionStatus.PRESTIGING
        if self._purchasing:
            return SessionStatus.PURCHASING
        if self._save_in_flight:
            return SessionStatus.SAVING
        return SessionStatus.ACTIVE

    @property
    def prestige_effect(self) -> Dict[str, float]:
        return calculate_prestige_effect(self.prestige_state)

    @property
    def coins_per_second(self) -> float:
        return get_total_cps(self.facilities, self.prestige_effect["production_multiplier"])

    @property
    def click_reward(self) -> float:
        return get_click_value(self.facilities) + self.prestige_effect["click_bonus"]

    @property
    def pending_prestige_points(self) -> int:
        return calculate_earned_points(self.lifetime_coins, self.awarded_prestige_points)

    @property
    def can_prestige_now(self) -> bool:
        return can_prestige(self.lifetime_coins) and self.pending_prestige_points > 0

    @property
    def stage(self) -> Dict[str, Any]:
        return get_game_stage(self.coins)

    @property
    def is_prestiging(self) -> bool:
        return self._prestiging

    @property
    def is_ticking(self) -> bool:
        return self._ticker_task is not None and not self._ticker_task.done()

    def _is_active(self) -> bool:
        return not self._closed and self.player is not None

    def get_facility_price(self, facility_id: str) -> int:
        facility = find_facility(self.facilities, facility_id)
        if facility is None:
            return -1
        return get_facility_price(facility, self.prestige_effect["price_discount"])

    def get_shop_rows(self) -> List[Dict[str, Any]]:
        """Строки магазина для отображения: состояние, цена, производство, условие открытия."""
        effect = self.prestige_effect
        rows = []
        for facility in self.facilities:
            rows.append({
                "facility": facility,
                "state": get_facility_display_state(facility, self.facilities),
                "price": get_facility_price(facility, effect["price_discount"]),
                "cps": get_facility_cps(facility, effect["production_multiplier"]),
                "requirement_text": get_unlock_requirement_text(facility, self.facilities),
                "upgrade_price": get_upgrade_price(facility) if can_upgrade_facility(facility) else -1,
            })
        return rows

    # --- Внутреннее ---

    async def _notice(self, text: str) -> None:
        self.last_notice = text
        if self.on_notice is None:
            return
        try:
            await self.on_notice(text)
        except Exception as e:
            logger.error(f"Session '{self.username}': notice delivery failed: {e}", exc_info=True)

    def _accrue(self, amount: float) -> None:
        if amount <= 0:
            return
        self.coins += amount
        self.lifetime_coins += amount

    def _snapshot(self) -> Dict[str, Any]:
        # Хранилище держит целые монеты (BIGINT). Дробная часть (< 1 монеты)
        # остаётся только в живой сессии и теряется при повторном входе.
        return {
            "coins": math.floor(self.coins),
            "facilities": copy.deepcopy(self.facilities),
            "lifetime_coins": math.floor(self.lifetime_coins),
        }

    def _apply_player_record(self, record: Dict[str, Any]) -> None:
        self.player = record
        self.coins = float(record.get("coins") or 0)
        self.lifetime_coins = max(float(record.get("lifetime_coins") or 0), self.coins)
        self.awarded_prestige_points = int(record.get("awarded_prestige_points") or 0)
        owned_map = record.get("facilities") or {}
        upgrades_map = record.get("upgrades") or {}
        facilities = build_initial_facilities()
        for facility in facilities:
            facility["owned"] = int(owned_map.get(facility["id"], 0))
            facility["upgrade_level"] = min(int(upgrades_map.get(facility["id"], 0)), Config.FACILITY_MAX_UPGRADE_LEVEL)
        self.facilities = facilities
        self.prestige_state = prestige_state_from_record(record)

    def _refresh_ticker(self) -> None:
        """Запускает тикер, если производство > 0, и останавливает, если упало до 0."""
        if self._closed:
            return
        if self.coins_per_second > 0:
            if not self.is_ticking:
                self._ticker_task = asyncio.create_task(self._ticker_loop())
        elif self.is_ticking:
            self._ticker_task.cancel()
            self._ticker_task = None

    async def _ticker_loop(self) -> None:
        while not self._closed:
            await asyncio.sleep(self.tick_interval)
            if self._closed:
                break
            rate = await self.tick()
            if rate <= 0:
                break

    def _schedule_save(self, snapshot: Dict[str, Any]) -> bool:
        """Фоновое сохранение после покупки. Если сохранение уже идёт, запрос отбрасывается."""
        if self._save_in_flight:
            logger.debug(f"Session '{self.username}': save already in flight, purchase save dropped.")
            return False
        self._save_in_flight = True
        task = asyncio.create_task(self._run_save(snapshot, announce_success=False))
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return True

    async def _run_save(self, snapshot: Dict[str, Any], announce_success: bool) -> bool:
        try:
            success = await self.service.save_game_data(
                self.player_id, snapshot["coins"], snapshot["facilities"], snapshot["lifetime_coins"]
            )
        except Exception as e:
            logger.error(f"Session '{self.username}': save failed: {e}", exc_info=True)
            success = False
        finally:
            self._save_in_flight = False

        if success:
            if announce_success:
                await self._notice("Прогресс сохранён!")
        else:
            await self._notice("Не удалось сохранить прогресс. Попробуйте позже.")
        return success

    async def _wait_for_background_saves(self) -> None:
        if self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    # --- Операции ---

    async def login(self) -> bool:
        """Загружает (или создаёт) игрока в хранилище и переводит сессию в ACTIVE."""
        if self._closed:
            return False
        try:
            record = await self.service.get_or_create_player(self.username)
        except Exception as e:
            logger.error(f"Session '{self.username}': login failed: {e}", exc_info=True)
            record = None
        if not record:
            await self._notice("Не удалось загрузить данные игрока. Попробуйте позже.")
            return False

        async with self._state_lock:
            self._apply_player_record(record)
        self._refresh_ticker()
        logger.info(f"Session '{self.username}' active (player id {self.player_id}, coins {self.coins:.0f}).")
        return True

    async def add_coins(self, amount: float) -> None:
        async with self._state_lock:
            self._accrue(amount)

    async def tick(self) -> float:
        """Один тик: начисляет текущее производство в секунду. Возвращает начисленное."""
        async with self._state_lock:
            if not self._is_active():
                return 0.0
            rate = self.coins_per_second
            self._accrue(rate)
            return rate

    async def click(self) -> float:
        async with self._state_lock:
            if not self._is_active():
                return 0.0
            reward = self.click_reward
            self._accrue(reward)
            self.total_clicks += 1
            return reward

    async def purchase_facility(self, facility_id: str) -> bool:
        async with self._state_lock:
            if not self._is_active() or self._prestiging:
                return False
            facility = find_facility(self.facilities, facility_id)
            if facility is None:
                return False
            if get_facility_display_state(facility, self.facilities) != UnlockState.UNLOCKED:
                return False
            price = get_facility_price(facility, self.prestige_effect["price_discount"])
            if self.coins < price:
                return False

            self._purchasing = True
            try:
                self.coins -= price
                facility["owned"] += 1
            finally:
                self._purchasing = False
            snapshot = self._snapshot()

        logger.info(f"Session '{self.username}': bought {facility_id} for {price} (owned {facility['owned']}).")
        self._refresh_ticker()
        self._schedule_save(snapshot)
        return True

    async def upgrade_facility(self, facility_id: str) -> bool:
        async with self._state_lock:
            if not self._is_active() or self._prestiging:
                return False
            facility = find_facility(self.facilities, facility_id)
            if facility is None or not can_upgrade_facility(facility):
                return False
            price = get_upgrade_price(facility)
            if price < 0 or self.coins < price:
                return False

            self._purchasing = True
            try:
                self.coins -= price
                facility["upgrade_level"] = (facility.get("upgrade_level") or 0) + 1
            finally:
                self._purchasing = False
            snapshot = self._snapshot()

        logger.info(f"Session '{self.username}': upgraded {facility_id} to level {facility['upgrade_level']} for {price}.")
        self._refresh_ticker()
        self._schedule_save(snapshot)
        return True

    async def save(self) -> bool:
        """Ручное сохранение. Пересекающиеся сохранения отклоняются, а не ставятся в очередь."""
        if not self._is_active() or self._prestiging or self._save_in_flight:
            return False
        self._save_in_flight = True
        async with self._state_lock:
            snapshot = self._snapshot()
        return await self._run_save(snapshot, announce_success=True)

    async def execute_prestige(self) -> int:
        """
        Сброс прогресса в обмен на очки престижа.
        Возвращает число начисленных очков или -1, если престиж не выполнен.
        """
        if not self._is_active() or self._transaction_in_flight:
            return -1
        if not self.can_prestige_now:
            return -1

        self._transaction_in_flight = True
        self._prestiging = True
        try:
            # Запоздавшее сохранение после покупки не должно перезаписать сброс
            await self._wait_for_background_saves()
            if self._save_in_flight:
                await self._notice("Идёт сохранение, попробуйте престиж чуть позже.")
                return -1

            current_coins = self.coins
            lifetime_coins = self.lifetime_coins
            try:
                result = await self.service.execute_prestige(self.player_id, current_coins, lifetime_coins)
            except Exception as e:
                logger.error(f"Session '{self.username}': prestige failed: {e}", exc_info=True)
                result = None
            if not result or not result.get("success"):
                await self._notice("Не удалось выполнить престиж. Попробуйте позже.")
                return -1

            points_awarded = int(result.get("points_awarded") or 0)
            async with self._state_lock:
                self.coins = 0.0
                self.facilities = build_initial_facilities()
                # Оптимистичная оценка до сверки с хранилищем
                self.prestige_state["prestige_points"] += points_awarded
                self.awarded_prestige_points += points_awarded
            self._refresh_ticker()
            await self._reconcile_prestige_state()
            logger.info(f"Session '{self.username}': prestige done, awarded {points_awarded} points.")
            return points_awarded
        finally:
            self._prestiging = False
            self._transaction_in_flight = False

    async def _reconcile_prestige_state(self) -> None:
        try:
            record = await self.service.get_or_create_player(self.username)
        except Exception as e:
            logger.error(f"Session '{self.username}': prestige refresh failed: {e}", exc_info=True)
            record = None
        if not record:
            await self._notice("Не удалось обновить данные престижа, показаны локальные значения.")
            return
        async with self._state_lock:
            self.player = record
            self.prestige_state = prestige_state_from_record(record)
            self.awarded_prestige_points = int(record.get("awarded_prestige_points") or 0)
            self.lifetime_coins = max(self.lifetime_coins, float(record.get("lifetime_coins") or 0))

    async def buy_prestige_item(self, item_id: str) -> bool:
        if not self._is_active() or self._transaction_in_flight:
            return False
        if apply_prestige_item(self.prestige_state, item_id) is None:
            return False

        self._transaction_in_flight = True
        try:
            try:
                success = await self.service.buy_prestige_item(self.player_id, item_id)
            except Exception as e:
                logger.error(f"Session '{self.username}': prestige item purchase failed: {e}", exc_info=True)
                success = False
            if not success:
                await self._notice("Не удалось купить предмет престижа.")
                return False
            async with self._state_lock:
                new_state = apply_prestige_item(self.prestige_state, item_id)
                if new_state is not None:
                    self.prestige_state = new_state
        finally:
            self._transaction_in_flight = False

        self._refresh_ticker()
        return True

    async def close(self, save: bool = False) -> None:
        """Останавливает тикер. После close() тики не начисляются."""
        if self._closed:
            return
        if save and self._is_active():
            await self._wait_for_background_saves()
            await self.save()
        self._closed = True
        if self._ticker_task is not None:
            self._ticker_task.cancel()
            await asyncio.gather(self._ticker_task, return_exceptions=True)
            self._ticker_task = None
        await self._wait_for_background_saves()
        logger.info(f"Session '{self.username}' closed.")
