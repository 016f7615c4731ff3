# game_service.py
"""
Хранилище прогресса игроков и рейтинга.

GameService - общий интерфейс. Сессии получают экземпляр явно (create_game_service),
глобального объекта нет:
  * PostgresGameService - PostgreSQL через функции database.py, push-уведомления через LISTEN/NOTIFY;
  * MemoryGameService - всё в памяти процесса (локальный запуск и тесты).
"""
import asyncio
import copy
import logging
from datetime import datetime, timezone as dt_timezone
from typing import Optional, List, Dict, Any, Callable

import asyncpg

import database
from config import Config
from facility_data import PRESTIGE_ITEMS
from prestige_logic import can_prestige, calculate_prestige_points

logger = logging.getLogger(__name__)

PlayerChangeCallback = Callable[[Optional[int]], None]


def build_facilities_snapshot(facilities: List[Dict[str, Any]]) -> Dict[str, int]:
    """Разреженная карта {id: owned}, нулевые записи не сохраняются."""
    return {f["id"]: int(f.get("owned", 0)) for f in facilities if f.get("owned", 0) > 0}


def build_upgrades_snapshot(facilities: List[Dict[str, Any]]) -> Dict[str, int]:
    return {f["id"]: int(f["upgrade_level"]) for f in facilities if f.get("upgrade_level")}


class GameService:
    """Контракт хранилища. Ошибки не выбрасываются наружу: None / False / [] / -1."""

    def __init__(self) -> None:
        self._subscribers: List[PlayerChangeCallback] = []

    async def get_or_create_player(self, username: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    async def save_game_data(self, player_id: int, coins: float, facilities: List[Dict[str, Any]],
                             lifetime_coins: Optional[float] = None) -> bool:
        raise NotImplementedError

    async def get_leaderboard(self, limit: int = Config.LEADERBOARD_LIMIT) -> List[Dict[str, Any]]:
        raise NotImplementedError

    async def get_player_rank(self, player_id: int) -> int:
        raise NotImplementedError

    async def execute_prestige(self, player_id: int, current_coins: float,
                               lifetime_coins: Optional[float] = None) -> Dict[str, Any]:
        raise NotImplementedError

    async def buy_prestige_item(self, player_id: int, item_type: str) -> bool:
        raise NotImplementedError

    async def subscribe(self, callback: PlayerChangeCallback) -> None:
        if callback not in self._subscribers:
            self._subscribers.append(callback)

    async def unsubscribe(self, callback: PlayerChangeCallback) -> None:
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    async def close(self) -> None:
        self._subscribers.clear()

    def _notify_subscribers(self, player_id: Optional[int]) -> None:
        # Доставка "по возможности": упавший подписчик не мешает остальным
        for callback in list(self._subscribers):
            try:
                callback(player_id)
            except Exception as e:
                logger.error(f"GameService: player change subscriber failed: {e}", exc_info=True)


class PostgresGameService(GameService):

    def __init__(self) -> None:
        super().__init__()
        self._listener_conn: Optional[asyncpg.Connection] = None

    async def get_or_create_player(self, username: str) -> Optional[Dict[str, Any]]:
        return await database.get_or_create_player(username)

    async def save_game_data(self, player_id: int, coins: float, facilities: List[Dict[str, Any]],
                             lifetime_coins: Optional[float] = None) -> bool:
        return await database.save_game_data(
            player_id,
            int(coins),
            build_facilities_snapshot(facilities),
            build_upgrades_snapshot(facilities),
            int(lifetime_coins) if lifetime_coins is not None else None,
        )

    async def get_leaderboard(self, limit: int = Config.LEADERBOARD_LIMIT) -> List[Dict[str, Any]]:
        return await database.get_leaderboard(limit)

    async def get_player_rank(self, player_id: int) -> int:
        return await database.get_player_rank(player_id)

    async def execute_prestige(self, player_id: int, current_coins: float,
                               lifetime_coins: Optional[float] = None) -> Dict[str, Any]:
        return await database.execute_prestige(
            player_id, int(current_coins), int(lifetime_coins) if lifetime_coins is not None else None
        )

    async def buy_prestige_item(self, player_id: int, item_type: str) -> bool:
        return await database.buy_prestige_item(player_id, item_type)

    def _on_pg_notification(self, connection: asyncpg.Connection, pid: int, channel: str, payload: str) -> None:
        player_id = int(payload) if payload and payload.isdigit() else None
        self._notify_subscribers(player_id)

    async def subscribe(self, callback: PlayerChangeCallback) -> None:
        await super().subscribe(callback)
        if self._listener_conn is not None and not self._listener_conn.is_closed():
            return
        try:
            self._listener_conn = await database.get_connection()
            await self._listener_conn.add_listener(Config.PLAYER_CHANGES_CHANNEL, self._on_pg_notification)
            logger.info(f"PostgresGameService: listening on channel '{Config.PLAYER_CHANGES_CHANNEL}'.")
        except Exception as e:
            # Без push-канала рейтинг обновляется по расписанию
            logger.warning(f"PostgresGameService: push channel unavailable, falling back to polling: {e}")
            self._listener_conn = None

    async def close(self) -> None:
        await super().close()
        if self._listener_conn is not None and not self._listener_conn.is_closed():
            try:
                await self._listener_conn.remove_listener(Config.PLAYER_CHANGES_CHANNEL, self._on_pg_notification)
            finally:
                await self._listener_conn.close()
        self._listener_conn = None


class MemoryGameService(GameService):
    """Хранилище в памяти. delay имитирует задержку сети (секунды)."""

    def __init__(self, delay: float = 0.0) -> None:
        super().__init__()
        self.delay = delay
        self._players: Dict[int, Dict[str, Any]] = {}
        self._next_id = 1
        self._write_lock = asyncio.Lock()

    async def _simulate_latency(self) -> None:
        if self.delay > 0:
            await asyncio.sleep(self.delay)

    def _find_by_username(self, username: str) -> Optional[Dict[str, Any]]:
        for player in self._players.values():
            if player["username"] == username:
                return player
        return None

    def _touch(self, player: Dict[str, Any]) -> None:
        player["updated_at"] = datetime.now(dt_timezone.utc)

    async def get_or_create_player(self, username: str) -> Optional[Dict[str, Any]]:
        await self._simulate_latency()
        async with self._write_lock:
            player = self._find_by_username(username)
            if player is None:
                now_utc = datetime.now(dt_timezone.utc)
                player = {
                    "id": self._next_id,
                    "username": username,
                    "coins": 0,
                    "facilities": {},
                    "upgrades": {},
                    "lifetime_coins": 0,
                    "prestige_points": 0,
                    "awarded_prestige_points": 0,
                    "click_power_items": 0,
                    "production_boost_items": 0,
                    "price_reduction_items": 0,
                    "created_at": now_utc,
                    "updated_at": now_utc,
                }
                self._players[player["id"]] = player
                self._next_id += 1
                logger.info(f"MemoryGameService: created player '{username}' (id {player['id']}).")
                self._notify_subscribers(player["id"])
            return copy.deepcopy(player)

    async def save_game_data(self, player_id: int, coins: float, facilities: List[Dict[str, Any]],
                             lifetime_coins: Optional[float] = None) -> bool:
        await self._simulate_latency()
        async with self._write_lock:
            player = self._players.get(player_id)
            if player is None:
                logger.warning(f"MemoryGameService: save for unknown player {player_id}.")
                return False
            player["coins"] = int(coins)
            player["facilities"] = build_facilities_snapshot(facilities)
            player["upgrades"] = build_upgrades_snapshot(facilities)
            if lifetime_coins is not None:
                player["lifetime_coins"] = max(player["lifetime_coins"], int(lifetime_coins))
            self._touch(player)
        self._notify_subscribers(player_id)
        return True

    async def get_leaderboard(self, limit: int = Config.LEADERBOARD_LIMIT) -> List[Dict[str, Any]]:
        await self._simulate_latency()
        ordered = sorted(self._players.values(), key=lambda p: (-p["coins"], p["id"]))
        return [copy.deepcopy(p) for p in ordered[:limit]]

    async def get_player_rank(self, player_id: int) -> int:
        await self._simulate_latency()
        player = self._players.get(player_id)
        if player is None:
            return -1
        return sum(1 for p in self._players.values() if p["coins"] > player["coins"]) + 1

    async def execute_prestige(self, player_id: int, current_coins: float,
                               lifetime_coins: Optional[float] = None) -> Dict[str, Any]:
        await self._simulate_latency()
        async with self._write_lock:
            player = self._players.get(player_id)
            if player is None:
                return {"success": False, "points_awarded": 0}

            stored_lifetime = player["lifetime_coins"]
            reported_lifetime = int(lifetime_coins) if lifetime_coins is not None else stored_lifetime + int(current_coins)
            new_lifetime = max(stored_lifetime, reported_lifetime)
            if not can_prestige(new_lifetime):
                return {"success": False, "points_awarded": 0}

            new_total_awarded = calculate_prestige_points(new_lifetime)
            points_awarded = max(0, new_total_awarded - player["awarded_prestige_points"])
            if points_awarded <= 0:
                return {"success": False, "points_awarded": 0}

            player["coins"] = 0
            player["facilities"] = {}
            player["upgrades"] = {}
            player["lifetime_coins"] = new_lifetime
            player["prestige_points"] += points_awarded
            player["awarded_prestige_points"] = max(player["awarded_prestige_points"], new_total_awarded)
            self._touch(player)
        logger.info(f"MemoryGameService: prestige for player {player_id}, awarded {points_awarded}.")
        self._notify_subscribers(player_id)
        return {"success": True, "points_awarded": points_awarded}

    async def buy_prestige_item(self, player_id: int, item_type: str) -> bool:
        await self._simulate_latency()
        item = PRESTIGE_ITEMS.get(item_type)
        if not item:
            return False
        async with self._write_lock:
            player = self._players.get(player_id)
            if player is None or player["prestige_points"] < item["cost"]:
                return False
            player["prestige_points"] -= item["cost"]
            player[item["items_field"]] += 1
            self._touch(player)
        self._notify_subscribers(player_id)
        return True


def create_game_service(backend: Optional[str] = None) -> GameService:
    backend = (backend or Config.GAME_BACKEND or "memory").lower()
    if backend == "postgres":
        if not Config.DATABASE_URL:
            raise ValueError("GAME_BACKEND=postgres requires DATABASE_URL.")
        return PostgresGameService()
    if backend == "memory":
        return MemoryGameService()
    raise ValueError(f"Unknown game backend: {backend!r}")
