# database.py
import json
import logging
from datetime import datetime, timezone as dt_timezone
from typing import Optional, List, Dict, Any

import asyncpg

from config import Config
from facility_data import PRESTIGE_ITEMS
from prestige_logic import can_prestige, calculate_prestige_points

logger = logging.getLogger(__name__)


async def get_connection() -> asyncpg.Connection:
    if not Config.DATABASE_URL:
        logger.critical("DATABASE_URL environment variable not set.")
        raise ValueError("DATABASE_URL environment variable not set.")
    try:
        return await asyncpg.connect(Config.DATABASE_URL, statement_cache_size=0)
    except Exception as e:
        logger.critical(f"Failed to connect to database: {e}", exc_info=True)
        raise


async def _add_column_if_not_exists(conn: asyncpg.Connection, table_name: str, column_name: str, column_definition: str):
    """Вспомогательная функция для добавления колонки, если она не существует."""
    exists = await conn.fetchval(
        "SELECT EXISTS (SELECT 1 FROM information_schema.columns WHERE table_name = $1 AND column_name = $2)",
        table_name, column_name
    )
    if not exists:
        try:
            await conn.execute(f"ALTER TABLE {table_name} ADD COLUMN {column_name} {column_definition}")
            logger.info(f"Добавлена колонка '{column_name}' в таблицу '{table_name}'.")
        except Exception as e:
            logger.error(f"Не удалось добавить колонку '{column_name}' в таблицу '{table_name}': {e}")


async def init_db():
    conn = await get_connection()
    try:
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS players (
                id SERIAL PRIMARY KEY,
                username TEXT NOT NULL UNIQUE,
                coins BIGINT DEFAULT 0 NOT NULL,
                facilities JSONB DEFAULT '{}'::jsonb NOT NULL,
                created_at TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP NOT NULL,
                updated_at TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP NOT NULL
            )
        """)
        logger.info("Таблица 'players' проверена/создана.")

        # Колонки престижа добавлялись позже основной таблицы
        players_columns_to_add = [
            ("upgrades", "JSONB DEFAULT '{}'::jsonb NOT NULL"),
            ("lifetime_coins", "BIGINT DEFAULT 0 NOT NULL"),
            ("prestige_points", "INTEGER DEFAULT 0 NOT NULL"),
            ("awarded_prestige_points", "INTEGER DEFAULT 0 NOT NULL"),
            ("click_power_items", "INTEGER DEFAULT 0 NOT NULL"),
            ("production_boost_items", "INTEGER DEFAULT 0 NOT NULL"),
            ("price_reduction_items", "INTEGER DEFAULT 0 NOT NULL"),
        ]
        for col_name, col_def in players_columns_to_add:
            await _add_column_if_not_exists(conn, "players", col_name, col_def)
        logger.info("Колонки таблицы 'players' проверены/добавлены.")

        await conn.execute("CREATE INDEX IF NOT EXISTS idx_players_coins ON players (coins DESC)")

        # Уведомление слушателей рейтинга о любом изменении игрока
        await conn.execute(f"""
            CREATE OR REPLACE FUNCTION notify_player_change() RETURNS trigger AS $$
            BEGIN
                PERFORM pg_notify('{Config.PLAYER_CHANGES_CHANNEL}', NEW.id::text);
                RETURN NEW;
            END;
            $$ LANGUAGE plpgsql;
        """)
        await conn.execute("DROP TRIGGER IF EXISTS players_notify_change ON players")
        await conn.execute("""
            CREATE TRIGGER players_notify_change
            AFTER INSERT OR UPDATE ON players
            FOR EACH ROW EXECUTE FUNCTION notify_player_change()
        """)
        logger.info("Триггер уведомлений 'players_notify_change' проверен/создан.")
    finally:
        if conn and not conn.is_closed():
            await conn.close()


def _player_row_to_dict(row: asyncpg.Record) -> Dict[str, Any]:
    data = dict(row)
    # asyncpg без кодека отдаёт JSONB строкой
    for json_field in ("facilities", "upgrades"):
        value = data.get(json_field)
        if isinstance(value, str):
            data[json_field] = json.loads(value) if value else {}
        elif value is None:
            data[json_field] = {}
    for ts_field in ("created_at", "updated_at"):
        ts = data.get(ts_field)
        if isinstance(ts, datetime):
            data[ts_field] = ts.replace(tzinfo=dt_timezone.utc) if ts.tzinfo is None else ts.astimezone(dt_timezone.utc)
    return data


async def get_or_create_player(username: str, conn_ext: Optional[asyncpg.Connection] = None) -> Optional[Dict[str, Any]]:
    conn = conn_ext if conn_ext else await get_connection()
    try:
        await conn.execute(
            "INSERT INTO players (username) VALUES ($1) ON CONFLICT (username) DO NOTHING",
            username
        )
        row = await conn.fetchrow("SELECT * FROM players WHERE username = $1", username)
        return _player_row_to_dict(row) if row else None
    except Exception as e:
        logger.error(f"DB: Error in get_or_create_player for '{username}': {e}", exc_info=True)
        return None
    finally:
        if not conn_ext and conn and not conn.is_closed():
            await conn.close()


async def save_game_data(
    player_id: int,
    coins: int,
    facilities_data: Dict[str, int],
    upgrades_data: Optional[Dict[str, int]] = None,
    lifetime_coins: Optional[int] = None,
    conn_ext: Optional[asyncpg.Connection] = None
) -> bool:
    """
    Сохраняет баланс и разреженную карту объектов (только owned > 0).
    lifetime_coins никогда не уменьшается (GREATEST).
    """
    conn = conn_ext if conn_ext else await get_connection()
    try:
        result = await conn.execute(
            """
            UPDATE players
            SET coins = $2,
                facilities = $3::jsonb,
                upgrades = $4::jsonb,
                lifetime_coins = GREATEST(lifetime_coins, COALESCE($5, lifetime_coins)),
                updated_at = $6
            WHERE id = $1
            """,
            player_id, coins, json.dumps(facilities_data), json.dumps(upgrades_data or {}),
            lifetime_coins, datetime.now(dt_timezone.utc)
        )
        return result == "UPDATE 1"
    except Exception as e:
        logger.error(f"DB: Error saving game data for player {player_id}: {e}", exc_info=True)
        return False
    finally:
        if not conn_ext and conn and not conn.is_closed():
            await conn.close()


async def get_leaderboard(limit: int = 10, conn_ext: Optional[asyncpg.Connection] = None) -> List[Dict[str, Any]]:
    conn = conn_ext if conn_ext else await get_connection()
    try:
        rows = await conn.fetch(
            "SELECT * FROM players ORDER BY coins DESC, id ASC LIMIT $1",
            limit
        )
        return [_player_row_to_dict(r) for r in rows]
    except Exception as e:
        logger.error(f"DB: Error fetching leaderboard: {e}", exc_info=True)
        return []
    finally:
        if not conn_ext and conn and not conn.is_closed():
            await conn.close()


async def get_player_rank(player_id: int, conn_ext: Optional[asyncpg.Connection] = None) -> int:
    conn = conn_ext if conn_ext else await get_connection()
    try:
        player_coins = await conn.fetchval("SELECT coins FROM players WHERE id = $1", player_id)
        if player_coins is None:
            return -1
        richer_count = await conn.fetchval("SELECT COUNT(*) FROM players WHERE coins > $1", player_coins)
        return (richer_count or 0) + 1
    except Exception as e:
        logger.error(f"DB: Error getting rank for player {player_id}: {e}", exc_info=True)
        return -1
    finally:
        if not conn_ext and conn and not conn.is_closed():
            await conn.close()


async def execute_prestige(
    player_id: int,
    current_coins: int,
    lifetime_coins: Optional[int] = None,
    conn_ext: Optional[asyncpg.Connection] = None
) -> Dict[str, Any]:
    """
    Серверный пересчёт престижа по накопленным за всё время монетам.
    Начисляет floor(lifetime / 100) минус уже выданные очки и сбрасывает прогресс.
    """
    conn = conn_ext if conn_ext else await get_connection()
    try:
        async with conn.transaction():
            player = await conn.fetchrow(
                "SELECT lifetime_coins, prestige_points, awarded_prestige_points FROM players WHERE id = $1 FOR UPDATE",
                player_id
            )
            if not player:
                logger.warning(f"DB: execute_prestige - player {player_id} not found.")
                return {"success": False, "points_awarded": 0}

            stored_lifetime = player["lifetime_coins"] or 0
            reported_lifetime = lifetime_coins if lifetime_coins is not None else stored_lifetime + current_coins
            new_lifetime = max(stored_lifetime, reported_lifetime)
            if not can_prestige(new_lifetime):
                logger.info(f"DB: execute_prestige refused for player {player_id}: lifetime {new_lifetime} below threshold.")
                return {"success": False, "points_awarded": 0}

            new_total_awarded = calculate_prestige_points(new_lifetime)
            points_awarded = max(0, new_total_awarded - (player["awarded_prestige_points"] or 0))
            if points_awarded <= 0:
                logger.info(f"DB: execute_prestige refused for player {player_id}: no new points (lifetime {new_lifetime}).")
                return {"success": False, "points_awarded": 0}

            await conn.execute(
                """
                UPDATE players
                SET coins = 0,
                    facilities = '{}'::jsonb,
                    upgrades = '{}'::jsonb,
                    lifetime_coins = $2,
                    prestige_points = prestige_points + $3,
                    awarded_prestige_points = GREATEST(awarded_prestige_points, $4),
                    updated_at = $5
                WHERE id = $1
                """,
                player_id, new_lifetime, points_awarded, new_total_awarded, datetime.now(dt_timezone.utc)
            )
        logger.info(f"DB: Prestige executed for player {player_id}: lifetime {new_lifetime}, awarded {points_awarded}.")
        return {"success": True, "points_awarded": points_awarded}
    except Exception as e:
        logger.error(f"DB: Error executing prestige for player {player_id}: {e}", exc_info=True)
        return {"success": False, "points_awarded": 0}
    finally:
        if not conn_ext and conn and not conn.is_closed():
            await conn.close()


async def buy_prestige_item(player_id: int, item_type: str, conn_ext: Optional[asyncpg.Connection] = None) -> bool:
    item = PRESTIGE_ITEMS.get(item_type)
    if not item:
        logger.warning(f"DB: buy_prestige_item - unknown item '{item_type}' for player {player_id}.")
        return False

    conn = conn_ext if conn_ext else await get_connection()
    try:
        # items_field берётся только из PRESTIGE_ITEMS, не из пользовательского ввода
        result = await conn.execute(
            f"""
            UPDATE players
            SET prestige_points = prestige_points - $2,
                {item['items_field']} = {item['items_field']} + 1,
                updated_at = $3
            WHERE id = $1 AND prestige_points >= $2
            """,
            player_id, item["cost"], datetime.now(dt_timezone.utc)
        )
        return result == "UPDATE 1"
    except Exception as e:
        logger.error(f"DB: Error buying prestige item '{item_type}' for player {player_id}: {e}", exc_info=True)
        return False
    finally:
        if not conn_ext and conn and not conn.is_closed():
            await conn.close()
