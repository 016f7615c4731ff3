# prestige_logic.py
from typing import Optional, Dict, Any

from config import Config
from facility_data import PRESTIGE_ITEMS

PRESTIGE_STATE_FIELDS = ("prestige_points", "click_power_items", "production_boost_items", "price_reduction_items")


def empty_prestige_state() -> Dict[str, int]:
    return {field: 0 for field in PRESTIGE_STATE_FIELDS}


def prestige_state_from_record(player_record: Optional[Dict[str, Any]]) -> Dict[str, int]:
    """Вытаскивает счётчики престижа из записи игрока (NULL -> 0)."""
    state = empty_prestige_state()
    if not player_record:
        return state
    for field in PRESTIGE_STATE_FIELDS:
        state[field] = int(player_record.get(field) or 0)
    return state


def can_prestige(lifetime_coins: float) -> bool:
    return lifetime_coins >= Config.PRESTIGE_MIN_LIFETIME_COINS


def calculate_prestige_points(lifetime_coins: float) -> int:
    """Полный выход очков престижа за всё заработанное: floor(lifetime / 100)."""
    if lifetime_coins <= 0:
        return 0
    return int(lifetime_coins // Config.PRESTIGE_POINT_DIVISOR)


def calculate_earned_points(lifetime_coins: float, awarded_points: int) -> int:
    """Сколько очков полагается сейчас с учётом уже выданных ранее."""
    return max(0, calculate_prestige_points(lifetime_coins) - (awarded_points or 0))


def calculate_prestige_effect(prestige_state: Dict[str, int]) -> Dict[str, float]:
    """
    Бонусы от купленных предметов престижа. Пересчитывается при каждом чтении и нигде не хранится.
    price_discount возвращается как есть, ограничение скидки делает economy_logic.
    """
    return {
        "click_bonus": prestige_state.get("click_power_items", 0) * Config.PRESTIGE_CLICK_BONUS_PER_ITEM,
        "production_multiplier": 1 + prestige_state.get("production_boost_items", 0) * Config.PRESTIGE_PRODUCTION_BONUS_PER_ITEM,
        "price_discount": prestige_state.get("price_reduction_items", 0) * Config.PRESTIGE_DISCOUNT_PER_ITEM,
    }


def get_prestige_item_cost(item_id: str) -> Optional[int]:
    item = PRESTIGE_ITEMS.get(item_id)
    return item["cost"] if item else None


def apply_prestige_item(prestige_state: Dict[str, int], item_id: str) -> Optional[Dict[str, int]]:
    """
    Возвращает новое состояние после покупки предмета или None,
    если предмет неизвестен либо не хватает очков. Исходный словарь не меняется.
    """
    item = PRESTIGE_ITEMS.get(item_id)
    if not item:
        return None
    if prestige_state.get("prestige_points", 0) < item["cost"]:
        return None
    new_state = dict(prestige_state)
    new_state["prestige_points"] -= item["cost"]
    new_state[item["items_field"]] = new_state.get(item["items_field"], 0) + 1
    return new_state


def get_next_prestige_lifetime(awarded_points: int) -> int:
    """Сколько монет за всё время нужно, чтобы следующий престиж дал хотя бы одно очко."""
    return max(Config.PRESTIGE_MIN_LIFETIME_COINS, ((awarded_points or 0) + 1) * Config.PRESTIGE_POINT_DIVISOR)
