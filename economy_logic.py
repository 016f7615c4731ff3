# economy_logic.py
import math
import logging
from enum import Enum
from typing import Optional, List, Dict, Any

from config import Config
from facility_data import GAME_STAGES

logger = logging.getLogger(__name__)


class UnlockState(str, Enum):
    """Видимость объекта в магазине."""
    UNLOCKED = "unlocked"      # Можно покупать
    NEXT = "next"              # Виден, но купить пока нельзя (следующий за фронтиром)
    SILHOUETTE = "silhouette"  # Скрыт


def clamp_price_discount(price_discount: float) -> float:
    """Приводит скидку к диапазону [0, Config.PRICE_DISCOUNT_CAP]."""
    if price_discount <= 0:
        return 0.0
    return min(price_discount, Config.PRICE_DISCOUNT_CAP)


def get_facility_price(facility: Dict[str, Any], price_discount: float = 0.0) -> int:
    """
    Текущая цена следующего экземпляра объекта.
    floor(base_price * 1.15^owned * (1 - скидка)), скидка ограничена PRICE_DISCOUNT_CAP.
    Баланс игрока здесь не проверяется.
    """
    discount = clamp_price_discount(price_discount)
    raw_price = facility["base_price"] * math.pow(Config.PRICE_GROWTH_FACTOR, facility.get("owned", 0))
    return max(0, math.floor(raw_price * (1 - discount)))


def get_upgrade_factor(facility: Dict[str, Any]) -> int:
    # Уровень 0 = x1, уровень 1 = x2, уровень 2 = x3
    return (facility.get("upgrade_level") or 0) + 1


def get_facility_cps(facility: Dict[str, Any], production_multiplier: float = 1.0) -> float:
    """Производство объекта в секунду с учётом улучшений и престижа."""
    owned = facility.get("owned", 0)
    if owned <= 0:
        return 0.0
    return facility.get("base_cps", 0) * owned * get_upgrade_factor(facility) * production_multiplier


def get_total_cps(facilities: List[Dict[str, Any]], production_multiplier: float = 1.0) -> float:
    return sum(get_facility_cps(facility, production_multiplier) for facility in facilities)


def get_click_value(facilities: List[Dict[str, Any]]) -> float:
    """Награда за клик: базовая 1 монета + бонусы усилителей клика."""
    bonus_click_value = 0
    for facility in facilities:
        if facility.get("click_value"):
            bonus_click_value += facility["click_value"] * facility.get("owned", 0)
    return Config.BASE_CLICK_VALUE + bonus_click_value


def can_upgrade_facility(facility: Dict[str, Any]) -> bool:
    return facility.get("owned", 0) > 0 and (facility.get("upgrade_level") or 0) < Config.FACILITY_MAX_UPGRADE_LEVEL


def get_upgrade_price(facility: Dict[str, Any]) -> int:
    """Цена следующего уровня улучшения; -1, если достигнут максимум."""
    level = facility.get("upgrade_level") or 0
    if level >= Config.FACILITY_MAX_UPGRADE_LEVEL:
        return -1
    return facility["base_price"] * Config.FACILITY_UPGRADE_PRICE_MULTIPLIER * (level + 1)


def find_facility(facilities: List[Dict[str, Any]], facility_id: Optional[str]) -> Optional[Dict[str, Any]]:
    if not facility_id:
        return None
    for facility in facilities:
        if facility["id"] == facility_id:
            return facility
    return None


def _is_requirement_owned(facility: Dict[str, Any], facilities: List[Dict[str, Any]]) -> bool:
    required = find_facility(facilities, facility.get("unlock_requirement"))
    return required is not None and required.get("owned", 0) > 0


def get_facility_display_state(facility: Dict[str, Any], facilities: List[Dict[str, Any]]) -> UnlockState:
    """
    Таблица состояний:
      нет требования                                        -> UNLOCKED
      требуемый объект куплен (owned > 0)                   -> UNLOCKED
      требуемый объект не куплен, но сам открыт покупкой
      своего предшественника                                -> NEXT
      иначе (в т.ч. неизвестный ключ требования)            -> SILHOUETTE
    """
    requirement_id = facility.get("unlock_requirement")
    if not requirement_id:
        return UnlockState.UNLOCKED

    required = find_facility(facilities, requirement_id)
    if required is None:
        logger.warning(f"Facility '{facility.get('id')}' requires unknown facility '{requirement_id}'.")
        return UnlockState.SILHOUETTE

    if required.get("owned", 0) > 0:
        return UnlockState.UNLOCKED

    # Предшественник открыт именно покупкой (а не потому, что открыт всегда)
    if required.get("unlock_requirement") and _is_requirement_owned(required, facilities):
        return UnlockState.NEXT

    return UnlockState.SILHOUETTE


def is_facility_unlocked(facility: Dict[str, Any], facilities: List[Dict[str, Any]]) -> bool:
    return get_facility_display_state(facility, facilities) == UnlockState.UNLOCKED


def get_unlock_requirement_text(facility: Dict[str, Any], facilities: List[Dict[str, Any]]) -> str:
    if not facility.get("unlock_requirement"):
        return ""
    required = find_facility(facilities, facility["unlock_requirement"])
    if required is None:
        return "Условие открытия неизвестно"
    return f"Откроется после покупки: {required['name']}"


def get_game_stage(coins: float) -> Dict[str, Any]:
    current_stage = GAME_STAGES[0]
    for stage in GAME_STAGES:
        if coins >= stage["coin_threshold"]:
            current_stage = stage
    return current_stage
