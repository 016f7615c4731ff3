# facility_data.py
import copy
from typing import List, Dict, Any

# ==============================================================================
# --- Данные об ОБЪЕКТАХ (производство и усиление клика) ---
# ==============================================================================
# Порядок в списке = порядок в магазине. unlock_requirement: ключ объекта,
# который нужно купить хотя бы один раз, чтобы открыть этот.

FACILITY_DATA: List[Dict[str, Any]] = [
    {
        "id": "click_enhancer",
        "name": "Усилитель клика",
        "description": "Каждый клик приносит на 1 монету больше.",
        "icon": "🖱️",
        "base_price": 10,
        "base_cps": 0,
        "click_value": 1,
        # Открыт с самого начала
    },
    {
        "id": "coin_maker",
        "name": "Монетный автомат",
        "description": "Простейший станок для чеканки монет.",
        "icon": "🏭",
        "base_price": 10,
        "base_cps": 0.1,
        # Открыт с самого начала
    },
    {
        "id": "gold_mine",
        "name": "Золотой рудник",
        "description": "Добывает монеты из-под земли.",
        "icon": "⛏️",
        "base_price": 100,
        "base_cps": 1,
        "unlock_requirement": "coin_maker",
    },
    {
        "id": "bank",
        "name": "Банк",
        "description": "Хранит и приумножает монеты.",
        "icon": "🏦",
        "base_price": 1000,
        "base_cps": 8,
        "unlock_requirement": "gold_mine",
    },
    {
        "id": "mint",
        "name": "Монетный двор",
        "description": "Официальное производство монет.",
        "icon": "🏛️",
        "base_price": 12000,
        "base_cps": 47,
        "unlock_requirement": "bank",
    },
    {
        "id": "vault",
        "name": "Хранилище",
        "description": "Огромные запасы монет под надёжной охраной.",
        "icon": "🏰",
        "base_price": 130000,
        "base_cps": 260,
        "unlock_requirement": "mint",
    },
    {
        "id": "jewelry_store",
        "name": "Ювелирный салон",
        "description": "Продаёт драгоценности за горы монет.",
        "icon": "💎",
        "base_price": 1400000,
        "base_cps": 1400,
        "unlock_requirement": "vault",
    },
]

FACILITY_IDS = [facility["id"] for facility in FACILITY_DATA]


# ==============================================================================
# --- Магазин ПРЕСТИЖА ---
# ==============================================================================
# Ключ совпадает с item_type в хранилище; items_field - колонка счётчика предметов.
PRESTIGE_ITEMS: Dict[str, Dict[str, Any]] = {
    "click_power": {
        "name": "Сила клика",
        "description": "Награда за клик +100 монет.",
        "icon": "🖱️",
        "cost": 1,
        "items_field": "click_power_items",
    },
    "production_boost": {
        "name": "Ускорение производства",
        "description": "Производство всех объектов +100%.",
        "icon": "🏭",
        "cost": 2,
        "items_field": "production_boost_items",
    },
    "price_reduction": {
        "name": "Снижение цен",
        "description": "Цены на все объекты -50% (не более -95%).",
        "icon": "💰",
        "cost": 3,
        "items_field": "price_reduction_items",
    },
}


# ==============================================================================
# --- Стадии развития (по текущему балансу) ---
# ==============================================================================
GAME_STAGES: List[Dict[str, Any]] = [
    {"stage": 1, "name": "Начало", "coin_threshold": 0},
    {"stage": 2, "name": "Развитие", "coin_threshold": 100},
    {"stage": 3, "name": "Процветание", "coin_threshold": 1000},
    {"stage": 4, "name": "Империя", "coin_threshold": 10000},
]


def build_initial_facilities() -> List[Dict[str, Any]]:
    """Свежие копии объектов для новой сессии: owned = 0, upgrade_level = 0."""
    facilities = copy.deepcopy(FACILITY_DATA)
    for facility in facilities:
        facility["owned"] = 0
        facility["upgrade_level"] = 0
    return facilities
