import asyncio

import pytest

from economy_logic import UnlockState, find_facility
from game_service import MemoryGameService
from game_session import GameSession, SessionStatus


class FailingSaveService(MemoryGameService):

    async def save_game_data(self, player_id, coins, facilities, lifetime_coins=None):
        raise ConnectionError("storage is down")


class FailingPrestigeService(MemoryGameService):

    async def execute_prestige(self, player_id, current_coins, lifetime_coins=None):
        return {"success": False, "points_awarded": 0}


def _owned(session, facility_id):
    return find_facility(session.facilities, facility_id)["owned"]


@pytest.mark.asyncio
async def test_actions_require_login(memory_service):
    session = GameSession(memory_service, "ghost", tick_interval=3600)
    assert session.status == SessionStatus.UNAUTHENTICATED
    assert await session.click() == 0
    assert await session.tick() == 0
    assert not await session.purchase_facility("coin_maker")
    assert not await session.save()
    assert await session.execute_prestige() == -1
    assert session.coins == 0


@pytest.mark.asyncio
async def test_login_loads_stored_progress(memory_service):
    player = await memory_service.get_or_create_player("saved")
    facilities = GameSession(memory_service, "x").facilities
    find_facility(facilities, "coin_maker")["owned"] = 3
    find_facility(facilities, "coin_maker")["upgrade_level"] = 1
    await memory_service.save_game_data(player["id"], 77, facilities, 200)

    session = GameSession(memory_service, "saved", tick_interval=3600)
    assert await session.login()
    try:
        assert session.status == SessionStatus.ACTIVE
        assert session.coins == 77
        assert session.lifetime_coins == 200
        assert _owned(session, "coin_maker") == 3
        assert session.coins_per_second == pytest.approx(0.6)
        assert session.is_ticking
    finally:
        await session.close()


@pytest.mark.asyncio
async def test_purchase_refused_then_accepted(session):
    assert not await session.purchase_facility("coin_maker")
    assert session.coins == 0
    assert _owned(session, "coin_maker") == 0

    await session.add_coins(10)
    assert await session.purchase_facility("coin_maker")
    assert session.coins == 0
    assert _owned(session, "coin_maker") == 1
    assert session.is_ticking


@pytest.mark.asyncio
async def test_purchase_refused_for_locked_and_unknown(session):
    await session.add_coins(10 ** 6)
    assert not await session.purchase_facility("gold_mine")
    assert not await session.purchase_facility("no_such_facility")
    assert session.coins == 10 ** 6

    assert await session.purchase_facility("coin_maker")
    assert await session.purchase_facility("gold_mine")
    assert _owned(session, "gold_mine") == 1


@pytest.mark.asyncio
async def test_purchase_persists_in_background(session, memory_service):
    await session.add_coins(25)
    assert await session.purchase_facility("click_enhancer")
    await session._wait_for_background_saves()
    stored = await memory_service.get_or_create_player("tester")
    assert stored["facilities"] == {"click_enhancer": 1}
    assert stored["coins"] == 15


@pytest.mark.asyncio
async def test_five_ticks_accrue_exactly(session):
    find_facility(session.facilities, "gold_mine")["owned"] = 2
    assert session.coins_per_second == 2
    for _ in range(5):
        assert await session.tick() == 2
    assert session.coins == 10
    assert session.lifetime_coins == 10


@pytest.mark.asyncio
async def test_click_reward_with_enhancers_and_prestige(session):
    assert await session.click() == 1
    find_facility(session.facilities, "click_enhancer")["owned"] = 2
    assert await session.click() == 3
    session.prestige_state["click_power_items"] = 1
    assert await session.click() == 103
    assert session.coins == 107
    assert session.total_clicks == 3


@pytest.mark.asyncio
async def test_shop_rows_and_discounted_price(session):
    rows = {row["facility"]["id"]: row for row in session.get_shop_rows()}
    assert rows["coin_maker"]["state"] == UnlockState.UNLOCKED
    assert rows["gold_mine"]["state"] == UnlockState.SILHOUETTE
    assert rows["gold_mine"]["requirement_text"]

    session.prestige_state["price_reduction_items"] = 5
    assert session.get_facility_price("bank") == 50
    assert session.get_facility_price("nothing") == -1


@pytest.mark.asyncio
async def test_upgrade_facility(session):
    await session.add_coins(10 + 100)
    assert not await session.upgrade_facility("coin_maker")
    assert await session.purchase_facility("coin_maker")
    assert await session.upgrade_facility("coin_maker")
    assert session.coins == 0
    assert find_facility(session.facilities, "coin_maker")["upgrade_level"] == 1
    assert session.coins_per_second == pytest.approx(0.2)


@pytest.mark.asyncio
async def test_manual_save_and_notice(session, memory_service):
    await session.add_coins(33)
    assert await session.save()
    assert session.last_notice == "Прогресс сохранён!"
    stored = await memory_service.get_or_create_player("tester")
    assert stored["coins"] == 33


@pytest.mark.asyncio
async def test_overlapping_saves_rejected():
    service = MemoryGameService(delay=0.05)
    session = GameSession(service, "slow", tick_interval=3600)
    assert await session.login()
    try:
        first = asyncio.create_task(session.save())
        await asyncio.sleep(0)
        assert session.status == SessionStatus.SAVING
        assert await session.save() is False
        assert await first is True
        assert session.status == SessionStatus.ACTIVE
    finally:
        await session.close()


@pytest.mark.asyncio
async def test_save_failure_keeps_state_and_notifies():
    notices = []

    async def on_notice(text):
        notices.append(text)

    session = GameSession(FailingSaveService(), "unlucky", tick_interval=3600, on_notice=on_notice)
    assert await session.login()
    try:
        await session.add_coins(40)
        assert await session.save() is False
        assert session.coins == 40
        assert notices == ["Не удалось сохранить прогресс. Попробуйте позже."]

        # Покупка не откатывается, если фоновое сохранение упало
        assert await session.purchase_facility("coin_maker")
        await session._wait_for_background_saves()
        assert session.coins == 30
        assert _owned(session, "coin_maker") == 1
        assert len(notices) == 2
    finally:
        await session.close()


@pytest.mark.asyncio
async def test_prestige_round_trip(session, memory_service):
    await session.add_coins(500)
    assert session.pending_prestige_points == 5
    session.facilities[1]["owned"] = 4

    assert await session.execute_prestige() == 5
    assert session.coins == 0
    assert all(f["owned"] == 0 for f in session.facilities)
    assert session.prestige_state["prestige_points"] == 5
    assert session.pending_prestige_points == 0
    assert not session.is_ticking

    stored = await memory_service.get_or_create_player("tester")
    assert stored["prestige_points"] == 5
    assert stored["coins"] == 0


@pytest.mark.asyncio
async def test_prestige_refused_below_threshold(session):
    await session.add_coins(499)
    assert await session.execute_prestige() == -1
    assert session.coins == 499
    assert session.prestige_state["prestige_points"] == 0


@pytest.mark.asyncio
async def test_prestige_refused_by_storage_leaves_state():
    session = GameSession(FailingPrestigeService(), "blocked", tick_interval=3600)
    assert await session.login()
    try:
        await session.add_coins(1000)
        session.facilities[0]["owned"] = 2
        assert await session.execute_prestige() == -1
        assert session.coins == 1000
        assert session.facilities[0]["owned"] == 2
        assert session.prestige_state["prestige_points"] == 0
        assert session.last_notice == "Не удалось выполнить престиж. Попробуйте позже."
    finally:
        await session.close()


@pytest.mark.asyncio
async def test_buy_prestige_item_changes_effect(session):
    await session.add_coins(500)
    assert await session.execute_prestige() == 5

    assert not await session.buy_prestige_item("unknown")
    assert await session.buy_prestige_item("production_boost")
    assert session.prestige_state["prestige_points"] == 3
    assert session.prestige_effect["production_multiplier"] == 2
    assert await session.buy_prestige_item("price_reduction")
    assert not await session.buy_prestige_item("click_power")


@pytest.mark.asyncio
async def test_ticker_accrues_and_stops_after_close():
    service = MemoryGameService()
    session = GameSession(service, "ticker", tick_interval=0.01)
    assert await session.login()
    find_facility(session.facilities, "gold_mine")["owned"] = 1
    session._refresh_ticker()
    assert session.is_ticking

    await asyncio.sleep(0.1)
    assert session.coins > 0
    await session.close()
    assert session.status == SessionStatus.CLOSED
    assert not session.is_ticking

    coins_after_close = session.coins
    await asyncio.sleep(0.05)
    assert session.coins == coins_after_close
    assert await session.tick() == 0


@pytest.mark.asyncio
async def test_second_prestige_without_new_points_is_refused(session, memory_service):
    await session.add_coins(500)
    assert await session.execute_prestige() == 5

    await session.add_coins(60)
    session.facilities[1]["owned"] = 3
    assert session.pending_prestige_points == 0
    assert not session.can_prestige_now
    assert await session.execute_prestige() == -1
    assert session.coins == 60
    assert session.facilities[1]["owned"] == 3
    assert session.prestige_state["prestige_points"] == 5

    # Ещё 40 монет: lifetime 600, доступно одно новое очко
    await session.add_coins(40)
    assert session.can_prestige_now
    assert await session.execute_prestige() == 1
    stored = await memory_service.get_or_create_player("tester")
    assert stored["prestige_points"] == 6


@pytest.mark.asyncio
async def test_concurrent_prestige_is_rejected():
    service = MemoryGameService(delay=0.05)
    session = GameSession(service, "racer", tick_interval=3600)
    assert await session.login()
    try:
        await session.add_coins(700)
        first = asyncio.create_task(session.execute_prestige())
        await asyncio.sleep(0)
        assert session.status == SessionStatus.PRESTIGING
        assert session.is_prestiging
        assert await session.execute_prestige() == -1
        assert await first == 7
        assert session.prestige_state["prestige_points"] == 7
        stored = await service.get_or_create_player("racer")
        assert stored["prestige_points"] == 7
    finally:
        await session.close()


@pytest.mark.asyncio
async def test_purchase_save_dropped_while_save_in_flight():
    service = MemoryGameService(delay=0.05)
    session = GameSession(service, "busy", tick_interval=3600)
    assert await session.login()
    try:
        await session.add_coins(20)
        manual_save = asyncio.create_task(session.save())
        await asyncio.sleep(0)
        assert session.status == SessionStatus.SAVING

        # Покупка проходит, но её фоновое сохранение отбрасывается
        assert await session.purchase_facility("coin_maker")
        assert not session._background_tasks
        assert session._schedule_save(session._snapshot()) is False
        assert await manual_save is True

        stored = await service.get_or_create_player("busy")
        assert stored["coins"] == 20
        assert stored["facilities"] == {}
        assert session.coins == 10
        assert _owned(session, "coin_maker") == 1
    finally:
        await session.close()


@pytest.mark.asyncio
async def test_purchase_of_next_facility_is_refused(session):
    await session.add_coins(10 ** 6)
    assert await session.purchase_facility("coin_maker")
    bank = find_facility(session.facilities, "bank")
    rows = {row["facility"]["id"]: row for row in session.get_shop_rows()}
    assert rows["bank"]["state"] == UnlockState.NEXT

    coins_before = session.coins
    assert not await session.purchase_facility("bank")
    assert bank["owned"] == 0
    assert session.coins == coins_before


@pytest.mark.asyncio
async def test_save_stores_whole_coins_and_keeps_fraction_locally(session, memory_service):
    await session.add_coins(12.9)
    assert await session.save()
    stored = await memory_service.get_or_create_player("tester")
    assert stored["coins"] == 12
    assert stored["lifetime_coins"] == 12
    assert session.coins == pytest.approx(12.9)
