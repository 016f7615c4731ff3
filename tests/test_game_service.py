import pytest

from facility_data import build_initial_facilities
from game_service import (
    MemoryGameService, PostgresGameService, create_game_service,
    build_facilities_snapshot, build_upgrades_snapshot,
)


def _facilities(**owned):
    facilities = build_initial_facilities()
    for facility in facilities:
        facility["owned"] = owned.get(facility["id"], 0)
    return facilities


def test_snapshots_are_sparse():
    facilities = _facilities(coin_maker=3, gold_mine=1)
    facilities[1]["upgrade_level"] = 2
    assert build_facilities_snapshot(facilities) == {"coin_maker": 3, "gold_mine": 1}
    assert build_upgrades_snapshot(facilities) == {"coin_maker": 2}


def test_create_game_service_backends(monkeypatch):
    assert isinstance(create_game_service("memory"), MemoryGameService)
    with pytest.raises(ValueError):
        create_game_service("redis")
    monkeypatch.setattr("config.Config.DATABASE_URL", None)
    with pytest.raises(ValueError):
        create_game_service("postgres")
    monkeypatch.setattr("config.Config.DATABASE_URL", "postgresql://localhost/test")
    assert isinstance(create_game_service("POSTGRES"), PostgresGameService)


@pytest.mark.asyncio
async def test_get_or_create_player_is_idempotent(memory_service):
    first = await memory_service.get_or_create_player("alice")
    again = await memory_service.get_or_create_player("alice")
    other = await memory_service.get_or_create_player("bob")
    assert first["id"] == again["id"] == 1
    assert other["id"] == 2
    assert first["coins"] == 0 and first["facilities"] == {}


@pytest.mark.asyncio
async def test_returned_records_are_copies(memory_service):
    player = await memory_service.get_or_create_player("alice")
    player["coins"] = 10 ** 6
    stored = await memory_service.get_or_create_player("alice")
    assert stored["coins"] == 0


@pytest.mark.asyncio
async def test_save_game_data(memory_service):
    player = await memory_service.get_or_create_player("alice")
    assert await memory_service.save_game_data(player["id"], 42.7, _facilities(coin_maker=2), 100)
    stored = await memory_service.get_or_create_player("alice")
    assert stored["coins"] == 42
    assert stored["facilities"] == {"coin_maker": 2}
    assert stored["lifetime_coins"] == 100

    # lifetime не уменьшается
    assert await memory_service.save_game_data(player["id"], 1, _facilities(), 50)
    stored = await memory_service.get_or_create_player("alice")
    assert stored["lifetime_coins"] == 100
    assert stored["facilities"] == {}


@pytest.mark.asyncio
async def test_save_unknown_player(memory_service):
    assert await memory_service.save_game_data(999, 1, _facilities()) is False


@pytest.mark.asyncio
async def test_leaderboard_and_rank(memory_service):
    balances = {"alice": 50, "bob": 300, "carol": 300, "dave": 10}
    ids = {}
    for name, coins in balances.items():
        player = await memory_service.get_or_create_player(name)
        ids[name] = player["id"]
        await memory_service.save_game_data(player["id"], coins, _facilities())

    top = await memory_service.get_leaderboard(3)
    assert [p["username"] for p in top] == ["bob", "carol", "alice"]
    assert await memory_service.get_player_rank(ids["bob"]) == 1
    assert await memory_service.get_player_rank(ids["carol"]) == 1
    assert await memory_service.get_player_rank(ids["alice"]) == 3
    assert await memory_service.get_player_rank(ids["dave"]) == 4
    assert await memory_service.get_player_rank(12345) == -1


@pytest.mark.asyncio
async def test_execute_prestige_awards_and_resets(memory_service):
    player = await memory_service.get_or_create_player("alice")
    await memory_service.save_game_data(player["id"], 500, _facilities(coin_maker=4), 500)

    result = await memory_service.execute_prestige(player["id"], 500, 500)
    assert result == {"success": True, "points_awarded": 5}
    stored = await memory_service.get_or_create_player("alice")
    assert stored["coins"] == 0
    assert stored["facilities"] == {}
    assert stored["prestige_points"] == 5
    assert stored["awarded_prestige_points"] == 5


@pytest.mark.asyncio
async def test_execute_prestige_does_not_award_twice(memory_service):
    player = await memory_service.get_or_create_player("alice")
    assert (await memory_service.execute_prestige(player["id"], 600, 600))["points_awarded"] == 6
    await memory_service.save_game_data(player["id"], 40, _facilities(coin_maker=2), 600)
    # lifetime тот же: новых очков нет, прогресс не сбрасывается
    again = await memory_service.execute_prestige(player["id"], 40, 600)
    assert again == {"success": False, "points_awarded": 0}
    stored = await memory_service.get_or_create_player("alice")
    assert stored["coins"] == 40
    assert stored["facilities"] == {"coin_maker": 2}
    # заработано ещё 250 монет
    later = await memory_service.execute_prestige(player["id"], 250, 850)
    assert later["points_awarded"] == 2
    stored = await memory_service.get_or_create_player("alice")
    assert stored["prestige_points"] == 8


@pytest.mark.asyncio
async def test_execute_prestige_refused_below_threshold(memory_service):
    player = await memory_service.get_or_create_player("alice")
    result = await memory_service.execute_prestige(player["id"], 499, 499)
    assert result["success"] is False
    assert (await memory_service.execute_prestige(777, 1000, 1000))["success"] is False


@pytest.mark.asyncio
async def test_buy_prestige_item(memory_service):
    player = await memory_service.get_or_create_player("alice")
    await memory_service.execute_prestige(player["id"], 300, 500)

    assert await memory_service.buy_prestige_item(player["id"], "price_reduction")
    assert await memory_service.buy_prestige_item(player["id"], "production_boost")
    assert not await memory_service.buy_prestige_item(player["id"], "production_boost")
    assert not await memory_service.buy_prestige_item(player["id"], "unknown")
    stored = await memory_service.get_or_create_player("alice")
    assert stored["prestige_points"] == 0
    assert stored["price_reduction_items"] == 1
    assert stored["production_boost_items"] == 1


@pytest.mark.asyncio
async def test_subscribers_notified_on_writes(memory_service):
    changes = []
    await memory_service.subscribe(changes.append)
    player = await memory_service.get_or_create_player("alice")
    await memory_service.save_game_data(player["id"], 5, _facilities())
    await memory_service.unsubscribe(changes.append)
    await memory_service.save_game_data(player["id"], 6, _facilities())
    assert changes == [player["id"], player["id"]]


@pytest.mark.asyncio
async def test_failing_subscriber_does_not_break_writes(memory_service):
    received = []

    def broken(player_id):
        raise RuntimeError("boom")

    await memory_service.subscribe(broken)
    await memory_service.subscribe(received.append)
    player = await memory_service.get_or_create_player("alice")
    assert received == [player["id"]]
