import asyncio
import random
from datetime import datetime, timezone

import pytest

from core import games
from models import DailyLimit


class AlwaysJackpot(random.Random):
    def random(self):
        return 0.0


@pytest.fixture
def jackpot(monkeypatch):
    monkeypatch.setattr("core.games._system_rng", AlwaysJackpot())


@pytest.mark.asyncio
async def test_wheel_without_coins(client, auth_headers):
    res = await client.post("/games/wheel", headers=auth_headers)

    assert res.status_code == 200
    body = res.json()
    assert body["success"] is False
    assert body["result"] == "insufficient_balance"


@pytest.mark.asyncio
async def test_wheel_settles_cost_and_winnings(client, auth_headers, jackpot):
    await client.post("/coin/earn", json={"amount": 10}, headers=auth_headers)

    res = await client.post("/games/wheel", headers=auth_headers)

    body = res.json()
    assert body["success"] is True
    assert body["result"] == "jackpot"
    assert body["coinsSpent"] == 5
    assert body["coinsWon"] == 100
    assert body["newBalance"] == 10 - 5 + 100
    assert body["remainingPlays"] == 9

    txs = (await client.get("/coin/transactions", headers=auth_headers)).json()["transactions"]
    assert [(t["type"], t["amount"], t["ref"]) for t in txs[:2]] == [
        ("earn", 100, f"wheel_win_{body['gameId']}"),
        ("spend", 5, f"wheel_cost_{body['gameId']}"),
    ]


@pytest.mark.asyncio
async def test_dice_requires_prediction(client, auth_headers):
    res = await client.post("/games/dice", json={"prediction": "middle"}, headers=auth_headers)

    assert res.status_code == 400


@pytest.mark.asyncio
async def test_dice_plays(client, auth_headers):
    await client.post("/coin/earn", json={"amount": 10}, headers=auth_headers)

    res = await client.post("/games/dice", json={"prediction": "low"}, headers=auth_headers)

    body = res.json()
    assert body["success"] is True
    assert body["coinsWon"] in (0, 50)
    assert body["newBalance"] == 10 - 2 + body["coinsWon"]


@pytest.mark.asyncio
async def test_scratch_daily_limit(client, auth_headers):
    await client.post("/coin/earn", json={"amount": 100}, headers=auth_headers)
    cap = games.GAME_CONFIGS[games.SCRATCH].daily_plays

    for _ in range(cap):
        res = await client.post("/games/scratch", headers=auth_headers)
        assert res.json()["success"] is True

    blocked = await client.post("/games/scratch", headers=auth_headers)
    assert blocked.status_code == 200
    assert blocked.json()["result"] == "daily_limit_reached"

    stats = (await client.get("/games/stats", headers=auth_headers)).json()
    assert stats["scratch"]["playsToday"] == cap
    assert stats["scratch"]["remainingPlays"] == 0

    history = (await client.get("/games/history?limit=100", headers=auth_headers)).json()["history"]
    assert len(history) == cap


@pytest.mark.asyncio
async def test_daily_bonus_credits_once(client, auth_headers):
    first = (await client.post("/games/daily-bonus", headers=auth_headers)).json()
    second = (await client.post("/games/daily-bonus", headers=auth_headers)).json()

    assert first["success"] is True
    assert 10 <= first["coinsWon"] <= 59
    assert first["newBalance"] == first["coinsWon"]
    assert second["success"] is False
    assert second["result"] == "already_claimed"

    balance = (await client.get("/coin/balance", headers=auth_headers)).json()["balance"]
    assert balance == first["coinsWon"]


@pytest.mark.asyncio
async def test_leaderboard_and_info_are_public(client, auth_headers, wallet):
    await client.post("/games/daily-bonus", headers=auth_headers)

    board = await client.get("/games/leaderboard")
    bonus_board = await client.get("/games/leaderboard?gameType=daily_bonus")
    bad = await client.get("/games/leaderboard?gameType=lottery")
    info = await client.get("/games/info")

    assert board.json()["leaderboard"][0]["address"] == wallet.address.lower()
    assert len(bonus_board.json()["leaderboard"]) == 1
    assert bad.status_code == 400
    assert set(info.json()["games"]) == {"wheel", "dice", "scratch", "dailyBonus"}


@pytest.mark.asyncio
async def test_games_require_session(client):
    res = await client.post("/games/wheel")

    assert res.status_code == 401


@pytest.mark.asyncio
async def test_overlapping_plays_are_each_paid_for(client, auth_headers):
    await client.post("/coin/earn", json={"amount": 1}, headers=auth_headers)

    responses = await asyncio.gather(
        *(client.post("/games/scratch", headers=auth_headers) for _ in range(3))
    )

    assert [r.status_code for r in responses] == [200, 200, 200]
    bodies = [r.json() for r in responses]
    played = [b for b in bodies if b["success"]]
    refused = [b["result"] for b in bodies if not b["success"]]
    assert len(played) == 1
    assert refused == ["insufficient_balance", "insufficient_balance"]

    history = (await client.get("/games/history", headers=auth_headers)).json()["history"]
    balance = (await client.get("/coin/balance", headers=auth_headers)).json()["balance"]
    txs = (await client.get("/coin/transactions", headers=auth_headers)).json()["transactions"]
    assert [h["id"] for h in history] == [played[0]["gameId"]]
    assert balance == played[0]["coinsWon"]
    assert [t["type"] for t in txs].count("spend") == 1


@pytest.mark.asyncio
async def test_play_refused_after_charge_is_refunded(client, auth_headers, game_session, wallet, monkeypatch):
    await client.post("/coin/earn", json={"amount": 10}, headers=auth_headers)
    today = datetime.now(timezone.utc).date().isoformat()
    game_session.add(DailyLimit(address=wallet.address.lower(), game_type=games.WHEEL, date=today, plays=10))
    await game_session.commit()

    # the counter fills up between the route's limit check and the play
    async def stale_remaining(*_args, **_kwargs):
        return 1

    monkeypatch.setattr("core.games.remaining_plays", stale_remaining)

    res = await client.post("/games/wheel", headers=auth_headers)

    assert res.status_code == 200
    assert res.json()["result"] == "daily_limit_reached"
    balance = (await client.get("/coin/balance", headers=auth_headers)).json()["balance"]
    txs = (await client.get("/coin/transactions", headers=auth_headers)).json()["transactions"]
    assert balance == 10
    assert [(t["type"], t["amount"]) for t in txs[:2]] == [("earn", 5), ("spend", 5)]
    assert txs[0]["ref"].startswith("wheel_refund_")


@pytest.mark.asyncio
async def test_limit_reached_charges_nothing(client, auth_headers, game_session, wallet):
    await client.post("/coin/earn", json={"amount": 10}, headers=auth_headers)
    today = datetime.now(timezone.utc).date().isoformat()
    game_session.add(DailyLimit(address=wallet.address.lower(), game_type=games.WHEEL, date=today, plays=10))
    await game_session.commit()

    res = await client.post("/games/wheel", headers=auth_headers)

    assert res.json()["result"] == "daily_limit_reached"
    txs = (await client.get("/coin/transactions", headers=auth_headers)).json()["transactions"]
    assert [t["type"] for t in txs] == ["earn"]
