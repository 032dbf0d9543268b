"""
HTTP API tests against an in-memory database.
"""

import random

import pytest
from fastapi.testclient import TestClient

from database import get_db
from core.engine import WageringEngine
from main import create_app
from conftest import seed_for


@pytest.fixture
def app_engine(settings, fake_clock):
    return WageringEngine(settings, rng=random.Random(seed_for(3)), now=fake_clock)


@pytest.fixture
def client(settings, session_factory, db_engine, app_engine):
    app = create_app(
        settings=settings,
        session_factory=session_factory,
        bind=db_engine,
        wagering_engine=app_engine,
    )

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def lock_blitz(app_engine, session_factory, fake_clock):
    def _lock():
        fake_clock.advance(25)
        session = session_factory()
        try:
            app_engine.clock.lock_due(session)
        finally:
            session.close()
    return _lock


def deposit(client, user_id, amount, key="dep-1"):
    return client.post(
        f"/api/users/{user_id}/wallet/deposit",
        json={"amount": str(amount), "idempotency_key": key},
    )


def bet(client, user_id, bet_type, bet_value, amount, period=100, mode="blitz", **extra):
    payload = {"user_id": user_id, "bet_type": bet_type, "bet_value": bet_value, "amount": str(amount)}
    payload.update(extra)
    return client.post(f"/api/modes/{mode}/rounds/{period}/bets", json=payload)


class TestModesAndRounds:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["scheduler"] == "stopped"

    def test_list_modes(self, client):
        response = client.get("/api/modes")
        assert response.status_code == 200
        assert [m["id"] for m in response.json()] == ["blitz", "quick"]

    def test_current_round(self, client):
        response = client.get("/api/modes/blitz/rounds/current")
        assert response.status_code == 200
        data = response.json()
        assert data["period_number"] == 100
        assert data["status"] == "OPEN"
        assert data["seconds_until_lock"] == 25
        assert data["accepting_bets"] is True

    def test_unknown_mode(self, client):
        assert client.get("/api/modes/nope/rounds/current").status_code == 404
        assert client.get("/api/modes/nope/rounds/history").status_code == 404

    def test_missing_round(self, client):
        assert client.get("/api/modes/blitz/rounds/999").status_code == 404


class TestWallet:

    def test_deposit_is_idempotent(self, client):
        assert deposit(client, "u1", 100).json()["balance"] == "100.00"
        assert deposit(client, "u1", 100).json()["balance"] == "100.00"
        assert deposit(client, "u1", 50, key="dep-2").json()["balance"] == "150.00"

        response = client.get("/api/users/u1/wallet")
        assert response.json() == {"user_id": "u1", "balance": "150.00"}

    def test_deposit_must_be_positive(self, client):
        assert deposit(client, "u1", -5).status_code == 422

    def test_empty_wallet(self, client):
        assert client.get("/api/users/ghost/wallet").json()["balance"] == "0.00"


class TestBetting:

    def test_place_bet(self, client):
        deposit(client, "u1", 100)

        response = bet(client, "u1", "color", "red", 10)

        assert response.status_code == 200
        data = response.json()
        assert data["created"] is True
        assert data["balance"] == "90.00"
        assert data["bet"]["bet_value"] == "RED"
        assert data["bet"]["status"] == "PENDING"

    def test_idempotent_resend(self, client):
        deposit(client, "u1", 100)

        first = bet(client, "u1", "number", "7", 10, idempotency_key="req-1").json()
        second = bet(client, "u1", "number", "7", 10, idempotency_key="req-1").json()

        assert second["created"] is False
        assert second["bet"]["id"] == first["bet"]["id"]
        assert second["balance"] == "90.00"

    def test_retry_key_belongs_to_one_user(self, client):
        deposit(client, "alice", 100)
        deposit(client, "bob", 100)

        alice = bet(client, "alice", "color", "RED", 10, idempotency_key="k1").json()
        bob = bet(client, "bob", "number", "3", 50, idempotency_key="k1").json()

        assert bob["created"] is True
        assert bob["bet"]["user_id"] == "bob"
        assert bob["bet"]["id"] != alice["bet"]["id"]
        assert bob["balance"] == "50.00"

        reused = bet(client, "alice", "color", "GREEN", 10, idempotency_key="k1")
        assert reused.status_code == 400

    def test_validation_errors(self, client):
        deposit(client, "u1", 100)

        assert bet(client, "u1", "color", "BLUE", 10).status_code == 400
        assert bet(client, "u1", "number", "12", 10).status_code == 400
        assert bet(client, "u1", "color", "RED", "0.001").status_code == 400
        assert bet(client, "u1", "color", "RED", 500).status_code == 400
        assert bet(client, "u1", "color", "RED", 10, mode="nope").status_code == 404

    def test_bet_after_lock_conflicts(self, client, lock_blitz):
        deposit(client, "u1", 100)
        lock_blitz()

        response = bet(client, "u1", "color", "RED", 10)
        assert response.status_code == 409
        assert client.get("/api/users/u1/wallet").json()["balance"] == "100.00"


class TestAdmin:

    def test_manual_result_requires_lock(self, client, lock_blitz):
        url = "/api/admin/modes/blitz/rounds/100/manual-result"
        assert client.post(url, json={"number": 5}).status_code == 409

        lock_blitz()
        response = client.post(url, json={"number": 5})
        assert response.status_code == 200
        assert response.json()["manual_result_color"] == "VIOLET"

        assert client.post(url, json={"number": 6}).status_code == 409
        assert client.post(url, json={"number": 11}).status_code == 422

    def test_settle_and_history(self, client, lock_blitz):
        deposit(client, "u1", 100)
        bet(client, "u1", "number", "3", 10)
        bet(client, "u1", "color", "RED", 10)

        settle_url = "/api/admin/modes/blitz/rounds/100/settle"
        assert client.post(settle_url).json()["settled"] is False

        lock_blitz()
        report = client.post(settle_url).json()
        assert report["settled"] is True
        assert report["result_number"] == 3
        assert report["result_color"] == "GREEN"
        assert report["total_paid"] == "90.00"
        assert report["house_net"] == "-70.00"

        again = client.post(settle_url).json()
        assert again["settled"] is False
        assert again["status"] == "CLOSED"

        assert client.get("/api/users/u1/wallet").json()["balance"] == "170.00"
        assert client.get("/api/modes/blitz/rounds/current").json()["period_number"] == 101

        history = client.get("/api/modes/blitz/rounds/history").json()
        assert [h["period_number"] for h in history] == [100]
        assert history[0]["bet_count"] == 2

        round_100 = client.get("/api/modes/blitz/rounds/100").json()
        assert round_100["status"] == "CLOSED"
        assert round_100["player_count"] == 1

        bets = client.get("/api/users/u1/bets").json()
        assert sorted(b["status"] for b in bets) == ["LOST", "WON"]

        types = sorted(tx["type"] for tx in client.get("/api/users/u1/wallet/transactions").json())
        assert types == ["BET", "BET", "DEPOSIT", "WIN"]

    def test_live_stats(self, client):
        deposit(client, "u1", 100)
        bet(client, "u1", "color", "GREEN", 10)

        data = client.get("/api/admin/modes/blitz/live-stats").json()
        assert data["period_number"] == 100
        assert data["total_bets"] == 1
        assert data["color_bets"]["GREEN"]["amount"] == "10.00"

        assert client.get("/api/admin/modes/quick/live-stats").json()["total_bets"] == 0
        assert client.get("/api/admin/modes/nope/live-stats").status_code == 404

    def test_stuck_rounds(self, client, lock_blitz, fake_clock):
        lock_blitz()
        assert client.get("/api/admin/rounds/stuck").json() == []

        fake_clock.advance(60)
        stuck = client.get("/api/admin/rounds/stuck").json()
        assert [(r["mode_id"], r["period_number"]) for r in stuck] == [("blitz", 100)]
        assert stuck[0]["locked_seconds"] == 60
