"""
SettlementEngine tests: payouts, atomic rollback and idempotent retries.
"""

import random
from decimal import Decimal

import pytest

from models import Bet, BetStatus, Color, Round, RoundStatus, TransactionType, WalletTransaction
from core.engine import WageringEngine
from core.exceptions import BalanceStoreUnavailable, RoundNotFound, SettlementTimeoutError
from conftest import FakeMonotonic, FlakyBalanceStore, seed_for


def lock(wagering, db, fake_clock, seconds=25):
    fake_clock.advance(seconds)
    wagering.clock.lock_due(db)


class TestSingleWinner:

    def test_exact_number_pays_nine_times(self, make_engine, db, fund, fake_clock):
        wagering = make_engine(rng=random.Random(seed_for(7)))
        fund(wagering, "u1", 100)

        bet, _ = wagering.ledger.place_bet(db, "blitz", 100, "u1", "number", "7", 10)
        assert wagering.balance_store.get_balance(db, "u1") == Decimal("90.00")

        lock(wagering, db, fake_clock)
        report = wagering.settlement.settle(db, "blitz", 100)

        assert report.settled
        assert (report.result_number, report.result_color) == (7, Color.GREEN)
        assert not report.was_manual
        assert wagering.balance_store.get_balance(db, "u1") == Decimal("180.00")

        db.refresh(bet)
        assert bet.status == BetStatus.WON
        assert bet.is_winner
        assert bet.actual_win == Decimal("90.00")
        assert bet.profit == Decimal("80.00")

    def test_losing_bet_is_closed_without_credit(self, make_engine, db, fund, fake_clock):
        wagering = make_engine(rng=random.Random(seed_for(2)))
        fund(wagering, "u1", 100)
        bet, _ = wagering.ledger.place_bet(db, "blitz", 100, "u1", "color", "GREEN", 10)

        lock(wagering, db, fake_clock)
        report = wagering.settlement.settle(db, "blitz", 100)

        db.refresh(bet)
        assert bet.status == BetStatus.LOST
        assert bet.is_winner is False
        assert bet.actual_win == Decimal("0.00")
        assert bet.profit == Decimal("-10.00")
        assert report.house_net == Decimal("10.00")
        assert wagering.balance_store.get_balance(db, "u1") == Decimal("90.00")


class TestManualOverride:

    def test_manual_result_decides_payouts(self, make_engine, db, fund, fake_clock):
        wagering = make_engine(rng=random.Random(seed_for(1)))
        fund(wagering, "u1", 100)
        fund(wagering, "u2", 100)
        violet, _ = wagering.ledger.place_bet(db, "blitz", 100, "u1", "color", "VIOLET", 10)
        green, _ = wagering.ledger.place_bet(db, "blitz", 100, "u2", "color", "GREEN", 10)

        lock(wagering, db, fake_clock)
        wagering.resolver.submit_manual_result(db, "blitz", 100, 5)
        report = wagering.settlement.settle(db, "blitz", 100)

        assert (report.result_number, report.result_color, report.was_manual) == (5, Color.VIOLET, True)
        assert report.winner_count == 1
        assert wagering.balance_store.get_balance(db, "u1") == Decimal("135.00")
        assert wagering.balance_store.get_balance(db, "u2") == Decimal("90.00")

        round_obj = wagering.clock.get_round(db, "blitz", 100)
        assert round_obj.was_manual
        assert round_obj.result_color == Color.VIOLET


class TestAtomicity:

    def test_failed_credit_rolls_back_everything(self, make_engine, db, fund, fake_clock):
        store = FlakyBalanceStore(fail_on_credit=4)
        wagering = make_engine(rng=random.Random(seed_for(6)), balance_store=store)
        users = [f"u{i}" for i in range(1, 6)]
        for user_id in users:
            fund(wagering, user_id, 100)
            wagering.ledger.place_bet(db, "blitz", 100, user_id, "color", "RED", 10)

        lock(wagering, db, fake_clock)
        with pytest.raises(BalanceStoreUnavailable):
            wagering.settlement.settle(db, "blitz", 100)

        round_obj = wagering.clock.get_round(db, "blitz", 100)
        assert round_obj.status == RoundStatus.LOCKED
        assert round_obj.result_number is None
        assert all(b.status == BetStatus.PENDING for b in db.query(Bet).all())
        for user_id in users:
            assert wagering.balance_store.get_balance(db, user_id) == Decimal("90.00")
        assert db.query(WalletTransaction).filter(WalletTransaction.type == TransactionType.WIN).count() == 0
        assert wagering.clock.current("blitz").period_number == 100

        report = wagering.settlement.settle(db, "blitz", 100)

        assert report.settled
        assert report.winner_count == 5
        for user_id in users:
            assert wagering.balance_store.get_balance(db, user_id) == Decimal("110.00")
        assert db.query(WalletTransaction).filter(WalletTransaction.type == TransactionType.WIN).count() == 5
        assert wagering.clock.current("blitz").period_number == 101

    def test_failed_settlement_is_retried_after_restart(self, make_engine, settings, db, fund, fake_clock):
        store = FlakyBalanceStore(fail_on_credit=4)
        wagering = make_engine(rng=random.Random(seed_for(6)), balance_store=store)
        users = [f"u{i}" for i in range(1, 6)]
        for user_id in users:
            fund(wagering, user_id, 100)
            wagering.ledger.place_bet(db, "blitz", 100, user_id, "color", "RED", 10)

        lock(wagering, db, fake_clock)
        with pytest.raises(BalanceStoreUnavailable):
            wagering.settlement.settle(db, "blitz", 100)

        # new process: different rng, fresh in-memory state
        restarted = WageringEngine(settings, rng=random.Random(seed_for(1)), now=fake_clock)
        restarted.start(db)
        pointer = restarted.clock.current("blitz")
        assert (pointer.period_number, pointer.status) == (100, RoundStatus.LOCKED)
        assert [r.period_number for r in restarted.clock.locked_rounds(db) if r.mode_id == "blitz"] == [100]

        report = restarted.settlement.settle(db, "blitz", 100)
        again = restarted.settlement.settle(db, "blitz", 100)

        assert report.settled and not again.settled
        assert (report.result_number, report.result_color) == (6, Color.RED)
        assert report.winner_count == 5
        for user_id in users:
            assert restarted.balance_store.get_balance(db, user_id) == Decimal("110.00")
        assert db.query(WalletTransaction).filter(WalletTransaction.type == TransactionType.WIN).count() == 5
        assert restarted.clock.current("blitz").period_number == 101
        assert restarted.clock.current("blitz").is_open

    def test_timeout_rolls_back(self, make_engine, db, fund, fake_clock):
        wagering = make_engine(rng=random.Random(seed_for(4)))
        fund(wagering, "u1", 100)
        wagering.ledger.place_bet(db, "blitz", 100, "u1", "number", "4", 10)
        lock(wagering, db, fake_clock)

        monotonic = FakeMonotonic()

        def slow():
            monotonic.advance(1)
            return monotonic()

        wagering.settlement._monotonic = slow
        wagering.settlement.timeout_seconds = 0.5

        with pytest.raises(SettlementTimeoutError):
            wagering.settlement.settle(db, "blitz", 100)

        assert wagering.clock.get_round(db, "blitz", 100).status == RoundStatus.LOCKED
        assert wagering.balance_store.get_balance(db, "u1") == Decimal("90.00")

        wagering.settlement.timeout_seconds = None
        report = wagering.settlement.settle(db, "blitz", 100)
        assert report.settled
        assert report.result_number == 4
        assert wagering.balance_store.get_balance(db, "u1") == Decimal("180.00")


class TestIdempotence:

    def test_second_settle_changes_nothing(self, make_engine, db, fund, fake_clock):
        wagering = make_engine(rng=random.Random(seed_for(9)))
        fund(wagering, "u1", 100)
        wagering.ledger.place_bet(db, "blitz", 100, "u1", "color", "GREEN", 10)
        lock(wagering, db, fake_clock)

        first = wagering.settlement.settle(db, "blitz", 100)
        second = wagering.settlement.settle(db, "blitz", 100)

        assert first.settled and not second.settled
        assert second.status == RoundStatus.CLOSED
        assert (second.result_number, second.total_paid) == (first.result_number, first.total_paid)
        assert wagering.balance_store.get_balance(db, "u1") == Decimal("110.00")
        assert db.query(Round).filter(Round.mode_id == "blitz").count() == 2

    def test_settle_open_round_is_noop(self, wagering, db):
        report = wagering.settlement.settle(db, "blitz", 100)
        assert not report.settled
        assert report.status == RoundStatus.OPEN
        assert wagering.clock.get_round(db, "blitz", 100).result_number is None

    def test_settle_missing_round(self, wagering, db):
        with pytest.raises(RoundNotFound):
            wagering.settlement.settle(db, "blitz", 42)


class TestReport:

    def test_totals_and_house_net(self, make_engine, db, fund, fake_clock):
        wagering = make_engine(rng=random.Random(seed_for(0)))
        fund(wagering, "u1", 100)
        fund(wagering, "u2", 100)
        wagering.ledger.place_bet(db, "blitz", 100, "u1", "number", "0", 10)
        wagering.ledger.place_bet(db, "blitz", 100, "u1", "color", "VIOLET", 10)
        wagering.ledger.place_bet(db, "blitz", 100, "u2", "color", "RED", 20)
        lock(wagering, db, fake_clock)

        report = wagering.settlement.settle(db, "blitz", 100)

        # 0 is VIOLET: 10*9 + 10*4.5
        assert report.bet_count == 3
        assert report.winner_count == 2
        assert report.total_staked == Decimal("40.00")
        assert report.total_paid == Decimal("135.00")
        assert report.house_net == Decimal("-95.00")
        # both wins of one user land as a single credit
        assert db.query(WalletTransaction).filter(WalletTransaction.type == TransactionType.WIN).count() == 1
        assert wagering.balance_store.get_balance(db, "u1") == Decimal("215.00")

    def test_closed_rounds_always_carry_results(self, wagering, db, fake_clock):
        for _ in range(3):
            lock(wagering, db, fake_clock, seconds=30)
            wagering.settlement.settle(db, "blitz", wagering.clock.current("blitz").period_number)

        for round_obj in db.query(Round).all():
            if round_obj.status == RoundStatus.CLOSED:
                assert round_obj.result_number is not None
                assert round_obj.result_color is not None
                assert round_obj.closed_at is not None
            else:
                assert round_obj.result_number is None
