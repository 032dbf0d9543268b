"""
Round and bet history service.

Builds the read-only views the admin dashboard and the player wallet
screens render: closed rounds with their results and house net, and a
player's bets with their settlement outcome.
"""
from decimal import Decimal
from typing import Any, Dict, List

from sqlalchemy import func
from sqlalchemy.orm import Session

from models import Bet, Round, RoundStatus


def _round_totals(db: Session, round_ids: List[str]) -> Dict[str, Dict[str, Any]]:
    if not round_ids:
        return {}

    rows = (
        db.query(
            Bet.round_id,
            func.count(Bet.id),
            func.coalesce(func.sum(Bet.amount), 0),
            func.coalesce(func.sum(Bet.actual_win), 0),
            func.count(func.distinct(Bet.user_id)),
        )
        .filter(Bet.round_id.in_(round_ids))
        .group_by(Bet.round_id)
        .all()
    )

    totals = {}
    for round_id, bet_count, staked, paid, players in rows:
        staked = Decimal(staked).quantize(Decimal("0.01"))
        paid = Decimal(paid).quantize(Decimal("0.01"))
        totals[round_id] = {
            "bet_count": bet_count,
            "player_count": players,
            "total_staked": staked,
            "total_paid": paid,
            "house_net": staked - paid,
        }
    return totals


def _empty_totals() -> Dict[str, Any]:
    zero = Decimal("0.00")
    return {
        "bet_count": 0,
        "player_count": 0,
        "total_staked": zero,
        "total_paid": zero,
        "house_net": zero,
    }


def round_entry(round_obj: Round, totals: Dict[str, Any]) -> Dict[str, Any]:
    entry: Dict[str, Any] = {
        "mode_id": round_obj.mode_id,
        "period_number": round_obj.period_number,
        "status": round_obj.status,
        "start_time": round_obj.start_time,
        "lock_time": round_obj.lock_time,
        "end_time": round_obj.end_time,
        "closed_at": round_obj.closed_at,
        "result_number": round_obj.result_number,
        "result_color": round_obj.result_color,
        "was_manual": bool(round_obj.was_manual),
        "manual_result_pending": (
            round_obj.status == RoundStatus.LOCKED
            and round_obj.manual_result_number is not None
        ),
    }
    entry.update(totals)
    return entry


def get_round_history(db: Session, mode_id: str, limit: int = 20) -> List[Dict[str, Any]]:
    """
    Return the most recent closed rounds of a mode, newest first.

    Each entry carries the result plus the bet totals so the dashboard
    does not have to add up bets client-side.
    """
    rounds = (
        db.query(Round)
        .filter(Round.mode_id == mode_id, Round.status == RoundStatus.CLOSED)
        .order_by(Round.period_number.desc())
        .limit(limit)
        .all()
    )
    totals = _round_totals(db, [r.id for r in rounds])
    return [round_entry(r, totals.get(r.id, _empty_totals())) for r in rounds]


def get_round_summary(db: Session, round_obj: Round) -> Dict[str, Any]:
    """Single round view, open or closed."""
    totals = _round_totals(db, [round_obj.id])
    return round_entry(round_obj, totals.get(round_obj.id, _empty_totals()))


def bet_entry(bet: Bet) -> Dict[str, Any]:
    return {
        "id": bet.id,
        "user_id": bet.user_id,
        "mode_id": bet.mode_id,
        "period_number": bet.period_number,
        "bet_type": bet.bet_type,
        "bet_value": bet.bet_value,
        "amount": bet.amount,
        "status": bet.status,
        "profit": bet.profit,
        "is_winner": bet.is_winner,
        "actual_win": bet.actual_win,
        "created_at": bet.created_at,
        "settled_at": bet.settled_at,
    }


def get_user_bet_history(db: Session, user_id: str, limit: int = 50) -> List[Dict[str, Any]]:
    """A player's bets, newest first, including pending ones."""
    bets = (
        db.query(Bet)
        .filter(Bet.user_id == user_id)
        .order_by(Bet.created_at.desc(), Bet.id)
        .limit(limit)
        .all()
    )
    return [bet_entry(bet) for bet in bets]
