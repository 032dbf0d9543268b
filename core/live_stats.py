"""
LiveStatsAggregator - per-round running bet totals for dashboards.

Stats are advisory: they are updated after a bet commits and are not part
of the settlement unit. Readers get a copy taken under a short lock, so a
dashboard poll never holds up bet placement for longer than the copy.

Usage:
    stats = LiveStatsAggregator()
    stats.record_bet(bet)
    snapshot = stats.snapshot("blitz")
"""

import copy
import logging
import threading
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Optional, Set

from sqlalchemy.orm import Session

from models import Bet, BetType, Color, Round

logger = logging.getLogger(__name__)


@dataclass
class BucketStats:
    count: int = 0
    amount: Decimal = field(default_factory=lambda: Decimal("0.00"))
    users: int = 0


@dataclass
class LiveGameStats:
    """Running totals for the open round of one mode."""

    active_game: str
    mode_id: str
    period_number: int
    total_bets: int = 0
    total_bet_amount: Decimal = field(default_factory=lambda: Decimal("0.00"))
    color_bets: Dict[str, BucketStats] = field(
        default_factory=lambda: {color.value: BucketStats() for color in Color}
    )
    number_bets: Dict[str, BucketStats] = field(
        default_factory=lambda: {str(n): BucketStats() for n in range(10)}
    )
    active_players: int = 0


class _RoundTally:
    """Mutable tally plus the user sets needed for distinct counts."""

    def __init__(self, round_id: str, mode_id: str, period_number: int):
        self.stats = LiveGameStats(
            active_game=round_id, mode_id=mode_id, period_number=period_number
        )
        self.players: Set[str] = set()
        self.bucket_users: Dict[str, Set[str]] = {}

    def add(self, bet: Bet) -> None:
        stats = self.stats
        amount = Decimal(bet.amount)
        stats.total_bets += 1
        stats.total_bet_amount += amount

        if bet.bet_type == BetType.COLOR:
            buckets, key = stats.color_bets, f"color:{bet.bet_value}"
        else:
            buckets, key = stats.number_bets, f"number:{bet.bet_value}"

        bucket = buckets[bet.bet_value]
        bucket.count += 1
        bucket.amount += amount
        users = self.bucket_users.setdefault(key, set())
        users.add(bet.user_id)
        bucket.users = len(users)

        self.players.add(bet.user_id)
        stats.active_players = len(self.players)


class LiveStatsAggregator:
    """
    Keeps one tally per mode for the round that is currently OPEN.

    Thread-safe: all tally access is protected by one lock.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._tallies: Dict[str, _RoundTally] = {}

    def record_bet(self, bet: Bet) -> None:
        """Add a committed bet. A bet for a newer period replaces the tally."""
        with self._lock:
            tally = self._tallies.get(bet.mode_id)
            if tally is None or tally.stats.period_number != bet.period_number:
                if tally is not None and tally.stats.period_number > bet.period_number:
                    logger.warning(
                        f"Ignoring bet {bet.id} for stale period "
                        f"{bet.mode_id}#{bet.period_number}"
                    )
                    return
                tally = _RoundTally(bet.round_id, bet.mode_id, bet.period_number)
                self._tallies[bet.mode_id] = tally
            tally.add(bet)

    def start_round(self, round_obj: Round) -> None:
        """Begin an empty tally so dashboards see zeros instead of nothing."""
        with self._lock:
            self._tallies[round_obj.mode_id] = _RoundTally(
                round_obj.id, round_obj.mode_id, round_obj.period_number
            )

    def reset(self, mode_id: str, period_number: Optional[int] = None) -> None:
        """Discard the tally when its round leaves OPEN."""
        with self._lock:
            tally = self._tallies.get(mode_id)
            if tally is None:
                return
            if period_number is None or tally.stats.period_number == period_number:
                del self._tallies[mode_id]

    def snapshot(self, mode_id: str) -> Optional[LiveGameStats]:
        with self._lock:
            tally = self._tallies.get(mode_id)
            if tally is None:
                return None
            return copy.deepcopy(tally.stats)

    def rebuild(self, db: Session, round_obj: Round) -> None:
        """Recreate a tally from persisted bets (process restart)."""
        bets = db.query(Bet).filter(
            Bet.mode_id == round_obj.mode_id,
            Bet.period_number == round_obj.period_number
        ).all()

        tally = _RoundTally(round_obj.id, round_obj.mode_id, round_obj.period_number)
        for bet in bets:
            tally.add(bet)

        with self._lock:
            self._tallies[round_obj.mode_id] = tally

        logger.info(
            f"Rebuilt live stats for {round_obj.mode_id}#{round_obj.period_number} "
            f"from {len(bets)} bets"
        )
