"""
WageringEngine：組裝所有元件

每個元件只建立一個實例並注入到需要它的地方，
RoundClock 的「當前期」指標因此只有一個擁有者
"""
import logging
import random
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.orm import Session

from database import Settings
from models import utcnow
from core.game_modes import GameModeRegistry
from core.live_stats import LiveStatsAggregator
from core.round_clock import RoundClock
from core.bet_ledger import BetLedger
from core.result_resolver import ResultResolver
from core.settlement import SettlementEngine
from services.balance_store import BalanceStore
from services.payout_service import PayoutPolicy

logger = logging.getLogger(__name__)


class WageringEngine:
    """引擎元件容器"""

    def __init__(
        self,
        settings: Settings,
        rng: Optional[random.Random] = None,
        now: Callable[[], datetime] = utcnow,
        balance_store: Optional[BalanceStore] = None
    ):
        self.settings = settings
        self.registry = GameModeRegistry(settings.game_modes)
        self.live_stats = LiveStatsAggregator()
        self.clock = RoundClock(
            self.registry,
            self.live_stats,
            lock_buffer_seconds=settings.lock_buffer_seconds,
            first_period_number=settings.first_period_number,
            now=now,
        )
        self.balance_store = balance_store or BalanceStore()
        self.ledger = BetLedger(self.clock, self.balance_store, self.live_stats)
        self.resolver = ResultResolver(self.clock, rng)
        self.settlement = SettlementEngine(
            self.clock,
            self.ledger,
            self.resolver,
            self.balance_store,
            self.live_stats,
            policy=PayoutPolicy.from_settings(settings),
            timeout_seconds=settings.settlement_timeout_seconds,
        )

    def start(self, db: Session) -> None:
        """發布模式目錄並從資料庫重建進行中的回合"""
        self.registry.publish(db)
        pointers = self.clock.recover(db)
        logger.info(f"Wagering engine started with {len(pointers)} active modes")
