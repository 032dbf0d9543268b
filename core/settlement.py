"""
SettlementEngine：結算一期並關閉回合

流程：
1. 回合必須是 LOCKED，否則不做事（已 CLOSED 代表已結算）
2. 取得開獎結果（ResultResolver）與凍結的注單（BetLedger）
3. 逐筆計算返還金額、淨利
4. 依玩家彙總派彩，透過 BalanceStore 入帳（每人每期一個 idempotency key）
5. 注單更新 + 派彩 + Round -> CLOSED 在同一個 transaction commit
6. commit 之後：清除即時統計、開下一期

任何一步失敗都整個回滾，回合維持 LOCKED 等待重試；
重複呼叫 settle 的最終狀態與只呼叫一次完全相同
"""
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from database import transactional
from models import Bet, BetStatus, Color, Round, RoundStatus, TransactionType, utcnow
from core.round_clock import RoundClock
from core.bet_ledger import BetLedger
from core.result_resolver import ResultResolver, Resolution
from core.live_stats import LiveStatsAggregator
from core.locks import with_round_lock
from core.state_machine import RoundStateMachine
from core.exceptions import SettlementTimeoutError
from services.balance_store import BalanceStore, win_key
from services.payout_service import PayoutPolicy, calculate_profit, calculate_win

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SettlementReport:
    mode_id: str
    period_number: int
    status: RoundStatus
    settled: bool
    result_number: Optional[int] = None
    result_color: Optional[Color] = None
    was_manual: bool = False
    bet_count: int = 0
    winner_count: int = 0
    total_staked: Decimal = Decimal("0.00")
    total_paid: Decimal = Decimal("0.00")

    @property
    def house_net(self) -> Decimal:
        return self.total_staked - self.total_paid


def summarize(round_obj: Round, bets: List[Bet], settled: bool) -> SettlementReport:
    """由回合與注單建立報表（已結算的回合重複查詢也用這個）"""
    total_staked = sum((Decimal(bet.amount) for bet in bets), Decimal("0.00"))
    total_paid = sum((Decimal(bet.actual_win or 0) for bet in bets), Decimal("0.00"))
    return SettlementReport(
        mode_id=round_obj.mode_id,
        period_number=round_obj.period_number,
        status=round_obj.status,
        settled=settled,
        result_number=round_obj.result_number,
        result_color=round_obj.result_color,
        was_manual=bool(round_obj.was_manual),
        bet_count=len(bets),
        winner_count=sum(1 for bet in bets if bet.is_winner),
        total_staked=total_staked,
        total_paid=total_paid,
    )


class SettlementEngine:
    """結算引擎"""

    def __init__(
        self,
        clock: RoundClock,
        ledger: BetLedger,
        resolver: ResultResolver,
        balance_store: BalanceStore,
        live_stats: LiveStatsAggregator,
        policy: Optional[PayoutPolicy] = None,
        timeout_seconds: Optional[float] = None,
        monotonic: Callable[[], float] = time.monotonic
    ):
        self.clock = clock
        self.ledger = ledger
        self.resolver = resolver
        self.balance_store = balance_store
        self.live_stats = live_stats
        self.policy = policy or PayoutPolicy()
        self.timeout_seconds = timeout_seconds
        self._monotonic = monotonic

    def settle(self, db: Session, mode_id: str, period_number: int) -> SettlementReport:
        """
        結算一期（冪等入口，可以安全地重複呼叫）

        參數：
            db: SQLAlchemy Session
            mode_id: 遊戲模式
            period_number: 期號

        返回：
            SettlementReport；settled=True 表示這次呼叫完成了結算

        異常：
            RoundNotFound: 期號不存在
            SettlementTimeoutError: 超過時限，已回滾，回合維持 LOCKED
            BalanceStoreUnavailable: 餘額更新衝突，已回滾，可重試
        """
        round_obj = self.clock.get_round(db, mode_id, period_number)

        if round_obj.status == RoundStatus.OPEN:
            logger.warning(f"Settle requested for open round {mode_id}#{period_number}, ignoring")
            return summarize(round_obj, [], settled=False)

        if round_obj.status == RoundStatus.CLOSED:
            logger.info(f"Round {mode_id}#{period_number} already settled")
            return summarize(round_obj, self.ledger.get_bets_for_round(db, mode_id, period_number), settled=False)

        # 自動開獎號碼先獨立 commit（冪等），結算 transaction 內再讀取
        self.resolver.resolve(db, mode_id, period_number)

        deadline = None
        if self.timeout_seconds is not None:
            deadline = self._monotonic() + self.timeout_seconds

        report = self._settle(db, mode_id, period_number, deadline)
        if not report.settled:
            return report

        logger.info(
            f"Settled {mode_id}#{period_number}: result={report.result_number}/"
            f"{report.result_color.value} manual={report.was_manual} "
            f"bets={report.bet_count} winners={report.winner_count} "
            f"staked={report.total_staked} paid={report.total_paid}"
        )

        self.live_stats.reset(mode_id, period_number)
        self.clock.advance(db, mode_id, period_number)
        return report

    def _check_deadline(self, deadline: Optional[float], mode_id: str, period_number: int) -> None:
        if deadline is not None and self._monotonic() > deadline:
            raise SettlementTimeoutError(
                f"Settlement of {mode_id}#{period_number} exceeded "
                f"{self.timeout_seconds}s, rolled back"
            )

    @transactional
    def _settle(self, db: Session, mode_id: str, period_number: int,
                deadline: Optional[float]) -> SettlementReport:
        # 1. 鎖定回合，防止兩個 worker 同時結算
        round_obj = with_round_lock(mode_id, period_number, db).first()
        if round_obj.status != RoundStatus.LOCKED:
            bets = self.ledger.get_bets_for_round(db, mode_id, period_number)
            return summarize(round_obj, bets, settled=False)

        # 2. 結果與凍結的注單
        resolution = self.resolver.resolution_for(round_obj)
        bets = self.ledger.get_bets_for_round(db, mode_id, period_number)

        # 3. 逐筆計算
        now = utcnow()
        credits: Dict[str, Decimal] = OrderedDict()
        for bet in bets:
            self._check_deadline(deadline, mode_id, period_number)
            self._settle_bet(bet, resolution, now)
            if bet.is_winner:
                credits[bet.user_id] = credits.get(bet.user_id, Decimal("0.00")) + bet.actual_win

        # 4. 派彩（依 user_id 排序，固定鎖定順序）
        for user_id in sorted(credits):
            self._check_deadline(deadline, mode_id, period_number)
            self.balance_store.apply_delta(
                db,
                user_id,
                credits[user_id],
                win_key(mode_id, period_number, user_id),
                TransactionType.WIN,
                description=f"Win from {mode_id} #{period_number}"
            )

        # 5. 寫入結果並關閉回合（與派彩同一個 commit）
        round_obj.result_number = resolution.number
        round_obj.result_color = resolution.color
        round_obj.was_manual = resolution.was_manual
        RoundStateMachine.transition(round_obj, RoundStatus.CLOSED, now)

        self._check_deadline(deadline, mode_id, period_number)
        db.flush()
        return summarize(round_obj, bets, settled=True)

    def _settle_bet(self, bet: Bet, resolution: Resolution, now) -> None:
        actual_win = calculate_win(
            bet.bet_type,
            bet.bet_value,
            Decimal(bet.amount),
            resolution.number,
            resolution.color,
            self.policy
        )
        bet.is_winner = actual_win > 0
        bet.actual_win = actual_win
        bet.profit = calculate_profit(Decimal(bet.amount), actual_win)
        bet.status = BetStatus.WON if bet.is_winner else BetStatus.LOST
        bet.settled_at = now
