"""
RoundClock：管理每個模式的回合時序

職責：
1. 開新期（期號連續遞增，不跳號、不重用）
2. 時間到時 OPEN -> LOCKED（每期恰好一次，重啟後也不會漏鎖）
3. 持有每個模式唯一的「當前期」指標，下注與鎖盤透過 gate 互斥
4. 啟動時從資料庫重建進行中的回合

原則：
- 指標只有 RoundClock 會寫，其他元件只讀
- 所有狀態變更經過 RoundStateMachine
- LOCKED -> CLOSED 不在這裡，由 SettlementEngine 負責
"""
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from database import transactional
from models import Round, RoundStatus, utcnow
from core.game_modes import GameModeRegistry
from core.live_stats import LiveStatsAggregator
from core.locks import with_round_lock
from core.state_machine import RoundStateMachine
from core.exceptions import RoundNotFound

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CurrentPeriod:
    """當前期指標的唯讀快照"""
    mode_id: str
    round_id: str
    period_number: int
    status: RoundStatus
    start_time: datetime
    lock_time: datetime
    end_time: datetime

    @classmethod
    def of(cls, round_obj: Round) -> "CurrentPeriod":
        return cls(
            mode_id=round_obj.mode_id,
            round_id=round_obj.id,
            period_number=round_obj.period_number,
            status=round_obj.status,
            start_time=round_obj.start_time,
            lock_time=round_obj.lock_time,
            end_time=round_obj.end_time,
        )

    @property
    def is_open(self) -> bool:
        return self.status == RoundStatus.OPEN


class RoundClock:
    """每個模式一個進行中回合的狀態機驅動者"""

    def __init__(
        self,
        registry: GameModeRegistry,
        live_stats: LiveStatsAggregator,
        lock_buffer_seconds: int = 5,
        first_period_number: int = 1,
        now: Callable[[], datetime] = utcnow
    ):
        self.registry = registry
        self.live_stats = live_stats
        self.lock_buffer = timedelta(seconds=lock_buffer_seconds)
        self.first_period_number = first_period_number
        self._now = now
        self._pointers: Dict[str, CurrentPeriod] = {}
        self._pointer_lock = threading.Lock()
        self._gates = {mode_id: threading.RLock() for mode_id in registry.ids()}

    # ============ 指標（唯讀介面） ============

    def now(self) -> datetime:
        return self._now()

    @contextmanager
    def gate(self, mode_id: str):
        """
        模式層級的互斥區

        下注（檢查 OPEN + 寫入 + commit）與鎖盤（OPEN -> LOCKED + commit）
        都必須在 gate 內完成，因此回合一旦 LOCKED 就不會再有注單進來
        """
        self.registry.get(mode_id)
        with self._gates[mode_id]:
            yield

    def current(self, mode_id: str) -> Optional[CurrentPeriod]:
        self.registry.get(mode_id)
        with self._pointer_lock:
            return self._pointers.get(mode_id)

    def is_open(self, mode_id: str, period_number: int) -> bool:
        pointer = self.current(mode_id)
        return (
            pointer is not None
            and pointer.period_number == period_number
            and pointer.is_open
        )

    def _set_pointer(self, round_obj: Round) -> CurrentPeriod:
        pointer = CurrentPeriod.of(round_obj)
        with self._pointer_lock:
            existing = self._pointers.get(pointer.mode_id)
            # 指標只會往前走
            if existing is None or existing.period_number <= pointer.period_number:
                self._pointers[pointer.mode_id] = pointer
        return pointer

    # ============ 開新期 ============

    def open_next(self, db: Session, mode_id: str, now: Optional[datetime] = None) -> Round:
        """
        為模式開新的一期（冪等：若最新一期尚未 CLOSED，直接返回它）

        返回：
            目前進行中的 Round
        """
        with self.gate(mode_id):
            round_obj = self._open_next(db, mode_id, now or self._now())
            self._set_pointer(round_obj)
            if round_obj.status == RoundStatus.OPEN:
                self.live_stats.start_round(round_obj)
            return round_obj

    @transactional
    def _open_next(self, db: Session, mode_id: str, now: datetime) -> Round:
        mode = self.registry.get(mode_id)

        latest = db.query(Round).filter(
            Round.mode_id == mode_id
        ).order_by(Round.period_number.desc()).with_for_update().first()

        if latest is not None and latest.status != RoundStatus.CLOSED:
            logger.info(f"Mode {mode_id} already has active round #{latest.period_number}")
            return latest

        period_number = latest.period_number + 1 if latest else self.first_period_number
        duration = timedelta(seconds=mode.duration_seconds)

        round_obj = Round(
            mode_id=mode_id,
            period_number=period_number,
            status=RoundStatus.OPEN,
            start_time=now,
            lock_time=now + duration - self.lock_buffer,
            end_time=now + duration,
        )
        db.add(round_obj)
        db.flush()

        logger.info(
            f"Opened round {mode_id}#{period_number}, "
            f"locks at {round_obj.lock_time.isoformat()}"
        )
        return round_obj

    # ============ OPEN -> LOCKED ============

    def lock_round(self, db: Session, mode_id: str, period_number: int,
                   now: Optional[datetime] = None) -> Round:
        """
        鎖盤（冪等：已 LOCKED 或 CLOSED 直接返回）

        異常：
            RoundNotFound: 期號不存在
        """
        with self.gate(mode_id):
            round_obj = self._lock_round(db, mode_id, period_number, now or self._now())
            self._set_pointer(round_obj)
            self.live_stats.reset(mode_id, period_number)
            return round_obj

    @transactional
    def _lock_round(self, db: Session, mode_id: str, period_number: int, now: datetime) -> Round:
        round_obj = with_round_lock(mode_id, period_number, db).first()
        if not round_obj:
            raise RoundNotFound(mode_id, period_number)

        if round_obj.status == RoundStatus.OPEN:
            RoundStateMachine.transition(round_obj, RoundStatus.LOCKED, now)
        return round_obj

    def lock_due(self, db: Session, now: Optional[datetime] = None) -> List[Round]:
        """鎖定所有已到鎖盤時間的 OPEN 回合"""
        now = now or self._now()
        locked = []
        for mode_id in self.registry.ids():
            pointer = self.current(mode_id)
            if pointer is None or not pointer.is_open or now < pointer.lock_time:
                continue
            locked.append(self.lock_round(db, mode_id, pointer.period_number, now))
        return locked

    # ============ CLOSED 之後 ============

    def advance(self, db: Session, mode_id: str, period_number: int,
                now: Optional[datetime] = None) -> Optional[Round]:
        """
        結算完成後開下一期

        只有指標仍指向剛結算的那一期時才開新期，
        重複呼叫（結算重試）不會多開
        """
        with self.gate(mode_id):
            pointer = self.current(mode_id)
            if pointer is not None and pointer.period_number != period_number:
                return None
            return self.open_next(db, mode_id, now)

    def ensure_active(self, db: Session, now: Optional[datetime] = None) -> List[Round]:
        """
        補開新期：指標所指的回合已 CLOSED（結算後開新期失敗）或沒有指標時

        返回：
            這次新開的回合
        """
        opened = []
        for mode_id in self.registry.ids():
            pointer = self.current(mode_id)
            if pointer is not None and pointer.status == RoundStatus.OPEN:
                continue
            if pointer is not None:
                status = db.query(Round.status).filter(Round.id == pointer.round_id).scalar()
                if status != RoundStatus.CLOSED:
                    continue
            logger.warning(f"Mode {mode_id} has no active round, opening next period")
            opened.append(self.open_next(db, mode_id, now))
        return opened

    # ============ 啟動復原 ============

    def recover(self, db: Session, now: Optional[datetime] = None) -> List[CurrentPeriod]:
        """
        從資料庫重建每個模式的進行中回合

        規則：
        - 沒有任何回合 / 最新一期已 CLOSED：開新期
        - 最新一期 OPEN 但已超過鎖盤時間：立即鎖盤（不跳過）
        - 最新一期 OPEN 且未到期：沿用，並重建即時統計
        - 最新一期 LOCKED：沿用，交給排程結算
        """
        now = now or self._now()
        pointers = []

        for mode_id in self.registry.ids():
            latest = db.query(Round).filter(
                Round.mode_id == mode_id
            ).order_by(Round.period_number.desc()).first()

            if latest is None or latest.status == RoundStatus.CLOSED:
                latest = self.open_next(db, mode_id, now)
            elif latest.status == RoundStatus.OPEN and now >= latest.lock_time:
                logger.warning(
                    f"Round {mode_id}#{latest.period_number} found OPEN past its lock time "
                    f"on recovery, locking now"
                )
                latest = self.lock_round(db, mode_id, latest.period_number, now)
            else:
                self._set_pointer(latest)
                if latest.status == RoundStatus.OPEN:
                    self.live_stats.rebuild(db, latest)

            pointer = self.current(mode_id)
            logger.info(
                f"Recovered mode {mode_id}: round #{pointer.period_number} {pointer.status.value}"
            )
            pointers.append(pointer)

        return pointers

    # ============ 查詢 ============

    def get_round(self, db: Session, mode_id: str, period_number: int) -> Round:
        self.registry.get(mode_id)
        round_obj = db.query(Round).filter(
            Round.mode_id == mode_id,
            Round.period_number == period_number
        ).first()
        if not round_obj:
            raise RoundNotFound(mode_id, period_number)
        return round_obj

    def locked_rounds(self, db: Session) -> List[Round]:
        """所有等待結算的回合（依鎖盤時間排序）"""
        return db.query(Round).filter(
            Round.status == RoundStatus.LOCKED
        ).order_by(Round.locked_at).all()

    def stuck_rounds(self, db: Session, ceiling_seconds: int,
                     now: Optional[datetime] = None) -> List[Round]:
        """LOCKED 超過 ceiling_seconds 仍未結算的回合（只回報，不自動處理）"""
        cutoff = (now or self._now()) - timedelta(seconds=ceiling_seconds)
        return db.query(Round).filter(
            Round.status == RoundStatus.LOCKED,
            Round.locked_at <= cutoff
        ).order_by(Round.locked_at).all()
