"""
ResultResolver：決定每一期的開獎結果

來源優先順序：
1. 管理員手動結果（LOCKED 期間、自動開獎之前提交，每期只能一次）
2. 自動開獎：0-9 均勻分布的虛擬亂數（不需要密碼學強度）

顏色一律由號碼推導（見 services/payout_service.COLOR_PARTITION）

冪等性：
- 自動開獎號碼寫入 Round.drawn_number，之後每次 resolve 都回傳同一個值，
  重啟後也一樣
"""
import logging
import random
import threading
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from database import transactional
from models import Color, Round, RoundStatus, utcnow
from core.round_clock import RoundClock
from core.locks import with_round_lock
from core.exceptions import (
    InvalidResultNumberError,
    ResultAlreadySetError,
    RoundNotFound,
    RoundNotLockedError,
    RoundStillOpenError,
)
from services.payout_service import color_for_number

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Resolution:
    mode_id: str
    period_number: int
    number: int
    color: Color
    was_manual: bool


def validate_result_number(number) -> int:
    # bool 是 int 的子類別，要先排除
    if isinstance(number, bool) or not isinstance(number, int) or not 0 <= number <= 9:
        raise InvalidResultNumberError(f"Result number must be an integer 0-9, got {number!r}")
    return number


class ResultResolver:
    """開獎結果解析器"""

    def __init__(self, clock: RoundClock, rng: Optional[random.Random] = None):
        self.clock = clock
        self.rng = rng or random.Random()
        self._rng_lock = threading.Lock()

    def submit_manual_result(self, db: Session, mode_id: str, period_number: int, number) -> Round:
        """
        管理員提交手動結果

        前置條件：
        - 回合必須是 LOCKED
        - 這一期尚未提交過手動結果，也還沒有自動開獎

        異常：
            InvalidResultNumberError: number 不在 0-9
            RoundNotFound: 期號不存在
            RoundNotLockedError: 回合不是 LOCKED（OPEN 還在下注、CLOSED 已結算）
            ResultAlreadySetError: 這一期已經有手動結果或已自動開獎
        """
        self.clock.registry.get(mode_id)
        number = validate_result_number(number)
        round_obj = self._submit_manual_result(db, mode_id, period_number, number)

        logger.info(f"Manual result {number} accepted for {mode_id}#{period_number}")
        return round_obj

    @transactional
    def _submit_manual_result(self, db: Session, mode_id: str, period_number: int, number: int) -> Round:
        round_obj = with_round_lock(mode_id, period_number, db).first()
        if not round_obj:
            raise RoundNotFound(mode_id, period_number)

        if round_obj.status != RoundStatus.LOCKED:
            raise RoundNotLockedError(
                f"Manual result for {mode_id}#{period_number} requires LOCKED, "
                f"round is {round_obj.status.value}"
            )
        if round_obj.manual_result_number is not None:
            raise ResultAlreadySetError(
                f"Manual result for {mode_id}#{period_number} already set "
                f"to {round_obj.manual_result_number}"
            )
        if round_obj.drawn_number is not None:
            raise ResultAlreadySetError(
                f"Result for {mode_id}#{period_number} already drawn "
                f"as {round_obj.drawn_number}"
            )

        round_obj.manual_result_number = number
        round_obj.manual_result_set_at = utcnow()
        return round_obj

    def resolve(self, db: Session, mode_id: str, period_number: int) -> Resolution:
        """
        取得開獎結果（每期最多計算一次）

        異常：
            RoundNotFound: 期號不存在
            RoundStillOpenError: 回合仍在下注中，尚不能開獎
        """
        round_obj = self.clock.get_round(db, mode_id, period_number)
        if round_obj.status == RoundStatus.OPEN:
            raise RoundStillOpenError(mode_id, period_number)

        if (
            round_obj.status == RoundStatus.LOCKED
            and round_obj.manual_result_number is None
            and round_obj.drawn_number is None
        ):
            round_obj = self._draw(db, mode_id, period_number)

        return self.resolution_for(round_obj)

    @transactional
    def _draw(self, db: Session, mode_id: str, period_number: int) -> Round:
        round_obj = with_round_lock(mode_id, period_number, db).first()
        if round_obj.drawn_number is None:
            with self._rng_lock:
                round_obj.drawn_number = self.rng.randrange(10)
            logger.info(f"Drew number {round_obj.drawn_number} for {mode_id}#{period_number}")
        return round_obj

    def resolution_for(self, round_obj: Round) -> Resolution:
        """
        由 Round 的欄位推導結果（不寫資料庫）

        - CLOSED：已提交的結果
        - 有手動結果：手動結果
        - 其他：已抽出的號碼
        """
        if round_obj.status == RoundStatus.CLOSED:
            number, was_manual = round_obj.result_number, round_obj.was_manual
        elif round_obj.manual_result_number is not None:
            number, was_manual = round_obj.manual_result_number, True
        elif round_obj.drawn_number is not None:
            number, was_manual = round_obj.drawn_number, False
        else:
            raise RoundNotLockedError(
                f"Round {round_obj.mode_id}#{round_obj.period_number} has no result yet"
            )

        return Resolution(
            mode_id=round_obj.mode_id,
            period_number=round_obj.period_number,
            number=number,
            color=color_for_number(number),
            was_manual=was_manual,
        )
