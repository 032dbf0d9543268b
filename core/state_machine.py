"""
狀態機：集中管理 Round 的狀態轉換

合法轉換只有兩條：
    OPEN   -> LOCKED   （RoundClock，時間驅動）
    LOCKED -> CLOSED   （SettlementEngine，結算成功後）

CLOSED 是終點；下一期是新的一列 Round，不是 CLOSED -> OPEN
"""
import logging
from datetime import datetime
from typing import Optional

from models import Round, RoundStatus, utcnow
from core.exceptions import InvalidStateTransition

logger = logging.getLogger(__name__)


class RoundStateMachine:
    """Round 狀態轉換表"""

    TRANSITIONS = {
        RoundStatus.OPEN: {RoundStatus.LOCKED},
        RoundStatus.LOCKED: {RoundStatus.CLOSED},
        RoundStatus.CLOSED: set(),
    }

    @classmethod
    def can_transition(cls, current: RoundStatus, target: RoundStatus) -> bool:
        return target in cls.TRANSITIONS.get(current, set())

    @classmethod
    def transition(
        cls,
        round_obj: Round,
        target: RoundStatus,
        now: Optional[datetime] = None
    ) -> Round:
        """
        轉換 Round 狀態（不 commit，由外層 transaction 處理）

        參數：
            round_obj: 已鎖定的 Round
            target: 目標狀態
            now: 轉換時間（測試可注入）

        返回：
            更新後的 Round

        異常：
            InvalidStateTransition: 轉換不在 TRANSITIONS 表內
        """
        current = round_obj.status
        if not cls.can_transition(current, target):
            raise InvalidStateTransition(
                f"Round {round_obj.mode_id}#{round_obj.period_number}: "
                f"cannot transition {current.value} -> {target.value}"
            )

        now = now or utcnow()
        round_obj.status = target
        if target == RoundStatus.LOCKED:
            round_obj.locked_at = now
        elif target == RoundStatus.CLOSED:
            round_obj.closed_at = now

        logger.info(
            f"Round {round_obj.mode_id}#{round_obj.period_number}: "
            f"{current.value} -> {target.value}"
        )
        return round_obj
