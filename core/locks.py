"""
並發控制工具

提供 Database-level 的鎖定機制，防止競態條件（Race Condition）

主要使用 PostgreSQL 的 SELECT ... FOR UPDATE / FOR SHARE 來實現悲觀鎖
（SQLite 會忽略 FOR UPDATE，單一行程內的互斥由 RoundClock.gate 負責）
"""
from sqlalchemy.orm import Session, Query

from models import Round, Wallet


def with_round_lock(mode_id: str, period_number: int, db: Session) -> Query:
    """
    以排他鎖讀取一期（FOR UPDATE）

    OPEN -> LOCKED、寫入手動結果、結算都先拿這把鎖，
    同一期同時只會有一個 transaction 在改它。
    回傳 Query，由呼叫者 .first()，鎖在 commit 或 rollback 時釋放
    """
    return db.query(Round).filter(
        Round.mode_id == mode_id,
        Round.period_number == period_number
    ).with_for_update(nowait=False)


def with_round_share_lock(mode_id: str, period_number: int, db: Session) -> Query:
    """
    以共享鎖讀取 Round（FOR SHARE）

    使用場景：
    - 下注：多筆下注可以同時持有共享鎖，
      但 OPEN -> LOCKED 的排他鎖必須等所有下注 transaction 結束
    """
    return db.query(Round).filter(
        Round.mode_id == mode_id,
        Round.period_number == period_number
    ).with_for_update(read=True, nowait=False)


def with_wallet_lock(user_id: str, db: Session) -> Query:
    """
    鎖定一個玩家的 Wallet（行級鎖）

    同一個玩家的扣款（下注）與派彩（結算）依序進行，
    不同玩家互不阻塞
    """
    return db.query(Wallet).filter(
        Wallet.user_id == user_id
    ).with_for_update(nowait=False)
