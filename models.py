"""
SQLAlchemy Models

持久化紀錄：GameModeRecord、Round、Bet、Wallet、WalletTransaction

金額一律使用 Numeric(16, 2) + Decimal，不用 float
"""
import enum
import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    BigInteger,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from database import Base


def utcnow() -> datetime:
    """naive UTC（SQLite 的 DateTime 不保存時區）"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


MONEY = Numeric(16, 2, asdecimal=True)


class RoundStatus(str, enum.Enum):
    OPEN = "OPEN"
    LOCKED = "LOCKED"
    CLOSED = "CLOSED"


class Color(str, enum.Enum):
    RED = "RED"
    GREEN = "GREEN"
    VIOLET = "VIOLET"


class BetType(str, enum.Enum):
    COLOR = "color"
    NUMBER = "number"


class BetStatus(str, enum.Enum):
    PENDING = "PENDING"
    WON = "WON"
    LOST = "LOST"


class TransactionType(str, enum.Enum):
    DEPOSIT = "DEPOSIT"
    BET = "BET"
    WIN = "WIN"
    ADJUSTMENT = "ADJUSTMENT"


class GameModeRecord(Base):
    __tablename__ = "game_modes"

    id = Column(String(32), primary_key=True)
    name = Column(String(64), nullable=False)
    duration_seconds = Column(Integer, nullable=False)
    published_at = Column(DateTime, nullable=False, default=utcnow)


class Round(Base):
    __tablename__ = "rounds"
    __table_args__ = (
        UniqueConstraint("mode_id", "period_number", name="uq_round_mode_period"),
        Index("ix_round_mode_status", "mode_id", "status"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    mode_id = Column(String(32), ForeignKey("game_modes.id"), nullable=False)
    period_number = Column(BigInteger, nullable=False)
    status = Column(Enum(RoundStatus), nullable=False, default=RoundStatus.OPEN)

    start_time = Column(DateTime, nullable=False)
    lock_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    locked_at = Column(DateTime, nullable=True)
    closed_at = Column(DateTime, nullable=True)

    # 只有 CLOSED 的回合才有值
    result_number = Column(Integer, nullable=True)
    result_color = Column(Enum(Color), nullable=True)
    was_manual = Column(Boolean, nullable=False, default=False)

    # 管理員手動結果（LOCKED 期間寫入，結算時才搬到 result_*）
    manual_result_number = Column(Integer, nullable=True)
    manual_result_set_at = Column(DateTime, nullable=True)

    # 自動開獎號碼快取，確保重啟後 resolve 仍然冪等
    drawn_number = Column(Integer, nullable=True)

    bets = relationship("Bet", back_populates="round", order_by="Bet.created_at")

    def __repr__(self):
        return f"<Round {self.mode_id}#{self.period_number} {self.status.value}>"


class Bet(Base):
    __tablename__ = "bets"
    __table_args__ = (
        Index("ix_bet_round", "mode_id", "period_number"),
        Index("ix_bet_user", "user_id"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(64), nullable=False)
    round_id = Column(String(36), ForeignKey("rounds.id"), nullable=False)
    mode_id = Column(String(32), nullable=False)
    period_number = Column(BigInteger, nullable=False)

    bet_type = Column(Enum(BetType), nullable=False)
    bet_value = Column(String(8), nullable=False)
    amount = Column(MONEY, nullable=False)

    status = Column(Enum(BetStatus), nullable=False, default=BetStatus.PENDING)
    profit = Column(MONEY, nullable=False, default=Decimal("0"))
    is_winner = Column(Boolean, nullable=True)
    actual_win = Column(MONEY, nullable=True)

    idempotency_key = Column(String(200), nullable=True, unique=True)  # "{user_id}:{client key}"
    created_at = Column(DateTime, nullable=False, default=utcnow)
    settled_at = Column(DateTime, nullable=True)

    round = relationship("Round", back_populates="bets")


class Wallet(Base):
    __tablename__ = "wallets"

    user_id = Column(String(64), primary_key=True)
    balance = Column(MONEY, nullable=False, default=Decimal("0"))
    # 樂觀鎖：同一玩家的並發更新，後到者會得到 StaleDataError 而不是覆蓋
    version = Column(Integer, nullable=False)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __mapper_args__ = {"version_id_col": version}


class WalletTransaction(Base):
    __tablename__ = "wallet_transactions"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(64), ForeignKey("wallets.user_id"), nullable=False, index=True)
    type = Column(Enum(TransactionType), nullable=False)
    amount = Column(MONEY, nullable=False)
    idempotency_key = Column(String(160), nullable=False, unique=True)
    description = Column(String(255), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
