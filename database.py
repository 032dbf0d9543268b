from decimal import Decimal
from typing import List

from sqlalchemy import create_engine
from sqlalchemy.ext.declarative import declarative_base
from sqlalchemy.orm import sessionmaker, Session
from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic_settings import BaseSettings
from functools import lru_cache, wraps
import logging

from core.exceptions import WageringEngineException

logger = logging.getLogger(__name__)


class GameMode(BaseModel):
    """遊戲模式（發布後不可變更）"""
    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(min_length=1, max_length=32)
    name: str = Field(min_length=1)
    duration_seconds: int = Field(gt=0)


DEFAULT_GAME_MODES = [
    GameMode(id="blitz", name="Blitz", duration_seconds=30),
    GameMode(id="quick", name="Quick", duration_seconds=60),
    GameMode(id="classic", name="Classic", duration_seconds=180),
    GameMode(id="extended", name="Extended", duration_seconds=300),
]


class Settings(BaseSettings):
    database_url: str = "sqlite:///./wagering_engine.db"
    log_level: str = "INFO"

    # 回合時序
    game_modes: List[GameMode] = DEFAULT_GAME_MODES
    lock_buffer_seconds: int = 5
    first_period_number: int = 1

    # 背景排程
    start_scheduler: bool = True
    scheduler_tick_seconds: float = 1.0
    settlement_timeout_seconds: float = 10.0
    settlement_retry_base_seconds: float = 1.0
    settlement_retry_max_seconds: float = 60.0
    stuck_round_alert_seconds: int = 120

    # 賠率（暫定值，待產品規則確認）
    payout_number_multiplier: Decimal = Decimal("9")
    payout_red_green_multiplier: Decimal = Decimal("2")
    payout_violet_multiplier: Decimal = Decimal("4.5")

    class Config:
        env_file = ".env"

    @model_validator(mode="after")
    def check_modes(self):
        """
        載入時驗證模式目錄

        - mode id 不可重複
        - lock buffer 必須小於每個模式的回合長度（否則回合一開就鎖）
        """
        seen = set()
        for mode in self.game_modes:
            if mode.id in seen:
                raise ValueError(f"Duplicate game mode id: {mode.id}")
            seen.add(mode.id)
            if mode.duration_seconds <= self.lock_buffer_seconds:
                raise ValueError(
                    f"Mode {mode.id} duration {mode.duration_seconds}s must exceed "
                    f"lock buffer {self.lock_buffer_seconds}s"
                )
        if self.lock_buffer_seconds < 0:
            raise ValueError("lock_buffer_seconds must not be negative")
        return self


@lru_cache()
def get_settings():
    return Settings()


settings = get_settings()


def build_engine(database_url: str, **kwargs):
    """
    建立 SQLAlchemy engine

    SQLite 需要特殊設定：connect_args={"check_same_thread": False}
    這允許多執行緒存取同一個 SQLite 連線（API worker 與排程執行緒共用）
    """
    connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
    return create_engine(
        database_url,
        connect_args=connect_args,
        pool_pre_ping=True,
        **kwargs
    )


engine = build_engine(settings.database_url)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def get_db():
    """
    FastAPI dependency：提供 Database Session

    使用 yield 確保 session 在請求結束後會被關閉
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _find_session(args, kwargs):
    if 'db' in kwargs and isinstance(kwargs['db'], Session):
        return kwargs['db']
    for arg in args:
        if isinstance(arg, Session):
            return arg
    return None


def transactional(func):
    """
    一個函式 = 一個 transaction

    被包裝的函式正常結束就 commit；任何異常都先 rollback 再往上拋。
    引擎的業務拒絕（WageringEngineException）只記 warning，其他錯誤記 error 與 stack trace。

    範例：
        @transactional
        def _lock_round(self, db: Session, mode_id, period_number, now):
            round_obj = with_round_lock(mode_id, period_number, db).first()
            RoundStateMachine.transition(round_obj, RoundStatus.LOCKED, now)
            return round_obj

    限制：
        - 參數中要有一個 Session（位置或 keyword 皆可）
        - 函式內部只 flush，不自行 commit
    """
    @wraps(func)
    def wrapper(*args, **kwargs):
        db = _find_session(args, kwargs)

        if db is None:
            raise ValueError(
                f"@transactional requires a 'db: Session' argument, "
                f"but got args={args}, kwargs={kwargs}"
            )

        try:
            result = func(*args, **kwargs)
            db.commit()
            return result
        except WageringEngineException as e:
            # 業務規則拒絕：不是系統錯誤，不需要 stack trace
            logger.warning(f"Transaction rejected in {func.__name__}: {e}")
            db.rollback()
            raise
        except Exception as e:
            logger.error(f"Transaction failed in {func.__name__}: {e}", exc_info=True)
            db.rollback()
            raise

    return wrapper
