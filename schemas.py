"""
Pydantic Schemas：API 請求與回應格式
"""
from datetime import datetime
from decimal import Decimal
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from models import BetStatus, BetType, Color, RoundStatus, TransactionType


# ============ Game Mode ============

class GameModeResponse(BaseModel):
    id: str
    name: str
    duration_seconds: int


# ============ Round ============

class CurrentRoundResponse(BaseModel):
    mode_id: str
    period_number: int
    status: RoundStatus
    start_time: datetime
    lock_time: datetime
    end_time: datetime
    seconds_until_lock: int
    accepting_bets: bool


class RoundResponse(BaseModel):
    mode_id: str
    period_number: int
    status: RoundStatus
    start_time: datetime
    lock_time: datetime
    end_time: datetime
    closed_at: Optional[datetime] = None
    result_number: Optional[int] = None
    result_color: Optional[Color] = None
    was_manual: bool = False
    manual_result_pending: bool = False
    bet_count: int = 0
    player_count: int = 0
    total_staked: Decimal = Decimal("0.00")
    total_paid: Decimal = Decimal("0.00")
    house_net: Decimal = Decimal("0.00")


# ============ Bet ============

class BetPlace(BaseModel):
    user_id: str = Field(min_length=1, max_length=64)
    bet_type: BetType
    bet_value: str = Field(min_length=1, max_length=8)
    amount: Decimal = Field(gt=0)
    idempotency_key: Optional[str] = Field(default=None, max_length=128)


class BetResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    mode_id: str
    period_number: int
    bet_type: BetType
    bet_value: str
    amount: Decimal
    status: BetStatus
    profit: Decimal
    is_winner: Optional[bool] = None
    actual_win: Optional[Decimal] = None
    created_at: datetime
    settled_at: Optional[datetime] = None


class BetPlacedResponse(BaseModel):
    bet: BetResponse
    created: bool
    balance: Decimal


# ============ Wallet ============

class WalletResponse(BaseModel):
    user_id: str
    balance: Decimal


class DepositSubmit(BaseModel):
    amount: Decimal = Field(gt=0)
    idempotency_key: str = Field(min_length=1, max_length=128)


class TransactionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    type: TransactionType
    amount: Decimal
    description: Optional[str] = None
    created_at: datetime


# ============ Admin ============

class ManualResultSubmit(BaseModel):
    number: int = Field(ge=0, le=9)


class ManualResultResponse(BaseModel):
    mode_id: str
    period_number: int
    manual_result_number: int
    manual_result_color: Color


class SettlementResponse(BaseModel):
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
    house_net: Decimal = Decimal("0.00")


class BucketResponse(BaseModel):
    count: int
    amount: Decimal
    users: int


class LiveStatsResponse(BaseModel):
    active_game: Optional[str] = None
    mode_id: str
    period_number: Optional[int] = None
    total_bets: int = 0
    total_bet_amount: Decimal = Decimal("0.00")
    color_bets: Dict[str, BucketResponse] = {}
    number_bets: Dict[str, BucketResponse] = {}
    active_players: int = 0


class StuckRoundResponse(BaseModel):
    mode_id: str
    period_number: int
    locked_at: Optional[datetime] = None
    locked_seconds: int
