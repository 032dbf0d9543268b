"""
BetLedger：下注與注單查詢

職責：
1. 驗證下注內容（模式、期號、類型、金額）
2. 扣本金 + 寫入 PENDING 注單（同一個 transaction，全有或全無）
3. 鎖盤後提供凍結的注單集合給結算

冪等性：
- 呼叫端可以帶 idempotency_key（以玩家為範圍），重送同一個 key 會拿回原本的注單，
  不會重複扣款；同一個 key 送不同的下注內容則拒絕
"""
import logging
from decimal import Decimal, InvalidOperation
from typing import List, Optional, Tuple

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from database import transactional
from models import Bet, BetType, BetStatus, Round, RoundStatus, TransactionType, new_id
from core.round_clock import RoundClock
from core.live_stats import LiveStatsAggregator
from core.locks import with_round_share_lock
from core.exceptions import (
    BalanceStoreUnavailable,
    IdempotencyKeyConflict,
    InvalidBetAmountError,
    InvalidBetValueError,
    RoundNotFound,
    RoundNotOpenError,
    RoundStillOpenError,
)
from services.balance_store import BalanceStore, bet_key
from services.payout_service import COLOR_VALUES, NUMBER_VALUES, quantize_money

logger = logging.getLogger(__name__)


def normalize_bet(bet_type, bet_value) -> Tuple[BetType, str]:
    """
    驗證並正規化下注內容

    - color：RED / GREEN / VIOLET（不分大小寫，存成大寫）
    - number："0" 到 "9"

    異常：
        InvalidBetValueError: 類型未知或內容與類型不符
    """
    try:
        bet_type = BetType(bet_type)
    except ValueError:
        raise InvalidBetValueError(f"Unknown bet type: {bet_type!r}")

    value = str(bet_value).strip()
    if bet_type == BetType.COLOR:
        value = value.upper()
        if value not in COLOR_VALUES:
            raise InvalidBetValueError(
                f"Color bet must be one of {', '.join(COLOR_VALUES)}, got {bet_value!r}"
            )
    elif value not in NUMBER_VALUES:
        raise InvalidBetValueError(f"Number bet must be a single digit 0-9, got {bet_value!r}")

    return bet_type, value


def normalize_amount(amount) -> Decimal:
    """金額必須 > 0 且最多兩位小數"""
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError):
        raise InvalidBetAmountError(f"Invalid bet amount: {amount!r}")

    if not value.is_finite() or value <= 0:
        raise InvalidBetAmountError(f"Bet amount must be positive, got {amount}")
    if value != quantize_money(value):
        raise InvalidBetAmountError(f"Bet amount supports at most 2 decimals, got {amount}")
    return quantize_money(value)


def request_key(user_id: str, idempotency_key: str) -> str:
    """呼叫端的 key 以玩家為範圍，不同玩家用同一個 key 互不影響"""
    return f"{user_id}:{idempotency_key}"


class BetLedger:
    """注單帳本"""

    def __init__(self, clock: RoundClock, balance_store: BalanceStore, live_stats: LiveStatsAggregator):
        self.clock = clock
        self.balance_store = balance_store
        self.live_stats = live_stats

    def place_bet(
        self,
        db: Session,
        mode_id: str,
        period_number: int,
        user_id: str,
        bet_type,
        bet_value,
        amount,
        idempotency_key: Optional[str] = None
    ) -> Tuple[Bet, bool]:
        """
        下注

        流程：
        1. 驗證模式、下注內容、金額（不需要鎖）
        2. 進入模式 gate，確認指標仍指向這一期且為 OPEN
        3. 同一個 transaction：扣本金 + 寫入注單
        4. commit 之後更新即時統計（仍在 gate 內，鎖盤的 reset 不會插隊）

        參數：
            db: SQLAlchemy Session
            mode_id: 遊戲模式
            period_number: 期號
            user_id: 玩家
            bet_type: "color" 或 "number"
            bet_value: 顏色或數字
            amount: 下注金額
            idempotency_key: 呼叫端重試用的識別（可選）

        返回：
            (Bet, created_new) tuple，重送同一個 key 時 created_new=False

        異常：
            UnknownModeError: 模式不存在
            InvalidBetValueError / InvalidBetAmountError: 下注內容不合法
            RoundNotOpenError: 回合不在下注時段
            InsufficientBalanceError: 餘額不足（餘額不變、不建立注單）
            IdempotencyKeyConflict: 同一個 key 已用在內容不同的注單
            BalanceStoreUnavailable: 同一玩家的並發異動衝突，可重試
        """
        self.clock.registry.get(mode_id)
        bet_type, bet_value = normalize_bet(bet_type, bet_value)
        amount = normalize_amount(amount)

        stored_key = request_key(user_id, idempotency_key) if idempotency_key else None
        if stored_key:
            existing = self._find_by_key(db, stored_key)
            if existing is not None:
                self._check_same_request(existing, mode_id, period_number, bet_type, bet_value, amount)
                logger.info(f"Bet {existing.id} reused for idempotency key {stored_key}")
                return existing, False

        with self.clock.gate(mode_id):
            if not self.clock.is_open(mode_id, period_number):
                pointer = self.clock.current(mode_id)
                status = None
                if pointer is not None and pointer.period_number == period_number:
                    status = pointer.status.value
                raise RoundNotOpenError(mode_id, period_number, status)

            try:
                bet = self._place_bet(
                    db, mode_id, period_number, user_id,
                    bet_type, bet_value, amount, stored_key
                )
            except IntegrityError:
                # 同一個 key 的並發重送：另一個請求已經寫入
                existing = self._find_by_key(db, stored_key) if stored_key else None
                if existing is None:
                    raise
                self._check_same_request(existing, mode_id, period_number, bet_type, bet_value, amount)
                return existing, False
            except OperationalError as e:
                # 同一玩家在另一個模式同時下注，資料庫鎖衝突
                raise BalanceStoreUnavailable(
                    f"Bet for {user_id} on {mode_id}#{period_number} failed: {e}"
                ) from e
            self.live_stats.record_bet(bet)

        logger.info(
            f"Bet {bet.id} placed: user={user_id} {mode_id}#{period_number} "
            f"{bet_type.value}={bet_value} amount={amount}"
        )
        return bet, True

    @transactional
    def _place_bet(
        self,
        db: Session,
        mode_id: str,
        period_number: int,
        user_id: str,
        bet_type: BetType,
        bet_value: str,
        amount: Decimal,
        idempotency_key: Optional[str]
    ) -> Bet:
        # 多行程部署時，FOR SHARE 讓下注與鎖盤的 FOR UPDATE 互斥
        round_obj = with_round_share_lock(mode_id, period_number, db).first()
        if round_obj is None:
            raise RoundNotFound(mode_id, period_number)
        if round_obj.status != RoundStatus.OPEN:
            raise RoundNotOpenError(mode_id, period_number, round_obj.status.value)

        bet_id = new_id()
        self.balance_store.apply_delta(
            db,
            user_id,
            -amount,
            bet_key(mode_id, period_number, user_id, bet_id),
            TransactionType.BET,
            description=f"Bet on {bet_value} - {mode_id} #{period_number}"
        )

        bet = Bet(
            id=bet_id,
            user_id=user_id,
            round_id=round_obj.id,
            mode_id=mode_id,
            period_number=period_number,
            bet_type=bet_type,
            bet_value=bet_value,
            amount=amount,
            status=BetStatus.PENDING,
            profit=Decimal("0.00"),
            idempotency_key=idempotency_key,
        )
        db.add(bet)
        db.flush()
        return bet

    def _find_by_key(self, db: Session, stored_key: str) -> Optional[Bet]:
        return db.query(Bet).filter(Bet.idempotency_key == stored_key).first()

    @staticmethod
    def _check_same_request(bet: Bet, mode_id: str, period_number: int,
                            bet_type: BetType, bet_value: str, amount: Decimal) -> None:
        same = (
            bet.mode_id == mode_id
            and bet.period_number == period_number
            and bet.bet_type == bet_type
            and bet.bet_value == bet_value
            and Decimal(bet.amount) == amount
        )
        if not same:
            raise IdempotencyKeyConflict(
                f"Idempotency key already used for bet {bet.id} "
                f"({bet.mode_id}#{bet.period_number} {bet.bet_type.value}={bet.bet_value} "
                f"amount={bet.amount})"
            )

    def get_bets_for_round(self, db: Session, mode_id: str, period_number: int) -> List[Bet]:
        """
        取得一期的全部注單（凍結集合）

        只有 LOCKED 或 CLOSED 的回合可以查，OPEN 時注單集合還會變動

        異常：
            RoundNotFound: 期號不存在
            RoundStillOpenError: 回合仍在下注中
        """
        round_obj = self.clock.get_round(db, mode_id, period_number)
        if round_obj.status == RoundStatus.OPEN:
            raise RoundStillOpenError(mode_id, period_number)
        return self._bets_of(db, round_obj)

    def _bets_of(self, db: Session, round_obj: Round) -> List[Bet]:
        return db.query(Bet).filter(
            Bet.mode_id == round_obj.mode_id,
            Bet.period_number == round_obj.period_number
        ).order_by(Bet.created_at, Bet.id).all()

