"""
Balance Store：玩家餘額與交易紀錄

所有異動都走 apply_delta，並且必須帶一個穩定的 idempotency key：
同一個 key 第二次出現時不會再改餘額（重試安全）

apply_delta 不 commit，只 flush：
- 下注時與 Bet 寫入同一個 transaction
- 結算時與所有 Bet 更新、Round 關閉同一個 transaction
"""
import logging
from decimal import Decimal
from typing import List, Optional

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from models import Wallet, WalletTransaction, TransactionType
from core.locks import with_wallet_lock
from core.exceptions import InsufficientBalanceError, BalanceStoreUnavailable, InvalidBetAmountError
from services.payout_service import quantize_money

logger = logging.getLogger(__name__)


def bet_key(mode_id: str, period_number: int, user_id: str, bet_id: str) -> str:
    return f"{mode_id}:{period_number}:{user_id}:bet:{bet_id}"


def win_key(mode_id: str, period_number: int, user_id: str) -> str:
    return f"{mode_id}:{period_number}:{user_id}:win"


class BalanceStore:
    """SQL 實作的 Balance Store"""

    def get_balance(self, db: Session, user_id: str) -> Decimal:
        wallet = db.query(Wallet).filter(Wallet.user_id == user_id).first()
        if wallet is None:
            return Decimal("0.00")
        return quantize_money(wallet.balance)

    def find_transaction(self, db: Session, idempotency_key: str) -> Optional[WalletTransaction]:
        return db.query(WalletTransaction).filter(
            WalletTransaction.idempotency_key == idempotency_key
        ).first()

    def apply_delta(
        self,
        db: Session,
        user_id: str,
        amount: Decimal,
        idempotency_key: str,
        tx_type: TransactionType,
        description: Optional[str] = None
    ) -> Decimal:
        """
        異動餘額（正數入帳、負數扣款）

        流程：
        1. idempotency key 已存在 -> 直接返回目前餘額（不重複異動）
        2. 鎖定 Wallet（同一玩家的異動排隊進行）
        3. 扣款時檢查餘額，不足則拒絕
        4. 更新餘額並寫入交易紀錄

        參數：
            db: SQLAlchemy Session（由呼叫者管理 transaction）
            user_id: 玩家 id
            amount: 異動金額（有正負號）
            idempotency_key: 同一筆異動的穩定識別
            tx_type: 交易類型
            description: 顯示用說明

        返回：
            異動後餘額

        異常：
            InsufficientBalanceError: 扣款金額大於可用餘額
            BalanceStoreUnavailable: 並發更新衝突或資料庫暫時不可用（可重試）
        """
        amount = quantize_money(amount)
        if amount == 0:
            raise InvalidBetAmountError("Balance delta must not be zero")

        existing = self.find_transaction(db, idempotency_key)
        if existing is not None:
            logger.info(f"Balance delta {idempotency_key} already applied, skipping")
            return self.get_balance(db, user_id)

        try:
            wallet = with_wallet_lock(user_id, db).first()
            if wallet is None:
                wallet = Wallet(user_id=user_id, balance=Decimal("0.00"))
                db.add(wallet)
                db.flush()

            available = quantize_money(wallet.balance or 0)
            if amount < 0 and available < -amount:
                raise InsufficientBalanceError(user_id, -amount, available)

            wallet.balance = available + amount
            db.add(WalletTransaction(
                user_id=user_id,
                type=tx_type,
                amount=amount,
                idempotency_key=idempotency_key,
                description=description
            ))
            db.flush()
        except (StaleDataError, OperationalError) as e:
            raise BalanceStoreUnavailable(
                f"Balance update for {user_id} ({idempotency_key}) failed: {e}"
            ) from e

        return quantize_money(wallet.balance)

    def deposit(self, db: Session, user_id: str, amount: Decimal, idempotency_key: str) -> Decimal:
        """入金（管理員加值或測試資金），金額必須 > 0"""
        amount = quantize_money(amount)
        if amount <= 0:
            raise InvalidBetAmountError(f"Deposit amount must be positive, got {amount}")
        return self.apply_delta(
            db, user_id, amount, idempotency_key,
            TransactionType.DEPOSIT, description="Deposit"
        )

    def get_transactions(self, db: Session, user_id: str, limit: int = 50) -> List[WalletTransaction]:
        return (
            db.query(WalletTransaction)
            .filter(WalletTransaction.user_id == user_id)
            .order_by(WalletTransaction.created_at.desc())
            .limit(limit)
            .all()
        )
