"""
Player API Endpoints

職責：
1. 玩家注單紀錄
2. 錢包餘額、入金、交易紀錄
"""
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session
import logging

from database import get_db, transactional
from schemas import BetResponse, WalletResponse, DepositSubmit, TransactionResponse
from core.engine import WageringEngine
from core.exceptions import ValidationError, TransientError
from services.balance_store import BalanceStore
from services.history_service import get_user_bet_history
from api.deps import get_engine

router = APIRouter(prefix="/api/users", tags=["players"])
logger = logging.getLogger(__name__)


@transactional
def _deposit(db: Session, store: BalanceStore, user_id: str, amount, idempotency_key: str):
    return store.deposit(db, user_id, amount, f"deposit:{user_id}:{idempotency_key}")


@router.get("/{user_id}/bets", response_model=List[BetResponse])
def get_user_bets(
    user_id: str,
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db)
):
    """玩家注單（新到舊，含未結算）"""
    try:
        return [BetResponse(**entry) for entry in get_user_bet_history(db, user_id, limit)]

    except Exception as e:
        logger.error(f"Failed to get bets for user {user_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.get("/{user_id}/wallet", response_model=WalletResponse)
def get_wallet(
    user_id: str,
    db: Session = Depends(get_db),
    engine: WageringEngine = Depends(get_engine)
):
    """目前餘額（沒有錢包視為 0）"""
    try:
        return WalletResponse(user_id=user_id, balance=engine.balance_store.get_balance(db, user_id))

    except Exception as e:
        logger.error(f"Failed to get wallet for user {user_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.post("/{user_id}/wallet/deposit", response_model=WalletResponse)
def deposit(
    user_id: str,
    deposit_data: DepositSubmit,
    db: Session = Depends(get_db),
    engine: WageringEngine = Depends(get_engine)
):
    """
    入金

    同一個 idempotency_key 重送只會入帳一次
    """
    try:
        balance = _deposit(db, engine.balance_store, user_id, deposit_data.amount, deposit_data.idempotency_key)

        logger.info(f"Deposit {deposit_data.amount} for user {user_id} ({deposit_data.idempotency_key})")
        return WalletResponse(user_id=user_id, balance=balance)

    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except TransientError as e:
        raise HTTPException(status_code=503, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to deposit for user {user_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.get("/{user_id}/wallet/transactions", response_model=List[TransactionResponse])
def get_transactions(
    user_id: str,
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db),
    engine: WageringEngine = Depends(get_engine)
):
    """交易紀錄（下注扣款、派彩、入金）"""
    try:
        return [
            TransactionResponse.model_validate(tx)
            for tx in engine.balance_store.get_transactions(db, user_id, limit)
        ]

    except Exception as e:
        logger.error(f"Failed to get transactions for user {user_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")
