"""
Round API Endpoints

重點：
1. 所有業務邏輯集中在 core（RoundClock / BetLedger）
2. 下注冪等：帶 idempotency_key 重送不會重複扣款
3. 前端靠 /rounds/current 短輪詢倒數與狀態
"""
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

import logging

from database import get_db
from schemas import (
    GameModeResponse,
    CurrentRoundResponse,
    RoundResponse,
    BetPlace,
    BetPlacedResponse,
    BetResponse,
)
from core.engine import WageringEngine
from core.exceptions import (
    UnknownModeError,
    RoundNotFound,
    ValidationError,
    StateConflictError,
    TransientError,
)
from services.history_service import get_round_history, get_round_summary
from api.deps import get_engine

router = APIRouter(prefix="/api/modes", tags=["rounds"])
logger = logging.getLogger(__name__)


@router.get("", response_model=List[GameModeResponse])
def list_modes(engine: WageringEngine = Depends(get_engine)):
    """列出所有遊戲模式"""
    return [
        GameModeResponse(id=m.id, name=m.name, duration_seconds=m.duration_seconds)
        for m in engine.registry.all()
    ]


@router.get("/{mode_id}/rounds/current", response_model=CurrentRoundResponse)
def get_current_round(mode_id: str, engine: WageringEngine = Depends(get_engine)):
    """
    取得當前回合資訊

    返回：
        - period_number: 期號
        - status: OPEN / LOCKED
        - seconds_until_lock: 距離鎖盤秒數（已鎖盤為 0）
        - accepting_bets: 是否還能下注
    """
    try:
        pointer = engine.clock.current(mode_id)
        if pointer is None:
            raise HTTPException(status_code=404, detail="No active round")

        remaining = (pointer.lock_time - engine.clock.now()).total_seconds()
        return CurrentRoundResponse(
            mode_id=pointer.mode_id,
            period_number=pointer.period_number,
            status=pointer.status,
            start_time=pointer.start_time,
            lock_time=pointer.lock_time,
            end_time=pointer.end_time,
            seconds_until_lock=max(0, int(remaining)),
            accepting_bets=pointer.is_open,
        )

    except HTTPException:
        raise
    except UnknownModeError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to get current round: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.get("/{mode_id}/rounds/history", response_model=List[RoundResponse])
def get_history(
    mode_id: str,
    limit: int = Query(20, ge=1, le=200),
    db: Session = Depends(get_db),
    engine: WageringEngine = Depends(get_engine)
):
    """最近已結算的回合（新到舊）"""
    try:
        engine.registry.get(mode_id)
        return [RoundResponse(**entry) for entry in get_round_history(db, mode_id, limit)]

    except UnknownModeError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to get round history: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.get("/{mode_id}/rounds/{period_number}", response_model=RoundResponse)
def get_round(
    mode_id: str,
    period_number: int,
    db: Session = Depends(get_db),
    engine: WageringEngine = Depends(get_engine)
):
    """單一回合（含注單彙總）"""
    try:
        round_obj = engine.clock.get_round(db, mode_id, period_number)
        return RoundResponse(**get_round_summary(db, round_obj))

    except (UnknownModeError, RoundNotFound) as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to get round: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.post("/{mode_id}/rounds/{period_number}/bets", response_model=BetPlacedResponse)
def place_bet(
    mode_id: str,
    period_number: int,
    bet_data: BetPlace,
    db: Session = Depends(get_db),
    engine: WageringEngine = Depends(get_engine)
):
    """
    下注

    流程：
    1. BetLedger.place_bet()：驗證 + 扣款 + 寫注單（同一個 transaction）
    2. 回傳注單與最新餘額

    錯誤對應：
        - 404：模式或期號不存在
        - 400：下注內容、金額不合法或餘額不足
        - 409：回合不在下注時段
        - 503：餘額更新衝突，可用同一個 idempotency_key 重試
    """
    try:
        bet, created = engine.ledger.place_bet(
            db,
            mode_id,
            period_number,
            bet_data.user_id,
            bet_data.bet_type,
            bet_data.bet_value,
            bet_data.amount,
            idempotency_key=bet_data.idempotency_key
        )
        balance = engine.balance_store.get_balance(db, bet.user_id)

        return BetPlacedResponse(
            bet=BetResponse.model_validate(bet),
            created=created,
            balance=balance
        )

    except (UnknownModeError, RoundNotFound) as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except StateConflictError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except TransientError as e:
        raise HTTPException(status_code=503, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to place bet: {e}", exc_info=True)
        db.rollback()
        raise HTTPException(status_code=500, detail="Internal error")
