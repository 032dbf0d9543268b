"""
Admin API Endpoints

職責：
1. 手動開獎（只限 LOCKED，每期一次）
2. 手動觸發結算（冪等，可用來重試卡住的回合）
3. 即時下注統計
4. 卡住的回合（LOCKED 超過上限仍未結算）

身分驗證不在這裡，由外部 gateway 負責
"""
from typing import List

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

import logging

from database import get_db
from schemas import (
    ManualResultSubmit,
    ManualResultResponse,
    SettlementResponse,
    LiveStatsResponse,
    BucketResponse,
    StuckRoundResponse,
)
from core.engine import WageringEngine
from core.exceptions import (
    UnknownModeError,
    RoundNotFound,
    ValidationError,
    StateConflictError,
    TransientError,
)
from services.payout_service import color_for_number
from api.deps import get_engine

router = APIRouter(prefix="/api/admin", tags=["admin"])
logger = logging.getLogger(__name__)


@router.get("/modes/{mode_id}/live-stats", response_model=LiveStatsResponse)
def get_live_stats(mode_id: str, engine: WageringEngine = Depends(get_engine)):
    """
    當前回合的即時下注統計

    沒有進行中的統計（剛鎖盤、尚未有新期）時回傳全零
    """
    try:
        engine.registry.get(mode_id)
        stats = engine.live_stats.snapshot(mode_id)
        if stats is None:
            return LiveStatsResponse(mode_id=mode_id)

        return LiveStatsResponse(
            active_game=stats.active_game,
            mode_id=stats.mode_id,
            period_number=stats.period_number,
            total_bets=stats.total_bets,
            total_bet_amount=stats.total_bet_amount,
            color_bets={
                k: BucketResponse(count=v.count, amount=v.amount, users=v.users)
                for k, v in stats.color_bets.items()
            },
            number_bets={
                k: BucketResponse(count=v.count, amount=v.amount, users=v.users)
                for k, v in stats.number_bets.items()
            },
            active_players=stats.active_players,
        )

    except UnknownModeError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to get live stats: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.post(
    "/modes/{mode_id}/rounds/{period_number}/manual-result",
    response_model=ManualResultResponse
)
def submit_manual_result(
    mode_id: str,
    period_number: int,
    result_data: ManualResultSubmit,
    db: Session = Depends(get_db),
    engine: WageringEngine = Depends(get_engine)
):
    """
    手動設定開獎號碼

    前置條件：
    - 回合必須是 LOCKED
    - 這一期尚未設定過

    結算時會使用這個號碼，並標記 was_manual=true
    """
    try:
        engine.resolver.submit_manual_result(db, mode_id, period_number, result_data.number)

        return ManualResultResponse(
            mode_id=mode_id,
            period_number=period_number,
            manual_result_number=result_data.number,
            manual_result_color=color_for_number(result_data.number)
        )

    except (UnknownModeError, RoundNotFound) as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except StateConflictError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to submit manual result: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.post("/modes/{mode_id}/rounds/{period_number}/settle", response_model=SettlementResponse)
def settle_round(
    mode_id: str,
    period_number: int,
    db: Session = Depends(get_db),
    engine: WageringEngine = Depends(get_engine)
):
    """
    觸發結算（冪等）

    - LOCKED：結算並關閉，開下一期
    - CLOSED：不做事，回傳既有結果
    - OPEN：不做事（settled=false）
    """
    try:
        report = engine.settlement.settle(db, mode_id, period_number)

        return SettlementResponse(
            mode_id=report.mode_id,
            period_number=report.period_number,
            status=report.status,
            settled=report.settled,
            result_number=report.result_number,
            result_color=report.result_color,
            was_manual=report.was_manual,
            bet_count=report.bet_count,
            winner_count=report.winner_count,
            total_staked=report.total_staked,
            total_paid=report.total_paid,
            house_net=report.house_net,
        )

    except (UnknownModeError, RoundNotFound) as e:
        raise HTTPException(status_code=404, detail=str(e))
    except StateConflictError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except TransientError as e:
        raise HTTPException(status_code=503, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to settle round: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.get("/rounds/stuck", response_model=List[StuckRoundResponse])
def get_stuck_rounds(db: Session = Depends(get_db), engine: WageringEngine = Depends(get_engine)):
    """LOCKED 超過 stuck_round_alert_seconds 仍未結算的回合"""
    try:
        now = engine.clock.now()
        rounds = engine.clock.stuck_rounds(db, engine.settings.stuck_round_alert_seconds, now)
        return [
            StuckRoundResponse(
                mode_id=r.mode_id,
                period_number=r.period_number,
                locked_at=r.locked_at,
                locked_seconds=int((now - r.locked_at).total_seconds()) if r.locked_at else 0,
            )
            for r in rounds
        ]

    except Exception as e:
        logger.error(f"Failed to get stuck rounds: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")
