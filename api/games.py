"""
Games API：公開的回合查詢（需登入）
"""
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

import logging

from api.deps import get_current_user, get_db, get_engine
from api.errors import read_with_retry, to_http
from api.presenters import round_response
from core.engine import RoundEngine
from core.exceptions import RoundEngineError
from models import RoundStatus
from schemas import CurrentRoundResponse, RoundListResponse, RoundResponse, WinnerRow

router = APIRouter(prefix="/games", tags=["games"], dependencies=[Depends(get_current_user)])
logger = logging.getLogger(__name__)


@router.get("/current", response_model=CurrentRoundResponse)
def get_current_round(db: Session = Depends(get_db), engine: RoundEngine = Depends(get_engine)):
    """
    取得當前回合

    返回：
        - round：目前 active 的回合（沒有則為下一個 pending，或 null）
        - seconds_remaining：距離 end_at（或 pending 回合的 start_at）的秒數
        - is_betting_open
    """
    clock = engine.ctx.clock

    def load():
        round_obj = engine.rounds.current_round(db)
        now = clock.now()
        if not round_obj:
            return CurrentRoundResponse(
                round=None, server_time=clock.civil_string(now), seconds_remaining=0, is_betting_open=False
            )
        if round_obj.status == RoundStatus.ACTIVE:
            target = clock.parse_civil(round_obj.end_at)
        else:
            target = clock.parse_civil(round_obj.start_at)
        remaining = max(0, int((target - now).total_seconds()))
        return CurrentRoundResponse(
            round=round_response(round_obj),
            server_time=clock.civil_string(now),
            seconds_remaining=remaining,
            is_betting_open=round_obj.status == RoundStatus.ACTIVE and remaining > 0,
        )

    try:
        return read_with_retry(load)
    except RoundEngineError as e:
        raise to_http(e)
    except Exception as e:
        logger.error(f"Failed to get current round: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.get("/by-date", response_model=RoundListResponse)
def get_rounds_by_date(
    date: str = Query(..., description="YYYY-MM-DD"),
    db: Session = Depends(get_db),
    engine: RoundEngine = Depends(get_engine),
):
    try:
        rounds = read_with_retry(lambda: engine.rounds.rounds_by_date(db, date))
        return RoundListResponse(rounds=[round_response(r) for r in rounds])
    except RoundEngineError as e:
        raise to_http(e)
    except Exception as e:
        logger.error(f"Failed to list rounds by date: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.get("/recent-winners", response_model=list[WinnerRow])
def get_recent_winners(
    limit: int = Query(10, ge=1, le=100),
    db: Session = Depends(get_db),
    engine: RoundEngine = Depends(get_engine),
):
    try:
        rounds = read_with_retry(lambda: engine.rounds.recent_winners(db, limit))
        return [
            WinnerRow(
                round_id=r.round_id,
                winning_card=r.winning_card,
                start_at=r.start_at,
                settlement_completed_at=r.settlement_completed_at,
            )
            for r in rounds
        ]
    except RoundEngineError as e:
        raise to_http(e)
    except Exception as e:
        logger.error(f"Failed to list recent winners: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.get("/{round_id}", response_model=RoundResponse)
def get_round(round_id: str, db: Session = Depends(get_db), engine: RoundEngine = Depends(get_engine)):
    try:
        return round_response(read_with_retry(lambda: engine.rounds.get_round(db, round_id)))
    except RoundEngineError as e:
        raise to_http(e)
    except Exception as e:
        logger.error(f"Failed to get round {round_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")
