"""
Bets API：下注、領獎、取消、查詢

重點：
1. place 冪等：x-idempotency-key 相同 → 回傳原注單（200, duplicate=true）
2. claim 單次：並發領獎只有一個成功，其他 AlreadyClaimed
3. 取消與否只看取消帳本；顯示狀態 cancelled 覆蓋原本的 status
"""
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response
from sqlalchemy.orm import Session

import logging

from api.deps import client_meta, get_current_user, get_db, get_engine
from api.errors import read_with_retry, to_http
from api.presenters import line_responses, round_response, slip_response
from core.engine import RoundEngine
from core.exceptions import Forbidden, RoundEngineError
from models import BetSlip, User
from schemas import (
    CancelRequest,
    CancelResponse,
    ClaimRequest,
    ClaimResponse,
    PlaceBetRequest,
    PlacementResponse,
    SlipDetailResponse,
    SlipListResponse,
    UserStatsResponse,
)
from services import aggregate_service
from services.auth_service import is_operator

router = APIRouter(prefix="/bets", tags=["bets"])
logger = logging.getLogger(__name__)


@router.post("/place", response_model=PlacementResponse, status_code=201)
def place_bet(
    body: PlaceBetRequest,
    response: Response,
    idempotency_key: Optional[str] = Header(None, alias="x-idempotency-key"),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    engine: RoundEngine = Depends(get_engine),
):
    """
    下注

    返回：
        201：新注單
        200：重送（duplicate=true），餘額不變
    """
    try:
        result = engine.wagers.place(
            db,
            user.id,
            body.round_id,
            [{"card": bet.card, "stake": bet.stake} for bet in body.bets],
            idempotency_key=idempotency_key,
        )
        if result.duplicate:
            response.status_code = 200

        slip = result.slip
        return PlacementResponse(
            slip_id=slip.slip_id,
            barcode=slip.barcode,
            round_id=slip.round_id,
            total_stake=slip.total_stake,
            new_balance=result.new_balance,
            duplicate=result.duplicate,
            created_at=slip.created_at,
            bets=line_responses(slip),
        )

    except RoundEngineError as e:
        raise to_http(e)
    except Exception as e:
        logger.error(f"Failed to place bet: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.post("/claim", response_model=ClaimResponse)
def claim(
    body: ClaimRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    engine: RoundEngine = Depends(get_engine),
):
    """以 slip_id 或條碼領獎"""
    try:
        result = engine.wagers.claim(db, user.id, body.identifier, is_operator=is_operator(user))
        return ClaimResponse(
            slip_id=result.slip.slip_id,
            barcode=result.slip.barcode,
            amount=result.amount,
            new_balance=result.new_balance,
        )
    except RoundEngineError as e:
        raise to_http(e)
    except Exception as e:
        logger.error(f"Failed to claim: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.post("/scan-and-claim/{identifier}", response_model=ClaimResponse)
def scan_and_claim(
    identifier: str,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    engine: RoundEngine = Depends(get_engine),
):
    """已領過的注單回傳 already_claimed=true"""
    try:
        result = engine.wagers.scan_and_claim(db, user.id, identifier, is_operator=is_operator(user))
        return ClaimResponse(
            slip_id=result.slip.slip_id,
            barcode=result.slip.barcode,
            amount=result.amount,
            new_balance=result.new_balance,
            already_claimed=result.already_claimed,
        )
    except RoundEngineError as e:
        raise to_http(e)
    except Exception as e:
        logger.error(f"Failed to scan and claim: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.post("/cancel/{identifier}", response_model=CancelResponse)
def cancel(
    identifier: str,
    request: Request,
    body: Optional[CancelRequest] = None,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    engine: RoundEngine = Depends(get_engine),
):
    ip, ua = client_meta(request)
    try:
        result = engine.wagers.cancel(
            db,
            identifier,
            actor=user.id,
            is_operator=False,
            reason=body.reason if body else None,
            ip=ip,
            ua=ua,
        )
        return CancelResponse(
            slip_id=result.slip.slip_id,
            barcode=result.slip.barcode,
            refund=result.refund,
            new_balance=result.new_balance,
            status="cancelled",
        )
    except RoundEngineError as e:
        raise to_http(e)
    except Exception as e:
        logger.error(f"Failed to cancel slip: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.get("/slip/{identifier}", response_model=SlipDetailResponse)
def get_slip(
    identifier: str,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    engine: RoundEngine = Depends(get_engine),
):
    """注單明細（本人或操作員）"""
    def load():
        slip = engine.wagers.find_slip(db, identifier)
        if slip.user_id != user.id and not is_operator(user):
            raise Forbidden("Slip belongs to another user")
        cancelled = aggregate_service.is_cancelled(db, slip.slip_id)
        return SlipDetailResponse(slip=slip_response(slip, cancelled), round=round_response(slip.round))

    try:
        return read_with_retry(load)
    except RoundEngineError as e:
        raise to_http(e)
    except Exception as e:
        logger.error(f"Failed to get slip: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.get("/my-bets", response_model=SlipListResponse)
def my_bets(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    def load():
        query = db.query(BetSlip).filter(BetSlip.user_id == user.id)
        total = query.count()
        slips = (
            query.order_by(BetSlip.created_at.desc(), BetSlip.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        cancelled = aggregate_service.cancelled_slip_ids(db, [slip.slip_id for slip in slips])
        return SlipListResponse(
            slips=[slip_response(slip, slip.slip_id in cancelled) for slip in slips],
            page=page,
            limit=limit,
            total=total,
        )

    try:
        return read_with_retry(load)
    except RoundEngineError as e:
        raise to_http(e)
    except Exception as e:
        logger.error(f"Failed to list bets: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.get("/stats", response_model=UserStatsResponse)
def stats(
    date_from: Optional[str] = Query(None, description="YYYY-MM-DD"),
    date_to: Optional[str] = Query(None, description="YYYY-MM-DD, inclusive"),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    engine: RoundEngine = Depends(get_engine),
):
    """下注統計（取消的注單不計入金額）"""
    clock = engine.ctx.clock
    try:
        lower = clock.day_bounds(date_from)[0] if date_from else None
        upper = clock.day_bounds(date_to)[1] if date_to else None
        data = read_with_retry(lambda: aggregate_service.user_stats(db, user.id, lower, upper))
        return UserStatsResponse(**data)
    except RoundEngineError as e:
        raise to_http(e)
    except Exception as e:
        logger.error(f"Failed to get stats: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")
