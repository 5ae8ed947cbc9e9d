"""
Admin API：回合管理、開獎、設定、稽核（需要 admin / operator 角色）
"""
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

import logging

from api.deps import client_meta, get_db, get_engine, require_operator
from api.errors import read_with_retry, to_http
from api.presenters import round_response
from core.engine import RoundEngine
from core.exceptions import RoundEngineError
from models import RoundStatus, SettlementStatus, User
from schemas import (
    AdminRoundListResponse,
    AdminRoundRow,
    AuditLogResponse,
    AuditRow,
    CancelRequest,
    CancelResponse,
    LiveSettlementResponse,
    RoundStatsResponse,
    SettingsLogResponse,
    SettingsLogRow,
    SettingsResponse,
    SettleRequest,
    SettlementDecisionResponse,
    SettlementResponse,
)
from services import aggregate_service, audit_service

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_operator)])
logger = logging.getLogger(__name__)


# ============ Games ============

@router.get("/games", response_model=AdminRoundListResponse)
def list_games(
    date: Optional[str] = Query(None, description="YYYY-MM-DD"),
    status: Optional[RoundStatus] = Query(None),
    settlement_status: Optional[SettlementStatus] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
    engine: RoundEngine = Depends(get_engine),
):
    """
    回合列表

    排序：active → pending（由近到遠）→ completed（由新到舊）
    total_wagered 不含取消的注單
    """
    def load():
        rounds, total = engine.rounds.list_rounds(
            db, day=date, status=status, settlement_status=settlement_status, page=page, limit=limit
        )
        wagered = aggregate_service.wagered_by_round(db, [r.round_id for r in rounds])
        rows = [
            AdminRoundRow(**round_response(r).model_dump(), total_wagered=wagered[r.round_id])
            for r in rounds
        ]
        return AdminRoundListResponse(rounds=rows, page=page, limit=limit, total=total)

    try:
        return read_with_retry(load)
    except RoundEngineError as e:
        raise to_http(e)
    except Exception as e:
        logger.error(f"Failed to list games: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.get("/games/live-settlement", response_model=LiveSettlementResponse)
def live_settlement(
    user_id: Optional[int] = Query(None),
    db: Session = Depends(get_db),
    engine: RoundEngine = Depends(get_engine),
):
    """
    即時開獎面板（前端每 5 秒以上輪詢一次）

    唯讀：回合狀態推進由 scheduler 負責，這裡不會改任何資料
    """
    try:
        return LiveSettlementResponse(**read_with_retry(lambda: engine.live_settlement(db, user_id)))
    except RoundEngineError as e:
        raise to_http(e)
    except Exception as e:
        logger.error(f"Failed to load live settlement: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.get("/games/{round_id}/stats", response_model=RoundStatsResponse)
def game_stats(round_id: str, db: Session = Depends(get_db), engine: RoundEngine = Depends(get_engine)):
    def load():
        engine.rounds.get_round(db, round_id)
        return RoundStatsResponse(**aggregate_service.round_totals(db, round_id))

    try:
        return read_with_retry(load)
    except RoundEngineError as e:
        raise to_http(e)
    except Exception as e:
        logger.error(f"Failed to get stats for round {round_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.get("/games/{round_id}/settlement-decision", response_model=SettlementDecisionResponse)
def settlement_decision(round_id: str, db: Session = Depends(get_db), engine: RoundEngine = Depends(get_engine)):
    """每張卡開出時的盈虧預覽與建議卡片"""
    def load():
        round_obj = engine.rounds.get_round(db, round_id)
        return SettlementDecisionResponse(**engine.settlement.decision(db, round_obj))

    try:
        return read_with_retry(load)
    except RoundEngineError as e:
        raise to_http(e)
    except Exception as e:
        logger.error(f"Failed to build settlement decision for {round_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.post("/games/{round_id}/settle", response_model=SettlementResponse)
def settle_game(
    round_id: str,
    body: SettleRequest,
    request: Request,
    operator: User = Depends(require_operator),
    db: Session = Depends(get_db),
    engine: RoundEngine = Depends(get_engine),
):
    """
    手動開獎

    成功後該回合的鬧鐘會被取消；已結算 → 400 AlreadySettled
    """
    ip, ua = client_meta(request)
    try:
        summary = engine.operator_settle(db, round_id, body.winning_card, actor=operator.id, ip=ip, ua=ua)
        return SettlementResponse(
            round_id=summary.round_id,
            winning_card=summary.winning_card,
            winning_slips=summary.winning_slips,
            losing_slips=summary.losing_slips,
            total_payout=summary.total_payout,
            multiplier=summary.multiplier,
            actor=summary.actor,
        )
    except RoundEngineError as e:
        raise to_http(e)
    except Exception as e:
        logger.error(f"Failed to settle round {round_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


# ============ Slips ============

@router.post("/slips/{identifier}/cancel", response_model=CancelResponse)
def cancel_slip(
    identifier: str,
    request: Request,
    body: Optional[CancelRequest] = None,
    operator: User = Depends(require_operator),
    db: Session = Depends(get_db),
    engine: RoundEngine = Depends(get_engine),
):
    ip, ua = client_meta(request)
    try:
        result = engine.wagers.cancel(
            db,
            identifier,
            actor=operator.id,
            is_operator=True,
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
        logger.error(f"Failed to cancel slip {identifier}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


# ============ Settings ============

@router.get("/settings", response_model=SettingsResponse)
def get_settings(db: Session = Depends(get_db), engine: RoundEngine = Depends(get_engine)):
    try:
        return SettingsResponse(settings=read_with_retry(lambda: engine.ctx.settings.all(db)))
    except RoundEngineError as e:
        raise to_http(e)
    except Exception as e:
        logger.error(f"Failed to get settings: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.put("/settings", response_model=SettingsResponse)
def update_settings(
    request: Request,
    changes: Dict[str, Any] = Body(...),
    operator: User = Depends(require_operator),
    db: Session = Depends(get_db),
    engine: RoundEngine = Depends(get_engine),
):
    """
    更新設定（未知 key → 400 UnknownKey，整批不寫入）

    每個 key 都會寫一筆 settings_logs（previous / new / admin / ip / ua）
    """
    ip, ua = client_meta(request)
    try:
        values = engine.ctx.settings.update(db, changes, actor=operator.id, ip=ip, ua=ua)
        return SettingsResponse(settings=values)
    except RoundEngineError as e:
        raise to_http(e)
    except Exception as e:
        logger.error(f"Failed to update settings: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.get("/settings/logs", response_model=SettingsLogResponse)
def settings_logs(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    db: Session = Depends(get_db),
    engine: RoundEngine = Depends(get_engine),
):
    try:
        rows, total = read_with_retry(lambda: engine.ctx.settings.logs(db, page, limit))
        return SettingsLogResponse(
            logs=[SettingsLogRow.model_validate(row) for row in rows],
            page=page,
            limit=limit,
            total=total,
        )
    except RoundEngineError as e:
        raise to_http(e)
    except Exception as e:
        logger.error(f"Failed to get settings logs: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


# ============ Audit / recovery ============

@router.get("/audit-logs", response_model=AuditLogResponse)
def audit_logs(
    action: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    db: Session = Depends(get_db),
):
    try:
        rows, total = read_with_retry(lambda: audit_service.list_entries(db, page, limit, action))
        return AuditLogResponse(
            entries=[AuditRow.model_validate(row) for row in rows],
            page=page,
            limit=limit,
            total=total,
        )
    except RoundEngineError as e:
        raise to_http(e)
    except Exception as e:
        logger.error(f"Failed to get audit logs: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.post("/recovery")
def run_recovery(engine: RoundEngine = Depends(get_engine)):
    """
    立刻跑一次 tick：補回合、啟用、結束、補結算、重跑卡住的結算
    """
    try:
        return engine.scheduler.tick()
    except Exception as e:
        logger.error(f"Failed to run recovery: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")
