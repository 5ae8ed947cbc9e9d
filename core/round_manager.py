"""
Round Manager：管理 Round 的完整生命週期

職責：
1. create_if_missing：依 5 分鐘格線建立回合（冪等）
2. activate_due / complete_due：依時間推進狀態
3. create_next_immediately：回合結束時立刻接上下一回合（NoGap）
4. backfill：補齊停機期間漏掉的回合（每次最多 BACKFILL_CAP 個）
5. 查詢回合

原則：
- 所有狀態變更經過 RoundStateMachine（條件式更新）
- 「建立」用 INSERT ... ON CONFLICT DO NOTHING，並發呼叫安全
- 鬧鐘在 commit 之後才 arm，避免鬧鐘看到尚未 commit 的狀態
"""
from datetime import datetime
from typing import List, Optional, Tuple
import logging

from sqlalchemy import case
from sqlalchemy.orm import Session

from core.clock import SLOT
from core.exceptions import RoundNotFound
from core.state_machine import RoundStateMachine
from database import insert_ignore, transactional
from models import Round, RoundStatus, SettlementStatus

logger = logging.getLogger(__name__)

BACKFILL_CAP = 24


class RoundManager:
    """Round 生命週期管理器"""

    def __init__(self, ctx):
        self.ctx = ctx
        self.clock = ctx.clock
        self.settings = ctx.settings

    # ============ 查詢 ============

    def get_round(self, db: Session, round_id: str) -> Round:
        """
        取得回合

        異常：
            InvalidRoundId：格式錯誤
            RoundNotFound：回合不存在
        """
        self.clock.parse_round_id(round_id)
        round_obj = db.query(Round).filter(Round.round_id == round_id).first()
        if not round_obj:
            raise RoundNotFound(round_id)
        return round_obj

    def current_round(self, db: Session) -> Optional[Round]:
        """
        目前可下注的回合

        優先順序：
        1. 時間窗包含 now 的 active 回合
        2. 最新的 active 回合
        3. 最近的 pending 回合
        """
        now = self.clock.now_civil()
        active = (
            db.query(Round)
            .filter(Round.status == RoundStatus.ACTIVE, Round.start_at <= now, Round.end_at > now)
            .order_by(Round.start_at.desc())
            .first()
        )
        if active:
            return active

        latest_active = (
            db.query(Round)
            .filter(Round.status == RoundStatus.ACTIVE)
            .order_by(Round.start_at.desc())
            .first()
        )
        if latest_active:
            return latest_active

        return (
            db.query(Round)
            .filter(Round.status == RoundStatus.PENDING, Round.start_at > now)
            .order_by(Round.start_at.asc())
            .first()
        )

    def rounds_by_date(self, db: Session, day: str) -> List[Round]:
        day_start, day_end = self.clock.day_bounds(day)
        return (
            db.query(Round)
            .filter(Round.start_at >= day_start, Round.start_at < day_end)
            .order_by(Round.start_at.asc())
            .all()
        )

    def recent_winners(self, db: Session, limit: int = 10) -> List[Round]:
        return (
            db.query(Round)
            .filter(Round.settlement_status == SettlementStatus.SETTLED)
            .order_by(Round.start_at.desc())
            .limit(limit)
            .all()
        )

    def list_rounds(
        self,
        db: Session,
        day: Optional[str] = None,
        status: Optional[RoundStatus] = None,
        settlement_status: Optional[SettlementStatus] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[Round], int]:
        """
        管理介面的回合列表

        排序：active 最前 → pending 由近到遠 → completed 由新到舊
        """
        query = db.query(Round)
        if day:
            day_start, day_end = self.clock.day_bounds(day)
            query = query.filter(Round.start_at >= day_start, Round.start_at < day_end)
        if status:
            query = query.filter(Round.status == status)
        if settlement_status:
            query = query.filter(Round.settlement_status == settlement_status)

        total = query.count()
        status_rank = case(
            (Round.status == RoundStatus.ACTIVE, 0),
            (Round.status == RoundStatus.PENDING, 1),
            else_=2,
        )
        pending_start = case((Round.status == RoundStatus.PENDING, Round.start_at), else_="")
        rows = (
            query.order_by(status_rank.asc(), pending_start.asc(), Round.start_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return rows, total

    # ============ 建立 ============

    def inferred_status(self, slot_start: datetime, now: datetime) -> RoundStatus:
        if slot_start + SLOT <= now:
            return RoundStatus.COMPLETED
        if slot_start <= now:
            return RoundStatus.ACTIVE
        return RoundStatus.PENDING

    @transactional
    def create_if_missing(
        self,
        db: Session,
        slot_start: datetime,
        status: RoundStatus = RoundStatus.PENDING,
    ) -> Tuple[Round, bool]:
        """
        建立回合（已存在就直接回傳）

        參數：
            slot_start: 任意時間，會先對齊到 5 分鐘格線
            status: 新建時的狀態（backfill 會傳入推算出的狀態）

        返回：
            (Round, 是否為這次新建)
        """
        start = self.clock.floor_to_slot(slot_start)
        round_id = self.clock.format_round_id(start)
        now = self.clock.now_civil()

        created = insert_ignore(db, Round, {
            "round_id": round_id,
            "start_at": self.clock.civil_string(start),
            "end_at": self.clock.civil_string(start + SLOT),
            "status": status,
            "multiplier": self.settings.multiplier(db),
            "settlement_status": SettlementStatus.NOT_SETTLED,
            "created_at": now,
            "updated_at": now,
        }) == 1

        round_obj = db.query(Round).filter(Round.round_id == round_id).one()
        if created:
            logger.info(f"Created round {round_id} ({status.value})")
        return round_obj, created

    # ============ 狀態推進 ============

    @transactional
    def _activate_due_rows(self, db: Session) -> List[Round]:
        now = self.clock.now_civil()
        candidates = (
            db.query(Round)
            .filter(Round.status == RoundStatus.PENDING, Round.start_at <= now)
            .order_by(Round.start_at.asc())
            .all()
        )
        return [
            round_obj for round_obj in candidates
            if RoundStateMachine.transition(
                db, round_obj.round_id, RoundStatus.PENDING, RoundStatus.ACTIVE, now
            )
        ]

    def activate_due(self, db: Session) -> List[str]:
        """
        pending 且 start_at <= now 的回合 → active，並為每個成功轉換的回合 arm 鬧鐘

        返回：
            這次呼叫實際轉換的 round_id 列表
        """
        activated = self._activate_due_rows(db)
        for round_obj in activated:
            self.arm_alarm(db, round_obj.round_id, round_obj.end_at)
        return [round_obj.round_id for round_obj in activated]

    @transactional
    def complete_due(self, db: Session) -> List[str]:
        """active 且 end_at <= now 的回合 → completed"""
        now = self.clock.now_civil()
        candidates = (
            db.query(Round.round_id)
            .filter(Round.status == RoundStatus.ACTIVE, Round.end_at <= now)
            .order_by(Round.start_at.asc())
            .all()
        )
        return [
            round_id for (round_id,) in candidates
            if RoundStateMachine.transition(
                db, round_id, RoundStatus.ACTIVE, RoundStatus.COMPLETED, now
            )
        ]

    @transactional
    def complete(self, db: Session, round_id: str) -> bool:
        """單一回合 active → completed（已經 completed 則回傳 False）"""
        return RoundStateMachine.transition(
            db, round_id, RoundStatus.ACTIVE, RoundStatus.COMPLETED, self.clock.now_civil()
        )

    @transactional
    def activate(self, db: Session, round_id: str) -> bool:
        return RoundStateMachine.transition(
            db, round_id, RoundStatus.PENDING, RoundStatus.ACTIVE, self.clock.now_civil()
        )

    def arm_alarm(self, db: Session, round_id: str, end_at: str) -> bool:
        """
        在 end_at arm 鬧鐘；grace 在此刻讀一次，跟著 job 參數走
        """
        grace = self.settings.grace_seconds(db)
        return self.ctx.alarms.arm(round_id, self.clock.parse_civil(end_at), grace)

    # ============ NoGap ============

    def create_next_immediately(self, db: Session, just_ended: Round) -> Optional[Round]:
        """
        回合結束後立刻建立（並在時間到時啟用）下一回合

        流程：
        1. next_start = just_ended.end_at
        2. 超出營業時間 → 不建立
        3. 建立（已存在則沿用）
        4. next_start <= now 且仍是 pending → active，並 arm 鬧鐘

        返回：
            下一回合；不在營業時間則回傳 None
        """
        next_start = self.clock.parse_civil(just_ended.end_at)
        window_start, window_end = self.settings.operating_window(db)
        if not self.clock.in_window(next_start, window_start, window_end):
            logger.info(f"No successor for round {just_ended.round_id}: outside operating window")
            return None

        now = self.clock.now()
        successor, created = self.create_if_missing(db, next_start, self.inferred_status(next_start, now))

        if successor.status == RoundStatus.PENDING and next_start <= now:
            self.activate(db, successor.round_id)
            db.refresh(successor)

        if successor.status == RoundStatus.ACTIVE:
            self.arm_alarm(db, successor.round_id, successor.end_at)

        return successor

    def backfill(self, db: Session, cap: int = BACKFILL_CAP) -> List[str]:
        """
        補齊漏掉的回合

        從本營業時段最新回合的 end_at（沒有則從營業開始時間）往後走格線到 now，
        依推算狀態 upsert。每次最多走 cap 格，剩下的交給下一次 tick；
        每次 tick 至少前進一格，所以重複執行一定會追上 now。

        返回：
            這次新建的 round_id 列表
        """
        now = self.clock.now()
        window_start_time, window_end_time = self.settings.operating_window(db)
        window_start = self.clock.window_start(now, window_start_time, window_end_time)
        if window_start is None:
            return []

        latest = (
            db.query(Round)
            .filter(
                Round.start_at >= self.clock.civil_string(window_start),
                Round.start_at <= self.clock.civil_string(now)
            )
            .order_by(Round.start_at.desc())
            .first()
        )
        cursor = self.clock.parse_civil(latest.end_at) if latest else window_start

        created_ids = []
        walked = 0
        while cursor <= now and walked < cap:
            if self.clock.window_start(cursor, window_start_time, window_end_time) != window_start:
                break
            round_obj, created = self.create_if_missing(db, cursor, self.inferred_status(cursor, now))
            if created:
                created_ids.append(round_obj.round_id)
                if round_obj.status == RoundStatus.ACTIVE:
                    self.arm_alarm(db, round_obj.round_id, round_obj.end_at)
            cursor += SLOT
            walked += 1

        if created_ids:
            logger.info(f"Backfilled {len(created_ids)} rounds: {created_ids[0]}..{created_ids[-1]}")
        return created_ids
