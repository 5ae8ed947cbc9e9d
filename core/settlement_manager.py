"""
Settlement Manager：開獎結算

流程（settle）：
1. 搶結算權：settlement_status not_settled -> settling（條件式更新，獨立 commit）
   搶不到 → AlreadySettled；並發的鬧鐘 / tick / 操作員只有一個會往下走
2. 載入回合與取消名單（cancelled set）
3. 下注明細：非中獎卡一次 bulk update；中獎卡逐筆更新 payout
4. 注單：非取消注單中，payout > 0 → won，其餘一次 bulk update 成 lost；
   取消注單不動
5. 回合：winning_card、settled、settlement_completed_at；若仍 active 則一併 completed
6. 寫 audit log

2~6 在同一個 transaction。
- 逾時（cooperative checkpoint）或 DB OperationalError → TransientStore/OperationTimeout，
  回合停在 settling，等 recovery 重跑（步驟 3、4 都可重複執行）
- 其他確定性錯誤 → settlement_status = failed，記錄 settlement_error
"""
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from typing import Dict, List, Optional
import logging

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from core.deadline import Deadline
from core.exceptions import (
    AlreadySettled,
    InvalidCard,
    OperationTimeout,
    RoundNotFound,
    TransientError,
    TransientStore,
    WrongStatus,
)
from core.state_machine import SettlementStateMachine
from database import transactional
from models import BetDetail, BetSlip, Round, RoundStatus, SettlementStatus, SlipStatus
from services import audit_service
from services.aggregate_service import (
    card_pools,
    money,
    not_cancelled,
    round_cancelled_slip_ids,
    round_totals,
)
from services.card_selection_service import (
    build_decision,
    has_bets,
    is_valid_card,
    recommend_card,
    select_winning_card,
)

logger = logging.getLogger(__name__)

STUCK_SETTLING_SECONDS = 60


@dataclass
class SettlementSummary:
    round_id: str
    winning_card: int
    winning_slips: int
    losing_slips: int
    total_payout: Decimal
    multiplier: Decimal
    actor: str
    skipped_cancelled: List[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "round_id": self.round_id,
            "winning_card": self.winning_card,
            "winning_slips": self.winning_slips,
            "losing_slips": self.losing_slips,
            "total_payout": self.total_payout,
            "multiplier": self.multiplier,
            "actor": self.actor,
            "skipped_cancelled": self.skipped_cancelled,
        }


class SettlementManager:
    """結算引擎"""

    def __init__(self, ctx):
        self.ctx = ctx
        self.clock = ctx.clock
        self.settings = ctx.settings

    # ============ 入口 ============

    def settle(
        self,
        db: Session,
        round_id: str,
        winning_card: int,
        actor: int = 0,
        allow_active: bool = False,
        ip: Optional[str] = None,
        ua: Optional[str] = None,
    ) -> SettlementSummary:
        """
        以指定卡片結算回合

        參數：
            winning_card: 1..12
            actor: 操作員 id；0 表示系統
            allow_active: 允許結算仍在 active 的回合（手動模式提前開獎）

        異常：
            InvalidCard / RoundNotFound / WrongStatus / AlreadySettled / TransientStore
        """
        if not is_valid_card(winning_card):
            raise InvalidCard(winning_card)

        round_obj = db.query(Round).filter(Round.round_id == round_id).first()
        if not round_obj:
            raise RoundNotFound(round_id)
        if round_obj.settlement_status in (SettlementStatus.SETTLING, SettlementStatus.SETTLED):
            raise AlreadySettled(round_id)
        if round_obj.settlement_status == SettlementStatus.FAILED:
            raise WrongStatus(f"Round {round_id} settlement failed: {round_obj.settlement_error}")
        if round_obj.status == RoundStatus.PENDING:
            raise WrongStatus(f"Round {round_id} has not started")
        if round_obj.status == RoundStatus.ACTIVE and not allow_active:
            raise WrongStatus(f"Round {round_id} is still active")

        if not self._claim(db, round_id, winning_card):
            raise AlreadySettled(round_id)

        return self._drive(db, round_id, actor, ip, ua)

    def auto_settle(self, db: Session, round_id: str, actor: int = 0) -> SettlementSummary:
        """自動選卡後結算（只處理 completed 回合）"""
        round_obj = db.query(Round).filter(Round.round_id == round_id).first()
        if not round_obj:
            raise RoundNotFound(round_id)
        if round_obj.settlement_status != SettlementStatus.NOT_SETTLED:
            raise AlreadySettled(round_id)

        card = self.select_card(db, round_obj)
        logger.info(f"Auto-selected card {card} for round {round_id}")
        return self.settle(db, round_id, card, actor=actor)

    def select_card(self, db: Session, round_obj: Round) -> int:
        pools, _ = card_pools(db, round_obj.round_id)
        totals = round_totals(db, round_obj.round_id)
        return select_winning_card(pools, totals["total_wagered"], money(round_obj.multiplier), self.ctx.rng)

    # ============ 內部步驟 ============

    @transactional
    def _claim(self, db: Session, round_id: str, winning_card: int) -> bool:
        return SettlementStateMachine.transition(
            db, round_id, SettlementStatus.NOT_SETTLED, SettlementStatus.SETTLING,
            {
                Round.settlement_started_at: self.clock.now_civil(),
                Round.winning_card: winning_card,
                Round.settlement_error: None,
            }
        )

    def _drive(self, db: Session, round_id: str, actor: int, ip=None, ua=None) -> SettlementSummary:
        deadline = Deadline("settlement", self.ctx.config.settlement_budget_seconds, self.clock.monotonic)
        try:
            summary = self._apply(db, round_id, actor, deadline, ip, ua)
        except OperationTimeout:
            logger.warning(f"Settlement of round {round_id} ran out of budget; left in settling")
            raise
        except OperationalError as e:
            logger.warning(f"Settlement of round {round_id} hit a store error; left in settling: {e}")
            raise TransientStore(f"Settlement of round {round_id} interrupted") from e
        except (TransientError, AlreadySettled):
            raise
        except Exception as e:
            self._mark_failed(db, round_id, f"{e.__class__.__name__}: {e}")
            raise

        logger.info(
            f"Round {round_id} settled: card={summary.winning_card} "
            f"won={summary.winning_slips} lost={summary.losing_slips} payout={summary.total_payout}"
        )
        return summary

    @transactional
    def _apply(self, db: Session, round_id: str, actor: int, deadline: Deadline, ip, ua) -> SettlementSummary:
        round_obj = db.query(Round).filter(Round.round_id == round_id).one()
        if round_obj.settlement_status != SettlementStatus.SETTLING:
            raise AlreadySettled(round_id)

        card = round_obj.winning_card
        if not is_valid_card(card):
            raise InvalidCard(card)

        multiplier = money(round_obj.multiplier)
        now = self.clock.now_civil()
        cancelled = round_cancelled_slip_ids(db, round_id)

        # 3a. 非中獎卡：一次 bulk update
        db.query(BetDetail).filter(
            BetDetail.round_id == round_id,
            BetDetail.card != card
        ).update(
            {BetDetail.is_winner: False, BetDetail.payout: 0},
            synchronize_session=False
        )

        deadline.check()

        # 3b. 中獎卡：逐筆（依 id，可重複執行）
        slip_payouts: Dict[str, Decimal] = defaultdict(Decimal)
        winning_lines = db.query(BetDetail.id, BetDetail.slip_id, BetDetail.stake).filter(
            BetDetail.round_id == round_id,
            BetDetail.card == card
        ).all()
        for line_id, slip_id, stake in winning_lines:
            payout = money(money(stake) * multiplier)
            db.query(BetDetail).filter(BetDetail.id == line_id).update(
                {BetDetail.is_winner: True, BetDetail.payout: payout},
                synchronize_session=False
            )
            if slip_id not in cancelled:
                slip_payouts[slip_id] += payout

        deadline.check()

        # 4. 注單：取消的不動
        winners = {slip_id: amount for slip_id, amount in slip_payouts.items() if amount > 0}
        losing_query = db.query(BetSlip).filter(BetSlip.round_id == round_id, not_cancelled())
        if winners:
            losing_query = losing_query.filter(BetSlip.slip_id.not_in(list(winners)))
        losing = losing_query.update(
            {BetSlip.status: SlipStatus.LOST, BetSlip.payout: 0, BetSlip.updated_at: now},
            synchronize_session=False
        )
        for slip_id, amount in winners.items():
            db.query(BetSlip).filter(BetSlip.slip_id == slip_id).update(
                {BetSlip.status: SlipStatus.WON, BetSlip.payout: amount, BetSlip.updated_at: now},
                synchronize_session=False
            )

        # 5. 回合
        values = {
            Round.winning_card: card,
            Round.settlement_completed_at: now,
            Round.status: RoundStatus.COMPLETED,
            Round.updated_at: now,
        }
        if round_obj.status == RoundStatus.ACTIVE:
            logger.info(f"Round {round_id}: active -> completed (settled early)")
        if not SettlementStateMachine.transition(
            db, round_id, SettlementStatus.SETTLING, SettlementStatus.SETTLED, values
        ):
            raise AlreadySettled(round_id)

        summary = SettlementSummary(
            round_id=round_id,
            winning_card=card,
            winning_slips=len(winners),
            losing_slips=losing,
            total_payout=sum(winners.values(), Decimal("0.00")),
            multiplier=multiplier,
            actor=audit_service.actor_label(actor),
            skipped_cancelled=sorted(cancelled),
        )

        # 6. audit
        audit_service.record(
            db,
            at=self.clock.now(),
            actor=actor,
            action="settle_round",
            target_kind="round",
            target_id=round_id,
            detail=summary.as_dict(),
            ip=ip,
            ua=ua,
        )
        return summary

    @transactional
    def _mark_failed(self, db: Session, round_id: str, error: str) -> bool:
        failed = SettlementStateMachine.transition(
            db, round_id, SettlementStatus.SETTLING, SettlementStatus.FAILED,
            {Round.settlement_error: error[:1000], Round.updated_at: self.clock.now_civil()}
        )
        if failed:
            logger.error(f"Settlement of round {round_id} failed: {error}")
        return failed

    # ============ Recovery ============

    def stuck_rounds(self, db: Session, older_than: int = STUCK_SETTLING_SECONDS) -> List[str]:
        threshold = self.clock.civil_string(self.clock.now() - timedelta(seconds=older_than))
        rows = db.query(Round.round_id).filter(
            Round.settlement_status == SettlementStatus.SETTLING,
            Round.settlement_started_at <= threshold
        ).order_by(Round.start_at.asc()).all()
        return [round_id for (round_id,) in rows]

    def resume(self, db: Session, round_id: str) -> SettlementSummary:
        """
        重跑卡在 settling 的結算（使用搶結算權時記錄的卡片）
        """
        logger.info(f"Resuming settlement of round {round_id}")
        return self._drive(db, round_id, actor=0)

    # ============ 預覽 ============

    def decision(self, db: Session, round_obj: Round) -> dict:
        """
        每張卡開出時的盈虧預覽與建議卡片（已排除取消注單）
        """
        pools, counts = card_pools(db, round_obj.round_id)
        totals = round_totals(db, round_obj.round_id)
        multiplier = money(round_obj.multiplier)
        return {
            "round_id": round_obj.round_id,
            "status": round_obj.status.value,
            "settlement_status": round_obj.settlement_status.value,
            "multiplier": multiplier,
            "total_wagered": totals["total_wagered"],
            "has_bets": has_bets(pools),
            "cards": build_decision(pools, counts, totals["total_wagered"], multiplier),
            "recommended_card": recommend_card(pools, totals["total_wagered"], multiplier),
        }
