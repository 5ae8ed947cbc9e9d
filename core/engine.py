"""
RoundEngine：組裝各個 Manager，並提供跨 Manager 的流程

- operator_settle：操作員開獎（取消鬧鐘、接上下一回合）
- live_settlement：管理介面輪詢用的即時資料（唯讀）
"""
from typing import Optional
import logging

from sqlalchemy.orm import Session

from core.round_manager import RoundManager
from core.scheduler import RoundScheduler
from core.settlement_manager import SettlementManager, SettlementSummary
from core.wager_manager import WagerManager
from models import BetDetail, BetSlip, RoundStatus
from services.aggregate_service import money, not_cancelled, round_totals

logger = logging.getLogger(__name__)

RECENT_SETTLED_LIMIT = 10


class RoundEngine:
    def __init__(self, ctx):
        self.ctx = ctx
        self.rounds = RoundManager(ctx)
        self.settlement = SettlementManager(ctx)
        self.wagers = WagerManager(ctx)
        self.scheduler = RoundScheduler(ctx, self.rounds, self.settlement)

    def startup(self):
        with self.ctx.session() as db:
            self.ctx.settings.ensure_defaults(db)
        report = self.scheduler.boot()
        if self.ctx.config.scheduler_enabled:
            self.scheduler.start()
        return report

    def shutdown(self):
        self.scheduler.shutdown()

    def operator_settle(
        self,
        db: Session,
        round_id: str,
        winning_card: int,
        actor: int,
        ip: Optional[str] = None,
        ua: Optional[str] = None,
    ) -> SettlementSummary:
        """
        操作員開獎

        - 自動模式：只能開 completed 的回合
        - 手動模式：active 的回合也可以提前開（會一併 completed）
        成功後取消該回合的鬧鐘，並確保下一回合已存在
        """
        round_obj = self.rounds.get_round(db, round_id)
        manual = self.ctx.settings.result_mode(db) == "manual"

        summary = self.settlement.settle(
            db, round_id, winning_card, actor=actor, allow_active=manual, ip=ip, ua=ua
        )
        self.ctx.alarms.cancel(round_id)

        db.refresh(round_obj)
        self.rounds.create_next_immediately(db, round_obj)
        return summary

    def live_settlement(self, db: Session, user_id: Optional[int] = None) -> dict:
        """
        目前回合的卡片統計 + 最近結算回合（唯讀；狀態推進由 scheduler 負責）
        """
        current = self.rounds.current_round(db)
        current_data = None
        if current:
            current_data = self.settlement.decision(db, current)
            current_data["start_at"] = current.start_at
            current_data["end_at"] = current.end_at
            if user_id is not None:
                rows = (
                    db.query(BetDetail.card, BetDetail.stake)
                    .join(BetSlip, BetDetail.slip_ref == BetSlip.id)
                    .filter(
                        BetSlip.round_id == current.round_id,
                        BetSlip.user_id == user_id,
                        not_cancelled()
                    )
                    .all()
                )
                user_cards = {}
                for card, stake in rows:
                    user_cards[card] = user_cards.get(card, money(0)) + money(stake)
                current_data["user_bets"] = [
                    {"card": card, "stake": stake} for card, stake in sorted(user_cards.items())
                ]

        recent = []
        for round_obj in self.rounds.recent_winners(db, RECENT_SETTLED_LIMIT):
            totals = round_totals(db, round_obj.round_id)
            recent.append({
                "round_id": round_obj.round_id,
                "winning_card": round_obj.winning_card,
                "settlement_completed_at": round_obj.settlement_completed_at,
                "total_wagered": totals["total_wagered"],
                "total_payout": totals["total_payout"],
                "profit": totals["profit"],
            })

        return {
            "server_time": self.ctx.clock.now_civil(),
            "result_mode": self.ctx.settings.result_mode(db),
            "current": current_data,
            "recent_settled": recent,
            "is_betting_open": bool(
                current
                and current.status == RoundStatus.ACTIVE
                and current.end_at > self.ctx.clock.now_civil()
            ),
        }
