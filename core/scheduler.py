"""
Round Scheduler：兩個觸發來源

1. Coarse tick（每分鐘，APScheduler cron job）
   建立當前格線回合 → backfill → activate_due → complete_due（並立刻接上下一回合）
   → 補結算超過 grace 的回合 → 重跑卡在 settling 的結算
2. Deadline alarm（每回合一個，end_at 觸發）
   complete → create_next_immediately → settle（手動模式則延到 end_at + grace）

鬧鐘只是加速，tick 是安全網；兩者都只透過條件式更新推進狀態，誰先誰後都正確。
每個步驟的錯誤都只記 log，不會影響下一次 tick。
"""
from datetime import timedelta
from typing import Callable, Dict
import logging

from apscheduler.triggers.cron import CronTrigger
from sqlalchemy.orm import Session

from core.alarms import DEADLINE, GRACE, REARM
from core.exceptions import AlreadySettled, RoundNotFound
from models import Round, RoundStatus, SettlementStatus

logger = logging.getLogger(__name__)

TICK_JOB_ID = "coarse-tick"


class RoundScheduler:
    def __init__(self, ctx, rounds, settlement):
        self.ctx = ctx
        self.clock = ctx.clock
        self.settings = ctx.settings
        self.rounds = rounds
        self.settlement = settlement
        ctx.alarms.bind(self.on_deadline)

    # ============ 啟動 / 關閉 ============

    def start(self):
        self.ctx.scheduler.add_job(
            self.tick,
            trigger=CronTrigger(minute="*", second=1, timezone="UTC"),
            id=TICK_JOB_ID,
            replace_existing=True,
            coalesce=True,
            max_instances=1,
            misfire_grace_time=30,
        )
        if not self.ctx.scheduler.running:
            self.ctx.scheduler.start()
        logger.info("Round scheduler started")

    def shutdown(self):
        if self.ctx.scheduler.running:
            self.ctx.scheduler.shutdown(wait=False)
            logger.info("Round scheduler stopped")

    def boot(self) -> Dict[str, object]:
        """
        開機流程：重建鬧鐘、重跑卡住的結算、跑一次 tick
        """
        report = {"restored_alarms": self._run("restore_alarms", self.restore_alarms)}
        report.update(self.tick())
        return report

    # ============ Coarse tick ============

    def tick(self) -> Dict[str, object]:
        steps = [
            ("create_current", self._create_current),
            ("backfill", self.rounds.backfill),
            ("activated", self.rounds.activate_due),
            ("completed", self._complete_due),
            ("settled", self.settle_overdue),
            ("recovered", self.recover_stuck),
        ]
        return {name: self._run(name, step) for name, step in steps}

    def _run(self, name: str, step: Callable):
        try:
            with self.ctx.session() as db:
                return step(db)
        except Exception as e:
            logger.error(f"Scheduler step {name} failed: {e}", exc_info=True)
            return None

    def _create_current(self, db: Session):
        now = self.clock.now()
        window_start, window_end = self.settings.operating_window(db)
        if not self.clock.in_window(now, window_start, window_end):
            return None
        round_obj, created = self.rounds.create_if_missing(db, self.clock.floor_to_slot(now))
        return round_obj.round_id if created else None

    def _complete_due(self, db: Session):
        completed = self.rounds.complete_due(db)
        for round_id in completed:
            round_obj = db.query(Round).filter(Round.round_id == round_id).one()
            self.rounds.create_next_immediately(db, round_obj)
        return completed

    def settle_overdue(self, db: Session):
        """completed 且 not_settled，已超過 end_at + grace 的回合 → 自動結算"""
        grace = self.settings.grace_seconds(db)
        threshold = self.clock.civil_string(self.clock.now() - timedelta(seconds=grace))
        due = db.query(Round.round_id).filter(
            Round.status == RoundStatus.COMPLETED,
            Round.settlement_status == SettlementStatus.NOT_SETTLED,
            Round.end_at <= threshold
        ).order_by(Round.start_at.asc()).all()

        settled = []
        for (round_id,) in due:
            try:
                self.settlement.auto_settle(db, round_id)
                settled.append(round_id)
            except AlreadySettled:
                continue
            except Exception as e:
                logger.error(f"Fallback settlement of round {round_id} failed: {e}", exc_info=True)
        return settled

    def recover_stuck(self, db: Session):
        recovered = []
        for round_id in self.settlement.stuck_rounds(db):
            try:
                self.settlement.resume(db, round_id)
                recovered.append(round_id)
            except AlreadySettled:
                continue
            except Exception as e:
                logger.error(f"Recovery of round {round_id} failed: {e}", exc_info=True)
        return recovered

    # ============ Deadline alarm ============

    def on_deadline(self, round_id: str, grace_seconds: int = 0, phase: str = DEADLINE):
        """
        鬧鐘觸發

        流程：
        1. 回合 active → completed
        2. create_next_immediately（結算之前）
        3. 已過 end_at + grace → 自動結算；否則 arm grace 鬧鐘
        """
        try:
            with self.ctx.session() as db:
                self._handle_deadline(db, round_id, grace_seconds, phase)
        except Exception as e:
            logger.error(f"Alarm for round {round_id} ({phase}) failed: {e}", exc_info=True)

    def _handle_deadline(self, db: Session, round_id: str, grace_seconds: int, phase: str):
        logger.info(f"Alarm fired for round {round_id} ({phase})")
        try:
            round_obj = self.rounds.get_round(db, round_id)
        except RoundNotFound:
            logger.warning(f"Alarm fired for missing round {round_id}")
            return

        now = self.clock.now()
        end_at = self.clock.parse_civil(round_obj.end_at)
        if now < end_at:
            # 時鐘回撥或提早觸發：重新 arm 在 end_at
            self._arm(round_id, end_at, grace_seconds, REARM)
            return

        self.rounds.complete(db, round_id)
        db.refresh(round_obj)
        self.rounds.create_next_immediately(db, round_obj)

        db.refresh(round_obj)
        if round_obj.settlement_status != SettlementStatus.NOT_SETTLED:
            logger.info(f"Round {round_id} already {round_obj.settlement_status.value}; alarm is a no-op")
            return

        settle_at = end_at + timedelta(seconds=grace_seconds)
        if now < settle_at:
            self._arm(round_id, settle_at, grace_seconds, GRACE)
            return

        try:
            self.settlement.auto_settle(db, round_id)
        except AlreadySettled:
            logger.info(f"Round {round_id} settled through another path; alarm is a no-op")

    def _arm(self, round_id: str, fire_at, grace_seconds: int, phase: str):
        if not self.ctx.alarms.arm(round_id, fire_at, grace_seconds, phase=phase):
            logger.warning(
                f"Alarm for round {round_id} ({phase}) already armed; keeping the existing one"
            )

    def restore_alarms(self, db: Session):
        """
        開機時依 DB 狀態重建鬧鐘：active 或「completed 但未結算」且 end_at >= now - skew
        """
        skew = timedelta(seconds=self.ctx.config.alarm_restore_skew_seconds)
        threshold = self.clock.civil_string(self.clock.now() - skew)
        rows = db.query(Round.round_id, Round.end_at).filter(
            Round.end_at >= threshold,
            (Round.status == RoundStatus.ACTIVE) | (
                (Round.status == RoundStatus.COMPLETED)
                & (Round.settlement_status == SettlementStatus.NOT_SETTLED)
            )
        ).all()
        restored = [round_id for round_id, end_at in rows if self.rounds.arm_alarm(db, round_id, end_at)]
        if restored:
            logger.info(f"Restored {len(restored)} alarms")
        return restored
