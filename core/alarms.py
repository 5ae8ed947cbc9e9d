"""
回合鬧鐘（Per-round alarms）

每個鬧鐘是一個單次的 APScheduler DateTrigger job，job id 由 round_id 推導，
所以 scheduler 的 job store 就是鬧鐘登記表：
每個 (回合, 階段) 最多一個鬧鐘，觸發或取消後即移除。

階段：
- deadline：在 end_at 觸發；結束回合並開下一回合
- grace：   在 end_at + grace 觸發（手動模式）；操作員沒開獎就自動結算
- rearm：   提早觸發時重新排在 end_at；獨立的 job id，不會和 grace 互相擋住

APScheduler 在派送 DateTrigger job 之後就會把它刪掉，所以每個階段要有自己的 job id。

鬧鐘只存在於本機行程；開機時依回合狀態重建（RoundScheduler.restore_alarms）。
"""
from datetime import datetime
from typing import Callable, List, Optional
import logging

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.base import BaseScheduler
from apscheduler.triggers.date import DateTrigger

logger = logging.getLogger(__name__)

JOB_PREFIX = "round-alarm:"
DEADLINE = "deadline"
GRACE = "grace"
REARM = "rearm"
PHASES = (DEADLINE, GRACE, REARM)


class AlarmRegistry:
    def __init__(self, scheduler: BaseScheduler):
        self._scheduler = scheduler
        self._handler: Optional[Callable] = None

    def bind(self, handler: Callable):
        """鬧鐘觸發時呼叫 handler(round_id=..., grace_seconds=..., phase=...)"""
        self._handler = handler

    @staticmethod
    def job_id(round_id: str, phase: str = DEADLINE) -> str:
        if phase == DEADLINE:
            return f"{JOB_PREFIX}{round_id}"
        return f"{JOB_PREFIX}{round_id}:{phase}"

    def arm(self, round_id: str, fire_at: datetime, grace_seconds: int, phase: str = DEADLINE) -> bool:
        """
        排定一個回合鬧鐘

        參數：
            round_id: 回合 ID
            fire_at: 觸發時間（aware datetime）
            grace_seconds: 觸發時帶給 handler 的寬限秒數
            phase: deadline / grace / rearm

        返回：
            bool: 同一個 (回合, 階段) 已經有鬧鐘時回傳 False（先 arm 的為準）
        """
        if self._handler is None:
            raise RuntimeError("AlarmRegistry has no handler bound")
        if phase not in PHASES:
            raise ValueError(f"Unknown alarm phase: {phase}")
        job_id = self.job_id(round_id, phase)
        if self._scheduler.get_job(job_id) is not None:
            return False

        self._scheduler.add_job(
            self._handler,
            trigger=DateTrigger(run_date=fire_at),
            kwargs={"round_id": round_id, "grace_seconds": grace_seconds, "phase": phase},
            id=job_id,
            name=f"{phase} {round_id}",
            replace_existing=True,
            coalesce=True,
            misfire_grace_time=None,
        )
        logger.info(f"Alarm armed for round {round_id} ({phase}) at {fire_at.isoformat()} grace={grace_seconds}s")
        return True

    def cancel(self, round_id: str) -> bool:
        removed = False
        for phase in PHASES:
            try:
                self._scheduler.remove_job(self.job_id(round_id, phase))
                removed = True
            except JobLookupError:
                continue
        if removed:
            logger.info(f"Alarm cancelled for round {round_id}")
        return removed

    def is_armed(self, round_id: str, phase: Optional[str] = None) -> bool:
        phases = (phase,) if phase else PHASES
        return any(self._scheduler.get_job(self.job_id(round_id, p)) is not None for p in phases)

    def fire_time(self, round_id: str, phase: str = DEADLINE) -> Optional[datetime]:
        job = self._scheduler.get_job(self.job_id(round_id, phase))
        return job.next_run_time if job else None

    def armed_rounds(self) -> List[str]:
        round_ids = set()
        for job in self._scheduler.get_jobs():
            if job.id.startswith(JOB_PREFIX):
                round_ids.add(job.id[len(JOB_PREFIX):].split(":")[0])
        return sorted(round_ids)
