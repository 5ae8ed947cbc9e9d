"""
Round 狀態機

兩條獨立的狀態線：
- status:            pending -> active -> completed
- settlement_status: not_settled -> settling -> {settled, failed}

所有轉換都是「條件式更新」（WHERE status = 舊狀態），
回傳是否真的更新到一列；並發呼叫者中只有一個會拿到 True。
"""
from typing import Dict, Set
import logging

from sqlalchemy.orm import Session

from core.exceptions import WrongStatus
from models import Round, RoundStatus, SettlementStatus

logger = logging.getLogger(__name__)


class RoundStateMachine:
    TRANSITIONS: Dict[RoundStatus, Set[RoundStatus]] = {
        RoundStatus.PENDING: {RoundStatus.ACTIVE},
        RoundStatus.ACTIVE: {RoundStatus.COMPLETED},
        RoundStatus.COMPLETED: set(),
    }

    @classmethod
    def can_transition(cls, from_status: RoundStatus, to_status: RoundStatus) -> bool:
        return to_status in cls.TRANSITIONS.get(from_status, set())

    @classmethod
    def transition(
        cls,
        db: Session,
        round_id: str,
        from_status: RoundStatus,
        to_status: RoundStatus,
        updated_at: str,
    ) -> bool:
        """
        條件式狀態轉換

        返回：
            True：這次呼叫完成了轉換
            False：狀態已被其他路徑改變（不是錯誤）

        異常：
            WrongStatus：from -> to 不是合法的轉換
        """
        if not cls.can_transition(from_status, to_status):
            raise WrongStatus(f"Round transition {from_status.value} -> {to_status.value} is not allowed")

        updated = db.query(Round).filter(
            Round.round_id == round_id,
            Round.status == from_status
        ).update(
            {Round.status: to_status, Round.updated_at: updated_at},
            synchronize_session=False
        )
        if updated:
            logger.info(f"Round {round_id}: {from_status.value} -> {to_status.value}")
        return updated == 1


class SettlementStateMachine:
    TRANSITIONS: Dict[SettlementStatus, Set[SettlementStatus]] = {
        SettlementStatus.NOT_SETTLED: {SettlementStatus.SETTLING},
        SettlementStatus.SETTLING: {SettlementStatus.SETTLED, SettlementStatus.FAILED},
        SettlementStatus.SETTLED: set(),
        SettlementStatus.FAILED: set(),
    }

    @classmethod
    def can_transition(cls, from_status: SettlementStatus, to_status: SettlementStatus) -> bool:
        return to_status in cls.TRANSITIONS.get(from_status, set())

    @classmethod
    def transition(
        cls,
        db: Session,
        round_id: str,
        from_status: SettlementStatus,
        to_status: SettlementStatus,
        values: dict,
    ) -> bool:
        if not cls.can_transition(from_status, to_status):
            raise WrongStatus(
                f"Settlement transition {from_status.value} -> {to_status.value} is not allowed"
            )

        changes = {Round.settlement_status: to_status}
        changes.update(values)
        updated = db.query(Round).filter(
            Round.round_id == round_id,
            Round.settlement_status == from_status
        ).update(changes, synchronize_session=False)
        if updated:
            logger.info(f"Round {round_id} settlement: {from_status.value} -> {to_status.value}")
        return updated == 1
