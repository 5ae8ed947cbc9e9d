"""
Audit Log：稽核紀錄

只新增、不修改。actor 存操作員 / 使用者 id；
由 scheduler 觸發的動作（actor 為 0 或 None）記為 "system"
"""
from datetime import datetime
from typing import Any, List, Optional, Tuple
import json

from sqlalchemy.orm import Session

from models import AuditLog

SYSTEM_ACTOR = "system"


def actor_label(actor: Optional[int]) -> str:
    if not actor:
        return SYSTEM_ACTOR
    return str(actor)


def record(
    db: Session,
    at: datetime,
    actor: Optional[int],
    action: str,
    target_kind: Optional[str] = None,
    target_id: Optional[str] = None,
    detail: Any = None,
    ip: Optional[str] = None,
    ua: Optional[str] = None,
) -> AuditLog:
    """
    寫入一筆稽核紀錄（不 commit，跟著呼叫端的 transaction）

    參數：
        at: 發生時間（UTC）
        detail: dict 會序列化成 JSON 字串
    """
    if detail is not None and not isinstance(detail, str):
        detail = json.dumps(detail, default=str, sort_keys=True)
    entry = AuditLog(
        actor=actor_label(actor),
        action=action,
        target_kind=target_kind,
        target_id=target_id,
        detail=detail,
        ip=ip,
        ua=ua,
        created_at=at,
    )
    db.add(entry)
    return entry


def list_entries(
    db: Session,
    page: int = 1,
    limit: int = 50,
    action: Optional[str] = None,
) -> Tuple[List[AuditLog], int]:
    query = db.query(AuditLog)
    if action:
        query = query.filter(AuditLog.action == action)
    total = query.count()
    rows = query.order_by(AuditLog.id.desc()).offset((page - 1) * limit).limit(limit).all()
    return rows, total
