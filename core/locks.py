"""
並發控制工具

提供 Database-level 的鎖定機制，防止競態條件（Race Condition）

PostgreSQL 使用 SELECT ... FOR UPDATE 實現悲觀鎖；
SQLite 不支援 FOR UPDATE（編譯時忽略），改由資料庫層級的寫鎖序列化。
條件式更新（WHERE claimed = false 等）仍是最終的正確性保證。
"""
from sqlalchemy.orm import Session, Query

from models import BetSlip, Round


def with_round_lock(round_id: str, db: Session) -> Query:
    """
    鎖定一個 Round（行級鎖）

    使用場景：
    - 下注 / 取消注單時確認回合尚未開始結算
    - 手動開獎前確認回合狀態

    返回：
        Query object（需要呼叫 .first() 取得結果）
    """
    return db.query(Round).filter(
        Round.round_id == round_id
    ).with_for_update(nowait=False).populate_existing()


def with_slip_lock(slip_pk: int, db: Session) -> Query:
    """
    鎖定一張注單（行級鎖）

    使用場景：
    - 領獎 / 取消：確保同一張注單不會同時被兩條路徑修改
    """
    return db.query(BetSlip).filter(
        BetSlip.id == slip_pk
    ).with_for_update(nowait=False).populate_existing()

