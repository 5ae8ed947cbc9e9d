"""
統計服務：注單與下注明細的彙總

「已取消」的唯一依據是 cancelled set（有 reference_kind = cancellation 帳本紀錄的注單）。
這裡產出的下注額 / 派彩 / 利潤一律排除 cancelled set，不看注單本身存的 status。
"""
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Set, Tuple

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from models import BetDetail, BetSlip, ReferenceKind, SlipStatus, WalletLog

CENT = Decimal("0.01")
CARDS = tuple(range(1, 13))


def money(value) -> Decimal:
    if value is None:
        return Decimal("0.00")
    return Decimal(str(value)).quantize(CENT)


# ============ 已取消集合 ============

def cancelled_slip_ids_select():
    """SELECT reference_id FROM wallet_logs WHERE reference_kind = 'cancellation'"""
    return select(WalletLog.reference_id).where(
        WalletLog.reference_kind == ReferenceKind.CANCELLATION
    )


def not_cancelled():
    """BetSlip 查詢用的過濾條件：排除已取消注單"""
    return BetSlip.slip_id.not_in(cancelled_slip_ids_select())


def cancelled_slip_ids(db: Session, slip_ids: Iterable[str]) -> Set[str]:
    slip_ids = list(slip_ids)
    if not slip_ids:
        return set()
    rows = db.query(WalletLog.reference_id).filter(
        WalletLog.reference_kind == ReferenceKind.CANCELLATION,
        WalletLog.reference_id.in_(slip_ids)
    ).all()
    return {reference_id for (reference_id,) in rows}


def round_cancelled_slip_ids(db: Session, round_id: str) -> Set[str]:
    rows = db.query(BetSlip.slip_id).filter(
        BetSlip.round_id == round_id,
        BetSlip.slip_id.in_(cancelled_slip_ids_select())
    ).all()
    return {slip_id for (slip_id,) in rows}


def is_cancelled(db: Session, slip_id: str) -> bool:
    return bool(cancelled_slip_ids(db, [slip_id]))


def display_status(slip: BetSlip, cancelled: bool) -> str:
    if cancelled:
        return "cancelled"
    return slip.status.value if isinstance(slip.status, SlipStatus) else str(slip.status)


# ============ 單一回合 ============

def card_pools(db: Session, round_id: str) -> Tuple[Dict[int, Decimal], Dict[int, int]]:
    """每張卡片（1..12）的下注總額與筆數，排除已取消注單"""
    rows = (
        db.query(BetDetail.card, func.sum(BetDetail.stake), func.count(BetDetail.id))
        .join(BetSlip, BetDetail.slip_ref == BetSlip.id)
        .filter(BetSlip.round_id == round_id, not_cancelled())
        .group_by(BetDetail.card)
        .all()
    )
    pools = {card: Decimal("0.00") for card in CARDS}
    counts = {card: 0 for card in CARDS}
    for card, stake, count in rows:
        pools[card] = money(stake)
        counts[card] = count
    return pools, counts


def round_totals(db: Session, round_id: str) -> dict:
    wagered, payout, slip_count = (
        db.query(
            func.sum(BetSlip.total_stake),
            func.sum(BetSlip.payout),
            func.count(BetSlip.id),
        )
        .filter(BetSlip.round_id == round_id, not_cancelled())
        .one()
    )
    cancelled_count = len(round_cancelled_slip_ids(db, round_id))
    total_wagered = money(wagered)
    total_payout = money(payout)
    return {
        "round_id": round_id,
        "total_wagered": total_wagered,
        "total_payout": total_payout,
        "profit": total_wagered - total_payout,
        "slip_count": slip_count or 0,
        "cancelled_count": cancelled_count,
    }


def line_payout_total(db: Session, round_id: str) -> Decimal:
    """Σ 明細 payout，排除已取消注單（結算後必須等於 Σ 注單 payout）"""
    total = (
        db.query(func.sum(BetDetail.payout))
        .join(BetSlip, BetDetail.slip_ref == BetSlip.id)
        .filter(BetSlip.round_id == round_id, not_cancelled())
        .scalar()
    )
    return money(total)


def wagered_by_round(db: Session, round_ids: List[str]) -> Dict[str, Decimal]:
    if not round_ids:
        return {}
    rows = (
        db.query(BetSlip.round_id, func.sum(BetSlip.total_stake))
        .filter(BetSlip.round_id.in_(round_ids), not_cancelled())
        .group_by(BetSlip.round_id)
        .all()
    )
    totals = {round_id: Decimal("0.00") for round_id in round_ids}
    for round_id, wagered in rows:
        totals[round_id] = money(wagered)
    return totals


# ============ 單一使用者 ============

def user_stats(
    db: Session,
    user_id: int,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
) -> dict:
    """
    單一使用者的下注額 / 派彩 / 淨額

    參數：
        date_from / date_to: 營運時區字串，範圍為 [date_from, date_to)
    """
    query = db.query(BetSlip).filter(BetSlip.user_id == user_id)
    if date_from:
        query = query.filter(BetSlip.created_at >= date_from)
    if date_to:
        query = query.filter(BetSlip.created_at < date_to)

    active = query.filter(not_cancelled())
    wagered, payout, slip_count = active.with_entities(
        func.sum(BetSlip.total_stake),
        func.sum(BetSlip.payout),
        func.count(BetSlip.id),
    ).one()
    won_count = active.filter(BetSlip.status == SlipStatus.WON).count()
    claimed_count = active.filter(BetSlip.claimed.is_(True)).count()
    cancelled_count = query.filter(BetSlip.slip_id.in_(cancelled_slip_ids_select())).count()

    total_wagered = money(wagered)
    total_payout = money(payout)
    return {
        "total_wagered": total_wagered,
        "total_payout": total_payout,
        # 玩家角度的盈虧
        "net": total_payout - total_wagered,
        "slip_count": slip_count or 0,
        "won_count": won_count,
        "claimed_count": claimed_count,
        "cancelled_count": cancelled_count,
    }
