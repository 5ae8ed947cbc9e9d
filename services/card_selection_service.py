"""
開獎卡片選擇：純計算邏輯

自動開獎規則：
- 每張卡 c 的 pool_c = 非取消注單在 c 上的下注總額
- payout_c = pool_c * multiplier
- profit_c = total_wagered - payout_c
- 選 profit 最大的卡；平手取最小的卡號
- 完全沒有下注時，從 1..12 均勻隨機選一張
"""
from decimal import Decimal, ROUND_HALF_UP
from random import Random
from typing import Dict, List

CARDS = tuple(range(1, 13))


def card_profits(pools: Dict[int, Decimal], total_wagered: Decimal, multiplier: Decimal) -> Dict[int, Decimal]:
    return {
        card: total_wagered - pools.get(card, Decimal("0")) * multiplier
        for card in CARDS
    }


def is_valid_card(card) -> bool:
    return isinstance(card, int) and not isinstance(card, bool) and 1 <= card <= 12


def has_bets(pools: Dict[int, Decimal]) -> bool:
    return any(pools.get(card) for card in CARDS)


def recommend_card(pools: Dict[int, Decimal], total_wagered: Decimal, multiplier: Decimal) -> int:
    """profit 最大的卡，平手取最小卡號（沒有下注時結果是 1）"""
    profits = card_profits(pools, total_wagered, multiplier)
    best = max(profits.values())
    return min(card for card in CARDS if profits[card] == best)


def select_winning_card(
    pools: Dict[int, Decimal],
    total_wagered: Decimal,
    multiplier: Decimal,
    rng: Random,
) -> int:
    """
    參數：
        pools: 卡號 -> 下注總額（已排除取消注單）
        total_wagered: 非取消注單的 total_stake 總和
        multiplier: 回合倍率
        rng: 空回合時使用的亂數來源

    返回：
        1..12 的卡號
    """
    if not has_bets(pools):
        return rng.randint(1, 12)
    return recommend_card(pools, total_wagered, multiplier)


def build_decision(
    pools: Dict[int, Decimal],
    counts: Dict[int, int],
    total_wagered: Decimal,
    multiplier: Decimal,
) -> List[dict]:
    """每張卡開出時的盈虧預覽（給手動開獎的操作員看）"""
    profits = card_profits(pools, total_wagered, multiplier)
    rows = []
    for card in CARDS:
        pool = pools.get(card, Decimal("0"))
        profit = profits[card]
        if total_wagered > 0:
            percentage = (profit / total_wagered * 100).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
        else:
            percentage = Decimal("0.00")
        rows.append({
            "card": card,
            "total_bet_amount": pool,
            "bets_count": counts.get(card, 0),
            "total_payout": pool * multiplier,
            "profit": profit,
            "profit_percentage": percentage,
            "is_profitable": profit >= 0,
        })
    return rows
