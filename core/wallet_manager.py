"""
Wallet Manager：使用者餘額的唯一寫入入口

每次異動：
1. 重新讀取餘額（observed）
2. 條件式更新：WHERE balance = observed（扣款再加上 balance >= amount）
3. 同一個 transaction 內寫入一筆 wallet_logs

條件式更新失敗（有人在中間改了餘額）就重試，最多 BALANCE_RETRIES 次，
之後丟 ConcurrencyExceeded。這保證 Σcredit - Σdebit = 餘額變化。

注意：
- 不自己 commit，由呼叫端（@transactional）決定交易邊界
"""
from decimal import Decimal
from typing import Optional
import logging

from sqlalchemy.orm import Session

from core.clock import Clock
from core.exceptions import ConcurrencyExceeded, InsufficientFunds, UserNotFound
from models import Direction, ReferenceKind, User, WalletKind, WalletLog
from services.aggregate_service import money

logger = logging.getLogger(__name__)

BALANCE_RETRIES = 3


class WalletManager:
    def __init__(self, clock: Clock):
        self.clock = clock

    def balance(self, db: Session, user_id: int) -> Decimal:
        observed = db.query(User.balance).filter(User.id == user_id).scalar()
        if observed is None:
            raise UserNotFound(user_id)
        return money(observed)

    def ensure_covers(self, db: Session, user_id: int, amount: Decimal) -> Decimal:
        observed = self.balance(db, user_id)
        if observed < amount:
            raise InsufficientFunds(observed, amount)
        return observed

    def apply(
        self,
        db: Session,
        user_id: int,
        amount: Decimal,
        direction: Direction,
        reference_kind: Optional[ReferenceKind],
        reference_id: Optional[str],
        kind: WalletKind = WalletKind.GAME,
        comment: Optional[str] = None,
    ) -> Decimal:
        """
        異動餘額並記帳

        返回：
            異動後的餘額

        異常：
            UserNotFound：使用者不存在
            InsufficientFunds：扣款金額大於餘額
            ConcurrencyExceeded：重試用完
        """
        amount = money(amount)
        for attempt in range(1, BALANCE_RETRIES + 1):
            observed = self.balance(db, user_id)

            criteria = [User.id == user_id, User.balance == observed]
            if direction == Direction.DEBIT:
                if observed < amount:
                    raise InsufficientFunds(observed, amount)
                new_balance = observed - amount
                criteria.append(User.balance >= amount)
            else:
                new_balance = observed + amount

            updated = db.query(User).filter(*criteria).update(
                {User.balance: new_balance},
                synchronize_session=False
            )
            if updated == 1:
                db.add(WalletLog(
                    user_id=user_id,
                    amount=amount,
                    direction=direction,
                    kind=kind,
                    reference_kind=reference_kind,
                    reference_id=reference_id,
                    balance_after=new_balance,
                    comment=comment,
                    created_at=self.clock.now_civil(),
                ))
                return new_balance

            logger.warning(
                f"Balance of user {user_id} changed concurrently "
                f"(attempt {attempt}/{BALANCE_RETRIES})"
            )

        raise ConcurrencyExceeded(user_id)

    def debit(self, db: Session, user_id: int, amount: Decimal, reference_kind: ReferenceKind,
              reference_id: str, comment: Optional[str] = None) -> Decimal:
        return self.apply(db, user_id, amount, Direction.DEBIT, reference_kind, reference_id, comment=comment)

    def credit(self, db: Session, user_id: int, amount: Decimal, reference_kind: ReferenceKind,
               reference_id: str, comment: Optional[str] = None) -> Decimal:
        return self.apply(db, user_id, amount, Direction.CREDIT, reference_kind, reference_id, comment=comment)
