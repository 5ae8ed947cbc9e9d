"""
Wager Manager：下注、領獎、取消

職責：
1. place：下注（冪等；同一個 (owner, idempotency_key) 只會有一張注單）
2. claim / scan_and_claim：領獎（單次；WHERE claimed = false）
3. cancel：取消並退款（取消帳本紀錄是唯一的「已取消」依據）

原則：
- 餘額只經過 WalletManager 異動，且與注單寫入在同一個 transaction
- 帳本 (reference_kind, reference_id) 唯一，是單次扣款/領獎/退款的最後防線
"""
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Iterable, List, Optional, Tuple
import logging
import uuid

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.deadline import Deadline
from core.exceptions import (
    AccountInactive,
    AlreadyClaimed,
    AlreadySettled,
    Forbidden,
    InvalidCard,
    InvalidStake,
    RoundNotOpen,
    SettlementNotReady,
    SlipCancelled,
    SlipNotFound,
    UserNotFound,
    ValidationFailed,
    WrongStatus,
)
from core.locks import with_round_lock, with_slip_lock
from core.wallet_manager import WalletManager
from database import transactional
from models import (
    BetDetail,
    BetSlip,
    ReferenceKind,
    Round,
    RoundStatus,
    SettlementStatus,
    SlipStatus,
    User,
    UserStatus,
)
from services import audit_service
from services.aggregate_service import is_cancelled, money
from services.barcode_service import generate_barcode, is_barcode, verify_barcode
from services.card_selection_service import is_valid_card

logger = logging.getLogger(__name__)

MAX_IDEMPOTENCY_KEY_LENGTH = 128


@dataclass
class PlacementResult:
    slip: BetSlip
    duplicate: bool
    new_balance: Decimal


@dataclass
class ClaimResult:
    slip: BetSlip
    amount: Decimal
    new_balance: Decimal
    already_claimed: bool = False


@dataclass
class CancelResult:
    slip: BetSlip
    refund: Decimal
    new_balance: Decimal


def parse_lines(bets: Iterable) -> List[Tuple[int, Decimal]]:
    """
    驗證下注明細

    每筆可以是 {"card": .., "stake": ..} 或 (card, stake)

    異常：
        InvalidStake：空清單或 stake <= 0
        InvalidCard：card 不在 1..12
    """
    lines = []
    for bet in bets or []:
        if isinstance(bet, dict):
            card, stake = bet.get("card"), bet.get("stake")
        else:
            card, stake = bet
        if not is_valid_card(card):
            raise InvalidCard(card)
        try:
            amount = Decimal(str(stake))
        except (InvalidOperation, ValueError):
            raise InvalidStake(f"Invalid stake: {stake!r}")
        if not amount.is_finite() or amount <= 0:
            raise InvalidStake(f"Stake must be positive: {stake!r}")
        if amount != amount.quantize(Decimal("0.01")):
            raise InvalidStake(f"Stake has more than two decimals: {stake!r}")
        lines.append((card, money(amount)))

    if not lines:
        raise InvalidStake("At least one bet is required")
    return lines


class WagerManager:
    """下注服務"""

    def __init__(self, ctx):
        self.ctx = ctx
        self.clock = ctx.clock
        self.settings = ctx.settings
        self.wallet = WalletManager(ctx.clock)

    # ============ 查詢 ============

    def find_slip(self, db: Session, identifier: str) -> BetSlip:
        """
        以 slip_id（UUID）或 13 碼條碼找注單

        條碼會重新計算 HMAC 比對，不符視為不存在
        """
        identifier = (identifier or "").strip()
        if is_barcode(identifier):
            slip = db.query(BetSlip).filter(BetSlip.barcode == identifier).first()
            if slip and not verify_barcode(identifier, slip.round_id, slip.slip_id, self.ctx.barcode_secret):
                logger.warning(f"Barcode {identifier} failed verification")
                slip = None
        else:
            slip = db.query(BetSlip).filter(BetSlip.slip_id == identifier).first()

        if not slip:
            raise SlipNotFound(identifier)
        return slip

    def _find_by_key(self, db: Session, user_id: int, key: str) -> Optional[BetSlip]:
        return db.query(BetSlip).filter(
            BetSlip.user_id == user_id,
            BetSlip.idempotency_key == key
        ).first()

    def _active_user(self, db: Session, user_id: int) -> User:
        user = db.query(User).filter(User.id == user_id).first()
        if not user:
            raise UserNotFound(user_id)
        if user.status != UserStatus.ACTIVE:
            raise AccountInactive(user_id)
        return user

    # ============ 下注 ============

    def _ensure_open(self, round_obj: Optional[Round], round_id: str):
        """回合必須 active、未開始結算、且 end_at > now"""
        if (
            not round_obj
            or round_obj.status != RoundStatus.ACTIVE
            or round_obj.settlement_status != SettlementStatus.NOT_SETTLED
            or round_obj.end_at <= self.clock.now_civil()
        ):
            raise RoundNotOpen(round_id)

    def place(
        self,
        db: Session,
        user_id: int,
        round_id: str,
        bets: Iterable,
        idempotency_key: Optional[str] = None,
    ) -> PlacementResult:
        """
        下注

        流程：
        1. 冪等檢查：(owner, key) 已有注單 → 原樣回傳，duplicate=True，不動餘額
        2. 回合必須 active、未開始結算且 end_at > now（鎖定回合，寫入後再確認一次）
        3. 以最新餘額檢查
        4. 產生條碼
        5. 同一個 transaction：注單、明細、扣款、帳本

        並發的相同 key：unique key 衝突 → rollback → 回傳既有注單
        """
        key = (idempotency_key or "").strip() or uuid.uuid4().hex
        if len(key) > MAX_IDEMPOTENCY_KEY_LENGTH:
            raise ValidationFailed("Idempotency key is too long")
        lines = parse_lines(bets)

        existing = self._find_by_key(db, user_id, key)
        if existing:
            logger.info(f"Duplicate placement for user {user_id} key {key}: slip {existing.slip_id}")
            return PlacementResult(existing, True, self.wallet.balance(db, user_id))

        deadline = Deadline("place_bet", self.ctx.config.request_timeout_seconds, self.clock.monotonic)
        return self._place(db, user_id, round_id, lines, key, deadline)

    @transactional
    def _place(
        self,
        db: Session,
        user_id: int,
        round_id: str,
        lines: List[Tuple[int, Decimal]],
        key: str,
        deadline: Deadline,
    ) -> PlacementResult:
        self.clock.parse_round_id(round_id)
        self._active_user(db, user_id)

        self._ensure_open(with_round_lock(round_id, db).first(), round_id)

        total = sum((stake for _, stake in lines), Decimal("0.00"))
        max_stake = self.settings.max_stake(db)
        if total > max_stake:
            raise InvalidStake(f"Total stake {total} exceeds the maximum of {max_stake}")

        self.wallet.ensure_covers(db, user_id, total)

        slip_id = str(uuid.uuid4())
        now = self.clock.now_civil()
        slip = BetSlip(
            slip_id=slip_id,
            barcode=generate_barcode(round_id, slip_id, self.ctx.barcode_secret),
            user_id=user_id,
            round_id=round_id,
            total_stake=total,
            payout=0,
            status=SlipStatus.PENDING,
            claimed=False,
            idempotency_key=key,
            created_at=now,
            updated_at=now,
        )
        db.add(slip)
        try:
            db.flush()
        except IntegrityError:
            db.rollback()
            existing = self._find_by_key(db, user_id, key)
            if existing is None:
                raise
            logger.info(f"Concurrent placement for user {user_id} key {key} resolved to slip {existing.slip_id}")
            return PlacementResult(existing, True, self.wallet.balance(db, user_id))

        # INSERT 之後已持有寫鎖，結算的 claim 會排在後面；再確認一次回合仍開放
        self._ensure_open(with_round_lock(round_id, db).first(), round_id)

        for card, stake in lines:
            db.add(BetDetail(
                slip_ref=slip.id,
                slip_id=slip_id,
                round_id=round_id,
                card=card,
                stake=stake,
                is_winner=False,
                payout=0,
            ))

        deadline.check()
        new_balance = self.wallet.debit(db, user_id, total, ReferenceKind.BET_PLACEMENT, slip_id)

        logger.info(f"User {user_id} placed slip {slip_id} on round {round_id}: {len(lines)} bets, {total}")
        return PlacementResult(slip, False, new_balance)

    # ============ 領獎 ============

    @transactional
    def claim(self, db: Session, user_id: int, identifier: str, is_operator: bool = False) -> ClaimResult:
        """
        領獎

        前置條件：
        1. 注單屬於呼叫者（操作員除外）
        2. 注單擁有者帳號為 active
        3. 沒有取消紀錄
        4. 回合已結算、注單 won、尚未領取

        異常：
            SlipNotFound / Forbidden / AccountInactive / SlipCancelled / SettlementNotReady / WrongStatus / AlreadyClaimed
        """
        slip = self.find_slip(db, identifier)
        if slip.user_id != user_id and not is_operator:
            raise Forbidden("Slip belongs to another user")

        slip = with_slip_lock(slip.id, db).first()
        self._active_user(db, slip.user_id)
        if is_cancelled(db, slip.slip_id):
            raise SlipCancelled(slip.slip_id)

        round_obj = db.query(Round).filter(Round.round_id == slip.round_id).one()
        if round_obj.settlement_status != SettlementStatus.SETTLED:
            raise SettlementNotReady(slip.round_id)
        if slip.status != SlipStatus.WON:
            raise WrongStatus(f"Slip {slip.slip_id} did not win")
        if slip.claimed:
            raise AlreadyClaimed(slip.slip_id)

        updated = db.query(BetSlip).filter(
            BetSlip.id == slip.id,
            BetSlip.claimed.is_(False)
        ).update(
            {BetSlip.claimed: True, BetSlip.claimed_at: self.clock.now_civil()},
            synchronize_session=False
        )
        if updated == 0:
            raise AlreadyClaimed(slip.slip_id)

        amount = money(slip.payout)
        try:
            new_balance = self.wallet.credit(db, slip.user_id, amount, ReferenceKind.CLAIM, slip.slip_id)
            db.flush()
        except IntegrityError:
            raise AlreadyClaimed(slip.slip_id)

        db.refresh(slip)
        logger.info(f"Slip {slip.slip_id} claimed: {amount} credited to user {slip.user_id}")
        return ClaimResult(slip, amount, new_balance)

    def scan_and_claim(self, db: Session, user_id: int, identifier: str, is_operator: bool = False) -> ClaimResult:
        """
        掃碼領獎：已領過的注單回傳 already_claimed=True，不視為錯誤
        """
        slip = self.find_slip(db, identifier)
        if slip.user_id != user_id and not is_operator:
            raise Forbidden("Slip belongs to another user")
        if slip.claimed:
            return ClaimResult(slip, money(slip.payout), self.wallet.balance(db, slip.user_id), already_claimed=True)
        try:
            return self.claim(db, user_id, identifier, is_operator=is_operator)
        except AlreadyClaimed:
            slip = self.find_slip(db, identifier)
            return ClaimResult(slip, money(slip.payout), self.wallet.balance(db, slip.user_id), already_claimed=True)

    # ============ 取消 ============

    @transactional
    def cancel(
        self,
        db: Session,
        identifier: str,
        actor: int,
        is_operator: bool = False,
        reason: Optional[str] = None,
        ip: Optional[str] = None,
        ua: Optional[str] = None,
    ) -> CancelResult:
        """
        取消注單並退回 total_stake

        前置條件：
        1. 本人或操作員
        2. 尚未領取、尚未取消
        3. 回合尚未開始結算（not_settled / failed）
        4. 注單擁有者帳號為 active

        效果：
        - 退款 + cancellation 帳本（取消的唯一依據）
        - 注單 status = lost
        - audit log
        """
        slip = self.find_slip(db, identifier)
        if slip.user_id != actor and not is_operator:
            raise Forbidden("You do not have permission to cancel this slip")

        slip = with_slip_lock(slip.id, db).first()
        if slip.claimed:
            raise WrongStatus(f"Slip {slip.slip_id} is already claimed")
        if is_cancelled(db, slip.slip_id):
            raise SlipCancelled(slip.slip_id)

        round_obj = with_round_lock(slip.round_id, db).one()
        if round_obj.settlement_status in (SettlementStatus.SETTLING, SettlementStatus.SETTLED):
            raise AlreadySettled(slip.round_id)

        self._active_user(db, slip.user_id)

        refund = money(slip.total_stake)
        if refund <= 0:
            raise InvalidStake(f"Slip {slip.slip_id} has nothing to refund")

        reason = (reason or "").strip() or None
        try:
            new_balance = self.wallet.credit(
                db, slip.user_id, refund, ReferenceKind.CANCELLATION, slip.slip_id, comment=reason
            )
            db.flush()
        except IntegrityError:
            raise SlipCancelled(slip.slip_id)

        db.query(BetSlip).filter(BetSlip.id == slip.id).update(
            {BetSlip.status: SlipStatus.LOST, BetSlip.updated_at: self.clock.now_civil()},
            synchronize_session=False
        )

        audit_service.record(
            db,
            at=self.clock.now(),
            actor=actor,
            action="admin_cancelled_slip" if is_operator else "user_cancelled_slip",
            target_kind="slip",
            target_id=slip.slip_id,
            detail={
                "barcode": slip.barcode,
                "round_id": slip.round_id,
                "refund": refund,
                "reason": reason,
            },
            ip=ip,
            ua=ua,
        )

        db.refresh(slip)
        logger.info(f"Slip {slip.slip_id} cancelled by {actor} (operator={is_operator}): refund {refund}")
        return CancelResult(slip, refund, new_balance)
