"""
資料表定義

時間欄位說明：
- 以 *_at 命名的 String(19) 欄位存的是營運時區（UTC+05:30）的
  "YYYY-MM-DD HH:MM:SS" 字串，由 core.clock.Clock 統一格式化/解析
- 唯一例外是 audit_logs.created_at，存 UTC DateTime
"""
import enum

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from database import Base


MONEY = Numeric(14, 2)
CIVIL = String(19)


def _enum_column(enum_cls, **kwargs):
    # 存 value（小寫字串），不用 DB native enum，方便 SQLite/PostgreSQL 共用
    return Column(
        Enum(
            enum_cls,
            native_enum=False,
            length=16,
            values_callable=lambda members: [m.value for m in members],
        ),
        **kwargs
    )


class RoundStatus(str, enum.Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"


class SettlementStatus(str, enum.Enum):
    NOT_SETTLED = "not_settled"
    SETTLING = "settling"
    SETTLED = "settled"
    FAILED = "failed"


class SlipStatus(str, enum.Enum):
    PENDING = "pending"
    WON = "won"
    LOST = "lost"


class Direction(str, enum.Enum):
    CREDIT = "credit"
    DEBIT = "debit"


class WalletKind(str, enum.Enum):
    RECHARGE = "recharge"
    WITHDRAWAL = "withdrawal"
    GAME = "game"


class ReferenceKind(str, enum.Enum):
    BET_PLACEMENT = "bet_placement"
    CLAIM = "claim"
    CANCELLATION = "cancellation"


class UserStatus(str, enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    BANNED = "banned"
    PENDING = "pending"


class Round(Base):
    __tablename__ = "rounds"

    round_id = Column(String(12), primary_key=True)
    start_at = Column(CIVIL, nullable=False, index=True)
    end_at = Column(CIVIL, nullable=False, index=True)
    status = _enum_column(RoundStatus, nullable=False, default=RoundStatus.PENDING, index=True)
    winning_card = Column(Integer, nullable=True)
    multiplier = Column(MONEY, nullable=False)
    settlement_status = _enum_column(
        SettlementStatus, nullable=False, default=SettlementStatus.NOT_SETTLED, index=True
    )
    settlement_started_at = Column(CIVIL, nullable=True)
    settlement_completed_at = Column(CIVIL, nullable=True)
    settlement_error = Column(Text, nullable=True)
    created_at = Column(CIVIL, nullable=False)
    updated_at = Column(CIVIL, nullable=False)

    slips = relationship("BetSlip", back_populates="round", passive_deletes="all")


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    handle = Column(String(64), unique=True, nullable=False)
    password_hash = Column(String(128), nullable=False)
    balance = Column(MONEY, nullable=False, default=0)
    status = _enum_column(UserStatus, nullable=False, default=UserStatus.ACTIVE)
    # 逗號分隔的角色集合，例如 "player,admin"
    roles = Column(String(128), nullable=False, default="player")
    created_at = Column(CIVIL, nullable=False)

    @property
    def role_set(self):
        return {r.strip() for r in (self.roles or "").split(",") if r.strip()}


class BetSlip(Base):
    __tablename__ = "bet_slips"
    __table_args__ = (
        UniqueConstraint("user_id", "idempotency_key", name="uq_bet_slips_owner_idempotency"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    slip_id = Column(String(36), unique=True, nullable=False)
    barcode = Column(String(13), unique=True, nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    round_id = Column(String(12), ForeignKey("rounds.round_id"), nullable=False, index=True)
    total_stake = Column(MONEY, nullable=False)
    payout = Column(MONEY, nullable=False, default=0)
    status = _enum_column(SlipStatus, nullable=False, default=SlipStatus.PENDING)
    claimed = Column(Boolean, nullable=False, default=False)
    claimed_at = Column(CIVIL, nullable=True)
    idempotency_key = Column(String(128), nullable=False)
    created_at = Column(CIVIL, nullable=False)
    updated_at = Column(CIVIL, nullable=False)

    round = relationship("Round", back_populates="slips")
    user = relationship("User")
    lines = relationship(
        "BetDetail",
        back_populates="slip",
        order_by="BetDetail.id",
        cascade="all, delete-orphan",
    )


class BetDetail(Base):
    __tablename__ = "bet_details"

    id = Column(Integer, primary_key=True, autoincrement=True)
    slip_ref = Column(Integer, ForeignKey("bet_slips.id"), nullable=False, index=True)
    slip_id = Column(String(36), nullable=False, index=True)
    round_id = Column(String(12), nullable=False, index=True)
    card = Column(Integer, nullable=False)
    stake = Column(MONEY, nullable=False)
    is_winner = Column(Boolean, nullable=False, default=False)
    payout = Column(MONEY, nullable=False, default=0)

    slip = relationship("BetSlip", back_populates="lines")


class WalletLog(Base):
    """
    Append-only 錢包帳本

    (reference_kind, reference_id) 唯一：同一張注單最多一筆下注扣款、
    一筆領獎入帳、一筆取消退款。儲值/提款沒有 reference，不受限制。
    """
    __tablename__ = "wallet_logs"
    __table_args__ = (
        UniqueConstraint("reference_kind", "reference_id", name="uq_wallet_logs_reference"),
        Index("ix_wallet_logs_reference", "reference_kind", "reference_id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    amount = Column(MONEY, nullable=False)
    direction = _enum_column(Direction, nullable=False)
    kind = _enum_column(WalletKind, nullable=False)
    reference_kind = _enum_column(ReferenceKind, nullable=True)
    reference_id = Column(String(36), nullable=True)
    balance_after = Column(MONEY, nullable=False)
    comment = Column(String(255), nullable=True)
    created_at = Column(CIVIL, nullable=False)


class SettingsEntry(Base):
    __tablename__ = "settings"

    key = Column(String(64), primary_key=True)
    value = Column(String(255), nullable=False)
    updated_at = Column(CIVIL, nullable=False)


class SettingsLog(Base):
    __tablename__ = "settings_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    key = Column(String(64), nullable=False, index=True)
    previous = Column(String(255), nullable=True)
    new = Column(String(255), nullable=False)
    admin_id = Column(Integer, nullable=False)
    ip = Column(String(64), nullable=True)
    ua = Column(String(255), nullable=True)
    created_at = Column(CIVIL, nullable=False)


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    actor = Column(String(64), nullable=False)
    action = Column(String(64), nullable=False, index=True)
    target_kind = Column(String(32), nullable=True)
    target_id = Column(String(64), nullable=True)
    detail = Column(Text, nullable=True)
    ip = Column(String(64), nullable=True)
    ua = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)


class RefreshToken(Base):
    __tablename__ = "refresh_tokens"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    token_hash = Column(String(64), unique=True, nullable=False)
    expires_at = Column(CIVIL, nullable=False)
    revoked = Column(Boolean, nullable=False, default=False)
    created_at = Column(CIVIL, nullable=False)


class LoginHistory(Base):
    __tablename__ = "login_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    handle = Column(String(64), nullable=False)
    success = Column(Boolean, nullable=False)
    ip = Column(String(64), nullable=True)
    ua = Column(String(255), nullable=True)
    created_at = Column(CIVIL, nullable=False)
