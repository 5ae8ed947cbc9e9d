from datetime import datetime
from decimal import Decimal
from typing import Annotated, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, PlainSerializer

from models import RoundStatus, SettlementStatus

# 金額在 JSON 裡以數字輸出
Money = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]


# ============ Auth ============

class LoginRequest(BaseModel):
    handle: str
    password: str


class RefreshRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    refresh_token: str = Field(alias="refreshToken")


class UserResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    handle: str
    balance: Money
    status: str
    roles: List[str]


class TokenResponse(BaseModel):
    accessToken: str
    refreshToken: str
    user: UserResponse


class LogoutResponse(BaseModel):
    success: bool


# ============ Rounds ============

class RoundResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    round_id: str
    start_at: str
    end_at: str
    status: RoundStatus
    winning_card: Optional[int] = None
    multiplier: Money
    settlement_status: SettlementStatus
    settlement_started_at: Optional[str] = None
    settlement_completed_at: Optional[str] = None
    settlement_error: Optional[str] = None


class CurrentRoundResponse(BaseModel):
    round: Optional[RoundResponse] = None
    server_time: str
    seconds_remaining: int
    is_betting_open: bool


class RoundListResponse(BaseModel):
    rounds: List[RoundResponse]


class AdminRoundRow(RoundResponse):
    total_wagered: Money


class AdminRoundListResponse(BaseModel):
    rounds: List[AdminRoundRow]
    page: int
    limit: int
    total: int


class RoundStatsResponse(BaseModel):
    round_id: str
    total_wagered: Money
    total_payout: Money
    profit: Money
    slip_count: int
    cancelled_count: int


class WinnerRow(BaseModel):
    round_id: str
    winning_card: Optional[int] = None
    start_at: str
    settlement_completed_at: Optional[str] = None


# ============ Bets ============

class BetLineRequest(BaseModel):
    card: int
    stake: Decimal


class PlaceBetRequest(BaseModel):
    round_id: str
    bets: List[BetLineRequest]


class ClaimRequest(BaseModel):
    identifier: str


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class BetLineResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    card: int
    stake: Money
    is_winner: bool
    payout: Money


class SlipResponse(BaseModel):
    slip_id: str
    barcode: str
    round_id: str
    total_stake: Money
    payout: Money
    status: str
    claimed: bool
    claimed_at: Optional[str] = None
    created_at: str
    bets: List[BetLineResponse]


class PlacementResponse(BaseModel):
    slip_id: str
    barcode: str
    round_id: str
    total_stake: Money
    new_balance: Money
    duplicate: bool
    created_at: str
    bets: List[BetLineResponse]


class ClaimResponse(BaseModel):
    slip_id: str
    barcode: str
    amount: Money
    new_balance: Money
    already_claimed: bool = False


class CancelResponse(BaseModel):
    slip_id: str
    barcode: str
    refund: Money
    new_balance: Money
    status: str


class SlipDetailResponse(BaseModel):
    slip: SlipResponse
    round: RoundResponse


class SlipListResponse(BaseModel):
    slips: List[SlipResponse]
    page: int
    limit: int
    total: int


class UserStatsResponse(BaseModel):
    total_wagered: Money
    total_payout: Money
    net: Money
    slip_count: int
    won_count: int
    claimed_count: int
    cancelled_count: int


# ============ Settlement ============

class SettleRequest(BaseModel):
    winning_card: int


class SettlementResponse(BaseModel):
    round_id: str
    winning_card: int
    winning_slips: int
    losing_slips: int
    total_payout: Money
    multiplier: Money
    actor: str


class CardDecision(BaseModel):
    card: int
    total_bet_amount: Money
    bets_count: int
    total_payout: Money
    profit: Money
    profit_percentage: Money
    is_profitable: bool


class SettlementDecisionResponse(BaseModel):
    round_id: str
    status: str
    settlement_status: str
    multiplier: Money
    total_wagered: Money
    has_bets: bool
    cards: List[CardDecision]
    recommended_card: int


class UserCardBet(BaseModel):
    card: int
    stake: Money


class LiveRound(SettlementDecisionResponse):
    start_at: str
    end_at: str
    user_bets: Optional[List[UserCardBet]] = None


class RecentSettledRow(BaseModel):
    round_id: str
    winning_card: Optional[int] = None
    settlement_completed_at: Optional[str] = None
    total_wagered: Money
    total_payout: Money
    profit: Money


class LiveSettlementResponse(BaseModel):
    server_time: str
    result_mode: str
    is_betting_open: bool
    current: Optional[LiveRound] = None
    recent_settled: List[RecentSettledRow]


# ============ Settings / audit ============

class SettingsResponse(BaseModel):
    settings: Dict[str, str]


class SettingsLogRow(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    key: str
    previous: Optional[str] = None
    new: str
    admin_id: int
    ip: Optional[str] = None
    ua: Optional[str] = None
    created_at: str


class SettingsLogResponse(BaseModel):
    logs: List[SettingsLogRow]
    page: int
    limit: int
    total: int


class AuditRow(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    actor: str
    action: str
    target_kind: Optional[str] = None
    target_id: Optional[str] = None
    detail: Optional[str] = None
    ip: Optional[str] = None
    ua: Optional[str] = None
    created_at: datetime


class AuditLogResponse(BaseModel):
    entries: List[AuditRow]
    page: int
    limit: int
    total: int
