"""ORM rows → response schemas"""
from models import BetSlip, Round, User
from schemas import BetLineResponse, RoundResponse, SlipResponse, UserResponse
from services.aggregate_service import display_status, money


def round_response(round_obj: Round) -> RoundResponse:
    return RoundResponse.model_validate(round_obj)


def user_response(user: User, balance=None) -> UserResponse:
    return UserResponse(
        id=user.id,
        handle=user.handle,
        balance=money(user.balance if balance is None else balance),
        status=user.status.value,
        roles=sorted(user.role_set),
    )


def line_responses(slip: BetSlip):
    return [BetLineResponse.model_validate(line) for line in slip.lines]


def slip_response(slip: BetSlip, cancelled: bool) -> SlipResponse:
    return SlipResponse(
        slip_id=slip.slip_id,
        barcode=slip.barcode,
        round_id=slip.round_id,
        total_stake=money(slip.total_stake),
        payout=money(slip.payout),
        status=display_status(slip, cancelled),
        claimed=slip.claimed,
        claimed_at=slip.claimed_at,
        created_at=slip.created_at,
        bets=line_responses(slip),
    )
