from decimal import Decimal

import pytest

from core.exceptions import AlreadySettled, InvalidCard, OperationTimeout, RoundNotFound, WrongStatus
from models import AuditLog, BetDetail, BetSlip, Round, RoundStatus, SettlementStatus, SlipStatus
from services.aggregate_service import line_payout_total, round_totals
from tests.conftest import ist, open_round, set_mode

R1 = "202603101200"


def _reload(db, model, **criteria):
    db.expire_all()
    return db.query(model).filter_by(**criteria).one()


@pytest.fixture
def two_bets(round_engine, db, make_user):
    """slip A: card 3 x 100 (u1)；slip B: card 7 x 50 (u2)"""
    open_round(round_engine, db)
    u1, u2 = make_user(), make_user()
    a = round_engine.wagers.place(db, u1.id, R1, [{"card": 3, "stake": 100}], "a").slip
    b = round_engine.wagers.place(db, u2.id, R1, [{"card": 7, "stake": 50}], "b").slip
    return a.slip_id, b.slip_id


def _finish(round_engine, db, clock):
    clock.set("2026-03-10 12:05:00")
    assert round_engine.rounds.complete_due(db) == [R1]


def test_auto_settlement_picks_most_profitable_lowest_card(round_engine, db, clock, two_bets):
    a, b = two_bets
    _finish(round_engine, db, clock)

    summary = round_engine.settlement.auto_settle(db, R1)

    assert summary.winning_card == 1
    assert summary.winning_slips == 0
    assert summary.losing_slips == 2
    assert summary.actor == "system"

    round_obj = _reload(db, Round, round_id=R1)
    assert round_obj.settlement_status == SettlementStatus.SETTLED
    assert round_obj.winning_card == 1
    assert round_obj.settlement_completed_at == "2026-03-10 12:05:00"
    for slip_id in (a, b):
        slip = _reload(db, BetSlip, slip_id=slip_id)
        assert slip.status == SlipStatus.LOST
        assert slip.payout == 0


def test_empty_round_settles_with_random_card(round_engine, db, clock):
    open_round(round_engine, db)
    _finish(round_engine, db, clock)

    summary = round_engine.settlement.auto_settle(db, R1)

    assert 1 <= summary.winning_card <= 12
    assert summary.total_payout == Decimal("0.00")
    assert _reload(db, Round, round_id=R1).settlement_status == SettlementStatus.SETTLED


def test_manual_override_pays_winner(round_engine, db, ctx, clock, two_bets):
    a, b = two_bets
    set_mode(ctx, db, "manual")
    _finish(round_engine, db, clock)
    clock.set("2026-03-10 12:05:03")

    summary = round_engine.operator_settle(db, R1, 3, actor=42, ip="10.0.0.1", ua="pytest")

    assert summary.winning_card == 3
    assert summary.total_payout == Decimal("1000.00")
    assert summary.actor == "42"

    slip_a = _reload(db, BetSlip, slip_id=a)
    assert slip_a.status == SlipStatus.WON
    assert slip_a.payout == Decimal("1000")
    slip_b = _reload(db, BetSlip, slip_id=b)
    assert slip_b.status == SlipStatus.LOST

    with pytest.raises(AlreadySettled):
        round_engine.settlement.auto_settle(db, R1)

    audit = db.query(AuditLog).filter(AuditLog.action == "settle_round").one()
    assert audit.actor == "42"
    assert audit.target_id == R1
    assert audit.ip == "10.0.0.1"


def test_line_and_slip_payouts_agree(round_engine, db, clock, make_user):
    open_round(round_engine, db)
    user = make_user(balance="1000")
    round_engine.wagers.place(db, user.id, R1, [{"card": 4, "stake": 10}, {"card": 4, "stake": "2.50"},
                                                {"card": 9, "stake": 5}], "multi")
    round_engine.wagers.place(db, user.id, R1, [{"card": 4, "stake": 1}], "single")
    _finish(round_engine, db, clock)

    summary = round_engine.settlement.settle(db, R1, 4, actor=1)

    db.expire_all()
    assert summary.total_payout == Decimal("135.00")
    assert line_payout_total(db, R1) == Decimal("135.00")
    assert round_totals(db, R1)["total_payout"] == Decimal("135.00")
    losing_lines = db.query(BetDetail).filter(BetDetail.round_id == R1, BetDetail.card == 9).one()
    assert losing_lines.is_winner is False
    assert losing_lines.payout == 0


def test_cancelled_slip_is_excluded_from_settlement(round_engine, db, clock, two_bets, make_user):
    a, b = two_bets
    operator = make_user(balance="0", roles="admin")
    clock.set("2026-03-10 12:04:59")
    round_engine.wagers.cancel(db, a, actor=operator.id, is_operator=True, reason="misprint")

    _finish(round_engine, db, clock)
    summary = round_engine.operator_settle(db, R1, 3, actor=operator.id)

    assert summary.skipped_cancelled == [a]
    assert summary.winning_slips == 0
    totals = round_totals(db, R1)
    assert totals["total_wagered"] == Decimal("50.00")
    assert totals["total_payout"] == Decimal("0.00")
    assert totals["profit"] == Decimal("50.00")
    assert totals["cancelled_count"] == 1

    slip_a = _reload(db, BetSlip, slip_id=a)
    assert slip_a.status == SlipStatus.LOST
    assert slip_a.payout == 0


def test_settle_rejects_invalid_card(round_engine, db, clock):
    open_round(round_engine, db)
    _finish(round_engine, db, clock)
    for card in (0, 13, True, "3"):
        with pytest.raises(InvalidCard):
            round_engine.settlement.settle(db, R1, card)
    assert _reload(db, Round, round_id=R1).settlement_status == SettlementStatus.NOT_SETTLED


def test_settle_rejects_unknown_round(round_engine, db):
    with pytest.raises(RoundNotFound):
        round_engine.settlement.settle(db, "202603101100", 3)


def test_pending_round_cannot_be_settled(round_engine, db, clock):
    round_engine.rounds.create_if_missing(db, ist("2026-03-10 12:30:00"))
    with pytest.raises(WrongStatus):
        round_engine.operator_settle(db, "202603101230", 3, actor=1)


def test_active_round_settles_early_only_in_manual_mode(round_engine, db, ctx, clock):
    open_round(round_engine, db)
    with pytest.raises(WrongStatus):
        round_engine.operator_settle(db, R1, 3, actor=1)

    set_mode(ctx, db, "manual")
    clock.set("2026-03-10 12:02:00")
    summary = round_engine.operator_settle(db, R1, 3, actor=1)

    assert summary.winning_card == 3
    round_obj = _reload(db, Round, round_id=R1)
    assert round_obj.status == RoundStatus.COMPLETED
    assert round_obj.settlement_status == SettlementStatus.SETTLED
    assert not ctx.alarms.is_armed(R1)


def test_second_settle_is_already_settled(round_engine, db, clock):
    open_round(round_engine, db)
    _finish(round_engine, db, clock)
    round_engine.settlement.settle(db, R1, 2, actor=1)
    with pytest.raises(AlreadySettled):
        round_engine.settlement.settle(db, R1, 5, actor=1)
    assert _reload(db, Round, round_id=R1).winning_card == 2


def test_timeout_leaves_round_settling_then_resume_finishes(round_engine, db, ctx, clock, two_bets):
    a, _ = two_bets
    _finish(round_engine, db, clock)
    ctx.config.settlement_budget_seconds = 0

    with pytest.raises(OperationTimeout):
        round_engine.settlement.settle(db, R1, 3, actor=1)

    round_obj = _reload(db, Round, round_id=R1)
    assert round_obj.settlement_status == SettlementStatus.SETTLING
    assert round_obj.winning_card == 3
    assert _reload(db, BetSlip, slip_id=a).status == SlipStatus.PENDING

    with pytest.raises(AlreadySettled):
        round_engine.settlement.settle(db, R1, 7, actor=1)

    ctx.config.settlement_budget_seconds = 30
    summary = round_engine.settlement.resume(db, R1)

    assert summary.winning_card == 3
    assert _reload(db, BetSlip, slip_id=a).status == SlipStatus.WON
    assert _reload(db, Round, round_id=R1).settlement_status == SettlementStatus.SETTLED


def test_corrupt_stored_card_marks_settlement_failed(round_engine, db, clock):
    open_round(round_engine, db)
    _finish(round_engine, db, clock)
    db.query(Round).filter(Round.round_id == R1).update({
        Round.settlement_status: SettlementStatus.SETTLING,
        Round.winning_card: 99,
        Round.settlement_started_at: "2026-03-10 12:05:00",
    })
    db.commit()

    with pytest.raises(InvalidCard):
        round_engine.settlement.resume(db, R1)

    round_obj = _reload(db, Round, round_id=R1)
    assert round_obj.settlement_status == SettlementStatus.FAILED
    assert "InvalidCard" in round_obj.settlement_error

    with pytest.raises(WrongStatus):
        round_engine.settlement.settle(db, R1, 3, actor=1)


def test_decision_preview_excludes_cancelled_and_recommends(round_engine, db, clock, two_bets, make_user):
    a, _ = two_bets
    round_engine.wagers.cancel(db, a, actor=make_user(roles="admin").id, is_operator=True)

    round_obj = _reload(db, Round, round_id=R1)
    decision = round_engine.settlement.decision(db, round_obj)

    assert decision["total_wagered"] == Decimal("50.00")
    assert decision["has_bets"] is True
    assert decision["recommended_card"] == 1
    cards = {row["card"]: row for row in decision["cards"]}
    assert cards[3]["total_bet_amount"] == Decimal("0.00")
    assert cards[7]["total_bet_amount"] == Decimal("50.00")
    assert cards[7]["total_payout"] == Decimal("500.00")
    assert cards[7]["profit"] == Decimal("-450.00")
    assert cards[7]["is_profitable"] is False
    assert cards[1]["profit_percentage"] == Decimal("100.00")
