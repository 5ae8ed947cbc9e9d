from core.alarms import GRACE, REARM
from models import Round, RoundStatus, SettlementStatus
from tests.conftest import ist, open_round, set_mode

R1 = "202603101200"
R2 = "202603101205"


def _reload(db, round_id):
    db.expire_all()
    return db.query(Round).filter(Round.round_id == round_id).one()


def test_deadline_alarm_completes_settles_and_opens_successor(round_engine, db, ctx, clock):
    open_round(round_engine, db)
    clock.set("2026-03-10 12:05:00")

    round_engine.scheduler.on_deadline(R1, 0)

    r1 = _reload(db, R1)
    assert r1.status == RoundStatus.COMPLETED
    assert r1.settlement_status == SettlementStatus.SETTLED
    assert 1 <= r1.winning_card <= 12

    r2 = _reload(db, R2)
    assert r2.status == RoundStatus.ACTIVE
    assert r2.start_at == r1.end_at
    assert ctx.alarms.fire_time(R2) == ist("2026-03-10 12:10:00")


def test_alarm_fired_early_rearms_at_end(round_engine, db, ctx, clock):
    open_round(round_engine, db)
    clock.set("2026-03-10 12:04:59")

    round_engine.scheduler.on_deadline(R1, 0)

    assert _reload(db, R1).status == RoundStatus.ACTIVE
    assert ctx.alarms.fire_time(R1, REARM) == ist("2026-03-10 12:05:00")
    assert not ctx.alarms.is_armed(R1, GRACE)


def test_early_alarm_in_manual_mode_still_arms_grace(round_engine, db, ctx, clock):
    set_mode(ctx, db, "manual")
    open_round(round_engine, db)
    clock.set("2026-03-10 12:04:59")
    round_engine.scheduler.on_deadline(R1, 10)
    assert ctx.alarms.fire_time(R1, REARM) == ist("2026-03-10 12:05:00")

    clock.set("2026-03-10 12:05:00")
    round_engine.scheduler.on_deadline(R1, 10, REARM)

    assert _reload(db, R1).status == RoundStatus.COMPLETED
    assert ctx.alarms.fire_time(R1, GRACE) == ist("2026-03-10 12:05:10")

    clock.set("2026-03-10 12:05:10")
    round_engine.scheduler.on_deadline(R1, 10, GRACE)
    assert _reload(db, R1).settlement_status == SettlementStatus.SETTLED


def test_manual_mode_waits_for_grace_before_auto_settling(round_engine, db, ctx, clock):
    set_mode(ctx, db, "manual")
    open_round(round_engine, db)
    assert ctx.settings.grace_seconds(db) == 10

    clock.set("2026-03-10 12:05:00")
    round_engine.scheduler.on_deadline(R1, 10)

    r1 = _reload(db, R1)
    assert r1.status == RoundStatus.COMPLETED
    assert r1.settlement_status == SettlementStatus.NOT_SETTLED
    assert ctx.alarms.fire_time(R1, GRACE) == ist("2026-03-10 12:05:10")
    assert _reload(db, R2).status == RoundStatus.ACTIVE

    clock.set("2026-03-10 12:05:10")
    round_engine.scheduler.on_deadline(R1, 10, GRACE)

    assert _reload(db, R1).settlement_status == SettlementStatus.SETTLED


def test_operator_decision_within_grace_wins_over_alarm(round_engine, db, ctx, clock):
    set_mode(ctx, db, "manual")
    open_round(round_engine, db)
    clock.set("2026-03-10 12:05:00")
    round_engine.scheduler.on_deadline(R1, 10)

    clock.set("2026-03-10 12:05:04")
    summary = round_engine.operator_settle(db, R1, 5, actor=1)
    assert summary.winning_card == 5
    assert not ctx.alarms.is_armed(R1)

    clock.set("2026-03-10 12:05:10")
    round_engine.scheduler.on_deadline(R1, 10, GRACE)

    r1 = _reload(db, R1)
    assert r1.settlement_status == SettlementStatus.SETTLED
    assert r1.winning_card == 5


def test_alarm_for_missing_round_is_ignored(round_engine, db, clock):
    round_engine.scheduler.on_deadline("202603101100", 0)
    assert db.query(Round).count() == 0


def test_tick_settles_overdue_round_without_alarm(round_engine, db, ctx, clock):
    open_round(round_engine, db)
    ctx.alarms.cancel(R1)
    clock.set("2026-03-10 12:05:30")

    report = round_engine.scheduler.tick()

    assert report["activated"] == [R2]
    assert report["completed"] == [R1]
    assert report["settled"] == [R1]
    assert _reload(db, R1).settlement_status == SettlementStatus.SETTLED
    assert ctx.alarms.is_armed(R2)


def test_tick_leaves_manual_round_inside_grace(round_engine, db, ctx, clock):
    set_mode(ctx, db, "manual")
    open_round(round_engine, db)
    clock.set("2026-03-10 12:05:05")

    report = round_engine.scheduler.tick()
    assert report["completed"] == [R1]
    assert report["settled"] == []

    clock.set("2026-03-10 12:05:10")
    report = round_engine.scheduler.tick()
    assert report["settled"] == [R1]


def test_tick_recovers_settlement_stuck_in_settling(round_engine, db, ctx, clock):
    open_round(round_engine, db)
    clock.set("2026-03-10 12:05:00")
    round_engine.rounds.complete(db, R1)

    ctx.config.settlement_budget_seconds = 0
    round_engine.scheduler.on_deadline(R1, 0)
    stuck = _reload(db, R1)
    assert stuck.settlement_status == SettlementStatus.SETTLING
    card = stuck.winning_card

    ctx.config.settlement_budget_seconds = 30
    clock.advance(30)
    assert round_engine.settlement.stuck_rounds(db) == []

    clock.advance(31)
    report = round_engine.scheduler.tick()

    assert report["recovered"] == [R1]
    r1 = _reload(db, R1)
    assert r1.settlement_status == SettlementStatus.SETTLED
    assert r1.winning_card == card


def test_failing_tick_step_does_not_stop_the_others(round_engine, db, monkeypatch):
    def boom(db):
        raise RuntimeError("backfill exploded")

    monkeypatch.setattr(round_engine.rounds, "backfill", boom)

    report = round_engine.scheduler.tick()

    assert report["backfill"] is None
    assert report["create_current"] == R1
    assert report["activated"] == [R1]


def test_tick_outside_operating_window_creates_nothing(round_engine, db, clock):
    clock.set("2026-03-10 23:30:00")
    report = round_engine.scheduler.tick()
    assert report["create_current"] is None
    assert report["backfill"] == []
    assert db.query(Round).count() == 0


def test_restore_alarms_rebuilds_from_round_state(round_engine, db, ctx, clock):
    old, _ = round_engine.rounds.create_if_missing(db, ist("2026-03-10 11:40:00"), RoundStatus.COMPLETED)
    recent, _ = round_engine.rounds.create_if_missing(db, ist("2026-03-10 11:50:00"), RoundStatus.COMPLETED)
    open_round(round_engine, db)
    ctx.alarms.cancel(R1)
    assert ctx.alarms.armed_rounds() == []

    restored = round_engine.scheduler.restore_alarms(db)

    assert sorted(restored) == sorted([recent.round_id, R1])
    assert old.round_id not in ctx.alarms.armed_rounds()
    assert ctx.alarms.fire_time(R1) == ist("2026-03-10 12:05:00")


def test_startup_boot_seeds_settings_and_opens_current_round(round_engine, db, ctx):
    report = round_engine.startup()

    assert report["restored_alarms"] == []
    assert report["create_current"] == R1
    assert report["activated"] == [R1]
    assert ctx.alarms.is_armed(R1)
    assert ctx.settings.result_mode(db) == "auto"
