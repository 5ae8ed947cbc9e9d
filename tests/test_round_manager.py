import threading
from datetime import timedelta

from core.clock import SLOT_SECONDS
from models import Round, RoundStatus, SettlementStatus
from tests.conftest import ist, open_round


def test_create_if_missing_is_idempotent(round_engine, db, clock):
    first, created = round_engine.rounds.create_if_missing(db, ist("2026-03-10 12:03:10"))
    again, created_again = round_engine.rounds.create_if_missing(db, ist("2026-03-10 12:00:00"))

    assert created and not created_again
    assert first.round_id == again.round_id == "202603101200"
    assert first.start_at == "2026-03-10 12:00:00"
    assert first.end_at == "2026-03-10 12:05:00"
    assert first.status == RoundStatus.PENDING
    assert first.settlement_status == SettlementStatus.NOT_SETTLED
    assert first.multiplier == 10
    assert db.query(Round).count() == 1


def test_concurrent_create_if_missing_yields_one_row(round_engine, ctx):
    errors = []

    def create():
        try:
            with ctx.session() as session:
                round_engine.rounds.create_if_missing(session, ist("2026-03-10 12:00:00"))
        except Exception as e:  # pragma: no cover - surfaced by the assert below
            errors.append(e)

    threads = [threading.Thread(target=create) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    with ctx.session() as session:
        assert session.query(Round).count() == 1


def test_activate_due_arms_deadline_alarm(round_engine, db, ctx, clock):
    round_engine.rounds.create_if_missing(db, ist("2026-03-10 12:00:00"))
    round_engine.rounds.create_if_missing(db, ist("2026-03-10 12:05:00"))

    assert round_engine.rounds.activate_due(db) == ["202603101200"]
    assert round_engine.rounds.activate_due(db) == []
    assert ctx.alarms.fire_time("202603101200") == ist("2026-03-10 12:05:00")
    assert not ctx.alarms.is_armed("202603101205")


def test_complete_due_uses_end_at(round_engine, db, clock):
    open_round(round_engine, db)
    clock.set("2026-03-10 12:04:59")
    assert round_engine.rounds.complete_due(db) == []
    clock.set("2026-03-10 12:05:00")
    assert round_engine.rounds.complete_due(db) == ["202603101200"]
    assert round_engine.rounds.complete_due(db) == []


def test_create_next_immediately_activates_successor(round_engine, db, ctx, clock):
    r1 = open_round(round_engine, db)
    clock.set("2026-03-10 12:05:00")
    round_engine.rounds.complete(db, r1.round_id)

    successor = round_engine.rounds.create_next_immediately(db, r1)

    assert successor.round_id == "202603101205"
    assert successor.start_at == r1.end_at
    assert successor.status == RoundStatus.ACTIVE
    assert ctx.alarms.is_armed("202603101205")


def test_create_next_immediately_respects_operating_window(round_engine, db, clock):
    clock.set("2026-03-10 21:55:00")
    last = open_round(round_engine, db, "2026-03-10 21:55:00")
    clock.set("2026-03-10 22:00:00")
    assert round_engine.rounds.create_next_immediately(db, last) is None
    assert db.query(Round).count() == 1


def test_backfill_walks_from_window_start_with_cap(round_engine, db, clock):
    # 08:00 ~ 12:00 共 49 格，cap 24：第一次補到 09:55，第二次補到 11:55，第三次補上 12:00
    created = round_engine.rounds.backfill(db)
    assert len(created) == 24
    assert created[0] == "202603100800"
    assert created[-1] == "202603100955"

    created = round_engine.rounds.backfill(db)
    assert created[0] == "202603101000" and created[-1] == "202603101155"

    created = round_engine.rounds.backfill(db)
    assert created == ["202603101200"]
    assert round_engine.rounds.backfill(db) == []

    rounds = db.query(Round).order_by(Round.start_at).all()
    assert len(rounds) == 49
    for prev, nxt in zip(rounds, rounds[1:]):
        assert nxt.start_at == prev.end_at
    assert all(r.status == RoundStatus.COMPLETED for r in rounds[:-1])
    assert rounds[-1].status == RoundStatus.ACTIVE


def test_backfill_outside_window_does_nothing(round_engine, db, clock):
    clock.set("2026-03-10 23:10:00")
    assert round_engine.rounds.backfill(db) == []


def test_slot_grid_invariant_for_created_rounds(round_engine, db, ctx):
    round_engine.rounds.backfill(db)
    for r in db.query(Round).all():
        start = ctx.clock.parse_civil(r.start_at)
        assert ctx.clock.parse_civil(r.end_at) - start == timedelta(seconds=SLOT_SECONDS)
        assert ctx.clock.parse_round_id(r.round_id) == start


def test_list_rounds_ordering(round_engine, db, clock):
    clock.set("2026-03-10 11:55:00")
    while round_engine.rounds.backfill(db):
        pass
    clock.set("2026-03-10 12:00:00")
    round_engine.rounds.complete_due(db)
    open_round(round_engine, db)
    round_engine.rounds.create_if_missing(db, ist("2026-03-10 12:10:00"))
    round_engine.rounds.create_if_missing(db, ist("2026-03-10 12:05:00"))

    rows, total = round_engine.rounds.list_rounds(db, day="2026-03-10", page=1, limit=5)
    assert [r.round_id for r in rows] == [
        "202603101200",
        "202603101205",
        "202603101210",
        "202603101155",
        "202603101150",
    ]
    assert total == 51
