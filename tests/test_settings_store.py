from datetime import time
from decimal import Decimal

import pytest

from core.exceptions import BadTimeFormat, InvalidSettingValue, UnknownKey
from models import SettingsEntry, SettingsLog


@pytest.fixture
def store(ctx, db):
    ctx.settings.ensure_defaults(db)
    return ctx.settings


def test_defaults_are_seeded_once(store, db):
    assert store.ensure_defaults(db) == 0
    assert store.all(db) == {
        "round_multiplier": "10",
        "round_start_time": "08:00",
        "round_end_time": "22:00",
        "result_mode": "auto",
        "max_stake": "10000",
    }


def test_typed_readers(store, db):
    assert store.multiplier(db) == Decimal("10")
    assert store.operating_window(db) == (time(8, 0), time(22, 0))
    assert store.result_mode(db) == "auto"
    assert store.grace_seconds(db) == 0


def test_invalid_stored_value_falls_back_to_default(store, db):
    row = db.query(SettingsEntry).filter(SettingsEntry.key == "round_multiplier").one()
    row.value = "ten"
    db.commit()
    assert store.as_decimal(db, "round_multiplier") == Decimal("10")


def test_update_writes_value_and_change_log(store, db):
    values = store.update(db, {"result_mode": "MANUAL", "round_multiplier": "12.5"}, actor=42, ip="10.0.0.1", ua="ui")
    assert values["result_mode"] == "manual"
    assert values["round_multiplier"] == "12.5"
    assert store.grace_seconds(db) == 10

    logs = db.query(SettingsLog).order_by(SettingsLog.key).all()
    assert [(log.key, log.previous, log.new, log.admin_id, log.ip, log.ua) for log in logs] == [
        ("result_mode", "auto", "manual", 42, "10.0.0.1", "ui"),
        ("round_multiplier", "10", "12.5", 42, "10.0.0.1", "ui"),
    ]


def test_unknown_key_writes_nothing(store, db):
    with pytest.raises(UnknownKey):
        store.update(db, {"result_mode": "manual", "jackpot": "1"}, actor=1, ip=None, ua=None)
    assert store.result_mode(db) == "auto"
    assert db.query(SettingsLog).count() == 0


def test_value_validation(store, db):
    with pytest.raises(BadTimeFormat):
        store.update(db, {"round_start_time": "8am"}, actor=1, ip=None, ua=None)
    with pytest.raises(InvalidSettingValue):
        store.update(db, {"result_mode": "random"}, actor=1, ip=None, ua=None)
    with pytest.raises(InvalidSettingValue):
        store.update(db, {"max_stake": "-5"}, actor=1, ip=None, ua=None)


def test_unknown_key_on_read(store, db):
    with pytest.raises(UnknownKey):
        store.get(db, "jackpot")
