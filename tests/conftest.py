import random
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from config import Settings
from core.clock import Clock, OPERATING_ZONE
from core.context import EngineContext
from core.engine import RoundEngine
from database import Base, build_engine
from main import create_app
from models import Direction, RoundStatus, User, UserStatus, WalletKind, WalletLog

START = "2026-03-10 12:00:00"


def ist(civil: str) -> datetime:
    return datetime.strptime(civil, "%Y-%m-%d %H:%M:%S").replace(tzinfo=OPERATING_ZONE)


class FrozenClock(Clock):
    """測試用時鐘：只有呼叫 set / advance 時才會前進"""

    def __init__(self, civil: str):
        self._now = ist(civil).astimezone(timezone.utc)
        self._monotonic = 1000.0

    def now(self) -> datetime:
        return self._now

    def monotonic(self) -> float:
        return self._monotonic

    def set(self, civil: str):
        target = ist(civil).astimezone(timezone.utc)
        self._monotonic += (target - self._now).total_seconds()
        self._now = target

    def advance(self, seconds: float):
        self._now += timedelta(seconds=seconds)
        self._monotonic += seconds


@pytest.fixture
def config(tmp_path):
    return Settings(
        _env_file=None,
        database_url=f"sqlite:///{tmp_path / 'rounds-test.db'}",
        jwt_secret="test-jwt-secret",
        barcode_secret="test-barcode-secret",
        scheduler_enabled=False,
        cors_origins=["*"],
    )


@pytest.fixture
def clock():
    return FrozenClock(START)


@pytest.fixture
def ctx(config, clock):
    db_engine = build_engine(config.database_url)
    Base.metadata.create_all(db_engine)
    context = EngineContext.build(config, db_engine, clock=clock, rng=random.Random(7))
    # 暫停的 scheduler：可以 arm / 查詢鬧鐘，但不會自己觸發
    context.scheduler.start(paused=True)
    yield context
    if context.scheduler.running:
        context.scheduler.shutdown(wait=False)
    db_engine.dispose()


@pytest.fixture
def db(ctx):
    with ctx.session() as session:
        yield session


@pytest.fixture
def round_engine(ctx, db):
    engine = RoundEngine(ctx)
    ctx.settings.ensure_defaults(db)
    return engine


@pytest.fixture
def make_user(db, clock):
    counter = {"n": 0}

    def _make(balance="500", roles="player", status=UserStatus.ACTIVE, handle=None, password_hash="!"):
        counter["n"] += 1
        user = User(
            handle=handle or f"user{counter['n']}",
            password_hash=password_hash,
            balance=Decimal("0"),
            status=status,
            roles=roles,
            created_at=clock.now_civil(),
        )
        db.add(user)
        db.commit()
        if Decimal(balance) > 0:
            fund(db, clock, user, balance)
        db.refresh(user)
        return user

    return _make


def fund(db, clock, user, amount):
    """儲值（透過帳本），讓餘額與帳本一致"""
    amount = Decimal(str(amount))
    user = db.query(User).filter(User.id == user.id).one()
    user.balance = Decimal(str(user.balance)) + amount
    db.add(WalletLog(
        user_id=user.id,
        amount=amount,
        direction=Direction.CREDIT,
        kind=WalletKind.RECHARGE,
        reference_kind=None,
        reference_id=None,
        balance_after=user.balance,
        created_at=clock.now_civil(),
    ))
    db.commit()


def open_round(round_engine, db, civil=START):
    """建立並啟用 civil 所在的回合"""
    round_obj, _ = round_engine.rounds.create_if_missing(db, ist(civil))
    round_engine.rounds.activate_due(db)
    db.refresh(round_obj)
    assert round_obj.status == RoundStatus.ACTIVE
    return round_obj


def set_mode(ctx, db, mode):
    ctx.settings.update(db, {"result_mode": mode}, actor=1, ip="127.0.0.1", ua="pytest")


@pytest.fixture
def client(ctx):
    app = create_app(ctx)
    with TestClient(app) as test_client:
        yield test_client


def bearer(client, user):
    token = client.app.state.auth.create_access_token(user)
    return {"Authorization": f"Bearer {token}"}
