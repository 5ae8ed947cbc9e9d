"""
EngineContext：注入到各個 Manager 與 API handler 的共用依賴

內容：
- clock：營運時區時鐘
- db_engine / session_factory：DB engine 與 session 工廠
- config：程序層級設定（pydantic-settings）
- settings：營運設定（settings 資料表）
- scheduler / alarms：APScheduler 與每回合鬧鐘
- rng：空回合隨機開獎用（測試時可給定 seed）

除了 alarms（以 round_id 為 key）之外，這裡沒有可變的共享狀態。
"""
from contextlib import contextmanager
from dataclasses import dataclass, field
import random

from apscheduler.schedulers.background import BackgroundScheduler
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from config import Settings
from database import build_session_factory
from core.alarms import AlarmRegistry
from core.clock import Clock
from services.settings_service import SettingsStore


@dataclass
class EngineContext:
    clock: Clock
    db_engine: Engine
    session_factory: sessionmaker
    config: Settings
    scheduler: BackgroundScheduler
    alarms: AlarmRegistry
    settings: SettingsStore
    rng: random.Random = field(default_factory=random.Random)

    @classmethod
    def build(cls, config: Settings, db_engine: Engine, clock: Clock = None, rng: random.Random = None):
        clock = clock or Clock()
        scheduler = BackgroundScheduler(timezone="UTC")
        return cls(
            clock=clock,
            db_engine=db_engine,
            session_factory=build_session_factory(db_engine),
            config=config,
            scheduler=scheduler,
            alarms=AlarmRegistry(scheduler),
            settings=SettingsStore(clock),
            rng=rng or random.Random(),
        )

    @property
    def barcode_secret(self) -> str:
        return self.config.barcode_secret

    @contextmanager
    def session(self) -> Session:
        db = self.session_factory()
        try:
            yield db
        finally:
            db.close()
