"""
Settings Store：營運可調整的 key/value 設定 + 變更紀錄

原則：
- 值一律以字串儲存
- 讀取端有型別；資料列不存在或解析失敗時退回預設值（手動改壞資料表不會讓 scheduler 停擺）
- 寫入端先全部驗證，再於同一個 transaction 內寫值，每個異動的 key 一筆 settings_logs
"""
from dataclasses import dataclass
from datetime import time
from decimal import Decimal, InvalidOperation
from typing import Callable, Dict, List, Optional, Tuple
import logging

from sqlalchemy.orm import Session

from core.clock import Clock
from core.exceptions import BadTimeFormat, InvalidSettingValue, UnknownKey
from database import transactional
from models import SettingsEntry, SettingsLog

logger = logging.getLogger(__name__)

RESULT_MODES = ("auto", "manual")
MANUAL_GRACE_SECONDS = 10


def _positive_decimal(key: str, value: str) -> Decimal:
    try:
        parsed = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise InvalidSettingValue(key, value)
    if not parsed.is_finite() or parsed <= 0:
        raise InvalidSettingValue(key, value)
    return parsed


def _civil_time(key: str, value: str) -> time:
    return Clock.parse_hhmm(str(value).strip())


def _result_mode(key: str, value: str) -> str:
    mode = str(value).strip().lower()
    if mode not in RESULT_MODES:
        raise InvalidSettingValue(key, value)
    return mode


@dataclass(frozen=True)
class SettingDefinition:
    default: str
    parse: Callable
    description: str


SETTINGS: Dict[str, SettingDefinition] = {
    "round_multiplier": SettingDefinition("10", _positive_decimal, "Payout multiplier for new rounds"),
    "round_start_time": SettingDefinition("08:00", _civil_time, "Operating window start (HH:MM)"),
    "round_end_time": SettingDefinition("22:00", _civil_time, "Operating window end (HH:MM)"),
    "result_mode": SettingDefinition("auto", _result_mode, "auto or manual winning-card selection"),
    "max_stake": SettingDefinition("10000", _positive_decimal, "Maximum total stake per slip"),
}


def _definition(key: str) -> SettingDefinition:
    definition = SETTINGS.get(key)
    if definition is None:
        raise UnknownKey(key)
    return definition


class SettingsStore:
    def __init__(self, clock: Clock):
        self.clock = clock

    # ============ 原始值 ============

    def get(self, db: Session, key: str) -> str:
        definition = _definition(key)
        row = db.query(SettingsEntry).filter(SettingsEntry.key == key).first()
        return row.value if row else definition.default

    def all(self, db: Session) -> Dict[str, str]:
        values = {key: definition.default for key, definition in SETTINGS.items()}
        for row in db.query(SettingsEntry).filter(SettingsEntry.key.in_(list(SETTINGS))).all():
            values[row.key] = row.value
        return values

    def _typed(self, db: Session, key: str):
        definition = _definition(key)
        raw = self.get(db, key)
        try:
            return definition.parse(key, raw)
        except (InvalidSettingValue, BadTimeFormat):
            logger.warning(f"Setting {key}={raw!r} is invalid, using default {definition.default!r}")
            return definition.parse(key, definition.default)

    # ============ 型別讀取 ============

    def as_decimal(self, db: Session, key: str) -> Decimal:
        return self._typed(db, key)

    def as_civil_time(self, db: Session, key: str) -> time:
        return self._typed(db, key)

    def as_enum(self, db: Session, key: str) -> str:
        return self._typed(db, key)

    def multiplier(self, db: Session) -> Decimal:
        return self.as_decimal(db, "round_multiplier")

    def max_stake(self, db: Session) -> Decimal:
        return self.as_decimal(db, "max_stake")

    def result_mode(self, db: Session) -> str:
        return self.as_enum(db, "result_mode")

    def operating_window(self, db: Session) -> Tuple[time, time]:
        return self.as_civil_time(db, "round_start_time"), self.as_civil_time(db, "round_end_time")

    def grace_seconds(self, db: Session) -> int:
        return MANUAL_GRACE_SECONDS if self.result_mode(db) == "manual" else 0

    # ============ 寫入 ============

    @transactional
    def ensure_defaults(self, db: Session) -> int:
        """替每個尚未存在的已知 key 寫入預設值"""
        existing = {key for (key,) in db.query(SettingsEntry.key).all()}
        now = self.clock.now_civil()
        created = 0
        for key, definition in SETTINGS.items():
            if key not in existing:
                db.add(SettingsEntry(key=key, value=definition.default, updated_at=now))
                created += 1
        if created:
            logger.info(f"Seeded {created} default settings")
        return created

    @transactional
    def update(
        self,
        db: Session,
        changes: Dict[str, str],
        actor: int,
        ip: Optional[str],
        ua: Optional[str],
    ) -> Dict[str, str]:
        """
        更新設定

        流程：
        1. 驗證所有 key / value（任何一個不合法 → 全部不寫）
        2. 寫入正規化後的值（"manual"、"08:00"、"12.5"）
        3. 每個 key 一筆變更紀錄

        異常：
            UnknownKey / InvalidSettingValue / BadTimeFormat
        """
        normalized: Dict[str, str] = {}
        for key, value in changes.items():
            definition = _definition(key)
            parsed = definition.parse(key, value)
            if isinstance(parsed, time):
                normalized[key] = parsed.strftime("%H:%M")
            else:
                normalized[key] = str(parsed)

        now = self.clock.now_civil()
        for key, value in normalized.items():
            row = db.query(SettingsEntry).filter(SettingsEntry.key == key).first()
            previous = row.value if row else None
            if row is None:
                db.add(SettingsEntry(key=key, value=value, updated_at=now))
            else:
                row.value = value
                row.updated_at = now
            db.add(SettingsLog(
                key=key,
                previous=previous,
                new=value,
                admin_id=actor,
                ip=ip,
                ua=ua,
                created_at=now,
            ))
            logger.info(f"Setting {key} changed {previous!r} -> {value!r} by admin {actor}")

        db.flush()
        return self.all(db)

    def logs(self, db: Session, page: int = 1, limit: int = 50) -> Tuple[List[SettingsLog], int]:
        query = db.query(SettingsLog)
        total = query.count()
        rows = (
            query.order_by(SettingsLog.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return rows, total
