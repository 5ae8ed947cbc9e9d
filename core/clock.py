"""
Clock：營運時區（UTC+05:30）的唯一時間來源

職責：
1. now()：現在時間（UTC aware datetime）
2. 5 分鐘格線：floor_to_slot / slot_start / slot_end
3. round_id（YYYYMMDDHHMM）與時間的互轉
4. DB 內的時間字串（"YYYY-MM-DD HH:MM:SS"）與時間的互轉
5. 營業時間窗（round_start_time ~ round_end_time）判斷

規則：
- 不使用主機的 local time，所有比較都經過這裡
- DB 字串只在「同一時區、同一格式」下做字典序比較（SQL 的 <=, >=），
  這時字典序與時間序一致
"""
import re
import time as _time
from datetime import datetime, time, timedelta, timezone
from typing import Optional, Tuple

from core.exceptions import BadTimeFormat, InvalidRoundId

OPERATING_ZONE = timezone(timedelta(hours=5, minutes=30), "IST")
SLOT_SECONDS = 300
SLOT = timedelta(seconds=SLOT_SECONDS)

ROUND_ID_RE = re.compile(r"^\d{12}$")
CIVIL_RE = re.compile(r"^\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}$")
HHMM_RE = re.compile(r"^\d{2}:\d{2}$")

ROUND_ID_FORMAT = "%Y%m%d%H%M"
CIVIL_FORMAT = "%Y-%m-%d %H:%M:%S"


class Clock:
    """系統時鐘；測試時以子類別覆寫 now()"""

    zone = OPERATING_ZONE

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def monotonic(self) -> float:
        return _time.monotonic()

    def local(self, t: datetime) -> datetime:
        if t.tzinfo is None:
            raise ValueError("naive datetime is not allowed")
        return t.astimezone(self.zone)

    # ============ Slot grid ============

    def floor_to_slot(self, t: datetime) -> datetime:
        """
        取得 <= t 的最近 5 分鐘格點（營運時區）

        UTC+05:30 的偏移是 5 分鐘的整數倍，所以格點在 UTC 與營運時區一致
        """
        local = self.local(t)
        return local.replace(minute=local.minute - local.minute % 5, second=0, microsecond=0)

    def format_round_id(self, t: datetime) -> str:
        return self.floor_to_slot(t).strftime(ROUND_ID_FORMAT)

    def parse_round_id(self, round_id: str) -> datetime:
        if not isinstance(round_id, str) or not ROUND_ID_RE.match(round_id):
            raise InvalidRoundId(round_id)
        try:
            parsed = datetime.strptime(round_id, ROUND_ID_FORMAT)
        except ValueError:
            raise InvalidRoundId(round_id)
        return parsed.replace(tzinfo=self.zone)

    def slot_start(self, round_id: str) -> datetime:
        return self.parse_round_id(round_id)

    def slot_end(self, round_id: str) -> datetime:
        return self.parse_round_id(round_id) + SLOT

    # ============ Civil strings ============

    def civil_string(self, t: datetime) -> str:
        """秒級精度；呼叫端不應依賴次秒資訊"""
        return self.local(t).strftime(CIVIL_FORMAT)

    def parse_civil(self, value: str) -> datetime:
        if not isinstance(value, str) or not CIVIL_RE.match(value):
            raise BadTimeFormat(value)
        try:
            parsed = datetime.strptime(value, CIVIL_FORMAT)
        except ValueError:
            raise BadTimeFormat(value)
        return parsed.replace(tzinfo=self.zone)

    def now_civil(self) -> str:
        return self.civil_string(self.now())

    def day_bounds(self, day: str) -> Tuple[str, str]:
        """
        "YYYY-MM-DD" → 當天 [00:00:00, 翌日 00:00:00) 的 civil 字串
        """
        try:
            parsed = datetime.strptime(day, "%Y-%m-%d").replace(tzinfo=self.zone)
        except (TypeError, ValueError):
            raise BadTimeFormat(day)
        return self.civil_string(parsed), self.civil_string(parsed + timedelta(days=1))

    # ============ Operating window ============

    @staticmethod
    def parse_hhmm(value: str) -> time:
        if not isinstance(value, str) or not HHMM_RE.match(value):
            raise BadTimeFormat(value)
        hours, minutes = int(value[:2]), int(value[3:])
        if hours > 23 or minutes > 59:
            raise BadTimeFormat(value)
        return time(hours, minutes)

    def window_start(self, t: datetime, start: time, end: time) -> Optional[datetime]:
        """
        t 所在營業時段的開始時間；t 不在營業時間內則回傳 None

        end <= start 表示跨午夜（例如 18:00 ~ 02:00）；end == start 視為全天
        """
        local = self.local(t)
        minute = local.hour * 60 + local.minute
        s = start.hour * 60 + start.minute
        e = end.hour * 60 + end.minute
        today_start = local.replace(hour=start.hour, minute=start.minute, second=0, microsecond=0)

        if s < e:
            return today_start if s <= minute < e else None
        if minute >= s:
            return today_start
        if minute < e or s == e:
            return today_start - timedelta(days=1)
        return None

    def in_window(self, t: datetime, start: time, end: time) -> bool:
        return self.window_start(t, start, end) is not None
