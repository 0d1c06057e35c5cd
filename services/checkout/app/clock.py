"""
Checkout Service — 時刻ソース

壁時計の読み取りはすべてここに集約する。
テストでは FixedClock を注入して時刻を固定する。
"""

from datetime import datetime, timedelta, tzinfo
from typing import Protocol
from zoneinfo import ZoneInfo


class TimeSource(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    """店舗のローカルタイムゾーンでの現在時刻を返す。"""

    def __init__(self, tz: tzinfo | str = "Asia/Kolkata") -> None:
        self.tz = ZoneInfo(tz) if isinstance(tz, str) else tz

    def now(self) -> datetime:
        return datetime.now(self.tz)


class FixedClock:
    def __init__(self, at: datetime) -> None:
        self.at = at

    def now(self) -> datetime:
        return self.at

    def advance(self, **kwargs: float) -> None:
        self.at = self.at + timedelta(**kwargs)
