"""
Checkout Service — 配送スロット分類

(予約, 現在時刻) → valid / expiring_soon / expired を返す純粋関数。

  days_until < -1                      → expired  (1 日の猶予)
  当日 かつ now >= 開始時刻            → expired
  当日 かつ 0 < 開始までの分 < 120     → expiring_soon
  それ以外                             → valid

日付は予約と同じローカル暦日で比較する。UTC を経由しない。
日付がパースできない予約は valid とみなす (fail-open)。分類の失敗で
チェックアウトを止めてはいけない。止めてよいのは本当に期限切れの場合だけ。
"""

import logging
from datetime import datetime, time

from .models import Classification, Countdown, DeliverySlotReservation, TimeWindow

logger = logging.getLogger(__name__)

EXPIRING_SOON_MINUTES = 120
GRACE_DAYS = 1


def _minutes_of_day(t: time | datetime) -> int:
    return t.hour * 60 + t.minute


def _days_until(reservation: DeliverySlotReservation, now: datetime) -> int | None:
    try:
        delivery_date = reservation.delivery_date()
    except ValueError:
        logger.warning(
            "Unparsable delivery date %r on slot %s, treating as valid",
            reservation.date,
            reservation.slot_id,
        )
        return None
    return (delivery_date - now.date()).days


def minutes_until_start(reservation: DeliverySlotReservation, now: datetime) -> int:
    return _minutes_of_day(reservation.window.start_time) - _minutes_of_day(now)


def classify(reservation: DeliverySlotReservation, now: datetime) -> Classification:
    days_until = _days_until(reservation, now)
    if days_until is None:
        return Classification.VALID

    if days_until < -GRACE_DAYS:
        return Classification.EXPIRED

    if days_until == 0:
        minutes = minutes_until_start(reservation, now)
        if minutes <= 0:
            return Classification.EXPIRED
        if minutes < EXPIRING_SOON_MINUTES:
            return Classification.EXPIRING_SOON

    return Classification.VALID


def countdown(reservation: DeliverySlotReservation, now: datetime) -> Countdown | None:
    """当日のスロットの開始までの残り時間。それ以外は None。"""
    if _days_until(reservation, now) != 0:
        return None
    minutes = minutes_until_start(reservation, now)
    if minutes <= 0:
        return None
    hours, rest = divmod(minutes, 60)
    return Countdown(hours=hours, minutes=rest)


def format_time(t: time) -> str:
    hour = t.hour % 12 or 12
    suffix = "PM" if t.hour >= 12 else "AM"
    return f"{hour}:{t.minute:02d} {suffix}"


def format_window(window: TimeWindow) -> str:
    return f"{format_time(window.start_time)} - {format_time(window.end_time)}"
