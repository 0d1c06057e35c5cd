"""
Checkout Service — 配送スロット監視

チェックアウトセッションが所有するバックグラウンドタスク。
一定間隔 (既定 60 秒) でスロットを再分類し、状態が変わったときだけ
購読者へ TransitionEvent を 1 回通知する。

  NoReservation ──track()──▶ valid / expiring_soon / expired
                                   │          │
                                   └──tick()──┘──▶ expired (この予約では終端)

track() は分類結果を「前回値」として記録するだけで、イベントは出さない。
選択直後に再チェックすると、自分で選んだスロットを即座に
期限切れ扱いしてしまう競合が起きるため。
"""

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from . import slots
from .clock import TimeSource
from .models import Classification, Countdown, DeliverySlotReservation

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransitionEvent:
    previous: Classification
    current: Classification
    reservation: DeliverySlotReservation


Subscriber = Callable[[TransitionEvent], Awaitable[None] | None]


class ReservationMonitor:
    def __init__(self, clock: TimeSource, period: float = 60.0) -> None:
        self.clock = clock
        self.period = period
        self._reservation: DeliverySlotReservation | None = None
        self._classification: Classification | None = None
        self._countdown: Countdown | None = None
        self._subscribers: list[Subscriber] = []
        self._task: asyncio.Task | None = None
        self._shutdown_event: asyncio.Event | None = None

    @property
    def reservation(self) -> DeliverySlotReservation | None:
        return self._reservation

    @property
    def classification(self) -> Classification | None:
        return self._classification

    @property
    def countdown(self) -> Countdown | None:
        return self._countdown

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ── 予約の設定 ────────────────────────────────

    def track(self, reservation: DeliverySlotReservation) -> Classification:
        """新しい予約を監視対象にする。イベントは発行しない。"""
        now = self.clock.now()
        self._reservation = reservation
        self._classification = slots.classify(reservation, now)
        self._countdown = slots.countdown(reservation, now)
        return self._classification

    def clear(self) -> None:
        self._reservation = None
        self._classification = None
        self._countdown = None

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    # ── 再評価 ────────────────────────────────────

    async def tick(self) -> TransitionEvent | None:
        reservation = self._reservation
        if reservation is None:
            return None

        now = self.clock.now()
        self._countdown = slots.countdown(reservation, now)

        previous = self._classification
        if previous is Classification.EXPIRED:
            return None

        current = slots.classify(reservation, now)
        if current == previous:
            return None

        self._classification = current
        event = TransitionEvent(previous=previous, current=current, reservation=reservation)
        logger.info(
            "Slot %s on %s: %s -> %s",
            reservation.slot_id,
            reservation.date,
            previous.value if previous else None,
            current.value,
        )
        await self._notify(event)
        return event

    async def _notify(self, event: TransitionEvent) -> None:
        for callback in list(self._subscribers):
            try:
                result = callback(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Reservation subscriber failed")

    # ── ライフサイクル ────────────────────────────

    def start(self) -> None:
        if self.running:
            return
        self._shutdown_event = asyncio.Event()
        self._task = asyncio.create_task(self._run(self._shutdown_event))

    async def _run(self, shutdown_event: asyncio.Event) -> None:
        while not shutdown_event.is_set():
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=self.period)
            except asyncio.TimeoutError:
                await self.tick()

    async def stop(self) -> None:
        if self._task is None:
            return
        self._shutdown_event.set()
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        self._shutdown_event = None
