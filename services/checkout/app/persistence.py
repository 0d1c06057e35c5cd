"""
Checkout Service — 選択状態の永続化 (Redis)

ページ再読み込みをまたいで、進行中のチェックアウトの入力を保持する。
出力 (価格内訳) は保存しない。入力だけを保存し、出力は毎回再計算する。

キー (キー間のトランザクションはない。キーごとに独立して検証する):

  checkout:{session_id}:progress       フォーム・スロット・ウォレット opt-in
  checkout:{session_id}:applied_promo  適用済みプロモ (プロモの唯一の保存先)
  checkout:{customer_id}:last_address  最後に注文に使った住所

読み込み時の除去ルール:
  - JSON やモデルとして壊れている値は削除して「なし」とする
  - 割引 <= 0 またはコードが空のプロモは削除する
  - 期限切れに分類されるスロットは捨てる
"""

import asyncio
import json
import logging
from dataclasses import dataclass

import redis.asyncio as aioredis
from pydantic import BaseModel, Field, ValidationError

from . import slots
from .clock import TimeSource
from .models import (
    Address,
    CheckoutForm,
    Classification,
    DeliverySlotReservation,
    PromoApplication,
)

logger = logging.getLogger(__name__)


class ProgressSnapshot(BaseModel):
    form: CheckoutForm = Field(default_factory=CheckoutForm)
    reservation: DeliverySlotReservation | None = None
    wallet_opt_in: bool = False


@dataclass
class RestoredState:
    form: CheckoutForm | None = None
    reservation: DeliverySlotReservation | None = None
    wallet_opt_in: bool | None = None
    promo: PromoApplication | None = None


class PersistenceBridge:
    def __init__(
        self,
        redis: aioredis.Redis,
        session_id: str,
        debounce: float = 0.5,
    ) -> None:
        self.redis = redis
        self.session_id = session_id
        self.debounce = debounce
        self._pending: ProgressSnapshot | None = None
        self._save_task: asyncio.Task | None = None

    @property
    def progress_key(self) -> str:
        return f"checkout:{self.session_id}:progress"

    @property
    def promo_key(self) -> str:
        return f"checkout:{self.session_id}:applied_promo"

    @staticmethod
    def address_key(customer_id: int) -> str:
        return f"checkout:{customer_id}:last_address"

    # ── 読み込み ──────────────────────────────────

    async def load(self, clock: TimeSource) -> RestoredState:
        state = RestoredState()
        state.promo = await self.load_promo()

        raw = await self.redis.get(self.progress_key)
        if raw is None:
            return state
        try:
            data = json.loads(raw)
            if not isinstance(data, dict):
                raise ValueError("progress is not an object")
        except ValueError:
            logger.warning("Discarding corrupted checkout progress for %s", self.session_id)
            await self.redis.delete(self.progress_key)
            return state

        dirty = False

        try:
            state.form = CheckoutForm.model_validate(data.get("form") or {})
        except ValidationError:
            logger.warning("Discarding invalid saved form for %s", self.session_id)
            dirty = True

        if data.get("reservation") is not None:
            try:
                reservation = DeliverySlotReservation.model_validate(data["reservation"])
            except ValidationError:
                logger.warning("Discarding invalid saved slot for %s", self.session_id)
                dirty = True
            else:
                if slots.classify(reservation, clock.now()) is Classification.EXPIRED:
                    logger.info(
                        "Dropping expired saved slot %s on %s",
                        reservation.slot_id,
                        reservation.date,
                    )
                    dirty = True
                else:
                    state.reservation = reservation

        if isinstance(data.get("wallet_opt_in"), bool):
            state.wallet_opt_in = data["wallet_opt_in"]

        if dirty:
            cleaned = ProgressSnapshot(
                form=state.form or CheckoutForm(),
                reservation=state.reservation,
                wallet_opt_in=bool(state.wallet_opt_in),
            )
            await self.redis.set(self.progress_key, cleaned.model_dump_json())

        return state

    async def load_promo(self) -> PromoApplication | None:
        """保存先からプロモが消えていれば None。呼ぶたびに再検証する。"""
        raw = await self.redis.get(self.promo_key)
        if raw is None:
            return None
        try:
            promo = PromoApplication.model_validate_json(raw)
        except ValidationError:
            promo = None
        if promo is None or not promo.is_applicable:
            logger.warning("Discarding invalid saved promo for %s", self.session_id)
            await self.redis.delete(self.promo_key)
            return None
        return promo

    async def load_last_address(self, customer_id: int) -> Address | None:
        raw = await self.redis.get(self.address_key(customer_id))
        if raw is None:
            return None
        try:
            return Address.model_validate_json(raw)
        except ValidationError:
            await self.redis.delete(self.address_key(customer_id))
            return None

    # ── 書き込み ──────────────────────────────────

    def schedule_save(self, snapshot: ProgressSnapshot) -> None:
        """debounce 秒後に保存する。それまでの呼び出しは最後の 1 回にまとめる。"""
        self._pending = snapshot
        self._cancel_timer()
        self._save_task = asyncio.create_task(self._save_later())

    async def _save_later(self) -> None:
        await asyncio.sleep(self.debounce)
        self._save_task = None
        await self.flush()

    async def flush(self) -> None:
        self._cancel_timer()
        snapshot, self._pending = self._pending, None
        if snapshot is None:
            return
        await self.redis.set(self.progress_key, snapshot.model_dump_json())

    async def save_promo(self, promo: PromoApplication) -> None:
        await self.redis.set(self.promo_key, promo.model_dump_json())

    async def remove_promo(self) -> None:
        await self.redis.delete(self.promo_key)

    async def save_last_address(self, customer_id: int, address: Address) -> None:
        await self.redis.set(self.address_key(customer_id), address.model_dump_json())

    async def clear(self) -> None:
        """注文完了後に呼ぶ。完了した注文の状態を次のセッションに残さない。"""
        self._cancel_timer()
        self._pending = None
        await self.redis.delete(self.progress_key, self.promo_key)

    def close(self) -> None:
        self._cancel_timer()

    def _cancel_timer(self) -> None:
        task = self._save_task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
        self._save_task = None
