"""
Checkout Service — チェックアウト・オーケストレーター

1 つのチェックアウトセッションを表す。スロット監視タスクと永続化を所有し、
入力が変わるたびに価格内訳を再計算して購読者に通知する。

  注文送信フロー:
  ┌─────────────────────────────────────────────────────────┐
  │  1. フォーム検証 (フィールドごとにエラーを集める)        │
  │  2. スロットの有無                                       │
  │  3. スロットの分類                                       │
  │     ├─ expired       → スロットを消して再選択を要求      │
  │     └─ expiring_soon → 警告のみ                          │
  │  4. Order Service に注文を送信                           │
  │     └─ ウォレット上限超過 → 上限で切り詰めて 1 回だけ再送 │
  │                             2 回目の拒否はハード失敗      │
  │  5. 成功 → 永続化したチェックアウト状態をすべて消す       │
  └─────────────────────────────────────────────────────────┘

二重送信は送信中ロックで防ぐ (冪等キーは扱わない)。
"""

import asyncio
import logging
from collections.abc import Callable, Iterable

import httpx
import redis.asyncio as aioredis

from . import slots
from .clients import OrderClient, PromoClient, WalletClient
from .clock import TimeSource
from .errors import (
    CheckoutError,
    OrderServiceUnavailable,
    PromoRejected,
    ReconciliationFailed,
    SlotExpiredError,
    SlotRequired,
    SubmissionInProgress,
    ValidationFailed,
    WalletLimitExceeded,
)
from .models import (
    ZERO,
    CheckoutForm,
    Classification,
    DeliveryPolicy,
    DeliverySlotReservation,
    LineItem,
    OrderPayload,
    OrderReceipt,
    PriceBreakdown,
    PromoApplication,
    WalletState,
)
from .monitor import ReservationMonitor, TransitionEvent
from .persistence import PersistenceBridge, ProgressSnapshot
from .pricing import compose, subtotal_of, with_wallet_ceiling

logger = logging.getLogger(__name__)

PriceListener = Callable[[PriceBreakdown], None]


class CheckoutOrchestrator:
    """チェックアウトセッション"""

    def __init__(
        self,
        session_id: str,
        customer_id: int,
        *,
        redis: aioredis.Redis,
        orders: OrderClient,
        promos: PromoClient,
        wallets: WalletClient,
        policy: DeliveryPolicy,
        clock: TimeSource,
        monitor_period: float = 60.0,
        save_debounce: float = 0.5,
    ):
        self.session_id = session_id
        self.customer_id = customer_id
        self.orders = orders
        self.promos = promos
        self.wallets = wallets
        self.policy = policy
        self.clock = clock

        self.persistence = PersistenceBridge(redis, session_id, debounce=save_debounce)
        self.monitor = ReservationMonitor(clock, period=monitor_period)
        self.monitor.subscribe(self._on_transition)

        self.items: list[LineItem] = []
        self.promo: PromoApplication | None = None
        self.wallet = WalletState()
        self.form = CheckoutForm()
        self.slot_reselection_required = False
        self.submission_log: list[dict] = []

        self._listeners: list[PriceListener] = []
        self._submitting = asyncio.Lock()
        self._breakdown = self._compose()

    async def __aenter__(self) -> "CheckoutOrchestrator":
        await self.hydrate()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    # ── 状態 ──────────────────────────────────────

    @property
    def reservation(self) -> DeliverySlotReservation | None:
        return self.monitor.reservation

    @property
    def classification(self) -> Classification | None:
        return self.monitor.classification

    def price(self) -> PriceBreakdown:
        return self._breakdown

    def subscribe(self, listener: PriceListener) -> Callable[[], None]:
        """価格内訳が変わるたびに listener を呼ぶ。"""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # ── 起動・終了 ────────────────────────────────

    async def hydrate(self) -> None:
        """保存済みの選択を復元し、スロット監視を開始する。"""
        restored = await self.persistence.load(self.clock)

        # 入力中のフォームは上書きしない
        if self.form.is_empty() and restored.form is not None:
            self.form = restored.form
        if not self.form.address.street:
            last_address = await self.persistence.load_last_address(self.customer_id)
            if last_address is not None:
                self.form = self.form.model_copy(update={"address": last_address})

        if restored.reservation is not None:
            self.monitor.track(restored.reservation)
        self.promo = restored.promo

        try:
            balance = await self.wallets.get_balance(self.customer_id)
        except (httpx.HTTPError, ValueError):
            logger.warning("Wallet balance unavailable for customer %s", self.customer_id)
            balance = ZERO
        self.wallet = WalletState(
            balance=balance,
            opted_in=bool(restored.wallet_opt_in),
        )

        self._recompute()
        self.monitor.start()
        logger.info(
            "Checkout session %s hydrated (slot=%s, promo=%s)",
            self.session_id,
            self.reservation.slot_id if self.reservation else None,
            self.promo.code if self.promo else None,
        )

    async def close(self) -> None:
        await self.monitor.stop()
        await self.persistence.flush()
        self.persistence.close()

    # ── 入力の変更 ────────────────────────────────

    def select_slot(self, reservation: DeliverySlotReservation) -> Classification:
        """
        スロットを選択する (置き換えのみ、部分更新はしない)。

        既に期限切れのスロットは受け付けない。選択直後の分類は
        監視の前回値として記録するだけで、遷移イベントは出さない。
        """
        if slots.classify(reservation, self.clock.now()) is Classification.EXPIRED:
            raise SlotExpiredError(
                "The selected delivery slot has expired. Please choose a different slot."
            )
        classification = self.monitor.track(reservation)
        self.slot_reselection_required = False
        self._save()
        logger.info(
            "Slot %s selected for %s %s (%s)",
            reservation.slot_id,
            reservation.date,
            slots.format_window(reservation.window),
            classification.value,
        )
        return classification

    def clear_slot(self) -> None:
        self.monitor.clear()
        self._save()

    async def update_cart(self, items: Iterable[LineItem]) -> None:
        self.items = list(items)
        subtotal = subtotal_of(self.items)

        if not self.items:
            # カートが空になったらセッション終了扱い
            self.monitor.clear()
            await self.monitor.stop()
            if self.promo is not None:
                await self._discard_promo("cart is empty")
        else:
            self.monitor.start()
            if self.promo is not None and subtotal < self.promo.min_order_amount:
                await self._discard_promo(
                    f"subtotal {subtotal} below minimum {self.promo.min_order_amount}"
                )

        self._recompute()
        self._save()

    async def apply_promo(self, code: str) -> PromoApplication:
        if not code.strip():
            raise PromoRejected("Please enter a promo code")
        subtotal = subtotal_of(self.items)
        promo = await self.promos.validate(code, subtotal)
        if subtotal < promo.min_order_amount:
            raise PromoRejected(f"Minimum order amount is {promo.min_order_amount}")

        self.promo = promo
        await self.persistence.save_promo(promo)
        self._recompute()
        logger.info("Promo %s applied (discount=%s)", promo.code, promo.discount_amount)
        return promo

    async def remove_promo(self) -> None:
        self.promo = None
        await self.persistence.remove_promo()
        self._recompute()

    async def sync_promo(self) -> None:
        """保存先からプロモが消えていれば、メモリ上のプロモも捨てる。"""
        stored = await self.persistence.load_promo()
        if stored != self.promo:
            self.promo = stored
            self._recompute()

    def set_wallet_opt_in(self, opted_in: bool) -> None:
        self.wallet = self.wallet.model_copy(update={"opted_in": opted_in})
        self._recompute()
        self._save()

    def update_form(self, form: CheckoutForm) -> None:
        self.form = form
        self._save()

    def validate_form(self) -> dict[str, str]:
        """フィールドごとのエラー。空ならフォームは有効。"""
        form = self.form
        address = form.address
        errors: dict[str, str] = {}

        if not form.name:
            errors["name"] = "Please enter your name"
        if not form.email or "@" not in form.email:
            errors["email"] = "Please enter a valid email address"
        if sum(c.isdigit() for c in form.phone) < 10:
            errors["phone"] = "Please enter a valid phone number"
        if not address.street.strip():
            errors["address.street"] = "Please enter your street address"
        if not address.city.strip():
            errors["address.city"] = "Please enter your city"
        if not address.state.strip():
            errors["address.state"] = "Please enter your state"
        zip_code = address.zip_code.strip()
        if len(zip_code) != 6 or not zip_code.isdigit():
            errors["address.zip_code"] = "Please enter a valid 6-digit PIN code"
        return errors

    # ── 注文送信 ──────────────────────────────────

    async def submit(self) -> OrderReceipt:
        if self._submitting.locked():
            raise SubmissionInProgress()

        async with self._submitting:
            self.submission_log = []

            step = self._log_step("ValidateForm")
            errors = self.validate_form()
            if errors:
                step["status"] = "FAILED"
                raise ValidationFailed(errors)
            step["status"] = "COMPLETED"

            step = self._log_step("CheckSlot")
            reservation = self.reservation
            if reservation is None:
                step["status"] = "FAILED"
                raise SlotRequired()

            classification = slots.classify(reservation, self.clock.now())
            if classification is Classification.EXPIRED:
                step["status"] = "FAILED"
                self._require_reselection()
                raise SlotExpiredError(
                    "Your delivery slot has expired. "
                    "Please select a new slot before placing your order."
                )
            if classification is Classification.EXPIRING_SOON:
                logger.warning(
                    "Submitting order with slot %s starting soon (%s)",
                    reservation.slot_id,
                    slots.format_window(reservation.window),
                )
            step["status"] = "COMPLETED"

            await self.sync_promo()
            breakdown = self._breakdown
            retried = False

            step = self._log_step("CreateOrder")
            try:
                order_number = await self.orders.create_order(
                    self._payload(reservation, breakdown)
                )
                step["status"] = "COMPLETED"
            except WalletLimitExceeded as e:
                step["status"] = "FAILED"
                step["error"] = e.message
                logger.warning(
                    "Wallet %s rejected by order service (ceiling=%s), retrying once",
                    breakdown.wallet_discount,
                    e.authority_maximum,
                )

                breakdown = with_wallet_ceiling(breakdown, e.authority_maximum)
                retried = True
                step = self._log_step("CreateOrder (RETRY)")
                try:
                    order_number = await self.orders.create_order(
                        self._payload(reservation, breakdown)
                    )
                except OrderServiceUnavailable as retry_error:
                    # 通信障害は拒否ではない。再送可能なまま返す
                    step["status"] = "FAILED"
                    step["error"] = retry_error.message
                    raise
                except CheckoutError as retry_error:
                    step["status"] = "FAILED"
                    step["error"] = retry_error.message
                    raise ReconciliationFailed(retry_error.message) from retry_error
                step["status"] = "COMPLETED"
            except CheckoutError as e:
                step["status"] = "FAILED"
                step["error"] = e.message
                raise

            await self._complete()
            logger.info(
                "Order %s placed for session %s (total=%s, wallet=%s, retried=%s)",
                order_number,
                self.session_id,
                breakdown.total,
                breakdown.wallet_discount,
                retried,
            )
            return OrderReceipt(
                order_number=order_number,
                wallet_amount_used=breakdown.wallet_discount,
                total=breakdown.total,
                retried=retried,
            )

    def _payload(
        self, reservation: DeliverySlotReservation, breakdown: PriceBreakdown
    ) -> OrderPayload:
        window = reservation.window
        return OrderPayload(
            customer_id=self.customer_id,
            items=self.items,
            delivery_address=self.form.address,
            delivery_date=reservation.date,
            delivery_time=f"{window.start_time:%H:%M}-{window.end_time:%H:%M}",
            delivery_slot_id=reservation.slot_id,
            special_instructions=self.form.special_instructions or None,
            payment_method=self.form.payment_method,
            subtotal=breakdown.subtotal,
            promo_code=self.promo.code if self.promo else None,
            promo_discount=breakdown.promo_discount,
            delivery_charge=breakdown.delivery_charge,
            wallet_amount_used=breakdown.wallet_discount,
            total=breakdown.total,
        )

    async def _complete(self) -> None:
        """注文成功後の後片付け。"""
        await self.persistence.clear()
        await self.persistence.save_last_address(self.customer_id, self.form.address)
        self.items = []
        self.promo = None
        self.monitor.clear()
        await self.monitor.stop()
        self._recompute()

    # ── 内部 ──────────────────────────────────────

    async def _on_transition(self, event: TransitionEvent) -> None:
        if event.current is Classification.EXPIRED:
            logger.warning(
                "Slot %s on %s expired, reselection required",
                event.reservation.slot_id,
                event.reservation.date,
            )
            self._require_reselection()
        elif event.current is Classification.EXPIRING_SOON:
            logger.info("Slot %s is expiring soon", event.reservation.slot_id)

    def _require_reselection(self) -> None:
        self.monitor.clear()
        self.slot_reselection_required = True
        self._save()

    async def _discard_promo(self, reason: str) -> None:
        logger.info("Discarding promo %s: %s", self.promo.code, reason)
        self.promo = None
        await self.persistence.remove_promo()

    def _compose(self) -> PriceBreakdown:
        return compose(
            subtotal_of(self.items),
            self.promo,
            self.policy.free_delivery_threshold,
            self.policy.base_delivery_charge,
            self.wallet,
        )

    def _recompute(self) -> None:
        breakdown = self._compose()
        changed = breakdown != self._breakdown
        self._breakdown = breakdown
        if not changed:
            return
        for listener in list(self._listeners):
            try:
                listener(breakdown)
            except Exception:
                logger.exception("Price listener failed")

    def _save(self) -> None:
        self.persistence.schedule_save(
            ProgressSnapshot(
                form=self.form,
                reservation=self.reservation,
                wallet_opt_in=self.wallet.opted_in,
            )
        )

    def _log_step(self, action: str) -> dict:
        step = {
            "step": len(self.submission_log) + 1,
            "action": action,
            "status": "EXECUTING",
            "timestamp": self.clock.now().isoformat(),
        }
        self.submission_log.append(step)
        return step
