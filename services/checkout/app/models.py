"""
Checkout Service — データモデル

Redis やリモートサービスとの境界を越える値はすべて pydantic モデルにする。
金額は Decimal で保持し、float は使わない。
"""

from dataclasses import dataclass
from datetime import date, time
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, Field, field_validator

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


class Classification(str, Enum):
    """配送スロットの状態。保存せず、常に現在時刻から再計算する。"""

    VALID = "valid"
    EXPIRING_SOON = "expiring_soon"
    EXPIRED = "expired"


# ── 配送スロット ─────────────────────────────────


class TimeWindow(BaseModel):
    start_time: time
    end_time: time


class DeliverySlotReservation(BaseModel):
    """
    顧客が選んだ配送日と時間帯。

    date は "YYYY-MM-DD" 文字列のまま保持する。Instant(UTC) に変換すると
    暦日がずれることがあるため。パースできない日付も保持したまま
    分類器に渡す (fail-open)。
    """

    date: str
    window: TimeWindow
    pin_code: str
    slot_id: int
    slot_name: str | None = None

    def delivery_date(self) -> date:
        """ValueError を投げうる。"""
        return date.fromisoformat(self.date)


# ── 価格入力 ─────────────────────────────────────


class LineItem(BaseModel):
    product_id: int
    name: str
    quantity: int = Field(ge=1)
    unit_price: Decimal = Field(ge=0)


class PromoApplication(BaseModel):
    code: str
    discount_amount: Decimal = Field(ge=0)
    min_order_amount: Decimal = ZERO

    @property
    def is_applicable(self) -> bool:
        # 割引 0 の「適用済みプロモ」という状態は存在しない
        return bool(self.code.strip()) and self.discount_amount > 0


class WalletState(BaseModel):
    balance: Decimal = Field(default=ZERO, ge=0)
    opted_in: bool = False


class DeliveryPolicy(BaseModel):
    free_delivery_threshold: Decimal
    base_delivery_charge: Decimal


class PriceBreakdown(BaseModel):
    """派生値。永続化しない。"""

    subtotal: Decimal
    promo_discount: Decimal
    delivery_charge: Decimal
    pre_wallet_total: Decimal
    wallet_cap: Decimal
    wallet_discount: Decimal
    total: Decimal


@dataclass(frozen=True)
class Countdown:
    hours: int
    minutes: int


# ── フォーム ─────────────────────────────────────


class Address(BaseModel):
    street: str = ""
    landmark: str = ""
    city: str = ""
    state: str = ""
    zip_code: str = ""


class CheckoutForm(BaseModel):
    name: str = ""
    email: str = ""
    phone: str = ""
    address: Address = Field(default_factory=Address)
    special_instructions: str | None = None
    payment_method: str = "cod"

    def is_empty(self) -> bool:
        """ユーザーがまだ入力を始めていないか。"""
        address = self.address
        return not (
            self.name
            or self.email
            or self.phone
            or self.special_instructions
            or address.street.strip()
            or address.landmark.strip()
            or address.city.strip()
            or address.state.strip()
            or address.zip_code.strip()
        )

    @field_validator("name", "email", "phone")
    @classmethod
    def _strip(cls, v: str) -> str:
        return v.strip()


# ── 注文サービスとの契約 ─────────────────────────


class OrderPayload(BaseModel):
    customer_id: int
    items: list[LineItem]
    delivery_address: Address
    delivery_date: str
    delivery_time: str
    delivery_slot_id: int
    special_instructions: str | None = None
    payment_method: str
    subtotal: Decimal
    promo_code: str | None = None
    promo_discount: Decimal
    delivery_charge: Decimal
    wallet_amount_used: Decimal
    total: Decimal


class OrderReceipt(BaseModel):
    order_number: str
    wallet_amount_used: Decimal
    total: Decimal
    retried: bool = False
