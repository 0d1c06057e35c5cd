"""
Checkout Service — 価格計算

注文サービスと同じ順序・同じ丸め規則で支払額を計算する純粋関数。

  1. 配送料      subtotal >= 無料配送しきい値 なら 0
  2. プロモ割引  適用済みなら discount_amount (しきい値の再検証はしない)
  3. ウォレット前合計 = max(0, subtotal - プロモ + 配送料)
  4. ウォレット上限   = round_half_up(ウォレット前合計 × 0.10)
  5. ウォレット割引   = opt-in なら round_half_up(min(残高, 上限))
  6. 合計            = max(0, ウォレット前合計 - ウォレット割引)

丸めは注文サービスに合わせて「セント単位の四捨五入 (ROUND_HALF_UP)」。
銀行丸めや、掛け算前の丸めにすると注文サービス側で拒否される。
"""

from collections.abc import Iterable
from decimal import ROUND_HALF_UP, Decimal

from .models import (
    CENT,
    ZERO,
    LineItem,
    PriceBreakdown,
    PromoApplication,
    WalletState,
)

WALLET_CAP_RATE = Decimal("0.10")


def round_half_up(amount: Decimal) -> Decimal:
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def subtotal_of(items: Iterable[LineItem]) -> Decimal:
    return round_half_up(sum((i.unit_price * i.quantity for i in items), ZERO))


def compose(
    subtotal: Decimal,
    promo: PromoApplication | None,
    free_delivery_threshold: Decimal,
    base_delivery_charge: Decimal,
    wallet: WalletState,
) -> PriceBreakdown:
    subtotal = round_half_up(Decimal(subtotal))

    if subtotal >= free_delivery_threshold:
        delivery_charge = ZERO
    else:
        delivery_charge = round_half_up(Decimal(base_delivery_charge))
    promo_discount = (
        round_half_up(promo.discount_amount)
        if promo is not None and promo.is_applicable
        else ZERO
    )
    pre_wallet_total = max(ZERO, subtotal - promo_discount + delivery_charge)

    wallet_cap = round_half_up(pre_wallet_total * WALLET_CAP_RATE)
    wallet_discount = (
        round_half_up(min(wallet.balance, wallet_cap)) if wallet.opted_in else ZERO
    )

    return PriceBreakdown(
        subtotal=subtotal,
        promo_discount=promo_discount,
        delivery_charge=delivery_charge,
        pre_wallet_total=pre_wallet_total,
        wallet_cap=wallet_cap,
        wallet_discount=wallet_discount,
        total=max(ZERO, pre_wallet_total - wallet_discount),
    )


def with_wallet_ceiling(breakdown: PriceBreakdown, ceiling: Decimal) -> PriceBreakdown:
    """注文サービスが返した上限で wallet 割引を切り詰め、合計を再計算する。"""
    wallet_discount = round_half_up(min(breakdown.wallet_discount, max(ZERO, ceiling)))
    return breakdown.model_copy(
        update={
            "wallet_discount": wallet_discount,
            "total": max(ZERO, breakdown.pre_wallet_total - wallet_discount),
        }
    )
