"""
Checkout Service — 外部サービスクライアント (httpx)

  Promo Service     プロモコード検証
  Wallet Service    ウォレット残高 (読み取りのみ)
  Settings Service  無料配送しきい値・基本配送料
  Order Service     注文受付 (価格を独自に再計算し、拒否することがある)

httpx.AsyncClient はアプリの lifespan で 1 つ作り、各クライアントで共有する。
"""

import logging
import re
from decimal import Decimal, InvalidOperation

import httpx

from .errors import (
    OrderRejected,
    OrderServiceUnavailable,
    PromoRejected,
    WalletLimitExceeded,
)
from .models import DeliveryPolicy, OrderPayload, PromoApplication

logger = logging.getLogger(__name__)

# 注文サービスのエラーメッセージ:
#   "Wallet usage exceeds limit. Maximum allowed: ₹120.00 (10% of order total)"
WALLET_LIMIT_MESSAGE = "Wallet usage exceeds limit"
_MAX_ALLOWED = re.compile(r"Maximum allowed:\s*₹?\s*([\d.]+)")


class PromoClient:
    def __init__(self, http: httpx.AsyncClient, base_url: str) -> None:
        self.http = http
        self.base_url = base_url.rstrip("/")

    async def validate(self, code: str, order_amount: Decimal) -> PromoApplication:
        """
        プロモコードを検証する。

        valid でない、または割引が 0 以下なら「プロモなし」として
        PromoRejected を投げる。
        """
        resp = await self.http.post(
            f"{self.base_url}/promo-codes/validate",
            json={"code": code, "order_amount": str(order_amount)},
        )
        if resp.status_code >= 500:
            resp.raise_for_status()
        body = _json_body(resp)

        reason = body.get("reason") or body.get("message") or "Invalid promo code"
        if resp.is_error or not body.get("valid"):
            raise PromoRejected(reason)

        promo = PromoApplication(
            code=code.strip(),
            discount_amount=Decimal(str(body.get("discount_amount") or 0)),
            min_order_amount=Decimal(str(body.get("min_order_amount") or 0)),
        )
        if not promo.is_applicable:
            raise PromoRejected(reason)
        return promo


class WalletClient:
    def __init__(self, http: httpx.AsyncClient, base_url: str) -> None:
        self.http = http
        self.base_url = base_url.rstrip("/")

    async def get_balance(self, customer_id: int) -> Decimal:
        """残高を返す。読めない・負の残高は ValueError。"""
        resp = await self.http.get(f"{self.base_url}/wallet/{customer_id}/balance")
        resp.raise_for_status()
        raw = _json_body(resp).get("balance") or 0
        try:
            balance = Decimal(str(raw))
        except InvalidOperation as e:
            raise ValueError(f"Unparsable wallet balance {raw!r}") from e
        if not balance.is_finite() or balance < 0:
            raise ValueError(f"Invalid wallet balance {raw!r}")
        return balance


class SettingsClient:
    def __init__(self, http: httpx.AsyncClient, base_url: str) -> None:
        self.http = http
        self.base_url = base_url.rstrip("/")

    async def get_delivery_policy(self) -> DeliveryPolicy:
        resp = await self.http.get(f"{self.base_url}/settings/delivery")
        resp.raise_for_status()
        return DeliveryPolicy.model_validate(resp.json())


class OrderClient:
    def __init__(self, http: httpx.AsyncClient, base_url: str) -> None:
        self.http = http
        self.base_url = base_url.rstrip("/")

    async def create_order(self, payload: OrderPayload) -> str:
        """注文を送信し、注文番号を返す。"""
        try:
            resp = await self.http.post(
                f"{self.base_url}/orders",
                json=payload.model_dump(mode="json"),
            )
        except httpx.HTTPError as e:
            raise OrderServiceUnavailable(
                "Could not reach the order service. Please try again."
            ) from e

        if resp.status_code >= 500:
            raise OrderServiceUnavailable(
                "Server error occurred while placing the order. Please try again."
            )

        body = _json_body(resp)
        if resp.is_error:
            message = body.get("message") or body.get("detail") or resp.text
            maximum = _authority_maximum(resp.status_code, body, message)
            if maximum is not None:
                raise WalletLimitExceeded(message, maximum)
            raise OrderRejected(message)

        data = body.get("data", body)
        order = data.get("order", data)
        return str(order["order_number"])


def _json_body(resp: httpx.Response) -> dict:
    try:
        body = resp.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def _authority_maximum(status_code: int, body: dict, message: str) -> Decimal | None:
    """ウォレット上限超過エラーなら、注文サービスが計算した上限を返す。"""
    # 上限超過は 400 + 決まったメッセージ。それ以外の応答の上限値は使わない
    if status_code != 400 or WALLET_LIMIT_MESSAGE not in str(message):
        return None
    raw = body.get("max_wallet_usage")
    if raw is None:
        match = _MAX_ALLOWED.search(str(message))
        if match is None:
            return None
        raw = match.group(1).rstrip(".")
    try:
        return Decimal(str(raw))
    except InvalidOperation:
        logger.warning("Unparsable wallet ceiling %r from order service", raw)
        return None
