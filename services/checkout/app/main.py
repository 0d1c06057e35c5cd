"""
Checkout Service — FastAPI エントリーポイント

配送スロットの管理と支払額の計算、注文送信を HTTP API として公開する。
チェックアウトセッションはこのプロセスが所有し、セッションごとに
スロット監視タスクを 1 つ持つ。セッションを閉じるとタスクも止まる。

┌──────────┐     ┌──────────────────┐     ┌─────────────────┐
│  React   │────▶│ Checkout Service │────▶│ Order Service   │
│ Frontend │     │                  │────▶│ Promo Service   │
│          │     │                  │────▶│ Wallet Service  │
│          │     │                  │────▶│ Settings Svc    │
└──────────┘     └────────┬─────────┘     └─────────────────┘
                          │
                   ┌──────▼──────┐
                   │    Redis    │  (選択状態の保存)
                   └─────────────┘
"""

import logging
import os
from contextlib import asynccontextmanager

import httpx
import redis.asyncio as aioredis
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .clients import OrderClient, PromoClient, SettingsClient, WalletClient
from .clock import SystemClock, TimeSource
from .errors import (
    CheckoutError,
    OrderServiceUnavailable,
    SlotExpiredError,
    SlotRequired,
    SubmissionInProgress,
    ValidationFailed,
)
from .models import CheckoutForm, DeliverySlotReservation, LineItem
from .orchestrator import CheckoutOrchestrator

ORDER_SERVICE_URL = os.environ["ORDER_SERVICE_URL"]
PROMO_SERVICE_URL = os.environ["PROMO_SERVICE_URL"]
WALLET_SERVICE_URL = os.environ["WALLET_SERVICE_URL"]
SETTINGS_SERVICE_URL = os.environ["SETTINGS_SERVICE_URL"]
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")
STORE_TIMEZONE = os.environ.get("STORE_TIMEZONE", "Asia/Kolkata")
MONITOR_PERIOD_SECONDS = float(os.environ.get("MONITOR_PERIOD_SECONDS", "60"))
SAVE_DEBOUNCE_SECONDS = float(os.environ.get("SAVE_DEBOUNCE_SECONDS", "0.5"))
ORDER_TIMEOUT_SECONDS = float(os.environ.get("ORDER_TIMEOUT_SECONDS", "30"))

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO"),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

redis_pool: aioredis.Redis | None = None
http_client: httpx.AsyncClient | None = None
clock: TimeSource = SystemClock(STORE_TIMEZONE)
sessions: dict[str, CheckoutOrchestrator] = {}


def create_redis() -> aioredis.Redis:
    return aioredis.from_url(REDIS_URL, decode_responses=True)


def create_http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=ORDER_TIMEOUT_SECONDS)


@asynccontextmanager
async def lifespan(app: FastAPI):
    global redis_pool, http_client
    redis_pool = create_redis()
    http_client = create_http_client()
    yield
    for session_id in list(sessions):
        await sessions.pop(session_id).close()
    await http_client.aclose()
    await redis_pool.aclose()


app = FastAPI(title="Checkout Service", lifespan=lifespan)


# ── エラー → HTTP ステータス ─────────────────────

STATUS_CODES: dict[type[CheckoutError], int] = {
    ValidationFailed: 422,
    SlotRequired: 409,
    SlotExpiredError: 409,
    SubmissionInProgress: 409,
    OrderServiceUnavailable: 503,
}


@app.exception_handler(CheckoutError)
async def checkout_error_handler(request: Request, exc: CheckoutError):
    status_code = next(
        (code for cls, code in STATUS_CODES.items() if isinstance(exc, cls)), 400
    )
    content = {"code": exc.code, "message": exc.message}
    if isinstance(exc, ValidationFailed):
        content["errors"] = exc.errors
    return JSONResponse(status_code=status_code, content=content)


# ── Request Models ───────────────────────────────


class OpenSessionRequest(BaseModel):
    customer_id: int
    items: list[LineItem] | None = None


class CartRequest(BaseModel):
    items: list[LineItem]


class PromoRequest(BaseModel):
    code: str


class WalletRequest(BaseModel):
    opted_in: bool


# ── セッション ───────────────────────────────────


def _get_session(session_id: str) -> CheckoutOrchestrator:
    session = sessions.get(session_id)
    if session is None:
        raise HTTPException(404, "Checkout session not found")
    return session


def _view(session: CheckoutOrchestrator) -> dict:
    reservation = session.reservation
    countdown = session.monitor.countdown
    return {
        "session_id": session.session_id,
        "price": session.price().model_dump(mode="json"),
        "slot": reservation.model_dump(mode="json") if reservation else None,
        "classification": session.classification.value if session.classification else None,
        "countdown": (
            {"hours": countdown.hours, "minutes": countdown.minutes} if countdown else None
        ),
        "slot_reselection_required": session.slot_reselection_required,
        "promo": session.promo.model_dump(mode="json") if session.promo else None,
        "wallet": session.wallet.model_dump(mode="json"),
    }


@app.post("/checkout/{session_id}")
async def open_session(session_id: str, req: OpenSessionRequest):
    """
    チェックアウトセッションを開く。

    配送設定はセッション中は固定なので、ここで 1 回だけ取得する。
    既存のセッションがあれば閉じてから開き直す。
    """
    if session_id in sessions:
        await sessions.pop(session_id).close()

    policy = await SettingsClient(http_client, SETTINGS_SERVICE_URL).get_delivery_policy()
    session = CheckoutOrchestrator(
        session_id,
        req.customer_id,
        redis=redis_pool,
        orders=OrderClient(http_client, ORDER_SERVICE_URL),
        promos=PromoClient(http_client, PROMO_SERVICE_URL),
        wallets=WalletClient(http_client, WALLET_SERVICE_URL),
        policy=policy,
        clock=clock,
        monitor_period=MONITOR_PERIOD_SECONDS,
        save_debounce=SAVE_DEBOUNCE_SECONDS,
    )
    await session.hydrate()
    # items を省略した再オープン (再読み込み) では復元した状態をそのまま使う
    if req.items is not None:
        await session.update_cart(req.items)
    sessions[session_id] = session
    return _view(session)


@app.get("/checkout/{session_id}")
async def get_session(session_id: str):
    session = _get_session(session_id)
    await session.sync_promo()
    return _view(session)


@app.delete("/checkout/{session_id}")
async def close_session(session_id: str):
    session = _get_session(session_id)
    await sessions.pop(session_id).close()
    return {"session_id": session.session_id, "closed": True}


@app.put("/checkout/{session_id}/cart")
async def update_cart(session_id: str, req: CartRequest):
    session = _get_session(session_id)
    await session.update_cart(req.items)
    return _view(session)


@app.put("/checkout/{session_id}/slot")
async def select_slot(session_id: str, reservation: DeliverySlotReservation):
    session = _get_session(session_id)
    session.select_slot(reservation)
    return _view(session)


@app.delete("/checkout/{session_id}/slot")
async def clear_slot(session_id: str):
    session = _get_session(session_id)
    session.clear_slot()
    return _view(session)


@app.post("/checkout/{session_id}/promo")
async def apply_promo(session_id: str, req: PromoRequest):
    session = _get_session(session_id)
    await session.apply_promo(req.code)
    return _view(session)


@app.delete("/checkout/{session_id}/promo")
async def remove_promo(session_id: str):
    session = _get_session(session_id)
    await session.remove_promo()
    return _view(session)


@app.put("/checkout/{session_id}/wallet")
async def set_wallet(session_id: str, req: WalletRequest):
    session = _get_session(session_id)
    session.set_wallet_opt_in(req.opted_in)
    return _view(session)


@app.put("/checkout/{session_id}/form")
async def update_form(session_id: str, form: CheckoutForm):
    session = _get_session(session_id)
    session.update_form(form)
    return _view(session)


@app.post("/checkout/{session_id}/submit")
async def submit_order(session_id: str):
    """
    注文を送信する。

    成功したらセッションを閉じる。失敗時はセッションを残し、
    ユーザーが修正して再送できるようにする。
    """
    session = _get_session(session_id)
    receipt = await session.submit()
    await sessions.pop(session_id).close()
    return {
        "order_number": receipt.order_number,
        "wallet_amount_used": str(receipt.wallet_amount_used),
        "total": str(receipt.total),
        "retried": receipt.retried,
        "submission_log": session.submission_log,
    }


@app.get("/health")
async def health():
    return {"status": "ok", "service": "checkout-service"}
