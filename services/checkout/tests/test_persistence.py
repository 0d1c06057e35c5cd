"""Tests for the persistence bridge (durable checkout scope)."""

import asyncio
import json
from decimal import Decimal

import pytest

from app.models import Address, CheckoutForm, PromoApplication
from app.persistence import PersistenceBridge, ProgressSnapshot
from conftest import make_reservation


@pytest.fixture
def bridge(redis) -> PersistenceBridge:
    return PersistenceBridge(redis, "sess-1", debounce=0)


@pytest.mark.asyncio
async def test_round_trip(bridge, redis, clock, filled_form):
    reservation = make_reservation("2026-10-20")
    promo = PromoApplication(code="SWEET100", discount_amount=Decimal("100"), min_order_amount=Decimal("999"))

    bridge.schedule_save(ProgressSnapshot(form=filled_form, reservation=reservation, wallet_opt_in=True))
    await bridge.flush()
    await bridge.save_promo(promo)

    restored = await PersistenceBridge(redis, "sess-1").load(clock)

    assert restored.form == filled_form
    assert restored.reservation == reservation
    assert restored.wallet_opt_in is True
    assert restored.promo == promo


@pytest.mark.asyncio
async def test_empty_scope(bridge, clock):
    restored = await bridge.load(clock)
    assert restored.form is None
    assert restored.reservation is None
    assert restored.wallet_opt_in is None
    assert restored.promo is None


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "stored",
    [
        {"code": "ZERO", "discount_amount": "0", "min_order_amount": "0"},
        {"code": "  ", "discount_amount": "50", "min_order_amount": "0"},
        {"code": "NEG", "discount_amount": "-5"},
        {"discount_amount": "50"},
    ],
)
async def test_invalid_promo_is_discarded(bridge, redis, clock, stored):
    redis.data[bridge.promo_key] = json.dumps(stored)

    restored = await bridge.load(clock)

    assert restored.promo is None
    assert bridge.promo_key not in redis.data


@pytest.mark.asyncio
async def test_expired_reservation_is_dropped(bridge, redis, clock, filled_form):
    snapshot = ProgressSnapshot(
        form=filled_form,
        reservation=make_reservation("2026-10-19", start="09:00", end="11:00"),
        wallet_opt_in=True,
    )
    redis.data[bridge.progress_key] = snapshot.model_dump_json()

    restored = await bridge.load(clock)

    assert restored.reservation is None
    assert restored.form == filled_form
    assert restored.wallet_opt_in is True
    assert json.loads(redis.data[bridge.progress_key])["reservation"] is None


@pytest.mark.asyncio
async def test_unparsable_reservation_date_is_kept(bridge, redis, clock):
    reservation = make_reservation("sometime soon")
    redis.data[bridge.progress_key] = ProgressSnapshot(reservation=reservation).model_dump_json()

    restored = await bridge.load(clock)

    assert restored.reservation == reservation


@pytest.mark.asyncio
async def test_corrupted_progress_is_removed(bridge, redis, clock):
    redis.data[bridge.progress_key] = "{not json"
    redis.data[bridge.promo_key] = PromoApplication(code="OK", discount_amount=Decimal("10")).model_dump_json()

    restored = await bridge.load(clock)

    assert restored.reservation is None
    assert bridge.progress_key not in redis.data
    # the promo key is sanitized independently
    assert restored.promo.code == "OK"


@pytest.mark.asyncio
async def test_invalid_slot_does_not_discard_form(bridge, redis, clock, filled_form):
    redis.data[bridge.progress_key] = json.dumps(
        {"form": filled_form.model_dump(mode="json"), "reservation": {"date": "2026-10-20"}}
    )

    restored = await bridge.load(clock)

    assert restored.form == filled_form
    assert restored.reservation is None


@pytest.mark.asyncio
async def test_debounced_save_keeps_last_snapshot(redis):
    bridge = PersistenceBridge(redis, "sess-1", debounce=0.05)

    bridge.schedule_save(ProgressSnapshot(form=CheckoutForm(name="first")))
    bridge.schedule_save(ProgressSnapshot(form=CheckoutForm(name="second")))
    assert bridge.progress_key not in redis.data

    await asyncio.sleep(0.2)

    saved = json.loads(redis.data[bridge.progress_key])
    assert saved["form"]["name"] == "second"


@pytest.mark.asyncio
async def test_clear_removes_checkout_scope_but_keeps_address(bridge, redis):
    address = Address(street="12 MG Road", city="Bengaluru", state="Karnataka", zip_code="560001")
    bridge.schedule_save(ProgressSnapshot(form=CheckoutForm(name="Asha")))
    await bridge.flush()
    await bridge.save_promo(PromoApplication(code="SWEET100", discount_amount=Decimal("100")))
    await bridge.save_last_address(42, address)

    await bridge.clear()

    assert bridge.progress_key not in redis.data
    assert bridge.promo_key not in redis.data
    assert await bridge.load_last_address(42) == address


@pytest.mark.asyncio
async def test_clear_cancels_pending_write(redis):
    bridge = PersistenceBridge(redis, "sess-1", debounce=0.05)
    bridge.schedule_save(ProgressSnapshot(form=CheckoutForm(name="late")))

    await bridge.clear()
    await asyncio.sleep(0.1)

    assert bridge.progress_key not in redis.data
