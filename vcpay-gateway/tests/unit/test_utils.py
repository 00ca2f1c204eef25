"""Unit tests for money conversion, dates and keyed locks"""

import asyncio
import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from vcpay_gateway.utils.date_utils import ensure_utc, utcnow
from vcpay_gateway.utils.locks import KeyedLock
from vcpay_gateway.utils.money import from_cents, quantize_amount, to_cents


def test_quantize_amount():
    assert quantize_amount("10") == Decimal("10.00")
    assert quantize_amount(50.1) == Decimal("50.10")
    assert quantize_amount(Decimal("0.005")) == Decimal("0.01")
    assert quantize_amount(7) == Decimal("7.00")


@pytest.mark.parametrize("value", ["abc", "NaN", "-Infinity", None, "1e30"])
def test_quantize_amount_rejects_non_numbers(value):
    with pytest.raises(ValueError):
        quantize_amount(value)


def test_cents_conversion():
    assert to_cents(Decimal("50.00")) == 5000
    assert to_cents(Decimal("0.10")) == 10
    assert from_cents(12345) == Decimal("123.45")
    assert from_cents(0) == Decimal("0.00")


@pytest.mark.asyncio
async def test_keyed_lock_serializes_same_key():
    lock = KeyedLock("test")
    order = []

    async def worker(name):
        async with lock.hold("k"):
            order.append(f"{name}-in")
            await asyncio.sleep(0.01)
            order.append(f"{name}-out")

    await asyncio.gather(worker("a"), worker("b"))

    assert order in (["a-in", "a-out", "b-in", "b-out"], ["b-in", "b-out", "a-in", "a-out"])
    assert len(lock) == 0


@pytest.mark.asyncio
async def test_keyed_lock_independent_keys_overlap():
    lock = KeyedLock("test")
    both_inside = asyncio.Event()
    inside = []

    async def worker(key):
        async with lock.hold(key):
            inside.append(key)
            if len(inside) == 2:
                both_inside.set()
            await asyncio.wait_for(both_inside.wait(), timeout=1)

    await asyncio.gather(worker("x"), worker("y"))

    assert sorted(inside) == ["x", "y"]


@pytest.mark.asyncio
async def test_keyed_lock_releases_on_error():
    lock = KeyedLock("test")

    with pytest.raises(RuntimeError):
        async with lock.hold("k"):
            assert lock.locked("k")
            raise RuntimeError("boom")

    assert not lock.locked("k")
    assert len(lock) == 0


def test_ensure_utc():
    naive = datetime(2026, 1, 15, 12, 0)
    plus_two = datetime(2026, 1, 15, 14, 0, tzinfo=timezone(timedelta(hours=2)))

    assert ensure_utc(naive) == datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)
    assert ensure_utc(plus_two).tzinfo is timezone.utc
    assert ensure_utc(plus_two).hour == 12
    assert ensure_utc(None) is None
    assert utcnow().tzinfo is timezone.utc
