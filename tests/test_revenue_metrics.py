from datetime import datetime, timezone
from decimal import Decimal

import pytest

from classes.entities import ProductMetrics, RevenueMetrics
from classes.errors import StoreError
from classes.revenue_metrics import RevenueMetricsRecorder, previous_month
from classes.snapshots import OrderSnapshot, OrderStatus

from conftest import NOW, StepClock


def order(order_id, amount, items, artisan_id="artisan-1"):
    return OrderSnapshot(
        id=order_id,
        buyer_id="buyer-1",
        artisan_id=artisan_id,
        status=OrderStatus.PENDING,
        total_amount=Decimal(amount),
        items=tuple(items),
    )


def load(session_factory, model, key):
    session = session_factory()
    try:
        row = session.get(model, key)
        session.expunge(row)
        return row
    finally:
        session.close()


@pytest.mark.parametrize("month, expected", [("2024-05", "2024-04"), ("2024-01", "2023-12"), ("2024-10", "2024-09")])
def test_previous_month(month, expected):
    assert previous_month(month) == expected


def test_first_order_creates_metrics(session_factory):
    recorder = RevenueMetricsRecorder(session_factory, clock=StepClock(NOW))

    recorder.record_order(order("o-1", "300.00", [{"productId": "p-1", "quantity": 2, "price": "150.00"}]))

    metrics = load(session_factory, RevenueMetrics, "artisan-1")
    assert metrics.total_orders == 1
    assert metrics.total_revenue == Decimal("300.00")
    assert metrics.average_order_value == Decimal("300.00")
    assert metrics.monthly_revenue == {"2024-05": "300.00"}
    assert metrics.growth_rate == 0.0

    product = load(session_factory, ProductMetrics, "p-1")
    assert product.total_sales == 2
    assert product.total_revenue == Decimal("300.00")


def test_metrics_accumulate_and_compute_growth(session_factory):
    april = datetime(2024, 4, 20, 9, 0, tzinfo=timezone.utc)
    recorder = RevenueMetricsRecorder(session_factory, clock=StepClock(april, NOW, NOW))

    recorder.record_order(order("o-1", "100.00", [{"productId": "p-1", "quantity": 1, "price": "100.00"}]))
    recorder.record_order(order("o-2", "120.00", [{"productId": "p-1", "quantity": 1, "price": "120.00"}]))
    recorder.record_order(order("o-3", "30.00", [{"product_id": "p-2", "quantity": 3, "price": "10.00"}]))

    metrics = load(session_factory, RevenueMetrics, "artisan-1")
    assert metrics.total_orders == 3
    assert metrics.total_revenue == Decimal("250.00")
    assert metrics.average_order_value == Decimal("83.33")
    assert metrics.monthly_revenue == {"2024-04": "100.00", "2024-05": "150.00"}
    assert metrics.growth_rate == 50.0

    assert load(session_factory, ProductMetrics, "p-1").total_sales == 2
    assert load(session_factory, ProductMetrics, "p-2").total_revenue == Decimal("30.00")


def test_repeated_product_in_one_order(session_factory):
    recorder = RevenueMetricsRecorder(session_factory, clock=StepClock(NOW))

    recorder.record_order(order("o-1", "50.00", [
        {"productId": "p-1", "quantity": 1, "price": "20.00"},
        {"productId": "p-1", "quantity": 1, "price": "30.00"},
        {"quantity": 1, "price": "5.00"},
    ]))

    product = load(session_factory, ProductMetrics, "p-1")
    assert product.total_sales == 2
    assert product.total_revenue == Decimal("50.00")


def test_concurrent_first_insert_replays_the_transaction(session_factory, monkeypatch):
    recorder = RevenueMetricsRecorder(session_factory, clock=StepClock(NOW), attempts=2)
    recorder.record_order(order("o-1", "100.00", [{"productId": "p-1", "quantity": 1, "price": "100.00"}]))

    # the first attempt does not see the row another writer just committed
    real_load = recorder._load_artisan_metrics
    calls = {"n": 0}

    def load_after_race(session, artisan_id):
        calls["n"] += 1
        if calls["n"] == 1:
            return None
        return real_load(session, artisan_id)

    monkeypatch.setattr(recorder, "_load_artisan_metrics", load_after_race)

    recorder.record_order(order("o-2", "50.00", [{"productId": "p-1", "quantity": 1, "price": "50.00"}]))

    assert calls["n"] == 2
    metrics = load(session_factory, RevenueMetrics, "artisan-1")
    assert metrics.total_orders == 2
    assert metrics.total_revenue == Decimal("150.00")
    assert load(session_factory, ProductMetrics, "p-1").total_sales == 2


def test_persistent_conflict_raises_store_error(session_factory, monkeypatch):
    recorder = RevenueMetricsRecorder(session_factory, clock=StepClock(NOW), attempts=2)
    recorder.record_order(order("o-1", "100.00", []))
    monkeypatch.setattr(recorder, "_load_artisan_metrics", lambda session, artisan_id: None)

    with pytest.raises(StoreError):
        recorder.record_order(order("o-2", "50.00", []))

    metrics = load(session_factory, RevenueMetrics, "artisan-1")
    assert metrics.total_orders == 1
