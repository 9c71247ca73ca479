"""Tests for the order lifecycle engine."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from conftest import ADDRESS, order_request
from ordercore.db import database
from ordercore.models.audit import AuditAction, AuditLog, ResourceType
from ordercore.models.notification import NotificationType
from ordercore.models.order import Order, OrderStatus, PaymentStatus
from ordercore.models.product import Product, ProductStatus
from ordercore.models.schemas import Address
from ordercore.services.errors import (
    DiscountExceedsTotal,
    IllegalPaymentTransition,
    IllegalTransition,
    InsufficientStock,
    InvalidAddress,
    InvalidOrderRequest,
    OrderNotFound,
    ProductNotFound,
    ProductUnavailable,
    StorageUnavailable,
    TransactionConflict,
    TransitionNotPermitted,
)
from ordercore.services.audit import AuditService


def stock_of(db, product_id):
    return db.get(Product, product_id, populate_existing=True).stock


def reload(db, order_id):
    return db.get(Order, order_id, populate_existing=True)


def advance(service, db, order_id, actor, *statuses):
    for status in statuses:
        service.update_status(db, order_id, status, actor)


@pytest.fixture
def widget(make_product):
    return make_product(id=7, name="Widget", price="10.00", stock=10, min_stock=2)


@pytest.fixture
def placed_order(db, service, widget, transport):
    order = service.create_order(db, 42, order_request((widget, 2)))
    transport.deliveries.clear()
    return order.id


class TestCreateOrder:
    def test_prices_reserves_and_notifies(self, db, service, widget, transport):
        order = service.create_order(
            db, 42,
            order_request((widget, 2), shipping_cost=Decimal("5.00"), tax_amount=Decimal("3.00")),
        )

        assert order.status == OrderStatus.PENDING
        assert order.payment_status == PaymentStatus.PENDING
        assert order.subtotal == Decimal("20.00")
        assert order.total_amount == Decimal("28.00")
        assert order.currency == "EUR"
        assert order.order_number.startswith("ORD-")
        assert stock_of(db, widget) == 8

        created = transport.events(NotificationType.ORDER_CREATED)
        assert len(created) == 1
        assert created[0].data["order_number"] == order.order_number
        assert transport.deliveries[0][1] == ["user:42", "role:ADMIN", "role:MANAGER"]

    def test_items_snapshot_product(self, db, service, widget):
        order = service.create_order(db, 42, order_request((widget, 3)))

        item = order.items[0]
        assert item.product_id == widget
        assert item.product_name == "Widget"
        assert item.unit_price == Decimal("10.00")
        assert item.total_price == Decimal("30.00")

    def test_items_keep_submitted_order(self, db, service, make_product):
        first = make_product(stock=5)
        second = make_product(stock=5)

        order = service.create_order(db, 42, order_request((second, 1), (first, 1)))
        assert [item.product_id for item in order.items] == [second, first]

    def test_billing_defaults_to_shipping(self, db, service, widget):
        order = service.create_order(db, 42, order_request((widget, 1)))
        assert order.billing_address == order.shipping_address
        assert order.shipping_address["city"] == "London"

    def test_explicit_currency(self, db, service, widget):
        order = service.create_order(db, 42, order_request((widget, 1), currency="usd"))
        assert order.currency == "USD"

    def test_audit_row_written(self, db, service, widget):
        order = service.create_order(db, 42, order_request((widget, 1)))

        entry = db.query(AuditLog).one()
        assert entry.action == AuditAction.CREATE
        assert entry.resource_type == ResourceType.ORDER
        assert entry.resource_id == order.id
        assert entry.actor_id == 42

    def test_low_stock_notifies_staff_once(self, db, service, make_product, transport):
        product_id = make_product(stock=5, min_stock=2)

        service.create_order(db, 42, order_request((product_id, 3)))
        service.create_order(db, 43, order_request((product_id, 1)))

        low_stock = [(event, channels) for event, channels in transport.deliveries
                     if event.type == NotificationType.LOW_STOCK]
        assert len(low_stock) == 1
        assert low_stock[0][1] == ["role:ADMIN", "role:MANAGER"]
        assert low_stock[0][0].data["current_stock"] == 2


class TestCreateOrderRejections:
    def test_all_or_nothing(self, db, service, make_product, transport):
        plenty = make_product(stock=5)
        scarce = make_product(stock=1)

        with pytest.raises(InsufficientStock) as exc_info:
            service.create_order(db, 42, order_request((plenty, 2), (scarce, 2)))

        assert exc_info.value.product_id == scarce
        assert stock_of(db, plenty) == 5
        assert stock_of(db, scarce) == 1
        assert db.query(Order).count() == 0
        assert transport.deliveries == []

    def test_last_unit_sold_once(self, db, service, make_product):
        product_id = make_product(stock=1)

        service.create_order(db, 42, order_request((product_id, 1)))
        with pytest.raises(InsufficientStock):
            service.create_order(db, 43, order_request((product_id, 1)))

        product = db.get(Product, product_id, populate_existing=True)
        assert product.stock == 0
        assert product.status == ProductStatus.OUT_OF_STOCK

    def test_unknown_product(self, db, service, widget):
        with pytest.raises(ProductNotFound):
            service.create_order(db, 42, order_request((widget, 1), (999, 1)))
        assert stock_of(db, widget) == 10

    def test_discontinued_product(self, db, service, make_product):
        product_id = make_product(status=ProductStatus.DISCONTINUED)
        with pytest.raises(ProductUnavailable):
            service.create_order(db, 42, order_request((product_id, 1)))

    def test_no_items(self, db, service):
        with pytest.raises(InvalidOrderRequest):
            service.create_order(db, 42, order_request())

    def test_zero_quantity(self, db, service, widget):
        with pytest.raises(InvalidOrderRequest):
            service.create_order(db, 42, order_request((widget, 0)))
        assert stock_of(db, widget) == 10

    def test_shipping_address_missing_fields(self, db, service, widget):
        address = Address(**{**ADDRESS, "city": " ", "country": None})
        with pytest.raises(InvalidAddress) as exc_info:
            service.create_order(db, 42, order_request((widget, 1), shipping_address=address))

        assert exc_info.value.kind == "shipping"
        assert exc_info.value.missing_fields == ["city", "country"]
        assert stock_of(db, widget) == 10

    def test_billing_address_checked_when_given(self, db, service, widget):
        with pytest.raises(InvalidAddress) as exc_info:
            service.create_order(
                db, 42, order_request((widget, 1), billing_address=Address(first_name="Ada"))
            )
        assert exc_info.value.kind == "billing"

    def test_discount_exceeding_total(self, db, service, widget):
        with pytest.raises(DiscountExceedsTotal):
            service.create_order(db, 42, order_request((widget, 1), discount_amount=Decimal("10.01")))
        assert stock_of(db, widget) == 10
        assert db.query(Order).count() == 0


class TestUpdateStatus:
    def test_single_notification_per_transition(self, db, service, placed_order, admin, transport):
        service.update_status(db, placed_order, OrderStatus.PROCESSING, admin)

        assert len(transport.deliveries) == 1
        event, channels = transport.deliveries[0]
        assert event.type == NotificationType.ORDER_STATUS_CHANGED
        assert event.data["old_status"] == "PENDING"
        assert event.data["new_status"] == "PROCESSING"
        assert channels == ["user:42", "role:ADMIN", "role:MANAGER"]

    def test_ship_with_tracking(self, db, service, placed_order, admin):
        advance(service, db, placed_order, admin, OrderStatus.PROCESSING)
        order = service.update_status(db, placed_order, OrderStatus.SHIPPED, admin, tracking_number="TRK-9")

        assert order.tracking_number == "TRK-9"
        assert order.shipped_at is not None

    def test_delivered_cannot_be_cancelled(self, db, service, placed_order, widget, admin, transport):
        advance(service, db, placed_order, admin,
                OrderStatus.PROCESSING, OrderStatus.SHIPPED, OrderStatus.DELIVERED)
        transport.deliveries.clear()

        with pytest.raises(IllegalTransition):
            service.update_status(db, placed_order, OrderStatus.CANCELLED, admin, cancel_reason="late")

        assert reload(db, placed_order).status == OrderStatus.DELIVERED
        assert stock_of(db, widget) == 8
        assert transport.deliveries == []

    def test_return_restores_stock(self, db, service, placed_order, widget, admin):
        advance(service, db, placed_order, admin,
                OrderStatus.PROCESSING, OrderStatus.SHIPPED, OrderStatus.DELIVERED, OrderStatus.RETURNED)

        order = reload(db, placed_order)
        assert order.status == OrderStatus.RETURNED
        assert order.returned_at is not None
        assert stock_of(db, widget) == 10

    def test_terminal_status_is_final(self, db, service, placed_order, admin):
        service.cancel_order(db, placed_order, "customer request", admin)
        with pytest.raises(IllegalTransition):
            service.update_status(db, placed_order, OrderStatus.PROCESSING, admin)

    def test_same_status_is_a_no_op(self, db, service, placed_order, admin, transport):
        advance(service, db, placed_order, admin, OrderStatus.PROCESSING)
        transport.deliveries.clear()

        order = service.update_status(db, placed_order, OrderStatus.PROCESSING, admin)

        assert order.status == OrderStatus.PROCESSING
        assert transport.deliveries == []
        assert reload(db, placed_order).version == 2

    def test_pending_to_pending_is_illegal(self, db, service, placed_order, admin, transport):
        with pytest.raises(IllegalTransition) as exc_info:
            service.update_status(db, placed_order, OrderStatus.PENDING, admin)

        assert exc_info.value.current == OrderStatus.PENDING
        assert transport.deliveries == []
        assert reload(db, placed_order).version == 1

    def test_unknown_order(self, db, service, admin):
        with pytest.raises(OrderNotFound):
            service.update_status(db, 999, OrderStatus.PROCESSING, admin)

    def test_status_change_audited(self, db, service, placed_order, manager):
        service.update_status(db, placed_order, OrderStatus.PROCESSING, manager)

        entry = db.query(AuditLog).filter(AuditLog.action == AuditAction.UPDATE).one()
        assert entry.actor_id == manager.id
        assert entry.old_values == {"status": "PENDING"}
        assert entry.new_values == {"status": "PROCESSING"}


class TestCancelOrder:
    def test_cancel_restores_stock(self, db, service, placed_order, widget, customer):
        order = service.cancel_order(db, placed_order, "changed my mind", customer)

        assert order.status == OrderStatus.CANCELLED
        assert order.cancel_reason == "changed my mind"
        assert order.cancelled_at is not None
        assert stock_of(db, widget) == 10

    def test_double_cancel_restores_once(self, db, service, placed_order, widget, admin, transport):
        service.cancel_order(db, placed_order, "duplicate", admin)
        service.cancel_order(db, placed_order, "duplicate", admin)

        assert stock_of(db, widget) == 10
        assert len(transport.events(NotificationType.ORDER_STATUS_CHANGED)) == 1

    def test_reason_required(self, db, service, placed_order, widget, admin):
        with pytest.raises(InvalidOrderRequest):
            service.cancel_order(db, placed_order, "  ", admin)
        assert reload(db, placed_order).status == OrderStatus.PENDING
        assert stock_of(db, widget) == 8

    def test_customer_cannot_cancel_processing_order(
        self, db, service, placed_order, widget, admin, customer, transport
    ):
        advance(service, db, placed_order, admin, OrderStatus.PROCESSING)
        transport.deliveries.clear()

        with pytest.raises(TransitionNotPermitted) as exc_info:
            service.cancel_order(db, placed_order, "changed my mind", customer)

        assert exc_info.value.current == OrderStatus.PROCESSING
        assert reload(db, placed_order).status == OrderStatus.PROCESSING
        assert stock_of(db, widget) == 8
        assert transport.deliveries == []

    def test_customer_status_checked_on_locked_row(
        self, db, service, placed_order, widget, admin, customer, monkeypatch
    ):
        # Staff starts processing the order just before the customer's cancel takes the lock
        real_load = service._load_for_update

        def load_after_staff_moves_it(session, order_id):
            other = database.SessionLocal()
            try:
                service.update_status(other, order_id, OrderStatus.PROCESSING, admin)
            finally:
                other.close()
            return real_load(session, order_id)

        monkeypatch.setattr(service, "_load_for_update", load_after_staff_moves_it)

        with pytest.raises(TransitionNotPermitted):
            service.cancel_order(db, placed_order, "changed my mind", customer)

        assert reload(db, placed_order).status == OrderStatus.PROCESSING
        assert stock_of(db, widget) == 8

    def test_customer_cannot_cancel_foreign_order(self, db, service, widget, customer):
        order_id = service.create_order(db, 43, order_request((widget, 1))).id

        with pytest.raises(OrderNotFound):
            service.cancel_order(db, order_id, "not mine", customer)

        assert reload(db, order_id).status == OrderStatus.PENDING

    def test_customer_cancel_retry_is_a_no_op(self, db, service, placed_order, widget, customer, transport):
        service.cancel_order(db, placed_order, "changed my mind", customer)
        service.cancel_order(db, placed_order, "changed my mind", customer)

        assert stock_of(db, widget) == 10
        assert len(transport.events(NotificationType.ORDER_STATUS_CHANGED)) == 1

    def test_missing_product_raises_alert(self, db, service, placed_order, widget, admin, transport):
        db.delete(db.get(Product, widget))
        db.commit()

        order = service.cancel_order(db, placed_order, "catalog cleanup", admin)

        assert order.status == OrderStatus.CANCELLED
        alerts = transport.events(NotificationType.SYSTEM_ALERT)
        assert len(alerts) == 1
        assert alerts[0].data["product_id"] == widget
        assert alerts[0].data["quantity"] == 2


class TestPaymentStatus:
    def test_paid(self, db, service, placed_order, admin, transport):
        order = service.update_payment_status(db, placed_order, PaymentStatus.PAID, admin)

        assert order.payment_status == PaymentStatus.PAID
        events = transport.events(NotificationType.PAYMENT_STATUS_CHANGED)
        assert len(events) == 1
        assert events[0].data["new_status"] == "PAID"

    def test_refund_requires_payment(self, db, service, placed_order, admin, transport):
        with pytest.raises(IllegalPaymentTransition):
            service.update_payment_status(db, placed_order, PaymentStatus.REFUNDED, admin)
        assert reload(db, placed_order).payment_status == PaymentStatus.PENDING
        assert transport.deliveries == []

    def test_refund_after_payment(self, db, service, placed_order, admin):
        service.update_payment_status(db, placed_order, PaymentStatus.PAID, admin)
        order = service.update_payment_status(db, placed_order, PaymentStatus.PARTIALLY_REFUNDED, admin)
        assert order.payment_status == PaymentStatus.PARTIALLY_REFUNDED

    def test_payment_does_not_touch_stock_or_status(self, db, service, placed_order, widget, admin):
        service.update_payment_status(db, placed_order, PaymentStatus.FAILED, admin)

        assert reload(db, placed_order).status == OrderStatus.PENDING
        assert stock_of(db, widget) == 8

    def test_same_payment_status_is_a_no_op(self, db, service, placed_order, admin, transport):
        service.update_payment_status(db, placed_order, PaymentStatus.PENDING, admin)
        assert transport.deliveries == []


class TestEventsAfterConcurrentChange:
    """Another request commits between this request's commit and its publish."""

    @staticmethod
    def interleave_after_commit(db, monkeypatch, change):
        real_commit = db.commit
        pending = [change]

        def commit():
            real_commit()
            if pending:
                pending.pop()()

        monkeypatch.setattr(db, "commit", commit)

    @staticmethod
    def in_other_session(action):
        def run():
            other = database.SessionLocal()
            try:
                action(other)
            finally:
                other.close()
        return run

    def test_status_event_describes_own_transition(
        self, db, service, placed_order, admin, transport, monkeypatch
    ):
        self.interleave_after_commit(db, monkeypatch, self.in_other_session(
            lambda other: service.update_status(other, placed_order, OrderStatus.SHIPPED, admin)
        ))

        service.update_status(db, placed_order, OrderStatus.PROCESSING, admin)

        events = transport.events(NotificationType.ORDER_STATUS_CHANGED)
        assert sorted((e.data["old_status"], e.data["new_status"]) for e in events) == [
            ("PENDING", "PROCESSING"),
            ("PROCESSING", "SHIPPED"),
        ]
        assert {e.dedup_key for e in events} == {
            f"order:{placed_order}:status:PROCESSING:v2",
            f"order:{placed_order}:status:SHIPPED:v3",
        }
        assert reload(db, placed_order).status == OrderStatus.SHIPPED

    def test_payment_event_describes_own_change(
        self, db, service, placed_order, admin, transport, monkeypatch
    ):
        self.interleave_after_commit(db, monkeypatch, self.in_other_session(
            lambda other: service.update_payment_status(other, placed_order, PaymentStatus.REFUNDED, admin)
        ))

        service.update_payment_status(db, placed_order, PaymentStatus.PAID, admin)

        events = transport.events(NotificationType.PAYMENT_STATUS_CHANGED)
        assert [(e.data["old_status"], e.data["new_status"]) for e in events] == [
            ("PAID", "REFUNDED"),
            ("PENDING", "PAID"),
        ]
        assert events[1].dedup_key == f"order:{placed_order}:payment:PAID:v2"

    def test_created_event_describes_new_order(self, db, service, widget, admin, transport, monkeypatch):
        created_ids = []

        def cancel_newest(other):
            order_id = other.query(Order.id).order_by(Order.id.desc()).limit(1).scalar()
            created_ids.append(order_id)
            service.cancel_order(other, order_id, "fraud check", admin)

        self.interleave_after_commit(db, monkeypatch, self.in_other_session(cancel_newest))

        order = service.create_order(db, 42, order_request((widget, 3)))

        created = transport.events(NotificationType.ORDER_CREATED)
        assert len(created) == 1
        assert created[0].data["order_id"] == order.id == created_ids[0]
        assert created[0].data["items_count"] == 1
        assert created[0].data["total_amount"] == "30.00"
        assert len(transport.events(NotificationType.ORDER_STATUS_CHANGED)) == 1


class TestBulkUpdate:
    def test_each_order_independent(self, db, service, widget, admin):
        first = service.create_order(db, 42, order_request((widget, 1))).id
        second = service.create_order(db, 43, order_request((widget, 1))).id
        cancelled = service.create_order(db, 44, order_request((widget, 1))).id
        service.cancel_order(db, cancelled, "no longer needed", admin)

        succeeded, failed = service.bulk_update_status(
            db, [first, second, cancelled, 999], OrderStatus.PROCESSING, admin
        )

        assert succeeded == [first, second]
        assert failed == [cancelled, 999]
        assert reload(db, first).status == OrderStatus.PROCESSING
        assert reload(db, cancelled).status == OrderStatus.CANCELLED

    def test_bulk_cancel_without_reason_fails(self, db, service, placed_order, admin):
        succeeded, failed = service.bulk_update_status(db, [placed_order], OrderStatus.CANCELLED, admin)
        assert succeeded == []
        assert failed == [placed_order]


class TestDeleteOrder:
    def test_delete_restores_stock(self, db, service, placed_order, widget, admin):
        service.delete_order(db, placed_order, admin)

        assert db.get(Order, placed_order) is None
        assert stock_of(db, widget) == 10
        entry = db.query(AuditLog).filter(AuditLog.action == AuditAction.DELETE).one()
        assert entry.resource_id == placed_order

    def test_delete_cancelled_order_does_not_restore_twice(self, db, service, placed_order, widget, admin):
        service.cancel_order(db, placed_order, "duplicate", admin)
        service.delete_order(db, placed_order, admin)
        assert stock_of(db, widget) == 10

    def test_delete_unknown_order(self, db, service, admin):
        with pytest.raises(OrderNotFound):
            service.delete_order(db, 999, admin)


class TestQueries:
    def test_get_order_by_number(self, db, service, placed_order):
        order = reload(db, placed_order)
        assert service.get_order_by_number(db, order.order_number).id == placed_order
        assert service.get_order_by_number(db, "ORD-00000000-00000000") is None

    def test_filters_and_ordering(self, db, service, widget, admin):
        first = service.create_order(db, 42, order_request((widget, 1))).id
        second = service.create_order(db, 42, order_request((widget, 1))).id
        other = service.create_order(db, 7, order_request((widget, 1))).id
        service.update_status(db, other, OrderStatus.PROCESSING, admin)

        mine, total = service.get_orders(db, user_id=42)
        assert total == 2
        assert [order.id for order in mine] == [second, first]

        processing, total = service.get_orders(db, status=OrderStatus.PROCESSING)
        assert [order.id for order in processing] == [other]

        page, total = service.get_orders(db, skip=1, limit=1)
        assert total == 3
        assert len(page) == 1

    def test_amount_and_date_filters(self, db, service, widget):
        service.create_order(db, 42, order_request((widget, 1)))
        service.create_order(db, 42, order_request((widget, 3)))

        expensive, total = service.get_orders(db, min_total=Decimal("20.00"))
        assert total == 1
        assert expensive[0].total_amount == Decimal("30.00")

        future, total = service.get_orders(db, date_from=datetime.utcnow() + timedelta(days=1))
        assert total == 0

    def test_tracking_filter(self, db, service, placed_order, admin):
        advance(service, db, placed_order, admin, OrderStatus.PROCESSING)
        service.update_status(db, placed_order, OrderStatus.SHIPPED, admin, tracking_number="TRK-1")

        tracked, total = service.get_orders(db, has_tracking=True)
        assert total == 1
        untracked, total = service.get_orders(db, has_tracking=False)
        assert total == 0

    def test_stats_exclude_cancelled_revenue(self, db, service, widget, admin):
        service.create_order(
            db, 42, order_request((widget, 2), shipping_cost=Decimal("5.00"), tax_amount=Decimal("3.00"))
        )
        cancelled = service.create_order(db, 43, order_request((widget, 1))).id
        service.cancel_order(db, cancelled, "customer request", admin)

        stats = service.get_order_stats(db)

        assert stats["total_orders"] == 2
        assert stats["by_status"]["PENDING"] == 1
        assert stats["by_status"]["CANCELLED"] == 1
        assert stats["by_status"]["SHIPPED"] == 0
        assert stats["total_revenue"] == Decimal("28.00")
        assert stats["average_order_value"] == Decimal("28.00")
        assert [(p["product_id"], p["total_quantity"]) for p in stats["top_products"]] == [(widget, 2)]
        assert len(stats["revenue_by_month"]) == 12
        assert stats["revenue_by_month"][-1]["revenue"] == Decimal("28.00")

    def test_top_products(self, db, service, make_product, admin):
        cheap = make_product(name="Pencil", price="2.00", stock=50)
        dear = make_product(name="Lamp", price="30.00", stock=50)
        service.create_order(db, 42, order_request((cheap, 5), (dear, 1)))
        service.create_order(db, 43, order_request((cheap, 3)))
        cancelled = service.create_order(db, 44, order_request((dear, 4))).id
        service.cancel_order(db, cancelled, "customer request", admin)

        top = service.get_top_products(db)

        assert [(p["product_id"], p["total_quantity"], p["total_revenue"]) for p in top] == [
            (dear, 1, Decimal("30.00")),
            (cheap, 8, Decimal("16.00")),
        ]
        assert top[0]["product_name"] == "Lamp"
        assert [p["product_id"] for p in service.get_top_products(db, limit=1)] == [dear]

    def test_revenue_by_month(self, db, service, widget, admin):
        def placed_on(created_at, quantity=1):
            order_id = service.create_order(db, 42, order_request((widget, quantity))).id
            db.query(Order).filter(Order.id == order_id).update({"created_at": created_at})
            db.commit()
            return order_id

        placed_on(datetime(2026, 3, 2, 9, 30), quantity=2)
        placed_on(datetime(2026, 1, 20, 18, 0))
        cancelled = placed_on(datetime(2026, 3, 3, 10, 0))
        service.cancel_order(db, cancelled, "customer request", admin)
        placed_on(datetime(2025, 3, 31, 23, 0))

        months = service.get_revenue_by_month(db, now=datetime(2026, 3, 15, tzinfo=timezone.utc))
        by_month = {m["month"]: m for m in months}

        assert [m["month"] for m in months][0] == "2025-04"
        assert [m["month"] for m in months][-1] == "2026-03"
        assert len(months) == 12
        assert (by_month["2026-03"]["revenue"], by_month["2026-03"]["order_count"]) == (Decimal("20.00"), 1)
        assert (by_month["2026-01"]["revenue"], by_month["2026-01"]["order_count"]) == (Decimal("10.00"), 1)
        assert by_month["2026-02"]["revenue"] == Decimal("0.00")

    def test_revenue_months_cross_year_boundary(self, db, service):
        months = service.get_revenue_by_month(db, months=3, now=datetime(2026, 1, 5, tzinfo=timezone.utc))
        assert [m["month"] for m in months] == ["2025-11", "2025-12", "2026-01"]
        assert all(m["order_count"] == 0 for m in months)

    def test_revenue_report(self, db, service, widget, admin):
        service.create_order(db, 42, order_request((widget, 2)))
        cancelled = service.create_order(db, 43, order_request((widget, 1))).id
        service.cancel_order(db, cancelled, "customer request", admin)

        report = service.get_revenue_report(db, months=6)

        assert report["total_orders"] == 2
        assert report["total_revenue"] == Decimal("20.00")
        assert len(report["revenue_by_month"]) == 6


class TestFailureTranslation:
    def test_stale_row_becomes_conflict(self, db, service):
        with pytest.raises(TransactionConflict) as exc_info:
            with service._unit_of_work(db, "status update"):
                raise StaleDataError("version mismatch")
        assert exc_info.value.retryable
        assert exc_info.value.to_dict()["code"] == "TRANSACTION_CONFLICT"

    def test_database_error_becomes_storage_unavailable(self, db, service):
        with pytest.raises(StorageUnavailable) as exc_info:
            with service._unit_of_work(db, "order creation"):
                raise OperationalError("SELECT 1", {}, Exception("server closed the connection"))
        assert exc_info.value.http_status == 503
        assert "server closed" not in exc_info.value.to_dict()["detail"]


class TestAuditFailure:
    def test_failed_audit_write_is_reported_not_raised(self):
        session = MagicMock()
        session.commit.side_effect = OperationalError("INSERT", {}, Exception("disk full"))

        recorded = AuditService.record(session, 1, AuditAction.UPDATE, ResourceType.ORDER, 5)

        assert recorded is False
        session.rollback.assert_called_once()
