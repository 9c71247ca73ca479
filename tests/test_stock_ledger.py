"""Tests for stock reservation and restoration."""

import pytest
from sqlalchemy import text

from ordercore.models.product import Product, ProductStatus
from ordercore.services.catalog import SqlCatalogStore
from ordercore.services.errors import InsufficientStock, InvalidOrderRequest, ProductNotFound, ProductUnavailable
from ordercore.services.stock_ledger import StockLedger, crossed_low_stock, derive_product_status


@pytest.fixture
def ledger(db):
    return StockLedger(SqlCatalogStore(db))


def stock_of(db, product_id):
    return db.get(Product, product_id, populate_existing=True).stock


class TestDeriveStatus:
    def test_positive_stock_is_active(self):
        assert derive_product_status(3, ProductStatus.OUT_OF_STOCK) == ProductStatus.ACTIVE

    def test_zero_stock_is_out_of_stock(self):
        assert derive_product_status(0, ProductStatus.ACTIVE) == ProductStatus.OUT_OF_STOCK

    def test_discontinued_is_sticky(self):
        assert derive_product_status(50, ProductStatus.DISCONTINUED) == ProductStatus.DISCONTINUED


class TestLowStockCrossing:
    def test_crossing_into_threshold(self):
        assert crossed_low_stock(previous=5, current=2, min_stock=2)

    def test_already_below_threshold(self):
        assert not crossed_low_stock(previous=2, current=1, min_stock=2)

    def test_sold_out_is_not_low_stock(self):
        assert not crossed_low_stock(previous=5, current=0, min_stock=2)


class TestReserve:
    def test_reserve_decrements_stock(self, db, ledger, make_product):
        product_id = make_product(stock=10)
        reservation = ledger.reserve(product_id, 3)
        db.commit()

        assert reservation.previous_stock == 10
        assert reservation.stock == 7
        assert stock_of(db, product_id) == 7

    def test_reserve_last_unit_marks_out_of_stock(self, db, ledger, make_product):
        product_id = make_product(stock=2)
        reservation = ledger.reserve(product_id, 2)
        db.commit()

        product = db.get(Product, product_id, populate_existing=True)
        assert reservation.status == ProductStatus.OUT_OF_STOCK
        assert product.stock == 0
        assert product.status == ProductStatus.OUT_OF_STOCK

    def test_insufficient_stock_changes_nothing(self, db, ledger, make_product):
        product_id = make_product(stock=1)
        with pytest.raises(InsufficientStock) as exc_info:
            ledger.reserve(product_id, 2)

        assert exc_info.value.requested == 2
        assert exc_info.value.available == 1
        assert stock_of(db, product_id) == 1

    def test_missing_product(self, ledger):
        with pytest.raises(ProductNotFound):
            ledger.reserve(999, 1)

    def test_discontinued_product(self, db, ledger, make_product):
        product_id = make_product(stock=10, status=ProductStatus.DISCONTINUED)
        with pytest.raises(ProductUnavailable):
            ledger.reserve(product_id, 1)
        assert stock_of(db, product_id) == 10

    def test_inactive_product(self, ledger, make_product):
        product_id = make_product(stock=10, is_active=False)
        with pytest.raises(ProductUnavailable):
            ledger.reserve(product_id, 1)

    def test_non_positive_quantity(self, ledger, make_product):
        product_id = make_product(stock=10)
        with pytest.raises(InvalidOrderRequest):
            ledger.reserve(product_id, 0)

    def test_stale_read_cannot_oversell(self, db, ledger, make_product):
        product_id = make_product(stock=1)
        product = db.get(Product, product_id)
        assert product.stock == 1

        # Another writer takes the last unit behind this session's back
        db.execute(text("UPDATE products SET stock = 0 WHERE id = :id"), {"id": product_id})

        with pytest.raises(InsufficientStock):
            ledger.reserve(product_id, 1)
        assert stock_of(db, product_id) == 0

    def test_low_stock_flag_fires_once(self, ledger, make_product):
        product_id = make_product(stock=5, min_stock=2)

        first = ledger.reserve(product_id, 3)
        second = ledger.reserve(product_id, 1)

        assert first.low_stock
        assert not second.low_stock


class TestRestore:
    def test_restore_increments_stock(self, db, ledger, make_product):
        product_id = make_product(stock=4)
        assert ledger.restore(product_id, 3) == 7
        db.commit()
        assert stock_of(db, product_id) == 7

    def test_restore_reactivates_out_of_stock(self, db, ledger, make_product):
        product_id = make_product(stock=0, status=ProductStatus.OUT_OF_STOCK)
        ledger.restore(product_id, 2)
        db.commit()

        product = db.get(Product, product_id, populate_existing=True)
        assert product.status == ProductStatus.ACTIVE

    def test_restore_keeps_discontinued(self, db, ledger, make_product):
        product_id = make_product(stock=0, status=ProductStatus.DISCONTINUED)
        ledger.restore(product_id, 2)
        db.commit()

        product = db.get(Product, product_id, populate_existing=True)
        assert product.stock == 2
        assert product.status == ProductStatus.DISCONTINUED

    def test_restore_missing_product(self, ledger):
        assert ledger.restore(999, 1) is None

    def test_reserve_then_restore_conserves_stock(self, db, ledger, make_product):
        product_id = make_product(stock=9)
        for quantity in (1, 2, 3):
            ledger.reserve(product_id, quantity)
        for quantity in (3, 2, 1):
            ledger.restore(product_id, quantity)
        db.commit()

        assert stock_of(db, product_id) == 9
