"""Stock reservation and restoration"""
from dataclasses import dataclass
from typing import Optional
from opentelemetry import trace
import logging

from ordercore.models.product import ProductStatus
from ordercore.services.catalog import SqlCatalogStore
from ordercore.services.errors import InsufficientStock, InvalidOrderRequest, ProductNotFound, ProductUnavailable

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


def derive_product_status(stock: int, current: ProductStatus) -> ProductStatus:
    """Availability implied by ``stock``; DISCONTINUED is never overridden"""
    current = ProductStatus(current)
    if current == ProductStatus.DISCONTINUED:
        return current
    return ProductStatus.ACTIVE if stock > 0 else ProductStatus.OUT_OF_STOCK


def crossed_low_stock(previous: int, current: int, min_stock: int) -> bool:
    """True only on the reservation that takes stock to or below the threshold"""
    return previous > min_stock >= current > 0


@dataclass(frozen=True)
class Reservation:
    product_id: int
    product_name: str
    quantity: int
    previous_stock: int
    stock: int
    min_stock: int
    status: ProductStatus

    @property
    def low_stock(self) -> bool:
        return crossed_low_stock(self.previous_stock, self.stock, self.min_stock)


class StockLedger:
    """Single-product stock mutations, all through the catalog's atomic delta"""

    def __init__(self, catalog: SqlCatalogStore):
        self.catalog = catalog

    def reserve(self, product_id: int, quantity: int) -> Reservation:
        """
        Take ``quantity`` units of ``product_id``.

        Raises InsufficientStock, ProductUnavailable or ProductNotFound
        without mutating anything.
        """
        with tracer.start_as_current_span("stock_ledger.reserve") as span:
            span.set_attribute("product.id", product_id)
            span.set_attribute("quantity.requested", quantity)

            if quantity <= 0:
                raise InvalidOrderRequest("Quantity must be positive", {"product_id": product_id, "quantity": quantity})

            level = self.catalog.adjust_stock(product_id, -quantity)
            if level is None:
                self._raise_rejection(product_id, quantity)

            span.set_attribute("stock.remaining", level.stock)
            reservation = Reservation(
                product_id=product_id,
                product_name=level.name,
                quantity=quantity,
                previous_stock=level.stock + quantity,
                stock=level.stock,
                min_stock=level.min_stock,
                status=level.status,
            )

            logger.info(f"Reserved {quantity} of product {product_id}, remaining stock {level.stock}")
            if reservation.low_stock:
                logger.warning(
                    f"Low stock detected for product {product_id}: {level.stock} left (minimum {level.min_stock})"
                )
            return reservation

    def restore(self, product_id: int, quantity: int) -> Optional[int]:
        """Give ``quantity`` units back; returns the new stock, None if the product is gone"""
        with tracer.start_as_current_span("stock_ledger.restore") as span:
            span.set_attribute("product.id", product_id)
            span.set_attribute("quantity.restored", quantity)

            if quantity <= 0:
                raise InvalidOrderRequest("Quantity must be positive", {"product_id": product_id, "quantity": quantity})

            level = self.catalog.adjust_stock(product_id, quantity)
            if level is None:
                logger.warning(f"Product {product_id} no longer in catalog, {quantity} units not restored")
                return None

            logger.info(f"Restored {quantity} of product {product_id}, stock now {level.stock}")
            return level.stock

    def _raise_rejection(self, product_id: int, quantity: int):
        # The conditional update matched nothing; read the row to say why
        product = self.catalog.get_product(product_id)
        if product is None:
            raise ProductNotFound(product_id)
        if not product.is_active or product.status == ProductStatus.DISCONTINUED:
            raise ProductUnavailable(product_id, product.name)
        raise InsufficientStock(product_id, quantity, product.stock, product.name)
