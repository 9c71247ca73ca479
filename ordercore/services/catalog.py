"""Catalog store adapter: product reads and atomic stock deltas"""
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import and_, case, literal, update
from sqlalchemy.orm import Session

from ordercore.models.product import Product, ProductStatus

_STATUS_TYPE = Product.__table__.c.status.type


@dataclass(frozen=True)
class StockLevel:
    """Product stock right after a successful adjustment"""
    product_id: int
    name: str
    stock: int
    min_stock: int
    status: ProductStatus


class SqlCatalogStore:
    """
    Product records living in the same database as orders.

    Every stock change is a single conditional UPDATE, so the check and
    the write cannot be interleaved with another writer on the same row.
    """

    def __init__(self, db: Session):
        self.db = db

    def get_product(self, product_id: int) -> Optional[Product]:
        """Current product row, bypassing any stale copy in the session"""
        return self.db.get(Product, product_id, populate_existing=True)

    def adjust_stock(self, product_id: int, delta: int) -> Optional[StockLevel]:
        """
        Apply ``delta`` to the product stock.

        Negative deltas only apply to active, non-discontinued products
        holding at least ``-delta`` units. Status is re-derived from the
        new stock in the same statement. Returns None when no row matched.
        """
        if delta < 0:
            quantity = -delta
            stmt = (
                update(Product)
                .where(
                    Product.id == product_id,
                    Product.stock >= quantity,
                    Product.status != ProductStatus.DISCONTINUED,
                    Product.is_active.is_(True),
                )
                .values(
                    stock=Product.stock - quantity,
                    status=case(
                        (Product.stock == quantity, literal(ProductStatus.OUT_OF_STOCK, _STATUS_TYPE)),
                        else_=literal(ProductStatus.ACTIVE, _STATUS_TYPE),
                    ),
                )
            )
        else:
            stmt = (
                update(Product)
                .where(Product.id == product_id)
                .values(
                    stock=Product.stock + delta,
                    status=case(
                        (
                            and_(Product.status == ProductStatus.OUT_OF_STOCK, Product.stock + delta > 0),
                            literal(ProductStatus.ACTIVE, _STATUS_TYPE),
                        ),
                        else_=Product.status,
                    ),
                )
            )

        stmt = stmt.returning(
            Product.id, Product.name, Product.stock, Product.min_stock, Product.status
        ).execution_options(synchronize_session="fetch")

        row = self.db.execute(stmt).first()
        if row is None:
            return None
        return StockLevel(
            product_id=row.id,
            name=row.name,
            stock=row.stock,
            min_stock=row.min_stock,
            status=ProductStatus(row.status),
        )
