"""
Product stock record, owned by the catalog and mutated through the stock ledger
"""
from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, Enum as SQLEnum, Integer, Numeric, String
from sqlalchemy.sql import func
from ordercore.db.database import Base
import enum


class ProductStatus(str, enum.Enum):
    """Availability status derived from stock"""
    ACTIVE = "ACTIVE"
    OUT_OF_STOCK = "OUT_OF_STOCK"
    DISCONTINUED = "DISCONTINUED"


class Product(Base):
    """Product model"""
    __tablename__ = "products"
    __table_args__ = (
        CheckConstraint("stock >= 0", name="ck_products_stock_non_negative"),
    )

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    sku = Column(String(100), unique=True, nullable=False, index=True)
    price = Column(Numeric(12, 2), nullable=False)
    stock = Column(Integer, nullable=False, default=0)
    min_stock = Column(Integer, nullable=False, default=10)
    status = Column(SQLEnum(ProductStatus), nullable=False, default=ProductStatus.ACTIVE)
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    def __repr__(self):
        return f"<Product(id={self.id}, sku={self.sku}, stock={self.stock}, status={self.status})>"
