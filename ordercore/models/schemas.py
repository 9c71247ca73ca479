"""
Pydantic schemas for Order Service
"""
from pydantic import BaseModel, Field, ConfigDict
from typing import List, Optional
from datetime import datetime
from decimal import Decimal
import enum
from ordercore.models.order import OrderStatus, PaymentStatus


class Role(str, enum.Enum):
    """Principal roles issued by the user service"""
    CLIENT = "CLIENT"
    MANAGER = "MANAGER"
    ADMIN = "ADMIN"


STAFF_ROLES = (Role.ADMIN, Role.MANAGER)


class Principal(BaseModel):
    """Authenticated caller"""
    id: int
    role: Role

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES


class Address(BaseModel):
    """
    Postal address snapshot

    Fields are optional at the parsing layer; required sub-fields are
    enforced by the lifecycle engine so missing ones surface as INVALID_ADDRESS.
    """
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    company: Optional[str] = None
    address1: Optional[str] = None
    address2: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None
    phone: Optional[str] = None


class OrderItemCreate(BaseModel):
    """Schema for creating an order item"""
    product_id: int = Field(..., gt=0, description="Product ID")
    quantity: int = Field(..., description="Quantity, must be positive")


class OrderCreate(BaseModel):
    """Schema for creating an order"""
    items: List[OrderItemCreate] = Field(default_factory=list, description="At least one item required")
    shipping_address: Address
    billing_address: Optional[Address] = None
    notes: Optional[str] = Field(None, max_length=2000)
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    shipping_cost: Decimal = Field(Decimal("0"), description="Shipping cost")
    tax_amount: Decimal = Field(Decimal("0"), description="Tax amount")
    discount_amount: Decimal = Field(Decimal("0"), description="Discount amount")


class OrderStatusUpdate(BaseModel):
    """Schema for updating order status"""
    status: OrderStatus
    tracking_number: Optional[str] = Field(None, max_length=100)
    cancel_reason: Optional[str] = Field(None, max_length=500)


class PaymentStatusUpdate(BaseModel):
    """Schema for updating payment status"""
    payment_status: PaymentStatus


class OrderCancel(BaseModel):
    """Schema for cancelling an order"""
    reason: str = Field(..., max_length=500)


class BulkStatusUpdate(BaseModel):
    """Schema for bulk status updates"""
    order_ids: List[int] = Field(..., min_length=1)
    status: OrderStatus


class BulkStatusResult(BaseModel):
    total: int
    succeeded: List[int]
    failed: List[int]
    status: OrderStatus


class OrderItemResponse(BaseModel):
    """Schema for order item response"""
    id: int
    product_id: int
    product_name: str
    sku: str
    quantity: int
    unit_price: Decimal
    total_price: Decimal

    model_config = ConfigDict(from_attributes=True)


class OrderResponse(BaseModel):
    """Schema for order response"""
    id: int
    order_number: str
    user_id: int
    status: OrderStatus
    payment_status: PaymentStatus
    subtotal: Decimal
    shipping_cost: Decimal
    tax_amount: Decimal
    discount_amount: Decimal
    total_amount: Decimal
    currency: str
    shipping_address: dict
    billing_address: dict
    notes: Optional[str] = None
    tracking_number: Optional[str] = None
    cancel_reason: Optional[str] = None
    items: List[OrderItemResponse]
    created_at: datetime
    updated_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    returned_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class OrderListResponse(BaseModel):
    """Schema for list of orders"""
    total: int
    orders: List[OrderResponse]
    page: int
    page_size: int


class TopProduct(BaseModel):
    """Sales of one product across non-cancelled orders"""
    product_id: int
    product_name: str
    sku: Optional[str] = None
    total_quantity: int
    total_revenue: Decimal


class MonthlyRevenue(BaseModel):
    """Revenue bucket for one calendar month (YYYY-MM, UTC)"""
    month: str
    revenue: Decimal
    order_count: int


class OrderStatsResponse(BaseModel):
    """Aggregate order statistics"""
    total_orders: int
    by_status: dict
    total_revenue: Decimal
    average_order_value: Decimal
    top_products: List[TopProduct] = []
    revenue_by_month: List[MonthlyRevenue] = []


class RevenueReportResponse(BaseModel):
    """Revenue report"""
    total_orders: int
    total_revenue: Decimal
    average_order_value: Decimal
    revenue_by_month: List[MonthlyRevenue]


class ProductSalesReportResponse(BaseModel):
    """Best selling products"""
    top_products: List[TopProduct]
    total_products: int


class HealthResponse(BaseModel):
    """Health check response"""
    status: str
    service: str
    version: str
    timestamp: datetime
