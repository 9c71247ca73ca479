"""
FastAPI routes for Order Service

Access control lives here; the lifecycle engine only enforces business
legality. Business errors raised by the engine are mapped to responses by
the exception handlers in main.py.
"""
from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session
from datetime import datetime
from decimal import Decimal
from typing import Optional
import logging

from ordercore.api.deps import get_current_principal, get_order_service, require_admin, require_staff
from ordercore.db.database import get_db
from ordercore.models.order import Order, OrderStatus, PaymentStatus
from ordercore.models.schemas import (
    BulkStatusResult,
    BulkStatusUpdate,
    OrderCancel,
    OrderCreate,
    OrderListResponse,
    OrderResponse,
    OrderStatsResponse,
    OrderStatusUpdate,
    PaymentStatusUpdate,
    Principal,
    ProductSalesReportResponse,
    RevenueReportResponse,
)
from ordercore.services.order_service import OrderLifecycleEngine

logger = logging.getLogger(__name__)

# Create router
router = APIRouter(prefix="/api/v1", tags=["orders"])


def _visible_order(order: Optional[Order], order_ref, principal: Principal) -> Order:
    """Customers only see their own orders; others look missing"""
    if not order or (not principal.is_staff and order.user_id != principal.id):
        logger.warning(f"Order {order_ref} not found for user {principal.id}")
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Order {order_ref} not found"
        )
    return order


@router.get("/orders", response_model=OrderListResponse)
def list_orders(
    skip: int = Query(0, ge=0, description="Number of items to skip"),
    limit: int = Query(100, ge=1, le=1000, description="Max items to return"),
    user_id: Optional[int] = Query(None, description="Filter by user ID"),
    status: Optional[OrderStatus] = Query(None, description="Filter by status"),
    payment_status: Optional[PaymentStatus] = Query(None, description="Filter by payment status"),
    date_from: Optional[datetime] = Query(None),
    date_to: Optional[datetime] = Query(None),
    min_total: Optional[Decimal] = Query(None, ge=0),
    max_total: Optional[Decimal] = Query(None, ge=0),
    has_tracking: Optional[bool] = Query(None),
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_staff)
):
    """
    List all orders with pagination and filters (Admin/Manager only)

    - **skip**: Number of orders to skip (for pagination)
    - **limit**: Maximum number of orders to return
    - **user_id**, **status**, **payment_status**: exact filters
    - **date_from** / **date_to**: creation date range
    - **min_total** / **max_total**: total amount range
    - **has_tracking**: only orders with (or without) a tracking number
    """
    logger.info(f"Listing orders: skip={skip}, limit={limit}, user_id={user_id}, status={status}")

    orders, total = OrderLifecycleEngine.get_orders(
        db=db,
        skip=skip,
        limit=limit,
        user_id=user_id,
        status=status,
        payment_status=payment_status,
        date_from=date_from,
        date_to=date_to,
        min_total=min_total,
        max_total=max_total,
        has_tracking=has_tracking
    )

    return OrderListResponse(
        total=total,
        orders=orders,
        page=skip // limit + 1,
        page_size=limit
    )


@router.get("/orders/stats", response_model=OrderStatsResponse)
def order_stats(
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_staff)
):
    """Order counts per status and revenue (Admin/Manager only)"""
    return OrderLifecycleEngine.get_order_stats(db)


@router.get("/orders/reports/revenue", response_model=RevenueReportResponse)
def revenue_report(
    months: int = Query(12, ge=1, le=36, description="Calendar months to break down"),
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_staff)
):
    """Revenue totals and per-month revenue, cancelled orders excluded (Admin/Manager only)"""
    logger.info(f"Revenue report for user {principal.id}: months={months}")
    return OrderLifecycleEngine.get_revenue_report(db, months)


@router.get("/orders/reports/products", response_model=ProductSalesReportResponse)
def product_sales_report(
    limit: int = Query(10, ge=1, le=100, description="Number of products to return"),
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_staff)
):
    """Best selling products by revenue (Admin/Manager only)"""
    logger.info(f"Product sales report for user {principal.id}: limit={limit}")
    top_products = OrderLifecycleEngine.get_top_products(db, limit)
    return ProductSalesReportResponse(top_products=top_products, total_products=len(top_products))


@router.get("/orders/my", response_model=OrderListResponse)
def my_orders(
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=1000),
    status: Optional[OrderStatus] = Query(None),
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal)
):
    """Orders placed by the caller"""
    logger.info(f"Getting orders for user {principal.id}")

    orders, total = OrderLifecycleEngine.get_orders(
        db=db,
        skip=skip,
        limit=limit,
        user_id=principal.id,
        status=status
    )

    return OrderListResponse(
        total=total,
        orders=orders,
        page=skip // limit + 1,
        page_size=limit
    )


@router.get("/orders/number/{order_number}", response_model=OrderResponse)
def get_order_by_number(
    order_number: str,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal)
):
    """Get a specific order by its order number"""
    order = OrderLifecycleEngine.get_order_by_number(db, order_number)
    return _visible_order(order, order_number, principal)


@router.get("/orders/{order_id}", response_model=OrderResponse)
def get_order(
    order_id: int,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal)
):
    """
    Get a specific order by ID

    - **order_id**: Order ID
    """
    logger.info(f"Getting order {order_id}")

    order = OrderLifecycleEngine.get_order(db, order_id)
    return _visible_order(order, order_id, principal)


@router.post(
    "/orders",
    response_model=OrderResponse,
    status_code=status.HTTP_201_CREATED
)
def create_order(
    order: OrderCreate,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    order_service: OrderLifecycleEngine = Depends(get_order_service)
):
    """
    Create a new order for the caller

    This endpoint:
    1. Validates items and addresses
    2. Prices the order from current product prices
    3. Reserves stock for every item (all or nothing)
    4. Persists the order with a fresh order number
    5. Notifies the customer and staff

    - **items**: List of order items (at least one required)
    - **shipping_address**: Shipping address (required)
    - **billing_address**: Billing address (defaults to shipping)
    - **shipping_cost**, **tax_amount**, **discount_amount**: price adjustments
    """
    logger.info(f"Creating order for user {principal.id}")

    new_order = order_service.create_order(db, principal.id, order)
    logger.info(f"Order {new_order.id} created successfully")
    return new_order


@router.patch("/orders/{order_id}/status", response_model=OrderResponse)
def update_order_status(
    order_id: int,
    status_update: OrderStatusUpdate,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_staff),
    order_service: OrderLifecycleEngine = Depends(get_order_service)
):
    """
    Update order status (Admin/Manager only)

    Allowed transitions:
    - PENDING -> PROCESSING, CANCELLED
    - PROCESSING -> SHIPPED, CANCELLED
    - SHIPPED -> DELIVERED, CANCELLED
    - DELIVERED -> RETURNED
    """
    logger.info(f"Updating order {order_id} status to {status_update.status}")

    return order_service.update_status(
        db,
        order_id,
        status_update.status,
        principal,
        tracking_number=status_update.tracking_number,
        cancel_reason=status_update.cancel_reason
    )


@router.patch("/orders/{order_id}/payment-status", response_model=OrderResponse)
def update_payment_status(
    order_id: int,
    payment_update: PaymentStatusUpdate,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_staff),
    order_service: OrderLifecycleEngine = Depends(get_order_service)
):
    """Update payment status from an external payment signal (Admin/Manager only)"""
    logger.info(f"Updating order {order_id} payment status to {payment_update.payment_status}")

    return order_service.update_payment_status(db, order_id, payment_update.payment_status, principal)


@router.post("/orders/{order_id}/cancel", response_model=OrderResponse)
def cancel_order(
    order_id: int,
    cancel: OrderCancel,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    order_service: OrderLifecycleEngine = Depends(get_order_service)
):
    """
    Cancel an order

    Customers can cancel their own pending orders; Admin/Manager can
    cancel any order that has not been delivered. Ownership and status are
    checked by the engine on the locked row.
    """
    logger.info(f"Cancelling order {order_id}")

    cancelled = order_service.cancel_order(db, order_id, cancel.reason, principal)
    logger.info(f"Order {order_id} cancelled successfully")
    return cancelled


@router.post("/orders/bulk/status", response_model=BulkStatusResult)
def bulk_update_status(
    bulk: BulkStatusUpdate,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_admin),
    order_service: OrderLifecycleEngine = Depends(get_order_service)
):
    """Bulk status update (Admin only); each order succeeds or fails on its own"""
    succeeded, failed = order_service.bulk_update_status(db, bulk.order_ids, bulk.status, principal)
    return BulkStatusResult(
        total=len(succeeded) + len(failed),
        succeeded=succeeded,
        failed=failed,
        status=bulk.status
    )


@router.delete("/orders/{order_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_order(
    order_id: int,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_admin),
    order_service: OrderLifecycleEngine = Depends(get_order_service)
):
    """Delete an order (Admin only)"""
    logger.info(f"Deleting order {order_id}")
    order_service.delete_order(db, order_id, principal)
