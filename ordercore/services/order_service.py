"""
Order lifecycle: creation, status transitions, payment status, cancellation
"""
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Dict, FrozenSet, List, Optional, Sequence, Tuple
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError
from opentelemetry import trace
import logging

from ordercore.models.audit import AuditAction, ResourceType
from ordercore.models.order import Order, OrderItem, OrderStatus, PaymentStatus
from ordercore.models.product import Product, ProductStatus
from ordercore.models.schemas import Address, OrderCreate, Principal, STAFF_ROLES
from ordercore.models.notification import Recipients
from ordercore.services.audit import AuditService
from ordercore.services.catalog import SqlCatalogStore
from ordercore.services.errors import (
    IllegalTransition,
    InvalidAddress,
    InvalidOrderRequest,
    OrderError,
    OrderNotFound,
    ProductNotFound,
    ProductUnavailable,
    StorageUnavailable,
    TransactionConflict,
    TransitionNotPermitted,
)
from ordercore.services.notifications import (
    NotificationDispatcher,
    low_stock_event,
    order_created_event,
    payment_status_changed_event,
    staff_and_owner,
    status_changed_event,
    system_alert_event,
)
from ordercore.services.order_numbers import OrderNumberGenerator
from ordercore.services.pricing import Line, OrderPricingCalculator
from ordercore.services.stock_ledger import Reservation, StockLedger
from ordercore.services.status_machine import (
    CUSTOMER_CANCELLABLE_STATUSES,
    OrderStatusMachine,
    STOCK_RESTORING_STATUSES,
)

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

REQUIRED_ADDRESS_FIELDS = ("first_name", "last_name", "address1", "city", "state", "postal_code", "country")


def validate_address(address, kind: str) -> dict:
    """Return the address as a plain dict, raising InvalidAddress on missing sub-fields"""
    if address is None:
        raise InvalidAddress(kind, REQUIRED_ADDRESS_FIELDS)
    if isinstance(address, Address):
        address = address.model_dump(exclude_none=True)
    if not isinstance(address, dict):
        raise InvalidAddress(kind, REQUIRED_ADDRESS_FIELDS)

    missing = [
        field for field in REQUIRED_ADDRESS_FIELDS
        if not isinstance(address.get(field), str) or not address[field].strip()
    ]
    if missing:
        raise InvalidAddress(kind, missing)
    return {key: value for key, value in address.items() if value is not None}


class OrderLifecycleEngine:
    """
    Owns the transaction boundary of every order mutation.

    Notifications and audit records are emitted here, once, after the
    owning transaction has committed.
    """

    def __init__(
        self,
        dispatcher: NotificationDispatcher,
        audit: AuditService = AuditService,
        number_generator: Optional[OrderNumberGenerator] = None,
        pricing: Optional[OrderPricingCalculator] = None,
        status_machine: Optional[OrderStatusMachine] = None,
        default_currency: str = "EUR",
        order_number_max_attempts: int = 5,
    ):
        self.dispatcher = dispatcher
        self.audit = audit
        self.number_generator = number_generator or OrderNumberGenerator()
        self.pricing = pricing or OrderPricingCalculator()
        self.status_machine = status_machine or OrderStatusMachine()
        self.default_currency = default_currency
        self.order_number_max_attempts = order_number_max_attempts

    # ==========================================
    # TRANSACTION HELPERS
    # ==========================================

    @contextmanager
    def _unit_of_work(self, db: Session, operation: str):
        """Roll back on any failure and translate storage errors into retryable ones"""
        try:
            yield
        except OrderError:
            db.rollback()
            raise
        except StaleDataError as e:
            db.rollback()
            logger.warning(f"Concurrent modification during {operation}: {e}")
            raise TransactionConflict(f"Order was modified concurrently during {operation}") from e
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Storage failure during {operation}: {e}", exc_info=True)
            raise StorageUnavailable(f"Storage failure during {operation}") from e
        except Exception:
            db.rollback()
            raise

    @staticmethod
    def _load_for_update(db: Session, order_id: int) -> Order:
        order = (
            db.query(Order)
            .filter(Order.id == order_id)
            .with_for_update()
            .populate_existing()
            .first()
        )
        if not order:
            raise OrderNotFound(order_id)
        return order

    def _insert_with_unique_number(self, db: Session, build_order: Callable[[str], Order]) -> Order:
        """Insert the order under a fresh number, retrying on a number collision"""
        for attempt in range(1, self.order_number_max_attempts + 1):
            number = self.number_generator.next()
            order = build_order(number)
            try:
                with db.begin_nested():
                    db.add(order)
                    db.flush()
            except IntegrityError:
                taken = db.query(Order.id).filter(Order.order_number == number).first() is not None
                if not taken:
                    raise
                logger.warning(f"Order number {number} already taken (attempt {attempt}), regenerating")
                continue
            return order

        raise StorageUnavailable(
            f"Could not allocate a unique order number after {self.order_number_max_attempts} attempts"
        )

    def _record_audit(self, db: Session, actor_id: int, action: AuditAction, order_id: int, old=None, new=None):
        self.audit.record(db, actor_id, action, ResourceType.ORDER, order_id, old, new)

    # ==========================================
    # CREATION
    # ==========================================

    @staticmethod
    def _validate_lines(order_data: OrderCreate) -> List[Tuple[int, int]]:
        if not order_data.items:
            raise InvalidOrderRequest("Order must contain at least one item")
        lines = []
        for item in order_data.items:
            if item.quantity <= 0:
                raise InvalidOrderRequest(
                    f"Quantity for product {item.product_id} must be positive",
                    {"product_id": item.product_id, "quantity": item.quantity},
                )
            lines.append((item.product_id, item.quantity))
        return lines

    def create_order(self, db: Session, user_id: int, order_data: OrderCreate) -> Order:
        """
        Create new order with stock reservation

        Process:
        1. Validate items and addresses
        2. Load products and compute totals
        3. Reserve stock in ascending product order
        4. Stamp an order number and persist order + items
        5. Commit, then notify and audit
        """
        with tracer.start_as_current_span("order_service.create_order") as span:
            span.set_attribute("user.id", user_id)
            span.set_attribute("items.count", len(order_data.items))

            logger.info(f"Creating order for user {user_id} with {len(order_data.items)} items")

            # Step 1: Validate input before touching storage
            lines = self._validate_lines(order_data)
            shipping_address = validate_address(order_data.shipping_address, "shipping")
            billing_address = (
                validate_address(order_data.billing_address, "billing")
                if order_data.billing_address is not None
                else shipping_address
            )
            # Fixed lock order across all callers
            reservation_order = sorted(lines, key=lambda line: line[0])

            with self._unit_of_work(db, "order creation"):
                catalog = SqlCatalogStore(db)
                ledger = StockLedger(catalog)

                # Step 2: Product snapshot and totals
                products: Dict[int, Product] = {}
                for product_id, _ in reservation_order:
                    if product_id in products:
                        continue
                    product = catalog.get_product(product_id)
                    if not product:
                        raise ProductNotFound(product_id)
                    if not product.is_active or product.status == ProductStatus.DISCONTINUED:
                        raise ProductUnavailable(product_id, product.name)
                    products[product_id] = product

                totals = self.pricing.compute(
                    [Line(unit_price=products[pid].price, quantity=qty) for pid, qty in lines],
                    shipping_cost=order_data.shipping_cost,
                    tax_amount=order_data.tax_amount,
                    discount_amount=order_data.discount_amount,
                )
                span.set_attribute("order.total_amount", str(totals.total_amount))

                # Step 3: Reserve stock; any failure rolls back earlier reservations
                reservations: List[Reservation] = [
                    ledger.reserve(product_id, quantity) for product_id, quantity in reservation_order
                ]

                # Step 4: Persist order and items
                def build_order(order_number: str) -> Order:
                    return Order(
                        order_number=order_number,
                        user_id=user_id,
                        status=OrderStatus.PENDING,
                        payment_status=PaymentStatus.PENDING,
                        subtotal=totals.subtotal,
                        shipping_cost=totals.shipping_cost,
                        tax_amount=totals.tax_amount,
                        discount_amount=totals.discount_amount,
                        total_amount=totals.total_amount,
                        currency=(order_data.currency or self.default_currency).upper(),
                        shipping_address=shipping_address,
                        billing_address=billing_address,
                        notes=order_data.notes,
                        items=[
                            OrderItem(
                                product_id=product_id,
                                product_name=products[product_id].name,
                                sku=products[product_id].sku,
                                quantity=quantity,
                                unit_price=products[product_id].price,
                                total_price=self.pricing.line_total(products[product_id].price, quantity),
                            )
                            for product_id, quantity in lines
                        ],
                    )

                order = self._insert_with_unique_number(db, build_order)

                # Events describe what this transaction wrote, not what is read back later
                created_event = order_created_event(order)
                audit_values = {
                    "order_number": order.order_number,
                    "total_amount": str(order.total_amount),
                    "items_count": len(order.items),
                }
                order_id = order.id
                db.commit()

            span.set_attribute("order.id", order_id)
            logger.info(f"Order {order_id} ({audit_values['order_number']}) created successfully")

            # Step 5: Committed; tell interested parties
            self.dispatcher.publish(created_event, staff_and_owner(user_id))
            for reservation in reservations:
                if reservation.low_stock:
                    self.dispatcher.publish(low_stock_event(reservation), Recipients(roles=list(STAFF_ROLES)))

            self._record_audit(db, user_id, AuditAction.CREATE, order_id, new=audit_values)
            return order

    # ==========================================
    # STATUS TRANSITIONS
    # ==========================================

    def update_status(
        self,
        db: Session,
        order_id: int,
        new_status: OrderStatus,
        actor: Principal,
        tracking_number: Optional[str] = None,
        cancel_reason: Optional[str] = None,
        owner_id: Optional[int] = None,
        allowed_from: Optional[FrozenSet[OrderStatus]] = None,
    ) -> Order:
        """
        Move an order to ``new_status``

        Requesting the status the order already has is a no-op that emits
        nothing, which makes retries safe. ``owner_id`` and ``allowed_from``
        narrow who may act and from where; both are checked on the locked row.
        """
        with tracer.start_as_current_span("order_service.update_status") as span:
            new_status = OrderStatus(new_status)
            span.set_attribute("order.id", order_id)
            span.set_attribute("status.new", new_status.value)

            missing_products: List[Tuple[int, int]] = []
            with self._unit_of_work(db, "status update"):
                order = self._load_for_update(db, order_id)
                if owner_id is not None and order.user_id != owner_id:
                    raise OrderNotFound(order_id)

                previous = OrderStatus(order.status)
                span.set_attribute("status.old", previous.value)

                if previous == new_status:
                    # PENDING is never a target, so PENDING -> PENDING is not a retry
                    if not self.status_machine.is_reachable(previous):
                        raise IllegalTransition(previous, new_status)
                    db.rollback()
                    logger.info(f"Order {order_id} already {new_status.value}, nothing to do")
                    return order

                if allowed_from is not None and previous not in allowed_from:
                    raise TransitionNotPermitted(previous, new_status)

                result = self.status_machine.apply(
                    order,
                    new_status,
                    tracking_number=tracking_number,
                    cancel_reason=cancel_reason,
                )

                if result.restores_stock:
                    ledger = StockLedger(SqlCatalogStore(db))
                    for item in sorted(order.items, key=lambda i: (i.product_id, i.id)):
                        if ledger.restore(item.product_id, item.quantity) is None:
                            missing_products.append((item.product_id, item.quantity))

                # Flush first so the event carries the version this commit writes
                db.flush()
                changed_event = status_changed_event(order, previous, order.version)
                recipients = staff_and_owner(order.user_id)
                order_number = order.order_number
                db.commit()

            logger.info(f"Order {order_id} status updated: {previous.value} -> {new_status.value}")

            self.dispatcher.publish(changed_event, recipients)
            for product_id, quantity in missing_products:
                self.dispatcher.publish(
                    system_alert_event(
                        "Stock Not Restored",
                        f"Order {order_number}: product {product_id} is no longer in the catalog, "
                        f"{quantity} units were not restored",
                        order_id=order_id,
                        product_id=product_id,
                        quantity=quantity,
                    ),
                    Recipients(roles=list(STAFF_ROLES)),
                )

            self._record_audit(
                db, actor.id, AuditAction.UPDATE, order_id,
                old={"status": previous.value},
                new={"status": new_status.value},
            )
            return order

    def cancel_order(self, db: Session, order_id: int, reason: str, actor: Principal) -> Order:
        """
        Cancel an order, restoring its stock

        Staff may cancel from any status with a CANCELLED edge. Customers may
        cancel only their own orders, and only while they are PENDING.
        """
        if not reason or not reason.strip():
            raise InvalidOrderRequest("A cancellation reason is required", {"field": "reason"})

        if actor.is_staff:
            return self.update_status(db, order_id, OrderStatus.CANCELLED, actor, cancel_reason=reason)

        return self.update_status(
            db, order_id, OrderStatus.CANCELLED, actor,
            cancel_reason=reason,
            owner_id=actor.id,
            allowed_from=CUSTOMER_CANCELLABLE_STATUSES,
        )

    def update_payment_status(
        self,
        db: Session,
        order_id: int,
        new_payment_status: PaymentStatus,
        actor: Principal,
    ) -> Order:
        """Record an external payment signal; no stock side effects"""
        with tracer.start_as_current_span("order_service.update_payment_status") as span:
            new_payment_status = PaymentStatus(new_payment_status)
            span.set_attribute("order.id", order_id)
            span.set_attribute("payment_status.new", new_payment_status.value)

            with self._unit_of_work(db, "payment status update"):
                order = self._load_for_update(db, order_id)
                previous = PaymentStatus(order.payment_status)

                if previous == new_payment_status:
                    db.rollback()
                    logger.info(f"Order {order_id} payment already {new_payment_status.value}, nothing to do")
                    return order

                self.status_machine.validate_payment(previous, new_payment_status)
                order.payment_status = new_payment_status
                order.updated_at = datetime.now(timezone.utc)

                db.flush()
                changed_event = payment_status_changed_event(order, previous, order.version)
                recipients = staff_and_owner(order.user_id)
                db.commit()

            logger.info(f"Order {order_id} payment status updated: {previous.value} -> {new_payment_status.value}")

            self.dispatcher.publish(changed_event, recipients)
            self._record_audit(
                db, actor.id, AuditAction.UPDATE, order_id,
                old={"payment_status": previous.value},
                new={"payment_status": new_payment_status.value},
            )
            return order

    def bulk_update_status(
        self,
        db: Session,
        order_ids: Sequence[int],
        new_status: OrderStatus,
        actor: Principal,
    ) -> Tuple[List[int], List[int]]:
        """Transition each order independently; returns (succeeded, failed) ids"""
        succeeded, failed = [], []
        for order_id in dict.fromkeys(order_ids):
            try:
                self.update_status(db, order_id, new_status, actor)
            except OrderError as e:
                logger.warning(f"Bulk status update skipped order {order_id}: {e.message}")
                failed.append(order_id)
            else:
                succeeded.append(order_id)

        logger.info(
            f"Bulk status update to {OrderStatus(new_status).value}: "
            f"{len(succeeded)} succeeded, {len(failed)} failed"
        )
        return succeeded, failed

    # ==========================================
    # ADMINISTRATION
    # ==========================================

    def delete_order(self, db: Session, order_id: int, actor: Principal) -> None:
        """Hard delete; stock is given back unless a cancellation or return already did"""
        with tracer.start_as_current_span("order_service.delete_order") as span:
            span.set_attribute("order.id", order_id)

            with self._unit_of_work(db, "order deletion"):
                order = self._load_for_update(db, order_id)
                status = OrderStatus(order.status)
                order_number = order.order_number
                items_count = len(order.items)

                if status not in STOCK_RESTORING_STATUSES:
                    ledger = StockLedger(SqlCatalogStore(db))
                    for item in sorted(order.items, key=lambda i: (i.product_id, i.id)):
                        ledger.restore(item.product_id, item.quantity)

                db.delete(order)
                db.commit()

            logger.info(f"Order {order_id} ({order_number}) deleted by user {actor.id}")
            self._record_audit(
                db, actor.id, AuditAction.DELETE, order_id,
                old={"order_number": order_number, "status": status.value, "items_count": items_count},
            )

    # ==========================================
    # QUERIES
    # ==========================================

    @staticmethod
    def get_order(db: Session, order_id: int) -> Optional[Order]:
        """Get order by ID"""
        with tracer.start_as_current_span("order_service.get_order") as span:
            span.set_attribute("order.id", order_id)
            return db.query(Order).filter(Order.id == order_id).first()

    @staticmethod
    def get_order_by_number(db: Session, order_number: str) -> Optional[Order]:
        """Get order by order number"""
        return db.query(Order).filter(Order.order_number == order_number).first()

    @staticmethod
    def get_orders(
        db: Session,
        skip: int = 0,
        limit: int = 100,
        user_id: Optional[int] = None,
        status: Optional[OrderStatus] = None,
        payment_status: Optional[PaymentStatus] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        min_total: Optional[Decimal] = None,
        max_total: Optional[Decimal] = None,
        has_tracking: Optional[bool] = None,
    ) -> Tuple[List[Order], int]:
        """Get list of orders with filters, newest first"""
        with tracer.start_as_current_span("order_service.get_orders") as span:
            query = db.query(Order)

            if user_id:
                query = query.filter(Order.user_id == user_id)
                span.set_attribute("filter.user_id", user_id)

            if status:
                query = query.filter(Order.status == status)
                span.set_attribute("filter.status", status.value)

            if payment_status:
                query = query.filter(Order.payment_status == payment_status)

            if date_from:
                query = query.filter(Order.created_at >= date_from)
            if date_to:
                query = query.filter(Order.created_at <= date_to)

            if min_total is not None:
                query = query.filter(Order.total_amount >= min_total)
            if max_total is not None:
                query = query.filter(Order.total_amount <= max_total)

            if has_tracking is True:
                query = query.filter(Order.tracking_number.isnot(None))
            elif has_tracking is False:
                query = query.filter(Order.tracking_number.is_(None))

            total = query.count()
            orders = query.order_by(Order.created_at.desc(), Order.id.desc()).offset(skip).limit(limit).all()

            span.set_attribute("orders.total", total)
            span.set_attribute("orders.returned", len(orders))

            return orders, total

    @staticmethod
    def _revenue_totals(db: Session) -> Tuple[Decimal, Decimal]:
        revenue, average = (
            db.query(func.sum(Order.total_amount), func.avg(Order.total_amount))
            .filter(Order.status != OrderStatus.CANCELLED)
            .one()
        )
        return _money(revenue), _money(average)

    @staticmethod
    def get_top_products(db: Session, limit: int = 10) -> List[dict]:
        """Best sellers by revenue, summed over the item snapshots of non-cancelled orders"""
        with tracer.start_as_current_span("order_service.get_top_products") as span:
            span.set_attribute("report.limit", limit)
            revenue = func.sum(OrderItem.total_price)
            rows = (
                db.query(
                    OrderItem.product_id,
                    func.max(OrderItem.product_name),
                    func.max(OrderItem.sku),
                    func.sum(OrderItem.quantity),
                    revenue,
                )
                .join(Order, OrderItem.order_id == Order.id)
                .filter(Order.status != OrderStatus.CANCELLED)
                .group_by(OrderItem.product_id)
                .order_by(revenue.desc(), OrderItem.product_id)
                .limit(limit)
                .all()
            )
            return [
                {
                    "product_id": product_id,
                    "product_name": name,
                    "sku": sku,
                    "total_quantity": int(quantity or 0),
                    "total_revenue": _money(total),
                }
                for product_id, name, sku, quantity, total in rows
            ]

    @staticmethod
    def get_revenue_by_month(db: Session, months: int = 12, now: Optional[datetime] = None) -> List[dict]:
        """
        Revenue and order count per calendar month, oldest first

        Covers the current month and the ``months - 1`` before it; months
        without orders are reported with zero. Cancelled orders are excluded.
        """
        with tracer.start_as_current_span("order_service.get_revenue_by_month"):
            now = now or datetime.now(timezone.utc)
            keys = _month_keys(now, months)
            first_year, first_month = (int(part) for part in keys[0].split("-"))
            since = datetime(first_year, first_month, 1, tzinfo=timezone.utc)

            buckets = {key: {"month": key, "revenue": Decimal("0"), "order_count": 0} for key in keys}
            rows = (
                db.query(Order.created_at, Order.total_amount)
                .filter(Order.status != OrderStatus.CANCELLED)
                .filter(Order.created_at >= since)
                .all()
            )
            for created_at, total_amount in rows:
                bucket = buckets.get(created_at.strftime("%Y-%m"))
                if bucket is None:
                    continue
                bucket["revenue"] += Decimal(str(total_amount))
                bucket["order_count"] += 1

            for bucket in buckets.values():
                bucket["revenue"] = _money(bucket["revenue"])
            return [buckets[key] for key in keys]

    @classmethod
    def get_revenue_report(cls, db: Session, months: int = 12) -> dict:
        """Revenue totals plus the monthly breakdown"""
        total_revenue, average_order_value = cls._revenue_totals(db)
        return {
            "total_orders": db.query(func.count(Order.id)).scalar(),
            "total_revenue": total_revenue,
            "average_order_value": average_order_value,
            "revenue_by_month": cls.get_revenue_by_month(db, months),
        }

    @classmethod
    def get_order_stats(cls, db: Session) -> dict:
        """Order counts per status plus revenue, cancelled orders excluded from revenue"""
        with tracer.start_as_current_span("order_service.get_order_stats"):
            counts = dict(
                db.query(Order.status, func.count(Order.id)).group_by(Order.status).all()
            )
            by_status = {status.value: counts.get(status, 0) for status in OrderStatus}
            total_revenue, average_order_value = cls._revenue_totals(db)

            return {
                "total_orders": sum(by_status.values()),
                "by_status": by_status,
                "total_revenue": total_revenue,
                "average_order_value": average_order_value,
                "top_products": cls.get_top_products(db),
                "revenue_by_month": cls.get_revenue_by_month(db),
            }


def _money(amount) -> Decimal:
    return Decimal(str(amount or 0)).quantize(Decimal("0.01"))


def _month_keys(now: datetime, months: int) -> List[str]:
    """``YYYY-MM`` keys for the last ``months`` calendar months, oldest first"""
    year, month = now.year, now.month
    keys = []
    for _ in range(months):
        keys.append(f"{year:04d}-{month:02d}")
        month -= 1
        if month == 0:
            year, month = year - 1, 12
    return keys[::-1]
