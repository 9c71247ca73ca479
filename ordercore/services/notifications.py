"""
Lifecycle notifications

Event builders plus the dispatcher that hands events to the transports.
The lifecycle engine is the only caller of ``publish``; it publishes
after the owning transaction commits.
"""
from collections import OrderedDict
from decimal import Decimal
from threading import Lock
from typing import Iterable, List, Optional
import logging

from ordercore.models.notification import NotificationEvent, NotificationType, Priority, Recipients
from ordercore.models.order import Order, OrderStatus, PaymentStatus
from ordercore.models.schemas import STAFF_ROLES
from ordercore.services.stock_ledger import Reservation
from ordercore.services.transport import NotificationTransport

logger = logging.getLogger(__name__)


class NotificationDispatcher:
    """Fan events out to every transport, at most once per dedup key"""

    def __init__(self, transports: Iterable[NotificationTransport], dedup_window: int = 1024):
        self.transports: List[NotificationTransport] = list(transports)
        self.dedup_window = dedup_window
        self._seen: "OrderedDict[str, None]" = OrderedDict()
        self._lock = Lock()

    def _first_sighting(self, key: str) -> bool:
        with self._lock:
            if key in self._seen:
                self._seen.move_to_end(key)
                return False
            self._seen[key] = None
            while len(self._seen) > self.dedup_window:
                self._seen.popitem(last=False)
            return True

    def publish(self, event: NotificationEvent, recipients: Recipients) -> bool:
        """
        Send ``event`` to ``recipients``.

        Never raises: delivery problems are the transport's and are logged.
        Returns False when the event was dropped as a duplicate or had no
        recipients.
        """
        if recipients.is_empty():
            logger.debug(f"Notification {event.type.value} has no recipients, skipped")
            return False

        if event.dedup_key and not self._first_sighting(event.dedup_key):
            logger.info(f"Duplicate notification {event.dedup_key} suppressed")
            return False

        channels = recipients.channels()
        for transport in self.transports:
            try:
                transport.deliver(event, channels)
            except Exception as e:
                logger.error(f"Notification transport {type(transport).__name__} failed: {e}", exc_info=True)

        logger.info(f"Published {event.type.value} to {', '.join(channels)}")
        return True


def staff_and_owner(owner_id: Optional[int]) -> Recipients:
    return Recipients(user_ids=[owner_id] if owner_id is not None else [], roles=list(STAFF_ROLES))


def _money(amount: Decimal) -> str:
    return f"{amount:.2f}"


def order_created_event(order: Order) -> NotificationEvent:
    return NotificationEvent(
        type=NotificationType.ORDER_CREATED,
        title="New Order Received",
        message=f"New order {order.order_number} for {order.currency} {_money(order.total_amount)}",
        order_id=order.id,
        priority=Priority.MEDIUM,
        data={
            "order_id": order.id,
            "order_number": order.order_number,
            "user_id": order.user_id,
            "total_amount": _money(order.total_amount),
            "currency": order.currency,
            "items_count": len(order.items),
        },
        dedup_key=f"order:{order.id}:created",
    )


def status_changed_event(order: Order, previous: OrderStatus, version: int) -> NotificationEvent:
    current = OrderStatus(order.status)
    return NotificationEvent(
        type=NotificationType.ORDER_STATUS_CHANGED,
        title="Order Status Updated",
        message=f'Order {order.order_number} changed from "{previous.value}" to "{current.value}"',
        order_id=order.id,
        priority=Priority.HIGH if current == OrderStatus.CANCELLED else Priority.MEDIUM,
        data={
            "order_id": order.id,
            "order_number": order.order_number,
            "old_status": previous.value,
            "new_status": current.value,
            "tracking_number": order.tracking_number,
            "cancel_reason": order.cancel_reason,
        },
        dedup_key=f"order:{order.id}:status:{current.value}:v{version}",
    )


def payment_status_changed_event(order: Order, previous: PaymentStatus, version: int) -> NotificationEvent:
    current = PaymentStatus(order.payment_status)
    priority = {
        PaymentStatus.PAID: Priority.MEDIUM,
        PaymentStatus.FAILED: Priority.HIGH,
    }.get(current, Priority.LOW)
    return NotificationEvent(
        type=NotificationType.PAYMENT_STATUS_CHANGED,
        title="Payment Status Updated",
        message=f'Payment for order {order.order_number} changed from "{previous.value}" to "{current.value}"',
        order_id=order.id,
        priority=priority,
        data={
            "order_id": order.id,
            "order_number": order.order_number,
            "old_status": previous.value,
            "new_status": current.value,
        },
        dedup_key=f"order:{order.id}:payment:{current.value}:v{version}",
    )


def low_stock_event(reservation: Reservation) -> NotificationEvent:
    return NotificationEvent(
        type=NotificationType.LOW_STOCK,
        title="Low Stock",
        message=(
            f"{reservation.product_name}: only {reservation.stock} left "
            f"(minimum: {reservation.min_stock})"
        ),
        product_id=reservation.product_id,
        priority=Priority.HIGH if reservation.stock <= reservation.min_stock // 2 else Priority.MEDIUM,
        data={
            "product_id": reservation.product_id,
            "product_name": reservation.product_name,
            "current_stock": reservation.stock,
            "min_stock": reservation.min_stock,
        },
    )


def system_alert_event(title: str, message: str, **data) -> NotificationEvent:
    return NotificationEvent(
        type=NotificationType.SYSTEM_ALERT,
        title=title,
        message=message,
        priority=Priority.CRITICAL,
        data=data,
    )
