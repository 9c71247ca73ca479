"""Order status state machine"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, FrozenSet, Optional

from ordercore.models.order import Order, OrderStatus, PaymentStatus
from ordercore.services.errors import IllegalPaymentTransition, IllegalTransition, InvalidOrderRequest


ORDER_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED}),
    # Delivered orders come back through RETURNED, never CANCELLED
    OrderStatus.DELIVERED: frozenset({OrderStatus.RETURNED}),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.RETURNED: frozenset(),
}

STOCK_RESTORING_STATUSES = frozenset({OrderStatus.CANCELLED, OrderStatus.RETURNED})

# Customers may only withdraw orders nobody has started working on
CUSTOMER_CANCELLABLE_STATUSES = frozenset({OrderStatus.PENDING})

# Refunds only make sense for money that was actually collected
REFUND_STATUSES = frozenset({PaymentStatus.REFUNDED, PaymentStatus.PARTIALLY_REFUNDED})


@dataclass(frozen=True)
class TransitionResult:
    previous: OrderStatus
    current: OrderStatus
    restores_stock: bool


class OrderStatusMachine:
    """Validates and applies order status transitions"""

    transitions = ORDER_TRANSITIONS

    @classmethod
    def allowed_targets(cls, current: OrderStatus) -> FrozenSet[OrderStatus]:
        return cls.transitions[OrderStatus(current)]

    @classmethod
    def is_terminal(cls, status: OrderStatus) -> bool:
        return not cls.transitions[OrderStatus(status)]

    @classmethod
    def is_reachable(cls, status: OrderStatus) -> bool:
        """True when some transition leads into ``status``"""
        status = OrderStatus(status)
        return any(status in targets for targets in cls.transitions.values())

    @classmethod
    def validate(cls, current: OrderStatus, target: OrderStatus) -> None:
        current = OrderStatus(current)
        target = OrderStatus(target)
        if target not in cls.transitions[current]:
            raise IllegalTransition(current, target)

    def apply(
        self,
        order: Order,
        target: OrderStatus,
        tracking_number: Optional[str] = None,
        cancel_reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> TransitionResult:
        """
        Move ``order`` to ``target`` and stamp the fields owned by the transition.

        Raises IllegalTransition for edges outside the table and
        InvalidOrderRequest when a cancellation has no reason.
        """
        previous = OrderStatus(order.status)
        target = OrderStatus(target)
        self.validate(previous, target)

        if target == OrderStatus.CANCELLED and not (cancel_reason and cancel_reason.strip()):
            raise InvalidOrderRequest("A cancellation reason is required", {"field": "cancel_reason"})

        now = now or datetime.now(timezone.utc)

        if target == OrderStatus.SHIPPED:
            order.shipped_at = now
            if tracking_number:
                order.tracking_number = tracking_number
        elif target == OrderStatus.DELIVERED:
            order.delivered_at = now
        elif target == OrderStatus.CANCELLED:
            order.cancelled_at = now
            order.cancel_reason = cancel_reason.strip()
        elif target == OrderStatus.RETURNED:
            order.returned_at = now

        order.status = target
        order.updated_at = now

        return TransitionResult(
            previous=previous,
            current=target,
            restores_stock=target in STOCK_RESTORING_STATUSES,
        )

    @staticmethod
    def validate_payment(current: PaymentStatus, target: PaymentStatus) -> None:
        current = PaymentStatus(current)
        target = PaymentStatus(target)
        if target in REFUND_STATUSES and current != PaymentStatus.PAID:
            raise IllegalPaymentTransition(current, target)
