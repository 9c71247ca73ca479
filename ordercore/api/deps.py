"""FastAPI dependencies: principal, roles, lifecycle engine"""
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from typing import Optional

from ordercore.config import settings
from ordercore.models.schemas import Principal, Role
from ordercore.services.auth import InvalidToken, decode_access_token
from ordercore.services.notifications import NotificationDispatcher
from ordercore.services.order_service import OrderLifecycleEngine
from ordercore.services.pricing import OrderPricingCalculator

bearer_scheme = HTTPBearer(auto_error=False)

# Notification dispatcher (initialized in main.py)
dispatcher: Optional[NotificationDispatcher] = None


def get_current_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Principal:
    """Dependency for the authenticated caller"""
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication token required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        return decode_access_token(credentials.credentials)
    except InvalidToken:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )


def require_staff(principal: Principal = Depends(get_current_principal)) -> Principal:
    """ADMIN or MANAGER only"""
    if not principal.is_staff:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Manager or admin role required")
    return principal


def require_admin(principal: Principal = Depends(get_current_principal)) -> Principal:
    """ADMIN only"""
    if principal.role != Role.ADMIN:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin role required")
    return principal


def get_dispatcher() -> NotificationDispatcher:
    """Dependency for the notification dispatcher"""
    return dispatcher


def get_order_service(
    notification_dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> OrderLifecycleEngine:
    """Dependency for the order lifecycle engine"""
    return OrderLifecycleEngine(
        notification_dispatcher,
        pricing=OrderPricingCalculator(precision=settings.currency_precision),
        default_currency=settings.default_currency,
        order_number_max_attempts=settings.order_number_max_attempts,
    )
