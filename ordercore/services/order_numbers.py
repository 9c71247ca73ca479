"""Order number generation"""
from datetime import datetime, timezone
from typing import Callable, Optional
import secrets

PREFIX = "ORD"
SUFFIX_BYTES = 4


class OrderNumberGenerator:
    """
    Human-readable order identifiers: ``ORD-YYYYMMDD-XXXXXXXX``

    The date part sorts numbers by creation day; the suffix carries
    32 random bits so concurrent creations on the same day do not need a
    shared counter. Uniqueness is still enforced by the database, the
    lifecycle engine retries with a fresh number on a collision.
    """

    def __init__(self, prefix: str = PREFIX, token_hex: Callable[[int], str] = secrets.token_hex):
        self.prefix = prefix
        self._token_hex = token_hex

    def next(self, now: Optional[datetime] = None) -> str:
        now = now or datetime.now(timezone.utc)
        suffix = self._token_hex(SUFFIX_BYTES).upper()
        return f"{self.prefix}-{now:%Y%m%d}-{suffix}"
