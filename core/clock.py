"""
core/clock.py -- Wall-clock source shared by the auth services.

Services take a `clock` callable instead of calling datetime.now() inline so
tests can move time forward (token expiry, password expiry, bucket refill)
without sleeping.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
