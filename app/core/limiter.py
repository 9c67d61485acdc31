"""
Rate limiter configuration for the payout router.

This module provides a centralized Limiter instance used across the application.
Per-route limits are resolved from configuration at request time.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from app.core.config import get_config

# Global rate limiter instance
limiter = Limiter(key_func=get_remote_address, default_limits=["100 per minute"])


def payout_limit() -> str:
    return get_config().rate_limit.payout_rate_limit


def api_limit() -> str:
    return get_config().rate_limit.api_rate_limit


def monitoring_limit() -> str:
    return get_config().rate_limit.monitoring_rate_limit
