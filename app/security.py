"""
Caller authentication for the payout API.

Merchants send the shared secret in a `token` header. The same secret keys the
HMAC signature on outbound callbacks (see app.services.callbacks).
"""

import hmac
import logging

from fastapi import Header

from app.core.config import get_config
from app.core.exceptions import SecurityError

logger = logging.getLogger(__name__)


async def verify_private_token(token: str = Header(None)):
    """
    Verify the `token` header against PRIVATE_TOKEN.

    Raises:
        SecurityError: If the header is missing or does not match
    """
    expected = get_config().security.private_token

    if not expected:
        logger.error("PRIVATE_TOKEN is not configured; denying request")
        raise SecurityError("API authentication not configured", "api_authentication")

    if not token:
        logger.warning("Missing token header in API request")
        raise SecurityError("Missing token header", "api_authentication")

    # Constant-time comparison to prevent timing attacks
    if not hmac.compare_digest(token.encode(), expected.encode()):
        logger.warning("Invalid token in API request")
        raise SecurityError("Invalid authorization token", "api_authentication")

    return True


async def verify_monitoring_access(x_monitoring_key: str = Header(None)):
    """
    API key authentication for internal monitoring endpoints.
    Fails closed when MONITORING_API_KEY is not configured.
    """
    expected_key = get_config().security.monitoring_api_key

    if not expected_key:
        raise SecurityError("Monitoring access not configured", "monitoring_authentication")

    if not x_monitoring_key or not hmac.compare_digest(x_monitoring_key.encode(), expected_key.encode()):
        raise SecurityError("Invalid monitoring credentials", "monitoring_authentication")

    return True
