"""Shared-secret authentication for the HTTP API."""

import logging
import secrets
from typing import Optional

from fastapi import Depends, Header, Request

from vm_manager.errors import AuthError
from vm_manager.models import SystemConfig
from vm_manager.state import get_config

logger = logging.getLogger(__name__)

KEY_LOG_PREFIX = 8


def require_api_key(
    request: Request,
    x_api_key: Optional[str] = Header(None, alias="x-api-key"),
    config: SystemConfig = Depends(get_config),
) -> None:
    """Reject the request unless x-api-key matches the configured key.

    Raises:
        AuthError: If the header is missing or wrong.
    """
    if x_api_key and secrets.compare_digest(x_api_key.encode(), config.api_key.encode()):
        return
    client = request.client.host if request.client else "unknown"
    shown = f"{x_api_key[:KEY_LOG_PREFIX]}..." if x_api_key else "none"
    logger.warning(f"Unauthorized request to {request.url.path} from {client} (key: {shown})")
    raise AuthError("Unauthorized")
