"""Shared FastAPI dependencies."""

import hmac
from typing import Optional

from fastapi import Header, HTTPException, Request

from ortenberg.components import Components
from ortenberg.services.withdrawal_manager import WithdrawalManager


def get_components(request: Request) -> Components:
    components = getattr(request.app.state, "components", None)
    if components is None:
        raise HTTPException(status_code=503, detail="Service is starting")
    return components


def get_manager(request: Request) -> WithdrawalManager:
    return get_components(request).manager


async def require_api_key(
    request: Request,
    x_api_key: Optional[str] = Header(None),
) -> bool:
    """Verify the client API key when one is configured."""
    expected = get_components(request).settings.api_key
    if expected and not (x_api_key and hmac.compare_digest(x_api_key, expected)):
        raise HTTPException(status_code=401, detail="Invalid API key")
    return True
