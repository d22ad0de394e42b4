"""Session-aware dependencies for storefront member APIs."""

from __future__ import annotations

from fastapi import Header, status

from storefront_api.core.errors import ApiError


async def require_customer_id(
    session_user: str | None = Header(None, alias="X-Session-User"),
) -> str:
    """Resolve the authenticated customer id forwarded by the storefront."""

    customer_id = (session_user or "").strip()
    if not customer_id:
        raise ApiError(status.HTTP_401_UNAUTHORIZED, "unauthorized")
    return customer_id
