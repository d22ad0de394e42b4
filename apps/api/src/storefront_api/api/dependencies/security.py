from fastapi import Header, status

from storefront_api.core.errors import ApiError
from storefront_api.core.settings import settings


def _check_api_key(expected: str, provided: str) -> None:
    if not expected:
        return

    if provided != expected:
        raise ApiError(status.HTTP_401_UNAUTHORIZED, "invalid_api_key")


async def require_checkout_api_key(x_api_key: str = Header("", alias="X-API-Key")) -> None:
    _check_api_key(settings.checkout_api_key, x_api_key)


async def require_admin_api_key(x_api_key: str = Header("", alias="X-API-Key")) -> None:
    _check_api_key(settings.admin_api_key, x_api_key)
