"""Observability endpoints for loyalty ledger counters."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from storefront_api.api.dependencies.security import require_checkout_api_key
from storefront_api.observability.loyalty import get_loyalty_telemetry


router = APIRouter(prefix="/observability", tags=["Observability"])


@router.get(
    "/loyalty",
    dependencies=[Depends(require_checkout_api_key)],
    summary="Loyalty ledger observability snapshot",
)
async def get_loyalty_ledger_snapshot() -> dict[str, object]:
    """Retrieve aggregated award/redemption counters (requires checkout API key)."""
    return get_loyalty_telemetry().snapshot().as_dict()
