"""Price Sinalite option chains for the product configurator."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

import httpx
from fastapi import APIRouter, Depends, status
from loguru import logger
from pydantic import BaseModel, Field

from storefront_api.api.dependencies.sinalite import get_sinalite_client
from storefront_api.core.errors import ApiError
from storefront_api.services.sinalite import (
    OptionSelectionError,
    SinaliteApiError,
    SinaliteClient,
    normalize_store_code,
    validate_one_per_group,
)



router = APIRouter(prefix="/sinalite", tags=["sinalite"])


class PriceRequest(BaseModel):
    productId: int = Field(..., gt=0, description="Sinalite product id")
    storeCode: str = Field("en_us", description="Store code or label (US / CA)")
    optionIds: List[Any] = Field(default_factory=list, description="One option id per group")


class PriceResponse(BaseModel):
    price: Optional[str]
    storeCode: str
    variantKey: str
    selections: Dict[str, int]
    orderedChain: List[int]
    packageInfo: Any = None


@router.post("/price", response_model=PriceResponse)
async def price_option_chain(
    payload: PriceRequest,
    client: SinaliteClient = Depends(get_sinalite_client),
) -> PriceResponse:
    """Validate the selected options against the product and quote the job."""

    store_code = normalize_store_code(payload.storeCode)
    try:
        options = await client.get_product_options(payload.productId, store_code)
        if not options.product_options:
            raise ApiError(status.HTTP_404_NOT_FOUND, "product_not_found")
        selection = validate_one_per_group(options.product_options, payload.optionIds)
        quote = await client.price_product(payload.productId, store_code, selection.ordered_chain)
    except OptionSelectionError as exc:
        raise ApiError(status.HTTP_400_BAD_REQUEST, "invalid_options", message=str(exc)) from exc
    except (SinaliteApiError, httpx.TransportError) as exc:
        logger.warning(
            "Sinalite pricing failed",
            product_id=payload.productId,
            store_code=store_code,
            error=str(exc),
        )
        raise ApiError(status.HTTP_502_BAD_GATEWAY, "upstream_error", message=str(exc)) from exc

    return PriceResponse(
        price=quote.price,
        storeCode=store_code,
        variantKey=selection.variant_key,
        selections=selection.selections,
        orderedChain=selection.ordered_chain,
        packageInfo=quote.package_info,
    )
