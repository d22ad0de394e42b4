"""Sinalite print-vendor integration."""

from .client import (  # noqa: F401
    PriceQuote,
    ProductOptionsPayload,
    SinaliteApiError,
    SinaliteAuthError,
    SinaliteClient,
    SinaliteConfig,
    TokenCache,
    build_default_sinalite_client,
)
from .options import (  # noqa: F401
    OptionSelection,
    OptionSelectionError,
    ProductOption,
    normalize_store_code,
    store_id_for,
    validate_one_per_group,
)
