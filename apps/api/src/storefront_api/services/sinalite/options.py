"""Store-code and option-chain helpers for Sinalite pricing."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Iterable, Literal, Mapping, Sequence

StoreCode = Literal["en_us", "en_ca"]

_STORE_IDS: dict[str, int] = {"en_us": 9, "en_ca": 6}


class OptionSelectionError(ValueError):
    """Raised when a selected option chain is not valid for a product."""


@dataclass(frozen=True)
class ProductOption:
    id: int
    group: str | None = None
    name: str | None = None


@dataclass(frozen=True)
class OptionSelection:
    """Validated option chain ready for the pricing endpoint."""

    selections: dict[str, int]
    ordered_chain: list[int]
    variant_key: str


def normalize_store_code(value: Any) -> StoreCode:
    """Map user-facing store labels onto Sinalite store codes (default US)."""

    normalized = str(value if value is not None else "").strip().lower()
    if normalized in {"en_ca", "ca"}:
        return "en_ca"
    return "en_us"


def store_id_for(store_code: Any) -> int:
    """Numeric store id used by ``/price/{id}/{storeId}``: 9 = US, 6 = CA."""

    return _STORE_IDS[normalize_store_code(store_code)]


def _positive_ids(values: Iterable[Any]) -> list[int]:
    ids: list[int] = []
    for value in values or []:
        try:
            number = float(value)
        except (TypeError, ValueError):
            continue
        if math.isfinite(number) and number > 0:
            ids.append(int(number))
    return ids


def parse_product_options(rows: Sequence[Any]) -> list[ProductOption]:
    options: list[ProductOption] = []
    for row in rows or []:
        if not isinstance(row, Mapping):
            continue
        try:
            option_id = int(row.get("id"))
        except (TypeError, ValueError):
            continue
        group = row.get("group")
        name = row.get("name")
        options.append(
            ProductOption(
                id=option_id,
                group=str(group) if group is not None else None,
                name=str(name) if name is not None else None,
            )
        )
    return options


def validate_one_per_group(
    product_options: Sequence[ProductOption],
    selected_option_ids: Sequence[Any],
) -> OptionSelection:
    """Check that each selected option exists and no group is selected twice.

    Groups the caller did not touch are not enforced; products carry optional
    groups. The chain is ordered alphabetically by group name and the variant
    key is the ascending ids joined by ``-``.
    """

    selected = _positive_ids(selected_option_ids)
    if not selected:
        raise OptionSelectionError("No options selected")

    id_to_group: dict[int, str] = {}
    for option in product_options:
        group = (option.group or "").strip()
        if group:
            id_to_group[option.id] = group

    selections: dict[str, int] = {}
    for option_id in selected:
        group = id_to_group.get(option_id)
        if group is None:
            raise OptionSelectionError(f"Selected optionId {option_id} is not valid for this product/store")
        if group in selections:
            raise OptionSelectionError(f'More than one option selected for group "{group}"')
        selections[group] = option_id

    ordered_chain = [selections[group] for group in sorted(selections)]
    variant_key = "-".join(str(option_id) for option_id in sorted(ordered_chain))
    return OptionSelection(selections=selections, ordered_chain=ordered_chain, variant_key=variant_key)


__all__ = [
    "OptionSelection",
    "OptionSelectionError",
    "ProductOption",
    "StoreCode",
    "normalize_store_code",
    "parse_product_options",
    "store_id_for",
    "validate_one_per_group",
]
