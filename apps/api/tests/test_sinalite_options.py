from __future__ import annotations

import pytest

from storefront_api.services.sinalite import (
    OptionSelectionError,
    ProductOption,
    normalize_store_code,
    store_id_for,
    validate_one_per_group,
)


PRODUCT_OPTIONS = [
    ProductOption(id=10, group="Size", name="2 x 3.5"),
    ProductOption(id=11, group="Size", name="2 x 2"),
    ProductOption(id=20, group="Stock", name="14pt"),
    ProductOption(id=30, group="Coating", name="UV"),
    ProductOption(id=99, group=None, name="Ungrouped"),
]


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("en_us", "en_us"),
        ("US", "en_us"),
        (" en_ca ", "en_ca"),
        ("ca", "en_ca"),
        ("fr_fr", "en_us"),
        (None, "en_us"),
    ],
)
def test_normalize_store_code(value, expected) -> None:
    assert normalize_store_code(value) == expected


def test_store_ids() -> None:
    assert store_id_for("en_us") == 9
    assert store_id_for("ca") == 6


def test_validate_orders_chain_by_group_name() -> None:
    selection = validate_one_per_group(PRODUCT_OPTIONS, ["20", 10, 30, 0, -4, "junk"])

    assert selection.selections == {"Stock": 20, "Size": 10, "Coating": 30}
    assert selection.ordered_chain == [30, 10, 20]
    assert selection.variant_key == "10-20-30"


def test_validate_rejects_empty_selection() -> None:
    with pytest.raises(OptionSelectionError, match="No options selected"):
        validate_one_per_group(PRODUCT_OPTIONS, [0, None])


def test_validate_rejects_unknown_option() -> None:
    with pytest.raises(OptionSelectionError, match="optionId 99"):
        validate_one_per_group(PRODUCT_OPTIONS, [10, 99])


def test_validate_rejects_two_options_in_one_group() -> None:
    with pytest.raises(OptionSelectionError, match='group "Size"'):
        validate_one_per_group(PRODUCT_OPTIONS, [10, 11])
