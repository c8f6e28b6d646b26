"""
Tests for the composite variant key.
"""
from __future__ import annotations

import pytest

from orderflow.errors import ValidationError
from orderflow.services.variants import normalize_variant_id, variant_key


def test_no_variant_schema_uses_whole_product_key():
    assert variant_key("none") == ""
    assert normalize_variant_id("none", None) == ""
    assert normalize_variant_id("none", "  ") == ""


def test_no_variant_schema_rejects_a_selection():
    with pytest.raises(ValidationError) as exc:
        variant_key("none", size="M")
    assert exc.value.code == "variant_not_applicable"


def test_size_and_color_keys_are_normalised():
    assert variant_key("size", size=" M ") == "m"
    assert variant_key("color_size", size="M", color="Red") == "m-red"
    assert normalize_variant_id("color_size", "M-Red") == "m-red"


def test_builder_and_normaliser_agree():
    assert variant_key("color_size", "XL", "Navy") == normalize_variant_id("color_size", "xl-navy")


@pytest.mark.parametrize(
    "schema, size, color",
    [("size", None, None), ("color_size", "m", None), ("color_size", None, "red")],
)
def test_missing_selection_is_required(schema, size, color):
    with pytest.raises(ValidationError) as exc:
        variant_key(schema, size, color)
    assert exc.value.code == "variant_required"


def test_malformed_color_size_id():
    with pytest.raises(ValidationError):
        normalize_variant_id("color_size", "m")


def test_unknown_schema():
    with pytest.raises(ValidationError):
        variant_key("material", "m")
