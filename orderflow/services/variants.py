"""
Variant schemas and the composite variant key.

A product declares one schema, decided once at the product level:

  none        – whole-product stock, key ""
  size        – key "<size>"            e.g. "m"
  color_size  – key "<size>-<color>"    e.g. "m-red"

Every consumer (stock ledger, checkout, documents) builds keys through
``variant_key`` / ``normalize_variant_id`` so they never drift apart.
"""
from __future__ import annotations

from typing import Optional

from orderflow.errors import ValidationError

SCHEMA_NONE = "none"
SCHEMA_SIZE = "size"
SCHEMA_COLOR_SIZE = "color_size"
VARIANT_SCHEMAS = (SCHEMA_NONE, SCHEMA_SIZE, SCHEMA_COLOR_SIZE)

WHOLE_PRODUCT_KEY = ""


def _part(value: Optional[str]) -> str:
    return (value or "").strip().lower()


def _check_schema(schema: str) -> None:
    if schema not in VARIANT_SCHEMAS:
        raise ValidationError(f"Unknown variant schema {schema!r}")


def variant_key(schema: str, size: Optional[str] = None, color: Optional[str] = None) -> str:
    """Build the stock key for a selection of ``size`` / ``color``."""
    _check_schema(schema)
    size_part, color_part = _part(size), _part(color)

    if schema == SCHEMA_NONE:
        if size_part or color_part:
            raise ValidationError(
                "Product has no variants; size/color must not be supplied",
                code="variant_not_applicable",
            )
        return WHOLE_PRODUCT_KEY

    if schema == SCHEMA_SIZE:
        if not size_part:
            raise ValidationError("A size must be selected", code="variant_required")
        return size_part

    if not size_part or not color_part:
        raise ValidationError("A size and a color must be selected", code="variant_required")
    return f"{size_part}-{color_part}"


def normalize_variant_id(schema: str, variant_id: Optional[str]) -> str:
    """
    Normalise an already-composed variant id (as sent by clients) for *schema*.
    """
    _check_schema(schema)
    key = _part(variant_id)

    if schema == SCHEMA_NONE:
        if key:
            raise ValidationError(
                "Product has no variants; variantId must not be supplied",
                code="variant_not_applicable",
            )
        return WHOLE_PRODUCT_KEY

    if not key:
        raise ValidationError("A variant must be selected", code="variant_required")

    if schema == SCHEMA_COLOR_SIZE:
        size, sep, color = key.partition("-")
        if not sep or not size.strip() or not color.strip():
            raise ValidationError(
                "variantId must look like '<size>-<color>'", code="variant_required"
            )
        return variant_key(schema, size, color)

    return key
