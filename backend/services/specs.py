"""
Product specification (SKU key) and quantity normalisation.

Every quantity, rate and total in the engine goes through ``q2`` before any
arithmetic so that float noise from clients never accumulates across many
small dispatches.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from backend.app.core.error_catalog import ValidationError
from backend.app.db.models.core_types import ProductType

TWO_PLACES = Decimal("0.01")
ZERO = Decimal("0.00")

MIN_THICKNESS = Decimal("0.1")
MAX_THICKNESS = Decimal("50")
MAX_SIZE_LENGTH = 50


def q2(value) -> Decimal:
    if value is None:
        return ZERO
    try:
        return Decimal(str(value)).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)
    except InvalidOperation as exc:
        raise ValidationError(f"Invalid quantity {value!r}") from exc


@dataclass(frozen=True, order=True)
class ProductSpec:
    product_type: ProductType
    size: str
    thickness: Decimal

    @classmethod
    def of(cls, product_type, size, thickness) -> "ProductSpec":
        try:
            ptype = ProductType(product_type)
        except ValueError as exc:
            raise ValidationError(
                f"Unknown product type {product_type!r}",
                details={"allowed": [p.value for p in ProductType]},
            ) from exc

        size = (size or "").strip()
        if not size:
            raise ValidationError("size is required")
        if len(size) > MAX_SIZE_LENGTH:
            raise ValidationError(f"size cannot be more than {MAX_SIZE_LENGTH} characters")

        thick = q2(thickness)
        if thick < MIN_THICKNESS or thick > MAX_THICKNESS:
            raise ValidationError(
                f"thickness must be between {MIN_THICKNESS} and {MAX_THICKNESS} mm",
                details={"thickness": format(thick, "f")},
            )
        return cls(product_type=ptype, size=size, thickness=thick)

    @classmethod
    def from_row(cls, row) -> "ProductSpec":
        """Spec of any row carrying product_type / size / thickness columns."""
        return cls(
            product_type=ProductType(row.product_type),
            size=row.size,
            thickness=q2(row.thickness),
        )

    @property
    def key(self) -> str:
        return f"{self.product_type.value}|{self.size}|{self.thickness}"

    def as_dict(self) -> dict:
        return {
            "product_type": self.product_type.value,
            "size": self.size,
            "thickness": format(self.thickness, "f"),
        }

    def __str__(self) -> str:
        return f"{self.product_type.value} {self.size} {self.thickness}mm"
