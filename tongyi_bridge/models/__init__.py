"""Model variant profiles."""

from __future__ import annotations

from .variants import (
    DEFAULT_MODEL,
    DIGITAL_PEOPLE_MODEL,
    VARIANTS,
    VariantProfile,
    resolve_variant,
)

__all__ = [
    "DEFAULT_MODEL",
    "DIGITAL_PEOPLE_MODEL",
    "VARIANTS",
    "VariantProfile",
    "resolve_variant",
]
