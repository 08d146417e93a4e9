"""Error types raised by the attribute pipeline."""

from __future__ import annotations


class SchemaError(ValueError):
    """Raised when a required key or column is missing or ambiguous."""


class EmptyInputError(ValueError):
    """Raised when classification is attempted on zero defined values."""
