"""
Core Module
"""
from .exceptions import CatalogError, CatalogValidationError, ConflictError, NotFoundError

__all__ = [
    "CatalogError",
    "CatalogValidationError",
    "ConflictError",
    "NotFoundError",
]
