"""
API Routes Module
"""
from .health import router as health_router
from .categories import router as categories_router
from .attributes import router as attributes_router
from .products import router as products_router

__all__ = [
    "health_router",
    "categories_router",
    "attributes_router",
    "products_router",
]
