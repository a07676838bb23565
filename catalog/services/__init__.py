"""
Catalog Services Module

Category tree maintenance, attribute applicability and product values.
"""
from .applicability import Applicability, LinkType, LinkTypeFilter
from .attributes import AttributeQuery, AttributeService, AttributeSort
from .categories import CategoryService
from .products import AttributeValueInput, ProductService
from .tree_paths import TreePathMaintainer

__all__ = [
    "Applicability",
    "LinkType",
    "LinkTypeFilter",
    "AttributeQuery",
    "AttributeService",
    "AttributeSort",
    "CategoryService",
    "AttributeValueInput",
    "ProductService",
    "TreePathMaintainer",
]
