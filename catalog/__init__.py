"""
Category-Attribute Catalog Backend

Hierarchical category tree (closure table), typed attributes with
direct/inherited/global applicability, and product attribute values.
"""

__version__ = "1.0.0"
