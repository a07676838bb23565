"""
Database Models - Category/Attribute Catalog

Tables:
- categories: category tree via parent pointers, with a cached leaf flag
- category_tree_paths: closure table, one row per (ancestor, descendant) pair
- attributes: typed attribute definitions (global when they have no links)
- category_attribute_links: direct attribute -> leaf category associations
- products: products placed on a leaf category
- product_attribute_values: typed value a product holds for an attribute
- product_attribute_links: denormalized "attribute in use by product" rows

Column types are portable so the same models run on PostgreSQL (production)
and SQLite (tests).
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    Float,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


JSONType = JSON().with_variant(JSONB(), "postgresql")


# =============================================================================
# ENUMERATIONS
# =============================================================================

class AttributeType(str, Enum):
    """Attribute value type"""
    TEXT = "TEXT"
    NUMBER = "NUMBER"
    BOOLEAN = "BOOLEAN"
    JSON = "JSON"


# =============================================================================
# CATEGORY TREE
# =============================================================================

class Category(Base):
    """
    Category Table

    Parent-pointer tree. `is_leaf` is recomputed whenever children are
    added or removed. Slugs are unique among siblings; roots are covered by
    a partial index because a composite unique cannot match NULL parents.
    """
    __tablename__ = "categories"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    slug: Mapped[str] = mapped_column(String(200), nullable=False)
    parent_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("categories.id", ondelete="RESTRICT")
    )
    is_leaf: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # Audit
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, server_default=func.now(), onupdate=utcnow
    )

    __table_args__ = (
        UniqueConstraint("slug", "parent_id", name="uq_categories_slug_parent"),
        Index(
            "uq_categories_root_slug",
            "slug",
            unique=True,
            postgresql_where=text("parent_id IS NULL"),
            sqlite_where=text("parent_id IS NULL"),
        ),
        Index("ix_categories_parent", "parent_id"),
    )

    def __repr__(self) -> str:
        return f"<Category {self.slug} ({self.id})>"


class CategoryTreePath(Base):
    """
    Closure Table

    One row per ancestor/descendant pair including the depth-0 self row.
    Owned by the tree path maintainer; everything else only reads it.
    """
    __tablename__ = "category_tree_paths"

    ancestor_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("categories.id", ondelete="CASCADE"), primary_key=True
    )
    descendant_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("categories.id", ondelete="CASCADE"), primary_key=True
    )
    depth: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        CheckConstraint("depth >= 0", name="ck_tree_paths_depth"),
        Index("ix_tree_paths_descendant", "descendant_id", "depth"),
    )


# =============================================================================
# ATTRIBUTES
# =============================================================================

class Attribute(Base):
    """
    Attribute Table

    There is no stored global flag: an attribute is global exactly when it
    has no category_attribute_links rows.
    """
    __tablename__ = "attributes"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(200), unique=True, nullable=False)
    slug: Mapped[str] = mapped_column(String(200), unique=True, nullable=False)
    type: Mapped[AttributeType] = mapped_column(
        SQLEnum(AttributeType, name="attribute_type"), nullable=False, default=AttributeType.TEXT
    )

    # Audit
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, server_default=func.now(), onupdate=utcnow
    )

    def __repr__(self) -> str:
        return f"<Attribute {self.slug} ({self.id})>"


class CategoryAttributeLink(Base):
    """Direct attribute -> category association"""
    __tablename__ = "category_attribute_links"

    category_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("categories.id", ondelete="CASCADE"), primary_key=True
    )
    attribute_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("attributes.id", ondelete="CASCADE"), primary_key=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, server_default=func.now()
    )

    __table_args__ = (
        Index("ix_category_attribute_links_attribute", "attribute_id"),
    )


# =============================================================================
# PRODUCTS
# =============================================================================

class Product(Base):
    """Product Table - always placed on a leaf category"""
    __tablename__ = "products"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    category_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("categories.id", ondelete="RESTRICT"), nullable=False
    )

    # Audit
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, server_default=func.now(), onupdate=utcnow
    )

    __table_args__ = (
        Index("ix_products_category", "category_id"),
        Index("ix_products_name", "name"),
    )


class ProductAttributeValue(Base):
    """
    Product Attribute Value Table

    Exactly one of the typed columns is populated, chosen by the
    attribute's type at write time.
    """
    __tablename__ = "product_attribute_values"

    product_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("products.id", ondelete="CASCADE"), primary_key=True
    )
    attribute_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("attributes.id", ondelete="RESTRICT"), primary_key=True
    )

    text_value: Mapped[Optional[str]] = mapped_column(Text)
    number_value: Mapped[Optional[float]] = mapped_column(Float)
    boolean_value: Mapped[Optional[bool]] = mapped_column(Boolean)
    json_value: Mapped[Optional[Any]] = mapped_column(JSONType)

    # Audit
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, server_default=func.now(), onupdate=utcnow
    )


class ProductAttributeLink(Base):
    """Denormalized in-use link, kept equal to the product's value set"""
    __tablename__ = "product_attribute_links"

    product_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("products.id", ondelete="CASCADE"), primary_key=True
    )
    attribute_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("attributes.id", ondelete="CASCADE"), primary_key=True
    )

    __table_args__ = (
        Index("ix_product_attribute_links_attribute", "attribute_id"),
    )
