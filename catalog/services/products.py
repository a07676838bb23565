"""
Product Service

Products live on a leaf category and hold typed values for attributes
that apply to that category. After every value write the
product_attribute_links table is reconciled to equal the product's value
set, which keeps "products in use" counts cheap.

Changing a product's category without sending values leaves existing
values in place, even ones that no longer apply.
"""

import math
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from catalog.config import get_settings
from catalog.core.exceptions import CatalogValidationError, NotFoundError, describe_ids
from catalog.database.dml import insert_ignore
from catalog.database.models import (
    Attribute,
    AttributeType,
    Category,
    Product,
    ProductAttributeLink,
    ProductAttributeValue,
)
from catalog.services.applicability import applicable_to

logger = structlog.get_logger(__name__)
settings = get_settings()

_TYPED_COLUMNS = ("text_value", "number_value", "boolean_value", "json_value")


@dataclass
class AttributeValueInput:
    """One submitted value; the attribute is referenced by id or by slug (id wins)"""
    value: Any
    attribute_id: Optional[uuid.UUID] = None
    attribute_slug: Optional[str] = None

    @property
    def reference(self) -> str:
        return str(self.attribute_id) if self.attribute_id else (self.attribute_slug or "<missing>")


@dataclass
class ProductPage:
    items: List[Product]
    total: int
    page: int
    page_size: int


def coerce_value(attribute_type: AttributeType, value: Any) -> Dict[str, Any]:
    """
    Map a raw value onto the typed column for the attribute's type.

    Returns:
        Column values for ProductAttributeValue, exactly one of them set

    Raises:
        ValueError: value does not fit the type
    """
    columns: Dict[str, Any] = {name: None for name in _TYPED_COLUMNS}
    if value is None:
        raise ValueError("a value is required")

    if attribute_type == AttributeType.TEXT:
        if isinstance(value, bool) or not isinstance(value, (str, int, float)):
            raise ValueError("expected a string")
        columns["text_value"] = str(value)

    elif attribute_type == AttributeType.NUMBER:
        if isinstance(value, bool):
            raise ValueError("expected a number, got a boolean")
        if isinstance(value, str):
            try:
                value = float(value.strip())
            except ValueError:
                raise ValueError(f"expected a number, got '{value}'") from None
        if not isinstance(value, (int, float)):
            raise ValueError("expected a finite number")
        try:
            number = float(value)
        except OverflowError:
            raise ValueError("expected a finite number") from None
        if not math.isfinite(number):
            raise ValueError("expected a finite number")
        columns["number_value"] = number

    elif attribute_type == AttributeType.BOOLEAN:
        if isinstance(value, str) and value.strip().lower() in ("true", "false"):
            value = value.strip().lower() == "true"
        if not isinstance(value, bool):
            raise ValueError("expected true or false")
        columns["boolean_value"] = value

    else:
        columns["json_value"] = value

    return columns


def stored_value(attribute_type: AttributeType, row: ProductAttributeValue) -> Any:
    """Read back the column matching the attribute type."""
    return {
        AttributeType.TEXT: row.text_value,
        AttributeType.NUMBER: row.number_value,
        AttributeType.BOOLEAN: row.boolean_value,
        AttributeType.JSON: row.json_value,
    }[attribute_type]


class ProductService:
    """
    Example:
        products = ProductService(session)
        espresso = await products.create(
            "Espresso Roast 250g",
            coffee.id,
            [AttributeValueInput(value="high", attribute_slug="caffeine-level")],
        )
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    async def _require_leaf_category(self, category_id: uuid.UUID) -> Category:
        category = await self.session.get(Category, category_id)
        if category is None:
            raise CatalogValidationError("Category does not exist", ids=[category_id])
        if not category.is_leaf:
            raise CatalogValidationError("Product must be linked to a leaf category", ids=[category_id])
        return category

    async def _resolve_references(
        self,
        values: Sequence[AttributeValueInput],
    ) -> List[Tuple[Attribute, Any]]:
        """
        Resolve every reference to an attribute, reporting all problems at once.

        Raises:
            CatalogValidationError: missing references, unknown ids or slugs,
                or the same attribute referenced twice
        """
        problems: List[str] = []
        offending: List[str] = []

        unreferenced = [str(i) for i, v in enumerate(values) if not v.attribute_id and not v.attribute_slug]
        if unreferenced:
            problems.append(describe_ids("Values without attributeId or attributeSlug at positions", unreferenced))

        ids = {v.attribute_id for v in values if v.attribute_id}
        slugs = {v.attribute_slug for v in values if not v.attribute_id and v.attribute_slug}

        by_id: Dict[uuid.UUID, Attribute] = {}
        if ids:
            result = await self.session.execute(select(Attribute).where(Attribute.id.in_(list(ids))))
            by_id = {a.id: a for a in result.scalars().all()}
        by_slug: Dict[str, Attribute] = {}
        if slugs:
            result = await self.session.execute(select(Attribute).where(Attribute.slug.in_(list(slugs))))
            by_slug = {a.slug: a for a in result.scalars().all()}

        missing_ids = sorted(str(i) for i in ids if i not in by_id)
        if missing_ids:
            problems.append(describe_ids("Unknown attributeIds", missing_ids))
            offending.extend(missing_ids)
        missing_slugs = sorted(s for s in slugs if s not in by_slug)
        if missing_slugs:
            problems.append(describe_ids("Unknown attribute slugs", missing_slugs))
            offending.extend(missing_slugs)

        resolved: List[Tuple[Attribute, Any]] = []
        seen: Dict[uuid.UUID, int] = {}
        for v in values:
            attribute = by_id.get(v.attribute_id) if v.attribute_id else by_slug.get(v.attribute_slug)
            if attribute is None:
                continue
            seen[attribute.id] = seen.get(attribute.id, 0) + 1
            resolved.append((attribute, v.value))

        duplicated = [str(a) for a, count in seen.items() if count > 1]
        if duplicated:
            problems.append(describe_ids("Attributes referenced more than once", duplicated))
            offending.extend(duplicated)

        if problems:
            raise CatalogValidationError("; ".join(problems), ids=offending)
        return resolved

    async def _assert_applicable(
        self,
        category_id: uuid.UUID,
        attributes: Sequence[Attribute],
    ) -> None:
        """Every attribute must be global or linked to an ancestor-or-self of the category."""
        if not attributes:
            return
        result = await self.session.execute(
            select(Attribute.id).where(
                Attribute.id.in_([a.id for a in attributes]),
                applicable_to([category_id]),
            )
        )
        applicable = set(result.scalars().all())
        rejected = [a for a in attributes if a.id not in applicable]
        if rejected:
            raise CatalogValidationError(
                describe_ids(
                    f"Attributes not applicable to category {category_id}",
                    [a.slug for a in rejected],
                ),
                ids=[a.id for a in rejected],
            )

    @staticmethod
    def _coerce_all(resolved: Sequence[Tuple[Attribute, Any]]) -> List[Tuple[Attribute, Dict[str, Any]]]:
        coerced = []
        problems = []
        for attribute, raw in resolved:
            try:
                coerced.append((attribute, coerce_value(attribute.type, raw)))
            except ValueError as e:
                problems.append((attribute, str(e)))
        if problems:
            raise CatalogValidationError(
                "Invalid attribute values: "
                + "; ".join(f"{a.slug} ({a.type.value}): {reason}" for a, reason in problems),
                ids=[a.id for a, _ in problems],
            )
        return coerced

    # ------------------------------------------------------------------
    # Value and link writes
    # ------------------------------------------------------------------

    async def _replace_values(
        self,
        product_id: uuid.UUID,
        coerced: Sequence[Tuple[Attribute, Dict[str, Any]]],
    ) -> None:
        """Upsert the submitted values and delete every other value of the product."""
        result = await self.session.execute(
            select(ProductAttributeValue).where(ProductAttributeValue.product_id == product_id)
        )
        existing = {row.attribute_id: row for row in result.scalars().all()}
        keep = {attribute.id for attribute, _ in coerced}

        for attribute, columns in coerced:
            row = existing.get(attribute.id)
            if row is None:
                self.session.add(
                    ProductAttributeValue(product_id=product_id, attribute_id=attribute.id, **columns)
                )
            else:
                for name, column_value in columns.items():
                    setattr(row, name, column_value)

        stale = [attribute_id for attribute_id in existing if attribute_id not in keep]
        if stale:
            await self.session.execute(
                delete(ProductAttributeValue).where(
                    ProductAttributeValue.product_id == product_id,
                    ProductAttributeValue.attribute_id.in_(stale),
                )
            )
        await self.session.flush()

    async def sync_attribute_links(
        self,
        product_id: uuid.UUID,
        attribute_ids: Iterable[uuid.UUID],
    ) -> Tuple[int, int]:
        """
        Make the product's in-use links equal `attribute_ids`.

        Returns:
            (links inserted, links deleted)
        """
        result = await self.session.execute(
            select(ProductAttributeLink.attribute_id).where(ProductAttributeLink.product_id == product_id)
        )
        current = set(result.scalars().all())
        desired = set(attribute_ids)

        to_insert = desired - current
        to_delete = current - desired
        inserted = await insert_ignore(
            self.session,
            ProductAttributeLink,
            [{"product_id": product_id, "attribute_id": a} for a in to_insert],
        )
        if to_delete:
            await self.session.execute(
                delete(ProductAttributeLink).where(
                    ProductAttributeLink.product_id == product_id,
                    ProductAttributeLink.attribute_id.in_(list(to_delete)),
                )
            )
        return inserted, len(to_delete)

    async def _write_values(
        self,
        product: Product,
        values: Sequence[AttributeValueInput],
    ) -> None:
        resolved = await self._resolve_references(values)
        await self._assert_applicable(product.category_id, [a for a, _ in resolved])
        coerced = self._coerce_all(resolved)

        await self._replace_values(product.id, coerced)
        inserted, deleted = await self.sync_attribute_links(product.id, [a.id for a, _ in coerced])
        logger.info(
            "Product values written",
            product_id=str(product.id),
            values=len(coerced),
            links_inserted=inserted,
            links_deleted=deleted,
        )

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    async def create(
        self,
        name: str,
        category_id: uuid.UUID,
        attribute_values: Optional[Sequence[AttributeValueInput]] = None,
    ) -> Product:
        """
        Create a product on a leaf category with optional values.

        Raises:
            CatalogValidationError: unknown or non-leaf category, bad
                references, inapplicable attributes or mistyped values
        """
        await self._require_leaf_category(category_id)

        product = Product(id=uuid.uuid4(), name=name, category_id=category_id)
        self.session.add(product)
        await self.session.flush()

        if attribute_values:
            await self._write_values(product, attribute_values)

        logger.info("Product created", product_id=str(product.id), category_id=str(category_id))
        return product

    async def list(
        self,
        page: int = 1,
        page_size: Optional[int] = None,
        q: Optional[str] = None,
        category_id: Optional[uuid.UUID] = None,
    ) -> ProductPage:
        page = max(1, page)
        page_size = max(1, min(page_size or settings.catalog.product_page_size, settings.catalog.max_page_size))

        conditions = []
        if q and q.strip():
            conditions.append(Product.name.ilike(f"%{q.strip()}%"))
        if category_id is not None:
            conditions.append(Product.category_id == category_id)

        total = await self.session.scalar(
            select(func.count()).select_from(Product).where(*conditions)
        ) or 0
        result = await self.session.execute(
            select(Product)
            .where(*conditions)
            .order_by(Product.name, Product.id)
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        return ProductPage(items=list(result.scalars().all()), total=total, page=page, page_size=page_size)

    async def get(self, product_id: uuid.UUID) -> Product:
        product = await self.session.get(Product, product_id)
        if product is None:
            raise NotFoundError("Product not found", ids=[product_id])
        return product

    async def values_for(self, product_id: uuid.UUID) -> List[Tuple[Attribute, Any]]:
        """(attribute, value) pairs held by the product, ordered by attribute name."""
        result = await self.session.execute(
            select(Attribute, ProductAttributeValue)
            .join(ProductAttributeValue, ProductAttributeValue.attribute_id == Attribute.id)
            .where(ProductAttributeValue.product_id == product_id)
            .order_by(Attribute.name)
        )
        return [(attribute, stored_value(attribute.type, row)) for attribute, row in result.all()]

    async def update(
        self,
        product_id: uuid.UUID,
        name: Optional[str] = None,
        category_id: Optional[uuid.UUID] = None,
        attribute_values: Optional[Sequence[AttributeValueInput]] = None,
    ) -> Product:
        """
        Update a product.

        Submitted values are checked against the post-update category and
        replace the whole value set; omitting them leaves values untouched.

        Raises:
            NotFoundError: unknown product
            CatalogValidationError: as for create
        """
        product = await self.get(product_id)

        if category_id is not None and category_id != product.category_id:
            await self._require_leaf_category(category_id)
            if attribute_values is None:
                logger.info(
                    "Product moved without values; existing values kept",
                    product_id=str(product_id),
                    category_id=str(category_id),
                )
            product.category_id = category_id
        if name is not None:
            product.name = name
        await self.session.flush()

        if attribute_values is not None:
            await self._write_values(product, attribute_values)

        return product

    async def remove(self, product_id: uuid.UUID) -> None:
        product = await self.get(product_id)
        await self.session.execute(
            delete(ProductAttributeLink).where(ProductAttributeLink.product_id == product_id)
        )
        await self.session.execute(
            delete(ProductAttributeValue).where(ProductAttributeValue.product_id == product_id)
        )
        await self.session.delete(product)
        await self.session.flush()
        logger.info("Product deleted", product_id=str(product_id))
