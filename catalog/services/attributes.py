"""
Attribute Service

Attribute definitions, their direct links to leaf categories, and the
applicability-aware attribute listing.

An attribute is global exactly when it has no category links; nothing
else records globality.
"""

import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

import structlog
from sqlalchemy import delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from catalog.config import get_settings
from catalog.core.exceptions import CatalogValidationError, ConflictError, NotFoundError, describe_ids
from catalog.database.dml import flush_or_conflict, insert_ignore
from catalog.database.models import (
    Attribute,
    AttributeType,
    Category,
    CategoryAttributeLink,
    CategoryTreePath,
    Product,
    ProductAttributeLink,
    ProductAttributeValue,
)
from catalog.services.applicability import (
    Applicability,
    LinkTypeFilter,
    build_depth_matrix,
    classify_many,
    link_type_clause,
)
from catalog.services.slugs import to_slug
from catalog.services.tree_paths import TreePathMaintainer

logger = structlog.get_logger(__name__)
settings = get_settings()


class AttributeSort(str, Enum):
    NAME = "name"
    CREATED_AT = "createdAt"
    UPDATED_AT = "updatedAt"


_SORT_COLUMNS = {
    AttributeSort.NAME: Attribute.name,
    AttributeSort.CREATED_AT: Attribute.created_at,
    AttributeSort.UPDATED_AT: Attribute.updated_at,
}


@dataclass(frozen=True)
class CategoryRef:
    id: uuid.UUID
    name: str
    slug: str


@dataclass
class AttributeQuery:
    """Listing parameters, already parsed from the request layer"""
    category_ids: List[uuid.UUID] = field(default_factory=list)
    link_types: List[LinkTypeFilter] = field(default_factory=list)
    q: Optional[str] = None
    page: int = 1
    page_size: int = field(default_factory=lambda: settings.catalog.default_page_size)
    sort: AttributeSort = AttributeSort.NAME


@dataclass
class AttributeListItem:
    attribute: Attribute
    products_in_use: int
    categories: List[CategoryRef]
    applicability: Optional[List[Applicability]] = None


@dataclass
class AttributePage:
    items: List[AttributeListItem]
    total: int
    page: int
    page_size: int
    filter_categories: List[CategoryRef]
    attribute_types: Tuple[str, ...] = ("direct", "inherited", "global")


def clamp_page_size(page_size: int) -> int:
    return max(1, min(page_size, settings.catalog.max_page_size))


def _dedupe(ids: Iterable[uuid.UUID]) -> List[uuid.UUID]:
    seen: Dict[uuid.UUID, None] = {}
    for i in ids:
        seen.setdefault(i, None)
    return list(seen)


class AttributeService:
    """
    Example:
        attributes = AttributeService(session)
        caffeine, links = await attributes.create(
            "Caffeine Level", category_ids=[coffee.id]
        )
        page = await attributes.find_attributes(AttributeQuery(category_ids=[espresso.id]))
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def validate_link_targets(self, category_ids: Sequence[uuid.UUID]) -> None:
        """
        Every id must exist and be a leaf. All offenders are reported at once.

        Raises:
            CatalogValidationError: unknown or non-leaf category ids
        """
        if not category_ids:
            return
        result = await self.session.execute(
            select(Category.id, Category.is_leaf).where(Category.id.in_(category_ids))
        )
        leaf_by_id = {row.id: row.is_leaf for row in result.all()}

        missing = [i for i in category_ids if i not in leaf_by_id]
        non_leaf = [i for i in category_ids if leaf_by_id.get(i) is False]
        problems = []
        if missing:
            problems.append(describe_ids("Unknown categoryIds", missing))
        if non_leaf:
            problems.append(describe_ids("Only leaf categories can be linked. Non-leaf", non_leaf))
        if problems:
            raise CatalogValidationError("; ".join(problems), ids=missing + non_leaf)

    async def ensure_unique(
        self,
        name: str,
        slug: str,
        exclude_id: Optional[uuid.UUID] = None,
    ) -> None:
        stmt = select(Attribute).where(or_(Attribute.name == name, Attribute.slug == slug))
        if exclude_id is not None:
            stmt = stmt.where(Attribute.id != exclude_id)
        clash = (await self.session.execute(stmt)).scalars().first()
        if clash is None:
            return
        field_name = "slug" if clash.slug == slug else "name"
        raise ConflictError(
            f"Attribute with the same {field_name} already exists",
            ids=[clash.id],
        )

    async def linked_category_ids(self, attribute_id: uuid.UUID) -> Set[uuid.UUID]:
        result = await self.session.execute(
            select(CategoryAttributeLink.category_id).where(
                CategoryAttributeLink.attribute_id == attribute_id
            )
        )
        return set(result.scalars().all())

    async def category_refs(
        self,
        attribute_ids: Sequence[uuid.UUID],
    ) -> Dict[uuid.UUID, List[CategoryRef]]:
        """Directly linked categories per attribute, ordered by name."""
        refs: Dict[uuid.UUID, List[CategoryRef]] = defaultdict(list)
        if not attribute_ids:
            return refs
        result = await self.session.execute(
            select(CategoryAttributeLink.attribute_id, Category.id, Category.name, Category.slug)
            .join(Category, Category.id == CategoryAttributeLink.category_id)
            .where(CategoryAttributeLink.attribute_id.in_(attribute_ids))
            .order_by(Category.name, Category.id)
        )
        for row in result.all():
            refs[row.attribute_id].append(CategoryRef(row.id, row.name, row.slug))
        return refs

    async def _has_product_values(self, attribute_id: uuid.UUID) -> int:
        return await self.session.scalar(
            select(func.count())
            .select_from(ProductAttributeValue)
            .where(ProductAttributeValue.attribute_id == attribute_id)
        ) or 0

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    async def create(
        self,
        name: str,
        slug: Optional[str] = None,
        type: AttributeType = AttributeType.TEXT,
        category_ids: Optional[Iterable[uuid.UUID]] = None,
    ) -> Tuple[Attribute, int]:
        """
        Create an attribute and link it directly to leaf categories.

        No category ids makes the attribute global.

        Returns:
            (attribute, number of links created)

        Raises:
            CatalogValidationError: unknown or non-leaf category ids
            ConflictError: name or slug already taken
        """
        targets = _dedupe(category_ids or [])
        final_slug = slug or to_slug(name)
        if not final_slug:
            raise CatalogValidationError(f"Cannot derive a slug from name '{name}'")

        await self.validate_link_targets(targets)
        await self.ensure_unique(name, final_slug)

        attribute = Attribute(id=uuid.uuid4(), name=name, slug=final_slug, type=type)
        self.session.add(attribute)
        await flush_or_conflict(self.session, "Attribute with the same slug already exists")

        links_created = await insert_ignore(
            self.session,
            CategoryAttributeLink,
            [{"category_id": c, "attribute_id": attribute.id} for c in targets],
        )

        logger.info(
            "Attribute created",
            attribute_id=str(attribute.id),
            slug=final_slug,
            type=type.value,
            links_created=links_created,
        )
        return attribute, links_created

    async def get(self, attribute_id: uuid.UUID) -> Attribute:
        attribute = await self.session.get(Attribute, attribute_id)
        if attribute is None:
            raise NotFoundError("Attribute not found", ids=[attribute_id])
        return attribute

    async def update(
        self,
        attribute_id: uuid.UUID,
        name: Optional[str] = None,
        slug: Optional[str] = None,
        type: Optional[AttributeType] = None,
        category_ids: Optional[Iterable[uuid.UUID]] = None,
    ) -> Attribute:
        """
        Rename/retype an attribute and optionally reconcile its links.

        When `category_ids` is given the link set is made equal to it by
        inserting the additions and deleting the removals; an empty list
        makes the attribute global.

        Raises:
            NotFoundError: unknown attribute
            CatalogValidationError: unknown or non-leaf category ids
            ConflictError: name/slug taken, or a type change while products
                hold values
        """
        attribute = await self.get(attribute_id)
        targets = _dedupe(category_ids) if category_ids is not None else None

        if targets is not None:
            await self.validate_link_targets(targets)

        new_name = name if name is not None else attribute.name
        new_slug = slug if slug is not None else attribute.slug
        if not new_slug:
            raise CatalogValidationError("Slug cannot be empty", ids=[attribute_id])
        if new_name != attribute.name or new_slug != attribute.slug:
            await self.ensure_unique(new_name, new_slug, exclude_id=attribute.id)

        if type is not None and type != attribute.type:
            in_use = await self._has_product_values(attribute.id)
            if in_use:
                raise ConflictError(
                    f"Attribute type cannot change while {in_use} product values use it",
                    ids=[attribute_id],
                )
            attribute.type = type

        attribute.name = new_name
        attribute.slug = new_slug
        await flush_or_conflict(
            self.session, "Attribute with the same slug already exists", ids=[attribute_id]
        )

        if targets is not None:
            await self._reconcile_links(attribute.id, targets)

        return attribute

    async def _reconcile_links(self, attribute_id: uuid.UUID, targets: Sequence[uuid.UUID]) -> None:
        current = await self.linked_category_ids(attribute_id)
        desired = set(targets)
        additions = [c for c in targets if c not in current]
        removals = current - desired

        if additions:
            await insert_ignore(
                self.session,
                CategoryAttributeLink,
                [{"category_id": c, "attribute_id": attribute_id} for c in additions],
            )
        if removals:
            await self.session.execute(
                delete(CategoryAttributeLink).where(
                    CategoryAttributeLink.attribute_id == attribute_id,
                    CategoryAttributeLink.category_id.in_(list(removals)),
                )
            )

        logger.info(
            "Attribute links reconciled",
            attribute_id=str(attribute_id),
            added=len(additions),
            removed=len(removals),
        )

    async def remove(self, attribute_id: uuid.UUID) -> None:
        """
        Delete an attribute that no product holds a value for.

        Raises:
            NotFoundError: unknown attribute
            ConflictError: product values still reference it
        """
        attribute = await self.get(attribute_id)
        in_use = await self._has_product_values(attribute_id)
        if in_use:
            raise ConflictError(
                f"Attribute '{attribute.slug}' cannot be deleted: {in_use} products hold a value for it",
                ids=[attribute_id],
            )

        await self.session.execute(
            delete(CategoryAttributeLink).where(CategoryAttributeLink.attribute_id == attribute_id)
        )
        await self.session.execute(
            delete(ProductAttributeLink).where(ProductAttributeLink.attribute_id == attribute_id)
        )
        await self.session.delete(attribute)
        await self.session.flush()
        logger.info("Attribute deleted", attribute_id=str(attribute_id))

    async def reset_category_links(
        self,
        links: Mapping[uuid.UUID, Iterable[uuid.UUID]],
    ) -> int:
        """
        Replace the whole link set of every attribute in `links`.

        Delete-all-then-insert, for bulk and seed loads. Input is trusted:
        targets are not checked for being leaves, so group categories can
        carry links that their descendants inherit. An empty target list
        leaves the attribute global.

        Returns:
            Links inserted
        """
        attribute_ids = list(links)
        if not attribute_ids:
            return 0

        await self.session.execute(
            delete(CategoryAttributeLink).where(CategoryAttributeLink.attribute_id.in_(attribute_ids))
        )
        rows = [
            {"category_id": category_id, "attribute_id": attribute_id}
            for attribute_id, category_ids in links.items()
            for category_id in _dedupe(category_ids)
        ]
        inserted = await insert_ignore(self.session, CategoryAttributeLink, rows)
        logger.info("Category links reset", attributes=len(attribute_ids), links=inserted)
        return inserted

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    async def _warn_unknown_categories(self, category_ids: Sequence[uuid.UUID]) -> None:
        result = await self.session.execute(select(Category.id).where(Category.id.in_(category_ids)))
        found = set(result.scalars().all())
        unknown = [str(i) for i in category_ids if i not in found]
        if unknown:
            logger.warning("Unknown categoryIds in attribute query", category_ids=unknown)

    async def _products_in_use(
        self,
        attribute_ids: Sequence[uuid.UUID],
        category_ids: Sequence[uuid.UUID],
    ) -> Dict[uuid.UUID, int]:
        """
        Products holding each attribute, scoped to the selected categories and
        everything below them when a selection is given.
        """
        stmt = (
            select(ProductAttributeLink.attribute_id, func.count(ProductAttributeLink.product_id))
            .where(ProductAttributeLink.attribute_id.in_(attribute_ids))
            .group_by(ProductAttributeLink.attribute_id)
        )
        if category_ids:
            scope = await TreePathMaintainer(self.session).descendant_ids(category_ids)
            scope.update(category_ids)
            scoped_products = select(Product.id).where(Product.category_id.in_(list(scope)))
            stmt = stmt.where(ProductAttributeLink.product_id.in_(scoped_products))

        result = await self.session.execute(stmt)
        return {attribute_id: count for attribute_id, count in result.all()}

    async def find_attributes(self, query: AttributeQuery) -> AttributePage:
        """
        Search, filter and page attributes.

        With a category selection the result is limited to attributes
        applicable to it (or, for `not-applicable`, to the complement), each
        item carries its applicability per selected category, and usage
        counts are scoped to the selection's subtree. Without one, link-type
        filters have nothing to classify against and are ignored.
        """
        page = max(1, query.page)
        page_size = clamp_page_size(query.page_size)
        category_ids = _dedupe(query.category_ids)

        conditions = []
        q = (query.q or "").strip()
        if q:
            pattern = f"%{q}%"
            conditions.append(or_(Attribute.name.ilike(pattern), Attribute.slug.ilike(pattern)))

        if category_ids:
            await self._warn_unknown_categories(category_ids)
            conditions.append(link_type_clause(category_ids, query.link_types))
        elif query.link_types:
            logger.info(
                "linkType filter ignored without categoryIds",
                link_types=[f.value for f in query.link_types],
            )

        total = await self.session.scalar(
            select(func.count()).select_from(select(Attribute.id).where(*conditions).subquery())
        ) or 0

        sort_column = _SORT_COLUMNS[query.sort]
        result = await self.session.execute(
            select(Attribute)
            .where(*conditions)
            .order_by(sort_column, Attribute.id)
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        attributes = list(result.scalars().all())
        attribute_ids = [a.id for a in attributes]

        refs = await self.category_refs(attribute_ids)
        usage = await self._products_in_use(attribute_ids, category_ids) if attribute_ids else {}

        depth_matrix = None
        if category_ids and attributes:
            paths = await self.session.execute(
                select(
                    CategoryTreePath.ancestor_id,
                    CategoryTreePath.descendant_id,
                    CategoryTreePath.depth,
                ).where(CategoryTreePath.descendant_id.in_(category_ids))
            )
            depth_matrix = build_depth_matrix(paths.all())

        items = []
        for attribute in attributes:
            linked = refs.get(attribute.id, [])
            applicability = None
            if depth_matrix is not None:
                applicability = classify_many(category_ids, {r.id for r in linked}, depth_matrix)
            items.append(
                AttributeListItem(
                    attribute=attribute,
                    products_in_use=usage.get(attribute.id, 0),
                    categories=linked,
                    applicability=applicability,
                )
            )

        filter_categories = sorted(
            {ref for item in items for ref in item.categories},
            key=lambda ref: (ref.name, str(ref.id)),
        )

        logger.debug(
            "Attributes listed",
            total=total,
            page=page,
            page_size=page_size,
            categories=len(category_ids),
        )
        return AttributePage(
            items=items,
            total=total,
            page=page,
            page_size=page_size,
            filter_categories=filter_categories,
        )
