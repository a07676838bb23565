"""
Category Service

Category CRUD on top of the parent-pointer tree. Every write that changes
the tree shape goes through TreePathMaintainer in the same transaction,
and the parent's leaf flag is recomputed whenever its children change.

Delete policy is RESTRICT: a category with children, products or direct
attribute links cannot be removed.
"""

import uuid
from typing import Any, List, Optional

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from catalog.core.exceptions import CatalogValidationError, ConflictError, NotFoundError
from catalog.database.dml import flush_or_conflict
from catalog.database.models import Category, CategoryAttributeLink, Product
from catalog.services.category_tree import CategoryNode, CategoryTreeBuilder
from catalog.services.slugs import to_slug
from catalog.services.tree_paths import TreePathMaintainer

logger = structlog.get_logger(__name__)

# Distinguishes "parent not supplied" from "detach to root"
UNSET: Any = object()


class CategoryService:
    """
    Example:
        categories = CategoryService(session)
        beverages = await categories.create("Beverages")
        coffee = await categories.create("Coffee", parent_id=beverages.id)
    """

    def __init__(self, session: AsyncSession):
        self.session = session
        self.paths = TreePathMaintainer(session)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _find(self, category_id: uuid.UUID) -> Optional[Category]:
        return await self.session.get(Category, category_id)

    async def _require_parent(self, parent_id: uuid.UUID) -> Category:
        parent = await self._find(parent_id)
        if parent is None:
            raise CatalogValidationError("Parent category does not exist", ids=[parent_id])
        return parent

    async def _find_sibling(
        self,
        slug: str,
        parent_id: Optional[uuid.UUID],
    ) -> Optional[Category]:
        """Category with this slug under the parent; roots match on parent IS NULL."""
        stmt = select(Category).where(Category.slug == slug)
        if parent_id is None:
            stmt = stmt.where(Category.parent_id.is_(None))
        else:
            stmt = stmt.where(Category.parent_id == parent_id)
        result = await self.session.execute(stmt)
        return result.scalars().first()

    async def _ensure_slug_free(
        self,
        slug: str,
        parent_id: Optional[uuid.UUID],
        exclude_id: Optional[uuid.UUID] = None,
    ) -> None:
        sibling = await self._find_sibling(slug, parent_id)
        if sibling is not None and sibling.id != exclude_id:
            raise ConflictError(
                f"A category with slug '{slug}' already exists under this parent",
                ids=[sibling.id],
            )

    async def _leaf_dependents(self, category_id: uuid.UUID) -> List[str]:
        """Products and direct links that only a leaf may hold."""
        blockers = []
        products = await self.session.scalar(
            select(func.count()).select_from(Product).where(Product.category_id == category_id)
        )
        if products:
            blockers.append(f"{products} products")
        links = await self.session.scalar(
            select(func.count())
            .select_from(CategoryAttributeLink)
            .where(CategoryAttributeLink.category_id == category_id)
        )
        if links:
            blockers.append(f"{links} attribute links")
        return blockers

    async def _ensure_can_have_children(self, parent: Category) -> None:
        # A leaf with products or direct links would silently become a group
        if not parent.is_leaf:
            return
        blockers = await self._leaf_dependents(parent.id)
        if blockers:
            raise ConflictError(
                f"Category '{parent.slug}' cannot take children: it has {', '.join(blockers)}",
                ids=[parent.id],
            )

    async def refresh_leaf_flag(self, category_id: uuid.UUID) -> bool:
        """Recompute is_leaf from the current child count."""
        await self.session.flush()
        children = await self.session.scalar(
            select(func.count()).select_from(Category).where(Category.parent_id == category_id)
        )
        category = await self._find(category_id)
        if category is None:
            return False
        category.is_leaf = not children
        await self.session.flush()
        return category.is_leaf

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def create(
        self,
        name: str,
        slug: Optional[str] = None,
        parent_id: Optional[uuid.UUID] = None,
    ) -> Category:
        """
        Create a category and its closure rows.

        Raises:
            CatalogValidationError: unknown parent or empty slug
            ConflictError: sibling slug already taken, or the parent is a
                leaf holding products or attribute links
        """
        final_slug = slug or to_slug(name)
        if not final_slug:
            raise CatalogValidationError(f"Cannot derive a slug from name '{name}'")

        if parent_id is not None:
            parent = await self._require_parent(parent_id)
            await self._ensure_can_have_children(parent)
        await self._ensure_slug_free(final_slug, parent_id)

        category = Category(id=uuid.uuid4(), name=name, slug=final_slug, parent_id=parent_id, is_leaf=True)
        self.session.add(category)
        await flush_or_conflict(
            self.session,
            f"A category with slug '{final_slug}' already exists under this parent",
        )

        await self.paths.add_paths_for_new_category(category.id, parent_id)
        if parent_id is not None:
            await self.refresh_leaf_flag(parent_id)

        logger.info(
            "Category created",
            category_id=str(category.id),
            slug=final_slug,
            parent_id=str(parent_id) if parent_id else None,
        )
        return category

    async def list_all(self) -> List[Category]:
        result = await self.session.execute(select(Category).order_by(Category.name, Category.id))
        return list(result.scalars().all())

    async def get(self, category_id: uuid.UUID) -> Category:
        category = await self._find(category_id)
        if category is None:
            raise NotFoundError("Category not found", ids=[category_id])
        return category

    async def get_tree(self) -> List[CategoryNode]:
        return await CategoryTreeBuilder(self.session).build()

    async def update(
        self,
        category_id: uuid.UUID,
        name: Optional[str] = None,
        slug: Optional[str] = None,
        parent_id: Optional[uuid.UUID] = UNSET,
    ) -> Category:
        """
        Rename and/or re-parent a category.

        Passing parent_id=None detaches the category to a root; leaving it
        unset keeps the current parent. A re-parent rebuilds the closure rows
        of the whole subtree.

        Raises:
            NotFoundError: unknown category
            CatalogValidationError: unknown new parent, or a move under itself
                or one of its descendants
            ConflictError: slug taken under the target parent, or the target
                parent is a leaf holding products or attribute links
        """
        category = await self.get(category_id)
        old_parent_id = category.parent_id
        new_parent_id = old_parent_id if parent_id is UNSET else parent_id
        parent_changed = new_parent_id != old_parent_id

        if parent_changed and new_parent_id is not None:
            new_parent = await self._require_parent(new_parent_id)
            await self._ensure_can_have_children(new_parent)

        new_slug = slug if slug is not None else category.slug
        if slug is not None and not slug:
            raise CatalogValidationError("Slug cannot be empty", ids=[category_id])
        if parent_changed or new_slug != category.slug:
            await self._ensure_slug_free(new_slug, new_parent_id, exclude_id=category.id)

        if parent_changed:
            # Validates the move before any row changes
            await self.paths.rebuild_subtree_paths(category.id, new_parent_id)

        if name is not None:
            category.name = name
        category.slug = new_slug
        category.parent_id = new_parent_id
        await flush_or_conflict(
            self.session,
            f"A category with slug '{new_slug}' already exists under this parent",
            ids=[category_id],
        )

        if parent_changed:
            if old_parent_id is not None:
                await self.refresh_leaf_flag(old_parent_id)
            if new_parent_id is not None:
                await self.refresh_leaf_flag(new_parent_id)
            logger.info(
                "Category re-parented",
                category_id=str(category_id),
                old_parent_id=str(old_parent_id) if old_parent_id else None,
                new_parent_id=str(new_parent_id) if new_parent_id else None,
            )

        return category

    async def remove(self, category_id: uuid.UUID) -> None:
        """
        Delete a category with no dependents.

        Raises:
            NotFoundError: unknown category
            ConflictError: naming every blocker (children, products, links)
        """
        category = await self.get(category_id)

        blockers = []
        children = await self.session.scalar(
            select(func.count()).select_from(Category).where(Category.parent_id == category_id)
        )
        if children:
            blockers.append(f"{children} child categories")
        blockers.extend(await self._leaf_dependents(category_id))

        if blockers:
            raise ConflictError(
                f"Category '{category.slug}' cannot be deleted: it has {', '.join(blockers)}",
                ids=[category_id],
            )

        parent_id = category.parent_id
        await self.paths.remove_paths(category_id)
        await self.session.delete(category)
        await self.session.flush()
        if parent_id is not None:
            await self.refresh_leaf_flag(parent_id)

        logger.info("Category deleted", category_id=str(category_id))

    async def upsert(
        self,
        name: str,
        slug: str,
        parent_id: Optional[uuid.UUID] = None,
    ) -> Category:
        """
        Find a category by (slug, parent) or create it.

        Closure rows are left to the caller, which rebuilds them top-down.
        """
        existing = await self._find_sibling(slug, parent_id)
        if existing is not None:
            if existing.name != name:
                existing.name = name
            return existing

        category = Category(id=uuid.uuid4(), name=name, slug=slug, parent_id=parent_id, is_leaf=True)
        self.session.add(category)
        await self.session.flush()
        if parent_id is not None:
            await self.refresh_leaf_flag(parent_id)
        return category
