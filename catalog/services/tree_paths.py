"""
Category Tree Path Maintenance

Keeps the closure table (category_tree_paths) consistent with the
parent-pointer tree held in `categories`.

Invariants maintained:
- every category C has exactly one row (C, C, 0)
- for C with parent P, C's ancestor rows are P's ancestor rows shifted by
  one depth, plus the self row
- a descendant's rows are replaced as a whole when its chain changes,
  never patched row by row

All methods run inside the caller's transaction. Mutating methods take
the tree advisory lock first so concurrent re-parents cannot interleave.
"""

import uuid
from collections import defaultdict
from typing import Dict, Iterable, List, Optional, Set, Tuple

import structlog
from sqlalchemy import and_, delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from catalog.config import get_settings
from catalog.core.exceptions import CatalogValidationError
from catalog.database.dml import acquire_xact_lock, insert_ignore
from catalog.database.models import Category, CategoryTreePath

logger = structlog.get_logger(__name__)
settings = get_settings()


class TreePathMaintainer:
    """
    Sole writer of the closure table.

    Example:
        paths = TreePathMaintainer(session)
        await paths.add_paths_for_new_category(coffee.id, beverages.id)
        await paths.rebuild_subtree_paths(tea.id, specialty.id)
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def lock(self) -> None:
        """Serialize closure-table writers for the rest of the transaction."""
        await acquire_xact_lock(self.session, settings.database.tree_lock_key)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def ancestors_of(self, category_id: uuid.UUID) -> List[Tuple[uuid.UUID, int]]:
        """(ancestor_id, depth) for every ancestor-or-self row, nearest first."""
        result = await self.session.execute(
            select(CategoryTreePath.ancestor_id, CategoryTreePath.depth)
            .where(CategoryTreePath.descendant_id == category_id)
            .order_by(CategoryTreePath.depth)
        )
        return [(row.ancestor_id, row.depth) for row in result.all()]

    async def subtree_of(self, category_id: uuid.UUID) -> List[Tuple[uuid.UUID, int]]:
        """(descendant_id, depth) for the category and everything below it."""
        result = await self.session.execute(
            select(CategoryTreePath.descendant_id, CategoryTreePath.depth)
            .where(CategoryTreePath.ancestor_id == category_id)
            .order_by(CategoryTreePath.depth)
        )
        return [(row.descendant_id, row.depth) for row in result.all()]

    async def descendant_ids(self, category_ids: Iterable[uuid.UUID]) -> Set[uuid.UUID]:
        """Every category at depth >= 0 below any of the given ones."""
        ids = list(category_ids)
        if not ids:
            return set()
        result = await self.session.execute(
            select(CategoryTreePath.descendant_id)
            .where(CategoryTreePath.ancestor_id.in_(ids))
            .distinct()
        )
        return set(result.scalars().all())

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def add_self_row(self, category_id: uuid.UUID) -> int:
        """Insert the depth-0 row; a no-op when it already exists."""
        return await insert_ignore(
            self.session,
            CategoryTreePath,
            [{"ancestor_id": category_id, "descendant_id": category_id, "depth": 0}],
        )

    async def link_ancestors_of_parent_to_child(
        self,
        parent_id: uuid.UUID,
        child_id: uuid.UUID,
    ) -> int:
        """Copy every (A, parent, d) row as (A, child, d + 1)."""
        ancestors = await self.ancestors_of(parent_id)
        if not ancestors:
            logger.warning("Parent has no closure rows", parent_id=str(parent_id))
            return 0

        return await insert_ignore(
            self.session,
            CategoryTreePath,
            [
                {"ancestor_id": ancestor_id, "descendant_id": child_id, "depth": depth + 1}
                for ancestor_id, depth in ancestors
            ],
        )

    async def add_paths_for_new_category(
        self,
        category_id: uuid.UUID,
        parent_id: Optional[uuid.UUID],
    ) -> int:
        """
        Insert closure rows for a freshly created category.

        Must run in the same transaction as the category insert.

        Returns:
            Rows inserted: 1 + the number of ancestor-or-self rows of the parent
        """
        await self.lock()
        inserted = await self.add_self_row(category_id)
        if parent_id is not None:
            inserted += await self.link_ancestors_of_parent_to_child(parent_id, category_id)

        logger.debug(
            "Closure rows added for new category",
            category_id=str(category_id),
            parent_id=str(parent_id) if parent_id else None,
            rows=inserted,
        )
        return inserted

    async def rebuild_subtree_paths(
        self,
        category_id: uuid.UUID,
        new_parent_id: Optional[uuid.UUID],
    ) -> int:
        """
        Re-home a category and its whole subtree under `new_parent_id`.

        Steps:
        1. ensure the moved category's self row exists
        2. delete every row linking an ancestor outside the subtree to a
           node inside it (for a single node: all its non-self rows)
        3. stop if the category was detached to the root
        4. cross-join the new parent's ancestor chain onto every subtree
           member at depth = ancestor depth + subtree depth + 1

        Rows between two nodes inside the subtree are untouched, so
        grandchildren keep correct relative depths and gain the new chain.
        Idempotent for repeated calls with the same arguments.

        Raises:
            CatalogValidationError: new parent is the category or lies below it
        """
        await self.lock()
        await self.add_self_row(category_id)

        subtree = await self.subtree_of(category_id)
        subtree_ids = [descendant_id for descendant_id, _ in subtree]

        if new_parent_id is not None and new_parent_id in subtree_ids:
            raise CatalogValidationError(
                "A category cannot be moved under itself or one of its descendants",
                ids=[category_id, new_parent_id],
            )

        # The moved node's proper ancestors are exactly the outside
        # ancestors of every subtree member.
        outside = [
            ancestor_id
            for ancestor_id, depth in await self.ancestors_of(category_id)
            if ancestor_id != category_id
        ]
        if outside:
            await self.session.execute(
                delete(CategoryTreePath).where(
                    and_(
                        CategoryTreePath.descendant_id.in_(subtree_ids),
                        CategoryTreePath.ancestor_id.in_(outside),
                    )
                )
            )

        if new_parent_id is None:
            logger.info(
                "Subtree detached to root",
                category_id=str(category_id),
                subtree_size=len(subtree_ids),
            )
            return 0

        chain = await self.ancestors_of(new_parent_id)
        rows = [
            {
                "ancestor_id": ancestor_id,
                "descendant_id": descendant_id,
                "depth": ancestor_depth + subtree_depth + 1,
            }
            for ancestor_id, ancestor_depth in chain
            for descendant_id, subtree_depth in subtree
        ]
        inserted = await insert_ignore(self.session, CategoryTreePath, rows)

        logger.info(
            "Subtree paths rebuilt",
            category_id=str(category_id),
            new_parent_id=str(new_parent_id),
            subtree_size=len(subtree_ids),
            rows=inserted,
        )
        return inserted

    async def rebuild_paths_for_node(
        self,
        category_id: uuid.UUID,
        parent_id: Optional[uuid.UUID],
    ) -> int:
        """
        Fully replace the rows where `category_id` is the descendant.

        Used when loading a tree top-down: the parent's rows must already be
        correct.
        """
        await self.lock()
        await self.session.execute(
            delete(CategoryTreePath).where(CategoryTreePath.descendant_id == category_id)
        )

        rows = [{"ancestor_id": category_id, "descendant_id": category_id, "depth": 0}]
        if parent_id is not None:
            rows.extend(
                {"ancestor_id": ancestor_id, "descendant_id": category_id, "depth": depth + 1}
                for ancestor_id, depth in await self.ancestors_of(parent_id)
            )
        return await insert_ignore(self.session, CategoryTreePath, rows)

    async def rebuild_all(self) -> int:
        """
        Recompute the whole closure table from parent pointers.

        Repair routine: walks the tree breadth-first from the roots so every
        parent is rebuilt before its children.
        """
        await self.lock()
        result = await self.session.execute(select(Category.id, Category.parent_id))
        children: Dict[Optional[uuid.UUID], List[uuid.UUID]] = defaultdict(list)
        for row in result.all():
            children[row.parent_id].append(row.id)

        await self.session.execute(delete(CategoryTreePath))

        chains: Dict[uuid.UUID, List[Tuple[uuid.UUID, int]]] = {}
        rows = []
        queue: List[Tuple[uuid.UUID, Optional[uuid.UUID]]] = [
            (root_id, None) for root_id in children[None]
        ]
        while queue:
            category_id, parent_id = queue.pop(0)
            chain = [(category_id, 0)]
            if parent_id is not None:
                chain.extend((ancestor_id, depth + 1) for ancestor_id, depth in chains[parent_id])
            chains[category_id] = chain
            rows.extend(
                {"ancestor_id": ancestor_id, "descendant_id": category_id, "depth": depth}
                for ancestor_id, depth in chain
            )
            queue.extend((child_id, category_id) for child_id in children[category_id])

        unreachable = sum(len(ids) for ids in children.values()) - len(chains)
        if unreachable:
            logger.warning("Categories unreachable from any root", count=unreachable)

        inserted = await insert_ignore(self.session, CategoryTreePath, rows)
        logger.info("Closure table rebuilt", categories=len(chains), rows=inserted)
        return inserted

    async def remove_paths(self, category_id: uuid.UUID) -> None:
        """Delete every row mentioning the category (it must have no children)."""
        await self.lock()
        await self.session.execute(
            delete(CategoryTreePath).where(
                (CategoryTreePath.ancestor_id == category_id)
                | (CategoryTreePath.descendant_id == category_id)
            )
        )
