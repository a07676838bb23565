"""
Category Tree Read Model

Stitches the flat category list into nested nodes in a single pass and
attaches per-node counts (direct attribute links, products placed on the
node).
"""

import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from catalog.database.models import Category, CategoryAttributeLink, Product

logger = structlog.get_logger(__name__)


@dataclass
class CategoryNode:
    id: uuid.UUID
    name: str
    slug: str
    parent_id: Optional[uuid.UUID]
    is_leaf: bool
    attributes_direct: int = 0
    products: int = 0
    children: List["CategoryNode"] = field(default_factory=list)

    def to_dict(self) -> dict:
        """JSON-ready nested dict with camelCase keys."""
        return {
            "id": str(self.id),
            "name": self.name,
            "slug": self.slug,
            "parentId": str(self.parent_id) if self.parent_id else None,
            "isLeaf": self.is_leaf,
            "counts": {
                "attributesDirect": self.attributes_direct,
                "products": self.products,
            },
            "children": [child.to_dict() for child in self.children],
        }


class CategoryTreeBuilder:
    """
    Builds the nested category tree.

    Example:
        roots = await CategoryTreeBuilder(session).build()
        payload = [root.to_dict() for root in roots]
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def _count_by_category(self, column) -> Dict[uuid.UUID, int]:
        result = await self.session.execute(
            select(column, func.count()).group_by(column)
        )
        return {category_id: count for category_id, count in result.all()}

    async def build(self) -> List[CategoryNode]:
        result = await self.session.execute(
            select(Category).order_by(Category.name, Category.id)
        )
        categories = result.scalars().all()
        if not categories:
            return []

        links = await self._count_by_category(CategoryAttributeLink.category_id)
        products = await self._count_by_category(Product.category_id)

        by_id: Dict[uuid.UUID, CategoryNode] = {
            c.id: CategoryNode(
                id=c.id,
                name=c.name,
                slug=c.slug,
                parent_id=c.parent_id,
                is_leaf=c.is_leaf,
                attributes_direct=links.get(c.id, 0),
                products=products.get(c.id, 0),
            )
            for c in categories
        }

        roots: List[CategoryNode] = []
        for c in categories:
            node = by_id[c.id]
            if c.parent_id is not None and c.parent_id in by_id:
                by_id[c.parent_id].children.append(node)
            else:
                roots.append(node)

        logger.debug("Category tree built", categories=len(by_id), roots=len(roots))
        return roots
