"""
Seed Catalog Loader

Loads the Food and Beverages category tree and the attribute catalog.
Safe to re-run: categories are matched by (slug, parent), attributes by
slug, and every seeded attribute's link set is replaced as a whole.

Usage:
    catalog-seed
    python -m catalog.ingestion.seed_db
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from catalog.config import get_settings
from catalog.config.logging import configure_logging
from catalog.database.connection import close_database, get_db, init_database
from catalog.database.dml import flush_or_conflict
from catalog.database.models import Attribute, AttributeType
from catalog.services.attributes import AttributeService
from catalog.services.categories import CategoryService
from catalog.services.tree_paths import TreePathMaintainer

logger = structlog.get_logger(__name__)
settings = get_settings()


@dataclass
class CategorySeed:
    slug: str
    name: str
    children: List["CategorySeed"] = field(default_factory=list)


@dataclass
class AttributeSeed:
    slug: str
    name: str
    type: AttributeType
    category_slugs: List[str] = field(default_factory=list)

    @property
    def is_global(self) -> bool:
        return not self.category_slugs


def _group(slug: str, name: str, *leaves: Tuple[str, str]) -> CategorySeed:
    return CategorySeed(slug, name, [CategorySeed(s, n) for s, n in leaves])


CATEGORY_TREE: List[CategorySeed] = [
    CategorySeed("food-and-beverages", "Food and Beverages", [
        _group(
            "beverages", "Beverages",
            ("coffee", "Coffee"),
            ("tea", "Tea"),
            ("juices", "Juices"),
            ("soft-drinks", "Soft Drinks"),
            ("water", "Water"),
        ),
        _group(
            "snacks", "Snacks",
            ("chips", "Chips"),
            ("nuts-and-seeds", "Nuts and Seeds"),
            ("biscuits-and-cookies", "Biscuits and Cookies"),
            ("chocolate-and-confectionery", "Chocolate and Confectionery"),
        ),
        _group(
            "dairy-and-eggs", "Dairy and Eggs",
            ("milk", "Milk"),
            ("yogurt", "Yogurt"),
            ("cheese", "Cheese"),
            ("eggs", "Eggs"),
            ("butter-and-cream", "Butter and Cream"),
        ),
        _group(
            "bakery", "Bakery",
            ("bread", "Bread"),
            ("buns-and-rolls", "Buns and Rolls"),
            ("cakes-and-pastries", "Cakes and Pastries"),
        ),
        _group(
            "cooking-essentials", "Cooking Essentials",
            ("flour-and-grains", "Flour and Grains"),
            ("rice-and-pulses", "Rice and Pulses"),
            ("oils-and-ghee", "Oils and Ghee"),
            ("spices-and-seasonings", "Spices and Seasonings"),
            ("sauces-and-condiments", "Sauces and Condiments"),
        ),
        _group(
            "frozen-and-ready-to-eat", "Frozen and Ready to Eat",
            ("frozen-vegetables", "Frozen Vegetables"),
            ("frozen-snacks", "Frozen Snacks"),
            ("ready-meals", "Ready Meals"),
            ("ice-cream", "Ice Cream"),
        ),
    ]),
]

T = AttributeType

# Links may target group categories; their descendants inherit them.
ATTRIBUTES: List[AttributeSeed] = [
    # Global
    AttributeSeed("sku", "SKU", T.TEXT),
    AttributeSeed("brand", "Brand", T.TEXT),
    AttributeSeed("gtin", "GTIN", T.TEXT),
    AttributeSeed("mrp", "MRP", T.NUMBER),

    # Beverages
    AttributeSeed("volume-ml", "Volume ml", T.NUMBER, ["beverages", "juices", "soft-drinks", "water"]),
    AttributeSeed("flavor", "Flavor", T.TEXT, ["beverages", "juices", "soft-drinks"]),
    AttributeSeed("sugar-free", "Sugar Free", T.BOOLEAN, ["beverages", "soft-drinks"]),

    # Coffee
    AttributeSeed("coffee-bean-type", "Bean Type", T.TEXT, ["coffee"]),
    AttributeSeed("coffee-roast", "Roast Level", T.TEXT, ["coffee"]),
    AttributeSeed("coffee-grind", "Grind", T.TEXT, ["coffee"]),
    AttributeSeed("coffee-origin", "Coffee Country of Origin", T.TEXT, ["coffee"]),
    AttributeSeed("caffeine-level", "Caffeine Level", T.TEXT, ["coffee"]),
    AttributeSeed("pack-size-g", "Coffee Pack Size g", T.NUMBER, ["coffee"]),

    # Tea
    AttributeSeed("tea-type", "Tea Type", T.TEXT, ["tea"]),
    AttributeSeed("tea-origin", "Tea Country of Origin", T.TEXT, ["tea"]),
    AttributeSeed("tea-pack-size-g", "Tea Pack Size g", T.NUMBER, ["tea"]),

    # Snacks
    AttributeSeed(
        "net-weight-g", "Net Weight g", T.NUMBER,
        ["snacks", "chips", "biscuits-and-cookies", "chocolate-and-confectionery", "nuts-and-seeds"],
    ),
    AttributeSeed("is-veg", "Vegetarian", T.BOOLEAN, ["snacks"]),
    AttributeSeed(
        "allergens", "Allergens", T.TEXT,
        ["snacks", "biscuits-and-cookies", "chocolate-and-confectionery", "nuts-and-seeds"],
    ),

    # Dairy and frozen
    AttributeSeed("fat-percentage", "Fat Percentage", T.NUMBER, ["milk", "yogurt", "cheese", "butter-and-cream"]),
    AttributeSeed("storage", "Storage", T.TEXT, ["dairy-and-eggs", "frozen-and-ready-to-eat"]),
]


async def seed_categories(
    session: AsyncSession,
    tree: List[CategorySeed] = CATEGORY_TREE,
) -> Dict[str, uuid.UUID]:
    """
    Upsert the tree top-down, replacing each node's closure rows.

    Returns:
        Category id by slug
    """
    categories = CategoryService(session)
    paths = TreePathMaintainer(session)
    ids: Dict[str, uuid.UUID] = {}

    async def visit(node: CategorySeed, parent_id: Optional[uuid.UUID]) -> None:
        category = await categories.upsert(node.name, node.slug, parent_id)
        await paths.rebuild_paths_for_node(category.id, parent_id)
        ids[node.slug] = category.id
        for child in node.children:
            await visit(child, category.id)

    for root in tree:
        await visit(root, None)

    logger.info("Categories seeded", categories=len(ids))
    return ids


async def _upsert_attribute(session: AsyncSession, seed: AttributeSeed) -> Attribute:
    """
    Match by slug, else adopt a same-name record, else create.

    Raises:
        ConflictError: a different record already holds the seed's name or slug
    """
    service = AttributeService(session)
    attribute = await session.scalar(select(Attribute).where(Attribute.slug == seed.slug))
    if attribute is None:
        attribute = await session.scalar(select(Attribute).where(Attribute.name == seed.name))
    if attribute is None:
        attribute, _ = await service.create(seed.name, slug=seed.slug, type=seed.type)
        return attribute

    await service.ensure_unique(seed.name, seed.slug, exclude_id=attribute.id)
    attribute.slug = seed.slug
    attribute.name = seed.name
    attribute.type = seed.type
    await flush_or_conflict(
        session, f"Seed attribute '{seed.slug}' clashes with an existing attribute", ids=[attribute.id]
    )
    return attribute


async def seed_attributes(
    session: AsyncSession,
    category_ids: Dict[str, uuid.UUID],
    attributes: List[AttributeSeed] = ATTRIBUTES,
) -> Dict[str, uuid.UUID]:
    """
    Upsert attributes and reset their category links.

    Global attributes end up with zero links.

    Returns:
        Attribute id by slug
    """
    ids: Dict[str, uuid.UUID] = {}
    for seed in attributes:
        ids[seed.slug] = (await _upsert_attribute(session, seed)).id

    links: Dict[uuid.UUID, List[uuid.UUID]] = {}
    for seed in attributes:
        targets = []
        for slug in seed.category_slugs:
            category_id = category_ids.get(slug)
            if category_id is None:
                logger.warning("Seed category slug not found", slug=slug, attribute=seed.slug)
                continue
            targets.append(category_id)
        links[ids[seed.slug]] = targets

    inserted = await AttributeService(session).reset_category_links(links)
    logger.info(
        "Attributes seeded",
        attributes=len(ids),
        global_attributes=sum(1 for a in attributes if a.is_global),
        links=inserted,
    )
    return ids


async def seed(session: AsyncSession) -> None:
    category_ids = await seed_categories(session)
    await seed_attributes(session, category_ids)


async def main() -> None:
    if settings.is_production and not settings.catalog.seed_ok:
        logger.warning("CATALOG_SEED_OK is not true in production, skipping seed")
        return

    logger.info("Starting catalog seeding...")
    await init_database()
    try:
        async with get_db() as db:
            await seed(db)
        logger.info("Catalog seeding completed")
    finally:
        await close_database()


def run() -> None:
    """Console entry point."""
    configure_logging(component="seed")
    asyncio.run(main())


if __name__ == "__main__":
    run()
