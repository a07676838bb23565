"""
Unit Tests - Attribute Service and Applicability Queries
"""
import uuid
from types import SimpleNamespace

import pytest
from sqlalchemy import func, select

from catalog.config import get_settings
from catalog.core.exceptions import CatalogValidationError, ConflictError, NotFoundError
from catalog.database.models import Attribute, AttributeType, Category, CategoryAttributeLink
from catalog.services.applicability import LinkType, LinkTypeFilter, link_type_clause
from catalog.services.attributes import AttributeQuery, AttributeService, AttributeSort
from catalog.services.categories import CategoryService
from catalog.services.products import AttributeValueInput, ProductService


@pytest.fixture
async def catalog(test_db, beverages_tree):
    """
    beverages -> coffee -> espresso, beverages -> tea

    caffeine-level linked to the coffee group, sku global,
    volume-ml linked to beverages and tea.
    """
    espresso = await CategoryService(test_db).create("Espresso", parent_id=beverages_tree.coffee.id)
    attributes = AttributeService(test_db)
    caffeine, _ = await attributes.create("Caffeine Level")
    sku, _ = await attributes.create("SKU")
    volume, _ = await attributes.create("Volume ml", type=AttributeType.NUMBER)
    await attributes.reset_category_links(
        {
            caffeine.id: [beverages_tree.coffee.id],
            volume.id: [beverages_tree.beverages.id, beverages_tree.tea.id],
        }
    )
    return SimpleNamespace(
        tree=beverages_tree,
        espresso=espresso,
        caffeine=caffeine,
        sku=sku,
        volume=volume,
    )


async def find(session, **kwargs):
    return await AttributeService(session).find_attributes(AttributeQuery(**kwargs))


def slugs(page):
    return {item.attribute.slug for item in page.items}


def cell(page, slug):
    item = next(i for i in page.items if i.attribute.slug == slug)
    return item.applicability


async def link_count(session):
    return await session.scalar(select(func.count()).select_from(CategoryAttributeLink))


class TestCreateAttribute:
    """Tests for attribute creation and link validation"""

    async def test_create_with_links(self, test_db, beverages_tree):
        """Test links are created for leaf categories and the slug is derived"""
        attribute, links_created = await AttributeService(test_db).create(
            "Caffeine Level", category_ids=[beverages_tree.coffee.id, beverages_tree.coffee.id]
        )

        assert attribute.slug == "caffeine-level"
        assert attribute.type == AttributeType.TEXT
        assert links_created == 1

    async def test_non_leaf_rejected_without_writes(self, test_db, beverages_tree):
        """Test linking to a group category fails and writes nothing"""
        with pytest.raises(CatalogValidationError) as exc:
            await AttributeService(test_db).create("Flavor", category_ids=[beverages_tree.beverages.id])

        assert str(beverages_tree.beverages.id) in exc.value.ids
        assert await test_db.scalar(select(func.count()).select_from(Attribute)) == 0
        assert await link_count(test_db) == 0

    async def test_unknown_and_non_leaf_reported_together(self, test_db, beverages_tree):
        """Test every offending id is listed in one error"""
        ghost = uuid.uuid4()
        with pytest.raises(CatalogValidationError) as exc:
            await AttributeService(test_db).create(
                "Flavor", category_ids=[ghost, beverages_tree.beverages.id, beverages_tree.tea.id]
            )

        assert set(exc.value.ids) == {str(ghost), str(beverages_tree.beverages.id)}
        assert "Unknown categoryIds" in exc.value.message
        assert "Non-leaf" in exc.value.message

    async def test_duplicate_slug_conflicts(self, test_db):
        """Test a second attribute with the same slug is a conflict"""
        service = AttributeService(test_db)
        await service.create("SKU")

        with pytest.raises(ConflictError):
            await service.create("Stock Keeping Unit", slug="sku")

    async def test_duplicate_name_conflicts(self, test_db):
        """Test a second attribute with the same name is a conflict"""
        service = AttributeService(test_db)
        await service.create("Brand")

        with pytest.raises(ConflictError):
            await service.create("Brand", slug="brand-2")


class TestUpdateAttribute:
    """Tests for attribute updates and link reconciliation"""

    async def test_reconciles_links(self, test_db, catalog):
        """Test the link set becomes exactly the submitted ids"""
        service = AttributeService(test_db)

        await service.update(catalog.caffeine.id, category_ids=[catalog.tree.tea.id])

        assert await service.linked_category_ids(catalog.caffeine.id) == {catalog.tree.tea.id}

    async def test_empty_list_makes_global(self, test_db, catalog):
        """Test clearing links turns the attribute global"""
        service = AttributeService(test_db)
        await service.update(catalog.caffeine.id, category_ids=[])

        page = await find(test_db, category_ids=[catalog.tree.tea.id])

        assert cell(page, "caffeine-level")[0].link_type == LinkType.GLOBAL

    async def test_links_untouched_when_not_supplied(self, test_db, catalog):
        """Test a rename leaves links alone"""
        service = AttributeService(test_db)
        await service.update(catalog.caffeine.id, name="Caffeine")

        assert await service.linked_category_ids(catalog.caffeine.id) == {catalog.tree.coffee.id}

    async def test_non_leaf_rejected(self, test_db, catalog):
        """Test update applies the same leaf rule"""
        with pytest.raises(CatalogValidationError):
            await AttributeService(test_db).update(catalog.caffeine.id, category_ids=[catalog.tree.coffee.id])

    async def test_unknown_attribute(self, test_db):
        """Test updating a missing attribute is not found"""
        with pytest.raises(NotFoundError):
            await AttributeService(test_db).update(uuid.uuid4(), name="x")


class TestRemoveAttribute:
    """Tests for attribute deletion"""

    async def test_blocked_by_product_values(self, test_db, catalog):
        """Test an attribute in use cannot be deleted"""
        await ProductService(test_db).create(
            "Espresso Roast",
            catalog.espresso.id,
            [AttributeValueInput(value="ABC-1", attribute_slug="sku")],
        )

        with pytest.raises(ConflictError):
            await AttributeService(test_db).remove(catalog.sku.id)

    async def test_removes_links(self, test_db, catalog):
        """Test deletion drops the attribute and its links"""
        await AttributeService(test_db).remove(catalog.volume.id)

        assert await test_db.get(Attribute, catalog.volume.id) is None
        assert await link_count(test_db) == 1


class TestFindAttributes:
    """Tests for applicability-aware listing"""

    async def test_direct_link(self, test_db, catalog):
        """Test an attribute linked to coffee is direct at depth 0 for coffee"""
        page = await find(test_db, category_ids=[catalog.tree.coffee.id])

        [applicability] = cell(page, "caffeine-level")
        assert applicability.link_type == LinkType.DIRECT
        assert applicability.depth == 0

    async def test_inherited_by_child(self, test_db, catalog):
        """Test the same attribute is inherited at depth 1 for espresso"""
        page = await find(test_db, category_ids=[catalog.espresso.id])

        [applicability] = cell(page, "caffeine-level")
        assert applicability.link_type == LinkType.INHERITED
        assert applicability.depth == 1

    async def test_global_everywhere(self, test_db, catalog):
        """Test an unlinked attribute is global for every selection"""
        selection = [catalog.tree.beverages.id, catalog.tree.tea.id, catalog.espresso.id]
        page = await find(test_db, category_ids=selection)

        cells = cell(page, "sku")
        assert [c.link_type for c in cells] == [LinkType.GLOBAL] * 3
        assert all(c.depth is None for c in cells)

    async def test_not_applicable_is_complement(self, test_db, catalog):
        """Test not-applicable equals all attributes minus the applicable ones"""
        tea = [catalog.tree.tea.id]
        everything = slugs(await find(test_db))
        applicable = slugs(await find(test_db, category_ids=tea))
        not_applicable = slugs(
            await find(test_db, category_ids=tea, link_types=[LinkTypeFilter.NOT_APPLICABLE])
        )

        assert not_applicable == everything - applicable
        assert not_applicable & applicable == set()
        assert not_applicable == {"caffeine-level"}

    async def test_not_applicable_is_exclusive(self, test_db, catalog):
        """Test combining not-applicable with direct behaves like not-applicable alone"""
        tea = [catalog.tree.tea.id]
        alone = await find(test_db, category_ids=tea, link_types=[LinkTypeFilter.NOT_APPLICABLE])
        combined = await find(
            test_db,
            category_ids=tea,
            link_types=[LinkTypeFilter.NOT_APPLICABLE, LinkTypeFilter.DIRECT],
        )

        assert slugs(alone) == slugs(combined)
        assert alone.total == combined.total

    async def test_direct_filter(self, test_db, catalog):
        """Test the direct filter keeps only attributes linked to the selection itself"""
        page = await find(test_db, category_ids=[catalog.tree.tea.id], link_types=[LinkTypeFilter.DIRECT])

        assert slugs(page) == {"volume-ml"}

    async def test_inherited_filter_follows_nearest_link(self, test_db, catalog):
        """Test an attribute linked to tea and beverages is not inherited for tea"""
        page = await find(test_db, category_ids=[catalog.tree.tea.id], link_types=[LinkTypeFilter.INHERITED])

        assert slugs(page) == set()
        [applicability] = cell(await find(test_db, category_ids=[catalog.tree.tea.id]), "volume-ml")
        assert applicability.link_type == LinkType.DIRECT

    async def test_inherited_filter(self, test_db, catalog):
        """Test inherited matches links on ancestors"""
        page = await find(test_db, category_ids=[catalog.espresso.id], link_types=[LinkTypeFilter.INHERITED])

        assert slugs(page) == {"caffeine-level", "volume-ml"}
        [volume] = cell(page, "volume-ml")
        assert volume.depth == 2

    async def test_global_filter(self, test_db, catalog):
        """Test the global filter keeps unlinked attributes"""
        page = await find(test_db, category_ids=[catalog.espresso.id], link_types=[LinkTypeFilter.GLOBAL])

        assert slugs(page) == {"sku"}

    async def test_filters_or_together(self, test_db, catalog):
        """Test several link types are OR'd"""
        page = await find(
            test_db,
            category_ids=[catalog.tree.tea.id],
            link_types=[LinkTypeFilter.GLOBAL, LinkTypeFilter.DIRECT],
        )

        assert slugs(page) == {"sku", "volume-ml"}

    async def test_link_types_ignored_without_categories(self, test_db, catalog):
        """Test link-type filters need a category selection"""
        page = await find(test_db, link_types=[LinkTypeFilter.DIRECT])

        assert slugs(page) == {"caffeine-level", "sku", "volume-ml"}
        assert all(item.applicability is None for item in page.items)

    async def test_unknown_category_contributes_nothing(self, test_db, catalog):
        """Test an unknown selected id only leaves global attributes"""
        page = await find(test_db, category_ids=[uuid.uuid4()])

        assert slugs(page) == {"sku"}

    async def test_search_is_case_insensitive(self, test_db, catalog):
        """Test q matches name or slug ignoring case"""
        assert slugs(await find(test_db, q="CAFFEINE")) == {"caffeine-level"}
        assert slugs(await find(test_db, q="volume-")) == {"volume-ml"}

    async def test_sorted_by_name_and_paged(self, test_db, catalog):
        """Test ascending name order and page slicing"""
        first = await find(test_db, page=1, page_size=2, sort=AttributeSort.NAME)
        second = await find(test_db, page=2, page_size=2, sort=AttributeSort.NAME)

        assert [i.attribute.name for i in first.items] == ["Caffeine Level", "SKU"]
        assert [i.attribute.name for i in second.items] == ["Volume ml"]
        assert first.total == second.total == 3

    async def test_page_size_clamped(self, test_db, catalog):
        """Test page size is clamped to [1, max]"""
        assert (await find(test_db, page_size=0)).page_size == 1
        assert (await find(test_db, page_size=10_000)).page_size == get_settings().catalog.max_page_size

    async def test_categories_and_filters(self, test_db, catalog):
        """Test linked categories and the filter category list"""
        page = await find(test_db)

        item = next(i for i in page.items if i.attribute.slug == "volume-ml")
        assert [c.slug for c in item.categories] == ["beverages", "tea"]
        assert [c.slug for c in page.filter_categories] == ["beverages", "coffee", "tea"]

    async def test_products_in_use_scoped_to_subtree(self, test_db, catalog):
        """Test usage counts cover the selection and its descendants"""
        await ProductService(test_db).create(
            "Espresso Roast",
            catalog.espresso.id,
            [AttributeValueInput(value="ABC-1", attribute_slug="sku")],
        )

        def usage(page):
            return next(i.products_in_use for i in page.items if i.attribute.slug == "sku")

        assert usage(await find(test_db)) == 1
        assert usage(await find(test_db, category_ids=[catalog.tree.beverages.id])) == 1
        assert usage(await find(test_db, category_ids=[catalog.tree.coffee.id])) == 1
        assert usage(await find(test_db, category_ids=[catalog.tree.tea.id])) == 0


class TestResetCategoryLinks:
    """Tests for bulk link replacement"""

    async def test_replaces_whole_set(self, test_db, catalog):
        """Test existing links are dropped before the new set is inserted"""
        service = AttributeService(test_db)

        inserted = await service.reset_category_links({catalog.volume.id: [catalog.tree.coffee.id]})

        assert inserted == 1
        assert await service.linked_category_ids(catalog.volume.id) == {catalog.tree.coffee.id}

    async def test_empty_target_list_leaves_global(self, test_db, catalog):
        """Test an empty list clears every link"""
        service = AttributeService(test_db)
        await service.reset_category_links({catalog.volume.id: []})

        assert await service.linked_category_ids(catalog.volume.id) == set()


@pytest.fixture
async def wide_catalog(test_db, beverages_tree):
    """
    beverages -> coffee -> espresso, beverages -> tea, snacks -> nuts

    Links sit on leaves and groups alike; flavor is linked at two depths
    of the same chain and sku is global.
    """
    categories = CategoryService(test_db)
    espresso = await categories.create("Espresso", parent_id=beverages_tree.coffee.id)
    snacks = await categories.create("Snacks")
    nuts = await categories.create("Nuts", parent_id=snacks.id)

    attributes = AttributeService(test_db)
    created = {}
    for name in ("Caffeine Level", "Volume ml", "Roast", "Salt", "Flavor", "Nut Type", "SKU"):
        attribute, _ = await attributes.create(name)
        created[attribute.slug] = attribute
    await attributes.reset_category_links(
        {
            created["caffeine-level"].id: [beverages_tree.coffee.id],
            created["volume-ml"].id: [beverages_tree.beverages.id, beverages_tree.tea.id],
            created["roast"].id: [espresso.id],
            created["salt"].id: [snacks.id],
            created["flavor"].id: [beverages_tree.coffee.id, espresso.id],
            created["nut-type"].id: [nuts.id],
        }
    )
    return created


async def walk_parents(session):
    """Expected (link type, depth) per (attribute, category) from parent pointers alone"""
    result = await session.execute(select(Category.id, Category.parent_id))
    parents = {row.id: row.parent_id for row in result.all()}
    linked = {attribute_id: set() for attribute_id in (await session.execute(select(Attribute.id))).scalars()}
    for row in (await session.execute(select(CategoryAttributeLink))).scalars():
        linked[row.attribute_id].add(row.category_id)

    expected = {}
    for attribute_id, targets in linked.items():
        for category_id in parents:
            if not targets:
                expected[attribute_id, category_id] = (LinkType.GLOBAL, None)
                continue
            depth, current, found = 0, category_id, None
            while current is not None:
                if current in targets:
                    found = depth
                    break
                current, depth = parents[current], depth + 1
            if found is None:
                expected[attribute_id, category_id] = (LinkType.NONE, None)
            elif found == 0:
                expected[attribute_id, category_id] = (LinkType.DIRECT, 0)
            else:
                expected[attribute_id, category_id] = (LinkType.INHERITED, found)
    return expected


async def matching(session, category_id, filters):
    result = await session.execute(select(Attribute.id).where(link_type_clause([category_id], filters)))
    return set(result.scalars().all())


class TestApplicabilityMatchesParentWalk:
    """Tests every (attribute, category) pair against a parent-pointer walk"""

    async def test_sql_filters_agree(self, test_db, wide_catalog):
        """Test each link-type filter selects exactly the pairs the walk classifies that way"""
        expected = await walk_parents(test_db)
        category_ids = {category_id for _, category_id in expected}

        for category_id in category_ids:
            def walked(*link_types):
                return {a for (a, c), (t, _) in expected.items() if c == category_id and t in link_types}

            assert await matching(test_db, category_id, []) == walked(
                LinkType.DIRECT, LinkType.INHERITED, LinkType.GLOBAL
            )
            assert await matching(test_db, category_id, [LinkTypeFilter.DIRECT]) == walked(LinkType.DIRECT)
            assert await matching(test_db, category_id, [LinkTypeFilter.INHERITED]) == walked(LinkType.INHERITED)
            assert await matching(test_db, category_id, [LinkTypeFilter.GLOBAL]) == walked(LinkType.GLOBAL)
            assert await matching(test_db, category_id, [LinkTypeFilter.NOT_APPLICABLE]) == walked(LinkType.NONE)

    async def test_classification_agrees(self, test_db, wide_catalog):
        """Test the per-category cells report the walk's link type and nearest depth"""
        expected = await walk_parents(test_db)
        category_ids = sorted({category_id for _, category_id in expected})

        page = await find(test_db, category_ids=category_ids, page_size=100)

        assert page.total == len(wide_catalog)
        for item in page.items:
            for applicability in item.applicability:
                assert (applicability.link_type, applicability.depth) == expected[
                    item.attribute.id, applicability.category_id
                ]
