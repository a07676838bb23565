"""
Unit Tests - Product Service and Typed Values
"""
import math
import uuid
from types import SimpleNamespace

import pytest
from sqlalchemy import select

from catalog.core.exceptions import CatalogValidationError, NotFoundError
from catalog.database.models import AttributeType, ProductAttributeLink
from catalog.services.attributes import AttributeService
from catalog.services.categories import CategoryService
from catalog.services.products import AttributeValueInput, ProductService, coerce_value


@pytest.fixture
async def catalog(test_db, beverages_tree):
    """
    beverages -> coffee -> espresso, beverages -> tea

    caffeine-level (TEXT) on the coffee group, sku (TEXT) global,
    shots (NUMBER) and organic (BOOLEAN) on espresso, tea-type (TEXT) on tea.
    """
    espresso = await CategoryService(test_db).create("Espresso", parent_id=beverages_tree.coffee.id)
    attributes = AttributeService(test_db)
    caffeine, _ = await attributes.create("Caffeine Level")
    await attributes.reset_category_links({caffeine.id: [beverages_tree.coffee.id]})
    tea_type, _ = await attributes.create("Tea Type", category_ids=[beverages_tree.tea.id])
    sku, _ = await attributes.create("SKU")
    shots, _ = await attributes.create("Shots", type=AttributeType.NUMBER, category_ids=[espresso.id])
    organic, _ = await attributes.create("Organic", type=AttributeType.BOOLEAN, category_ids=[espresso.id])
    return SimpleNamespace(
        tree=beverages_tree,
        espresso=espresso,
        caffeine=caffeine,
        tea_type=tea_type,
        sku=sku,
        shots=shots,
        organic=organic,
    )


def by_slug(value, slug):
    return AttributeValueInput(value=value, attribute_slug=slug)


async def held_values(session, product_id):
    pairs = await ProductService(session).values_for(product_id)
    return {attribute.slug: value for attribute, value in pairs}


async def linked_attributes(session, product_id):
    result = await session.execute(
        select(ProductAttributeLink.attribute_id).where(ProductAttributeLink.product_id == product_id)
    )
    return set(result.scalars().all())


class TestCoerceValue:
    """Tests for typed value coercion"""

    def test_text(self):
        """Test text accepts strings and numbers but not booleans"""
        assert coerce_value(AttributeType.TEXT, "high")["text_value"] == "high"
        assert coerce_value(AttributeType.TEXT, 12)["text_value"] == "12"
        with pytest.raises(ValueError):
            coerce_value(AttributeType.TEXT, True)

    def test_number(self):
        """Test numbers parse from strings and must be finite"""
        assert coerce_value(AttributeType.NUMBER, 2)["number_value"] == 2.0
        assert coerce_value(AttributeType.NUMBER, " 2.5 ")["number_value"] == 2.5
        for bad in ("two", True, math.inf, [1], 10**400, "1e400"):
            with pytest.raises(ValueError):
                coerce_value(AttributeType.NUMBER, bad)

    def test_boolean(self):
        """Test booleans accept true/false strings case-insensitively"""
        assert coerce_value(AttributeType.BOOLEAN, "TRUE")["boolean_value"] is True
        assert coerce_value(AttributeType.BOOLEAN, False)["boolean_value"] is False
        with pytest.raises(ValueError):
            coerce_value(AttributeType.BOOLEAN, 1)

    def test_json_and_single_column(self):
        """Test JSON keeps structure and only one column is populated"""
        columns = coerce_value(AttributeType.JSON, {"notes": ["cocoa"]})

        assert columns["json_value"] == {"notes": ["cocoa"]}
        assert [k for k, v in columns.items() if v is not None] == ["json_value"]

    def test_none_rejected(self):
        """Test a missing value is never accepted"""
        with pytest.raises(ValueError):
            coerce_value(AttributeType.JSON, None)


class TestCreateProduct:
    """Tests for product creation"""

    async def test_inherited_and_global_values(self, test_db, catalog):
        """Test a product on espresso holds inherited, global and direct values"""
        product = await ProductService(test_db).create(
            "Espresso Roast",
            catalog.espresso.id,
            [
                by_slug("high", "caffeine-level"),
                by_slug("ABC-1", "sku"),
                AttributeValueInput(value="2", attribute_id=catalog.shots.id),
                by_slug("true", "organic"),
            ],
        )

        assert await held_values(test_db, product.id) == {
            "caffeine-level": "high",
            "sku": "ABC-1",
            "shots": 2.0,
            "organic": True,
        }
        assert await linked_attributes(test_db, product.id) == {
            catalog.caffeine.id,
            catalog.sku.id,
            catalog.shots.id,
            catalog.organic.id,
        }

    async def test_not_applicable_rejected(self, test_db, catalog):
        """Test a value for an attribute linked elsewhere is rejected and names it"""
        with pytest.raises(CatalogValidationError) as exc:
            await ProductService(test_db).create(
                "Espresso Roast", catalog.espresso.id, [by_slug("green", "tea-type")]
            )

        assert "tea-type" in exc.value.message
        assert str(catalog.tea_type.id) in exc.value.ids

    async def test_non_leaf_category_rejected(self, test_db, catalog):
        """Test products can only be placed on leaves"""
        with pytest.raises(CatalogValidationError):
            await ProductService(test_db).create("Mixed Box", catalog.tree.coffee.id)

    async def test_unknown_category_rejected(self, test_db):
        """Test a missing category is a validation error"""
        with pytest.raises(CatalogValidationError):
            await ProductService(test_db).create("Mystery", uuid.uuid4())

    async def test_reference_problems_reported_together(self, test_db, catalog):
        """Test unknown slugs, unknown ids and missing references in one error"""
        ghost = uuid.uuid4()
        with pytest.raises(CatalogValidationError) as exc:
            await ProductService(test_db).create(
                "Espresso Roast",
                catalog.espresso.id,
                [
                    by_slug("x", "nope"),
                    AttributeValueInput(value="x", attribute_id=ghost),
                    AttributeValueInput(value="x"),
                ],
            )

        assert "nope" in exc.value.ids
        assert str(ghost) in exc.value.ids
        assert "positions: 2" in exc.value.message

    async def test_duplicate_reference_rejected(self, test_db, catalog):
        """Test the same attribute by id and by slug counts as a duplicate"""
        with pytest.raises(CatalogValidationError) as exc:
            await ProductService(test_db).create(
                "Espresso Roast",
                catalog.espresso.id,
                [by_slug("A", "sku"), AttributeValueInput(value="B", attribute_id=catalog.sku.id)],
            )

        assert exc.value.ids == [str(catalog.sku.id)]

    async def test_mistyped_values_reported_together(self, test_db, catalog):
        """Test every badly typed value is listed"""
        with pytest.raises(CatalogValidationError) as exc:
            await ProductService(test_db).create(
                "Espresso Roast",
                catalog.espresso.id,
                [by_slug("two", "shots"), by_slug("maybe", "organic")],
            )

        assert set(exc.value.ids) == {str(catalog.shots.id), str(catalog.organic.id)}
        assert "shots (NUMBER)" in exc.value.message

    async def test_oversized_integer_is_a_validation_error(self, test_db, catalog):
        """Test an integer beyond float range is reported, not raised as overflow"""
        with pytest.raises(CatalogValidationError) as exc:
            await ProductService(test_db).create(
                "Espresso Roast",
                catalog.espresso.id,
                [AttributeValueInput(value=10**400, attribute_id=catalog.shots.id)],
            )

        assert exc.value.ids == [str(catalog.shots.id)]
        assert "expected a finite number" in exc.value.message


class TestUpdateProduct:
    """Tests for product updates"""

    async def test_values_replace_whole_set(self, test_db, catalog):
        """Test submitted values replace every previous value and link"""
        service = ProductService(test_db)
        product = await service.create(
            "Espresso Roast",
            catalog.espresso.id,
            [by_slug("high", "caffeine-level"), by_slug("ABC-1", "sku")],
        )

        await service.update(product.id, attribute_values=[by_slug("ABC-2", "sku")])

        assert await held_values(test_db, product.id) == {"sku": "ABC-2"}
        assert await linked_attributes(test_db, product.id) == {catalog.sku.id}

    async def test_empty_values_clear_everything(self, test_db, catalog):
        """Test an empty list removes all values and links"""
        service = ProductService(test_db)
        product = await service.create("Espresso Roast", catalog.espresso.id, [by_slug("ABC-1", "sku")])

        await service.update(product.id, attribute_values=[])

        assert await held_values(test_db, product.id) == {}
        assert await linked_attributes(test_db, product.id) == set()

    async def test_move_without_values_keeps_them(self, test_db, catalog):
        """Test a category change alone does not prune values"""
        service = ProductService(test_db)
        product = await service.create(
            "Espresso Roast", catalog.espresso.id, [by_slug("high", "caffeine-level")]
        )

        moved = await service.update(product.id, category_id=catalog.tree.tea.id)

        assert moved.category_id == catalog.tree.tea.id
        assert await held_values(test_db, product.id) == {"caffeine-level": "high"}

    async def test_values_checked_against_new_category(self, test_db, catalog):
        """Test values sent with a move must apply to the destination"""
        service = ProductService(test_db)
        product = await service.create("Espresso Roast", catalog.espresso.id)

        with pytest.raises(CatalogValidationError):
            await service.update(
                product.id,
                category_id=catalog.tree.tea.id,
                attribute_values=[by_slug("high", "caffeine-level")],
            )

    async def test_move_to_non_leaf_rejected(self, test_db, catalog):
        """Test a product cannot move onto a group category"""
        service = ProductService(test_db)
        product = await service.create("Espresso Roast", catalog.espresso.id)

        with pytest.raises(CatalogValidationError):
            await service.update(product.id, category_id=catalog.tree.beverages.id)


class TestListAndRemoveProducts:
    """Tests for listing and deletion"""

    async def test_list_filters_and_pages(self, test_db, catalog):
        """Test name search, category filter and paging"""
        service = ProductService(test_db)
        await service.create("Espresso Roast", catalog.espresso.id)
        await service.create("Espresso Decaf", catalog.espresso.id)
        await service.create("Green Tea", catalog.tree.tea.id)

        page = await service.list(page=1, page_size=1, q="espresso")
        assert page.total == 2
        assert [p.name for p in page.items] == ["Espresso Decaf"]

        tea = await service.list(category_id=catalog.tree.tea.id)
        assert [p.name for p in tea.items] == ["Green Tea"]

    async def test_remove_drops_values_and_links(self, test_db, catalog):
        """Test deleting a product frees its attributes"""
        products = ProductService(test_db)
        product = await products.create("Espresso Roast", catalog.espresso.id, [by_slug("ABC-1", "sku")])

        await products.remove(product.id)

        assert await linked_attributes(test_db, product.id) == set()
        with pytest.raises(NotFoundError):
            await products.get(product.id)
        await AttributeService(test_db).remove(catalog.sku.id)
