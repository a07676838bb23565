"""
Products API Endpoints

Products with typed attribute values. Attribute references in bodies are
`attributeId` or `attributeSlug`; the id wins when both are sent.
"""

from datetime import datetime
from typing import Any, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import Field
from sqlalchemy.ext.asyncio import AsyncSession

from catalog.database.connection import get_db_dependency
from catalog.database.models import AttributeType, Product
from catalog.serving.api.schemas import CamelModel
from catalog.serving.cache import commit_and_invalidate
from catalog.services.products import AttributeValueInput, ProductService

router = APIRouter()


class AttributeValueIn(CamelModel):
    attribute_id: Optional[UUID] = None
    attribute_slug: Optional[str] = None
    value: Any = None


class ProductCreate(CamelModel):
    name: str = Field(..., min_length=1, max_length=200)
    category_id: UUID
    attribute_values: List[AttributeValueIn] = []


class ProductUpdate(CamelModel):
    """attributeValues, when present, replaces the product's whole value set."""
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    category_id: Optional[UUID] = None
    attribute_values: Optional[List[AttributeValueIn]] = None


class AttributeValueOut(CamelModel):
    attribute_id: UUID
    attribute_slug: str
    attribute_name: str
    type: AttributeType
    value: Any


class ProductOut(CamelModel):
    id: UUID
    name: str
    category_id: UUID
    created_at: datetime
    updated_at: datetime


class ProductDetail(ProductOut):
    attribute_values: List[AttributeValueOut] = []


class ProductListResponse(CamelModel):
    """Paginated product list"""
    items: List[ProductOut]
    total: int
    page: int
    page_size: int


def _inputs(values: Optional[List[AttributeValueIn]]) -> Optional[List[AttributeValueInput]]:
    if values is None:
        return None
    return [
        AttributeValueInput(value=v.value, attribute_id=v.attribute_id, attribute_slug=v.attribute_slug)
        for v in values
    ]


async def _detail(service: ProductService, product: Product) -> ProductDetail:
    values = await service.values_for(product.id)
    return ProductDetail(
        **ProductOut.model_validate(product).model_dump(),
        attribute_values=[
            AttributeValueOut(
                attribute_id=attribute.id,
                attribute_slug=attribute.slug,
                attribute_name=attribute.name,
                type=attribute.type,
                value=value,
            )
            for attribute, value in values
        ],
    )


@router.post("", response_model=ProductDetail, status_code=201)
async def create_product(
    body: ProductCreate,
    db: AsyncSession = Depends(get_db_dependency),
) -> ProductDetail:
    service = ProductService(db)
    product = await service.create(body.name, body.category_id, _inputs(body.attribute_values))
    await commit_and_invalidate(db)
    return await _detail(service, product)


@router.get("", response_model=ProductListResponse)
async def list_products(
    page: int = Query(1, ge=1),
    page_size: Optional[int] = Query(None, alias="pageSize"),
    q: Optional[str] = None,
    category_id: Optional[UUID] = Query(None, alias="categoryId"),
    db: AsyncSession = Depends(get_db_dependency),
) -> ProductListResponse:
    """List products by name, optionally searched and filtered by category."""
    result = await ProductService(db).list(page=page, page_size=page_size, q=q, category_id=category_id)
    return ProductListResponse(
        items=[ProductOut.model_validate(p) for p in result.items],
        total=result.total,
        page=result.page,
        page_size=result.page_size,
    )


@router.get("/{product_id}", response_model=ProductDetail)
async def get_product(
    product_id: UUID,
    db: AsyncSession = Depends(get_db_dependency),
) -> ProductDetail:
    service = ProductService(db)
    return await _detail(service, await service.get(product_id))


@router.patch("/{product_id}", response_model=ProductDetail)
async def update_product(
    product_id: UUID,
    body: ProductUpdate,
    db: AsyncSession = Depends(get_db_dependency),
) -> ProductDetail:
    service = ProductService(db)
    product = await service.update(
        product_id,
        name=body.name,
        category_id=body.category_id,
        attribute_values=_inputs(body.attribute_values),
    )
    await commit_and_invalidate(db)
    return await _detail(service, product)


@router.delete("/{product_id}")
async def delete_product(
    product_id: UUID,
    db: AsyncSession = Depends(get_db_dependency),
):
    await ProductService(db).remove(product_id)
    await commit_and_invalidate(db)
    return {"ok": True}
