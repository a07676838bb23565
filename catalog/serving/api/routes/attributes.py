"""
Attributes API Endpoints

Attribute CRUD plus the applicability-aware listing. `categoryIds` and
`linkType` accept comma-separated values, repeated parameters, or both.
"""

from datetime import datetime
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import Field
from sqlalchemy.ext.asyncio import AsyncSession

from catalog.config import get_settings
from catalog.core.exceptions import CatalogValidationError, describe_ids
from catalog.database.connection import get_db_dependency
from catalog.database.models import Attribute, AttributeType
from catalog.serving.api.schemas import CamelModel, CategoryRefOut
from catalog.serving.cache import commit_and_invalidate
from catalog.services.applicability import LinkType, parse_link_type_filters
from catalog.services.attributes import (
    AttributeQuery,
    AttributeService,
    AttributeSort,
    CategoryRef,
)

settings = get_settings()
router = APIRouter()


class AttributeCreate(CamelModel):
    name: str = Field(..., min_length=1, max_length=200)
    slug: Optional[str] = Field(None, max_length=200)
    type: AttributeType = AttributeType.TEXT
    category_ids: List[UUID] = []


class AttributeUpdate(CamelModel):
    """categoryIds, when present, becomes the full link set ([] = global)."""
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    slug: Optional[str] = Field(None, max_length=200)
    type: Optional[AttributeType] = None
    category_ids: Optional[List[UUID]] = None


class AttributeOut(CamelModel):
    id: UUID
    name: str
    slug: str
    type: AttributeType
    created_at: datetime
    updated_at: datetime
    categories: List[CategoryRefOut] = []


class AttributeCreated(CamelModel):
    attribute: AttributeOut
    links_created: int


class ApplicabilityOut(CamelModel):
    category_id: UUID
    link_type: LinkType
    depth: Optional[int] = None


class AttributeListItemOut(AttributeOut):
    products_in_use: int
    applicability: Optional[List[ApplicabilityOut]] = None


class AttributeFilters(CamelModel):
    categories: List[CategoryRefOut]
    attribute_types: List[str]


class AttributeListResponse(CamelModel):
    items: List[AttributeListItemOut]
    total: int
    page: int
    page_size: int
    filters: AttributeFilters


def split_multi(values: Optional[List[str]]) -> List[str]:
    """Flatten repeated and comma-separated query values."""
    return [part.strip() for value in values or [] for part in value.split(",") if part.strip()]


def parse_uuids(values: List[str]) -> List[UUID]:
    parsed, invalid = [], []
    for value in values:
        try:
            parsed.append(UUID(value))
        except ValueError:
            invalid.append(value)
    if invalid:
        raise CatalogValidationError(describe_ids("Malformed categoryIds", invalid), ids=invalid)
    return parsed


def _refs(refs: List[CategoryRef]) -> List[CategoryRefOut]:
    return [CategoryRefOut(id=r.id, name=r.name, slug=r.slug) for r in refs]


def _attribute_out(attribute: Attribute, refs: List[CategoryRef]) -> AttributeOut:
    return AttributeOut(
        id=attribute.id,
        name=attribute.name,
        slug=attribute.slug,
        type=attribute.type,
        created_at=attribute.created_at,
        updated_at=attribute.updated_at,
        categories=_refs(refs),
    )


@router.post("", response_model=AttributeCreated, status_code=201)
async def create_attribute(
    body: AttributeCreate,
    db: AsyncSession = Depends(get_db_dependency),
) -> AttributeCreated:
    service = AttributeService(db)
    attribute, links_created = await service.create(
        body.name,
        slug=body.slug,
        type=body.type,
        category_ids=body.category_ids,
    )
    refs = await service.category_refs([attribute.id])
    await commit_and_invalidate(db)
    return AttributeCreated(
        attribute=_attribute_out(attribute, refs.get(attribute.id, [])),
        links_created=links_created,
    )


@router.get("", response_model=AttributeListResponse, response_model_exclude_none=True)
async def list_attributes(
    category_ids: Optional[List[str]] = Query(None, alias="categoryIds"),
    link_type: Optional[List[str]] = Query(None, alias="linkType"),
    q: Optional[str] = None,
    page: int = Query(1, ge=1),
    page_size: Optional[int] = Query(None, alias="pageSize"),
    sort: AttributeSort = AttributeSort.NAME,
    db: AsyncSession = Depends(get_db_dependency),
) -> AttributeListResponse:
    """
    List attributes, optionally scoped to selected categories.

    pageSize is clamped to [1, CATALOG_MAX_PAGE_SIZE].
    """
    try:
        link_types = parse_link_type_filters(split_multi(link_type))
    except ValueError as e:
        raise CatalogValidationError(str(e)) from None

    query = AttributeQuery(
        category_ids=parse_uuids(split_multi(category_ids)),
        link_types=link_types,
        q=q,
        page=page,
        page_size=page_size if page_size is not None else settings.catalog.default_page_size,
        sort=sort,
    )
    result = await AttributeService(db).find_attributes(query)

    items = []
    for item in result.items:
        base = _attribute_out(item.attribute, item.categories)
        applicability = None
        if item.applicability is not None:
            applicability = [
                ApplicabilityOut(category_id=a.category_id, link_type=a.link_type, depth=a.depth)
                for a in item.applicability
            ]
        items.append(
            AttributeListItemOut(
                **base.model_dump(),
                products_in_use=item.products_in_use,
                applicability=applicability,
            )
        )

    return AttributeListResponse(
        items=items,
        total=result.total,
        page=result.page,
        page_size=result.page_size,
        filters=AttributeFilters(
            categories=_refs(result.filter_categories),
            attribute_types=list(result.attribute_types),
        ),
    )


@router.get("/{attribute_id}", response_model=AttributeOut)
async def get_attribute(
    attribute_id: UUID,
    db: AsyncSession = Depends(get_db_dependency),
) -> AttributeOut:
    service = AttributeService(db)
    attribute = await service.get(attribute_id)
    refs = await service.category_refs([attribute.id])
    return _attribute_out(attribute, refs.get(attribute.id, []))


@router.patch("/{attribute_id}", response_model=AttributeOut)
async def update_attribute(
    attribute_id: UUID,
    body: AttributeUpdate,
    db: AsyncSession = Depends(get_db_dependency),
) -> AttributeOut:
    service = AttributeService(db)
    attribute = await service.update(
        attribute_id,
        name=body.name,
        slug=body.slug,
        type=body.type,
        category_ids=body.category_ids,
    )
    refs = await service.category_refs([attribute.id])
    if body.category_ids is not None:
        await commit_and_invalidate(db)
    return _attribute_out(attribute, refs.get(attribute.id, []))


@router.delete("/{attribute_id}")
async def delete_attribute(
    attribute_id: UUID,
    db: AsyncSession = Depends(get_db_dependency),
):
    await AttributeService(db).remove(attribute_id)
    await commit_and_invalidate(db)
    return {"ok": True}
