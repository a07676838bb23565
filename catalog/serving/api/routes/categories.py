"""
Categories API Endpoints

Category CRUD and the nested tree read model. Every mutation drops the
cached tree.
"""

from datetime import datetime
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends
from pydantic import Field
from sqlalchemy.ext.asyncio import AsyncSession

from catalog.database.connection import get_db_dependency
from catalog.serving.api.schemas import CamelModel
from catalog.serving.cache import commit_and_invalidate, tree_cache
from catalog.services.categories import UNSET, CategoryService

router = APIRouter()


class CategoryCreate(CamelModel):
    name: str = Field(..., min_length=1, max_length=200)
    slug: Optional[str] = Field(None, max_length=200)
    parent_id: Optional[UUID] = None


class CategoryUpdate(CamelModel):
    """Omit parentId to keep the parent; send null to detach to the root."""
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    slug: Optional[str] = Field(None, max_length=200)
    parent_id: Optional[UUID] = None


class CategoryOut(CamelModel):
    id: UUID
    name: str
    slug: str
    parent_id: Optional[UUID]
    is_leaf: bool
    created_at: datetime
    updated_at: datetime


class CategoryCounts(CamelModel):
    attributes_direct: int
    products: int


class CategoryTreeNode(CamelModel):
    id: UUID
    name: str
    slug: str
    parent_id: Optional[UUID]
    is_leaf: bool
    counts: CategoryCounts
    children: List["CategoryTreeNode"] = []


@router.post("", response_model=CategoryOut, status_code=201)
async def create_category(
    body: CategoryCreate,
    db: AsyncSession = Depends(get_db_dependency),
) -> CategoryOut:
    category = await CategoryService(db).create(body.name, body.slug, body.parent_id)
    await commit_and_invalidate(db)
    return CategoryOut.model_validate(category)


@router.get("", response_model=List[CategoryOut])
async def list_categories(
    db: AsyncSession = Depends(get_db_dependency),
) -> List[CategoryOut]:
    """Flat list ordered by name."""
    categories = await CategoryService(db).list_all()
    return [CategoryOut.model_validate(c) for c in categories]


@router.get("/tree", response_model=List[CategoryTreeNode])
async def get_category_tree(
    db: AsyncSession = Depends(get_db_dependency),
):
    """Roots with nested children and per-node counts."""
    async def build():
        return [node.to_dict() for node in await CategoryService(db).get_tree()]

    return await tree_cache.get_or_set("all", build)


@router.get("/{category_id}", response_model=CategoryOut)
async def get_category(
    category_id: UUID,
    db: AsyncSession = Depends(get_db_dependency),
) -> CategoryOut:
    return CategoryOut.model_validate(await CategoryService(db).get(category_id))


@router.patch("/{category_id}", response_model=CategoryOut)
async def update_category(
    category_id: UUID,
    body: CategoryUpdate,
    db: AsyncSession = Depends(get_db_dependency),
) -> CategoryOut:
    parent_id = body.parent_id if "parent_id" in body.model_fields_set else UNSET
    category = await CategoryService(db).update(
        category_id,
        name=body.name,
        slug=body.slug,
        parent_id=parent_id,
    )
    await commit_and_invalidate(db)
    return CategoryOut.model_validate(category)


@router.delete("/{category_id}")
async def delete_category(
    category_id: UUID,
    db: AsyncSession = Depends(get_db_dependency),
):
    await CategoryService(db).remove(category_id)
    await commit_and_invalidate(db)
    return {"ok": True}
