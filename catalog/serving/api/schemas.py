"""
Shared API schema pieces

Bodies use camelCase on the wire; snake_case names are accepted too.
"""

from uuid import UUID

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model with camelCase aliases"""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


class CategoryRefOut(CamelModel):
    id: UUID
    name: str
    slug: str
