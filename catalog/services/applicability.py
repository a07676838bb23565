"""
Attribute Applicability Resolution

Answers "does attribute A apply to category C, and how" using the closure
table:

- global:    A has no category links at all
- direct:    A is linked to C itself (closure depth 0)
- inherited: A is linked to a proper ancestor of C (closure depth > 0)
- none:      none of the above

When several linked categories are ancestors of C, the nearest one
(minimum depth) decides between direct and inherited and is the depth
reported.

Two halves live here: SQL predicates used to filter attribute queries,
and a pure classifier that builds the per-category applicability matrix
from closure rows already fetched.
"""

import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set

from sqlalchemy import ColumnElement, and_, exists, not_, or_, select
from sqlalchemy.orm import aliased

from catalog.database.models import Attribute, CategoryAttributeLink, CategoryTreePath


class LinkType(str, Enum):
    """Classification of one attribute against one category"""
    DIRECT = "direct"
    INHERITED = "inherited"
    GLOBAL = "global"
    NONE = "none"


class LinkTypeFilter(str, Enum):
    """Link-type filter values accepted by attribute listings"""
    DIRECT = "direct"
    INHERITED = "inherited"
    GLOBAL = "global"
    NOT_APPLICABLE = "not-applicable"


_DEPTH_CARRYING = (LinkType.DIRECT, LinkType.INHERITED)


@dataclass(frozen=True)
class Applicability:
    """
    One cell of the applicability matrix.

    Depth is carried only by the direct (always 0) and inherited (> 0)
    variants; global and none never have one.
    """
    category_id: uuid.UUID
    link_type: LinkType
    depth: Optional[int] = None

    def __post_init__(self):
        if self.link_type in _DEPTH_CARRYING:
            if self.depth is None:
                raise ValueError(f"{self.link_type.value} applicability requires a depth")
            if self.link_type == LinkType.DIRECT and self.depth != 0:
                raise ValueError("direct applicability has depth 0")
            if self.link_type == LinkType.INHERITED and self.depth < 1:
                raise ValueError("inherited applicability has depth >= 1")
        elif self.depth is not None:
            raise ValueError(f"{self.link_type.value} applicability carries no depth")

    @classmethod
    def direct(cls, category_id: uuid.UUID) -> "Applicability":
        return cls(category_id, LinkType.DIRECT, 0)

    @classmethod
    def inherited(cls, category_id: uuid.UUID, depth: int) -> "Applicability":
        return cls(category_id, LinkType.INHERITED, depth)

    @classmethod
    def global_(cls, category_id: uuid.UUID) -> "Applicability":
        return cls(category_id, LinkType.GLOBAL)

    @classmethod
    def none(cls, category_id: uuid.UUID) -> "Applicability":
        return cls(category_id, LinkType.NONE)

    @property
    def is_applicable(self) -> bool:
        return self.link_type != LinkType.NONE


def parse_link_type_filters(values: Iterable[str]) -> List[LinkTypeFilter]:
    """
    Parse raw filter strings, deduplicated in first-seen order.

    Raises:
        ValueError: listing every unrecognised value
    """
    parsed: List[LinkTypeFilter] = []
    invalid: List[str] = []
    for raw in values:
        value = raw.strip().lower()
        if not value:
            continue
        try:
            link_filter = LinkTypeFilter(value)
        except ValueError:
            invalid.append(raw)
            continue
        if link_filter not in parsed:
            parsed.append(link_filter)
    if invalid:
        allowed = ", ".join(f.value for f in LinkTypeFilter)
        raise ValueError(f"Unknown linkType values: {', '.join(invalid)} (allowed: {allowed})")
    return parsed


# =============================================================================
# SQL PREDICATES (correlated against Attribute)
# =============================================================================

def is_global() -> ColumnElement[bool]:
    """Attribute has zero category links."""
    return not_(
        exists().where(CategoryAttributeLink.attribute_id == Attribute.id)
    )


def _linked_via_closure(category_ids: Sequence[uuid.UUID], *depth_conditions) -> ColumnElement[bool]:
    """Attribute has a link to an ancestor-or-self of a selected category."""
    return exists(
        select(CategoryAttributeLink.attribute_id)
        .join(CategoryTreePath, CategoryTreePath.ancestor_id == CategoryAttributeLink.category_id)
        .where(
            CategoryAttributeLink.attribute_id == Attribute.id,
            CategoryTreePath.descendant_id.in_(category_ids),
            *depth_conditions,
        )
    )


def applicable_to(category_ids: Sequence[uuid.UUID]) -> ColumnElement[bool]:
    """Global, or linked to some ancestor-or-self of a selected category."""
    return or_(is_global(), _linked_via_closure(category_ids, CategoryTreePath.depth >= 0))


def directly_linked_to(category_ids: Sequence[uuid.UUID]) -> ColumnElement[bool]:
    """Classified direct for at least one selected category."""
    return _linked_via_closure(category_ids, CategoryTreePath.depth == 0)


def inherited_by(category_ids: Sequence[uuid.UUID]) -> ColumnElement[bool]:
    """
    Classified inherited for at least one selected category.

    A link at depth > 0 only counts when the same selected category has no
    direct link, matching the minimum-depth rule of the classifier.
    """
    own_link = aliased(CategoryAttributeLink)
    return _linked_via_closure(
        category_ids,
        CategoryTreePath.depth > 0,
        not_(
            exists().where(
                own_link.attribute_id == Attribute.id,
                own_link.category_id == CategoryTreePath.descendant_id,
            )
        ),
    )


def link_type_clause(
    category_ids: Sequence[uuid.UUID],
    filters: Sequence[LinkTypeFilter],
) -> ColumnElement[bool]:
    """
    WHERE clause for a category selection plus optional link-type filters.

    `not-applicable` is exclusive: when present every other filter is
    ignored and the result is the complement of the applicable set over all
    attributes (every attribute that is neither global nor linked to an
    ancestor-or-self of a selected category). Other filters are OR'd
    together inside the applicable set.
    """
    if LinkTypeFilter.NOT_APPLICABLE in filters:
        return not_(applicable_to(category_ids))

    applicable = applicable_to(category_ids)
    type_clauses = []
    if LinkTypeFilter.GLOBAL in filters:
        type_clauses.append(is_global())
    if LinkTypeFilter.DIRECT in filters:
        type_clauses.append(directly_linked_to(category_ids))
    if LinkTypeFilter.INHERITED in filters:
        type_clauses.append(inherited_by(category_ids))

    if not type_clauses:
        return applicable
    return and_(applicable, or_(*type_clauses))


# =============================================================================
# MATRIX CLASSIFICATION
# =============================================================================

DepthMatrix = Dict[uuid.UUID, Dict[uuid.UUID, int]]


def build_depth_matrix(paths: Iterable) -> DepthMatrix:
    """
    Index closure rows as {descendant: {ancestor: depth}}.

    Rows need `ancestor_id`, `descendant_id` and `depth` attributes.
    Duplicates keep the smallest depth.
    """
    matrix: DepthMatrix = {}
    for path in paths:
        row = matrix.setdefault(path.descendant_id, {})
        previous = row.get(path.ancestor_id)
        if previous is None or path.depth < previous:
            row[path.ancestor_id] = path.depth
    return matrix


def classify(
    category_id: uuid.UUID,
    linked_category_ids: Set[uuid.UUID],
    depth_matrix: Mapping[uuid.UUID, Mapping[uuid.UUID, int]],
) -> Applicability:
    """Classify one attribute (given its linked categories) against one category."""
    if not linked_category_ids:
        return Applicability.global_(category_id)

    ancestors = depth_matrix.get(category_id, {})
    depths = [ancestors[linked] for linked in linked_category_ids if linked in ancestors]
    if not depths:
        return Applicability.none(category_id)

    best = min(depths)
    if best == 0:
        return Applicability.direct(category_id)
    return Applicability.inherited(category_id, best)


def classify_many(
    category_ids: Sequence[uuid.UUID],
    linked_category_ids: Set[uuid.UUID],
    depth_matrix: Mapping[uuid.UUID, Mapping[uuid.UUID, int]],
) -> List[Applicability]:
    """One applicability cell per selected category, in selection order."""
    return [classify(category_id, linked_category_ids, depth_matrix) for category_id in category_ids]
