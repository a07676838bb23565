"""URL-safe slug generation for categories and attributes."""

import re

_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def to_slug(value: str) -> str:
    """
    Lowercase, collapse every run of non-alphanumerics to '-', trim dashes.

    Example:
        >>> to_slug("  Caffeine Level (mg) ")
        'caffeine-level-mg'
    """
    return _NON_ALNUM.sub("-", value.strip().lower()).strip("-")
