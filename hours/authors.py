"""Author filter matching.

Two flavours: the strict check re-applied after server-side filtered queries
(case-sensitive substring on raw author and username), and the tolerant check
used when reading the local store, where commit metadata and PR display names
spell the same person differently (jane.doe, jane_doe, Jane Doe).
"""

import re

_SEPARATORS = re.compile(r"[\s._]+")


def commit_matches_author(author_raw: str | None, author_username: str | None, author: str) -> bool:
    """Strict substring match against raw author string or username."""
    return author in (author_raw or "") or author in (author_username or "")


def author_variants(author: str) -> list[str]:
    """Lowercased filter plus variants with underscores, dots and spaces interchanged."""
    base = author.strip().lower()
    if not base:
        return []
    variants = [base]
    for sep in (" ", ".", "_"):
        v = _SEPARATORS.sub(sep, base)
        if v not in variants:
            variants.append(v)
    return variants


def matches_any_variant(values: list[str | None], author: str) -> bool:
    """True if any non-empty value contains any variant of author (case-insensitive)."""
    variants = author_variants(author)
    if not variants:
        return True
    for value in values:
        if not value:
            continue
        lowered = value.lower()
        if any(v in lowered for v in variants):
            return True
    return False
