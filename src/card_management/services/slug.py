"""
Slug generation for public card URLs.

Generated slugs are built from the card holder's name; names that reduce
to fewer than three usable characters fall back to a synthetic
`card-<random>` slug. Generated and disambiguated slugs never exceed
MAX_SLUG_LENGTH. Client-supplied slugs are validated, not rewritten.
"""

from __future__ import annotations

import random
import re
import string
from typing import Optional

from ..errors import CardValidationError


MIN_SLUG_LENGTH = 3
MAX_SLUG_LENGTH = 30
FALLBACK_PREFIX = "card-"
FALLBACK_SUFFIX_LENGTH = 6
COLLISION_SUFFIX_LENGTH = 4

_ALPHABET = string.ascii_lowercase + string.digits
_NON_SLUG_RUN = re.compile(r"[^a-z0-9]+")
_VALID_SLUG = re.compile(r"^[a-z0-9-]+$")

_system_random = random.SystemRandom()


def _random_suffix(length: int, rng: Optional[random.Random] = None) -> str:
    rng = rng or _system_random
    return "".join(rng.choice(_ALPHABET) for _ in range(length))


def _slug_part(value: Optional[str]) -> str:
    cleaned = _NON_SLUG_RUN.sub("-", (value or "").strip().lower())
    return cleaned.strip("-")


def _truncate(slug: str, length: int) -> str:
    return slug[:length].rstrip("-")


def slugify_name(first_name: Optional[str], last_name: Optional[str]) -> str:
    """Deterministic name-to-slug step; may return an empty or too-short string."""
    parts = [p for p in (_slug_part(first_name), _slug_part(last_name)) if p]
    return "-".join(parts)


def fallback_slug(rng: Optional[random.Random] = None) -> str:
    return FALLBACK_PREFIX + _random_suffix(FALLBACK_SUFFIX_LENGTH, rng)


def generate_slug(
    first_name: Optional[str],
    last_name: Optional[str],
    rng: Optional[random.Random] = None,
) -> str:
    """
    Build a candidate slug from a name.

    >>> generate_slug("Jane", "Doe")
    'jane-doe'
    """
    candidate = slugify_name(first_name, last_name)
    if len(candidate) < MIN_SLUG_LENGTH:
        return fallback_slug(rng)
    return _truncate(candidate, MAX_SLUG_LENGTH)


def disambiguate(base_slug: str, rng: Optional[random.Random] = None) -> str:
    """Derive an alternative candidate after `base_slug` was found taken."""
    head = _truncate(base_slug, MAX_SLUG_LENGTH - COLLISION_SUFFIX_LENGTH - 1)
    return f"{head}-{_random_suffix(COLLISION_SUFFIX_LENGTH, rng)}"


def validate_slug(slug: str) -> str:
    """Check a client-supplied slug; returns it lowercased."""
    normalized = slug.strip().lower()
    if not MIN_SLUG_LENGTH <= len(normalized) <= MAX_SLUG_LENGTH:
        raise CardValidationError(
            f"Slug must be between {MIN_SLUG_LENGTH} and {MAX_SLUG_LENGTH} characters",
            details={"slug": slug},
        )
    if not _VALID_SLUG.match(normalized) or normalized.strip("-") != normalized:
        raise CardValidationError(
            "Slug may only contain lowercase letters, digits and inner hyphens",
            details={"slug": slug},
        )
    return normalized


def share_url(base_url: str, slug: str) -> str:
    """Public URL a card is published at."""
    return f"{base_url.rstrip('/')}/c/{slug}"
