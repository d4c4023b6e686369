"""
Provider-independent normalization helpers.

Slug generation, description cleanup, status and rating mapping shared by
every provider's extractor.
"""

import hashlib
import html
import re
import unicodedata
from datetime import datetime, timezone

from mangasync.models import ItemStatus

_TAG_RE = re.compile(r"<[^>]*>")
_SLUG_INVALID_RE = re.compile(r"[^a-z0-9-]")
_HYPHEN_RUN_RE = re.compile(r"-{2,}")

# Provider status vocabulary -> canonical status. Keys are normalized
# (lowercase, "_" and spaces as "-").
STATUS_MAP: dict[str, ItemStatus] = {
    "finished": ItemStatus.COMPLETED,
    "completed": ItemStatus.COMPLETED,
    "releasing": ItemStatus.ONGOING,
    "ongoing": ItemStatus.ONGOING,
    "not-yet-released": ItemStatus.UPCOMING,
    "upcoming": ItemStatus.UPCOMING,
    "cancelled": ItemStatus.CANCELLED,
    "canceled": ItemStatus.CANCELLED,
    "hiatus": ItemStatus.HIATUS,
}

AUTHOR_ROLES = frozenset({"story", "story & art"})


def slugify(title: str) -> str:
    """
    Create a URL-friendly slug from a title.

    Accents are folded to ASCII, then: lowercase, spaces to hyphens, keep
    only ``[a-z0-9-]``, collapse hyphen runs and trim hyphens at both ends.
    Titles with no ASCII letters or digits left (e.g. native-script titles)
    get a stable ``item-<hash>`` slug so a non-empty title never yields an
    empty slug.
    """
    folded = unicodedata.normalize("NFKD", title).encode("ascii", "ignore").decode("ascii")
    slug = folded.lower().replace(" ", "-")
    slug = _SLUG_INVALID_RE.sub("", slug)
    slug = _HYPHEN_RUN_RE.sub("-", slug)
    slug = slug.strip("-")
    if not slug and title:
        digest = hashlib.sha256(title.encode("utf-8")).hexdigest()[:10]
        slug = f"item-{digest}"
    return slug


def clean_description(description: str | None) -> str:
    """Remove markup tags, decode HTML entities and trim whitespace."""
    if not description:
        return ""
    cleaned = _TAG_RE.sub("", description)
    cleaned = html.unescape(cleaned)
    return cleaned.strip()


def map_status(status: str | None) -> ItemStatus:
    """Map a provider status string; anything unrecognized is ``ongoing``."""
    if not status:
        return ItemStatus.ONGOING
    key = status.strip().lower().replace("_", "-").replace(" ", "-")
    return STATUS_MAP.get(key, ItemStatus.ONGOING)


def rescale_rating(score: float | int | None) -> float | None:
    """Rescale a 0-100 score to the 0-10 scale."""
    if score is None:
        return None
    return max(0.0, min(10.0, float(score) / 10.0))


def is_author_role(role: str | None) -> bool:
    """True for staff roles that credit the story author."""
    return bool(role) and role.strip().lower() in AUTHOR_ROLES


def first_nonempty(*values: str | None) -> str:
    """Return the first value that is a non-blank string, else ""."""
    for value in values:
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def parse_datetime(value: str | int | float | None) -> datetime | None:
    """Parse an ISO 8601 string or Unix timestamp into an aware datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        if value <= 0:
            return None
        return datetime.fromtimestamp(value, tz=timezone.utc)
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
