"""Synchronous metadata validation shared by finalize and metadata edits."""

import json
from typing import Any, Dict, List, Optional

from ..core.exceptions import ValidationError
from ..core.image_utils import validate_coordinates
from ..core.models import Coordinates, MetadataDraft
from ..core.protocols import CategoryResolver

MAX_TITLE_LENGTH = 255
MAX_TAG_LENGTH = 50
MAX_TAGS_PER_IMAGE = 20
MAX_LOCATION_LENGTH = 255


def validate_title(title: Optional[str]) -> str:
    trimmed = str(title or "").strip()
    if not trimmed:
        raise ValidationError("Title must not be empty")
    if len(trimmed) > MAX_TITLE_LENGTH:
        raise ValidationError(f"Title must be at most {MAX_TITLE_LENGTH} characters")
    return trimmed


def resolve_category(category: Optional[str], resolver: CategoryResolver) -> str:
    trimmed = str(category or "").strip()
    if not trimmed:
        raise ValidationError("Category must not be empty")
    resolved = resolver.resolve(trimmed)
    if not resolved:
        raise ValidationError(f"Category '{trimmed}' does not exist")
    return resolved


def normalize_tags(tags: Any) -> List[str]:
    """
    Trimmed, lower-cased, deduplicated tags.

    Accepts a list, a JSON-encoded list or a comma separated string;
    anything else yields no tags.
    Overlong tags are dropped and at most MAX_TAGS_PER_IMAGE are kept.
    """
    if not tags:
        return []
    if isinstance(tags, str):
        try:
            tags = json.loads(tags)
        except ValueError:
            tags = tags.split(",")
    if not isinstance(tags, (list, tuple)):
        return []

    seen: List[str] = []
    for tag in tags:
        normalized = str(tag).strip().lower()
        if 0 < len(normalized) <= MAX_TAG_LENGTH and normalized not in seen:
            seen.append(normalized)
    return seen[:MAX_TAGS_PER_IMAGE]


def normalize_location(location: Optional[str]) -> Optional[str]:
    trimmed = (location or "").strip()
    if len(trimmed) > MAX_LOCATION_LENGTH:
        raise ValidationError(f"Location must be at most {MAX_LOCATION_LENGTH} characters")
    return trimmed or None


def validate_draft(draft: MetadataDraft, resolver: CategoryResolver) -> Dict[str, Any]:
    """Validate a finalize draft into ImageRecord field values."""
    coordinates = validate_coordinates(draft.coordinates)
    exif_hints: Dict[str, Any] = {}
    if draft.camera_model and draft.camera_model.strip():
        exif_hints["Model"] = draft.camera_model.strip()
    return {
        "title": validate_title(draft.title),
        "category_ref": resolve_category(draft.category, resolver),
        "location": normalize_location(draft.location),
        "coordinates": Coordinates(**coordinates) if coordinates else None,
        "tags": normalize_tags(draft.tags),
        "exif": exif_hints,
    }
