"""Canonical representation of loosely-typed agent output fields.

Generation agents return maps whose field types drift between calls: the
same ``key_messages`` field may arrive as a sentence or as a list. Every
such field is turned into a ``NormalizedField`` once, when the stage
output is parsed, and persisters only ever read its ``text``.
"""

import json
import re
from dataclasses import dataclass
from enum import StrEnum
from typing import Any


class FieldKind(StrEnum):
    """Tag of a normalized field."""

    TEXT = "text"
    STRUCTURED = "structured"


@dataclass(frozen=True)
class NormalizedField:
    """A field value tagged as plain text or structured data.

    Attributes:
        kind: Whether the agent sent text or a list/dict.
        value: The original value.
        text: Canonical string form (JSON for structured values).
    """

    kind: FieldKind
    value: Any
    text: str

    @property
    def is_structured(self) -> bool:
        return self.kind == FieldKind.STRUCTURED


def normalize_field(value: Any) -> NormalizedField:
    """Normalize one raw field value.

    Lists and dicts become structured fields whose text is their JSON
    encoding with non-ASCII characters preserved. Strings are kept, None
    becomes an empty string and any other scalar is passed through str().
    """
    if isinstance(value, NormalizedField):
        return value
    if isinstance(value, (list, dict)):
        return NormalizedField(
            kind=FieldKind.STRUCTURED,
            value=value,
            text=json.dumps(value, ensure_ascii=False),
        )
    if value is None:
        return NormalizedField(kind=FieldKind.TEXT, value=None, text="")
    if isinstance(value, str):
        return NormalizedField(kind=FieldKind.TEXT, value=value, text=value)
    return NormalizedField(kind=FieldKind.TEXT, value=value, text=str(value))


def normalize_optional_field(value: Any) -> NormalizedField | None:
    if value is None:
        return None
    return normalize_field(value)


def unwrap_result(result: Any) -> Any:
    """Strip the ``{"data": ...}`` envelope some agents wrap results in."""
    if isinstance(result, dict) and set(result) == {"data"}:
        return result["data"]
    return result


_RANGE_PATTERN = re.compile(r"(\d+)\s*-\s*(\d+)")
_NUMBER_PATTERN = re.compile(r"\d+")

DEFAULT_AGE = 35


def extract_age(value: Any) -> int:
    """Extract an age from an int, a range like ``"38-45"`` or free text.

    A range yields its rounded midpoint; free text yields its first number.
    Anything unparseable yields ``DEFAULT_AGE``.
    """
    if isinstance(value, bool):
        return DEFAULT_AGE
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return round(value)
    if isinstance(value, str):
        match = _RANGE_PATTERN.search(value)
        if match:
            low, high = int(match.group(1)), int(match.group(2))
            return round((low + high) / 2)
        match = _NUMBER_PATTERN.search(value)
        if match:
            return int(match.group(0))
    return DEFAULT_AGE


def score_to_quality(score: Any) -> float | None:
    """Convert a 0-100 agent score into a 0-1 quality score."""
    if isinstance(score, bool) or not isinstance(score, (int, float)):
        return None
    return score / 100


ASSET_CHANNELS: dict[str, str] = {
    "google_ads": "search",
    "bing_ads": "search",
    "linkedin_post": "social",
    "facebook_post": "social",
    "instagram_post": "social",
    "iab_banner": "display",
    "mail": "email",
    "article_seo": "content",
}


def channel_for(asset_type: str) -> str:
    """Map an asset type to its distribution channel."""
    return ASSET_CHANNELS.get(asset_type, "other")
