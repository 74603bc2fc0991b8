import json
from dataclasses import dataclass, field
from typing import Any, Optional
from config import (DEFAULT_MAX_IMAGE_SIZE, DEFAULT_MAX_REPLIES, DEFAULT_MAX_THREADS,
                    MAX_POST_LENGTH, MAX_TAGS)


def _as_limit(value: Any) -> Optional[int]:
    # bool is an int subclass but never a meaningful limit
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return int(value)


@dataclass(slots=True)
class BoardSettings:
    """Per-board overrides. ``None`` means "use the system default"."""

    max_threads: Optional[int] = None
    max_replies: Optional[int] = None
    max_image_size: Optional[int] = None

    @classmethod
    def from_mapping(cls, raw: Optional[dict[str, Any]]) -> "BoardSettings":
        """Build settings from a loosely typed map, ignoring values of the wrong type."""
        raw = raw or {}
        return cls(
            max_threads=_as_limit(raw.get("max_threads")),
            max_replies=_as_limit(raw.get("max_replies")),
            max_image_size=_as_limit(raw.get("max_image_size")),
        )

    def to_dict(self) -> dict[str, int]:
        values = {
            "max_threads": self.max_threads,
            "max_replies": self.max_replies,
            "max_image_size": self.max_image_size,
        }
        return {key: value for key, value in values.items() if value is not None}


@dataclass(slots=True)
class Limits:
    """System-wide admission limits, handed to the admission engine at construction."""

    max_post_length: int = MAX_POST_LENGTH
    max_tags: int = MAX_TAGS
    default_max_threads: int = DEFAULT_MAX_THREADS
    default_max_replies: int = DEFAULT_MAX_REPLIES
    default_max_image_size: int = DEFAULT_MAX_IMAGE_SIZE


@dataclass(slots=True)
class BoardLimits:
    max_threads: int
    max_replies: int
    max_image_size: int


@dataclass(slots=True)
class Board:
    id: int
    name: str
    slug: str
    description: str
    created_at: float
    settings: BoardSettings = field(default_factory=BoardSettings)

    def resolve_limits(self, limits: Limits) -> BoardLimits:
        """Resolve this board's overrides against the system defaults."""
        s = self.settings
        return BoardLimits(
            max_threads=s.max_threads if s.max_threads is not None else limits.default_max_threads,
            max_replies=s.max_replies if s.max_replies is not None else limits.default_max_replies,
            max_image_size=s.max_image_size if s.max_image_size is not None else limits.default_max_image_size,
        )

    @classmethod
    def from_row(cls, row) -> "Board":
        data = dict(row)
        settings = data.get("settings")
        return cls(
            id=data["id"],
            name=data["name"],
            slug=data["slug"],
            description=data["description"],
            created_at=data["created_at"],
            settings=BoardSettings.from_mapping(json.loads(settings) if settings else {}),
        )

    def __str__(self) -> str:
        return f"Board '/{self.slug}/' {self.name}: {self.description}"
