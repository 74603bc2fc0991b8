import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class ThreadState(str, Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"


@dataclass(slots=True)
class Post:
    """A thread (``thread_id is None``) or a reply to the thread ``thread_id``."""

    id: int
    board_id: int
    content: str
    created_at: float
    last_bumped_at: float
    thread_id: Optional[int] = None
    user_id: Optional[int] = None
    title: Optional[str] = None
    image_url: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    updated_at: Optional[float] = None
    archived_at: Optional[float] = None

    @property
    def is_thread(self) -> bool:
        return self.thread_id is None

    @property
    def state(self) -> ThreadState:
        return ThreadState.ACTIVE if self.archived_at is None else ThreadState.ARCHIVED

    @classmethod
    def from_row(cls, row) -> "Post":
        data = dict(row)
        metadata = data.get("metadata")
        return cls(
            id=data["id"],
            board_id=data["board_id"],
            thread_id=data["thread_id"],
            user_id=data["user_id"],
            title=data["title"],
            content=data["content"],
            image_url=data["image_url"],
            metadata=json.loads(metadata) if metadata else {},
            created_at=data["created_at"],
            updated_at=data["updated_at"],
            last_bumped_at=data["last_bumped_at"],
            archived_at=data["archived_at"],
        )

    def __str__(self) -> str:
        kind = "Thread" if self.is_thread else f"Reply to {self.thread_id}"
        archived_marker = " [ARCHIVED]" if self.archived_at is not None else ""
        return f"{kind} {self.id}: {self.content[:50]}...{archived_marker}"


@dataclass(slots=True)
class Flag:
    id: int
    post_id: int
    reason: str
    created_at: float
    user_id: Optional[int] = None

    @classmethod
    def from_row(cls, row) -> "Flag":
        data = dict(row)
        return cls(
            id=data["id"],
            post_id=data["post_id"],
            user_id=data["user_id"],
            reason=data["reason"],
            created_at=data["created_at"],
        )
