from pydantic import BaseModel, Field, field_validator
from typing import Optional, Dict, Any, List
import re
from config import (USERNAME_MIN_LENGTH, USERNAME_MAX_LENGTH, PASSWORD_MIN_LENGTH,
                    BOARD_NAME_MAX_LENGTH, BOARD_SLUG_MAX_LENGTH)
from boards import Board, BoardSettings
from posts import Flag, Post

SLUG_PATTERN = re.compile(r'^[a-z0-9][a-z0-9_-]*$')


class UserRegister(BaseModel):
    username: str
    password: str

    @field_validator('username')
    @classmethod
    def validate_username(cls, v):
        if len(v) < USERNAME_MIN_LENGTH or len(v) > USERNAME_MAX_LENGTH:
            raise ValueError(f'Username must be {USERNAME_MIN_LENGTH}-{USERNAME_MAX_LENGTH} characters')
        if not v.replace('_', '').replace('-', '').isalnum():
            raise ValueError('Username can only contain letters, numbers, hyphens, and underscores')
        return v

    @field_validator('password')
    @classmethod
    def validate_password(cls, v):
        if len(v) < PASSWORD_MIN_LENGTH:
            raise ValueError(f'Password must be at least {PASSWORD_MIN_LENGTH} characters')
        return v


class UserLogin(BaseModel):
    username: str
    password: str


class UserResponse(BaseModel):
    id: int
    username: str
    is_admin: bool


class TokenResponse(BaseModel):
    token: str
    token_type: str = "bearer"
    expires_in: int


class BoardSettingsModel(BaseModel):
    max_threads: Optional[int] = Field(default=None, ge=1)
    max_replies: Optional[int] = Field(default=None, ge=1)
    max_image_size: Optional[int] = Field(default=None, ge=1)

    def to_settings(self) -> BoardSettings:
        return BoardSettings(max_threads=self.max_threads, max_replies=self.max_replies,
                             max_image_size=self.max_image_size)


class BoardCreate(BaseModel):
    name: str
    slug: str
    description: str = ""
    settings: BoardSettingsModel = Field(default_factory=BoardSettingsModel)

    @field_validator('name')
    @classmethod
    def validate_name(cls, v):
        if not v.strip() or len(v) > BOARD_NAME_MAX_LENGTH:
            raise ValueError(f'Board name must be 1-{BOARD_NAME_MAX_LENGTH} characters')
        return v

    @field_validator('slug')
    @classmethod
    def validate_slug(cls, v):
        if len(v) > BOARD_SLUG_MAX_LENGTH or not SLUG_PATTERN.match(v):
            raise ValueError('Slug must be lowercase letters, numbers, hyphens or underscores')
        return v


class BoardResponse(BaseModel):
    id: int
    name: str
    slug: str
    description: str
    settings: Dict[str, int]
    created_at: float

    @classmethod
    def from_board(cls, board: Board) -> "BoardResponse":
        return cls(id=board.id, name=board.name, slug=board.slug, description=board.description,
                   settings=board.settings.to_dict(), created_at=board.created_at)


class ThreadCreate(BaseModel):
    title: Optional[str] = None
    content: str
    image: Optional[str] = None
    image_type: Optional[str] = None
    tags: Optional[List[str]] = None
    metadata: Optional[Dict[str, Any]] = None


class ReplyCreate(BaseModel):
    content: str
    image: Optional[str] = None
    image_type: Optional[str] = None
    tags: Optional[List[str]] = None
    metadata: Optional[Dict[str, Any]] = None


class PostResponse(BaseModel):
    id: int
    board_id: int
    thread_id: Optional[int]
    user_id: Optional[int]
    title: Optional[str]
    content: str
    image_url: Optional[str]
    metadata: Dict[str, Any]
    created_at: float
    updated_at: Optional[float]
    last_bumped_at: float
    archived_at: Optional[float]

    @classmethod
    def from_post(cls, post: Post) -> "PostResponse":
        return cls(id=post.id, board_id=post.board_id, thread_id=post.thread_id, user_id=post.user_id,
                   title=post.title, content=post.content, image_url=post.image_url,
                   metadata=post.metadata, created_at=post.created_at, updated_at=post.updated_at,
                   last_bumped_at=post.last_bumped_at, archived_at=post.archived_at)


class ThreadResponse(BaseModel):
    thread: PostResponse
    replies: List[PostResponse]


class FlagCreate(BaseModel):
    reason: str


class FlagResponse(BaseModel):
    id: int
    post_id: int
    user_id: Optional[int]
    reason: str
    created_at: float

    @classmethod
    def from_flag(cls, flag: Flag) -> "FlagResponse":
        return cls(id=flag.id, post_id=flag.post_id, user_id=flag.user_id,
                   reason=flag.reason, created_at=flag.created_at)


class ErrorResponse(BaseModel):
    error: str
    message: str
    details: Optional[Dict[str, Any]] = None
