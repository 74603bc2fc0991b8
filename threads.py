import base64
import binascii
import logging
from typing import Any, Optional

from boards import Board, BoardLimits, Limits
from config import TAGS_METADATA_KEY
from database import DatabaseManager
from exceptions import (CapacityError, DependencyError, ForbiddenError, NotFoundError,
                        ValidationError)
from posts import Flag, Post
from storage import BlobStore, sniff_extension
from utils import Clock, timestamp


class ThreadManager:
    """Admission engine for threads and replies.

    Board settings and counts are re-read on every call. The capacity check
    counts first and inserts afterwards, so concurrent submissions can overshoot
    a board's limit by a few posts; the limit is a soft cap.
    """

    def __init__(self, db: DatabaseManager, store: BlobStore, limits: Limits,
                 clock: Clock = timestamp, logger: Optional[logging.Logger] = None) -> None:
        self.db = db
        self.store = store
        self.limits = limits
        self.clock = clock
        self.logger = logger or logging.getLogger(__name__)

    def _validate(self, content: str, tags: Optional[list[str]]) -> None:
        if not content or len(content) > self.limits.max_post_length:
            raise ValidationError("Content is required and must be within length limits")
        if tags and len(tags) > self.limits.max_tags:
            raise ValidationError(f"Too many tags, maximum is {self.limits.max_tags}")

    @staticmethod
    def _decode_image(image: Optional[str]) -> Optional[bytes]:
        if not image:
            return None
        try:
            return base64.b64decode(image, validate=True)
        except (binascii.Error, ValueError):
            raise ValidationError("Invalid image data")

    async def _store_image(self, data: Optional[bytes], image_type: Optional[str],
                           board_limits: BoardLimits) -> Optional[str]:
        """Upload ``data`` within the board's size limit. Any failure aborts the submission."""
        if data is None:
            return None
        if len(data) > board_limits.max_image_size:
            raise ValidationError("Image size exceeds board limit")
        ext = image_type or sniff_extension(data) or "jpg"
        try:
            return await self.store.upload(data, ext, max_size=board_limits.max_image_size)
        except ValidationError:
            raise
        except DependencyError as e:
            self.logger.error("Image upload failed: %s", e)
            raise DependencyError("Failed to upload image") from e

    async def _discard_image(self, image_url: Optional[str]) -> None:
        if image_url is None:
            return
        try:
            # A write that timed out may still have committed its row
            if await self.db.image_in_use(image_url):
                self.logger.warning("Keeping image %s: a post references it despite the failed write", image_url)
                return
            await self.store.delete(image_url)
        except DependencyError as e:
            self.logger.error("Could not remove image %s after failed submission: %s", image_url, e)

    @staticmethod
    def _merge_tags(metadata: Optional[dict[str, Any]], tags: Optional[list[str]]) -> dict[str, Any]:
        merged = dict(metadata or {})
        if tags:
            merged[TAGS_METADATA_KEY] = list(tags)
        return merged

    async def _board_for_thread(self, board_slug: str) -> Board:
        board = await self.db.get_board_by_slug(board_slug)
        if board is None:
            raise NotFoundError("Board not found")
        return board

    async def _live_thread(self, thread_id: int) -> Post:
        thread = await self.db.get_post(thread_id)
        if thread is None or not thread.is_thread or thread.archived_at is not None:
            raise NotFoundError("Thread not found or archived")
        return thread

    async def submit_thread(self, board_slug: str, content: str, title: Optional[str] = None,
                            image: Optional[str] = None, image_type: Optional[str] = None,
                            tags: Optional[list[str]] = None, metadata: Optional[dict[str, Any]] = None,
                            user_id: Optional[int] = None) -> Post:
        """Validate and persist a new thread on ``board_slug``.

        ``image`` is base64 encoded. Raises ValidationError, NotFoundError,
        CapacityError or DependencyError; nothing is persisted on failure.
        """
        self._validate(content, tags)
        board = await self._board_for_thread(board_slug)
        board_limits = board.resolve_limits(self.limits)

        thread_count = await self.db.count_active_threads(board.id)
        if thread_count >= board_limits.max_threads:
            raise CapacityError("Thread limit reached for this board")

        image_url = await self._store_image(self._decode_image(image), image_type, board_limits)
        try:
            thread = await self.db.create_thread(
                board_id=board.id,
                content=content,
                created_at=self.clock(),
                title=title,
                user_id=user_id,
                image_url=image_url,
                metadata=self._merge_tags(metadata, tags),
            )
        except DependencyError:
            await self._discard_image(image_url)
            raise

        self.logger.info("Thread %d created on /%s/", thread.id, board.slug)
        return thread

    async def submit_reply(self, thread_id: int, content: str, image: Optional[str] = None,
                           image_type: Optional[str] = None, tags: Optional[list[str]] = None,
                           metadata: Optional[dict[str, Any]] = None,
                           user_id: Optional[int] = None) -> Post:
        """Validate and persist a reply, bumping its thread in the same transaction."""
        self._validate(content, tags)
        thread = await self._live_thread(thread_id)

        board = await self.db.get_board_by_id(thread.board_id)
        if board is None:
            raise NotFoundError("Board not found")
        board_limits = board.resolve_limits(self.limits)

        reply_count = await self.db.count_active_replies(thread.id)
        if reply_count >= board_limits.max_replies:
            raise CapacityError("Reply limit reached for this thread")

        image_url = await self._store_image(self._decode_image(image), image_type, board_limits)
        try:
            reply = await self.db.create_reply(
                thread,
                content=content,
                created_at=self.clock(),
                user_id=user_id,
                image_url=image_url,
                metadata=self._merge_tags(metadata, tags),
            )
        except (DependencyError, NotFoundError):
            await self._discard_image(image_url)
            raise

        self.logger.info("Reply %d added to thread %d", reply.id, thread.id)
        return reply

    async def _delete_images(self, post_id: int) -> None:
        # Blobs go first: a failure here leaves every row in place for a retry
        for image_url in await self.db.get_image_urls(post_id):
            await self.store.delete(image_url)

    async def delete_post_as_owner(self, post_id: int, user_id: Optional[int]) -> None:
        """Delete a post owned by ``user_id``. Anonymous posts can never be deleted this way."""
        post = await self.db.get_post(post_id)
        if post is None or user_id is None or post.user_id is None or post.user_id != user_id:
            raise ForbiddenError("Post not found or not owned by user")

        await self._delete_images(post.id)
        await self.db.delete_post(post.id)
        self.logger.info("Post %d deleted by owner %d", post.id, user_id)

    async def delete_post_as_admin(self, post_id: int) -> None:
        post = await self.db.get_post(post_id)
        if post is None:
            raise NotFoundError("Post not found")

        try:
            await self._delete_images(post.id)
        except DependencyError as e:
            self.logger.error("Failed to delete image for post %d: %s", post.id, e)
            raise DependencyError("Failed to delete image") from e

        await self.db.delete_post(post.id)
        self.logger.info("Post %d deleted by administrator", post.id)

    async def flag_post(self, post_id: int, reason: str, user_id: Optional[int] = None) -> Flag:
        if not reason or len(reason) > self.limits.max_post_length:
            raise ValidationError("Reason is required and must be within length limits")
        if await self.db.get_post(post_id) is None:
            raise NotFoundError("Post not found")
        return await self.db.create_flag(post_id, reason, self.clock(), user_id=user_id)
