import asyncio
import json
import logging
import sqlite3
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, TypeVar

import aiosqlite

from boards import Board, BoardSettings
from config import SEARCH_RESULT_LIMIT, STORAGE_TIMEOUT_SECONDS
from exceptions import DependencyError, NotFoundError, ValidationError
from posts import Flag, Post
from users import User

logger = logging.getLogger(__name__)

T = TypeVar("T")

SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    username TEXT NOT NULL UNIQUE,
    password_hash TEXT NOT NULL,
    is_admin BOOLEAN NOT NULL DEFAULT FALSE,
    created_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS boards (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    slug TEXT NOT NULL UNIQUE,
    description TEXT NOT NULL DEFAULT '',
    settings TEXT NOT NULL DEFAULT '{}',
    created_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS posts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    board_id INTEGER NOT NULL REFERENCES boards(id),
    thread_id INTEGER REFERENCES posts(id) ON DELETE CASCADE,
    user_id INTEGER REFERENCES users(id) ON DELETE SET NULL,
    title TEXT,
    content TEXT NOT NULL,
    image_url TEXT,
    metadata TEXT NOT NULL DEFAULT '{}',
    created_at REAL NOT NULL,
    updated_at REAL,
    last_bumped_at REAL NOT NULL,
    archived_at REAL
);

CREATE INDEX IF NOT EXISTS idx_posts_board_threads ON posts(board_id, thread_id, archived_at);
CREATE INDEX IF NOT EXISTS idx_posts_thread ON posts(thread_id, archived_at);
CREATE INDEX IF NOT EXISTS idx_posts_archived_at ON posts(archived_at);
CREATE INDEX IF NOT EXISTS idx_posts_last_bumped_at ON posts(last_bumped_at);

CREATE TABLE IF NOT EXISTS flags (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    post_id INTEGER NOT NULL REFERENCES posts(id) ON DELETE CASCADE,
    user_id INTEGER REFERENCES users(id) ON DELETE SET NULL,
    reason TEXT NOT NULL,
    created_at REAL NOT NULL
);
"""

POST_COLUMNS = ("id, board_id, thread_id, user_id, title, content, image_url, metadata, "
                "created_at, updated_at, last_bumped_at, archived_at")


class DatabaseManager:
    """Post repository backed by SQLite.

    Nothing read from here is cached: callers get the current row every time.
    Each public call is bounded by ``timeout`` seconds and reports timeouts and
    driver errors as :class:`DependencyError`. Uniqueness violations surface as
    ``sqlite3.IntegrityError`` so callers can turn them into validation errors.
    """

    def __init__(self, db_path: str, timeout: float = STORAGE_TIMEOUT_SECONDS):
        self.db_path = db_path
        self.timeout = timeout

    @asynccontextmanager
    async def connect(self) -> AsyncIterator[aiosqlite.Connection]:
        async with aiosqlite.connect(self.db_path) as conn:
            conn.row_factory = aiosqlite.Row
            await conn.execute("PRAGMA foreign_keys = ON")
            yield conn

    async def _bounded(self, operation: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(operation, timeout=self.timeout)
        except asyncio.TimeoutError:
            raise DependencyError(f"Database operation timed out after {self.timeout}s")
        except sqlite3.IntegrityError:
            raise
        except sqlite3.Error as e:
            raise DependencyError(f"Database error: {e}") from e

    async def run_transaction(self, work: Callable[[aiosqlite.Connection], Awaitable[T]]) -> T:
        """Run ``work`` on one connection and commit once; any exception rolls everything back."""
        async def _run() -> T:
            async with self.connect() as conn:
                try:
                    result = await work(conn)
                except BaseException:
                    await conn.rollback()
                    raise
                await conn.commit()
                return result

        return await self._bounded(_run())

    async def init_schema(self):
        async def _run():
            async with self.connect() as conn:
                await conn.executescript(SCHEMA)
                await conn.commit()

        await self._bounded(_run())
        logger.info("Database schema ready at %s", self.db_path)

    async def ping(self) -> bool:
        row = await self.execute_query("SELECT 1 AS ok", fetch_one=True)
        return row is not None

    async def execute_query(self, query: str, params: tuple = (), fetch_one: bool = False):
        async def _run():
            async with self.connect() as conn:
                cursor = await conn.execute(query, params)

                # Commit if this is a write operation (INSERT, UPDATE, DELETE)
                if query.strip().upper().startswith(('INSERT', 'UPDATE', 'DELETE')):
                    await conn.commit()

                if fetch_one:
                    result = await cursor.fetchone()
                else:
                    result = await cursor.fetchall()
                await cursor.close()
                return result

        return await self._bounded(_run())

    async def execute_insert(self, query: str, params: tuple = ()) -> int:
        async def _run():
            async with self.connect() as conn:
                cursor = await conn.execute(query, params)
                await conn.commit()
                lastrowid = cursor.lastrowid
                await cursor.close()
                return lastrowid

        return await self._bounded(_run())

    async def execute_update(self, query: str, params: tuple = ()) -> int:
        """Run a write statement and return the number of affected rows."""
        async def _run():
            async with self.connect() as conn:
                cursor = await conn.execute(query, params)
                await conn.commit()
                rowcount = cursor.rowcount
                await cursor.close()
                return rowcount

        return await self._bounded(_run())

    # Users

    async def create_user(self, username: str, password_hash: str, created_at: float,
                          is_admin: bool = False) -> User:
        try:
            user_id = await self.execute_insert(
                "INSERT INTO users (username, password_hash, is_admin, created_at) VALUES (?, ?, ?, ?)",
                (username, password_hash, is_admin, created_at)
            )
        except sqlite3.IntegrityError:
            raise ValidationError("Username already exists")
        return User(id=user_id, username=username, password_hash=password_hash,
                    is_admin=is_admin, created_at=created_at)

    async def get_user_by_username(self, username: str) -> Optional[User]:
        row = await self.execute_query(
            "SELECT * FROM users WHERE username = ?", (username,), fetch_one=True
        )
        return User.from_row(row) if row else None

    async def get_user_by_id(self, user_id: int) -> Optional[User]:
        row = await self.execute_query(
            "SELECT * FROM users WHERE id = ?", (user_id,), fetch_one=True
        )
        return User.from_row(row) if row else None

    # Boards

    async def create_board(self, name: str, slug: str, description: str,
                           settings: BoardSettings, created_at: float) -> Board:
        try:
            board_id = await self.execute_insert(
                "INSERT INTO boards (name, slug, description, settings, created_at) VALUES (?, ?, ?, ?, ?)",
                (name, slug, description, json.dumps(settings.to_dict()), created_at)
            )
        except sqlite3.IntegrityError:
            raise ValidationError("Board slug already exists")
        return Board(id=board_id, name=name, slug=slug, description=description,
                     settings=settings, created_at=created_at)

    async def get_all_boards(self) -> List[Board]:
        rows = await self.execute_query("SELECT * FROM boards ORDER BY slug")
        return [Board.from_row(row) for row in rows]

    async def get_board_by_slug(self, slug: str) -> Optional[Board]:
        row = await self.execute_query(
            "SELECT * FROM boards WHERE slug = ?", (slug,), fetch_one=True
        )
        return Board.from_row(row) if row else None

    async def get_board_by_id(self, board_id: int) -> Optional[Board]:
        row = await self.execute_query(
            "SELECT * FROM boards WHERE id = ?", (board_id,), fetch_one=True
        )
        return Board.from_row(row) if row else None

    # Posts

    async def get_post(self, post_id: int) -> Optional[Post]:
        row = await self.execute_query(
            f"SELECT {POST_COLUMNS} FROM posts WHERE id = ?", (post_id,), fetch_one=True
        )
        return Post.from_row(row) if row else None

    async def count_active_threads(self, board_id: int) -> int:
        row = await self.execute_query(
            "SELECT COUNT(*) AS count FROM posts WHERE board_id = ? AND thread_id IS NULL AND archived_at IS NULL",
            (board_id,), fetch_one=True
        )
        return row["count"]

    async def count_active_replies(self, thread_id: int) -> int:
        row = await self.execute_query(
            "SELECT COUNT(*) AS count FROM posts WHERE thread_id = ? AND archived_at IS NULL",
            (thread_id,), fetch_one=True
        )
        return row["count"]

    async def create_thread(self, board_id: int, content: str, created_at: float,
                            title: Optional[str] = None, user_id: Optional[int] = None,
                            image_url: Optional[str] = None,
                            metadata: Optional[Dict[str, Any]] = None) -> Post:
        """Insert a top-level post; ``created_at`` doubles as its first bump."""
        metadata = metadata or {}
        post_id = await self.execute_insert("""
            INSERT INTO posts (board_id, thread_id, user_id, title, content, image_url, metadata,
                               created_at, last_bumped_at)
            VALUES (?, NULL, ?, ?, ?, ?, ?, ?, ?)
        """, (board_id, user_id, title, content, image_url, json.dumps(metadata), created_at, created_at))
        return Post(id=post_id, board_id=board_id, user_id=user_id, title=title, content=content,
                    image_url=image_url, metadata=metadata, created_at=created_at,
                    last_bumped_at=created_at)

    async def create_reply(self, thread: Post, content: str, created_at: float,
                           user_id: Optional[int] = None, image_url: Optional[str] = None,
                           metadata: Optional[Dict[str, Any]] = None) -> Post:
        """Insert a reply and bump its thread in one transaction.

        Raises NotFoundError (and persists nothing) when the thread was deleted
        or archived between the caller's check and the bump.
        """
        metadata = metadata or {}

        async def _work(conn: aiosqlite.Connection) -> int:
            cursor = await conn.execute("""
                INSERT INTO posts (board_id, thread_id, user_id, title, content, image_url, metadata,
                                   created_at, last_bumped_at)
                VALUES (?, ?, ?, NULL, ?, ?, ?, ?, ?)
            """, (thread.board_id, thread.id, user_id, content, image_url, json.dumps(metadata),
                  created_at, created_at))
            reply_id = cursor.lastrowid
            cursor = await conn.execute(
                "UPDATE posts SET last_bumped_at = ? WHERE id = ? AND thread_id IS NULL AND archived_at IS NULL",
                (created_at, thread.id)
            )
            if cursor.rowcount == 0:
                raise NotFoundError("Thread not found or archived")
            return reply_id

        reply_id = await self.run_transaction(_work)
        return Post(id=reply_id, board_id=thread.board_id, thread_id=thread.id, user_id=user_id,
                    content=content, image_url=image_url, metadata=metadata,
                    created_at=created_at, last_bumped_at=created_at)

    async def archive_threads_bumped_before(self, cutoff: float, archived_at: float) -> int:
        """Archive every active thread last bumped before ``cutoff``; returns the row count."""
        return await self.execute_update("""
            UPDATE posts SET archived_at = ?
            WHERE thread_id IS NULL AND archived_at IS NULL AND last_bumped_at < ?
        """, (archived_at, cutoff))

    async def get_threads_archived_before(self, cutoff: float) -> List[Post]:
        rows = await self.execute_query(f"""
            SELECT {POST_COLUMNS} FROM posts
            WHERE thread_id IS NULL AND archived_at IS NOT NULL AND archived_at < ?
            ORDER BY archived_at ASC
        """, (cutoff,))
        return [Post.from_row(row) for row in rows]

    async def get_image_urls(self, post_id: int) -> List[str]:
        """Image URLs of a post and, for a thread, of all its replies."""
        rows = await self.execute_query("""
            SELECT image_url FROM posts
            WHERE (id = ? OR thread_id = ?) AND image_url IS NOT NULL
            ORDER BY id
        """, (post_id, post_id))
        return [row["image_url"] for row in rows]

    async def image_in_use(self, image_url: str) -> bool:
        row = await self.execute_query(
            "SELECT 1 FROM posts WHERE image_url = ? LIMIT 1", (image_url,), fetch_one=True
        )
        return row is not None

    async def delete_post(self, post_id: int) -> bool:
        """Delete a post and, if it is a thread, all of its replies, atomically."""
        async def _work(conn: aiosqlite.Connection) -> bool:
            await conn.execute("DELETE FROM posts WHERE thread_id = ?", (post_id,))
            cursor = await conn.execute("DELETE FROM posts WHERE id = ?", (post_id,))
            return cursor.rowcount > 0

        return await self.run_transaction(_work)

    async def get_active_threads(self, board_id: int) -> List[Post]:
        rows = await self.execute_query(f"""
            SELECT {POST_COLUMNS} FROM posts
            WHERE board_id = ? AND thread_id IS NULL AND archived_at IS NULL
            ORDER BY last_bumped_at DESC
        """, (board_id,))
        return [Post.from_row(row) for row in rows]

    async def get_thread_replies(self, thread_id: int) -> List[Post]:
        rows = await self.execute_query(f"""
            SELECT {POST_COLUMNS} FROM posts
            WHERE thread_id = ? AND archived_at IS NULL
            ORDER BY created_at ASC, id ASC
        """, (thread_id,))
        return [Post.from_row(row) for row in rows]

    async def search_posts(self, query: Optional[str] = None, tag: Optional[str] = None,
                           board_id: Optional[int] = None, limit: int = SEARCH_RESULT_LIMIT) -> List[Post]:
        """Search live posts. Replies of archived threads are excluded with their thread."""
        conditions = [
            "p.archived_at IS NULL",
            "(p.thread_id IS NULL OR p.thread_id IN (SELECT id FROM posts WHERE archived_at IS NULL))",
        ]
        params: list = []

        if query:
            conditions.append("p.content LIKE ?")
            params.append(f"%{query}%")
        if tag:
            conditions.append("EXISTS (SELECT 1 FROM json_each(p.metadata, '$.tags') WHERE value = ?)")
            params.append(tag)
        if board_id is not None:
            conditions.append("p.board_id = ?")
            params.append(board_id)

        params.append(limit)
        columns = ", ".join(f"p.{column.strip()}" for column in POST_COLUMNS.split(","))
        rows = await self.execute_query(f"""
            SELECT {columns} FROM posts p
            WHERE {' AND '.join(conditions)}
            ORDER BY p.last_bumped_at DESC
            LIMIT ?
        """, tuple(params))
        return [Post.from_row(row) for row in rows]

    # Flags

    async def create_flag(self, post_id: int, reason: str, created_at: float,
                          user_id: Optional[int] = None) -> Flag:
        try:
            flag_id = await self.execute_insert(
                "INSERT INTO flags (post_id, user_id, reason, created_at) VALUES (?, ?, ?, ?)",
                (post_id, user_id, reason, created_at)
            )
        except sqlite3.IntegrityError:
            raise NotFoundError("Post not found")
        return Flag(id=flag_id, post_id=post_id, user_id=user_id, reason=reason, created_at=created_at)

    async def get_all_flags(self) -> List[Flag]:
        rows = await self.execute_query("SELECT * FROM flags ORDER BY created_at DESC, id DESC")
        return [Flag.from_row(row) for row in rows]
