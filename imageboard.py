import logging
from typing import Optional

import config
from archiver import Archiver
from boards import Board, BoardSettings, Limits
from database import DatabaseManager
from security import SecurityManager
from storage import BlobStore, LocalBlobStore, create_blob_store
from threads import ThreadManager
from users import User
from utils import Clock, timestamp

logger = logging.getLogger(__name__)


class ImageBoard:
    """Main class that wires the repository, blob store, admission engine and archiver together."""

    def __init__(self, db: Optional[DatabaseManager] = None, store: Optional[BlobStore] = None,
                 limits: Optional[Limits] = None, clock: Clock = timestamp,
                 security_manager: Optional[SecurityManager] = None,
                 archive_after_days: int = config.ARCHIVE_AFTER_DAYS,
                 retention_days: int = config.ARCHIVE_DELETE_DAYS,
                 archive_interval: float = config.ARCHIVE_INTERVAL_SECONDS):
        self.clock = clock
        self.db = db or DatabaseManager(config.DB_PATH, timeout=config.STORAGE_TIMEOUT_SECONDS)
        self.store = store or create_blob_store()
        self.limits = limits or Limits()
        self.security = security_manager or SecurityManager(config.JWT_SECRET, config.JWT_EXPIRY_MINUTES)
        self.threads = ThreadManager(self.db, self.store, self.limits, clock=clock,
                                     logger=logging.getLogger("imageboard.admission"))
        self.archiver = Archiver(self.db, self.store,
                                 archive_after_days=archive_after_days,
                                 retention_days=retention_days,
                                 interval=archive_interval,
                                 clock=clock,
                                 logger=logging.getLogger("imageboard.archiver"))

    @property
    def serves_local_uploads(self) -> bool:
        return isinstance(self.store, LocalBlobStore)

    async def startup(self, start_archiver: bool = True):
        await self.db.init_schema()
        if config.ADMIN_USERNAME and config.ADMIN_PASSWORD:
            await self.ensure_admin(config.ADMIN_USERNAME, config.ADMIN_PASSWORD)
        if start_archiver:
            self.archiver.start()

    async def shutdown(self):
        await self.archiver.stop()

    # High-level operations used by the HTTP layer
    async def create_user(self, username: str, password: str, is_admin: bool = False) -> User:
        password_hash = self.security.hash_password(password)
        user = await self.db.create_user(username, password_hash, self.clock(), is_admin=is_admin)
        logger.info("Created %s", user)
        return user

    async def ensure_admin(self, username: str, password: str) -> User:
        """Create the initial administrator unless an account with that name already exists."""
        existing = await self.db.get_user_by_username(username)
        if existing:
            return existing
        return await self.create_user(username, password, is_admin=True)

    async def authenticate(self, username: str, password: str) -> Optional[User]:
        user = await self.db.get_user_by_username(username)
        if not user or not self.security.verify_password(password, user.password_hash):
            return None
        return user

    async def create_board(self, name: str, slug: str, description: str,
                           settings: Optional[BoardSettings] = None) -> Board:
        board = await self.db.create_board(name, slug, description, settings or BoardSettings(), self.clock())
        logger.info("Created %s", board)
        return board
