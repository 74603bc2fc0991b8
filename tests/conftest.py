import base64

import httpx
import pytest

from app import create_app
from boards import BoardSettings, Limits
from database import DatabaseManager
from imageboard import ImageBoard
from security import SecurityManager
from storage import LocalBlobStore
from utils import days

START_TIME = 1_700_000_000.0
TEST_SECRET = "test-secret-key-with-at-least-32-bytes"

# Smallest valid PNG: signature plus IHDR/IDAT/IEND for a 1x1 image
PNG_BYTES = base64.b64decode(
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNkYPhfDwAChwGA60e6kgAAAABJRU5ErkJggg=="
)


class FakeClock:
    """Controllable time source; tests move it forward explicitly."""

    def __init__(self, now: float = START_TIME):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float = 0, days_: int = 0):
        self.now += seconds + days(days_)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
async def db(tmp_path) -> DatabaseManager:
    manager = DatabaseManager(str(tmp_path / "test.db"), timeout=5)
    await manager.init_schema()
    return manager


@pytest.fixture
def upload_dir(tmp_path):
    return tmp_path / "uploads"


@pytest.fixture
def store(upload_dir) -> LocalBlobStore:
    return LocalBlobStore(str(upload_dir), "http://test/uploads", max_size=1024 * 1024, timeout=5)


@pytest.fixture
def limits() -> Limits:
    return Limits(max_post_length=200, max_tags=3, default_max_threads=10,
                  default_max_replies=10, default_max_image_size=1024)


@pytest.fixture
def board(db, store, limits, clock) -> ImageBoard:
    return ImageBoard(db=db, store=store, limits=limits, clock=clock,
                      security_manager=SecurityManager(TEST_SECRET, 60),
                      archive_after_days=7, retention_days=30)


@pytest.fixture
def threads(board):
    return board.threads


@pytest.fixture
def archiver(board):
    return board.archiver


@pytest.fixture
async def general(board):
    return await board.create_board("General", "b", "Random discussion")


@pytest.fixture
async def tiny(board):
    return await board.create_board("Tiny", "tiny", "One thread at a time",
                                    BoardSettings(max_threads=1, max_replies=1, max_image_size=16))


@pytest.fixture
def png_image() -> str:
    return base64.b64encode(PNG_BYTES).decode("ascii")


@pytest.fixture
async def member(board):
    return await board.create_user("member", "memberpass1")


@pytest.fixture
async def admin(board):
    return await board.create_user("admin", "adminpass1", is_admin=True)


@pytest.fixture
def member_headers(board, member) -> dict:
    return {"Authorization": f"Bearer {board.security.create_access_token(member)}"}


@pytest.fixture
def admin_headers(board, admin) -> dict:
    return {"Authorization": f"Bearer {board.security.create_access_token(admin)}"}


@pytest.fixture
async def api_client(board) -> httpx.AsyncClient:
    """Client bound to an app around the test ImageBoard. Lifespan is not run, so no archiver task starts."""
    app = create_app(board)
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://test",
    ) as client:
        yield client
