#!/usr/bin/env python3
import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Depends, status, Request, Response
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from starlette.middleware.base import BaseHTTPMiddleware

import config
from exceptions import Exceptions, ImageBoardError, to_http_exception
from imageboard import ImageBoard
from models import (BoardCreate, BoardResponse, ErrorResponse, FlagCreate, FlagResponse,
                    PostResponse, ReplyCreate, ThreadCreate, ThreadResponse, TokenResponse,
                    UserLogin, UserRegister, UserResponse)
from users import User
from utils import timestamp

logger = logging.getLogger(__name__)


def configure_logging(level: str = config.LOG_LEVEL, log_file: str = config.LOG_FILE):
    handler = logging.StreamHandler() if log_file == "stdout" else logging.FileHandler(log_file)
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=config.LOG_FORMAT,
        handlers=[handler],
    )


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        duration_ms = (time.perf_counter() - start) * 1000
        logger.info(
            "%s %s %d %.1fms %s",
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
            request.client.host if request.client else "[unknown]",
        )
        return response


def create_app(board: Optional[ImageBoard] = None) -> FastAPI:
    board = board or ImageBoard()
    started_at = time.monotonic()

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        await board.startup()
        yield
        await board.shutdown()

    app = FastAPI(title="Image Board API", description="Boards, threads and replies with image uploads",
                  version="1.0.0", lifespan=lifespan)
    app.state.board = board

    security = HTTPBearer(auto_error=False)

    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ALLOWED_ORIGINS,
        allow_credentials=config.CORS_ALLOW_CREDENTIALS,
        allow_methods=config.CORS_ALLOWED_METHODS,
        allow_headers=config.CORS_ALLOWED_HEADERS,
    )

    async def get_optional_user(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)) -> Optional[User]:
        if credentials is None:
            return None
        payload = board.security.verify_token(credentials.credentials)
        try:
            user_id = int(payload.get("sub"))
        except (TypeError, ValueError):
            raise Exceptions.UNAUTHORIZED
        user = await board.db.get_user_by_id(user_id)
        if not user:
            raise Exceptions.UNAUTHORIZED
        return user

    async def get_current_user(user: Optional[User] = Depends(get_optional_user)) -> User:
        if user is None:
            raise Exceptions.MISSING_TOKEN
        return user

    async def require_admin(current_user: User = Depends(get_current_user)) -> User:
        if not current_user.is_admin:
            raise Exceptions.ADMIN_REQUIRED
        return current_user

    # Auth

    @app.post("/auth/register", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
    async def register(user_data: UserRegister):
        user = await board.create_user(user_data.username, user_data.password)
        return UserResponse(id=user.id, username=user.username, is_admin=user.is_admin)

    @app.post("/auth/login", response_model=TokenResponse)
    async def login(login_data: UserLogin):
        user = await board.authenticate(login_data.username, login_data.password)
        if not user:
            raise Exceptions.UNAUTHORIZED
        return TokenResponse(
            token=board.security.create_access_token(user),
            expires_in=board.security.access_token_expire_minutes * 60,
        )

    @app.post("/auth/register/admin", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
    async def register_admin(user_data: UserRegister, current_user: User = Depends(require_admin)):
        user = await board.create_user(user_data.username, user_data.password, is_admin=True)
        logger.info("Administrator %s created by %s", user.username, current_user.username)
        return UserResponse(id=user.id, username=user.username, is_admin=user.is_admin)

    # Boards

    @app.get("/boards", response_model=List[BoardResponse])
    async def list_boards():
        return [BoardResponse.from_board(b) for b in await board.db.get_all_boards()]

    @app.post("/boards", response_model=BoardResponse, status_code=status.HTTP_201_CREATED)
    async def create_board(board_data: BoardCreate, current_user: User = Depends(require_admin)):
        created = await board.create_board(board_data.name, board_data.slug, board_data.description,
                                           board_data.settings.to_settings())
        return BoardResponse.from_board(created)

    @app.get("/boards/{board_slug}/threads", response_model=List[PostResponse])
    async def list_threads(board_slug: str):
        found = await board.db.get_board_by_slug(board_slug)
        if not found:
            raise Exceptions.BOARD_NOT_FOUND
        return [PostResponse.from_post(t) for t in await board.db.get_active_threads(found.id)]

    @app.post("/boards/{board_slug}/threads", response_model=PostResponse, status_code=status.HTTP_201_CREATED)
    async def create_thread(board_slug: str, thread_data: ThreadCreate,
                            current_user: Optional[User] = Depends(get_optional_user)):
        thread = await board.threads.submit_thread(
            board_slug,
            content=thread_data.content,
            title=thread_data.title,
            image=thread_data.image,
            image_type=thread_data.image_type,
            tags=thread_data.tags,
            metadata=thread_data.metadata,
            user_id=current_user.id if current_user else None,
        )
        return PostResponse.from_post(thread)

    # Threads

    @app.get("/threads/{thread_id}", response_model=ThreadResponse)
    async def get_thread(thread_id: int):
        thread = await board.db.get_post(thread_id)
        if not thread or not thread.is_thread or thread.archived_at is not None:
            raise Exceptions.THREAD_NOT_FOUND
        replies = await board.db.get_thread_replies(thread_id)
        return ThreadResponse(thread=PostResponse.from_post(thread),
                              replies=[PostResponse.from_post(r) for r in replies])

    @app.post("/threads/{thread_id}/replies", response_model=PostResponse, status_code=status.HTTP_201_CREATED)
    async def create_reply(thread_id: int, reply_data: ReplyCreate,
                           current_user: Optional[User] = Depends(get_optional_user)):
        reply = await board.threads.submit_reply(
            thread_id,
            content=reply_data.content,
            image=reply_data.image,
            image_type=reply_data.image_type,
            tags=reply_data.tags,
            metadata=reply_data.metadata,
            user_id=current_user.id if current_user else None,
        )
        return PostResponse.from_post(reply)

    # Posts

    @app.delete("/posts/{post_id}/user", status_code=status.HTTP_204_NO_CONTENT)
    async def delete_post_user(post_id: int, current_user: User = Depends(get_current_user)):
        await board.threads.delete_post_as_owner(post_id, current_user.id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.delete("/posts/{post_id}/admin", status_code=status.HTTP_204_NO_CONTENT)
    async def delete_post_admin(post_id: int, current_user: User = Depends(require_admin)):
        await board.threads.delete_post_as_admin(post_id)
        logger.info("Post %d removed by administrator %s", post_id, current_user.username)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.post("/posts/{post_id}/flag", response_model=FlagResponse, status_code=status.HTTP_201_CREATED)
    async def flag_post(post_id: int, flag_data: FlagCreate,
                        current_user: Optional[User] = Depends(get_optional_user)):
        flag = await board.threads.flag_post(post_id, flag_data.reason,
                                             user_id=current_user.id if current_user else None)
        return FlagResponse.from_flag(flag)

    @app.get("/posts/search", response_model=List[PostResponse])
    async def search_posts(query: Optional[str] = None, tag: Optional[str] = None,
                           board_id: Optional[int] = None):
        posts = await board.db.search_posts(query=query, tag=tag, board_id=board_id)
        return [PostResponse.from_post(p) for p in posts]

    @app.get("/flags", response_model=List[FlagResponse])
    async def list_flags(current_user: User = Depends(require_admin)):
        return [FlagResponse.from_flag(f) for f in await board.db.get_all_flags()]

    # Health

    async def database_healthy() -> bool:
        try:
            return await asyncio.wait_for(board.db.ping(), timeout=config.HEALTH_CHECK_TIMEOUT)
        except (asyncio.TimeoutError, ImageBoardError) as e:
            logger.warning("Health check: database unavailable: %s", e)
            return False

    @app.get("/health")
    async def health_check():
        services = {"database": "healthy" if await database_healthy() else "unhealthy"}
        healthy = all(state == "healthy" for state in services.values())
        return JSONResponse(
            status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "status": "healthy" if healthy else "unhealthy",
                "timestamp": timestamp(),
                "services": services,
                "uptime": round(time.monotonic() - started_at, 3),
            },
        )

    @app.get("/health/ready")
    async def readiness_check():
        if not await database_healthy():
            return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                                content={"status": "not ready"})
        return {"status": "ready"}

    @app.get("/health/live")
    async def liveness_check():
        return {"status": "alive"}

    # Errors

    @app.exception_handler(ImageBoardError)
    async def imageboard_exception_handler(request: Request, exc: ImageBoardError):
        http_exc = to_http_exception(exc)
        if http_exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(
            status_code=http_exc.status_code,
            content=ErrorResponse(error=exc.kind, message=http_exc.detail).model_dump()
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content=ErrorResponse(error=exc.__class__.__name__, message=str(exc.detail)).model_dump(),
            headers=exc.headers,
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=ErrorResponse(error="InternalServerError", message="An unexpected error occurred").model_dump()
        )

    if board.serves_local_uploads:
        app.mount(config.UPLOAD_URL_PREFIX, StaticFiles(directory=board.store.upload_dir, check_dir=False),
                  name="uploads")

    return app


configure_logging()
app = create_app()
