from unittest.mock import AsyncMock

import httpx
import pytest

from exceptions import DependencyError, StorageError


class TestAuth:
    async def test_register_and_login(self, api_client: httpx.AsyncClient):
        response = await api_client.post("/auth/register", json={"username": "alice", "password": "wonderland1"})
        assert response.status_code == 201
        assert response.json() == {"id": 1, "username": "alice", "is_admin": False}

        response = await api_client.post("/auth/login", json={"username": "alice", "password": "wonderland1"})
        assert response.status_code == 200
        data = response.json()
        assert data["token_type"] == "bearer"
        assert data["expires_in"] == 3600
        assert data["token"]

    async def test_duplicate_username(self, api_client: httpx.AsyncClient, member):
        response = await api_client.post("/auth/register", json={"username": "member", "password": "another-pass"})
        assert response.status_code == 400
        assert response.json()["message"] == "Username already exists"

    async def test_short_password(self, api_client: httpx.AsyncClient):
        response = await api_client.post("/auth/register", json={"username": "bob", "password": "short"})
        assert response.status_code == 422

    async def test_wrong_password(self, api_client: httpx.AsyncClient, member):
        response = await api_client.post("/auth/login", json={"username": "member", "password": "wrong-pass"})
        assert response.status_code == 401

    async def test_invalid_token(self, api_client: httpx.AsyncClient, general):
        response = await api_client.post(
            "/boards/b/threads",
            json={"content": "hello"},
            headers={"Authorization": "Bearer not-a-jwt"},
        )
        assert response.status_code == 401
        assert response.json()["message"] == "Invalid token"

    async def test_register_admin_requires_admin(self, api_client: httpx.AsyncClient, member_headers, admin_headers):
        payload = {"username": "second-admin", "password": "adminpass2"}
        response = await api_client.post("/auth/register/admin", json=payload, headers=member_headers)
        assert response.status_code == 403

        response = await api_client.post("/auth/register/admin", json=payload, headers=admin_headers)
        assert response.status_code == 201
        assert response.json()["is_admin"] is True


class TestBoards:
    async def test_create_and_list(self, api_client: httpx.AsyncClient, admin_headers):
        response = await api_client.post(
            "/boards",
            json={"name": "Technology", "slug": "g", "description": "Tech talk",
                  "settings": {"max_threads": 5, "max_image_size": 2048}},
            headers=admin_headers,
        )
        assert response.status_code == 201
        assert response.json()["settings"] == {"max_threads": 5, "max_image_size": 2048}

        response = await api_client.get("/boards")
        assert response.status_code == 200
        assert [b["slug"] for b in response.json()] == ["g"]

    async def test_create_requires_admin(self, api_client: httpx.AsyncClient, member_headers):
        response = await api_client.post("/boards", json={"name": "Nope", "slug": "nope"}, headers=member_headers)
        assert response.status_code == 403

    async def test_create_requires_token(self, api_client: httpx.AsyncClient):
        response = await api_client.post("/boards", json={"name": "Nope", "slug": "nope"})
        assert response.status_code == 401

    async def test_duplicate_slug(self, api_client: httpx.AsyncClient, admin_headers, general):
        response = await api_client.post("/boards", json={"name": "Again", "slug": "b"}, headers=admin_headers)
        assert response.status_code == 400

    @pytest.mark.parametrize("settings", [{"max_threads": 0}, {"max_replies": "many"}])
    async def test_invalid_settings(self, api_client: httpx.AsyncClient, admin_headers, settings):
        response = await api_client.post(
            "/boards", json={"name": "Bad", "slug": "bad", "settings": settings}, headers=admin_headers
        )
        assert response.status_code == 422


class TestThreads:
    async def test_create_thread(self, api_client: httpx.AsyncClient, general, member, member_headers):
        response = await api_client.post(
            "/boards/b/threads",
            json={"title": "Hi", "content": "First post", "tags": ["intro"]},
            headers=member_headers,
        )
        assert response.status_code == 201
        data = response.json()
        assert data["thread_id"] is None
        assert data["user_id"] == member.id
        assert data["metadata"] == {"tags": ["intro"]}

    async def test_anonymous_thread(self, api_client: httpx.AsyncClient, general):
        response = await api_client.post("/boards/b/threads", json={"content": "anon"})
        assert response.status_code == 201
        assert response.json()["user_id"] is None

    async def test_unknown_board(self, api_client: httpx.AsyncClient):
        response = await api_client.post("/boards/zzz/threads", json={"content": "hello"})
        assert response.status_code == 404
        assert response.json()["error"] == "NotFound"

        response = await api_client.get("/boards/zzz/threads")
        assert response.status_code == 404

    async def test_empty_content(self, api_client: httpx.AsyncClient, general):
        response = await api_client.post("/boards/b/threads", json={"content": ""})
        assert response.status_code == 400
        assert response.json()["error"] == "ValidationError"

    async def test_capacity(self, api_client: httpx.AsyncClient, tiny):
        assert (await api_client.post("/boards/tiny/threads", json={"content": "A"})).status_code == 201
        response = await api_client.post("/boards/tiny/threads", json={"content": "B"})
        assert response.status_code == 403
        assert response.json() == {"error": "CapacityExceeded",
                                   "message": "Thread limit reached for this board", "details": None}

    async def test_get_thread_with_replies(self, api_client: httpx.AsyncClient, general):
        thread = (await api_client.post("/boards/b/threads", json={"content": "op"})).json()
        for text in ("one", "two"):
            response = await api_client.post(f"/threads/{thread['id']}/replies", json={"content": text})
            assert response.status_code == 201

        response = await api_client.get(f"/threads/{thread['id']}")
        assert response.status_code == 200
        data = response.json()
        assert data["thread"]["id"] == thread["id"]
        assert [r["content"] for r in data["replies"]] == ["one", "two"]

        listed = (await api_client.get("/boards/b/threads")).json()
        assert [t["id"] for t in listed] == [thread["id"]]

    async def test_get_reply_as_thread(self, api_client: httpx.AsyncClient, threads, general):
        thread = await threads.submit_thread("b", "op")
        reply = await threads.submit_reply(thread.id, "reply")
        response = await api_client.get(f"/threads/{reply.id}")
        assert response.status_code == 404

    async def test_reply_to_archived_thread(self, api_client: httpx.AsyncClient, threads, archiver, general, clock):
        thread = await threads.submit_thread("b", "op")
        clock.advance(days_=8)
        await archiver.archive_threads()

        response = await api_client.post(f"/threads/{thread.id}/replies", json={"content": "late"})
        assert response.status_code == 404
        assert (await api_client.get(f"/threads/{thread.id}")).status_code == 404
        assert (await api_client.get("/boards/b/threads")).json() == []

    async def test_image_is_served(self, api_client: httpx.AsyncClient, general, png_image):
        response = await api_client.post("/boards/b/threads", json={"content": "pic", "image": png_image})
        assert response.status_code == 201
        image_url = response.json()["image_url"]
        assert image_url.startswith("http://test/uploads/")

        response = await api_client.get(image_url)
        assert response.status_code == 200
        assert response.headers["content-type"] == "image/png"

    async def test_upload_failure_is_generic(self, api_client: httpx.AsyncClient, store, general, png_image):
        store.upload = AsyncMock(side_effect=StorageError("s3://secret-bucket unreachable"))
        response = await api_client.post("/boards/b/threads", json={"content": "pic", "image": png_image})
        assert response.status_code == 500
        assert response.json()["message"] == "An unexpected error occurred"
        assert "secret-bucket" not in response.text


class TestDeletePosts:
    async def test_owner_delete(self, api_client: httpx.AsyncClient, general, member_headers):
        thread = (await api_client.post("/boards/b/threads", json={"content": "mine"}, headers=member_headers)).json()
        response = await api_client.delete(f"/posts/{thread['id']}/user", headers=member_headers)
        assert response.status_code == 204
        assert (await api_client.get(f"/threads/{thread['id']}")).status_code == 404

    async def test_owner_delete_other_users_post(self, api_client: httpx.AsyncClient, general, admin_headers,
                                                 member_headers):
        thread = (await api_client.post("/boards/b/threads", json={"content": "theirs"}, headers=admin_headers)).json()
        response = await api_client.delete(f"/posts/{thread['id']}/user", headers=member_headers)
        assert response.status_code == 403

    async def test_owner_delete_missing_post(self, api_client: httpx.AsyncClient, member_headers):
        response = await api_client.delete("/posts/999/user", headers=member_headers)
        assert response.status_code == 403

    async def test_admin_delete(self, api_client: httpx.AsyncClient, store, general, admin_headers, png_image):
        thread = (await api_client.post("/boards/b/threads", json={"content": "pic", "image": png_image})).json()
        assert await store.exists(thread["image_url"])

        response = await api_client.delete(f"/posts/{thread['id']}/admin", headers=admin_headers)
        assert response.status_code == 204
        assert not await store.exists(thread["image_url"])

    async def test_admin_delete_requires_admin(self, api_client: httpx.AsyncClient, general, member_headers):
        thread = (await api_client.post("/boards/b/threads", json={"content": "op"})).json()
        response = await api_client.delete(f"/posts/{thread['id']}/admin", headers=member_headers)
        assert response.status_code == 403

    async def test_admin_delete_missing(self, api_client: httpx.AsyncClient, admin_headers):
        response = await api_client.delete("/posts/999/admin", headers=admin_headers)
        assert response.status_code == 404


class TestFlagsAndSearch:
    async def test_flag_and_list(self, api_client: httpx.AsyncClient, general, admin_headers):
        thread = (await api_client.post("/boards/b/threads", json={"content": "spam spam"})).json()
        response = await api_client.post(f"/posts/{thread['id']}/flag", json={"reason": "spam"})
        assert response.status_code == 201

        response = await api_client.get("/flags", headers=admin_headers)
        assert response.status_code == 200
        assert [f["post_id"] for f in response.json()] == [thread["id"]]

    async def test_flag_missing_post(self, api_client: httpx.AsyncClient):
        response = await api_client.post("/posts/999/flag", json={"reason": "spam"})
        assert response.status_code == 404

    async def test_search(self, api_client: httpx.AsyncClient, threads, archiver, general, clock):
        cats = await threads.submit_thread("b", "all about cats", tags=["animals"])
        await threads.submit_reply(cats.id, "more cats here")
        await threads.submit_thread("b", "dogs only", tags=["animals", "dogs"])

        response = await api_client.get("/posts/search", params={"query": "cats"})
        assert sorted(p["content"] for p in response.json()) == ["all about cats", "more cats here"]

        response = await api_client.get("/posts/search", params={"tag": "dogs"})
        assert [p["content"] for p in response.json()] == ["dogs only"]

        response = await api_client.get("/posts/search", params={"tag": "animals", "board_id": general.id + 1})
        assert response.json() == []

        await threads.db.execute_update("UPDATE posts SET archived_at = ? WHERE id = ?", (clock(), cats.id))
        response = await api_client.get("/posts/search", params={"query": "cats"})
        assert response.json() == []


class TestHealth:
    async def test_health(self, api_client: httpx.AsyncClient):
        response = await api_client.get("/health")
        assert response.status_code == 200
        assert response.json()["services"] == {"database": "healthy"}

    async def test_ready_and_live(self, api_client: httpx.AsyncClient):
        assert (await api_client.get("/health/ready")).json() == {"status": "ready"}
        assert (await api_client.get("/health/live")).json() == {"status": "alive"}

    async def test_not_ready_when_database_fails(self, api_client: httpx.AsyncClient, board):
        board.db.ping = AsyncMock(side_effect=DependencyError("database is locked"))
        response = await api_client.get("/health/ready")
        assert response.status_code == 503
