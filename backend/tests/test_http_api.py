"""JSON API tests over ASGITransport with an isolated in-memory repository."""
import asyncio
from unittest.mock import patch

import pytest
from httpx import ASGITransport, AsyncClient

from api.main import app, get_repository, lifespan
from common.memory_store import MemoryRepository


@pytest.fixture
def repo(clock):
    repo = MemoryRepository(clock=clock)
    app.dependency_overrides[get_repository] = lambda: repo
    yield repo
    app.dependency_overrides.clear()


def _call(*requests):
    """Run (method, url, kwargs) requests in order on one client; return the responses."""

    async def _run():
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            return [await client.request(method, url, **kwargs) for method, url, kwargs in requests]

    return asyncio.run(_run())


def _user(timezone="UTC", telegram_user_id=111):
    return ("POST", "/users", {"json": {"telegram_user_id": telegram_user_id, "chat_id": 222, "timezone": timezone}})


def test_healthz_sets_request_id(repo):
    (resp,) = _call(("GET", "/healthz", {}))
    assert resp.status_code == 200
    assert resp.json() == {"ok": "true"}
    assert resp.headers["X-Request-ID"]


def test_users_create_and_list(repo):
    created, bad_tz, zero, listed = _call(
        _user("+03:00"),
        _user("Mars/Base", telegram_user_id=112),
        ("POST", "/users", {"json": {"telegram_user_id": 0, "chat_id": 1}}),
        ("GET", "/users", {}),
    )
    assert created.status_code == 201
    assert created.json()["timezone"] == "+03:00"
    assert bad_tz.status_code == 400
    assert bad_tz.json() == {"detail": "timezone"}
    assert zero.status_code == 422
    assert [u["telegram_user_id"] for u in listed.json()["items"]] == [111]


def test_task_created_in_offset_timezone_is_stored_in_utc(repo):
    created = _call(
        _user("+03:00"),
        ("POST", "/tasks", {
            "params": {"tz": "+03:00"},
            "json": {"user_id": 1, "text": " call mom ", "due_at": "2026-01-02T10:00:00+03:00"},
        }),
    )[1]
    assert created.status_code == 201
    body = created.json()
    assert body["text"] == "call mom"
    assert body["status"] == "active"
    assert body["due_at"] == "2026-01-02T10:00:00+03:00"

    async def _stored():
        return await repo.get_task(body["id"])

    stored = asyncio.run(_stored())
    assert stored.due_at.isoformat() == "2026-01-02T07:00:00+00:00"

    (utc_view,) = _call(("GET", f"/tasks/{body['id']}", {}))
    assert utc_view.json()["due_at"] == "2026-01-02T07:00:00Z"


def test_task_validation_errors(repo):
    empty, bad_tz, no_user, bad_id, missing, unknown_status = _call(
        _user(),
        ("POST", "/tasks", {"json": {"user_id": 1, "text": "   "}}),
        ("POST", "/tasks", {"params": {"tz": "bogus"}, "json": {"user_id": 1, "text": "x"}}),
        ("POST", "/tasks", {"json": {"user_id": 99, "text": "x"}}),
        ("GET", "/tasks/0", {}),
        ("GET", "/tasks/42", {}),
        ("GET", "/tasks", {"params": {"user_id": 1, "status": "archived"}}),
    )[1:]
    assert (empty.status_code, empty.json()) == (400, {"detail": "text"})
    assert (bad_tz.status_code, bad_tz.json()) == (400, {"detail": "timezone"})
    assert (no_user.status_code, no_user.json()) == (404, {"detail": "user"})
    assert bad_id.status_code == 422
    assert (missing.status_code, missing.json()) == (404, {"detail": "not_found"})
    assert unknown_status.status_code == 422


def test_list_filters_by_status(repo):
    responses = _call(
        _user(),
        ("POST", "/tasks", {"json": {"user_id": 1, "text": "open"}}),
        ("POST", "/tasks", {"json": {"user_id": 1, "text": "closed", "status": "done"}}),
        ("GET", "/tasks", {"params": {"user_id": 1}}),
        ("GET", "/tasks", {"params": {"user_id": 1, "status": "done"}}),
    )
    closed = responses[2].json()
    assert closed["status"] == "done"
    assert [t["text"] for t in responses[3].json()["items"]] == ["open", "closed"]
    assert [t["text"] for t in responses[4].json()["items"]] == ["closed"]


def test_patch_and_delete(repo):
    responses = _call(
        _user(),
        ("POST", "/tasks", {"json": {"user_id": 1, "text": "draft", "remind_at": "2026-01-01T11:00:00Z"}}),
        ("PATCH", "/tasks/1", {"json": {}}),
        ("PATCH", "/tasks/1", {"json": {"status": None}}),
        ("PATCH", "/tasks/1", {"json": {"notified_at": "2026-01-01T11:00:00Z"}}),
        ("PATCH", "/tasks/1", {"json": {"text": "final", "due_at": None}}),
        ("PATCH", "/tasks/1", {"json": {"remind_at": None}}),
        ("DELETE", "/tasks/1", {}),
        ("DELETE", "/tasks/1", {}),
        ("PATCH", "/tasks/1", {"json": {"text": "gone"}}),
    )
    empty, null_status, forbidden, renamed, cleared, deleted, again, gone = responses[2:]
    assert (empty.status_code, empty.json()) == (400, {"detail": "No fields to update"})
    assert (null_status.status_code, null_status.json()) == (400, {"detail": "status"})
    assert forbidden.status_code == 422
    assert renamed.status_code == 200
    assert renamed.json()["text"] == "final"
    assert renamed.json()["remind_at"] == "2026-01-01T11:00:00Z"
    assert cleared.json()["remind_at"] is None
    assert deleted.status_code == 204
    assert again.status_code == 404
    assert gone.status_code == 404


def test_lifespan_without_token_skips_poller():
    async def _run():
        stub = MemoryRepository()
        with patch("api.main.repository", stub), patch("api.main.build_poller") as build_poller:
            async with lifespan(app):
                pass
        build_poller.assert_not_called()

    asyncio.run(_run())


def test_times_without_offset_are_rejected(repo):
    responses = _call(
        _user("+03:00"),
        ("POST", "/tasks", {
            "params": {"tz": "+03:00"},
            "json": {"user_id": 1, "text": "call mom", "due_at": "2026-01-02T10:00:00"},
        }),
        ("POST", "/tasks", {"json": {"user_id": 1, "text": "call mom"}}),
        ("PATCH", "/tasks/1", {"json": {"remind_at": "2026-01-02T09:30:00"}}),
    )
    naive_create, created, naive_patch = responses[1:]
    assert naive_create.status_code == 422
    assert created.status_code == 201
    assert naive_patch.status_code == 422

    async def _stored():
        return await repo.list_tasks(1)

    stored = asyncio.run(_stored())
    assert [t.text for t in stored] == ["call mom"]
    assert stored[0].remind_at is None


def test_ids_beyond_bigint_are_rejected(repo):
    huge = "99999999999999999999"
    got, patched, deleted, listed = _call(
        ("GET", f"/tasks/{huge}", {}),
        ("PATCH", f"/tasks/{huge}", {"json": {"text": "x"}}),
        ("DELETE", f"/tasks/{huge}", {}),
        ("GET", "/tasks", {"params": {"user_id": huge}}),
    )
    assert [r.status_code for r in (got, patched, deleted, listed)] == [422, 422, 422, 422]
