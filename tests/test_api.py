import httpx
import pytest

from task_api.main import create_app


@pytest.fixture
async def client(ctx):
    app = create_app()
    app.state.context = ctx
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def auth(user_id) -> dict:
    return {"X-User-Id": str(user_id)}


async def test_root(client):
    response = await client.get("/")
    assert response.status_code == 200
    assert response.json()["docs"] == "/docs"


async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["checks"]["database"]["status"] == "healthy"
    assert isinstance(body["checks"]["database"]["pool"], str)
    assert body["checks"]["cache"]["healthy"] is True


async def test_requests_without_user_are_rejected(client):
    response = await client.get("/tasks/")
    assert response.status_code == 401


async def test_create_then_list_reports_cache_state(client, auth):
    created = await client.post("/tasks/", json={"title": "A", "priority": "high"}, headers=auth)
    assert created.status_code == 201
    task = created.json()["data"]
    assert task["completed"] is False
    assert "from_cache" not in task

    first = (await client.get("/tasks/", headers=auth)).json()
    second = (await client.get("/tasks/", headers=auth)).json()
    assert (first["cached"], second["cached"]) == (False, True)
    assert second["data"] == first["data"]
    assert first["data"]["pagination"]["total"] == 1

    completed = await client.post(f"/tasks/{task['id']}/complete", headers=auth)
    assert completed.json()["data"]["completed"] is True

    third = (await client.get("/tasks/", headers=auth)).json()
    assert third["cached"] is False
    assert third["data"]["items"][0]["completed"] is True


async def test_unknown_task_is_404(client, auth):
    assert (await client.get("/tasks/999", headers=auth)).status_code == 404
    assert (await client.patch("/tasks/999", json={"title": "x"}, headers=auth)).status_code == 404
    assert (await client.delete("/tasks/999", headers=auth)).status_code == 404


async def test_delete_task(client, auth):
    task = (await client.post("/tasks/", json={"title": "A"}, headers=auth)).json()["data"]
    assert (await client.delete(f"/tasks/{task['id']}", headers=auth)).status_code == 204
    assert (await client.get(f"/tasks/{task['id']}", headers=auth)).status_code == 404


async def test_foreign_category_is_an_invalid_reference(client, auth, ctx, other_user_id):
    theirs = await ctx.categories.create(other_user_id, {"name": "Theirs"})
    response = await client.post(
        "/tasks/", json={"title": "A", "category_id": theirs.id}, headers=auth
    )
    assert response.status_code == 400
    assert response.json() == {
        "success": False,
        "error": {
            "code": "INVALID_REFERENCE",
            "message": "Category not found or does not belong to user",
        },
    }


async def test_empty_update_is_a_validation_error(client, auth):
    task = (await client.post("/tasks/", json={"title": "A"}, headers=auth)).json()["data"]
    response = await client.patch(f"/tasks/{task['id']}", json={}, headers=auth)
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"


async def test_stats_endpoint(client, auth):
    await client.post("/tasks/", json={"title": "A", "priority": "urgent"}, headers=auth)
    body = (await client.get("/tasks/stats", headers=auth)).json()
    assert body["data"]["total"] == 1
    assert body["data"]["urgent"] == 1
    assert body["cached"] is False


async def test_category_endpoints(client, auth):
    created = await client.post("/categories/", json={"name": "Work"}, headers=auth)
    assert created.status_code == 201
    category = created.json()["data"]

    duplicate = await client.post("/categories/", json={"name": "Work"}, headers=auth)
    assert duplicate.status_code == 409
    assert duplicate.json()["error"]["code"] == "DUPLICATE_RESOURCE"

    listing = (await client.get("/categories/", headers=auth)).json()
    assert [c["name"] for c in listing["data"]] == ["Work"]

    removed = await client.delete(f"/categories/{category['id']}", headers=auth)
    assert removed.json()["success"] is True
    assert (await client.get(f"/categories/{category['id']}", headers=auth)).status_code == 404
