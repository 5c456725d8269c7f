"""HTTP tests for work item, hierarchy, status and watcher endpoints."""

from __future__ import annotations

import json

import pytest
from httpx import AsyncClient

from tests._db_factory import Workflow
from tests.api.conftest import create_item
from trellis.api_routes.common import _engine_error
from trellis.core import TrellisDB
from trellis.errors import (
    CircularMoveError,
    CircularRelationshipError,
    CountConstraintViolationError,
    DepthLimitExceededError,
    InvalidChildTypeError,
    InvalidFieldValueError,
    InvalidTemplateSyntaxError,
    NotFoundError,
    StatusConflictError,
)


class TestHealth:
    async def test_health(self, client: AsyncClient) -> None:
        resp = await client.get("/api/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "ok"
        assert data["prefix"] == "test"


class TestCreateItem:
    async def test_create_root(self, client: AsyncClient, api_db: tuple[TrellisDB, Workflow]) -> None:
        _, wf = api_db
        resp = await client.post(
            "/api/items",
            json={"type": "Project", "organization_id": "acme", "subject": "Website", "custom_fields": {"budget": 1200}},
        )
        assert resp.status_code == 201
        data = resp.json()
        item = data["item"]
        assert item["type_id"] == wf.types["Project"]
        assert item["status_id"] == wf.status("Project", "Open")
        assert item["depth"] == 0
        assert item["root_id"] == item["id"]
        assert item["custom_fields"]["budget"] == 1200
        assert data["children"] == []
        assert data["failures"] == []

    async def test_create_child_inherits_org(self, client: AsyncClient) -> None:
        project = await create_item(client, type="Project", subject="Website")
        resp = await client.post("/api/items", json={"type": "Task", "subject": "Design", "parent_id": project["id"]})
        assert resp.status_code == 201
        child = resp.json()["item"]
        assert child["organization_id"] == "acme"
        assert child["parent_id"] == project["id"]
        assert child["depth"] == 1
        assert child["path"] == [project["id"]]

    async def test_missing_subject(self, client: AsyncClient) -> None:
        resp = await client.post("/api/items", json={"type": "Task", "organization_id": "acme", "subject": "  "})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "VALIDATION_ERROR"

    async def test_root_needs_org(self, client: AsyncClient) -> None:
        resp = await client.post("/api/items", json={"type": "Task", "subject": "Orphan"})
        assert resp.status_code == 400
        assert "organization_id" in resp.json()["error"]["message"]

    async def test_unknown_keys_rejected(self, client: AsyncClient) -> None:
        resp = await client.post(
            "/api/items", json={"type": "Task", "organization_id": "acme", "subject": "X", "status": "Closed"}
        )
        assert resp.status_code == 400
        assert "status" in resp.json()["error"]["message"]

    async def test_unknown_type(self, client: AsyncClient) -> None:
        resp = await client.post("/api/items", json={"type": "Epic", "organization_id": "acme", "subject": "X"})
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "NOT_FOUND"

    async def test_invalid_child_type(self, client: AsyncClient) -> None:
        project = await create_item(client, type="Project", subject="Website")
        resp = await client.post("/api/items", json={"type": "Subtask", "subject": "X", "parent_id": project["id"]})
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "INVALID_CHILD_TYPE"

    async def test_max_count_conflict(self, client: AsyncClient) -> None:
        project = await create_item(client, type="Project", subject="Website")
        for i in range(3):
            await create_item(client, type="Task", subject=f"Task {i}", parent_id=project["id"])
        resp = await client.post("/api/items", json={"type": "Task", "subject": "One too many", "parent_id": project["id"]})
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "COUNT_CONSTRAINT_VIOLATION"

    async def test_invalid_json(self, client: AsyncClient) -> None:
        resp = await client.post("/api/items", content=b"{not json", headers={"content-type": "application/json"})
        assert resp.status_code == 400
        assert resp.json()["error"]["message"] == "Invalid JSON body"

    async def test_body_must_be_object(self, client: AsyncClient) -> None:
        resp = await client.post("/api/items", json=["Task"])
        assert resp.status_code == 400


class TestReadItems:
    async def test_get_item(self, client: AsyncClient) -> None:
        task = await create_item(client, type="Task", subject="Fix login")
        resp = await client.get(f"/api/items/{task['id']}")
        assert resp.status_code == 200
        data = resp.json()
        assert data["subject"] == "Fix login"
        assert data["missing_children"] == []

    async def test_missing_required_children(self, client: AsyncClient, api_db: tuple[TrellisDB, Workflow]) -> None:
        db, wf = api_db
        db.define_relationship(wf.types["Subtask"], wf.types["Task"], "checks", is_required=True)
        subtask = await create_item(client, type="Subtask", subject="Verify")
        resp = await client.get(f"/api/items/{subtask['id']}")
        (missing,) = resp.json()["missing_children"]
        assert missing["child_type_id"] == wf.types["Task"]
        assert (missing["required"], missing["actual"]) == (1, 0)

    async def test_get_missing(self, client: AsyncClient) -> None:
        resp = await client.get("/api/items/test-nope")
        assert resp.status_code == 404
        assert resp.json()["error"]["message"] == "Work item not found: test-nope"

    async def test_list_with_filters(self, client: AsyncClient) -> None:
        project = await create_item(client, type="Project", subject="Website")
        await create_item(client, type="Task", subject="Child", parent_id=project["id"])
        await create_item(client, type="Task", subject="Loose", organization_id="globex")

        resp = await client.get("/api/items", params={"roots": "true"})
        assert {i["subject"] for i in resp.json()["items"]} == {"Website", "Loose"}

        resp = await client.get("/api/items", params={"organization_id": "acme", "type": "Task"})
        assert [i["subject"] for i in resp.json()["items"]] == ["Child"]

    async def test_list_bad_params(self, client: AsyncClient) -> None:
        resp = await client.get("/api/items", params={"limit": "0"})
        assert resp.status_code == 400
        resp = await client.get("/api/items", params={"roots": "maybe"})
        assert resp.status_code == 400

    async def test_tree_endpoints(self, client: AsyncClient) -> None:
        project = await create_item(client, type="Project", subject="Website")
        task = await create_item(client, type="Task", subject="Design", parent_id=project["id"])
        sub = await create_item(client, type="Subtask", subject="Mockups", parent_id=task["id"])

        children = (await client.get(f"/api/items/{project['id']}/children")).json()
        assert [c["id"] for c in children] == [task["id"]]
        descendants = (await client.get(f"/api/items/{project['id']}/descendants")).json()
        assert {d["id"] for d in descendants} == {task["id"], sub["id"]}
        ancestors = (await client.get(f"/api/items/{sub['id']}/ancestors")).json()
        assert [a["id"] for a in ancestors] == [project["id"], task["id"]]


class TestUpdateItem:
    async def test_patch(self, client: AsyncClient) -> None:
        task = await create_item(client, type="Task", subject="Fix login")
        resp = await client.patch(
            f"/api/items/{task['id']}",
            json={"subject": "Fix SSO login", "priority": "high", "custom_fields": {"severity": "high"}},
        )
        assert resp.status_code == 200
        data = resp.json()
        assert data["subject"] == "Fix SSO login"
        assert data["priority"] == "high"
        assert data["custom_fields"]["severity"] == "high"

    async def test_patch_status_hint(self, client: AsyncClient) -> None:
        task = await create_item(client, type="Task", subject="Fix login")
        resp = await client.patch(f"/api/items/{task['id']}", json={"status": "Closed"})
        assert resp.status_code == 400
        assert "/status" in resp.json()["error"]["message"]

    async def test_patch_bad_enum(self, client: AsyncClient) -> None:
        task = await create_item(client, type="Task", subject="Fix login")
        resp = await client.patch(f"/api/items/{task['id']}", json={"custom_fields": {"severity": "extreme"}})
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "INVALID_FIELD_VALUE"

    async def test_delete(self, client: AsyncClient) -> None:
        task = await create_item(client, type="Task", subject="Fix login")
        resp = await client.delete(f"/api/items/{task['id']}")
        assert resp.status_code == 200
        assert resp.json()["deleted_at"] is not None
        assert (await client.get(f"/api/items/{task['id']}")).status_code == 404

    async def test_delete_with_children_conflicts(self, client: AsyncClient) -> None:
        project = await create_item(client, type="Project", subject="Website")
        await create_item(client, type="Task", subject="Design", parent_id=project["id"])
        resp = await client.delete(f"/api/items/{project['id']}")
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "HAS_CHILDREN"


class TestMove:
    async def test_move_between_parents(self, client: AsyncClient) -> None:
        first = await create_item(client, type="Project", subject="First")
        second = await create_item(client, type="Project", subject="Second")
        task = await create_item(client, type="Task", subject="Design", parent_id=first["id"])
        resp = await client.post(f"/api/items/{task['id']}/move", json={"parent_id": second["id"]})
        assert resp.status_code == 200
        moved = resp.json()
        assert moved["parent_id"] == second["id"]
        assert moved["path"] == [second["id"]]

    async def test_move_to_root(self, client: AsyncClient) -> None:
        project = await create_item(client, type="Project", subject="Website")
        task = await create_item(client, type="Task", subject="Design", parent_id=project["id"])
        resp = await client.post(f"/api/items/{task['id']}/move", json={"parent_id": None})
        assert resp.status_code == 200
        moved = resp.json()
        assert moved["parent_id"] is None
        assert moved["depth"] == 0

    async def test_move_requires_parent_key(self, client: AsyncClient) -> None:
        task = await create_item(client, type="Task", subject="Design")
        resp = await client.post(f"/api/items/{task['id']}/move", json={})
        assert resp.status_code == 400

    async def test_move_under_descendant(self, client: AsyncClient) -> None:
        task = await create_item(client, type="Task", subject="Design")
        sub = await create_item(client, type="Subtask", subject="Mockups", parent_id=task["id"])
        resp = await client.post(f"/api/items/{task['id']}/move", json={"parent_id": sub["id"]})
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] in {"CIRCULAR_MOVE", "INVALID_CHILD_TYPE"}


class TestStatus:
    async def test_change_status(self, client: AsyncClient, api_db: tuple[TrellisDB, Workflow]) -> None:
        _, wf = api_db
        task = await create_item(client, type="Task", subject="Fix login")
        resp = await client.post(f"/api/items/{task['id']}/status", json={"status": "In Progress"})
        assert resp.status_code == 200
        data = resp.json()
        assert data["item"]["status_id"] == wf.status("Task", "In Progress")
        assert data["item"]["started_at"] is not None
        assert data["actions"] == []

    async def test_validation_failure_is_422(self, client: AsyncClient) -> None:
        resp = await client.post(
            "/api/transitions",
            json={
                "type": "Task",
                "from_status": "Open",
                "to_status": "Closed",
                "validation_config": {"required_fields": ["resolution_notes"]},
            },
        )
        assert resp.status_code == 201
        task = await create_item(client, type="Task", subject="Fix login")

        resp = await client.post(f"/api/items/{task['id']}/status", json={"status": "Closed"})
        assert resp.status_code == 422
        error = resp.json()["error"]
        assert error["code"] == "VALIDATION_FAILED"
        assert error["message"] == "Transition validation failed"
        assert error["details"]["errors"] == ["resolution_notes is required"]

        await client.patch(f"/api/items/{task['id']}", json={"custom_fields": {"resolution_notes": "Patched"}})
        resp = await client.post(f"/api/items/{task['id']}/status", json={"status": "Closed"})
        assert resp.status_code == 200

    async def test_denied_transition_is_409(self, client: AsyncClient) -> None:
        resp = await client.post(
            "/api/transitions", json={"type": "Task", "from_status": "Open", "to_status": "Cancelled", "is_allowed": False}
        )
        assert resp.status_code == 201
        task = await create_item(client, type="Task", subject="Fix login")
        resp = await client.post(f"/api/items/{task['id']}/status", json={"status": "Cancelled"})
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "TRANSITION_NOT_ALLOWED"

    async def test_unknown_status(self, client: AsyncClient) -> None:
        task = await create_item(client, type="Task", subject="Fix login")
        resp = await client.post(f"/api/items/{task['id']}/status", json={"status": "Shipped"})
        assert resp.status_code == 404

    async def test_status_required(self, client: AsyncClient) -> None:
        task = await create_item(client, type="Task", subject="Fix login")
        resp = await client.post(f"/api/items/{task['id']}/status", json={})
        assert resp.status_code == 400

    async def test_events(self, client: AsyncClient) -> None:
        task = await create_item(client, type="Task", subject="Fix login", actor="alice")
        await client.post(f"/api/items/{task['id']}/status", json={"status": "In Progress", "actor": "alice"})

        events = (await client.get(f"/api/items/{task['id']}/events")).json()
        types = [e["event_type"] for e in events]
        assert "created" in types
        assert "status_changed" in types
        assert all(e["actor"] == "alice" for e in events if e["event_type"] == "status_changed")

        filtered = (await client.get(f"/api/items/{task['id']}/events", params={"event_type": "created"})).json()
        assert {e["event_type"] for e in filtered} == {"created"}

    async def test_events_missing_item(self, client: AsyncClient) -> None:
        resp = await client.get("/api/items/test-nope/events")
        assert resp.status_code == 404


class TestWatchers:
    async def test_creator_auto_watches(self, client: AsyncClient) -> None:
        task = await create_item(client, type="Task", subject="Fix login", actor="alice")
        watchers = (await client.get(f"/api/items/{task['id']}/watchers")).json()
        assert [(w["user_id"], w["watch_type"]) for w in watchers] == [("alice", "auto_creator")]

    async def test_add_and_remove(self, client: AsyncClient) -> None:
        task = await create_item(client, type="Task", subject="Fix login", actor="alice")
        resp = await client.post(
            f"/api/items/{task['id']}/watchers", json={"user_id": "bob", "preferences": {"comments": False}}
        )
        assert resp.status_code == 201
        watcher = resp.json()
        assert watcher["watch_type"] == "manual"
        assert watcher["notify_comments"] is False
        assert watcher["notify_status_changes"] is True

        resp = await client.delete(f"/api/items/{task['id']}/watchers/bob")
        assert resp.status_code == 200
        assert resp.json()["removed"] is True

        resp = await client.delete(f"/api/items/{task['id']}/watchers/bob")
        assert resp.status_code == 404

    async def test_bad_preferences(self, client: AsyncClient) -> None:
        task = await create_item(client, type="Task", subject="Fix login")
        resp = await client.post(
            f"/api/items/{task['id']}/watchers", json={"user_id": "bob", "preferences": {"weather": True}}
        )
        assert resp.status_code == 400
        assert "status_changes" in resp.json()["error"]["message"]

    async def test_watching(self, client: AsyncClient) -> None:
        task = await create_item(client, type="Task", subject="Fix login", actor="alice")
        other = await create_item(client, type="Task", subject="Write docs")
        await client.post(f"/api/items/{other['id']}/watchers", json={"user_id": "alice"})
        await create_item(client, type="Task", subject="Unrelated", actor="bob")

        resp = await client.get("/api/users/alice/watching")
        assert resp.status_code == 200
        data = resp.json()
        assert {i["id"] for i in data["items"]} == {task["id"], other["id"]}
        assert (data["limit"], data["offset"]) == (100, 0)

        await client.delete(f"/api/items/{task['id']}")
        data = (await client.get("/api/users/alice/watching")).json()
        assert [i["id"] for i in data["items"]] == [other["id"]]

    async def test_watching_bad_limit(self, client: AsyncClient) -> None:
        resp = await client.get("/api/users/alice/watching", params={"limit": "0"})
        assert resp.status_code == 400


class TestErrorMapping:
    @pytest.mark.parametrize(
        ("exc", "status"),
        [
            (NotFoundError("Work item", "test-x"), 404),
            (StatusConflictError("test-x", "Open"), 409),
            (CountConstraintViolationError("Task", 3), 409),
            (DepthLimitExceededError(11, 10), 422),
            (CircularMoveError("test-x", "test-y"), 422),
            (CircularRelationshipError("test-type-1"), 422),
            (InvalidChildTypeError("Project", "Subtask"), 422),
            (InvalidTemplateSyntaxError("{parent", "unclosed brace"), 422),
            (InvalidFieldValueError("Field 'estimate' expects a number"), 422),
            (ValueError("Subject cannot be empty"), 400),
        ],
    )
    def test_status_codes(self, exc: Exception, status: int) -> None:
        resp = _engine_error(exc)
        assert resp.status_code == status
        body = json.loads(resp.body)
        assert body["error"]["message"] == str(exc)
        assert body["error"]["code"] == getattr(exc, "code", "VALIDATION_ERROR")
