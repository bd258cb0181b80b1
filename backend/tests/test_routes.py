"""Tests for api/routes.py and api/websocket.py -- HTTP and WebSocket handlers.

Uses FastAPI TestClient (backed by httpx) with every service built by
``init_services``; the LLM is a MockLLMClient and runs use scripted
execution contexts. No real Docker, subprocess or LLM calls are made.
"""

import json
import time
from collections.abc import AsyncGenerator, Generator
from contextlib import asynccontextmanager
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from agents.llm import MockLLMClient
from api.routes import router
from api.websocket import handle_command, websocket_router
from config import Settings
from main import init_services, shutdown_services
from sandbox.runner import RunNotFoundError, SandboxRunner
from tests.conftest import (
    ScriptedContextFactory,
    edits_response,
    make_llm_response,
    make_mock_llm,
    plan_response,
    summary_response,
)

BROKEN_UTIL = "def add(a, b):\n    return a - b\n"
FIXED_UTIL = "def add(a, b):\n    return a + b\n"

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def llm() -> MockLLMClient:
    """Mock LLM; tests append the responses they need."""
    return make_mock_llm()


@pytest.fixture()
def contexts() -> ScriptedContextFactory:
    return ScriptedContextFactory()


@pytest.fixture()
def client(
    test_settings: Settings,
    llm: MockLLMClient,
    contexts: ScriptedContextFactory,
) -> Generator[TestClient, None, None]:
    """TestClient over an app whose lifespan wires the real services."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        await init_services(app, test_settings, llm_client=llm, context_factory=contexts)
        yield
        await shutdown_services(app)

    app = FastAPI(lifespan=lifespan)
    app.include_router(router)
    app.include_router(websocket_router)
    with TestClient(app) as test_client:
        yield test_client


def _create_workspace(client: TestClient, template_id: str = "default") -> dict[str, Any]:
    response = client.post("/api/workspaces", json={"name": "Demo", "template_id": template_id})
    assert response.status_code == 201
    return response.json()


def _seed_util(client: TestClient) -> None:
    _create_workspace(client)
    response = client.put(
        "/api/workspace/files", json={"path": "util.py", "content": BROKEN_UTIL}
    )
    assert response.status_code == 200


def _wait_for_task(client: TestClient, task_id: str, timeout: float = 5.0) -> dict[str, Any]:
    """Poll until the task leaves idle/running."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        task = client.get(f"/api/tasks/{task_id}").json()
        if task["status"] not in ("idle", "running"):
            return task
        time.sleep(0.02)
    raise AssertionError(f"Task {task_id} did not finish")


# =========================================================================
# Health
# =========================================================================


class TestHealth:
    def test_healthy(self, client: TestClient) -> None:
        response = client.get("/api/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["sandbox_backend"] == "subprocess"
        assert data["workspace_loaded"] is False
        assert data["active_runs"] == 0

    def test_unhealthy_without_services(self) -> None:
        app = FastAPI()
        app.include_router(router)
        with TestClient(app) as bare:
            assert bare.get("/api/health").json()["status"] == "unhealthy"


# =========================================================================
# Workspaces and files
# =========================================================================


class TestWorkspaces:
    def test_create_list_load_delete(self, client: TestClient) -> None:
        created = _create_workspace(client, "python-package")
        assert created["template_id"] == "python-package"
        assert "app/greeting.py" in created["files"]

        listed = client.get("/api/workspaces").json()
        assert [w["id"] for w in listed] == [created["id"]]

        loaded = client.post(f"/api/workspaces/{created['id']}/load")
        assert loaded.status_code == 200

        assert client.delete(f"/api/workspaces/{created['id']}").status_code == 204
        assert client.delete(f"/api/workspaces/{created['id']}").status_code == 404
        assert client.get("/api/workspace").status_code == 409

    def test_load_missing(self, client: TestClient) -> None:
        assert client.post("/api/workspaces/ws_missing/load").status_code == 404

    def test_create_requires_name(self, client: TestClient) -> None:
        assert client.post("/api/workspaces", json={"name": ""}).status_code == 422

    def test_file_operations_need_workspace(self, client: TestClient) -> None:
        response = client.put("/api/workspace/files", json={"path": "a.py", "content": ""})
        assert response.status_code == 409


class TestFiles:
    def test_upsert_and_guess_language(self, client: TestClient) -> None:
        _create_workspace(client)
        response = client.put("/api/workspace/files", json={"path": "pkg/mod.py", "content": "x"})
        assert response.status_code == 200
        assert response.json()["language"] == "python"
        assert "pkg/mod.py" in client.get("/api/workspace").json()["files"]

    def test_traversal_rejected(self, client: TestClient) -> None:
        _create_workspace(client)
        response = client.put("/api/workspace/files", json={"path": "../evil.py", "content": ""})
        assert response.status_code == 400

    def test_rename(self, client: TestClient) -> None:
        _create_workspace(client)
        ok = client.post(
            "/api/workspace/files/rename", json={"old_path": "main.py", "new_path": "app.py"}
        )
        assert ok.status_code == 200
        assert ok.json()["metadata"]["is_entry_point"] is True

        missing = client.post(
            "/api/workspace/files/rename", json={"old_path": "nope.py", "new_path": "x.py"}
        )
        assert missing.status_code == 404

        taken = client.post(
            "/api/workspace/files/rename", json={"old_path": "app.py", "new_path": "README.md"}
        )
        assert taken.status_code == 409

    def test_delete(self, client: TestClient) -> None:
        _create_workspace(client)
        assert client.delete("/api/workspace/files/README.md").status_code == 204
        assert client.delete("/api/workspace/files/README.md").status_code == 404

    def test_set_entry(self, client: TestClient) -> None:
        _create_workspace(client, "python-package")
        response = client.post("/api/workspace/entry", json={"path": "app/greeting.py"})
        assert response.status_code == 200
        files = response.json()["files"]
        entries = [p for p, f in files.items() if f["metadata"]["is_entry_point"]]
        assert entries == ["app/greeting.py"]
        assert client.post("/api/workspace/entry", json={"path": "x.py"}).status_code == 404


# =========================================================================
# Runs
# =========================================================================


class TestRuns:
    def test_start_run(self, client: TestClient, contexts: ScriptedContextFactory) -> None:
        _create_workspace(client)
        response = client.post("/api/runs", json={})
        assert response.status_code == 202
        assert response.json()["entry_file"] == "main.py"
        assert response.json()["run_id"].startswith("run_")

    def test_run_needs_workspace(self, client: TestClient) -> None:
        assert client.post("/api/runs", json={}).status_code == 409

    def test_timeout_is_validated(self, client: TestClient) -> None:
        _create_workspace(client)
        assert client.post("/api/runs", json={"timeout_ms": 5}).status_code == 422

    def test_stop_unknown_run(self, client: TestClient) -> None:
        assert client.post("/api/runs/run_missing/stop").status_code == 404
        assert client.post("/api/runs/stop").json() == {"stopped": 0}


# =========================================================================
# Tasks
# =========================================================================


class TestTasks:
    def test_plan(self, client: TestClient, llm: MockLLMClient) -> None:
        _seed_util(client)
        llm.responses.append(plan_response(["util.py", "ghost.py"], notes="util only"))

        response = client.post("/api/tasks/plan", json={"goal": "Fix add"})

        assert response.status_code == 200
        assert response.json() == {"notes": "util only", "focus_paths": ["util.py"]}

    def test_plan_without_workspace(self, client: TestClient) -> None:
        assert client.post("/api/tasks/plan", json={"goal": "x"}).status_code == 409

    def test_plan_protocol_error(self, client: TestClient, llm: MockLLMClient) -> None:
        _seed_util(client)
        llm.responses.append(make_llm_response("no idea"))
        assert client.post("/api/tasks/plan", json={"goal": "x"}).status_code == 502

    def test_edit_then_apply(self, client: TestClient, llm: MockLLMClient) -> None:
        _seed_util(client)
        llm.responses.extend(
            [
                edits_response("fix", {"util.py": FIXED_UTIL, "main.py": "hacked"}),
                edits_response("ok", {"util.py": FIXED_UTIL}),
            ]
        )

        submitted = client.post(
            "/api/tasks/edit", json={"goal": "Fix add", "focus_paths": ["util.py"]}
        )
        assert submitted.status_code == 202
        assert submitted.json()["status"] == "idle"

        task = _wait_for_task(client, submitted.json()["task_id"])
        assert task["status"] == "pending_approval"
        assert [c["path"] for c in task["proposed"]] == ["util.py"]

        applied = client.post(f"/api/tasks/{task['id']}/apply")
        assert applied.json() == {"task_id": task["id"], "status": "done", "changed": True}
        files = client.get("/api/workspace").json()["files"]
        assert files["util.py"]["content"] == FIXED_UTIL
        assert files["main.py"]["content"] != "hacked"

        again = client.post(f"/api/tasks/{task['id']}/apply")
        assert again.json()["changed"] is False

    def test_edit_with_planned_focus(self, client: TestClient, llm: MockLLMClient) -> None:
        _seed_util(client)
        llm.responses.extend(
            [
                plan_response(["util.py"]),
                edits_response("fix", {"util.py": FIXED_UTIL}),
                edits_response("ok", {"util.py": FIXED_UTIL}),
            ]
        )
        submitted = client.post("/api/tasks/edit", json={"goal": "Fix add"})
        assert submitted.json()["focus_paths"] == ["util.py"]
        assert _wait_for_task(client, submitted.json()["task_id"])["status"] == "pending_approval"

    def test_reject(self, client: TestClient, llm: MockLLMClient) -> None:
        _seed_util(client)
        llm.responses.extend(
            [
                edits_response("fix", {"util.py": FIXED_UTIL}),
                edits_response("ok", {"util.py": FIXED_UTIL}),
            ]
        )
        task_id = client.post(
            "/api/tasks/edit", json={"goal": "Fix", "focus_paths": ["util.py"]}
        ).json()["task_id"]
        _wait_for_task(client, task_id)

        rejected = client.post(f"/api/tasks/{task_id}/reject").json()
        assert rejected == {"task_id": task_id, "status": "done", "changed": True}
        assert client.get(f"/api/tasks/{task_id}").json()["proposed"] == []
        assert client.post(f"/api/tasks/{task_id}/apply").json()["changed"] is False
        files = client.get("/api/workspace").json()["files"]
        assert files["util.py"]["content"] == BROKEN_UTIL

    def test_failed_task_reports_error(self, client: TestClient, llm: MockLLMClient) -> None:
        _seed_util(client)
        llm.responses.append(make_llm_response("nope"))
        task_id = client.post(
            "/api/tasks/edit", json={"goal": "Fix", "focus_paths": ["util.py"]}
        ).json()["task_id"]
        task = _wait_for_task(client, task_id)
        assert task["status"] == "error"
        assert "invalid response" in task["error"]

    def test_auto_fix_records_memory(self, client: TestClient, llm: MockLLMClient) -> None:
        _seed_util(client)
        llm.responses.extend(
            [
                edits_response("fix", {"util.py": FIXED_UTIL}),
                edits_response("ok", {"util.py": FIXED_UTIL}),
                summary_response("Fixed subtraction.", "success"),
            ]
        )

        submitted = client.post(
            "/api/tasks/auto-fix",
            json={"goal": "Fix add", "focus_paths": ["util.py"], "test_also": False},
        )
        assert submitted.status_code == 202
        task = _wait_for_task(client, submitted.json()["task_id"])

        assert task["status"] == "pending_approval"
        assert task["kind"] == "auto_fix"
        assert len(task["iterations"]) == 1
        assert task["review_notes"] == "No runtime error detected."

        memory = client.get("/api/memory").json()
        assert memory[0]["summary"] == "Fixed subtraction."
        assert memory[0]["filesModified"] == ["util.py"]

    def test_unknown_task(self, client: TestClient) -> None:
        assert client.get("/api/tasks/task_missing").status_code == 404
        assert client.post("/api/tasks/task_missing/apply").status_code == 404
        assert client.post("/api/tasks/task_missing/reject").status_code == 404

    def test_list_tasks_newest_first(self, client: TestClient, llm: MockLLMClient) -> None:
        _seed_util(client)
        llm.responses.extend([make_llm_response("x"), make_llm_response("y")])
        first = client.post("/api/tasks/edit", json={"goal": "a", "focus_paths": ["util.py"]})
        _wait_for_task(client, first.json()["task_id"])
        second = client.post("/api/tasks/edit", json={"goal": "b", "focus_paths": ["util.py"]})
        _wait_for_task(client, second.json()["task_id"])

        ids = [t["id"] for t in client.get("/api/tasks").json()]
        assert ids == [second.json()["task_id"], first.json()["task_id"]]


# =========================================================================
# Task memory
# =========================================================================


class TestMemory:
    ITEMS = [
        {"id": "mem_a", "goal": "Fix parser crash", "outcome": "fail", "filesModified": ["p.py"]},
        {"id": "mem_b", "goal": "Fix lexer bug", "outcome": "success", "filesModified": ["p.py"]},
    ]

    def _import(self, client: TestClient) -> None:
        response = client.post("/api/memory/import", json={"data": json.dumps(self.ITEMS)})
        assert response.status_code == 200
        assert response.json()["imported"] == 2

    def test_import_export(self, client: TestClient) -> None:
        self._import(client)
        exported = json.loads(client.get("/api/memory/export").text)
        assert {item["id"] for item in exported} == {"mem_a", "mem_b"}

    def test_import_invalid(self, client: TestClient) -> None:
        response = client.post("/api/memory/import", json={"data": "{oops"})
        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid JSON format"

    def test_search_and_statistics(self, client: TestClient) -> None:
        self._import(client)
        found = client.post("/api/memory/search", json={"query": "parser"}).json()
        assert [item["id"] for item in found] == ["mem_a"]

        stats = client.get("/api/memory/statistics").json()
        assert stats["total"] == 2
        assert stats["success_rate"] == 0.5

    def test_related_and_delete(self, client: TestClient) -> None:
        self._import(client)
        related = client.get("/api/memory/mem_a/related").json()
        assert [item["id"] for item in related] == ["mem_b"]

        assert client.delete("/api/memory/mem_a").status_code == 204
        assert client.delete("/api/memory/mem_a").status_code == 404
        assert client.get("/api/memory/mem_a/related").status_code == 404


# =========================================================================
# WebSocket
# =========================================================================


class TestWebSocket:
    def test_replays_history_and_answers_ping(self, client: TestClient) -> None:
        _create_workspace(client)
        with client.websocket_connect("/ws/events") as ws:
            first = ws.receive_json()
            assert first["type"] == "workspace:changed"

            ws.send_json({"type": "ping", "timestamp": 1})
            for _ in range(50):
                message = ws.receive_json()
                if message["type"] == "pong":
                    break
            assert message == {"type": "pong", "timestamp": 1}

    async def test_handle_command(self) -> None:
        runner = MagicMock(spec=SandboxRunner)
        runner.stop = AsyncMock(side_effect=RunNotFoundError("run_x"))
        runner.stop_all = AsyncMock(return_value=2)

        assert await handle_command(runner, {"type": "stop_all"}) == {"type": "stopped", "count": 2}
        assert (await handle_command(runner, {"type": "stop_run", "run_id": "run_x"}))[
            "type"
        ] == "error"
        assert (await handle_command(runner, {"type": "dance"}))["error"] == "Unknown command: dance"
