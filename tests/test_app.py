from fastapi.testclient import TestClient

from conftest import FakeGit, FakeLauncher

from agentcanvas.web.app import create_app
from agentcanvas.web.settings import WebSettings


def _settings(tmp_path, **kw) -> WebSettings:
    base = dict(
        data_dir=str(tmp_path / "data"),
        projects_dir=str(tmp_path / "projects"),
        launch_cwd=str(tmp_path),
        ui_static_dir=str(tmp_path / "no-dist"),
        auto_resume_enabled=False,
        auto_resume_delay_s=0.0,
    )
    base.update(kw)
    return WebSettings(**base)


def _client(tmp_path, **kw) -> TestClient:
    app = create_app(_settings(tmp_path, **kw), launcher=FakeLauncher(), git=FakeGit(tmp_path))
    return TestClient(app)


def test_healthz_and_config(tmp_path) -> None:
    with _client(tmp_path) as client:
        health = client.get("/healthz").json()
        assert health["ok"] is True
        assert health["auto_resume"] == {"is_active": False, "completed": 0, "total": 0}

        config = client.get("/api/config").json()
        assert config["launch_cwd"] == str(tmp_path)

        assert [a["id"] for a in config["agents"]] == ["claude", "opencode", "codex"]
        agents = client.get("/api/agents").json()
        assert [a["id"] for a in agents] == ["claude", "opencode", "codex"]

        r = client.get("/healthz")
        assert r.headers["x-content-type-options"] == "nosniff"


def test_session_lifecycle(tmp_path) -> None:
    with _client(tmp_path) as client:
        r = client.post("/api/sessions", json={"agent_id": "claude", "custom_name": "api"})
        assert r.status_code == 200
        created = r.json()
        sid = created["session_id"]
        assert created["cwd"] == str(tmp_path)
        assert created["git_branch"] == "main"
        assert created["position"] is not None
        assert created["warnings"] == []

        again = client.post("/api/sessions", json={"session_id": sid}).json()
        assert again["node_id"] == created["node_id"]

        assert [s["session_id"] for s in client.get("/api/sessions").json()] == [sid]
        assert client.get(f"/api/sessions/{sid}").json()["custom_name"] == "api"
        assert client.get("/api/sessions/status").json()[0]["session_id"] == sid

        patched = client.patch(f"/api/sessions/{sid}", json={"notes": "watch the migrations"}).json()
        assert patched["notes"] == "watch the migrations"
        assert patched["custom_name"] == "api"

        stopped = client.post(f"/api/sessions/{sid}/stop").json()
        assert stopped["status"] == "idle"
        assert client.post(f"/api/sessions/{sid}/input", json={"data": "hi\n"}).status_code == 409

        archived = client.patch(f"/api/sessions/{sid}/archive", json={"archived": True}).json()
        assert archived["archived"] is True and archived["status"] == "idle"
        assert client.get("/api/sessions").json() == []
        assert [n["session_id"] for n in client.get("/api/sessions?archived=true").json()] == [sid]
        assert client.get(f"/api/sessions/{sid}").json()["archived"] is True

        assert client.delete(f"/api/sessions/{sid}").status_code == 200
        assert client.delete(f"/api/sessions/{sid}").status_code == 200
        assert client.get(f"/api/sessions/{sid}").status_code == 404


def test_unknown_sessions_and_bad_requests(tmp_path) -> None:
    with _client(tmp_path) as client:
        assert client.get("/api/sessions/ses_nope/status").status_code == 404
        assert client.post("/api/sessions/ses_nope/restart").status_code == 404
        assert client.post("/api/sessions/ses_nope/fork", json={}).status_code == 404
        assert client.patch("/api/sessions/ses_nope/archive", json={}).status_code == 404
        assert client.post("/api/sessions", json={"agent_id": "mystery"}).status_code == 400
        assert client.post("/api/sessions", json={"custom_name": "x" * 101}).status_code == 422


def test_fork_and_conflicts(tmp_path) -> None:
    with _client(tmp_path) as client:
        parent = client.post("/api/sessions", json={}).json()

        r = client.post(f"/api/sessions/{parent['session_id']}/fork", json={"name": "child"})
        assert r.status_code == 200
        child = r.json()
        assert child["custom_name"] == "child"
        assert child["cwd"] == parent["cwd"]

        assert child["warnings"][0]["session_ids"] == [parent["session_id"]]
        warnings = client.get("/api/sessions/conflicts", params={"cwd": str(tmp_path)}).json()["warnings"]
        assert warnings[0]["type"] == "cwd_conflict"
        assert set(warnings[0]["session_ids"]) == {parent["session_id"], child["session_id"]}

        wt = client.post(
            f"/api/sessions/{parent['session_id']}/fork",
            json={"branch_name": "feat/x", "create_worktree": True},
        ).json()
        assert wt["original_cwd"] == parent["cwd"]
        assert wt["git_branch"] == "feat/x"


def test_status_hooks(tmp_path) -> None:
    with _client(tmp_path) as client:
        sid = client.post("/api/sessions", json={}).json()["session_id"]

        r = client.post("/api/status-update", json={"session_id": sid, "status": "pre_tool", "tool_name": "Bash"})
        assert r.status_code == 200
        assert r.json()["status"] == "tool_calling"
        assert r.json()["current_tool"] == "Bash"

        assert client.post("/api/status-update", json={"session_id": sid, "status": "nap"}).status_code == 400
        assert client.post("/api/status-update", json={"session_id": "ses_x", "status": "idle"}).status_code == 404


def test_canvas_endpoints(tmp_path) -> None:
    with _client(tmp_path) as client:
        sid = client.post("/api/sessions", json={}).json()["session_id"]
        state = client.get("/api/state").json()
        node_id = state["nodes"][0]["node_id"]
        default_id = state["canvases"][0]["id"]

        r = client.post("/api/state/positions", json={"positions": {node_id: {"x": 480, "y": 288}}})
        assert r.json() == {"updated": 1}

        placed = client.post("/api/canvas/allocate", json={"x": 480, "y": 288, "count": 2}).json()["positions"]
        assert len(placed) == 2
        assert {"x": 480, "y": 288} not in placed

        side = client.post("/api/canvases", json={"name": "Side"}).json()
        assert client.patch(f"/api/canvases/{side['id']}", json={"name": "Ops"}).json()["name"] == "Ops"
        assert client.delete(f"/api/canvases/{default_id}").status_code == 409
        assert client.post("/api/canvases/reorder", json={"canvas_ids": [side["id"]]}).status_code == 400
        order = client.post("/api/canvases/reorder", json={"canvas_ids": [side["id"], default_id]}).json()
        assert [c["id"] for c in order] == [side["id"], default_id]
        assert client.delete(f"/api/canvases/{side['id']}").json() == {"deleted": True}
        assert client.delete("/api/canvases/nope").status_code == 404

        assert client.get(f"/api/sessions/{sid}").json()["position"] == {"x": 480.0, "y": 288.0}


def test_auto_resume_endpoints(tmp_path) -> None:
    with _client(tmp_path) as client:
        client.post("/api/sessions", json={})
        cfg = client.get("/api/auto-resume/config").json()
        assert cfg["config"]["enabled"] is False
        assert cfg["sessions_to_resume_count"] == 0
        assert client.get("/api/auto-resume/progress").json()["is_active"] is False


def test_conversation_search_without_transcripts(tmp_path) -> None:
    with _client(tmp_path) as client:
        assert client.get("/api/conversations", params={"q": 'fix "(bug'}).json() == []
        assert client.get("/api/conversations/projects").json() == []


def test_bearer_token(tmp_path) -> None:
    with _client(tmp_path, auth_token="s3cret") as client:
        assert client.get("/healthz").status_code == 200
        assert client.get("/api/sessions").status_code == 401
        assert client.get("/api/sessions", headers={"Authorization": "Bearer nope"}).status_code == 401
        assert client.get("/api/sessions", headers={"Authorization": "Bearer s3cret"}).status_code == 200
        assert client.get("/event").status_code == 401


def test_bearer_token_with_non_ascii_header(tmp_path) -> None:
    with _client(tmp_path, auth_token="s3cret") as client:
        r = client.get("/api/sessions", headers={"Authorization": "Bearer é".encode("latin-1")})
        assert r.status_code == 401


def test_create_cannot_take_an_archived_node(tmp_path) -> None:
    with _client(tmp_path) as client:
        first = client.post("/api/sessions", json={"node_id": "n1"}).json()
        client.patch(f"/api/sessions/{first['session_id']}/archive", json={"archived": True})

        assert client.post("/api/sessions", json={"node_id": "n1"}).status_code == 409
        assert client.post(f"/api/sessions/{first['session_id']}/restart").status_code == 200
