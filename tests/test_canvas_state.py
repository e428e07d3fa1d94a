import json

import pytest

from agentcanvas.canvas.state import CanvasStateStore, PersistedNode
from agentcanvas.sessions.errors import CanvasError


def _write(path, payload) -> None:
    path.write_text(json.dumps(payload), encoding="utf-8")


def test_missing_file_yields_default_canvas(tmp_path) -> None:
    store = CanvasStateStore(tmp_path / "state.json")
    state = store.load()

    assert state.nodes == []
    assert len(state.canvases) == 1
    assert state.canvases[0].is_default
    assert state.canvases[0].name == "Main"


def test_missing_optional_fields_default(tmp_path) -> None:
    path = tmp_path / "state.json"
    _write(
        path,
        {
            "nodes": [
                {"nodeId": "n1", "sessionId": "s1", "agentName": "Claude Code", "cwd": "/tmp"},
                {"nodeId": "n2", "sessionId": "s2", "archived": None, "position": {"x": "bad", "y": 1}},
                {"nodeId": "n3", "sessionId": "s3", "claudeSessionId": "abc", "canvasId": "gone"},
            ]
        },
    )
    store = CanvasStateStore(path)
    store.load()
    default_id = store.default_canvas_id

    n1, n2, n3 = store.nodes()
    assert n1.archived is False and n1.position is None and n1.canvas_id == default_id
    assert n2.archived is False and n2.position is None
    assert n3.agent_session_id == "abc" and n3.canvas_id == default_id


def test_malformed_and_duplicate_nodes_are_dropped(tmp_path) -> None:
    path = tmp_path / "state.json"
    _write(
        path,
        {
            "nodes": [
                {"nodeId": "n1", "sessionId": "s1"},
                {"sessionId": "no-node-id"},
                "garbage",
                {"nodeId": "n1", "sessionId": "s1-dup"},
            ]
        },
    )
    store = CanvasStateStore(path)
    assert [n.session_id for n in store.load().nodes] == ["s1"]


def test_corrupt_document_recovers_from_tmp(tmp_path) -> None:
    path = tmp_path / "state.json"
    path.write_text("{not json", encoding="utf-8")
    _write(tmp_path / "state.json.tmp", {"nodes": [{"nodeId": "n1", "sessionId": "s1"}]})

    store = CanvasStateStore(path)
    assert [n.node_id for n in store.load().nodes] == ["n1"]


def test_saved_document_is_camel_case_and_round_trips(tmp_path) -> None:
    path = tmp_path / "state.json"
    store = CanvasStateStore(path)
    store.upsert_node(
        PersistedNode(node_id="n1", session_id="s1", agent_session_id="x", position={"x": 24, "y": 48})
    )

    raw = json.loads(path.read_text(encoding="utf-8"))
    node = raw["nodes"][0]
    assert node["nodeId"] == "n1"
    assert node["agentSessionId"] == "x"
    assert node["position"] == {"x": 24.0, "y": 48.0}
    assert raw["canvases"][0]["isDefault"] is True
    assert not (tmp_path / "state.json.tmp").exists()

    again = CanvasStateStore(path)
    assert again.load().nodes[0].position.x == 24


def test_upsert_keeps_position_when_none_given(tmp_path) -> None:
    store = CanvasStateStore(tmp_path / "state.json")
    store.upsert_node(PersistedNode(node_id="n1", session_id="s1", position={"x": 0, "y": 0}))
    store.upsert_node(PersistedNode(node_id="n1", session_id="s1", custom_name="renamed"))

    node = store.get_node("n1")
    assert node.custom_name == "renamed"
    assert node.position is not None


def test_save_positions_skips_unknown_and_bad_entries(tmp_path) -> None:
    store = CanvasStateStore(tmp_path / "state.json")
    store.upsert_node(PersistedNode(node_id="n1", session_id="s1"))
    other = store.create_canvas("Side")

    updated = store.save_positions(
        {
            "n1": {"x": 240, "y": 144, "canvas_id": other.id},
            "missing": {"x": 0, "y": 0},
        }
    )

    assert updated == 1
    node = store.get_node("n1")
    assert (node.position.x, node.position.y) == (240, 144)
    assert node.canvas_id == other.id
    assert store.save_positions({"n1": {"x": 1}}) == 0


def test_archive_flag(tmp_path) -> None:
    store = CanvasStateStore(tmp_path / "state.json")
    store.upsert_node(PersistedNode(node_id="n1", session_id="s1"))

    assert store.set_archived("s1", True).archived is True
    assert store.set_archived("s1", True).archived is True
    assert [n.node_id for n in store.nodes(archived=True)] == ["n1"]
    assert store.nodes(archived=False) == []
    assert store.set_archived("unknown", True) is None


def test_canvas_crud(tmp_path) -> None:
    store = CanvasStateStore(tmp_path / "state.json")
    default_id = store.default_canvas_id
    a = store.create_canvas("A", "#000000")
    b = store.create_canvas("B")

    assert [c.name for c in store.list_canvases()] == ["Main", "A", "B"]
    store.reorder_canvases([b.id, default_id, a.id])
    assert [c.name for c in store.list_canvases()] == ["B", "Main", "A"]
    assert store.update_canvas(a.id, name="Renamed").name == "Renamed"

    with pytest.raises(CanvasError):
        store.reorder_canvases([a.id, b.id])
    with pytest.raises(CanvasError):
        store.delete_canvas(default_id)

    store.upsert_node(PersistedNode(node_id="n1", session_id="s1", canvas_id=a.id))
    with pytest.raises(CanvasError):
        store.delete_canvas(a.id)

    store.delete_canvas(b.id)
    assert store.get_canvas(b.id) is None


def test_output_buffers(tmp_path) -> None:
    store = CanvasStateStore(tmp_path / "state.json")
    store.save_buffer("s1", ["hello ", "world"])

    assert store.load_buffer("s1") == "hello world"
    store.delete_buffer("s1")
    store.delete_buffer("s1")
    assert store.load_buffer("s1") == ""
