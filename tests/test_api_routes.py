"""Tests for Flask API routes in app.py.

Integration tests using Flask test_client. The relay is left unconfigured so
generation runs against the built-in demo stream.
"""

import json
import time

import pytest

import app as app_module
import relay_bridge

UNCONFIGURED = dict(relay_bridge.DEFAULT_CONFIG)


@pytest.fixture(autouse=True)
def patch_app_paths(tmp_path, monkeypatch):
    """Redirect all app paths to tmp_path and drop cached sessions."""
    data_dir = tmp_path / "data"
    stories_dir = data_dir / "stories"
    stories_dir.mkdir(parents=True)
    monkeypatch.setattr(app_module, "BASE_DIR", str(tmp_path))
    monkeypatch.setattr(app_module, "DATA_DIR", str(data_dir))
    monkeypatch.setattr(app_module, "STORIES_DIR", str(stories_dir))
    monkeypatch.setattr(app_module, "STORIES_REGISTRY_PATH", str(data_dir / "stories.json"))
    monkeypatch.setattr(relay_bridge, "get_config", lambda: dict(UNCONFIGURED))
    monkeypatch.setattr(app_module, "_sessions", {})
    return stories_dir


@pytest.fixture
def client():
    """Flask test client."""
    app_module.app.config["TESTING"] = True
    with app_module.app.test_client() as c:
        yield c


@pytest.fixture
def story(client):
    resp = client.post("/api/stories", json={
        "title": "雨夜",
        "settings": {"characters": "主角林默", "worldview": "现代都市"},
        "preferences": {"pov": "first", "singleOutputLength": 600},
    })
    return resp.get_json()["story"]


def _sse_events(resp) -> list[dict]:
    text = resp.get_data(as_text=True)
    events = []
    for frame in text.split("\n\n"):
        if frame.startswith("data: "):
            events.append(json.loads(frame[len("data: "):]))
    return events


# ===================================================================
# Stories
# ===================================================================


class TestStories:
    def test_empty_registry(self, client):
        assert client.get("/api/stories").get_json() == {"active_story_id": None, "stories": []}

    def test_create_sets_active(self, client, story):
        registry = client.get("/api/stories").get_json()
        assert registry["active_story_id"] == story["id"]
        assert registry["stories"] == [{"id": story["id"], "title": "雨夜"}]
        assert story["settings"]["characters"] == "主角林默"
        assert story["settings"]["storyNodes"] == ""
        assert story["preferences"]["pov"] == "first"
        assert story["preferences"]["single_output_length"] == 600

    def test_create_persists_file(self, client, story, patch_app_paths):
        assert (patch_app_paths / f"{story['id']}.json").exists()

    def test_default_title(self, client):
        story = client.post("/api/stories", json={}).get_json()["story"]
        assert story["title"] == "故事 1"

    def test_switch(self, client, story):
        other = client.post("/api/stories", json={"title": "另一个"}).get_json()["story"]
        resp = client.post("/api/stories/switch", json={"story_id": story["id"]})
        assert resp.get_json() == {"ok": True, "active_story_id": story["id"]}
        assert client.get("/api/status").get_json()["story_id"] == story["id"]
        assert other["id"] != story["id"]

    def test_switch_unknown(self, client):
        resp = client.post("/api/stories/switch", json={"story_id": "story_missing"})
        assert resp.status_code == 404

    def test_session_reloaded_from_disk(self, client, story, monkeypatch):
        monkeypatch.setattr(app_module, "_sessions", {})
        status = client.get("/api/status").get_json()
        assert status["story_id"] == story["id"]
        assert status["chapters"] == 0


# ===================================================================
# Settings / status
# ===================================================================


class TestSettings:
    def test_no_active_story(self, client):
        assert client.post("/api/settings", json={"settings": {}}).status_code == 404
        assert client.get("/api/chapters").status_code == 404
        assert client.get("/api/export").status_code == 404

    def test_update_settings_and_preferences(self, client, story):
        resp = client.post("/api/settings", json={
            "settings": {"scenes": "神秘图书馆", "unknown": "ignored", "storyNodes": "篡改"},
            "preferences": {"pov": "second"},
        })
        assert resp.get_json() == {"ok": True}
        session = app_module._active_session()
        assert session.settings["scenes"] == "神秘图书馆"
        assert "unknown" not in session.settings
        assert session.settings["storyNodes"] == ""
        assert session.preferences.pov == "second"

    def test_status(self, client, story):
        status = client.get("/api/status").get_json()
        assert status == {"story_id": story["id"], "generating": False, "configured": False, "chapters": 0}


# ===================================================================
# Generation stream
# ===================================================================


class TestGenerateStream:
    def test_demo_chapter(self, client, story):
        resp = client.post("/api/generate/stream", json={})
        assert resp.status_code == 200
        assert resp.mimetype == "text/event-stream"
        events = _sse_events(resp)

        displays = [e for e in events if e["type"] == "display"]
        assert displays
        assert all("选项A" not in e["value"] for e in displays)
        assert any(e["type"] == "node_update" for e in events)

        done = events[-1]
        assert done["type"] == "done"
        assert done["chapter"]["title"] == relay_bridge.MOCK_TITLE
        assert [b["text"] for b in done["chapter"]["branches"]] == relay_bridge.MOCK_BRANCHES

        chapters = client.get("/api/chapters").get_json()["chapters"]
        assert len(chapters) == 1
        ledger = client.get("/api/ledger").get_json()
        assert ledger["ledger"] == relay_bridge.MOCK_NODE_UPDATE
        assert ledger["last_error"] is None

    def test_branch_choice_recorded(self, client, story):
        client.post("/api/generate/stream", json={}).get_data()
        events = _sse_events(client.post("/api/generate/stream", json={"chosen_branch": "仔细研究信件，寻找隐藏的线索"}))
        assert events[-1]["chapter"]["title"] == "第 2 章"
        chapters = client.get("/api/chapters").get_json()["chapters"]
        assert chapters[0]["selectedBranch"] == "仔细研究信件，寻找隐藏的线索"

    def test_short_custom_choice_rejected(self, client, story):
        resp = client.post("/api/generate/stream", json={"chosen_branch": "走", "custom": True})
        assert resp.status_code == 400

    def test_busy_session_rejected(self, client, story):
        app_module._active_session().generating = True
        resp = client.post("/api/generate/stream", json={})
        assert resp.status_code == 409

    def test_no_active_story(self, client):
        assert client.post("/api/generate/stream", json={}).status_code == 404

    def test_stream_error_reported(self, client, story, monkeypatch):
        from story_errors import NetworkTimeout

        def failing(req, on_event):
            raise NetworkTimeout("请求超时")

        monkeypatch.setattr(app_module, "_generate", failing)
        monkeypatch.setattr(app_module, "_sessions", {})
        events = _sse_events(client.post("/api/generate/stream", json={}))
        assert events == [{"type": "error", "kind": "timeout", "message": "请求超时"}]
        assert client.get("/api/chapters").get_json()["chapters"] == []


# ===================================================================
# Branch selection / export
# ===================================================================


class TestBranchAndExport:
    def test_select_once(self, client, story):
        client.post("/api/generate/stream", json={}).get_data()
        first = client.post("/api/branch/select", json={"text": "停下休息"}).get_json()
        second = client.post("/api/branch/select", json={"text": "继续探索"}).get_json()
        assert first == {"ok": True, "changed": True}
        assert second == {"ok": True, "changed": False}

    def test_select_empty(self, client, story):
        assert client.post("/api/branch/select", json={"text": "  "}).status_code == 400

    def test_export(self, client, story):
        client.post("/api/generate/stream", json={}).get_data()
        resp = client.get("/api/export")
        assert resp.mimetype == "text/plain"
        text = resp.get_data(as_text=True)
        assert text.startswith("AI互动小说导出")
        assert f"第 1 章 {relay_bridge.MOCK_TITLE}" in text

    def test_chapter_saved_when_client_disconnects(self, client, story, patch_app_paths):
        resp = client.post("/api/generate/stream", json={}, buffered=False)
        first = next(iter(resp.response))
        assert b"data: " in first
        resp.close()

        path = patch_app_paths / f"{story['id']}.json"
        deadline = time.monotonic() + 5
        saved = []
        while time.monotonic() < deadline:
            saved = json.loads(path.read_text(encoding="utf-8"))["chapters"]
            if saved:
                break
            time.sleep(0.05)
        assert len(saved) == 1
        assert saved[0]["title"] == relay_bridge.MOCK_TITLE
