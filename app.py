"""Flask backend for AIBook: exposes story sessions to the reader UI."""

import json
import logging
import os
import queue
import threading

from flask import Flask, Response, jsonify, request, stream_with_context

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    format="[%(asctime)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    level=logging.INFO,
)
log = logging.getLogger("aibook")

import relay_bridge
from story_errors import AIBookError, GenerationInProgress, NetworkFailure, StreamError
from story_models import UserPreferences, new_story_id
from story_session import MIN_CUSTOM_BRANCH_CHARS, StorySession

# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------
BASE_DIR = os.path.dirname(os.path.abspath(__file__))
DATA_DIR = os.path.join(BASE_DIR, "data")
STORIES_DIR = os.path.join(DATA_DIR, "stories")
STORIES_REGISTRY_PATH = os.path.join(DATA_DIR, "stories.json")

_sessions: dict[str, StorySession] = {}
_sessions_lock = threading.Lock()


# ---------------------------------------------------------------------------
# Helpers: registry and sessions
# ---------------------------------------------------------------------------

def _load_json(path, default=None):
    if os.path.exists(path):
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    return default if default is not None else {}


def _save_json(path, data):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, ensure_ascii=False, indent=2)


def _load_registry() -> dict:
    return _load_json(STORIES_REGISTRY_PATH, {"active_story_id": None, "stories": []})


def _active_story_id() -> str | None:
    return _load_registry().get("active_story_id")


def _story_path(story_id: str) -> str:
    return os.path.join(STORIES_DIR, f"{story_id}.json")


def _generate(req, on_event):
    return relay_bridge.generate_chapter(req, on_event)


def _session_kwargs() -> dict:
    cfg = relay_bridge.get_config()
    return {
        "summarizer": relay_bridge.RelaySummarizer(),
        "generate": _generate,
        "max_ledger_chars": int(cfg["max_ledger_chars"]),
        "phase_threshold": int(cfg["phase_threshold"]),
    }


def _get_session(story_id: str) -> StorySession | None:
    with _sessions_lock:
        session = _sessions.get(story_id)
        if session is not None:
            return session
        path = _story_path(story_id)
        if not os.path.exists(path):
            return None
        session = StorySession.load(path, **_session_kwargs())
        _sessions[story_id] = session
        return session


def _active_session() -> StorySession | None:
    story_id = _active_story_id()
    return _get_session(story_id) if story_id else None


def _save_session(session: StorySession):
    session.save(_story_path(session.story_id))


def _sse_event(data: dict) -> str:
    """Format a dict as an SSE data line."""
    return f"data: {json.dumps(data, ensure_ascii=False)}\n\n"


def _error_kind(e: Exception) -> str:
    if isinstance(e, NetworkFailure):
        return e.kind
    if isinstance(e, GenerationInProgress):
        return "busy"
    if isinstance(e, StreamError):
        return "stream"
    if isinstance(e, ValueError):
        return "invalid"
    return "internal"


# ---------------------------------------------------------------------------
# Flask App
# ---------------------------------------------------------------------------
app = Flask(__name__)


@app.route("/api/stories")
def api_stories():
    return jsonify(_load_registry())


@app.route("/api/stories", methods=["POST"])
def api_stories_create():
    body = request.get_json(silent=True) or {}
    registry = _load_registry()
    story_id = new_story_id()
    title = (body.get("title") or "").strip() or f"故事 {len(registry['stories']) + 1}"
    session = StorySession(
        story_id,
        settings=body.get("settings"),
        preferences=UserPreferences.from_dict(body.get("preferences")),
        title=title,
        **_session_kwargs(),
    )
    with _sessions_lock:
        _sessions[story_id] = session
    _save_session(session)
    registry["stories"].append({"id": story_id, "title": title})
    registry["active_story_id"] = story_id
    _save_json(STORIES_REGISTRY_PATH, registry)
    log.info("/api/stories created %s", story_id)
    return jsonify({"ok": True, "story": session.to_dict()})


@app.route("/api/stories/switch", methods=["POST"])
def api_stories_switch():
    body = request.get_json(force=True)
    story_id = body.get("story_id", "")
    if _get_session(story_id) is None:
        return jsonify({"ok": False, "error": "story not found"}), 404
    registry = _load_registry()
    registry["active_story_id"] = story_id
    _save_json(STORIES_REGISTRY_PATH, registry)
    return jsonify({"ok": True, "active_story_id": story_id})


@app.route("/api/settings", methods=["POST"])
def api_settings():
    session = _active_session()
    if session is None:
        return jsonify({"ok": False, "error": "no active story"}), 404
    body = request.get_json(force=True)
    for key, value in (body.get("settings") or {}).items():
        if key in session.settings and key != "storyNodes":
            session.settings[key] = value or ""
    if "preferences" in body:
        session.preferences = UserPreferences.from_dict(body["preferences"])
    _save_session(session)
    return jsonify({"ok": True})


@app.route("/api/status")
def api_status():
    session = _active_session()
    return jsonify({
        "story_id": session.story_id if session else None,
        "generating": bool(session and session.generating),
        "configured": relay_bridge.is_generate_api_configured(),
        "chapters": len(session.chapters) if session else 0,
    })


@app.route("/api/chapters")
def api_chapters():
    session = _active_session()
    if session is None:
        return jsonify({"ok": False, "error": "no active story"}), 404
    return jsonify({"ok": True, "chapters": [c.to_dict() for c in session.chapters]})


@app.route("/api/ledger")
def api_ledger():
    session = _active_session()
    if session is None:
        return jsonify({"ok": False, "error": "no active story"}), 404
    session.wait_for_compaction()
    return jsonify({"ok": True, "ledger": session.ledger, "last_error": session.last_compaction_error})


@app.route("/api/branch/select", methods=["POST"])
def api_branch_select():
    session = _active_session()
    if session is None:
        return jsonify({"ok": False, "error": "no active story"}), 404
    text = (request.get_json(force=True).get("text") or "").strip()
    if not text:
        return jsonify({"ok": False, "error": "empty choice"}), 400
    changed = session.select_branch(text)
    if changed:
        _save_session(session)
    return jsonify({"ok": True, "changed": changed})


@app.route("/api/export")
def api_export():
    session = _active_session()
    if session is None:
        return jsonify({"ok": False, "error": "no active story"}), 404
    return Response(session.export_text(), mimetype="text/plain; charset=utf-8")


@app.route("/api/generate/stream", methods=["POST"])
def api_generate_stream():
    """Generate the next chapter; streams display updates as SSE events."""
    body = request.get_json(silent=True) or {}
    chosen = (body.get("chosen_branch") or "").strip()
    custom = bool(body.get("custom", False))
    if custom and len(chosen) < MIN_CUSTOM_BRANCH_CHARS:
        return jsonify({"ok": False, "error": f"custom choice needs at least {MIN_CUSTOM_BRANCH_CHARS} characters"}), 400

    session = _active_session()
    if session is None:
        return jsonify({"ok": False, "error": "no active story"}), 404
    if session.generating:
        return jsonify({"ok": False, "error": "generation already in progress"}), 409

    log.info("/api/generate/stream START story=%s branch=%s", session.story_id, chosen[:30])
    events: queue.Queue = queue.Queue()

    def on_event(event):
        events.put(("event", event))

    def worker():
        try:
            chapter = session.generate_next(chosen or None, on_event=on_event, custom=custom)
            events.put(("done", chapter))
            # persisted by the worker; the response generator may be closed early
            _save_session(session)
            log.info("/api/generate/stream SAVED chapter=%d", chapter.index)
        except (AIBookError, ValueError) as e:
            events.put(("error", e))
        except Exception as e:
            log.exception("/api/generate/stream EXCEPTION")
            events.put(("error", e))

    def generate():
        threading.Thread(target=worker, daemon=True).start()
        while True:
            kind, payload = events.get()
            if kind == "event":
                yield _sse_event({"type": payload.type, "value": payload.value})
            elif kind == "error":
                log.info("/api/generate/stream FAILED %s", payload)
                yield _sse_event({"type": "error", "kind": _error_kind(payload), "message": str(payload)})
                return
            else:
                yield _sse_event({"type": "done", "chapter": payload.to_dict()})
                log.info("/api/generate/stream DONE chapter=%d", payload.index)
                return

    return Response(stream_with_context(generate()), mimetype="text/event-stream")


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=int(os.environ.get("PORT", "5000")), threaded=True)
