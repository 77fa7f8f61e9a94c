"""Home Screen Icon Builder — Flask web application."""

from __future__ import annotations

import json
import logging
import os
import queue
import threading
import time
import uuid
from pathlib import Path
from typing import Dict, Generator, List, Optional

from dotenv import load_dotenv
from flask import Flask, Response, jsonify, request, send_from_directory
from flask_cors import CORS

load_dotenv()

import log_setup
log_setup.configure()

import costs
import db
import icon_core
from icon_errors import IconServiceError
from icon_http import DEFAULT_BASE_URL, ApiClient

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# App setup
# ---------------------------------------------------------------------------

BASE_DIR = Path(__file__).parent
ICONS_DIR = BASE_DIR / "static" / "icons"
MAX_IMAGES = 5

app = Flask(__name__, static_folder=None)
CORS(app)

db.init_db()

# Active SSE queues and pipelines: run_id -> ...
_run_queues: Dict[str, queue.Queue] = {}
_pipelines: Dict[str, icon_core.IconPipeline] = {}
_lock = threading.Lock()


def _api_key() -> str:
    return os.environ.get("OPENAI_API_KEY", "")


def _base_url() -> str:
    return os.environ.get("OPENAI_BASE_URL") or DEFAULT_BASE_URL


# ---------------------------------------------------------------------------
# SSE helpers
# ---------------------------------------------------------------------------

def _sse_event(data: dict) -> str:
    return f"data: {json.dumps(data)}\n\n"


def _get_or_create_queue(run_id: str) -> queue.Queue:
    with _lock:
        if run_id not in _run_queues:
            _run_queues[run_id] = queue.Queue(maxsize=500)
        return _run_queues[run_id]


def _cleanup_queue(run_id: str) -> None:
    with _lock:
        _run_queues.pop(run_id, None)


def _web_path(path: Path) -> str:
    return f"/static/icons/{path.relative_to(ICONS_DIR).as_posix()}"


def _serialisable(event: Dict, run_id: str) -> Dict:
    """Swap artifacts in an event for the path they are served from."""
    data = event.get("data")
    if not data:
        return event
    data = dict(data)
    artifact = data.pop("artifact", None)
    if artifact is not None:
        data["path"] = _web_path(ICONS_DIR / run_id / icon_core.icon_filename(artifact))
    icons = data.pop("icons", None)
    if icons is not None:
        data["icons"] = {
            label: _web_path(ICONS_DIR / run_id / icon_core.icon_filename(a))
            for label, a in icons.items()
        }
    # Positional list: duplicate labels each keep their own entry
    results = data.pop("results", None)
    if results is not None:
        data["results"] = [
            {"index": a.index, "label": label, "path": _web_path(ICONS_DIR / run_id / icon_core.icon_filename(a))}
            for label, a in results
        ]
    return {**event, "data": data}


# ---------------------------------------------------------------------------
# Pipeline thread
# ---------------------------------------------------------------------------

def _run_pipeline_thread(
    run_id: str,
    theme: str,
    images: List[icon_core.SourceImage],
    labels: Optional[List[str]],
    settings: Dict,
) -> None:
    q = _get_or_create_queue(run_id)
    run_dir = ICONS_DIR / run_id

    def progress_cb(event: Dict) -> None:
        if event["stage"] == "extract" and event["status"] == "completed":
            db.set_labels(run_id, event["data"]["labels"])
            db.set_run_status(run_id, "generating")
        artifact = (event.get("data") or {}).get("artifact")
        if artifact is not None:
            # Persist each icon as it lands so partial runs keep their work
            path = icon_core.save_icons([(artifact.label, artifact)], run_dir)[0]
            db.record_icon(run_id, artifact.index, artifact.label, _web_path(path))
        try:
            q.put_nowait(_serialisable(event, run_id))
        except queue.Full:
            log.warning("Progress queue full for run %s, dropping event", run_id)

    cost_tracker = costs.CostTracker()
    start = time.time()
    try:
        pipeline = icon_core.IconPipeline(
            run_id=run_id,
            api_key=_api_key(),
            settings={**settings, "base_url": _base_url()},
            progress_cb=progress_cb,
            cost_tracker=cost_tracker,
        )
        with _lock:
            _pipelines[run_id] = pipeline

        log.info("Run started: id=%s  theme=%r", run_id, theme)
        if labels is None:
            db.set_run_status(run_id, "extracting")
            result = pipeline.run(images, theme)
        else:
            db.set_labels(run_id, labels)
            db.set_run_status(run_id, "generating")
            result = pipeline.generate_icons(labels, theme)

        db.finish_run(
            run_id,
            result.status,
            result.duration,
            cost_tracker.summary(),
            result.error.kind if result.error else None,
            result.error.user_message() if result.error else None,
        )
        log.info(
            "Run finished: id=%s  status=%s  icons=%d  duration=%.1fs",
            run_id, result.status, len(result.icons), result.duration,
        )
    except Exception as exc:
        log.error("Run crashed: id=%s  error=%s", run_id, exc, exc_info=True)
        db.finish_run(run_id, "failed", time.time() - start, cost_tracker.summary(), "unknown", str(exc))
        progress_cb({"stage": "pipeline", "status": "failed", "message": "An unknown error occurred."})
    finally:
        try:
            costs.append_cost_log(run_id, theme, time.time() - start, cost_tracker)
        except OSError as ce:
            log.warning("Cost log write failed: %s", ce)
        with _lock:
            _pipelines.pop(run_id, None)
        # Signal SSE stream to close
        try:
            q.put_nowait(None)
        except queue.Full:
            pass


def _read_uploads() -> List[icon_core.SourceImage]:
    files = request.files.getlist("images")
    return [
        icon_core.SourceImage(f.read(), Path(f.filename or "").suffix.lstrip(".").lower() or None)
        for f in files
    ]


def _check_images(images: List[icon_core.SourceImage]) -> Optional[str]:
    if not images:
        return "at least one image is required"
    if len(images) > MAX_IMAGES:
        return f"at most {MAX_IMAGES} images per run"
    if any(not img.data for img in images):
        return "uploaded image is empty"
    return None


def _flag(value) -> bool:
    """JSON sends real booleans; multipart forms send strings."""
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def _settings_from(body: Dict) -> Dict:
    allowed = ("vision_model", "image_model", "image_size", "image_quality")
    settings = {k: body[k] for k in allowed if k in body}
    if "drop_empty_labels" in body:
        settings["drop_empty_labels"] = _flag(body["drop_empty_labels"])
    return settings


# ---------------------------------------------------------------------------
# Routes — Static icons
# ---------------------------------------------------------------------------

@app.get("/static/icons/<path:filename>")
def serve_icon(filename: str):
    return send_from_directory(str(ICONS_DIR), filename)


# ---------------------------------------------------------------------------
# Routes — Model discovery
# ---------------------------------------------------------------------------

@app.get("/api/models")
def api_models():
    key = _api_key()
    if key:
        models = icon_core.fetch_models(ApiClient(key, base_url=_base_url()))
    else:
        models = {"vision": icon_core.VISION_MODELS, "image": icon_core.IMAGE_MODELS}
    return jsonify({
        "available": bool(key),
        "vision_models": models["vision"],
        "image_models": models["image"],
        "max_images": MAX_IMAGES,
        "min_interval": icon_core.MIN_REQUEST_INTERVAL,
        "rate_limit_pause": icon_core.RATE_LIMIT_PAUSE,
    })


# ---------------------------------------------------------------------------
# Routes — Extraction (synchronous)
# ---------------------------------------------------------------------------

@app.post("/api/extract")
def api_extract():
    if not _api_key():
        return jsonify({"error": "OPENAI_API_KEY is not configured"}), 400
    images = _read_uploads()
    problem = _check_images(images)
    if problem:
        return jsonify({"error": problem}), 400

    pipeline = icon_core.IconPipeline(
        run_id=f"extract-{uuid.uuid4().hex[:8]}",
        api_key=_api_key(),
        settings={**_settings_from(request.form.to_dict()), "base_url": _base_url()},
    )
    try:
        labels = pipeline.extract_labels(images)
    except IconServiceError as exc:
        status = 502 if exc.kind in ("network", "no_data", "decoding") else 422
        return jsonify({"error": exc.user_message(), "kind": exc.kind}), status
    return jsonify({"labels": labels})


# ---------------------------------------------------------------------------
# Routes — Run management
# ---------------------------------------------------------------------------

@app.post("/api/runs")
def api_start_run():
    if not _api_key():
        return jsonify({"error": "OPENAI_API_KEY is not configured"}), 400

    images: List[icon_core.SourceImage] = []
    labels: Optional[List[str]] = None
    if request.files:
        body = request.form.to_dict()
        images = _read_uploads()
        problem = _check_images(images)
        if problem:
            return jsonify({"error": problem}), 400
    else:
        body = request.get_json(silent=True) or {}
        raw = body.get("labels")
        if not isinstance(raw, list) or not raw or not all(isinstance(x, str) for x in raw):
            return jsonify({"error": "labels must be a non-empty list of strings, or upload images"}), 400
        labels = [x.strip() for x in raw]

    theme = (body.get("theme") or "").strip()
    if not theme:
        return jsonify({"error": "theme is required"}), 400

    settings = _settings_from(body)
    run_id = uuid.uuid4().hex[:8]
    db.create_run(run_id, theme, settings)

    # Ensure queue exists before thread starts
    _get_or_create_queue(run_id)

    t = threading.Thread(
        target=_run_pipeline_thread,
        args=(run_id, theme, images, labels, settings),
        daemon=True,
    )
    t.start()

    return jsonify({"run_id": run_id})


@app.get("/api/stream/<run_id>")
def api_stream(run_id: str):
    """Server-Sent Events stream for a run."""
    q = _get_or_create_queue(run_id)

    def generate() -> Generator[str, None, None]:
        yield _sse_event({"type": "heartbeat", "run_id": run_id})
        try:
            while True:
                try:
                    event = q.get(timeout=25)
                except queue.Empty:
                    yield _sse_event({"type": "heartbeat"})
                    continue

                if event is None:
                    yield _sse_event({"type": "done"})
                    break

                yield _sse_event(event)

                if event.get("stage") == "pipeline" and event.get("status") in ("complete", "failed", "cancelled"):
                    yield _sse_event({"type": "done"})
                    break
        finally:
            _cleanup_queue(run_id)

    return Response(
        generate(),
        mimetype="text/event-stream",
        headers={
            "Cache-Control": "no-cache, no-transform",
            "X-Accel-Buffering": "no",
            "Connection": "keep-alive",
        },
    )


@app.post("/api/runs/<run_id>/cancel")
def api_cancel_run(run_id: str):
    with _lock:
        pipeline = _pipelines.get(run_id)
    if pipeline is None:
        if not db.get_run(run_id):
            return jsonify({"error": "Not found"}), 404
        return jsonify({"error": "Run is not in progress"}), 409
    pipeline.cancel()
    return jsonify({"run_id": run_id, "status": "cancelling"})


@app.get("/api/runs")
def api_list_runs():
    summary = []
    for r in db.list_runs():
        icons = r.get("icons") or {}
        summary.append({
            "id": r["id"],
            "theme": r["theme"],
            "status": r["status"],
            "created_at": r["created_at"],
            "duration": r.get("duration"),
            "label_count": len(r.get("labels") or []),
            "icon_count": len(icons),
            "error_msg": r.get("error_msg") or "",
        })
    return jsonify(summary)


@app.get("/api/runs/<run_id>")
def api_get_run(run_id: str):
    run = db.get_run(run_id)
    if not run:
        return jsonify({"error": "Not found"}), 404
    return jsonify(run)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    ICONS_DIR.mkdir(parents=True, exist_ok=True)
    port = int(os.environ.get("PORT", 5000))
    print(f"\n  Icon Builder → http://localhost:{port}\n")
    app.run(host="0.0.0.0", port=port, debug=False, threaded=True)
