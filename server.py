import os
import json
import queue
import logging
import threading
from pathlib import Path
from typing import Optional, Dict, Any, Generator, Tuple

from dotenv import load_dotenv
from flask import Flask, request, Response, jsonify

from comic_engine import (
    COMIC_STYLES,
    GAIC,
    ComicDocument,
    ComicGenerator,
    GenerationCallbacks,
    GenerationHandle,
    GenerationRequest,
    ProgressEvent,
    load_config,
    load_page_count,
)
from forms import GenerationForm
from viewer import ComicViewer

log = logging.getLogger(__name__)

# Load environment variables
load_dotenv()


app = Flask(__name__, static_folder=None)
app.config["MAX_UPLOAD_BYTES"] = int(
    os.getenv("MAX_UPLOAD_BYTES", str(10 * 1024 * 1024)))


ROOT = Path(__file__).parent

IDLE, LOADING, ERROR, RESULT = "idle", "loading", "error", "result"


class ControllerBusy(RuntimeError):
    pass


class ComicController:
    """
    UI state: idle -> loading -> result | error, and back to idle on reset.
    Results from a generation that is no longer current are dropped.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self.phase = IDLE
        self.loading_message = ""
        self.error: Optional[str] = None
        self.document: Optional[ComicDocument] = None
        self.viewer: Optional[ComicViewer] = None
        self.token = 0
        self.handle: Optional[GenerationHandle] = None
        self.events: "queue.Queue[Dict[str, Any]]" = queue.Queue()

    def start(self, req: GenerationRequest, generator: ComicGenerator) -> int:
        with self._lock:
            if self.phase != IDLE:
                raise ControllerBusy(f"Cannot start a generation while {self.phase}")
            self.token += 1
            token = self.token
            self.phase = LOADING
            self.loading_message = ""
            self.error = None
            self.document = None
            self.viewer = None
            self.events = queue.Queue()
            events = self.events

        events.put({"type": "start", "run": token})
        callbacks = GenerationCallbacks(
            on_progress=lambda msg: self._progress(token, msg),
            on_complete=lambda doc: self._complete(token, doc),
            on_error=lambda err: self._fail(token, err),
            on_event=lambda evt: self._event(token, events, evt),
        )
        handle = generator.generate(req, callbacks, token=token)
        with self._lock:
            if self._current(token):
                self.handle = handle
            elif token != self.token:
                handle.cancel()
        return token

    def _current(self, token: int) -> bool:
        return token == self.token and self.phase == LOADING

    def _progress(self, token: int, message: str) -> None:
        with self._lock:
            if self._current(token):
                self.loading_message = message

    def _event(self, token: int, events: "queue.Queue[Dict[str, Any]]", evt: ProgressEvent) -> None:
        with self._lock:
            if token != self.token:
                return
        events.put(evt.to_event())

    def _complete(self, token: int, document: ComicDocument) -> None:
        with self._lock:
            if not self._current(token):
                log.info("Discarding result of stale generation %s", token)
                return
            self.document = document
            self.viewer = ComicViewer(document)
            self.phase = RESULT
            self.loading_message = ""
            self.handle = None

    def _fail(self, token: int, error: str) -> None:
        with self._lock:
            if not self._current(token):
                log.info("Discarding error of stale generation %s: %s", token, error)
                return
            self.error = error
            self.phase = ERROR
            self.loading_message = ""
            self.handle = None

    def reset(self) -> None:
        with self._lock:
            if self.handle is not None:
                self.handle.cancel()
            if self.phase == LOADING:
                self.events.put({"type": "reset"})
            self.token += 1
            self.handle = None
            self.document = None
            self.viewer = None
            self.error = None
            self.loading_message = ""
            self.phase = IDLE

    def stream_source(self) -> Tuple["queue.Queue[Dict[str, Any]]", Optional[Dict[str, Any]]]:
        """Queue of the current run, or the event that ends a stream opened outside one."""
        with self._lock:
            if self.phase == LOADING:
                return self.events, None
            if self.phase == RESULT:
                return self.events, {"type": "done", "run": self.token}
            if self.phase == ERROR:
                return self.events, {"type": "error", "message": self.error, "run": self.token}
            return self.events, {"type": "reset", "run": self.token}

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "phase": self.phase,
                "loading": self.phase == LOADING,
                "message": self.loading_message,
                "error": self.error,
                "pages": len(self.document) if self.document else 0,
                "spread": self.viewer.current_spread if self.viewer else None,
                "run": self.token,
            }


state = ComicController()
_generator: Optional[ComicGenerator] = None
_generator_lock = threading.Lock()


def configured_page_count() -> int:
    with _generator_lock:
        if _generator is not None:
            return _generator.page_count
    return load_page_count()


def get_generator() -> ComicGenerator:
    global _generator
    with _generator_lock:
        if _generator is None:
            config = load_config()
            _generator = ComicGenerator(GAIC(config))
        return _generator


@app.errorhandler(ValueError)
@app.errorhandler(RuntimeError)
def handle_server_error(e: Exception):
    log.exception("Unhandled server error")
    return jsonify({"error": f"Server error: {e}"}), 500


@app.route("/")
def index() -> Response:
    html = (ROOT / "web" / "index.html").read_text(encoding="utf-8")
    return Response(html, mimetype="text/html")


@app.route("/api/styles")
def api_styles():
    return jsonify({"styles": COMIC_STYLES, "pages": configured_page_count()})


@app.route("/api/generate", methods=["POST"])
def api_generate():
    form = GenerationForm.from_submission(
        request.form, request.files, app.config["MAX_UPLOAD_BYTES"])
    errors = form.errors()
    if errors:
        return jsonify({"errors": errors}), 400

    try:
        run = state.start(form.to_request(), get_generator())
    except ControllerBusy as e:
        return jsonify({"error": str(e)}), 409
    return jsonify({"run": run})


@app.route("/api/stream")
def api_stream() -> Response:
    events, terminal = state.stream_source()

    def gen() -> Generator[str, None, None]:
        yield "event: ping\n" "data: {}\n\n"
        if terminal is not None:
            yield f"data: {json.dumps(terminal)}\n\n"
            return
        while True:
            try:
                evt = events.get(timeout=60)
            except queue.Empty:
                yield "event: ping\n" "data: {}\n\n"
                continue
            yield f"data: {json.dumps(evt)}\n\n"
            if evt.get("type") in {"done", "error", "reset"}:
                break
    return Response(gen(), mimetype="text/event-stream")


@app.route("/api/state")
def api_state():
    return jsonify(state.snapshot())


@app.route("/api/reset", methods=["POST"])
def api_reset():
    state.reset()
    return jsonify(state.snapshot())


def _viewer_response(viewer: Optional[ComicViewer]):
    if viewer is None:
        return jsonify({"error": "No comic is displayed"}), 409
    return jsonify(viewer.current_view().to_dict())


@app.route("/api/viewer")
def api_viewer():
    return _viewer_response(state.viewer)


@app.route("/api/viewer/next", methods=["POST"])
def api_viewer_next():
    viewer = state.viewer
    if viewer is not None:
        viewer.next()
    return _viewer_response(viewer)


@app.route("/api/viewer/prev", methods=["POST"])
def api_viewer_prev():
    viewer = state.viewer
    if viewer is not None:
        viewer.prev()
    return _viewer_response(viewer)


@app.route("/api/viewer/key", methods=["POST"])
def api_viewer_key():
    """Keyboard bindings, only while a comic is displayed."""
    data = request.get_json(force=True, silent=True) or {}
    viewer = state.viewer
    if viewer is None:
        return jsonify({"error": "No comic is displayed"}), 409
    handled = viewer.handle_key(str(data.get("key", "")))
    payload = viewer.current_view().to_dict()
    payload["handled"] = handled
    return jsonify(payload)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO,
                        format="%(asctime)s - %(levelname)s - %(message)s")
    app.run(host="127.0.0.1", port=5001, debug=True, threaded=True)
