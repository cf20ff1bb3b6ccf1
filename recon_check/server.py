"""HTTP surface: start a validation as a server-sent event stream, download results.

Routes:

- ``POST /api/recon-validation/validate`` — JSON run config in, ``text/event-stream``
  out.  Each frame is ``data: {"type": ..., "data": ...}``.  Missing connection
  parameters (or an unconfigured profile store) answer 400 before streaming
  starts; once the stream is open, failures arrive as ``error`` events.
- ``GET /api/recon-validation/download/<jobId>`` — the run's CSV, or 404.

Each request is served on its own thread (``ThreadingHTTPServer``) and each
validation runs its own asyncio loop on that thread.  A client that
disconnects sets the run's cancellation flag; the run stops at the next page.
"""

import json
import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, Optional
from urllib.parse import unquote

from .artifacts import JobArtifactStore
from .config import RunConfig
from .errors import ArtifactNotFound, ConfigError
from .models import ValidationEvent
from .orchestrator import ReconValidator
from .profile_store import ProfileStoreSettings

logger = logging.getLogger(__name__)

VALIDATE_PATH = "/api/recon-validation/validate"
DOWNLOAD_PREFIX = "/api/recon-validation/download/"

MAX_BODY_BYTES = 10 * 1024 * 1024


class ReconRequestHandler(BaseHTTPRequestHandler):
    """Routes validation and download requests.

    Shared state (artifact store, validator factory) lives on the server
    instance.
    """

    protocol_version = "HTTP/1.1"

    def log_message(self, format, *args):
        logger.debug("%s - %s", self.address_string(), format % args)

    # -- Response helpers ----------------------------------------------------

    def _send_json(self, status: int, body: Any):
        payload = json.dumps(body).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(payload)))
        self.end_headers()
        self.wfile.write(payload)

    def _send_error_json(self, status: int, message: str, details: Optional[str] = None):
        body = {"error": message}
        if details:
            body["details"] = details
        self._send_json(status, body)

    def _read_json(self) -> Any:
        length = int(self.headers.get("Content-Length") or 0)
        if length <= 0 or length > MAX_BODY_BYTES:
            raise ConfigError("Request body must be a JSON object")
        raw = self.rfile.read(length)
        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ConfigError("Request body is not valid JSON", str(exc)) from exc

    # -- Routes --------------------------------------------------------------

    def do_POST(self):
        path = self.path.split("?")[0].rstrip("/")
        if path != VALIDATE_PATH:
            return self._send_error_json(404, "Not found")

        try:
            body = self._read_json()
            config = RunConfig.from_dict(body)
            validator = self.server.validator_factory(config, self.server.store)
        except ConfigError as exc:
            logger.info("Rejected validation request: %s", exc)
            return self._send_error_json(400, exc.message, exc.details)

        self._stream(validator)

    def do_GET(self):
        path = self.path.split("?")[0]
        if not path.startswith(DOWNLOAD_PREFIX):
            return self._send_error_json(404, "Not found")

        job_id = unquote(path[len(DOWNLOAD_PREFIX):]).strip("/")
        if not job_id:
            return self._send_error_json(400, "Missing jobId parameter")

        try:
            artifact = self.server.store.get(job_id)
        except ArtifactNotFound as exc:
            return self._send_error_json(404, exc.message)

        payload = artifact.content.encode("utf-8")
        self.send_response(200)
        self.send_header("Content-Type", "text/csv; charset=utf-8")
        self.send_header("Content-Disposition",
                         f'attachment; filename="recon-validation-{job_id}.csv"')
        self.send_header("Cache-Control", "no-cache")
        self.send_header("Content-Length", str(len(payload)))
        self.end_headers()
        self.wfile.write(payload)

    # -- Streaming -----------------------------------------------------------

    def _stream(self, validator: ReconValidator):
        """Write every event of ``validator`` as an SSE frame.

        After a write fails the run is cancelled; remaining events are
        drained so the run can finish its current page and close cleanly.
        """
        self.send_response(200)
        self.send_header("Content-Type", "text/event-stream")
        self.send_header("Cache-Control", "no-cache")
        self.send_header("Connection", "close")
        self.send_header("X-Accel-Buffering", "no")
        self.end_headers()
        self.close_connection = True

        cancel = threading.Event()
        self.server.register(validator.job_id, cancel)

        disconnected = threading.Event()

        def write(event: ValidationEvent):
            if disconnected.is_set():
                return
            try:
                self.wfile.write(event.to_sse().encode("utf-8"))
                self.wfile.flush()
            except (BrokenPipeError, ConnectionResetError):
                logger.info("Client disconnected from job %s, cancelling", validator.job_id)
                disconnected.set()
                cancel.set()

        try:
            validator.run(cancel=cancel, on_event=write)
        except Exception as exc:
            logger.exception("Validation stream for %s failed", validator.job_id)
            write(ValidationEvent.error("Validation failed", str(exc)))
        finally:
            self.server.unregister(validator.job_id)
            logger.info("Stream for job %s closing", validator.job_id)


class ReconServer(ThreadingHTTPServer):
    """Threaded HTTP server holding the artifact store and the running jobs."""

    daemon_threads = True

    def __init__(self, address, store: JobArtifactStore,
                 validator_factory: Callable[[RunConfig, JobArtifactStore], ReconValidator]):
        super().__init__(address, ReconRequestHandler)
        self.store = store
        self.validator_factory = validator_factory
        self._running = {}
        self._lock = threading.Lock()

    @property
    def base_url(self) -> str:
        host, port = self.server_address[:2]
        return f"http://{host}:{port}"

    def register(self, job_id: str, cancel: threading.Event):
        with self._lock:
            self._running[job_id] = cancel

    def unregister(self, job_id: str):
        with self._lock:
            self._running.pop(job_id, None)

    def cancel_all(self):
        """Ask every running job to stop at its next page."""
        with self._lock:
            for cancel in self._running.values():
                cancel.set()


def default_validator_factory(config: RunConfig, store: JobArtifactStore) -> ReconValidator:
    """Build a validator with profile store settings from the environment.

    Raises:
        ConfigError: if the profile store is not configured.
    """
    return ReconValidator(config, ProfileStoreSettings.from_env(), store)


def make_server(host: str = "127.0.0.1", port: int = 8080,
                store: Optional[JobArtifactStore] = None,
                validator_factory=default_validator_factory) -> ReconServer:
    return ReconServer((host, port), store or JobArtifactStore(), validator_factory)


def serve(host: str = "127.0.0.1", port: int = 8080):
    """Run the server until interrupted."""
    server = make_server(host, port)
    logger.info("Listening on %s", server.base_url)
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        logger.info("Shutting down")
    finally:
        server.cancel_all()
        server.server_close()
