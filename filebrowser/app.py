import logging
import os
import re
import stat
import time
import uuid
from dataclasses import dataclass
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Optional
from urllib.parse import quote

import click
from flask import (
    Blueprint,
    Flask,
    Response,
    current_app,
    g,
    has_request_context,
    make_response,
    redirect,
    request,
    send_file,
    url_for,
)
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

from .config import Settings, load_settings
from .metrics import EXPOSITION_CONTENT_TYPE, MetricsRegistry, render_exposition
from .storage import (
    EntryNotFoundError,
    FileBrowserError,
    PathRejectedError,
    RootMisconfiguredError,
    UploadRejectedError,
    list_directory,
    receive_upload,
    resolve_confined_path,
)
from .views import build_view_model, render_listing

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
LOG_FILE_MAX_BYTES = 5 * 1024 * 1024  # 5 MB max log file size
LOG_FILE_BACKUP_COUNT = 3  # Number of log file backups to keep
METRICS_PATH = "/metrics"
_CONTROL_CHAR_PATTERN = re.compile(r"[\x00-\x1f\x7f-\x9f\n\r]")


def sanitize_log_value(value: Any) -> Any:
    """Remove control characters from log values to prevent log injection."""

    if isinstance(value, str):
        escaped = value.replace("\n", "\\n").replace("\r", "\\r")
        return _CONTROL_CHAR_PATTERN.sub(
            lambda match: f"\\x{ord(match.group()):02x}", escaped
        )
    return value


class RequestAwareLogger:
    """Logger wrapper that injects request IDs into log messages."""

    def __init__(self, logger: logging.Logger) -> None:
        self._logger = logger

    def _with_request(self, message: str) -> str:
        if has_request_context():
            request_id = getattr(g, "request_id", None)
            if request_id:
                return f"request_id={request_id} {message}"
        return message

    def debug(self, msg: str, *args, **kwargs) -> None:
        self._logger.debug(self._with_request(msg), *args, **kwargs)

    def info(self, msg: str, *args, **kwargs) -> None:
        self._logger.info(self._with_request(msg), *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs) -> None:
        self._logger.warning(self._with_request(msg), *args, **kwargs)

    def error(self, msg: str, *args, **kwargs) -> None:
        self._logger.error(self._with_request(msg), *args, **kwargs)

    def exception(self, msg: str, *args, **kwargs) -> None:
        self._logger.exception(self._with_request(msg), *args, **kwargs)

    def __getattr__(self, name: str):  # pragma: no cover - passthrough
        return getattr(self._logger, name)


lifecycle_logger = RequestAwareLogger(logging.getLogger("filebrowser.lifecycle"))


def configure_logging(settings: Settings) -> Optional[Path]:
    """Apply the log level and attach a rotating file handler when LOG_DIR is set."""

    numeric_level = getattr(logging, settings.log_level, logging.INFO)
    logging.basicConfig(level=numeric_level, format=LOG_FORMAT)
    logging.getLogger("filebrowser").setLevel(numeric_level)

    if settings.log_dir is None:
        return None

    settings.log_dir.mkdir(parents=True, exist_ok=True)
    log_path = settings.log_dir / "application.log"
    root_logger = logging.getLogger()
    formatter = logging.Formatter(LOG_FORMAT)

    for handler in root_logger.handlers:
        if isinstance(handler, RotatingFileHandler) and getattr(handler, "baseFilename", "") == os.path.abspath(log_path):
            handler.setLevel(numeric_level)
            handler.setFormatter(formatter)
            return log_path

    file_handler = RotatingFileHandler(
        log_path,
        maxBytes=LOG_FILE_MAX_BYTES,
        backupCount=LOG_FILE_BACKUP_COUNT,
        encoding="utf-8",
    )
    file_handler.setLevel(numeric_level)
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)
    return log_path


@dataclass(frozen=True)
class FileBrowserState:
    settings: Settings
    metrics: MetricsRegistry


def _state() -> FileBrowserState:
    return current_app.extensions["filebrowser"]


def upload_rate_limit_string() -> str:
    return _state().settings.upload_rate_limit


def _plain_text(message: str, status_code: int) -> Response:
    response = make_response(message + "\n", status_code)
    response.headers["Content-Type"] = "text/plain; charset=utf-8"
    return response


limiter = Limiter(get_remote_address, storage_uri="memory://")
browser = Blueprint("browser", __name__)


@browser.before_app_request
def add_request_id() -> None:
    """Assign a request identifier for downstream logging."""

    g.request_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)
    g.request_started_at = time.perf_counter()


@browser.after_app_request
def record_request_duration(response: Response):
    """Feed the duration histogram for every request except metrics scrapes."""

    started = getattr(g, "request_started_at", None)
    if started is not None and request.path != METRICS_PATH:
        _state().metrics.observe_duration(request.method, time.perf_counter() - started)
    return response


@browser.after_app_request
def log_request_completion(response: Response):
    """Emit lifecycle logs for every completed request."""

    lifecycle_logger.info(
        "request_completed method=%s path=%s status=%d",
        request.method,
        sanitize_log_value(request.path),
        response.status_code,
    )
    return response


@browser.after_app_request
def add_security_headers(response: Response):
    """Attach security-focused response headers."""

    response.headers["X-Frame-Options"] = "DENY"
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    return response


@browser.after_app_request
def add_request_id_header(response: Response):
    """Expose the current request identifier to clients."""

    if hasattr(g, "request_id"):
        response.headers["X-Request-ID"] = g.request_id
    return response


@browser.app_errorhandler(FileBrowserError)
def handle_file_browser_error(error: FileBrowserError):
    return _plain_text(error.message, error.status_code)


@browser.app_errorhandler(429)
def handle_rate_limit(error):  # pragma: no cover - framework hook
    return _plain_text("Too many requests", 429)


def _serve_path(settings: Settings, registry: MetricsRegistry, url_path: str) -> Response:
    # Doubled slashes never reach the breadcrumbs or the resolver.
    if "//" in url_path:
        raise PathRejectedError()

    try:
        target = resolve_confined_path(settings.files_dir, url_path)
    except PathRejectedError:
        lifecycle_logger.warning(
            "path_traversal_attempt path=%s ip=%s",
            sanitize_log_value(url_path),
            request.remote_addr or "unknown",
        )
        raise

    if not settings.files_dir.is_dir():
        lifecycle_logger.error("files_dir_missing files_dir=%s", settings.files_dir)
        raise RootMisconfiguredError()

    try:
        target_stat = target.stat()
    except OSError as error:
        if url_path == "/":
            lifecycle_logger.error("files_dir_inaccessible error=%s", error)
            raise RootMisconfiguredError() from error
        raise EntryNotFoundError() from error

    if stat.S_ISDIR(target_stat.st_mode):
        if not url_path.endswith("/"):
            return redirect(quote(url_path) + "/", code=302)
        registry.directory_listed()
        entries = list_directory(target)
        view = build_view_model(url_path, entries, settings)
        response = make_response(render_listing(view))
        response.headers["Content-Type"] = "text/html; charset=utf-8"
        return response

    registry.file_served()
    lifecycle_logger.info("file_served path=%s", sanitize_log_value(url_path))
    try:
        return send_file(target, conditional=True)
    except OSError as error:
        raise EntryNotFoundError() from error


@browser.route("/", defaults={"subpath": ""})
@browser.route("/<path:subpath>")
def browse(subpath: str):
    """List a directory or stream a file beneath the files directory."""

    state = _state()
    registry = state.metrics
    registry.request_started()
    try:
        response = _serve_path(state.settings, registry, request.path)
    except FileBrowserError as error:
        registry.request_failed()
        lifecycle_logger.warning(
            "browse_failed path=%s status=%d reason=%s",
            sanitize_log_value(request.path),
            error.status_code,
            error.message,
        )
        raise

    # A slash redirect is neither a success nor an error.
    if response.status_code < 300:
        registry.request_succeeded()
    return response


@browser.route("/upload", methods=["GET", "POST"])
@limiter.limit(upload_rate_limit_string, methods=["POST"])
def upload():
    state = _state()
    settings = state.settings
    registry = state.metrics
    registry.upload_started()

    try:
        if not settings.enable_upload:
            raise UploadRejectedError("File uploads are disabled", status_code=403)
        if request.method != "POST":
            return redirect(url_for("browser.browse"), code=303)
        stored = receive_upload(
            settings.files_dir,
            request.form.get("dir"),
            request.files.get("file"),
            enabled=settings.enable_upload,
        )
    except FileBrowserError as error:
        registry.upload_failed()
        lifecycle_logger.warning(
            "upload_rejected status=%d reason=%s ip=%s",
            error.status_code,
            error.message,
            request.remote_addr or "unknown",
        )
        raise

    registry.upload_succeeded()
    lifecycle_logger.info(
        "upload_stored filename=%s size=%d",
        sanitize_log_value(stored.path.name),
        stored.size,
    )
    return redirect(stored.directory_url, code=303)


@browser.route(METRICS_PATH)
def metrics():
    """Expose counters in the plain-text exposition format."""

    state = _state()
    if not state.settings.enable_metrics:
        raise FileBrowserError("Metrics are disabled", status_code=403)
    response = make_response(render_exposition(state.metrics, state.settings), 200)
    response.headers["Content-Type"] = EXPOSITION_CONTENT_TYPE
    return response


def create_app(settings: Settings, registry: Optional[MetricsRegistry] = None) -> Flask:
    """Build the application around an already resolved configuration."""

    configure_logging(settings)
    # The built-in static route would shadow a served directory named "static".
    app = Flask(__name__, static_folder=None)
    app.config["RATELIMIT_ENABLED"] = settings.rate_limit_enabled
    app.config["RATELIMIT_STORAGE_URI"] = "memory://"
    app.extensions["filebrowser"] = FileBrowserState(
        settings=settings,
        metrics=registry if registry is not None else MetricsRegistry(),
    )
    limiter.init_app(app)
    app.register_blueprint(browser)
    return app


@click.command()
@click.option("--enable-upload/--disable-upload", default=None, help="Enable file uploads (overrides ENABLE_UPLOAD).")
@click.option("--enable-metrics/--disable-metrics", default=None, help="Enable the metrics endpoint (overrides ENABLE_METRICS).")
@click.option("--host", default=None, help="Interface to bind (overrides HOST).")
@click.option("--port", type=int, default=None, help="Port to listen on (overrides PORT).")
@click.option("--files-dir", type=click.Path(file_okay=False), default=None, help="Directory to serve (overrides FILES_DIR).")
def main(enable_upload, enable_metrics, host, port, files_dir):
    """Serve a directory tree for browsing, download and upload."""

    settings = load_settings(
        enable_upload=enable_upload,
        enable_metrics=enable_metrics,
        host=host,
        port=port,
        files_dir=files_dir,
    )
    app = create_app(settings)
    startup_logger = logging.getLogger("filebrowser.lifecycle")

    try:
        settings.files_dir.mkdir(parents=True, exist_ok=True)
    except OSError as error:
        startup_logger.error("files_dir_create_failed files_dir=%s error=%s", settings.files_dir, error)

    startup_logger.info("Server running at http://%s:%d", settings.host, settings.port)
    if settings.enable_upload:
        startup_logger.info("File uploads are enabled")
    else:
        startup_logger.info("File uploads are disabled")
    if settings.enable_metrics:
        startup_logger.info("Metrics endpoint available at %s", METRICS_PATH)
    else:
        startup_logger.info("Metrics endpoint is disabled")

    app.run(host=settings.host, port=settings.port, debug=False, threaded=True)


if __name__ == "__main__":
    main()
