import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

from markupsafe import Markup

DEFAULT_FILES_DIR = "/files"
DEFAULT_TITLE = "File Server"
DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 8000
DEFAULT_UPLOAD_RATE_LIMIT = "60 per minute"

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}

logger = logging.getLogger("filebrowser.config")


@dataclass(frozen=True)
class Settings:
    """Startup configuration, resolved once and never mutated afterwards."""

    files_dir: Path = Path(DEFAULT_FILES_DIR)
    title: str = DEFAULT_TITLE
    # Operator supplied markup injected into <head> without escaping.
    extra_headers: Markup = field(default_factory=Markup)
    enable_upload: bool = False
    enable_metrics: bool = False
    git_commit: str = "unknown"
    build_date: str = "unknown"
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    log_level: str = "INFO"
    log_dir: Optional[Path] = None
    upload_rate_limit: str = DEFAULT_UPLOAD_RATE_LIMIT
    rate_limit_enabled: bool = True


def _parse_bool(raw_value: Optional[str]) -> Optional[bool]:
    if raw_value is None:
        return None
    normalized = raw_value.strip().lower()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    return None


def _env_bool(environ: Mapping[str, str], key: str, default: bool) -> bool:
    parsed = _parse_bool(environ.get(key))
    if parsed is None:
        if environ.get(key):
            logger.warning("Invalid boolean for %s: %s. Using default: %s", key, environ.get(key), default)
        return default
    return parsed


def _env_int(environ: Mapping[str, str], key: str, default: int, min_value: int = 1) -> int:
    """Safely parse integer environment variable with error handling."""
    raw_value = environ.get(key)
    if raw_value is None or raw_value == "":
        return default
    try:
        return max(min_value, int(raw_value))
    except (TypeError, ValueError):
        logger.warning("Invalid value for %s: %s. Using default: %d", key, raw_value, default)
        return default


def _env_str(environ: Mapping[str, str], key: str, default: str) -> str:
    value = environ.get(key)
    if value is None:
        return default
    return value


def _resolve(flag_value, env_value):
    """A flag given on the command line always wins over the environment."""
    if flag_value is not None:
        return flag_value
    return env_value


def load_settings(
    environ: Optional[Mapping[str, str]] = None,
    *,
    enable_upload: Optional[bool] = None,
    enable_metrics: Optional[bool] = None,
    host: Optional[str] = None,
    port: Optional[int] = None,
    files_dir: Optional[str] = None,
) -> Settings:
    """Build :class:`Settings` from flags, then *environ*, then defaults.

    Keyword arguments carry command line flags; ``None`` means the flag was
    not given and the environment (or the built-in default) applies.
    """

    if environ is None:
        environ = os.environ

    log_dir_value = environ.get("LOG_DIR")
    log_dir = Path(log_dir_value).expanduser() if log_dir_value else None

    resolved_files_dir = _resolve(files_dir, _env_str(environ, "FILES_DIR", DEFAULT_FILES_DIR))

    return Settings(
        files_dir=Path(resolved_files_dir).expanduser(),
        title=_env_str(environ, "TITLE", DEFAULT_TITLE),
        extra_headers=Markup(_env_str(environ, "EXTRA_HEADERS", "")),
        enable_upload=_resolve(enable_upload, _env_bool(environ, "ENABLE_UPLOAD", False)),
        enable_metrics=_resolve(enable_metrics, _env_bool(environ, "ENABLE_METRICS", False)),
        git_commit=_env_str(environ, "GIT_COMMIT", "unknown"),
        build_date=_env_str(environ, "BUILD_DATE", "unknown"),
        host=_resolve(host, _env_str(environ, "HOST", DEFAULT_HOST)),
        port=_resolve(port, _env_int(environ, "PORT", DEFAULT_PORT)),
        log_level=_env_str(environ, "LOG_LEVEL", "INFO").upper(),
        log_dir=log_dir,
        upload_rate_limit=_env_str(environ, "UPLOAD_RATE_LIMIT", DEFAULT_UPLOAD_RATE_LIMIT),
        rate_limit_enabled=_env_bool(environ, "RATE_LIMIT_ENABLED", True),
    )
