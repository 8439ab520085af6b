import enum
import logging
import os
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Iterator, List, Optional, Union
from urllib.parse import quote

from werkzeug.datastructures import FileStorage

# Constants for file operations
CHUNK_SIZE_BYTES = 1024 * 1024  # 1 MB chunks for streaming
SIZE_UNIT = 1024
SIZE_PREFIXES = "KMGTPE"
MODIFIED_FORMAT = "%Y-%m-%d %H:%M"
MISSING_SIZE = "-"

logger = logging.getLogger("filebrowser.storage")

PathLike = Union[str, os.PathLike]


class FileBrowserError(Exception):
    """Base error carrying the HTTP status and a message safe to show users."""

    status_code = 500
    message = "Internal server error"

    def __init__(self, message: Optional[str] = None, *, status_code: Optional[int] = None) -> None:
        if message is not None:
            self.message = message
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.message)


class PathRejectedError(FileBrowserError):
    """Raised when a requested path escapes the confinement root."""

    status_code = 404
    message = "Not found"


class EntryNotFoundError(FileBrowserError):
    status_code = 404
    message = "Not found"


class DirectoryUnreadableError(FileBrowserError):
    status_code = 500
    message = "Error reading directory"


class RootMisconfiguredError(FileBrowserError):
    """Raised when the confinement root itself is missing or inaccessible."""

    status_code = 500
    message = "Files directory unavailable"


class UploadRejectedError(FileBrowserError):
    status_code = 400
    message = "Invalid upload"


class UploadWriteError(FileBrowserError):
    status_code = 500
    message = "Error saving file"


class EntryKind(enum.Enum):
    DIRECTORY = "directory"
    FILE = "file"


@dataclass(frozen=True)
class DirectoryEntry:
    name: str
    kind: EntryKind
    display_size: str
    modified_at: datetime

    @property
    def is_dir(self) -> bool:
        return self.kind is EntryKind.DIRECTORY

    @property
    def relative_url(self) -> str:
        encoded = quote(os.fsencode(self.name), safe="")
        return f"{encoded}/" if self.is_dir else encoded

    @property
    def display_modified(self) -> str:
        return format_modified(self.modified_at)


@dataclass(frozen=True)
class StoredUpload:
    path: Path
    directory_url: str
    size: int


def _canonical(path: PathLike) -> str:
    return os.path.abspath(os.fspath(path))


def is_confined(root: PathLike, candidate: PathLike) -> bool:
    """Return True when *candidate* is *root* or lies underneath it.

    Both sides are made absolute and normalized but symlinks are not
    followed, so a link inside the root pointing elsewhere is accepted.
    """

    root_abs = _canonical(root)
    candidate_abs = _canonical(candidate)
    if candidate_abs == root_abs:
        return True
    return candidate_abs.startswith(root_abs.rstrip(os.sep) + os.sep)


def resolve_confined_path(root: PathLike, requested_path: str) -> Path:
    """Map an untrusted URL path onto a location beneath *root*.

    Raises PathRejectedError when the normalized result leaves the root.
    """

    if "\x00" in requested_path:
        raise PathRejectedError()
    root_abs = _canonical(root)
    candidate = _canonical(os.path.join(root_abs, requested_path.lstrip("/")))
    if not is_confined(root_abs, candidate):
        raise PathRejectedError()
    return Path(candidate)


def directory_url(root: PathLike, directory: PathLike) -> str:
    """Return the slash-terminated browse URL for a confined directory."""

    relative = os.path.relpath(_canonical(directory), _canonical(root))
    if relative == os.curdir:
        return "/"
    segments = [quote(os.fsencode(part), safe="") for part in relative.split(os.sep)]
    return "/" + "/".join(segments) + "/"


def format_size(num: int) -> str:
    if num < SIZE_UNIT:
        return f"{num} B"
    divisor = SIZE_UNIT
    exponent = 0
    remaining = num // SIZE_UNIT
    while remaining >= SIZE_UNIT and exponent < len(SIZE_PREFIXES) - 1:
        divisor *= SIZE_UNIT
        exponent += 1
        remaining //= SIZE_UNIT
    return f"{num / divisor:.1f} {SIZE_PREFIXES[exponent]}B"


def format_modified(value: Union[datetime, float]) -> str:
    """Render a timestamp as ``YYYY-MM-DD HH:MM+HH:MM`` in local time."""

    if isinstance(value, datetime):
        moment = value.astimezone()
    else:
        moment = datetime.fromtimestamp(value).astimezone()
    offset = moment.utcoffset() or timedelta(0)
    total_minutes = int(offset.total_seconds() // 60)
    sign = "+" if total_minutes >= 0 else "-"
    hours, minutes = divmod(abs(total_minutes), 60)
    return f"{moment.strftime(MODIFIED_FORMAT)}{sign}{hours:02d}:{minutes:02d}"


def format_item_count(count: Optional[int]) -> str:
    if count is None:
        return MISSING_SIZE
    if count == 1:
        return "1 item"
    return f"{count} items"


def count_items(path: PathLike) -> Optional[int]:
    try:
        with os.scandir(path) as iterator:
            return sum(1 for _ in iterator)
    except OSError:
        return None


def _sort_key(entry: DirectoryEntry):
    return (not entry.is_dir, entry.name)


def list_directory(path: PathLike) -> List[DirectoryEntry]:
    """List the immediate children of a confined directory.

    Directories come first, then files, each group ordered by name using
    plain codepoint comparison. Children whose metadata cannot be read are
    left out; failing to read *path* itself raises DirectoryUnreadableError.
    """

    entries: List[DirectoryEntry] = []
    try:
        with os.scandir(path) as iterator:
            for child in iterator:
                try:
                    is_dir = child.is_dir()
                    stat_result = child.stat()
                except OSError as error:
                    logger.debug("entry_skipped name=%r error=%s", child.name, error)
                    continue

                if is_dir:
                    kind = EntryKind.DIRECTORY
                    display_size = format_item_count(count_items(child.path))
                else:
                    kind = EntryKind.FILE
                    display_size = format_size(stat_result.st_size)

                entries.append(
                    DirectoryEntry(
                        name=child.name,
                        kind=kind,
                        display_size=display_size,
                        modified_at=datetime.fromtimestamp(stat_result.st_mtime).astimezone(),
                    )
                )
    except OSError as error:
        raise DirectoryUnreadableError() from error

    entries.sort(key=_sort_key)
    return entries


def flatten_upload_name(filename: str) -> str:
    """Collapse any path embedded in an uploaded filename into one segment."""

    return filename.replace("/", "_")


def _close_stream_safely(stream, context: str) -> None:
    """Close an upload/input stream while logging failures."""

    if stream is None or not hasattr(stream, "close"):
        return

    try:
        stream.close()
    except OSError as error:
        logger.warning("stream_close_failed context=%s error=%s", context, error)


@contextmanager
def upload_stream_handler(file_storage: FileStorage) -> Iterator[FileStorage]:
    """Ensure uploaded file streams are always closed."""

    try:
        yield file_storage
    finally:
        _close_stream_safely(
            getattr(file_storage, "stream", None),
            f"upload_stream_handler filename={getattr(file_storage, 'filename', 'unknown')!r}",
        )


def receive_upload(
    root: PathLike,
    target_dir: Optional[str],
    upload: Optional[FileStorage],
    *,
    enabled: bool,
) -> StoredUpload:
    """Store *upload* inside *target_dir* beneath *root*.

    An existing file with the same name is overwritten. A failed copy may
    leave a truncated file behind; the error is still reported.
    """

    if not enabled:
        raise UploadRejectedError("File uploads are disabled", status_code=403)

    if not target_dir:
        target_dir = "/"

    try:
        destination_dir = resolve_confined_path(root, target_dir)
    except PathRejectedError:
        raise PathRejectedError("Invalid file path", status_code=403) from None

    if upload is None or not upload.filename:
        raise UploadRejectedError()

    with upload_stream_handler(upload):
        if "\x00" in upload.filename:
            raise PathRejectedError("Invalid file path", status_code=403)
        filename = flatten_upload_name(upload.filename)
        final_path = Path(_canonical(destination_dir / filename))
        # "." and ".." survive flattening and must not leave the target directory.
        if not is_confined(root, final_path) or final_path.parent != destination_dir:
            raise PathRejectedError("Invalid file path", status_code=403)

        try:
            destination_dir.mkdir(parents=True, exist_ok=True)
        except OSError as error:
            logger.error("upload_mkdir_failed error=%s", error)
            raise UploadWriteError("Unable to save file") from error

        try:
            with open(final_path, "wb") as destination:
                upload.save(destination, buffer_size=CHUNK_SIZE_BYTES)
                size = destination.tell()
        except OSError as error:
            logger.error("upload_write_failed error=%s", error)
            raise UploadWriteError() from error

    return StoredUpload(
        path=final_path,
        directory_url=directory_url(root, destination_dir),
        size=size,
    )
