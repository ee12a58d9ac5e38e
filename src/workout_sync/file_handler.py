"""Snapshot file I/O for the export / plan / apply commands.

Snapshots are UTF-8 by contract, but files that went through other
tools can carry a byte order mark or a legacy encoding.  Reads try
strict UTF-8 first and only fall back to charset detection when that
fails.  Exports are written atomically so an interrupted ``export -o``
never leaves a truncated backup behind.
"""

import os
import tempfile
from pathlib import Path

from charset_normalizer import from_bytes

from .core.async_utils import run_sync

_UTF8_BOM = b"\xef\xbb\xbf"

# =============================================================================
# Path Validation
# =============================================================================


def validate_file_path(path_str: str) -> Path:
    """Resolve *path_str* (``~`` and relative paths allowed) to an existing file.

    Raises:
        ValueError: If the path doesn't exist or is not a file.
    """
    resolved = Path(path_str).expanduser().resolve()
    if not resolved.exists():
        raise ValueError(f"File not found: {path_str}")
    if not resolved.is_file():
        raise ValueError(f"Path is not a file: {path_str}")
    return resolved


def validate_output_path(path_str: str) -> Path:
    """Resolve an export target.  The file may be new; its directory must exist.

    Raises:
        ValueError: If the parent is missing or the path is a directory.
    """
    resolved = Path(path_str).expanduser().resolve()
    if resolved.is_dir():
        raise ValueError(f"Output path is a directory: {path_str}")
    if not resolved.parent.is_dir():
        raise ValueError(f"Output parent directory not found: {resolved.parent}")
    return resolved


# =============================================================================
# Read / write
# =============================================================================


def decode_snapshot_bytes(raw: bytes) -> tuple[str, str]:
    """Decode snapshot bytes, returning ``(text, encoding)``.

    A UTF-8 byte order mark is dropped.  Bytes that are not valid UTF-8
    go through charset-normalizer; if it cannot decide either, invalid
    sequences are replaced so the JSON parser reports the real problem.
    """
    if raw.startswith(_UTF8_BOM):
        return raw[len(_UTF8_BOM):].decode("utf-8", errors="replace"), "utf-8-sig"
    try:
        return raw.decode("utf-8"), "utf-8"
    except UnicodeDecodeError:
        pass

    best = from_bytes(raw).best()
    if best is None:
        return raw.decode("utf-8", errors="replace"), "utf-8"
    return str(best), best.encoding


def read_file_with_encoding(path: Path) -> tuple[str, str]:
    return decode_snapshot_bytes(path.read_bytes())


def write_file(path: Path, content: str) -> int:
    """Atomically write *content* as UTF-8 and return the byte count.

    Parent directories are created.  The data lands in a temp file in
    the target directory first and is moved into place with
    ``os.replace()``.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    encoded = content.encode("utf-8")
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(encoded)
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise
    return len(encoded)


# =============================================================================
# Async Wrappers
# =============================================================================


async def read_file_async(path_str: str) -> tuple[str, str, Path]:
    """Validate and read a snapshot file off the event loop.

    Returns:
        Tuple of (text, encoding, resolved_path).

    Raises:
        ValueError: If path validation fails.
    """
    resolved = await run_sync(validate_file_path, path_str)
    content, encoding = await run_sync(read_file_with_encoding, resolved)
    return (content, encoding, resolved)


async def write_file_async(path_str: str, content: str) -> tuple[Path, int]:
    """Validate an export target and write it off the event loop.

    Returns:
        Tuple of (resolved_path, bytes_written).
    """
    resolved = await run_sync(validate_output_path, path_str)
    count = await run_sync(write_file, resolved, content)
    return (resolved, count)
