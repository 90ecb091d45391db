from __future__ import annotations

import os
import stat
import tempfile
import threading
from pathlib import Path

from . import config
from .errors import WriteError
from .log import get_logger

LOGGER = get_logger(__name__)

DEFAULT_FILE_MODE = 0o666

# os.umask can only be read by setting it
_UMASK_LOCK = threading.Lock()


def write_package(data: bytes, output_path: Path) -> Path:
    """Write package bytes to `output_path`, creating parent directories.

    The bytes land in a sibling temporary file first so a failed write never
    leaves a truncated package behind. The result gets the permissions a plain
    write would give it: an existing file keeps its mode, a new one follows the
    process umask.
    """
    path = Path(output_path)
    tmp_name: str | None = None
    try:
        config.ensure_dir(path.parent)
        mode = _target_mode(path)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
        os.chmod(tmp_name, mode)
        os.replace(tmp_name, path)
        tmp_name = None
    except OSError as exc:
        raise WriteError(f"cannot write {path}: {exc.strerror or exc}", path=path) from exc
    finally:
        if tmp_name is not None and os.path.exists(tmp_name):
            os.unlink(tmp_name)
    LOGGER.info("Wrote %s (%d bytes)", path, len(data))
    return path


def _target_mode(path: Path) -> int:
    try:
        return stat.S_IMODE(path.stat().st_mode)
    except FileNotFoundError:
        return DEFAULT_FILE_MODE & ~_current_umask()


def _current_umask() -> int:
    with _UMASK_LOCK:
        mask = os.umask(0o077)
        os.umask(mask)
    return mask
