from __future__ import annotations

from datetime import datetime
from pathlib import Path

import docx

PACKAGE_ROOT = Path(__file__).resolve().parent
BUILTIN_TEMPLATE_PATH = Path(docx.__file__).resolve().parent / "templates" / "default.docx"

DEFAULT_OUTPUT_FILENAME = "output.docx"
DEFAULT_INCLUDE = ("*",)
DEFAULT_MAX_WORKERS = 1
DEFAULT_HARD_LINE_BREAKS = True

DEFAULT_REQUIRED_ROLES = ("normal",)
MAX_HEADING_ROLE = 8

LOG_ENV_VAR = "MDBOOK_DOCX_LOG"
LOG_DIR_NAME = "logs"
LOG_FILE_PREFIX = "mdbook_docx"
LOG_TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"
DEFAULT_LOG_RETENTION_DAYS = 5


def ensure_dir(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    return path


def build_log_path(log_dir: Path, label: str, ts: datetime | None = None) -> Path:
    if ts is None:
        ts = datetime.now()
    safe_label = "".join(ch if ch.isalnum() or ch in "-_" else "_" for ch in label) or "book"
    name = f"{LOG_FILE_PREFIX}_{safe_label}_{ts.strftime(LOG_TIMESTAMP_FORMAT)}.log"
    return log_dir / name


def cleanup_logs(log_dir: Path, retention_days: int = DEFAULT_LOG_RETENTION_DAYS, now: datetime | None = None) -> int:
    if retention_days <= 0:
        return 0
    if not log_dir.is_dir():
        return 0
    base_time = now or datetime.now()
    cutoff = base_time.timestamp() - retention_days * 86400
    removed = 0
    for path in log_dir.glob(f"{LOG_FILE_PREFIX}_*.log"):
        try:
            if path.stat().st_mtime < cutoff:
                path.unlink()
                removed += 1
        except OSError:
            continue
    return removed
