"""Console logging plus the per-document warning ledger and build log file."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from . import config

_LOG_FORMAT = "%(asctime)s [%(levelname)s] (%(name)s): %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def get_logger(name: str | None = None) -> logging.Logger:
    """Return a module-level logger with default configuration applied."""
    logger = logging.getLogger(name)
    if not logging.getLogger().handlers:
        level_name = os.environ.get(config.LOG_ENV_VAR, "INFO").upper()
        level = logging.getLevelName(level_name)
        if not isinstance(level, int):
            level = logging.INFO
        logging.basicConfig(level=level, format=_LOG_FORMAT, datefmt=_DATE_FORMAT)
    return logger


@dataclass
class BuildWarning:
    rule: str
    reason: str
    chapter: str | None = None
    style_id: str | None = None
    role: str | None = None
    block_index: int | None = None

    def describe(self) -> str:
        parts = [f"rule={self.rule}", f"reason={self.reason}"]
        if self.chapter:
            parts.append(f"chapter={self.chapter}")
        if self.role:
            parts.append(f"role={self.role}")
        if self.style_id:
            parts.append(f"style_id={self.style_id}")
        if self.block_index is not None:
            parts.append(f"block_index={self.block_index}")
        return " ".join(parts)


@dataclass
class BuildLogState:
    document: str
    start_time: datetime
    template_path: Path | None = None
    chapters: list[str] = field(default_factory=list)
    fragments: list[str] = field(default_factory=list)
    style_count: int | None = None
    media_count: int | None = None
    block_count: int | None = None
    output_path: Path | None = None
    elapsed_sec: float | None = None
    error: str | None = None
    warnings: list[BuildWarning] = field(default_factory=list)


def warn(
    warnings: list[BuildWarning],
    rule: str,
    reason: str,
    chapter: str | None = None,
    style_id: str | None = None,
    role: str | None = None,
    block_index: int | None = None,
) -> BuildWarning:
    entry = BuildWarning(
        rule=rule,
        reason=reason,
        chapter=chapter,
        style_id=style_id,
        role=role,
        block_index=block_index,
    )
    warnings.append(entry)
    return entry


def write_build_log(log_state: BuildLogState, log_dir: Path) -> Path:
    config.ensure_dir(log_dir)
    label = str(Path(log_state.document).with_suffix(""))
    log_path = config.build_log_path(log_dir, label, log_state.start_time)
    lines = [
        f"document: {log_state.document}",
        f"template_path: {log_state.template_path or 'builtin'}",
        f"elapsed_sec: {log_state.elapsed_sec:.3f}"
        if log_state.elapsed_sec is not None
        else "elapsed_sec: unknown",
    ]
    for chapter in log_state.chapters:
        lines.append(f"chapter: {chapter}")
    for fragment in log_state.fragments:
        lines.append(f"fragment: {fragment}")
    if log_state.style_count is not None:
        lines.append(f"styles_count: {log_state.style_count}")
    if log_state.media_count is not None:
        lines.append(f"media_count: {log_state.media_count}")
    if log_state.block_count is not None:
        lines.append(f"blocks_count: {log_state.block_count}")
    if log_state.output_path is not None:
        lines.append(f"output_path: {log_state.output_path}")
    if log_state.error:
        lines.append(f"error: {log_state.error}")
    lines.append(f"warnings_count: {len(log_state.warnings)}")
    for warning in log_state.warnings:
        lines.append("warning: " + warning.describe())
    log_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return log_path
