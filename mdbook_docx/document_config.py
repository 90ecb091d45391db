from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any, Mapping, Sequence

from . import config
from .errors import ConfigError
from .log import get_logger
from .manifest import validate_patterns

LOGGER = get_logger(__name__)

DOCUMENT_KEYS = ("filename", "template", "include", "offset_headings_by", "prepend", "append")
BOOK_KEYS = ("documents", "max_workers", "log_retention_days", "hard_line_breaks")
# keys mdBook itself places in every [output.*] table
HOST_KEYS = ("command", "renderers", "optional")


@dataclass(frozen=True)
class DocumentConfig:
    filename: str
    template: str | None = None
    include: tuple[str, ...] = config.DEFAULT_INCLUDE
    offset_headings_by: int = 0
    prepend: tuple[str, ...] = ()
    append: tuple[str, ...] = ()
    unknown_keys: tuple[str, ...] = field(default=(), compare=False)

    def validate(self) -> None:
        if not isinstance(self.filename, str) or not self.filename.strip():
            raise ConfigError("document filename must be a non-empty string")
        pure = PurePosixPath(self.filename.replace("\\", "/"))
        if pure.is_absolute() or Path(self.filename).is_absolute():
            raise ConfigError(f"document filename must be relative: {self.filename}")
        if ".." in pure.parts:
            raise ConfigError(f"document filename must not leave the output directory: {self.filename}")
        if self.template is not None and (not isinstance(self.template, str) or not self.template.strip()):
            raise ConfigError(f"{self.filename}: template must be a non-empty string")
        if not self.include:
            raise ConfigError(f"{self.filename}: include must name at least one pattern")
        try:
            validate_patterns(self.include)
        except ConfigError as exc:
            raise ConfigError(f"{self.filename}: {exc}") from exc
        if isinstance(self.offset_headings_by, bool) or not isinstance(self.offset_headings_by, int):
            raise ConfigError(f"{self.filename}: offset_headings_by must be an integer")
        for key, paths in (("prepend", self.prepend), ("append", self.append)):
            for item in paths:
                if not isinstance(item, str) or not item.strip():
                    raise ConfigError(f"{self.filename}: {key} entries must be non-empty strings")

    def to_dict(self) -> dict[str, object]:
        return {
            "filename": self.filename,
            "template": self.template,
            "include": list(self.include),
            "offset_headings_by": self.offset_headings_by,
            "prepend": list(self.prepend),
            "append": list(self.append),
        }

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> DocumentConfig:
        if not isinstance(data, Mapping):
            raise ConfigError(f"document entry must be a table, got {type(data).__name__}")
        if "filename" not in data:
            raise ConfigError("document entry is missing the required filename")
        include = data.get("include")
        document = cls(
            filename=data["filename"],
            template=data.get("template"),
            include=_string_tuple(data, "include") if include else config.DEFAULT_INCLUDE,
            offset_headings_by=data.get("offset_headings_by", 0),
            prepend=_string_tuple(data, "prepend"),
            append=_string_tuple(data, "append"),
            unknown_keys=tuple(sorted(key for key in data if key not in DOCUMENT_KEYS)),
        )
        document.validate()
        return document


@dataclass(frozen=True)
class BookConfig:
    root: Path
    src_root: Path
    destination: Path
    # configuration order; rejected entries keep their slot as a ConfigError
    documents: tuple[DocumentConfig | ConfigError, ...] = ()
    labels: tuple[str, ...] = ()
    max_workers: int = config.DEFAULT_MAX_WORKERS
    log_retention_days: int = config.DEFAULT_LOG_RETENTION_DAYS
    hard_line_breaks: bool = config.DEFAULT_HARD_LINE_BREAKS

    @property
    def log_dir(self) -> Path:
        return self.destination / config.LOG_DIR_NAME

    def valid_documents(self) -> list[DocumentConfig]:
        return [doc for doc in self.documents if isinstance(doc, DocumentConfig)]

    def template_path(self, document: DocumentConfig) -> Path:
        if document.template is None:
            return config.BUILTIN_TEMPLATE_PATH
        return (self.root / document.template).resolve()

    def fragment_path(self, fragment: str) -> Path:
        return (self.root / fragment).resolve()

    def output_path(self, document: DocumentConfig) -> Path:
        return self.destination / document.filename


def load_book_config(
    table: Mapping[str, Any] | None,
    root: Path,
    src_root: Path,
    destination: Path,
) -> BookConfig:
    """Validate the `[output.docx]` table; per-document errors do not abort the book."""
    table = dict(table or {})
    for key in sorted(table):
        if key not in BOOK_KEYS and key not in HOST_KEYS:
            LOGGER.warning("Ignoring unknown [output.docx] key %r", key)

    max_workers = _int_setting(table, "max_workers", config.DEFAULT_MAX_WORKERS, minimum=1)
    retention = _int_setting(table, "log_retention_days", config.DEFAULT_LOG_RETENTION_DAYS, minimum=0)
    hard_line_breaks = table.get("hard_line_breaks", config.DEFAULT_HARD_LINE_BREAKS)
    if not isinstance(hard_line_breaks, bool):
        raise ConfigError("[output.docx] hard_line_breaks must be a boolean")

    raw_documents = table.get("documents")
    if raw_documents is None:
        LOGGER.info("No documents configured, building %s from every chapter", config.DEFAULT_OUTPUT_FILENAME)
        raw_documents = [{"filename": config.DEFAULT_OUTPUT_FILENAME}]
    if not isinstance(raw_documents, Sequence) or isinstance(raw_documents, (str, bytes)):
        raise ConfigError("[output.docx] documents must be an array of tables")
    if not raw_documents:
        raise ConfigError("[output.docx] documents is empty; configure at least one document")

    documents: list[DocumentConfig | ConfigError] = []
    labels: list[str] = []
    seen: set[str] = set()
    for index, raw in enumerate(raw_documents):
        label = _label(raw, index)
        labels.append(label)
        try:
            document = DocumentConfig.from_mapping(raw)
            key = PurePosixPath(document.filename.replace("\\", "/")).as_posix().casefold()
            if key in seen:
                raise ConfigError(f"duplicate document filename: {document.filename}")
            seen.add(key)
        except ConfigError as exc:
            LOGGER.error("Rejected document %s: %s", label, exc)
            documents.append(exc)
            continue
        for unknown in document.unknown_keys:
            LOGGER.warning("Ignoring unknown key %r in document %s", unknown, label)
        documents.append(document)

    return BookConfig(
        root=Path(root),
        src_root=Path(src_root),
        destination=Path(destination),
        documents=tuple(documents),
        labels=tuple(labels),
        max_workers=max_workers,
        log_retention_days=retention,
        hard_line_breaks=hard_line_breaks,
    )


def _string_tuple(data: Mapping[str, Any], key: str) -> tuple[str, ...]:
    value = data.get(key)
    if value is None:
        return ()
    if isinstance(value, str) or not isinstance(value, Sequence):
        raise ConfigError(f"{key} must be an array of strings")
    for item in value:
        if not isinstance(item, str) or not item:
            raise ConfigError(f"{key} entries must be non-empty strings")
    return tuple(value)


def _int_setting(table: Mapping[str, Any], key: str, default: int, minimum: int) -> int:
    value = table.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"[output.docx] {key} must be an integer")
    if value < minimum:
        raise ConfigError(f"[output.docx] {key} must be >= {minimum}")
    return value


def _label(raw: Any, index: int) -> str:
    if isinstance(raw, Mapping) and isinstance(raw.get("filename"), str) and raw["filename"].strip():
        return raw["filename"]
    return f"documents[{index}]"
