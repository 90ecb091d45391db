"""Per-document build orchestration and the run-level report."""
from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Sequence

from . import config
from .assembler import assemble_document
from .blocks import Fragment
from .document_config import BookConfig, DocumentConfig
from .docx_writer import render_document
from .errors import AssemblyFailed, ConfigError, DocxBuildError
from .fragment_loader import load_fragment
from .log import BuildLogState, BuildWarning, get_logger, warn, write_build_log
from .manifest import ChapterManifestEntry, resolve_chapters
from .markdown_compiler import compile_chapter
from .package_writer import write_package
from .style_registry import TemplateCache

LOGGER = get_logger(__name__)


@dataclass
class DocumentResult:
    filename: str
    output_path: Path | None = None
    error: DocxBuildError | None = None
    warnings: list[BuildWarning] = field(default_factory=list)
    elapsed_sec: float = 0.0
    log_path: Path | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def describe(self) -> str:
        if self.ok:
            return f"{self.filename}: ok ({len(self.warnings)} warnings, {self.elapsed_sec:.2f}s) -> {self.output_path}"
        return f"{self.filename}: failed: {self.error.describe()}"


@dataclass
class BuildReport:
    results: list[DocumentResult] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(result.ok for result in self.results)

    @property
    def failed(self) -> list[DocumentResult]:
        return [result for result in self.results if not result.ok]


class BookBuilder:
    def __init__(
        self,
        book: BookConfig,
        chapters: Sequence[ChapterManifestEntry],
        template_cache: TemplateCache | None = None,
        write_logs: bool = True,
    ) -> None:
        self.book = book
        self.chapters = list(chapters)
        self.template_cache = template_cache or TemplateCache()
        self.write_logs = write_logs

    def build(self) -> BuildReport:
        if self.write_logs:
            removed = config.cleanup_logs(self.book.log_dir, self.book.log_retention_days)
            if removed:
                LOGGER.info("Removed %d expired build logs", removed)

        slots: list[DocumentResult | None] = []
        pending: list[tuple[int, DocumentConfig]] = []
        for index, document in enumerate(self.book.documents):
            if isinstance(document, ConfigError):
                label = self.book.labels[index] if index < len(self.book.labels) else f"documents[{index}]"
                slots.append(DocumentResult(filename=label, error=document))
            else:
                slots.append(None)
                pending.append((index, document))

        if self.book.max_workers > 1 and len(pending) > 1:
            with ThreadPoolExecutor(max_workers=self.book.max_workers) as executor:
                futures = [(index, executor.submit(self.build_document, doc)) for index, doc in pending]
                for index, future in futures:
                    slots[index] = future.result()
        else:
            for index, document in pending:
                slots[index] = self.build_document(document)

        report = BuildReport(results=[slot for slot in slots if slot is not None])
        for result in report.results:
            if result.ok:
                LOGGER.info(result.describe())
            else:
                LOGGER.error(result.describe())
        return report

    def build_document(self, document: DocumentConfig) -> DocumentResult:
        started = time.perf_counter()
        log_state = BuildLogState(document=document.filename, start_time=datetime.now())
        warnings: list[BuildWarning] = log_state.warnings
        result = DocumentResult(filename=document.filename, warnings=warnings)
        LOGGER.info("Building %s", document.filename)
        try:
            for key in document.unknown_keys:
                warn(warnings, rule="unknown_config_key", reason=f"ignored key {key!r}")
            template_path = self.book.template_path(document)
            log_state.template_path = template_path if document.template is not None else None
            registry = self.template_cache.get(template_path)
            warnings.extend(registry.warnings)

            entries = resolve_chapters(self.chapters, document.include)
            log_state.chapters = [entry.path for entry in entries]
            compiled_chapters = []
            for entry in entries:
                chapter = compile_chapter(
                    entry,
                    registry,
                    document.offset_headings_by,
                    src_root=self.book.src_root,
                    hard_line_breaks=self.book.hard_line_breaks,
                )
                warnings.extend(chapter.warnings)
                compiled_chapters.append(chapter)

            prepend = [self._load_fragment(path, warnings) for path in document.prepend]
            append = [self._load_fragment(path, warnings) for path in document.append]
            log_state.fragments = list(document.prepend) + list(document.append)

            compiled = assemble_document(
                registry,
                compiled_chapters,
                prepend,
                append,
                template_path=template_path,
            )
            warnings.extend(compiled.warnings)
            log_state.style_count = len(compiled.registry)
            log_state.media_count = len(compiled.media)
            log_state.block_count = len(compiled.blocks)

            data, writer_warnings = render_document(compiled)
            warnings.extend(writer_warnings)
            result.output_path = write_package(data, self.book.output_path(document))
            log_state.output_path = result.output_path
        except DocxBuildError as exc:
            result.error = exc
        except Exception as exc:
            # an unexpected failure is still an internal defect of this document only
            LOGGER.exception("Unexpected failure while building %s", document.filename)
            result.error = AssemblyFailed(f"unexpected {type(exc).__name__}: {exc}")
        finally:
            result.elapsed_sec = time.perf_counter() - started
            log_state.elapsed_sec = result.elapsed_sec
            if result.error is not None:
                log_state.error = result.error.describe()
            for warning in warnings:
                LOGGER.warning("%s: %s", document.filename, warning.describe())
            if self.write_logs:
                result.log_path = self._write_log(log_state)
        return result

    def _load_fragment(self, fragment: str, warnings: list[BuildWarning]) -> Fragment:
        loaded = load_fragment(self.book.fragment_path(fragment), label=fragment)
        warnings.extend(loaded.warnings)
        return loaded

    def _write_log(self, log_state: BuildLogState) -> Path | None:
        try:
            return write_build_log(log_state, self.book.log_dir)
        except OSError as exc:
            LOGGER.warning("Could not write build log for %s: %s", log_state.document, exc)
            return None


def build_book(
    book: BookConfig,
    chapters: Sequence[ChapterManifestEntry],
    template_cache: TemplateCache | None = None,
) -> BuildReport:
    return BookBuilder(book, chapters, template_cache).build()
