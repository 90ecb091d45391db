"""mdBook backend entry point: render context JSON on stdin -> .docx files."""
from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any, Iterable, Mapping, Sequence

from .builder import BookBuilder, BuildReport
from .document_config import BookConfig, load_book_config
from .errors import ConfigError
from .log import get_logger
from .manifest import ChapterManifestEntry

LOGGER = get_logger(__name__)

DEFAULT_SRC_DIR = "src"


def flatten_chapters(items: Iterable[Any]) -> list[ChapterManifestEntry]:
    """Depth-first chapter list; a chapter precedes its sub-items."""
    entries: list[ChapterManifestEntry] = []

    def visit(nodes: Iterable[Any]) -> None:
        for node in nodes:
            # separators arrive as the bare string "Separator"
            if not isinstance(node, Mapping):
                continue
            chapter = node.get("Chapter")
            if not isinstance(chapter, Mapping):
                continue
            path = chapter.get("path")
            if path:
                entries.append(
                    ChapterManifestEntry(
                        path=str(path).replace("\\", "/"),
                        ordinal=len(entries),
                        content=chapter.get("content", "") or "",
                        name=chapter.get("name"),
                    )
                )
            visit(chapter.get("sub_items") or ())

    visit(items)
    return entries


def load_render_context(context: Mapping[str, Any]) -> tuple[BookConfig, list[ChapterManifestEntry]]:
    try:
        root = Path(context["root"])
        destination = Path(context["destination"])
    except KeyError as exc:
        raise ConfigError(f"render context is missing {exc.args[0]!r}") from exc
    book_settings = (context.get("config") or {}).get("book") or {}
    src_root = root / (book_settings.get("src") or DEFAULT_SRC_DIR)
    table = ((context.get("config") or {}).get("output") or {}).get("docx") or {}
    book = context.get("book") or {}
    # newer mdBook releases name the top-level list "items"
    sections = book.get("sections")
    if sections is None:
        sections = book.get("items") or []
    chapters = flatten_chapters(sections)
    return load_book_config(table, root=root, src_root=src_root, destination=destination), chapters


def run(context: Mapping[str, Any]) -> BuildReport:
    book, chapters = load_render_context(context)
    LOGGER.info(
        "Rendering %d document(s) from %d chapter(s) into %s",
        len(book.documents),
        len(chapters),
        book.destination,
    )
    return BookBuilder(book, chapters).build()


def main(argv: Sequence[str] | None = None) -> int:
    args = list(sys.argv[1:] if argv is None else argv)
    try:
        if args:
            raw = Path(args[0]).read_text(encoding="utf-8")
        else:
            raw = sys.stdin.read()
        context = json.loads(raw)
    except (OSError, ValueError) as exc:
        LOGGER.error("Could not read the mdBook render context: %s", exc)
        return 1
    try:
        report = run(context)
    except ConfigError as exc:
        LOGGER.error(exc.describe())
        return 1
    if not report.ok:
        LOGGER.error("%d of %d document(s) failed", len(report.failed), len(report.results))
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
