"""Typed body blocks shared by the Markdown compiler, fragment loader and assembler."""
from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Iterator

from lxml import etree

from .log import BuildWarning
from .style_registry import StyleRegistry, StyleRole


@dataclass
class InlineRun:
    text: str = ""
    bold: bool = False
    italic: bool = False
    strike: bool = False
    code: bool = False
    line_break: bool = False
    link: str | None = None
    # (chapter path, heading id); id None targets the chapter's first heading
    anchor: tuple[str, str | None] | None = None
    style_id: str | None = None


@dataclass
class Block:
    role: StyleRole | None = None
    style_id: str | None = None
    # Original markup for blocks read from a fragment package.
    source: etree._Element | None = None
    # Fragment relationship ids mapped to a media digest / external url.
    media_refs: dict[str, str] = field(default_factory=dict)
    link_refs: dict[str, str] = field(default_factory=dict)

    kind = "block"

    def text(self) -> str:
        if self.source is not None:
            return "".join(self.source.itertext())
        return ""


@dataclass
class Heading(Block):
    level: int = 1
    role_index: int = 0
    runs: list[InlineRun] = field(default_factory=list)
    anchor: str | None = None
    chapter: str | None = None

    kind = "heading"

    def text(self) -> str:
        if self.source is not None:
            return super().text()
        return _runs_text(self.runs)


@dataclass
class Paragraph(Block):
    runs: list[InlineRun] = field(default_factory=list)
    alignment: str | None = None

    kind = "paragraph"

    def text(self) -> str:
        if self.source is not None:
            return super().text()
        return _runs_text(self.runs)


@dataclass
class CodeBlock(Block):
    language: str | None = None
    lines: list[str] = field(default_factory=list)

    kind = "code_block"

    def text(self) -> str:
        return "\n".join(self.lines)


@dataclass
class ListItem(Block):
    children: list[Block] = field(default_factory=list)

    kind = "list_item"


@dataclass
class ListBlock(Block):
    ordered: bool = False
    start: int = 1
    depth: int = 0
    items: list[ListItem] = field(default_factory=list)

    kind = "list"


@dataclass
class Table(Block):
    rows: list[list[Paragraph]] = field(default_factory=list)
    alignments: list[str | None] = field(default_factory=list)
    header_rows: int = 0
    caption: Paragraph | None = None

    kind = "table"


@dataclass
class Image(Block):
    resource: str | None = None
    alt: str = ""
    width: int | None = None
    height: int | None = None

    kind = "image"


@dataclass
class ThematicBreak(Block):
    kind = "thematic_break"


@dataclass
class MediaResource:
    digest: str
    data: bytes
    filename: str

    @property
    def size(self) -> int:
        return len(self.data)


class MediaTable:
    """Binary payloads keyed by sha256 digest; identical bytes are stored once."""

    def __init__(self) -> None:
        self._resources: dict[str, MediaResource] = {}

    def add(self, data: bytes, filename: str) -> str:
        digest = hashlib.sha256(data).hexdigest()
        if digest not in self._resources:
            name = PurePosixPath(filename).name or f"image-{digest[:12]}"
            self._resources[digest] = MediaResource(digest=digest, data=data, filename=name)
        return digest

    def merge(self, other: MediaTable) -> None:
        for resource in other:
            self._resources.setdefault(resource.digest, resource)

    def get(self, digest: str) -> MediaResource | None:
        return self._resources.get(digest)

    def __contains__(self, digest: object) -> bool:
        return digest in self._resources

    def __iter__(self) -> Iterator[MediaResource]:
        return iter(self._resources.values())

    def __len__(self) -> int:
        return len(self._resources)


@dataclass
class CompileResult:
    chapter: str
    blocks: list[Block] = field(default_factory=list)
    media: MediaTable = field(default_factory=MediaTable)
    warnings: list[BuildWarning] = field(default_factory=list)


@dataclass
class Fragment:
    path: str
    blocks: list[Block]
    registry: StyleRegistry
    media: MediaTable = field(default_factory=MediaTable)
    warnings: list[BuildWarning] = field(default_factory=list)


@dataclass
class CompiledDocument:
    registry: StyleRegistry
    blocks: list[Block]
    media: MediaTable
    template_path: str
    warnings: list[BuildWarning] = field(default_factory=list)


def _runs_text(runs: list[InlineRun]) -> str:
    return "".join("\n" if run.line_break else run.text for run in runs)
