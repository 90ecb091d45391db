"""Markdown chapter -> style-bound body blocks.

Parsing is delegated to mistune (AST renderer with the table, strikethrough,
url and footnotes plugins, plus implicit header references); this module
only maps tokens onto blocks and binds each block to a style from the
template registry. A leading YAML metadata block (read with PyYAML) or a
`%` title block becomes title paragraphs at the top of the chapter.
"""
from __future__ import annotations

import posixpath
import re
from dataclasses import replace
from pathlib import Path
from typing import Any, Iterator
from urllib.parse import unquote, urlsplit

import mistune
import yaml
from docx.image.exceptions import (
    InvalidImageStreamError,
    UnexpectedEndOfFileError,
    UnrecognizedImageError,
)
from docx.image.image import Image as DocxImage
from mistune.util import unikey

from . import config
from .blocks import (
    Block,
    CodeBlock,
    CompileResult,
    Heading,
    Image,
    InlineRun,
    ListBlock,
    ListItem,
    Paragraph,
    Table,
    ThematicBreak,
)
from .log import get_logger, warn
from .manifest import ChapterManifestEntry
from .style_registry import HEADING_ROLES, StyleKind, StyleRegistry, StyleRole, role_index

LOGGER = get_logger(__name__)

PLUGINS = ["table", "strikethrough", "url", "footnotes"]
MAX_LIST_DEPTH = 8
# url of a reference definition added for the n-th heading of a chapter
HEADING_REF_PREFIX = "heading-ref:"
TITLE_FIELDS = (
    ("title", StyleRole.TITLE),
    ("subtitle", StyleRole.SUBTITLE),
    ("author", StyleRole.AUTHOR),
    ("date", StyleRole.DATE),
)

_FRONT_MATTER_RE = re.compile(
    r"\A---[ \t]*\r?\n(?P<body>.*?)\r?\n(?:---|\.\.\.)[ \t]*(?:\r?\n|\Z)", re.DOTALL
)
_TITLE_BLOCK_KEYS = ("title", "author", "date")
_HEADING_ID_RE = re.compile(r"\s*\{#([\w-]+)[^}]*\}\s*$")
_WHITESPACE_RUN_RE = re.compile(r"\s+")
_CAPTION_RE = re.compile(r"^(?:[Tt]able)?:[ \t]*")
_CONTAINER_TYPES = frozenset(("block_quote", "list", "list_item"))


def split_front_matter(text: str) -> tuple[str | None, str]:
    """Leading YAML block (``---`` closed by ``---`` or ``...``) and the rest."""
    match = _FRONT_MATTER_RE.match(text)
    if match is None:
        return None, text
    return match.group("body"), text[match.end():]


def split_title_block(text: str) -> tuple[dict[str, Any], str]:
    """Pandoc ``%`` title block: title, authors (``;`` separated) and date.

    Indented lines continue the preceding field; an empty field is skipped.
    Returns ``({}, text)`` when the chapter does not open with one.
    """
    lines = text.splitlines(keepends=True)
    fields: list[str] = []
    index = 0
    while index < len(lines):
        line = lines[index]
        if line.startswith("%"):
            if len(fields) == len(_TITLE_BLOCK_KEYS):
                break
            fields.append(line[1:].strip())
        elif fields and line[:1] in (" ", "\t") and line.strip():
            fields[-1] = f"{fields[-1]} {line.strip()}".strip()
        else:
            break
        index += 1
    if not fields:
        return {}, text
    metadata: dict[str, Any] = {}
    for key, value in zip(_TITLE_BLOCK_KEYS, fields):
        if not value:
            continue
        if key == "author":
            metadata[key] = [part.strip() for part in value.split(";") if part.strip()]
        else:
            metadata[key] = value
    return metadata, "".join(lines[index:])


def slugify(text: str) -> str:
    collapsed = _WHITESPACE_RUN_RE.sub(" ", text.strip().lower())
    out: list[str] = []
    for ch in collapsed:
        if ch.isalnum() or ch in "-_":
            out.append(ch)
        elif ch == " ":
            out.append("-")
    return "".join(out)


def unique_slug(slug: str, used: dict[str, int]) -> str:
    if slug not in used:
        used[slug] = 0
        return slug
    while True:
        used[slug] += 1
        candidate = f"{slug}-{used[slug]}"
        if candidate not in used:
            used[candidate] = 0
            return candidate


def iter_headings(tokens: list[dict[str, Any]]) -> Iterator[dict[str, Any]]:
    """Heading tokens in document order, looking inside quotes and lists only."""
    for tok in tokens:
        tp = tok.get("type")
        if tp == "heading":
            yield tok
        elif tp in _CONTAINER_TYPES:
            yield from iter_headings(tok.get("children", []))


def implicit_header_references(md: mistune.Markdown) -> None:
    """mistune plugin: ``[Heading text]`` links to that heading.

    Runs after block parsing so explicit reference definitions, which
    mistune records first, keep precedence over heading labels.
    """

    def add_heading_refs(md: mistune.Markdown, state: Any) -> None:
        ref_links = state.env.setdefault("ref_links", {})
        for index, tok in enumerate(iter_headings(state.tokens)):
            label = _HEADING_ID_RE.sub("", tok.get("text", "") or "").strip()
            if not label:
                continue
            key = unikey(label)
            if key not in ref_links:
                ref_links[key] = {"url": f"{HEADING_REF_PREFIX}{index}", "label": label}

    md.before_render_hooks.append(add_heading_refs)


def create_parser() -> mistune.Markdown:
    return mistune.create_markdown(renderer="ast", plugins=[*PLUGINS, implicit_header_references])


def compile_chapter(
    entry: ChapterManifestEntry,
    registry: StyleRegistry,
    offset_headings_by: int = 0,
    *,
    src_root: Path | None = None,
    hard_line_breaks: bool = config.DEFAULT_HARD_LINE_BREAKS,
) -> CompileResult:
    compiler = MarkdownCompiler(
        entry,
        registry,
        offset_headings_by,
        src_root=src_root,
        hard_line_breaks=hard_line_breaks,
    )
    return compiler.compile()


class _PendingImage:
    def __init__(self, token: dict[str, Any]) -> None:
        attrs = token.get("attrs") or {}
        self.url: str = attrs.get("url", "") or ""
        self.alt: str = _flatten_text(token.get("children", []))


class MarkdownCompiler:
    def __init__(
        self,
        entry: ChapterManifestEntry,
        registry: StyleRegistry,
        offset_headings_by: int = 0,
        *,
        src_root: Path | None = None,
        hard_line_breaks: bool = config.DEFAULT_HARD_LINE_BREAKS,
    ) -> None:
        self.entry = entry
        self.registry = registry
        self.offset = offset_headings_by
        self.src_root = src_root
        self.hard_line_breaks = hard_line_breaks
        self.chapter = entry.posix_path
        self.result = CompileResult(chapter=self.chapter)
        self._slugs: dict[str, int] = {}
        self._heading_anchors: list[str | None] = []
        self._anchor_by_token: dict[int, str | None] = {}
        self._verbatim_style = registry.bound_style_id(StyleRole.VERBATIM_CHAR, StyleKind.CHARACTER)
        self._hyperlink_style = registry.bound_style_id(StyleRole.HYPERLINK, StyleKind.CHARACTER)

    def compile(self) -> CompileResult:
        metadata, body = self._metadata(self.entry.content)
        tokens = create_parser()(body)
        self._assign_anchors(tokens)
        blocks = self._title_blocks(metadata)
        blocks.extend(self._blocks(tokens))
        self.result.blocks = blocks
        LOGGER.debug(
            "Compiled %s: %d blocks, %d images, %d warnings",
            self.chapter,
            len(self.result.blocks),
            len(self.result.media),
            len(self.result.warnings),
        )
        return self.result

    # -- metadata -------------------------------------------------------------
    def _metadata(self, text: str) -> tuple[dict[str, Any], str]:
        raw, body = split_front_matter(text)
        if raw is None:
            return split_title_block(text)
        try:
            data = yaml.safe_load(raw)
        except yaml.YAMLError as exc:
            warn(self.result.warnings, rule="invalid_metadata", reason=str(exc), chapter=self.chapter)
            return {}, body
        if data is None:
            return {}, body
        if not isinstance(data, dict):
            warn(
                self.result.warnings,
                rule="invalid_metadata",
                reason=f"metadata block is a {type(data).__name__}, not a mapping",
                chapter=self.chapter,
            )
            return {}, body
        return data, body

    def _title_blocks(self, metadata: dict[str, Any]) -> list[Block]:
        blocks: list[Block] = []
        for key, role in TITLE_FIELDS:
            value = metadata.get(key)
            for item in value if isinstance(value, list) else [value]:
                text = _metadata_text(item)
                if not text:
                    continue
                runs: list[InlineRun] = []
                for tok in create_parser()(text):
                    if tok.get("type") in ("paragraph", "block_text"):
                        runs.extend(self._flat_runs(tok.get("children", []), f"image in {key}"))
                if any(run.text.strip() for run in runs):
                    blocks.append(Paragraph(role=role, style_id=self._style(role), runs=runs))
        return blocks

    def _assign_anchors(self, tokens: list[dict[str, Any]]) -> None:
        for tok in iter_headings(tokens):
            text = _flatten_text(tok.get("children", []))
            match = _HEADING_ID_RE.search(text)
            slug = match.group(1) if match else slugify(text)
            anchor = unique_slug(slug, self._slugs) if slug else None
            self._anchor_by_token[id(tok)] = anchor
            self._heading_anchors.append(anchor)

    # -- blocks ---------------------------------------------------------------
    def _blocks(self, tokens: list[dict[str, Any]], quote: bool = False, depth: int = 0) -> list[Block]:
        captions = _pair_captions(tokens)
        consumed = set(captions.values())
        blocks: list[Block] = []
        for position, tok in enumerate(tokens):
            if position in consumed:
                continue
            if position in captions:
                blocks.append(self._table(tok, caption=tokens[captions[position]]))
                continue
            blocks.extend(self._block(tok, quote=quote, depth=depth, index=len(blocks)))
        return blocks

    def _block(self, tok: dict[str, Any], quote: bool, depth: int, index: int) -> list[Block]:
        tp = tok.get("type", "")
        if tp == "blank_line":
            return []
        if tp == "heading":
            return [self._heading(tok)]
        if tp in ("paragraph", "block_text"):
            role = StyleRole.BLOCK_QUOTE if quote else StyleRole.NORMAL
            return self._paragraph_blocks(tok.get("children", []), role)
        if tp == "block_code":
            return [self._code_block(tok)]
        if tp == "list":
            return [self._list_block(tok, depth)]
        if tp == "block_quote":
            return self._blocks(tok.get("children", []), quote=True, depth=depth)
        if tp == "table":
            return [self._table(tok)]
        if tp == "thematic_break":
            return [ThematicBreak(role=StyleRole.NORMAL, style_id=self._style(StyleRole.NORMAL))]
        if tp == "block_html":
            self._unsupported("raw HTML block", index)
            return []
        if tp == "footnotes":
            self._unsupported("footnote definitions", index)
            return []
        self._unsupported(f"block construct {tp!r}", index)
        return []

    def _heading(self, tok: dict[str, Any]) -> Heading:
        level = int((tok.get("attrs") or {}).get("level", 1))
        idx = role_index(level, self.offset)
        role = HEADING_ROLES[idx]
        runs = self._flat_runs(tok.get("children", []), "heading image")
        _strip_heading_id(runs)
        return Heading(
            role=role,
            style_id=self._style(role),
            level=level,
            role_index=idx,
            runs=runs,
            anchor=self._anchor_by_token.get(id(tok)),
            chapter=self.chapter,
        )

    def _paragraph_blocks(self, children: list[dict[str, Any]], role: StyleRole) -> list[Block]:
        items: list[InlineRun | _PendingImage] = []
        self._inline(children, InlineRun(), items)
        blocks: list[Block] = []
        current: list[InlineRun] = []
        for item in items:
            if isinstance(item, _PendingImage):
                self._flush_paragraph(current, role, blocks)
                current = []
                blocks.append(self._image_block(item))
            else:
                current.append(item)
        self._flush_paragraph(current, role, blocks)
        return blocks

    def _flush_paragraph(self, runs: list[InlineRun], role: StyleRole, blocks: list[Block]) -> None:
        while runs and runs[0].line_break:
            runs.pop(0)
        while runs and runs[-1].line_break:
            runs.pop()
        if not any(run.text.strip() for run in runs):
            return
        blocks.append(Paragraph(role=role, style_id=self._style(role), runs=list(runs)))

    def _code_block(self, tok: dict[str, Any]) -> CodeBlock:
        raw = tok.get("raw", "") or ""
        info = ((tok.get("attrs") or {}).get("info") or "").strip()
        language = re.split(r"[\s,]", info, maxsplit=1)[0] if info else None
        lines = raw.rstrip("\n").split("\n")
        return CodeBlock(
            role=StyleRole.CODE_BLOCK,
            style_id=self._style(StyleRole.CODE_BLOCK),
            language=language or None,
            lines=lines,
        )

    def _list_block(self, tok: dict[str, Any], depth: int) -> ListBlock:
        attrs = tok.get("attrs") or {}
        ordered = bool(attrs.get("ordered", False))
        start = int(attrs.get("start", 1) or 1)
        depth = min(depth, MAX_LIST_DEPTH)
        role = StyleRole.LIST_PARAGRAPH
        items: list[ListItem] = []
        for item in tok.get("children", []):
            if item.get("type") != "list_item":
                continue
            children: list[Block] = []
            for child in item.get("children", []):
                tp = child.get("type", "")
                # mistune uses block_text for tight lists, paragraph for loose ones
                if tp in ("block_text", "paragraph"):
                    children.extend(self._paragraph_blocks(child.get("children", []), role))
                elif tp == "list":
                    children.append(self._list_block(child, depth + 1))
                else:
                    children.extend(self._block(child, quote=False, depth=depth + 1, index=len(children)))
            items.append(ListItem(role=role, style_id=self._style(role), children=children))
        return ListBlock(
            role=role,
            style_id=self._style(role),
            ordered=ordered,
            start=start,
            depth=depth,
            items=items,
        )

    def _table(self, tok: dict[str, Any], caption: dict[str, Any] | None = None) -> Table:
        rows: list[list[Paragraph]] = []
        alignments: list[str | None] = []
        header_rows = 0
        for child in tok.get("children", []):
            ctype = child.get("type", "")
            if ctype == "table_head":
                cells = [cell for cell in child.get("children", []) if cell.get("type") == "table_cell"]
                alignments = [(cell.get("attrs") or {}).get("align") for cell in cells]
                rows.append([self._table_cell(cell) for cell in cells])
                header_rows = 1
            elif ctype == "table_body":
                for row in child.get("children", []):
                    if row.get("type") == "table_row":
                        rows.append([self._table_cell(cell) for cell in row.get("children", [])])
        table_style = self.registry.bound_style_id(StyleRole.TABLE, StyleKind.TABLE)
        return Table(
            role=StyleRole.TABLE,
            style_id=table_style,
            rows=rows,
            alignments=alignments,
            header_rows=header_rows,
            caption=self._caption(caption) if caption is not None else None,
        )

    def _caption(self, tok: dict[str, Any]) -> Paragraph | None:
        children = list(tok.get("children", []))
        first = children[0]
        children[0] = dict(first, raw=_CAPTION_RE.sub("", first.get("raw", ""), count=1))
        role = StyleRole.TABLE_CAPTION
        runs = self._flat_runs(children, "image in table caption")
        while runs and runs[0].line_break:
            runs.pop(0)
        if not any(run.text.strip() for run in runs):
            return None
        return Paragraph(role=role, style_id=self._style(role), runs=runs)

    def _table_cell(self, cell: dict[str, Any]) -> Paragraph:
        runs = self._flat_runs(cell.get("children", []), "image in table cell")
        align = (cell.get("attrs") or {}).get("align")
        return Paragraph(
            role=StyleRole.NORMAL,
            style_id=self._style(StyleRole.NORMAL),
            runs=runs,
            alignment=align,
        )

    def _image_block(self, pending: _PendingImage) -> Block:
        path = self._resolve_image(pending.url)
        data: bytes | None = None
        reason = f"image not found: {pending.url}"
        if path is not None:
            try:
                data = path.read_bytes()
            except OSError as exc:
                reason = f"image unreadable: {pending.url}: {exc}"
        if data is not None:
            try:
                image = DocxImage.from_blob(data)
            except (UnrecognizedImageError, InvalidImageStreamError, UnexpectedEndOfFileError):
                reason = f"image format not recognized: {pending.url}"
            else:
                digest = self.result.media.add(data, path.name)
                return Image(
                    role=StyleRole.FIGURE,
                    style_id=self._style(StyleRole.FIGURE),
                    resource=digest,
                    alt=pending.alt,
                    width=int(image.width),
                    height=int(image.height),
                )
        warn(self.result.warnings, rule="image_unavailable", reason=reason, chapter=self.chapter)
        placeholder = InlineRun(text=pending.alt or pending.url, italic=True)
        return Paragraph(role=StyleRole.NORMAL, style_id=self._style(StyleRole.NORMAL), runs=[placeholder])

    def _resolve_image(self, url: str) -> Path | None:
        if not url:
            return None
        parsed = urlsplit(url)
        # remote images are never fetched
        if parsed.scheme or parsed.netloc:
            return None
        relative = unquote(parsed.path)
        if not relative:
            return None
        candidates: list[Path] = []
        if self.src_root is not None:
            if relative.startswith("/"):
                candidates.append(self.src_root / relative.lstrip("/"))
            else:
                chapter_dir = posixpath.dirname(self.chapter)
                candidates.append(self.src_root / chapter_dir / relative)
                candidates.append(self.src_root / relative)
        else:
            candidates.append(Path(relative))
        for candidate in candidates:
            if candidate.is_file():
                return candidate
        return None

    # -- inline ---------------------------------------------------------------
    def _inline(self, tokens: list[dict[str, Any]], base: InlineRun, out: list) -> None:
        for tok in tokens:
            tp = tok.get("type", "")
            children = tok.get("children", [])
            if tp == "text":
                out.append(replace(base, text=tok.get("raw", "")))
            elif tp == "softbreak":
                if self.hard_line_breaks:
                    out.append(replace(base, text="", line_break=True))
                else:
                    out.append(replace(base, text=" "))
            elif tp == "linebreak":
                out.append(replace(base, text="", line_break=True))
            elif tp == "emphasis":
                self._inline(children, replace(base, italic=True), out)
            elif tp == "strong":
                self._inline(children, replace(base, bold=True), out)
            elif tp == "strikethrough":
                self._inline(children, replace(base, strike=True), out)
            elif tp == "codespan":
                style_id = base.style_id if base.style_id else self._verbatim_style
                out.append(replace(base, text=tok.get("raw", ""), code=True, style_id=style_id))
            elif tp == "link":
                url = (tok.get("attrs") or {}).get("url", "") or ""
                self._inline(children, self._link_base(base, url), out)
            elif tp == "image":
                out.append(_PendingImage(tok))
            elif tp == "inline_html":
                self._unsupported("inline HTML")
            elif tp == "footnote_ref":
                self._unsupported("footnote reference")
            else:
                self._unsupported(f"inline construct {tp!r}")
                if children:
                    self._inline(children, base, out)

    def _link_base(self, base: InlineRun, url: str) -> InlineRun:
        external, anchor = self._link_target(url)
        if external is None and anchor is None:
            return base
        return replace(base, link=external, anchor=anchor, style_id=self._hyperlink_style)

    def _link_target(self, url: str) -> tuple[str | None, tuple[str, str | None] | None]:
        if not url:
            return None, None
        suffix = url[len(HEADING_REF_PREFIX):] if url.startswith(HEADING_REF_PREFIX) else ""
        if suffix.isdigit() and int(suffix) < len(self._heading_anchors):
            anchor = self._heading_anchors[int(suffix)]
            return (None, (self.chapter, anchor)) if anchor else (None, None)
        if url.startswith("#"):
            return None, (self.chapter, unquote(url[1:]) or None)
        parsed = urlsplit(url)
        if parsed.scheme or parsed.netloc:
            return url, None
        path = unquote(parsed.path)
        if path.endswith(".md"):
            if path.startswith("/"):
                target = posixpath.normpath(path.lstrip("/"))
            else:
                target = posixpath.normpath(posixpath.join(posixpath.dirname(self.chapter), path))
            return None, (target, unquote(parsed.fragment) or None)
        return url, None

    def _flat_runs(self, children: list[dict[str, Any]], image_context: str) -> list[InlineRun]:
        items: list[InlineRun | _PendingImage] = []
        self._inline(children, InlineRun(), items)
        runs: list[InlineRun] = []
        for item in items:
            if isinstance(item, _PendingImage):
                self._unsupported(image_context)
                if item.alt:
                    runs.append(InlineRun(text=item.alt, italic=True))
            else:
                runs.append(item)
        return runs

    # -- helpers --------------------------------------------------------------
    def _style(self, role: StyleRole) -> str | None:
        return self.registry.style_id_for(role)

    def _unsupported(self, what: str, index: int | None = None) -> None:
        warn(
            self.result.warnings,
            rule="unsupported_construct",
            reason=f"{what} dropped",
            chapter=self.chapter,
            block_index=index,
        )


def _pair_captions(tokens: list[dict[str, Any]]) -> dict[int, int]:
    """Table position -> position of its ``Table:`` caption paragraph.

    The caption may sit directly after or directly before the table; blank
    lines between them are ignored and a paragraph captions one table only.
    """
    pairs: dict[int, int] = {}
    used: set[int] = set()
    for position, tok in enumerate(tokens):
        if tok.get("type") != "table":
            continue
        for step in (1, -1):
            neighbour = _neighbour(tokens, position, step)
            if neighbour is not None and neighbour not in used and _is_caption(tokens[neighbour]):
                pairs[position] = neighbour
                used.add(neighbour)
                break
    return pairs


def _neighbour(tokens: list[dict[str, Any]], position: int, step: int) -> int | None:
    index = position + step
    while 0 <= index < len(tokens) and tokens[index].get("type") == "blank_line":
        index += step
    return index if 0 <= index < len(tokens) else None


def _is_caption(tok: dict[str, Any]) -> bool:
    if tok.get("type") != "paragraph":
        return False
    children = tok.get("children") or []
    if not children or children[0].get("type") != "text":
        return False
    return _CAPTION_RE.match(children[0].get("raw", "")) is not None


def _strip_heading_id(runs: list[InlineRun]) -> None:
    if not runs:
        return
    last = runs[-1]
    match = _HEADING_ID_RE.search(last.text)
    if not match:
        return
    last.text = last.text[: match.start()]
    if not last.text:
        runs.pop()


def _flatten_text(tokens: Any) -> str:
    if isinstance(tokens, str):
        return tokens
    if isinstance(tokens, dict):
        children = tokens.get("children", tokens.get("raw", ""))
        return _flatten_text(children)
    if isinstance(tokens, list):
        return "".join(_flatten_text(tok) for tok in tokens)
    return ""


def _metadata_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, dict):
        return _metadata_text(value.get("name") or value.get("text"))
    return str(value).strip()
