from __future__ import annotations

import re
import threading
from concurrent.futures import Future
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Iterable, Iterator, Mapping
from zipfile import BadZipFile, ZipFile

from lxml import etree

from . import config
from .errors import TemplateCorrupt, TemplateIncomplete
from .log import BuildWarning, get_logger, warn

LOGGER = get_logger(__name__)

W_NS = "http://schemas.openxmlformats.org/wordprocessingml/2006/main"
NS = {"w": W_NS}

CONTENT_TYPES_PART = "[Content_Types].xml"
STYLES_PART = "word/styles.xml"
NUMBERING_PART = "word/numbering.xml"

_HEADING_NAME_PATTERN = re.compile(r"^heading\s*([1-9])$")
_WHITESPACE_PATTERN = re.compile(r"\s+")


class StyleKind(str, Enum):
    PARAGRAPH = "paragraph"
    CHARACTER = "character"
    TABLE = "table"
    NUMBERING = "numbering"


class StyleRole(str, Enum):
    TITLE = "title"
    HEADING_1 = "heading_1"
    HEADING_2 = "heading_2"
    HEADING_3 = "heading_3"
    HEADING_4 = "heading_4"
    HEADING_5 = "heading_5"
    HEADING_6 = "heading_6"
    HEADING_7 = "heading_7"
    HEADING_8 = "heading_8"
    HEADING_9 = "heading_9"
    NORMAL = "normal"
    CODE_BLOCK = "code_block"
    VERBATIM_CHAR = "verbatim_char"
    TABLE = "table"
    LIST_PARAGRAPH = "list_paragraph"
    HYPERLINK = "hyperlink"
    BLOCK_QUOTE = "block_quote"
    FIGURE = "figure"
    TABLE_CAPTION = "table_caption"
    SUBTITLE = "subtitle"
    AUTHOR = "author"
    DATE = "date"


# Role index 0 is Title, index k is Heading k.
HEADING_ROLES: tuple[StyleRole, ...] = (
    StyleRole.TITLE,
    StyleRole.HEADING_1,
    StyleRole.HEADING_2,
    StyleRole.HEADING_3,
    StyleRole.HEADING_4,
    StyleRole.HEADING_5,
    StyleRole.HEADING_6,
    StyleRole.HEADING_7,
    StyleRole.HEADING_8,
    StyleRole.HEADING_9,
)

# Accepted display names per role, tried in priority order.
ROLE_NAME_TABLE: dict[StyleRole, tuple[StyleKind, tuple[str, ...]]] = {
    StyleRole.NORMAL: (StyleKind.PARAGRAPH, ("Normal",)),
    StyleRole.TITLE: (StyleKind.PARAGRAPH, ("Title",)),
    **{
        role: (StyleKind.PARAGRAPH, (f"Heading {index}",))
        for index, role in enumerate(HEADING_ROLES)
        if index > 0
    },
    StyleRole.CODE_BLOCK: (
        StyleKind.PARAGRAPH,
        ("Source Code", "Code Block", "Code", "HTML Preformatted", "macro", "Macro Text"),
    ),
    StyleRole.VERBATIM_CHAR: (
        StyleKind.CHARACTER,
        ("Verbatim Char", "Source Code Char", "HTML Code", "Macro Text Char"),
    ),
    StyleRole.TABLE: (StyleKind.TABLE, ("Table Grid", "Table")),
    StyleRole.LIST_PARAGRAPH: (StyleKind.PARAGRAPH, ("List Paragraph", "Compact")),
    StyleRole.HYPERLINK: (StyleKind.CHARACTER, ("Hyperlink",)),
    StyleRole.BLOCK_QUOTE: (StyleKind.PARAGRAPH, ("Block Text", "Quote", "Intense Quote")),
    StyleRole.FIGURE: (StyleKind.PARAGRAPH, ("Figure", "Captioned Figure")),
    StyleRole.TABLE_CAPTION: (StyleKind.PARAGRAPH, ("Table Caption", "Caption")),
    StyleRole.SUBTITLE: (StyleKind.PARAGRAPH, ("Subtitle",)),
    StyleRole.AUTHOR: (StyleKind.PARAGRAPH, ("Author",)),
    StyleRole.DATE: (StyleKind.PARAGRAPH, ("Date",)),
}


def role_index(markdown_level: int, offset: int) -> int:
    return max(0, min(markdown_level - 1 + offset, config.MAX_HEADING_ROLE))


def heading_role(markdown_level: int, offset: int) -> StyleRole:
    return HEADING_ROLES[role_index(markdown_level, offset)]


@dataclass(frozen=True)
class StyleDefinition:
    style_id: str
    kind: StyleKind
    name: str | None
    body: bytes
    based_on: str | None = None
    linked: str | None = None
    next_style: str | None = None
    is_default: bool = False

    def element(self) -> etree._Element:
        return etree.fromstring(self.body)


@dataclass(frozen=True)
class NumberingDefinition:
    """An `w:abstractNum` (key = abstractNumId) or `w:num` (key = numId)."""

    key: str
    body: bytes
    abstract_ref: str | None = None

    def element(self) -> etree._Element:
        return etree.fromstring(self.body)


@dataclass(frozen=True)
class StyleRegistry:
    source: Path | None
    styles: Mapping[str, StyleDefinition]
    roles: Mapping[StyleRole, str] = field(default_factory=dict)
    fallback_roles: frozenset[StyleRole] = frozenset()
    abstract_nums: Mapping[str, NumberingDefinition] = field(default_factory=dict)
    nums: Mapping[str, NumberingDefinition] = field(default_factory=dict)
    warnings: tuple[BuildWarning, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "styles", MappingProxyType(dict(self.styles)))
        object.__setattr__(self, "roles", MappingProxyType(dict(self.roles)))
        object.__setattr__(self, "abstract_nums", MappingProxyType(dict(self.abstract_nums)))
        object.__setattr__(self, "nums", MappingProxyType(dict(self.nums)))

    def __contains__(self, style_id: object) -> bool:
        return style_id in self.styles

    def __iter__(self) -> Iterator[StyleDefinition]:
        return iter(self.styles.values())

    def __len__(self) -> int:
        return len(self.styles)

    def get(self, style_id: str | None) -> StyleDefinition | None:
        if style_id is None:
            return None
        return self.styles.get(style_id)

    def style_id_for(self, role: StyleRole) -> str | None:
        return self.roles.get(role)

    def definition_for(self, role: StyleRole) -> StyleDefinition | None:
        return self.get(self.roles.get(role))

    def bound_style_id(self, role: StyleRole, kind: StyleKind) -> str | None:
        """Style id for `role` only when the bound definition has the expected kind."""
        definition = self.definition_for(role)
        if definition is None or definition.kind != kind:
            return None
        return definition.style_id

    def is_fallback(self, role: StyleRole) -> bool:
        return role in self.fallback_roles

    def role_of(self, style_id: str | None) -> StyleRole | None:
        if style_id is None:
            return None
        for role, bound in self.roles.items():
            if bound == style_id and role not in self.fallback_roles:
                return role
        return None

    def by_name(self, name: str) -> StyleDefinition | None:
        wanted = _normalize_name(name)
        for definition in self.styles.values():
            if definition.name is not None and _normalize_name(definition.name) == wanted:
                return definition
        return None


def build_style_registry(
    template_path: Path,
    required_roles: Iterable[str] | None = None,
) -> StyleRegistry:
    """Extract style and numbering definitions from a template package."""
    path = Path(template_path)
    _ensure_readable_file(path)
    styles_bytes, numbering_bytes = _read_docx_parts(path)
    required = list(config.DEFAULT_REQUIRED_ROLES if required_roles is None else required_roles)

    styles = _parse_styles(styles_bytes, path) if styles_bytes is not None else {}
    abstract_nums, nums = _parse_numbering(numbering_bytes, path) if numbering_bytes is not None else ({}, {})

    warnings: list[BuildWarning] = []
    roles, fallback_roles = _match_roles(styles, warnings)
    missing = [role for role in required if StyleRole(role) not in roles]
    if missing:
        raise TemplateIncomplete(
            f"template has no style for required roles {', '.join(missing)}: {path}",
            path=path,
        )
    LOGGER.debug(
        "Loaded %d styles (%d numbering instances) from %s", len(styles), len(nums), path.name
    )
    return StyleRegistry(
        source=path,
        styles=styles,
        roles=roles,
        fallback_roles=frozenset(fallback_roles),
        abstract_nums=abstract_nums,
        nums=nums,
        warnings=tuple(warnings),
    )


class TemplateCache:
    """Single-assignment cache of registries keyed by resolved template path.

    The first caller for a path builds the registry; concurrent callers for the
    same path wait on its future, callers for other paths do not wait at all.
    Template errors are cached like results.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[Path, Future] = {}

    def get(self, template_path: Path) -> StyleRegistry:
        key = Path(template_path).resolve()
        with self._lock:
            future = self._entries.get(key)
            owner = future is None
            if owner:
                future = Future()
                self._entries[key] = future
        if owner:
            self._fill(key, future)
        return future.result()

    def _fill(self, key: Path, future: Future) -> None:
        try:
            future.set_result(build_style_registry(key))
        except (TemplateCorrupt, TemplateIncomplete) as exc:
            future.set_exception(exc)
        except Exception as exc:
            # unexpected failures are not cached
            with self._lock:
                del self._entries[key]
            future.set_exception(exc)

    def __len__(self) -> int:
        return len(self._entries)


def _ensure_readable_file(path: Path) -> None:
    if not path.exists():
        raise TemplateCorrupt(f"template not found: {path}", path=path)
    if not path.is_file():
        raise TemplateCorrupt(f"template path is not a file: {path}", path=path)
    try:
        with path.open("rb"):
            pass
    except PermissionError as exc:
        raise TemplateCorrupt(f"template is not readable: {path}", path=path) from exc


def _read_docx_parts(template_path: Path) -> tuple[bytes | None, bytes | None]:
    try:
        with ZipFile(template_path) as archive:
            names = set(archive.namelist())
            if CONTENT_TYPES_PART not in names:
                raise TemplateCorrupt(
                    f"not an OOXML package (no {CONTENT_TYPES_PART}): {template_path}",
                    path=template_path,
                )
            styles_bytes = archive.read(STYLES_PART) if STYLES_PART in names else None
            numbering_bytes = archive.read(NUMBERING_PART) if NUMBERING_PART in names else None
    except BadZipFile as exc:
        raise TemplateCorrupt(f"invalid docx file: {template_path}", path=template_path) from exc
    except OSError as exc:
        raise TemplateCorrupt(f"cannot read docx file: {template_path}: {exc}", path=template_path) from exc
    return styles_bytes, numbering_bytes


def _parse_xml(data: bytes, part: str, path: Path) -> etree._Element:
    try:
        return etree.fromstring(data)
    except etree.XMLSyntaxError as exc:
        raise TemplateCorrupt(f"malformed {part} in {path}: {exc}", path=path) from exc


def _parse_styles(styles_bytes: bytes, path: Path) -> dict[str, StyleDefinition]:
    root = _parse_xml(styles_bytes, STYLES_PART, path)
    styles: dict[str, StyleDefinition] = {}
    for style in root.findall("w:style", namespaces=NS):
        style_id = style.get(_attr_name("styleId"))
        if not style_id:
            continue
        try:
            kind = StyleKind(style.get(_attr_name("type"), "paragraph"))
        except ValueError:
            continue
        styles[style_id] = StyleDefinition(
            style_id=style_id,
            kind=kind,
            name=_child_val(style, "name"),
            body=etree.tostring(style),
            based_on=_child_val(style, "basedOn"),
            linked=_child_val(style, "link"),
            next_style=_child_val(style, "next"),
            is_default=_parse_on_off(style.get(_attr_name("default"))),
        )
    return styles


def _parse_numbering(
    numbering_bytes: bytes, path: Path
) -> tuple[dict[str, NumberingDefinition], dict[str, NumberingDefinition]]:
    root = _parse_xml(numbering_bytes, NUMBERING_PART, path)
    abstract_nums: dict[str, NumberingDefinition] = {}
    nums: dict[str, NumberingDefinition] = {}
    for abstract in root.findall("w:abstractNum", namespaces=NS):
        key = abstract.get(_attr_name("abstractNumId"))
        if key is None:
            continue
        abstract_nums[key] = NumberingDefinition(key=key, body=etree.tostring(abstract))
    for num in root.findall("w:num", namespaces=NS):
        key = num.get(_attr_name("numId"))
        if key is None:
            continue
        nums[key] = NumberingDefinition(
            key=key,
            body=etree.tostring(num),
            abstract_ref=_child_val(num, "abstractNumId"),
        )
    return abstract_nums, nums


def _match_roles(
    styles: Mapping[str, StyleDefinition],
    warnings: list[BuildWarning],
) -> tuple[dict[StyleRole, str], set[StyleRole]]:
    roles: dict[StyleRole, str] = {}
    fallback_roles: set[StyleRole] = set()
    by_name: dict[tuple[StyleKind, str], StyleDefinition] = {}
    for definition in styles.values():
        if definition.name is None:
            continue
        by_name.setdefault((definition.kind, _normalize_name(definition.name)), definition)

    for role, (kind, names) in ROLE_NAME_TABLE.items():
        for name in names:
            found = by_name.get((kind, _normalize_name(name)))
            if found is not None:
                roles[role] = found.style_id
                break
    if StyleRole.NORMAL not in roles:
        default = _default_paragraph_style(styles)
        if default is not None:
            roles[StyleRole.NORMAL] = default.style_id

    normal_id = roles.get(StyleRole.NORMAL)
    for role in ROLE_NAME_TABLE:
        if role in roles:
            continue
        expected = ROLE_NAME_TABLE[role][1][0]
        if normal_id is None:
            warn(warnings, rule="role_missing", reason=f"no style named {expected!r}", role=role.value)
            continue
        roles[role] = normal_id
        fallback_roles.add(role)
        warn(
            warnings,
            rule="role_fallback",
            reason=f"no style named {expected!r}; using Normal",
            role=role.value,
            style_id=normal_id,
        )
    return roles, fallback_roles


def _default_paragraph_style(styles: Mapping[str, StyleDefinition]) -> StyleDefinition | None:
    for definition in styles.values():
        if definition.kind == StyleKind.PARAGRAPH and definition.is_default:
            return definition
    return None


def _normalize_name(name: str) -> str:
    normalized = _WHITESPACE_PATTERN.sub(" ", name.strip()).casefold()
    match = _HEADING_NAME_PATTERN.match(normalized)
    if match:
        return f"heading {match.group(1)}"
    return normalized


def _child_val(element: etree._Element, child: str) -> str | None:
    found = element.find(f"w:{child}", namespaces=NS)
    if found is None:
        return None
    return found.get(_attr_name("val"))


def _attr_name(name: str) -> str:
    return f"{{{W_NS}}}{name}"


def _parse_on_off(value: str | None) -> bool:
    if value is None:
        return False
    return value.lower() not in {"0", "false", "off"}
