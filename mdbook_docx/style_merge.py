"""Content-hash style and numbering merge across independently authored packages."""
from __future__ import annotations

import copy
import hashlib
from dataclasses import dataclass, field
from typing import Iterable, Mapping

from lxml import etree

from .log import BuildWarning, get_logger, warn
from .style_registry import (
    NS,
    W_NS,
    NumberingDefinition,
    StyleDefinition,
    StyleKind,
    StyleRegistry,
)

LOGGER = get_logger(__name__)

BULLET_GLYPHS = ("•", "◦", "▪")
ORDERED_FORMATS = ("decimal", "lowerLetter", "lowerRoman")
LIST_LEVELS = 9
LIST_INDENT_TWIPS = 720
LIST_HANGING_TWIPS = 360


def _w(name: str) -> str:
    return f"{{{W_NS}}}{name}"


# owner element, properties element, style reference per style kind
_IMPLICIT_REFS = {
    StyleKind.PARAGRAPH: ("p", "pPr", "pStyle"),
    StyleKind.CHARACTER: ("r", "rPr", "rStyle"),
    StyleKind.TABLE: ("tbl", "tblPr", "tblStyle"),
}


@dataclass
class RenameMap:
    styles: dict[str, str] = field(default_factory=dict)
    nums: dict[str, str] = field(default_factory=dict)
    # merged ids of fragment default styles that are not the output's defaults
    defaults: dict[StyleKind, str] = field(default_factory=dict)

    def apply(self, element: etree._Element) -> None:
        """Rewrite style and numbering references inside fragment markup."""
        for tag in ("pStyle", "rStyle", "tblStyle"):
            for ref in element.iter(_w(tag)):
                value = ref.get(_w("val"))
                if value in self.styles:
                    ref.set(_w("val"), self.styles[value])
        for kind, style_id in self.defaults.items():
            owner, props_tag, ref_tag = _IMPLICIT_REFS[kind]
            for node in element.iter(_w(owner)):
                _ensure_style_ref(node, props_tag, ref_tag, style_id)
        for ref in list(element.iter(_w("numId"))):
            value = ref.get(_w("val"))
            if value == "0":
                continue
            if value in self.nums:
                ref.set(_w("val"), self.nums[value])
                continue
            num_pr = ref.getparent()
            num_pr.getparent().remove(num_pr)


def style_fingerprint(element: etree._Element) -> str:
    """Hash of a style element ignoring its id, revision ids, link and next."""
    clone = copy.deepcopy(element)
    clone.attrib.pop(_w("styleId"), None)
    for child in list(clone):
        if child.tag in (_w("link"), _w("next"), _w("rsid")):
            clone.remove(child)
    return _digest(clone)


def abstract_num_fingerprint(element: etree._Element) -> str:
    clone = copy.deepcopy(element)
    clone.attrib.pop(_w("abstractNumId"), None)
    for child in list(clone):
        if child.tag in (_w("nsid"), _w("tmpl")):
            clone.remove(child)
    return _digest(clone)


def num_fingerprint(element: etree._Element) -> str:
    clone = copy.deepcopy(element)
    clone.attrib.pop(_w("numId"), None)
    return _digest(clone)


class StyleMerger:
    """Merges fragment registries into a base registry.

    Base definitions are never renamed; every fragment definition either maps
    onto an existing definition with identical content or is added under a
    freshly minted id.
    """

    def __init__(self, base: StyleRegistry) -> None:
        self.base = base
        self.styles: dict[str, StyleDefinition] = dict(base.styles)
        self.abstract_nums: dict[str, NumberingDefinition] = dict(base.abstract_nums)
        self.nums: dict[str, NumberingDefinition] = dict(base.nums)
        self.warnings: list[BuildWarning] = []
        self._style_fingerprints: dict[str, str] = {}
        for definition in base.styles.values():
            self._style_fingerprints.setdefault(style_fingerprint(definition.element()), definition.style_id)
        self._names = {(definition.name or "").casefold() for definition in base.styles.values()}
        self._abstract_fingerprints: dict[str, str] = {}
        for definition in base.abstract_nums.values():
            self._abstract_fingerprints.setdefault(abstract_num_fingerprint(definition.element()), definition.key)
        self._num_fingerprints: dict[str, str] = {}
        for definition in base.nums.values():
            self._num_fingerprints.setdefault(num_fingerprint(definition.element()), definition.key)

    def merge(self, registry: StyleRegistry, label: str | None = None) -> RenameMap:
        added_abstracts: dict[str, etree._Element] = {}
        abstract_map = self._merge_abstract_nums(registry, added_abstracts)
        num_map = self._merge_nums(registry, abstract_map, label)
        style_map = self._merge_styles(registry, num_map)
        # abstract definitions can point back at styles
        for key, element in added_abstracts.items():
            _rewrite_style_refs(element, style_map, self.styles)
            self.abstract_nums[key] = NumberingDefinition(key=key, body=etree.tostring(element))
        LOGGER.debug(
            "Merged %s: %d styles (%d new), %d numbering instances",
            label or "registry",
            len(style_map),
            sum(1 for old, new in style_map.items() if new not in self.base.styles),
            len(num_map),
        )
        return RenameMap(styles=style_map, nums=num_map, defaults=self._moved_defaults(registry, style_map))

    def _moved_defaults(self, registry: StyleRegistry, style_map: Mapping[str, str]) -> dict[StyleKind, str]:
        """Fragment defaults whose merged id differs from the base default of the same kind.

        Unstyled fragment content relies on its package's defaults, which are
        no longer defaults once merged.
        """
        moved: dict[StyleKind, str] = {}
        for kind in _IMPLICIT_REFS:
            fragment_default = default_style(registry.styles.values(), kind)
            if fragment_default is None:
                continue
            target = style_map.get(fragment_default.style_id)
            base_default = default_style(self.base.styles.values(), kind)
            if target is None or (base_default is not None and base_default.style_id == target):
                continue
            moved[kind] = target
        return moved

    def registry(self) -> StyleRegistry:
        return StyleRegistry(
            source=self.base.source,
            styles=self.styles,
            roles=self.base.roles,
            fallback_roles=self.base.fallback_roles,
            abstract_nums=self.abstract_nums,
            nums=self.nums,
        )

    def _merge_abstract_nums(
        self, registry: StyleRegistry, added: dict[str, etree._Element]
    ) -> dict[str, str]:
        mapping: dict[str, str] = {}
        for definition in registry.abstract_nums.values():
            element = definition.element()
            # picture bullets live in the fragment's numbering part only
            for pic in list(element.iter(_w("lvlPicBulletId"))):
                pic.getparent().remove(pic)
            fingerprint = abstract_num_fingerprint(element)
            existing = self._abstract_fingerprints.get(fingerprint)
            if existing is not None:
                mapping[definition.key] = existing
                continue
            key = definition.key
            if key in self.abstract_nums or key in added:
                key = next_number(list(self.abstract_nums) + list(added))
            element.set(_w("abstractNumId"), key)
            added[key] = element
            self._abstract_fingerprints[fingerprint] = key
            mapping[definition.key] = key
        return mapping

    def _merge_nums(
        self, registry: StyleRegistry, abstract_map: Mapping[str, str], label: str | None
    ) -> dict[str, str]:
        mapping: dict[str, str] = {}
        for definition in registry.nums.values():
            element = definition.element()
            ref = element.find("w:abstractNumId", namespaces=NS)
            target = ref.get(_w("val")) if ref is not None else None
            if target not in abstract_map:
                warn(
                    self.warnings,
                    rule="dangling_numbering",
                    reason=f"numbering instance {definition.key} has no abstract definition",
                    chapter=label,
                )
                continue
            ref.set(_w("val"), abstract_map[target])
            fingerprint = num_fingerprint(element)
            existing = self._num_fingerprints.get(fingerprint)
            if existing is not None:
                mapping[definition.key] = existing
                continue
            key = definition.key
            if key in self.nums:
                key = next_number(self.nums)
            element.set(_w("numId"), key)
            self.nums[key] = NumberingDefinition(key=key, body=etree.tostring(element), abstract_ref=abstract_map[target])
            self._num_fingerprints[fingerprint] = key
            mapping[definition.key] = key
        return mapping

    def _merge_styles(self, registry: StyleRegistry, num_map: Mapping[str, str]) -> dict[str, str]:
        mapping: dict[str, str] = {}
        added: dict[str, etree._Element] = {}
        for definition in _parents_first(registry.styles.values()):
            element = definition.element()
            based_on = element.find("w:basedOn", namespaces=NS)
            if based_on is not None:
                parent = based_on.get(_w("val"))
                if parent in mapping:
                    based_on.set(_w("val"), mapping[parent])
                else:
                    element.remove(based_on)
            for num_id in list(element.iter(_w("numId"))):
                value = num_id.get(_w("val"))
                if value == "0":
                    continue
                if value in num_map:
                    num_id.set(_w("val"), num_map[value])
                else:
                    num_pr = num_id.getparent()
                    num_pr.getparent().remove(num_pr)

            fingerprint = style_fingerprint(element)
            existing = self._style_fingerprints.get(fingerprint)
            if existing is not None and self.styles[existing].kind == definition.kind:
                mapping[definition.style_id] = existing
                continue

            style_id = definition.style_id
            if style_id in self.styles:
                style_id = mint_style_id(style_id, self.styles)
            element.set(_w("styleId"), style_id)
            element.attrib.pop(_w("default"), None)
            name = definition.name
            if name is not None and name.casefold() in self._names:
                name = mint_style_name(name, self._names)
                element.find("w:name", namespaces=NS).set(_w("val"), name)
            if name is not None:
                self._names.add(name.casefold())

            self.styles[style_id] = _definition_from(element, definition.kind)
            self._style_fingerprints[fingerprint] = style_id
            added[style_id] = element
            mapping[definition.style_id] = style_id

        for style_id, element in added.items():
            for tag in ("link", "next"):
                ref = element.find(f"w:{tag}", namespaces=NS)
                if ref is None:
                    continue
                target = ref.get(_w("val"))
                if target in mapping:
                    ref.set(_w("val"), mapping[target])
                else:
                    element.remove(ref)
            self.styles[style_id] = _definition_from(element, self.styles[style_id].kind)
        return mapping


class ListNumbering:
    """Numbering generated for Markdown lists: one instance per list."""

    def __init__(self, registry: StyleRegistry) -> None:
        self._abstract_ids = set(registry.abstract_nums)
        self._num_ids = set(registry.nums)
        self._abstract_for: dict[bool, str] = {}
        self.abstract_nums: list[NumberingDefinition] = []
        self.nums: list[NumberingDefinition] = []

    def new_list(self, ordered: bool, start: int = 1, level: int = 0) -> str:
        abstract_id = self._abstract_for.get(ordered)
        if abstract_id is None:
            abstract_id = next_number(self._abstract_ids)
            self._abstract_ids.add(abstract_id)
            self._abstract_for[ordered] = abstract_id
            body = _bullet_abstract(abstract_id) if not ordered else _ordered_abstract(abstract_id)
            self.abstract_nums.append(NumberingDefinition(key=abstract_id, body=body))
        num_id = next_number(self._num_ids)
        self._num_ids.add(num_id)
        body = (
            f'<w:num xmlns:w="{W_NS}" w:numId="{num_id}">'
            f'<w:abstractNumId w:val="{abstract_id}"/>'
            f'<w:lvlOverride w:ilvl="{level}"><w:startOverride w:val="{start}"/></w:lvlOverride>'
            f"</w:num>"
        ).encode("utf-8")
        self.nums.append(NumberingDefinition(key=num_id, body=body, abstract_ref=abstract_id))
        return num_id

    def __len__(self) -> int:
        return len(self.nums)


def mint_style_id(style_id: str, existing: Iterable[str]) -> str:
    taken = set(existing)
    # Heading1 + 2 must not read as Heading12
    separator = "_" if style_id[-1:].isdigit() else ""
    n = 2
    while f"{style_id}{separator}{n}" in taken:
        n += 1
    return f"{style_id}{separator}{n}"


def mint_style_name(name: str, taken_casefolded: set[str]) -> str:
    n = 2
    while f"{name} ({n})".casefold() in taken_casefolded:
        n += 1
    return f"{name} ({n})"


def next_number(existing: Iterable[str]) -> str:
    numbers = [int(key) for key in existing if str(key).isdigit()]
    return str(max(numbers, default=0) + 1)


def default_style(definitions: Iterable[StyleDefinition], kind: StyleKind) -> StyleDefinition | None:
    for definition in definitions:
        if definition.kind == kind and definition.is_default:
            return definition
    return None


def _ensure_style_ref(node: etree._Element, props_tag: str, ref_tag: str, style_id: str) -> None:
    props = node.find(_w(props_tag))
    if props is None:
        props = etree.Element(_w(props_tag))
        node.insert(0, props)
    if props.find(_w(ref_tag)) is not None:
        return
    ref = etree.Element(_w(ref_tag))
    ref.set(_w("val"), style_id)
    props.insert(0, ref)


def _parents_first(definitions: Iterable[StyleDefinition]) -> list[StyleDefinition]:
    by_id = {definition.style_id: definition for definition in definitions}
    ordered: list[StyleDefinition] = []
    state: dict[str, str] = {}

    def visit(style_id: str) -> None:
        if state.get(style_id) is not None:
            return
        state[style_id] = "visiting"
        parent = by_id[style_id].based_on
        if parent in by_id and state.get(parent) != "visiting":
            visit(parent)
        state[style_id] = "done"
        ordered.append(by_id[style_id])

    for style_id in by_id:
        visit(style_id)
    return ordered


def _rewrite_style_refs(
    element: etree._Element, style_map: Mapping[str, str], styles: Mapping[str, StyleDefinition]
) -> None:
    for tag in ("pStyle", "styleLink", "numStyleLink"):
        for ref in list(element.iter(_w(tag))):
            value = ref.get(_w("val"))
            if value in style_map:
                ref.set(_w("val"), style_map[value])
            elif value not in styles:
                ref.getparent().remove(ref)


def _definition_from(element: etree._Element, kind: StyleKind) -> StyleDefinition:
    def val(tag: str) -> str | None:
        found = element.find(f"w:{tag}", namespaces=NS)
        return found.get(_w("val")) if found is not None else None

    default = element.get(_w("default"))
    return StyleDefinition(
        style_id=element.get(_w("styleId")),
        kind=kind,
        name=val("name"),
        body=etree.tostring(element),
        based_on=val("basedOn"),
        linked=val("link"),
        next_style=val("next"),
        is_default=default is not None and default.lower() not in {"0", "false", "off"},
    )


def _digest(element: etree._Element) -> str:
    for node in element.iter():
        # indentation differs between writers
        if node.text is not None and not node.text.strip():
            node.text = None
        if node.tail is not None and not node.tail.strip():
            node.tail = None
        if not isinstance(node.tag, str):
            continue
        for attr in list(node.attrib):
            if etree.QName(attr).localname.startswith("rsid"):
                del node.attrib[attr]
    for rsid in list(element.iter(_w("rsid"))):
        rsid.getparent().remove(rsid)
    return hashlib.sha256(etree.tostring(element, method="c14n", exclusive=True, with_comments=False)).hexdigest()


def _bullet_abstract(abstract_id: str) -> bytes:
    levels = []
    for level in range(LIST_LEVELS):
        glyph = BULLET_GLYPHS[level % len(BULLET_GLYPHS)]
        levels.append(_level_xml(level, "bullet", glyph))
    return _abstract_xml(abstract_id, levels)


def _ordered_abstract(abstract_id: str) -> bytes:
    levels = []
    for level in range(LIST_LEVELS):
        fmt = ORDERED_FORMATS[level % len(ORDERED_FORMATS)]
        levels.append(_level_xml(level, fmt, f"%{level + 1}."))
    return _abstract_xml(abstract_id, levels)


def _level_xml(level: int, fmt: str, text: str) -> str:
    left = LIST_INDENT_TWIPS * (level + 1)
    return (
        f'<w:lvl w:ilvl="{level}">'
        f'<w:start w:val="1"/>'
        f'<w:numFmt w:val="{fmt}"/>'
        f'<w:lvlText w:val="{text}"/>'
        f'<w:lvlJc w:val="left"/>'
        f'<w:pPr><w:ind w:left="{left}" w:hanging="{LIST_HANGING_TWIPS}"/></w:pPr>'
        f"</w:lvl>"
    )


def _abstract_xml(abstract_id: str, levels: list[str]) -> bytes:
    return (
        f'<w:abstractNum xmlns:w="{W_NS}" w:abstractNumId="{abstract_id}">'
        f'<w:multiLevelType w:val="hybridMultilevel"/>'
        + "".join(levels)
        + "</w:abstractNum>"
    ).encode("utf-8")
