from __future__ import annotations

import copy
from pathlib import Path, PurePosixPath
from zipfile import BadZipFile

import docx
from docx.opc.constants import RELATIONSHIP_TYPE as RT
from docx.opc.exceptions import PackageNotFoundError
from docx.oxml.ns import qn
from lxml import etree

from .blocks import Block, Fragment, Heading, Image, MediaTable, Paragraph, Table
from .errors import FragmentCorrupt, FragmentNotFound, TemplateCorrupt
from .log import BuildWarning, get_logger, warn
from .style_registry import HEADING_ROLES, StyleRegistry, build_style_registry

LOGGER = get_logger(__name__)

R_NS = "http://schemas.openxmlformats.org/officeDocument/2006/relationships"

# Elements that point into parts a fragment cannot carry over.
_NOTE_REFERENCE_TAGS = (
    qn("w:footnoteReference"),
    qn("w:endnoteReference"),
    qn("w:commentReference"),
    qn("w:commentRangeStart"),
    qn("w:commentRangeEnd"),
)
_SECTION_REFERENCE_TAGS = (qn("w:headerReference"), qn("w:footerReference"))
_DRAWING_TAGS = (qn("w:drawing"), qn("w:pict"), qn("w:object"))


def load_fragment(fragment_path: Path, label: str | None = None) -> Fragment:
    """Read a `.docx` fragment into blocks plus the fragment's own registry."""
    path = Path(fragment_path)
    name = label or path.name
    if not path.exists():
        raise FragmentNotFound(f"fragment not found: {path}", path=path)
    if not path.is_file():
        raise FragmentNotFound(f"fragment path is not a file: {path}", path=path)

    try:
        registry = build_style_registry(path, required_roles=())
    except TemplateCorrupt as exc:
        raise FragmentCorrupt(f"fragment is not a valid docx package: {path}: {exc}", path=path) from exc

    try:
        document = docx.Document(str(path))
    except (PackageNotFoundError, BadZipFile, KeyError, ValueError, etree.XMLSyntaxError) as exc:
        raise FragmentCorrupt(f"fragment could not be opened: {path}: {exc}", path=path) from exc

    warnings: list[BuildWarning] = []
    media = MediaTable()
    part = document.part
    blocks: list[Block] = []
    body = document.element.body
    for element in body.iterchildren():
        if not isinstance(element.tag, str) or element.tag == qn("w:sectPr"):
            continue
        source = copy.deepcopy(element)
        _strip_unsupported(source, name, warnings, len(blocks))
        _sanitize_references(source, registry, name, warnings, len(blocks))
        block = _classify(source, registry)
        if _collect_relationships(block, part, media, name, warnings, len(blocks)):
            blocks.append(block)

    LOGGER.debug("Loaded fragment %s: %d blocks, %d images", name, len(blocks), len(media))
    return Fragment(path=name, blocks=blocks, registry=registry, media=media, warnings=warnings)


def _classify(source: etree._Element, registry: StyleRegistry) -> Block:
    if source.tag == qn("w:tbl"):
        return Table(style_id=_style_val(source, "w:tblPr/w:tblStyle"), source=source)
    style_id = _style_val(source, "w:pPr/w:pStyle") if source.tag == qn("w:p") else None
    if source.tag == qn("w:p"):
        role = registry.role_of(style_id)
        if role in HEADING_ROLES:
            index = HEADING_ROLES.index(role)
            return Heading(role=role, style_id=style_id, level=index, role_index=index, source=source)
        if _is_image_paragraph(source):
            return Image(style_id=style_id, source=source)
    return Paragraph(style_id=style_id, source=source)


def _is_image_paragraph(paragraph: etree._Element) -> bool:
    has_drawing = any(True for tag in _DRAWING_TAGS for _ in paragraph.iter(tag))
    if not has_drawing:
        return False
    text = "".join(t.text or "" for t in paragraph.iter(qn("w:t")))
    return not text.strip()


def _strip_unsupported(
    source: etree._Element, name: str, warnings: list[BuildWarning], index: int
) -> None:
    for tag in _NOTE_REFERENCE_TAGS:
        found = list(source.iter(tag))
        if not found:
            continue
        for element in found:
            _remove_owner(element)
        warn(
            warnings,
            rule="fragment_reference",
            reason=f"removed {len(found)} {etree.QName(tag).localname} element(s)",
            chapter=name,
            block_index=index,
        )
    for sect_pr in source.iter(qn("w:sectPr")):
        for reference in [child for child in sect_pr if child.tag in _SECTION_REFERENCE_TAGS]:
            sect_pr.remove(reference)


def _sanitize_references(
    source: etree._Element,
    registry: StyleRegistry,
    name: str,
    warnings: list[BuildWarning],
    index: int,
) -> None:
    for tag in ("w:pStyle", "w:rStyle", "w:tblStyle"):
        for element in list(source.iter(qn(tag))):
            style_id = element.get(qn("w:val"))
            if style_id in registry:
                continue
            element.getparent().remove(element)
            warn(
                warnings,
                rule="dangling_style",
                reason=f"reference to undefined style {style_id!r} removed",
                chapter=name,
                style_id=style_id,
                block_index=index,
            )
    for num_id in list(source.iter(qn("w:numId"))):
        value = num_id.get(qn("w:val"))
        if value == "0" or value in registry.nums:
            continue
        num_pr = num_id.getparent()
        num_pr.getparent().remove(num_pr)
        warn(
            warnings,
            rule="dangling_numbering",
            reason=f"reference to undefined numbering instance {value!r} removed",
            chapter=name,
            block_index=index,
        )


def _collect_relationships(
    block: Block,
    part,
    media: MediaTable,
    name: str,
    warnings: list[BuildWarning],
    index: int,
) -> bool:
    """Record image and hyperlink relationships; False when the block itself must go."""
    source = block.source
    for element in list(source.iter()):
        if not isinstance(element.tag, str) or not _is_within(element, source):
            continue
        for attr, r_id in list(element.attrib.items()):
            if not attr.startswith(f"{{{R_NS}}}"):
                continue
            rel = part.rels.get(r_id)
            if rel is not None and rel.reltype == RT.IMAGE and not rel.is_external:
                image_part = rel.target_part
                filename = PurePosixPath(str(image_part.partname)).name
                block.media_refs[r_id] = media.add(image_part.blob, filename)
                continue
            if rel is not None and rel.reltype == RT.HYPERLINK and rel.is_external:
                block.link_refs[r_id] = rel.target_ref
                continue
            reltype = PurePosixPath(rel.reltype).name if rel is not None else "missing"
            removed = _remove_owner(element)
            warn(
                warnings,
                rule="fragment_relationship",
                reason=f"removed {etree.QName(removed.tag).localname} bound to unsupported {reltype} relationship",
                chapter=name,
                block_index=index,
            )
            if removed is source:
                return False
            break
    return True


def _is_within(element: etree._Element, root: etree._Element) -> bool:
    node = element
    while node is not None:
        if node is root:
            return True
        node = node.getparent()
    return False


def _remove_owner(element: etree._Element) -> etree._Element:
    """Remove the enclosing run (or the element itself outside runs)."""
    owner = element
    node = element
    while node is not None:
        if node.tag == qn("w:r"):
            owner = node
            break
        node = node.getparent()
    parent = owner.getparent()
    if parent is not None:
        parent.remove(owner)
    return owner


def _style_val(element: etree._Element, path: str) -> str | None:
    found = element.find(path, namespaces={"w": "http://schemas.openxmlformats.org/wordprocessingml/2006/main"})
    if found is None:
        return None
    return found.get(qn("w:val"))
