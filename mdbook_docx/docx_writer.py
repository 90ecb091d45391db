"""Serialize a CompiledDocument into OOXML package bytes with python-docx."""
from __future__ import annotations

import copy
import itertools
from io import BytesIO
from zipfile import BadZipFile

import docx
from docx.enum.text import WD_ALIGN_PARAGRAPH
from docx.opc.constants import CONTENT_TYPE as CT
from docx.opc.constants import RELATIONSHIP_TYPE as RT
from docx.opc.exceptions import PackageNotFoundError
from docx.opc.packuri import PackURI
from docx.oxml import OxmlElement, parse_xml
from docx.oxml.ns import nsdecls, qn
from docx.oxml.table import CT_Tbl
from docx.parts.numbering import NumberingPart
from docx.shared import Emu, Inches, RGBColor, Twips
from docx.table import Table as DocxTable
from docx.text.paragraph import Paragraph as DocxParagraph
from docx.text.run import Run
from lxml import etree

from .blocks import (
    Block,
    CodeBlock,
    CompiledDocument,
    Heading,
    Image,
    InlineRun,
    ListBlock,
    Paragraph,
    Table,
    ThematicBreak,
)
from .errors import AssemblyFailed, TemplateCorrupt
from .log import BuildWarning, get_logger, warn
from .style_merge import LIST_INDENT_TWIPS, ListNumbering
from .style_registry import StyleKind, StyleRole

LOGGER = get_logger(__name__)

R_NS = "http://schemas.openxmlformats.org/officeDocument/2006/relationships"
MONOSPACE_FONT = "Courier New"
HYPERLINK_COLOR = RGBColor(0x05, 0x63, 0xC1)
MAX_BOOKMARK_NAME = 40
DEFAULT_BLOCK_WIDTH = Inches(6)

_ALIGNMENTS = {
    "left": WD_ALIGN_PARAGRAPH.LEFT,
    "center": WD_ALIGN_PARAGRAPH.CENTER,
    "right": WD_ALIGN_PARAGRAPH.RIGHT,
}


def render_document(compiled: CompiledDocument) -> tuple[bytes, list[BuildWarning]]:
    writer = DocxWriter(compiled)
    data = writer.render()
    return data, writer.warnings


class DocxWriter:
    def __init__(self, compiled: CompiledDocument) -> None:
        self.compiled = compiled
        self.registry = compiled.registry
        self.warnings: list[BuildWarning] = []
        try:
            self.document = docx.Document(compiled.template_path)
        except (PackageNotFoundError, BadZipFile, KeyError, ValueError, etree.XMLSyntaxError) as exc:
            raise TemplateCorrupt(
                f"template could not be opened: {compiled.template_path}: {exc}",
                path=compiled.template_path,
            ) from exc
        self.part = self.document.part
        self.body = self.document.element.body
        self.numbering = ListNumbering(self.registry)
        self._bookmark_ids = itertools.count(1)
        self._bookmark_names: set[str] = set()
        self._anchors: dict[tuple[str, str | None], str] = {}
        self._heading_bookmarks: dict[int, str] = {}
        self._image_rids: dict[str, str] = {}
        self._verbatim_style = self.registry.bound_style_id(StyleRole.VERBATIM_CHAR, StyleKind.CHARACTER)
        self._usable_width = self._section_width()

    def render(self) -> bytes:
        self.body.clear_content()
        self._write_styles()
        self._index_bookmarks()
        for block in self.compiled.blocks:
            self._emit(block)
        self._write_numbering()
        self._prune_relationships()
        problems = self.verify()
        if problems:
            LOGGER.error("Unresolved references after merge:\n  %s", "\n  ".join(problems))
            raise AssemblyFailed(
                f"{len(problems)} unresolved reference(s) after merge", problems=problems
            )
        buffer = BytesIO()
        self.document.save(buffer)
        return buffer.getvalue()

    # -- parts ----------------------------------------------------------------
    def _write_styles(self) -> None:
        styles = self.document.styles.element
        for style in styles.findall(qn("w:style")):
            styles.remove(style)
        for definition in self.registry:
            styles.append(parse_xml(definition.body))

    def _write_numbering(self) -> None:
        abstracts = list(self.registry.abstract_nums.values()) + self.numbering.abstract_nums
        nums = list(self.registry.nums.values()) + self.numbering.nums
        if not abstracts and not nums:
            return
        numbering = self._numbering_element()
        pic_bullets = [child for child in numbering if child.tag == qn("w:numPicBullet")]
        trailing = [
            child
            for child in numbering
            if child.tag not in (qn("w:numPicBullet"), qn("w:abstractNum"), qn("w:num"))
        ]
        for child in list(numbering):
            numbering.remove(child)
        for child in pic_bullets:
            numbering.append(child)
        for definition in abstracts:
            numbering.append(parse_xml(definition.body))
        for definition in nums:
            numbering.append(parse_xml(definition.body))
        for child in trailing:
            numbering.append(child)

    def _numbering_element(self):
        try:
            return self.part.part_related_by(RT.NUMBERING).element
        except KeyError:
            blob = f"<w:numbering {nsdecls('w')}/>".encode("utf-8")
            numbering_part = NumberingPart.load(
                PackURI("/word/numbering.xml"), CT.WML_NUMBERING, self.part.package, blob
            )
            self.part.relate_to(numbering_part, RT.NUMBERING)
            return numbering_part.element

    def _prune_relationships(self) -> None:
        used = self._used_relationship_ids()
        for r_id, rel in list(self.part.rels.items()):
            if rel.reltype in (RT.IMAGE, RT.HYPERLINK) and r_id not in used:
                self.part.drop_rel(r_id)

    def _used_relationship_ids(self) -> set[str]:
        used: set[str] = set()
        for element in self.document.element.iter():
            if not isinstance(element.tag, str):
                continue
            for attr, value in element.attrib.items():
                if attr.startswith(f"{{{R_NS}}}"):
                    used.add(value)
        return used

    def verify(self) -> list[str]:
        """Every style, numbering and relationship reference in the body must resolve."""
        style_ids = {
            style.get(qn("w:styleId")) for style in self.document.styles.element.findall(qn("w:style"))
        }
        num_ids: set[str] = set()
        try:
            numbering = self.part.part_related_by(RT.NUMBERING).element
        except KeyError:
            numbering = None
        if numbering is not None:
            num_ids = {num.get(qn("w:numId")) for num in numbering.findall(qn("w:num"))}
        rel_ids = set(self.part.rels.keys())

        problems: list[str] = []
        for element in self.body.iter():
            if not isinstance(element.tag, str):
                continue
            local = etree.QName(element).localname
            if local in ("pStyle", "rStyle", "tblStyle"):
                value = element.get(qn("w:val"))
                if value not in style_ids:
                    problems.append(f"{local} {value!r} has no style definition")
            elif local == "numId":
                value = element.get(qn("w:val"))
                if value != "0" and value not in num_ids:
                    problems.append(f"numId {value!r} has no numbering instance")
            for attr, value in element.attrib.items():
                if attr.startswith(f"{{{R_NS}}}") and value not in rel_ids:
                    problems.append(f"{local}/@r:{etree.QName(attr).localname} {value!r} has no relationship")
        return problems

    # -- blocks ---------------------------------------------------------------
    def _emit(self, block: Block) -> None:
        if block.source is not None:
            self._emit_source(block)
        elif isinstance(block, Heading):
            self._emit_heading(block)
        elif isinstance(block, Paragraph):
            self._emit_paragraph(block)
        elif isinstance(block, CodeBlock):
            self._emit_code(block)
        elif isinstance(block, ListBlock):
            self._emit_list(block)
        elif isinstance(block, Table):
            self._emit_table(block)
        elif isinstance(block, Image):
            self._emit_image(block)
        elif isinstance(block, ThematicBreak):
            self._emit_break(block)
        else:
            raise AssemblyFailed(f"no serializer for block kind {block.kind!r}")

    def _new_paragraph(self, style_id: str | None) -> DocxParagraph:
        paragraph = self.document.add_paragraph()
        if style_id:
            paragraph._p.get_or_add_pPr().style = style_id
        return paragraph

    def _emit_heading(self, block: Heading) -> DocxParagraph:
        paragraph = self._new_paragraph(block.style_id)
        name = self._heading_bookmarks.get(id(block))
        bookmark_id = None
        if name is not None:
            bookmark_id = str(next(self._bookmark_ids))
            start = OxmlElement("w:bookmarkStart")
            start.set(qn("w:id"), bookmark_id)
            start.set(qn("w:name"), name)
            paragraph._p.append(start)
        self._add_runs(paragraph, block.runs)
        if bookmark_id is not None:
            end = OxmlElement("w:bookmarkEnd")
            end.set(qn("w:id"), bookmark_id)
            paragraph._p.append(end)
        return paragraph

    def _emit_paragraph(self, block: Paragraph) -> DocxParagraph:
        paragraph = self._new_paragraph(block.style_id)
        if block.alignment in _ALIGNMENTS:
            paragraph.alignment = _ALIGNMENTS[block.alignment]
        if block.role == StyleRole.BLOCK_QUOTE and self.registry.is_fallback(StyleRole.BLOCK_QUOTE):
            paragraph.paragraph_format.left_indent = Inches(0.5)
        self._add_runs(paragraph, block.runs)
        return paragraph

    def _emit_code(self, block: CodeBlock) -> DocxParagraph:
        paragraph = self._new_paragraph(block.style_id)
        direct = self.registry.is_fallback(StyleRole.CODE_BLOCK)
        for index, line in enumerate(block.lines):
            if index:
                paragraph.add_run().add_break()
            run = paragraph.add_run(line)
            if direct:
                run.font.name = MONOSPACE_FONT
        return paragraph

    def _emit_list(self, block: ListBlock) -> None:
        num_id = self.numbering.new_list(block.ordered, block.start, block.depth)
        for item in block.items:
            children = list(item.children)
            if not children or not isinstance(children[0], Paragraph) or children[0].source is not None:
                # keep the item marker even when the item opens with a non-paragraph
                children.insert(0, Paragraph(role=item.role, style_id=item.style_id))
            for index, child in enumerate(children):
                if isinstance(child, Paragraph) and child.source is None:
                    paragraph = self._emit_paragraph(child)
                    if index == 0:
                        num_pr = paragraph._p.get_or_add_pPr().get_or_add_numPr()
                        num_pr.get_or_add_ilvl().val = block.depth
                        num_pr.get_or_add_numId().val = int(num_id)
                    else:
                        paragraph.paragraph_format.left_indent = Twips(LIST_INDENT_TWIPS * (block.depth + 1))
                else:
                    self._emit(child)

    def _emit_table(self, block: Table) -> None:
        rows = len(block.rows)
        cols = max((len(row) for row in block.rows), default=0)
        if not rows or not cols:
            return
        if block.caption is not None:
            caption = self._emit_paragraph(block.caption)
            caption.paragraph_format.keep_with_next = True
        width = self._usable_width or DEFAULT_BLOCK_WIDTH
        tbl = CT_Tbl.new_tbl(rows, cols, Emu(width))
        self.body._insert_tbl(tbl)
        table = DocxTable(tbl, self.document._body)
        if block.style_id:
            tbl.tblPr.style = block.style_id
        else:
            _set_table_borders(tbl)
        for r_index, row in enumerate(block.rows):
            header = r_index < block.header_rows
            if header:
                tbl.tr_lst[r_index].get_or_add_trPr().append(OxmlElement("w:tblHeader"))
            for c_index, cell_block in enumerate(row):
                paragraph = table.cell(r_index, c_index).paragraphs[0]
                if cell_block.style_id:
                    paragraph._p.get_or_add_pPr().style = cell_block.style_id
                if cell_block.alignment in _ALIGNMENTS:
                    paragraph.alignment = _ALIGNMENTS[cell_block.alignment]
                runs = cell_block.runs
                if header and not block.style_id:
                    runs = [_bolded(run) for run in runs]
                self._add_runs(paragraph, runs)

    def _emit_image(self, block: Image) -> None:
        resource = self.compiled.media.get(block.resource) if block.resource else None
        if resource is None:
            raise AssemblyFailed(f"image resource {block.resource!r} missing from media table")
        paragraph = self._new_paragraph(block.style_id)
        width, height = self._fit(block.width, block.height)
        paragraph.add_run().add_picture(BytesIO(resource.data), width=width, height=height)

    def _emit_break(self, block: ThematicBreak) -> None:
        paragraph = self._new_paragraph(block.style_id)
        paragraph._p.get_or_add_pPr().append(
            parse_xml(
                f'<w:pBdr {nsdecls("w")}>'
                f'<w:bottom w:val="single" w:sz="6" w:space="1" w:color="auto"/>'
                f"</w:pBdr>"
            )
        )

    def _emit_source(self, block: Block) -> None:
        element = parse_xml(etree.tostring(block.source))
        sect_pr = self.body.sectPr
        if sect_pr is not None:
            sect_pr.addprevious(element)
        else:
            self.body.append(element)
        for node in element.iter():
            if not isinstance(node.tag, str):
                continue
            for attr, r_id in list(node.attrib.items()):
                if not attr.startswith(f"{{{R_NS}}}"):
                    continue
                if r_id in block.media_refs:
                    node.set(attr, self._image_rid(block.media_refs[r_id]))
                elif r_id in block.link_refs:
                    node.set(attr, self.part.relate_to(block.link_refs[r_id], RT.HYPERLINK, is_external=True))
        for doc_pr in element.iter(qn("wp:docPr")):
            doc_pr.set("id", str(self.part.next_id))
        self._renumber_bookmarks(element)

    def _renumber_bookmarks(self, element) -> None:
        mapping: dict[str, str] = {}
        for start in element.iter(qn("w:bookmarkStart")):
            new_id = str(next(self._bookmark_ids))
            mapping[start.get(qn("w:id"))] = new_id
            start.set(qn("w:id"), new_id)
            name = start.get(qn("w:name"))
            if name and not name.startswith("_"):
                start.set(qn("w:name"), self._unique_bookmark(name))
        for end in element.iter(qn("w:bookmarkEnd")):
            old = end.get(qn("w:id"))
            if old in mapping:
                end.set(qn("w:id"), mapping[old])
            else:
                end.getparent().remove(end)

    # -- runs -----------------------------------------------------------------
    def _add_runs(self, paragraph: DocxParagraph, runs: list[InlineRun]) -> None:
        for (link, anchor), group in itertools.groupby(runs, key=lambda run: (run.link, run.anchor)):
            container = self._hyperlink(paragraph, link, anchor)
            for inline in group:
                if container is None:
                    run = paragraph.add_run()
                else:
                    r = OxmlElement("w:r")
                    container.append(r)
                    run = Run(r, paragraph)
                self._format_run(run, inline, linked=container is not None)

    def _hyperlink(self, paragraph: DocxParagraph, link: str | None, anchor):
        if link is None and anchor is None:
            return None
        hyperlink = OxmlElement("w:hyperlink")
        if link is not None:
            r_id = self.part.relate_to(link, RT.HYPERLINK, is_external=True)
            hyperlink.set(qn("r:id"), r_id)
        else:
            name = self._anchors.get(anchor)
            if name is None:
                chapter, slug = anchor
                target = f"{chapter}#{slug}" if slug else chapter
                warn(
                    self.warnings,
                    rule="unresolved_link",
                    reason=f"link target {target} is not part of this document",
                    chapter=chapter,
                )
                return None
            hyperlink.set(qn("w:anchor"), name)
        paragraph._p.append(hyperlink)
        return hyperlink

    def _format_run(self, run: Run, inline: InlineRun, linked: bool = False) -> None:
        if inline.line_break:
            run.add_break()
            return
        if inline.text:
            run.text = inline.text
        if inline.bold:
            run.bold = True
        if inline.italic:
            run.italic = True
        if inline.strike:
            run.font.strike = True
        style_id = inline.style_id if inline.style_id in self.registry else None
        if not linked and style_id != self._verbatim_style:
            # unresolved links render as plain text
            style_id = style_id if not (inline.link or inline.anchor) else None
        if style_id:
            run._r.get_or_add_rPr().style = style_id
        if inline.code and style_id != self._verbatim_style:
            run.font.name = MONOSPACE_FONT
        if linked and style_id is None:
            run.font.color.rgb = HYPERLINK_COLOR
            run.font.underline = True

    # -- helpers --------------------------------------------------------------
    def _index_bookmarks(self) -> None:
        for block in _walk(self.compiled.blocks):
            if not isinstance(block, Heading) or block.source is not None or not block.anchor:
                continue
            name = self._unique_bookmark(block.anchor)
            self._heading_bookmarks[id(block)] = name
            self._anchors[(block.chapter, block.anchor)] = name
            self._anchors.setdefault((block.chapter, None), name)

    def _unique_bookmark(self, name: str) -> str:
        """Word drops bookmark names longer than 40 characters; the suffix counts too."""
        candidate = name[:MAX_BOOKMARK_NAME]
        n = 0
        while candidate in self._bookmark_names:
            n += 1
            suffix = f"-{n}"
            candidate = name[: MAX_BOOKMARK_NAME - len(suffix)] + suffix
        self._bookmark_names.add(candidate)
        return candidate

    def _image_rid(self, digest: str) -> str:
        if digest not in self._image_rids:
            resource = self.compiled.media.get(digest)
            if resource is None:
                raise AssemblyFailed(f"image resource {digest!r} missing from media table")
            r_id, _image = self.part.get_or_add_image(BytesIO(resource.data))
            self._image_rids[digest] = r_id
        return self._image_rids[digest]

    def _section_width(self) -> int | None:
        sections = self.document.sections
        if not len(sections):
            return None
        section = sections[-1]
        if None in (section.page_width, section.left_margin, section.right_margin):
            return None
        return int(section.page_width - section.left_margin - section.right_margin)

    def _fit(self, width: int | None, height: int | None) -> tuple[int | None, int | None]:
        if not width or not height or not self._usable_width or width <= self._usable_width:
            return width, height
        scale = self._usable_width / width
        return Emu(int(width * scale)), Emu(int(height * scale))


def _walk(blocks):
    for block in blocks:
        yield block
        if isinstance(block, ListBlock):
            for item in block.items:
                yield from _walk(item.children)


def _bolded(run: InlineRun) -> InlineRun:
    clone = copy.copy(run)
    clone.bold = True
    return clone


def _set_table_borders(tbl) -> None:
    borders = parse_xml(
        f'<w:tblBorders {nsdecls("w")}>'
        + "".join(
            f'<w:{edge} w:val="single" w:sz="4" w:space="0" w:color="auto"/>'
            for edge in ("top", "left", "bottom", "right", "insideH", "insideV")
        )
        + "</w:tblBorders>"
    )
    look = tbl.tblPr.find(qn("w:tblLook"))
    if look is not None:
        look.addprevious(borders)
    else:
        tbl.tblPr.append(borders)
