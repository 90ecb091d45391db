"""Helpers that build .docx fixtures with python-docx inside test temp dirs."""
from __future__ import annotations

import struct
import zlib
from pathlib import Path
from zipfile import ZIP_DEFLATED, ZipFile

from docx import Document
from docx.enum.style import WD_STYLE_TYPE
from lxml import etree

W_NS = "http://schemas.openxmlformats.org/wordprocessingml/2006/main"
R_NS = "http://schemas.openxmlformats.org/officeDocument/2006/relationships"
NS = {"w": W_NS, "r": R_NS}


def png_bytes(color: tuple[int, int, int] = (255, 0, 0)) -> bytes:
    def chunk(kind: bytes, data: bytes) -> bytes:
        crc = zlib.crc32(kind + data) & 0xFFFFFFFF
        return struct.pack(">I", len(data)) + kind + data + struct.pack(">I", crc)

    header = struct.pack(">IIBBBBB", 1, 1, 8, 2, 0, 0, 0)
    pixels = zlib.compress(b"\x00" + bytes(color))
    return b"\x89PNG\r\n\x1a\n" + chunk(b"IHDR", header) + chunk(b"IDAT", pixels) + chunk(b"IEND", b"")


def patch_zip(path: Path, updates: dict[str, bytes]) -> None:
    temp_path = path.with_suffix(".tmp")
    with ZipFile(path, "r") as src, ZipFile(temp_path, "w", ZIP_DEFLATED) as dst:
        for info in src.infolist():
            content = src.read(info.filename)
            if info.filename in updates:
                content = updates[info.filename]
            dst.writestr(info, content)
        for name, content in updates.items():
            if name not in src.namelist():
                dst.writestr(name, content)
    temp_path.replace(path)


def read_part(path: Path, name: str) -> bytes:
    with ZipFile(path) as archive:
        return archive.read(name)


def part_names(path: Path) -> list[str]:
    with ZipFile(path) as archive:
        return archive.namelist()


def make_template(path: Path) -> Path:
    Document().save(path)
    return path


def remove_styles(path: Path, *style_ids: str) -> Path:
    root = etree.fromstring(read_part(path, "word/styles.xml"))
    for style in root.findall("w:style", namespaces=NS):
        if style.get(f"{{{W_NS}}}styleId") in style_ids:
            root.remove(style)
    patch_zip(path, {"word/styles.xml": etree.tostring(root, xml_declaration=True, encoding="UTF-8")})
    return path


def rename_style(path: Path, old_id: str, new_id: str) -> Path:
    root = etree.fromstring(read_part(path, "word/styles.xml"))
    for style in root.findall("w:style", namespaces=NS):
        if style.get(f"{{{W_NS}}}styleId") == old_id:
            style.set(f"{{{W_NS}}}styleId", new_id)
    patch_zip(path, {"word/styles.xml": etree.tostring(root, xml_declaration=True, encoding="UTF-8")})
    return path


def set_style_run_properties(path: Path, style_id: str, xml: str) -> Path:
    root = etree.fromstring(read_part(path, "word/styles.xml"))
    for style in root.findall("w:style", namespaces=NS):
        if style.get(f"{{{W_NS}}}styleId") == style_id:
            for old in style.findall("w:rPr", namespaces=NS):
                style.remove(old)
            style.append(etree.fromstring(f'<w:rPr xmlns:w="{W_NS}">{xml}</w:rPr>'))
    patch_zip(path, {"word/styles.xml": etree.tostring(root, xml_declaration=True, encoding="UTF-8")})
    return path


def make_fragment(
    path: Path,
    paragraphs: list[tuple[str, str | None]],
    custom_styles: tuple[str, ...] = (),
    image: bytes | None = None,
) -> Path:
    doc = Document()
    for name in custom_styles:
        style = doc.styles.add_style(name, WD_STYLE_TYPE.PARAGRAPH)
        style.base_style = doc.styles["Normal"]
        style.font.bold = True
    for text, style_name in paragraphs:
        doc.add_paragraph(text, style=style_name)
    if image is not None:
        image_path = path.with_suffix(".png")
        image_path.write_bytes(image)
        doc.add_picture(str(image_path))
    doc.save(path)
    return path


def body_children(path: Path) -> list[etree._Element]:
    root = etree.fromstring(read_part(path, "word/document.xml"))
    body = root.find("w:body", namespaces=NS)
    return [child for child in body if child.tag != f"{{{W_NS}}}sectPr"]


def paragraph_style(element: etree._Element) -> str | None:
    found = element.find("w:pPr/w:pStyle", namespaces=NS)
    return found.get(f"{{{W_NS}}}val") if found is not None else None


def element_text(element: etree._Element) -> str:
    return "".join(t.text or "" for t in element.iter(f"{{{W_NS}}}t"))


def style_ids(path: Path) -> list[str]:
    root = etree.fromstring(read_part(path, "word/styles.xml"))
    return [style.get(f"{{{W_NS}}}styleId") for style in root.findall("w:style", namespaces=NS)]
