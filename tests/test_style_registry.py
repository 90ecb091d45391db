import tempfile
import threading
import unittest
from pathlib import Path
from unittest import mock

from docx import Document
from docx.enum.style import WD_STYLE_TYPE

from docx_fixtures import make_template, patch_zip, remove_styles
from mdbook_docx import config
from mdbook_docx.errors import TemplateCorrupt, TemplateIncomplete
from mdbook_docx.style_registry import (
    StyleKind,
    StyleRole,
    TemplateCache,
    build_style_registry,
    heading_role,
    role_index,
)

STYLES_XML = b"""<?xml version="1.0" encoding="UTF-8"?>
<w:styles xmlns:w="http://schemas.openxmlformats.org/wordprocessingml/2006/main">
  <w:style w:type="paragraph" w:default="1" w:styleId="Standard">
    <w:name w:val="Normal"/>
  </w:style>
  <w:style w:type="paragraph" w:styleId="Titel">
    <w:name w:val="title"/>
    <w:basedOn w:val="Standard"/>
  </w:style>
  <w:style w:type="paragraph" w:styleId="berschrift1">
    <w:name w:val="heading 1"/>
    <w:basedOn w:val="Standard"/>
  </w:style>
  <w:style w:type="paragraph" w:styleId="Hyperlink">
    <w:name w:val="Hyperlink"/>
  </w:style>
  <w:style w:type="character" w:styleId="VerbatimChar">
    <w:name w:val="Verbatim Char"/>
  </w:style>
  <w:style w:type="paragraph" w:styleId="Passthrough">
    <w:name w:val="Custom Body"/>
  </w:style>
</w:styles>
"""


class HeadingRoleTests(unittest.TestCase):
    def test_level_one_maps_to_title(self) -> None:
        self.assertEqual(heading_role(1, 0), StyleRole.TITLE)

    def test_level_two_maps_to_heading_one(self) -> None:
        self.assertEqual(heading_role(2, 0), StyleRole.HEADING_1)

    def test_negative_offset_clamps_at_title(self) -> None:
        self.assertEqual(role_index(1, -1), 0)
        self.assertEqual(heading_role(1, -1), StyleRole.TITLE)

    def test_positive_offset_shifts_down(self) -> None:
        self.assertEqual(heading_role(1, 1), StyleRole.HEADING_1)
        self.assertEqual(heading_role(3, 1), StyleRole.HEADING_3)

    def test_large_offset_clamps_at_heading_eight(self) -> None:
        self.assertEqual(role_index(6, 5), config.MAX_HEADING_ROLE)
        self.assertEqual(heading_role(6, 5), StyleRole.HEADING_8)


class StyleRegistryTests(unittest.TestCase):
    def test_builtin_template_binds_core_roles(self) -> None:
        registry = build_style_registry(config.BUILTIN_TEMPLATE_PATH)
        self.assertEqual(registry.style_id_for(StyleRole.NORMAL), "Normal")
        self.assertEqual(registry.style_id_for(StyleRole.TITLE), "Title")
        self.assertEqual(registry.style_id_for(StyleRole.HEADING_1), "Heading1")
        self.assertFalse(registry.is_fallback(StyleRole.HEADING_1))
        self.assertIn("Normal", registry)

    def test_missing_normal_fails(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            path = make_template(Path(tmpdir) / "tpl.docx")
            remove_styles(path, "Normal")
            with self.assertRaises(TemplateIncomplete):
                build_style_registry(path)

    def test_missing_normal_allowed_when_not_required(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            path = make_template(Path(tmpdir) / "tpl.docx")
            remove_styles(path, "Normal")
            registry = build_style_registry(path, required_roles=())
            self.assertIsNone(registry.style_id_for(StyleRole.NORMAL))
            self.assertIn("Title", registry)

    def test_missing_file_is_corrupt(self) -> None:
        with self.assertRaises(TemplateCorrupt):
            build_style_registry(Path("/tmp/not-exist-template.docx"))

    def test_non_zip_is_corrupt(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "tpl.docx"
            path.write_text("stub", encoding="utf-8")
            with self.assertRaises(TemplateCorrupt):
                build_style_registry(path)

    def test_malformed_styles_part_is_corrupt(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            path = make_template(Path(tmpdir) / "tpl.docx")
            patch_zip(path, {"word/styles.xml": b"<w:styles"})
            with self.assertRaises(TemplateCorrupt):
                build_style_registry(path)

    def test_names_match_case_insensitively_and_ids_stay_opaque(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            path = make_template(Path(tmpdir) / "tpl.docx")
            patch_zip(path, {"word/styles.xml": STYLES_XML})
            registry = build_style_registry(path)
            self.assertEqual(registry.style_id_for(StyleRole.NORMAL), "Standard")
            self.assertEqual(registry.style_id_for(StyleRole.TITLE), "Titel")
            self.assertEqual(registry.style_id_for(StyleRole.HEADING_1), "berschrift1")
            self.assertEqual(registry.style_id_for(StyleRole.VERBATIM_CHAR), "VerbatimChar")

    def test_character_role_requires_character_style(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            path = make_template(Path(tmpdir) / "tpl.docx")
            patch_zip(path, {"word/styles.xml": STYLES_XML})
            registry = build_style_registry(path)
            # the only "Hyperlink" is a paragraph style
            self.assertTrue(registry.is_fallback(StyleRole.HYPERLINK))
            self.assertIsNone(registry.bound_style_id(StyleRole.HYPERLINK, StyleKind.CHARACTER))

    def test_missing_roles_fall_back_to_normal_with_warning(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            path = make_template(Path(tmpdir) / "tpl.docx")
            patch_zip(path, {"word/styles.xml": STYLES_XML})
            registry = build_style_registry(path)
            self.assertEqual(registry.style_id_for(StyleRole.FIGURE), "Standard")
            self.assertTrue(registry.is_fallback(StyleRole.FIGURE))
            rules = {(w.rule, w.role) for w in registry.warnings}
            self.assertIn(("role_fallback", "figure"), rules)
            self.assertNotIn(("role_fallback", "title"), rules)

    def test_unmatched_styles_are_kept_for_passthrough(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            path = make_template(Path(tmpdir) / "tpl.docx")
            patch_zip(path, {"word/styles.xml": STYLES_XML})
            registry = build_style_registry(path)
            self.assertIn("Passthrough", registry)
            self.assertIsNone(registry.role_of("Passthrough"))
            self.assertEqual(registry.get("Passthrough").kind, StyleKind.PARAGRAPH)

    def test_priority_order_of_candidate_names(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "tpl.docx"
            doc = Document()
            doc.styles.add_style("Source Code", WD_STYLE_TYPE.PARAGRAPH)
            doc.save(path)
            registry = build_style_registry(path)
            code = registry.definition_for(StyleRole.CODE_BLOCK)
            self.assertEqual(code.name, "Source Code")

    def test_registry_is_read_only(self) -> None:
        registry = build_style_registry(config.BUILTIN_TEMPLATE_PATH)
        with self.assertRaises(TypeError):
            registry.styles["Extra"] = registry.get("Normal")


class TemplateCacheTests(unittest.TestCase):
    def test_registry_built_once_per_path(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            path = make_template(Path(tmpdir) / "tpl.docx")
            cache = TemplateCache()
            first = cache.get(path)
            second = cache.get(Path(tmpdir) / "." / "tpl.docx")
            self.assertIs(first, second)
            self.assertEqual(len(cache), 1)

    def test_failure_is_cached(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "broken.docx"
            path.write_text("stub", encoding="utf-8")
            cache = TemplateCache()
            with self.assertRaises(TemplateCorrupt):
                cache.get(path)
            make_template(path)
            with self.assertRaises(TemplateCorrupt):
                cache.get(path)

    def test_distinct_templates_build_concurrently(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            slow = make_template(Path(tmpdir) / "slow.docx")
            fast = make_template(Path(tmpdir) / "fast.docx")
            slow_started = threading.Event()
            fast_built = threading.Event()
            waited: list[bool] = []

            def build(path, required_roles=None):
                if path.name == "slow.docx":
                    slow_started.set()
                    waited.append(fast_built.wait(timeout=5))
                else:
                    fast_built.set()
                return build_style_registry(path, required_roles)

            cache = TemplateCache()
            with mock.patch("mdbook_docx.style_registry.build_style_registry", side_effect=build):
                worker = threading.Thread(target=cache.get, args=(slow,))
                worker.start()
                self.assertTrue(slow_started.wait(timeout=5))
                # the slow build is still running while this one completes
                cache.get(fast)
                worker.join(timeout=10)
            self.assertEqual(waited, [True])
            self.assertEqual(len(cache), 2)


if __name__ == "__main__":
    unittest.main()
