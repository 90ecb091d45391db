import io
import json
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from docx_fixtures import body_children, element_text
from mdbook_docx.errors import ConfigError
from mdbook_docx.render_context import flatten_chapters, load_render_context, main, run


def _chapter(name, path, content, sub_items=()):
    return {
        "Chapter": {
            "name": name,
            "content": content,
            "number": None,
            "sub_items": list(sub_items),
            "path": path,
            "source_path": path,
            "parent_names": [],
        }
    }


def _context(root: Path, docx_table=None, key="sections"):
    return {
        "version": "0.4.40",
        "root": str(root),
        "destination": str(root / "book" / "docx"),
        "config": {
            "book": {"title": "Demo", "src": "src"},
            "output": {"docx": docx_table or {}},
        },
        "book": {
            key: [
                _chapter("Intro", "intro.md", "# Intro\n\nWelcome.\n"),
                "Separator",
                _chapter(
                    "Guide",
                    "guide/index.md",
                    "# Guide\n",
                    sub_items=[_chapter("Setup", "guide/setup.md", "# Setup\n")],
                ),
                {"PartTitle": "Appendix"},
                _chapter("Draft", None, ""),
            ],
            "__non_exhaustive": None,
        },
    }


class FlattenChaptersTests(unittest.TestCase):
    def test_depth_first_order_skips_separators_and_drafts(self) -> None:
        entries = flatten_chapters(_context(Path("/tmp/x"))["book"]["sections"])
        self.assertEqual([entry.path for entry in entries], ["intro.md", "guide/index.md", "guide/setup.md"])
        self.assertEqual([entry.ordinal for entry in entries], [0, 1, 2])
        self.assertEqual(entries[0].name, "Intro")


class LoadRenderContextTests(unittest.TestCase):
    def test_paths_and_documents(self) -> None:
        root = Path("/tmp/demo")
        book, chapters = load_render_context(_context(root, {"documents": [{"filename": "g.docx"}]}))
        self.assertEqual(book.src_root, root / "src")
        self.assertEqual(book.destination, root / "book" / "docx")
        self.assertEqual([doc.filename for doc in book.valid_documents()], ["g.docx"])
        self.assertEqual(len(chapters), 3)

    def test_items_key_is_accepted(self) -> None:
        _, chapters = load_render_context(_context(Path("/tmp/demo"), key="items"))
        self.assertEqual(len(chapters), 3)

    def test_missing_root_is_config_error(self) -> None:
        with self.assertRaises(ConfigError):
            load_render_context({"destination": "/tmp/out"})


class RunTests(unittest.TestCase):
    def test_run_builds_configured_documents(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            root = Path(tmpdir)
            table = {"documents": [{"filename": "guide.docx", "include": ["guide/*"], "offset_headings_by": 1}]}
            report = run(_context(root, table))
            self.assertTrue(report.ok)
            output = root / "book" / "docx" / "guide.docx"
            self.assertEqual([element_text(child) for child in body_children(output)], ["Guide", "Setup"])

    def test_main_reads_context_from_stdin(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            root = Path(tmpdir)
            payload = json.dumps(_context(root))
            with mock.patch("sys.stdin", io.StringIO(payload)):
                code = main([])
            self.assertEqual(code, 0)
            self.assertTrue((root / "book" / "docx" / "output.docx").is_file())

    def test_main_reads_context_from_file(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            root = Path(tmpdir)
            context_file = root / "context.json"
            context_file.write_text(json.dumps(_context(root)), encoding="utf-8")
            self.assertEqual(main([str(context_file)]), 0)

    def test_main_returns_failure_for_failed_document(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            root = Path(tmpdir)
            table = {"documents": [{"filename": "none.docx", "include": ["nothing/*"]}]}
            context_file = root / "context.json"
            context_file.write_text(json.dumps(_context(root, table)), encoding="utf-8")
            self.assertEqual(main([str(context_file)]), 1)

    def test_main_rejects_invalid_json(self) -> None:
        with mock.patch("sys.stdin", io.StringIO("{not json")):
            self.assertEqual(main([]), 1)

    def test_main_rejects_invalid_book_settings(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            root = Path(tmpdir)
            context_file = root / "context.json"
            context_file.write_text(json.dumps(_context(root, {"documents": []})), encoding="utf-8")
            self.assertEqual(main([str(context_file)]), 1)


if __name__ == "__main__":
    unittest.main()
