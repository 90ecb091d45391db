import unittest
from pathlib import Path

from mdbook_docx import config
from mdbook_docx.document_config import DocumentConfig, load_book_config
from mdbook_docx.errors import ConfigError

ROOT = Path("/books/demo")


def _load(table):
    return load_book_config(table, root=ROOT, src_root=ROOT / "src", destination=ROOT / "book" / "docx")


class DocumentConfigTests(unittest.TestCase):
    def test_defaults(self) -> None:
        document = DocumentConfig.from_mapping({"filename": "out.docx"})
        self.assertIsNone(document.template)
        self.assertEqual(document.include, config.DEFAULT_INCLUDE)
        self.assertEqual(document.offset_headings_by, 0)
        self.assertEqual(document.prepend, ())
        self.assertEqual(document.append, ())

    def test_to_dict_round_trip(self) -> None:
        data = {
            "filename": "guide.docx",
            "template": "tpl/ref.docx",
            "include": ["guide/**"],
            "offset_headings_by": -1,
            "prepend": ["cover.docx"],
            "append": ["back.docx"],
        }
        document = DocumentConfig.from_mapping(data)
        self.assertEqual(document.to_dict(), data)
        self.assertEqual(DocumentConfig.from_mapping(document.to_dict()), document)

    def test_unknown_keys_are_kept_for_reporting(self) -> None:
        document = DocumentConfig.from_mapping({"filename": "a.docx", "colour": "red"})
        self.assertEqual(document.unknown_keys, ("colour",))

    def test_invalid_entries(self) -> None:
        cases = [
            {},
            {"filename": ""},
            {"filename": "/abs/out.docx"},
            {"filename": "../out.docx"},
            {"filename": "a.docx", "template": ""},
            {"filename": "a.docx", "include": "*.md"},
            {"filename": "a.docx", "include": ["***"]},
            {"filename": "a.docx", "offset_headings_by": "1"},
            {"filename": "a.docx", "offset_headings_by": True},
            {"filename": "a.docx", "prepend": [""]},
            "not a table",
        ]
        for data in cases:
            with self.subTest(data=data):
                with self.assertRaises(ConfigError):
                    DocumentConfig.from_mapping(data)


class BookConfigTests(unittest.TestCase):
    def test_absent_documents_builds_default_output(self) -> None:
        book = _load(None)
        self.assertEqual([doc.filename for doc in book.valid_documents()], [config.DEFAULT_OUTPUT_FILENAME])
        self.assertEqual(book.max_workers, config.DEFAULT_MAX_WORKERS)
        self.assertTrue(book.hard_line_breaks)

    def test_empty_documents_is_rejected(self) -> None:
        with self.assertRaises(ConfigError):
            _load({"documents": []})

    def test_documents_must_be_an_array(self) -> None:
        with self.assertRaises(ConfigError):
            _load({"documents": {"filename": "a.docx"}})

    def test_bad_entry_keeps_its_slot(self) -> None:
        book = _load({"documents": [{"filename": "a.docx"}, {"template": "x.docx"}, {"filename": "c.docx"}]})
        self.assertIsInstance(book.documents[0], DocumentConfig)
        self.assertIsInstance(book.documents[1], ConfigError)
        self.assertEqual(book.labels, ("a.docx", "documents[1]", "c.docx"))
        self.assertEqual([doc.filename for doc in book.valid_documents()], ["a.docx", "c.docx"])

    def test_duplicate_filenames_are_rejected_case_insensitively(self) -> None:
        book = _load({"documents": [{"filename": "Guide.docx"}, {"filename": "guide.docx"}]})
        self.assertIsInstance(book.documents[0], DocumentConfig)
        self.assertIsInstance(book.documents[1], ConfigError)

    def test_book_level_settings(self) -> None:
        book = _load({"max_workers": 4, "log_retention_days": 0, "hard_line_breaks": False, "command": "mdbook-docx"})
        self.assertEqual(book.max_workers, 4)
        self.assertEqual(book.log_retention_days, 0)
        self.assertFalse(book.hard_line_breaks)

    def test_invalid_book_settings(self) -> None:
        for table in ({"max_workers": 0}, {"max_workers": "2"}, {"log_retention_days": -1}, {"hard_line_breaks": "yes"}):
            with self.subTest(table=table):
                with self.assertRaises(ConfigError):
                    _load(table)

    def test_paths(self) -> None:
        book = _load({"documents": [{"filename": "out/guide.docx", "template": "tpl/ref.docx"}, {"filename": "b.docx"}]})
        guide, plain = book.documents
        self.assertEqual(book.output_path(guide), ROOT / "book" / "docx" / "out" / "guide.docx")
        self.assertEqual(book.template_path(guide), (ROOT / "tpl" / "ref.docx").resolve())
        self.assertEqual(book.template_path(plain), config.BUILTIN_TEMPLATE_PATH)
        self.assertEqual(book.fragment_path("cover.docx"), (ROOT / "cover.docx").resolve())
        self.assertEqual(book.log_dir, ROOT / "book" / "docx" / config.LOG_DIR_NAME)


if __name__ == "__main__":
    unittest.main()
