import os
import unittest
from datetime import datetime
from pathlib import Path
from tempfile import TemporaryDirectory

from mdbook_docx import config


class ConfigTests(unittest.TestCase):
    def test_builtin_template_ships_with_python_docx(self) -> None:
        self.assertEqual(config.BUILTIN_TEMPLATE_PATH.name, "default.docx")
        self.assertTrue(config.BUILTIN_TEMPLATE_PATH.is_file())

    def test_defaults(self) -> None:
        self.assertEqual(config.DEFAULT_OUTPUT_FILENAME, "output.docx")
        self.assertEqual(config.DEFAULT_INCLUDE, ("*",))
        self.assertEqual(config.DEFAULT_REQUIRED_ROLES, ("normal",))
        self.assertEqual(config.MAX_HEADING_ROLE, 8)

    def test_build_log_path(self) -> None:
        ts = datetime(2024, 1, 2, 3, 4, 5)
        log_path = config.build_log_path(Path("logs"), "guide", ts)
        self.assertEqual(log_path.parent, Path("logs"))
        self.assertEqual(log_path.name, "mdbook_docx_guide_20240102_030405.log")

    def test_build_log_path_sanitizes_label(self) -> None:
        ts = datetime(2024, 1, 2, 3, 4, 5)
        self.assertEqual(
            config.build_log_path(Path("logs"), "out/user guide", ts).name,
            "mdbook_docx_out_user_guide_20240102_030405.log",
        )
        self.assertIn("_book_", config.build_log_path(Path("logs"), "", ts).name)

    def test_build_log_path_default_timestamp(self) -> None:
        log_path = config.build_log_path(Path("logs"), "guide")
        self.assertTrue(log_path.name.startswith("mdbook_docx_guide_"))

    def test_ensure_dir(self) -> None:
        with TemporaryDirectory() as tmpdir:
            target = config.ensure_dir(Path(tmpdir) / "a" / "b")
            self.assertTrue(target.is_dir())
            config.ensure_dir(target)

    def test_cleanup_logs_removes_old_files(self) -> None:
        with TemporaryDirectory() as tmpdir:
            log_dir = Path(tmpdir)
            old_log = log_dir / f"{config.LOG_FILE_PREFIX}_old.log"
            new_log = log_dir / f"{config.LOG_FILE_PREFIX}_new.log"
            other = log_dir / "keep.log"
            for path in (old_log, new_log, other):
                path.write_text("x", encoding="utf-8")
            base_time = datetime(2024, 1, 10, 12, 0, 0)
            old_time = base_time.timestamp() - 6 * 86400
            new_time = base_time.timestamp() - 2 * 86400
            os.utime(old_log, (old_time, old_time))
            os.utime(other, (old_time, old_time))
            os.utime(new_log, (new_time, new_time))

            removed = config.cleanup_logs(log_dir, retention_days=5, now=base_time)

            self.assertEqual(removed, 1)
            self.assertFalse(old_log.exists())
            self.assertTrue(new_log.exists())
            self.assertTrue(other.exists())

    def test_cleanup_logs_disabled_or_missing_dir(self) -> None:
        with TemporaryDirectory() as tmpdir:
            self.assertEqual(config.cleanup_logs(Path(tmpdir), retention_days=0), 0)
            self.assertEqual(config.cleanup_logs(Path(tmpdir) / "absent"), 0)


if __name__ == "__main__":
    unittest.main()
