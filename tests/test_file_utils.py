import tempfile
import unittest
from pathlib import Path

from mchost.core.filesystem_utils import (
    calculate_tree_totals,
    format_file_size,
    read_recent_file_lines,
    sanitize_archive_name,
    truncate_file_lines,
)


class FileUtilsTests(unittest.TestCase):
    def test_format_file_size(self):
        self.assertEqual(format_file_size(10), "10 B")
        self.assertEqual(format_file_size(1024), "1.0 KB")

    def test_truncate_keeps_most_recent_lines(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "server.log"
            path.write_text("".join(f"line {i}\n" for i in range(30)), encoding="utf-8")
            kept = truncate_file_lines(path, 10)
            self.assertEqual(kept, 10)
            lines = path.read_text(encoding="utf-8").splitlines()
            self.assertEqual(lines[0], "line 20")
            self.assertEqual(lines[-1], "line 29")
            self.assertTrue(path.read_text(encoding="utf-8").endswith("\n"))

    def test_truncate_is_noop_under_limit(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "server.log"
            path.write_text("a\nb\n", encoding="utf-8")
            self.assertEqual(truncate_file_lines(path, 10), 2)
            self.assertEqual(path.read_text(encoding="utf-8"), "a\nb\n")

    def test_read_recent_file_lines(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "server.log"
            path.write_text("a\nb\nc\n", encoding="utf-8")
            self.assertEqual(read_recent_file_lines(path, 2), ["b", "c"])
            self.assertEqual(read_recent_file_lines(Path(tmp) / "missing.log", 2), [])

    def test_calculate_tree_totals_counts_files_and_directories(self):
        with tempfile.TemporaryDirectory() as tmp:
            base = Path(tmp) / "world"
            (base / "region").mkdir(parents=True)
            (base / "empty").mkdir()
            (base / "level.dat").write_bytes(b"x" * 100)
            (base / "region" / "r.0.0.mca").write_bytes(b"y" * 50)
            total_bytes, total_entries = calculate_tree_totals([base])
            self.assertEqual(total_bytes, 150)
            self.assertEqual(total_entries, 5)

    def test_sanitize_archive_name(self):
        self.assertEqual(sanitize_archive_name("my/world"), "my_world")
        self.assertEqual(sanitize_archive_name(""), "archive")


if __name__ == "__main__":
    unittest.main()
