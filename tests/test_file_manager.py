"""
Tests for checksums, the file catalog, and filename disambiguation
"""

import os
import shutil
import tempfile
import unittest
from pathlib import Path

from filesync.exceptions import DirectoryAccessError, FilenameCollisionError
from filesync.file_manager import (
    FileEntity, FileManager, calculate_checksum, find_match,
    is_valid_filename, resolve_filename,
)


class TempDirTestCase(unittest.TestCase):

    def setUp(self):
        self.test_dir = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.test_dir, ignore_errors=True)

    def make_file(self, name, data):
        path = Path(self.test_dir) / name
        path.write_bytes(data)
        return path


class TestChecksum(TempDirTestCase):

    def test_known_value(self):
        self.assertEqual(calculate_checksum(self.make_file("a.mp3", b"hello")), "3610a686")

    def test_empty_file_is_not_padded(self):
        self.assertEqual(calculate_checksum(self.make_file("empty", b"")), "0")

    def test_stable_across_calls(self):
        path = self.make_file("a.bin", os.urandom(300000))
        self.assertEqual(calculate_checksum(path), calculate_checksum(path))

    def test_single_byte_change_changes_checksum(self):
        path = self.make_file("a.bin", b"hello world")
        before = calculate_checksum(path)
        self.make_file("a.bin", b"hello worle")
        self.assertNotEqual(before, calculate_checksum(path))


class TestResolveFilename(unittest.TestCase):

    def test_free_name_is_unchanged(self):
        self.assertEqual(resolve_filename("song.mp3", set()), "song.mp3")
        self.assertEqual(resolve_filename("song.mp3", {"other.mp3"}), "song.mp3")

    def test_first_collision(self):
        self.assertEqual(resolve_filename("song.mp3", {"song.mp3"}), "song (1).mp3")

    def test_increments_digit(self):
        existing = {"song.mp3", "song (1).mp3", "song (2).mp3"}
        self.assertEqual(resolve_filename("song.mp3", existing), "song (3).mp3")

    def test_inserts_before_first_period(self):
        self.assertEqual(resolve_filename("a.tar.gz", {"a.tar.gz"}), "a (1).tar.gz")

    def test_name_without_period(self):
        self.assertEqual(resolve_filename("README", {"README"}), "README (1)")
        self.assertEqual(resolve_filename("README", {"README", "README (1)"}), "README (2)")

    def test_never_returns_existing_name(self):
        existing = {"x.ogg"} | {f"x ({n}).ogg" for n in range(1, 9)}
        resolved = resolve_filename("x.ogg", existing)
        self.assertNotIn(resolved, existing)
        self.assertEqual(resolved, "x (9).ogg")

    def test_overflow_is_flagged(self):
        existing = {"x.ogg"} | {f"x ({n}).ogg" for n in range(1, 10)}
        with self.assertRaises(FilenameCollisionError):
            resolve_filename("x.ogg", existing)


class TestIsValidFilename(unittest.TestCase):

    def test_accepts_plain_names(self):
        for name in ("a.mp3", "my song (live).flac", ".hidden", "été.ogg"):
            self.assertTrue(is_valid_filename(name), name)

    def test_rejects_paths_and_specials(self):
        for name in ("", ".", "..", "../etc/passwd", "dir/file", "dir\\file", "a\x00b", "x" * 256):
            self.assertFalse(is_valid_filename(name), repr(name))

    def test_encoding_of_names(self):
        self.assertTrue(is_valid_filename("caf\udce9.mp3"))  # Undecodable byte from a scan
        self.assertFalse(is_valid_filename("\ud800.mp3"))


class TestFileManager(TempDirTestCase):

    def setUp(self):
        super().setUp()
        self.manager = FileManager(self.test_dir)

    def test_scan_lists_regular_files_only(self):
        self.make_file("a.mp3", b"hello")
        os.mkdir(os.path.join(self.test_dir, "subdir"))
        catalog = self.manager.scan()
        self.assertEqual([e.filename for e in catalog], ["a.mp3"])
        self.assertEqual(catalog[0].checksum, "3610a686")
        self.assertEqual(catalog[0].path, os.path.join(self.test_dir, "a.mp3"))

    def test_scan_is_sorted_and_repeatable(self):
        self.make_file("b.mp3", b"bbb")
        self.make_file("a.mp3", b"aaa")
        first = self.manager.scan()
        self.assertEqual([e.filename for e in first], ["a.mp3", "b.mp3"])
        self.assertEqual(first, self.manager.scan())

    def test_scan_empty_directory(self):
        self.assertEqual(self.manager.scan(), [])

    def test_scan_missing_directory_is_fatal(self):
        manager = FileManager(os.path.join(self.test_dir, "missing"))
        with self.assertRaises(DirectoryAccessError):
            manager.scan()

    def test_find_match_requires_both_fields(self):
        self.make_file("a.mp3", b"hello")
        catalog = self.manager.scan()
        self.assertEqual(find_match(catalog, "a.mp3", "3610a686").filename, "a.mp3")
        self.assertIsNone(find_match(catalog, "a.mp3", "deadbeef"))
        self.assertIsNone(find_match(catalog, "b.mp3", "3610a686"))

    def test_existing_filenames_include_directories(self):
        self.make_file("a.mp3", b"hello")
        os.mkdir(os.path.join(self.test_dir, "b.mp3"))
        self.assertEqual(self.manager.existing_filenames(), {"a.mp3", "b.mp3"})

    def test_write_and_read_base64(self):
        entity = self.manager.write_base64("a.mp3", "aGVsbG8=")
        self.assertEqual(entity, FileEntity(os.path.join(self.test_dir, "a.mp3"), "a.mp3", "3610a686"))
        self.assertEqual(Path(entity.path).read_bytes(), b"hello")
        self.assertEqual(self.manager.read_base64(entity), "aGVsbG8=")

    def test_remove(self):
        entity = self.manager.write_base64("a.mp3", "aGVsbG8=")
        self.assertTrue(self.manager.remove(entity))
        self.assertFalse(os.path.exists(entity.path))
        with self.assertLogs("filesync.file_manager", level="ERROR"):
            self.assertFalse(self.manager.remove(entity))

    def test_to_wire(self):
        entity = FileEntity("/x/a.mp3", "a.mp3", "3610a686")
        self.assertEqual(entity.to_wire(), {"filename": "a.mp3", "checksum": "3610a686"})
        self.assertEqual(entity.to_wire(data="aGVsbG8="),
                         {"filename": "a.mp3", "checksum": "3610a686", "data": "aGVsbG8="})


if __name__ == "__main__":
    unittest.main()
