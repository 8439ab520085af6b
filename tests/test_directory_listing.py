import os
import random
import tempfile
import time
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest import mock

from filebrowser import storage
from filebrowser.storage import EntryKind


class FormatSizeTests(unittest.TestCase):
    def test_known_sizes(self):
        cases = {
            0: "0 B",
            1: "1 B",
            1023: "1023 B",
            1024: "1.0 KB",
            1536: "1.5 KB",
            1048576: "1.0 MB",
            5 * 1024 ** 3: "5.0 GB",
            1024 ** 4: "1.0 TB",
            1024 ** 5: "1.0 PB",
            1024 ** 6: "1.0 EB",
        }
        for size, expected in cases.items():
            with self.subTest(size=size):
                self.assertEqual(storage.format_size(size), expected)

    def test_just_below_next_unit_stays_in_current_unit(self):
        self.assertEqual(storage.format_size(1024 * 1024 - 1), "1024.0 KB")

    def test_sizes_beyond_exabytes_stay_in_exabytes(self):
        self.assertEqual(storage.format_size(2048 * 1024 ** 6), "2048.0 EB")


class FormatModifiedTests(unittest.TestCase):
    def test_includes_minutes_and_offset(self):
        moment = datetime(2024, 3, 9, 14, 5, 59, tzinfo=timezone(timedelta(hours=5, minutes=30)))
        formatted = storage.format_modified(moment)
        local = moment.astimezone()
        self.assertTrue(formatted.startswith(local.strftime("%Y-%m-%d %H:%M")))
        self.assertRegex(formatted, r"^\d{4}-\d{2}-\d{2} \d{2}:\d{2}[+-]\d{2}:\d{2}$")

    def test_accepts_epoch_seconds(self):
        self.assertRegex(storage.format_modified(0), r"^\d{4}-\d{2}-\d{2} \d{2}:\d{2}[+-]\d{2}:\d{2}$")


class ItemCountTests(unittest.TestCase):
    def test_singular_and_plural(self):
        self.assertEqual(storage.format_item_count(0), "0 items")
        self.assertEqual(storage.format_item_count(1), "1 item")
        self.assertEqual(storage.format_item_count(7), "7 items")

    def test_unreadable_directory_shows_placeholder(self):
        self.assertEqual(storage.format_item_count(None), "-")
        self.assertIsNone(storage.count_items("/definitely/not/here"))


class ListDirectoryTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.root = Path(self.tmp.name)

    def tearDown(self):
        self.tmp.cleanup()

    def test_directories_first_then_files_by_name(self):
        (self.root / "zeta.txt").write_bytes(b"z")
        (self.root / "Alpha.txt").write_bytes(b"a")
        (self.root / "beta").mkdir()
        (self.root / "Gamma").mkdir()
        (self.root / "alpha.txt").write_bytes(b"aa")

        entries = storage.list_directory(self.root)
        names = [entry.name for entry in entries]
        self.assertEqual(names, ["Gamma", "beta", "Alpha.txt", "alpha.txt", "zeta.txt"])

    def test_random_names_are_always_grouped_and_sorted(self):
        rng = random.Random(7)
        alphabet = "abcXYZ019_-.é"
        names = set()
        while len(names) < 40:
            names.add("".join(rng.choice(alphabet) for _ in range(rng.randint(1, 6))))
        names.discard(".")
        names.discard("..")
        for name in names:
            if rng.random() < 0.4:
                (self.root / name).mkdir()
            else:
                (self.root / name).write_bytes(b"x")

        entries = storage.list_directory(self.root)
        self.assertEqual(len(entries), len(names))
        kinds = [entry.is_dir for entry in entries]
        self.assertEqual(kinds, sorted(kinds, reverse=True))
        dirs = [entry.name for entry in entries if entry.is_dir]
        files = [entry.name for entry in entries if not entry.is_dir]
        self.assertEqual(dirs, sorted(dirs))
        self.assertEqual(files, sorted(files))

    def test_entry_metadata(self):
        (self.root / "data.bin").write_bytes(b"x" * 1536)
        sub = self.root / "sub"
        sub.mkdir()
        (sub / "one.txt").write_text("1")
        empty = self.root / "empty"
        empty.mkdir()
        mtime = time.time() - 3600
        os.utime(self.root / "data.bin", (mtime, mtime))

        entries = {entry.name: entry for entry in storage.list_directory(self.root)}

        data = entries["data.bin"]
        self.assertEqual(data.kind, EntryKind.FILE)
        self.assertEqual(data.display_size, "1.5 KB")
        self.assertEqual(data.relative_url, "data.bin")
        self.assertEqual(data.display_modified, storage.format_modified(mtime))

        self.assertEqual(entries["sub"].kind, EntryKind.DIRECTORY)
        self.assertEqual(entries["sub"].display_size, "1 item")
        self.assertEqual(entries["sub"].relative_url, "sub/")
        self.assertEqual(entries["empty"].display_size, "0 items")

    def test_only_immediate_children_are_listed(self):
        nested = self.root / "a" / "b"
        nested.mkdir(parents=True)
        (nested / "deep.txt").write_text("deep")
        names = [entry.name for entry in storage.list_directory(self.root)]
        self.assertEqual(names, ["a"])

    def test_relative_url_is_percent_encoded(self):
        (self.root / "a b#c?.txt").write_text("x")
        (self.root / "x:y").mkdir()
        entries = {entry.name: entry for entry in storage.list_directory(self.root)}
        self.assertEqual(entries["a b#c?.txt"].relative_url, "a%20b%23c%3F.txt")
        self.assertEqual(entries["x:y"].relative_url, "x%3Ay/")

    def test_child_directory_count_failure_shows_placeholder(self):
        (self.root / "locked").mkdir()
        with mock.patch("filebrowser.storage.count_items", return_value=None):
            entries = storage.list_directory(self.root)
        self.assertEqual(entries[0].display_size, "-")

    @unittest.skipUnless(hasattr(os, "symlink"), "symlinks unsupported")
    def test_entries_with_unreadable_metadata_are_skipped(self):
        (self.root / "ok.txt").write_text("ok")
        try:
            os.symlink(self.root / "missing-target", self.root / "dangling")
        except OSError:
            self.skipTest("cannot create symlink")
        names = [entry.name for entry in storage.list_directory(self.root)]
        self.assertEqual(names, ["ok.txt"])

    def test_missing_directory_is_a_hard_error(self):
        with self.assertRaises(storage.DirectoryUnreadableError) as ctx:
            storage.list_directory(self.root / "nope")
        self.assertEqual(ctx.exception.status_code, 500)
        self.assertEqual(ctx.exception.message, "Error reading directory")


if __name__ == "__main__":
    unittest.main()
