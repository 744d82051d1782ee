"""
Tests for the download cleanup routine.
"""

import os
import tempfile
import time
import unittest

from utils.tasks import cleanup_old_files


class TestCleanupOldFiles(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.dir = self._tmp.name
        self.now = time.time()

    def tearDown(self):
        self._tmp.cleanup()

    def _file(self, name, age_seconds):
        path = os.path.join(self.dir, name)
        with open(path, "wb") as fh:
            fh.write(b"audio")
        mtime = self.now - age_seconds
        os.utime(path, (mtime, mtime))
        return path

    def test_deletes_only_old_files(self):
        old = self._file("song_1_old.mp3", 31 * 60)
        fresh = self._file("song_2_new.mp3", 5 * 60)
        deleted = cleanup_old_files(self.dir, 30 * 60, now=self.now)
        self.assertEqual(deleted, [os.path.abspath(old)])
        self.assertFalse(os.path.exists(old))
        self.assertTrue(os.path.exists(fresh))

    def test_protected_files_survive(self):
        playing = self._file("song_3_playing.webm", 2 * 3600)
        deleted = cleanup_old_files(self.dir, 30 * 60, protected=[playing], now=self.now)
        self.assertEqual(deleted, [])
        self.assertTrue(os.path.exists(playing))

    def test_subdirectories_are_ignored(self):
        os.mkdir(os.path.join(self.dir, "nested"))
        self.assertEqual(cleanup_old_files(self.dir, 0, now=self.now + 10), [])

    def test_missing_directory(self):
        self.assertEqual(cleanup_old_files(os.path.join(self.dir, "nope"), 60), [])


if __name__ == "__main__":
    unittest.main()
