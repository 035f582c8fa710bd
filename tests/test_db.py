import tempfile
import unittest
from pathlib import Path

from repostudio.db import _FILE_COLUMNS, StudioDB, normalize_path
from repostudio.models import FileRecord, format_interval


def _record(file_id, path, modified=0, **kw):
    return FileRecord(id=file_id, name=Path(path).name, path=path,
                      date_modified=format_interval(modified * 100), **kw)


class TestStudioDB(unittest.TestCase):
    def setUp(self):
        self._td = tempfile.TemporaryDirectory()
        self.db = StudioDB(Path(self._td.name) / "studio.db")
        self.db.ensure_schema()
        self.repo = self.db.create_repository("Drums", "one-shots")

    def tearDown(self):
        self.db.conn.close()
        self._td.cleanup()

    def _raw_insert(self, record):
        placeholders = ", ".join("?" for _ in _FILE_COLUMNS)
        self.db.conn.execute(
            f"INSERT INTO files ({', '.join(_FILE_COLUMNS)}) VALUES ({placeholders})",
            self.db._file_values(self.repo, record),
        )
        self.db.conn.commit()

    def test_repository_crud(self):
        self.db.create_repository("Default Repository", repo_id="default")
        names = [r.name for r in self.db.list_repositories()]
        self.assertEqual(names, ["Drums", "Default Repository"])
        self.db.update_repository("default", "Main", "all")
        self.assertEqual(self.db.get_repository("default").description, "all")
        self.db.delete_repository("default")
        self.assertIsNone(self.db.get_repository("default"))

    def test_insert_file_dedupes_by_normalized_path(self):
        first = self.db.insert_file(self.repo, _record("1", "C:\\music\\kick.wav"))
        second = self.db.insert_file(self.repo, _record("2", "C:/music/kick.wav"))
        self.assertEqual(second.id, first.id)
        self.assertEqual(len(self.db.list_files(self.repo)), 1)
        self.assertEqual(self.db.find_file_by_path(self.repo, "C:/music/kick.wav").id, "1")

    def test_update_and_fingerprint(self):
        self.db.insert_file(self.repo, _record("1", "/m/a.wav", meta_title="A"))
        self.db.update_file(self.repo, _record("1", "/m/a.wav", accessible=False, meta_title="B"))
        f = self.db.get_file(self.repo, "1")
        self.assertFalse(f.accessible)
        self.assertEqual(f.meta_title, "B")
        self.db.set_fingerprint(self.repo, "1", "sha1:abc")
        self.assertEqual(self.db.get_file(self.repo, "1").audio_fingerprint, "sha1:abc")

    def test_remove_duplicates_keeps_most_recent(self):
        self._raw_insert(_record("old", "/m/a.wav", modified=10))
        self._raw_insert(_record("new", "/m/a.wav", modified=20))
        self._raw_insert(_record("other", "/m/b.wav", modified=5))
        self.assertEqual(self.db.remove_duplicate_files(self.repo), 1)
        ids = sorted(f.id for f in self.db.list_files(self.repo))
        self.assertEqual(ids, ["new", "other"])

    def test_deleting_repository_cascades(self):
        self.db.insert_file(self.repo, _record("1", "/m/a.wav"))
        self.db.add_tracked_folder(self.repo, "/m")
        self.db.delete_repository(self.repo)
        self.assertEqual(self.db.list_files(self.repo), [])
        self.assertEqual(self.db.list_tracked_folders(), [])

    def test_tracked_folders_and_settings(self):
        self.db.add_tracked_folder(self.repo, "C:\\samples")
        self.db.add_tracked_folder(self.repo, "C:/samples")
        self.assertEqual(self.db.list_tracked_folders(self.repo), [(self.repo, "C:/samples")])
        self.db.remove_tracked_folder(self.repo, "C:/samples")
        self.assertEqual(self.db.list_tracked_folders(self.repo), [])

        self.assertIsNone(self.db.get_setting("selected_repository"))
        self.db.set_setting("selected_repository", "a")
        self.db.set_setting("selected_repository", "b")
        self.assertEqual(self.db.get_setting("selected_repository"), "b")

    def test_normalize_path(self):
        self.assertEqual(normalize_path("a\\b\\c.wav"), "a/b/c.wav")


if __name__ == "__main__":
    unittest.main()
