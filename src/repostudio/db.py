import sqlite3
import threading
import uuid
from pathlib import Path
from typing import Dict, Any, List, Optional
from loguru import logger

from .models import FileRecord, Repository, parse_interval

_FILE_COLUMNS = (
    "id", "repo_id", "name", "path", "norm_path", "encoding", "date_created", "date_modified",
    "tags", "related_files", "audio_fingerprint", "accessible",
    "meta_title", "meta_comment", "meta_album_artist", "meta_album", "meta_track_number",
    "meta_genre", "meta_bit_rate", "meta_channels", "meta_sample_rate", "meta_size_on_disk",
)


def normalize_path(path: str) -> str:
    return str(path).replace("\\", "/")


class StudioDB:
    """Catalog storage: repositories, their files, tracked folders and settings."""

    def __init__(self, path: Path):
        self.path = path
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = threading.local()

    @property
    def conn(self) -> sqlite3.Connection:
        if not hasattr(self._conn, "connection"):
            self._conn.connection = sqlite3.connect(self.path, check_same_thread=False)
            self._conn.connection.row_factory = sqlite3.Row
            self._conn.connection.execute("PRAGMA foreign_keys = ON;")
            self._conn.connection.execute("PRAGMA journal_mode = WAL;")
            self._conn.connection.execute("PRAGMA synchronous = NORMAL;")
        return self._conn.connection

    def ensure_schema(self):
        """Ensure the database schema is up to date with migrations."""
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS repositories (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                description TEXT NOT NULL DEFAULT ''
            )
        """)
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS files (
                id TEXT PRIMARY KEY,
                repo_id TEXT NOT NULL REFERENCES repositories(id) ON DELETE CASCADE,
                name TEXT NOT NULL,
                path TEXT NOT NULL,
                norm_path TEXT NOT NULL,
                encoding TEXT NOT NULL DEFAULT '',
                date_created TEXT NOT NULL DEFAULT '',
                date_modified TEXT NOT NULL DEFAULT '',
                tags TEXT,
                related_files TEXT,
                audio_fingerprint TEXT,
                accessible INTEGER NOT NULL DEFAULT 1 CHECK (accessible IN (0,1)),
                meta_title TEXT,
                meta_comment TEXT,
                meta_album_artist TEXT,
                meta_album TEXT,
                meta_track_number TEXT,
                meta_genre TEXT,
                meta_bit_rate TEXT,
                meta_channels TEXT,
                meta_sample_rate TEXT,
                meta_size_on_disk TEXT
            )
        """)
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS tracked_folders (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                repo_id TEXT NOT NULL REFERENCES repositories(id) ON DELETE CASCADE,
                folder_path TEXT NOT NULL,
                UNIQUE(repo_id, folder_path)
            )
        """)
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS settings (
                name TEXT PRIMARY KEY,
                value TEXT
            )
        """)

        self.conn.execute("CREATE INDEX IF NOT EXISTS idx_files_repo ON files(repo_id);")
        self.conn.execute("CREATE INDEX IF NOT EXISTS idx_files_norm_path ON files(repo_id, norm_path);")

        # Schema migrations for existing databases
        cursor = self.conn.cursor()
        cursor.execute("PRAGMA table_info(files)")
        columns = [col[1] for col in cursor.fetchall()]
        if "related_files" not in columns:
            self.conn.execute("ALTER TABLE files ADD COLUMN related_files TEXT;")
            logger.info("DB migration: Added related_files column to files table")

        self.conn.commit()

    def begin(self):
        self.conn.execute("BEGIN;")

    def commit(self):
        self.conn.commit()

    def rollback(self):
        self.conn.rollback()

    # -- repositories -------------------------------------------------------

    def create_repository(self, name: str, description: str = "", repo_id: Optional[str] = None) -> str:
        rid = repo_id or str(uuid.uuid4())
        self.conn.execute(
            "INSERT INTO repositories (id, name, description) VALUES (?, ?, ?)",
            (rid, name, description),
        )
        self.conn.commit()
        return rid

    def get_repository(self, repo_id: str) -> Optional[Repository]:
        row = self.conn.execute("SELECT * FROM repositories WHERE id = ?", (repo_id,)).fetchone()
        return Repository.from_dict(dict(row)) if row else None

    def list_repositories(self) -> List[Repository]:
        rows = self.conn.execute("SELECT * FROM repositories ORDER BY rowid").fetchall()
        return [Repository.from_dict(dict(r)) for r in rows]

    def update_repository(self, repo_id: str, name: str, description: str) -> None:
        self.conn.execute(
            "UPDATE repositories SET name = ?, description = ? WHERE id = ?",
            (name, description, repo_id),
        )
        self.conn.commit()

    def delete_repository(self, repo_id: str) -> None:
        self.conn.execute("DELETE FROM repositories WHERE id = ?", (repo_id,))
        self.conn.commit()

    # -- files ---------------------------------------------------------------

    @staticmethod
    def _row_to_file(row: sqlite3.Row) -> FileRecord:
        data = dict(row)
        data["accessible"] = bool(data.get("accessible", 1))
        return FileRecord.from_dict(data)

    def list_files(self, repo_id: str) -> List[FileRecord]:
        rows = self.conn.execute(
            "SELECT * FROM files WHERE repo_id = ? ORDER BY rowid", (repo_id,)
        ).fetchall()
        return [self._row_to_file(r) for r in rows]

    def get_file(self, repo_id: str, file_id: str) -> Optional[FileRecord]:
        row = self.conn.execute(
            "SELECT * FROM files WHERE repo_id = ? AND id = ?", (repo_id, file_id)
        ).fetchone()
        return self._row_to_file(row) if row else None

    def find_file_by_path(self, repo_id: str, path: str) -> Optional[FileRecord]:
        row = self.conn.execute(
            "SELECT * FROM files WHERE repo_id = ? AND norm_path = ? LIMIT 1",
            (repo_id, normalize_path(path)),
        ).fetchone()
        return self._row_to_file(row) if row else None

    def _file_values(self, repo_id: str, record: FileRecord) -> List[Any]:
        data: Dict[str, Any] = record.to_dict()
        data["repo_id"] = repo_id
        data["norm_path"] = normalize_path(record.path)
        data["accessible"] = 1 if record.accessible else 0
        return [data.get(c) for c in _FILE_COLUMNS]

    def insert_file(self, repo_id: str, record: FileRecord) -> FileRecord:
        """Insert a file record; an existing record with the same path wins.

        Returns the stored record.
        """
        existing = self.find_file_by_path(repo_id, record.path)
        if existing is not None:
            logger.debug(f"File already tracked, skipping: {record.path}")
            return existing
        placeholders = ", ".join("?" for _ in _FILE_COLUMNS)
        self.conn.execute(
            f"INSERT INTO files ({', '.join(_FILE_COLUMNS)}) VALUES ({placeholders})",
            self._file_values(repo_id, record),
        )
        self.conn.commit()
        return record

    def update_file(self, repo_id: str, record: FileRecord) -> None:
        cols = [c for c in _FILE_COLUMNS if c not in ("id", "repo_id")]
        values = dict(zip(_FILE_COLUMNS, self._file_values(repo_id, record)))
        self.conn.execute(
            f"UPDATE files SET {', '.join(f'{c} = ?' for c in cols)} WHERE repo_id = ? AND id = ?",
            [values[c] for c in cols] + [repo_id, record.id],
        )
        self.conn.commit()

    def set_fingerprint(self, repo_id: str, file_id: str, fingerprint: Optional[str]) -> None:
        self.conn.execute(
            "UPDATE files SET audio_fingerprint = ? WHERE repo_id = ? AND id = ?",
            (fingerprint, repo_id, file_id),
        )
        self.conn.commit()

    def delete_file(self, repo_id: str, file_id: str) -> None:
        self.conn.execute("DELETE FROM files WHERE repo_id = ? AND id = ?", (repo_id, file_id))
        self.conn.commit()

    def remove_duplicate_files(self, repo_id: str) -> int:
        """Keep one record per normalized path: the most recently modified one.

        Returns the number of rows deleted.
        """
        groups: Dict[str, List[FileRecord]] = {}
        for f in self.list_files(repo_id):
            groups.setdefault(normalize_path(f.path), []).append(f)
        deleted = 0
        try:
            self.begin()
            for norm, group in groups.items():
                if len(group) < 2:
                    continue
                best = max(group, key=lambda f: parse_interval(f.date_modified))
                for f in group:
                    if f.id != best.id:
                        self.conn.execute("DELETE FROM files WHERE repo_id = ? AND id = ?", (repo_id, f.id))
                        logger.info(f"Deleted duplicate file with id: {f.id} (path: {norm})")
                        deleted += 1
            self.commit()
        except Exception:
            self.rollback()
            raise
        return deleted

    # -- tracked folders -----------------------------------------------------

    def add_tracked_folder(self, repo_id: str, folder_path: str) -> None:
        self.conn.execute(
            "INSERT OR IGNORE INTO tracked_folders (repo_id, folder_path) VALUES (?, ?)",
            (repo_id, normalize_path(folder_path)),
        )
        self.conn.commit()

    def remove_tracked_folder(self, repo_id: str, folder_path: str) -> None:
        self.conn.execute(
            "DELETE FROM tracked_folders WHERE repo_id = ? AND folder_path = ?",
            (repo_id, normalize_path(folder_path)),
        )
        self.conn.commit()

    def list_tracked_folders(self, repo_id: Optional[str] = None) -> List[tuple]:
        """Return (repo_id, folder_path) pairs, optionally for one repository."""
        if repo_id is None:
            rows = self.conn.execute("SELECT repo_id, folder_path FROM tracked_folders ORDER BY id").fetchall()
        else:
            rows = self.conn.execute(
                "SELECT repo_id, folder_path FROM tracked_folders WHERE repo_id = ? ORDER BY id", (repo_id,)
            ).fetchall()
        return [(r["repo_id"], r["folder_path"]) for r in rows]

    # -- settings ------------------------------------------------------------

    def get_setting(self, name: str) -> Optional[str]:
        row = self.conn.execute("SELECT value FROM settings WHERE name = ?", (name,)).fetchone()
        return row["value"] if row else None

    def set_setting(self, name: str, value: Optional[str]) -> None:
        self.conn.execute(
            "INSERT INTO settings (name, value) VALUES (?, ?) "
            "ON CONFLICT(name) DO UPDATE SET value = excluded.value",
            (name, value),
        )
        self.conn.commit()
