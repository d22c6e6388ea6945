"""SQLite persistence for upload/result metadata."""
import logging
import sqlite3
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path

log = logging.getLogger(__name__)

FIELDS = (
    'original_name',
    'original_path',
    'mimetype',
    'size_bytes',
    'processed_name',
    'processed_path',
    'processed_url',
    'style',
)

SCHEMA = """
CREATE TABLE IF NOT EXISTS images (
    id TEXT PRIMARY KEY,
    original_name TEXT NOT NULL,
    original_path TEXT,
    mimetype TEXT NOT NULL,
    size_bytes INTEGER NOT NULL,
    processed_name TEXT,
    processed_path TEXT,
    processed_url TEXT,
    style TEXT NOT NULL DEFAULT 'cartoon',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_images_created_at ON images (created_at);
"""


def _now():
    return datetime.now(timezone.utc)


class ImageStore:
    """Image metadata rows keyed by a uuid hex id.

    A connection is opened per call, so one store can be shared between
    request threads.
    """

    def __init__(self, db_path):
        self.db_path = str(db_path)
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.executescript(SCHEMA)

    def _connect(self):
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute('PRAGMA journal_mode=WAL;')
        return conn

    def _execute(self, query, params=()):
        conn = self._connect()
        try:
            with conn:
                return conn.execute(query, params).fetchall()
        finally:
            conn.close()

    def create(self, **fields):
        """Insert a record and return it.

        Raises:
            ValueError: on unknown field names.
            sqlite3.Error: if the insert fails (e.g. a required field is missing).
        """
        unknown = set(fields) - set(FIELDS)
        if unknown:
            raise ValueError(f"Unknown metadata fields: {', '.join(sorted(unknown))}")

        stamp = _now().isoformat()
        record = {name: fields.get(name) for name in FIELDS}
        record['style'] = record['style'] or 'cartoon'
        record.update(id=uuid.uuid4().hex, created_at=stamp, updated_at=stamp)

        columns = ', '.join(record)
        placeholders = ', '.join('?' for _ in record)
        self._execute(
            f'INSERT INTO images ({columns}) VALUES ({placeholders})',
            tuple(record.values()),
        )
        return record

    def get(self, image_id):
        rows = self._execute('SELECT * FROM images WHERE id = ?', (image_id,))
        return dict(rows[0]) if rows else None

    def older_than(self, cutoff):
        rows = self._execute(
            'SELECT * FROM images WHERE created_at < ? ORDER BY created_at',
            (cutoff.astimezone(timezone.utc).isoformat(),),
        )
        return [dict(row) for row in rows]

    def delete(self, image_id):
        self._execute('DELETE FROM images WHERE id = ?', (image_id,))


def cleanup_old_files(store, root_dir,
                      max_age_hours=24 * 7):
    """Delete files and rows of records older than `max_age_hours`.

    Paths in the records are relative to `root_dir`. Files that are already
    gone are skipped. Returns the number of records removed.
    """
    cutoff = _now() - timedelta(hours=max_age_hours)
    root = Path(root_dir)
    removed = 0
    for record in store.older_than(cutoff):
        for rel in (record.get('original_path'), record.get('processed_path')):
            if not rel:
                continue
            path = root / rel
            try:
                path.unlink()
            except FileNotFoundError:
                pass
            except OSError as e:
                log.warning('Could not delete %s: %s', path, e)
        store.delete(record['id'])
        removed += 1
    log.info('Cleanup removed %d record(s) older than %s', removed, cutoff.isoformat())
    return removed
