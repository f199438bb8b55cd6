"""
Local content store.

Uses SQLite to hold story nodes, media items, taxonomy terms and files as
ContentRecords, plus a small key/value state table (last queue update, etc.).
Record fields are stored as a JSON document per row.
"""

import json
import logging
import sqlite3
import tempfile
import time
from uuid import uuid4
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

ENTITY_TYPES = ("node", "media", "taxonomy_term", "file")

# Properties that live on the record itself rather than in its fields
RECORD_PROPERTIES = ("id", "uuid", "bundle")


@dataclass
class ContentRecord:
    """A story node, media item, taxonomy term, or file"""

    entity_type: str
    bundle: str
    fields: Dict[str, Any] = field(default_factory=dict)
    id: Optional[int] = None
    uuid: str = field(default_factory=lambda: str(uuid4()))
    created: Optional[int] = None
    changed: Optional[int] = None
    original_changed: Optional[int] = field(default=None, repr=False, compare=False)

    @property
    def is_new(self) -> bool:
        return self.id is None

    @property
    def label(self) -> str:
        return str(self.fields.get("title") or self.fields.get("name") or "")

    def get(self, name: str, default: Any = None) -> Any:
        return self.fields.get(name, default)

    def value(self, name: str, default: Any = None) -> Any:
        """Scalar form of a field: the "value" of a formatted field, or the field"""
        value = self.fields.get(name, default)
        if isinstance(value, dict) and "value" in value:
            return value["value"]
        return value

    def set(self, name: str, value: Any):
        """Set a field; None clears it"""
        if value is None:
            self.fields.pop(name, None)
        else:
            self.fields[name] = value

    def append(self, name: str, item: Any):
        """Append to a multi-value field"""
        current = self.fields.get(name)
        if current is None:
            current = []
        elif not isinstance(current, list):
            current = [current]
        current.append(item)
        self.fields[name] = current

    def referenced_ids(self, name: str) -> List[Any]:
        """target_ids held in a reference field"""
        items = self.fields.get(name) or []
        if not isinstance(items, list):
            items = [items]
        return [item.get("target_id") for item in items if isinstance(item, dict)]


def _normalize(value: Any) -> Optional[str]:
    if isinstance(value, dict) and "value" in value:
        value = value["value"]
    if isinstance(value, bool):
        value = int(value)
    if value is None:
        return None
    return str(value)


class ContentStore:
    """
    SQLite store for local content records.
    Lookups are by entity type plus any mix of record properties and fields.
    """

    def __init__(self, db_path: str = None, files_dir: str = None):
        """
        Initialize database connection.

        Args:
            db_path: Path to SQLite database file, or ":memory:".
                     Defaults to ~/.npr_story/content.db
            files_dir: Directory that downloaded files are written under.
                       Defaults to a "files" directory beside the database.
        """
        if db_path is None:
            db_dir = Path.home() / ".npr_story"
            db_dir.mkdir(exist_ok=True)
            db_path = str(db_dir / "content.db")

        if files_dir is None:
            if db_path == ":memory:":
                files_dir = str(Path(tempfile.gettempdir()) / "npr_story_files")
            else:
                files_dir = str(Path(db_path).parent / "files")

        self.db_path = db_path
        self.files_dir = Path(files_dir)
        self.conn = sqlite3.connect(db_path)
        self.conn.row_factory = sqlite3.Row
        self._create_tables()

    def _create_tables(self):
        """Create database tables if they don't exist."""
        cursor = self.conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS records (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                uuid TEXT NOT NULL UNIQUE,
                entity_type TEXT NOT NULL,
                bundle TEXT NOT NULL,
                fields TEXT NOT NULL,
                created INTEGER NOT NULL,
                changed INTEGER NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS state (
                key TEXT PRIMARY KEY,
                value TEXT,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_records_type_bundle
            ON records(entity_type, bundle)
        """)

        self.conn.commit()

    def _row_to_record(self, row: sqlite3.Row) -> ContentRecord:
        return ContentRecord(
            entity_type=row["entity_type"],
            bundle=row["bundle"],
            fields=json.loads(row["fields"]),
            id=row["id"],
            uuid=row["uuid"],
            created=row["created"],
            changed=row["changed"],
            original_changed=row["changed"],
        )

    def create(self, entity_type: str, bundle: str, **fields) -> ContentRecord:
        """Build a new, unsaved record"""
        if entity_type not in ENTITY_TYPES:
            raise ValueError(f"Unknown entity type: {entity_type}")
        return ContentRecord(entity_type=entity_type, bundle=bundle or "", fields=dict(fields))

    def load(self, entity_type: str, record_id: Any) -> Optional[ContentRecord]:
        """Load one record by its local id."""
        cursor = self.conn.cursor()
        cursor.execute(
            "SELECT * FROM records WHERE entity_type = ? AND id = ?",
            (entity_type, record_id),
        )
        row = cursor.fetchone()
        return self._row_to_record(row) if row else None

    def load_multiple(self, entity_type: str, record_ids: List[Any]) -> List[ContentRecord]:
        records = [self.load(entity_type, record_id) for record_id in record_ids]
        return [record for record in records if record is not None]

    def load_by_properties(self, entity_type: str, properties: Dict[str, Any]) -> List[ContentRecord]:
        """
        Find records whose properties and fields match every given value.

        Args:
            entity_type: "node", "media", "taxonomy_term" or "file"
            properties: record properties (id, uuid, bundle) or field names

        Returns:
            Matching records, oldest first
        """
        query = "SELECT * FROM records WHERE entity_type = ?"
        params: List[Any] = [entity_type]
        for name in RECORD_PROPERTIES:
            if name in properties:
                query += f" AND {name} = ?"
                params.append(properties[name])
        query += " ORDER BY id"

        cursor = self.conn.cursor()
        cursor.execute(query, params)
        records = [self._row_to_record(row) for row in cursor.fetchall()]

        field_filters = {
            name: _normalize(value)
            for name, value in properties.items()
            if name not in RECORD_PROPERTIES
        }
        return [
            record
            for record in records
            if all(_normalize(record.fields.get(name)) == value for name, value in field_filters.items())
        ]

    def save(self, record: ContentRecord) -> ContentRecord:
        """
        Insert or update a record.

        The changed timestamp is set to now unless it was set explicitly
        since the record was loaded.
        """
        now = int(time.time())
        if record.created is None:
            record.created = now
        if record.changed is None or record.changed == record.original_changed:
            record.changed = now

        cursor = self.conn.cursor()
        if record.is_new:
            cursor.execute(
                """
                INSERT INTO records (uuid, entity_type, bundle, fields, created, changed)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    record.uuid,
                    record.entity_type,
                    record.bundle,
                    json.dumps(record.fields),
                    record.created,
                    record.changed,
                ),
            )
            record.id = cursor.lastrowid
        else:
            cursor.execute(
                """
                UPDATE records SET bundle = ?, fields = ?, created = ?, changed = ?
                WHERE id = ?
                """,
                (record.bundle, json.dumps(record.fields), record.created, record.changed, record.id),
            )
        self.conn.commit()
        record.original_changed = record.changed
        logger.debug(f"Saved {record.entity_type} {record.id} ({record.bundle})")
        return record

    def delete(self, record: ContentRecord):
        """Delete a record; a file record also removes its file."""
        if record.is_new:
            return
        if record.entity_type == "file":
            path = self.file_path(record)
            if path and path.exists():
                path.unlink()
        cursor = self.conn.cursor()
        cursor.execute("DELETE FROM records WHERE id = ?", (record.id,))
        self.conn.commit()

    def count(self, entity_type: str, bundle: str = None) -> int:
        cursor = self.conn.cursor()
        if bundle is None:
            cursor.execute("SELECT COUNT(*) as count FROM records WHERE entity_type = ?", (entity_type,))
        else:
            cursor.execute(
                "SELECT COUNT(*) as count FROM records WHERE entity_type = ? AND bundle = ?",
                (entity_type, bundle),
            )
        return cursor.fetchone()["count"]

    def get_stats(self) -> Dict[str, int]:
        """Record counts per entity type."""
        stats = {entity_type: self.count(entity_type) for entity_type in ENTITY_TYPES}
        stats["total"] = sum(stats.values())
        return stats

    def write_file(self, data: bytes, destination: str, replace: bool = False) -> ContentRecord:
        """
        Write file data under the files directory and record it.

        Args:
            data: File contents
            destination: Path relative to the files directory
                         (e.g., "npr_story_images/2024/01/02/photo.jpg")
            replace: Overwrite an existing file instead of renaming

        Returns:
            The saved file record
        """
        target = self.files_dir / destination
        target.parent.mkdir(parents=True, exist_ok=True)

        if not replace:
            counter = 0
            stem, suffix = target.stem, target.suffix
            while target.exists():
                target = target.with_name(f"{stem}_{counter}{suffix}")
                counter += 1

        target.write_bytes(data)
        relative = target.relative_to(self.files_dir).as_posix()
        record = self.create("file", "file", filename=target.name, uri=f"public://{relative}")
        return self.save(record)

    def file_path(self, record: ContentRecord) -> Optional[Path]:
        """Filesystem path of a file record."""
        uri = record.get("uri", "")
        if not uri.startswith("public://"):
            return None
        return self.files_dir / uri[len("public://"):]

    def get_state(self, key: str, default: Any = None) -> Any:
        cursor = self.conn.cursor()
        cursor.execute("SELECT value FROM state WHERE key = ?", (key,))
        row = cursor.fetchone()
        return json.loads(row["value"]) if row else default

    def set_state(self, key: str, value: Any):
        cursor = self.conn.cursor()
        cursor.execute(
            "INSERT OR REPLACE INTO state (key, value, updated_at) VALUES (?, ?, CURRENT_TIMESTAMP)",
            (key, json.dumps(value)),
        )
        self.conn.commit()

    def delete_state(self, key: str):
        cursor = self.conn.cursor()
        cursor.execute("DELETE FROM state WHERE key = ?", (key,))
        self.conn.commit()

    def close(self):
        """Close database connection."""
        self.conn.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
