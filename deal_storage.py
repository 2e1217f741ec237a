"""
Shared record storage using JSON files.

Each table is a directory holding one JSON document per record, and each
bucket is a directory of binary objects. The server, the extraction graph
and the tests all receive a Storage instance explicitly; nothing here is a
module-level singleton.
"""
import json
import logging
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

logger = logging.getLogger(__name__)


class RecordNotFoundError(Exception):
    """Raised when a record id does not exist in its table."""

    def __init__(self, table: str, record_id: str):
        self.table = table
        self.record_id = record_id
        super().__init__(f"{table} record not found: {record_id}")


class StorageError(Exception):
    """Raised when a bucket object cannot be read or written."""


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class RecordStore:
    """A single table of JSON records keyed by id."""

    def __init__(self, root: Path, table: str):
        self.table = table
        self.directory = root / table
        self.directory.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _path(self, record_id: str) -> Path:
        return self.directory / f"{record_id}.json"

    def _write(self, record: Dict[str, Any]) -> None:
        with open(self._path(record["id"]), "w") as f:
            json.dump(record, f, indent=2, default=str)

    def insert(self, record: Dict[str, Any]) -> Dict[str, Any]:
        """Save a new record, assigning id and timestamps."""
        now = utc_now().isoformat()
        saved = dict(record)
        saved.setdefault("id", uuid.uuid4().hex)
        saved.setdefault("created_at", now)
        saved["updated_at"] = now
        with self._lock:
            self._write(saved)
        logger.debug(f"Inserted {self.table}/{saved['id']}")
        return saved

    def get(self, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from disk, or None if it does not exist."""
        file_path = self._path(record_id)
        if not file_path.exists():
            return None
        with open(file_path, "r") as f:
            return json.load(f)

    def require(self, record_id: str) -> Dict[str, Any]:
        record = self.get(record_id)
        if record is None:
            raise RecordNotFoundError(self.table, record_id)
        return record

    def update(self, record_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        """Update specific fields of a record."""
        with self._lock:
            record = self.get(record_id)
            if record is None:
                raise RecordNotFoundError(self.table, record_id)
            record.update(changes)
            record["updated_at"] = utc_now().isoformat()
            self._write(record)
        return record

    def delete(self, record_id: str) -> bool:
        file_path = self._path(record_id)
        if file_path.exists():
            file_path.unlink()
            return True
        return False

    def list_all(self) -> List[Dict[str, Any]]:
        records = []
        for file_path in sorted(self.directory.glob("*.json")):
            try:
                with open(file_path, "r") as f:
                    records.append(json.load(f))
            except (OSError, json.JSONDecodeError) as e:
                logger.warning(f"Skipping unreadable record {file_path}: {e}")
        return records

    def find(self, **equals: Any) -> List[Dict[str, Any]]:
        """All records whose fields equal the given keyword values."""
        return [
            r for r in self.list_all()
            if all(r.get(k) == v for k, v in equals.items())
        ]

    def find_one(self, **equals: Any) -> Optional[Dict[str, Any]]:
        matches = self.find(**equals)
        return matches[0] if matches else None


class FileBucket:
    """Binary object storage (contract PDFs, email attachments)."""

    def __init__(self, root: Path, name: str):
        self.name = name
        self.directory = root / "buckets" / name
        self.directory.mkdir(parents=True, exist_ok=True)

    def _resolve(self, key: str) -> Path:
        path = (self.directory / key).resolve()
        if self.directory.resolve() not in path.parents:
            raise StorageError(f"Invalid object key: {key}")
        return path

    def upload(self, key: str, data: bytes) -> str:
        path = self._resolve(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            path.write_bytes(data)
        except OSError as e:
            raise StorageError(f"Upload to {self.name}/{key} failed: {e}") from e
        return key

    def download(self, key: str) -> bytes:
        path = self._resolve(key)
        if not path.exists():
            raise StorageError(f"Object not found: {self.name}/{key}")
        return path.read_bytes()

    def exists(self, key: str) -> bool:
        return self._resolve(key).exists()


class Storage:
    """All tables and buckets used by the CRM core."""

    TABLES = (
        "users",
        "deals",
        "deliverables",
        "contracts",
        "extraction_attempts",
        "emails",
        "brands",
        "contacts",
    )

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self.users = RecordStore(self.root, "users")
        self.deals = RecordStore(self.root, "deals")
        self.deliverables = RecordStore(self.root, "deliverables")
        self.contracts = RecordStore(self.root, "contracts")
        self.extraction_attempts = RecordStore(self.root, "extraction_attempts")
        self.emails = RecordStore(self.root, "emails")
        self.brands = RecordStore(self.root, "brands")
        self.contacts = RecordStore(self.root, "contacts")
        self.deal_files = FileBucket(self.root, "deal-files")
        self.email_attachments = FileBucket(self.root, "email-attachments")

    def count_extraction_attempts(
        self, user_id: str, start: datetime, end: datetime
    ) -> int:
        """
        Count a user's extraction attempts in [start, end) that produced
        something other than a 'none' confidence.
        """
        count = 0
        for attempt in self.extraction_attempts.find(user_id=user_id):
            if attempt.get("confidence") == "none":
                continue
            created = _parse_timestamp(attempt["created_at"])
            if start <= created < end:
                count += 1
        return count
