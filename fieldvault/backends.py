"""
Blob backends for the secure store: opaque string values keyed by name.

The backend never sees plaintext; SecureStore encrypts before calling set_item.
- MemoryBackend: process-local dict (tests, ephemeral sessions).
- JsonFileBackend: dict persisted as one JSON file.
- SqlBackend: SQLAlchemy table, one row per key (SQLite by default).
"""

import json
import threading
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from sqlalchemy import Column, String, Text, create_engine, select
from sqlalchemy.orm import Session, declarative_base
from sqlalchemy.pool import StaticPool

from . import config

Base = declarative_base()


class StoredBlob(Base):
    __tablename__ = "fieldvault_blobs"
    key = Column(String(512), primary_key=True)
    value = Column(Text, nullable=False)


class StoreBackend:
    """Abstract backend for (key, blob) entries."""

    def get_item(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def set_item(self, key: str, value: str) -> None:
        raise NotImplementedError

    def remove_item(self, key: str) -> None:
        raise NotImplementedError

    def keys(self) -> List[str]:
        raise NotImplementedError

    def items(self, prefix: str = "") -> Iterator[tuple]:
        """Yield (key, blob) for keys starting with prefix."""
        for k in self.keys():
            if k.startswith(prefix):
                v = self.get_item(k)
                if v is not None:
                    yield k, v

    def close(self) -> None:
        """Release resources."""
        pass


class MemoryBackend(StoreBackend):
    def __init__(self) -> None:
        self._data: Dict[str, str] = {}
        self._lock = threading.RLock()

    def get_item(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set_item(self, key: str, value: str) -> None:
        with self._lock:
            self._data[key] = value

    def remove_item(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self) -> List[str]:
        return list(self._data)


class JsonFileBackend(StoreBackend):
    """In-memory dict persisted as JSON after every write."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._data: Dict[str, str] = {}
        self._lock = threading.RLock()
        if self._path.exists():
            with open(self._path, "r", encoding="utf-8") as f:
                self._data = json.load(f)

    def get_item(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set_item(self, key: str, value: str) -> None:
        with self._lock:
            self._data[key] = value
            self._save()

    def remove_item(self, key: str) -> None:
        with self._lock:
            if self._data.pop(key, None) is not None:
                self._save()

    def keys(self) -> List[str]:
        return list(self._data)

    def _save(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with open(self._path, "w", encoding="utf-8") as f:
            json.dump(self._data, f, indent=2)


class SqlBackend(StoreBackend):
    """SQLAlchemy-backed store. Defaults to FIELDVAULT_STORE_URL (in-memory SQLite)."""

    def __init__(self, url: Optional[str] = None) -> None:
        url = url or config.STORE_URL
        kwargs: dict = {}
        if url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if url in ("sqlite://", "sqlite:///:memory:"):
                # one shared connection, otherwise each connection sees an empty database
                kwargs["poolclass"] = StaticPool
        self._engine = create_engine(url, **kwargs)
        Base.metadata.create_all(bind=self._engine)

    def get_item(self, key: str) -> Optional[str]:
        with Session(self._engine) as session:
            row = session.get(StoredBlob, key)
            return row.value if row is not None else None

    def set_item(self, key: str, value: str) -> None:
        with Session(self._engine) as session:
            session.merge(StoredBlob(key=key, value=value))
            session.commit()

    def remove_item(self, key: str) -> None:
        with Session(self._engine) as session:
            row = session.get(StoredBlob, key)
            if row is not None:
                session.delete(row)
                session.commit()

    def keys(self) -> List[str]:
        with Session(self._engine) as session:
            return list(session.scalars(select(StoredBlob.key).order_by(StoredBlob.key)))

    def close(self) -> None:
        self._engine.dispose()
