"""Content-addressed artefact cache with pluggable blob stores."""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from threading import Lock
from typing import Dict, Optional, Protocol

from sqlalchemy import delete, select

from quire.config import CacheConfig
from quire.db import ArtifactBlob, dialect_insert, open_cache_session
from utils.logging import get_logger


LOGGER = get_logger(__name__, extra={"component": "artifact_store"})


class ArtifactTier(str, Enum):
    """Derivative tiers; the value is the key prefix."""

    WORKING = "work"
    PREPARED = "prep"
    NORMALIZED = "norm"
    THUMBNAIL = "thumb"


@dataclass(frozen=True)
class ArtifactKey:
    """Identifies a cached artefact for one content hash."""

    tier: ArtifactTier
    content_hash: str
    version: str

    @property
    def storage_key(self) -> str:
        return f"{self.tier.value}::{self.content_hash}::{self.version}"


class BlobStore(Protocol):
    """Opaque key/value byte storage backing :class:`ArtifactCache`."""

    def get(self, key: str) -> Optional[bytes]: ...

    def put(self, key: str, blob: bytes) -> None: ...

    def delete(self, key: str) -> None: ...


class MemoryBlobStore:
    """Process-local blob store; contents vanish with the process."""

    def __init__(self) -> None:
        self._blobs: Dict[str, bytes] = {}
        self._lock = Lock()

    def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            return self._blobs.get(key)

    def put(self, key: str, blob: bytes) -> None:
        with self._lock:
            self._blobs[key] = bytes(blob)

    def delete(self, key: str) -> None:
        with self._lock:
            self._blobs.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._blobs)


class SqlBlobStore:
    """Blob store persisted in the ``artifact_blob`` table."""

    def __init__(self, target: str) -> None:
        self._target = target

    def get(self, key: str) -> Optional[bytes]:
        with open_cache_session(self._target) as session:
            return session.execute(select(ArtifactBlob.blob).where(ArtifactBlob.key == key)).scalar_one_or_none()

    def put(self, key: str, blob: bytes) -> None:
        now = time.time()
        payload = bytes(blob)
        with open_cache_session(self._target) as session:
            stmt = dialect_insert(session, ArtifactBlob).values(
                key=key,
                blob=payload,
                size_bytes=len(payload),
                created_at=now,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[ArtifactBlob.key],
                set_={"blob": payload, "size_bytes": len(payload), "created_at": now},
            )
            session.execute(stmt)
            session.commit()

    def delete(self, key: str) -> None:
        with open_cache_session(self._target) as session:
            session.execute(delete(ArtifactBlob).where(ArtifactBlob.key == key))
            session.commit()


class ArtifactCache:
    """Get, put and delete derivative blobs by ``(tier, content_hash, version)``.

    Absence is never an error: callers treat ``None`` as "must (re)compute".
    There is no enumeration, expiry or transaction support.
    """

    def __init__(self, store: BlobStore) -> None:
        self._store = store
        self._lock = Lock()
        self.hits = 0
        self.misses = 0

    @property
    def store(self) -> BlobStore:
        return self._store

    def get(self, tier: ArtifactTier, content_hash: str, version: str) -> Optional[bytes]:
        key = ArtifactKey(tier, content_hash, version).storage_key
        blob = self._store.get(key)
        with self._lock:
            if blob is None:
                self.misses += 1
            else:
                self.hits += 1
        if blob is None:
            LOGGER.debug("artifact_cache_miss", extra={"key": key})
        return blob

    def put(self, tier: ArtifactTier, content_hash: str, version: str, blob: bytes) -> None:
        key = ArtifactKey(tier, content_hash, version).storage_key
        self._store.put(key, blob)
        LOGGER.info(
            "artifact_cached",
            extra={"tier": tier.value, "content_hash": content_hash, "version": version, "size_bytes": len(blob)},
        )

    def delete(self, tier: ArtifactTier, content_hash: str, version: str) -> None:
        key = ArtifactKey(tier, content_hash, version).storage_key
        self._store.delete(key)
        LOGGER.info("artifact_deleted", extra={"tier": tier.value, "content_hash": content_hash, "version": version})

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {"hits": self.hits, "misses": self.misses}


def build_blob_store(config: CacheConfig) -> BlobStore:
    """Return the blob store selected by ``config.backend``."""

    if config.backend == "memory":
        return MemoryBlobStore()
    if config.backend == "sql":
        return SqlBlobStore(config.url)
    raise ValueError(f"Unsupported cache backend: {config.backend!r}")


__all__ = [
    "ArtifactCache",
    "ArtifactKey",
    "ArtifactTier",
    "BlobStore",
    "MemoryBlobStore",
    "SqlBlobStore",
    "build_blob_store",
]
