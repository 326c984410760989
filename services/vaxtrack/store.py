"""Hierarchical record store.

Records live at slash-separated paths (``children/<id>``,
``schedules/<childId>/<id>``, ``vaccinations/<childId>/<id>``) and are plain JSON
documents. Each write stands alone: there is no multi-record transaction, so a
caller issuing N writes can see any subset of them succeed.
"""
import abc
import json
import logging
import secrets
import time
from collections.abc import Callable
from contextlib import contextmanager
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from services.vaxtrack import models
from services.vaxtrack.errors import NotFound, RemoteFailure
from services.vaxtrack.events import ChangeFeed, Subscription


logger = logging.getLogger(__name__)

# Ordered by ASCII so keys sort chronologically as plain strings.
PUSH_CHARS = "-0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ_abcdefghijklmnopqrstuvwxyz"


class PushKeyGenerator:
    """20-character keys: 8 chars of millisecond timestamp + 12 random chars.

    Keys generated within the same millisecond increment the random part, so
    keys from one generator are strictly increasing.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._last_ms: int | None = None
        self._last_rand: list[int] = []

    def __call__(self) -> str:
        now = int(self._clock() * 1000)
        duplicate = now == self._last_ms
        self._last_ms = now

        ts_chars = []
        for _ in range(8):
            ts_chars.append(PUSH_CHARS[now % 64])
            now //= 64
        ts = "".join(reversed(ts_chars))

        if not duplicate:
            self._last_rand = [secrets.randbelow(64) for _ in range(12)]
        else:
            i = 11
            while i >= 0 and self._last_rand[i] == 63:
                self._last_rand[i] = 0
                i -= 1
            if i >= 0:
                self._last_rand[i] += 1

        return ts + "".join(PUSH_CHARS[r] for r in self._last_rand)


def split_path(path: str) -> tuple[str, str, str]:
    """Return (normalized path, parent path, top-level collection)."""
    clean = path.strip("/")
    segments = clean.split("/")
    if len(segments) < 2 or any(not s for s in segments):
        raise ValueError(f"Not a record path: {path!r}")
    return clean, "/".join(segments[:-1]), segments[0]


class RecordStore(abc.ABC):
    """Contract the engine needs from persistence."""

    @abc.abstractmethod
    async def push_key(self, path: str) -> str: ...

    @abc.abstractmethod
    async def get(self, path: str) -> dict[str, Any] | None: ...

    @abc.abstractmethod
    async def list_path(self, path: str) -> list[dict[str, Any]]:
        """Direct children of a path, in key order."""

    @abc.abstractmethod
    async def scan(self, collection: str) -> list[dict[str, Any]]:
        """Every record anywhere under a top-level collection, in path order."""

    @abc.abstractmethod
    async def query_equal(self, collection: str, field: str, value: Any) -> list[dict[str, Any]]:
        """Every record anywhere under a top-level collection whose field equals value."""

    @abc.abstractmethod
    async def set(self, path: str, value: dict[str, Any]) -> None: ...

    @abc.abstractmethod
    async def update(self, path: str, patch: dict[str, Any]) -> None: ...

    @abc.abstractmethod
    async def delete(self, path: str) -> None:
        """Remove the record at path and everything under it."""

    @abc.abstractmethod
    async def subscribe(self, path: str, callback: Callable[[list[dict[str, Any]]], None]) -> Subscription: ...


class SqlRecordStore(RecordStore):
    """RecordStore over a single SQLAlchemy session. Every write commits on its own."""

    def __init__(self, db: Session, *, feed: ChangeFeed | None = None, key_generator: Callable[[], str] | None = None):
        self.db = db
        self.feed = feed if feed is not None else ChangeFeed()
        self._keys = key_generator or PushKeyGenerator()

    @contextmanager
    def _remote(self, op: str, path: str):
        try:
            yield
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Record store {op} failed for {path}: {e}")
            raise RemoteFailure(f"{op} {path} failed: {e}") from e

    async def push_key(self, path: str) -> str:
        return self._keys()

    async def get(self, path: str) -> dict[str, Any] | None:
        clean = path.strip("/")
        with self._remote("get", clean):
            row = self.db.get(models.StoredRecord, clean)
        return json.loads(row.payload_json) if row else None

    async def list_path(self, path: str) -> list[dict[str, Any]]:
        clean = path.strip("/")
        with self._remote("list", clean):
            rows = self.db.scalars(
                select(models.StoredRecord).where(models.StoredRecord.parent == clean).order_by(models.StoredRecord.path)
            ).all()
        return [json.loads(r.payload_json) for r in rows]

    async def scan(self, collection: str) -> list[dict[str, Any]]:
        with self._remote("scan", collection):
            rows = self.db.scalars(
                select(models.StoredRecord)
                .where(models.StoredRecord.collection == collection.strip("/"))
                .order_by(models.StoredRecord.path)
            ).all()
        return [json.loads(r.payload_json) for r in rows]

    async def query_equal(self, collection: str, field: str, value: Any) -> list[dict[str, Any]]:
        return [d for d in await self.scan(collection) if d.get(field) == value]

    async def set(self, path: str, value: dict[str, Any]) -> None:
        clean, parent, collection = split_path(path)
        payload = json.dumps(value, separators=(",", ":"), sort_keys=True)
        with self._remote("set", clean):
            row = self.db.get(models.StoredRecord, clean)
            if row is None:
                self.db.add(models.StoredRecord(path=clean, parent=parent, collection=collection, payload_json=payload))
            else:
                row.payload_json = payload
                row.updated_at = datetime.utcnow()
            self.db.commit()
        await self._publish(clean)

    async def update(self, path: str, patch: dict[str, Any]) -> None:
        clean, _, _ = split_path(path)
        with self._remote("update", clean):
            row = self.db.get(models.StoredRecord, clean)
            if row is None:
                raise NotFound(f"No record at {clean}")
            merged = json.loads(row.payload_json)
            merged.update(patch)
            row.payload_json = json.dumps(merged, separators=(",", ":"), sort_keys=True)
            row.updated_at = datetime.utcnow()
            self.db.commit()
        await self._publish(clean)

    async def delete(self, path: str) -> None:
        clean = path.strip("/")
        with self._remote("delete", clean):
            rows = self.db.scalars(
                select(models.StoredRecord).where(
                    (models.StoredRecord.path == clean)
                    | models.StoredRecord.path.startswith(clean + "/", autoescape=True)
                )
            ).all()
            for row in rows:
                self.db.delete(row)
            self.db.commit()
        await self._publish(clean)

    async def subscribe(self, path: str, callback: Callable[[list[dict[str, Any]]], None]) -> Subscription:
        sub = self.feed.subscribe(path, callback)
        sub.deliver(await self.list_path(sub.path))
        return sub

    async def _publish(self, changed_path: str) -> None:
        for sub in self.feed.matching(changed_path):
            snapshot = await self.list_path(sub.path)
            sub.deliver(snapshot)
