# Copyright (C) 2026 grodz
#
# This file is part of Aquabot.
#
# Aquabot is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program. If not, see <https://www.gnu.org/licenses/>.

"""Document collections backed by a single JSON file.

A Collection keeps every document in memory, keyed by ``_id``, and maintains
value -> id-set indices for selected fields. Memory is the source of truth:
disk is only written by flush, and only read on load or reload.

Persistence:
- Mutations mark the collection dirty and (re)arm one debounce timer, so a
  burst of updates produces a single write
- Flush serializes the whole document set and replaces the file atomically
  (temp file + os.replace)
- Without a running event loop, mutations write through immediately

External changes:
- A polling task compares the file's (mtime_ns, size) signature against the
  one recorded at our last load/flush
- A changed file triggers a full reload, but only while the collection is
  clean. Pending local writes win and overwrite the file on the next flush.

This is single-writer reconciliation, not a merge. Two processes writing the
same file concurrently can lose each other's changes.
"""

import asyncio
import json
import math
import os
import secrets
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from loguru import logger

from storage.errors import DuplicateIdError, InvalidQueryError, StoreError
from storage.query import ID_FIELD, index_lookup, is_hashable, match_document, normalize_query

# Seconds to wait after the last mutation before writing to disk
DEFAULT_FLUSH_DELAY = 0.05

# Seconds between file signature checks
DEFAULT_WATCH_INTERVAL = 0.1

# Deepest list/dict nesting a document may have
MAX_NESTING = 100

_MISSING = object()


@dataclass
class ChangeEvent:
    """Change notification emitted by a collection.

    kind is one of "insert", "update", "delete" or "reload".
    data payloads:
        insert - {"docs": [doc, ...]}
        update - {"docs": [{"old": doc, "new": doc}, ...], "count": n}
        delete - {"docs": [doc, ...], "count": n}
        reload - {"old_size": n, "new_size": n}
    """
    kind: str
    collection: str
    data: dict = field(default_factory=dict)


@dataclass
class BulkWriteResult:
    """Aggregate counts from bulk_write()."""
    insert_count: int = 0
    update_count: int = 0
    delete_count: int = 0


Listener = Callable[[ChangeEvent], None]


def generate_id() -> str:
    """Random opaque document id (24 hex chars)."""
    return secrets.token_hex(12)


def _is_valid_id(doc_id: Any) -> bool:
    return doc_id is not None and doc_id != "" and is_hashable(doc_id)


def check_document(doc: Mapping, depth: int = 0) -> None:
    """Reject values that would not come back unchanged from the JSON file.

    Allowed: None, bool, int, finite float, str, list, and dicts with str keys,
    nested at most MAX_NESTING levels. Tuples, sets, non-str keys and custom
    objects are refused up front instead of failing (or changing shape) at
    flush time.

    Raises:
        InvalidQueryError: On the first value that cannot be stored
    """
    for key, value in doc.items():
        if not isinstance(key, str):
            raise InvalidQueryError(f"field names must be strings, got {key!r}")
        _check_value(key, value, depth)


def _check_value(field: str, value: Any, depth: int) -> None:
    if value is None or isinstance(value, (str, bool)):
        return
    if isinstance(value, int):
        try:
            int.__repr__(value)
        except ValueError:
            raise InvalidQueryError(f"'{field}': integer has too many digits to store") from None
        return
    if isinstance(value, float):
        if not math.isfinite(value):
            raise InvalidQueryError(f"'{field}': {value!r} is not valid JSON")
        return
    if depth >= MAX_NESTING:
        # Also stops self-referencing containers
        raise InvalidQueryError(f"'{field}': nested deeper than {MAX_NESTING} levels")
    if isinstance(value, list):
        for item in value:
            _check_value(field, item, depth + 1)
        return
    if isinstance(value, dict):
        check_document(value, depth + 1)
        return
    raise InvalidQueryError(f"'{field}': {type(value).__name__} cannot be stored as JSON")


def _bucket_add(index: dict, value: Any, doc_id: Any) -> None:
    if is_hashable(value):
        index.setdefault(value, set()).add(doc_id)


def _bucket_remove(index: dict, value: Any, doc_id: Any) -> None:
    if not is_hashable(value):
        return
    bucket = index.get(value)
    if bucket is None:
        return
    bucket.discard(doc_id)
    if not bucket:
        del index[value]


class Collection:
    """In-memory document collection persisted to one JSON file.

    Usage:
        guilds = store.collection("guilds")
        guilds.insert({"_id": "g1", "volume": 50})
        guilds.update({"_id": "g1"}, {"volume": 80})
        guilds.find({"volume": {"$gte": 60}})
        await guilds.flush()   # optional, writes now instead of after debounce

    Documents returned by find() are the stored objects. Modify them through
    update(), never in place, or the indices go stale.

    Attributes:
        name: Logical collection name
        path: Backing JSON file
        flush_delay: Debounce window in seconds
        watch_interval: Seconds between external change checks
    """

    def __init__(
        self,
        name: str,
        path: Path,
        *,
        watch_files: bool = True,
        watch_interval: float = DEFAULT_WATCH_INTERVAL,
        flush_delay: float = DEFAULT_FLUSH_DELAY,
    ) -> None:
        self.name = name
        self.path = Path(path)
        self.watch_interval = watch_interval
        self.flush_delay = flush_delay

        self._documents: dict[Any, dict] = {}
        self._indices: dict[str, dict[Any, set]] = {ID_FIELD: {}}
        self._dirty = False
        # Bumped on every mutation so a flush knows whether it captured the latest state
        self._generation = 0
        self._signature: tuple[int, int] | None = None
        self._listeners: list[Listener] = []

        self._flush_handle: asyncio.TimerHandle | None = None
        self._flush_tasks: set[asyncio.Task] = set()
        self._flush_lock = asyncio.Lock()
        self._watch_task: asyncio.Task | None = None
        # Set by refresh() while a write is in flight
        self._reload_after_flush = False
        self._closed = False

        self._load()

        if watch_files:
            self.start_watching()

    def __repr__(self) -> str:
        return f"<Collection {self.name!r} docs={len(self._documents)} dirty={self._dirty}>"

    def __len__(self) -> int:
        return len(self._documents)

    def __contains__(self, doc_id: Any) -> bool:
        return is_hashable(doc_id) and doc_id in self._documents

    @property
    def dirty(self) -> bool:
        """True while there are mutations not yet written to disk."""
        return self._dirty

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def is_watching(self) -> bool:
        return self._watch_task is not None and not self._watch_task.done()

    @property
    def indexed_fields(self) -> list[str]:
        return list(self._indices)

    # =========================================================================
    # CHANGE NOTIFICATIONS
    # =========================================================================

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a change listener. Returns a function that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, kind: str, data: dict) -> None:
        event = ChangeEvent(kind, self.name, data)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.opt(exception=True).error(f"change listener failed for '{self.name}' ({kind})")

    # =========================================================================
    # LOADING
    # =========================================================================

    def _stat_signature(self) -> tuple[int, int] | None:
        try:
            stat = self.path.stat()
        except OSError:
            return None
        return (stat.st_mtime_ns, stat.st_size)

    def _load(self) -> None:
        """Replace in-memory documents with the file contents.

        Never raises. Unreadable or malformed files leave the collection empty,
        documents without a usable _id are skipped. Documents and indices are
        swapped in together, so a failed read never leaves them out of step.
        """
        # Record before reading so a write racing with the read shows up on the next poll
        signature = self._stat_signature()

        try:
            docs = json.loads(self.path.read_text(encoding='utf-8'))
        except FileNotFoundError:
            docs = []
        except (OSError, ValueError, RecursionError) as e:
            # ValueError covers JSONDecodeError, UnicodeDecodeError and oversized integers
            logger.warning(f"failed to load collection '{self.name}', starting empty: {type(e).__name__}: {e}")
            docs = []

        if not isinstance(docs, list):
            logger.warning(f"collection '{self.name}' is not a JSON array, starting empty")
            docs = []

        documents: dict[Any, dict] = {}
        for doc in docs:
            if not isinstance(doc, dict) or not _is_valid_id(doc.get(ID_FIELD)):
                logger.warning(f"skipping document without _id in '{self.name}': {doc!r:.200}")
                continue
            if doc[ID_FIELD] in documents:
                logger.warning(f"duplicate _id {doc[ID_FIELD]!r} in '{self.name}', keeping last")
            documents[doc[ID_FIELD]] = doc

        self._documents = documents
        self._signature = signature
        self._rebuild_indices()
        logger.debug(f"loaded {len(self._documents)} document(s) from {self.path.name}")

    def _reload(self) -> None:
        old_size = len(self._documents)
        self._load()
        self._emit("reload", {"old_size": old_size, "new_size": len(self._documents)})

    def refresh(self) -> None:
        """Reload from disk now, discarding unflushed local changes.

        A write already in flight cannot be recalled. When it lands, the
        collection re-reads the file so memory matches what is on disk.
        """
        if self._flush_handle is not None:
            self._flush_handle.cancel()
            self._flush_handle = None
        self._dirty = False
        self._generation += 1
        self._reload()
        if self._flush_lock.locked():
            self._reload_after_flush = True

    # =========================================================================
    # INDICES
    # =========================================================================

    def ensure_index(self, field: str) -> None:
        """Create an index on field (built from current documents) if missing."""
        if field in self._indices:
            return
        index: dict[Any, set] = {}
        for doc_id, doc in self._documents.items():
            if field in doc:
                _bucket_add(index, doc[field], doc_id)
        self._indices[field] = index
        logger.debug(f"indexed '{self.name}.{field}' ({len(index)} distinct values)")

    def create_index(self, field: str) -> None:
        """Alias of ensure_index()."""
        self.ensure_index(field)

    def drop_index(self, field: str) -> None:
        if field == ID_FIELD:
            raise InvalidQueryError("the _id index cannot be dropped")
        self._indices.pop(field, None)

    def _rebuild_indices(self) -> None:
        for field in self._indices:
            self._indices[field] = {}
        for doc in self._documents.values():
            self._index_document(doc)

    def _index_document(self, doc: dict) -> None:
        for field, index in self._indices.items():
            if field in doc:
                _bucket_add(index, doc[field], doc[ID_FIELD])

    def _unindex_document(self, doc: dict) -> None:
        for field, index in self._indices.items():
            if field in doc:
                _bucket_remove(index, doc[field], doc[ID_FIELD])

    # =========================================================================
    # QUERIES
    # =========================================================================

    def find(self, query: Mapping | None = None) -> list[dict]:
        """Return documents matching query.

        Single-field equality queries are answered from an index (created on
        first use), in no particular order. Everything else is a full scan in
        insertion order.

        Raises:
            InvalidQueryError: If query is not a mapping
        """
        query = normalize_query(query)
        if not query:
            return list(self._documents.values())

        lookup = index_lookup(query)
        if lookup is not None:
            field, value = lookup
            self.ensure_index(field)
            ids = self._indices[field].get(value, ())
            return [self._documents[doc_id] for doc_id in ids]

        return [doc for doc in self._documents.values() if match_document(doc, query)]

    def find_one(self, query: Mapping | None = None) -> dict | None:
        results = self.find(query)
        return results[0] if results else None

    def find_by_id(self, doc_id: Any) -> dict | None:
        if not is_hashable(doc_id):
            return None
        return self._documents.get(doc_id)

    def count(self, query: Mapping | None = None) -> int:
        """Count matching documents without materializing them on the index path."""
        query = normalize_query(query)
        if not query:
            return len(self._documents)

        lookup = index_lookup(query)
        if lookup is not None:
            field, value = lookup
            self.ensure_index(field)
            return len(self._indices[field].get(value, ()))

        return sum(1 for doc in self._documents.values() if match_document(doc, query))

    # =========================================================================
    # MUTATIONS
    # =========================================================================

    def _check_open(self) -> None:
        if self._closed:
            raise StoreError(f"collection '{self.name}' is closed")

    def insert(self, docs: Mapping | list[Mapping]) -> dict | list[dict]:
        """Insert one document or a sequence of documents.

        The whole batch is validated before anything is stored, so a duplicate
        _id anywhere rejects every document in the call. Missing ids are
        generated. Stored documents are shallow copies of the input.

        Returns:
            The stored document for a single mapping, else a list of them

        Raises:
            DuplicateIdError: If an _id already exists or repeats in the batch
            InvalidQueryError: If a document is not a mapping or has an unusable _id,
                or holds a value JSON cannot store unchanged (see check_document)
        """
        self._check_open()
        single = isinstance(docs, Mapping)
        if single:
            items = [docs]
        elif isinstance(docs, (list, tuple)):
            items = list(docs)
        else:
            raise InvalidQueryError(f"cannot insert {type(docs).__name__}")

        prepared: list[dict] = []
        batch_ids: set = set()
        for doc in items:
            if not isinstance(doc, Mapping):
                raise InvalidQueryError(f"document must be a mapping, got {type(doc).__name__}")
            stored = dict(doc)
            doc_id = stored.get(ID_FIELD)
            if doc_id is None or doc_id == "":
                doc_id = generate_id()
                while doc_id in self._documents or doc_id in batch_ids:
                    doc_id = generate_id()
                stored[ID_FIELD] = doc_id
            elif not is_hashable(doc_id):
                raise InvalidQueryError(f"_id must be hashable, got {type(doc_id).__name__}")
            check_document(stored)
            if doc_id in self._documents or doc_id in batch_ids:
                raise DuplicateIdError(doc_id)
            batch_ids.add(doc_id)
            prepared.append(stored)

        if not prepared:
            return []

        for stored in prepared:
            self._documents[stored[ID_FIELD]] = stored
            self._index_document(stored)

        self._mark_dirty()
        self._emit("insert", {"docs": list(prepared)})
        return prepared[0] if single else prepared

    def update(self, query: Mapping | None, patch: Mapping) -> int:
        """Shallow-merge patch into every matching document.

        Returns:
            Number of documents updated

        Raises:
            InvalidQueryError: If patch is not a mapping or tries to change an _id,
                or holds a value JSON cannot store unchanged
        """
        self._check_open()
        if not isinstance(patch, Mapping):
            raise InvalidQueryError(f"patch must be a mapping, got {type(patch).__name__}")
        check_document(patch)

        matches = self.find(query)
        if ID_FIELD in patch:
            for doc in matches:
                if doc[ID_FIELD] != patch[ID_FIELD]:
                    raise InvalidQueryError(f"_id of {doc[ID_FIELD]!r} cannot be modified")

        changes = []
        for doc in matches:
            old = dict(doc)
            doc.update(patch)
            for field in patch:
                index = self._indices.get(field)
                if index is None:
                    continue
                old_value = old.get(field, _MISSING)
                new_value = doc[field]
                if old_value is not _MISSING:
                    if old_value == new_value:
                        continue
                    _bucket_remove(index, old_value, doc[ID_FIELD])
                _bucket_add(index, new_value, doc[ID_FIELD])
            changes.append({"old": old, "new": doc})

        if not changes:
            return 0

        self._mark_dirty()
        self._emit("update", {"docs": changes, "count": len(changes)})
        return len(changes)

    def delete(self, query: Mapping | None) -> int:
        """Remove every matching document. Returns the number removed."""
        self._check_open()
        matches = self.find(query)
        for doc in matches:
            del self._documents[doc[ID_FIELD]]
            self._unindex_document(doc)

        if not matches:
            return 0

        self._mark_dirty()
        self._emit("delete", {"docs": matches, "count": len(matches)})
        return len(matches)

    def bulk_write(self, operations: list[Mapping]) -> BulkWriteResult:
        """Apply insert/update/delete operations in order.

        Operation shapes:
            {"insert": doc or [docs]}
            {"update": patch, "query": query}
            {"delete": query}

        Not transactional: if an operation fails, earlier ones stay applied.
        """
        result = BulkWriteResult()
        for op in operations:
            if not isinstance(op, Mapping):
                raise InvalidQueryError(f"bulk operation must be a mapping, got {type(op).__name__}")
            if "insert" in op:
                inserted = self.insert(op["insert"])
                result.insert_count += 1 if isinstance(inserted, dict) else len(inserted)
            elif "update" in op and "query" in op:
                result.update_count += self.update(op["query"], op["update"])
            elif "delete" in op:
                result.delete_count += self.delete(op["delete"])
            else:
                raise InvalidQueryError(f"unrecognized bulk operation: {op!r}")
        return result

    # =========================================================================
    # FLUSHING
    # =========================================================================

    def _mark_dirty(self) -> None:
        self._dirty = True
        self._generation += 1
        self._schedule_flush()

    def _schedule_flush(self) -> None:
        """Arm (or re-arm) the debounce timer."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._flush_now()
            return

        if self._flush_handle is not None:
            self._flush_handle.cancel()
        self._flush_handle = loop.call_later(self.flush_delay, self._start_flush)

    def _start_flush(self) -> None:
        self._flush_handle = None
        if self._closed:
            return
        task = asyncio.get_running_loop().create_task(self.flush())
        self._flush_tasks.add(task)
        task.add_done_callback(self._flush_tasks.discard)

    async def flush(self) -> bool:
        """Write pending changes now.

        Returns:
            True if the collection is clean afterwards, False if the write failed
        """
        if self._flush_handle is not None:
            self._flush_handle.cancel()
            self._flush_handle = None

        async with self._flush_lock:
            if not self._dirty:
                return True
            generation = self._generation
            try:
                # Snapshot on the loop, write in a thread
                payload = self._serialize()
                await asyncio.to_thread(self._write_file, payload)
            except (OSError, TypeError, ValueError, RecursionError):
                # The file was not replaced, nothing to re-read
                self._reload_after_flush = False
                logger.opt(exception=True).error(f"failed to flush collection '{self.name}'")
                return False
            self._mark_flushed(generation)
            if self._reload_after_flush:
                self._reload_after_flush = False
                if not self._dirty:
                    self._reload()
            return not self._dirty

    def _flush_now(self) -> None:
        """Synchronous flush used when no event loop is running."""
        generation = self._generation
        try:
            self._write_file(self._serialize())
        except (OSError, TypeError, ValueError, RecursionError):
            logger.opt(exception=True).error(f"failed to flush collection '{self.name}'")
            return
        self._mark_flushed(generation)

    def _mark_flushed(self, generation: int) -> None:
        self._signature = self._stat_signature()
        # A mutation during the write keeps us dirty, its timer is already armed
        if generation == self._generation:
            self._dirty = False
        logger.debug(f"flushed {len(self._documents)} document(s) to {self.path.name}")

    def _serialize(self) -> str:
        return json.dumps(list(self._documents.values()), indent=2, ensure_ascii=False)

    def _write_file(self, payload: str) -> None:
        """Atomic write: temp file in the same directory, then rename over the target."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp_fd, temp_path = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.name}.", suffix='.tmp')
        try:
            # fdopen can fail after mkstemp - close fd manually to prevent leak
            try:
                f = os.fdopen(temp_fd, 'w', encoding='utf-8')
            except Exception:
                os.close(temp_fd)
                raise
            with f:
                f.write(payload)
            Path(temp_path).replace(self.path)
        except Exception:
            Path(temp_path).unlink(missing_ok=True)
            raise

    # =========================================================================
    # FILE WATCH
    # =========================================================================

    def start_watching(self) -> bool:
        """Start polling the backing file. Needs a running event loop.

        Returns:
            True if the watch is running
        """
        if self._closed:
            return False
        if self.is_watching:
            return True
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug(f"no running event loop, not watching '{self.name}'")
            return False
        self._watch_task = loop.create_task(self._watch_loop(), name=f"watch-{self.name}")
        return True

    async def stop_watching(self) -> None:
        """Cancel the poll task and wait for it to finish."""
        task, self._watch_task = self._watch_task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _watch_loop(self) -> None:
        while True:
            await asyncio.sleep(self.watch_interval)
            if self._closed:
                return
            try:
                self._poll()
            except Exception:
                logger.opt(exception=True).warning(f"file watch failed for '{self.name}'")

    def _poll(self) -> None:
        signature = self._stat_signature()
        if signature is None or signature == self._signature:
            return
        if self._dirty:
            logger.debug(f"'{self.name}' changed on disk with pending writes, keeping local state")
            return
        logger.info(f"'{self.name}' changed on disk, reloading")
        self._reload()

    # =========================================================================
    # SHUTDOWN
    # =========================================================================

    async def close(self) -> None:
        """Stop the watch, settle pending writes and detach listeners.

        Any unflushed changes are written before returning. No timer, flush or
        reload runs after close() returns. Safe to call more than once.
        """
        if self._closed:
            return
        self._closed = True

        if self._flush_handle is not None:
            self._flush_handle.cancel()
            self._flush_handle = None

        await self.stop_watching()

        if self._flush_tasks:
            await asyncio.gather(*list(self._flush_tasks), return_exceptions=True)

        if self._dirty:
            await self.flush()

        self._listeners.clear()
        logger.debug(f"closed collection '{self.name}'")
