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

"""Store: registry of named collections under one directory."""

from pathlib import Path
from typing import Callable

from loguru import logger

from storage.collection import (
    DEFAULT_FLUSH_DELAY,
    DEFAULT_WATCH_INTERVAL,
    ChangeEvent,
    Collection,
    Listener,
)


class Store:
    """Factory and cache for Collection objects.

    Each collection lives in <path>/<name>.json. Collections are created on
    first request and cached, so store.collection("x") always returns the same
    instance. Change events from every collection are re-emitted to the
    store's own subscribers (the event carries the collection name).

    The store holds no document data itself. Call close() on shutdown to stop
    file watches and write pending changes.

    Attributes:
        path: Base directory holding the collection files
        watch_files: Whether new collections poll their file for external edits
        watch_interval: Poll interval passed to collections (seconds)
        flush_delay: Debounce window passed to collections (seconds)
    """

    def __init__(
        self,
        path: Path | str | None = None,
        *,
        watch_files: bool = True,
        watch_interval: float = DEFAULT_WATCH_INTERVAL,
        flush_delay: float = DEFAULT_FLUSH_DELAY,
    ) -> None:
        self.path = Path(path) if path is not None else Path.cwd() / "db"
        self.watch_files = watch_files
        self.watch_interval = watch_interval
        self.flush_delay = flush_delay

        self._collections: dict[str, Collection] = {}
        self._known: set[str] = set()
        self._listeners: list[Listener] = []

        self.path.mkdir(parents=True, exist_ok=True)
        self._discover()

    def __contains__(self, name: str) -> bool:
        return name in self._known or name in self._collections

    def _discover(self) -> None:
        """Register collection names from existing <name>.json files."""
        for file in self.path.glob("*.json"):
            if file.is_file() and not file.name.startswith('.'):
                self._known.add(file.stem)
        if self._known:
            logger.debug(f"found {len(self._known)} collection(s) in {self.path}")

    def collection_names(self) -> list[str]:
        """Names of all collections on disk or opened this session."""
        return sorted(self._known | set(self._collections))

    @staticmethod
    def _validate_name(name: str) -> None:
        if not isinstance(name, str) or not name:
            raise ValueError("collection name must be a non-empty string")
        if name.startswith('.') or '/' in name or '\\' in name:
            raise ValueError(f"invalid collection name: {name!r}")

    def collection(self, name: str) -> Collection:
        """Return the collection called name, creating it on first use.

        Raises:
            ValueError: If name is empty, hidden or contains a path separator
        """
        self._validate_name(name)
        existing = self._collections.get(name)
        if existing is not None:
            return existing

        file_path = self.path / f"{name}.json"
        if not file_path.exists():
            file_path.write_text("[]", encoding='utf-8')
            logger.debug(f"created collection file {file_path.name}")
        self._known.add(name)

        collection = Collection(
            name,
            file_path,
            watch_files=self.watch_files,
            watch_interval=self.watch_interval,
            flush_delay=self.flush_delay,
        )
        collection.subscribe(self._forward)
        self._collections[name] = collection
        return collection

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener for changes in any collection. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _forward(self, event: ChangeEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.opt(exception=True).error(f"store listener failed for '{event.collection}' ({event.kind})")

    async def close(self) -> None:
        """Close every open collection and clear the registry."""
        collections = list(self._collections.values())
        self._collections.clear()
        for collection in collections:
            try:
                await collection.close()
            except Exception:
                logger.opt(exception=True).error(f"failed to close collection '{collection.name}'")
        self._listeners.clear()
        if collections:
            logger.debug(f"closed {len(collections)} collection(s)")
