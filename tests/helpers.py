"""
Test helpers shared across test modules.
"""
import asyncio
import json
import os
from pathlib import Path
from typing import Callable

from storage import Collection


# Short timers so debounce and watch behavior is observable within a test
FLUSH_DELAY = 0.01
WATCH_INTERVAL = 0.02


def read_docs(path: Path) -> list:
    """Parse a collection file."""
    return json.loads(path.read_text(encoding="utf-8"))


def modify_externally(path: Path, docs) -> None:
    """Rewrite a collection file the way another process would.

    Bumps mtime explicitly so the change is visible even on filesystems
    with coarse timestamps.
    """
    before = path.stat().st_mtime_ns
    path.write_text(json.dumps(docs), encoding="utf-8")
    bumped = before + 2_000_000_000
    os.utime(path, ns=(bumped, bumped))


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> bool:
    """Poll predicate on the event loop until it is true or timeout passes."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(0.01)
    return predicate()


def assert_indices_consistent(collection: Collection) -> None:
    """Every index must map each value to exactly the ids of live documents holding it."""
    for field, index in collection._indices.items():
        expected = {}
        for doc in collection.find():
            if field in doc:
                try:
                    expected.setdefault(doc[field], set()).add(doc["_id"])
                except TypeError:
                    continue
        assert index == expected, f"index on {field!r} is stale"
