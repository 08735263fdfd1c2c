"""
Shared test fixtures for the document store and bot glue.
"""
import json
import logging
import sys
from pathlib import Path
from typing import Callable

import pytest
import pytest_asyncio
from loguru import logger

from helpers import FLUSH_DELAY, WATCH_INTERVAL
from storage import Store


@pytest.fixture
def db_dir(tmp_path: Path) -> Path:
    """Create an empty directory for collection files."""
    path = tmp_path / "db"
    path.mkdir()
    return path


@pytest.fixture
def write_docs(db_dir: Path) -> Callable[[str, object], Path]:
    """Write raw JSON content for a collection file and return its path."""
    def _write(name: str, docs) -> Path:
        path = db_dir / f"{name}.json"
        path.write_text(json.dumps(docs), encoding="utf-8")
        return path
    return _write


@pytest.fixture
def log_records() -> list:
    """Capture loguru records emitted during the test."""
    records = []
    handler_id = logger.add(lambda message: records.append(message.record), level="DEBUG")
    yield records
    logger.remove(handler_id)


@pytest_asyncio.fixture
async def store(db_dir: Path) -> Store:
    """Store with fast timers, closed after the test."""
    store = Store(db_dir, watch_interval=WATCH_INTERVAL, flush_delay=FLUSH_DELAY)
    yield store
    await store.close()




@pytest.fixture
def restore_logging():
    """Put loguru and the stdlib root logger back after setup_logging()."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    discord_level = logging.getLogger("discord").level
    yield
    logger.remove()
    logger.add(sys.stderr)
    root.handlers[:] = handlers
    root.setLevel(level)
    logging.getLogger("discord").setLevel(discord_level)
