"""
Unit tests for the Store collection registry.
"""
import pytest

from helpers import read_docs
from storage import ChangeEvent, Collection, Store


@pytest.mark.unit
class TestCollections:
    """Tests for collection discovery, creation and caching."""

    def test_creates_base_directory(self, tmp_path):
        path = tmp_path / "nested" / "db"
        Store(path, watch_files=False)
        assert path.is_dir()

    def test_discovers_existing_files(self, write_docs, db_dir):
        write_docs("guilds", [])
        write_docs("playlists", [{"_id": "p1"}])
        (db_dir / ".guilds.abc.tmp").write_text("[]")
        (db_dir / "notes.txt").write_text("not a collection")

        store = Store(db_dir, watch_files=False)

        assert store.collection_names() == ["guilds", "playlists"]
        assert "playlists" in store
        assert "notes" not in store

    def test_collection_is_cached(self, db_dir):
        store = Store(db_dir, watch_files=False)
        assert store.collection("guilds") is store.collection("guilds")

    def test_new_collection_writes_empty_array(self, db_dir):
        store = Store(db_dir, watch_files=False)

        guilds = store.collection("guilds")

        assert isinstance(guilds, Collection)
        assert read_docs(db_dir / "guilds.json") == []
        assert "guilds" in store.collection_names()

    def test_existing_file_is_loaded(self, write_docs, db_dir):
        write_docs("guilds", [{"_id": "g1", "volume": 50}])
        store = Store(db_dir, watch_files=False)

        assert store.collection("guilds").find_by_id("g1") == {"_id": "g1", "volume": 50}

    def test_options_reach_collections(self, db_dir):
        store = Store(db_dir, watch_files=False, watch_interval=1.5, flush_delay=0.25)

        guilds = store.collection("guilds")

        assert guilds.watch_interval == 1.5
        assert guilds.flush_delay == 0.25
        assert guilds.path == db_dir / "guilds.json"

    @pytest.mark.parametrize("name", ["", ".hidden", "a/b", "a\\b", None, 42])
    def test_invalid_names_rejected(self, db_dir, name):
        store = Store(db_dir, watch_files=False)
        with pytest.raises(ValueError):
            store.collection(name)

    def test_default_path_is_cwd_db(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        store = Store(watch_files=False)
        assert store.path == tmp_path / "db"
        assert store.path.is_dir()


@pytest.mark.unit
class TestStoreEvents:
    """Tests for store-level change listeners."""

    @pytest.mark.asyncio
    async def test_events_are_forwarded_with_collection_name(self, store):
        events = []
        store.subscribe(events.append)

        store.collection("guilds").insert({"_id": "g1"})
        store.collection("queues").insert({"_id": "q1"})

        assert [(e.kind, e.collection) for e in events] == [("insert", "guilds"), ("insert", "queues")]
        assert all(isinstance(e, ChangeEvent) for e in events)

    @pytest.mark.asyncio
    async def test_unsubscribe(self, store):
        events = []
        unsubscribe = store.subscribe(events.append)
        guilds = store.collection("guilds")

        guilds.insert({"_id": "g1"})
        unsubscribe()
        guilds.insert({"_id": "g2"})

        assert len(events) == 1

    @pytest.mark.asyncio
    async def test_listener_failure_is_logged(self, store, log_records):
        def broken(event):
            raise RuntimeError("boom")

        events = []
        store.subscribe(broken)
        store.subscribe(events.append)

        store.collection("guilds").insert({"_id": "g1"})

        assert len(events) == 1
        assert any("store listener failed" in r["message"] for r in log_records)


@pytest.mark.unit
class TestStoreClose:
    """Tests for Store.close()."""

    @pytest.mark.asyncio
    async def test_close_flushes_and_closes_every_collection(self, db_dir):
        store = Store(db_dir, flush_delay=10)
        guilds = store.collection("guilds")
        queues = store.collection("queues")
        guilds.insert({"_id": "g1", "volume": 80})
        queues.insert({"_id": "q1", "position": 3})

        await store.close()

        assert guilds.closed and queues.closed
        assert not guilds.is_watching
        assert read_docs(db_dir / "guilds.json") == [{"_id": "g1", "volume": 80}]
        assert read_docs(db_dir / "queues.json") == [{"_id": "q1", "position": 3}]

    @pytest.mark.asyncio
    async def test_collections_reopen_after_close(self, db_dir):
        store = Store(db_dir, watch_files=False)
        first = store.collection("guilds")
        first.insert({"_id": "g1"})
        await store.close()

        second = store.collection("guilds")

        assert second is not first
        assert second.find_by_id("g1") == {"_id": "g1"}
        await store.close()
