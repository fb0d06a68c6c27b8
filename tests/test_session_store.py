"""
Tests for all session store backends.

Covers:
  - InMemorySessionStore (timers, refresh, lazy expiry, timer reuse)
  - FileSessionStore (JSON file persistence)
  - SqlSessionStore (via SQLite for test portability) + SessionSweeper
  - Store factory
"""
import asyncio
import json
from datetime import timedelta

import pytest

from config.settings import StoreConfig
from models.schemas import Session, _utcnow, session_key


# ──────────────────────────────────────────────────────────────
#  InMemorySessionStore
# ──────────────────────────────────────────────────────────────

class TestInMemorySessionStore:
    @pytest.fixture
    def store(self):
        from database.store_memory import InMemorySessionStore
        return InMemorySessionStore()

    @pytest.mark.asyncio
    async def test_create_and_get(self, store):
        await store.create("fabbank", "U1", {"phone": "+919876543210"})
        session = await store.get("fabbank", "U1")
        assert session is not None
        assert session.dialog_state == "MAIN_MENU"
        assert session.attributes == {"phone": "+919876543210"}
        assert session.expiry_ms == 300_000

    @pytest.mark.asyncio
    async def test_create_with_state_and_expiry(self, store):
        session = await store.create("fabbank", "U1", dialog_state="CHECK_BALANCE", expiry_ms=900_000)
        assert session.dialog_state == "CHECK_BALANCE"
        assert session.expiry_ms == 900_000

    @pytest.mark.asyncio
    async def test_get_missing_returns_none(self, store):
        assert await store.get("fabbank", "nobody") is None

    @pytest.mark.asyncio
    async def test_returned_session_is_a_copy(self, store):
        await store.create("fabbank", "U1", {"a": 1})
        session = await store.get("fabbank", "U1")
        session.attributes["a"] = 999
        session.dialog_state = "HACKED"
        again = await store.get("fabbank", "U1")
        assert again.attributes == {"a": 1}
        assert again.dialog_state == "MAIN_MENU"

    @pytest.mark.asyncio
    async def test_create_twice_last_write_wins(self, store):
        await store.create("fabbank", "U1", {"a": 1}, dialog_state="VERIFY_OTP")
        await store.create("fabbank", "U1", {"b": 2})
        session = await store.get("fabbank", "U1")
        assert session.attributes == {"b": 2}
        assert session.dialog_state == "MAIN_MENU"
        assert len(await store.list_by_tenant("fabbank")) == 1

    @pytest.mark.asyncio
    async def test_update_replaces_given_fields(self, store):
        await store.create("fabbank", "U1", {"a": 1})
        await store.update("fabbank", "U1", dialog_state="VERIFY_OTP", attributes={"a": 1, "b": 2})
        session = await store.get("fabbank", "U1")
        assert session.dialog_state == "VERIFY_OTP"
        assert session.attributes == {"a": 1, "b": 2}

    @pytest.mark.asyncio
    async def test_update_with_empty_attributes_clears(self, store):
        await store.create("fabbank", "U1", {"a": 1})
        await store.update("fabbank", "U1", attributes={})
        assert (await store.get("fabbank", "U1")).attributes == {}

    @pytest.mark.asyncio
    async def test_update_missing_is_noop(self, store):
        assert await store.update("fabbank", "ghost", dialog_state="X") is None
        assert await store.get("fabbank", "ghost") is None

    @pytest.mark.asyncio
    async def test_update_unknown_field_raises(self, store):
        await store.create("fabbank", "U1")
        with pytest.raises(ValueError):
            await store.update("fabbank", "U1", created_at=_utcnow())
        with pytest.raises(ValueError):
            await store.update("fabbank", "U1", last_activity=_utcnow())

    @pytest.mark.asyncio
    async def test_empty_update_refreshes_activity_only(self, store):
        created = await store.create("fabbank", "U1", {"a": 1})
        await asyncio.sleep(0.02)
        updated = await store.update("fabbank", "U1")
        assert updated.last_activity > created.last_activity
        assert updated.dialog_state == created.dialog_state
        assert updated.attributes == {"a": 1}

    @pytest.mark.asyncio
    async def test_delete_then_get(self, store):
        await store.create("fabbank", "U1")
        assert await store.delete("fabbank", "U1") is True
        assert await store.get("fabbank", "U1") is None

    @pytest.mark.asyncio
    async def test_delete_missing_is_noop(self, store):
        assert await store.delete("fabbank", "ghost") is False

    @pytest.mark.asyncio
    async def test_timer_expires_idle_session(self, store):
        await store.create("fabbank", "U1", expiry_ms=50)
        await asyncio.sleep(0.15)
        assert await store.exists("fabbank", "U1") is False
        stats = await store.stats()
        assert stats["sessions"] == 0
        assert stats["timers"] == 0

    @pytest.mark.asyncio
    async def test_get_extends_the_window(self, store):
        await store.create("fabbank", "U1", expiry_ms=300)
        await asyncio.sleep(0.2)
        assert await store.get("fabbank", "U1") is not None
        await asyncio.sleep(0.2)
        assert await store.get("fabbank", "U1") is not None

    @pytest.mark.asyncio
    async def test_expired_session_not_returned_before_timer_fires(self, store):
        await store.create("fabbank", "U1", expiry_ms=60_000)
        # Push the last activity into the past instead of waiting
        store._sessions[session_key("fabbank", "U1")].last_activity = _utcnow() - timedelta(minutes=5)
        assert await store.get("fabbank", "U1") is None
        assert await store.update("fabbank", "U1", dialog_state="X") is None

    @pytest.mark.asyncio
    async def test_old_timer_never_deletes_recreated_session(self, store):
        await store.create("fabbank", "U1", expiry_ms=50)
        await store.delete("fabbank", "U1")
        await store.create("fabbank", "U1", {"fresh": True}, expiry_ms=60_000)
        await asyncio.sleep(0.15)
        session = await store.get("fabbank", "U1")
        assert session is not None
        assert session.attributes == {"fresh": True}

    @pytest.mark.asyncio
    async def test_recreate_without_delete_replaces_timer(self, store):
        await store.create("fabbank", "U1", expiry_ms=50)
        await store.create("fabbank", "U1", expiry_ms=60_000)
        await asyncio.sleep(0.15)
        assert await store.get("fabbank", "U1") is not None

    @pytest.mark.asyncio
    async def test_list_by_tenant_does_not_refresh(self, store):
        created = await store.create("fabbank", "U1")
        await store.create("fabbank", "U2")
        await store.create("airline", "U1")
        await asyncio.sleep(0.02)
        sessions = await store.list_by_tenant("fabbank")
        assert sorted(s.user_id for s in sessions) == ["U1", "U2"]
        u1 = next(s for s in sessions if s.user_id == "U1")
        assert u1.last_activity == created.last_activity

    @pytest.mark.asyncio
    async def test_clear_tenant(self, store):
        await store.create("fabbank", "U1")
        await store.create("fabbank", "U2")
        await store.create("airline", "U1")
        assert await store.clear_tenant("fabbank") == 2
        assert await store.list_by_tenant("fabbank") == []
        assert len(await store.list_all()) == 1

    @pytest.mark.asyncio
    async def test_counts_skip_expired_not_yet_dropped(self, store):
        await store.create("fabbank", "U1", expiry_ms=30)
        await store.create("fabbank", "U2")
        # timers cancelled: U1 lapses without being dropped
        await store.close()
        await asyncio.sleep(0.08)
        stats = await store.stats()
        assert stats["sessions"] == 1
        assert stats["by_tenant"] == {"fabbank": 1}
        assert await store.clear_tenant("fabbank") == 1
        assert store._sessions == {}

    @pytest.mark.asyncio
    async def test_close_cancels_timers(self, store):
        await store.create("fabbank", "U1")
        await store.close()
        assert (await store.stats())["timers"] == 0


# ──────────────────────────────────────────────────────────────
#  FileSessionStore
# ──────────────────────────────────────────────────────────────

class TestFileSessionStore:
    @pytest.fixture
    def data_dir(self, tmp_path):
        return str(tmp_path / "sessions")

    @pytest.mark.asyncio
    async def test_survives_restart(self, data_dir):
        from database.store_file import FileSessionStore
        store = FileSessionStore(data_dir)
        await store.create("fabbank", "U1", {"phone": "+919876543210"})
        await store.update("fabbank", "U1", dialog_state="VERIFY_OTP",
                           attributes={"phone": "+919876543210", "tries": 1})
        await store.close()

        reopened = FileSessionStore(data_dir)
        session = await reopened.get("fabbank", "U1")
        assert session is not None
        assert session.dialog_state == "VERIFY_OTP"
        assert session.attributes == {"phone": "+919876543210", "tries": 1}
        await reopened.close()

    @pytest.mark.asyncio
    async def test_record_shape_is_camel_case(self, data_dir):
        from database.store_file import FileSessionStore
        store = FileSessionStore(data_dir)
        await store.create("fabbank", "U1", {"a": 1})
        with open(store.path) as f:
            data = json.load(f)
        record = data["fabbank:U1"]
        assert set(record) == {
            "tenantId", "userId", "dialogState", "attributes",
            "createdAt", "lastActivity", "expiryMs",
        }
        assert record["dialogState"] == "MAIN_MENU"
        await store.close()

    @pytest.mark.asyncio
    async def test_delete_is_persisted(self, data_dir):
        from database.store_file import FileSessionStore
        store = FileSessionStore(data_dir)
        await store.create("fabbank", "U1")
        await store.delete("fabbank", "U1")
        await store.close()
        reopened = FileSessionStore(data_dir)
        assert await reopened.get("fabbank", "U1") is None

    @pytest.mark.asyncio
    async def test_expired_records_dropped_on_load(self, data_dir, tmp_path):
        from database.store_file import FileSessionStore, SESSIONS_FILE
        stale = Session(tenant_id="fabbank", user_id="old", dialog_state="MAIN_MENU",
                        last_activity=_utcnow() - timedelta(hours=1), expiry_ms=1000)
        fresh = Session(tenant_id="fabbank", user_id="new", dialog_state="VERIFY_OTP")
        (tmp_path / "sessions").mkdir()
        with open(tmp_path / "sessions" / SESSIONS_FILE, "w") as f:
            json.dump({stale.key: stale.to_record(), fresh.key: fresh.to_record()}, f)

        store = FileSessionStore(data_dir)
        assert await store.get("fabbank", "old") is None
        assert (await store.get("fabbank", "new")).dialog_state == "VERIFY_OTP"
        await store.close()

    @staticmethod
    def _write_records(tmp_path, *sessions):
        from database.store_file import SESSIONS_FILE
        (tmp_path / "sessions").mkdir()
        with open(tmp_path / "sessions" / SESSIONS_FILE, "w") as f:
            json.dump({s.key: s.to_record() for s in sessions}, f)

    @pytest.mark.asyncio
    async def test_loaded_session_expires_without_access(self, data_dir, tmp_path):
        from database.store_file import FileSessionStore
        self._write_records(tmp_path, Session(
            tenant_id="fabbank", user_id="U1", dialog_state="VERIFY_OTP",
            attributes={"phone": "+919876543210"}, expiry_ms=200,
        ))
        store = FileSessionStore(data_dir)
        await store.init()
        assert "fabbank:U1" in store._timers
        await asyncio.sleep(0.5)
        assert store._sessions == {}
        with open(store.path) as f:
            assert json.load(f) == {}
        await store.close()

    @pytest.mark.asyncio
    async def test_sweep_expired_rewrites_file(self, data_dir, tmp_path):
        from database.store_file import FileSessionStore
        from database.sweeper import SessionSweeper
        self._write_records(
            tmp_path,
            Session(tenant_id="fabbank", user_id="U1", dialog_state="MAIN_MENU", expiry_ms=100),
            Session(tenant_id="fabbank", user_id="U2", dialog_state="MAIN_MENU"),
        )
        store = FileSessionStore(data_dir)
        assert SessionSweeper.supports(store) is True
        await asyncio.sleep(0.2)
        assert await SessionSweeper(store).sweep_once() == 1
        with open(store.path) as f:
            assert list(json.load(f)) == ["fabbank:U2"]
        assert await store.sweep_expired() == 0
        await store.close()

    @pytest.mark.asyncio
    async def test_corrupt_file_starts_empty(self, data_dir, tmp_path):
        from database.store_file import FileSessionStore, SESSIONS_FILE
        (tmp_path / "sessions").mkdir()
        (tmp_path / "sessions" / SESSIONS_FILE).write_text("{not json")
        store = FileSessionStore(data_dir)
        assert await store.list_all() == []
        await store.close()

    @pytest.mark.asyncio
    async def test_deferred_flush(self, data_dir):
        from database.store_file import FileSessionStore
        store = FileSessionStore(data_dir, flush_interval_s=0.05)
        await store.create("fabbank", "U1")
        await asyncio.sleep(0.15)
        with open(store.path) as f:
            assert "fabbank:U1" in json.load(f)
        await store.close()


# ──────────────────────────────────────────────────────────────
#  SqlSessionStore (SQLite)
# ──────────────────────────────────────────────────────────────

class TestSqlSessionStore:
    @pytest.fixture
    def db_url(self, tmp_path):
        return f"sqlite:///{tmp_path}/sessions.db"

    @pytest.mark.asyncio
    async def test_crud(self, db_url):
        from database.store_sql import SqlSessionStore
        store = SqlSessionStore(url=db_url)
        try:
            created = await store.create("fabbank", "U1", {"a": 1}, dialog_state="MAIN_MENU")
            assert created.key == "fabbank:U1"

            await store.update("fabbank", "U1", dialog_state="VERIFY_OTP", attributes={"a": 1, "b": 2})
            session = await store.get("fabbank", "U1")
            assert session.dialog_state == "VERIFY_OTP"
            assert session.attributes == {"a": 1, "b": 2}
            assert session.last_activity >= created.last_activity

            assert await store.exists("fabbank", "U1") is True
            assert await store.delete("fabbank", "U1") is True
            assert await store.get("fabbank", "U1") is None
            assert await store.delete("fabbank", "U1") is False
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_create_replaces_existing(self, db_url):
        from database.store_sql import SqlSessionStore
        store = SqlSessionStore(url=db_url)
        try:
            await store.create("fabbank", "U1", {"old": True}, dialog_state="VERIFY_OTP")
            await store.create("fabbank", "U1", {"new": True})
            session = await store.get("fabbank", "U1")
            assert session.attributes == {"new": True}
            assert session.dialog_state == "MAIN_MENU"
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_update_missing_and_bad_field(self, db_url):
        from database.store_sql import SqlSessionStore
        store = SqlSessionStore(url=db_url)
        try:
            assert await store.update("fabbank", "ghost", dialog_state="X") is None
            with pytest.raises(ValueError):
                await store.update("fabbank", "ghost", created_at="now")
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_lazy_expiry_on_read(self, db_url):
        from database.store_sql import SqlSessionStore
        store = SqlSessionStore(url=db_url)
        try:
            await store.create("fabbank", "U1", expiry_ms=1)
            await asyncio.sleep(0.05)
            assert await store.get("fabbank", "U1") is None
            assert await store.list_by_tenant("fabbank") == []
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_list_clear_and_stats(self, db_url):
        from database.store_sql import SqlSessionStore
        store = SqlSessionStore(url=db_url)
        try:
            await store.create("fabbank", "U1")
            await store.create("fabbank", "U2")
            await store.create("airline", "U1")
            assert sorted(s.user_id for s in await store.list_by_tenant("fabbank")) == ["U1", "U2"]
            stats = await store.stats()
            assert stats["backend"] == "sql"
            assert stats["by_tenant"] == {"fabbank": 2, "airline": 1}
            assert await store.clear_tenant("fabbank") == 2
            assert len(await store.list_all()) == 1
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_in_memory_sqlite_url(self):
        from database.store_sql import SqlSessionStore
        store = SqlSessionStore(url="sqlite:///:memory:")
        try:
            await store.create("fabbank", "U1", {"a": 1})
            assert (await store.get("fabbank", "U1")).attributes == {"a": 1}
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_sweeper_removes_expired_rows(self, db_url):
        from database.store_sql import SqlSessionStore
        from database.sweeper import SessionSweeper
        store = SqlSessionStore(url=db_url)
        try:
            await store.create("fabbank", "idle1", expiry_ms=1)
            await store.create("fabbank", "idle2", expiry_ms=1)
            await store.create("fabbank", "active", expiry_ms=60_000)
            await asyncio.sleep(0.05)

            sweeper = SessionSweeper(store, interval_s=60)
            assert SessionSweeper.supports(store) is True
            assert await sweeper.sweep_once() == 2
            assert (await store.stats())["sessions"] == 1
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_sweeper_background_loop(self, db_url):
        from database.store_sql import SqlSessionStore
        from database.sweeper import SessionSweeper
        store = SqlSessionStore(url=db_url)
        try:
            await store.create("fabbank", "idle", expiry_ms=1)
            sweeper = SessionSweeper(store, interval_s=0.02)
            await asyncio.sleep(0.02)
            await sweeper.start()
            await asyncio.sleep(0.2)
            await sweeper.stop()
            assert (await store.stats())["sessions"] == 0
        finally:
            await store.close()


# ──────────────────────────────────────────────────────────────
#  Store factory
# ──────────────────────────────────────────────────────────────

class TestStoreFactory:
    @pytest.fixture(autouse=True)
    def reset(self):
        from database.store_factory import reset_store
        reset_store()
        yield
        reset_store()

    def test_default_is_memory(self):
        from database.store_factory import create_store
        from database.store_memory import InMemorySessionStore
        assert isinstance(create_store(), InMemorySessionStore)

    def test_file_backend(self, tmp_path):
        from database.store_factory import create_store
        from database.store_file import FileSessionStore
        store = create_store(StoreConfig(backend="file", file_dir=str(tmp_path)))
        assert isinstance(store, FileSessionStore)

    def test_sql_backend(self, tmp_path):
        from database.store_factory import create_store
        from database.store_sql import SqlSessionStore
        store = create_store(StoreConfig(backend="sql", url=f"sqlite:///{tmp_path}/f.db"))
        assert isinstance(store, SqlSessionStore)

    def test_unknown_backend_falls_back_to_memory(self):
        from database.store_factory import create_store
        from database.store_memory import InMemorySessionStore
        assert isinstance(create_store(StoreConfig(backend="cassandra")), InMemorySessionStore)

    def test_singleton(self):
        from database.store_factory import create_store, get_store
        assert create_store() is get_store()

    def test_memory_store_has_no_sweep(self):
        from database.store_memory import InMemorySessionStore
        from database.sweeper import SessionSweeper
        assert SessionSweeper.supports(InMemorySessionStore()) is False
