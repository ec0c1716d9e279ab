"""Tests for the SQLAlchemy egress store."""

import pytest
from livekit.api import EgressInfo, EgressStatus, FileInfo

from egress_service.database.models import EgressRecord
from egress_service.database.repository import SQLEgressStore, _mask_url
from egress_service.jobs.registry import INTERRUPTED_ERROR, EgressRegistry


@pytest.fixture
def store(tmp_path):
    store = SQLEgressStore(f"sqlite:///{tmp_path / 'egress.db'}")
    store.create_tables()
    yield store
    store.close()


def make_info(egress_id: str, status=EgressStatus.EGRESS_ACTIVE, room_name: str = "room-a") -> EgressInfo:
    return EgressInfo(egress_id=egress_id, room_name=room_name, status=status, started_at=10, updated_at=20)


class TestSQLEgressStore:

    def test_save_and_load(self, store):
        info = make_info("EG_1", EgressStatus.EGRESS_COMPLETE)
        info.file.CopyFrom(FileInfo(filename="a.mp4", size=42))

        store.save(info)
        loaded = store.load()

        assert len(loaded) == 1
        assert loaded[0] == info
        assert loaded[0].file.size == 42

    def test_save_replaces_snapshot(self, store):
        """Test saving the same id twice keeps one row with the latest state."""
        store.save(make_info("EG_1", EgressStatus.EGRESS_STARTING))
        failed = make_info("EG_1", EgressStatus.EGRESS_FAILED)
        failed.error = "output failed to open"
        store.save(failed)

        loaded = store.load()
        assert [i.status for i in loaded] == [EgressStatus.EGRESS_FAILED]

        with store._session_factory() as session:
            record = session.get(EgressRecord, "EG_1")
            assert record.status == "EGRESS_FAILED"
            assert record.error == "output failed to open"
            assert record.updated_at == 20

    def test_load_in_creation_order(self, store):
        for egress_id in ("EG_c", "EG_a", "EG_b"):
            store.save(make_info(egress_id))

        assert [i.egress_id for i in store.load()] == ["EG_c", "EG_a", "EG_b"]

    def test_delete(self, store):
        store.save(make_info("EG_1"))

        store.delete("EG_1")
        store.delete("EG_missing")

        assert store.load() == []

    def test_registry_restore(self, store):
        """Test a registry backed by the store fails jobs left running."""
        store.save(make_info("EG_running", EgressStatus.EGRESS_ACTIVE))
        store.save(make_info("EG_done", EgressStatus.EGRESS_COMPLETE))

        registry = EgressRegistry(store)
        assert registry.restore() == 2

        running = registry.get("EG_running")
        assert running.status == EgressStatus.EGRESS_FAILED
        assert running.error == INTERRUPTED_ERROR
        assert {i.egress_id: i.status for i in store.load()} == {
            "EG_running": EgressStatus.EGRESS_FAILED,
            "EG_done": EgressStatus.EGRESS_COMPLETE,
        }


class TestMaskUrl:

    def test_credentials_masked(self):
        assert _mask_url("postgresql://user:pass@db:5432/egress") == "postgresql://***@db:5432/egress"

    def test_url_without_credentials(self):
        assert _mask_url("sqlite:///egress.db") == "sqlite:///egress.db"
