"""Tests for the sync service facade."""

import pytest
from datetime import datetime, timedelta, timezone

from offsync.config import Config, RecordsConfig, StoreConfig, SyncConfig
from offsync.errors import (
    InvalidChangeError,
    InvalidStrategyError,
    RecordNotFoundError,
    StaleRecordError,
)
from offsync.service import SyncService
from offsync.sync import ChangeStatus, ReviewStatus


@pytest.fixture
def config():
    return Config(
        store=StoreConfig(db_path=":memory:", completed_retention_days=30),
        records=RecordsConfig(db_path=":memory:"),
        sync=SyncConfig(max_workers=3),
    )


@pytest.fixture
def service(config):
    service = SyncService.from_config(config)
    yield service
    service.close()


class TestSyncService:
    """Tests for SyncService."""

    def test_from_config_registers_default_resources(self, service):
        assert service.registry.resource_types == [
            "earnings",
            "expenses",
            "goals",
            "clients",
            "invoices",
        ]

    def test_enqueue_and_drain(self, service):
        service.enqueue("u1", "goals", "create", {"title": "save"}, "phone")

        assert service.count_pending("u1") == 1
        results = service.drain("u1", "server-wins")

        assert len(results) == 1 and results[0].success
        assert service.status("u1") == {
            "pending": 0,
            "completed": 1,
            "failed": 0,
            "total": 1,
            "unresolved": 0,
        }

    def test_list_changes_by_status_string(self, service):
        service.enqueue("u1", "notes", "create", {}, "phone")
        service.enqueue("u1", "goals", "create", {}, "phone")
        service.drain("u1", "client-wins")

        failed = service.list_changes("u1", status="failed")

        assert len(failed) == 1
        assert failed[0].resource_type == "notes"
        assert failed[0].status is ChangeStatus.FAILED

    def test_purge_expired_uses_retention(self, service):
        change_id = service.enqueue("u1", "goals", "create", {}, "phone")
        fresh_id = service.enqueue("u1", "goals", "create", {}, "phone")
        service.drain("u1", "client-wins")

        old = (datetime.now(timezone.utc) - timedelta(days=45)).isoformat(timespec="microseconds")
        service.store._conn.execute(
            "UPDATE pending_changes SET processed_at = ? WHERE id = ?", (old, change_id)
        )
        service.store._conn.commit()

        assert service.purge_expired("u1") == 1
        assert service.store.get(change_id) is None
        assert service.store.get(fresh_id) is not None

    def test_drain_many_runs_each_user(self, service):
        for user in ("u1", "u2", "u3"):
            service.enqueue(user, "earnings", "create", {"amount": 1}, "phone")
            service.enqueue(user, "earnings", "create", {"amount": 2}, "phone")

        outcomes = service.drain_many(["u1", "u2", "u3", "u1"], "client-wins")

        assert set(outcomes) == {"u1", "u2", "u3"}
        for results in outcomes.values():
            assert len(results) == 2
            assert all(r.success for r in results)

    def test_drain_many_invalid_strategy(self, service):
        with pytest.raises(InvalidStrategyError):
            service.drain_many(["u1"], "whatever")

    def test_default_deadline_applies(self, config):
        config.sync.drain_deadline_seconds = 0
        service = SyncService.from_config(config)
        service.enqueue("u1", "goals", "create", {}, "phone")

        assert service.drain("u1", "client-wins") == []
        assert service.count_pending("u1") == 1
        service.close()

    def test_from_config_passes_drain_lock_ttl(self, config):
        config.sync.drain_lock_ttl_seconds = 120
        service = SyncService.from_config(config)

        assert service.processor.drain_lock_ttl == 120
        service.close()


def _manual_conflict(service, user_id="u1"):
    """Drain a stale update under the manual strategy; return (record_id, change_id)."""
    earnings = service.registry.resolve("earnings")
    record = earnings.create(user_id, {"amount": 100, "note": "server"})
    change_id = service.enqueue(
        user_id,
        "earnings",
        "update",
        {"id": record.id, "amount": 150, "note": "client"},
        "phone",
        datetime.now(timezone.utc) - timedelta(hours=1),
    )
    service.drain(user_id, "manual")
    return record.id, change_id


class TestConflictReview:
    """Tests for reviewing conflicts kept by manual drains."""

    def test_manual_drain_lists_unresolved(self, service):
        _, change_id = _manual_conflict(service)

        unresolved = service.list_unresolved("u1")

        assert [c.id for c in unresolved] == [change_id]
        assert {c["field"] for c in unresolved[0].conflicts} == {"amount", "note"}
        assert service.status("u1")["unresolved"] == 1

    def test_resolve_accepting_server_values(self, service):
        record_id, change_id = _manual_conflict(service)
        earnings = service.registry.resolve("earnings")
        before = earnings.fetch(record_id)

        change = service.resolve_conflicts("u1", change_id, note="keep server")

        assert change.review_status is ReviewStatus.RESOLVED
        assert change.review_resolution == {"values": {}, "note": "keep server"}
        assert earnings.fetch(record_id).sync_version == before.sync_version
        assert service.list_unresolved("u1") == []

    def test_resolve_with_chosen_values(self, service):
        record_id, change_id = _manual_conflict(service)
        earnings = service.registry.resolve("earnings")
        before = earnings.fetch(record_id)

        service.resolve_conflicts("u1", change_id, values={"amount": 150})

        after = earnings.fetch(record_id)
        assert after.fields == {"amount": 150, "note": "server"}
        assert after.sync_version == before.sync_version + 1
        assert service.store.get(change_id).review_resolution["values"] == {"amount": 150}

    def test_resolve_rejects_fields_not_in_conflict(self, service):
        record_id, change_id = _manual_conflict(service)

        with pytest.raises(InvalidChangeError, match="total"):
            service.resolve_conflicts("u1", change_id, values={"total": 1})

        assert [c.id for c in service.list_unresolved("u1")] == [change_id]

    def test_resolve_twice_or_by_other_user(self, service):
        _, change_id = _manual_conflict(service)

        with pytest.raises(RecordNotFoundError):
            service.resolve_conflicts("u2", change_id)
        service.resolve_conflicts("u1", change_id)
        with pytest.raises(RecordNotFoundError):
            service.resolve_conflicts("u1", change_id)

    def test_resolve_unknown_change(self, service):
        with pytest.raises(RecordNotFoundError):
            service.resolve_conflicts("u1", 404)

    def test_resolve_deleted_record(self, service):
        record_id, change_id = _manual_conflict(service)
        service.registry.resolve("earnings").delete(record_id)

        with pytest.raises(RecordNotFoundError):
            service.resolve_conflicts("u1", change_id, values={"amount": 1})

        assert [c.id for c in service.list_unresolved("u1")] == [change_id]

    def test_resolve_stale_write_keeps_review_open(self, service):
        record_id, change_id = _manual_conflict(service)
        earnings = service.registry.resolve("earnings")
        current = earnings.fetch(record_id)
        original_fetch = earnings.fetch

        def fetch_then_edit(rid):
            # another writer lands between the read and the write
            record = original_fetch(rid)
            earnings.apply_update(rid, {"note": "other"}, current.sync_version + 1)
            return record

        earnings.fetch = fetch_then_edit
        try:
            with pytest.raises(StaleRecordError):
                service.resolve_conflicts("u1", change_id, values={"amount": 1})
        finally:
            earnings.fetch = original_fetch

        assert [c.id for c in service.list_unresolved("u1")] == [change_id]

    def test_purge_keeps_open_reviews(self, service):
        _, change_id = _manual_conflict(service)

        assert service.purge_completed("u1") == 0
        service.resolve_conflicts("u1", change_id)
        assert service.purge_completed("u1") == 1
