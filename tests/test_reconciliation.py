from concurrent.futures import Executor, Future
from datetime import datetime, timedelta, timezone

import pytest

from smartmarks.client.engine import ReconciliationEngine
from smartmarks.client.errors import (
    AuthenticationRequired,
    StoreWriteFailed,
    ValidationFailed,
)
from smartmarks.client.events import FeedReset, RemoteDelete, RemoteInsert
from smartmarks.client.models import (
    STATE_CONFIRMED,
    STATE_FAILED,
    STATE_PENDING,
    Bookmark,
    SessionContext,
)

OWNER = 1
BASE_TIME = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _record(bookmark_id, minutes=0, owner=OWNER, title=None):
    return Bookmark(
        id=bookmark_id,
        owner=owner,
        title=title or f"Bookmark {bookmark_id}",
        target=f"https://example.com/{bookmark_id}",
        created_at=BASE_TIME + timedelta(minutes=minutes),
    )


class FakeStore:
    def __init__(self, next_id=42):
        self.records: list[Bookmark] = []
        self.next_id = next_id
        self.fail_insert = False
        self.fail_delete = False
        self.fail_list = False
        self.inserts = []
        self.deletes = []

    def insert(self, title, target, owner=None):
        self.inserts.append((owner, title, target))
        if self.fail_insert:
            raise StoreWriteFailed("insert refused")
        record = Bookmark(
            id=self.next_id,
            owner=owner,
            title=title,
            target=target,
            created_at=BASE_TIME + timedelta(hours=1, minutes=self.next_id),
        )
        self.next_id += 1
        self.records.append(record)
        return record

    def delete_by_id(self, bookmark_id):
        self.deletes.append(bookmark_id)
        if self.fail_delete:
            raise StoreWriteFailed("delete refused")
        before = len(self.records)
        self.records = [item for item in self.records if item.id != bookmark_id]
        return len(self.records) != before

    def list_all(self):
        if self.fail_list:
            raise StoreWriteFailed("list refused")
        return sorted(self.records, key=lambda item: item.created_at, reverse=True)


class QueuedExecutor(Executor):
    """Holds submitted work until the test runs it."""

    def __init__(self):
        self.calls = []

    def submit(self, fn, /, *args, **kwargs):
        future = Future()
        self.calls.append((future, fn, args, kwargs))
        return future

    def run_all(self):
        while self.calls:
            future, fn, args, kwargs = self.calls.pop(0)
            try:
                result = fn(*args, **kwargs)
            except Exception as exc:
                future.set_exception(exc)
            else:
                future.set_result(result)


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def engine(store, immediate_executor):
    context = SessionContext(owner_id=OWNER, access_token="token", username="u1")
    return ReconciliationEngine(context, store, executor=immediate_executor)


def _ids(engine):
    return [entry.bookmark.id for entry in engine.snapshot()]


def _results(engine):
    results = []
    engine.on_result(results.append)
    return results


def test_basic_add_is_provisional_then_confirmed(engine, store):
    results = _results(engine)

    provisional = engine.submit_add("Example", "example.com")

    assert provisional.target == "https://example.com"
    snapshot = engine.snapshot()
    assert len(snapshot) == 1
    assert snapshot[0].state == STATE_PENDING
    assert snapshot[0].bookmark.title == "Example"
    assert snapshot[0].bookmark.id is None
    assert store.inserts == [(OWNER, "Example", "https://example.com")]

    engine.pump()

    snapshot = engine.snapshot()
    assert len(snapshot) == 1
    assert snapshot[0].state == STATE_CONFIRMED
    assert snapshot[0].bookmark.id == 42
    assert [(r.action, r.ok) for r in results] == [("add", True)]


def test_add_keeps_explicit_scheme(engine):
    provisional = engine.submit_add("Plain", "  http://plain.example ")
    assert provisional.target == "http://plain.example"


@pytest.mark.parametrize("title,target", [("", "example.com"), ("Title", "   ")])
def test_add_validation_rejects_blank_input_without_network(engine, store, title, target):
    with pytest.raises(ValidationFailed):
        engine.submit_add(title, target)
    assert engine.snapshot() == ()
    assert store.inserts == []


def test_add_requires_authenticated_context(store, immediate_executor):
    engine = ReconciliationEngine(None, store, executor=immediate_executor)
    with pytest.raises(AuthenticationRequired):
        engine.submit_add("Example", "example.com")
    assert store.inserts == []


def test_self_echo_before_confirmation_does_not_duplicate(engine):
    engine.submit_add("Example", "example.com")
    echoed = _record(42, minutes=90, title="Example")

    engine.merge_remote_insert(echoed)
    engine.pump()

    assert _ids(engine) == [42]


def test_self_echo_after_confirmation_is_deduplicated(engine):
    engine.submit_add("Example", "example.com")
    engine.pump()

    engine.merge_remote_insert(_record(42, minutes=90))

    assert _ids(engine) == [42]


def test_remote_insert_is_idempotent(engine):
    record = _record(5)
    engine.merge_remote_insert(record)
    once = engine.snapshot()
    engine.merge_remote_insert(record)
    assert engine.snapshot() == once


def test_remote_delete_of_absent_id_is_noop(engine):
    engine.merge_remote_insert(_record(5))
    before = engine.snapshot()
    engine.merge_remote_delete(_record(99))
    assert engine.snapshot() == before


def test_optimistic_delete_then_feed_confirmation(engine):
    engine.reconcile_full([_record(7, minutes=2), _record(6, minutes=1)])
    engine.submit_delete(7)
    after_delete = engine.snapshot()

    engine.merge_remote_delete(_record(7, minutes=2))

    assert engine.snapshot() == after_delete
    assert _ids(engine) == [6]


def test_ordering_by_created_at_descending(engine):
    for bookmark_id, minutes in [(1, 5), (2, 1), (3, 9), (4, 3)]:
        engine.merge_remote_insert(_record(bookmark_id, minutes=minutes))
    engine.merge_remote_delete(_record(3))
    engine.merge_remote_insert(_record(5, minutes=4))

    stamps = [entry.bookmark.created_at for entry in engine.snapshot()]
    assert stamps == sorted(stamps, reverse=True)
    assert _ids(engine) == [1, 5, 4, 2]


def test_equal_timestamps_put_latest_local_insert_first(engine):
    engine.merge_remote_insert(_record(1, minutes=3))
    engine.merge_remote_insert(_record(2, minutes=3))
    engine.merge_remote_insert(_record(3, minutes=3))
    assert _ids(engine) == [3, 2, 1]


def test_cross_tab_insert_lands_at_head(engine):
    assert engine.snapshot() == ()
    engine.merge_remote_insert(_record(11, minutes=30))
    assert _ids(engine) == [11]


def test_foreign_records_never_enter_the_list(engine):
    engine.merge_remote_insert(_record(12, owner=2))
    engine.reconcile_full([_record(13, owner=2), _record(14)])
    assert _ids(engine) == [14]


def test_delete_race_with_unrelated_insert(engine, store):
    store.records = [_record(7)]
    engine.reconcile_full(store.list_all())

    engine.submit_delete(7)
    assert engine.snapshot() == ()

    engine.merge_remote_insert(_record(8, minutes=1))
    assert _ids(engine) == [8]


def test_failed_delete_triggers_full_resync(engine, store):
    results = _results(engine)
    store.records = [_record(9)]
    engine.reconcile_full(store.list_all())
    store.fail_delete = True

    engine.submit_delete(9)
    assert engine.snapshot() == ()

    engine.pump()

    assert _ids(engine) == [9]
    assert [(r.action, r.ok) for r in results] == [("delete", False)]


def test_delete_of_missing_id_is_noop(engine, store):
    engine.submit_delete(1234)
    assert store.deletes == []
    assert engine.snapshot() == ()


def test_failed_add_keeps_entry_and_reports(engine, store):
    results = _results(engine)
    store.fail_insert = True

    engine.submit_add("Example", "example.com")
    engine.pump()

    snapshot = engine.snapshot()
    assert len(snapshot) == 1
    assert snapshot[0].state == STATE_FAILED
    assert snapshot[0].bookmark.title == "Example"
    assert len(store.inserts) == 1
    assert results[0].ok is False
    assert "Failed to add bookmark" in results[0].message


def test_failed_entry_can_be_dismissed_locally(engine, store):
    store.fail_insert = True
    engine.submit_add("Example", "example.com")
    engine.pump()
    key = engine.snapshot()[0].key

    engine.submit_delete(key)

    assert engine.snapshot() == ()
    assert store.deletes == []


def test_deleting_pending_add_removes_it_once_confirmed(engine, store):
    engine.submit_add("Example", "example.com")
    key = engine.snapshot()[0].key

    engine.submit_delete(key)
    assert engine.snapshot() == ()

    engine.pump()

    assert engine.snapshot() == ()
    assert store.deletes == [42]
    assert store.records == []


def test_confirmed_entry_moves_to_store_timestamp_position(engine):
    engine.merge_remote_insert(_record(1, minutes=500))
    engine.merge_remote_insert(_record(2, minutes=10))

    engine.submit_add("Example", "example.com")
    assert engine.snapshot()[0].state == STATE_PENDING

    engine.pump()

    # store assigns created_at one hour and 42 minutes after the base time
    assert _ids(engine) == [1, 42, 2]


def test_reconcile_full_discards_provisional_entries(engine, store):
    store.fail_insert = True
    engine.submit_add("Lost", "lost.example")
    engine.pump()

    engine.reconcile_full([_record(3, minutes=1), _record(3, minutes=1)])

    assert _ids(engine) == [3]


def test_confirmation_after_resync_restores_entry(engine, store):
    engine.submit_add("Slow", "slow.example")
    # resync runs before the queued confirmation is applied
    engine.reconcile_full([])
    assert engine.snapshot() == ()

    engine.pump()

    assert _ids(engine) == [42]


def test_feed_reset_reloads_from_store(engine, store):
    store.records = [_record(1), _record(2, minutes=1)]
    engine.post(FeedReset("events pruned"))
    engine.pump()
    assert _ids(engine) == [2, 1]


def test_pump_applies_feed_messages_in_order(engine):
    engine.post(RemoteInsert(_record(1)))
    engine.post(RemoteInsert(_record(2, minutes=1)))
    engine.post(RemoteDelete(_record(1)))

    assert engine.pump() == 3
    assert _ids(engine) == [2]
    assert engine.pump(timeout=0.01) == 0


def test_change_listener_sees_every_mutation(engine):
    snapshots = []
    engine.on_change(snapshots.append)

    engine.submit_add("Example", "example.com")
    engine.pump()
    engine.submit_delete(42)

    assert [len(item) for item in snapshots] == [1, 1, 0]


def test_context_switch_to_other_user_clears_list(engine):
    engine.merge_remote_insert(_record(1))
    engine.set_context(SessionContext(owner_id=OWNER, access_token="refreshed"))
    assert _ids(engine) == [1]

    engine.set_context(SessionContext(owner_id=2, access_token="other"))
    assert engine.snapshot() == ()


def test_replayed_insert_after_delete_stays_deleted(engine):
    engine.merge_remote_insert(_record(7))
    engine.merge_remote_delete(_record(7))

    engine.merge_remote_insert(_record(7))

    assert engine.snapshot() == ()


def test_full_resync_forgets_deleted_ids(engine):
    engine.merge_remote_insert(_record(7))
    engine.submit_delete(7)

    engine.reconcile_full([_record(7)])

    assert _ids(engine) == [7]


def test_feed_insert_during_resync_survives_stale_snapshot(engine, store):
    store.records = [_record(9)]
    engine.reconcile_full(store.list_all())
    store.fail_delete = True
    read_records = store.list_all

    def list_then_insert():
        # another session commits bookmark 10 after the snapshot was read
        records = read_records()
        store.records.append(_record(10, minutes=5))
        engine.post(RemoteInsert(_record(10, minutes=5)))
        return records

    store.list_all = list_then_insert

    engine.submit_delete(9)
    engine.pump()

    assert _ids(engine) == [10, 9]


def test_feed_delete_during_resync_survives_stale_snapshot(engine, store):
    store.records = [_record(9), _record(10, minutes=5)]
    engine.reconcile_full(store.list_all())
    read_records = store.list_all

    def list_then_delete():
        records = read_records()
        store.records = [_record(9)]
        engine.post(RemoteDelete(_record(10, minutes=5)))
        return records

    store.list_all = list_then_delete

    engine.post(FeedReset("reconnected"))
    engine.pump()

    assert _ids(engine) == [9]


def test_local_delete_during_resync_survives_stale_snapshot(store):
    executor = QueuedExecutor()
    context = SessionContext(owner_id=OWNER, access_token="token")
    engine = ReconciliationEngine(context, store, executor=executor)
    store.records = [_record(8), _record(9, minutes=1)]
    engine.reconcile_full(store.list_all())

    engine.request_resync()
    executor.run_all()
    engine.submit_delete(8)
    engine.pump()

    assert _ids(engine) == [9]

    executor.run_all()
    engine.pump()

    assert _ids(engine) == [9]
    assert store.deletes == [8]


def test_tombstones_keep_only_recent_deletes(store, immediate_executor):
    context = SessionContext(owner_id=OWNER, access_token="token")
    engine = ReconciliationEngine(
        context, store, executor=immediate_executor, tombstone_limit=2
    )
    for bookmark_id in (1, 2, 3):
        engine.merge_remote_insert(_record(bookmark_id))
        engine.merge_remote_delete(bookmark_id)

    engine.merge_remote_insert(_record(3))
    engine.merge_remote_insert(_record(1))

    assert _ids(engine) == [1]


def test_add_from_previous_user_is_dropped_quietly(engine, store):
    results = _results(engine)
    engine.submit_add("Old", "old.example")

    engine.set_context(SessionContext(owner_id=2, access_token="other"))
    engine.pump()

    assert engine.snapshot() == ()
    assert results == []
    assert store.inserts == [(OWNER, "Old", "https://old.example")]
