"""Local reconciliation of a user's bookmark list.

The engine owns the in-memory list a session renders. Three sources feed
it: optimistic local mutations, store responses arriving on worker
threads, and change-feed notifications from other sessions. Only the
session owner mutates the list; everything else goes through ``post`` and
is applied by ``pump`` in arrival order.

List order is provisional entries first (newest submission first), then
confirmed entries by ``created_at`` descending. Equal timestamps are
ordered by local insertion, most recent first.

A reload from the store can be older than feed messages applied while it
was in flight. Changes seen during a reload are journaled and replayed on
top of the reloaded records.
"""
from __future__ import annotations

import bisect
import itertools
import logging
import queue
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import replace

from smartmarks.client.errors import AuthenticationRequired
from smartmarks.client.events import (
    AddConfirmed,
    AddFailed,
    DeleteConfirmed,
    DeleteFailed,
    FeedReset,
    OperationResult,
    RemoteDelete,
    RemoteInsert,
    ResyncFailed,
    ResyncLoaded,
    SessionChanged,
)
from smartmarks.client.models import (
    STATE_CONFIRMED,
    STATE_FAILED,
    STATE_PENDING,
    Bookmark,
    Entry,
    SessionContext,
    prepare_bookmark_input,
)

logger = logging.getLogger(__name__)

ACTION_ADD = "add"
ACTION_DELETE = "delete"

TOMBSTONE_LIMIT = 1000


def _order_key(entry: Entry):
    if entry.is_provisional:
        return (0, 0.0, -entry.seq)
    created_at = entry.bookmark.created_at
    stamp = created_at.timestamp() if created_at else 0.0
    return (1, -stamp, -entry.seq)


def _record_id(record):
    return getattr(record, "id", record)


class ReconciliationEngine:
    def __init__(
        self,
        context: SessionContext | None,
        store,
        executor: Executor | None = None,
        max_workers: int = 4,
        tombstone_limit: int = TOMBSTONE_LIMIT,
    ):
        self.context = context
        self._store = store
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="smartmarks-store"
        )
        self._inbox: queue.Queue = queue.Queue()
        self._entries: list[Entry] = []
        self._seq = itertools.count(1)
        self._local_keys = itertools.count(1)
        self._submitted: dict[str, int] = {}
        self._cancelled: set[str] = set()
        # insertion ordered, oldest evicted first
        self._tombstones: dict = {}
        self._tombstone_limit = tombstone_limit
        self._resyncs_in_flight = 0
        self._journal: list = []
        self._change_listeners = []
        self._result_listeners = []
        self._context_listeners = []
        self._handlers = {
            RemoteInsert: self._on_remote_insert,
            RemoteDelete: self._on_remote_delete,
            FeedReset: self._on_feed_reset,
            AddConfirmed: self._on_add_confirmed,
            AddFailed: self._on_add_failed,
            DeleteConfirmed: self._on_delete_confirmed,
            DeleteFailed: self._on_delete_failed,
            ResyncLoaded: self._on_resync_loaded,
            ResyncFailed: self._on_resync_failed,
            SessionChanged: lambda msg: self.set_context(msg.context),
        }

    # listeners

    def on_change(self, callback):
        self._change_listeners.append(callback)

    def on_result(self, callback):
        self._result_listeners.append(callback)

    def on_context_change(self, callback):
        self._context_listeners.append(callback)

    def snapshot(self) -> tuple[Entry, ...]:
        return tuple(self._entries)

    def bookmarks(self) -> list[Bookmark]:
        return [entry.bookmark for entry in self._entries]

    def _changed(self) -> None:
        snapshot = self.snapshot()
        for callback in list(self._change_listeners):
            callback(snapshot)

    def _report(self, action: str, ok: bool, message: str, key=None) -> None:
        result = OperationResult(action=action, ok=ok, message=message, key=key)
        for callback in list(self._result_listeners):
            callback(result)

    # inbound channel

    def post(self, message) -> None:
        self._inbox.put(message)

    def pump(self, timeout: float | None = None) -> int:
        """Apply queued messages on the calling thread.

        Waits up to ``timeout`` seconds for the first message when given,
        then drains whatever else is already queued.
        """
        processed = 0
        while True:
            wait = timeout is not None and processed == 0
            try:
                message = self._inbox.get(block=wait, timeout=timeout if wait else None)
            except queue.Empty:
                return processed
            handler = self._handlers.get(type(message))
            if handler is None:
                logger.warning("Dropping unknown message %r", message)
            else:
                handler(message)
            processed += 1

    def _dispatch(self, func, on_success, on_failure) -> None:
        future = self._executor.submit(func)

        def _done(done_future):
            error = done_future.exception()
            if error is not None:
                self.post(on_failure(error))
            else:
                self.post(on_success(done_future.result()))

        future.add_done_callback(_done)

    def close(self) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=False)

    # helpers

    def _index_of(self, key) -> int | None:
        for index, entry in enumerate(self._entries):
            if entry.key == key:
                return index
        return None

    def _index_of_id(self, bookmark_id) -> int | None:
        for index, entry in enumerate(self._entries):
            if entry.state == STATE_CONFIRMED and entry.bookmark.id == bookmark_id:
                return index
        return None

    def _belongs_to_owner(self, record: Bookmark) -> bool:
        if self.context is None:
            return False
        return record.owner == self.context.owner_id

    def _insert_sorted(self, entry: Entry) -> None:
        bisect.insort(self._entries, entry, key=_order_key)

    def _confirmed_entry(self, record: Bookmark, seq: int | None = None) -> Entry:
        return Entry(
            bookmark=record,
            state=STATE_CONFIRMED,
            seq=seq if seq is not None else next(self._seq),
        )

    def _bury(self, bookmark_id) -> None:
        self._tombstones.pop(bookmark_id, None)
        self._tombstones[bookmark_id] = None
        while len(self._tombstones) > self._tombstone_limit:
            del self._tombstones[next(iter(self._tombstones))]

    def _remember(self, message) -> None:
        if self._resyncs_in_flight:
            self._journal.append(message)

    def _finish_resync(self) -> list:
        self._resyncs_in_flight = max(self._resyncs_in_flight - 1, 0)
        journal = list(self._journal)
        if not self._resyncs_in_flight:
            self._journal.clear()
        return journal

    # session context

    def set_context(self, context: SessionContext | None) -> None:
        previous = self.context
        self.context = context
        if context is None or (
            previous is not None and previous.owner_id != context.owner_id
        ):
            self._entries = []
            self._cancelled.clear()
            self._tombstones.clear()
            self._journal.clear()
            self._changed()
        for callback in list(self._context_listeners):
            callback(context)

    # local operations

    def submit_add(self, title, target) -> Bookmark:
        clean_title, clean_target = prepare_bookmark_input(title, target)
        if self.context is None:
            raise AuthenticationRequired("sign in to add bookmarks")

        owner = self.context.owner_id
        local_key = f"local-{next(self._local_keys)}"
        provisional = Bookmark(
            id=None, owner=owner, title=clean_title, target=clean_target
        )
        self._entries.insert(
            0,
            Entry(
                bookmark=provisional,
                state=STATE_PENDING,
                seq=next(self._seq),
                local_key=local_key,
            ),
        )
        self._submitted[local_key] = owner
        self._changed()

        self._dispatch(
            lambda: self._store.insert(clean_title, clean_target, owner=owner),
            lambda record: AddConfirmed(local_key=local_key, record=record),
            lambda error: AddFailed(local_key=local_key, error=error),
        )
        return provisional

    def submit_delete(self, key) -> None:
        index = self._index_of(key)
        if index is None:
            return
        entry = self._entries.pop(index)
        self._changed()

        if entry.state == STATE_PENDING:
            # the store id is unknown until the insert answers
            self._cancelled.add(entry.local_key)
            return
        if entry.state == STATE_FAILED:
            return
        self._bury(entry.bookmark.id)
        self._remember(RemoteDelete(entry.bookmark.id))
        self._request_delete(entry.bookmark.id)

    def _request_delete(self, bookmark_id) -> None:
        self._dispatch(
            lambda: self._store.delete_by_id(bookmark_id),
            lambda _deleted: DeleteConfirmed(bookmark_id=bookmark_id),
            lambda error: DeleteFailed(bookmark_id=bookmark_id, error=error),
        )

    def request_resync(self) -> None:
        self._resyncs_in_flight += 1
        self._dispatch(
            self._store.list_all,
            lambda records: ResyncLoaded(records=list(records)),
            lambda error: ResyncFailed(error=error),
        )

    # remote operations

    def _apply_insert(self, record: Bookmark) -> bool:
        if not self._belongs_to_owner(record):
            logger.debug("Ignoring insert for foreign bookmark %s", record.id)
            return False
        if record.id in self._tombstones:
            # replayed insert of something already deleted here
            return False
        if self._index_of_id(record.id) is not None:
            return False
        self._insert_sorted(self._confirmed_entry(record))
        return True

    def _apply_delete(self, bookmark_id) -> bool:
        self._bury(bookmark_id)
        index = self._index_of_id(bookmark_id)
        if index is None:
            return False
        del self._entries[index]
        return True

    def _replace_all(self, records) -> None:
        self._tombstones.clear()
        existing_seq = {
            entry.bookmark.id: entry.seq
            for entry in self._entries
            if entry.state == STATE_CONFIRMED
        }
        entries: list[Entry] = []
        seen: set = set()
        for record in reversed(list(records)):
            if record.id in seen or not self._belongs_to_owner(record):
                continue
            seen.add(record.id)
            seq = existing_seq.get(record.id)
            entries.append(self._confirmed_entry(record, seq))
        entries.sort(key=_order_key)
        self._entries = entries

    def merge_remote_insert(self, record: Bookmark) -> None:
        if self._apply_insert(record):
            self._changed()

    def merge_remote_delete(self, record) -> None:
        if self._apply_delete(_record_id(record)):
            self._changed()

    def reconcile_full(self, records) -> None:
        self._replace_all(records)
        self._changed()

    def _on_remote_insert(self, message: RemoteInsert) -> None:
        self._remember(message)
        self.merge_remote_insert(message.record)

    def _on_remote_delete(self, message: RemoteDelete) -> None:
        self._remember(message)
        self.merge_remote_delete(message.record)

    def _on_resync_loaded(self, message: ResyncLoaded) -> None:
        journal = self._finish_resync()
        self._replace_all(message.records)
        for change in journal:
            if isinstance(change, RemoteInsert):
                self._apply_insert(change.record)
            else:
                self._apply_delete(_record_id(change.record))
        if journal:
            logger.debug("Replayed %d changes over reloaded bookmarks", len(journal))
        self._changed()

    # store completions

    def _on_add_confirmed(self, message: AddConfirmed) -> None:
        record = message.record
        owner = self._submitted.pop(message.local_key, None)
        if self.context is None or owner != self.context.owner_id:
            logger.info(
                "Dropping confirmation of %s from a previous session", message.local_key
            )
            return

        index = self._index_of(message.local_key)

        if message.local_key in self._cancelled:
            self._cancelled.discard(message.local_key)
            self._bury(record.id)
            self._remember(RemoteDelete(record.id))
            echoed = self._index_of_id(record.id)
            if echoed is not None:
                del self._entries[echoed]
                self._changed()
            self._request_delete(record.id)
            return

        if not self._belongs_to_owner(record):
            logger.warning("Store answered insert with foreign record %s", record.id)
            if index is not None:
                del self._entries[index]
                self._changed()
            self._report(ACTION_ADD, False, "Failed to add bookmark.", message.local_key)
            return

        if record.id in self._tombstones:
            # deleted by another session before the insert answered
            if index is not None:
                del self._entries[index]
                self._changed()
            self._report(ACTION_ADD, True, "Bookmark added.", record.id)
            return

        self._remember(RemoteInsert(record))
        if self._index_of_id(record.id) is not None:
            # the feed echo won the race
            if index is not None:
                del self._entries[index]
        elif index is not None:
            provisional = self._entries.pop(index)
            self._insert_sorted(self._confirmed_entry(record, provisional.seq))
        else:
            self._insert_sorted(self._confirmed_entry(record))
        self._changed()
        self._report(ACTION_ADD, True, "Bookmark added.", record.id)

    def _on_add_failed(self, message: AddFailed) -> None:
        owner = self._submitted.pop(message.local_key, None)
        self._cancelled.discard(message.local_key)
        if self.context is None or owner != self.context.owner_id:
            logger.info("Dropping failed add %s from a previous session", message.local_key)
            return

        logger.warning("Adding bookmark %s failed: %s", message.local_key, message.error)
        index = self._index_of(message.local_key)
        if index is not None:
            self._entries[index] = replace(self._entries[index], state=STATE_FAILED)
            self._changed()
        self._report(
            ACTION_ADD,
            False,
            "Failed to add bookmark. Please try again.",
            message.local_key,
        )

    def _on_delete_confirmed(self, message: DeleteConfirmed) -> None:
        self._report(ACTION_DELETE, True, "Bookmark deleted.", message.bookmark_id)

    def _on_delete_failed(self, message: DeleteFailed) -> None:
        logger.warning(
            "Deleting bookmark %s failed, resyncing: %s",
            message.bookmark_id,
            message.error,
        )
        # the record still exists, so a reload must not replay its removal
        self._journal = [
            change
            for change in self._journal
            if not (
                isinstance(change, RemoteDelete)
                and _record_id(change.record) == message.bookmark_id
            )
        ]
        self.request_resync()
        self._report(
            ACTION_DELETE,
            False,
            "Failed to delete bookmark. Please try again.",
            message.bookmark_id,
        )

    def _on_feed_reset(self, message: FeedReset) -> None:
        logger.info("Change feed gap (%s), reloading bookmarks", message.reason)
        self.request_resync()

    def _on_resync_failed(self, message: ResyncFailed) -> None:
        self._finish_resync()
        logger.warning("Reloading bookmarks failed: %s", message.error)
