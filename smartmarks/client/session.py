from __future__ import annotations

import logging

from smartmarks.client.backend import (
    FeedClient,
    FeedSubscription,
    IdentityClient,
    StoreClient,
    create_http_client,
)
from smartmarks.client.config import ClientConfig
from smartmarks.client.engine import ReconciliationEngine
from smartmarks.client.errors import AuthenticationRequired
from smartmarks.client.events import (
    FeedReset,
    RemoteDelete,
    RemoteInsert,
    SessionChanged,
)
from smartmarks.client.models import SessionContext

logger = logging.getLogger(__name__)


class BookmarkSession:
    """One signed-in view of a user's bookmarks.

    The thread that calls ``open`` and ``pump`` is the session owner. Feed
    polling and store requests run elsewhere and reach the engine only
    through its queue.
    """

    def __init__(
        self,
        identity: IdentityClient,
        store: StoreClient,
        feed: FeedClient,
        executor=None,
        start_feed: bool = True,
        max_workers: int = 4,
    ):
        self.identity = identity
        self.store = store
        self.feed = feed
        self._executor = executor
        self._start_feed = start_feed
        self._max_workers = max_workers
        self.engine: ReconciliationEngine | None = None
        self.subscription: FeedSubscription | None = None
        self._stop_listening = None

    @classmethod
    def connect(cls, config: ClientConfig, transport=None, **kwargs):
        http = create_http_client(config.url, timeout=config.timeout, transport=transport)
        identity = IdentityClient(http)
        return cls(
            identity,
            StoreClient(http, identity),
            FeedClient(http, identity, poll_interval=config.poll_interval),
            max_workers=config.store_workers,
            **kwargs,
        )

    def open(self) -> ReconciliationEngine:
        if self.identity.current_user() is None:
            raise AuthenticationRequired("sign in before opening the dashboard")

        self.engine = ReconciliationEngine(
            self.identity.context,
            self.store,
            executor=self._executor,
            max_workers=self._max_workers,
        )
        self.engine.on_context_change(self._context_changed)

        records, cursor = self.store.snapshot()
        self.engine.reconcile_full(records)
        self._subscribe(cursor)
        self._stop_listening = self.identity.on_session_change(
            lambda context: self.engine.post(SessionChanged(context))
        )
        return self.engine

    def _subscribe(self, cursor: int) -> None:
        engine = self.engine
        self.subscription = self.feed.subscribe(
            on_insert=lambda record: engine.post(RemoteInsert(record)),
            on_delete=lambda record: engine.post(RemoteDelete(record)),
            on_reset=lambda gap: engine.post(FeedReset(str(gap))),
            cursor=cursor,
            start=self._start_feed,
        )

    def _unsubscribe(self) -> int:
        subscription = self.subscription
        self.subscription = None
        if subscription is None:
            return 0
        self.feed.unsubscribe(subscription)
        return subscription.cursor

    def _context_changed(self, context: SessionContext | None) -> None:
        cursor = self._unsubscribe()
        if context is None:
            logger.info("Session ended, change feed closed")
            return
        logger.info("Session credential changed, resubscribing change feed")
        self._subscribe(cursor)
        self.engine.request_resync()

    def submit_add(self, title, target):
        return self._require_engine().submit_add(title, target)

    def submit_delete(self, key) -> None:
        self._require_engine().submit_delete(key)

    def snapshot(self):
        return self._require_engine().snapshot()

    def pump(self, timeout: float | None = None) -> int:
        return self._require_engine().pump(timeout=timeout)

    def _require_engine(self) -> ReconciliationEngine:
        if self.engine is None:
            raise AuthenticationRequired("session is not open")
        return self.engine

    def close(self) -> None:
        self._unsubscribe()
        if self._stop_listening is not None:
            self._stop_listening()
            self._stop_listening = None
        if self.engine is not None:
            self.engine.close()
