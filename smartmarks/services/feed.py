from __future__ import annotations

from datetime import timedelta

from smartmarks.extensions import db
from smartmarks.models import Bookmark, FeedEvent, FeedWatermark, as_utc, utcnow


FEED_ACTION_INSERT = "insert"
FEED_ACTION_DELETE = "delete"

FEED_ACTIONS = {FEED_ACTION_INSERT, FEED_ACTION_DELETE}


def serialize_bookmark_for_feed(bookmark: Bookmark) -> dict:
    return bookmark.as_dict()


def log_feed_event(user_id: int, action: str, bookmark: Bookmark) -> FeedEvent:
    if action not in FEED_ACTIONS:
        raise ValueError(f"unsupported feed action: {action}")
    event = FeedEvent(
        user_id=user_id,
        action=action,
        bookmark_id=bookmark.id,
        payload=serialize_bookmark_for_feed(bookmark),
    )
    db.session.add(event)
    return event


def latest_cursor(user_id: int) -> int:
    newest = (
        db.session.query(db.func.max(FeedEvent.id)).filter_by(user_id=user_id).scalar()
        or 0
    )
    return max(newest, pruned_through(user_id))


def pruned_through(user_id: int) -> int:
    watermark = db.session.get(FeedWatermark, user_id)
    return watermark.pruned_through if watermark else 0


def pull_feed_events(user_id: int, since: int, limit: int) -> dict:
    """Events for ``user_id`` after cursor ``since``, oldest first.

    A cursor at or below the pruning watermark cannot be served without a
    hole, so the caller gets ``reset`` and the current cursor instead and is
    expected to reload its full list.
    """
    since = max(0, since)
    limit = max(1, limit)
    watermark = pruned_through(user_id)
    if since < watermark:
        return {
            "events": [],
            "cursor": latest_cursor(user_id),
            "has_more": False,
            "reset": True,
        }

    events = (
        FeedEvent.query.filter_by(user_id=user_id)
        .filter(FeedEvent.id > since)
        .order_by(FeedEvent.id.asc())
        .limit(limit)
        .all()
    )
    cursor = events[-1].id if events else since
    return {
        "events": [
            {
                "cursor": event.id,
                "action": event.action,
                "bookmark_id": event.bookmark_id,
                "record": event.payload,
                "created_at": as_utc(event.created_at).isoformat(),
            }
            for event in events
        ],
        "cursor": cursor,
        "has_more": len(events) == limit,
        "reset": False,
    }


def prune_feed_events(retention_minutes: int, now=None) -> int:
    cutoff = (now or utcnow()) - timedelta(minutes=retention_minutes)
    rows = (
        db.session.query(FeedEvent.user_id, db.func.max(FeedEvent.id))
        .filter(FeedEvent.created_at < cutoff)
        .group_by(FeedEvent.user_id)
        .all()
    )
    if not rows:
        return 0

    for user_id, max_pruned_id in rows:
        watermark = db.session.get(FeedWatermark, user_id)
        if not watermark:
            watermark = FeedWatermark(user_id=user_id, pruned_through=0)
            db.session.add(watermark)
        watermark.pruned_through = max(watermark.pruned_through, max_pruned_id)

    deleted = FeedEvent.query.filter(FeedEvent.created_at < cutoff).delete(
        synchronize_session=False
    )
    db.session.commit()
    return deleted
