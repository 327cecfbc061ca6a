from __future__ import annotations

from smartmarks.extensions import db
from smartmarks.models import Bookmark
from smartmarks.services.common import clean_text, normalize_target
from smartmarks.services.feed import (
    FEED_ACTION_DELETE,
    FEED_ACTION_INSERT,
    log_feed_event,
)

MISSING_FIELDS_MESSAGE = "Please fill in both title and URL"


def list_bookmarks(user_id: int) -> list[Bookmark]:
    return (
        Bookmark.query.filter_by(user_id=user_id)
        .order_by(Bookmark.created_at.desc(), Bookmark.id.desc())
        .all()
    )


def validate_bookmark_input(title, url) -> tuple[str, str, str | None]:
    clean_title = clean_text(title)
    target = normalize_target(url)
    if not clean_title or not target:
        return clean_title, target, MISSING_FIELDS_MESSAGE
    return clean_title, target, None


def create_bookmark(user_id: int, title: str, target: str) -> Bookmark:
    bookmark = Bookmark(user_id=user_id, title=title, url=target)
    db.session.add(bookmark)
    db.session.flush()
    log_feed_event(user_id, FEED_ACTION_INSERT, bookmark)
    db.session.commit()
    return bookmark


def get_user_bookmark(user_id: int, bookmark_id: int) -> Bookmark | None:
    return Bookmark.query.filter_by(id=bookmark_id, user_id=user_id).first()


def delete_bookmark(user_id: int, bookmark_id: int) -> bool:
    bookmark = get_user_bookmark(user_id, bookmark_id)
    if not bookmark:
        return False
    log_feed_event(user_id, FEED_ACTION_DELETE, bookmark)
    db.session.delete(bookmark)
    db.session.commit()
    return True
