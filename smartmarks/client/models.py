from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

from dateutil import parser as dt_parser

from smartmarks.client.errors import ValidationFailed
from smartmarks.services.common import clean_text, normalize_target

STATE_PENDING = "pending"
STATE_FAILED = "failed"
STATE_CONFIRMED = "confirmed"

PROVISIONAL_STATES = {STATE_PENDING, STATE_FAILED}


@dataclass(frozen=True)
class Bookmark:
    id: int | None
    owner: int | None
    title: str
    target: str
    created_at: datetime | None = None


@dataclass(frozen=True)
class Entry:
    """One row of the visible list.

    Confirmed entries are keyed by the store id. Provisional entries have no
    id yet and are keyed by ``local_key`` until the store answers.
    """

    bookmark: Bookmark
    state: str
    seq: int
    local_key: str | None = None

    @property
    def key(self):
        if self.state == STATE_CONFIRMED:
            return self.bookmark.id
        return self.local_key

    @property
    def is_provisional(self) -> bool:
        return self.state in PROVISIONAL_STATES


@dataclass(frozen=True)
class UserIdentity:
    id: int
    username: str
    is_admin: bool = False


@dataclass(frozen=True)
class SessionContext:
    owner_id: int
    access_token: str
    username: str | None = None
    expires_at: datetime | None = None


def parse_time(value) -> datetime | None:
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = dt_parser.isoparse(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_record(payload: dict) -> Bookmark:
    return Bookmark(
        id=payload.get("id"),
        owner=payload.get("owner"),
        title=payload.get("title") or "",
        target=payload.get("target") or payload.get("url") or "",
        created_at=parse_time(payload.get("created_at")),
    )


def prepare_bookmark_input(title, target) -> tuple[str, str]:
    clean_title = clean_text(title)
    clean_target = normalize_target(target)
    if not clean_title or not clean_target:
        raise ValidationFailed("Please fill in both title and URL")
    return clean_title, clean_target
