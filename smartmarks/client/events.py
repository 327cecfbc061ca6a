"""Messages carried on a session's inbound queue.

Feed callbacks and store completions run on other threads; they only ever
post one of these, and the session owner applies them in order.
"""
from __future__ import annotations

from dataclasses import dataclass, field

from smartmarks.client.models import Bookmark, SessionContext


@dataclass(frozen=True)
class RemoteInsert:
    record: Bookmark


@dataclass(frozen=True)
class RemoteDelete:
    # a record, or just its id for deletes seen locally
    record: Bookmark | int


@dataclass(frozen=True)
class FeedReset:
    reason: str = ""


@dataclass(frozen=True)
class AddConfirmed:
    local_key: str
    record: Bookmark


@dataclass(frozen=True)
class AddFailed:
    local_key: str
    error: Exception


@dataclass(frozen=True)
class DeleteConfirmed:
    bookmark_id: int


@dataclass(frozen=True)
class DeleteFailed:
    bookmark_id: int
    error: Exception


@dataclass(frozen=True)
class ResyncLoaded:
    records: list[Bookmark] = field(default_factory=list)


@dataclass(frozen=True)
class ResyncFailed:
    error: Exception


@dataclass(frozen=True)
class SessionChanged:
    context: SessionContext | None


@dataclass(frozen=True)
class OperationResult:
    action: str
    ok: bool
    message: str
    key: object = None
