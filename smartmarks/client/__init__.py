from smartmarks.client.config import ClientConfig
from smartmarks.client.engine import ReconciliationEngine
from smartmarks.client.errors import (
    AuthenticationRequired,
    FeedDeliveryGap,
    IdentityUnavailable,
    SmartmarksError,
    StoreError,
    StoreWriteFailed,
    ValidationFailed,
)
from smartmarks.client.models import Bookmark, Entry, SessionContext
from smartmarks.client.session import BookmarkSession

__all__ = [
    "AuthenticationRequired",
    "Bookmark",
    "BookmarkSession",
    "ClientConfig",
    "Entry",
    "FeedDeliveryGap",
    "IdentityUnavailable",
    "ReconciliationEngine",
    "SessionContext",
    "SmartmarksError",
    "StoreError",
    "StoreWriteFailed",
    "ValidationFailed",
]
