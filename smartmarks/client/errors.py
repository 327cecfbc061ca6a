class SmartmarksError(Exception):
    """Base class for client-side failures."""


class AuthenticationRequired(SmartmarksError):
    """No valid session; the caller has to send the user to the login screen."""


class ValidationFailed(SmartmarksError):
    """Input rejected locally, before any network call."""


class StoreError(SmartmarksError):
    """The persistent store could not be reached or refused the request."""


class StoreWriteFailed(StoreError):
    """An insert or delete round trip failed."""


class FeedDeliveryGap(SmartmarksError):
    """The change feed dropped or could not replay events; a full resync is due."""


class IdentityUnavailable(SmartmarksError):
    """The identity provider could not be reached or answered with an error."""
