from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta, timezone

import httpx

from smartmarks.client.errors import (
    AuthenticationRequired,
    FeedDeliveryGap,
    IdentityUnavailable,
    StoreError,
    StoreWriteFailed,
)
from smartmarks.client.models import (
    Bookmark,
    SessionContext,
    UserIdentity,
    parse_record,
    parse_time,
)

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1"


def create_http_client(
    base_url: str, timeout: float = 10.0, transport=None
) -> httpx.Client:
    return httpx.Client(
        base_url=base_url.rstrip("/") + API_PREFIX,
        timeout=timeout,
        transport=transport,
        headers={"User-Agent": "Smartmarks-Client/1.0"},
    )


def _auth_headers(context: SessionContext | None) -> dict:
    if context is None:
        raise AuthenticationRequired("no active session")
    return {"Authorization": f"Bearer {context.access_token}"}


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict) and payload.get("error"):
        return str(payload["error"])
    return f"HTTP {response.status_code}"


class IdentityClient:
    def __init__(self, http: httpx.Client):
        self._http = http
        self._listeners = []
        self._lock = threading.Lock()
        self.context: SessionContext | None = None

    def on_session_change(self, callback):
        with self._lock:
            self._listeners.append(callback)

        def unsubscribe():
            with self._lock:
                if callback in self._listeners:
                    self._listeners.remove(callback)

        return unsubscribe

    def _set_context(self, context: SessionContext | None) -> None:
        self.context = context
        with self._lock:
            listeners = list(self._listeners)
        for callback in listeners:
            callback(context)

    def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            response = self._http.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            raise IdentityUnavailable(f"identity request timed out: {path}") from exc
        except httpx.HTTPError as exc:
            raise IdentityUnavailable(str(exc) or exc.__class__.__name__) from exc
        if response.status_code >= 400 and response.status_code != 401:
            raise IdentityUnavailable(_error_message(response))
        return response

    def _fetch_identity(self, token: str) -> UserIdentity | None:
        response = self._request(
            "GET", "/auth/me", headers={"Authorization": f"Bearer {token}"}
        )
        if response.status_code == 401:
            return None
        user = response.json()["user"]
        return UserIdentity(
            id=user["id"],
            username=user["username"],
            is_admin=bool(user.get("is_admin")),
        )

    def _context_from_token(self, payload: dict) -> SessionContext:
        token = payload["token"]
        identity = self._fetch_identity(token)
        if identity is None:
            raise AuthenticationRequired("issued token was rejected")
        return SessionContext(
            owner_id=identity.id,
            access_token=token,
            username=identity.username,
            expires_at=parse_time(payload.get("expires_at")),
        )

    def login(self, username: str, password: str) -> SessionContext:
        response = self._request(
            "POST",
            "/auth/token",
            json={"username": username, "password": password},
        )
        if response.status_code == 401:
            raise AuthenticationRequired(_error_message(response))
        context = self._context_from_token(response.json())
        self._set_context(context)
        return context

    def current_user(self) -> UserIdentity | None:
        if self.context is None:
            return None
        try:
            return self._fetch_identity(self.context.access_token)
        except IdentityUnavailable as exc:
            logger.warning("Could not look up current user: %s", exc)
            return None

    def refresh(self) -> SessionContext:
        response = self._request(
            "POST", "/auth/refresh", headers=_auth_headers(self.context)
        )
        if response.status_code == 401:
            self._set_context(None)
            raise AuthenticationRequired(_error_message(response))
        context = self._context_from_token(response.json())
        self._set_context(context)
        return context

    def refresh_if_needed(self, margin_seconds: int = 60) -> bool:
        context = self.context
        if context is None or context.expires_at is None:
            return False
        deadline = context.expires_at - timedelta(seconds=margin_seconds)
        if deadline > datetime.now(timezone.utc):
            return False
        self.refresh()
        return True

    def sign_out(self) -> None:
        context = self.context
        if context is None:
            return
        try:
            self._request("POST", "/auth/logout", headers=_auth_headers(context))
        except IdentityUnavailable as exc:
            logger.warning("Sign-out request failed: %s", exc)
        self._set_context(None)


class StoreClient:
    def __init__(self, http: httpx.Client, identity: IdentityClient):
        self._http = http
        self._identity = identity

    def _request(self, method: str, path: str, error_cls=StoreError, **kwargs):
        headers = _auth_headers(self._identity.context)
        try:
            response = self._http.request(method, path, headers=headers, **kwargs)
        except httpx.TimeoutException as exc:
            raise error_cls(f"store request timed out: {method} {path}") from exc
        except httpx.HTTPError as exc:
            raise error_cls(str(exc) or exc.__class__.__name__) from exc
        if response.status_code == 401:
            raise AuthenticationRequired(_error_message(response))
        return response

    def snapshot(self) -> tuple[list[Bookmark], int]:
        response = self._request("GET", "/bookmarks")
        if response.status_code != 200:
            raise StoreError(_error_message(response))
        payload = response.json()
        records = [parse_record(item) for item in payload.get("items") or []]
        return records, int(payload.get("cursor") or 0)

    def list_all(self) -> list[Bookmark]:
        records, _cursor = self.snapshot()
        return records

    def insert(self, title: str, target: str, owner: int | None = None) -> Bookmark:
        body = {"title": title, "url": target}
        if owner is not None:
            body["owner"] = owner
        response = self._request(
            "POST", "/bookmarks", error_cls=StoreWriteFailed, json=body
        )
        if response.status_code != 201:
            raise StoreWriteFailed(_error_message(response))
        return parse_record(response.json())

    def delete_by_id(self, bookmark_id) -> bool:
        response = self._request(
            "DELETE", f"/bookmarks/{bookmark_id}", error_cls=StoreWriteFailed
        )
        if response.status_code == 404:
            return False
        if response.status_code != 200:
            raise StoreWriteFailed(_error_message(response))
        return True


class FeedSubscription:
    """Polling handle on the change feed.

    The subscription keeps the access token it was created with; a refreshed
    session needs a new subscription.
    """

    def __init__(
        self,
        http: httpx.Client,
        context: SessionContext,
        on_insert,
        on_delete,
        on_reset=None,
        cursor: int = 0,
        poll_interval: float = 1.0,
    ):
        self._http = http
        self._context = context
        self._on_insert = on_insert
        self._on_delete = on_delete
        self._on_reset = on_reset
        self.cursor = cursor
        self.poll_interval = poll_interval
        self._broken = False
        self._stopped = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def active(self) -> bool:
        return not self._stopped.is_set()

    def _gap(self, reason: str) -> None:
        logger.info("Change feed gap for user %s: %s", self._context.owner_id, reason)
        if self._on_reset is not None:
            self._on_reset(FeedDeliveryGap(reason))

    def _fetch_page(self) -> dict | None:
        try:
            response = self._http.get(
                "/feed/pull",
                params={"since": self.cursor},
                headers=_auth_headers(self._context),
            )
        except httpx.HTTPError as exc:
            if not self._broken:
                logger.warning("Change feed unreachable: %s", exc)
            self._broken = True
            return None
        if response.status_code != 200:
            if not self._broken:
                logger.warning(
                    "Change feed rejected poll: %s", _error_message(response)
                )
            self._broken = True
            return None
        return response.json()

    def poll_once(self) -> int:
        delivered = 0
        while self.active:
            payload = self._fetch_page()
            if payload is None:
                return delivered
            if self._broken:
                self._broken = False
                self._gap("reconnected")
            if payload.get("reset"):
                self.cursor = int(payload.get("cursor") or 0)
                self._gap("events pruned")
                return delivered

            for event in payload.get("events") or []:
                record = parse_record(event.get("record") or {})
                if event.get("action") == "insert":
                    self._on_insert(record)
                elif event.get("action") == "delete":
                    self._on_delete(record)
                self.cursor = int(event["cursor"])
                delivered += 1

            self.cursor = max(self.cursor, int(payload.get("cursor") or 0))
            if not payload.get("has_more"):
                return delivered
        return delivered

    def _run(self) -> None:
        while self.active:
            self.poll_once()
            self._stopped.wait(self.poll_interval)

    def start(self) -> "FeedSubscription":
        if self._thread is None:
            self._thread = threading.Thread(
                target=self._run,
                daemon=True,
                name=f"smartmarks-feed-{self._context.owner_id}",
            )
            self._thread.start()
        return self

    def stop(self) -> None:
        self._stopped.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=self.poll_interval + 1)


class FeedClient:
    def __init__(
        self, http: httpx.Client, identity: IdentityClient, poll_interval: float = 1.0
    ):
        self._http = http
        self._identity = identity
        self.poll_interval = poll_interval

    def subscribe(
        self, on_insert, on_delete, on_reset=None, cursor: int = 0, start=True
    ) -> FeedSubscription:
        context = self._identity.context
        if context is None:
            raise AuthenticationRequired("no active session")
        subscription = FeedSubscription(
            self._http,
            context,
            on_insert,
            on_delete,
            on_reset=on_reset,
            cursor=cursor,
            poll_interval=self.poll_interval,
        )
        if start:
            subscription.start()
        return subscription

    def unsubscribe(self, subscription: FeedSubscription) -> None:
        subscription.stop()
