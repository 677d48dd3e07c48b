"""Stateless client for the Gmail REST mailbox API.

Every call takes a ``token_provider`` coroutine function returning a
currently valid access token, so the client never stores credentials.
Failures are mapped onto the remote error taxonomy and never retried here;
retry policy belongs to the sync engine.
"""

import base64
from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import httpx

from mailmirror.core.models.change import MutationKind, PendingChange
from mailmirror.core.models.delta import RemoteDelta
from mailmirror.core.models.message import Body, Label, Message
from mailmirror.security.credentials import ClientSecret, TokenSet
from mailmirror.utils.errors import (
    AuthExpiredError,
    InvalidGrantError,
    RateLimitedError,
    RejectedError,
    RemoteError,
    StaleCursorError,
    TransientRemoteError,
)
from mailmirror.utils.logging import get_logger

from .parser import parse_body, parse_message

logger = get_logger(__name__)

TokenProvider = Callable[[], Awaitable[str]]

DEFAULT_API_BASE_URL = "https://gmail.googleapis.com/gmail/v1"
DEFAULT_TOKEN_URI = "https://oauth2.googleapis.com/token"

HISTORY_TYPES = ["messageAdded", "messageDeleted", "labelAdded", "labelRemoved"]
METADATA_HEADERS = ["Subject", "From", "To", "Cc", "Date"]
RATE_LIMIT_REASONS = {"rateLimitExceeded", "userRateLimitExceeded"}
# OAuth error codes that mean the stored grant can never work again
REFUSED_GRANT_ERRORS = {"invalid_grant", "invalid_client", "unauthorized_client"}

# Request contexts, used to classify 4xx responses
READ = "read"
HISTORY = "history"
MUTATION = "mutation"


def _retry_after(response: httpx.Response) -> Optional[float]:
    """Parse a Retry-After header given in seconds or as an HTTP date."""
    value = response.headers.get("Retry-After")
    if not value:
        return None

    try:
        return max(0.0, float(value))
    except ValueError:
        pass

    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


def _error_reasons(response: httpx.Response) -> set:
    try:
        error = response.json().get("error", {})
    except ValueError:
        return set()
    if not isinstance(error, dict):
        return set()
    return {item.get("reason") for item in error.get("errors", []) if item.get("reason")}


def raise_for_status(response: httpx.Response, context: str = READ) -> None:
    """Translate an error response into the remote error taxonomy."""
    status = response.status_code
    if status < 400:
        return

    details = {"status": status}

    if status == 401:
        raise AuthExpiredError("Access token rejected", details, status)

    if status == 429 or (status == 403 and _error_reasons(response) & RATE_LIMIT_REASONS):
        raise RateLimitedError(
            "Rate limited by the mail server",
            details,
            status,
            retry_after=_retry_after(response),
        )

    if status >= 500:
        raise TransientRemoteError(f"Server error {status}", details, status)

    if context == HISTORY and status == 404:
        raise StaleCursorError("History cursor is no longer available", details, status)

    raise RejectedError(f"Request refused with status {status}", details, status)


class RemoteClient:
    """Gmail REST client over a shared ``httpx.AsyncClient``."""

    def __init__(
        self,
        base_url: str = DEFAULT_API_BASE_URL,
        user_id: str = "me",
        token_uri: str = DEFAULT_TOKEN_URI,
        timeout: float = 30.0,
        page_size: int = 100,
        full_sync_limit: int = 500,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.user_id = user_id
        self.token_uri = token_uri
        self.timeout = timeout
        self.page_size = page_size
        self.full_sync_limit = full_sync_limit
        self._transport = transport
        self._http: Optional[httpx.AsyncClient] = None

    @property
    def http(self) -> httpx.AsyncClient:
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(
                timeout=self.timeout,
                transport=self._transport,
                headers={"Accept": "application/json"},
            )
        return self._http

    async def close(self) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None

    async def __aenter__(self) -> "RemoteClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> bool:
        await self.close()
        return False

    ## Transport

    async def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            return await self.http.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientRemoteError(
                "Request to the mail server timed out", {"url": url}
            ) from e
        except httpx.TransportError as e:
            raise TransientRemoteError(
                f"Could not reach the mail server: {e}", {"url": url}
            ) from e

    async def _request(
        self,
        method: str,
        path: str,
        token_provider: TokenProvider,
        context: str = READ,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        token = await token_provider()
        url = f"{self.base_url}/users/{self.user_id}/{path.lstrip('/')}"

        logger.debug(f"{method} {path}")
        response = await self._send(
            method,
            url,
            params=params,
            json=json,
            headers={"Authorization": f"Bearer {token}"},
        )
        raise_for_status(response, context)

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise TransientRemoteError(
                "Malformed response from the mail server", {"url": url}
            ) from e

    ## Reads

    async def get_message(
        self, message_id: str, token_provider: TokenProvider
    ) -> Message:
        """Fetch one message's metadata and current label set."""
        data = await self._request(
            "GET",
            f"messages/{message_id}",
            token_provider,
            params={"format": "metadata", "metadataHeaders": METADATA_HEADERS},
        )
        return parse_message(data)

    async def list_changes(
        self, since: str, token_provider: TokenProvider
    ) -> Tuple[List[RemoteDelta], str]:
        """Changes since cursor ``since``, in history order, and the new cursor.

        Added messages are resolved to full metadata; one that vanished
        before it could be fetched is skipped.

        Raises:
            StaleCursorError: The server no longer keeps history that far back.
        """
        deltas: List[RemoteDelta] = []
        resolved: Dict[str, Optional[Message]] = {}
        cursor = since
        page_token: Optional[str] = None

        while True:
            params: Dict[str, Any] = {
                "startHistoryId": since,
                "historyTypes": HISTORY_TYPES,
                "maxResults": self.page_size,
            }
            if page_token:
                params["pageToken"] = page_token

            data = await self._request(
                "GET", "history", token_provider, context=HISTORY, params=params
            )

            for record in data.get("history", []):
                deltas.extend(await self._record_deltas(record, resolved, token_provider))

            cursor = str(data.get("historyId") or cursor)
            page_token = data.get("nextPageToken")
            if not page_token:
                break

        logger.info(f"History since {since}: {len(deltas)} deltas, new cursor {cursor}")
        return deltas, cursor

    async def _record_deltas(
        self,
        record: Dict[str, Any],
        resolved: Dict[str, Optional[Message]],
        token_provider: TokenProvider,
    ) -> List[RemoteDelta]:
        deltas: List[RemoteDelta] = []

        for item in record.get("messagesAdded", []):
            message_id = item["message"]["id"]
            if message_id not in resolved:
                resolved[message_id] = await self._resolve(message_id, token_provider)
            if resolved[message_id] is not None:
                deltas.append(RemoteDelta.upsert(resolved[message_id]))

        for item in record.get("labelsAdded", []):
            deltas.append(
                RemoteDelta.labels_added(item["message"]["id"], item.get("labelIds", []))
            )

        for item in record.get("labelsRemoved", []):
            deltas.append(
                RemoteDelta.labels_removed(item["message"]["id"], item.get("labelIds", []))
            )

        for item in record.get("messagesDeleted", []):
            deltas.append(RemoteDelta.deleted(item["message"]["id"]))

        return deltas

    async def _resolve(
        self, message_id: str, token_provider: TokenProvider
    ) -> Optional[Message]:
        try:
            return await self.get_message(message_id, token_provider)
        except RejectedError as e:
            if e.status_code == 404:
                logger.debug(f"Message {message_id} vanished before it was fetched")
                return None
            raise

    async def full_snapshot(
        self, token_provider: TokenProvider
    ) -> Tuple[List[Message], str]:
        """Up to ``full_sync_limit`` most recent messages and the current cursor.

        The cursor is read before listing so changes made while listing are
        replayed by the next incremental sync.
        """
        profile = await self._request("GET", "profile", token_provider)
        cursor = str(profile["historyId"])

        ids: List[str] = []
        page_token: Optional[str] = None
        while len(ids) < self.full_sync_limit:
            params: Dict[str, Any] = {
                "maxResults": min(self.page_size, self.full_sync_limit - len(ids)),
                "includeSpamTrash": "true",
            }
            if page_token:
                params["pageToken"] = page_token

            data = await self._request("GET", "messages", token_provider, params=params)
            ids.extend(item["id"] for item in data.get("messages", []))

            page_token = data.get("nextPageToken")
            if not page_token:
                break

        messages: List[Message] = []
        for message_id in ids[: self.full_sync_limit]:
            message = await self._resolve(message_id, token_provider)
            if message is not None:
                messages.append(message)

        logger.info(f"Full snapshot: {len(messages)} messages at cursor {cursor}")
        return messages, cursor

    async def list_older(
        self,
        label: str,
        page_token: Optional[str],
        token_provider: TokenProvider,
    ) -> Tuple[List[Message], Optional[str]]:
        """One page of messages carrying ``label``, newest first.

        Pass the returned token back to continue further into the past;
        None means there are no older messages.
        """
        params: Dict[str, Any] = {"labelIds": label, "maxResults": self.page_size}
        if page_token:
            params["pageToken"] = page_token

        data = await self._request("GET", "messages", token_provider, params=params)

        messages: List[Message] = []
        for item in data.get("messages", []):
            message = await self._resolve(item["id"], token_provider)
            if message is not None:
                messages.append(message)

        next_page = data.get("nextPageToken") or None
        logger.debug(f"Older page for {label}: {len(messages)} messages, more={bool(next_page)}")
        return messages, next_page

    async def fetch_body(self, message_id: str, token_provider: TokenProvider) -> Body:
        data = await self._request(
            "GET", f"messages/{message_id}", token_provider, params={"format": "full"}
        )
        return parse_body(data)

    async def fetch_labels(self, token_provider: TokenProvider) -> List[Label]:
        data = await self._request("GET", "labels", token_provider)
        return [
            Label(id=item["id"], name=item.get("name", item["id"]), type=item.get("type", "user"))
            for item in data.get("labels", [])
        ]

    ## Mutations

    async def apply_mutation(
        self, change: PendingChange, token_provider: TokenProvider
    ) -> Dict[str, Any]:
        """Push one queued change to the server.

        Raises:
            RejectedError: The server refused the change for good.
        """
        message_id = change.message_id

        if change.kind is MutationKind.LABEL_ADD:
            return await self._request(
                "POST",
                f"messages/{message_id}/modify",
                token_provider,
                context=MUTATION,
                json={"addLabelIds": [change.label]},
            )

        if change.kind is MutationKind.LABEL_REMOVE:
            return await self._request(
                "POST",
                f"messages/{message_id}/modify",
                token_provider,
                context=MUTATION,
                json={"removeLabelIds": [change.label]},
            )

        if change.kind is MutationKind.DELETE:
            return await self._request(
                "POST", f"messages/{message_id}/trash", token_provider, context=MUTATION
            )

        if change.kind is MutationKind.SEND_DRAFT:
            payload = change.mutation.payload or {}
            if payload.get("draft_id"):
                return await self._request(
                    "POST",
                    "drafts/send",
                    token_provider,
                    context=MUTATION,
                    json={"id": payload["draft_id"]},
                )
            if payload.get("raw"):
                raw = payload["raw"]
                if isinstance(raw, str):
                    raw = raw.encode("utf-8")
                return await self._request(
                    "POST",
                    "messages/send",
                    token_provider,
                    context=MUTATION,
                    json={"raw": base64.urlsafe_b64encode(raw).decode("ascii")},
                )
            raise RejectedError(
                "Nothing to send: no draft id or raw message",
                details={"change_id": change.id},
            )

        raise RemoteError(f"Unsupported mutation kind: {change.kind}")

    ## Token endpoint

    async def refresh_access_token(
        self, client: ClientSecret, refresh_token: str
    ) -> TokenSet:
        """Exchange a refresh token for a new access token.

        Raises:
            InvalidGrantError: The refresh token (or client) was refused.
            TransientRemoteError: The token endpoint could not be reached,
                refused the request for another reason or returned an
                unusable response.
        """
        url = client.token_uri or self.token_uri
        response = await self._send(
            "POST",
            url,
            data={
                "client_id": client.client_id,
                "client_secret": client.client_secret,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            },
        )

        if response.status_code in (400, 401):
            try:
                error = response.json().get("error")
            except (ValueError, AttributeError):
                error = None
            details = {"error": error, "status": response.status_code}
            if isinstance(error, str) and error in REFUSED_GRANT_ERRORS:
                raise InvalidGrantError(
                    f"Token endpoint refused the refresh token: {error}",
                    details=details,
                    status_code=response.status_code,
                )
            # Any other refusal is not the fault of the change being pushed
            raise TransientRemoteError(
                f"Token endpoint rejected the refresh request: {error}",
                details=details,
                status_code=response.status_code,
            )

        try:
            raise_for_status(response)
        except RejectedError as e:
            raise TransientRemoteError(
                f"Token endpoint refused with status {e.status_code}",
                details=e.details,
                status_code=e.status_code,
            ) from e

        try:
            data = response.json()
            expires_in = int(data.get("expires_in", 3600))
            access_token = data["access_token"]
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise TransientRemoteError(
                "Token endpoint returned an unusable response",
                details={"status": response.status_code, "error": type(e).__name__},
                status_code=response.status_code,
            ) from e

        return TokenSet(
            access_token=access_token,
            refresh_token=data.get("refresh_token"),
            expiry=datetime.now(timezone.utc) + timedelta(seconds=expires_in),
            scopes=tuple(data.get("scope", "").split()),
        )
