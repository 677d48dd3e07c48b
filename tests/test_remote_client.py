"""Tests for the Gmail REST client and message parsing."""

import base64
import json
from datetime import datetime, timedelta, timezone
from email.utils import format_datetime
from urllib.parse import parse_qs

import httpx
import pytest

from mailmirror.core.models import DeltaKind, Mutation, MutationKind, PendingChange
from mailmirror.core.remote import RemoteClient, parse_body, parse_message, raise_for_status
from mailmirror.core.remote.client import HISTORY, HISTORY_TYPES, READ
from mailmirror.security.credentials import ClientSecret
from mailmirror.utils.errors import (
    AuthExpiredError,
    InvalidGrantError,
    RateLimitedError,
    RejectedError,
    StaleCursorError,
    TransientRemoteError,
)

BASE_URL = "https://mail.test/gmail/v1"
CLIENT = ClientSecret("client.apps", "s3cret", token_uri="https://auth.test/token")


def b64(text: str) -> str:
    return base64.urlsafe_b64encode(text.encode()).decode().rstrip("=")


def metadata_resource(message_id, labels=("INBOX", "UNREAD")):
    return {
        "id": message_id,
        "threadId": f"t-{message_id}",
        "labelIds": list(labels),
        "snippet": "Lunch &amp; learn",
        "internalDate": "1736931600000",
        "payload": {
            "headers": [
                {"name": "Subject", "value": "Hello"},
                {"name": "From", "value": "Alice <alice@example.com>"},
                {"name": "To", "value": "me@example.com"},
                {"name": "Cc", "value": "bob@example.com"},
            ]
        },
    }


async def token():
    return "tok-1"


def make_client(handler, **kwargs):
    return RemoteClient(base_url=BASE_URL, transport=httpx.MockTransport(handler), **kwargs)


def change(kind, label=None, payload=None, message_id="m1"):
    return PendingChange(id=1, mutation=Mutation(message_id, kind, label, payload))


class TestErrorMapping:
    """HTTP status to remote error taxonomy"""

    def test_success_passes(self):
        raise_for_status(httpx.Response(200, json={}))

    def test_unauthorised_is_auth_expired(self):
        with pytest.raises(AuthExpiredError):
            raise_for_status(httpx.Response(401))

    def test_429_with_retry_after_seconds(self):
        with pytest.raises(RateLimitedError) as exc_info:
            raise_for_status(httpx.Response(429, headers={"Retry-After": "7"}))
        assert exc_info.value.retry_after == 7.0

    def test_retry_after_as_http_date(self):
        when = datetime.now(timezone.utc) + timedelta(seconds=30)
        response = httpx.Response(
            429, headers={"Retry-After": format_datetime(when, usegmt=True)}
        )

        with pytest.raises(RateLimitedError) as exc_info:
            raise_for_status(response)
        assert 20 <= exc_info.value.retry_after <= 31

    def test_403_rate_limit_reason(self):
        response = httpx.Response(
            403,
            json={"error": {"code": 403, "errors": [{"reason": "userRateLimitExceeded"}]}},
        )
        with pytest.raises(RateLimitedError):
            raise_for_status(response)

    def test_403_other_reason_is_rejected(self):
        response = httpx.Response(
            403, json={"error": {"code": 403, "errors": [{"reason": "forbidden"}]}}
        )
        with pytest.raises(RejectedError):
            raise_for_status(response)

    def test_server_error_is_transient(self):
        with pytest.raises(TransientRemoteError):
            raise_for_status(httpx.Response(503))

    def test_404_depends_on_context(self):
        with pytest.raises(StaleCursorError):
            raise_for_status(httpx.Response(404), HISTORY)

        with pytest.raises(RejectedError) as exc_info:
            raise_for_status(httpx.Response(404), READ)
        assert exc_info.value.status_code == 404


class TestParsing:
    def test_parse_metadata(self):
        message = parse_message(metadata_resource("m1"))

        assert message.thread_id == "t-m1"
        assert message.subject == "Hello"
        assert message.sender == "Alice <alice@example.com>"
        assert message.recipients == "me@example.com, bob@example.com"
        assert message.snippet == "Lunch & learn"
        assert message.received_at == datetime(2025, 1, 15, 9, tzinfo=timezone.utc)
        assert message.labels == message.remote_labels == {"INBOX", "UNREAD"}

    def test_parse_falls_back_to_date_header(self):
        message = parse_message(
            {
                "id": "m2",
                "payload": {
                    "headers": [{"name": "Date", "value": "Wed, 15 Jan 2025 10:00:00 +0100"}]
                },
            }
        )

        assert message.subject == "(no subject)"
        assert message.sender == "(unknown sender)"
        assert message.thread_id == "m2"
        assert message.received_at == datetime(2025, 1, 15, 9, tzinfo=timezone.utc)

    def test_parse_multipart_body_skips_attachments(self):
        body = parse_body(
            {
                "id": "m1",
                "payload": {
                    "mimeType": "multipart/mixed",
                    "parts": [
                        {
                            "mimeType": "text/plain",
                            "filename": "notes.txt",
                            "body": {"data": b64("attachment text")},
                        },
                        {
                            "mimeType": "multipart/alternative",
                            "parts": [
                                {"mimeType": "text/plain", "body": {"data": b64("Hi there")}},
                                {"mimeType": "text/html", "body": {"data": b64("<p>Hi there</p>")}},
                            ],
                        },
                    ],
                },
            }
        )

        assert body.text == "Hi there"
        assert body.html == "<p>Hi there</p>"
        assert body.fetched_at is not None

    def test_parse_single_part_html(self):
        body = parse_body(
            {"id": "m1", "payload": {"mimeType": "text/html", "body": {"data": b64("<b>x</b>")}}}
        )
        assert body.text == ""
        assert body.html == "<b>x</b>"


class TestReads:
    """History paging, snapshots and bodies"""

    @pytest.mark.asyncio
    async def test_list_changes_pages_and_resolves(self):
        seen_auth = []

        def handler(request):
            seen_auth.append(request.headers["Authorization"])
            path = request.url.path
            params = request.url.params

            if path.endswith("/history"):
                assert params["startHistoryId"] == "100"
                assert params.get_list("historyTypes") == HISTORY_TYPES
                if params.get("pageToken") == "p2":
                    return httpx.Response(
                        200,
                        json={
                            "history": [
                                {"labelsRemoved": [{"message": {"id": "m2"}, "labelIds": ["UNREAD"]}]},
                                {"messagesAdded": [{"message": {"id": "vanished"}}]},
                            ],
                            "historyId": "120",
                        },
                    )
                return httpx.Response(
                    200,
                    json={
                        "history": [
                            {"messagesAdded": [{"message": {"id": "m1"}}]},
                            {"labelsAdded": [{"message": {"id": "m2"}, "labelIds": ["STARRED"]}]},
                            {"messagesDeleted": [{"message": {"id": "m3"}}]},
                        ],
                        "historyId": "110",
                        "nextPageToken": "p2",
                    },
                )

            if path.endswith("/users/me/messages/m1"):
                assert params["format"] == "metadata"
                return httpx.Response(200, json=metadata_resource("m1"))

            return httpx.Response(404, json={"error": {"code": 404}})

        async with make_client(handler) as client:
            deltas, cursor = await client.list_changes("100", token)

        assert cursor == "120"
        assert [(d.kind, d.message_id) for d in deltas] == [
            (DeltaKind.UPSERT, "m1"),
            (DeltaKind.LABELS_ADDED, "m2"),
            (DeltaKind.DELETE, "m3"),
            (DeltaKind.LABELS_REMOVED, "m2"),
        ]
        assert deltas[0].message.subject == "Hello"
        assert deltas[1].labels == {"STARRED"}
        assert set(seen_auth) == {"Bearer tok-1"}

    @pytest.mark.asyncio
    async def test_list_changes_stale_cursor(self):
        def handler(request):
            return httpx.Response(404, json={"error": {"code": 404, "message": "Not Found"}})

        async with make_client(handler) as client:
            with pytest.raises(StaleCursorError):
                await client.list_changes("1", token)

    @pytest.mark.asyncio
    async def test_full_snapshot_is_capped(self):
        list_requests = []

        def handler(request):
            path = request.url.path
            if path.endswith("/profile"):
                return httpx.Response(200, json={"emailAddress": "me@example.com", "historyId": 555})
            if path.endswith("/users/me/messages"):
                list_requests.append(dict(request.url.params))
                if request.url.params.get("pageToken") == "next":
                    return httpx.Response(200, json={"messages": [{"id": "c"}], "nextPageToken": "more"})
                return httpx.Response(
                    200, json={"messages": [{"id": "a"}, {"id": "b"}], "nextPageToken": "next"}
                )
            message_id = path.rsplit("/", 1)[-1]
            return httpx.Response(200, json=metadata_resource(message_id))

        async with make_client(handler, page_size=2, full_sync_limit=3) as client:
            messages, cursor = await client.full_snapshot(token)

        assert cursor == "555"
        assert [m.id for m in messages] == ["a", "b", "c"]
        assert [r["maxResults"] for r in list_requests] == ["2", "1"]
        assert list_requests[0]["includeSpamTrash"] == "true"

    @pytest.mark.asyncio
    async def test_list_older_pages_one_label(self):
        list_requests = []

        def handler(request):
            path = request.url.path
            if path.endswith("/users/me/messages"):
                list_requests.append(dict(request.url.params))
                if request.url.params.get("pageToken") == "p2":
                    return httpx.Response(200, json={"messages": [{"id": "c"}]})
                return httpx.Response(
                    200, json={"messages": [{"id": "a"}, {"id": "gone"}], "nextPageToken": "p2"}
                )
            message_id = path.rsplit("/", 1)[-1]
            if message_id == "gone":
                return httpx.Response(404, json={"error": {"code": 404}})
            return httpx.Response(200, json=metadata_resource(message_id))

        async with make_client(handler, page_size=2) as client:
            first, page = await client.list_older("Label_1", None, token)
            second, last = await client.list_older("Label_1", page, token)

        assert [m.id for m in first] == ["a"]
        assert page == "p2"
        assert [m.id for m in second] == ["c"]
        assert last is None
        assert list_requests[0] == {"labelIds": "Label_1", "maxResults": "2"}
        assert list_requests[1]["pageToken"] == "p2"

    @pytest.mark.asyncio
    async def test_fetch_body(self):
        def handler(request):
            assert request.url.params["format"] == "full"
            return httpx.Response(
                200,
                json={
                    "id": "m1",
                    "payload": {"mimeType": "text/plain", "body": {"data": b64("Plain body")}},
                },
            )

        async with make_client(handler) as client:
            body = await client.fetch_body("m1", token)

        assert body.message_id == "m1"
        assert body.text == "Plain body"

    @pytest.mark.asyncio
    async def test_fetch_labels(self):
        def handler(request):
            return httpx.Response(
                200,
                json={
                    "labels": [
                        {"id": "INBOX", "name": "INBOX", "type": "system"},
                        {"id": "Label_1", "name": "Work", "type": "user"},
                    ]
                },
            )

        async with make_client(handler) as client:
            labels = await client.fetch_labels(token)

        assert [(label.id, label.name, label.is_system) for label in labels] == [
            ("INBOX", "INBOX", True),
            ("Label_1", "Work", False),
        ]

    @pytest.mark.asyncio
    async def test_transport_failures_are_transient(self):
        def refused(request):
            raise httpx.ConnectError("connection refused", request=request)

        def slow(request):
            raise httpx.ReadTimeout("slow", request=request)

        def garbage(request):
            return httpx.Response(200, content=b"<html>oops</html>")

        for handler in (refused, slow, garbage):
            async with make_client(handler) as client:
                with pytest.raises(TransientRemoteError):
                    await client.fetch_labels(token)


class TestMutations:
    """Queued changes pushed as API requests"""

    @pytest.fixture
    def recorder(self):
        requests = []

        def handler(request):
            requests.append(
                (
                    request.method,
                    request.url.path,
                    json.loads(request.content) if request.content else None,
                )
            )
            return httpx.Response(200, json={"id": "m1"})

        return requests, handler

    @pytest.mark.asyncio
    async def test_label_changes_use_modify(self, recorder):
        requests, handler = recorder

        async with make_client(handler) as client:
            await client.apply_mutation(change(MutationKind.LABEL_ADD, "STARRED"), token)
            await client.apply_mutation(change(MutationKind.LABEL_REMOVE, "UNREAD"), token)

        assert requests == [
            ("POST", "/gmail/v1/users/me/messages/m1/modify", {"addLabelIds": ["STARRED"]}),
            ("POST", "/gmail/v1/users/me/messages/m1/modify", {"removeLabelIds": ["UNREAD"]}),
        ]

    @pytest.mark.asyncio
    async def test_delete_moves_to_trash(self, recorder):
        requests, handler = recorder

        async with make_client(handler) as client:
            await client.apply_mutation(change(MutationKind.DELETE), token)

        assert requests == [("POST", "/gmail/v1/users/me/messages/m1/trash", None)]

    @pytest.mark.asyncio
    async def test_send_draft_and_raw_message(self, recorder):
        requests, handler = recorder
        raw = "To: bob@example.com\r\nSubject: Hi\r\n\r\nHello Bob\r\n"

        async with make_client(handler) as client:
            await client.apply_mutation(
                change(MutationKind.SEND_DRAFT, payload={"draft_id": "r-1"}), token
            )
            await client.apply_mutation(
                change(MutationKind.SEND_DRAFT, payload={"raw": raw}, message_id="outbox-1"),
                token,
            )

        assert requests[0] == ("POST", "/gmail/v1/users/me/drafts/send", {"id": "r-1"})
        method, path, sent = requests[1]
        assert path == "/gmail/v1/users/me/messages/send"
        assert base64.urlsafe_b64decode(sent["raw"]).decode() == raw

    @pytest.mark.asyncio
    async def test_send_without_payload_is_rejected(self, recorder):
        requests, handler = recorder

        async with make_client(handler) as client:
            with pytest.raises(RejectedError):
                await client.apply_mutation(change(MutationKind.SEND_DRAFT), token)

        assert requests == []

    @pytest.mark.asyncio
    async def test_missing_message_is_rejected(self):
        def handler(request):
            return httpx.Response(404, json={"error": {"code": 404}})

        async with make_client(handler) as client:
            with pytest.raises(RejectedError):
                await client.apply_mutation(change(MutationKind.DELETE), token)


class TestTokenEndpoint:
    @pytest.mark.asyncio
    async def test_refresh_success(self):
        def handler(request):
            assert str(request.url) == "https://auth.test/token"
            form = parse_qs(request.content.decode())
            assert form["grant_type"] == ["refresh_token"]
            assert form["refresh_token"] == ["refresh-1"]
            assert form["client_id"] == ["client.apps"]
            return httpx.Response(
                200,
                json={
                    "access_token": "new-access",
                    "expires_in": 3599,
                    "scope": "https://mail.google.com/",
                    "token_type": "Bearer",
                },
            )

        async with make_client(handler) as client:
            tokens = await client.refresh_access_token(CLIENT, "refresh-1")

        assert tokens.access_token == "new-access"
        assert tokens.refresh_token is None
        assert tokens.scopes == ("https://mail.google.com/",)
        remaining = tokens.expiry - datetime.now(timezone.utc)
        assert timedelta(minutes=59) < remaining <= timedelta(seconds=3599)

    @pytest.mark.asyncio
    async def test_invalid_grant(self):
        def handler(request):
            return httpx.Response(400, json={"error": "invalid_grant"})

        async with make_client(handler) as client:
            with pytest.raises(InvalidGrantError) as exc_info:
                await client.refresh_access_token(CLIENT, "revoked")

        assert exc_info.value.details["error"] == "invalid_grant"

    @pytest.mark.asyncio
    async def test_token_endpoint_outage_is_transient(self):
        def handler(request):
            return httpx.Response(503)

        async with make_client(handler) as client:
            with pytest.raises(TransientRemoteError):
                await client.refresh_access_token(CLIENT, "refresh-1")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", ["invalid_client", "unauthorized_client"])
    async def test_refused_client_ends_the_grant(self, error):
        def handler(request):
            return httpx.Response(401, json={"error": error})

        async with make_client(handler) as client:
            with pytest.raises(InvalidGrantError):
                await client.refresh_access_token(CLIENT, "refresh-1")

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "response",
        [
            httpx.Response(400, json={"error": "invalid_request"}),
            httpx.Response(400, text="<html>Bad Request</html>"),
            httpx.Response(401, json={"error": {"code": 401}}),
            httpx.Response(403, json={"error": "access_denied"}),
        ],
    )
    async def test_other_refusals_keep_the_grant(self, response):
        async with make_client(lambda request: response) as client:
            with pytest.raises(TransientRemoteError):
                await client.refresh_access_token(CLIENT, "refresh-1")

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "response",
        [
            httpx.Response(200, json={"token_type": "Bearer", "expires_in": 3599}),
            httpx.Response(200, text="not json"),
            httpx.Response(200, json={"access_token": "a", "expires_in": "soon"}),
        ],
    )
    async def test_unusable_token_response_is_transient(self, response):
        async with make_client(lambda request: response) as client:
            with pytest.raises(TransientRemoteError):
                await client.refresh_access_token(CLIENT, "refresh-1")
