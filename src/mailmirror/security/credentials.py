"""OAuth credential lifecycle: acquisition, refresh, persistence and revocation.

``CredentialStore`` is the only component that ever sees raw token material.
Everything else asks it for "a currently valid access token" through
:meth:`CredentialStore.get_access_token`, which is also the callable handed to
the remote client as its token provider.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Optional, Sequence

from mailmirror.utils.errors import (
    InvalidGrantError,
    KeyStoreError,
    MissingCredentialsError,
    ReauthRequiredError,
    ValidationError,
)
from mailmirror.utils.logging import get_logger, log_event

from .key_store import KeyStore

if TYPE_CHECKING:
    from mailmirror.core.remote.client import RemoteClient

logger = get_logger(__name__)

KEY_CLIENT_SECRET = "client_secret"
KEY_TOKEN = "token"
DEFAULT_SCOPES = ("https://mail.google.com/",)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ClientSecret:
    """OAuth client identity for an installed application."""

    client_id: str
    client_secret: str
    token_uri: str = "https://oauth2.googleapis.com/token"
    auth_uri: str = "https://accounts.google.com/o/oauth2/auth"
    redirect_uris: tuple = ("http://localhost",)

    @classmethod
    def from_google_json(cls, data: dict) -> "ClientSecret":
        """Parse a ``client_secret.json`` downloaded from the Google console."""
        section = data.get("installed") or data.get("web") or data
        try:
            return cls(
                client_id=section["client_id"],
                client_secret=section["client_secret"],
                token_uri=section.get("token_uri", cls.token_uri),
                auth_uri=section.get("auth_uri", cls.auth_uri),
                redirect_uris=tuple(section.get("redirect_uris", cls.redirect_uris)),
            )
        except KeyError as e:
            raise ValidationError(f"Client secret is missing field {e}") from e

    def to_google_json(self) -> dict:
        return {
            "installed": {
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "token_uri": self.token_uri,
                "auth_uri": self.auth_uri,
                "redirect_uris": list(self.redirect_uris),
            }
        }


@dataclass(frozen=True)
class TokenSet:
    """Access token (short-lived, derived) plus refresh token (durable)."""

    access_token: str
    refresh_token: Optional[str] = None
    expiry: Optional[datetime] = None
    scopes: tuple = field(default_factory=tuple)

    def is_valid(self, now: datetime, margin: timedelta) -> bool:
        """True when the access token stays usable for at least ``margin``."""
        if not self.access_token or self.expiry is None:
            return False
        return self.expiry - margin > now

    def to_json(self) -> str:
        return json.dumps(
            {
                "access_token": self.access_token,
                "refresh_token": self.refresh_token,
                "expiry": self.expiry.isoformat() if self.expiry else None,
                "scopes": list(self.scopes),
            }
        )

    @classmethod
    def from_json(cls, raw: str) -> "TokenSet":
        data = json.loads(raw)
        expiry = datetime.fromisoformat(data["expiry"]) if data.get("expiry") else None
        if expiry is not None and expiry.tzinfo is None:
            expiry = expiry.replace(tzinfo=timezone.utc)
        return cls(
            access_token=data.get("access_token", ""),
            refresh_token=data.get("refresh_token"),
            expiry=expiry,
            scopes=tuple(data.get("scopes", ())),
        )


class AuthStatus(Enum):
    """Authentication state reported to the UI."""

    AUTHENTICATED = "authenticated"
    REAUTH_REQUIRED = "reauth_required"
    ERROR = "error"


## OAuth flows


class OAuthFlow(ABC):
    """Interactive authorisation that yields a fresh token set."""

    @abstractmethod
    async def run(self, client: ClientSecret, scopes: Sequence[str]) -> TokenSet:
        """Run the flow and return the granted tokens."""


class InstalledAppOAuthFlow(OAuthFlow):
    """Loopback-redirect installed-app flow (opens the user's browser)."""

    def __init__(self, port: int = 0, open_browser: bool = True):
        self.port = port
        self.open_browser = open_browser

    async def run(self, client: ClientSecret, scopes: Sequence[str]) -> TokenSet:
        from google_auth_oauthlib.flow import InstalledAppFlow

        flow = InstalledAppFlow.from_client_config(
            client.to_google_json(), scopes=list(scopes)
        )
        creds = await asyncio.to_thread(
            flow.run_local_server, port=self.port, open_browser=self.open_browser
        )

        # google-auth reports expiry as naive UTC
        expiry = creds.expiry.replace(tzinfo=timezone.utc) if creds.expiry else None
        return TokenSet(
            access_token=creds.token,
            refresh_token=creds.refresh_token,
            expiry=expiry,
            scopes=tuple(creds.scopes or scopes),
        )


## Credential store


class CredentialStore:
    """Owns the client secret and token set, persisted in a :class:`KeyStore`."""

    def __init__(
        self,
        key_store: KeyStore,
        remote: "RemoteClient",
        safety_margin: float = 60,
        scopes: Sequence[str] = DEFAULT_SCOPES,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._key_store = key_store
        self._remote = remote
        self._margin = timedelta(seconds=safety_margin)
        self._scopes = tuple(scopes)
        self._clock = clock
        self._lock = asyncio.Lock()
        self._tokens: Optional[TokenSet] = None
        self._loaded = False
        self._client: Optional[ClientSecret] = None

    async def get_access_token(self) -> str:
        """Return an access token valid for at least the safety margin.

        Refreshes at most once per call; concurrent callers share one refresh.

        Raises:
            ReauthRequiredError: No usable refresh token, or it was revoked.
            TransientRemoteError: The token endpoint could not be reached.
        """
        async with self._lock:
            tokens = await self._current_tokens()

            if tokens is None:
                raise ReauthRequiredError("No stored tokens")

            if tokens.is_valid(self._clock(), self._margin):
                return tokens.access_token

            if not tokens.refresh_token:
                raise ReauthRequiredError("Access token expired and no refresh token is stored")

            client = await self._client_secret()

            logger.info("Access token expired or near expiry, refreshing")
            try:
                refreshed = await self._remote.refresh_access_token(
                    client, tokens.refresh_token
                )
            except InvalidGrantError as e:
                logger.warning("Refresh token rejected, clearing stored credentials")
                await self._clear_entries()
                log_event("auth.reauth_required", "Refresh token revoked or expired")
                raise ReauthRequiredError(details={"reason": e.message}) from e

            if refreshed.refresh_token is None:
                refreshed = replace(refreshed, refresh_token=tokens.refresh_token)

            # Persist before handing the token out
            await self._key_store.store(KEY_TOKEN, refreshed.to_json())
            self._tokens = refreshed

            log_event("auth.refreshed", "Access token refreshed")
            return refreshed.access_token

    async def invalidate(self) -> None:
        """Forget the cached access token so the next request refreshes it."""
        async with self._lock:
            tokens = await self._current_tokens()
            if tokens is not None:
                self._tokens = replace(tokens, expiry=None)
                logger.debug("Cached access token invalidated")

    async def clear(self) -> None:
        """Delete every persisted secret-store entry unconditionally."""
        async with self._lock:
            await self._clear_entries()
        logger.info("Stored credentials cleared")

    async def authorize(self, flow: Optional[OAuthFlow] = None) -> TokenSet:
        """Run the OAuth flow and persist the granted tokens."""
        client = await self._client_secret()
        flow = flow or InstalledAppOAuthFlow()

        tokens = await flow.run(client, self._scopes)

        async with self._lock:
            await self._key_store.store(KEY_TOKEN, tokens.to_json())
            self._tokens = tokens
            self._loaded = True

        log_event("auth.authorized", "OAuth authorisation completed")
        return tokens

    async def import_client_secret(self, path: Path) -> ClientSecret:
        """Load ``client_secret.json`` from disk into the secret store."""
        path = Path(path)
        try:
            data = json.loads(await asyncio.to_thread(path.read_text, encoding="utf-8"))
        except FileNotFoundError as e:
            raise MissingCredentialsError(
                f"Client secret file not found: {path}"
            ) from e
        except json.JSONDecodeError as e:
            raise ValidationError(f"Client secret file is not valid JSON: {path}") from e

        client = ClientSecret.from_google_json(data)
        await self._key_store.store(KEY_CLIENT_SECRET, json.dumps(client.to_google_json()))
        self._client = client

        logger.info(f"Client secret imported from {path}")
        return client

    async def status(self) -> AuthStatus:
        """Report whether sync can authenticate without user interaction."""
        try:
            async with self._lock:
                tokens = await self._current_tokens()
            await self._client_secret()
        except MissingCredentialsError:
            return AuthStatus.REAUTH_REQUIRED
        except KeyStoreError as e:
            logger.error(f"Credential status check failed: {e.message}")
            return AuthStatus.ERROR

        if tokens is None:
            return AuthStatus.REAUTH_REQUIRED
        if not tokens.refresh_token and not tokens.is_valid(self._clock(), self._margin):
            return AuthStatus.REAUTH_REQUIRED

        return AuthStatus.AUTHENTICATED

    async def _current_tokens(self) -> Optional[TokenSet]:
        """Load the token set once; caller holds the lock."""
        if not self._loaded:
            raw = await self._key_store.retrieve(KEY_TOKEN)
            self._tokens = TokenSet.from_json(raw) if raw else None
            self._loaded = True
        return self._tokens

    async def _client_secret(self) -> ClientSecret:
        if self._client is None:
            raw = await self._key_store.retrieve(KEY_CLIENT_SECRET)
            if not raw:
                raise MissingCredentialsError(
                    "No OAuth client secret stored; import client_secret.json first"
                )
            self._client = ClientSecret.from_google_json(json.loads(raw))
        return self._client

    async def _clear_entries(self) -> None:
        for key in (KEY_TOKEN, KEY_CLIENT_SECRET):
            await self._key_store.delete(key)

        self._tokens = None
        self._client = None
        self._loaded = True
