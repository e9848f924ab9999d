"""
OAuth 2.0 authorization code flow with PKCE for MCP servers.

One OAuthFlow belongs to one session. Client registrations are cached per
server identity so that several sessions pointing at the same server share
one registration, while tokens are always stored per session.

Storage keys:
    token:<session_id>             TokenSet
    registration:<server_identity> ClientRegistration
    oauthState:<session_id>        PendingAuthorization
"""

import base64
import enum
import hashlib
import secrets
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple
from urllib.parse import urlencode, urlparse

import aiohttp
from pydantic import BaseModel, ValidationError

from tether_mcp.config import OAuthSettings, ServerDescriptor
from tether_mcp.mcp.errors import AuthError, describe
from tether_mcp.storage import KeyValueStore, oauth_state_key, registration_key, token_key
from tether_mcp.utils.logging import get_logger

logger = get_logger(__name__)

STATE_PREFIX = "mcp:"
WELL_KNOWN_METADATA_PATH = "/.well-known/oauth-authorization-server"


class OAuthStatus(str, enum.Enum):
    IDLE = "idle"
    AWAITING_AUTHORIZATION = "awaiting_authorization"
    EXCHANGING = "exchanging"
    AUTHORIZED = "authorized"
    FAILED = "failed"


class ClientRegistration(BaseModel):
    """OAuth client credentials, shared by every session of one server."""

    client_id: str
    client_secret: Optional[str] = None
    client_id_issued_at: Optional[float] = None
    client_secret_expires_at: Optional[float] = None

    def is_expired(self, now: float) -> bool:
        # 0 means the secret never expires (RFC 7591)
        return bool(self.client_secret_expires_at) and self.client_secret_expires_at < now


class TokenSet(BaseModel):
    """Tokens issued to one session."""

    access_token: str
    token_type: str = "Bearer"
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    expires_at: Optional[float] = None
    scope: Optional[str] = None

    def authorization_header(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.access_token}"}


class PendingAuthorization(BaseModel):
    """Verifier and anti-forgery state of one authorization attempt."""

    code_verifier: str
    state: str
    expires_at: float
    redirect_uri: str


class AuthorizationServerMetadata(BaseModel):
    authorization_endpoint: str
    token_endpoint: str
    registration_endpoint: Optional[str] = None


def base64_url_encode(data: bytes) -> str:
    """Base64 URL-safe encode without padding."""
    return base64.urlsafe_b64encode(data).decode().rstrip("=")


def generate_pkce() -> Tuple[str, str]:
    """
    Generate a PKCE code verifier and its S256 challenge.

    Returns:
        (code_verifier, code_challenge)
    """
    code_verifier = secrets.token_urlsafe(48)
    challenge = base64_url_encode(hashlib.sha256(code_verifier.encode()).digest())
    return code_verifier, challenge


def make_state(session_id: str) -> str:
    """Anti-forgery state that carries the session id, e.g. mcp:<id>.<random>."""
    return f"{STATE_PREFIX}{session_id}.{secrets.token_urlsafe(12)}"


def session_id_from_state(state: str) -> Optional[str]:
    """Extract the session id embedded by make_state, or None."""
    if not state or not state.startswith(STATE_PREFIX):
        return None
    session_id, dot, _ = state[len(STATE_PREFIX):].rpartition(".")
    return session_id if dot and session_id else None


def server_identity(url: str, fallback: str) -> str:
    """
    Stable key for a server, used to cache client registrations.

    Derived from the lower-cased host, an explicit port and the path
    without a trailing slash. Falls back to the given value when the URL
    has no host.
    """
    parsed = urlparse(url)
    if not parsed.hostname:
        return fallback
    identity = parsed.hostname.lower()
    try:
        port = parsed.port
    except ValueError:
        port = None
    if port:
        identity += f":{port}"
    identity += parsed.path.rstrip("/")
    return hashlib.sha256(identity.encode()).hexdigest()[:24]


class OAuthHttpClient:
    """Small JSON-over-HTTP helper for the authorization server."""

    def __init__(self, timeout_seconds: float = 30.0):
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    async def get_json(self, url: str) -> Tuple[int, Any]:
        async with aiohttp.ClientSession(timeout=self._timeout) as session:
            async with session.get(url, headers={"Accept": "application/json"}) as response:
                return response.status, await self._body(response)

    async def post(
        self, url: str, *, data: Optional[Dict[str, str]] = None, json: Any = None
    ) -> Tuple[int, Any]:
        async with aiohttp.ClientSession(timeout=self._timeout) as session:
            async with session.post(
                url, data=data, json=json, headers={"Accept": "application/json"}
            ) as response:
                return response.status, await self._body(response)

    @staticmethod
    async def _body(response: aiohttp.ClientResponse) -> Any:
        try:
            return await response.json(content_type=None)
        except ValueError:
            return {"error": await response.text()}


# Receives (session_id, authorization_url). Must return without waiting for the user.
Authorizer = Callable[[str, str], Awaitable[None]]


class OAuthFlow:
    """
    Authorization state machine for one session.

    idle -> awaiting_authorization -> exchanging -> authorized | failed
    """

    def __init__(
        self,
        session_id: str,
        descriptor: ServerDescriptor,
        store: KeyValueStore,
        settings: Optional[OAuthSettings] = None,
        authorizer: Optional[Authorizer] = None,
        http_client: Optional[OAuthHttpClient] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.session_id = session_id
        self.descriptor = descriptor
        self.store = store
        self.settings = settings or OAuthSettings()
        self.authorizer = authorizer
        self.http_client = http_client or OAuthHttpClient()
        self.clock = clock
        self.status = OAuthStatus.IDLE
        self.error: Optional[str] = None
        self._metadata: Optional[AuthorizationServerMetadata] = None

    @property
    def server_identity(self) -> str:
        return server_identity(self.descriptor.url, self.session_id)

    @property
    def redirect_uri(self) -> str:
        return self.settings.redirect_uri

    def owns_state(self, state: str) -> bool:
        return session_id_from_state(state) == self.session_id

    def _fail(self, message: str) -> AuthError:
        self.status = OAuthStatus.FAILED
        self.error = message
        logger.warning(f"{self.descriptor.name}: authorization failed: {message}")
        return AuthError(message, session_id=self.session_id, retryable=False)

    async def tokens(self) -> Optional[TokenSet]:
        data = await self.store.get(token_key(self.session_id))
        if not data:
            return None
        try:
            return TokenSet.model_validate(data)
        except ValidationError:
            logger.warning(f"{self.descriptor.name}: discarding malformed stored token set")
            await self.store.delete(token_key(self.session_id))
            return None

    async def discover_metadata(self) -> AuthorizationServerMetadata:
        """
        Resolve the authorization server endpoints.

        Explicitly configured endpoints win. Otherwise the server's
        well-known metadata document is used, with the conventional
        /authorize, /token and /register paths as the last resort.
        """
        if self._metadata is not None:
            return self._metadata

        configured = self.descriptor.oauth
        parsed = urlparse(self.descriptor.url)
        base = f"{parsed.scheme}://{parsed.netloc}"

        document: Dict[str, Any] = {}
        if not (configured.authorization_endpoint and configured.token_endpoint):
            try:
                status, body = await self.http_client.get_json(base + WELL_KNOWN_METADATA_PATH)
            except aiohttp.ClientError as e:
                logger.debug(f"{self.descriptor.name}: metadata discovery failed: {e}")
                status, body = 0, None
            if status == 200 and isinstance(body, dict):
                document = body

        self._metadata = AuthorizationServerMetadata(
            authorization_endpoint=(
                configured.authorization_endpoint
                or document.get("authorization_endpoint")
                or base + "/authorize"
            ),
            token_endpoint=(
                configured.token_endpoint
                or document.get("token_endpoint")
                or base + "/token"
            ),
            registration_endpoint=(
                configured.registration_endpoint
                or document.get("registration_endpoint")
                or (None if document else base + "/register")
            ),
        )
        return self._metadata

    def client_metadata(self) -> Dict[str, Any]:
        """Client metadata sent for dynamic registration."""
        return {
            "redirect_uris": [self.redirect_uri],
            "client_name": f"{self.settings.client_name} - {self.descriptor.name}",
            "grant_types": ["authorization_code", "refresh_token"],
            "response_types": ["code"],
            "token_endpoint_auth_method": "none",
        }

    async def client_registration(self) -> ClientRegistration:
        """
        Get the client registration for this server, registering only if
        none is configured or cached.

        Raises:
            AuthError: If registration is needed and fails.
        """
        configured = self.descriptor.oauth
        if configured.client_id:
            return ClientRegistration(
                client_id=configured.client_id,
                client_secret=configured.client_secret,
            )

        key = registration_key(self.server_identity)
        cached = await self.store.get(key)
        if cached:
            registration = ClientRegistration.model_validate(cached)
            if not registration.is_expired(self.clock()):
                return registration
            logger.info(f"{self.descriptor.name}: cached client registration expired")

        metadata = await self.discover_metadata()
        if not metadata.registration_endpoint:
            raise self._fail("Server does not support dynamic client registration and no client_id is configured")

        try:
            status, body = await self.http_client.post(
                metadata.registration_endpoint, json=self.client_metadata()
            )
        except aiohttp.ClientError as e:
            raise self._fail(f"Client registration failed: {e}") from e
        if status not in (200, 201) or not isinstance(body, dict) or "client_id" not in body:
            raise self._fail(f"Client registration failed with HTTP {status}")

        registration = ClientRegistration.model_validate(body)
        await self.store.set(key, registration.model_dump(exclude_none=True))
        logger.info(f"{self.descriptor.name}: registered OAuth client", data={"client_id": registration.client_id})
        return registration

    async def begin(self) -> str:
        """
        Start an authorization attempt and hand the URL to the authorizer.

        Returns as soon as the URL has been handed over; the result arrives
        later through complete() or fail().

        Returns:
            The authorization URL.
        """
        self.status = OAuthStatus.AWAITING_AUTHORIZATION
        self.error = None

        try:
            return await self._begin()
        except AuthError:
            raise
        except Exception as e:
            raise self._fail(f"Could not start authorization: {describe(e)}") from e

    async def _begin(self) -> str:
        metadata = await self.discover_metadata()
        registration = await self.client_registration()

        code_verifier, code_challenge = generate_pkce()
        state = make_state(self.session_id)
        pending = PendingAuthorization(
            code_verifier=code_verifier,
            state=state,
            expires_at=self.clock() + self.settings.state_ttl_seconds,
            redirect_uri=self.redirect_uri,
        )
        await self.store.set(oauth_state_key(self.session_id), pending.model_dump())

        params = {
            "response_type": "code",
            "client_id": registration.client_id,
            "redirect_uri": self.redirect_uri,
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
            "state": state,
        }
        if self.descriptor.oauth.scope:
            params["scope"] = self.descriptor.oauth.scope
        separator = "&" if urlparse(metadata.authorization_endpoint).query else "?"
        url = f"{metadata.authorization_endpoint}{separator}{urlencode(params)}"

        logger.info(f"{self.descriptor.name}: authorization required, waiting for the user")
        if self.authorizer is not None:
            await self.authorizer(self.session_id, url)
        else:
            logger.warning(f"{self.descriptor.name}: open this URL to authorize: {url}")
        return url

    async def _take_pending(self, state: str) -> PendingAuthorization:
        if not self.owns_state(state):
            raise AuthError("Authorization state does not belong to this session", session_id=self.session_id)

        key = oauth_state_key(self.session_id)
        data = await self.store.get(key)
        if not data:
            raise self._fail("No authorization in progress")

        pending = PendingAuthorization.model_validate(data)
        if pending.state != state:
            raise self._fail("Authorization state mismatch")

        # Single use, whatever happens next
        await self.store.delete(key)
        if self.clock() > pending.expires_at:
            raise self._fail("Authorization state expired")
        return pending

    async def complete(self, state: str, code: str) -> TokenSet:
        """
        Exchange an authorization code for tokens.

        Raises:
            AuthError: Invalid or expired state, or the exchange failed.
                Nothing is retried; a new attempt needs begin().
        """
        pending = await self._take_pending(state)

        self.status = OAuthStatus.EXCHANGING
        try:
            tokens = await self._exchange(pending, code)
        except AuthError:
            raise
        except Exception as e:
            raise self._fail(f"Token exchange failed: {describe(e)}") from e

        self.status = OAuthStatus.AUTHORIZED
        self.error = None
        logger.info(f"{self.descriptor.name}: authorization complete")
        return tokens

    async def _exchange(self, pending: PendingAuthorization, code: str) -> TokenSet:
        metadata = await self.discover_metadata()
        registration = await self.client_registration()

        form = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": pending.redirect_uri,
            "client_id": registration.client_id,
            "code_verifier": pending.code_verifier,
        }
        if registration.client_secret:
            form["client_secret"] = registration.client_secret

        try:
            status, body = await self.http_client.post(metadata.token_endpoint, data=form)
        except aiohttp.ClientError as e:
            raise self._fail(f"Token exchange failed: {e}") from e

        if status != 200 or not isinstance(body, dict) or "access_token" not in body:
            detail = body.get("error_description") or body.get("error") if isinstance(body, dict) else None
            raise self._fail(f"Token exchange failed with HTTP {status}" + (f": {detail}" if detail else ""))

        tokens = TokenSet.model_validate(body)
        if tokens.expires_in and not tokens.expires_at:
            tokens.expires_at = self.clock() + tokens.expires_in
        await self.store.set(token_key(self.session_id), tokens.model_dump(exclude_none=True))
        return tokens

    async def fail(self, state: str, error: str) -> AuthError:
        """Record an error delivered by the authorizer instead of a code."""
        if self.owns_state(state):
            await self.store.delete(oauth_state_key(self.session_id))
        return self._fail(f"Authorization denied: {error}")

    async def clear_session_data(self) -> None:
        """Drop this session's tokens and pending state."""
        await self.store.delete(token_key(self.session_id))
        await self.store.delete(oauth_state_key(self.session_id))
        self.status = OAuthStatus.IDLE
        self.error = None

    async def clear_shared_client_data(self) -> None:
        """Drop the client registration shared by every session of this server."""
        await self.store.delete(registration_key(self.server_identity))
