#!/usr/bin/env python3
"""
In-memory OAuth client session for one downstream MCP server.

Holds the client metadata, registered client record, current token set, the
PKCE code verifier of the running authorization attempt, and the refresh
task. It is an httpx.Auth so the MCP transport can attach the access token to
every request; a 401 from the server is recorded as the "unauthorized" signal
the transport turns into UnauthorizedError.

Nothing is persisted: tokens live as long as the owning ToolConnectionManager.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Set

import httpx
from authlib.common.security import generate_token
from authlib.integrations.httpx_client import AsyncOAuth2Client
from pydantic import AnyUrl

from mcp.shared.auth import OAuthClientInformationFull, OAuthClientMetadata, OAuthToken

from .users import DownstreamServerConfig

logger = logging.getLogger(__name__)

# Refresh this many seconds before the access token expires
REFRESH_LEAD_SECONDS = 10
HTTP_TIMEOUT = 15.0


class OAuthConfigError(Exception):
    """Raised when a server config cannot produce valid client metadata"""


class MissingCodeVerifierError(Exception):
    """Raised when the code verifier is read before it was saved"""


class AuthorizationError(Exception):
    """Authorization server denied the request or the code exchange failed"""


@dataclass
class AuthServerEndpoints:
    authorization_endpoint: str
    token_endpoint: str
    registration_endpoint: Optional[str] = None


def _mask(secret: Optional[str], keep: int = 6) -> str:
    if not secret:
        return "<none>"
    return f"{secret[:keep]}..."


class OAuthSession(httpx.Auth):
    """OAuth 2.0 authorization-code (PKCE) client state for one MCP server"""

    def __init__(
        self,
        config: DownstreamServerConfig,
        shutdown_event: Optional[asyncio.Event] = None,
        redirect_url: Optional[str] = None,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if len(config.redirect_uris) < 1:
            raise OAuthConfigError("empty redirect_uris")

        self._config = config
        self._server_url = config.server_url
        self._auth_server_url = config.auth_server_url.rstrip('/')
        self._redirect_url = redirect_url or config.redirect_uris[0]
        self._shutdown_event = shutdown_event
        self._http_kwargs: Dict[str, Any] = {"transport": http_transport} if http_transport else {}

        self._client_metadata = OAuthClientMetadata(
            client_name=config.client_name,
            redirect_uris=[AnyUrl(uri) for uri in config.redirect_uris],
            grant_types=["authorization_code", "refresh_token"],
            response_types=["code"],
            token_endpoint_auth_method="client_secret_post",
            scope=config.scope,
        )
        self._client_information: Optional[OAuthClientInformationFull] = OAuthClientInformationFull(
            client_id=config.client_id,
            client_secret=config.client_secret,
            **self._client_metadata.model_dump(),
        )
        self._tokens: Optional[OAuthToken] = None
        self._code_verifier: Optional[str] = None
        self._endpoints: Optional[AuthServerEndpoints] = None

        self._refresh_task: Optional[asyncio.Task] = None
        self._refresh_delay: Optional[float] = None
        self._background: Set[asyncio.Task] = set()
        self._unauthorized = asyncio.Event()
        self._closed = False

    # ----- credential-provider contract -----

    @property
    def server_url(self) -> str:
        return self._server_url

    @property
    def redirect_url(self) -> str:
        return self._redirect_url

    @property
    def client_metadata(self) -> OAuthClientMetadata:
        return self._client_metadata

    def client_information(self) -> Optional[OAuthClientInformationFull]:
        return self._client_information

    def save_client_information(self, client_information: OAuthClientInformationFull) -> None:
        self._client_information = client_information

    def tokens(self) -> Optional[OAuthToken]:
        return self._tokens

    def save_tokens(self, tokens: OAuthToken) -> None:
        """Replace the token set and (re)arm the refresh task.

        A refresh is scheduled only when the tokens carry both an expiry and a
        refresh token. Any previously armed refresh is cancelled first.
        """
        self._tokens = tokens
        self._unauthorized.clear()
        self._cancel_refresh()

        if tokens.expires_in is None or not tokens.refresh_token:
            logger.debug(f"[oauth] Tokens for {self._server_url} have no expiry/refresh token, no refresh scheduled")
            return
        if self._closed:
            return

        delay = max(float(tokens.expires_in) - REFRESH_LEAD_SECONDS, 0.0)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(f"[oauth] No running event loop, token refresh for {self._server_url} not scheduled")
            return

        self._refresh_delay = delay
        self._refresh_task = loop.create_task(self._refresh_after(delay))
        logger.info(f"[oauth] Token refresh for {self._server_url} scheduled in {delay:.0f}s")

    def save_code_verifier(self, code_verifier: str) -> None:
        self._code_verifier = code_verifier

    def code_verifier(self) -> str:
        if not self._code_verifier:
            raise MissingCodeVerifierError("No code verifier saved")
        return self._code_verifier

    def redirect_to_authorization(self, authorization_url: str) -> None:
        """Notify the authorization target without waiting for it.

        Fires a background GET to the URL; the authorization server answers
        by redirecting to our callback rendezvous. Failures are only logged.
        """
        logger.info(f"[oauth] OAuth redirect handler called - {authorization_url}")
        task = asyncio.get_running_loop().create_task(self._ping_authorization_url(authorization_url))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # ----- httpx.Auth -----

    def auth_flow(self, request: httpx.Request):
        if self._tokens is not None:
            request.headers["Authorization"] = f"Bearer {self._tokens.access_token}"
        response = yield request
        if response.status_code == 401:
            logger.warning(f"[oauth] {self._server_url} rejected the access token (401)")
            self._unauthorized.set()

    @property
    def unauthorized(self) -> asyncio.Event:
        """Set when the server answered 401 since the last token save"""
        return self._unauthorized

    def invalidate_tokens(self) -> None:
        """Forget rejected tokens so the next connect starts a new authorization"""
        self._cancel_refresh()
        self._tokens = None

    # ----- authorization-code dance -----

    async def discover_endpoints(self) -> AuthServerEndpoints:
        """Fetch RFC 8414 metadata, falling back to the conventional endpoints"""
        if self._endpoints is not None:
            return self._endpoints

        discovery_url = f"{self._auth_server_url}/.well-known/oauth-authorization-server"
        metadata: Dict[str, Any] = {}
        try:
            async with httpx.AsyncClient(timeout=HTTP_TIMEOUT, **self._http_kwargs) as client:
                resp = await client.get(discovery_url)
            if resp.status_code == 200:
                metadata = resp.json()
            else:
                logger.debug(f"[oauth] Metadata discovery at {discovery_url} returned HTTP {resp.status_code}")
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"[oauth] Failed to discover OAuth metadata at {discovery_url}: {e}")

        self._endpoints = AuthServerEndpoints(
            authorization_endpoint=metadata.get("authorization_endpoint") or f"{self._auth_server_url}/authorize",
            token_endpoint=metadata.get("token_endpoint") or f"{self._auth_server_url}/token",
            registration_endpoint=metadata.get("registration_endpoint") or f"{self._auth_server_url}/register",
        )
        logger.debug(f"[oauth] Endpoints for {self._auth_server_url}: {self._endpoints}")
        return self._endpoints

    async def register_client(self) -> OAuthClientInformationFull:
        """Dynamic client registration (RFC 7591) with our client metadata"""
        endpoints = await self.discover_endpoints()
        if not endpoints.registration_endpoint:
            raise AuthorizationError(f"No registration endpoint for {self._auth_server_url}")

        payload = self._client_metadata.model_dump(mode="json", exclude_none=True)
        try:
            async with httpx.AsyncClient(timeout=HTTP_TIMEOUT, **self._http_kwargs) as client:
                resp = await client.post(endpoints.registration_endpoint, json=payload)
        except httpx.HTTPError as e:
            raise AuthorizationError(f"Client registration failed: {e}") from e
        if resp.status_code not in (200, 201):
            raise AuthorizationError(f"Client registration failed: HTTP {resp.status_code} {resp.text}")

        info = OAuthClientInformationFull.model_validate(resp.json())
        self.save_client_information(info)
        logger.info(f"[oauth] Registered client {info.client_id} with {self._auth_server_url}")
        return info

    async def start_authorization(self) -> str:
        """Begin a new authorization attempt and return the authorization URL"""
        endpoints = await self.discover_endpoints()
        if self._client_information is None:
            await self.register_client()

        verifier = generate_token(48)
        self.save_code_verifier(verifier)
        async with self._oauth_client() as client:
            url, _state = client.create_authorization_url(
                endpoints.authorization_endpoint,
                code_verifier=verifier,
                resource=self._server_url,
            )
        self.redirect_to_authorization(url)
        return url

    async def exchange_authorization_code(self, code: str) -> OAuthToken:
        """Trade the captured authorization code (plus verifier) for tokens"""
        verifier = self.code_verifier()
        endpoints = await self.discover_endpoints()
        logger.info(f"[oauth] Exchanging authorization code {_mask(code)} at {endpoints.token_endpoint}")
        try:
            async with self._oauth_client() as client:
                token = await client.fetch_token(
                    endpoints.token_endpoint,
                    grant_type="authorization_code",
                    code=code,
                    code_verifier=verifier,
                )
            tokens = OAuthToken.model_validate(dict(token))
        except Exception as e:
            raise AuthorizationError(f"Token exchange failed for {self._server_url}: {e}") from e

        self.save_tokens(tokens)
        return tokens

    async def refresh_tokens(self) -> bool:
        """Run the refresh_token grant once; failures are logged, not raised"""
        current = self._tokens
        if current is None or not current.refresh_token:
            logger.info(f"[oauth] No refresh token available for {self._server_url}, skipping refresh")
            return False
        if self._client_information is None:
            logger.warning(f"[oauth] No client information for {self._server_url}, cannot refresh")
            return False

        try:
            endpoints = await self.discover_endpoints()
            async with self._oauth_client() as client:
                token = await client.refresh_token(
                    endpoints.token_endpoint,
                    refresh_token=current.refresh_token,
                )
            fresh = OAuthToken.model_validate(dict(token))
        except Exception as e:
            logger.error(f"[oauth] Token refresh failed for {self._server_url}: {e}")
            return False

        logger.info(f"[oauth] Successfully refreshed tokens for {self._server_url}")
        self.save_tokens(fresh)
        return True

    # ----- lifecycle -----

    @property
    def refresh_delay(self) -> Optional[float]:
        """Delay (seconds) of the currently armed refresh, if any"""
        if self._refresh_task is None or self._refresh_task.done():
            return None
        return self._refresh_delay

    @property
    def refresh_task(self) -> Optional[asyncio.Task]:
        return self._refresh_task

    def close(self) -> None:
        self._closed = True
        self._cancel_refresh()
        for task in list(self._background):
            task.cancel()

    def _cancel_refresh(self) -> None:
        task = self._refresh_task
        self._refresh_task = None
        self._refresh_delay = None
        if task is None or task.done():
            return
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        # save_tokens runs inside the refresh task on success; it must not cancel itself
        if task is not current:
            task.cancel()

    async def _refresh_after(self, delay: float) -> None:
        if self._shutdown_event is None:
            await asyncio.sleep(delay)
        else:
            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=delay)
                logger.debug(f"[oauth] Shutdown before refresh of {self._server_url}")
                return
            except asyncio.TimeoutError:
                pass
        await self.refresh_tokens()

    async def _ping_authorization_url(self, url: str) -> None:
        try:
            async with httpx.AsyncClient(timeout=HTTP_TIMEOUT, follow_redirects=True, **self._http_kwargs) as client:
                resp = await client.get(url)
            try:
                message = resp.json().get("message")
            except ValueError:
                message = None
            logger.info(f"[oauth] OAuth redirect handler response: {resp.status_code} {message}")
        except Exception as e:
            logger.error(f"[oauth] OAuth redirect handler error: {e}")

    def _oauth_client(self) -> AsyncOAuth2Client:
        info = self._client_information
        return AsyncOAuth2Client(
            client_id=info.client_id if info else None,
            client_secret=info.client_secret if info else None,
            scope=self._config.scope,
            redirect_uri=self._redirect_url,
            code_challenge_method="S256",
            token_endpoint_auth_method="client_secret_post",
            timeout=HTTP_TIMEOUT,
            **self._http_kwargs,
        )
