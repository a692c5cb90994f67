"""Authorization flows driven through a local callback server.

This module orchestrates one authorization round-trip:
1. Generate state (and nonce for the implicit grant)
2. Bind the local listener
3. Derive the redirect URI and build the authorization URL
4. Start the callback server and report its URL to the caller
5. Wait for the first authorization response, or the deadline
6. Shut the server down and release the listener
7. For the code grant, exchange the code for tokens

The caller opens the browser: pass ``on_ready=open_browser`` in the
FlowConfig, or hand the URL to the user some other way.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import webbrowser
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Iterable
from urllib.parse import urlsplit

import httpx

from .callback import (
    CODE_RESPONSE_TYPES,
    DEFAULT_SUCCESS_HTML,
    INDEX_PATH,
    AuthorizationRequestContext,
    CallbackHandler,
    build_authorization_url,
)
from .errors import (
    AuthorizationTimeoutError,
    ConfigurationError,
    LocalServerError,
    NoAuthorizationResponseError,
    OAuthFlowError,
    TokenExchangeError,
)
from .listener import LocalhostListener, bind_localhost_listener
from .pkce import generate_nonce, generate_state
from .server import (
    AuthorizationResponse,
    CallbackServer,
    create_ssl_context,
    identity_middleware,
)
from .tokens import TokenSet

if TYPE_CHECKING:
    from ..config import FlowConfig, OAuth2Config

logger = logging.getLogger(__name__)

# Callback path of the implicit grant when no redirect URL is configured
DEFAULT_IMPLICIT_CALLBACK_PATH = "/implicit"

# Timeout for token endpoint requests, in seconds
TOKEN_REQUEST_TIMEOUT = 30.0


@dataclass(frozen=True)
class AuthorizationCode:
    """An authorization code and the redirect URI it was issued for.

    The token request must repeat the same redirect_uri.
    """

    code: str
    redirect_uri: str


def open_browser(url: str) -> None:
    """Open the URL in the system browser, for use as FlowConfig.on_ready."""
    if not webbrowser.open(url):
        logger.warning(f"Could not open browser. Please open this URL manually: {url}")


def _redirect_target(
    config: FlowConfig,
    listener: LocalhostListener,
    implicit: bool,
) -> tuple[str, str]:
    """Work out the redirect URI and the local path that receives it.

    An explicit redirect URL is used as-is and its path becomes the
    callback path. Otherwise the URI points at the listener.

    Returns:
        (redirect_uri, callback_path)
    """
    explicit = config.oauth2.redirect_url
    if explicit:
        path = urlsplit(explicit).path or INDEX_PATH
        if implicit and path == INDEX_PATH:
            raise ConfigurationError("redirect URL path must not be empty for the implicit grant")
        return explicit, path

    path = config.callback_path or (DEFAULT_IMPLICIT_CALLBACK_PATH if implicit else INDEX_PATH)
    if implicit and path == INDEX_PATH:
        raise ConfigurationError("callback_path must not be '/' for the implicit grant")

    redirect_uri = f"{listener.scheme}://{config.redirect_url_hostname}:{listener.port}{path}"
    return redirect_uri, path


async def _collect_first_response(
    server: CallbackServer,
    timeout: float | None,
) -> AuthorizationResponse | None:
    """Record the first response on the channel and shut the server down.

    Keeps reading until the channel is closed so the serve task never
    waits on us. Later responses are discarded.

    Raises:
        AuthorizationTimeoutError: If the deadline passes before any response
    """
    loop = asyncio.get_running_loop()
    deadline = None if timeout is None else loop.time() + timeout
    first: AuthorizationResponse | None = None

    while True:
        remaining = None
        if deadline is not None and first is None:
            remaining = max(0.0, deadline - loop.time())

        try:
            received = await asyncio.wait_for(server.responses.get(), timeout=remaining)
        except TimeoutError as e:
            server.shutdown()
            raise AuthorizationTimeoutError(
                "context done while waiting for authorization response"
            ) from e
        except asyncio.CancelledError:
            server.shutdown()
            raise

        if received is None:
            # Channel closed after the server stopped
            return first

        if first is None:
            first = received
        else:
            logger.warning("Discarding authorization response received after the first one")
        server.shutdown()


async def _run_local_server(
    config: FlowConfig,
    response_types: Iterable[str],
) -> tuple[AuthorizationResponse, AuthorizationRequestContext]:
    """Run one session of the local server and return its authorization response.

    Raises:
        ConfigurationError, StateGenerationError, ListenerError: before serving
        LocalServerError: If the server could not be started
        AuthorizationTimeoutError: If config.timeout passed first
        NoAuthorizationResponseError: If the server stopped without a response
        AuthorizationError: If the recorded response is an error
    """
    config.validate()
    response_types = frozenset(response_types)
    implicit = response_types != CODE_RESPONSE_TYPES

    state = generate_state()
    nonce = generate_nonce() if implicit else None

    listener = bind_localhost_listener(config.bind_address, config.ports, use_tls=config.use_tls)
    try:
        redirect_uri, callback_path = _redirect_target(config, listener, implicit)
        oauth2 = config.oauth2
        context = AuthorizationRequestContext(
            state=state,
            nonce=nonce,
            redirect_uri=redirect_uri,
            authorization_url=build_authorization_url(
                oauth2.authorization_endpoint,
                oauth2.client_id,
                redirect_uri,
                state,
                scopes=oauth2.scopes,
                response_types=response_types,
                nonce=nonce,
                extra_params=config.authorization_params,
            ),
        )

        handler = CallbackHandler(
            context,
            callback_path=callback_path,
            response_types=response_types,
            success_html=config.success_html or DEFAULT_SUCCESS_HTML,
        )
        middleware = config.middleware or identity_middleware

        ssl_context = None
        if config.use_tls:
            ssl_context = create_ssl_context(config.cert_file, config.key_file)  # type: ignore[arg-type]

        server = CallbackServer(listener, middleware(handler), ssl_context=ssl_context)
        await server.start()

        response = await _serve_until_response(server, config)
        return response, context
    finally:
        listener.close()


async def _serve_until_response(
    server: CallbackServer,
    config: FlowConfig,
) -> AuthorizationResponse:
    """Run the serve and collector tasks, join both, and interpret the outcome."""
    serve_task = asyncio.create_task(server.serve())
    collect_task = asyncio.create_task(_collect_first_response(server, config.timeout))

    url = server.listener.url
    logger.info(f"Open {url} for authorization")
    try:
        if config.on_ready is not None:
            ready = config.on_ready(url)
            if inspect.isawaitable(ready):
                await ready
    except BaseException:
        server.shutdown()
        await asyncio.gather(serve_task, collect_task, return_exceptions=True)
        raise

    served, collected = await asyncio.gather(serve_task, collect_task, return_exceptions=True)

    if isinstance(served, BaseException):
        if isinstance(served, OAuthFlowError):
            raise served
        raise LocalServerError(f"local server failed: {served}") from served
    if isinstance(collected, BaseException):
        raise collected

    if collected is None:
        raise NoAuthorizationResponseError("no authorization response")
    if collected.error is not None:
        raise collected.error
    return collected


async def receive_code_via_local_server(config: FlowConfig) -> AuthorizationCode:
    """Obtain an authorization code via the local server.

    Args:
        config: Flow configuration

    Returns:
        AuthorizationCode with the code and the redirect URI it was issued for
    """
    response, context = await _run_local_server(config, CODE_RESPONSE_TYPES)
    if not response.code:
        raise NoAuthorizationResponseError("authorization response carried no code")
    return AuthorizationCode(code=response.code, redirect_uri=context.redirect_uri)


async def receive_token_via_local_server(
    config: FlowConfig,
    response_types: Iterable[str],
) -> tuple[TokenSet, str | None]:
    """Obtain a token via the implicit grant through the local server.

    Args:
        config: Flow configuration
        response_types: Any non-empty subset of {"token", "id_token"}

    Returns:
        (token, nonce). Validating the nonce claim of an id_token is up to
        the caller.
    """
    response, _ = await _run_local_server(config, response_types)
    if response.token is None:
        raise NoAuthorizationResponseError("authorization response carried no token")
    return response.token, response.nonce


async def exchange_code_for_tokens(
    oauth2: OAuth2Config,
    code: str,
    redirect_uri: str,
    extra_params: dict[str, str] | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> dict[str, Any]:
    """Exchange authorization code for tokens.

    Args:
        oauth2: Client and provider settings
        code: Authorization code from callback
        redirect_uri: The redirect URI used in authorization
        extra_params: Additional form fields, e.g. PKCE code_verifier
        http_client: Optional HTTP client

    Returns:
        Token endpoint response as dictionary

    Raises:
        TokenExchangeError: If token exchange fails
    """
    http = http_client or httpx.AsyncClient(timeout=TOKEN_REQUEST_TIMEOUT)
    should_close = http_client is None

    try:
        token_request: dict[str, str] = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
            "client_id": oauth2.client_id,
        }

        # Add client_secret for confidential clients
        if oauth2.is_confidential():
            token_request["client_secret"] = oauth2.client_secret  # type: ignore

        if extra_params:
            token_request.update(extra_params)

        response = await http.post(
            oauth2.token_endpoint,
            data=token_request,
            headers={"Accept": "application/json"},
        )

        if response.status_code != 200:
            error_detail = ""
            try:
                error_data = response.json()
                # Only extract safe error fields, not arbitrary response data
                error_detail = f": {error_data.get('error', '')} - {error_data.get('error_description', '')}"
            except Exception:
                # Don't include raw response body - it might contain tokens or secrets
                error_detail = ""

            raise TokenExchangeError(
                f"Token exchange failed (HTTP {response.status_code}){error_detail}"
            )

        try:
            result: dict[str, Any] = response.json()
        except ValueError as e:
            raise TokenExchangeError("Token endpoint returned invalid JSON") from e

        if not isinstance(result, dict) or "access_token" not in result:
            raise TokenExchangeError("Token response missing access_token")

        return result

    except httpx.RequestError as e:
        raise TokenExchangeError(f"Network error during token exchange: {e}") from e
    finally:
        if should_close:
            await http.aclose()


async def get_token(
    config: FlowConfig,
    http_client: httpx.AsyncClient | None = None,
) -> TokenSet:
    """Perform the authorization code grant and return the token.

    Starts the local server, waits for the browser to come back with a
    code, then exchanges it at the token endpoint together with
    config.token_params.

    Args:
        config: Flow configuration
        http_client: Optional HTTP client for the token request

    Returns:
        TokenSet from the token endpoint
    """
    authorization = await receive_code_via_local_server(config)

    logger.debug("Exchanging code for tokens")
    token_response = await exchange_code_for_tokens(
        config.oauth2,
        authorization.code,
        authorization.redirect_uri,
        extra_params=config.token_params,
        http_client=http_client,
    )
    return TokenSet.from_token_response(token_response)


async def get_token_implicitly(config: FlowConfig) -> TokenSet:
    """Perform the implicit grant requesting an access token."""
    token, _ = await receive_token_via_local_server(config, {"token"})
    return token


async def get_id_token_implicitly(config: FlowConfig) -> tuple[TokenSet, str | None]:
    """Perform the OIDC implicit flow requesting an id_token.

    Returns:
        (token, nonce); the caller validates the id_token's nonce claim
    """
    return await receive_token_via_local_server(config, {"id_token"})


async def get_token_and_id_token_implicitly(config: FlowConfig) -> tuple[TokenSet, str | None]:
    """Perform the OIDC implicit flow requesting both access token and id_token."""
    return await receive_token_via_local_server(config, {"token", "id_token"})
