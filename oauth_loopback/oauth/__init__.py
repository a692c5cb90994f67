"""OAuth 2.0 authorization through a local callback server.

This package runs one authorization round-trip per call: it binds a local
listener, redirects the browser to the provider, captures exactly one
authorization response and shuts the server down again.

Main Components:
    get_token: Authorization code grant, including the token exchange
    receive_code_via_local_server: Authorization code grant, code only
    get_token_implicitly: Implicit grant (access token)
    get_id_token_implicitly: OIDC implicit flow (id_token)
    TokenSet: Token data structure

Quick Start:
    from oauth_loopback.config import FlowConfig, OAuth2Config
    from oauth_loopback.oauth import generate_pkce_pair, get_token, open_browser

    pkce = generate_pkce_pair()
    config = FlowConfig(
        oauth2=OAuth2Config(
            client_id="my-client",
            authorization_endpoint="https://accounts.example.com/authorize",
            token_endpoint="https://accounts.example.com/token",
            scopes=["email"],
        ),
        authorization_params=pkce.authorization_params(),
        token_params=pkce.token_params(),
        on_ready=open_browser,
    )
    token = await get_token(config)
"""

from .callback import (
    CODE_RESPONSE_TYPES,
    DEFAULT_SUCCESS_HTML,
    AuthorizationRequestContext,
    CallbackHandler,
    build_authorization_url,
)
from .errors import (
    AuthorizationError,
    AuthorizationTimeoutError,
    ConfigurationError,
    ListenerError,
    LocalServerError,
    NoAuthorizationResponseError,
    OAuthFlowError,
    StateGenerationError,
    TokenExchangeError,
)
from .flow import (
    AuthorizationCode,
    exchange_code_for_tokens,
    get_id_token_implicitly,
    get_token,
    get_token_and_id_token_implicitly,
    get_token_implicitly,
    open_browser,
    receive_code_via_local_server,
    receive_token_via_local_server,
)
from .listener import LocalhostListener, bind_localhost_listener
from .pkce import (
    PKCEPair,
    compute_s256,
    generate_code_challenge,
    generate_code_verifier,
    generate_nonce,
    generate_pkce_pair,
    generate_state,
)
from .server import (
    AuthorizationResponse,
    CallbackServer,
    HttpRequest,
    HttpResponse,
    Middleware,
    RequestHandler,
)
from .tokens import TokenSet

__all__ = [
    # Flows (main entry points)
    "get_token",
    "get_token_implicitly",
    "get_id_token_implicitly",
    "get_token_and_id_token_implicitly",
    "receive_code_via_local_server",
    "receive_token_via_local_server",
    "exchange_code_for_tokens",
    "open_browser",
    "AuthorizationCode",
    # Errors
    "OAuthFlowError",
    "ConfigurationError",
    "StateGenerationError",
    "ListenerError",
    "LocalServerError",
    "AuthorizationError",
    "AuthorizationTimeoutError",
    "NoAuthorizationResponseError",
    "TokenExchangeError",
    # Callback handling
    "CallbackHandler",
    "AuthorizationRequestContext",
    "AuthorizationResponse",
    "build_authorization_url",
    "CODE_RESPONSE_TYPES",
    "DEFAULT_SUCCESS_HTML",
    # Local server
    "CallbackServer",
    "HttpRequest",
    "HttpResponse",
    "Middleware",
    "RequestHandler",
    "LocalhostListener",
    "bind_localhost_listener",
    # Tokens
    "TokenSet",
    # PKCE, state, nonce
    "PKCEPair",
    "compute_s256",
    "generate_pkce_pair",
    "generate_code_verifier",
    "generate_code_challenge",
    "generate_state",
    "generate_nonce",
]
