"""Request handler for the local OAuth callback server.

One handler serves both grants. Which one is selected by the set of
requested response types:

- ``{"code"}``: authorization code grant. The provider redirects the browser
  to the callback path with ``code`` and ``state`` in the query.
- any of ``{"token"}``, ``{"id_token"}``, ``{"token", "id_token"}``: implicit
  grant. The token arrives in the URL fragment, which browsers never send to
  a server, so the callback path first serves a small page that re-posts the
  fragment as the query string of a POST to the same path. Only that POST is
  terminal.

Every terminal request yields exactly one AuthorizationResponse, attached to
the HTTP response so the server publishes it after the body is written.
"""

import hmac
import json
import logging
from dataclasses import dataclass
from http import HTTPStatus
from typing import Iterable, Mapping
from urllib.parse import urlencode

from .errors import AuthorizationError
from .server import (
    AuthorizationResponse,
    HttpRequest,
    HttpResponse,
    error_response,
    not_found,
    redirect,
)
from .tokens import TokenSet

logger = logging.getLogger(__name__)

# Path the browser is sent to first; it redirects to the provider
INDEX_PATH = "/"

CODE_RESPONSE_TYPES = frozenset({"code"})
IMPLICIT_RESPONSE_TYPES = frozenset({"token", "id_token"})

DEFAULT_SUCCESS_HTML = "<html><body>OK<script>window.close()</script></body></html>"

# Relays the URL fragment of the implicit redirect to the local server
FRAGMENT_RELAY_HTML = """<html><head><meta http-equiv="content-type" content="text/html; charset=utf-8"/></head><body><script>
const fragment = window.location.hash.replace(/^#/, "");
fetch({path} + "?" + fragment, {{method: "POST"}})
  .then(resp => resp.text())
  .then(body => {{ document.open(); document.write(body); document.close(); }})
  .catch(err => document.body.append(String(err)));
</script></body></html>"""


@dataclass(frozen=True)
class AuthorizationRequestContext:
    """Per-flow values shared read-only with the handler.

    Attributes:
        state: Anti-CSRF value the callback must echo back
        authorization_url: Provider URL the index page redirects to
        redirect_uri: The redirect_uri sent to the provider
        nonce: OIDC nonce (implicit grant only)
    """

    state: str
    authorization_url: str
    redirect_uri: str
    nonce: str | None = None


def build_authorization_url(
    authorization_endpoint: str,
    client_id: str,
    redirect_uri: str,
    state: str,
    scopes: Iterable[str] = (),
    response_types: Iterable[str] = CODE_RESPONSE_TYPES,
    nonce: str | None = None,
    extra_params: Mapping[str, str] | None = None,
) -> str:
    """Build the authorization URL for browser redirect.

    Args:
        authorization_endpoint: Provider's authorization endpoint
        client_id: The client ID
        redirect_uri: The callback URI
        state: State parameter for CSRF protection
        scopes: Scopes to request (space-joined in the URL)
        response_types: Requested response types (space-joined)
        nonce: Optional OIDC nonce
        extra_params: Additional parameters, e.g. PKCE code_challenge

    Returns:
        Complete authorization URL
    """
    params: dict[str, str] = {
        "response_type": " ".join(sorted(response_types)),
        "client_id": client_id,
    }
    if redirect_uri:
        params["redirect_uri"] = redirect_uri

    scope = " ".join(scopes)
    if scope:
        params["scope"] = scope

    params["state"] = state
    if nonce:
        params["nonce"] = nonce
    if extra_params:
        params.update(extra_params)

    separator = "&" if "?" in authorization_endpoint else "?"
    return f"{authorization_endpoint}{separator}{urlencode(params)}"


def _state_matches(received: str, expected: str) -> bool:
    # Constant-time comparison; encode first since compare_digest rejects non-ASCII str
    return hmac.compare_digest(received.encode("utf-8"), expected.encode("utf-8"))


class CallbackHandler:
    """Routes requests to the local server into redirects and terminal responses.

    Routing, in order:
        GET/POST <callback>?error=...   -> 500, terminal error
        GET <callback>?code=...         -> 200 success page, terminal code (code grant)
        POST <callback>?<fragment>      -> 200 success page, terminal token (implicit)
        GET <callback>                  -> fragment relay page (implicit)
        GET /                           -> 302 to the provider
        anything else                   -> 404
    """

    def __init__(
        self,
        context: AuthorizationRequestContext,
        callback_path: str = INDEX_PATH,
        response_types: Iterable[str] = CODE_RESPONSE_TYPES,
        success_html: str = DEFAULT_SUCCESS_HTML,
    ):
        self.context = context
        self.callback_path = callback_path
        self.response_types = frozenset(response_types)
        self.success_html = success_html

        if not self.response_types:
            raise ValueError("at least one response type is required")
        if self.response_types != CODE_RESPONSE_TYPES and not self.response_types <= IMPLICIT_RESPONSE_TYPES:
            raise ValueError(f"unsupported response types: {sorted(self.response_types)}")

    @property
    def is_implicit(self) -> bool:
        return self.response_types != CODE_RESPONSE_TYPES

    async def __call__(self, request: HttpRequest) -> HttpResponse:
        on_callback = request.path == self.callback_path

        if on_callback and request.method in ("GET", "POST") and request.param("error"):
            return self._handle_error_response(request)

        if self.is_implicit:
            if on_callback and request.method == "POST":
                return self._handle_token_response(request)
            if on_callback and request.method == "GET":
                return self._handle_fragment_relay()
        elif on_callback and request.method == "GET" and request.param("code"):
            return self._handle_code_response(request)

        if request.method == "GET" and request.path == INDEX_PATH:
            return redirect(self.context.authorization_url)

        return not_found()

    def _success(self, authorization: AuthorizationResponse) -> HttpResponse:
        return HttpResponse(
            status=HTTPStatus.OK,
            body=self.success_html,
            content_type="text/html",
            authorization=authorization,
        )

    def _reject(self, message: str) -> HttpResponse:
        logger.warning(f"Rejected authorization response: {message}")
        return error_response(
            "authorization error",
            authorization=AuthorizationResponse(error=AuthorizationError(message)),
        )

    def _handle_error_response(self, request: HttpRequest) -> HttpResponse:
        error, description = request.param("error"), request.param("error_description")
        return error_response(
            "authorization error",
            authorization=AuthorizationResponse(
                error=AuthorizationError(f"authorization error from server: {error} {description}")
            ),
        )

    def _handle_code_response(self, request: HttpRequest) -> HttpResponse:
        if not _state_matches(request.param("state"), self.context.state):
            return self._reject("state does not match")

        return self._success(AuthorizationResponse(code=request.param("code")))

    def _handle_token_response(self, request: HttpRequest) -> HttpResponse:
        params = request.params()

        if not _state_matches(params.get("state", ""), self.context.state):
            return self._reject("state does not match")

        if "token" in self.response_types:
            for required in ("access_token", "token_type"):
                if not params.get(required):
                    return self._reject(
                        f"{required} missing in authorization response when requesting token"
                    )

        if "id_token" in self.response_types and not params.get("id_token"):
            return self._reject(
                "id_token missing in authorization response when requesting id_token"
            )

        params.pop("state", None)
        token = TokenSet.from_fragment(params)
        return self._success(AuthorizationResponse(token=token, nonce=self.context.nonce))

    def _handle_fragment_relay(self) -> HttpResponse:
        return HttpResponse(
            status=HTTPStatus.OK,
            body=FRAGMENT_RELAY_HTML.format(path=json.dumps(self.callback_path)),
            content_type="text/html; charset=utf-8",
        )
