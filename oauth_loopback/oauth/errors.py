"""Exceptions raised by the local-callback authorization flow."""


class OAuthFlowError(Exception):
    """Error during OAuth flow."""

    pass


class ConfigurationError(OAuthFlowError):
    """Invalid flow configuration (e.g. only one of cert/key supplied)."""

    pass


class StateGenerationError(OAuthFlowError):
    """The entropy source failed while generating state or nonce."""

    pass


class ListenerError(OAuthFlowError):
    """No local listener could be bound."""

    pass


class LocalServerError(OAuthFlowError):
    """The local callback server failed at the transport level."""

    pass


class AuthorizationError(OAuthFlowError):
    """The authorization response was an error or could not be accepted."""

    pass


class AuthorizationTimeoutError(OAuthFlowError):
    """Deadline reached while waiting for the authorization response."""

    pass


class NoAuthorizationResponseError(OAuthFlowError):
    """The local server stopped without recording any response."""

    pass


class TokenExchangeError(OAuthFlowError):
    """Error during token exchange."""

    pass
