"""oauth-loopback - OAuth 2.0 / OpenID Connect authorization through a local callback server."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("oauth-loopback")
except PackageNotFoundError:
    __version__ = "0.1.0"  # Fallback for development

__all__ = [
    "__version__",
    # Configuration
    "FlowConfig",
    "OAuth2Config",
    "load_flow_config",
    # Flows
    "get_token",
    "get_token_implicitly",
    "get_id_token_implicitly",
    "get_token_and_id_token_implicitly",
    "open_browser",
]

# Lazy imports to avoid circular dependencies
def __getattr__(name: str) -> object:
    """Lazy import module components."""
    if name in ("FlowConfig", "OAuth2Config", "load_flow_config"):
        from .config import FlowConfig, OAuth2Config, load_flow_config
        return {"FlowConfig": FlowConfig, "OAuth2Config": OAuth2Config, "load_flow_config": load_flow_config}[name]
    elif name in (
        "get_token",
        "get_token_implicitly",
        "get_id_token_implicitly",
        "get_token_and_id_token_implicitly",
        "open_browser",
    ):
        from .oauth import flow
        return getattr(flow, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
