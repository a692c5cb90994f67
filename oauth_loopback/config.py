"""Flow configuration for oauth-loopback.

Configuration is plain dataclasses, immutable once built. It can be
constructed in code or loaded from a JSON file whose string values may
reference environment variables as ``${VAR}`` (a ``.env`` file is loaded
first when given).

Example flow.json:

    {
      "client_id": "my-client",
      "client_secret": "${MY_CLIENT_SECRET}",
      "authorization_endpoint": "https://accounts.example.com/o/oauth2/auth",
      "token_endpoint": "https://accounts.example.com/o/oauth2/token",
      "scopes": ["email", "profile"],
      "ports": [8000, 18000]
    }
"""

import json
import os
import re
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Callable

from dotenv import load_dotenv

from .oauth.errors import ConfigurationError
from .oauth.listener import DEFAULT_BIND_ADDRESS
from .oauth.server import Middleware

# Default time to wait for the browser to come back, in seconds
DEFAULT_TIMEOUT = 120.0

# Hostname used in the redirect URI when none is configured
DEFAULT_REDIRECT_HOSTNAME = "localhost"


def _resolve_env_vars(value: str) -> str:
    """Resolve ${VAR} patterns in a string from environment variables.

    Handles:
    - Full replacement: "${VAR}" -> "value"
    - Partial replacement: "prefix_${VAR}_suffix" -> "prefix_value_suffix"
    - Missing vars resolve to empty string
    """
    if "${" not in value:
        return value

    result = value
    for match in re.finditer(r'\$\{([^}]+)\}', value):
        env_value = os.environ.get(match.group(1), "")
        result = result.replace(match.group(0), env_value)
    return result


def _resolve_tree(value: Any) -> Any:
    """Apply _resolve_env_vars to every string in a JSON value."""
    if isinstance(value, str):
        return _resolve_env_vars(value)
    if isinstance(value, list):
        return [_resolve_tree(v) for v in value]
    if isinstance(value, dict):
        return {k: _resolve_tree(v) for k, v in value.items()}
    return value


@dataclass(frozen=True)
class OAuth2Config:
    """OAuth 2.0 client and provider settings.

    Attributes:
        client_id: The application's client ID
        client_secret: Client secret, None for public clients
        authorization_endpoint: Provider's authorization endpoint URL
        token_endpoint: Provider's token endpoint URL (unused by the implicit grant)
        scopes: Scopes to request
        redirect_url: Explicit redirect URL. When None the local server's URL is used.
    """

    client_id: str
    client_secret: str | None = None
    authorization_endpoint: str = ""
    token_endpoint: str = ""
    scopes: list[str] = field(default_factory=list)
    redirect_url: str | None = None

    def is_confidential(self) -> bool:
        """Check if this is a confidential client (has a secret)."""
        return bool(self.client_secret)


@dataclass(frozen=True)
class FlowConfig:
    """Settings for one run of the local-callback authorization flow.

    Attributes:
        oauth2: Client and provider settings
        authorization_params: Extra authorization request parameters (e.g. PKCE challenge)
        token_params: Extra token request parameters (e.g. PKCE verifier)
        bind_address: Address the local server binds, "0.0.0.0" for all interfaces
        ports: Candidate ports tried in order; empty lets the OS pick one
        cert_file: PEM certificate for serving TLS (requires key_file)
        key_file: PEM private key for cert_file
        success_html: Page shown in the browser on success
        middleware: Wraps the local server's request handler
        on_ready: Called with the local server URL once it is listening. May be
            a coroutine function; the flow awaits it while the server runs.
        redirect_url_hostname: Hostname used in the generated redirect URI
        callback_path: Path receiving the redirect. Defaults to "/" for the
            code grant and "/implicit" for the implicit grant.
        timeout: Seconds to wait for the authorization response, None to wait forever
    """

    oauth2: OAuth2Config
    authorization_params: dict[str, str] = field(default_factory=dict)
    token_params: dict[str, str] = field(default_factory=dict)
    bind_address: str = DEFAULT_BIND_ADDRESS
    ports: list[int] = field(default_factory=list)
    cert_file: str | None = None
    key_file: str | None = None
    success_html: str | None = None
    middleware: Middleware | None = None
    on_ready: Callable[[str], Any] | None = None
    redirect_url_hostname: str = DEFAULT_REDIRECT_HOSTNAME
    callback_path: str | None = None
    timeout: float | None = DEFAULT_TIMEOUT

    @property
    def use_tls(self) -> bool:
        return bool(self.cert_file and self.key_file)

    def validate(self) -> None:
        """Check the configuration before any socket is opened.

        Raises:
            ConfigurationError: If the configuration is inconsistent
        """
        if not self.oauth2.client_id:
            raise ConfigurationError("client_id is required")

        if bool(self.cert_file) != bool(self.key_file):
            raise ConfigurationError("cert_file and key_file must be set together")

        for port in self.ports:
            if isinstance(port, bool) or not isinstance(port, int) or not 0 <= port <= 65535:
                raise ConfigurationError(f"invalid port: {port!r}")

        if self.callback_path is not None and not self.callback_path.startswith("/"):
            raise ConfigurationError(
                f"callback_path must start with '/', got {self.callback_path!r}"
            )

        if self.timeout is not None and self.timeout <= 0:
            raise ConfigurationError(f"timeout must be positive, got {self.timeout}")


_OAUTH2_KEYS = {f.name for f in fields(OAuth2Config)}
# Keys that only make sense in code, never in a JSON file
_CODE_ONLY_KEYS = {"oauth2", "middleware", "on_ready"}
_FLOW_KEYS = {f.name for f in fields(FlowConfig)} - _CODE_ONLY_KEYS


def _parse_ports(values: Any) -> list[int]:
    """Coerce ports from JSON, where ${VAR} expansion leaves numeric strings."""
    if not isinstance(values, list):
        raise ConfigurationError(f"ports must be a list, got {values!r}")

    ports: list[int] = []
    for value in values:
        if isinstance(value, str) and value.strip().isdigit():
            value = int(value)
        if isinstance(value, bool) or not isinstance(value, int):
            raise ConfigurationError(f"invalid port: {value!r}")
        ports.append(value)
    return ports


def parse_flow_config(data: dict[str, Any]) -> FlowConfig:
    """Build a FlowConfig from a JSON object.

    OAuth2Config keys and FlowConfig keys live side by side at the top level.

    Raises:
        ConfigurationError: If client_id is missing or keys are unknown
    """
    if not isinstance(data, dict):
        raise ConfigurationError("flow config must be a JSON object")

    unknown = set(data) - _OAUTH2_KEYS - _FLOW_KEYS
    if unknown:
        raise ConfigurationError(f"unknown config keys: {', '.join(sorted(unknown))}")

    if not data.get("client_id"):
        raise ConfigurationError("client_id is required")

    if "ports" in data:
        data = {**data, "ports": _parse_ports(data["ports"])}

    oauth2 = OAuth2Config(**{k: v for k, v in data.items() if k in _OAUTH2_KEYS})
    config = FlowConfig(oauth2=oauth2, **{k: v for k, v in data.items() if k in _FLOW_KEYS})
    config.validate()
    return config


def load_flow_config(config_path: Path, env_path: Path | None = None) -> FlowConfig:
    """Load a flow configuration from a JSON file.

    Args:
        config_path: Path to the JSON config file
        env_path: Optional .env file loaded before ${VAR} expansion

    Returns:
        Validated FlowConfig

    Raises:
        FileNotFoundError: If the config file does not exist
        json.JSONDecodeError: If the config file is invalid JSON
        ConfigurationError: If the configuration is invalid
    """
    if env_path and env_path.exists():
        load_dotenv(env_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Flow config file not found: {config_path}")

    with open(config_path) as f:
        data = json.load(f)

    return parse_flow_config(_resolve_tree(data))
