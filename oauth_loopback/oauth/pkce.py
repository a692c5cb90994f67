"""Random parameters for the authorization request.

This module generates the anti-forgery ``state`` and OIDC ``nonce`` values,
and PKCE (Proof Key for Code Exchange, RFC 7636) verifier/challenge pairs.
"""

import base64
import hashlib
import secrets
from dataclasses import dataclass

from .errors import StateGenerationError


# PKCE code verifier length constraints per RFC 7636
MIN_VERIFIER_LENGTH = 43
MAX_VERIFIER_LENGTH = 128
DEFAULT_VERIFIER_LENGTH = 64

# Allowed characters for code verifier (unreserved URI characters)
VERIFIER_CHARS = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-._~"

# Bytes of entropy in state and nonce values (rendered as hex)
STATE_BYTES = 16


@dataclass(frozen=True)
class PKCEPair:
    """PKCE code verifier and challenge pair.

    The verifier is a cryptographically random string sent in the token request.
    The challenge is a SHA256 hash of the verifier sent in the authorization request.
    """

    verifier: str
    challenge: str
    method: str = "S256"

    def authorization_params(self) -> dict[str, str]:
        """Extra parameters for the authorization request."""
        return {
            "code_challenge": self.challenge,
            "code_challenge_method": self.method,
        }

    def token_params(self) -> dict[str, str]:
        """Extra parameters for the token request."""
        return {"code_verifier": self.verifier}


def _base64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def generate_code_verifier(length: int = DEFAULT_VERIFIER_LENGTH) -> str:
    """Generate a cryptographically random code verifier.

    Per RFC 7636 Section 4.1, the code verifier must be:
    - Between 43 and 128 characters
    - Use only unreserved URI characters: [A-Z] / [a-z] / [0-9] / "-" / "." / "_" / "~"

    Args:
        length: Length of the verifier (default 64, must be 43-128)

    Returns:
        Cryptographically random code verifier string

    Raises:
        ValueError: If length is outside allowed range
    """
    if length < MIN_VERIFIER_LENGTH or length > MAX_VERIFIER_LENGTH:
        raise ValueError(
            f"Code verifier length must be between {MIN_VERIFIER_LENGTH} "
            f"and {MAX_VERIFIER_LENGTH}, got {length}"
        )

    return "".join(secrets.choice(VERIFIER_CHARS) for _ in range(length))


def generate_code_challenge(verifier: str) -> str:
    """Generate S256 code challenge from verifier.

    Per RFC 7636 Section 4.2:
    code_challenge = BASE64URL(SHA256(code_verifier))
    """
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return _base64url(digest)


def compute_s256(raw: bytes) -> PKCEPair:
    """Build a PKCE pair whose verifier is the base64url encoding of ``raw``.

    With the 32 octets from RFC 7636 Appendix B this yields the verifier
    ``dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk``.
    """
    verifier = _base64url(raw)
    return PKCEPair(verifier=verifier, challenge=generate_code_challenge(verifier))


def generate_pkce_pair(length: int = DEFAULT_VERIFIER_LENGTH) -> PKCEPair:
    """Generate a complete PKCE pair (verifier + challenge).

    Args:
        length: Length of the code verifier (default 64)

    Returns:
        PKCEPair with verifier, challenge, and method (always "S256")
    """
    verifier = generate_code_verifier(length)
    challenge = generate_code_challenge(verifier)

    return PKCEPair(verifier=verifier, challenge=challenge, method="S256")


def _random_hex(purpose: str) -> str:
    try:
        return secrets.token_hex(STATE_BYTES)
    except (OSError, NotImplementedError) as e:
        raise StateGenerationError(f"error while {purpose} parameter generation: {e}") from e


def generate_state() -> str:
    """Generate a cryptographically random state parameter.

    The state parameter protects against CSRF attacks by ensuring
    the authorization response came from a request we initiated.

    Returns:
        32-character random hex string

    Raises:
        StateGenerationError: If the OS entropy source fails
    """
    return _random_hex("state")


def generate_nonce() -> str:
    """Generate a random OIDC nonce, independent of the state."""
    return _random_hex("nonce")
