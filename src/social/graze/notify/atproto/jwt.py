"""
DPoP proof construction.

Access and refresh tokens issued to this client are bound to a per-account ECDSA P-256
key. Every request to the token endpoint or to a resource server carries a fresh proof
JWT signed with that key, bound to the request method and URL, to the server-issued
nonce when one is known, and (for resource requests) to the access token via `ath`.
"""

import base64
import hashlib
import secrets
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlparse, urlunparse

from jwcrypto import jwk, jwt
from ulid import ULID


def generate_dpop_key() -> Tuple[jwk.JWK, Dict[str, Any]]:
    """Generate a new DPoP key pair for token binding.

    Returns the private JWK (kept with the account) and its public half as a dict for
    proof headers.
    """
    dpop_key = jwk.JWK.generate(kty="EC", crv="P-256", kid=str(ULID()), alg="ES256")
    public_key_dict = dpop_key.export_public(as_dict=True)
    return dpop_key, public_key_dict


def access_token_hash(access_token: str) -> str:
    digest = hashlib.sha256(access_token.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def normalize_htu(http_uri: str) -> str:
    """The `htu` claim is the request URL without query and fragment."""
    parsed = urlparse(http_uri)
    return urlunparse((parsed.scheme, parsed.netloc, parsed.path, "", "", ""))


def create_dpop_claims(
    http_method: str,
    http_uri: str,
    issued_at: Optional[datetime] = None,
    expires_in_seconds: int = 30,
    nonce: Optional[str] = None,
    access_token: Optional[str] = None,
) -> Dict[str, Any]:
    if issued_at is None:
        issued_at = datetime.now(timezone.utc)

    claims: Dict[str, Any] = {
        "jti": secrets.token_urlsafe(32),
        "htm": http_method.upper(),
        "htu": normalize_htu(http_uri),
        "iat": int(issued_at.timestamp()),
        "exp": int(issued_at.timestamp()) + expires_in_seconds,
    }

    if nonce:
        claims["nonce"] = nonce

    if access_token:
        claims["ath"] = access_token_hash(access_token)

    return claims


def create_dpop_jwt(
    dpop_key: jwk.JWK,
    http_method: str,
    http_uri: str,
    nonce: Optional[str] = None,
    access_token: Optional[str] = None,
    issued_at: Optional[datetime] = None,
) -> str:
    """Create a signed DPoP proof for one request.

    Usage:
        ```python
        dpop_key, _ = generate_dpop_key()
        headers["DPoP"] = create_dpop_jwt(
            dpop_key, "POST", "https://bsky.social/oauth/token", nonce=nonce
        )
        ```
    """
    header = {
        "alg": "ES256",
        "jwk": dpop_key.export_public(as_dict=True),
        "typ": "dpop+jwt",
    }
    claims = create_dpop_claims(
        http_method,
        http_uri,
        issued_at=issued_at,
        nonce=nonce,
        access_token=access_token,
    )

    dpop_jwt = jwt.JWT(header=header, claims=claims)
    dpop_jwt.make_signed_token(dpop_key)
    return dpop_jwt.serialize()
