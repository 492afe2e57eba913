"""
Signed authentication tokens for the SMART backend-services flow.
"""

import secrets
import time
from typing import Any, Dict, Optional, Union

import jwt

from ..core.exceptions import AuthorizationError
from .utils import parse_duration


def create_auth_token(
    private_key: Optional[Dict[str, Any]],
    client_id: Optional[str],
    token_endpoint: Optional[str],
    algorithm: Optional[str] = None,
    expires_in: Union[int, str] = "5m",
    jwks_url: Optional[str] = None,
    header: Optional[Dict[str, Any]] = None,
    claims: Optional[Dict[str, Any]] = None,
) -> str:
    """
    Create and sign a client assertion.

    This is the low-level builder and everything is customizable, which is
    what conformance tests need to send deliberately broken tokens.

    Args:
        private_key: Private key as a JWK dictionary. Must have a ``kid``.
        client_id: Used as both ``iss`` and ``sub``.
        token_endpoint: Used as ``aud``.
        algorithm: Signing algorithm. Defaults to the JWK ``alg``.
        expires_in: Seconds or a duration string such as ``"5m"``.
        jwks_url: Added as the ``jku`` header when set.
        header: Header entries overriding the defaults.
        claims: Claims overriding the defaults.

    Returns:
        The signed JWT.

    Raises:
        AuthorizationError: If the key is missing, has no ``kid`` or no
            algorithm can be determined.
    """
    if not private_key:
        raise AuthorizationError(
            "Unable to create an authentication token without a private key",
            auth_type="backend-services",
            token_endpoint=token_endpoint,
        )

    algorithm = algorithm or private_key.get("alg")
    if not algorithm:
        raise AuthorizationError(
            "Unable to determine the token sign algorithm. Please provide it as an option",
            auth_type="backend-services",
            token_endpoint=token_endpoint,
        )

    kid = private_key.get("kid")
    if not kid:
        raise AuthorizationError(
            'The private key has no "kid" property',
            auth_type="backend-services",
            token_endpoint=token_endpoint,
        )

    payload: Dict[str, Any] = {
        "iss": client_id,
        "sub": client_id,
        "aud": token_endpoint,
        "exp": int(time.time()) + parse_duration(expires_in),
        "jti": secrets.token_hex(32),
    }
    payload.update(claims or {})

    headers: Dict[str, Any] = {
        "typ": "JWT",
        "alg": algorithm,
        "kty": private_key.get("kty"),
        "kid": kid,
    }
    if jwks_url:
        headers["jku"] = jwks_url
    headers.update(header or {})

    try:
        key = jwt.PyJWK(private_key, algorithm=algorithm).key
    except (jwt.PyJWKError, jwt.InvalidKeyError) as e:
        raise AuthorizationError(
            f"Invalid private key: {e}",
            auth_type="backend-services",
            token_endpoint=token_endpoint,
        )

    return jwt.encode(payload, key, algorithm=algorithm, headers=headers)
