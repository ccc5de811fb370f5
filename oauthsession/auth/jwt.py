"""ID token helpers.

Unverified claim decoding for tokens already obtained over TLS from the
token endpoint. Signature verification against the provider key set lives
in ``ProviderClient.validate_id_token``.
"""

from __future__ import annotations

import logging
import time

from typing import Any

from authlib.common.encoding import json_loads, to_bytes, urlsafe_b64decode
from authlib.jose import JWTClaims
from authlib.jose.errors import JoseError

from ..exceptions import InvalidTokenError
from ..state.types import UserIdentity


logger = logging.getLogger("oauthsession.auth")


def _decode_segment(segment: str) -> dict[str, Any]:
    data = json_loads(urlsafe_b64decode(to_bytes(segment)).decode("utf-8"))
    if not isinstance(data, dict):
        msg = "JWT segment is not a JSON object"
        raise InvalidTokenError(msg)
    return data


def decode_header(token: str) -> dict[str, Any]:
    """Decode the JOSE header of a compact JWT without verifying it."""
    try:
        return _decode_segment(token.split(".")[0])
    except (ValueError, UnicodeDecodeError) as exc:
        msg = f"Failed to decode token header: {exc}"
        raise InvalidTokenError(msg) from exc


def decode_claims(token: str) -> dict[str, Any]:
    """Decode the payload of a compact JWT without verifying the signature.

    Parameters
    ----------
    token : str
        A ``header.payload.signature`` JWT.

    Returns
    -------
    dict[str, Any]
        The token claims.

    Raises
    ------
    InvalidTokenError
        If the token is not a three-part JWT or its payload is not JSON.
    """
    parts = token.split(".") if token else []
    if len(parts) != 3:
        msg = "Token is not a compact JWT"
        raise InvalidTokenError(msg)
    try:
        return _decode_segment(parts[1])
    except (ValueError, UnicodeDecodeError) as exc:
        msg = f"Failed to decode token payload: {exc}"
        raise InvalidTokenError(msg) from exc


def extract_user_identity(id_token: str) -> UserIdentity:
    """Build a ``UserIdentity`` from the claims of an ID token."""
    return UserIdentity.from_claims(decode_claims(id_token))


def token_expiration(token: str) -> float | None:
    """Return the ``exp`` claim of a token, or None when absent or undecodable."""
    try:
        exp = decode_claims(token).get("exp")
    except InvalidTokenError:
        return None
    if isinstance(exp, (int, float)):
        return float(exp)
    return None


def is_token_expired(token: str, buffer: float = 300.0) -> bool:
    """Return True when the token's ``exp`` falls within ``buffer`` seconds.

    Tokens without a readable ``exp`` are treated as expired.
    """
    exp = token_expiration(token)
    if exp is None:
        return True
    return time.time() >= exp - buffer


def validate_claims(
    token: str,
    issuer: str | None = None,
    audience: str | None = None,
    leeway: int = 0,
) -> dict[str, Any]:
    """Check the registered claims of a token without verifying its signature.

    Parameters
    ----------
    token : str
        The JWT to inspect.
    issuer : str, optional
        Expected ``iss`` value.
    audience : str, optional
        Expected ``aud`` value (the client ID for ID tokens).
    leeway : int
        Clock skew tolerance in seconds.

    Returns
    -------
    dict[str, Any]
        The claims, when ``exp``/``nbf``/``iss``/``aud`` all check out.

    Raises
    ------
    InvalidTokenError
        If the token cannot be decoded or a claim check fails.
    """
    payload = decode_claims(token)
    options: dict[str, Any] = {"exp": {"essential": True}}
    if issuer:
        options["iss"] = {"essential": True, "value": issuer}
    if audience:
        options["aud"] = {"essential": True, "value": audience}
    claims = JWTClaims(payload, decode_header(token), options=options)
    try:
        claims.validate(leeway=leeway)
    except JoseError as exc:
        msg = f"Token claim validation failed: {exc}"
        raise InvalidTokenError(msg) from exc
    return dict(claims)
