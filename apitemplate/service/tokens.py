"""Signed claim tokens used for access and refresh credentials.

Tokens are compact HS256 JWTs. The claim set always carries ``user_id`` and
``exp`` (epoch seconds); ``iat``, ``jti`` and ``typ`` are added so two tokens
issued within the same second are still distinct and an access token can never
be replayed as a refresh token even if the secrets were misconfigured.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import time
import uuid
from typing import Any, Optional

from apitemplate.logging import get_logger

logger = get_logger(__name__)

ALGORITHM = "HS256"
ACCESS = "access"
REFRESH = "refresh"


class TokenError(Exception):
    """Base class for token validation failures."""


class MalformedToken(TokenError):
    pass


class InvalidSignature(TokenError):
    pass


class TokenExpired(TokenError):
    pass


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _sign(secret: str, signing_input: str) -> str:
    return _encode_segment(
        hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
    )


def issue_token(
    user_id: int,
    secret: str,
    ttl_seconds: int,
    *,
    token_type: Optional[str] = None,
    now: Optional[float] = None,
) -> str:
    """Sign ``{user_id, exp}`` with ``secret`` for ``ttl_seconds``."""
    if not secret:
        raise ValueError("signing secret must not be empty")
    issued_at = int(now if now is not None else time.time())
    payload: dict[str, Any] = {
        "user_id": user_id,
        "exp": issued_at + int(ttl_seconds),
        "iat": issued_at,
        "jti": uuid.uuid4().hex,
    }
    if token_type:
        payload["typ"] = token_type
    header = {"alg": ALGORITHM, "typ": "JWT"}
    header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
    payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
    signing_input = f"{header_enc}.{payload_enc}"
    return f"{signing_input}.{_sign(secret, signing_input)}"


def validate_token(
    token: str,
    secret: str,
    *,
    token_type: Optional[str] = None,
    now: Optional[float] = None,
    leeway: int = 0,
) -> dict[str, Any]:
    """Verify ``token`` against ``secret`` and return its claims.

    Raises MalformedToken, InvalidSignature or TokenExpired.
    """
    if not isinstance(token, str) or not token.isascii():
        raise MalformedToken("token must be an ASCII string")
    if token.count(".") != 2:
        raise MalformedToken("token must have three segments")
    header_b64, payload_b64, sig_b64 = token.split(".")

    try:
        header = json.loads(_decode_segment(header_b64))
    except (binascii.Error, ValueError) as exc:
        raise MalformedToken("token header is not valid JSON") from exc
    # Only HS256 is accepted; "none" and asymmetric algs are rejected before any MAC work.
    alg = header.get("alg") if isinstance(header, dict) else None
    if alg != ALGORITHM:
        logger.warning("jwt_invalid_algorithm", alg=alg)
        raise MalformedToken("unsupported token algorithm")

    expected_sig = _sign(secret, f"{header_b64}.{payload_b64}")
    if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
        raise InvalidSignature("token signature mismatch")

    try:
        payload = json.loads(_decode_segment(payload_b64))
    except (binascii.Error, ValueError) as exc:
        raise MalformedToken("token payload is not valid JSON") from exc
    if not isinstance(payload, dict):
        raise MalformedToken("token payload must be an object")

    exp = payload.get("exp")
    if isinstance(exp, bool) or not isinstance(exp, (int, float)):
        raise MalformedToken("token has no usable exp claim")
    current = now if now is not None else time.time()
    if current > float(exp) + leeway:
        raise TokenExpired("token has expired")

    if token_type and payload.get("typ") not in (None, token_type):
        raise MalformedToken("token type mismatch")
    return payload


def user_id_from_claims(claims: dict[str, Any]) -> int:
    """Extract an integer user id; JSON numbers may arrive as floats."""
    raw = claims.get("user_id")
    if isinstance(raw, bool):
        raise MalformedToken("user_id claim has the wrong type")
    if isinstance(raw, float):
        if not raw.is_integer():
            raise MalformedToken("user_id claim has the wrong type")
        raw = int(raw)
    if not isinstance(raw, int) or raw <= 0:
        raise MalformedToken("user_id claim missing or invalid")
    return raw
