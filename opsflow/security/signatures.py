"""Webhook signature computation and verification."""

from __future__ import annotations

import hashlib
import hmac
import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, Mapping, Optional, Tuple

import jwt

logger = logging.getLogger(__name__)

# header names consulted per scheme, in order
SIGNATURE_HEADERS: Dict[str, Tuple[str, ...]] = {
    "hmac-sha256": ("X-Signature", "X-Hub-Signature-256"),
    "hmac-sha1": ("X-Splynx-Signature", "X-Hub-Signature", "X-Signature"),
}
JWT_LIFETIME_SECONDS = 300
_PREFIXES = ("sha256=", "sha1=")
_DIGESTS = {"hmac-sha256": hashlib.sha256, "hmac-sha1": hashlib.sha1}


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    lowered = name.lower()
    for key, value in headers.items():
        if key.lower() == lowered:
            return value
    return None


def compute_signature(secret: str, body: bytes, scheme: str = "hmac-sha256") -> str:
    """Hex HMAC digest of ``body`` keyed with ``secret``."""
    try:
        digest = _DIGESTS[scheme]
    except KeyError:
        raise ValueError(f"Unsupported signature scheme: {scheme}") from None
    return hmac.new(secret.encode(), body, digest).hexdigest()


def sign_headers(secret: str, body: bytes, scheme: str = "hmac-sha256") -> Dict[str, str]:
    """Headers a sender would attach to ``body``; used by tooling and tests."""
    if scheme == "jwt":
        claims = {
            "body_sha256": hashlib.sha256(body).hexdigest(),
            "exp": datetime.now(timezone.utc) + timedelta(seconds=JWT_LIFETIME_SECONDS),
        }
        return {"Authorization": f"Bearer {jwt.encode(claims, secret, algorithm='HS256')}"}
    signature = compute_signature(secret, body, scheme)
    prefix = "sha1=" if scheme == "hmac-sha1" else "sha256="
    return {SIGNATURE_HEADERS[scheme][0]: f"{prefix}{signature}"}


def _same(expected: str, received: str) -> bool:
    # bytes: compare_digest rejects str operands with non-ASCII characters
    return hmac.compare_digest(expected.encode(), received.encode("utf-8", "replace"))


def _verify_hmac(secret: str, body: bytes, headers: Mapping[str, str], scheme: str) -> bool:
    received = None
    for name in SIGNATURE_HEADERS[scheme]:
        received = _header(headers, name)
        if received:
            break
    if not received:
        logger.debug("No signature header found")
        return False
    for prefix in _PREFIXES:
        if received.startswith(prefix):
            received = received[len(prefix):]
            break
    expected = compute_signature(secret, body, scheme)
    return _same(expected, received.strip().lower())


def _verify_jwt(secret: str, body: bytes, headers: Mapping[str, str]) -> bool:
    authorization = _header(headers, "Authorization") or ""
    if not authorization.startswith("Bearer "):
        return False
    token = authorization[len("Bearer "):].strip()
    try:
        claims = jwt.decode(
            token,
            secret,
            algorithms=["HS256"],
            options={"verify_aud": False, "require": ["exp"]},
        )
    except jwt.PyJWTError as exc:
        logger.debug(f"JWT verification failed: {exc}")
        return False
    body_hash = claims.get("body_sha256")
    if body_hash is None:
        logger.debug("JWT carries no body_sha256 claim")
        return False
    return _same(hashlib.sha256(body).hexdigest(), str(body_hash))


def verify_signature(
    secret: str, body: bytes, headers: Mapping[str, str], scheme: str = "hmac-sha256"
) -> bool:
    """Return whether ``headers`` carry a valid signature of ``body``.

    HMAC schemes accept an optional ``sha256=``/``sha1=`` prefix. The JWT
    scheme expects ``Authorization: Bearer <token>`` signed HS256 with the
    secret; it must carry ``exp`` and a ``body_sha256`` claim matching the body.
    """
    if scheme == "jwt":
        return _verify_jwt(secret, body, headers)
    if scheme not in _DIGESTS:
        raise ValueError(f"Unsupported signature scheme: {scheme}")
    return _verify_hmac(secret, body, headers, scheme)
