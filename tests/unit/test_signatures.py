"""Tests for webhook signature verification."""

import hashlib
import hmac
from datetime import datetime, timedelta, timezone

import jwt
import pytest

from opsflow.security import compute_signature, sign_headers, verify_signature

BODY = b'{"id": "evt-1", "customerId": 42}'
SECRET = "s3cret"


def test_hmac_sha256_with_prefix():
    digest = hmac.new(SECRET.encode(), BODY, hashlib.sha256).hexdigest()
    assert compute_signature(SECRET, BODY) == digest
    assert verify_signature(SECRET, BODY, {"X-Hub-Signature-256": f"sha256={digest}"})
    assert verify_signature(SECRET, BODY, {"x-signature": digest.upper()})


def test_hmac_sha1_headers():
    headers = sign_headers(SECRET, BODY, "hmac-sha1")
    assert "X-Splynx-Signature" in headers
    assert verify_signature(SECRET, BODY, headers, "hmac-sha1")


@pytest.mark.parametrize(
    "headers",
    [
        {},
        {"X-Signature": "sha256=deadbeef"},
        sign_headers("other-secret", BODY),
    ],
)
def test_hmac_rejections(headers):
    assert not verify_signature(SECRET, BODY, headers)


def test_tampered_body_is_rejected():
    headers = sign_headers(SECRET, BODY)
    assert not verify_signature(SECRET, BODY + b" ", headers)


def test_jwt_scheme():
    headers = sign_headers(SECRET, BODY, "jwt")
    assert verify_signature(SECRET, BODY, headers, "jwt")
    assert not verify_signature(SECRET, b"{}", headers, "jwt")
    assert not verify_signature("wrong", BODY, headers, "jwt")


def test_jwt_requires_body_claim_and_expiry():
    later = datetime.now(timezone.utc) + timedelta(minutes=5)
    body_hash = hashlib.sha256(BODY).hexdigest()

    no_body = jwt.encode({"sub": "sender", "exp": later}, SECRET, algorithm="HS256")
    no_expiry = jwt.encode({"body_sha256": body_hash}, SECRET, algorithm="HS256")
    expired = jwt.encode(
        {"body_sha256": body_hash, "exp": later - timedelta(hours=1)}, SECRET, algorithm="HS256"
    )
    for token in (no_body, no_expiry, expired):
        assert not verify_signature(SECRET, BODY, {"Authorization": f"Bearer {token}"}, "jwt")

    valid = jwt.encode({"body_sha256": body_hash, "exp": later}, SECRET, algorithm="HS256")
    assert verify_signature(SECRET, BODY, {"Authorization": f"Bearer {valid}"}, "jwt")
    assert not verify_signature(SECRET, BODY, {"Authorization": valid}, "jwt")


def test_non_ascii_signatures_are_rejected():
    assert not verify_signature(SECRET, BODY, {"X-Signature": "sha256=\u00e9\u00e9"})
    token = jwt.encode(
        {"body_sha256": "\u00e9" * 64, "exp": datetime.now(timezone.utc) + timedelta(minutes=5)},
        SECRET,
        algorithm="HS256",
    )
    assert not verify_signature(SECRET, BODY, {"Authorization": f"Bearer {token}"}, "jwt")


def test_unknown_scheme():
    with pytest.raises(ValueError):
        verify_signature(SECRET, BODY, {}, "md5")
