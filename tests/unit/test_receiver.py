"""Tests for request signature verification."""

import time

import jwt
import pytest

from serveflow.core.exceptions import SignatureError
from serveflow.security.receiver import Receiver, body_hash, sign

CURRENT_KEY = "sig_current_0123456789abcdefghijklmnop"
NEXT_KEY = "sig_next_0123456789abcdefghijklmnopqrst"
URL = "https://example.com/api/workflow"
BODY = '{"hello": "world"}'


@pytest.fixture
def receiver():
    return Receiver(current_signing_key=CURRENT_KEY, next_signing_key=NEXT_KEY)


class TestSign:
    def test_claims(self):
        token = sign(BODY, URL, CURRENT_KEY, issued_at=1700000000, expires_in=60)
        claims = jwt.decode(token, CURRENT_KEY, algorithms=["HS256"], options={"verify_exp": False})

        assert claims["iss"] == "Upstash"
        assert claims["sub"] == URL
        assert claims["iat"] == 1700000000
        assert claims["nbf"] == 1700000000
        assert claims["exp"] == 1700000060
        assert claims["jti"].startswith("jwt_")
        assert claims["body"] == body_hash(BODY)

    def test_body_hash_is_base64url(self):
        digest = body_hash(b"\xff" * 64)
        assert "+" not in digest and "/" not in digest


class TestVerify:
    """Round trips between sign and Receiver.verify."""

    def test_current_key(self, receiver):
        token = sign(BODY, URL, CURRENT_KEY)
        assert receiver.verify(signature=token, body=BODY, url=URL) is True

    def test_next_key_after_rotation(self, receiver):
        token = sign(BODY, URL, NEXT_KEY)
        assert receiver.verify(signature=token, body=BODY, url=URL) is True

    def test_unknown_key(self, receiver):
        token = sign(BODY, URL, "sig_other_0123456789abcdefghijklmnopqr")
        with pytest.raises(SignatureError):
            receiver.verify(signature=token, body=BODY, url=URL)

    def test_other_url(self, receiver):
        token = sign(BODY, URL, CURRENT_KEY)
        with pytest.raises(SignatureError) as exc_info:
            receiver.verify(signature=token, body=BODY, url="https://example.com/other")
        assert str(exc_info.value) == (
            f"invalid subject: {URL}, want: https://example.com/other"
        )

    def test_url_is_optional(self, receiver):
        token = sign(BODY, URL, CURRENT_KEY)
        assert receiver.verify(signature=token, body=BODY) is True

    def test_tampered_body(self, receiver):
        token = sign(BODY, URL, CURRENT_KEY)
        with pytest.raises(SignatureError, match="body hash does not match"):
            receiver.verify(signature=token, body='{"hello": "mallory"}', url=URL)

    def test_bytes_body(self, receiver):
        token = sign(BODY, URL, CURRENT_KEY)
        assert receiver.verify(signature=token, body=BODY.encode("utf-8"), url=URL) is True

    def test_padding_insensitive_body_hash(self, receiver):
        claims = {
            "iss": "Upstash",
            "sub": URL,
            "exp": int(time.time()) + 60,
            "body": body_hash(BODY).rstrip("="),
        }
        token = jwt.encode(claims, CURRENT_KEY, algorithm="HS256")
        assert receiver.verify(signature=token, body=BODY, url=URL) is True

    def test_wrong_issuer(self, receiver):
        claims = {"iss": "someone-else", "sub": URL, "body": body_hash(BODY)}
        token = jwt.encode(claims, CURRENT_KEY, algorithm="HS256")
        with pytest.raises(SignatureError):
            receiver.verify(signature=token, body=BODY, url=URL)

    def test_expired(self, receiver):
        token = sign(BODY, URL, CURRENT_KEY, issued_at=int(time.time()) - 400, expires_in=300)
        with pytest.raises(SignatureError):
            receiver.verify(signature=token, body=BODY, url=URL)

    def test_clock_tolerance(self, receiver):
        token = sign(BODY, URL, CURRENT_KEY, issued_at=int(time.time()) - 400, expires_in=300)
        assert receiver.verify(signature=token, body=BODY, url=URL, clock_tolerance=200) is True

    def test_not_a_token(self, receiver):
        with pytest.raises(SignatureError):
            receiver.verify(signature="not-a-token", body=BODY)


class TestKeyResolution:
    def test_keys_from_environment(self):
        environment = {
            "QSTASH_CURRENT_SIGNING_KEY": CURRENT_KEY,
            "QSTASH_NEXT_SIGNING_KEY": NEXT_KEY,
        }
        token = sign(BODY, URL, CURRENT_KEY)
        assert Receiver(environment=environment).verify(signature=token, body=BODY) is True

    def test_region_keys(self):
        region_key = "sig_eu_0123456789abcdefghijklmnopqrstu"
        environment = {
            "QSTASH_REGION": "EU_CENTRAL_1",
            "EU_CENTRAL_1_QSTASH_CURRENT_SIGNING_KEY": region_key,
            "EU_CENTRAL_1_QSTASH_NEXT_SIGNING_KEY": NEXT_KEY,
            "QSTASH_CURRENT_SIGNING_KEY": CURRENT_KEY,
            "QSTASH_NEXT_SIGNING_KEY": NEXT_KEY,
        }
        token = sign(BODY, URL, region_key)
        receiver = Receiver(environment=environment)

        assert receiver.verify(signature=token, body=BODY, region="eu-central-1") is True
        with pytest.raises(SignatureError):
            receiver.verify(signature=token, body=BODY, region="us-east-1")

    def test_no_keys(self):
        token = sign(BODY, URL, CURRENT_KEY)
        with pytest.raises(SignatureError, match="Signing keys are not set"):
            Receiver(environment={}).verify(signature=token, body=BODY)
