"""
Signature verification of requests delivered by the queue service.

Every delivery carries an ``Upstash-Signature`` header: an HS256 JWT issued
by "Upstash" whose ``sub`` claim is the destination url and whose ``body``
claim is the base64url SHA-256 digest of the request body. Two signing keys
are valid at any time so they can be rotated without downtime.
"""

import base64
import hashlib
import time
import uuid
from typing import Mapping, Optional, Union

import jwt
from loguru import logger

from serveflow.constants import SIGNATURE_ISSUER
from serveflow.core.exceptions import SignatureError
from serveflow.security.regions import get_receiver_signing_keys

Body = Union[str, bytes]


def _to_bytes(body: Body) -> bytes:
    return body.encode("utf-8") if isinstance(body, str) else body


def body_hash(body: Body) -> str:
    """Base64url encoded SHA-256 digest of a request body."""
    digest = hashlib.sha256(_to_bytes(body)).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii")


def sign(
    body: Body,
    url: str,
    signing_key: str,
    expires_in: int = 300,
    issued_at: Optional[int] = None,
) -> str:
    """
    Issue a signature token for a request body.

    Args:
        body: Raw request body
        url: Destination url, stored in the ``sub`` claim
        signing_key: Key to sign with
        expires_in: Seconds the token stays valid
        issued_at: Unix time the token is issued at, defaults to now

    Returns:
        Compact JWT for the ``Upstash-Signature`` header
    """
    now = int(time.time()) if issued_at is None else issued_at
    claims = {
        "iss": SIGNATURE_ISSUER,
        "sub": url,
        "exp": now + expires_in,
        "nbf": now,
        "iat": now,
        "jti": f"jwt_{uuid.uuid4().hex}",
        "body": body_hash(body),
    }
    return jwt.encode(claims, signing_key, algorithm="HS256")


class Receiver:
    """
    Verifies the signature of inbound requests.

    Keys given to the constructor take precedence. Otherwise keys are
    resolved from the environment on every verification, taking the region
    of the request into account in multi-region setups.

    Example:
        receiver = Receiver(
            current_signing_key="sig_current...",
            next_signing_key="sig_next...",
        )
        receiver.verify(signature=token, body=raw_body, url="https://example.com/api/workflow")
    """

    def __init__(
        self,
        current_signing_key: Optional[str] = None,
        next_signing_key: Optional[str] = None,
        environment: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.current_signing_key = current_signing_key
        self.next_signing_key = next_signing_key
        self.environment = environment

    def verify(
        self,
        signature: str,
        body: Body,
        url: Optional[str] = None,
        clock_tolerance: int = 0,
        region: Optional[str] = None,
    ) -> bool:
        """
        Verify the signature of a request.

        Tries the current signing key first. If that fails, for instance
        because keys were rotated recently, tries the next signing key.

        Args:
            signature: Value of the signature header
            body: Raw request body
            url: Url the request was sent to, None to skip the check
            clock_tolerance: Seconds of leeway for the exp and nbf claims
            region: Region header of the request, for multi-region setups

        Returns:
            True if the signature is valid

        Raises:
            SignatureError: If the signature is invalid or no keys are configured
        """
        keys = get_receiver_signing_keys(
            current_signing_key=self.current_signing_key,
            next_signing_key=self.next_signing_key,
            region_hint=region,
            environment=self.environment,
        )
        if keys is None:
            raise SignatureError(
                "Signing keys are not set. Pass current_signing_key and next_signing_key"
                " or set QSTASH_CURRENT_SIGNING_KEY and QSTASH_NEXT_SIGNING_KEY."
            )

        try:
            return self._verify_with_key(keys.current_signing_key, signature, body, url, clock_tolerance)
        except SignatureError as e:
            logger.debug(f"Signature not valid for the current signing key: {e}")

        return self._verify_with_key(keys.next_signing_key, signature, body, url, clock_tolerance)

    def _verify_with_key(
        self,
        key: str,
        signature: str,
        body: Body,
        url: Optional[str],
        clock_tolerance: int,
    ) -> bool:
        try:
            claims = jwt.decode(
                signature,
                key,
                algorithms=["HS256"],
                issuer=SIGNATURE_ISSUER,
                leeway=clock_tolerance,
                options={"require": ["iss", "body"]},
            )
        except jwt.PyJWTError as e:
            raise SignatureError(str(e)) from e

        if url is not None and claims.get("sub") != url:
            raise SignatureError(f"invalid subject: {claims.get('sub')}, want: {url}")

        expected = str(claims["body"])
        actual = body_hash(body)
        if expected.rstrip("=") != actual.rstrip("="):
            raise SignatureError(f"body hash does not match, want: {expected}, got: {actual}")

        return True
