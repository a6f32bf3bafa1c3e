"""
Credential resolution for single and multi-region deployments.

With ``QSTASH_REGION`` set, credentials are looked up under region-prefixed
environment variables first, for example ``US_EAST_1_QSTASH_TOKEN`` or
``EU_CENTRAL_1_QSTASH_CURRENT_SIGNING_KEY``. Missing region credentials
fall back to the unprefixed variables with a warning.
"""

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from loguru import logger

from serveflow.constants import DEFAULT_QSTASH_URL, SUPPORTED_REGIONS


@dataclass
class SigningKeys:
    current_signing_key: str
    next_signing_key: str
    region: Optional[str] = None


@dataclass
class ClientCredentials:
    base_url: str
    token: str
    region: Optional[str] = None


def normalize_region(region: Optional[str]) -> Optional[str]:
    """
    Normalize a region name such as "us-east-1" to "US_EAST_1".

    Returns None for empty or unknown regions.
    """
    if not region:
        return None

    normalized = region.replace("-", "_").upper()
    if normalized in SUPPORTED_REGIONS:
        return normalized

    logger.warning(
        f"Invalid region value: {region!r}. Expected one of: {', '.join(SUPPORTED_REGIONS)}."
    )
    return None


def _read(environment: Mapping[str, str], name: str, region: Optional[str] = None) -> Optional[str]:
    key = f"{region}_{name}" if region else name
    return environment.get(key) or None


def get_receiver_signing_keys(
    current_signing_key: Optional[str] = None,
    next_signing_key: Optional[str] = None,
    region_hint: Optional[str] = None,
    environment: Optional[Mapping[str, str]] = None,
) -> Optional[SigningKeys]:
    """
    Resolve the keys used to verify inbound requests.

    Priority order:
    1. Explicit keys
    2. Keys of the region named by ``region_hint`` (the region header of the
       request), when ``QSTASH_REGION`` is set
    3. Default keys ``QSTASH_CURRENT_SIGNING_KEY``/``QSTASH_NEXT_SIGNING_KEY``

    Returns:
        Resolved keys, or None if no complete key pair is available
    """
    if current_signing_key and next_signing_key:
        return SigningKeys(current_signing_key, next_signing_key)

    env = os.environ if environment is None else environment

    if normalize_region(env.get("QSTASH_REGION")):
        region = normalize_region(region_hint)
        if region:
            current = _read(env, "QSTASH_CURRENT_SIGNING_KEY", region)
            following = _read(env, "QSTASH_NEXT_SIGNING_KEY", region)
            if current and following:
                return SigningKeys(current, following, region=region)
            logger.warning(
                f"Signing keys not found for region {region!r}. Falling back to default signing keys."
            )
        else:
            logger.warning(
                f"Invalid region header value: {region_hint!r}. Falling back to default signing keys."
            )

    current = _read(env, "QSTASH_CURRENT_SIGNING_KEY")
    following = _read(env, "QSTASH_NEXT_SIGNING_KEY")
    if current and following:
        return SigningKeys(current, following)
    return None


def get_client_credentials(
    base_url: Optional[str] = None,
    token: Optional[str] = None,
    environment: Optional[Mapping[str, str]] = None,
) -> ClientCredentials:
    """
    Resolve the queue service url and token for outgoing requests.

    Priority order:
    1. Explicit url and token
    2. Region credentials ``<REGION>_QSTASH_URL``/``<REGION>_QSTASH_TOKEN``
       when ``QSTASH_REGION`` is set
    3. ``QSTASH_URL``/``QSTASH_TOKEN``, the url defaulting to the public endpoint
    """
    env = os.environ if environment is None else environment
    credentials: Optional[ClientCredentials] = None

    if base_url and token:
        credentials = ClientCredentials(base_url, token)
    else:
        region = normalize_region(env.get("QSTASH_REGION"))
        if region:
            region_url = _read(env, "QSTASH_URL", region)
            region_token = _read(env, "QSTASH_TOKEN", region)
            if region_url and region_token:
                credentials = ClientCredentials(region_url, region_token, region=region)
            else:
                logger.warning(
                    f"QSTASH_REGION is set to {region!r} but credentials are missing. Expected"
                    f" {region}_QSTASH_URL and {region}_QSTASH_TOKEN. Falling back to default"
                    " credentials."
                )

    if credentials is None:
        credentials = ClientCredentials(
            base_url=base_url or _read(env, "QSTASH_URL") or DEFAULT_QSTASH_URL,
            token=token or _read(env, "QSTASH_TOKEN") or "",
        )

    credentials.base_url = credentials.base_url.rstrip("/")
    if credentials.base_url == f"{DEFAULT_QSTASH_URL}/v2/publish":
        credentials.base_url = DEFAULT_QSTASH_URL

    if not credentials.token:
        logger.warning("Queue token is not set. Either pass a token or set QSTASH_TOKEN.")
    return credentials
