"""Request signing and verification."""

from serveflow.security.receiver import Receiver, sign
from serveflow.security.regions import (
    ClientCredentials,
    SigningKeys,
    get_client_credentials,
    get_receiver_signing_keys,
    normalize_region,
)

__all__ = [
    "ClientCredentials",
    "Receiver",
    "SigningKeys",
    "get_client_credentials",
    "get_receiver_signing_keys",
    "normalize_region",
    "sign",
]
