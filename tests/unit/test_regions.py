"""Tests for single and multi-region credential resolution."""

import pytest

from serveflow.security.regions import (
    ClientCredentials,
    SigningKeys,
    get_client_credentials,
    get_receiver_signing_keys,
    normalize_region,
)


class TestNormalizeRegion:
    @pytest.mark.parametrize(
        "value, expected",
        [
            ("us-east-1", "US_EAST_1"),
            ("EU_CENTRAL_1", "EU_CENTRAL_1"),
            ("eu-central-1", "EU_CENTRAL_1"),
            ("ap-south-1", None),
            ("", None),
            (None, None),
        ],
    )
    def test_normalize(self, value, expected):
        assert normalize_region(value) == expected


class TestReceiverSigningKeys:
    """Priority: explicit keys, then region keys, then default keys."""

    def test_explicit_keys_win(self):
        environment = {"QSTASH_CURRENT_SIGNING_KEY": "env-current", "QSTASH_NEXT_SIGNING_KEY": "env-next"}
        keys = get_receiver_signing_keys("explicit-current", "explicit-next", environment=environment)
        assert keys == SigningKeys("explicit-current", "explicit-next")

    def test_default_keys(self):
        environment = {"QSTASH_CURRENT_SIGNING_KEY": "env-current", "QSTASH_NEXT_SIGNING_KEY": "env-next"}
        assert get_receiver_signing_keys(environment=environment) == SigningKeys("env-current", "env-next")

    def test_incomplete_pair(self):
        environment = {"QSTASH_CURRENT_SIGNING_KEY": "env-current"}
        assert get_receiver_signing_keys(environment=environment) is None

    def test_region_keys(self):
        environment = {
            "QSTASH_REGION": "us-east-1",
            "US_EAST_1_QSTASH_CURRENT_SIGNING_KEY": "us-current",
            "US_EAST_1_QSTASH_NEXT_SIGNING_KEY": "us-next",
            "QSTASH_CURRENT_SIGNING_KEY": "env-current",
            "QSTASH_NEXT_SIGNING_KEY": "env-next",
        }
        keys = get_receiver_signing_keys(region_hint="us-east-1", environment=environment)
        assert keys == SigningKeys("us-current", "us-next", region="US_EAST_1")

    def test_region_hint_ignored_in_single_region_mode(self):
        environment = {
            "US_EAST_1_QSTASH_CURRENT_SIGNING_KEY": "us-current",
            "US_EAST_1_QSTASH_NEXT_SIGNING_KEY": "us-next",
            "QSTASH_CURRENT_SIGNING_KEY": "env-current",
            "QSTASH_NEXT_SIGNING_KEY": "env-next",
        }
        keys = get_receiver_signing_keys(region_hint="us-east-1", environment=environment)
        assert keys == SigningKeys("env-current", "env-next")

    def test_missing_region_keys_fall_back(self):
        environment = {
            "QSTASH_REGION": "US_EAST_1",
            "QSTASH_CURRENT_SIGNING_KEY": "env-current",
            "QSTASH_NEXT_SIGNING_KEY": "env-next",
        }
        keys = get_receiver_signing_keys(region_hint="EU_CENTRAL_1", environment=environment)
        assert keys == SigningKeys("env-current", "env-next")

    def test_invalid_region_hint_falls_back(self):
        environment = {
            "QSTASH_REGION": "US_EAST_1",
            "US_EAST_1_QSTASH_CURRENT_SIGNING_KEY": "us-current",
            "US_EAST_1_QSTASH_NEXT_SIGNING_KEY": "us-next",
            "QSTASH_CURRENT_SIGNING_KEY": "env-current",
            "QSTASH_NEXT_SIGNING_KEY": "env-next",
        }
        keys = get_receiver_signing_keys(region_hint="mars-1", environment=environment)
        assert keys == SigningKeys("env-current", "env-next")


class TestClientCredentials:
    def test_explicit(self):
        credentials = get_client_credentials("https://queue.test/", "token", environment={})
        assert credentials == ClientCredentials("https://queue.test", "token")

    def test_defaults(self):
        credentials = get_client_credentials(environment={"QSTASH_TOKEN": "env-token"})
        assert credentials == ClientCredentials("https://qstash.upstash.io", "env-token")

    def test_publish_url_is_trimmed(self):
        environment = {"QSTASH_URL": "https://qstash.upstash.io/v2/publish/", "QSTASH_TOKEN": "t"}
        assert get_client_credentials(environment=environment).base_url == "https://qstash.upstash.io"

    def test_region_credentials(self):
        environment = {
            "QSTASH_REGION": "eu-central-1",
            "EU_CENTRAL_1_QSTASH_URL": "https://eu.queue.test",
            "EU_CENTRAL_1_QSTASH_TOKEN": "eu-token",
            "QSTASH_TOKEN": "env-token",
        }
        credentials = get_client_credentials(environment=environment)
        assert credentials == ClientCredentials("https://eu.queue.test", "eu-token", region="EU_CENTRAL_1")

    def test_missing_region_credentials_fall_back(self):
        environment = {"QSTASH_REGION": "US_EAST_1", "QSTASH_TOKEN": "env-token"}
        credentials = get_client_credentials(environment=environment)
        assert credentials == ClientCredentials("https://qstash.upstash.io", "env-token")

    def test_missing_token(self):
        assert get_client_credentials(environment={}).token == ""
