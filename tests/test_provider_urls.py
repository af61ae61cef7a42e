"""URL derivation for each provider."""

import pytest

from bucketdock.providers import build_bucket_base_url, build_public_url
from bucketdock.providers.urls import endpoint_url

from fakes import make_config


def test_r2_urls_use_account_host() -> None:
    config = make_config("r2", account_id="abc123", bucket="media")

    assert endpoint_url(config) == "https://abc123.r2.cloudflarestorage.com"
    assert build_bucket_base_url(config) == "https://media.abc123.r2.cloudflarestorage.com"


def test_public_domain_wins_and_keys_are_encoded() -> None:
    config = make_config("r2", bucket="media", public_domain="cdn.example.com/")

    assert build_bucket_base_url(config) == "https://cdn.example.com"
    assert build_public_url(config, "/photos/summer trip/a+b.jpg") == (
        "https://cdn.example.com/photos/summer%20trip/a%2Bb.jpg"
    )


def test_public_domain_scheme_and_explicit_scheme() -> None:
    plain = make_config("minio", public_domain="files.lan", public_domain_scheme="http")
    explicit = make_config("minio", public_domain="http://files.lan:8080")

    assert build_bucket_base_url(plain) == "http://files.lan"
    assert build_bucket_base_url(explicit) == "http://files.lan:8080"


def test_aws_defaults_to_regional_virtual_host() -> None:
    config = make_config("aws", bucket="logs", region="eu-central-1")

    assert endpoint_url(config) is None
    assert build_bucket_base_url(config) == "https://logs.s3.eu-central-1.amazonaws.com"


@pytest.mark.parametrize(
    ("provider", "path_style", "expected"),
    [
        ("minio", True, "https://localhost:9000/photos"),
        ("rustfs", False, "https://photos.localhost:9000"),
    ],
)
def test_self_hosted_addressing(provider: str, path_style: bool, expected: str) -> None:
    config = make_config(provider, force_path_style=path_style)

    assert endpoint_url(config) == "https://localhost:9000"
    assert build_bucket_base_url(config) == expected
