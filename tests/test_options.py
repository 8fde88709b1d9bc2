from datetime import timedelta

import pytest
import requests

from athenz_policy.errors import PolicyError
from athenz_policy.options import (
    PolicydConfig,
    UnsupportedSchemeError,
    default_options,
    parse_duration,
    with_athenz_domains,
    with_athenz_url,
    with_expiry_margin,
    with_http_client,
    with_pubkey_provider,
    with_purge_period,
    with_refresh_period,
    with_retry_attempts,
    with_retry_delay,
)

DURATION_OPTIONS = [
    (with_expiry_margin, "expiry_margin", "invalid expiry margin"),
    (with_refresh_period, "refresh_period", "invalid refresh period"),
    (with_purge_period, "purge_period", "invalid purge period"),
    (with_retry_delay, "retry_delay", "invalid retry delay"),
]


@pytest.mark.parametrize(("factory", "attribute", "label"), DURATION_OPTIONS)
def test_duration_option_sets_value(factory, attribute, label):
    config = PolicydConfig()
    factory("1h")(config)
    assert getattr(config, attribute) == timedelta(hours=1)


@pytest.mark.parametrize(("factory", "attribute", "label"), DURATION_OPTIONS)
def test_duration_option_invalid_format(factory, attribute, label):
    config = PolicydConfig()
    with pytest.raises(PolicyError) as excinfo:
        factory("dummy")(config)
    assert str(excinfo.value).startswith(label + ": ")
    assert config == PolicydConfig()


@pytest.mark.parametrize(("factory", "attribute", "label"), DURATION_OPTIONS)
def test_duration_option_empty_value(factory, attribute, label):
    config = PolicydConfig()
    factory("")(config)
    assert config == PolicydConfig()


@pytest.mark.parametrize(
    ("url", "expected"),
    [
        ("", ""),
        ("dummy.com", "dummy.com"),
        ("http://dummy.com", "dummy.com"),
        ("https://dummy.com", "dummy.com"),
    ],
)
def test_with_athenz_url(url, expected):
    config = PolicydConfig()
    with_athenz_url(url)(config)
    assert config == PolicydConfig(athenz_url=expected)


def test_with_athenz_url_unsupported_scheme():
    config = PolicydConfig()
    with pytest.raises(UnsupportedSchemeError):
        with_athenz_url("ftp://dummy.com")(config)
    assert config == PolicydConfig(athenz_url="")


def test_with_athenz_domains_sets_value():
    config = PolicydConfig()
    with_athenz_domains("domain1", "domain2")(config)
    assert config.athenz_domains == ["domain1", "domain2"]


def test_with_athenz_domains_empty_value():
    config = PolicydConfig()
    with_athenz_domains()(config)
    assert config == PolicydConfig()


def test_with_http_client_sets_value():
    client = requests.Session()
    config = PolicydConfig()
    with_http_client(client)(config)
    assert config.http_client is client


def test_with_http_client_empty_value():
    config = PolicydConfig()
    with_http_client(None)(config)
    assert config == PolicydConfig()


def test_with_pubkey_provider_sets_value():
    def provider(env, key_id):
        return None

    config = PolicydConfig()
    with_pubkey_provider(provider)(config)
    assert config.pubkey_provider is provider


def test_with_pubkey_provider_empty_value():
    config = PolicydConfig()
    with_pubkey_provider(None)(config)
    assert config == PolicydConfig()


def test_with_retry_attempts_sets_value():
    config = PolicydConfig()
    with_retry_attempts(2)(config)
    assert config.retry_attempts == 2


def test_with_retry_attempts_negative_is_kept():
    config = PolicydConfig()
    with_retry_attempts(-1)(config)
    assert config.retry_attempts == -1


def test_with_retry_attempts_empty_value():
    config = PolicydConfig()
    with_retry_attempts(0)(config)
    assert config == PolicydConfig()


def test_default_options():
    config = PolicydConfig()
    for option in default_options():
        option(config)
    assert config.expiry_margin == timedelta(hours=3)
    assert config.refresh_period == timedelta(minutes=30)
    assert config.purge_period == timedelta(hours=1)
    assert config.retry_delay == timedelta(minutes=1)
    assert config.retry_attempts == 2
    assert isinstance(config.http_client, requests.Session)


def test_default_options_share_one_client():
    first, second = PolicydConfig(), PolicydConfig()
    for option in default_options():
        option(first)
    for option in default_options():
        option(second)
    assert first.http_client is second.http_client


def test_later_option_overrides_default():
    config = PolicydConfig()
    for option in default_options() + [with_expiry_margin("5s")]:
        option(config)
    assert config.expiry_margin == timedelta(seconds=5)
    assert config.purge_period == timedelta(hours=1)


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("0", timedelta(0)),
        ("1h", timedelta(hours=1)),
        ("30m", timedelta(minutes=30)),
        ("1m30s", timedelta(minutes=1, seconds=30)),
        ("1.5h", timedelta(minutes=90)),
        ("300ms", timedelta(milliseconds=300)),
        ("-2s", timedelta(seconds=-2)),
        ("+5s", timedelta(seconds=5)),
        ("10us", timedelta(microseconds=10)),
    ],
)
def test_parse_duration(text, expected):
    assert parse_duration(text) == expected


@pytest.mark.parametrize("text", ["", "dummy", "1", "1x", "h", "1h-2m"])
def test_parse_duration_rejects_invalid(text):
    with pytest.raises(ValueError):
        parse_duration(text)