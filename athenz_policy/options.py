"""Configuration options of the policy daemon."""

from __future__ import annotations

import functools
import re
from dataclasses import dataclass, field
from datetime import timedelta
from fractions import Fraction
from typing import Any, Callable, Optional

import requests

from .errors import PolicyError, wrap


class UnsupportedSchemeError(PolicyError):
    """The Athenz URL uses a scheme other than http or https."""

    default_message = "unsupported scheme"


@dataclass
class PolicydConfig:
    """Settings of a policy daemon, filled in by options."""

    pubkey_provider: Optional[Callable[..., Any]] = None
    athenz_url: str = ""
    athenz_domains: list[str] = field(default_factory=list)
    expiry_margin: timedelta = timedelta(0)
    refresh_period: timedelta = timedelta(0)
    purge_period: timedelta = timedelta(0)
    retry_delay: timedelta = timedelta(0)
    retry_attempts: int = 0
    http_client: Any = None


Option = Callable[[PolicydConfig], None]

_UNIT_NANOSECONDS = {
    "ns": 1,
    "us": 1_000,
    "µs": 1_000,
    "μs": 1_000,
    "ms": 1_000_000,
    "s": 1_000_000_000,
    "m": 60 * 1_000_000_000,
    "h": 3600 * 1_000_000_000,
}
_COMPONENT = r"([0-9]+\.?[0-9]*|\.[0-9]+)(ns|us|µs|μs|ms|s|m|h)"
_COMPONENT_RE = re.compile(_COMPONENT)
_DURATION_RE = re.compile(rf"([-+]?)((?:{_COMPONENT})+)\Z")


def parse_duration(text: str) -> timedelta:
    """Parse a duration such as ``"1h30m"``, ``"1.5s"`` or ``"300ms"``."""
    if text in ("0", "+0", "-0"):
        return timedelta(0)
    match = _DURATION_RE.match(text)
    if match is None:
        raise ValueError(f'time: invalid duration "{text}"')
    total = sum(
        (Fraction(number) * _UNIT_NANOSECONDS[unit]
         for number, unit in _COMPONENT_RE.findall(match.group(2))),
        Fraction(0),
    )
    if match.group(1) == "-":
        total = -total
    return timedelta(microseconds=round(total / 1000))


@functools.lru_cache(maxsize=None)
def _default_http_client() -> requests.Session:
    return requests.Session()


def _trim_http_scheme(url: str) -> str:
    for prefix in ("https://", "http://"):
        if url.startswith(prefix):
            return url[len(prefix):]
    return url


def _has_scheme(url: str) -> bool:
    return "://" in url


def default_options() -> list[Option]:
    """The options every daemon starts from."""
    return [
        with_expiry_margin("3h"),
        with_refresh_period("30m"),
        with_purge_period("1h"),
        with_retry_delay("1m"),
        with_retry_attempts(2),
        with_http_client(_default_http_client()),
    ]


def with_pubkey_provider(provider: Optional[Callable[..., Any]]) -> Option:
    """Use ``provider`` to look up signature verifiers; ``None`` changes nothing."""

    def apply(config: PolicydConfig) -> None:
        if provider is not None:
            config.pubkey_provider = provider

    return apply


def with_athenz_url(url: str) -> Option:
    """Set the Athenz host and path; an http or https prefix is dropped."""

    def apply(config: PolicydConfig) -> None:
        trimmed = _trim_http_scheme(url)
        if _has_scheme(trimmed):
            raise UnsupportedSchemeError()
        config.athenz_url = trimmed

    return apply


def with_athenz_domains(*args: str) -> Option:
    """Set the domains whose policies are fetched; no domains changes nothing."""

    def apply(config: PolicydConfig) -> None:
        if args:
            config.athenz_domains = list(args)

    return apply


def _duration_option(text: str, attribute: str, label: str) -> Option:
    def apply(config: PolicydConfig) -> None:
        if text == "":
            return
        try:
            value = parse_duration(text)
        except ValueError as exc:
            raise wrap(exc, f"invalid {label}") from exc
        setattr(config, attribute, value)

    return apply


def with_expiry_margin(duration: str) -> Option:
    """Refresh a policy this long before it expires."""
    return _duration_option(duration, "expiry_margin", "expiry margin")


def with_refresh_period(duration: str) -> Option:
    """Fetch all policies this often."""
    return _duration_option(duration, "refresh_period", "refresh period")


def with_purge_period(duration: str) -> Option:
    """Drop expired cache entries this often."""
    return _duration_option(duration, "purge_period", "purge period")


def with_retry_delay(duration: str) -> Option:
    """Wait this long between failed fetches."""
    return _duration_option(duration, "retry_delay", "retry delay")


def with_retry_attempts(count: int) -> Option:
    """Retry a failed fetch this many times; zero changes nothing."""

    def apply(config: PolicydConfig) -> None:
        if count != 0:
            config.retry_attempts = count

    return apply


def with_http_client(client: Any) -> Option:
    """Use ``client`` for HTTP requests; ``None`` changes nothing."""

    def apply(config: PolicydConfig) -> None:
        if client is not None:
            config.http_client = client

    return apply