"""Fetching a domain's signed policy from ZTS, with ETag caching and retries."""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Protocol
from urllib.parse import urlsplit

import requests

from .errors import FetchPolicyError, PolicyError, wrap
from .signed_policy import ZERO_TIME, SignedPolicy, go_time_string

log = logging.getLogger(__name__)

SignedPolicyVerifier = Callable[[SignedPolicy], None]
"""A callable that raises when a signed policy is not valid."""

_CHUNK_SIZE = 64 * 1024
_HOST_FORBIDDEN = frozenset('<>"{}|\\^`')


class _Closeable(Protocol):
    def read(self, size: int = ...) -> bytes: ...

    def close(self) -> None: ...


def flush_and_close(stream: Optional[_Closeable]) -> None:
    """Read ``stream`` to its end, then close it; ``None`` is ignored.

    An error while reading is raised before the stream is closed.
    """
    if stream is None:
        return
    while stream.read(_CHUNK_SIZE):
        pass
    stream.close()


def _utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class TaggedPolicy:
    """A fetched policy together with the ETag it was served with."""

    etag: str = ""
    etag_expiry: datetime = ZERO_TIME
    policy: Optional[SignedPolicy] = None
    ctime: datetime = ZERO_TIME

    def __str__(self) -> str:
        domain = ""
        policy = self.policy
        if (
            policy is not None
            and policy.signed_policy_data is not None
            and policy.signed_policy_data.policy_data is not None
        ):
            domain = policy.signed_policy_data.policy_data.domain
        return (
            f"{{ ctime: {go_time_string(self.ctime)}, eTag: {self.etag}, "
            f"eTagExpiry: {go_time_string(self.etag_expiry)}, sp.domain: {domain} }}"
        )


def _check_url(url: str) -> None:
    host = urlsplit(url).netloc
    for char in host:
        if char.isspace() or ord(char) < 0x20 or ord(char) == 0x7F or char in _HOST_FORBIDDEN:
            raise ValueError(f'parse "{url}": invalid character "{char}" in host name')


def _decode(body: bytes) -> SignedPolicy:
    text = body.decode("utf-8")
    if not text.strip():
        raise ValueError("EOF")
    return SignedPolicy.from_dict(json.loads(text))


def _etag_expiry(policy: SignedPolicy, margin: timedelta) -> datetime:
    spd = policy.signed_policy_data
    expires = spd.expires if spd is not None and spd.expires is not None else ZERO_TIME
    try:
        return expires - margin
    except OverflowError:
        return ZERO_TIME


class Fetcher:
    """Fetches the signed policy of one Athenz domain."""

    def __init__(
        self,
        domain: str,
        athenz_url: str = "",
        verifier: Optional[SignedPolicyVerifier] = None,
        client: Any = None,
        expiry_margin: timedelta = timedelta(0),
        retry_delay: timedelta = timedelta(0),
        retry_attempts: int = 0,
        policy_cache: Optional[TaggedPolicy] = None,
    ) -> None:
        self.domain = domain
        self.athenz_url = athenz_url
        self.verifier = verifier
        self.client = client if client is not None else requests.Session()
        self.expiry_margin = expiry_margin
        self.retry_delay = retry_delay
        self.retry_attempts = retry_attempts
        self.policy_cache = policy_cache

    def fetch(self, cancel: Optional[threading.Event] = None) -> Optional[SignedPolicy]:
        """Fetch, verify and cache the domain policy.

        A ``304 Not Modified`` answer returns the cached policy. Raises
        :class:`PolicyError` when the policy cannot be fetched or is invalid.
        """
        log.info("will fetch policy for domain: %s", self.domain)
        url = f"https://{self.athenz_url}/domain/{self.domain}/signed_policy_data"
        log.debug("will fetch policy from url: %s", url)
        try:
            _check_url(url)
        except ValueError as exc:
            log.error("create fetch policy request fail, domain: %s, error: %s", self.domain, exc)
            raise wrap(exc, "create fetch policy request fail") from exc

        cached = self.policy_cache
        headers: dict[str, str] = {}
        if (
            cached is not None
            and cached.etag
            and _utc(cached.etag_expiry) > datetime.now(timezone.utc)
        ):
            log.debug("request on domain: %s, with ETag: %s", self.domain, cached.etag)
            headers["If-None-Match"] = cached.etag

        if cancel is not None and cancel.is_set():
            raise wrap(PolicyError(f'Get "{url}": context canceled'), "fetch policy HTTP request fail")
        try:
            response = self.client.get(url, headers=headers)
        except (requests.RequestException, OSError) as exc:
            log.error("fetch policy HTTP request fail, domain: %s, error: %s", self.domain, exc)
            raise wrap(exc, "fetch policy HTTP request fail") from exc

        try:
            return self._accept(response, cached)
        finally:
            try:
                flush_and_close(getattr(response, "raw", None))
            except Exception as exc:  # noqa: BLE001 - a failed close must not hide the result
                log.warning("close Response.Body fail: %s", exc)

    def _accept(self, response: Any, cached: Optional[TaggedPolicy]) -> Optional[SignedPolicy]:
        if response.status_code == 304:
            if cached is None:
                raise wrap(FetchPolicyError(), "policy not modified but no policy cache")
            log.debug("policy = 304 not modified, use cache for domain: %s, ETag: %s",
                      self.domain, cached.etag)
            return cached.policy

        if response.status_code != 200:
            log.error("fetch policy HTTP response != 200 OK, domain: %s, status: %d",
                      self.domain, response.status_code)
            raise wrap(FetchPolicyError(), "fetch policy HTTP response != 200 OK")

        try:
            policy = _decode(response.content)
        except ValueError as exc:
            log.error("policy decode fail, domain: %s, error: %s", self.domain, exc)
            raise wrap(exc, "policy decode fail") from exc

        if self.verifier is None:
            raise wrap(PolicyError("no policy verifier"), "invalid policy")
        try:
            self.verifier(policy)
        except Exception as exc:
            log.error("invalid policy, domain: %s, error: %s", self.domain, exc)
            raise wrap(exc, "invalid policy") from exc

        tagged = TaggedPolicy(
            etag=response.headers.get("ETag", "") or "",
            etag_expiry=_etag_expiry(policy, self.expiry_margin),
            policy=policy,
            ctime=datetime.now(timezone.utc),
        )
        log.debug("set policy cache for domain: %s, policy: %s", self.domain, tagged)
        self.policy_cache = tagged
        return policy

    def fetch_with_retry(self, cancel: Optional[threading.Event] = None) -> Optional[SignedPolicy]:
        """Fetch the policy, retrying ``retry_attempts`` times after a failure.

        When every attempt fails a :class:`PolicyError` is raised; its
        ``cached_policy`` attribute holds the last good policy, or ``None``
        when there is none.
        """
        last_error: Optional[BaseException] = None
        for _ in range(-1, self.retry_attempts):
            try:
                return self.fetch(cancel)
            except PolicyError as exc:
                last_error = exc
                time.sleep(max(0.0, self.retry_delay.total_seconds()))

        message = "max. retry count excess"
        log.info("will use policy cache, since: %s, domain: %s, error: %s",
                 message, self.domain, last_error)
        if last_error is None:
            last_error = PolicyError(f"retryAttempts {self.retry_attempts}")
        cached = self.policy_cache
        if cached is None:
            error = wrap(wrap(last_error, message), "no policy cache")
            error.cached_policy = None  # type: ignore[attr-defined]
        else:
            error = wrap(last_error, message)
            error.cached_policy = cached.policy  # type: ignore[attr-defined]
        raise error