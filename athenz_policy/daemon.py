"""The policy daemon: caches role assertions and answers access checks."""

from __future__ import annotations

import logging
import queue
import re
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Protocol

from .errors import (
    DenyByPolicyError,
    InvalidPolicyResourceError,
    NoMatchError,
    PolicyError,
    wrap,
)
from .fetcher import Fetcher
from .options import PolicydConfig, default_options
from .signed_policy import SignedPolicy

log = logging.getLogger(__name__)

_MAX_WORKERS = 32


class _Cancelled(PolicyError):
    default_message = "context canceled"


class _PolicyFetcher(Protocol):
    domain: str

    def fetch_with_retry(self, cancel: Optional[threading.Event] = None) -> Optional[SignedPolicy]:
        ...


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _check_cancel(cancel: Optional[threading.Event]) -> None:
    if cancel is not None and cancel.is_set():
        raise _Cancelled()


def _wildcard_pattern(text: str) -> re.Pattern:
    body = "".join(
        ".*" if char == "*" else "." if char == "?" else re.escape(char)
        for char in text.lower()
    )
    return re.compile(f"^{body}$")


@dataclass(frozen=True)
class Assertion:
    """A compiled assertion: resource domain, action and resource patterns, effect."""

    resource_domain: str
    action_regexp: re.Pattern
    resource_regexp: re.Pattern
    deny: bool = False

    @classmethod
    def create(cls, action: str, resource: str, effect: str) -> "Assertion":
        """Compile an assertion; ``*`` and ``?`` are the only wildcards.

        ``resource`` must read ``<domain>:<resource>``.
        """
        domain, separator, name = resource.partition(":")
        if not separator:
            raise wrap(InvalidPolicyResourceError(), "assertion format not correct")
        return cls(
            resource_domain=domain,
            action_regexp=_wildcard_pattern(action),
            resource_regexp=_wildcard_pattern(name),
            deny=effect.lower() == "deny",
        )

    @property
    def effect(self) -> Optional[PolicyError]:
        """The error a matching request gets, or ``None`` when it is allowed."""
        if self.deny:
            return wrap(DenyByPolicyError(), "policy deny")
        return None


class ExpiringCache:
    """A thread-safe mapping whose entries may expire."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._items: dict[str, tuple[Any, Optional[datetime]]] = {}
        self._expired_hook: Optional[Callable[[str], None]] = None
        self._stop_event = threading.Event()

    @staticmethod
    def _alive(expiry: Optional[datetime], now: datetime) -> bool:
        return expiry is None or expiry > now

    def get(self, key: str) -> Any:
        """The live value of ``key``, or ``None``."""
        entry = self.get_with_expiry(key)
        return None if entry is None else entry[0]

    def get_with_expiry(self, key: str) -> Optional[tuple[Any, Optional[datetime]]]:
        """The live value of ``key`` with its expiry time, or ``None``."""
        now = _now()
        with self._lock:
            entry = self._items.get(key)
        if entry is None or not self._alive(entry[1], now):
            return None
        return entry

    def set(self, key: str, value: Any, ttl: Optional[timedelta] = None) -> None:
        """Store ``value``; a missing or non-positive ``ttl`` never expires."""
        expiry = None
        if ttl is not None and ttl > timedelta(0):
            expiry = _now() + ttl
        with self._lock:
            self._items[key] = (value, expiry)

    def delete_expired(self) -> list[str]:
        """Drop expired entries, run the expiry hook on each, return their keys."""
        now = _now()
        with self._lock:
            expired = [key for key, (_, expiry) in self._items.items()
                       if not self._alive(expiry, now)]
            for key in expired:
                del self._items[key]
        hook = self._expired_hook
        if hook is not None:
            for key in expired:
                hook(key)
        return expired

    def to_dict(self) -> dict[str, Any]:
        """A copy of the live entries."""
        now = _now()
        with self._lock:
            return {key: value for key, (value, expiry) in self._items.items()
                    if self._alive(expiry, now)}

    def __len__(self) -> int:
        return len(self.to_dict())

    def _start_purge(self, period: timedelta, hook: Callable[[str], None]) -> None:
        self._expired_hook = hook
        seconds = period.total_seconds()
        if seconds <= 0:
            return

        def run() -> None:
            while not self._stop_event.wait(seconds):
                try:
                    self.delete_expired()
                except Exception:  # noqa: BLE001 - keep purging
                    log.exception("purging expired policies failed")

        threading.Thread(target=run, name="policy-cache-purge", daemon=True).start()

    def _stop(self) -> None:
        self._stop_event.set()


@dataclass(eq=False)
class Policyd:
    """Keeps the role policies of Athenz domains and checks requests against them."""

    config: PolicydConfig = field(default_factory=PolicydConfig)
    fetchers: dict[str, Any] = field(default_factory=dict)
    role_policies: ExpiringCache = field(default_factory=ExpiringCache)

    def start(self, stop: threading.Event) -> "queue.Queue[Optional[BaseException]]":
        """Refresh policies every refresh period until ``stop`` is set.

        Update errors are put on the returned queue; when stopping, a
        "context canceled" error and then ``None`` are put on it.
        """
        period = self.config.refresh_period.total_seconds()
        if period <= 0:
            raise ValueError("refresh period must be positive")
        errors: queue.Queue[Optional[BaseException]] = queue.Queue(maxsize=100)
        log.info("Starting policyd updater")
        threading.Thread(
            target=self._run, args=(stop, errors, period), name="policyd-updater", daemon=True
        ).start()
        return errors

    def _run(self, stop: threading.Event, errors: queue.Queue, period: float) -> None:
        retry_delay = max(0.0, self.config.retry_delay.total_seconds())
        retrying = False
        while not stop.wait(0 if retrying else period):
            try:
                self.update(stop)
            except Exception as exc:  # noqa: BLE001 - reported on the queue
                errors.put(wrap(exc, "error update policy"))
                if retrying:
                    stop.wait(retry_delay)
                retrying = True
            else:
                retrying = False
        log.info("Stopping policyd updater")
        errors.put(_Cancelled())
        errors.put(None)

    def update(self, cancel: Optional[threading.Event] = None) -> None:
        """Fetch every domain policy into a new cache and make it current.

        On any failure the current cache is left as it was.
        """
        log.info("will update policy")
        new_cache = ExpiringCache()

        def job(fetcher: Any) -> None:
            _check_cancel(cancel)
            fetch_and_cache_policy(new_cache, fetcher, cancel)

        fetchers = list(self.fetchers.values())
        first_error: Optional[BaseException] = None
        with ThreadPoolExecutor(max_workers=max(1, min(_MAX_WORKERS, len(fetchers)))) as pool:
            futures = []
            for fetcher in fetchers:
                if cancel is not None and cancel.is_set():
                    log.info("Update policy interrupted")
                    first_error = _Cancelled()
                    break
                futures.append(pool.submit(job, fetcher))
            for future in as_completed(futures):
                error = future.exception()
                if error is not None and first_error is None:
                    first_error = error
        if first_error is not None:
            log.error("update policy fail")
            raise first_error

        new_cache._start_purge(self.config.purge_period, self._refetch)
        old_cache, self.role_policies = self.role_policies, new_cache
        old_cache._stop()
        log.info("update policy done")

    def _refetch(self, key: str) -> None:
        fetcher = self.fetchers.get(key.split(":role.")[0])
        if fetcher is None:
            return
        try:
            fetch_and_cache_policy(self.role_policies, fetcher)
        except PolicyError as exc:
            log.warning("refetch of expired policy %s failed: %s", key, exc)

    def check_policy(
        self,
        domain: str,
        roles: list[str],
        action: str,
        resource: str,
        cancel: Optional[threading.Event] = None,
    ) -> None:
        """Raise :class:`PolicyError` unless one of ``roles`` may do the request."""
        self.check_policy_roles(domain, roles, action, resource, cancel)

    def check_policy_roles(
        self,
        domain: str,
        roles: list[str],
        action: str,
        resource: str,
        cancel: Optional[threading.Event] = None,
    ) -> list[str]:
        """Return the roles allowed to do the request.

        A matching deny assertion in any role wins; with no matching
        assertion at all a :class:`NoMatchError` is raised.
        """
        cache = self.role_policies
        action = action.lower()
        resource = resource.lower()
        domain_key = domain.lower()
        allowed: list[str] = []
        for role in roles:
            _check_cancel(cancel)
            assertions = cache.get(f"{domain}:role.{role}")
            if not assertions:
                continue
            for assertion in assertions:
                if (
                    assertion.resource_domain.lower() == domain_key
                    and assertion.action_regexp.fullmatch(action)
                    and assertion.resource_regexp.fullmatch(resource)
                ):
                    effect = assertion.effect
                    if effect is not None:
                        log.debug("check policy domain: %s, roles: %s, result: %s",
                                  domain, roles, effect)
                        raise effect
                    allowed.append(role)
                    break
        if allowed:
            return allowed
        raise wrap(NoMatchError(), "no match")

    def get_policy_cache(self) -> dict[str, Any]:
        """A copy of the cached role policies."""
        return self.role_policies.to_dict()


def _policy_verifier(config: PolicydConfig) -> Callable[[SignedPolicy], None]:
    def verify(policy: SignedPolicy) -> None:
        if config.pubkey_provider is None:
            raise PolicyError("no public key provider")
        policy.verify(config.pubkey_provider)

    return verify


def new_policyd(*args: Callable[[PolicydConfig], None]) -> Policyd:
    """Create a daemon from the default options followed by ``args``."""
    config = PolicydConfig()
    for option in [*default_options(), *args]:
        try:
            option(config)
        except Exception as exc:
            raise wrap(exc, "error create policyd") from exc
    verifier = _policy_verifier(config)
    fetchers = {
        domain: Fetcher(
            domain=domain,
            athenz_url=config.athenz_url,
            verifier=verifier,
            client=config.http_client,
            expiry_margin=config.expiry_margin,
            retry_delay=config.retry_delay,
            retry_attempts=config.retry_attempts,
        )
        for domain in config.athenz_domains
    }
    return Policyd(config=config, fetchers=fetchers)


def fetch_and_cache_policy(
    cache: ExpiringCache, fetcher: Any, cancel: Optional[threading.Event] = None
) -> None:
    """Fetch a domain policy and merge it into ``cache``.

    A failed fetch that still carries a cached policy uses that policy.
    """
    try:
        policy = fetcher.fetch_with_retry(cancel)
    except Exception as exc:
        log.error("fetch policy fail, error: %s", exc)
        policy = getattr(exc, "cached_policy", None)
        if policy is None:
            raise wrap(exc, "fetch policy fail") from exc
    log.debug("will merge policy, domain: %s", fetcher.domain)
    try:
        simplify_and_cache_policy(cache, policy, cancel)
    except PolicyError as exc:
        raise wrap(exc, "simplify and cache policy fail") from exc


def simplify_and_cache_policy(
    cache: ExpiringCache,
    signed_policy: Optional[SignedPolicy],
    cancel: Optional[threading.Event] = None,
) -> None:
    """Merge the assertions of a policy into ``cache`` by role.

    Duplicates are dropped, deny beats allow for the same rule, and deny
    assertions are kept ahead of allow assertions.
    """
    if signed_policy is None or signed_policy.signed_policy_data is None:
        return
    spd = signed_policy.signed_policy_data
    if spd.policy_data is None:
        return

    merged: dict[tuple[str, str, str], Any] = {}
    for policy in spd.policy_data.policies:
        for item in policy.assertions:
            try:
                _check_cancel(cancel)
            except PolicyError as exc:
                raise wrap(exc, "error simplify and cache policy") from exc
            key = (item.role, item.action, item.resource)
            if key not in merged or item.effect.lower() == "deny":
                merged[key] = item

    ttl = None if spd.expires is None else _utc(spd.expires) - _now()
    for item in merged.values():
        assertion = Assertion.create(item.action, item.resource, item.effect)
        existing = cache.get(item.role)
        if existing is None:
            assertions = [assertion]
        elif assertion.deny:
            assertions = [assertion, *existing]
        else:
            assertions = [*existing, assertion]
        cache.set(item.role, assertions, ttl)
        log.debug("added assertion to the tmp cache: %s", item)