# athenz_policy

`athenz_policy` keeps a local copy of the signed policy data of one or more Athenz domains and
uses it to decide whether a set of roles may perform an action on a resource.

What it does:

- downloads `https://<athenz url>/domain/<domain>/signed_policy_data` for each configured
  domain with `requests`. It sends `If-None-Match` with the last ETag while that ETag is still
  fresh, and on `304 Not Modified` it reuses the cached policy. A failed download is retried.
- verifies each policy: it must have an expiry in the future, a valid ZTS signature over the
  signed policy data and a valid ZMS signature over the policy data. Signatures are checked by
  a public-key provider that you supply.
- merges the assertions into one list per role (`<domain>:role.<role>`). Duplicate assertions
  are dropped, a deny replaces an otherwise identical allow, and deny assertions are kept ahead
  of allow assertions. Entries expire together with the policy.
- refreshes in the background. A full update builds a new cache and only replaces the current
  one when every domain succeeded; a failed update is retried once right away, then at the
  retry delay.

## Installation

```
pip install athenz_policy
```

## Usage

```python
import threading

from athenz_policy.daemon import new_policyd
from athenz_policy.errors import DenyByPolicyError, NoMatchError, PolicyError
from athenz_policy.options import (
    with_athenz_domains,
    with_athenz_url,
    with_pubkey_provider,
    with_refresh_period,
)
from athenz_policy.signed_policy import KeyEnv


def provider(env: KeyEnv, key_id: str):
    # Return an object with a verify(data, signature) method that raises when the
    # signature is invalid, or None when no key is known for (env, key_id).
    ...


policyd = new_policyd(
    with_athenz_url("https://zts.example.com/zts/v1"),
    with_athenz_domains("my.domain", "other.domain"),
    with_pubkey_provider(provider),
    with_refresh_period("30m"),
)

policyd.update()                  # first load; raises PolicyError on failure

stop = threading.Event()
errors = policyd.start(stop)      # refresh every refresh period until stop is set

try:
    allowed = policyd.check_policy_roles(
        "my.domain", ["reader", "writer"], "read", "articles"
    )
    print("allowed by", allowed)
except DenyByPolicyError as exc:
    print("denied:", exc)
except NoMatchError as exc:
    print("no assertion matched:", exc)
finally:
    stop.set()
```

### The daemon (`athenz_policy.daemon`)

- `new_policyd(*options)` applies `default_options()` and then your options, and creates one
  `Fetcher` per domain. An option that fails raises `PolicyError` ("error create policyd: ...").
- `Policyd.update(cancel=None)` fetches every domain into a new cache and makes it current.
  Setting the optional `threading.Event` stops an update in progress.
- `Policyd.start(stop)` runs updates in a daemon thread and returns a `queue.Queue`. Each failed
  update puts an error on it; when `stop` is set it puts a "context canceled" error and then
  `None`. The refresh period must be positive, or `ValueError` is raised.
- `Policyd.check_policy_roles(domain, roles, action, resource, cancel=None)` returns the roles
  whose assertions allow the request. A matching deny assertion in any role raises
  `DenyByPolicyError`; no match at all raises `NoMatchError`.
- `Policyd.check_policy(...)` is the same check without the return value.
- `Policyd.get_policy_cache()` returns a copy of the cached assertions by role key.

Matching is case-insensitive. Only the action and the resource may contain wildcards: `*`
matches any run of characters and `?` matches one character; every other character, including
regular-expression syntax, is taken literally. The role key and the request domain must match
exactly, and the assertion's resource domain must equal the request domain.

`Assertion.create(action, resource, effect)` compiles one assertion; `resource` must read
`<domain>:<resource>`, otherwise `InvalidPolicyResourceError` is raised. `ExpiringCache` is the
thread-safe store the daemon keeps the assertions in; `fetch_and_cache_policy` and
`simplify_and_cache_policy` fill such a cache from a fetcher or a `SignedPolicy`.

### Options (`athenz_policy.options`)

| option                         | default               |
|--------------------------------|-----------------------|
| `with_expiry_margin(d)`        | `3h`                  |
| `with_refresh_period(d)`       | `30m`                 |
| `with_purge_period(d)`         | `1h`                  |
| `with_retry_delay(d)`          | `1m`                  |
| `with_retry_attempts(n)`       | `2`                   |
| `with_http_client(session)`    | a shared `requests.Session` |
| `with_athenz_url(url)`         | empty                 |
| `with_athenz_domains(*names)`  | none                  |
| `with_pubkey_provider(func)`   | none                  |

Durations use the `1h30m`, `500ms`, `2.5s` notation of `parse_duration`. An empty duration,
a retry count of zero, no domains, or `None` as client or provider leaves the setting as it is.
The expiry margin is how long before a policy's expiry its ETag stops being sent.

`with_athenz_url` accepts a host and path with or without `http://` or `https://` in front;
requests always use HTTPS. Any other scheme raises `UnsupportedSchemeError`.

### Fetching alone (`athenz_policy.fetcher`)

`Fetcher(domain, athenz_url, verifier, client, ...)` can be used on its own. `fetch()` raises
`PolicyError` on any failure (`FetchPolicyError` for a non-200 answer). `fetch_with_retry()`
tries `retry_attempts + 1` times; when all fail, the error it raises carries the last good
policy in its `cached_policy` attribute, or `None`. `flush_and_close(stream)` drains and closes
a response body.

### Policy documents (`athenz_policy.signed_policy`)

`SignedPolicy.from_dict` builds a policy from decoded JSON and `to_dict` turns it back;
`SignedPolicy.verify(provider)` runs the checks described above and raises `PolicyError`.
Timestamps are read with `parse_timestamp`; unreadable ones become year 1, which counts as
expired.

### Errors (`athenz_policy.errors`)

All errors derive from `PolicyError`. `wrap(error, message)` prefixes the message and keeps the
error's class, so `"policy deny: Access Check was explicitly denied"` is still a
`DenyByPolicyError`.

## What the package does not do

It does not obtain public keys: you supply the provider and the verifier objects it returns.
It does not read role tokens or access tokens, so the domain and roles of a request must be
given to the check. It has no command-line tool and no server; it is a library to be used from
your own program.

## Running the tests

```
pip install -e ".[test]"
pytest
```