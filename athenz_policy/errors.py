"""Errors raised while fetching, verifying and checking Athenz policies."""

from __future__ import annotations


class PolicyError(Exception):
    """Base class of every policy error."""

    default_message = "policy error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(self.default_message if message is None else message)


class DomainMismatchError(PolicyError):
    """The resource domain does not match the role token domain."""

    default_message = "Access denied due to domain mismatch between Resource and RoleToken"


class DomainNotFoundError(PolicyError):
    """The domain is not present in the policy cache."""

    default_message = "Access denied due to domain not found in library cache"


class NoMatchError(PolicyError):
    """No assertion of the domain policy matched the request."""

    default_message = (
        "Access denied due to no match to any of the assertions defined in domain policy file"
    )


class InvalidPolicyResourceError(PolicyError):
    """A policy resource is malformed or empty."""

    default_message = "Access denied due to invalid/empty policy resources"


class DenyByPolicyError(PolicyError):
    """A deny assertion matched the request."""

    default_message = "Access Check was explicitly denied"


class DomainExpiredError(PolicyError):
    """The domain policy file has expired."""

    default_message = "Access denied due to expired domain policy file"


class FetchPolicyError(PolicyError):
    """The policy server did not answer with a usable response."""

    default_message = "Error fetching athenz policy"


def wrap(error: BaseException, message: str) -> PolicyError:
    """Return an error reading ``"<message>: <error>"`` caused by ``error``.

    A policy error keeps its class, so callers can still catch it by kind;
    any other exception becomes a plain :class:`PolicyError`.
    """
    text = f"{message}: {error}"
    if isinstance(error, PolicyError):
        wrapped = type(error)(text)
    else:
        wrapped = PolicyError(text)
    wrapped.__cause__ = error
    return wrapped