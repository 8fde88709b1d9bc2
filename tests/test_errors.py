import pytest

from athenz_policy.errors import (
    DenyByPolicyError,
    DomainExpiredError,
    DomainMismatchError,
    DomainNotFoundError,
    FetchPolicyError,
    InvalidPolicyResourceError,
    NoMatchError,
    PolicyError,
    wrap,
)


@pytest.mark.parametrize(
    ("error_class", "message"),
    [
        (DomainMismatchError, "Access denied due to domain mismatch between Resource and RoleToken"),
        (DomainNotFoundError, "Access denied due to domain not found in library cache"),
        (
            NoMatchError,
            "Access denied due to no match to any of the assertions defined in domain policy file",
        ),
        (InvalidPolicyResourceError, "Access denied due to invalid/empty policy resources"),
        (DenyByPolicyError, "Access Check was explicitly denied"),
        (DomainExpiredError, "Access denied due to expired domain policy file"),
        (FetchPolicyError, "Error fetching athenz policy"),
    ],
)
def test_default_messages(error_class, message):
    error = error_class()
    assert str(error) == message
    assert isinstance(error, PolicyError)


def test_custom_message_overrides_default():
    assert str(NoMatchError("custom")) == "custom"


def test_wrap_keeps_policy_error_class():
    original = NoMatchError()
    wrapped = wrap(original, "no match")
    assert isinstance(wrapped, NoMatchError)
    assert str(wrapped) == (
        "no match: Access denied due to no match to any of the assertions defined in domain policy file"
    )
    assert wrapped.__cause__ is original


def test_wrap_deny_message():
    wrapped = wrap(DenyByPolicyError(), "policy deny")
    assert str(wrapped) == "policy deny: Access Check was explicitly denied"
    assert isinstance(wrapped, DenyByPolicyError)


def test_wrap_foreign_error_becomes_policy_error():
    original = RuntimeError("dummy error")
    wrapped = wrap(original, "error verify signature")
    assert type(wrapped) is PolicyError
    assert str(wrapped) == "error verify signature: dummy error"
    assert wrapped.__cause__ is original


def test_nested_wraps():
    inner = wrap(FetchPolicyError(), "fetch policy HTTP response != 200 OK")
    middle = wrap(inner, "max. retry count excess")
    outer = wrap(middle, "no policy cache")
    assert str(middle) == (
        "max. retry count excess: fetch policy HTTP response != 200 OK: Error fetching athenz policy"
    )
    assert str(outer) == (
        "no policy cache: max. retry count excess: fetch policy HTTP response != 200 OK: "
        "Error fetching athenz policy"
    )
    assert isinstance(outer, FetchPolicyError)
    assert outer.__cause__ is middle


def test_wrapped_error_can_be_caught_as_base():
    original = DomainExpiredError()
    wrapped = wrap(original, "stale")
    assert isinstance(wrapped, PolicyError)
    assert isinstance(wrapped, DomainExpiredError)
    assert str(wrapped) == "stale: Access denied due to expired domain policy file"
    assert wrapped.__cause__ is original