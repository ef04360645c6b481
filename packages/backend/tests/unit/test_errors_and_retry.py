import pytest

from lunanul.models.errors import (
    ErrorAction,
    NetworkError,
    PaymentFailed,
    PersistenceError,
    PlatformStoreError,
    PurchaseCancelled,
    ServerError,
    SubscriptionExpired,
    UnknownSubscriptionError,
    UsageStoreError,
    VerificationFailed,
    presentation_for,
)
from lunanul.utils.retry import RetryPolicy, retry_call


@pytest.mark.parametrize("error_class", [NetworkError, PlatformStoreError, VerificationFailed, ServerError])
def test_retryable_errors(error_class):
    error = error_class()
    assert error.retryable is True
    assert presentation_for(error).action == ErrorAction.RETRY


@pytest.mark.parametrize("error_class", [PaymentFailed, SubscriptionExpired, UnknownSubscriptionError])
def test_terminal_errors_are_dismissable(error_class):
    error = error_class("details for the log")
    presentation = presentation_for(error)
    assert error.retryable is False
    assert presentation.action == ErrorAction.DISMISS
    assert presentation.message == "details for the log"


def test_cancelled_purchase_is_silent():
    presentation = presentation_for(PurchaseCancelled())
    assert presentation.action == ErrorAction.NONE
    assert presentation.message == ""


def test_storage_errors_offer_retry():
    assert presentation_for(UsageStoreError("down")).action == ErrorAction.RETRY
    assert presentation_for(PersistenceError("down")).action == ErrorAction.RETRY


def test_default_message():
    assert NetworkError().message == "Please check your internet connection and try again."


def test_retry_policy_backoff():
    policy = RetryPolicy(base_delay=1.0, max_delay=5.0, jitter=0.0)
    assert [policy.delay_for(attempt) for attempt in range(4)] == [1.0, 2.0, 4.0, 5.0]


def test_retry_policy_jitter_bounds():
    policy = RetryPolicy(base_delay=1.0, jitter=0.1)
    for _ in range(50):
        assert 0.9 <= policy.delay_for(0) <= 1.1


def test_retry_call_retries_retryable_errors():
    calls = []
    sleeps = []

    def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise NetworkError()
        return "ok"

    result = retry_call(flaky, RetryPolicy(jitter=0.0), sleep=sleeps.append)

    assert result == "ok"
    assert len(calls) == 3
    assert sleeps == [1.0, 2.0]


def test_retry_call_gives_up_after_max_retries():
    calls = []

    def always_down():
        calls.append(1)
        raise ServerError()

    with pytest.raises(ServerError):
        retry_call(always_down, RetryPolicy(max_retries=2), sleep=lambda _: None)
    assert len(calls) == 3


def test_retry_call_does_not_retry_terminal_errors():
    calls = []

    def declined():
        calls.append(1)
        raise PaymentFailed()

    with pytest.raises(PaymentFailed):
        retry_call(declined, sleep=lambda _: None)
    assert len(calls) == 1
