"""Tests for error classification and the retry state machine."""

import pytest

from exam_ensemble.errors import (
    EnsembleExhausted,
    ErrorKind,
    backoff_delay,
    classify_error,
    describe_error,
    is_retryable,
    next_step,
)


@pytest.mark.parametrize(
    "status, message, expected",
    [
        (429, None, ErrorKind.OVERLOAD),
        (503, "Service Unavailable", ErrorKind.OVERLOAD),
        (529, "", ErrorKind.OVERLOAD),
        (None, "RESOURCE_EXHAUSTED: quota exceeded", ErrorKind.OVERLOAD),
        (None, "The model is overloaded", ErrorKind.OVERLOAD),
        (401, None, ErrorKind.AUTH_ERROR),
        (403, "forbidden", ErrorKind.AUTH_ERROR),
        (400, "API key not valid. Please pass a valid API key.", ErrorKind.AUTH_ERROR),
        (404, None, ErrorKind.NOT_FOUND),
        (None, "models/gemini-9 is not found", ErrorKind.NOT_FOUND),
        (408, None, ErrorKind.TIMEOUT),
        (None, "Request timed out", ErrorKind.TIMEOUT),
        (None, "DEADLINE_EXCEEDED", ErrorKind.TIMEOUT),
        (None, "SAFETY: response blocked", ErrorKind.SAFETY_BLOCKED),
        (None, "ECONNREFUSED 127.0.0.1", ErrorKind.NETWORK_ERROR),
        (None, "Connection reset by peer", ErrorKind.NETWORK_ERROR),
        (None, "Empty response or parse failure", ErrorKind.EMPTY_OR_UNPARSEABLE),
        (None, "No candidates in response", ErrorKind.EMPTY_OR_UNPARSEABLE),
        (500, "Internal error", ErrorKind.OTHER),
        (None, None, ErrorKind.OTHER),
    ],
)
def test_classify_error(status, message, expected):
    assert classify_error(status, message) == expected


class TestRetryPolicy:
    @pytest.mark.parametrize("kind", [ErrorKind.MISSING_CREDENTIAL, ErrorKind.AUTH_ERROR, ErrorKind.NOT_FOUND])
    def test_fatal_kinds_stop_immediately(self, kind):
        assert not is_retryable(kind)
        assert next_step(kind, 1, 3) == "stop"

    @pytest.mark.parametrize(
        "kind",
        [
            ErrorKind.OVERLOAD,
            ErrorKind.TIMEOUT,
            ErrorKind.SAFETY_BLOCKED,
            ErrorKind.NETWORK_ERROR,
            ErrorKind.EMPTY_OR_UNPARSEABLE,
            ErrorKind.OTHER,
        ],
    )
    def test_transient_kinds_retry_until_budget(self, kind):
        assert is_retryable(kind)
        assert next_step(kind, 1, 3) == "retry"
        assert next_step(kind, 2, 3) == "retry"
        assert next_step(kind, 3, 3) == "stop"

    def test_success(self):
        assert next_step(None, 1, 3) == "success"

    def test_single_attempt_budget(self):
        assert next_step(ErrorKind.OVERLOAD, 1, 1) == "stop"

    def test_overload_backoff_is_longer(self):
        assert backoff_delay(ErrorKind.OVERLOAD, 1) == 2.0
        assert backoff_delay(ErrorKind.OVERLOAD, 2) == 4.0

    def test_generic_backoff(self):
        assert backoff_delay(ErrorKind.TIMEOUT, 1) == 1.0
        assert backoff_delay(ErrorKind.EMPTY_OR_UNPARSEABLE, 2) == 2.0

    def test_custom_backoff_base(self):
        assert backoff_delay(ErrorKind.OTHER, 3, base_s=0.5) == 1.5
        assert backoff_delay(ErrorKind.OVERLOAD, 3, overload_base_s=0.1) == pytest.approx(0.3)


def test_describe_error():
    assert describe_error(ErrorKind.AUTH_ERROR) == "API key invalid or expired"
    assert describe_error(None) == ""


def test_ensemble_exhausted_lists_providers():
    err = EnsembleExhausted({"w1": ErrorKind.OVERLOAD, "judge": ErrorKind.TIMEOUT})

    assert err.kind == ErrorKind.ENSEMBLE_EXHAUSTED
    assert err.provider_errors == {"w1": ErrorKind.OVERLOAD, "judge": ErrorKind.TIMEOUT}
    assert "w1: overload" in str(err)
    assert "judge: timeout" in str(err)
